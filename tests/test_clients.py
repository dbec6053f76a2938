import asyncio

import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from bulk_add.clients import CatalogClient, GeographyClient, PlacesClient
from bulk_add.clients.places_client import candidate_from_result
from bulk_add.errors import ClassificationServiceError, ResolutionError, SubmissionTransportError
from bulk_add.models import ExistingMatch, SubmissionOutcome

PLACES_RESULT = {
    "place_id": "ChIJ-joes",
    "name": "Joe's Pizza",
    "formatted_address": "7 Carmine St, New York, NY 10014, USA",
    "geometry": {"location": {"lat": 40.7306, "lng": -74.0021}},
    "rating": 4.5,
    "price_level": 1,
    "address_components": [
        {"long_name": "West Village", "types": ["neighborhood", "political"]},
        {"long_name": "10014", "types": ["postal_code"]},
    ],
}


def fresh(client_cls):
    """Reset singleton state so each test gets a new client."""
    client_cls._instance = None
    client_cls._initialized = False
    return client_cls()


def fake_session(method, status=200, payload=None, text="", error=None):
    """Session mock whose `get`/`post` work as async context managers."""
    resp = MagicMock()
    resp.status = status
    resp.json = AsyncMock(return_value=payload)
    resp.text = AsyncMock(return_value=text)

    session = MagicMock()
    request = getattr(session, method)
    if error is not None:
        request.return_value.__aenter__.side_effect = error
    else:
        request.return_value.__aenter__.return_value = resp
    return session


def test_candidate_from_result():
    candidate = candidate_from_result(PLACES_RESULT)

    assert candidate.place_id == "ChIJ-joes"
    assert candidate.lat == 40.7306
    assert candidate.postal_code == "10014"
    assert candidate.neighborhood_hint == "West Village"
    assert candidate.rating == 4.5


@pytest.mark.asyncio
async def test_places_search_parses_results():
    client = fresh(PlacesClient)
    client.api_key = "test-key"
    session = fake_session("get", payload={"status": "OK", "results": [PLACES_RESULT]})

    with patch.object(client, "_get_session", AsyncMock(return_value=session)):
        candidates = await client.search("Joe's Pizza New York")

    assert [c.place_id for c in candidates] == ["ChIJ-joes"]
    params = session.get.call_args.kwargs["params"]
    assert params["query"] == "Joe's Pizza New York"
    assert params["key"] == "test-key"


@pytest.mark.asyncio
async def test_places_zero_results_and_errors():
    client = fresh(PlacesClient)
    client.api_key = "test-key"

    with patch.object(client, "_get_session", AsyncMock(return_value=fake_session("get", payload={"status": "ZERO_RESULTS"}))):
        assert await client.search("nothing") == []

    denied = {"status": "REQUEST_DENIED", "error_message": "bad key"}
    with patch.object(client, "_get_session", AsyncMock(return_value=fake_session("get", payload=denied))):
        with pytest.raises(ResolutionError, match="bad key"):
            await client.search("x")

    with patch.object(client, "_get_session", AsyncMock(return_value=fake_session("get", error=asyncio.TimeoutError()))):
        with pytest.raises(ResolutionError, match="timed out"):
            await client.search("x")


@pytest.mark.asyncio
async def test_geography_lookup():
    client = fresh(GeographyClient)
    payload = {"data": {"neighborhoodId": 3, "neighborhoodName": "West Village", "cityId": 1, "cityName": "New York"}}

    with patch.object(client, "_get_session", AsyncMock(return_value=fake_session("get", payload=payload))):
        entry = await client.lookup("10014")
    assert entry.neighborhood_id == 3
    assert entry.city_name == "New York"

    with patch.object(client, "_get_session", AsyncMock(return_value=fake_session("get", status=404))):
        assert await client.lookup("99999") is None

    with patch.object(client, "_get_session", AsyncMock(return_value=fake_session("get", status=500))):
        with pytest.raises(ResolutionError):
            await client.lookup("10014")


@pytest.mark.asyncio
async def test_catalog_check_existing():
    client = fresh(CatalogClient)
    payload = {"results": [{"lineNumber": 1, "existingId": None}, {"lineNumber": 2, "existingId": 42}]}
    session = fake_session("post", payload=payload)

    with patch.object(client, "_get_session", AsyncMock(return_value=session)):
        matches = await client.check_existing([{"name": "A", "kind": "restaurant", "cityId": 1, "lineNumber": 1}])

    assert matches == [ExistingMatch(1, None), ExistingMatch(2, 42)]
    assert session.post.call_args.kwargs["json"]["items"][0]["lineNumber"] == 1

    with patch.object(client, "_get_session", AsyncMock(return_value=fake_session("post", status=503, text="busy"))):
        with pytest.raises(ClassificationServiceError):
            await client.check_existing([])


@pytest.mark.asyncio
async def test_catalog_bulk_create():
    client = fresh(CatalogClient)
    payload = {"data": [
        {"lineNumber": 1, "outcome": "added", "finalId": 10},
        {"lineNumber": 2, "outcome": "error", "message": "Invalid"},
    ]}

    with patch.object(client, "_get_session", AsyncMock(return_value=fake_session("post", payload=payload))):
        outcomes = await client.bulk_create([{"lineNumber": 1}, {"lineNumber": 2}])

    assert outcomes == [
        SubmissionOutcome("added", line_number=1, final_id=10),
        SubmissionOutcome("error", line_number=2, message="Invalid"),
    ]


@pytest.mark.asyncio
async def test_catalog_auth_failure_is_systemic():
    client = fresh(CatalogClient)

    with patch.object(client, "_get_session", AsyncMock(return_value=fake_session("post", status=401, text="expired"))):
        with pytest.raises(SubmissionTransportError) as excinfo:
            await client.bulk_create([{"lineNumber": 1}])

    assert excinfo.value.systemic is True
    assert excinfo.value.status == 401
