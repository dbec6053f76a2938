"""
Singleton Google Places client with rate limiting using aiolimiter.
"""
import asyncio
from typing import Any, Dict, List, Optional

from aiohttp import ClientError, ClientSession, ClientTimeout
from aiolimiter import AsyncLimiter
from loguru import logger

from bulk_add.config import GOOGLE_API_KEY, PLACES_URL, REQUEST_TIMEOUT, REQUESTS_PER_SECOND
from bulk_add.errors import ResolutionError
from bulk_add.models import PlaceCandidate


def _component(components: List[Dict[str, Any]], kind: str) -> Optional[str]:
    for component in components:
        if kind in component.get("types", []):
            return component.get("long_name")
    return None


def candidate_from_result(result: Dict[str, Any]) -> PlaceCandidate:
    """
    Convert one Places API result into a PlaceCandidate.

    Args:
        result: A single entry of the Places API `results` array.

    Returns:
        PlaceCandidate: The parsed candidate. Structured address components are
                        used for postal code and neighborhood when present.
    """
    location = (result.get("geometry") or {}).get("location") or {}
    components = result.get("address_components") or []
    return PlaceCandidate(
        place_id=result.get("place_id", ""),
        name=result.get("name", ""),
        formatted_address=result.get("formatted_address") or result.get("vicinity") or "",
        lat=location.get("lat"),
        lng=location.get("lng"),
        rating=result.get("rating"),
        price_level=result.get("price_level"),
        neighborhood_hint=_component(components, "neighborhood") or _component(components, "sublocality"),
        postal_code=_component(components, "postal_code"),
    )


class PlacesClient:
    """
    Singleton client for the Google Places text search API.
    Uses AsyncLimiter to cap the place search call rate.
    """
    _instance = None
    _initialized = False

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self):
        if not PlacesClient._initialized:
            self.api_key = GOOGLE_API_KEY
            self.base_url = PLACES_URL
            self.rate_limiter = AsyncLimiter(max_rate=REQUESTS_PER_SECOND, time_period=1.0)
            self._session: Optional[ClientSession] = None
            PlacesClient._initialized = True

    async def _get_session(self) -> ClientSession:
        """Get or create the aiohttp session."""
        if self._session is None or self._session.closed:
            self._session = ClientSession(timeout=ClientTimeout(total=REQUEST_TIMEOUT))
        return self._session

    async def search(self, query: str) -> List[PlaceCandidate]:
        """
        Search restaurants matching a free-text query.

        Args:
            query: Name plus optional city, e.g. "Joe's Pizza New York".

        Returns:
            List of candidates in the order the API ranked them (empty on ZERO_RESULTS).

        Raises:
            ResolutionError: On network failure, timeout or an API error status.
        """
        if not self.api_key:
            raise ResolutionError("GOOGLE_API_KEY must be set in environment or config")

        async with self.rate_limiter:
            session = await self._get_session()
            params = {"query": query, "type": "restaurant", "key": self.api_key}
            try:
                async with session.get(self.base_url, params=params) as resp:
                    data = await resp.json()
            except asyncio.TimeoutError as e:
                logger.debug(f"⏱️ TIMEOUT place search for '{query}'")
                raise ResolutionError(f"Place search timed out for '{query}'") from e
            except ClientError as e:
                logger.debug(f"⚠️ Place search request failed for '{query}': {e}")
                raise ResolutionError(f"Place search request failed: {e}") from e

        status = data.get("status")
        if status == "ZERO_RESULTS":
            return []
        if status != "OK":
            raise ResolutionError(
                f"Places API error ({status}): {data.get('error_message', 'no details')}"
            )

        results = data.get("results", [])
        logger.debug(f"✅ Place search for '{query}' returned {len(results)} results")
        return [candidate_from_result(result) for result in results]

    async def close(self):
        """Close the aiohttp session."""
        if self._session and not self._session.closed:
            await self._session.close()
            self._session = None
