import pytest
from unittest.mock import AsyncMock, MagicMock

from bulk_add.errors import SubmissionTransportError
from bulk_add.models import ItemKind, ItemRecord, ItemStatus, ResolvedPlace, RunSummary, SubmissionOutcome
from bulk_add.stages.batch_submitter import BatchSubmitter, chunk_iter


def ready_item(line_number, name=None, status=ItemStatus.READY):
    name = name or f"Place {line_number}"
    item = ItemRecord(
        line_number=line_number,
        raw_line=name,
        kind=ItemKind.RESTAURANT,
        name=name,
        status=status,
    )
    item.resolved = ResolvedPlace(address="1 Main St", place_id=f"p{line_number}", place_name=name, city_id=1)
    return item


def echo_added(start_id=100):
    """Fake bulk create that adds every payload it receives."""
    next_id = [start_id]

    async def bulk_create(payloads):
        outcomes = []
        for payload in payloads:
            outcomes.append(SubmissionOutcome("added", line_number=payload["lineNumber"], final_id=next_id[0]))
            next_id[0] += 1
        return outcomes

    return AsyncMock(side_effect=bulk_create)


def make_catalog(bulk_create):
    catalog = MagicMock()
    catalog.bulk_create = bulk_create
    return catalog


async def collect(submitter, items):
    return [progress async for progress in submitter.submit(items)]


def test_chunk_iter():
    items = [ready_item(i) for i in range(1, 8)]
    chunks = list(chunk_iter(items, 3))
    assert [len(chunk) for chunk in chunks] == [3, 3, 1]


@pytest.mark.asyncio
async def test_chunks_are_sequential_ordered_and_progress_is_monotonic():
    items = [ready_item(i) for i in (7, 3, 1, 5, 2, 6, 4)]
    bulk_create = echo_added()
    submitter = BatchSubmitter(make_catalog(bulk_create), chunk_size=3)

    updates = await collect(submitter, items)

    sent = [[payload["lineNumber"] for payload in call.args[0]] for call in bulk_create.await_args_list]
    assert sent == [[1, 2, 3], [4, 5, 6], [7]]
    progress = [update.progress for update in updates]
    assert progress == sorted(progress)
    assert progress[-1] == 100
    assert [update.chunk_index for update in updates] == [1, 2, 3]
    assert updates[-1].summary == RunSummary(total=7, added=7)
    assert len({item.final_id for item in items}) == 7


@pytest.mark.asyncio
async def test_four_added_one_error():
    items = [ready_item(i) for i in range(1, 6)]

    async def bulk_create(payloads):
        return [
            SubmissionOutcome("error", line_number=p["lineNumber"], message="Invalid address")
            if p["lineNumber"] == 3
            else SubmissionOutcome("added", line_number=p["lineNumber"], final_id=1000 + p["lineNumber"])
            for p in payloads
        ]

    submitter = BatchSubmitter(make_catalog(AsyncMock(side_effect=bulk_create)), chunk_size=2)

    updates = await collect(submitter, items)

    assert updates[-1].summary == RunSummary(total=5, added=4, duplicates=0, errors=1, skipped=0)
    assert items[2].status is ItemStatus.ERROR
    assert items[2].message == "Invalid address"
    added_ids = [item.final_id for item in items if item.status is ItemStatus.ADDED]
    assert len(added_ids) == 4
    assert len(set(added_ids)) == 4


@pytest.mark.asyncio
async def test_outcomes_match_by_line_number_not_position():
    items = [ready_item(1, "Alpha"), ready_item(2, "Beta")]

    async def reversed_results(payloads):
        return [
            SubmissionOutcome("added", line_number=2, final_id=22),
            SubmissionOutcome("added", line_number=1, final_id=11),
        ]

    submitter = BatchSubmitter(make_catalog(AsyncMock(side_effect=reversed_results)))

    await collect(submitter, items)

    assert items[0].final_id == 11
    assert items[1].final_id == 22


@pytest.mark.asyncio
async def test_name_fallback_when_line_numbers_missing():
    items = [ready_item(1, "Alpha"), ready_item(2, "Beta")]
    bulk_create = AsyncMock(return_value=[
        SubmissionOutcome("added", final_id=22, name="beta"),
        SubmissionOutcome("added", final_id=11, name="Alpha"),
    ])

    await collect(BatchSubmitter(make_catalog(bulk_create)), items)

    assert items[0].final_id == 11
    assert items[1].final_id == 22
    assert all("matched by name" in item.message for item in items)


@pytest.mark.asyncio
async def test_transport_failure_marks_chunk_and_continues():
    items = [ready_item(i) for i in range(1, 5)]
    good = echo_added()
    calls = []

    async def first_fails(payloads):
        calls.append([p["lineNumber"] for p in payloads])
        if len(calls) == 1:
            raise SubmissionTransportError("connection reset")
        return await good(payloads)

    submitter = BatchSubmitter(make_catalog(AsyncMock(side_effect=first_fails)), chunk_size=2)

    updates = await collect(submitter, items)

    assert calls == [[1, 2], [3, 4]]
    assert [item.status for item in items] == [
        ItemStatus.ERROR, ItemStatus.ERROR, ItemStatus.ADDED, ItemStatus.ADDED,
    ]
    assert "connection reset" in items[0].message
    assert updates[-1].progress == 100


@pytest.mark.asyncio
async def test_systemic_failure_stops_sending_but_completes_progress():
    items = [ready_item(i) for i in range(1, 6)]
    bulk_create = AsyncMock(side_effect=SubmissionTransportError("Catalog API error 401", status=401, systemic=True))

    updates = await collect(BatchSubmitter(make_catalog(bulk_create), chunk_size=2), items)

    assert bulk_create.await_count == 1
    assert all(item.status is ItemStatus.ERROR for item in items)
    assert items[4].message.startswith("Not submitted")
    assert [update.progress for update in updates][-1] == 100
    assert len(updates) == 3


@pytest.mark.asyncio
async def test_unforced_duplicates_are_never_sent():
    dup = ready_item(2, status=ItemStatus.DUPLICATE)
    dup.duplicate.is_duplicate = True
    forced = ready_item(3, status=ItemStatus.DUPLICATE)
    forced.duplicate.is_duplicate = True
    forced.duplicate.force_submit = True
    items = [ready_item(1), dup, forced]
    bulk_create = echo_added()

    await collect(BatchSubmitter(make_catalog(bulk_create)), items)

    sent = [p["lineNumber"] for call in bulk_create.await_args_list for p in call.args[0]]
    assert sent == [1, 3]
    assert dup.status is ItemStatus.DUPLICATE
    assert forced.status is ItemStatus.ADDED
    assert bulk_create.await_args_list[0].args[0][1]["forceSubmit"] is True


@pytest.mark.asyncio
async def test_missing_result_and_bad_success_are_errors():
    items = [ready_item(1), ready_item(2), ready_item(3)]
    bulk_create = AsyncMock(return_value=[
        SubmissionOutcome("added", line_number=1, final_id=5),
        SubmissionOutcome("added", line_number=2),
        SubmissionOutcome("duplicate", line_number=99),
    ])

    await collect(BatchSubmitter(make_catalog(bulk_create)), items)

    assert items[0].status is ItemStatus.ADDED
    assert items[1].status is ItemStatus.ERROR
    assert "without an id" in items[1].message
    assert items[2].status is ItemStatus.ERROR
    assert items[2].message == "No result returned for this item"


@pytest.mark.asyncio
async def test_server_side_duplicate():
    items = [ready_item(1)]
    bulk_create = AsyncMock(return_value=[SubmissionOutcome("duplicate", line_number=1, final_id=77)])

    updates = await collect(BatchSubmitter(make_catalog(bulk_create)), items)

    assert items[0].status is ItemStatus.DUPLICATE
    assert items[0].duplicate.existing_id == 77
    assert updates[-1].summary.duplicates == 1


@pytest.mark.asyncio
async def test_nothing_eligible_reports_complete():
    bulk_create = AsyncMock()
    items = [ready_item(1, status=ItemStatus.SKIPPED)]

    updates = await collect(BatchSubmitter(make_catalog(bulk_create)), items)

    assert len(updates) == 1
    assert updates[0].progress == 100
    assert updates[0].summary == RunSummary(total=1, skipped=1)
    bulk_create.assert_not_awaited()
