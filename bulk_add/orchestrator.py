# bulk_add/orchestrator.py

import asyncio
from typing import AsyncIterator, Awaitable, Callable, Dict, Iterable, List, Optional

from loguru import logger

from bulk_add.clients import CatalogClient, GeographyClient, PlacesClient
from bulk_add.config import (
    AMBIGUITY_THRESHOLD,
    DETECT_INPUT_DUPLICATES,
    FAIL_OPEN_DUPLICATE_CHECK,
    RESOLVE_CONCURRENCY,
    SUBMIT_CHUNK_SIZE,
)
from bulk_add.errors import ParseError, PipelineStateError, UnknownItemError
from bulk_add.geography_cache import GeographyCache
from bulk_add.models import (
    IN_FLIGHT_STATUSES,
    ItemKind,
    ItemRecord,
    ItemStatus,
    PlaceCandidate,
    RunStatus,
    RunSummary,
    SubmissionProgress,
)
from bulk_add.parser import parse_input
from bulk_add.stages.batch_submitter import BatchSubmitter
from bulk_add.stages.duplicate_classifier import DuplicateClassifier
from bulk_add.stages.place_resolver import PlaceResolver, parent_key

Chooser = Callable[[ItemRecord], Awaitable[Optional[PlaceCandidate]]]

_TASK_DONE = object()


class PipelineOrchestrator:
    """
    Drives one bulk add run: parse -> resolve -> classify duplicates -> submit.

    Items are identified by line number for the whole run. The run status is
    derived from the current stage and the item statuses.

    Args:
        places: Place search service with `async search(query)`.
        geography: Geography service with `async lookup(postal_code)`.
        catalog: Catalog service with `async check_existing(keys)` and `async bulk_create(payloads)`.
    """

    def __init__(
        self,
        places=None,
        geography=None,
        catalog=None,
        resolve_concurrency: int = RESOLVE_CONCURRENCY,
        ambiguity_threshold: float = AMBIGUITY_THRESHOLD,
        chunk_size: int = SUBMIT_CHUNK_SIZE,
        fail_open: bool = FAIL_OPEN_DUPLICATE_CHECK,
        detect_input_duplicates: bool = DETECT_INPUT_DUPLICATES,
    ):
        self.places = places if places is not None else PlacesClient()
        self.geography = geography if geography is not None else GeographyClient()
        self.catalog = catalog if catalog is not None else CatalogClient()
        self.resolve_concurrency = resolve_concurrency
        self.ambiguity_threshold = ambiguity_threshold
        self.classifier = DuplicateClassifier(
            self.catalog,
            fail_open=fail_open,
            detect_input_duplicates=detect_input_duplicates,
        )
        self.submitter = BatchSubmitter(self.catalog, chunk_size=chunk_size)

        self._items: Dict[int, ItemRecord] = {}
        self._stage = RunStatus.IDLE
        self._cache: Optional[GeographyCache] = None
        self._resolver: Optional[PlaceResolver] = None
        self._tasks: List[asyncio.Task] = []
        self._stream: Optional[asyncio.Queue] = None

    # Run state

    @property
    def items(self) -> List[ItemRecord]:
        return sorted(self._items.values(), key=lambda item: item.line_number)

    @property
    def geography_cache(self) -> Optional[GeographyCache]:
        return self._cache

    @property
    def summary(self) -> RunSummary:
        return RunSummary.from_items(self._items.values())

    @property
    def run_status(self) -> RunStatus:
        if self._stage is RunStatus.RESOLVING:
            statuses = {item.status for item in self._items.values()}
            if ItemStatus.PENDING in statuses or ItemStatus.RESOLVING in statuses:
                return RunStatus.RESOLVING
            if ItemStatus.AWAITING_SELECTION in statuses:
                return RunStatus.AWAITING_SELECTION
        return self._stage

    def get_item(self, line_number: int) -> ItemRecord:
        try:
            return self._items[line_number]
        except KeyError:
            raise UnknownItemError(f"No item on line {line_number}") from None

    def reset(self) -> None:
        """Tear down the run: cancel in-flight work and drop the geography cache."""
        for task in self._tasks:
            task.cancel()
        self._tasks = []
        if self._cache is not None:
            self._cache.clear()
        self._cache = None
        self._resolver = None
        self._stream = None
        self._items = {}
        self._stage = RunStatus.IDLE

    def _start_run(self) -> None:
        self._cache = GeographyCache(self.geography.lookup)
        self._resolver = PlaceResolver(
            self.places,
            self._cache,
            concurrency=self.resolve_concurrency,
            ambiguity_threshold=self.ambiguity_threshold,
        )

    def _adopt(self, items: Optional[Iterable[ItemRecord]]) -> List[ItemRecord]:
        if items is None:
            return self.items
        adopted = sorted(items, key=lambda item: item.line_number)
        for item in adopted:
            self._items[item.line_number] = item
        return adopted

    def _publish(self, item: ItemRecord) -> None:
        if self._stream is not None:
            self._stream.put_nowait(item.snapshot())

    @staticmethod
    def _require_settled(items: List[ItemRecord], action: str) -> None:
        unsettled = [item.line_number for item in items if item.status in IN_FLIGHT_STATUSES]
        if unsettled:
            raise PipelineStateError(
                f"Cannot {action}: lines {unsettled} are still resolving or awaiting selection"
            )

    # Stages

    def parse(self, raw_text: str) -> List[ItemRecord]:
        """
        Start a new run from raw text.

        Raises:
            ParseError: If the text is empty or whitespace only.
        """
        self.reset()
        self._stage = RunStatus.PARSING
        try:
            records = parse_input(raw_text)
        except ParseError:
            self._stage = RunStatus.IDLE
            raise
        self._start_run()
        self._items = {record.line_number: record for record in records}
        logger.info(f"Parsed {len(records)} items")
        return self.items

    async def start_resolution(self, items: Optional[Iterable[ItemRecord]] = None) -> AsyncIterator[ItemRecord]:
        """
        Resolve every pending item, streaming a snapshot on each status change.

        The stream ends once no item is pending or resolving. Items that need an
        operator decision stay in `awaiting_selection` until `select_place` is
        called; selections made while the stream is open are streamed too.
        """
        if self._stage in (RunStatus.CLASSIFYING, RunStatus.SUBMITTING, RunStatus.DONE):
            raise PipelineStateError(f"Cannot resolve items once the run is {self._stage.value}")
        targets = self._adopt(items)
        if self._resolver is None:
            self._start_run()

        pending = [item for item in targets if item.status is ItemStatus.PENDING]
        self._stage = RunStatus.RESOLVING
        logger.info(f"Resolving {len(pending)} items")

        queue: asyncio.Queue = asyncio.Queue()
        self._stream = queue
        tasks = [asyncio.create_task(self._resolve_item(item, queue)) for item in pending]
        self._tasks.extend(tasks)

        remaining = len(tasks)
        try:
            while remaining:
                update = await queue.get()
                if update is _TASK_DONE:
                    remaining -= 1
                    continue
                yield update
            while not queue.empty():
                update = queue.get_nowait()
                if update is not _TASK_DONE:
                    yield update
        finally:
            if self._stream is queue:
                self._stream = None

        waiting = sum(1 for item in targets if item.status is ItemStatus.AWAITING_SELECTION)
        logger.info(f"Resolution finished, {waiting} items awaiting selection")

    async def _resolve_item(self, item: ItemRecord, queue: asyncio.Queue) -> None:
        try:
            item.transition(ItemStatus.RESOLVING, "Resolving place...")
            queue.put_nowait(item.snapshot())
            try:
                await self._resolver.resolve(item)
            except Exception as e:
                logger.debug(f"⚠️ Unexpected resolution error on line {item.line_number}: {e}")
                if item.status is ItemStatus.RESOLVING:
                    item.transition(ItemStatus.REVIEW_NEEDED, f"Resolution failed: {e}")
            queue.put_nowait(item.snapshot())
        finally:
            queue.put_nowait(_TASK_DONE)

    async def select_place(self, line_number: int, candidate: Optional[PlaceCandidate]) -> ItemRecord:
        """
        Resume an item waiting for the operator, or fix one that needs review.

        Args:
            line_number (int): The item's line number.
            candidate (Optional[PlaceCandidate]): The chosen place, or None to skip the item.

        Returns:
            ItemRecord: The updated item.
        """
        if self._stage in (RunStatus.SUBMITTING, RunStatus.DONE):
            raise PipelineStateError(f"Cannot select a place once the run is {self._stage.value}")
        item = self.get_item(line_number)
        if item.status not in (ItemStatus.AWAITING_SELECTION, ItemStatus.REVIEW_NEEDED):
            raise PipelineStateError(
                f"Line {line_number} is {item.status.value}, not awaiting a selection"
            )

        if candidate is None:
            item.transition(ItemStatus.SKIPPED, "Skipped by operator")
            self._publish(item)
            return item

        if self._resolver is None:
            self._start_run()
        self._resolver.remember_parent_selection(item, candidate)
        await self._resolver.apply_candidate(item, candidate)
        self._publish(item)
        resolved = [item]

        if item.kind is ItemKind.DISH and item.location_hint:
            key = parent_key(item.location_hint)
            for sibling in self.items:
                if (
                    sibling is not item
                    and sibling.kind is ItemKind.DISH
                    and sibling.status is ItemStatus.AWAITING_SELECTION
                    and sibling.location_hint
                    and parent_key(sibling.location_hint) == key
                ):
                    await self._resolver.apply_candidate(sibling, candidate)
                    self._publish(sibling)
                    resolved.append(sibling)

        # Late fixes still go through the existing-item check
        if self._stage is RunStatus.CLASSIFYING:
            await self.classifier.classify(resolved)
        return item

    async def classify_duplicates(self, items: Optional[Iterable[ItemRecord]] = None) -> List[ItemRecord]:
        """Run the batched duplicate check over all ready items."""
        targets = self._adopt(items)
        self._require_settled(targets, "classify duplicates")
        self._stage = RunStatus.CLASSIFYING
        await self.classifier.classify(targets)
        return targets

    def set_force_submit(self, line_number: int, force: bool = True) -> ItemRecord:
        """Let a detected duplicate through to submission anyway (or take that back)."""
        item = self.get_item(line_number)
        if item.status is not ItemStatus.DUPLICATE:
            raise PipelineStateError(f"Line {line_number} is {item.status.value}, not a duplicate")
        item.duplicate.force_submit = force
        logger.debug(f"🔓 Line {line_number} force submit set to {force}")
        return item

    async def submit(self, items: Optional[Iterable[ItemRecord]] = None) -> AsyncIterator[SubmissionProgress]:
        """
        Submit eligible items in sequential chunks, streaming progress.

        Items still waiting for review are skipped so that every item ends
        the run in a terminal status.
        """
        if self._stage in (RunStatus.SUBMITTING, RunStatus.DONE):
            raise PipelineStateError(f"Cannot submit once the run is {self._stage.value}")
        targets = self._adopt(items)
        self._require_settled(targets, "submit")
        for item in targets:
            if item.status is ItemStatus.REVIEW_NEEDED:
                item.transition(ItemStatus.SKIPPED, f"Not submitted: {item.message}")

        self._stage = RunStatus.SUBMITTING
        async for progress in self.submitter.submit(targets):
            yield progress
        self._stage = RunStatus.DONE
        logger.info(f"Run finished: {RunSummary.from_items(targets)}")

    async def run(
        self,
        raw_text: str,
        choose: Optional[Chooser] = None,
        on_progress: Optional[Callable[[SubmissionProgress], None]] = None,
    ) -> RunSummary:
        """
        Drive the whole pipeline for one input.

        Args:
            raw_text (str): Pasted bulk input.
            choose (Optional[Chooser]): Asked to pick a place for each ambiguous item;
                                        without it, ambiguous items are skipped.
            on_progress (Optional[Callable]): Called with every submission progress update.

        Returns:
            RunSummary: Final counts over all items.
        """
        self.parse(raw_text)

        async for update in self.start_resolution():
            if update.status is not ItemStatus.AWAITING_SELECTION or choose is None:
                continue
            item = self.get_item(update.line_number)
            # A sibling dish selection may already have resolved it
            if item.status is ItemStatus.AWAITING_SELECTION:
                await self.select_place(item.line_number, await choose(item))

        for item in self.items:
            if item.status is ItemStatus.AWAITING_SELECTION:
                await self.select_place(item.line_number, None)

        await self.classify_duplicates()
        async for progress in self.submit():
            if on_progress is not None:
                on_progress(progress)
        return self.summary
