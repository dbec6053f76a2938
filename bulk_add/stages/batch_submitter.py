from typing import AsyncIterator, Dict, Iterator, List, Optional

from loguru import logger

from bulk_add.config import SUBMIT_CHUNK_SIZE
from bulk_add.errors import SubmissionItemError, SubmissionTransportError
from bulk_add.models import ItemRecord, ItemStatus, RunSummary, SubmissionOutcome, SubmissionProgress


def chunk_iter(items: List[ItemRecord], chunk_size: int) -> Iterator[List[ItemRecord]]:
    """
    Yield ItemRecord slices of size `chunk_size` for batched submission.
    """
    for i in range(0, len(items), chunk_size):
        yield items[i:i + chunk_size]


class BatchSubmitter:
    """
    Submits eligible items to the catalog in fixed-size chunks, one chunk at a time.

    Backend results are matched back to items by line number. Every chunk is
    processed even when earlier ones fail, so the final summary covers all items.
    """

    def __init__(self, catalog, chunk_size: int = SUBMIT_CHUNK_SIZE):
        self.catalog = catalog
        self.chunk_size = max(1, chunk_size)

    async def submit(self, items: List[ItemRecord]) -> AsyncIterator[SubmissionProgress]:
        """
        Submit every eligible item and report progress after each chunk.

        Args:
            items (List[ItemRecord]): All items of the run; ineligible ones are left alone.

        Yields:
            SubmissionProgress: Monotonic progress (0-100] and a fresh run summary.
        """
        eligible = sorted((item for item in items if item.is_eligible), key=lambda item: item.line_number)
        chunks = list(chunk_iter(eligible, self.chunk_size))
        if not chunks:
            logger.debug("📤 No items eligible for submission")
            yield SubmissionProgress(progress=100.0, summary=RunSummary.from_items(items))
            return

        logger.debug(f"📤 Submitting {len(eligible)} items in {len(chunks)} chunks")
        submitted = 0
        abort_reason: Optional[str] = None
        for index, chunk in enumerate(chunks, start=1):
            if abort_reason is not None:
                for item in chunk:
                    item.transition(ItemStatus.ERROR, f"Not submitted: {abort_reason}")
            else:
                abort_reason = await self._submit_chunk(index, chunk)

            submitted += len(chunk)
            progress = submitted * 100.0 / len(eligible)
            yield SubmissionProgress(
                progress=progress,
                summary=RunSummary.from_items(items),
                chunk_index=index,
                chunk_count=len(chunks),
            )

    async def _submit_chunk(self, index: int, chunk: List[ItemRecord]) -> Optional[str]:
        """Submit one chunk. Returns a reason when later chunks must not be sent."""
        try:
            outcomes = await self.catalog.bulk_create([item.to_payload() for item in chunk])
        except SubmissionTransportError as e:
            logger.debug(f"⚠️ Chunk {index} failed: {e}")
            for item in chunk:
                item.transition(ItemStatus.ERROR, f"Submission failed: {e}")
            if e.systemic:
                logger.warning(f"Systemic submission failure, remaining chunks will not be sent: {e}")
                return str(e)
            return None
        except Exception as e:
            logger.debug(f"⚠️ Chunk {index} failed: {e}")
            for item in chunk:
                item.transition(ItemStatus.ERROR, f"Submission failed: {e}")
            return None

        self._merge_outcomes(chunk, outcomes or [])
        return None

    def _merge_outcomes(self, chunk: List[ItemRecord], outcomes: List[SubmissionOutcome]) -> None:
        by_line: Dict[int, ItemRecord] = {item.line_number: item for item in chunk}
        matched = set()
        unnumbered = []

        for outcome in outcomes:
            if outcome.line_number is None:
                unnumbered.append(outcome)
                continue
            item = by_line.get(outcome.line_number)
            if item is None or outcome.line_number in matched:
                logger.warning(f"Ignoring submission result for unexpected line {outcome.line_number}")
                continue
            self._apply_outcome(item, outcome)
            matched.add(item.line_number)

        for outcome in unnumbered:
            item = self._match_by_name(chunk, matched, outcome.name)
            if item is None:
                logger.warning(f"Submission result without line number could not be matched: {outcome.name!r}")
                continue
            logger.warning(f"Matching submission result to line {item.line_number} by name (fallback)")
            self._apply_outcome(item, outcome, by_name=True)
            matched.add(item.line_number)

        for item in chunk:
            if item.line_number not in matched:
                item.transition(ItemStatus.ERROR, "No result returned for this item")

    @staticmethod
    def _match_by_name(chunk: List[ItemRecord], matched: set, name: Optional[str]) -> Optional[ItemRecord]:
        if not name:
            return None
        wanted = name.strip().lower()
        for item in chunk:
            if item.line_number not in matched and item.name.strip().lower() == wanted:
                return item
        return None

    def _apply_outcome(self, item: ItemRecord, outcome: SubmissionOutcome, by_name: bool = False) -> None:
        suffix = " (matched by name)" if by_name else ""
        try:
            if outcome.outcome == "added":
                if outcome.final_id is None:
                    raise SubmissionItemError("Backend reported success without an id", item.line_number)
                item.final_id = outcome.final_id
                item.transition(ItemStatus.ADDED, (outcome.message or "Successfully added") + suffix)
            elif outcome.outcome == "duplicate":
                item.duplicate.is_duplicate = True
                item.duplicate.force_submit = False
                if outcome.final_id is not None:
                    item.duplicate.existing_id = outcome.final_id
                item.transition(ItemStatus.DUPLICATE, (outcome.message or "Already exists in catalog") + suffix)
            elif outcome.outcome == "error":
                raise SubmissionItemError(outcome.message or "Rejected by backend", item.line_number)
            else:
                raise SubmissionItemError(f"Unknown outcome '{outcome.outcome}'", item.line_number)
        except SubmissionItemError as e:
            logger.debug(f"⚠️ Line {item.line_number} not added: {e}")
            item.transition(ItemStatus.ERROR, str(e) + suffix)
