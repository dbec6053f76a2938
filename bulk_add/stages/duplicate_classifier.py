from typing import Dict, List, Tuple

from loguru import logger

from bulk_add.config import DETECT_INPUT_DUPLICATES, FAIL_OPEN_DUPLICATE_CHECK
from bulk_add.models import ItemRecord, ItemStatus


def _input_duplicate_key(item: ItemRecord) -> Tuple[str, str, str]:
    """Identity used to spot the same item pasted twice in one input."""
    if item.resolved and item.resolved.place_id:
        place = item.resolved.place_id
    else:
        place = (item.location_hint or "").lower()
    return item.kind.value, item.name.strip().lower(), place


class DuplicateClassifier:
    """
    Checks resolved items against the catalog in one batched call.

    With `fail_open` set, a failed check lets every item through as if no
    duplicates were found. Otherwise every ready item is held back as a
    duplicate until the operator forces it.
    """

    def __init__(
        self,
        catalog,
        fail_open: bool = FAIL_OPEN_DUPLICATE_CHECK,
        detect_input_duplicates: bool = DETECT_INPUT_DUPLICATES,
    ):
        self.catalog = catalog
        self.fail_open = fail_open
        self.detect_input_duplicates = detect_input_duplicates

    async def classify(self, items: List[ItemRecord]) -> List[ItemRecord]:
        """
        Mark ready items that already exist in the catalog as duplicates.

        Args:
            items (List[ItemRecord]): Items after resolution; only `ready` ones are checked.

        Returns:
            List[ItemRecord]: The same items, in the same order.
        """
        ready = sorted(
            (item for item in items if item.status is ItemStatus.READY),
            key=lambda item: item.line_number,
        )
        if not ready:
            logger.debug("🔍 No ready items to check for duplicates")
            return items

        by_line: Dict[int, ItemRecord] = {item.line_number: item for item in ready}
        try:
            matches = await self.catalog.check_existing([item.check_key() for item in ready])
        except Exception as e:
            self._handle_check_failure(ready, e)
        else:
            seen = set()
            for match in matches or []:
                item = by_line.get(match.line_number)
                if item is None:
                    logger.warning(f"Duplicate check returned unknown line number {match.line_number}")
                    continue
                if match.line_number in seen:
                    logger.warning(f"Ignoring repeated duplicate check row for line {match.line_number}")
                    continue
                seen.add(match.line_number)
                if match.existing_id is None:
                    item.transition(ItemStatus.READY)
                    continue
                item.duplicate.is_duplicate = True
                item.duplicate.existing_id = match.existing_id
                item.transition(
                    ItemStatus.DUPLICATE,
                    f"{item.name} already exists (id {match.existing_id})",
                )

        if self.detect_input_duplicates:
            self._mark_input_duplicates(ready)

        flagged = sum(1 for item in ready if item.status is ItemStatus.DUPLICATE)
        logger.debug(f"🔍 Duplicate check done: {flagged}/{len(ready)} flagged")
        return items

    def _handle_check_failure(self, ready: List[ItemRecord], error: Exception) -> None:
        if self.fail_open:
            logger.warning(
                f"⚠️ Duplicate check failed, continuing WITHOUT duplicate detection "
                f"for {len(ready)} items: {error}"
            )
            return

        logger.warning(f"⚠️ Duplicate check failed, holding back {len(ready)} items: {error}")
        for item in ready:
            item.duplicate.is_duplicate = True
            item.transition(ItemStatus.DUPLICATE, f"Duplicate check unavailable: {error}")

    def _mark_input_duplicates(self, ready: List[ItemRecord]) -> None:
        first_seen: Dict[Tuple[str, str, str], ItemRecord] = {}
        for item in ready:
            if item.status is not ItemStatus.READY:
                continue
            key = _input_duplicate_key(item)
            original = first_seen.get(key)
            if original is None:
                first_seen[key] = item
                continue
            item.duplicate.is_duplicate = True
            item.transition(
                ItemStatus.DUPLICATE,
                f"Duplicate of line {original.line_number}: {original.name}",
            )
            logger.debug(f"🔁 Line {item.line_number} repeats line {original.line_number}")
