"""
Line parser: turns pasted bulk-add text into item records.

Each non-empty line has the form

    name; kind; location; tag1, tag2

where `location` is a city for restaurants and the parent restaurant name for
dishes. Malformed lines are kept and marked as errors rather than rejected.
"""
from typing import List, Optional

from loguru import logger

from bulk_add.errors import ParseError
from bulk_add.models import ItemKind, ItemRecord, ItemStatus

FIELD_SEPARATOR = ";"
ALT_FIELD_SEPARATOR = "|"
MAX_FIELDS = 4


def _split_fields(line: str) -> List[str]:
    separator = FIELD_SEPARATOR
    if FIELD_SEPARATOR not in line and ALT_FIELD_SEPARATOR in line:
        separator = ALT_FIELD_SEPARATOR
    return [part.strip() for part in line.split(separator)][:MAX_FIELDS]


def parse_tags(tags_raw: Optional[str]) -> List[str]:
    """Comma-split, trim and lower-case tags, dropping empties and repeats."""
    tags: List[str] = []
    for tag in (tags_raw or "").split(","):
        tag = tag.strip().lower()
        if tag and tag not in tags:
            tags.append(tag)
    return tags


def parse_line(line: str, line_number: int) -> ItemRecord:
    """
    Parse a single trimmed, non-empty line into an item record.

    Args:
        line (str): The trimmed input line.
        line_number (int): 1-based position among non-empty lines.

    Returns:
        ItemRecord: A pending record, or an error record when the line is malformed.
    """
    fields = _split_fields(line)
    fields += [""] * (MAX_FIELDS - len(fields))
    name, kind_raw, location, tags_raw = fields

    try:
        kind = ItemKind(kind_raw.lower())
    except ValueError:
        kind = ItemKind.UNKNOWN

    record = ItemRecord(
        line_number=line_number,
        raw_line=line,
        kind=kind,
        name=name,
        location_hint=location or None,
        tags=parse_tags(tags_raw),
        message="Ready for processing",
    )

    if not kind_raw:
        record.transition(ItemStatus.ERROR, "Invalid format. Expected: name; type; location; tags")
    elif kind is ItemKind.UNKNOWN:
        record.transition(
            ItemStatus.ERROR,
            f"Unknown type: {kind_raw}. Expected 'restaurant' or 'dish'.",
        )
    elif not name:
        record.transition(ItemStatus.ERROR, "Name is required")
    return record


def parse_input(raw_text: str) -> List[ItemRecord]:
    """
    Parse raw multi-line text into item records, one per non-empty line.

    Args:
        raw_text (str): Text pasted by the operator.

    Returns:
        List[ItemRecord]: Records numbered 1..N in input order.

    Raises:
        ParseError: If the input is empty or whitespace only.
    """
    if not raw_text or not raw_text.strip():
        raise ParseError("Please enter some data to process")

    lines = [line.strip() for line in raw_text.splitlines()]
    records = [parse_line(line, number) for number, line in enumerate(filter(None, lines), start=1)]

    bad = sum(1 for record in records if record.status is ItemStatus.ERROR)
    logger.debug(f"📝 Parsed {len(records)} items from input ({bad} malformed)")
    return records
