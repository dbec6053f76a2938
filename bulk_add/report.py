from typing import Iterable

import pandas as pd

from bulk_add.models import ItemRecord, RunSummary

RESULT_COLUMNS = [
    "line",
    "name",
    "type",
    "location",
    "tags",
    "status",
    "message",
    "address",
    "place_id",
    "neighborhood",
    "existing_id",
    "force_submit",
    "final_id",
]


def items_to_frame(items: Iterable[ItemRecord]) -> pd.DataFrame:
    """One row per item, ordered by line number."""
    rows = []
    for item in sorted(items, key=lambda item: item.line_number):
        resolved = item.resolved
        rows.append({
            "line": item.line_number,
            "name": item.name,
            "type": item.kind.value,
            "location": item.location_hint,
            "tags": ", ".join(item.tags),
            "status": item.status.value,
            "message": item.message,
            "address": resolved.address if resolved else None,
            "place_id": resolved.place_id if resolved else None,
            "neighborhood": resolved.neighborhood_name if resolved else None,
            "existing_id": item.duplicate.existing_id,
            "force_submit": item.duplicate.force_submit,
            "final_id": item.final_id,
        })
    return pd.DataFrame(rows, columns=RESULT_COLUMNS)


def write_results_csv(items: Iterable[ItemRecord], path: str) -> pd.DataFrame:
    """Write the per-item results table to `path` and return it."""
    frame = items_to_frame(items)
    frame.to_csv(path, index=False)
    return frame


def format_summary(summary: RunSummary) -> str:
    return (
        f"{summary.total} items: {summary.added} added, {summary.duplicates} duplicates, "
        f"{summary.errors} errors, {summary.skipped} skipped"
    )
