import asyncio
import sys
from typing import Optional

from loguru import logger

from bulk_add.clients import CatalogClient, GeographyClient, PlacesClient
from bulk_add.config import INPUT_TXT, LOG_LEVEL, OUTPUT_CSV
from bulk_add.errors import ParseError
from bulk_add.models import ItemRecord, PlaceCandidate, SubmissionProgress
from bulk_add.orchestrator import PipelineOrchestrator
from bulk_add.report import format_summary, write_results_csv


def load_input(file_path: str) -> str:
    """Read the raw bulk-add text, one item per line."""
    with open(file_path, encoding="utf-8") as f:
        return f.read()


async def choose_candidate(item: ItemRecord) -> Optional[PlaceCandidate]:
    """
    Ask the operator on stdin which place an ambiguous item refers to.

    Args:
        item (ItemRecord): Item in awaiting_selection with its candidates attached.

    Returns:
        Optional[PlaceCandidate]: The chosen candidate, or None to skip the item.
    """
    print(f"\nLine {item.line_number}: '{item.name}' matches several places:")
    for number, candidate in enumerate(item.candidates, start=1):
        print(f"  {number}) {candidate.name} - {candidate.formatted_address}")
    print("  0) skip this item")

    while True:
        answer = (await asyncio.to_thread(input, "Choose a place: ")).strip()
        if answer.isdigit() and 0 <= int(answer) <= len(item.candidates):
            break
        print(f"Please enter a number between 0 and {len(item.candidates)}")
    if answer == "0":
        return None
    return item.candidates[int(answer) - 1]


def log_progress(progress: SubmissionProgress):
    logger.info(
        f"Submitted chunk {progress.chunk_index}/{progress.chunk_count} "
        f"({progress.progress:.0f}%)"
    )


async def main():
    """
    Run the bulk add pipeline over an input text file.

    - Parses the input into items.
    - Resolves places, asking the operator when results are ambiguous.
    - Checks duplicates and submits in chunks.
    - Writes per-item results to the output CSV.
    """
    # Initialize logs
    logger.remove()  # Remove default handler
    logger.add(sys.stderr, level=LOG_LEVEL, format="<green>{time:HH:mm:ss}</green> | <level>{message}</level>")

    input_path = sys.argv[1] if len(sys.argv) > 1 else INPUT_TXT
    orchestrator = PipelineOrchestrator()
    try:
        summary = await orchestrator.run(
            load_input(input_path),
            choose=choose_candidate,
            on_progress=log_progress,
        )
        write_results_csv(orchestrator.items, OUTPUT_CSV)
        logger.info(format_summary(summary))
    except ParseError as e:
        logger.error(str(e))
    finally:
        # Cleanup: close client sessions to prevent unclosed connector warnings
        await PlacesClient().close()
        await GeographyClient().close()
        await CatalogClient().close()


if __name__ == "__main__":
    asyncio.run(main())
