"""
Shelf product matching pipeline.

Usage:
    python main.py --import-csv data/detections.csv          # Load detections from the extraction export
    python main.py --pending --concurrency 5                 # Match every detection without a final match
    python main.py --detections d-1 d-2 --concurrency all    # Match specific detections
    python scripts/evaluate.py                               # Compare saved GTINs with ground truth
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path

from shelfmatch.config.settings import settings
from shelfmatch.logger import setup_logging, get_logger
from shelfmatch.db.connection import check_connection
from shelfmatch.db.store import ResultStore, SqlResultStore, create_result_store
from shelfmatch.ingestion.pipeline import IngestionPipeline
from shelfmatch.pipeline.events import CompleteEvent, ProgressEvent
from shelfmatch.pipeline.orchestrator import PipelineOrchestrator

setup_logging(settings.log_level)
logger = get_logger("main")


def parse_concurrency(value: str) -> int | None:
    if value.lower() == "all":
        return None
    number = int(value)
    if number < 1:
        raise argparse.ArgumentTypeError("concurrency must be >= 1 or 'all'")
    return number


def print_event(event: ProgressEvent | CompleteEvent) -> None:
    if isinstance(event, ProgressEvent):
        print(
            f"  [{event.processed}/{event.total}] #{event.detection_index} "
            f"{event.stage.value:<15} {event.message}"
        )
        return

    print(f"\n{'='*70}")
    print(
        f" Done in {event.elapsed_seconds:.1f}s: {event.success} saved, "
        f"{event.no_match} no match, {event.errors} errors (of {event.total})"
    )
    print(f"{'='*70}\n")


async def run_batch(
    store: ResultStore, detection_ids: list[str], concurrency: int | None
) -> CompleteEvent | None:
    orchestrator = PipelineOrchestrator(store)

    print(f"\n{'='*70}")
    print(f" Matching {len(detection_ids)} detections (concurrency: {concurrency or 'all'})")
    print(f"{'='*70}\n")

    summary = None
    try:
        async for event in orchestrator.run_batch(detection_ids, concurrency=concurrency):
            print_event(event)
            if isinstance(event, CompleteEvent):
                summary = event
    finally:
        await orchestrator.search_client.aclose()
        await orchestrator.crop_loader.aclose()

    if summary is not None:
        output_path = Path(settings.output_dir) / "batch_summary.json"
        output_path.parent.mkdir(parents=True, exist_ok=True)
        with open(output_path, "w") as f:
            json.dump(summary.to_payload(), f, indent=2)
        logger.info("summary_saved", path=str(output_path))
    return summary


async def amain(args: argparse.Namespace) -> int:
    store = create_result_store()
    if isinstance(store, SqlResultStore) and not check_connection(store.session_factory):
        print("\n  Database not reachable. Check DATABASE_URL in .env\n")
        return 1

    if args.import_csv:
        added = await IngestionPipeline(store).ingest_csv(args.import_csv)
        logger.info("ready", added=added)

    detection_ids = list(args.detections or [])
    if args.pending:
        detection_ids.extend(await store.list_pending(limit=args.limit))

    if not detection_ids:
        if not args.import_csv:
            print("\n  No detections to process.\n")
        return 0

    summary = await run_batch(store, detection_ids, args.concurrency)
    return 0 if summary is not None else 1


# CLI
def main():
    parser = argparse.ArgumentParser(description="Shelf product matching pipeline")
    parser.add_argument("--import-csv", type=Path, help="Detections CSV from attribute extraction")
    parser.add_argument("--detections", nargs="*", help="Detection ids to match")
    parser.add_argument("--pending", action="store_true", help="Match all detections without a final match")
    parser.add_argument("--limit", type=int, default=None)
    parser.add_argument(
        "--concurrency",
        type=parse_concurrency,
        default=settings.default_concurrency,
        help="Detections processed at once, or 'all'",
    )
    args = parser.parse_args()

    sys.exit(asyncio.run(amain(args)))


if __name__ == "__main__":
    main()
