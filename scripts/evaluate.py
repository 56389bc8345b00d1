"""
Check saved matches against expected GTINs.

Ground truth: JSON list of {"detection_id": ..., "expected_gtin": ... | null}
(null means no catalog match is expected). Saved matches for detections not
listed in the ground truth are reported separately.

Usage: python scripts/evaluate.py [ground_truth.json]   (default: <data_dir>/ground_truth.json)
"""

import asyncio
import json
import sys
from pathlib import Path

from shelfmatch.config.settings import settings
from shelfmatch.db.store import ResultStore, create_result_store


async def evaluate(ground_truth_path: Path, store: ResultStore | None = None) -> float:
    ground_truth = json.loads(ground_truth_path.read_text())
    store = store or create_result_store()

    print(f"\n{'='*50}")
    print(f" Evaluation: {len(ground_truth)} detections")
    print(f"{'='*50}\n")

    correct = 0
    for gt in ground_truth:
        expected = gt.get("expected_gtin")
        selection = await store.get_selection(gt["detection_id"])
        got = selection.gtin if selection else None
        match = expected == got
        correct += match
        method = f" via {selection.method.value}" if selection else ""
        print(f"Detection {gt['detection_id']}: expected {expected}, got {got}{method}")

    labeled = {gt["detection_id"] for gt in ground_truth}
    unlabeled = [s for s in await store.fetch_selections() if s.detection_id not in labeled]
    if unlabeled:
        print(f"\n  {len(unlabeled)} saved match(es) without ground truth:")
        for selection in unlabeled:
            print(f"    {selection.detection_id}: {selection.gtin} ({selection.product_name})")

    total = len(ground_truth)
    accuracy = correct / total if total else 0
    print(f"\n  Result: {correct}/{total} correct ({accuracy:.0%})\n")
    return accuracy


if __name__ == "__main__":
    path = Path(sys.argv[1]) if len(sys.argv) > 1 else Path(settings.data_dir) / "ground_truth.json"
    asyncio.run(evaluate(path))
