import json

import pytest

from fakes import make_detection

from scripts.evaluate import evaluate
from shelfmatch.db.store import InMemoryResultStore
from shelfmatch.matching.models import SelectionMethod, SelectionRecord


async def save(store, detection_id, gtin):
    await store.add_detection(make_detection(detection_id))
    await store.save_selection(
        SelectionRecord(
            detection_id=detection_id,
            gtin=gtin,
            product_name=f"Acme Cola {gtin}",
            method=SelectionMethod.AI_FILTER,
        )
    )


@pytest.fixture
def ground_truth(tmp_path):
    path = tmp_path / "ground_truth.json"
    path.write_text(
        json.dumps(
            [
                {"detection_id": "det-1", "expected_gtin": "A"},
                {"detection_id": "det-2", "expected_gtin": "B"},
                {"detection_id": "det-3", "expected_gtin": None},
            ]
        )
    )
    return path


class TestEvaluate:

    @pytest.mark.asyncio
    async def test_accuracy(self, ground_truth):
        store = InMemoryResultStore()
        await save(store, "det-1", "A")
        await save(store, "det-2", "C")
        await store.add_detection(make_detection("det-3"))

        accuracy = await evaluate(ground_truth, store)

        assert accuracy == pytest.approx(2 / 3)

    @pytest.mark.asyncio
    async def test_reports_matches_without_ground_truth(self, ground_truth, capsys):
        store = InMemoryResultStore()
        await save(store, "det-1", "A")
        await save(store, "extra-1", "X")

        await evaluate(ground_truth, store)

        out = capsys.readouterr().out
        assert "1 saved match(es) without ground truth" in out
        assert "extra-1: X (Acme Cola X)" in out

    @pytest.mark.asyncio
    async def test_no_report_when_everything_is_labeled(self, ground_truth, capsys):
        store = InMemoryResultStore()
        await save(store, "det-1", "A")

        await evaluate(ground_truth, store)

        assert "without ground truth" not in capsys.readouterr().out
