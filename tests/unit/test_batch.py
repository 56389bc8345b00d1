import asyncio
import json

import pytest

from fakes import FakeCropLoader, make_candidate, make_detection

from shelfmatch.db.connection import create_db_engine
from shelfmatch.db.store import SqlResultStore
from shelfmatch.matching.classifier import VisualClassifier
from shelfmatch.matching.consolidator import Consolidator
from shelfmatch.matching.models import ProcessingState
from shelfmatch.matching.prefilter import AttributeFilter
from shelfmatch.pipeline.events import CompleteEvent, ProgressEvent, format_sse
from shelfmatch.pipeline.orchestrator import PipelineOrchestrator

S = ProcessingState
TERMINAL = {S.SAVED, S.NO_MATCH, S.ERROR}


async def collect(stream):
    return [event async for event in stream]


def terminal_events(events):
    return [e for e in events if isinstance(e, ProgressEvent) and e.stage in TERMINAL]


async def add_many(add_detection, count):
    return [(await add_detection(f"det-{i}", detection_index=i)).id for i in range(count)]


class TestConcurrency:

    @pytest.mark.asyncio
    async def test_limit_is_respected(self, orchestrator, search_client, add_detection):
        ids = await add_many(add_detection, 10)
        search_client.delay = 0.02
        observed = []

        async def sample(brand):
            observed.append(len(orchestrator.in_flight))

        search_client.on_call = sample

        events = await collect(orchestrator.run_batch(ids, concurrency=3))

        assert max(observed) <= 3
        assert search_client.max_active <= 3
        assert search_client.max_active >= 2
        assert events[-1].processed == 10

    @pytest.mark.asyncio
    async def test_unbounded_runs_everything_at_once(self, orchestrator, search_client, add_detection):
        ids = await add_many(add_detection, 6)
        search_client.delay = 0.05

        await collect(orchestrator.run_batch(ids, concurrency=None))

        assert search_client.max_active == 6

    @pytest.mark.asyncio
    async def test_invalid_concurrency(self, orchestrator):
        with pytest.raises(ValueError):
            await collect(orchestrator.run_batch(["det-0"], concurrency=0))


class TestBatchOutcome:

    @pytest.mark.asyncio
    async def test_slow_classification_only_affects_its_detection(self, store, search_client, llm, add_detection):
        orchestrator = PipelineOrchestrator(
            store,
            search_client=search_client,
            pre_filter=AttributeFilter(threshold=0.85),
            classifier=VisualClassifier(llm_client=llm, confidence_threshold=0.7, timeout=0.05),
            consolidator=Consolidator(promote_lone_almost_same=True),
            crop_loader=FakeCropLoader(),
        )
        ids = await add_many(add_detection, 10)
        search_client.results["Acme Cola"] = [make_candidate("A", brand="Acme Cola")]
        llm.set("A", "identical", 0.95)
        llm.slow_crops.add("data:image/jpeg;base64,det-7")

        events = await collect(orchestrator.run_batch(ids, concurrency=3))

        summary = events[-1]
        assert isinstance(summary, CompleteEvent)
        assert (summary.success, summary.no_match, summary.errors) == (9, 1, 0)
        assert summary.processed == summary.total == 10
        assert (await store.get_detection("det-7")).state == S.NO_MATCH
        assert await store.get_selection("det-7") is None
        assert (await store.get_selection("det-3")).gtin == "A"

    @pytest.mark.asyncio
    async def test_counters_are_exact_and_monotonic(self, orchestrator, search_client, llm, add_detection):
        ids = await add_many(add_detection, 6)
        search_client.results["Acme Cola"] = [make_candidate("A", brand="Acme Cola")]
        llm.set("A", "identical", 0.95)
        await add_detection("broken", brand="Broken Brand", detection_index=99)
        search_client.errors["Broken Brand"] = RuntimeError("catalog down")

        events = await collect(orchestrator.run_batch([*ids, "broken"], concurrency=2))

        complete = [e for e in events if isinstance(e, CompleteEvent)]
        assert len(complete) == 1
        assert events[-1] is complete[0]
        assert (complete[0].success, complete[0].no_match, complete[0].errors) == (6, 0, 1)

        progress = [e for e in events if isinstance(e, ProgressEvent)]
        processed = [e.processed for e in progress]
        assert processed == sorted(processed)
        assert all(e.success + e.no_match + e.errors == e.processed for e in progress)
        assert all(e.total == 7 for e in progress)
        assert len(terminal_events(events)) == 7
        assert {e.detection_id for e in terminal_events(events)} == {*ids, "broken"}

    @pytest.mark.asyncio
    async def test_progress_events_carry_detection_index(self, orchestrator, add_detection):
        ids = await add_many(add_detection, 3)

        events = await collect(orchestrator.run_batch(ids, concurrency=1))

        indexes = {e.detection_id: e.detection_index for e in terminal_events(events)}
        assert indexes == {"det-0": 0, "det-1": 1, "det-2": 2}

    @pytest.mark.asyncio
    async def test_duplicates_are_processed_once(self, orchestrator, search_client, add_detection):
        await add_many(add_detection, 2)

        events = await collect(orchestrator.run_batch(["det-0", "det-0", "det-1"], concurrency=2))

        assert events[-1].total == 2
        assert search_client.calls.count("Acme Cola") == 2

    @pytest.mark.asyncio
    async def test_empty_batch_completes(self, orchestrator):
        events = await collect(orchestrator.run_batch([], concurrency=3))

        assert len(events) == 1
        assert events[0].total == 0
        assert events[0].processed == 0

    @pytest.mark.asyncio
    async def test_completed_detections_are_skipped(self, orchestrator, store, search_client, add_detection):
        await add_detection("done", state=S.SAVED)
        await add_detection("not-product", is_product=False)
        await add_detection("retry", state=S.ERROR)

        events = await collect(orchestrator.run_batch(["done", "not-product", "retry"]))

        assert events[-1].total == 1
        assert search_client.calls == ["Acme Cola"]
        assert (await store.get_detection("done")).state == S.SAVED

    @pytest.mark.asyncio
    async def test_completed_detections_can_be_forced(self, orchestrator, search_client, add_detection):
        await add_detection("done", state=S.SAVED)

        events = await collect(orchestrator.run_batch(["done"], skip_completed=False))

        assert events[-1].total == 1
        assert events[-1].no_match == 1

    @pytest.mark.asyncio
    async def test_missing_detection_is_counted_as_error(self, orchestrator):
        events = await collect(orchestrator.run_batch(["ghost"]))

        assert events[-1].errors == 1


class TestInterleaving:

    @pytest.mark.asyncio
    async def test_detection_running_elsewhere_is_rejected(self, orchestrator, store, search_client, add_detection):
        await add_detection("det-1")
        await add_detection("det-2")
        release = asyncio.Event()

        async def block(brand):
            if len(search_client.calls) == 1:
                await release.wait()

        search_client.on_call = block
        single = asyncio.create_task(orchestrator.run_detection("det-1"))
        while not search_client.calls:
            await asyncio.sleep(0)

        events = await collect(orchestrator.run_batch(["det-1", "det-2"], concurrency=2))
        release.set()
        await single

        summary = events[-1]
        assert summary.errors == 1
        assert summary.no_match == 1
        rejected = [e for e in terminal_events(events) if e.detection_id == "det-1"]
        assert rejected[0].stage == S.ERROR
        assert store.states("det-1") == [S.SEARCHING, S.NO_MATCH]

    @pytest.mark.asyncio
    async def test_abandoned_stream_finishes_started_work(self, orchestrator, store, search_client, llm, add_detection):
        ids = await add_many(add_detection, 3)
        search_client.results["Acme Cola"] = [make_candidate("A", brand="Acme Cola")]
        search_client.delay = 0.02
        llm.set("A", "identical", 0.95)

        stream = orchestrator.run_batch(ids, concurrency=1)
        first = await stream.__anext__()
        await stream.aclose()
        await orchestrator.wait_idle()

        assert first.detection_id == "det-0"
        assert (await store.get_detection("det-0")).state == S.SAVED
        assert (await store.get_selection("det-0")).gtin == "A"
        assert (await store.get_detection("det-1")).state == S.PENDING
        assert (await store.get_detection("det-2")).state == S.PENDING
        assert orchestrator.in_flight == frozenset()


class TestEvents:

    def test_sse_frame_uses_camel_case(self):
        event = ProgressEvent(
            detection_index=4,
            detection_id="det-4",
            stage=S.AI_FILTERING,
            message="AI filtering 2 results...",
            success=1,
            no_match=0,
            errors=0,
            processed=1,
            total=5,
        )

        frame = format_sse(event)

        assert frame.startswith("data: ")
        assert frame.endswith("\n\n")
        payload = json.loads(frame[len("data: "):])
        assert payload["type"] == "progress"
        assert payload["detectionIndex"] == 4
        assert payload["noMatch"] == 0
        assert payload["stage"] == "AI_FILTERING"

    def test_complete_payload(self):
        payload = CompleteEvent(
            success=9, no_match=1, errors=0, processed=10, total=10, elapsed_seconds=1.5
        ).to_payload()

        assert payload["type"] == "complete"
        assert payload["elapsedSeconds"] == 1.5


class TestSourceCacheScope:

    @pytest.mark.asyncio
    async def test_photo_cache_is_cleared_when_batch_ends(self, orchestrator, add_detection):
        ids = await add_many(add_detection, 3)

        await collect(orchestrator.run_batch(ids, concurrency=2))

        assert orchestrator.crop_loader.clears == 1

    @pytest.mark.asyncio
    async def test_overlapping_batches_clear_once_the_last_ends(self, orchestrator, search_client, add_detection):
        await add_many(add_detection, 4)
        search_client.delay = 0.02

        first = orchestrator.run_batch(["det-0", "det-1"], concurrency=1)
        second = orchestrator.run_batch(["det-2", "det-3"], concurrency=1)
        await asyncio.gather(collect(first), collect(second))

        assert orchestrator.crop_loader.clears == 1


class TestSqlBackedBatch:

    @pytest.mark.asyncio
    async def test_batch_on_file_database(self, tmp_path, search_client, classifier, llm):
        store = SqlResultStore(create_db_engine(f"sqlite:///{tmp_path / 'results.db'}"))
        orchestrator = PipelineOrchestrator(
            store,
            search_client=search_client,
            pre_filter=AttributeFilter(threshold=0.85),
            classifier=classifier,
            consolidator=Consolidator(promote_lone_almost_same=True),
            crop_loader=FakeCropLoader(),
        )
        ids = []
        for i in range(20):
            detection = make_detection(f"det-{i}", detection_index=i)
            await store.add_detection(detection)
            ids.append(detection.id)
        search_client.results["Acme Cola"] = [make_candidate("A", brand="Acme Cola")]
        llm.set("A", "identical", 0.95)

        events = await collect(orchestrator.run_batch(ids, concurrency=5))

        summary = events[-1]
        assert (summary.success, summary.no_match, summary.errors) == (20, 0, 0)
        for detection_id in ids:
            assert (await store.get_detection(detection_id)).state == S.SAVED

        events = await collect(orchestrator.run_batch(ids, concurrency=5, skip_completed=False))

        assert events[-1].success == 20
        selections = await store.fetch_selections()
        assert len(selections) == 20
        assert {s.detection_id for s in selections} == set(ids)
