"""
Pipeline orchestrator.

Per detection:
    1. Catalog search                 -> no results: NO_MATCH
    2. Attribute pre-filter           -> nothing kept: NO_MATCH
    3. AI filter (visual classification of every kept candidate)
    4. Consolidation (+ visual matching when several candidates pass)
    5. Persist the selection          -> SAVED, or NO_MATCH without one

State only moves forward:
    PENDING -> SEARCHING -> PRE_FILTERING -> AI_FILTERING -> (VISUAL_MATCHING)
            -> SAVED | NO_MATCH | ERROR
Search and persistence failures end the detection in ERROR; classification
problems only downgrade candidates.

Batches run many detections under a concurrency limit and stream progress
events, ending with a summary. One detection id never runs twice at once.
"""

import asyncio
from contextlib import nullcontext
from typing import AsyncIterator, Awaitable, Callable

from shelfmatch.catalog.client import CatalogSearchClient, SearchContext
from shelfmatch.db.store import ResultStore
from shelfmatch.errors import (
    ConcurrentRunRejected,
    ImageLoadError,
    NoCandidates,
    PersistenceFailed,
    SearchFailed,
)
from shelfmatch.logger import get_logger
from shelfmatch.matching.classifier import VisualClassifier
from shelfmatch.matching.consolidator import Consolidator
from shelfmatch.matching.models import Detection, ProcessingStage, ProcessingState
from shelfmatch.matching.prefilter import AttributeFilter
from shelfmatch.matching.retailers import retailer_from_store_name
from shelfmatch.pipeline.events import BatchEvent, CompleteEvent
from shelfmatch.pipeline.models import BatchRun, DetectionOutcome, StageError
from shelfmatch.services.imaging import CropLoader

logger = get_logger(__name__)

StageCallback = Callable[[Detection, ProcessingState, str], Awaitable[None]]

_FORWARD = [
    ProcessingState.PENDING,
    ProcessingState.SEARCHING,
    ProcessingState.PRE_FILTERING,
    ProcessingState.AI_FILTERING,
    ProcessingState.VISUAL_MATCHING,
]

# pipeline stage name reported for failures while in each state
_STEP = {
    ProcessingState.PENDING: "load",
    ProcessingState.SEARCHING: "search",
    ProcessingState.PRE_FILTERING: "pre_filter",
    ProcessingState.AI_FILTERING: "ai_filter",
    ProcessingState.VISUAL_MATCHING: "visual_match",
}


def check_transition(current: ProcessingState, new: ProcessingState) -> None:
    if current.is_terminal:
        raise ValueError(f"Cannot leave terminal state {current.value}")
    if not new.is_terminal and _FORWARD.index(new) <= _FORWARD.index(current):
        raise ValueError(f"Illegal transition {current.value} -> {new.value}")


class _Run:
    """One pipeline execution for one detection."""

    def __init__(self, detection: Detection, on_stage: StageCallback | None):
        self.detection = detection
        self.state = ProcessingState.PENDING
        self.step = "load"
        self.on_stage = on_stage
        self.found = 0
        self.kept = 0

    def outcome(self, **fields) -> DetectionOutcome:
        return DetectionOutcome(
            detection_id=self.detection.id,
            detection_index=self.detection.detection_index,
            candidates_found=self.found,
            candidates_pre_filtered=self.kept,
            **fields,
        )


class PipelineOrchestrator:
    def __init__(
        self,
        store: ResultStore,
        search_client: CatalogSearchClient | None = None,
        pre_filter: AttributeFilter | None = None,
        classifier: VisualClassifier | None = None,
        consolidator: Consolidator | None = None,
        crop_loader: CropLoader | None = None,
    ):
        self.store = store
        self.search_client = search_client or CatalogSearchClient()
        self.pre_filter = pre_filter or AttributeFilter()
        self.classifier = classifier or VisualClassifier()
        self.consolidator = consolidator or Consolidator()
        self.crop_loader = crop_loader or CropLoader()

        self._in_flight: set[str] = set()
        self._background: set[asyncio.Task] = set()
        self._active_batches = 0

    @property
    def in_flight(self) -> frozenset[str]:
        return frozenset(self._in_flight)

    async def run_detection(
        self, detection_id: str, on_stage: StageCallback | None = None
    ) -> DetectionOutcome:
        """
        Run the full pipeline for one detection.

        Raises ConcurrentRunRejected if the detection is already running.
        Every other failure is recorded in the returned outcome.
        """
        # No await between the check and the add: this is the per-detection lock.
        if detection_id in self._in_flight:
            raise ConcurrentRunRejected(detection_id)
        self._in_flight.add(detection_id)
        try:
            return await self._execute(detection_id, on_stage)
        finally:
            self._in_flight.discard(detection_id)

    async def run_batch(
        self,
        detection_ids: list[str],
        concurrency: int | None = None,
        skip_completed: bool = True,
    ) -> AsyncIterator[BatchEvent]:
        """
        Process detections concurrently, yielding progress events and then
        one CompleteEvent.

        `concurrency=None` runs everything at once. Duplicate ids are dropped;
        with `skip_completed`, detections already SAVED / NO_MATCH or flagged
        as not a product are left out of the batch.

        A consumer may stop iterating at any time. Detections already started
        keep running to their terminal state; queued ones are cancelled.
        """
        if concurrency is not None and concurrency < 1:
            raise ValueError("concurrency must be >= 1, or None for no limit")

        ids = list(dict.fromkeys(detection_ids))
        if skip_completed:
            ids = await self._eligible(ids)

        run = BatchRun(ids, concurrency)
        logger.info("batch_started", total=len(ids), concurrency=concurrency or "all")
        if not ids:
            await run.close_empty()

        limiter = asyncio.Semaphore(concurrency) if concurrency else None
        tasks: dict[str, asyncio.Task] = {}
        for position, detection_id in enumerate(ids):
            task = asyncio.create_task(self._run_in_batch(run, limiter, position, detection_id))
            tasks[detection_id] = task
            self._background.add(task)
            task.add_done_callback(self._background.discard)

        self._active_batches += 1
        try:
            while True:
                event = await run.events.get()
                yield event
                if isinstance(event, CompleteEvent):
                    logger.info(
                        "batch_complete",
                        success=event.success,
                        no_match=event.no_match,
                        errors=event.errors,
                        elapsed=event.elapsed_seconds,
                    )
                    return
        finally:
            queued = [
                t for did, t in tasks.items() if did not in run.started and not t.done()
            ]
            for task in queued:
                task.cancel()
            if queued:
                logger.info("batch_abandoned", cancelled=len(queued), running=len(self._in_flight))
            self._active_batches -= 1
            if not self._active_batches:
                # source photos are cached per batch
                self.crop_loader.clear()

    async def wait_idle(self) -> None:
        """Wait for detections still running from abandoned batches."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def _eligible(self, ids: list[str]) -> list[str]:
        eligible = []
        for detection_id in ids:
            try:
                detection = await self.store.get_detection(detection_id)
            except PersistenceFailed:
                # the run itself will report the failure
                eligible.append(detection_id)
                continue
            if detection is not None and (
                detection.state.is_complete or detection.is_product is False
            ):
                logger.debug("batch_skip", detection_id=detection_id, state=detection.state.value)
                continue
            eligible.append(detection_id)
        return eligible

    async def _run_in_batch(
        self,
        run: BatchRun,
        limiter: asyncio.Semaphore | None,
        position: int,
        detection_id: str,
    ) -> None:
        async with limiter or nullcontext():
            run.started.add(detection_id)

            async def on_stage(detection: Detection, state: ProcessingState, message: str):
                index = detection.detection_index
                await run.emit(position if index is None else index, detection_id, state, message)

            try:
                outcome = await self.run_detection(detection_id, on_stage=on_stage)
            except ConcurrentRunRejected as e:
                outcome = DetectionOutcome(
                    detection_id=detection_id,
                    state=ProcessingState.ERROR,
                    error=StageError(stage="schedule", message=str(e)),
                    message=str(e),
                )
            except Exception as e:
                logger.exception("batch_item_crashed", detection_id=detection_id)
                outcome = DetectionOutcome(
                    detection_id=detection_id,
                    state=ProcessingState.ERROR,
                    error=StageError(stage="unknown", message=str(e)),
                    message=f"Error: {e}",
                )

            index = outcome.detection_index
            await run.finish(
                position if index is None else index,
                detection_id,
                outcome.state,
                outcome.message,
            )

    async def _execute(self, detection_id: str, on_stage: StageCallback | None) -> DetectionOutcome:
        log = logger.bind(detection_id=detection_id)
        try:
            detection = await self.store.get_detection(detection_id)
        except PersistenceFailed as e:
            log.error("detection_load_failed", error=str(e))
            return DetectionOutcome(
                detection_id=detection_id,
                state=ProcessingState.ERROR,
                error=StageError(stage="load", message=str(e)),
                message=f"Error: {e}",
            )
        if detection is None:
            return DetectionOutcome(
                detection_id=detection_id,
                state=ProcessingState.ERROR,
                error=StageError(stage="load", message="Detection not found"),
                message="Error: Detection not found",
            )

        run = _Run(detection, on_stage)
        try:
            return await self._pipeline(run, log)
        except (SearchFailed, PersistenceFailed) as e:
            log.warning("detection_failed", step=e.stage or run.step, error=str(e))
            return await self._fail(run, e.stage or run.step, e, log)
        except Exception as e:
            log.exception("detection_crashed", step=run.step)
            return await self._fail(run, run.step, e, log)

    async def _pipeline(self, run: _Run, log) -> DetectionOutcome:
        detection = run.detection
        attributes = detection.attributes
        detection_id = detection.id

        # 1. search
        await self._advance(run, ProcessingState.SEARCHING, "Searching catalog...")
        brand = attributes.known("brand")
        if not brand:
            return await self._no_match(run, "No brand to search for", log)

        context = SearchContext(
            product_name=attributes.known("product_name"),
            flavor=attributes.known("flavor"),
            size=attributes.known("size"),
            retailer=retailer_from_store_name(detection.store_name),
        )
        candidates = await self.search_client.search(brand, context)
        run.found = len(candidates)
        await self.store.save_candidates(detection_id, ProcessingStage.SEARCH, candidates)
        if not candidates:
            return await self._no_match(run, str(NoCandidates()), log)

        # 2. pre-filter
        await self._advance(
            run, ProcessingState.PRE_FILTERING, f"Pre-filtering {len(candidates)} results..."
        )
        kept = self.pre_filter.pre_filter(candidates, attributes, detection.store_name)
        run.kept = len(kept)
        await self.store.save_candidates(detection_id, ProcessingStage.PRE_FILTER, kept)
        if not kept:
            return await self._no_match(run, "No matches after pre-filter", log)

        # 3. AI filter
        await self._advance(
            run, ProcessingState.AI_FILTERING, f"AI filtering {len(kept)} results..."
        )
        try:
            crop = await self.crop_loader.crop(detection)
        except ImageLoadError as e:
            log.warning("crop_unavailable", error=str(e))
            results = self.classifier.reject_all(kept, f"Crop unavailable: {e}")
        else:
            results = await self.classifier.ai_filter(crop, kept, attributes)
        await self.store.save_candidates(detection_id, ProcessingStage.AI_FILTER, results)

        # 4. consolidation
        consolidation = self.consolidator.consolidate(detection_id, results)
        if consolidation.used_visual_matching:
            await self._advance(
                run,
                ProcessingState.VISUAL_MATCHING,
                f"Visual matching {len(consolidation.visual_match_candidates)} candidates...",
            )
            await self.store.save_candidates(
                detection_id,
                ProcessingStage.VISUAL_MATCH,
                consolidation.visual_match_candidates,
            )
        if not consolidation.is_match:
            return await self._no_match(run, consolidation.reason, log)

        # 5. persist
        selection = consolidation.selection
        run.step = "save"
        await self.store.save_selection(selection)
        await self.store.set_state(detection_id, ProcessingState.SAVED)
        run.state = ProcessingState.SAVED
        log.info("detection_saved", gtin=selection.gtin, method=selection.method.value)
        return run.outcome(
            state=ProcessingState.SAVED,
            selection=selection,
            message=f"Saved {selection.product_name or selection.gtin} ({selection.gtin})",
        )

    async def _advance(self, run: _Run, state: ProcessingState, message: str) -> None:
        check_transition(run.state, state)
        run.step = _STEP[state]
        await self.store.set_state(run.detection.id, state)
        run.state = state
        if run.on_stage is not None:
            await run.on_stage(run.detection, state, message)

    async def _no_match(self, run: _Run, reason: str, log) -> DetectionOutcome:
        check_transition(run.state, ProcessingState.NO_MATCH)
        run.step = "save"
        await self.store.clear_selection(run.detection.id)
        await self.store.set_state(run.detection.id, ProcessingState.NO_MATCH)
        run.state = ProcessingState.NO_MATCH
        log.info("detection_no_match", reason=reason)
        return run.outcome(state=ProcessingState.NO_MATCH, message=reason)

    async def _fail(self, run: _Run, step: str, error: Exception, log) -> DetectionOutcome:
        message = str(error) or type(error).__name__
        try:
            await self.store.set_state(
                run.detection.id, ProcessingState.ERROR, error_stage=step, error_message=message
            )
        except PersistenceFailed as e:
            log.error("error_state_not_saved", error=str(e))
        run.state = ProcessingState.ERROR
        return run.outcome(
            state=ProcessingState.ERROR,
            error=StageError(
                stage=step, message=message, retryable=getattr(error, "retryable", False)
            ),
            message=f"Error: {message}",
        )
