"""Pipeline run models: per-detection outcomes and the batch aggregate."""

import asyncio
import time
from dataclasses import dataclass

from pydantic import BaseModel

from shelfmatch.matching.models import ProcessingState, SelectionRecord
from shelfmatch.pipeline.events import CompleteEvent, ProgressEvent


class StageError(BaseModel):
    stage: str
    message: str
    retryable: bool = False


class DetectionOutcome(BaseModel):
    """Terminal result of one detection's pipeline run."""

    detection_id: str
    detection_index: int | None = None
    state: ProcessingState
    selection: SelectionRecord | None = None
    error: StageError | None = None
    candidates_found: int = 0
    candidates_pre_filtered: int = 0
    message: str = ""


@dataclass
class BatchCounters:
    total: int
    success: int = 0
    no_match: int = 0
    errors: int = 0

    @property
    def processed(self) -> int:
        return self.success + self.no_match + self.errors

    def record(self, state: ProcessingState) -> None:
        if state == ProcessingState.SAVED:
            self.success += 1
        elif state == ProcessingState.NO_MATCH:
            self.no_match += 1
        else:
            self.errors += 1


class BatchRun:
    """
    Live state of one batch invocation. Not persisted.

    Counters and the event queue are only touched under `_lock`, so a count
    change and the event reporting it are emitted together and in order.
    The complete event is queued by whichever task records the last outcome.
    """

    def __init__(self, detection_ids: list[str], concurrency: int | None):
        self.detection_ids = detection_ids
        self.concurrency = concurrency
        self.counters = BatchCounters(total=len(detection_ids))
        self.events: asyncio.Queue = asyncio.Queue()
        self.started: set[str] = set()
        self.started_at = time.monotonic()
        self._lock = asyncio.Lock()

    @property
    def done(self) -> bool:
        return self.counters.processed >= self.counters.total

    async def emit(
        self, detection_index: int, detection_id: str, stage: ProcessingState, message: str
    ) -> None:
        async with self._lock:
            self.events.put_nowait(self._progress(detection_index, detection_id, stage, message))

    async def finish(
        self, detection_index: int, detection_id: str, state: ProcessingState, message: str
    ) -> None:
        async with self._lock:
            self.counters.record(state)
            self.events.put_nowait(self._progress(detection_index, detection_id, state, message))
            if self.done:
                self.events.put_nowait(self.summary())

    async def close_empty(self) -> None:
        async with self._lock:
            self.events.put_nowait(self.summary())

    def summary(self) -> CompleteEvent:
        c = self.counters
        return CompleteEvent(
            success=c.success,
            no_match=c.no_match,
            errors=c.errors,
            processed=c.processed,
            total=c.total,
            elapsed_seconds=round(time.monotonic() - self.started_at, 3),
        )

    def _progress(
        self, detection_index: int, detection_id: str, stage: ProcessingState, message: str
    ) -> ProgressEvent:
        c = self.counters
        return ProgressEvent(
            detection_index=detection_index,
            detection_id=detection_id,
            stage=stage,
            message=message,
            success=c.success,
            no_match=c.no_match,
            errors=c.errors,
            processed=c.processed,
            total=c.total,
        )
