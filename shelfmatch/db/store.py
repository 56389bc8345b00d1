"""
Result store used by the pipeline, with two adapters:

- InMemoryResultStore: process-local dictionaries (tests, dry runs)
- SqlResultStore: SQLAlchemy repositories, run in worker threads

Configured via DATABASE_URL in settings ("memory://" selects the in-memory store).
Both implement the same async interface; every call is a suspension point.
"""

import abc
import asyncio
import threading
from typing import Callable, TypeVar

from sqlalchemy import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from shelfmatch.config.settings import settings
from shelfmatch.db.connection import create_db_engine, get_session, init_schema
from shelfmatch.db.repository import (
    CandidateRepository,
    DetectionRepository,
    SelectionRepository,
)
from shelfmatch.errors import PersistenceFailed
from shelfmatch.logger import get_logger
from shelfmatch.matching.models import (
    Candidate,
    Detection,
    ProcessingStage,
    ProcessingState,
    SelectionRecord,
)

logger = get_logger(__name__)

R = TypeVar("R")


class ResultStore(abc.ABC):
    """Interface that any store implements."""

    @abc.abstractmethod
    async def add_detection(self, detection: Detection) -> None: ...

    @abc.abstractmethod
    async def get_detection(self, detection_id: str) -> Detection | None: ...

    @abc.abstractmethod
    async def list_pending(self, limit: int | None = None) -> list[str]: ...

    @abc.abstractmethod
    async def set_state(
        self,
        detection_id: str,
        state: ProcessingState,
        error_stage: str | None = None,
        error_message: str | None = None,
    ) -> None: ...

    @abc.abstractmethod
    async def save_candidates(
        self, detection_id: str, stage: ProcessingStage, candidates: list[Candidate]
    ) -> None: ...

    @abc.abstractmethod
    async def get_candidates(
        self, detection_id: str, stage: ProcessingStage | None = None
    ) -> list[Candidate]: ...

    @abc.abstractmethod
    async def save_selection(self, record: SelectionRecord) -> None:
        """Write the selection, replacing any existing one for the detection."""

    @abc.abstractmethod
    async def clear_selection(self, detection_id: str) -> None: ...

    @abc.abstractmethod
    async def get_selection(self, detection_id: str) -> SelectionRecord | None: ...

    @abc.abstractmethod
    async def fetch_selections(self) -> list[SelectionRecord]:
        """All selections, most recent first."""


class InMemoryResultStore(ResultStore):
    def __init__(self):
        self.detections: dict[str, Detection] = {}
        self.candidates: dict[tuple[str, ProcessingStage], list[Candidate]] = {}
        self.selections: dict[str, SelectionRecord] = {}

    async def add_detection(self, detection: Detection) -> None:
        self.detections[detection.id] = detection

    async def get_detection(self, detection_id: str) -> Detection | None:
        return self.detections.get(detection_id)

    async def list_pending(self, limit: int | None = None) -> list[str]:
        pending = [
            d.id
            for d in self.detections.values()
            if not d.state.is_complete and d.is_product is not False and d.attributes.brand
        ]
        return pending[:limit] if limit else pending

    async def set_state(
        self,
        detection_id: str,
        state: ProcessingState,
        error_stage: str | None = None,
        error_message: str | None = None,
    ) -> None:
        detection = self.detections.get(detection_id)
        if detection is None:
            raise PersistenceFailed(f"Unknown detection {detection_id}")
        self.detections[detection_id] = detection.model_copy(
            update={"state": state, "error_stage": error_stage, "error_message": error_message}
        )

    async def save_candidates(
        self, detection_id: str, stage: ProcessingStage, candidates: list[Candidate]
    ) -> None:
        self.candidates[(detection_id, stage)] = list(candidates)

    async def get_candidates(
        self, detection_id: str, stage: ProcessingStage | None = None
    ) -> list[Candidate]:
        if stage is not None:
            return list(self.candidates.get((detection_id, stage), []))
        return [
            c
            for (did, _), stored in sorted(
                self.candidates.items(), key=lambda item: item[0][1].rank
            )
            if did == detection_id
            for c in stored
        ]

    async def save_selection(self, record: SelectionRecord) -> None:
        self.selections[record.detection_id] = record

    async def clear_selection(self, detection_id: str) -> None:
        self.selections.pop(detection_id, None)

    async def get_selection(self, detection_id: str) -> SelectionRecord | None:
        return self.selections.get(detection_id)

    async def fetch_selections(self) -> list[SelectionRecord]:
        return sorted(self.selections.values(), key=lambda r: r.selected_at, reverse=True)


class SqlResultStore(ResultStore):
    """
    SQL-backed store. Each call runs one session in a worker thread so the
    event loop is never blocked; SQLAlchemy errors surface as PersistenceFailed.
    """

    def __init__(self, engine: Engine | None = None, create_schema: bool = True):
        self.engine = engine or create_db_engine()
        self.session_factory = sessionmaker(bind=self.engine, autocommit=False, autoflush=False)
        # SQLite allows one writer; serialize instead of hitting "database is locked".
        self._lock = threading.Lock() if self.engine.dialect.name == "sqlite" else None
        if create_schema:
            init_schema(self.engine)

    async def _run(self, operation: str, fn: Callable[[Session], R]) -> R:
        return await asyncio.to_thread(self._run_sync, operation, fn)

    def _run_sync(self, operation: str, fn: Callable[[Session], R]) -> R:
        try:
            if self._lock is None:
                with get_session(self.session_factory) as session:
                    return fn(session)
            with self._lock, get_session(self.session_factory) as session:
                return fn(session)
        except SQLAlchemyError as e:
            logger.error("persistence_failed", operation=operation, error=str(e))
            raise PersistenceFailed(f"{operation} failed: {e}") from e

    async def add_detection(self, detection: Detection) -> None:
        await self._run("add_detection", lambda s: DetectionRepository(s).upsert(detection))

    async def get_detection(self, detection_id: str) -> Detection | None:
        return await self._run("get_detection", lambda s: DetectionRepository(s).get(detection_id))

    async def list_pending(self, limit: int | None = None) -> list[str]:
        return await self._run("list_pending", lambda s: DetectionRepository(s).list_pending(limit))

    async def set_state(
        self,
        detection_id: str,
        state: ProcessingState,
        error_stage: str | None = None,
        error_message: str | None = None,
    ) -> None:
        updated = await self._run(
            "set_state",
            lambda s: DetectionRepository(s).set_state(
                detection_id, state, error_stage, error_message
            ),
        )
        if not updated:
            raise PersistenceFailed(f"Unknown detection {detection_id}")

    async def save_candidates(
        self, detection_id: str, stage: ProcessingStage, candidates: list[Candidate]
    ) -> None:
        await self._run(
            "save_candidates",
            lambda s: CandidateRepository(s).replace_stage(detection_id, stage, candidates),
        )

    async def get_candidates(
        self, detection_id: str, stage: ProcessingStage | None = None
    ) -> list[Candidate]:
        return await self._run(
            "get_candidates", lambda s: CandidateRepository(s).fetch(detection_id, stage)
        )

    async def save_selection(self, record: SelectionRecord) -> None:
        await self._run("save_selection", lambda s: SelectionRepository(s).save(record))

    async def clear_selection(self, detection_id: str) -> None:
        await self._run("clear_selection", lambda s: SelectionRepository(s).delete(detection_id))

    async def get_selection(self, detection_id: str) -> SelectionRecord | None:
        return await self._run("get_selection", lambda s: SelectionRepository(s).get(detection_id))

    async def fetch_selections(self) -> list[SelectionRecord]:
        return await self._run("fetch_selections", lambda s: SelectionRepository(s).fetch_all())


def create_result_store(database_url: str | None = None) -> ResultStore:
    """Return the configured store."""
    url = database_url or settings.database_url

    if url.startswith("memory://"):
        return InMemoryResultStore()
    return SqlResultStore(create_db_engine(url))
