"""Database session management and schema initialization."""

from contextlib import contextmanager
from typing import Generator

from sqlalchemy import Engine, create_engine, text
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool

from shelfmatch.config.settings import settings
from shelfmatch.logger import get_logger


logger = get_logger(__name__)


def create_db_engine(database_url: str | None = None) -> Engine:
    """
    Engine for the configured database.

    SQLite connections are shared across the worker threads the async store
    uses; in-memory SQLite keeps a single connection so the data survives.
    """
    url = database_url or settings.database_url
    if url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in url or url == "sqlite://":
            kwargs["poolclass"] = StaticPool
        return create_engine(url, **kwargs)
    return create_engine(url, pool_pre_ping=True, pool_size=5)


engine = create_db_engine()
SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)


@contextmanager
def get_session(factory: sessionmaker | None = None) -> Generator[Session, None, None]:
    """
    Context manager for database sessions.

    :return: Database session generator
    """
    session = (factory or SessionLocal)()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS detections (
        id TEXT PRIMARY KEY,
        image_id TEXT,
        detection_index INTEGER,
        brand TEXT,
        product_name TEXT,
        size TEXT,
        category TEXT,
        flavor TEXT,
        confidences TEXT,
        is_product BOOLEAN,
        store_name TEXT,
        image_ref TEXT,
        bbox_x0 FLOAT,
        bbox_y0 FLOAT,
        bbox_x1 FLOAT,
        bbox_y1 FLOAT,
        state TEXT NOT NULL DEFAULT 'PENDING',
        error_stage TEXT,
        error_message TEXT,
        updated_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS candidates (
        detection_id TEXT NOT NULL REFERENCES detections(id),
        stage TEXT NOT NULL,
        position INTEGER NOT NULL,
        gtin TEXT NOT NULL,
        match_status TEXT,
        confidence FLOAT,
        similarity_score FLOAT,
        payload TEXT NOT NULL,
        PRIMARY KEY (detection_id, stage, position)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS selections (
        detection_id TEXT PRIMARY KEY REFERENCES detections(id),
        gtin TEXT NOT NULL,
        product_name TEXT,
        brand_name TEXT,
        method TEXT NOT NULL,
        confidence FLOAT,
        consolidation_applied BOOLEAN NOT NULL DEFAULT FALSE,
        payload TEXT NOT NULL,
        selected_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_detections_state ON detections (state)",
]


def init_schema(bind: Engine | None = None) -> None:
    """
    Create tables.

    The primary key on selections.detection_id is what keeps a single
    active selection per detection.
    """
    with (bind or engine).begin() as conn:
        for statement in SCHEMA:
            conn.execute(text(statement))

    logger.info("schema_initialized")


def check_connection(factory: sessionmaker | None = None) -> bool:
    try:
        with get_session(factory) as session:
            session.execute(text("SELECT 1"))
        logger.info("database_ok")
        return True
    except Exception as e:
        logger.error("database_failed", error=str(e))
        return False
