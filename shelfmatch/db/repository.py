"""Repository layer: all SQL operations isolated here"""

from datetime import datetime, timezone

from sqlalchemy import text
from sqlalchemy.orm import Session

from shelfmatch.db.models import DetectionRow
from shelfmatch.logger import get_logger
from shelfmatch.matching.models import (
    Candidate,
    Detection,
    ProcessingStage,
    ProcessingState,
    SelectionRecord,
)

logger = get_logger(__name__)

DETECTION_COLUMNS = list(DetectionRow.model_fields)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class DetectionRepository:
    """
    Repository for detections and their processing state.
    """

    def __init__(self, session: Session):
        self.session = session

    def upsert(self, detection: Detection) -> None:
        row = DetectionRow.from_detection(detection).model_dump()
        row["updated_at"] = _now()
        columns = [*DETECTION_COLUMNS, "updated_at"]
        updates = ", ".join(f"{c} = excluded.{c}" for c in columns if c != "id")
        self.session.execute(
            text(
                f"INSERT INTO detections ({', '.join(columns)}) "
                f"VALUES ({', '.join(':' + c for c in columns)}) "
                f"ON CONFLICT (id) DO UPDATE SET {updates}"
            ),
            row,
        )

    def get(self, detection_id: str) -> Detection | None:
        result = self.session.execute(
            text(f"SELECT {', '.join(DETECTION_COLUMNS)} FROM detections WHERE id = :id"),
            {"id": detection_id},
        )
        row = result.mappings().first()
        return DetectionRow.model_validate(dict(row)).to_detection() if row else None

    def list_pending(self, limit: int | None = None) -> list[str]:
        """Detections without a finished outcome, in photo/detection order."""
        query = (
            "SELECT id FROM detections "
            "WHERE state NOT IN ('SAVED', 'NO_MATCH') "
            "AND (is_product IS NULL OR is_product = :true) "
            "AND brand IS NOT NULL "
            "ORDER BY image_id, detection_index, id"
        )
        params: dict = {"true": True}
        if limit:
            query += " LIMIT :limit"
            params["limit"] = limit
        return [r.id for r in self.session.execute(text(query), params).fetchall()]

    def set_state(
        self,
        detection_id: str,
        state: ProcessingState,
        error_stage: str | None = None,
        error_message: str | None = None,
    ) -> int:
        result = self.session.execute(
            text(
                "UPDATE detections SET state = :state, error_stage = :error_stage, "
                "error_message = :error_message, updated_at = :updated_at WHERE id = :id"
            ),
            {
                "id": detection_id,
                "state": state.value,
                "error_stage": error_stage,
                "error_message": error_message,
                "updated_at": _now(),
            },
        )
        return result.rowcount


class CandidateRepository:
    def __init__(self, session: Session):
        self.session = session

    def replace_stage(
        self, detection_id: str, stage: ProcessingStage, candidates: list[Candidate]
    ) -> int:
        """Store the candidate set of one stage, replacing that stage's previous set."""
        self.session.execute(
            text("DELETE FROM candidates WHERE detection_id = :detection_id AND stage = :stage"),
            {"detection_id": detection_id, "stage": stage.value},
        )
        for position, candidate in enumerate(candidates):
            self.session.execute(
                text(
                    "INSERT INTO candidates "
                    "(detection_id, stage, position, gtin, match_status, confidence, "
                    "similarity_score, payload) "
                    "VALUES (:detection_id, :stage, :position, :gtin, :match_status, "
                    ":confidence, :similarity_score, :payload)"
                ),
                {
                    "detection_id": detection_id,
                    "stage": stage.value,
                    "position": position,
                    "gtin": candidate.gtin,
                    "match_status": candidate.match_status.value if candidate.match_status else None,
                    "confidence": candidate.confidence,
                    "similarity_score": candidate.similarity_score,
                    "payload": candidate.model_dump_json(),
                },
            )
        self.session.flush()
        logger.debug("candidates_saved", detection_id=detection_id, stage=stage.value, count=len(candidates))
        return len(candidates)

    def fetch(self, detection_id: str, stage: ProcessingStage | None = None) -> list[Candidate]:
        query = "SELECT payload FROM candidates WHERE detection_id = :detection_id"
        params = {"detection_id": detection_id}
        if stage is not None:
            query += " AND stage = :stage"
            params["stage"] = stage.value
        query += (
            " ORDER BY CASE stage WHEN 'search' THEN 0 WHEN 'pre_filter' THEN 1 "
            "WHEN 'ai_filter' THEN 2 ELSE 3 END, position"
        )
        result = self.session.execute(text(query), params)
        return [Candidate.model_validate_json(r.payload) for r in result.fetchall()]


class SelectionRepository:
    def __init__(self, session: Session):
        self.session = session

    def save(self, record: SelectionRecord) -> None:
        """Write or replace the selection for a detection."""
        self.session.execute(
            text(
                "INSERT INTO selections "
                "(detection_id, gtin, product_name, brand_name, method, confidence, "
                "consolidation_applied, payload, selected_at) "
                "VALUES (:detection_id, :gtin, :product_name, :brand_name, :method, "
                ":confidence, :consolidation_applied, :payload, :selected_at) "
                "ON CONFLICT (detection_id) DO UPDATE SET "
                "gtin = excluded.gtin, product_name = excluded.product_name, "
                "brand_name = excluded.brand_name, method = excluded.method, "
                "confidence = excluded.confidence, "
                "consolidation_applied = excluded.consolidation_applied, "
                "payload = excluded.payload, selected_at = excluded.selected_at"
            ),
            {
                "detection_id": record.detection_id,
                "gtin": record.gtin,
                "product_name": record.product_name,
                "brand_name": record.brand_name,
                "method": record.method.value,
                "confidence": record.confidence,
                "consolidation_applied": record.consolidation_applied,
                "payload": record.model_dump_json(),
                "selected_at": record.selected_at.isoformat(),
            },
        )

    def delete(self, detection_id: str) -> None:
        self.session.execute(
            text("DELETE FROM selections WHERE detection_id = :detection_id"),
            {"detection_id": detection_id},
        )

    def get(self, detection_id: str) -> SelectionRecord | None:
        result = self.session.execute(
            text("SELECT payload FROM selections WHERE detection_id = :detection_id"),
            {"detection_id": detection_id},
        )
        row = result.first()
        return SelectionRecord.model_validate_json(row.payload) if row else None

    def fetch_all(self) -> list[SelectionRecord]:
        """All selections, most recent first."""
        result = self.session.execute(
            text("SELECT payload FROM selections ORDER BY selected_at DESC")
        )
        return [SelectionRecord.model_validate_json(r.payload) for r in result.fetchall()]
