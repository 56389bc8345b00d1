"""Detection import: attribute-extraction CSV export -> result store."""

import math
from pathlib import Path

import pandas as pd

from shelfmatch.db.store import ResultStore
from shelfmatch.logger import get_logger
from shelfmatch.matching.models import BoundingBox, Detection, DetectionAttributes

logger = get_logger(__name__)

REQUIRED_COLUMNS = {"detection_id", "brand"}
ATTRIBUTE_COLUMNS = ("brand", "product_name", "size", "category", "flavor")
BOX_COLUMNS = ("x0", "y0", "x1", "y1")


class IngestionPipeline:
    """
    Loads detections produced upstream (one row per detected product) into the store as PENDING.
    """

    def __init__(self, store: ResultStore):
        self.store = store

    async def ingest_csv(self, csv_path: str | Path) -> int:
        """Load CSV, store new detections. Rows already in the store are skipped."""
        csv_path = Path(csv_path)
        if not csv_path.exists():
            raise FileNotFoundError(f"CSV not found: {csv_path}")

        df = pd.read_csv(csv_path, dtype={"detection_id": str, "image_id": str})
        missing = REQUIRED_COLUMNS - set(df.columns)
        if missing:
            raise ValueError(f"CSV must contain columns: {', '.join(sorted(missing))}")

        detections = [self._to_detection(row) for row in df.to_dict(orient="records")]
        logger.info("csv_loaded", count=len(detections))

        added = 0
        for detection in detections:
            if await self.store.get_detection(detection.id) is not None:
                continue
            await self.store.add_detection(detection)
            added += 1

        logger.info("ingestion_complete", added=added, skipped=len(detections) - added)
        return added

    @classmethod
    def _to_detection(cls, row: dict) -> Detection:
        box = None
        coords = [cls._value(row, c) for c in BOX_COLUMNS]
        if all(c is not None for c in coords):
            box = BoundingBox(**dict(zip(BOX_COLUMNS, (float(c) for c in coords))))

        confidences = {
            column.removesuffix("_confidence"): float(value)
            for column, value in row.items()
            if column.endswith("_confidence") and cls._value(row, column) is not None
        }
        index = cls._value(row, "detection_index")
        is_product = cls._value(row, "is_product")

        return Detection(
            id=str(row["detection_id"]).strip(),
            image_id=cls._text(row, "image_id"),
            detection_index=int(index) if index is not None else None,
            attributes=DetectionAttributes(
                **{c: cls._text(row, c) for c in ATTRIBUTE_COLUMNS},
                confidences=confidences,
            ),
            is_product=cls._flag(is_product),
            store_name=cls._text(row, "store_name"),
            image_ref=cls._text(row, "image_path"),
            bounding_box=box,
        )

    @staticmethod
    def _value(row: dict, column: str):
        value = row.get(column)
        if value is None or (isinstance(value, float) and math.isnan(value)):
            return None
        return value

    @classmethod
    def _text(cls, row: dict, column: str) -> str | None:
        value = cls._value(row, column)
        if value is None:
            return None
        text = " ".join(str(value).split())
        return text or None

    @staticmethod
    def _flag(value) -> bool | None:
        if value is None:
            return None
        if isinstance(value, str):
            return value.strip().lower() in ("true", "1", "yes", "y")
        return bool(value)
