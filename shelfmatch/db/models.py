"""Database row models."""

import json

from pydantic import BaseModel

from shelfmatch.matching.models import (
    BoundingBox,
    Detection,
    DetectionAttributes,
    ProcessingState,
)


class DetectionRow(BaseModel):
    """A detections row, flat as stored."""

    id: str
    image_id: str | None = None
    detection_index: int | None = None
    brand: str | None = None
    product_name: str | None = None
    size: str | None = None
    category: str | None = None
    flavor: str | None = None
    confidences: str | None = None
    is_product: bool | None = None
    store_name: str | None = None
    image_ref: str | None = None
    bbox_x0: float | None = None
    bbox_y0: float | None = None
    bbox_x1: float | None = None
    bbox_y1: float | None = None
    state: str = ProcessingState.PENDING.value
    error_stage: str | None = None
    error_message: str | None = None

    @classmethod
    def from_detection(cls, detection: Detection) -> "DetectionRow":
        attrs = detection.attributes
        box = detection.bounding_box
        return cls(
            id=detection.id,
            image_id=detection.image_id,
            detection_index=detection.detection_index,
            brand=attrs.brand,
            product_name=attrs.product_name,
            size=attrs.size,
            category=attrs.category,
            flavor=attrs.flavor,
            confidences=json.dumps(attrs.confidences) if attrs.confidences else None,
            is_product=detection.is_product,
            store_name=detection.store_name,
            image_ref=detection.image_ref,
            bbox_x0=box.x0 if box else None,
            bbox_y0=box.y0 if box else None,
            bbox_x1=box.x1 if box else None,
            bbox_y1=box.y1 if box else None,
            state=detection.state.value,
            error_stage=detection.error_stage,
            error_message=detection.error_message,
        )

    def to_detection(self) -> Detection:
        coords = (self.bbox_x0, self.bbox_y0, self.bbox_x1, self.bbox_y1)
        box = None
        if all(c is not None for c in coords):
            box = BoundingBox(x0=self.bbox_x0, y0=self.bbox_y0, x1=self.bbox_x1, y1=self.bbox_y1)
        return Detection(
            id=self.id,
            image_id=self.image_id,
            detection_index=self.detection_index,
            attributes=DetectionAttributes(
                brand=self.brand,
                product_name=self.product_name,
                size=self.size,
                category=self.category,
                flavor=self.flavor,
                confidences=json.loads(self.confidences) if self.confidences else {},
            ),
            is_product=self.is_product,
            store_name=self.store_name,
            image_ref=self.image_ref,
            bounding_box=box,
            state=ProcessingState(self.state),
            error_stage=self.error_stage,
            error_message=self.error_message,
        )
