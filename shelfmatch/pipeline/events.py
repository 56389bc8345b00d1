"""Progress stream events.

Serialized with camelCase keys (`detectionIndex`, `noMatch`) for transports.
"""

import json
from typing import Literal

from pydantic import BaseModel
from pydantic.alias_generators import to_camel

from shelfmatch.matching.models import ProcessingState


class _Event(BaseModel):
    model_config = {"alias_generator": to_camel, "populate_by_name": True, "frozen": True}

    def to_payload(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


class ProgressEvent(_Event):
    type: Literal["progress"] = "progress"
    detection_index: int
    detection_id: str
    stage: ProcessingState
    message: str
    success: int
    no_match: int
    errors: int
    processed: int
    total: int


class CompleteEvent(_Event):
    """Batch summary, always the last event of a stream."""

    type: Literal["complete"] = "complete"
    success: int
    no_match: int
    errors: int
    processed: int
    total: int
    elapsed_seconds: float


BatchEvent = ProgressEvent | CompleteEvent


def format_sse(event: BatchEvent) -> str:
    """Server-Sent Events frame for one event."""
    return f"data: {json.dumps(event.to_payload())}\n\n"
