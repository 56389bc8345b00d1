"""Matching domain models.

A Candidate is one catalog search result. It is frozen once fetched; each
stage returns an annotated copy carrying its stage-specific fields and the
`processing_stage` tag of the highest stage it survived.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class ProcessingStage(str, Enum):
    SEARCH = "search"
    PRE_FILTER = "pre_filter"
    AI_FILTER = "ai_filter"
    VISUAL_MATCH = "visual_match"

    @property
    def rank(self) -> int:
        return _STAGE_ORDER.index(self)

    def __lt__(self, other):
        if not isinstance(other, ProcessingStage):
            return NotImplemented
        return self.rank < other.rank

    def __le__(self, other):
        if not isinstance(other, ProcessingStage):
            return NotImplemented
        return self.rank <= other.rank

    def __gt__(self, other):
        if not isinstance(other, ProcessingStage):
            return NotImplemented
        return self.rank > other.rank

    def __ge__(self, other):
        if not isinstance(other, ProcessingStage):
            return NotImplemented
        return self.rank >= other.rank


_STAGE_ORDER = [
    ProcessingStage.SEARCH,
    ProcessingStage.PRE_FILTER,
    ProcessingStage.AI_FILTER,
    ProcessingStage.VISUAL_MATCH,
]


class MatchStatus(str, Enum):
    IDENTICAL = "identical"
    ALMOST_SAME = "almost_same"
    NOT_MATCH = "not_match"


class ProcessingState(str, Enum):
    PENDING = "PENDING"
    SEARCHING = "SEARCHING"
    PRE_FILTERING = "PRE_FILTERING"
    AI_FILTERING = "AI_FILTERING"
    VISUAL_MATCHING = "VISUAL_MATCHING"
    SAVED = "SAVED"
    NO_MATCH = "NO_MATCH"
    ERROR = "ERROR"

    @property
    def is_terminal(self) -> bool:
        return self in (ProcessingState.SAVED, ProcessingState.NO_MATCH, ProcessingState.ERROR)

    @property
    def is_complete(self) -> bool:
        """SAVED and NO_MATCH are finished outcomes; ERROR may be retried."""
        return self in (ProcessingState.SAVED, ProcessingState.NO_MATCH)


class SelectionMethod(str, Enum):
    SINGLE_CANDIDATE = "single_candidate"
    AI_FILTER = "ai_filter"
    VISUAL_MATCHING = "visual_matching"


class BoundingBox(BaseModel):
    """Normalized 0-1000 coordinates within the source photo."""

    x0: float
    y0: float
    x1: float
    y1: float

    @property
    def is_valid(self) -> bool:
        return 0 <= self.x0 < self.x1 <= 1000 and 0 <= self.y0 < self.y1 <= 1000


class DetectionAttributes(BaseModel):
    """Text attributes extracted from the cropped detection upstream."""

    brand: str | None = None
    product_name: str | None = None
    size: str | None = None
    category: str | None = None
    flavor: str | None = None
    confidences: dict[str, float] = Field(default_factory=dict)

    @staticmethod
    def _known(value: str | None) -> str | None:
        if value is None:
            return None
        value = value.strip()
        if not value or value.lower() == "unknown":
            return None
        return value

    def known(self, field: str) -> str | None:
        """Field value, or None when missing or extracted as 'Unknown'."""
        return self._known(getattr(self, field))


class Detection(BaseModel):
    id: str
    image_id: str | None = None
    detection_index: int | None = None
    attributes: DetectionAttributes = Field(default_factory=DetectionAttributes)
    is_product: bool | None = None
    store_name: str | None = None
    image_ref: str | None = None
    bounding_box: BoundingBox | None = None
    state: ProcessingState = ProcessingState.PENDING
    error_stage: str | None = None
    error_message: str | None = None


class Candidate(BaseModel):
    """One catalog search result, annotated as it moves through the stages."""

    gtin: str
    title: str = ""
    brand: str | None = None
    manufacturer: str | None = None
    size: str | None = None
    category: list[str] = Field(default_factory=list)
    image_url: str | None = None
    source_retailers: list[str] = Field(default_factory=list)
    retailer_context: str | None = None
    raw: dict[str, Any] = Field(default_factory=dict)

    processing_stage: ProcessingStage = ProcessingStage.SEARCH

    # pre_filter
    similarity_score: float | None = None
    match_reasons: list[str] = Field(default_factory=list)

    # ai_filter
    match_status: MatchStatus | None = None
    raw_match_status: MatchStatus | None = None
    confidence: float | None = None
    visual_similarity: float | None = None
    rationale: str | None = None
    classification_failed: bool = False

    model_config = {"frozen": True}

    def annotate(self, stage: ProcessingStage, **fields) -> "Candidate":
        return self.model_copy(update={"processing_stage": stage, **fields})

    @property
    def is_passing(self) -> bool:
        return self.match_status in (MatchStatus.IDENTICAL, MatchStatus.ALMOST_SAME)


class Classification(BaseModel):
    match_status: MatchStatus
    confidence: float = Field(ge=0.0, le=1.0)
    rationale: str = ""
    raw_match_status: MatchStatus | None = None
    visual_similarity: float | None = None
    failed: bool = False


class SelectionRecord(BaseModel):
    """The single active catalog match for a detection."""

    detection_id: str
    gtin: str
    product_name: str = ""
    brand_name: str | None = None
    category: list[str] = Field(default_factory=list)
    image_url: str | None = None
    method: SelectionMethod
    confidence: float | None = None
    consolidation_applied: bool = False
    rationale: str | None = None
    selected_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def from_candidate(
        cls,
        detection_id: str,
        candidate: Candidate,
        method: SelectionMethod,
        consolidation_applied: bool = False,
    ) -> "SelectionRecord":
        return cls(
            detection_id=detection_id,
            gtin=candidate.gtin,
            product_name=candidate.title,
            brand_name=candidate.brand,
            category=candidate.category,
            image_url=candidate.image_url,
            method=method,
            confidence=candidate.confidence,
            consolidation_applied=consolidation_applied,
            rationale=candidate.rationale,
        )


class ComparisonResponse(BaseModel):
    """Visual comparison LLM output."""

    match_status: MatchStatus = Field(alias="matchStatus")
    confidence: float = Field(ge=0.0, le=1.0)
    visual_similarity: float | None = Field(default=None, ge=0.0, le=1.0, alias="visualSimilarity")
    reason: str = ""

    model_config = {"populate_by_name": True}
