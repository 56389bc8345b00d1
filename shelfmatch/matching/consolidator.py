"""
Consolidation: pick zero or one final candidate from the AI filter results.

Rules, in order:
    1. exactly one identical            -> select it (ai_filter)
    2. two or more identical/almost_same -> visual matching: best identical by
                                           confidence, else best almost_same
    3. exactly one almost_same          -> promote it (ai_filter, consolidation applied)
    4. nothing passing                  -> no match
Equal confidences resolve to the candidate earliest in the AI filter ordering.
"""

from pydantic import BaseModel, Field

from shelfmatch.config.settings import settings
from shelfmatch.logger import get_logger
from shelfmatch.matching.models import (
    Candidate,
    MatchStatus,
    ProcessingStage,
    SelectionMethod,
    SelectionRecord,
)

logger = get_logger(__name__)


class Consolidation(BaseModel):
    """Outcome of consolidation. `selection` is None for a no-match."""

    selection: SelectionRecord | None = None
    rule: int
    reason: str
    visual_match_candidates: list[Candidate] = Field(default_factory=list)

    @property
    def is_match(self) -> bool:
        return self.selection is not None

    @property
    def used_visual_matching(self) -> bool:
        return bool(self.visual_match_candidates)


def best_by_confidence(candidates: list[Candidate]) -> Candidate:
    """Highest confidence; the first one wins a tie."""
    best = candidates[0]
    for candidate in candidates[1:]:
        if (candidate.confidence or 0.0) > (best.confidence or 0.0):
            best = candidate
    return best


class Consolidator:
    def __init__(self, promote_lone_almost_same: bool | None = None):
        self.promote_lone_almost_same = (
            promote_lone_almost_same
            if promote_lone_almost_same is not None
            else settings.promote_lone_almost_same
        )

    def consolidate(self, detection_id: str, results: list[Candidate]) -> Consolidation:
        identical = [c for c in results if c.match_status == MatchStatus.IDENTICAL]
        almost_same = [c for c in results if c.match_status == MatchStatus.ALMOST_SAME]
        passing = [c for c in results if c.is_passing]

        if len(identical) == 1:
            winner = identical[0]
            method = (
                SelectionMethod.SINGLE_CANDIDATE
                if len(results) == 1
                else SelectionMethod.AI_FILTER
            )
            outcome = Consolidation(
                selection=SelectionRecord.from_candidate(detection_id, winner, method),
                rule=1,
                reason="Single identical match",
            )

        elif len(passing) >= 2:
            pool = identical or almost_same
            winner = best_by_confidence(pool)
            outcome = Consolidation(
                selection=SelectionRecord.from_candidate(
                    detection_id, winner, SelectionMethod.VISUAL_MATCHING
                ),
                rule=2,
                reason=(
                    f"Visual matching chose 1 of {len(passing)} passing candidates "
                    f"({len(identical)} identical, {len(almost_same)} almost_same)"
                ),
                visual_match_candidates=[
                    c.annotate(ProcessingStage.VISUAL_MATCH) for c in passing
                ],
            )

        elif len(almost_same) == 1 and self.promote_lone_almost_same:
            outcome = Consolidation(
                selection=SelectionRecord.from_candidate(
                    detection_id,
                    almost_same[0],
                    SelectionMethod.AI_FILTER,
                    consolidation_applied=True,
                ),
                rule=3,
                reason="Single almost_same match promoted",
            )

        else:
            outcome = Consolidation(rule=4, reason="No identical or almost_same match")

        logger.info(
            "consolidation_done",
            detection_id=detection_id,
            rule=outcome.rule,
            gtin=outcome.selection.gtin if outcome.selection else None,
        )
        return outcome
