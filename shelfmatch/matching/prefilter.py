"""
Attribute pre-filter.

Scores each search candidate against the detection's extracted brand and
size and the store's retailer, and keeps only strong matches so that the
expensive visual comparison runs on few candidates.

Composite score = weighted mean of the available sub-scores:
    brand    0.35  best of brand / manufacturer / title similarity
    size     0.35  normalized quantity comparison
    retailer 0.30  1.0 when the candidate is sold at the photo's retailer
A sub-score whose input is missing on the detection side (no size, no
retailer hint) is left out of the mean instead of counting as zero.
"""

from shelfmatch.config.settings import settings
from shelfmatch.logger import get_logger
from shelfmatch.matching.models import Candidate, DetectionAttributes, ProcessingStage
from shelfmatch.matching.retailers import retailer_from_store_name
from shelfmatch.matching.sizes import size_similarity

logger = get_logger(__name__)


def string_similarity(a: str | None, b: str | None) -> float:
    """1.0 exact, 0.8 containment, 0.5-0.8 word overlap, else 0."""
    if not a or not b:
        return 0.0
    s1, s2 = a.lower().strip(), b.lower().strip()
    if not s1 or not s2:
        return 0.0
    if s1 == s2:
        return 1.0
    if s1 in s2 or s2 in s1:
        return 0.8

    words1, words2 = s1.split(), s2.split()
    common = [w for w in words1 if w in words2 and len(w) > 2]
    if common:
        overlap = len(common) / max(len(words1), len(words2))
        return 0.5 + overlap * 0.3
    return 0.0


class AttributeFilter:
    def __init__(
        self,
        threshold: float | None = None,
        brand_weight: float | None = None,
        size_weight: float | None = None,
        retailer_weight: float | None = None,
    ):
        self.threshold = threshold if threshold is not None else settings.prefilter_threshold
        self.brand_weight = (
            brand_weight if brand_weight is not None else settings.prefilter_brand_weight
        )
        self.size_weight = (
            size_weight if size_weight is not None else settings.prefilter_size_weight
        )
        self.retailer_weight = (
            retailer_weight if retailer_weight is not None else settings.prefilter_retailer_weight
        )

    def pre_filter(
        self,
        candidates: list[Candidate],
        attributes: DetectionAttributes,
        retailer_hint: str | None = None,
    ) -> list[Candidate]:
        """Candidates scoring >= threshold, best first, tagged `pre_filter`."""
        retailer = retailer_from_store_name(retailer_hint)
        scored = [self.score(c, attributes, retailer) for c in candidates]

        kept = [c for c in scored if c.similarity_score >= self.threshold]
        # sorted() is stable, so equal scores keep search order
        kept = sorted(kept, key=lambda c: c.similarity_score, reverse=True)

        logger.info(
            "prefilter_done",
            input=len(candidates),
            kept=len(kept),
            threshold=self.threshold,
            retailer=retailer,
        )
        return kept

    def score(
        self,
        candidate: Candidate,
        attributes: DetectionAttributes,
        retailer: str | None,
    ) -> Candidate:
        total = 0.0
        weight = 0.0
        reasons: list[str] = []

        brand = attributes.known("brand")
        if brand:
            similarity = max(
                string_similarity(brand, candidate.brand),
                string_similarity(brand, candidate.manufacturer),
                string_similarity(brand, candidate.title),
            )
            total += similarity * self.brand_weight
            weight += self.brand_weight
            if similarity > 0.5:
                reasons.append(f"Brand match: {similarity * 100:.0f}%")

        size = attributes.known("size")
        if size:
            similarity, reason = size_similarity(size, candidate.size)
            total += similarity * self.size_weight
            weight += self.size_weight
            if reason:
                reasons.append(reason)

        if retailer:
            weight += self.retailer_weight
            if retailer in candidate.source_retailers:
                total += self.retailer_weight
                reasons.append(f"Retailer match: {retailer}")

        score = total / weight if weight else 0.0
        return candidate.annotate(
            ProcessingStage.PRE_FILTER,
            similarity_score=round(score, 6),
            match_reasons=reasons,
        )
