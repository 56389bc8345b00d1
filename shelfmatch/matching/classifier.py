"""
AI filter: visual classification of pre-filtered candidates.

Each candidate's reference image is compared with the shelf crop in its own
LLM call. The confidence threshold is enforced here: a label that comes back
below it is downgraded to not_match, keeping the raw label for inspection.
A failed or timed-out call only affects its own candidate, which is kept as
not_match with a diagnostic rationale. Every candidate is returned, tagged
`ai_filter`, in input order.
"""

import asyncio

from shelfmatch.config.settings import settings
from shelfmatch.errors import ClassificationFailed
from shelfmatch.logger import get_logger
from shelfmatch.matching.models import (
    Candidate,
    Classification,
    ComparisonResponse,
    DetectionAttributes,
    MatchStatus,
    ProcessingStage,
)
from shelfmatch.matching.prompts import AI_FILTER_PROMPT, AI_FILTER_SYSTEM_PROMPT
from shelfmatch.services.llm import LLMClient

logger = get_logger(__name__)


class VisualClassifier:
    def __init__(
        self,
        llm_client: LLMClient | None = None,
        confidence_threshold: float | None = None,
        timeout: float | None = None,
        concurrency: int | None = None,
    ):
        self.llm = llm_client or LLMClient()
        self.confidence_threshold = (
            confidence_threshold
            if confidence_threshold is not None
            else settings.ai_filter_confidence_threshold
        )
        self.timeout = timeout or settings.classify_timeout_seconds
        self.concurrency = max(1, concurrency or settings.classify_concurrency)

    async def classify(
        self,
        crop_image: str,
        candidate: Candidate,
        attributes: DetectionAttributes | None = None,
    ) -> Classification:
        """Compare one candidate with the crop. Never raises."""
        try:
            response = await asyncio.wait_for(
                self._compare(crop_image, candidate, attributes or DetectionAttributes()),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            return self.failed(
                ClassificationFailed(
                    f"Classification timed out after {self.timeout}s", gtin=candidate.gtin
                )
            )
        except ClassificationFailed as e:
            return self.failed(e)
        except Exception as e:
            return self.failed(
                ClassificationFailed(f"Classification failed: {e}", gtin=candidate.gtin)
            )

        return self.apply_threshold(response)

    async def ai_filter(
        self,
        crop_image: str,
        candidates: list[Candidate],
        attributes: DetectionAttributes | None = None,
    ) -> list[Candidate]:
        semaphore = asyncio.Semaphore(self.concurrency)

        async def _one(candidate: Candidate) -> Classification:
            async with semaphore:
                return await self.classify(crop_image, candidate, attributes)

        classifications = await asyncio.gather(*(_one(c) for c in candidates))
        results = [annotate(c, r) for c, r in zip(candidates, classifications)]

        logger.info(
            "ai_filter_done",
            input=len(candidates),
            identical=sum(1 for r in results if r.match_status == MatchStatus.IDENTICAL),
            almost_same=sum(1 for r in results if r.match_status == MatchStatus.ALMOST_SAME),
            failed=sum(1 for r in results if r.classification_failed),
        )
        return results

    def reject_all(self, candidates: list[Candidate], reason: str) -> list[Candidate]:
        """Record every candidate as a failed classification, e.g. when the crop is unavailable."""
        return [
            annotate(c, self.failed(ClassificationFailed(reason, gtin=c.gtin)))
            for c in candidates
        ]

    def apply_threshold(self, response: ComparisonResponse) -> Classification:
        status = response.match_status
        rationale = response.reason
        if status != MatchStatus.NOT_MATCH and response.confidence < self.confidence_threshold:
            rationale = (
                f"[LOW CONFIDENCE {response.confidence:.2f} < "
                f"{self.confidence_threshold:.2f}, was {status.value}] {rationale}"
            )
            status = MatchStatus.NOT_MATCH

        return Classification(
            match_status=status,
            confidence=response.confidence,
            rationale=rationale,
            raw_match_status=response.match_status,
            visual_similarity=response.visual_similarity,
        )

    @staticmethod
    def failed(error: ClassificationFailed) -> Classification:
        logger.warning("classification_failed", gtin=error.gtin, error=str(error))
        return Classification(
            match_status=MatchStatus.NOT_MATCH,
            confidence=0.0,
            rationale=str(error),
            failed=True,
        )

    async def _compare(
        self,
        crop_image: str,
        candidate: Candidate,
        attributes: DetectionAttributes,
    ) -> ComparisonResponse:
        if not candidate.image_url:
            raise ClassificationFailed(
                "Candidate has no reference image", gtin=candidate.gtin
            )

        prompt = AI_FILTER_PROMPT.format(
            brand=attributes.known("brand") or "Unknown",
            product_name=attributes.known("product_name") or "Unknown",
            size=attributes.known("size") or "Unknown",
            flavor=attributes.known("flavor") or "Unknown",
            category=attributes.known("category") or "Unknown",
            candidate_brand=candidate.brand or "Unknown",
            candidate_title=candidate.title or "Unknown",
            candidate_size=candidate.size or "Unknown",
        )
        response = await self.llm.call_structured(
            prompt,
            ComparisonResponse,
            system=AI_FILTER_SYSTEM_PROMPT,
            images=[crop_image, candidate.image_url],
        )
        logger.debug(
            "classification_result",
            gtin=candidate.gtin,
            status=response.match_status.value,
            confidence=response.confidence,
        )
        return response


def annotate(candidate: Candidate, result: Classification) -> Candidate:
    return candidate.annotate(
        ProcessingStage.AI_FILTER,
        match_status=result.match_status,
        raw_match_status=result.raw_match_status,
        confidence=result.confidence,
        visual_similarity=result.visual_similarity,
        rationale=result.rationale,
        classification_failed=result.failed,
    )
