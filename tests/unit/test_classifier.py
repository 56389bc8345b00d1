import pytest

from fakes import make_candidate

from shelfmatch.matching.classifier import VisualClassifier
from shelfmatch.matching.models import (
    ComparisonResponse,
    DetectionAttributes,
    MatchStatus,
    ProcessingStage,
)

CROP = "data:image/jpeg;base64,crop"
ATTRS = DetectionAttributes(brand="Acme Cola", size="12 oz")


class TestApplyThreshold:

    def test_low_confidence_label_is_downgraded(self, classifier):
        result = classifier.apply_threshold(
            ComparisonResponse(match_status=MatchStatus.IDENTICAL, confidence=0.6, reason="looks close")
        )

        assert result.match_status == MatchStatus.NOT_MATCH
        assert result.raw_match_status == MatchStatus.IDENTICAL
        assert result.confidence == 0.6
        assert result.rationale.startswith("[LOW CONFIDENCE 0.60 < 0.70, was identical]")

    def test_label_at_threshold_is_kept(self, classifier):
        result = classifier.apply_threshold(
            ComparisonResponse(match_status=MatchStatus.ALMOST_SAME, confidence=0.70)
        )

        assert result.match_status == MatchStatus.ALMOST_SAME
        assert not result.failed

    def test_not_match_is_never_rewritten(self, classifier):
        result = classifier.apply_threshold(
            ComparisonResponse(match_status=MatchStatus.NOT_MATCH, confidence=0.1, reason="different")
        )

        assert result.match_status == MatchStatus.NOT_MATCH
        assert result.rationale == "different"

    def test_response_accepts_camel_case_keys(self):
        response = ComparisonResponse.model_validate(
            {"matchStatus": "almost_same", "confidence": 0.8, "visualSimilarity": 0.7, "reason": "x"}
        )
        assert response.match_status == MatchStatus.ALMOST_SAME
        assert response.visual_similarity == 0.7


class TestClassify:

    @pytest.mark.asyncio
    async def test_passes_crop_and_reference_image(self, classifier, llm):
        llm.set("1", "identical", 0.95)

        result = await classifier.classify(CROP, make_candidate("1"), ATTRS)

        assert result.match_status == MatchStatus.IDENTICAL
        assert llm.calls == [(CROP, "https://img.example/1.jpg")]

    @pytest.mark.asyncio
    async def test_llm_error_becomes_failed_not_match(self, classifier, llm):
        llm.failing_urls.add("https://img.example/1.jpg")

        result = await classifier.classify(CROP, make_candidate("1"), ATTRS)

        assert result.failed
        assert result.match_status == MatchStatus.NOT_MATCH
        assert result.confidence == 0.0
        assert "model unavailable" in result.rationale

    @pytest.mark.asyncio
    async def test_timeout_becomes_failed_not_match(self, llm):
        classifier = VisualClassifier(llm_client=llm, confidence_threshold=0.7, timeout=0.05)
        llm.slow_crops.add(CROP)

        result = await classifier.classify(CROP, make_candidate("1"), ATTRS)

        assert result.failed
        assert result.rationale == "Classification timed out after 0.05s"

    @pytest.mark.asyncio
    async def test_candidate_without_image_is_not_sent(self, classifier, llm):
        result = await classifier.classify(CROP, make_candidate("1", image_url=None), ATTRS)

        assert result.failed
        assert result.rationale == "Candidate has no reference image"
        assert llm.calls == []


class TestAiFilter:

    @pytest.mark.asyncio
    async def test_one_failure_does_not_affect_siblings(self, classifier, llm):
        llm.set("1", "identical", 0.95)
        llm.set("3", "almost_same", 0.8)
        llm.failing_urls.add("https://img.example/2.jpg")
        candidates = [make_candidate("1"), make_candidate("2"), make_candidate("3")]

        results = await classifier.ai_filter(CROP, candidates, ATTRS)

        assert [c.gtin for c in results] == ["1", "2", "3"]
        assert [c.match_status for c in results] == [
            MatchStatus.IDENTICAL,
            MatchStatus.NOT_MATCH,
            MatchStatus.ALMOST_SAME,
        ]
        assert [c.classification_failed for c in results] == [False, True, False]
        assert all(c.processing_stage == ProcessingStage.AI_FILTER for c in results)

    @pytest.mark.asyncio
    async def test_keeps_prefilter_annotations(self, classifier, llm):
        llm.set("1", "identical", 0.9)
        candidate = make_candidate("1").annotate(
            ProcessingStage.PRE_FILTER, similarity_score=0.93, match_reasons=["Brand match: 100%"]
        )

        [result] = await classifier.ai_filter(CROP, [candidate], ATTRS)

        assert result.similarity_score == 0.93
        assert result.match_reasons == ["Brand match: 100%"]
        assert result.confidence == 0.9
        assert result.visual_similarity == 0.9

    @pytest.mark.asyncio
    async def test_empty_input(self, classifier, llm):
        assert await classifier.ai_filter(CROP, [], ATTRS) == []
        assert llm.calls == []

    def test_reject_all(self, classifier):
        results = classifier.reject_all([make_candidate("1"), make_candidate("2")], "Crop unavailable")

        assert all(c.match_status == MatchStatus.NOT_MATCH for c in results)
        assert all(c.classification_failed for c in results)
        assert all(c.rationale == "Crop unavailable" for c in results)
