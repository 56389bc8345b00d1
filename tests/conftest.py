"""Shared fixtures: in-memory store, fakes for the catalog, the vision LLM and crops."""

import sys
from pathlib import Path

import pytest


def ensure_tests_on_path() -> None:
    tests_dir = Path(__file__).resolve().parent
    if str(tests_dir) not in sys.path:
        sys.path.append(str(tests_dir))


ensure_tests_on_path()

from fakes import (  # noqa: E402
    FakeCropLoader,
    FakeLLM,
    FakeSearchClient,
    RecordingStore,
    make_detection,
)

from shelfmatch.matching.classifier import VisualClassifier  # noqa: E402
from shelfmatch.matching.consolidator import Consolidator  # noqa: E402
from shelfmatch.matching.prefilter import AttributeFilter  # noqa: E402
from shelfmatch.pipeline.orchestrator import PipelineOrchestrator  # noqa: E402


@pytest.fixture
def store():
    return RecordingStore()


@pytest.fixture
def search_client():
    return FakeSearchClient()


@pytest.fixture
def llm():
    return FakeLLM()


@pytest.fixture
def classifier(llm):
    return VisualClassifier(llm_client=llm, confidence_threshold=0.70, timeout=1.0, concurrency=4)


@pytest.fixture
def orchestrator(store, search_client, classifier):
    return PipelineOrchestrator(
        store,
        search_client=search_client,
        pre_filter=AttributeFilter(threshold=0.85),
        classifier=classifier,
        consolidator=Consolidator(promote_lone_almost_same=True),
        crop_loader=FakeCropLoader(),
    )


@pytest.fixture
def add_detection(store):
    async def _add(detection_id: str = "det-1", **fields):
        detection = make_detection(detection_id, **fields)
        await store.add_detection(detection)
        return detection

    return _add
