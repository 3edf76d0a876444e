"""
Tests for the LangGraph segmented search pipeline.

Tests verify:
- Happy path through segment, coordinate and compose
- Fallback to the mechanical summary when composition fails
- The fail branch for queries that cannot be planned
"""

from unittest.mock import AsyncMock

import pytest

from segmentation.errors import CircularDependencyError
from segmentation.pipeline import SearchAnswer, SegmentedSearchPipeline
from segmentation.service import SegmentationService
from tests.fakes import FakeModelClient


@pytest.fixture
def service(settings, fake_client):
    return SegmentationService(client=fake_client, settings=settings)


async def test_answer_composed_by_model(service):
    composer = FakeModelClient(default="Photosynthesis turns light into chemical energy.")
    pipeline = SegmentedSearchPipeline(service, composer=composer)

    answer = await pipeline.run("What is photosynthesis")

    assert isinstance(answer, SearchAnswer)
    assert answer.composed_by == "model"
    assert answer.answer == "Photosynthesis turns light into chemical energy."
    assert answer.status == "completed"
    assert answer.summary.startswith("Segmented search completed (1/1 segments).")
    assert [s.url for s in answer.sources] == ["https://example.com/general"]
    assert answer.trace_id

    (prompt,) = composer.prompts
    assert "What is photosynthesis" in prompt
    assert "A general fact" in prompt


async def test_composer_error_falls_back_to_summary(service):
    pipeline = SegmentedSearchPipeline(service, composer=FakeModelClient(default=RuntimeError("rate limited")))

    answer = await pipeline.run("What is photosynthesis")

    assert answer.composed_by == "summary"
    assert answer.answer == answer.summary
    assert answer.status == "completed"


async def test_blank_composer_reply_falls_back_to_summary(service):
    pipeline = SegmentedSearchPipeline(service, composer=FakeModelClient(default="   "))

    answer = await pipeline.run("What is photosynthesis")

    assert answer.composed_by == "summary"


async def test_slow_composer_times_out(service):
    composer = FakeModelClient(default="late answer", delays={"photosynthesis": 1.0})
    pipeline = SegmentedSearchPipeline(service, composer=composer, compose_timeout_seconds=0.05)

    answer = await pipeline.run("What is photosynthesis")

    assert answer.composed_by == "summary"


async def test_failed_run_skips_composition(settings):
    service = SegmentationService(client=FakeModelClient(default=ConnectionError("offline")), settings=settings)
    composer = FakeModelClient()
    pipeline = SegmentedSearchPipeline(service, composer=composer)

    answer = await pipeline.run("What is photosynthesis")

    assert answer.status == "failed"
    assert answer.composed_by == "summary"
    assert answer.answer.startswith("Segmented search failed")
    assert composer.prompts == []


async def test_unplannable_query_takes_fail_branch(service):
    service.segment = AsyncMock(side_effect=CircularDependencyError("custom", ["b", "a"]))
    composer = FakeModelClient()
    pipeline = SegmentedSearchPipeline(service, composer=composer)

    answer = await pipeline.run("anything")

    assert answer.status == "failed"
    assert answer.answer.startswith("Unable to plan this query: Circular dependency detected")
    assert "a, b" in answer.answer
    assert answer.sources == []
    assert composer.prompts == []
