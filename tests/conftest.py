"""Shared fixtures."""

import json
from typing import Any, Dict
from unittest.mock import Mock

import pytest

from media_seo.models import Applied, CostBreakdown, Draft, GeneratedMetadata, Pricing, TokenUsage
from media_seo.storage import PricingStore
from media_seo.storage.subjects import SubjectStore
from media_seo.utils import ImagePayload

GOOD_METADATA = {
    "alt": "Red barn beside a maple tree in autumn",
    "caption": "A classic red barn glows against orange maple leaves on a crisp October morning.",
    "title": "Red Barn in Vermont Autumn",
    "keywords": ["red barn", "vermont", "autumn foliage", "maple"],
    "score": 0.92,
}


class MemorySubjectStore(SubjectStore):
    """Subjects held in dicts; every subject gets a 1000x1000 JPEG."""

    def __init__(self, contexts: Dict[str, Dict[str, Any]]):
        self.contexts = contexts
        self.applied: Dict[tuple, Dict[str, Any]] = {}
        self.drafts: Dict[tuple, Dict[str, Any]] = {}

    def list_subjects(self):
        return list(self.contexts)

    def get_image(self, subject_id):
        if subject_id not in self.contexts:
            raise KeyError(f"Unknown subject: {subject_id}")
        return ImagePayload(b"jpeg-bytes", "image/jpeg", 1000, 1000, f"{subject_id}.jpg")

    def get_context(self, subject_id, language="en"):
        if subject_id not in self.contexts:
            raise KeyError(f"Unknown subject: {subject_id}")
        return dict(self.contexts[subject_id])

    def apply_metadata(self, subject_id, language, state):
        key = (subject_id, language)
        if isinstance(state, Applied):
            self.applied[key] = state.metadata.fields()
            self.drafts.pop(key, None)
        elif isinstance(state, Draft):
            self.drafts[key] = state.metadata.fields()

    def get_metadata(self, subject_id, language="en"):
        return dict(self.applied.get((subject_id, language), {}))

    def get_draft(self, subject_id, language="en"):
        return dict(self.drafts.get((subject_id, language), {}))


@pytest.fixture
def make_response():
    """Build a mock requests.Response."""

    def _make(status_code=200, data=None, raises=False, headers=None):
        response = Mock()
        response.status_code = status_code
        response.headers = headers or {}
        if raises:
            response.json.side_effect = ValueError("No JSON")
        else:
            response.json.return_value = data
        return response

    return _make


@pytest.fixture
def metadata_text():
    return json.dumps(GOOD_METADATA)


@pytest.fixture
def pricing_store():
    store = PricingStore()
    store.upsert(
        [
            Pricing("gpt-4o", "openai", 2.5, 10.0),
            Pricing("claude-sonnet-4-5-20250929", "anthropic", 3.0, 15.0, 0.3, 3.75),
            Pricing("gemini-1.5-flash", "google", 0.075, 0.3),
        ]
    )
    return store


@pytest.fixture
def subject_store():
    return MemorySubjectStore(
        {
            "1": {"post_title": "Autumn in Vermont", "categories": ["travel"]},
            "2": {"post_title": "Maple syrup season"},
            "3": {},
        }
    )


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def good_metadata():
    return GeneratedMetadata(
        **GOOD_METADATA,
        usage=TokenUsage(input_tokens=1000, output_tokens=500),
        cost=CostBreakdown(input_cost=0.0025, output_cost=0.005, total_cost=0.0075),
        provider="openai",
        model="gpt-4o",
    )
