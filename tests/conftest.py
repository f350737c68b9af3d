import threading
from datetime import datetime, timezone
from typing import List

import pytest

from exceptions import AIProviderError
from models import AnalysisResult, Category, FeedbackRecord, Sentiment


class FakeClock:
    """Manually advanced time source for TTL tests."""

    def __init__(self, start: float = 1_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


def verdict_for(content: str) -> AnalysisResult:
    sentiment = Sentiment.NEGATIVE if "crash" in content else Sentiment.POSITIVE
    return AnalysisResult(
        sentiment=sentiment,
        category=Category.BUG if sentiment == Sentiment.NEGATIVE else Category.OTHER,
        tags=["app"],
        summary=f"summary of {content}",
    )


class RecordingProvider:
    """AI provider double: one deterministic verdict per content, every batch recorded.

    A batch containing any content in `fail_contents` raises AIProviderError. `short_by`
    drops that many trailing results from every response.
    """

    def __init__(self):
        self.calls: List[List[str]] = []
        self.fail_contents = set()
        self.short_by = 0
        self.lock = threading.Lock()

    def analyze_feedback_batch(self, contents: List[str]) -> List[AnalysisResult]:
        with self.lock:
            self.calls.append(list(contents))
        if any(content in self.fail_contents for content in contents):
            raise AIProviderError("provider rejected batch")
        results = [verdict_for(content) for content in contents]
        return results[:len(results) - self.short_by] if self.short_by else results

    @property
    def sent_contents(self) -> List[str]:
        return [content for call in self.calls for content in call]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def provider():
    return RecordingProvider()


@pytest.fixture
def make_record():
    def _make(record_id="f-1", content="hello", day=1, **fields):
        return FeedbackRecord(
            id=record_id,
            date=datetime(2026, 1, day, 12, 0, tzinfo=timezone.utc),
            content=content,
            **fields,
        )

    return _make
