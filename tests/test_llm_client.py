import os
from unittest.mock import MagicMock, patch

import httpx
import openai
import pytest

from exceptions import AIProviderError
from llm_client import LLMConfig, GenericLLMClient, create_client_from_env
from models import BatchFeedbackAnalysis, Category, FeedbackAnalysis, Sentiment


def analysis(sentiment="Negative", category="Bug Report", summary="s"):
    return FeedbackAnalysis(sentiment=sentiment, category=category, tags=["t"], summary=summary)


@pytest.fixture
def structured():
    """Instructor-patched client whose create() is under test control."""
    with patch("llm_client.openai.OpenAI"), patch("llm_client.instructor.from_openai") as from_openai, \
            patch("llm_client.time.sleep"):
        instructor_client = MagicMock()
        from_openai.return_value = instructor_client
        yield instructor_client.chat.completions.create


@pytest.fixture
def client(structured):
    return GenericLLMClient(LLMConfig(api_key="test-key", max_retries=3, retry_delay=0))


def bad_request():
    request = httpx.Request("POST", "https://api.test/v1/chat/completions")
    return openai.BadRequestError("content filtered", response=httpx.Response(400, request=request), body=None)


def test_returns_results_in_input_order(client, structured):
    structured.return_value = BatchFeedbackAnalysis(results=[
        analysis("Negative", "Bug Report", "first"),
        analysis("Positive", "Other", "second"),
    ])

    results = client.analyze_feedback_batch(["app crashes", "love it"])

    assert [r.summary for r in results] == ["first", "second"]
    assert results[0].sentiment == Sentiment.NEGATIVE
    assert results[1].category == Category.OTHER

    kwargs = structured.call_args.kwargs
    assert kwargs["response_model"] is BatchFeedbackAnalysis
    assert kwargs["max_tokens"] == 800 + 2 * 100


def test_extra_results_are_dropped(client, structured):
    structured.return_value = BatchFeedbackAnalysis(results=[analysis(), analysis(), analysis()])

    assert len(client.analyze_feedback_batch(["one", "two"])) == 2


def test_short_response_is_returned_as_is(client, structured):
    structured.return_value = BatchFeedbackAnalysis(results=[analysis()])

    assert len(client.analyze_feedback_batch(["one", "two"])) == 1


def test_empty_input_skips_the_call(client, structured):
    assert client.analyze_feedback_batch([]) == []
    structured.assert_not_called()


def test_bad_request_is_not_retried(client, structured):
    structured.side_effect = bad_request()

    with pytest.raises(AIProviderError):
        client.analyze_feedback_batch(["text"])

    assert structured.call_count == 1


def test_transient_failure_is_retried(client, structured):
    structured.side_effect = [ValueError("unparseable"), BatchFeedbackAnalysis(results=[analysis()])]

    results = client.analyze_feedback_batch(["text"])

    assert len(results) == 1
    assert structured.call_count == 2


def test_empty_response_is_retried_then_fails(client, structured):
    structured.return_value = BatchFeedbackAnalysis(results=[])

    with pytest.raises(AIProviderError):
        client.analyze_feedback_batch(["text"])

    assert structured.call_count == 3


def test_prompt_truncates_long_content(client):
    prompt = client._create_batch_prompt(["x" * 600, "short"])

    assert "[1] " + "x" * 500 + "\n" in prompt
    assert "x" * 501 not in prompt
    assert "[2] short" in prompt
    assert "Return 2 results" in prompt


def test_env_factory_requires_key():
    with patch.dict(os.environ, {}, clear=True):
        with pytest.raises(ValueError):
            create_client_from_env()


def test_connection_check_succeeds(client):
    assert client.test_connection() is True
    assert client.client.chat.completions.create.call_args.kwargs["max_tokens"] == 10


def test_connection_check_reports_failure(client):
    request = httpx.Request("POST", "https://api.test/v1/chat/completions")
    client.client.chat.completions.create.side_effect = openai.APIConnectionError(request=request)

    assert client.test_connection() is False
