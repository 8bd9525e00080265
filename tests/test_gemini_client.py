from unittest.mock import MagicMock

import pytest
import requests

from backend.services.gemini_client import GeminiAPIError, GeminiClient


def _response(status_code=200, payload=None, text=""):
    response = MagicMock()
    response.status_code = status_code
    response.text = text
    response.reason = "Error"
    if payload is None:
        response.json.side_effect = ValueError("no json")
    else:
        response.json.return_value = payload
    return response


def _client(session):
    return GeminiClient(
        model="gemini-test",
        base_url="https://example.test/v1beta/",
        min_request_interval=0,
        session=session
    )


def test_generate_posts_prompt_with_key_header() -> None:
    session = MagicMock()
    session.post.return_value = _response(payload={
        "candidates": [{"content": {"parts": [{"text": '[{"id": "a",'}, {"text": ' "decision": "INCLUDE"}]'}]}}],
        "modelVersion": "gemini-test-001",
        "usageMetadata": {"totalTokenCount": 12}
    })

    result = _client(session).generate("Screen these", "secret-key")

    assert result.content == '[{"id": "a", "decision": "INCLUDE"}]'
    assert result.model == "gemini-test-001"
    assert result.usage == {"totalTokenCount": 12}

    args, kwargs = session.post.call_args
    assert args[0] == "https://example.test/v1beta/models/gemini-test:generateContent"
    assert kwargs["headers"]["x-goog-api-key"] == "secret-key"
    assert kwargs["json"]["contents"][0]["parts"][0]["text"] == "Screen these"


def test_http_error_carries_status_and_service_message() -> None:
    session = MagicMock()
    session.post.return_value = _response(
        status_code=429,
        payload={"error": {"code": 429, "message": "Quota exceeded for metric", "status": "RESOURCE_EXHAUSTED"}}
    )

    with pytest.raises(GeminiAPIError) as exc_info:
        _client(session).generate("p", "k")

    assert exc_info.value.status_code == 429
    assert exc_info.value.message == "Quota exceeded for metric"
    assert str(exc_info.value) == "HTTP 429: Quota exceeded for metric"


def test_http_error_without_json_body_uses_text() -> None:
    session = MagicMock()
    session.post.return_value = _response(status_code=503, text="Service Unavailable")

    with pytest.raises(GeminiAPIError, match="Service Unavailable"):
        _client(session).generate("p", "k")


def test_timeout_becomes_api_error() -> None:
    session = MagicMock()
    session.post.side_effect = requests.exceptions.Timeout("slow")

    with pytest.raises(GeminiAPIError, match="timed out") as exc_info:
        _client(session).generate("p", "k")

    assert exc_info.value.status_code is None


def test_blocked_prompt_raises() -> None:
    session = MagicMock()
    session.post.return_value = _response(payload={"promptFeedback": {"blockReason": "SAFETY"}})

    with pytest.raises(GeminiAPIError, match="SAFETY"):
        _client(session).generate("p", "k")


def test_non_json_success_body_raises() -> None:
    session = MagicMock()
    session.post.return_value = _response(status_code=200)

    with pytest.raises(GeminiAPIError, match="not valid JSON"):
        _client(session).generate("p", "k")
