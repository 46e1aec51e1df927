import json

import pytest
import requests

from design_review.inference import base as base_module
from design_review.inference.anthropic_vision import AnthropicProvider
from design_review.inference.base import ProviderError, ProviderErrorKind, ProviderRequest, classify_status
from design_review.inference.google_vision import GoogleVisionProvider
from design_review.inference.openai_vision import OpenAIProvider


class DummyResponse:
    def __init__(self, status_code=200, body=None, text=""):
        self.status_code = status_code
        self._body = body
        self.text = text or json.dumps(body)

    def json(self):
        if self._body is None:
            raise ValueError("no json")
        return self._body


def _install(monkeypatch, response=None, error=None):
    calls = []

    def _post(url, json=None, headers=None, timeout=None):
        calls.append({"url": url, "json": json, "headers": headers, "timeout": timeout})
        if error is not None:
            raise error
        return response

    monkeypatch.setattr(base_module.requests, "post", _post)
    return calls


def _request(provider="openai", model="gpt-4o"):
    return ProviderRequest(
        provider=provider, model=model, prompt="List the elements",
        image_urls=["https://x/a.png"], system_prompt="You are a UX reviewer",
    )


@pytest.mark.parametrize(
    "status_code, kind",
    [
        (401, ProviderErrorKind.FATAL_CONFIG),
        (404, ProviderErrorKind.FATAL_CONFIG),
        (429, ProviderErrorKind.TRANSIENT),
        (503, ProviderErrorKind.TRANSIENT),
        (400, ProviderErrorKind.INVALID_REQUEST),
        (302, ProviderErrorKind.INVALID_RESPONSE),
    ],
)
def test_classify_status(status_code, kind):
    assert classify_status(status_code) == kind


def test_openai_builds_chat_payload_and_returns_content(monkeypatch):
    calls = _install(monkeypatch, DummyResponse(body={"choices": [{"message": {"content": '{"images": []}'}}]}))

    reply = OpenAIProvider(api_key="sk-test", base_url="https://api.openai.com/v1/").call(_request(), timeout=12)

    assert reply == '{"images": []}'
    sent = calls[0]
    assert sent["url"] == "https://api.openai.com/v1/chat/completions"
    assert sent["headers"]["Authorization"] == "Bearer sk-test"
    assert sent["timeout"] == 12
    assert sent["json"]["response_format"] == {"type": "json_object"}
    assert sent["json"]["messages"][0] == {"role": "system", "content": "You are a UX reviewer"}
    assert sent["json"]["messages"][1]["content"][1]["image_url"]["url"] == "https://x/a.png"


def test_missing_key_is_config_error_without_network(monkeypatch):
    calls = _install(monkeypatch, DummyResponse(body={}))

    with pytest.raises(ProviderError) as exc:
        OpenAIProvider(api_key="").call(_request(), timeout=5)

    assert exc.value.kind == ProviderErrorKind.FATAL_CONFIG
    assert not exc.value.retryable
    assert calls == []


def test_http_errors_map_to_error_kinds(monkeypatch):
    _install(monkeypatch, DummyResponse(status_code=503, body={"error": "overloaded"}))
    with pytest.raises(ProviderError) as exc:
        AnthropicProvider(api_key="key").call(_request("anthropic", "claude"), timeout=5)
    assert exc.value.kind == ProviderErrorKind.TRANSIENT
    assert exc.value.status_code == 503
    assert exc.value.retryable


def test_timeouts_are_transient(monkeypatch):
    _install(monkeypatch, error=requests.Timeout("read timed out"))
    with pytest.raises(ProviderError) as exc:
        OpenAIProvider(api_key="sk-test").call(_request(), timeout=5)
    assert exc.value.kind == ProviderErrorKind.TRANSIENT


def test_non_json_body_is_invalid_response(monkeypatch):
    _install(monkeypatch, DummyResponse(body=None, text="<html>gateway</html>"))
    with pytest.raises(ProviderError) as exc:
        OpenAIProvider(api_key="sk-test").call(_request(), timeout=5)
    assert exc.value.kind == ProviderErrorKind.INVALID_RESPONSE


def test_anthropic_joins_text_blocks(monkeypatch):
    calls = _install(monkeypatch, DummyResponse(body={"content": [
        {"type": "text", "text": '{"summary": '},
        {"type": "tool_use", "id": "x"},
        {"type": "text", "text": "{}}"},
    ]}))

    reply = AnthropicProvider(api_key="key").call(_request("anthropic", "claude"), timeout=5)

    assert reply == '{"summary": {}}'
    assert calls[0]["headers"]["x-api-key"] == "key"
    assert calls[0]["json"]["system"] == "You are a UX reviewer"


def test_google_wraps_annotations_and_fails_when_every_image_errors(monkeypatch):
    _install(monkeypatch, DummyResponse(body={"responses": [{"labelAnnotations": [{"description": "Button"}]}]}))
    reply = GoogleVisionProvider(api_key="g-key").call(_request("google", "images:annotate"), timeout=5)
    assert json.loads(reply) == {"annotations": [{"labelAnnotations": [{"description": "Button"}]}]}

    _install(monkeypatch, DummyResponse(body={"responses": [{"error": {"message": "bad image"}}]}))
    with pytest.raises(ProviderError) as exc:
        GoogleVisionProvider(api_key="g-key").call(_request("google", "images:annotate"), timeout=5)
    assert exc.value.kind == ProviderErrorKind.INVALID_RESPONSE
