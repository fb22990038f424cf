from __future__ import annotations

import base64
import sys
from pathlib import Path

import pytest

REPO_ROOT = Path(__file__).resolve().parents[2]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from idea_validator.ai_providers import (  # noqa: E402
    AnthropicProvider,
    Attachment,
    CanonicalRequest,
    ConfigurationError,
    GoogleProvider,
    InvalidInputError,
    OpenAIProvider,
    OpenRouterProvider,
    _SimpleHttpResponse,
    build_default_providers,
    classify_attachment,
    decode_text_attachment,
    extract_error_detail,
    parse_bool_env,
    parse_timeout_seconds,
    resolve_provider,
)

PNG_ATTACHMENT = Attachment(mime_type="image/png", data="data:image/png;base64,iVBORw0KGgo=")
PDF_ATTACHMENT = Attachment(mime_type="application/pdf", data="JVBERi0xLjQ=")
AUDIO_ATTACHMENT = Attachment(mime_type="audio/webm", data="GkXfo59ChoEB")


def _request(provider: str, **overrides) -> CanonicalRequest:
    values = {
        "system_prompt": "SYSTEM RULES",
        "user_prompt": "A marketplace for used lab equipment",
        "provider": provider,
        "model": "test-model",
        "api_key": "secret-key",
    }
    values.update(overrides)
    return CanonicalRequest(**values)


def test_google_request_carries_prompts_and_json_mode():
    request = GoogleProvider().build_request(_request("google", attachment=PNG_ATTACHMENT))

    assert request.endpoint == (
        "https://generativelanguage.googleapis.com/v1beta/models/test-model:generateContent?key=secret-key"
    )
    assert request.payload["systemInstruction"]["parts"][0]["text"] == "SYSTEM RULES"
    parts = request.payload["contents"][0]["parts"]
    assert parts[0] == {"inlineData": {"mimeType": "image/png", "data": "iVBORw0KGgo="}}
    assert parts[1] == {"text": "A marketplace for used lab equipment"}
    assert request.payload["generationConfig"] == {"responseMimeType": "application/json"}


def test_google_chat_request_skips_json_mode():
    request = GoogleProvider().build_request(_request("google", expect_json=False))

    assert "generationConfig" not in request.payload


def test_google_accepts_audio_and_pdf_attachments():
    provider = GoogleProvider()
    for attachment in (AUDIO_ATTACHMENT, PDF_ATTACHMENT):
        request = provider.build_request(_request("google", attachment=attachment))
        assert request.payload["contents"][0]["parts"][0]["inlineData"]["mimeType"] == attachment.mime_type


def test_openai_request_uses_system_role_and_image_url():
    request = OpenAIProvider().build_request(_request("openai", attachment=PNG_ATTACHMENT))

    assert request.endpoint == "https://api.openai.com/v1/chat/completions"
    assert request.headers["Authorization"] == "Bearer secret-key"
    messages = request.payload["messages"]
    assert messages[0] == {"role": "system", "content": "SYSTEM RULES"}
    assert messages[1]["content"][0] == {"type": "text", "text": "A marketplace for used lab equipment"}
    assert messages[1]["content"][1]["image_url"]["url"] == "data:image/png;base64,iVBORw0KGgo="
    assert request.payload["response_format"] == {"type": "json_object"}


def test_openai_chat_request_sends_plain_string_content():
    request = OpenAIProvider().build_request(_request("openai", expect_json=False))

    assert request.payload["messages"][1]["content"] == "A marketplace for used lab equipment"
    assert "response_format" not in request.payload


def test_openai_rejects_pdf_with_switch_hint():
    with pytest.raises(ConfigurationError) as exc_info:
        OpenAIProvider().build_request(_request("openai", attachment=PDF_ATTACHMENT))

    assert str(exc_info.value) == (
        "OpenAI only supports image attachments. Please remove the PDF or switch to Google."
    )


def test_anthropic_rejects_audio_but_accepts_pdf_documents():
    provider = AnthropicProvider()
    with pytest.raises(ConfigurationError) as exc_info:
        provider.build_request(_request("anthropic", attachment=AUDIO_ATTACHMENT))
    assert "only supports image and PDF attachments" in str(exc_info.value)
    assert "Please remove the Audio" in str(exc_info.value)

    request = provider.build_request(_request("anthropic", attachment=PDF_ATTACHMENT))
    content = request.payload["messages"][0]["content"]
    assert content[0]["type"] == "document"
    assert content[0]["source"] == {"type": "base64", "media_type": "application/pdf", "data": "JVBERi0xLjQ="}
    assert content[1] == {"type": "text", "text": "A marketplace for used lab equipment"}


def test_anthropic_request_headers_and_limits():
    request = AnthropicProvider().build_request(_request("anthropic", max_tokens=1000))

    assert request.endpoint == "https://api.anthropic.com/v1/messages"
    assert request.headers["x-api-key"] == "secret-key"
    assert request.headers["anthropic-version"] == "2023-06-01"
    assert request.payload["system"] == "SYSTEM RULES"
    assert request.payload["max_tokens"] == 1000


def test_openrouter_folds_system_prompt_into_user_turn():
    provider = OpenRouterProvider(referer="https://ideas.example", app_title="Ideas")

    analysis = provider.build_request(_request("openrouter"))
    messages = analysis.payload["messages"]
    assert len(messages) == 1
    assert messages[0]["role"] == "user"
    assert messages[0]["content"][0]["text"] == "SYSTEM RULES\n\nA marketplace for used lab equipment"
    assert analysis.headers["HTTP-Referer"] == "https://ideas.example"
    assert analysis.headers["X-Title"] == "Ideas"

    chat = provider.build_request(_request("openrouter", expect_json=False))
    assert chat.payload["messages"][0]["content"] == (
        "SYSTEM RULES\n\n---\n\nUser: A marketplace for used lab equipment"
    )


def test_missing_key_or_model_is_rejected_before_any_request():
    with pytest.raises(ConfigurationError):
        GoogleProvider().build_request(_request("google", api_key="  "))
    with pytest.raises(ConfigurationError):
        OpenAIProvider().build_request(_request("openai", model=""))


def test_text_attachment_is_inlined_for_every_provider():
    csv_attachment = Attachment(mime_type="text/csv", data=base64.b64encode(b"revenue,10k").decode("ascii"))
    expected = "A marketplace for used lab equipment\n\n--- Attached Document ---\nrevenue,10k"

    google = GoogleProvider().build_request(_request("google", attachment=csv_attachment))
    openai = OpenAIProvider().build_request(_request("openai", attachment=csv_attachment))
    anthropic = AnthropicProvider().build_request(_request("anthropic", attachment=csv_attachment))
    openrouter = OpenRouterProvider().build_request(_request("openrouter", attachment=csv_attachment))

    assert google.payload["contents"][0]["parts"] == [{"text": expected}]
    assert openai.payload["messages"][1]["content"] == [{"type": "text", "text": expected}]
    assert anthropic.payload["messages"][0]["content"] == [{"type": "text", "text": expected}]
    assert openrouter.payload["messages"][0]["content"] == [{"type": "text", "text": f"SYSTEM RULES\n\n{expected}"}]


def test_undecodable_text_attachment_is_rejected_by_adapter():
    broken = Attachment(mime_type="application/json", data="%%%not-base64%%%")

    with pytest.raises(InvalidInputError):
        AnthropicProvider().build_request(_request("anthropic", attachment=broken))


def test_extract_text_reads_each_provider_shape():
    assert GoogleProvider().extract_text({"candidates": [{"content": {"parts": [{"text": "g"}]}}]}) == "g"
    assert OpenAIProvider().extract_text({"choices": [{"message": {"content": "o"}}]}) == "o"
    assert OpenRouterProvider().extract_text(
        {"choices": [{"message": {"content": [{"type": "text", "text": "a"}, {"type": "text", "text": "b"}]}}]}
    ) == "a\nb"
    assert AnthropicProvider().extract_text({"content": [{"type": "text", "text": "c"}]}) == "c"


def test_extract_text_returns_empty_string_for_unexpected_shapes():
    assert GoogleProvider().extract_text({"candidates": []}) == ""
    assert OpenAIProvider().extract_text({"choices": [{"message": None}]}) == ""
    assert AnthropicProvider().extract_text("not a dict") == ""


def test_resolve_provider_is_case_insensitive_and_rejects_unknown_names():
    providers = build_default_providers()

    assert resolve_provider(providers, "Anthropic").route_id == "anthropic"
    with pytest.raises(ConfigurationError):
        resolve_provider(providers, "")
    with pytest.raises(ConfigurationError) as exc_info:
        resolve_provider(providers, "mistral")
    assert "mistral" in str(exc_info.value)


def test_provider_base_url_override_from_env(monkeypatch):
    monkeypatch.setenv("IDEA_VALIDATOR_OPENAI_BASE_URL", "http://localhost:9999/v1/")

    providers = build_default_providers()

    assert providers["openai"].base_url == "http://localhost:9999/v1"
    assert providers["openai"].build_request(_request("openai")).endpoint == "http://localhost:9999/v1/chat/completions"


def test_classify_attachment_kinds():
    assert classify_attachment("text/markdown") == "text"
    assert classify_attachment("application/json") == "text"
    assert classify_attachment("image/jpeg") == "image"
    assert classify_attachment("application/pdf") == "pdf"
    assert classify_attachment("audio/mpeg") == "audio"
    assert classify_attachment("video/webm") == "audio"
    assert classify_attachment("application/zip") == "file"


def test_decode_text_attachment_handles_data_urls_and_bad_payloads():
    encoded = base64.b64encode("Pitch deck notes".encode("utf-8")).decode("ascii")

    assert decode_text_attachment(Attachment("text/plain", f"data:text/plain;base64,{encoded}")) == "Pitch deck notes"
    with pytest.raises(InvalidInputError):
        decode_text_attachment(Attachment("text/plain", "%%%not-base64%%%"))


def test_extract_error_detail_prefers_structured_messages():
    structured = _SimpleHttpResponse(
        status_code=400,
        text='{"error": {"message": "Provider returned error", "metadata": {"raw": "quota exceeded"}}}',
    )
    plain_error = _SimpleHttpResponse(status_code=401, text='{"error": "Invalid key"}')
    detail = _SimpleHttpResponse(status_code=422, text='{"detail": "Bad model"}')
    html = _SimpleHttpResponse(status_code=502, text="<html>Bad Gateway</html>")
    empty = _SimpleHttpResponse(status_code=503, text="", reason_phrase="Service Unavailable")

    assert extract_error_detail(structured) == "Provider returned error (Raw: quota exceeded)"
    assert extract_error_detail(plain_error) == "Invalid key"
    assert extract_error_detail(detail) == "Bad model"
    assert extract_error_detail(html) == "<html>Bad Gateway</html>"
    assert extract_error_detail(empty) == "Service Unavailable"


def test_env_parsers_fall_back_on_bad_values():
    assert parse_timeout_seconds(None, fallback=90.0) == 90.0
    assert parse_timeout_seconds("abc", fallback=90.0) == 90.0
    assert parse_timeout_seconds("-5", fallback=90.0) == 90.0
    assert parse_timeout_seconds("12.5", fallback=90.0) == 12.5
    assert parse_bool_env("off", default=True) is False
    assert parse_bool_env("YES", default=False) is True
    assert parse_bool_env("maybe", default=True) is True
