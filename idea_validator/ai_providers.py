from __future__ import annotations

import base64
import binascii
import json
import os
from dataclasses import dataclass, field, replace
from typing import Any
from urllib.parse import quote

import httpx


class AnalysisError(RuntimeError):
    pass


class ConfigurationError(AnalysisError):
    pass


class InvalidInputError(ConfigurationError):
    pass


class ProviderNetworkError(AnalysisError):
    pass


class ProviderTimeoutError(AnalysisError):
    pass


class MalformedOutputError(AnalysisError):
    pass


class EmptyOutputError(AnalysisError):
    pass


ATTACHMENT_KIND_LABELS = {
    "image": "image",
    "pdf": "PDF",
    "audio": "Audio",
    "file": "file",
    "text": "text",
}


@dataclass(frozen=True)
class Attachment:
    mime_type: str
    data: str

    @property
    def kind(self) -> str:
        return classify_attachment(self.mime_type)


@dataclass(frozen=True)
class ProviderConfig:
    provider: str
    model: str
    api_key: str


@dataclass(frozen=True)
class CanonicalRequest:
    system_prompt: str
    user_prompt: str
    provider: str
    model: str
    api_key: str
    attachment: Attachment | None = None
    expect_json: bool = True
    max_tokens: int = 2000


@dataclass(frozen=True)
class ProviderRequest:
    endpoint: str
    headers: dict[str, str]
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass
class _SimpleHttpResponse:
    status_code: int
    text: str
    reason_phrase: str = ""

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300

    def json(self) -> Any:
        return json.loads(self.text)


class _BaseProvider:
    route_id: str = ""
    label: str = ""
    default_base_url: str = ""
    supported_attachment_kinds: frozenset[str] = frozenset()

    def __init__(self, *, base_url: str | None = None) -> None:
        self.base_url = (base_url or self.default_base_url).strip().rstrip("/")

    @classmethod
    def from_env(cls) -> "_BaseProvider":
        env_name = f"IDEA_VALIDATOR_{cls.route_id.upper()}_BASE_URL"
        return cls(base_url=os.getenv(env_name) or None)

    def describe(self) -> dict[str, Any]:
        return {
            "id": self.route_id,
            "label": self.label,
            "base_url": self.base_url,
            "attachment_kinds": sorted(self.supported_attachment_kinds),
        }

    def build_request(self, request: CanonicalRequest) -> ProviderRequest:
        self._validate(request)
        return self._build(inline_text_attachment(request))

    def extract_text(self, payload: Any) -> str:
        raise NotImplementedError

    def _build(self, request: CanonicalRequest) -> ProviderRequest:
        raise NotImplementedError

    def _validate(self, request: CanonicalRequest) -> None:
        if not request.api_key.strip():
            raise ConfigurationError(f"{self.label} provider is not configured (missing API key).")
        if not request.model.strip():
            raise ConfigurationError(f"{self.label} provider is not configured (missing model).")
        if not self.base_url.startswith("http"):
            raise ConfigurationError(f"Invalid {self.label} base URL.")

        attachment = request.attachment
        if attachment is None or attachment.kind == "text":
            return
        if attachment.kind in self.supported_attachment_kinds:
            return

        supported = " and ".join(
            ATTACHMENT_KIND_LABELS[kind] for kind in ("image", "pdf", "audio", "file")
            if kind in self.supported_attachment_kinds
        )
        raise ConfigurationError(
            f"{self.label} only supports {supported} attachments. "
            f"Please remove the {ATTACHMENT_KIND_LABELS[attachment.kind]} or switch to Google."
        )


class GoogleProvider(_BaseProvider):
    route_id = "google"
    label = "Google"
    default_base_url = "https://generativelanguage.googleapis.com/v1beta"
    supported_attachment_kinds = frozenset({"image", "pdf", "audio", "file"})

    def _build(self, request: CanonicalRequest) -> ProviderRequest:
        parts: list[dict[str, Any]] = []
        attachment = _binary_attachment(request)
        if attachment is not None:
            parts.append({"inlineData": {"mimeType": attachment.mime_type, "data": _strip_data_url(attachment.data)}})
        parts.append({"text": request.user_prompt})

        payload: dict[str, Any] = {
            "systemInstruction": {"parts": [{"text": request.system_prompt}]},
            "contents": [{"parts": parts}],
        }
        if request.expect_json:
            payload["generationConfig"] = {"responseMimeType": "application/json"}

        model = quote(request.model.strip(), safe="")
        api_key = quote(request.api_key.strip(), safe="")
        return ProviderRequest(
            endpoint=f"{self.base_url}/models/{model}:generateContent?key={api_key}",
            headers={"Content-Type": "application/json"},
            payload=payload,
        )

    def extract_text(self, payload: Any) -> str:
        candidate = _first(_get(payload, "candidates"))
        part = _first(_get(_get(candidate, "content"), "parts"))
        return _as_text(_get(part, "text"))


class OpenAIProvider(_BaseProvider):
    route_id = "openai"
    label = "OpenAI"
    default_base_url = "https://api.openai.com/v1"
    supported_attachment_kinds = frozenset({"image"})

    def _build(self, request: CanonicalRequest) -> ProviderRequest:
        attachment = _binary_attachment(request)
        user_content: str | list[dict[str, Any]]
        if request.expect_json or attachment is not None:
            user_content = [{"type": "text", "text": request.user_prompt}]
            if attachment is not None:
                user_content.append({"type": "image_url", "image_url": {"url": _to_data_url(attachment)}})
        else:
            user_content = request.user_prompt

        payload: dict[str, Any] = {
            "model": request.model.strip(),
            "messages": [
                {"role": "system", "content": request.system_prompt},
                {"role": "user", "content": user_content},
            ],
        }
        if request.expect_json:
            payload["response_format"] = {"type": "json_object"}

        return ProviderRequest(
            endpoint=_build_chat_completions_url(self.base_url),
            headers={
                "Authorization": f"Bearer {request.api_key.strip()}",
                "Content-Type": "application/json",
            },
            payload=payload,
        )

    def extract_text(self, payload: Any) -> str:
        return _extract_openai_text(payload)


class OpenRouterProvider(_BaseProvider):
    route_id = "openrouter"
    label = "OpenRouter"
    default_base_url = "https://openrouter.ai/api/v1"
    supported_attachment_kinds = frozenset({"image"})

    def __init__(
        self,
        *,
        base_url: str | None = None,
        referer: str = "http://localhost:8000",
        app_title: str = "Idea Validator",
    ) -> None:
        super().__init__(base_url=base_url)
        self.referer = referer
        self.app_title = app_title

    @classmethod
    def from_env(cls) -> "OpenRouterProvider":
        return cls(
            base_url=os.getenv("IDEA_VALIDATOR_OPENROUTER_BASE_URL") or None,
            referer=os.getenv("IDEA_VALIDATOR_OPENROUTER_REFERER", "http://localhost:8000"),
            app_title=os.getenv("IDEA_VALIDATOR_APP_TITLE", "Idea Validator"),
        )

    def _build(self, request: CanonicalRequest) -> ProviderRequest:
        # OpenRouter routes to models without a system role, so the system
        # prompt travels inside the user turn.
        attachment = _binary_attachment(request)
        user_content: str | list[dict[str, Any]]
        if request.expect_json or attachment is not None:
            user_content = [{"type": "text", "text": f"{request.system_prompt}\n\n{request.user_prompt}"}]
            if attachment is not None:
                user_content.append({"type": "image_url", "image_url": {"url": _to_data_url(attachment)}})
        else:
            user_content = f"{request.system_prompt}\n\n---\n\nUser: {request.user_prompt}"

        return ProviderRequest(
            endpoint=_build_chat_completions_url(self.base_url),
            headers={
                "Authorization": f"Bearer {request.api_key.strip()}",
                "Content-Type": "application/json",
                "HTTP-Referer": self.referer,
                "X-Title": self.app_title,
            },
            payload={
                "model": request.model.strip(),
                "messages": [{"role": "user", "content": user_content}],
            },
        )

    def extract_text(self, payload: Any) -> str:
        return _extract_openai_text(payload)


class AnthropicProvider(_BaseProvider):
    route_id = "anthropic"
    label = "Anthropic"
    default_base_url = "https://api.anthropic.com"
    supported_attachment_kinds = frozenset({"image", "pdf"})

    def _build(self, request: CanonicalRequest) -> ProviderRequest:
        content: list[dict[str, Any]] = []
        attachment = _binary_attachment(request)
        if attachment is not None:
            block_type = "document" if attachment.kind == "pdf" else "image"
            content.append(
                {
                    "type": block_type,
                    "source": {
                        "type": "base64",
                        "media_type": attachment.mime_type,
                        "data": _strip_data_url(attachment.data),
                    },
                }
            )
        content.append({"type": "text", "text": request.user_prompt})

        endpoint = f"{self.base_url}/messages" if self.base_url.endswith("/v1") else f"{self.base_url}/v1/messages"
        return ProviderRequest(
            endpoint=endpoint,
            headers={
                "x-api-key": request.api_key.strip(),
                "anthropic-version": "2023-06-01",
                "content-type": "application/json",
            },
            payload={
                "model": request.model.strip(),
                "max_tokens": request.max_tokens,
                "system": request.system_prompt,
                "messages": [{"role": "user", "content": content}],
            },
        )

    def extract_text(self, payload: Any) -> str:
        block = _first(_get(payload, "content"))
        return _as_text(_get(block, "text"))


PROVIDER_CLASSES: tuple[type[_BaseProvider], ...] = (
    GoogleProvider,
    OpenAIProvider,
    AnthropicProvider,
    OpenRouterProvider,
)


def build_default_providers() -> dict[str, _BaseProvider]:
    return {provider_cls.route_id: provider_cls.from_env() for provider_cls in PROVIDER_CLASSES}


def resolve_provider(providers: dict[str, _BaseProvider], name: str | None) -> _BaseProvider:
    key = (name or "").strip().lower()
    if not key:
        raise ConfigurationError("No AI provider selected. Choose Google, OpenAI, Anthropic or OpenRouter.")
    provider = providers.get(key)
    if provider is None:
        labels = ", ".join(item.label for item in providers.values())
        raise ConfigurationError(f"Unknown AI provider '{name}'. Expected one of: {labels}.")
    return provider


def classify_attachment(mime_type: str) -> str:
    value = (mime_type or "").strip().lower()
    if value.startswith("text/") or "json" in value or "csv" in value or "xml" in value:
        return "text"
    if value.startswith("image/"):
        return "image"
    if value == "application/pdf":
        return "pdf"
    if value.startswith("audio/") or "webm" in value or "mp4" in value or "mpeg" in value:
        return "audio"
    return "file"


def decode_text_attachment(attachment: Attachment) -> str:
    encoded = "".join(_strip_data_url(attachment.data).split())
    try:
        return base64.b64decode(encoded, validate=True).decode("utf-8")
    except (binascii.Error, ValueError) as exc:
        raise InvalidInputError(
            "Failed to read the attached text document. Please try pasting the text directly."
        ) from exc


def inline_text_attachment(request: CanonicalRequest) -> CanonicalRequest:
    """Fold a text attachment into the user prompt so no provider sends it as binary."""
    attachment = request.attachment
    if attachment is None or attachment.kind != "text":
        return request
    document = decode_text_attachment(attachment)
    user_prompt = f"{request.user_prompt}\n\n--- Attached Document ---\n{document}".strip()
    return replace(request, user_prompt=user_prompt, attachment=None)


async def post_json(
    *,
    url: str,
    headers: dict[str, str],
    request_payload: dict[str, Any],
    timeout_seconds: float,
    transport: httpx.AsyncBaseTransport | None = None,
) -> _SimpleHttpResponse:
    normalized_headers = dict(headers)
    normalized_headers.setdefault("Accept", "application/json")
    normalized_headers.setdefault("User-Agent", "IdeaValidator/1.0")

    async with httpx.AsyncClient(transport=transport, timeout=timeout_seconds) as client:
        response = await client.post(url, headers=normalized_headers, json=request_payload)
        return _SimpleHttpResponse(
            status_code=int(response.status_code),
            text=response.text,
            reason_phrase=response.reason_phrase,
        )


def extract_error_detail(response: _SimpleHttpResponse) -> str:
    fallback = response.reason_phrase or f"HTTP {response.status_code}"
    body = response.text.strip()
    try:
        payload = response.json()
    except ValueError:
        return body[:300] if body else fallback

    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict):
            message = error.get("message")
            message = message if isinstance(message, str) and message else fallback
            metadata = error.get("metadata")
            raw = metadata.get("raw") if isinstance(metadata, dict) else None
            if raw:
                raw_text = raw if isinstance(raw, str) else json.dumps(raw)
                message = f"{message} (Raw: {raw_text})"
            return message
        if isinstance(error, str) and error:
            return error
        detail = payload.get("detail")
        if isinstance(detail, str) and detail:
            return detail
    return fallback


def parse_timeout_seconds(raw_value: str | None, *, fallback: float) -> float:
    if raw_value is None:
        return fallback
    try:
        parsed = float(raw_value)
    except ValueError:
        return fallback
    if parsed <= 0:
        return fallback
    return parsed


def parse_bool_env(raw_value: str | None, *, default: bool) -> bool:
    if raw_value is None:
        return default
    value = raw_value.strip().lower()
    if value in {"1", "true", "yes", "on"}:
        return True
    if value in {"0", "false", "no", "off"}:
        return False
    return default


def _binary_attachment(request: CanonicalRequest) -> Attachment | None:
    attachment = request.attachment
    if attachment is None or attachment.kind == "text":
        return None
    return attachment


def _strip_data_url(data: str) -> str:
    value = data.strip()
    if value.startswith("data:") and "," in value:
        return value.split(",", 1)[1]
    return value


def _to_data_url(attachment: Attachment) -> str:
    return f"data:{attachment.mime_type};base64,{_strip_data_url(attachment.data)}"


def _build_chat_completions_url(base_url: str) -> str:
    normalized = base_url.strip().rstrip("/")
    if normalized.endswith("/chat/completions"):
        return normalized
    return f"{normalized}/chat/completions"


def _extract_openai_text(payload: Any) -> str:
    message = _get(_first(_get(payload, "choices")), "message")
    content = _get(message, "content")
    if isinstance(content, list):
        chunks = [
            item["text"]
            for item in content
            if isinstance(item, dict) and item.get("type") == "text" and isinstance(item.get("text"), str)
        ]
        return "\n".join(chunks)
    return _as_text(content)


def _get(payload: Any, key: str) -> Any:
    if isinstance(payload, dict):
        return payload.get(key)
    return None


def _first(items: Any) -> Any:
    if isinstance(items, list) and items:
        return items[0]
    return None


def _as_text(value: Any) -> str:
    return value if isinstance(value, str) else ""
