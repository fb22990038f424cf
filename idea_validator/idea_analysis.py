from __future__ import annotations

import asyncio
import json
import logging
import os
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import httpx

from .ai_providers import (
    AnalysisError,
    Attachment,
    CanonicalRequest,
    ConfigurationError,
    EmptyOutputError,
    InvalidInputError,
    MalformedOutputError,
    ProviderConfig,
    ProviderNetworkError,
    ProviderTimeoutError,
    build_default_providers,
    extract_error_detail,
    parse_bool_env,
    parse_timeout_seconds,
    post_json,
    resolve_provider,
)
from .report_normalizer import normalize_report_fields, parse_model_output
from .report_schema import ValidationReport, assemble_report, build_mock_report_fields

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 90.0
ANALYSIS_MAX_TOKENS = 2000
CHAT_MAX_TOKENS = 1000
OFFLINE_CHAT_REPLY = "Sorry, I am offline and cannot chat right now."
ATTACHMENT_ONLY_PROMPT = "Please analyze the attached file and provide the startup validation report."

ANALYSIS_SYSTEM_PROMPT = """You are an expert startup advisor and product manager. Your goal is to provide honest, clear, and encouraging feedback to founders. Do not use hype. Do not use investor jargon. Be direct but kind. Analyze the user's startup idea. Return a structured validation report in JSON.

CRITICAL INSTRUCTION: You MUST return ONLY a raw, valid JSON object. Do not include any markdown formatting like ```json. Do not include any conversational text before or after the JSON.

The JSON must strictly match this schema:
{
  "summaryVerdict": "Promising" | "Risky" | "Needs Refinement",
  "oneLineTakeaway": "string",
  "marketReality": "string",
  "pros": ["string"],
  "cons": ["string"],
  "competitors": [{"name": "string", "differentiation": "string"}],
  "monetizationStrategies": ["string"],
  "whyPeoplePay": "string",
  "viabilityScore": 85,
  "nextSteps": ["string"]
}"""


class AnalysisState(str, Enum):
    IDLE = "idle"
    PROVIDER_SELECTED = "provider_selected"
    REQUEST_SENT = "request_sent"
    RESPONSE_RECEIVED = "response_received"
    NORMALIZED = "normalized"
    DONE = "done"
    REJECTED = "rejected"
    TIMED_OUT = "timed_out"
    NETWORK_ERROR = "network_error"
    FAILED = "failed"


@dataclass(frozen=True)
class FallbackTier:
    name: str
    fall_through: bool = False


CUSTOM_PROVIDER_TIER = "custom_provider"
DEFAULT_PROVIDER_TIER = "default_provider"
MOCK_REPORT_TIER = "mock_report"
OFFLINE_REPLY_TIER = "offline_reply"

ANALYSIS_TIERS = (
    FallbackTier(CUSTOM_PROVIDER_TIER),
    FallbackTier(DEFAULT_PROVIDER_TIER),
    FallbackTier(MOCK_REPORT_TIER),
)
CHAT_TIERS = (
    FallbackTier(CUSTOM_PROVIDER_TIER),
    FallbackTier(DEFAULT_PROVIDER_TIER),
    FallbackTier(OFFLINE_REPLY_TIER),
)


@dataclass
class AnalysisAttempt:
    tier: str
    provider: str = ""
    states: list[AnalysisState] = field(default_factory=lambda: [AnalysisState.IDLE])

    @property
    def state(self) -> AnalysisState:
        return self.states[-1]

    def advance(self, *states: AnalysisState) -> None:
        for state in states:
            logger.debug("Attempt %s/%s: %s -> %s", self.tier, self.provider or "-", self.state.value, state.value)
            self.states.append(state)


@dataclass(frozen=True)
class AnalysisOutcome:
    report: ValidationReport
    tier: str
    provider: str
    states: tuple[AnalysisState, ...]


@dataclass(frozen=True)
class ChatOutcome:
    text: str
    tier: str
    provider: str
    states: tuple[AnalysisState, ...]


class IdeaAnalysisService:
    def __init__(
        self,
        *,
        providers: dict[str, Any] | None = None,
        default_config: ProviderConfig | None = None,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        allow_mock_fallback: bool = True,
        analysis_tiers: tuple[FallbackTier, ...] = ANALYSIS_TIERS,
        chat_tiers: tuple[FallbackTier, ...] = CHAT_TIERS,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.providers = providers or build_default_providers()
        self.default_config = default_config
        self.timeout_seconds = timeout_seconds
        self.allow_mock_fallback = allow_mock_fallback
        self.analysis_tiers = analysis_tiers
        self.chat_tiers = chat_tiers
        self.transport = transport

    @classmethod
    def from_env(cls) -> "IdeaAnalysisService":
        default_config = ProviderConfig(
            provider=os.getenv("IDEA_VALIDATOR_DEFAULT_PROVIDER", "google"),
            model=os.getenv("IDEA_VALIDATOR_DEFAULT_MODEL", "gemini-2.5-flash"),
            api_key=os.getenv("IDEA_VALIDATOR_DEFAULT_API_KEY") or os.getenv("API_KEY", ""),
        )
        return cls(
            default_config=default_config,
            timeout_seconds=parse_timeout_seconds(
                os.getenv("IDEA_VALIDATOR_REQUEST_TIMEOUT_SECONDS"),
                fallback=DEFAULT_TIMEOUT_SECONDS,
            ),
            allow_mock_fallback=parse_bool_env(
                os.getenv("IDEA_VALIDATOR_ALLOW_MOCK_FALLBACK"),
                default=True,
            ),
        )

    @property
    def default_configured(self) -> bool:
        return bool(self.default_config and self.default_config.api_key.strip())

    def list_providers(self) -> dict[str, Any]:
        default_payload = None
        if self.default_config is not None:
            default_payload = {
                "provider": self.default_config.provider,
                "model": self.default_config.model,
                "configured": self.default_configured,
            }
        return {
            "providers": [provider.describe() for provider in self.providers.values()],
            "default_provider": default_payload,
            "mock_fallback_enabled": self.allow_mock_fallback,
            "timeout_seconds": self.timeout_seconds,
        }

    async def analyze(
        self,
        idea: str | None = None,
        attachment: Attachment | None = None,
        provider_config: ProviderConfig | None = None,
    ) -> ValidationReport:
        outcome = await self.run_analysis(idea=idea, attachment=attachment, provider_config=provider_config)
        return outcome.report

    async def run_analysis(
        self,
        *,
        idea: str | None = None,
        attachment: Attachment | None = None,
        provider_config: ProviderConfig | None = None,
    ) -> AnalysisOutcome:
        user_text = _prepare_user_text(idea, attachment)
        user_prompt = _build_analysis_user_prompt(user_text)

        last_error: AnalysisError | None = None
        for tier in self.analysis_tiers:
            if not self._tier_applies(tier, provider_config):
                continue

            attempt = AnalysisAttempt(tier=tier.name)
            logger.info("Idea analysis using tier %s", tier.name)
            try:
                if tier.name == MOCK_REPORT_TIER:
                    logger.warning("No AI provider configured; returning the offline mock report")
                    fields = build_mock_report_fields()
                else:
                    config = self._config_for_tier(tier, provider_config)
                    text = await self._request_text(
                        attempt,
                        config,
                        system_prompt=ANALYSIS_SYSTEM_PROMPT,
                        user_prompt=user_prompt,
                        attachment=attachment,
                        expect_json=True,
                        max_tokens=ANALYSIS_MAX_TOKENS,
                    )
                    try:
                        parsed = parse_model_output(text)
                    except MalformedOutputError:
                        attempt.advance(AnalysisState.FAILED)
                        raise
                    fields = normalize_report_fields(parsed)
                attempt.advance(AnalysisState.NORMALIZED)
                report = assemble_report(fields, original_idea=idea)
                attempt.advance(AnalysisState.DONE)
                return AnalysisOutcome(
                    report=report,
                    tier=tier.name,
                    provider=attempt.provider,
                    states=tuple(attempt.states),
                )
            except AnalysisError as exc:
                if not tier.fall_through:
                    logger.warning("Idea analysis failed on tier %s: %s", tier.name, exc)
                    raise
                logger.warning("Idea analysis tier %s failed, trying next tier: %s", tier.name, exc)
                last_error = exc

        if last_error is not None:
            raise last_error
        raise ConfigurationError(
            "No AI provider is configured. Add your own provider settings or configure a default provider key."
        )

    async def chat(
        self,
        message: str,
        context: dict[str, Any],
        provider_config: ProviderConfig | None = None,
    ) -> str:
        outcome = await self.run_chat(message=message, context=context, provider_config=provider_config)
        return outcome.text

    async def run_chat(
        self,
        *,
        message: str,
        context: dict[str, Any],
        provider_config: ProviderConfig | None = None,
    ) -> ChatOutcome:
        clean_message = (message or "").strip()
        if not clean_message:
            raise InvalidInputError("Chat message is required.")
        system_prompt = build_chat_system_prompt(context)

        last_error: AnalysisError | None = None
        for tier in self.chat_tiers:
            if not self._tier_applies(tier, provider_config):
                continue

            attempt = AnalysisAttempt(tier=tier.name)
            logger.info("Idea chat using tier %s", tier.name)
            try:
                if tier.name == OFFLINE_REPLY_TIER:
                    text = OFFLINE_CHAT_REPLY
                else:
                    text = await self._request_text(
                        attempt,
                        self._config_for_tier(tier, provider_config),
                        system_prompt=system_prompt,
                        user_prompt=clean_message,
                        attachment=None,
                        expect_json=False,
                        max_tokens=CHAT_MAX_TOKENS,
                    )
                attempt.advance(AnalysisState.DONE)
                return ChatOutcome(text=text, tier=tier.name, provider=attempt.provider, states=tuple(attempt.states))
            except AnalysisError as exc:
                if not tier.fall_through:
                    logger.warning("Idea chat failed on tier %s: %s", tier.name, exc)
                    raise
                logger.warning("Idea chat tier %s failed, trying next tier: %s", tier.name, exc)
                last_error = exc

        if last_error is not None:
            raise last_error
        raise ConfigurationError(
            "No AI provider is configured. Add your own provider settings or configure a default provider key."
        )

    def _tier_applies(self, tier: FallbackTier, provider_config: ProviderConfig | None) -> bool:
        if tier.name == CUSTOM_PROVIDER_TIER:
            return provider_config is not None
        if tier.name == DEFAULT_PROVIDER_TIER:
            return self.default_configured
        if tier.name in (MOCK_REPORT_TIER, OFFLINE_REPLY_TIER):
            return self.allow_mock_fallback
        logger.warning("Ignoring unknown fallback tier %s", tier.name)
        return False

    def _config_for_tier(self, tier: FallbackTier, provider_config: ProviderConfig | None) -> ProviderConfig:
        if tier.name == CUSTOM_PROVIDER_TIER and provider_config is not None:
            return provider_config
        if self.default_config is None:
            raise ConfigurationError("Default AI provider is not configured.")
        return self.default_config

    async def _request_text(
        self,
        attempt: AnalysisAttempt,
        config: ProviderConfig,
        *,
        system_prompt: str,
        user_prompt: str,
        attachment: Attachment | None,
        expect_json: bool,
        max_tokens: int,
    ) -> str:
        try:
            provider = resolve_provider(self.providers, config.provider)
            attempt.provider = provider.label
            attempt.advance(AnalysisState.PROVIDER_SELECTED)
            provider_request = provider.build_request(
                CanonicalRequest(
                    system_prompt=system_prompt,
                    user_prompt=user_prompt,
                    provider=provider.route_id,
                    model=config.model or "",
                    api_key=config.api_key or "",
                    attachment=attachment,
                    expect_json=expect_json,
                    max_tokens=max_tokens,
                )
            )
        except ConfigurationError:
            attempt.advance(AnalysisState.REJECTED, AnalysisState.FAILED)
            raise

        attempt.advance(AnalysisState.REQUEST_SENT)
        logger.info("Sending request to %s (model=%s)", provider.label, config.model)
        try:
            response = await asyncio.wait_for(
                post_json(
                    url=provider_request.endpoint,
                    headers=provider_request.headers,
                    request_payload=provider_request.payload,
                    timeout_seconds=self.timeout_seconds,
                    transport=self.transport,
                ),
                timeout=self.timeout_seconds,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException) as exc:
            attempt.advance(AnalysisState.TIMED_OUT, AnalysisState.FAILED)
            raise ProviderTimeoutError(
                f"Request to {provider.label} timed out. The model took too long to respond."
            ) from exc
        except httpx.HTTPError as exc:
            attempt.advance(AnalysisState.NETWORK_ERROR, AnalysisState.FAILED)
            raise ProviderNetworkError(f"{provider.label} Error: HTTP request failed: {exc}") from exc

        if not response.ok:
            attempt.advance(AnalysisState.NETWORK_ERROR, AnalysisState.FAILED)
            raise ProviderNetworkError(f"{provider.label} Error: {extract_error_detail(response)}")

        attempt.advance(AnalysisState.RESPONSE_RECEIVED)
        try:
            payload = response.json()
        except ValueError as exc:
            attempt.advance(AnalysisState.FAILED)
            raise MalformedOutputError(f"{provider.label} response was not valid JSON: {exc}") from exc

        text = provider.extract_text(payload)
        if not text.strip():
            attempt.advance(AnalysisState.FAILED)
            raise EmptyOutputError("Received empty response from the model.")
        return text


def build_chat_system_prompt(context: dict[str, Any] | None) -> str:
    context = context or {}
    report = context.get("report")
    if isinstance(report, ValidationReport):
        report = report.to_dict()
    return (
        "Context: You are discussing a startup idea.\n"
        f"Idea: {context.get('originalIdea') or ''}\n"
        f"Report Summary: {json.dumps(report, ensure_ascii=False)}\n"
        "Role: Helpful Co-founder."
    )


def _prepare_user_text(idea: str | None, attachment: Attachment | None) -> str:
    # Text attachments are inlined by the provider adapter.
    user_text = (idea or "").strip()
    if not user_text and attachment is None:
        raise InvalidInputError("Please provide a startup idea or an attachment to analyze.")
    if not user_text:
        return ATTACHMENT_ONLY_PROMPT
    return user_text


def _build_analysis_user_prompt(user_text: str) -> str:
    return (
        "=== STARTUP IDEA TO ANALYZE ===\n"
        f"{user_text}\n"
        "========================\n\n"
        "Remember: Output strictly valid JSON matching the schema. NO CONVERSATIONAL TEXT."
    )
