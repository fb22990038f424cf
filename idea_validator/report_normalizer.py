from __future__ import annotations

import json
import math
import re
from typing import Any

from .ai_providers import MalformedOutputError
from .report_schema import Verdict

MAX_OUTPUT_EXCERPT_CHARS = 200
CLARIFICATION_MARKERS = ("please provide", "i need", "idea")

# Canonical field -> accepted keys, lower case, checked in order.
FIELD_ALIASES: dict[str, tuple[str, ...]] = {
    "summaryVerdict": ("summaryverdict", "verdict", "summary"),
    "oneLineTakeaway": ("onelinetakeaway", "takeaway", "headline"),
    "marketReality": ("marketreality", "market", "reality", "analysis"),
    "pros": ("pros", "strengths", "advantages"),
    "cons": ("cons", "risks", "weaknesses"),
    "competitors": ("competitors", "competition"),
    "monetizationStrategies": ("monetizationstrategies", "monetization", "revenue", "businessmodel"),
    "whyPeoplePay": ("whypeoplepay", "valueproposition", "value"),
    "viabilityScore": ("viabilityscore", "score", "viability"),
    "nextSteps": ("nextsteps", "steps", "actionplan"),
}

FIELD_DEFAULTS: dict[str, Any] = {
    "summaryVerdict": Verdict.UNKNOWN.value,
    "oneLineTakeaway": "Analysis completed successfully, but missing takeaway.",
    "marketReality": "Market analysis was generated but could not be parsed.",
    "pros": ["Identified strengths from the idea."],
    "cons": ["Identified potential risks."],
    "competitors": [],
    "monetizationStrategies": [],
    "whyPeoplePay": "Value proposition identified.",
    "viabilityScore": 50,
    "nextSteps": ["Review the detailed analysis above."],
}

LIST_FIELDS = ("pros", "cons", "monetizationStrategies", "nextSteps")
TEXT_FIELDS = ("oneLineTakeaway", "marketReality", "whyPeoplePay")

COMPETITOR_NAME_ALIASES = ("name", "competitor", "company", "title")
COMPETITOR_DIFFERENTIATION_ALIASES = ("differentiation", "difference", "differentiator", "description", "notes")

_VERDICTS_BY_KEY = {
    re.sub(r"[^a-z]", "", verdict.value.lower()): verdict
    for verdict in (Verdict.PROMISING, Verdict.RISKY, Verdict.NEEDS_REFINEMENT)
}
_LEADING_INT_RE = re.compile(r"^\s*([+-]?\d+)")


def recover_json_text(text: str) -> str:
    """Slice the outermost ``{...}`` out of model text.

    Only the first ``{`` and the last ``}`` are considered, so braces inside
    string values or several top-level objects can still yield an invalid
    slice. The caller reports that as malformed output.
    """
    cleaned = (text or "").strip()
    first_brace = cleaned.find("{")
    last_brace = cleaned.rfind("}")
    if first_brace != -1 and last_brace != -1 and last_brace >= first_brace:
        return cleaned[first_brace : last_brace + 1]
    return cleaned


def parse_model_output(text: str) -> Any:
    recovered = recover_json_text(text)
    try:
        return json.loads(recovered)
    except ValueError as exc:
        raise MalformedOutputError(_malformed_output_message(text or "")) from exc


def normalize_report_fields(parsed: Any) -> dict[str, Any]:
    """Map any parsed model output onto the ten canonical report fields.

    Never raises; unusable values fall back to ``FIELD_DEFAULTS``.
    """
    data = _unwrap_single_root(parsed)

    fields: dict[str, Any] = {}
    for name in TEXT_FIELDS:
        value = lookup_field(data, name)
        fields[name] = _coerce_text(value) if value is not None else FIELD_DEFAULTS[name]
        if not fields[name]:
            fields[name] = FIELD_DEFAULTS[name]

    for name in LIST_FIELDS:
        value = lookup_field(data, name)
        fields[name] = _coerce_text_list(value) if value is not None else list(FIELD_DEFAULTS[name])

    competitors = lookup_field(data, "competitors")
    fields["competitors"] = _coerce_competitors(competitors) if competitors is not None else []

    fields["viabilityScore"] = normalize_viability_score(lookup_field(data, "viabilityScore"))
    fields["summaryVerdict"] = normalize_verdict(lookup_field(data, "summaryVerdict")).value
    return fields


def lookup_field(data: Any, name: str) -> Any:
    """Return the value stored under any alias of ``name``, or None.

    Empty strings count as missing.
    """
    if not isinstance(data, dict):
        return None
    keys_by_lower: dict[str, str] = {}
    for key in data.keys():
        if isinstance(key, str):
            keys_by_lower.setdefault(key.lower(), key)

    for alias in FIELD_ALIASES[name]:
        key = keys_by_lower.get(alias)
        if key is None:
            continue
        value = data[key]
        if value is None or value == "":
            continue
        return value
    return None


def normalize_verdict(raw_value: Any) -> Verdict:
    if not isinstance(raw_value, str):
        return Verdict.UNKNOWN
    key = re.sub(r"[\s_\-]", "", raw_value.strip().lower())
    return _VERDICTS_BY_KEY.get(key, Verdict.UNKNOWN)


def normalize_viability_score(raw_value: Any) -> int:
    fallback = FIELD_DEFAULTS["viabilityScore"]
    if raw_value is None or isinstance(raw_value, bool):
        return fallback
    if isinstance(raw_value, int):
        score = raw_value
    elif isinstance(raw_value, float):
        if not math.isfinite(raw_value):
            return fallback
        score = int(raw_value)
    elif isinstance(raw_value, str):
        match = _LEADING_INT_RE.match(raw_value)
        if not match:
            return fallback
        score = int(match.group(1))
    else:
        return fallback
    return max(0, min(100, score))


def _unwrap_single_root(parsed: Any) -> Any:
    if not isinstance(parsed, dict):
        return parsed
    if lookup_field(parsed, "summaryVerdict") is not None or lookup_field(parsed, "oneLineTakeaway") is not None:
        return parsed
    if len(parsed) == 1:
        only_value = next(iter(parsed.values()))
        if isinstance(only_value, dict):
            return only_value
    return parsed


def _coerce_text(value: Any) -> str:
    if isinstance(value, str):
        return value.strip()
    if isinstance(value, list):
        return "\n".join(_item_text(item) for item in value if item is not None)
    return _item_text(value)


def _coerce_text_list(value: Any) -> list[str]:
    items = value if isinstance(value, list) else [value]
    coerced: list[str] = []
    for item in items:
        if item is None:
            continue
        text = _item_text(item)
        if text:
            coerced.append(text)
    return coerced


def _coerce_competitors(value: Any) -> list[dict[str, str]]:
    items = value if isinstance(value, list) else [value]
    competitors: list[dict[str, str]] = []
    for item in items:
        if isinstance(item, dict):
            name = _first_present(item, COMPETITOR_NAME_ALIASES)
            differentiation = _first_present(item, COMPETITOR_DIFFERENTIATION_ALIASES)
            if not name and not differentiation:
                continue
            competitors.append({"name": name, "differentiation": differentiation})
        elif item is not None:
            name = _item_text(item)
            if name:
                competitors.append({"name": name, "differentiation": ""})
    return competitors


def _first_present(item: dict[str, Any], aliases: tuple[str, ...]) -> str:
    lowered = {key.lower(): key for key in item.keys() if isinstance(key, str)}
    for alias in aliases:
        key = lowered.get(alias)
        if key is not None and item[key] not in (None, ""):
            return _item_text(item[key])
    return ""


def _item_text(item: Any) -> str:
    if isinstance(item, str):
        return item.strip()
    if isinstance(item, (dict, list)):
        return json.dumps(item, ensure_ascii=False)
    return str(item)


def _malformed_output_message(raw_text: str) -> str:
    if len(raw_text) > MAX_OUTPUT_EXCERPT_CHARS:
        peek = f"{raw_text[:MAX_OUTPUT_EXCERPT_CHARS]}..."
    else:
        peek = raw_text

    lowered = peek.lower()
    if any(marker in lowered for marker in CLARIFICATION_MARKERS):
        cleaned = peek.replace("```json", "").strip()
        return f'The AI requested more information: "{cleaned}"\n\nPlease check your input and try again.'
    return f'Model returned invalid data format instead of JSON: "{peek.strip()}"'
