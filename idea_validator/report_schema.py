from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any
from uuid import uuid4

ATTACHMENT_ONLY_IDEA = "Attachment Analysis"


class Verdict(str, Enum):
    PROMISING = "Promising"
    RISKY = "Risky"
    NEEDS_REFINEMENT = "Needs Refinement"
    UNKNOWN = "Unknown"


@dataclass(frozen=True)
class Competitor:
    name: str
    differentiation: str = ""

    def to_dict(self) -> dict[str, str]:
        return {"name": self.name, "differentiation": self.differentiation}


@dataclass(frozen=True)
class ValidationReport:
    """An immutable, fully populated validation report.

    Every content field is always present; the normalizer fills gaps with
    defaults before a report is assembled.
    """

    id: str
    created_at: int
    original_idea: str
    summary_verdict: Verdict
    one_line_takeaway: str
    market_reality: str
    why_people_pay: str
    viability_score: int
    pros: tuple[str, ...] = field(default_factory=tuple)
    cons: tuple[str, ...] = field(default_factory=tuple)
    competitors: tuple[Competitor, ...] = field(default_factory=tuple)
    monetization_strategies: tuple[str, ...] = field(default_factory=tuple)
    next_steps: tuple[str, ...] = field(default_factory=tuple)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "createdAt": self.created_at,
            "originalIdea": self.original_idea,
            "summaryVerdict": self.summary_verdict.value,
            "oneLineTakeaway": self.one_line_takeaway,
            "marketReality": self.market_reality,
            "pros": list(self.pros),
            "cons": list(self.cons),
            "competitors": [competitor.to_dict() for competitor in self.competitors],
            "monetizationStrategies": list(self.monetization_strategies),
            "whyPeoplePay": self.why_people_pay,
            "viabilityScore": self.viability_score,
            "nextSteps": list(self.next_steps),
        }


def assemble_report(fields: dict[str, Any], *, original_idea: str | None) -> ValidationReport:
    """Attach identity, timestamp and the caller's idea to normalized fields."""
    idea = (original_idea or "").strip()
    return ValidationReport(
        id=str(uuid4()),
        created_at=_now_millis(),
        original_idea=idea or ATTACHMENT_ONLY_IDEA,
        summary_verdict=Verdict(fields["summaryVerdict"]),
        one_line_takeaway=fields["oneLineTakeaway"],
        market_reality=fields["marketReality"],
        pros=tuple(fields["pros"]),
        cons=tuple(fields["cons"]),
        competitors=tuple(
            Competitor(name=item["name"], differentiation=item["differentiation"])
            for item in fields["competitors"]
        ),
        monetization_strategies=tuple(fields["monetizationStrategies"]),
        why_people_pay=fields["whyPeoplePay"],
        viability_score=fields["viabilityScore"],
        next_steps=tuple(fields["nextSteps"]),
    )


def build_mock_report_fields() -> dict[str, Any]:
    return {
        "summaryVerdict": Verdict.NEEDS_REFINEMENT.value,
        "oneLineTakeaway": "A workable starting point that needs a sharper target customer before you build.",
        "marketReality": (
            "This report was generated offline because no AI provider is configured. "
            "Configure a provider key to receive a full market analysis."
        ),
        "pros": [
            "Addresses a problem people already spend time on.",
            "Can be tested cheaply with a landing page.",
        ],
        "cons": [
            "Target customer is not yet specific.",
            "Existing tools may already cover the core need.",
        ],
        "competitors": [
            {"name": "Spreadsheets and manual workflows", "differentiation": "Free, flexible and already familiar."},
        ],
        "monetizationStrategies": ["Monthly subscription", "Paid pilot for early customers"],
        "whyPeoplePay": "People pay to save time on a task they repeat every week.",
        "viabilityScore": 50,
        "nextSteps": [
            "Interview ten people who have this problem.",
            "Write down what they use today and what it costs them.",
            "Put up a landing page and measure sign-ups.",
        ],
    }


def _now_millis() -> int:
    return int(time.time() * 1000)
