from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional

from response_control.core.expertise import ExpertiseLevel, TopicContext
from response_control.core.intent import DetailLevel, Intent

MIN_CHARS = 200
MAX_CHARS = 3000
CHARS_PER_TOKEN = 4
SHORT_CONFIRMATION_MAX_MESSAGE_CHARS = 50
SHORT_CONFIRMATION_CAP_CHARS = 300
EVENING_MULTIPLIER = 0.85

BASE_CHARS: dict[DetailLevel, int] = {
    DetailLevel.ultra_short: 400,
    DetailLevel.concise: 800,
    DetailLevel.moderate: 1500,
    DetailLevel.extensive: 2500,
}

EXPERTISE_MULTIPLIERS: dict[ExpertiseLevel, float] = {
    ExpertiseLevel.novice: 1.0,
    ExpertiseLevel.intermediate: 0.7,
    ExpertiseLevel.expert: 0.5,
}

# (upper bound in hours, multiplier); anything older gets no reduction.
RECENCY_STEPS: tuple[tuple[float, float], ...] = (
    (24.0, 0.4),
    (72.0, 0.6),
    (168.0, 0.8),
)

NO_TRUNCATION_CONSTRAINT = (
    "Never cut a sentence off mid-way. If the budget is tight, say less, but always finish "
    "the last sentence."
)


class TimeOfDay(str, Enum):
    morning = "morning"
    day = "day"
    evening = "evening"


def time_of_day_for_hour(hour: int) -> TimeOfDay:
    if 5 <= hour < 12:
        return TimeOfDay.morning
    if 12 <= hour < 17:
        return TimeOfDay.day
    return TimeOfDay.evening


def time_of_day_for(moment: datetime) -> TimeOfDay:
    return time_of_day_for_hour(moment.hour)


@dataclass(frozen=True)
class BudgetFactors:
    user_message_length: int
    primary_topic: Optional[TopicContext]
    intent: Intent
    detail_level: DetailLevel
    time_of_day: TimeOfDay


@dataclass(frozen=True)
class BudgetResult:
    max_chars: int
    max_tokens: int
    reason: str
    constraints: list[str] = field(default_factory=list)


def round_half_up(value: float) -> int:
    # Non-negative inputs only.
    return int(value + 0.5)


def tokens_for_chars(chars: int) -> int:
    return round_half_up(chars / CHARS_PER_TOKEN)


def recency_multiplier(hours_since_deep_dive: Optional[float]) -> float:
    if hours_since_deep_dive is None:
        return 1.0
    for upper_bound, multiplier in RECENCY_STEPS:
        if hours_since_deep_dive < upper_bound:
            return multiplier
    return 1.0


def _format_multiplier(value: float) -> str:
    return f"x{value:g}"


def calculate_budget(factors: BudgetFactors) -> BudgetResult:
    budget = float(BASE_CHARS[factors.detail_level])
    reasons = [f"base:{factors.detail_level.value}={BASE_CHARS[factors.detail_level]}"]
    constraints: list[str] = []
    primary = factors.primary_topic

    if primary is not None:
        expertise = EXPERTISE_MULTIPLIERS[primary.level]
        if expertise < 1.0:
            budget *= expertise
            reasons.append(f"expertise:{primary.topic}={primary.level.value}({_format_multiplier(expertise)})")
            constraints.append(
                f"The user is at {primary.level.value} level on {primary.topic}: skip foundational "
                "explanations and basics they already know."
            )

        recency = recency_multiplier(primary.hours_since_deep_dive)
        if recency < 1.0:
            hours = int(round(primary.hours_since_deep_dive or 0.0))
            budget *= recency
            reasons.append(f"recency:{hours}h({_format_multiplier(recency)})")
            constraints.append(
                f"{primary.topic} was covered in depth {hours} hours ago: new information only, "
                "do not repeat what was already explained."
            )

    if (
        factors.intent == Intent.confirmation
        and factors.user_message_length < SHORT_CONFIRMATION_MAX_MESSAGE_CHARS
    ):
        if budget > SHORT_CONFIRMATION_CAP_CHARS:
            budget = float(SHORT_CONFIRMATION_CAP_CHARS)
        reasons.append(f"short_confirmation:cap={SHORT_CONFIRMATION_CAP_CHARS}")
        constraints.append("The user only confirmed: max 2-3 sentences, no recap of the previous topic.")

    if factors.time_of_day == TimeOfDay.evening:
        budget *= EVENING_MULTIPLIER
        reasons.append(f"evening({_format_multiplier(EVENING_MULTIPLIER)})")

    max_chars = round_half_up(min(MAX_CHARS, max(MIN_CHARS, budget)))
    if max_chars != round_half_up(budget):
        reasons.append(f"clamp:[{MIN_CHARS},{MAX_CHARS}]")
    constraints.append(NO_TRUNCATION_CONSTRAINT)

    return BudgetResult(
        max_chars=max_chars,
        max_tokens=tokens_for_chars(max_chars),
        reason=" | ".join(reasons),
        constraints=constraints,
    )


DETAIL_LEVEL_INSTRUCTIONS: dict[DetailLevel, str] = {
    DetailLevel.ultra_short: (
        "== RESPONSE CONTROL: ULTRA SHORT ==\n"
        "The user only briefly confirmed or answered.\n"
        "- Max 1-2 sentences (~30-50 words)\n"
        "- Do not repeat the previous topic\n"
        "- Short bridge to the next step or one closing question\n"
        "- No lecture, no explanations"
    ),
    DetailLevel.concise: (
        "== RESPONSE CONTROL: SHORT ==\n"
        "Keep it short and to the point.\n"
        "- Max 3-4 sentences (~80-100 words)\n"
        "- Focus on what matters\n"
        "- One targeted question or recommendation"
    ),
    DetailLevel.moderate: (
        "== RESPONSE CONTROL: NORMAL ==\n"
        "Normal answer length.\n"
        "- About 150-200 words\n"
        "- Structured and informative\n"
        "- Follow-up question when useful"
    ),
    DetailLevel.extensive: (
        "== RESPONSE CONTROL: DETAILED ==\n"
        "The user wants depth.\n"
        "- About 250-350 words\n"
        "- Well-founded explanation with context\n"
        "- Structured with clear points\n"
        "- Scientific basis where relevant"
    ),
}

INTENT_HINTS: dict[Intent, str] = {
    Intent.confirmation: "- The user confirmed. Do not circle back to the old topic.",
    Intent.rejection: "- The user declined. Ask for an alternative or accept it.",
    Intent.emotion: "- Show empathy before offering solutions.",
}


def detail_level_instruction(level: DetailLevel, intent: Intent) -> str:
    instruction = DETAIL_LEVEL_INSTRUCTIONS[level]
    hint = INTENT_HINTS.get(intent)
    if hint:
        instruction = f"{instruction}\n{hint}"
    return instruction
