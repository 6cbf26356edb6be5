from dataclasses import dataclass
from enum import Enum
from typing import Optional

from response_control.core.intent import ConversationAnalysis, DetailLevel, Intent
from response_control.services.llm import ModelSlots


class ModelTier(str, Enum):
    utility = "utility"
    deep_thinker = "deep_thinker"


@dataclass(frozen=True)
class ModelChoice:
    tier: ModelTier
    model: Optional[str]
    max_tokens: int
    reason: str


def _choice(tier: ModelTier, max_tokens: int, reason: str, slots: Optional[ModelSlots]) -> ModelChoice:
    model = None
    if slots is not None:
        model = slots.utility_model if tier == ModelTier.utility else slots.deep_thinker_model
    return ModelChoice(tier=tier, model=model, max_tokens=max_tokens, reason=reason)


def select_model(analysis: ConversationAnalysis, slots: Optional[ModelSlots] = None) -> ModelChoice:
    if analysis.detail_level == DetailLevel.ultra_short or analysis.intent in {
        Intent.confirmation,
        Intent.chit_chat,
    }:
        return _choice(ModelTier.utility, 300, "Simple acknowledgment - utility model for speed", slots)

    if analysis.detail_level == DetailLevel.concise and analysis.intent != Intent.deep_dive:
        return _choice(ModelTier.utility, 600, "Concise response - utility model sufficient", slots)

    if analysis.detail_level == DetailLevel.extensive or analysis.intent == Intent.deep_dive:
        return _choice(ModelTier.deep_thinker, 4000, "Deep analysis required - deep thinker for quality", slots)

    return _choice(ModelTier.deep_thinker, 2500, "Standard response - deep thinker for quality", slots)
