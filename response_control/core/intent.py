"""Conversation intent classification.

Strategies run in order until one returns an analysis: a rule-based fast path for short
acknowledgements and greetings, one timeout-bounded completion call, and a deterministic
heuristic that always answers.
"""

import logging
import os
import re
from enum import Enum
from typing import Any, Callable, Optional

from pydantic import AliasChoices, BaseModel, Field, field_validator

from response_control.services.llm import (
    AIConfigMissingError,
    CompletionClient,
    LLMRequestError,
    extract_json_object,
)

logger = logging.getLogger("uvicorn.error")

INTENT_LLM_TIMEOUT_MS = int(os.getenv("INTENT_LLM_TIMEOUT_MS", "3000"))
FAST_PATH_MAX_CHARS = 30
NO_PREVIOUS_MESSAGE = "(conversation start - no previous message)"


class Intent(str, Enum):
    confirmation = "confirmation"
    rejection = "rejection"
    question = "question"
    deep_dive = "deep_dive"
    chit_chat = "chit_chat"
    emotion = "emotion"
    command = "command"
    followup = "followup"


class Sentiment(str, Enum):
    positive = "positive"
    neutral = "neutral"
    negative = "negative"
    frustrated = "frustrated"


class DetailLevel(str, Enum):
    ultra_short = "ultra_short"
    concise = "concise"
    moderate = "moderate"
    extensive = "extensive"


def _closed_member(enum_cls: type[Enum], value: Any, default: Enum) -> Enum:
    if isinstance(value, enum_cls):
        return value
    if not isinstance(value, str):
        return default
    normalized = value.strip().lower().replace("-", "_").replace(" ", "_")
    try:
        return enum_cls(normalized)
    except ValueError:
        return default


class ConversationAnalysis(BaseModel):
    """Closed record: unknown or malformed enum values decode to their safe default."""

    intent: Intent = Intent.question
    sentiment: Sentiment = Field(
        default=Sentiment.neutral, validation_alias=AliasChoices("sentiment", "user_sentiment")
    )
    detail_level: DetailLevel = Field(
        default=DetailLevel.moderate,
        validation_alias=AliasChoices("detail_level", "required_detail_level"),
    )
    expects_action: bool = False
    references_previous: bool = False
    reasoning: str = ""

    @field_validator("intent", mode="before")
    @classmethod
    def _intent(cls, value: Any) -> Intent:
        return _closed_member(Intent, value, Intent.question)

    @field_validator("sentiment", mode="before")
    @classmethod
    def _sentiment(cls, value: Any) -> Sentiment:
        return _closed_member(Sentiment, value, Sentiment.neutral)

    @field_validator("detail_level", mode="before")
    @classmethod
    def _detail_level(cls, value: Any) -> DetailLevel:
        return _closed_member(DetailLevel, value, DetailLevel.moderate)

    @field_validator("expects_action", "references_previous", mode="before")
    @classmethod
    def _flag(cls, value: Any) -> bool:
        if isinstance(value, str):
            return value.strip().lower() in {"true", "yes", "ja", "1"}
        return bool(value)

    @field_validator("reasoning", mode="before")
    @classmethod
    def _reasoning(cls, value: Any) -> str:
        if value is None:
            return ""
        return str(value)[:500]


class ClassificationError(RuntimeError):
    pass


CONFIRMATION_WORDS = {
    "ok", "okay", "jo", "ja", "jep", "yep", "yes", "klar", "passt", "gut", "top", "nice",
    "danke", "thx", "thanks", "thank you", "merci", "check", "erledigt", "verstanden",
    "alles klar", "mach ich", "wird gemacht", "roger", "aye", "genau", "stimmt", "richtig",
    "absolut", "definitiv", "sicher", "logo", "got it", "sure", "sounds good",
}

REJECTION_WORDS = {
    "nein", "nee", "ne", "nope", "no", "nicht", "lieber nicht", "eher nicht", "passt nicht",
    "geht nicht", "anders", "not really", "no thanks",
}

GREETING_PATTERN = re.compile(
    r"^(hi|hey|hallo|hello|moin|servus|guten\s*(morgen|tag|abend)|good\s*(morning|evening)|was\s*geht|na)[\s!?.]*$",
    re.IGNORECASE,
)

_TRAILING_PUNCTUATION = re.compile(r"[.!?,]+$")


def normalize_message(text: str) -> str:
    return _TRAILING_PUNCTUATION.sub("", (text or "").strip().lower()).strip()


def _is_confirmation(normalized: str) -> bool:
    if normalized in CONFIRMATION_WORDS or normalized.startswith("ok "):
        return True
    return "passt" in normalized and "nicht" not in normalized


def _is_rejection(normalized: str) -> bool:
    if normalized in REJECTION_WORDS:
        return True
    return "nicht" in normalized and "?" not in normalized


def fast_path_analysis(text: str) -> Optional[ConversationAnalysis]:
    normalized = normalize_message(text)
    if len(normalized) >= FAST_PATH_MAX_CHARS:
        return None
    if _is_confirmation(normalized):
        return ConversationAnalysis(
            intent=Intent.confirmation,
            sentiment=Sentiment.positive,
            detail_level=DetailLevel.ultra_short,
            references_previous=True,
            reasoning="Fast-path: confirmation detected",
        )
    if _is_rejection(normalized):
        return ConversationAnalysis(
            intent=Intent.rejection,
            sentiment=Sentiment.neutral,
            detail_level=DetailLevel.concise,
            references_previous=True,
            reasoning="Fast-path: rejection detected",
        )
    if GREETING_PATTERN.match(normalized):
        return ConversationAnalysis(
            intent=Intent.chit_chat,
            sentiment=Sentiment.positive,
            detail_level=DetailLevel.concise,
            references_previous=False,
            reasoning="Fast-path: greeting detected",
        )
    return None


def fallback_analysis(text: str) -> ConversationAnalysis:
    length = len(text or "")
    has_question = "?" in (text or "")
    if length < 20 and not has_question:
        return ConversationAnalysis(
            intent=Intent.confirmation,
            detail_level=DetailLevel.concise,
            references_previous=True,
            reasoning="Fallback: short non-question",
        )
    if has_question and length > 50:
        return ConversationAnalysis(
            intent=Intent.question,
            detail_level=DetailLevel.moderate,
            reasoning="Fallback: long question",
        )
    return ConversationAnalysis(
        intent=Intent.question,
        detail_level=DetailLevel.moderate,
        reasoning="Fallback: default analysis",
    )


CLASSIFICATION_PROMPT = """You are the conversation analyzer for a longevity and fitness coach.
Your only job: classify what the user wants, given the coach's previous message.
Users write in German or English.

PREVIOUS COACH MESSAGE:
{last_bot_message}

USER REPLIES:
"{current_message}"

ANALYZE:
1. Does the user respond to the previous message?
2. What is the primary intent?
3. How detailed should the answer be?

INTENTS:
- confirmation: accepts/acknowledges ("ok", "ja", "passt", "danke") -> ultra_short
- rejection: declines/disagrees ("nein", "passt nicht", "anders") -> concise
- question: simple question -> moderate
- deep_dive: wants details or explanation ("erkläre", "warum", "wie funktioniert") -> extensive
- chit_chat: small talk or greeting -> concise
- emotion: mainly expresses feelings ("frustriert", "motiviert") -> moderate
- command: asks to save, create, log or calculate something -> moderate
- followup: short follow-up on the previous topic -> concise

DETAIL LEVELS:
- ultra_short: 1-2 sentences
- concise: 3-4 sentences
- moderate: about 150-200 words
- extensive: about 250-350 words

RULES:
- "ok ne passt" after a question is a confirmation, not a question.
- Short answers to coach questions have references_previous=true.
- When unsure choose moderate.

Reply with valid JSON only, no markdown:
{"intent":"...","sentiment":"positive|neutral|negative|frustrated","detail_level":"...","expects_action":false,"references_previous":true,"reasoning":"..."}"""


def build_classification_prompt(current_message: str, last_bot_message: Optional[str]) -> str:
    return CLASSIFICATION_PROMPT.replace(
        "{last_bot_message}", (last_bot_message or "").strip() or NO_PREVIOUS_MESSAGE
    ).replace("{current_message}", current_message)


def decode_analysis(raw_text: str) -> ConversationAnalysis:
    try:
        payload = extract_json_object(raw_text)
    except ValueError:
        logger.warning("intent_llm_unparseable raw=%s", (raw_text or "")[:200])
        return ConversationAnalysis(reasoning="Parse failed, using default")
    analysis = ConversationAnalysis.model_validate(payload)
    if not analysis.reasoning:
        analysis.reasoning = "LLM analysis"
    return analysis


Strategy = Callable[[int, str, Optional[str]], Optional[ConversationAnalysis]]


class IntentClassifier:
    def __init__(
        self,
        completion_client: Optional[CompletionClient],
        timeout_ms: int = INTENT_LLM_TIMEOUT_MS,
        fallback_on_error: bool = True,
    ) -> None:
        self.completion_client = completion_client
        self.timeout_ms = timeout_ms
        self.fallback_on_error = fallback_on_error

    def strategies(self) -> list[tuple[str, Strategy]]:
        return [
            ("fast_path", lambda _user_id, message, _last: fast_path_analysis(message)),
            ("llm", self._llm_analysis),
            ("fallback", lambda _user_id, message, _last: fallback_analysis(message)),
        ]

    def classify(
        self, user_id: int, current_message: str, last_bot_message: Optional[str] = None
    ) -> ConversationAnalysis:
        for stage, strategy in self.strategies():
            analysis = strategy(user_id, current_message, last_bot_message)
            if analysis is not None:
                logger.info(
                    "intent_classified user_id=%s stage=%s intent=%s detail_level=%s",
                    user_id,
                    stage,
                    analysis.intent.value,
                    analysis.detail_level.value,
                )
                return analysis
        return fallback_analysis(current_message)

    def _llm_analysis(
        self, user_id: int, current_message: str, last_bot_message: Optional[str]
    ) -> Optional[ConversationAnalysis]:
        if self.completion_client is None:
            logger.warning("intent_llm_unavailable user_id=%s detail=no completion client", user_id)
            return None
        prompt = build_classification_prompt(current_message, last_bot_message)
        try:
            raw = self.completion_client.complete(user_id, prompt, self.timeout_ms / 1000.0)
        except AIConfigMissingError as exc:
            logger.warning("intent_llm_unconfigured user_id=%s detail=%s", user_id, str(exc))
            return None
        except Exception as exc:
            timed_out = isinstance(exc, TimeoutError) or (
                isinstance(exc, LLMRequestError) and exc.timed_out
            )
            if timed_out:
                logger.warning("intent_llm_timeout user_id=%s timeout_ms=%s", user_id, self.timeout_ms)
            else:
                logger.warning("intent_llm_error user_id=%s detail=%s", user_id, str(exc)[:220])
            if not self.fallback_on_error:
                raise ClassificationError(f"Intent classification failed: {str(exc)[:220]}") from exc
            return None
        return decode_analysis(raw)
