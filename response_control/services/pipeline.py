import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

from response_control.core.budget import (
    BudgetFactors,
    BudgetResult,
    TimeOfDay,
    calculate_budget,
    detail_level_instruction,
    time_of_day_for,
)
from response_control.core.expertise import TopicContext, TopicExpertiseTracker, find_primary_topic
from response_control.core.intent import ConversationAnalysis, IntentClassifier
from response_control.core.model_selection import ModelChoice, select_model
from response_control.core.topics import extract_topics, ordered_topics
from response_control.services.llm import ModelSlots

logger = logging.getLogger("uvicorn.error")


@dataclass(frozen=True)
class ResponsePlan:
    analysis: ConversationAnalysis
    topics: list[str]
    topic_contexts: dict[str, TopicContext]
    primary_topic: Optional[TopicContext]
    budget: BudgetResult
    model_choice: ModelChoice
    instruction: str


class ResponseControlPipeline:
    """Per-message response control: topics, expertise, intent, budget and model tier.

    ``plan`` sits on the request path. ``record_outcome`` runs after the reply was sent and
    never raises; a lost call only loses topic statistics.
    """

    def __init__(
        self,
        tracker: TopicExpertiseTracker,
        classifier: IntentClassifier,
        model_slots: Optional[Callable[[int], Optional[ModelSlots]]] = None,
    ) -> None:
        self.tracker = tracker
        self.classifier = classifier
        self.model_slots = model_slots

    def plan(
        self,
        user_id: int,
        current_message: str,
        last_bot_message: Optional[str] = None,
        now: Optional[datetime] = None,
        time_of_day: Optional[TimeOfDay] = None,
    ) -> ResponsePlan:
        moment = now or datetime.now(timezone.utc)
        topics = ordered_topics(extract_topics(current_message))
        contexts = self.tracker.load(user_id, topics, now=moment)
        primary = find_primary_topic(contexts)
        analysis = self.classifier.classify(user_id, current_message, last_bot_message)

        factors = BudgetFactors(
            user_message_length=len(current_message),
            primary_topic=primary,
            intent=analysis.intent,
            detail_level=analysis.detail_level,
            time_of_day=time_of_day or time_of_day_for(now or datetime.now()),
        )
        budget = calculate_budget(factors)
        slots = self.model_slots(user_id) if self.model_slots else None
        model_choice = select_model(analysis, slots)

        logger.info(
            "response_plan user_id=%s topics=%s primary=%s intent=%s max_chars=%s tier=%s reason=%s",
            user_id,
            topics,
            primary.topic if primary else None,
            analysis.intent.value,
            budget.max_chars,
            model_choice.tier.value,
            budget.reason,
        )
        return ResponsePlan(
            analysis=analysis,
            topics=topics,
            topic_contexts=contexts,
            primary_topic=primary,
            budget=budget,
            model_choice=model_choice,
            instruction=detail_level_instruction(analysis.detail_level, analysis.intent),
        )

    def classify_and_budget(
        self, user_id: int, current_message: str, last_bot_message: Optional[str] = None
    ) -> tuple[ConversationAnalysis, BudgetResult, ModelChoice]:
        plan = self.plan(user_id, current_message, last_bot_message)
        return plan.analysis, plan.budget, plan.model_choice

    def record_outcome(self, user_id: int, current_message: str, reply_length: int) -> None:
        topics = extract_topics(current_message)
        if not topics:
            return
        self.tracker.update(user_id, topics, reply_length)
