import logging
from dataclasses import asdict
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, status
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from response_control.api.auth import get_admin_user, get_current_user
from response_control.core.budget import TimeOfDay, time_of_day_for_hour
from response_control.core.expertise import (
    ExpertiseLevel,
    SqlTopicHistoryStore,
    TopicContext,
    TopicExpertiseTracker,
    TopicHistoryStore,
)
from response_control.core.intent import ConversationAnalysis, IntentClassifier
from response_control.core.model_selection import ModelTier
from response_control.core.topics import extract_topics, ordered_topics
from response_control.db.models import User
from response_control.db.session import SessionLocal, get_db
from response_control.services.llm import CompletionClient, RealCompletionClient, resolve_model_slots
from response_control.services.pipeline import ResponseControlPipeline

router = APIRouter(prefix="/response-control", tags=["response-control"])
logger = logging.getLogger("uvicorn.error")


class PlanRequest(BaseModel):
    message: str = Field(min_length=1, max_length=4000)
    last_bot_message: Optional[str] = Field(default=None, max_length=20000)
    local_hour: Optional[int] = Field(default=None, ge=0, le=23)


class TopicItem(BaseModel):
    topic: str
    level: ExpertiseLevel
    mention_count: int
    total_chars_exchanged: int
    last_deep_dive_at: Optional[datetime] = None
    hours_since_deep_dive: Optional[float] = None


class BudgetItem(BaseModel):
    max_chars: int
    max_tokens: int
    reason: str
    constraints: list[str]


class ModelChoiceItem(BaseModel):
    tier: ModelTier
    model: Optional[str] = None
    max_tokens: int
    reason: str


class PlanResponse(BaseModel):
    analysis: ConversationAnalysis
    topics: list[str]
    topic_contexts: list[TopicItem]
    primary_topic: Optional[TopicItem] = None
    time_of_day: TimeOfDay
    budget: BudgetItem
    model_choice: ModelChoiceItem
    instruction: str


class OutcomeRequest(BaseModel):
    message: str = Field(min_length=1, max_length=4000)
    reply_length: int = Field(ge=0, le=200000)


class OutcomeResponse(BaseModel):
    status: str
    topics: list[str]


class TopicListResponse(BaseModel):
    items: list[TopicItem]


class TopicStatsItem(BaseModel):
    topic: str
    total_mentions: int
    total_chars_exchanged: int
    avg_chars: int
    novice_users: int
    intermediate_users: int
    expert_users: int


class TopicStatsResponse(BaseModel):
    items: list[TopicStatsItem]
    total_mentions: int
    total_users: int


def get_completion_client(db: Session = Depends(get_db)) -> CompletionClient:
    return RealCompletionClient(db)


def get_topic_store() -> TopicHistoryStore:
    return SqlTopicHistoryStore(SessionLocal)


def get_pipeline(
    completion_client: CompletionClient = Depends(get_completion_client),
    store: TopicHistoryStore = Depends(get_topic_store),
    db: Session = Depends(get_db),
) -> ResponseControlPipeline:
    return ResponseControlPipeline(
        tracker=TopicExpertiseTracker(store),
        classifier=IntentClassifier(completion_client),
        model_slots=lambda user_id: resolve_model_slots(db, user_id),
    )


def _topic_item(context: TopicContext) -> TopicItem:
    hours = context.hours_since_deep_dive
    return TopicItem(
        topic=context.topic,
        level=context.level,
        mention_count=context.mention_count,
        total_chars_exchanged=context.total_chars_exchanged,
        last_deep_dive_at=context.last_deep_dive_at,
        hours_since_deep_dive=round(hours, 2) if hours is not None else None,
    )


@router.post("/plan", response_model=PlanResponse)
def plan_response(
    payload: PlanRequest,
    user: User = Depends(get_current_user),
    pipeline: ResponseControlPipeline = Depends(get_pipeline),
) -> PlanResponse:
    hour = payload.local_hour if payload.local_hour is not None else datetime.now().hour
    time_of_day = time_of_day_for_hour(hour)
    try:
        plan = pipeline.plan(
            user.id,
            payload.message,
            payload.last_bot_message,
            time_of_day=time_of_day,
        )
    except Exception as exc:
        logger.exception("response_plan_unhandled_error user_id=%s detail=%s", user.id, str(exc))
        raise HTTPException(status_code=500, detail="Response planning failed")

    return PlanResponse(
        analysis=plan.analysis,
        topics=plan.topics,
        topic_contexts=[_topic_item(context) for context in plan.topic_contexts.values()],
        primary_topic=_topic_item(plan.primary_topic) if plan.primary_topic else None,
        time_of_day=time_of_day,
        budget=BudgetItem(
            max_chars=plan.budget.max_chars,
            max_tokens=plan.budget.max_tokens,
            reason=plan.budget.reason,
            constraints=list(plan.budget.constraints),
        ),
        model_choice=ModelChoiceItem(
            tier=plan.model_choice.tier,
            model=plan.model_choice.model,
            max_tokens=plan.model_choice.max_tokens,
            reason=plan.model_choice.reason,
        ),
        instruction=plan.instruction,
    )


@router.post("/outcome", response_model=OutcomeResponse, status_code=status.HTTP_202_ACCEPTED)
def record_outcome(
    payload: OutcomeRequest,
    background_tasks: BackgroundTasks,
    user: User = Depends(get_current_user),
    pipeline: ResponseControlPipeline = Depends(get_pipeline),
) -> OutcomeResponse:
    # Runs after the response is sent; the reply is never held up by topic statistics.
    background_tasks.add_task(pipeline.record_outcome, user.id, payload.message, payload.reply_length)
    return OutcomeResponse(status="accepted", topics=ordered_topics(extract_topics(payload.message)))


@router.get("/topics", response_model=TopicListResponse)
def list_topics(
    user: User = Depends(get_current_user),
    store: TopicHistoryStore = Depends(get_topic_store),
) -> TopicListResponse:
    tracker = TopicExpertiseTracker(store)
    return TopicListResponse(items=[_topic_item(context) for context in tracker.list_topics(user.id)])


@router.get("/topics/stats", response_model=TopicStatsResponse)
def topic_stats(
    admin: User = Depends(get_admin_user),
    store: TopicHistoryStore = Depends(get_topic_store),
) -> TopicStatsResponse:
    report = TopicExpertiseTracker(store).topic_stats()
    logger.info("topic_stats_read admin_id=%s topics=%s", admin.id, len(report.topics))
    return TopicStatsResponse(
        items=[TopicStatsItem(**asdict(item)) for item in report.topics],
        total_mentions=report.total_mentions,
        total_users=report.total_users,
    )
