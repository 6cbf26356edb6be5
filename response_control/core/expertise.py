import logging
import math
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Iterable, Optional, Protocol

from sqlalchemy import and_, case, distinct, func
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from response_control.core.topics import ordered_topics
from response_control.db.models import TopicContextRecord

logger = logging.getLogger("uvicorn.error")

EXPERTISE_INTERMEDIATE_MENTIONS = int(os.getenv("EXPERTISE_INTERMEDIATE_MENTIONS", "3"))
EXPERTISE_EXPERT_MENTIONS = int(os.getenv("EXPERTISE_EXPERT_MENTIONS", "10"))
DEEP_DIVE_REPLY_CHARS = int(os.getenv("DEEP_DIVE_REPLY_CHARS", "1500"))


class ExpertiseLevel(str, Enum):
    novice = "novice"
    intermediate = "intermediate"
    expert = "expert"


@dataclass(frozen=True)
class ExpertiseThresholds:
    intermediate_mentions: int = EXPERTISE_INTERMEDIATE_MENTIONS
    expert_mentions: int = EXPERTISE_EXPERT_MENTIONS

    def level_for(self, mention_count: int) -> ExpertiseLevel:
        if mention_count >= self.expert_mentions:
            return ExpertiseLevel.expert
        if mention_count >= self.intermediate_mentions:
            return ExpertiseLevel.intermediate
        return ExpertiseLevel.novice


@dataclass(frozen=True)
class TopicRow:
    topic: str
    mention_count: int
    total_chars_exchanged: int
    last_deep_dive_at: Optional[datetime] = None


@dataclass(frozen=True)
class TopicContext:
    topic: str
    level: ExpertiseLevel
    mention_count: int
    total_chars_exchanged: int
    last_deep_dive_at: Optional[datetime]
    hours_since_deep_dive: Optional[float]


@dataclass(frozen=True)
class TopicStats:
    topic: str
    total_mentions: int
    total_chars_exchanged: int
    avg_chars: int
    novice_users: int
    intermediate_users: int
    expert_users: int


@dataclass(frozen=True)
class TopicStatsReport:
    topics: list[TopicStats]
    total_mentions: int
    total_users: int


def average_chars(total_chars: int, mentions: int) -> int:
    if mentions <= 0:
        return 0
    return int(total_chars / mentions + 0.5)


class TopicHistoryStore(Protocol):
    def fetch(self, user_id: int, topics: list[str]) -> list[TopicRow]:
        ...

    def increment(
        self,
        user_id: int,
        topics: list[str],
        chars_per_topic: int,
        deep_dive_at: Optional[datetime],
    ) -> None:
        ...

    def list_for_user(self, user_id: int) -> list[TopicRow]:
        ...

    def aggregate(self, thresholds: ExpertiseThresholds) -> list[TopicStats]:
        ...

    def count_users(self) -> int:
        ...


def _to_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _row_from_record(record: TopicContextRecord) -> TopicRow:
    return TopicRow(
        topic=record.topic,
        mention_count=int(record.mention_count or 0),
        total_chars_exchanged=int(record.total_chars_exchanged or 0),
        last_deep_dive_at=_to_utc(record.last_deep_dive_at) if record.last_deep_dive_at else None,
    )


class SqlTopicHistoryStore:
    """Topic counters in the ``topic_contexts`` table.

    Every increment is a single ``INSERT ... ON CONFLICT DO UPDATE`` statement, so concurrent
    writers for the same (user, topic) serialize inside SQLite and never lose an update.
    Each call opens its own session because writes run after the request session is closed.
    """

    def __init__(self, session_factory: Callable[[], Session]) -> None:
        self.session_factory = session_factory

    def fetch(self, user_id: int, topics: list[str]) -> list[TopicRow]:
        if not topics:
            return []
        db = self.session_factory()
        try:
            records = (
                db.query(TopicContextRecord)
                .filter(TopicContextRecord.user_id == user_id, TopicContextRecord.topic.in_(topics))
                .all()
            )
            return [_row_from_record(record) for record in records]
        finally:
            db.close()

    def increment(
        self,
        user_id: int,
        topics: list[str],
        chars_per_topic: int,
        deep_dive_at: Optional[datetime],
    ) -> None:
        now = datetime.now(timezone.utc)
        db = self.session_factory()
        try:
            for topic in topics:
                stmt = sqlite_insert(TopicContextRecord).values(
                    user_id=user_id,
                    topic=topic,
                    mention_count=1,
                    total_chars_exchanged=chars_per_topic,
                    last_deep_dive_at=deep_dive_at,
                    created_at=now,
                    updated_at=now,
                )
                changes = {
                    "mention_count": TopicContextRecord.mention_count + 1,
                    "total_chars_exchanged": TopicContextRecord.total_chars_exchanged + chars_per_topic,
                    "updated_at": now,
                }
                if deep_dive_at is not None:
                    changes["last_deep_dive_at"] = deep_dive_at
                db.execute(stmt.on_conflict_do_update(index_elements=["user_id", "topic"], set_=changes))
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def list_for_user(self, user_id: int) -> list[TopicRow]:
        db = self.session_factory()
        try:
            records = (
                db.query(TopicContextRecord)
                .filter(TopicContextRecord.user_id == user_id)
                .order_by(TopicContextRecord.mention_count.desc(), TopicContextRecord.topic.asc())
                .all()
            )
            return [_row_from_record(record) for record in records]
        finally:
            db.close()

    def aggregate(self, thresholds: ExpertiseThresholds) -> list[TopicStats]:
        mentions = TopicContextRecord.mention_count
        is_expert = mentions >= thresholds.expert_mentions
        is_intermediate = and_(mentions < thresholds.expert_mentions, mentions >= thresholds.intermediate_mentions)
        is_novice = and_(mentions < thresholds.expert_mentions, mentions < thresholds.intermediate_mentions)
        db = self.session_factory()
        try:
            rows = (
                db.query(
                    TopicContextRecord.topic,
                    func.sum(mentions),
                    func.sum(TopicContextRecord.total_chars_exchanged),
                    func.sum(case((is_novice, 1), else_=0)),
                    func.sum(case((is_intermediate, 1), else_=0)),
                    func.sum(case((is_expert, 1), else_=0)),
                )
                .group_by(TopicContextRecord.topic)
                .all()
            )
        finally:
            db.close()
        return [
            TopicStats(
                topic=topic,
                total_mentions=int(total_mentions or 0),
                total_chars_exchanged=int(total_chars or 0),
                avg_chars=average_chars(int(total_chars or 0), int(total_mentions or 0)),
                novice_users=int(novice or 0),
                intermediate_users=int(intermediate or 0),
                expert_users=int(expert or 0),
            )
            for topic, total_mentions, total_chars, novice, intermediate, expert in rows
        ]

    def count_users(self) -> int:
        db = self.session_factory()
        try:
            return int(db.query(func.count(distinct(TopicContextRecord.user_id))).scalar() or 0)
        finally:
            db.close()


def build_topic_context(
    row: TopicRow, thresholds: ExpertiseThresholds, now: Optional[datetime] = None
) -> TopicContext:
    hours_since: Optional[float] = None
    if row.last_deep_dive_at is not None:
        reference = _to_utc(now or datetime.now(timezone.utc))
        elapsed = reference - _to_utc(row.last_deep_dive_at)
        hours_since = max(0.0, elapsed.total_seconds() / 3600.0)
    return TopicContext(
        topic=row.topic,
        level=thresholds.level_for(row.mention_count),
        mention_count=row.mention_count,
        total_chars_exchanged=row.total_chars_exchanged,
        last_deep_dive_at=row.last_deep_dive_at,
        hours_since_deep_dive=hours_since,
    )


def find_primary_topic(contexts: dict[str, TopicContext]) -> Optional[TopicContext]:
    primary: Optional[TopicContext] = None
    for context in contexts.values():
        # Strictly greater keeps the first-inserted topic on ties.
        if primary is None or context.mention_count > primary.mention_count:
            primary = context
    return primary


class TopicExpertiseTracker:
    def __init__(
        self,
        store: TopicHistoryStore,
        thresholds: Optional[ExpertiseThresholds] = None,
        deep_dive_chars: int = DEEP_DIVE_REPLY_CHARS,
    ) -> None:
        self.store = store
        self.thresholds = thresholds or ExpertiseThresholds()
        self.deep_dive_chars = deep_dive_chars

    def load(
        self, user_id: int, topics: Iterable[str], now: Optional[datetime] = None
    ) -> dict[str, TopicContext]:
        wanted = ordered_topics(topics)
        if not wanted:
            return {}
        try:
            rows = self.store.fetch(user_id, wanted)
        except Exception as exc:
            logger.warning("topic_history_read_failed user_id=%s topics=%s detail=%s", user_id, wanted, str(exc))
            return {}
        by_topic = {row.topic: row for row in rows}
        return {
            topic: build_topic_context(by_topic[topic], self.thresholds, now)
            for topic in wanted
            if topic in by_topic
        }

    def update(
        self, user_id: int, topics: Iterable[str], reply_length: int, now: Optional[datetime] = None
    ) -> None:
        wanted = ordered_topics(topics)
        if not wanted:
            return
        reply_length = max(0, int(reply_length))
        chars_per_topic = math.ceil(reply_length / len(wanted))
        deep_dive_at = None
        if reply_length > self.deep_dive_chars:
            deep_dive_at = _to_utc(now or datetime.now(timezone.utc))
        try:
            self.store.increment(user_id, wanted, chars_per_topic, deep_dive_at)
        except Exception as exc:
            logger.warning(
                "topic_history_write_failed user_id=%s topics=%s reply_length=%s detail=%s",
                user_id,
                wanted,
                reply_length,
                str(exc),
            )
            return
        logger.info(
            "topic_history_updated user_id=%s topics=%s chars_per_topic=%s deep_dive=%s",
            user_id,
            wanted,
            chars_per_topic,
            deep_dive_at is not None,
        )

    def list_topics(self, user_id: int, now: Optional[datetime] = None) -> list[TopicContext]:
        rows = self.store.list_for_user(user_id)
        return [build_topic_context(row, self.thresholds, now) for row in rows]

    def topic_stats(self) -> TopicStatsReport:
        """Cross-user usage per topic, most mentioned first; levels follow this tracker's thresholds."""
        stats = sorted(self.store.aggregate(self.thresholds), key=lambda item: (-item.total_mentions, item.topic))
        return TopicStatsReport(
            topics=stats,
            total_mentions=sum(item.total_mentions for item in stats),
            total_users=self.store.count_users(),
        )
