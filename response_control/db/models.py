from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, declarative_base, mapped_column, relationship

Base = declarative_base()


class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    email: Mapped[str] = mapped_column(String(255), unique=True, index=True, nullable=False)
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)

    ai_config: Mapped["UserAIConfig"] = relationship(
        "UserAIConfig", back_populates="user", uselist=False, cascade="all, delete-orphan"
    )
    topic_contexts: Mapped[list["TopicContextRecord"]] = relationship(
        "TopicContextRecord", back_populates="user", cascade="all, delete-orphan"
    )


class UserAIConfig(Base):
    __tablename__ = "user_ai_configs"
    __table_args__ = (UniqueConstraint("user_id", name="uq_user_ai_configs_user_id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)

    ai_provider: Mapped[str] = mapped_column(String(32), nullable=False)
    ai_utility_model: Mapped[str] = mapped_column(String(128), nullable=False)
    ai_deep_thinker_model: Mapped[str] = mapped_column(String(128), nullable=False)
    encrypted_api_key: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    user: Mapped[User] = relationship("User", back_populates="ai_config")


class TopicContextRecord(Base):
    """Per-user topic counters. Expertise level is derived from mention_count on read."""

    __tablename__ = "topic_contexts"
    __table_args__ = (
        UniqueConstraint("user_id", "topic", name="uq_topic_contexts_user_topic"),
        Index("ix_topic_contexts_user_mentions", "user_id", "mention_count"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    topic: Mapped[str] = mapped_column(String(64), nullable=False)
    mention_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_chars_exchanged: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_deep_dive_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    user: Mapped[User] = relationship("User", back_populates="topic_contexts")
