import threading
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Callable, Optional
from uuid import uuid4

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

from response_control.api.response_control import get_completion_client
from response_control.core.expertise import (
    ExpertiseThresholds,
    SqlTopicHistoryStore,
    TopicRow,
    TopicStats,
    average_chars,
)
from response_control.core.security import encrypt_api_key, get_password_hash
from response_control.db.models import User, UserAIConfig
from response_control.db.session import SessionLocal, configure_database, create_tables
from response_control.services.llm import AIConfigMissingError, LLMRequestError


class FakeScenario(str, Enum):
    OK_DEEP_DIVE = "OK_DEEP_DIVE"
    OK_COMMAND_WRAPPED = "OK_COMMAND_WRAPPED"
    LEGACY_FIELDS = "LEGACY_FIELDS"
    INVALID_ENUMS = "INVALID_ENUMS"
    MALFORMED_JSON = "MALFORMED_JSON"
    TIMEOUT = "TIMEOUT"
    HTTP_ERROR = "HTTP_ERROR"
    NO_CONFIG = "NO_CONFIG"


SCENARIO_COMPLETIONS: dict[FakeScenario, str] = {
    FakeScenario.OK_DEEP_DIVE: (
        '{"intent":"deep_dive","sentiment":"neutral","detail_level":"extensive",'
        '"expects_action":false,"references_previous":false,"reasoning":"Wants the basics explained"}'
    ),
    FakeScenario.OK_COMMAND_WRAPPED: (
        "Sure, here is my analysis:\n```json\n"
        '{"intent":"command","sentiment":"positive","detail_level":"moderate",'
        '"expects_action":true,"references_previous":true,"reasoning":"Asks to log a meal"}\n'
        "```\nLet me know if you need {more}."
    ),
    FakeScenario.LEGACY_FIELDS: (
        '{"intent":"emotion","user_sentiment":"frustrated","required_detail_level":"concise",'
        '"expects_action":false,"references_previous":false,"reasoning":"Venting"}'
    ),
    FakeScenario.INVALID_ENUMS: (
        '{"intent":"rant","sentiment":"furious","detail_level":"novel",'
        '"expects_action":"yes","references_previous":null}'
    ),
    FakeScenario.MALFORMED_JSON: "intent: question, detail: huge, sorry no json today",
}


class FakeCompletionClient:
    def __init__(self, scenario: FakeScenario) -> None:
        self.scenario = scenario
        self.calls: list[tuple[int, str, float]] = []

    def complete(self, user_id: int, prompt: str, timeout_seconds: float) -> str:
        self.calls.append((user_id, prompt, timeout_seconds))
        if self.scenario == FakeScenario.TIMEOUT:
            raise LLMRequestError(
                provider="openai", model="gpt-4.1-mini", message="simulated timeout", timed_out=True
            )
        if self.scenario == FakeScenario.HTTP_ERROR:
            raise LLMRequestError(
                provider="openai", model="gpt-4.1-mini", message="simulated outage", status_code=503
            )
        if self.scenario == FakeScenario.NO_CONFIG:
            raise AIConfigMissingError("AI config missing")
        if self.scenario in SCENARIO_COMPLETIONS:
            return SCENARIO_COMPLETIONS[self.scenario]
        raise ValueError("Unknown fake scenario")


class InMemoryTopicHistoryStore:
    def __init__(self) -> None:
        self.rows: dict[tuple[int, str], TopicRow] = {}
        self.increment_calls = 0
        self._lock = threading.Lock()

    def seed(
        self,
        user_id: int,
        topic: str,
        mention_count: int,
        total_chars_exchanged: int = 0,
        last_deep_dive_at: Optional[datetime] = None,
    ) -> None:
        self.rows[(user_id, topic)] = TopicRow(topic, mention_count, total_chars_exchanged, last_deep_dive_at)

    def fetch(self, user_id: int, topics: list[str]) -> list[TopicRow]:
        return [self.rows[(user_id, topic)] for topic in topics if (user_id, topic) in self.rows]

    def increment(
        self,
        user_id: int,
        topics: list[str],
        chars_per_topic: int,
        deep_dive_at: Optional[datetime],
    ) -> None:
        with self._lock:
            self.increment_calls += 1
            for topic in topics:
                current = self.rows.get((user_id, topic), TopicRow(topic, 0, 0, None))
                self.rows[(user_id, topic)] = TopicRow(
                    topic=topic,
                    mention_count=current.mention_count + 1,
                    total_chars_exchanged=current.total_chars_exchanged + chars_per_topic,
                    last_deep_dive_at=deep_dive_at or current.last_deep_dive_at,
                )

    def list_for_user(self, user_id: int) -> list[TopicRow]:
        rows = [row for (owner, _), row in self.rows.items() if owner == user_id]
        return sorted(rows, key=lambda row: (-row.mention_count, row.topic))

    def aggregate(self, thresholds: ExpertiseThresholds) -> list[TopicStats]:
        grouped: dict[str, list[TopicRow]] = {}
        for (_, topic), row in self.rows.items():
            grouped.setdefault(topic, []).append(row)
        stats = []
        for topic, rows in grouped.items():
            mentions = sum(row.mention_count for row in rows)
            chars = sum(row.total_chars_exchanged for row in rows)
            levels = [thresholds.level_for(row.mention_count).value for row in rows]
            stats.append(
                TopicStats(
                    topic=topic,
                    total_mentions=mentions,
                    total_chars_exchanged=chars,
                    avg_chars=average_chars(chars, mentions),
                    novice_users=levels.count("novice"),
                    intermediate_users=levels.count("intermediate"),
                    expert_users=levels.count("expert"),
                )
            )
        return stats

    def count_users(self) -> int:
        return len({owner for owner, _ in self.rows})


class FailingTopicHistoryStore:
    def fetch(self, user_id: int, topics: list[str]) -> list[TopicRow]:
        raise RuntimeError("store unavailable")

    def increment(self, user_id, topics, chars_per_topic, deep_dive_at) -> None:
        raise RuntimeError("store unavailable")

    def list_for_user(self, user_id: int) -> list[TopicRow]:
        raise RuntimeError("store unavailable")

    def aggregate(self, thresholds: ExpertiseThresholds) -> list[TopicStats]:
        raise RuntimeError("store unavailable")

    def count_users(self) -> int:
        raise RuntimeError("store unavailable")


@pytest.fixture(scope="session")
def test_db_path(tmp_path_factory: pytest.TempPathFactory) -> Path:
    db_path = tmp_path_factory.mktemp("db") / "response_control_test.db"
    configure_database(str(db_path))
    create_tables()
    return db_path


@pytest.fixture(scope="session")
def app(test_db_path: Path):
    from response_control.main import app as fastapi_app

    return fastapi_app


@pytest.fixture
def client(app):
    app.dependency_overrides = {}
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides = {}


@pytest.fixture
def db_session(test_db_path: Path):
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def create_user(db_session: Session) -> Callable[..., User]:
    def _create_user(with_ai_config: bool = True, provider: str = "openai") -> User:
        email = f"user_{uuid4().hex[:10]}@test.com"
        user = User(email=email, password_hash=get_password_hash("StrongPass123"))
        db_session.add(user)
        db_session.flush()
        if with_ai_config:
            utility, deep = ("gpt-4.1-mini", "gpt-4.1") if provider == "openai" else ("gemini-2.5-flash", "gemini-2.5-pro")
            cfg = UserAIConfig(
                user_id=user.id,
                ai_provider=provider,
                ai_utility_model=utility,
                ai_deep_thinker_model=deep,
                encrypted_api_key=encrypt_api_key("sk-test-12345678"),
            )
            db_session.add(cfg)
        db_session.commit()
        db_session.refresh(user)
        return user

    return _create_user


@pytest.fixture
def auth_token(client: TestClient) -> str:
    email = f"auth_{uuid4().hex[:10]}@test.com"
    password = "StrongPass123"
    signup = client.post(
        "/auth/signup",
        json={
            "email": email,
            "password": password,
            "ai_config": {
                "ai_provider": "openai",
                "ai_utility_model": "gpt-4.1-mini",
                "ai_deep_thinker_model": "gpt-4.1",
                "ai_api_key": "sk-test-12345678",
            },
        },
    )
    assert signup.status_code == 201
    login = client.post("/auth/login", data={"username": email, "password": password})
    assert login.status_code == 200
    return login.json()["access_token"]


@pytest.fixture
def sql_topic_store(test_db_path: Path) -> SqlTopicHistoryStore:
    return SqlTopicHistoryStore(SessionLocal)


@pytest.fixture
def memory_topic_store() -> InMemoryTopicHistoryStore:
    return InMemoryTopicHistoryStore()


@pytest.fixture
def fake_completion_factory() -> Callable[[FakeScenario], FakeCompletionClient]:
    def _factory(scenario: FakeScenario) -> FakeCompletionClient:
        return FakeCompletionClient(scenario)

    return _factory


@pytest.fixture
def override_completion(app, fake_completion_factory):
    def _override(scenario: FakeScenario) -> FakeCompletionClient:
        fake = fake_completion_factory(scenario)
        app.dependency_overrides[get_completion_client] = lambda: fake
        return fake

    return _override
