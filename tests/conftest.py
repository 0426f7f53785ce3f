import copy
from collections.abc import Iterable, Mapping
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Optional
from uuid import uuid4

import pytest
from fastapi.testclient import TestClient
from pydantic import BaseModel
from sqlalchemy.orm import Session

from app.core.messages import ChatRole, ConversationMessage, PlainMeta
from app.core.security import get_password_hash
from app.core.stores import ProfileNotFoundError, StaleWriteError, StoreWriteError
from app.db.models import User
from app.db.session import SessionLocal, configure_database, create_tables
from app.services.coach import CoachReplyError, get_coach_client
from app.services.plan import PlanGenerationError, get_plan_generator


class FakeScenario(str, Enum):
    OK_PLAN = "OK_PLAN"
    TIMEOUT = "TIMEOUT"
    MALFORMED = "MALFORMED"
    CRASH = "CRASH"


class FakePlanGenerator:
    def __init__(self, scenario: FakeScenario = FakeScenario.OK_PLAN) -> None:
        self.scenario = scenario
        self.calls: list[dict[str, Any]] = []

    def generate_plan(self, context_text: str, profile: dict, core_motivation: str) -> dict:
        self.calls.append({"context_text": context_text, "profile": profile, "core_motivation": core_motivation})
        if self.scenario == FakeScenario.OK_PLAN:
            return {
                "mealPlan": {"monday": ["Greek yogurt with berries", "Chicken salad", "Salmon and rice"]},
                "workoutPlan": {"monday": ["20 min brisk walk", "3x10 squats"]},
            }
        if self.scenario == FakeScenario.TIMEOUT:
            raise PlanGenerationError("Plan request timed out while waiting for the AI proxy.")
        if self.scenario == FakeScenario.MALFORMED:
            return {"mealPlan": {"monday": []}}
        if self.scenario == FakeScenario.CRASH:
            raise RuntimeError("proxy client bug")
        raise ValueError("Unknown fake scenario")


class FakeCoachClient:
    def __init__(self, reply: Optional[str] = "Nice work. Try a 10 minute walk after dinner tonight.") -> None:
        self._reply = reply
        self.calls: list[dict[str, Any]] = []

    def reply(self, text: str, profile: dict) -> str:
        self.calls.append({"text": text, "profile": profile})
        if self._reply is None:
            raise CoachReplyError("Coach request timed out while waiting for the AI proxy.")
        return self._reply


class InMemoryProfileStore:
    """Profile store with the same compare-and-set and notification rules as the SQL store."""

    def __init__(self) -> None:
        self.records: dict[int, dict[str, Any]] = {}
        self.listeners: dict[int, list[Callable]] = {}
        self.fail_writes = False
        self.writes: list[tuple[int, dict[str, Any]]] = []

    def seed(self, user_id: int, **fields: Any) -> dict[str, Any]:
        record = {"onboarding_step": 0, "onboarded": False, "welcomed": False, "profile_completed": False}
        record.update(fields)
        self.records[user_id] = record
        return copy.deepcopy(record)

    def read(self, user_id: int) -> Optional[dict[str, Any]]:
        record = self.records.get(user_id)
        return copy.deepcopy(record) if record is not None else None

    def write(
        self,
        user_id: int,
        fields: Mapping[str, Any],
        expected: Optional[Mapping[str, Iterable[Any]]] = None,
    ) -> dict[str, Any]:
        if self.fail_writes:
            raise StoreWriteError("profile store unavailable")
        record = self.records.get(user_id)
        if record is None:
            raise ProfileNotFoundError(user_id)
        for name, allowed in (expected or {}).items():
            allowed = list(allowed)
            if record.get(name) not in allowed:
                raise StaleWriteError(user_id, name, allowed, record.get(name))
        record.update(fields)
        self.writes.append((user_id, dict(fields)))
        snapshot = self.read(user_id)
        for listener in list(self.listeners.get(user_id, [])):
            listener(snapshot)
        return snapshot

    def subscribe(self, user_id: int, on_change: Callable) -> Callable[[], None]:
        self.listeners.setdefault(user_id, []).append(on_change)
        return lambda: self.listeners[user_id].remove(on_change)


class InMemoryMessageStore:
    def __init__(self) -> None:
        self.messages: dict[int, list[ConversationMessage]] = {}
        self.listeners: dict[int, list[Callable]] = {}
        self.fail_appends = False
        self._next_id = 1

    def append(
        self, user_id: int, role: ChatRole, text: str, meta: Optional[BaseModel] = None
    ) -> ConversationMessage:
        if self.fail_appends:
            raise StoreWriteError("message store unavailable")
        message = ConversationMessage(
            id=self._next_id,
            role=role,
            text=text,
            created_at=datetime.now(timezone.utc),
            meta=meta or PlainMeta(),
        )
        self._next_id += 1
        self.messages.setdefault(user_id, []).append(message)
        for listener in list(self.listeners.get(user_id, [])):
            listener(self.list(user_id))
        return message

    def list(self, user_id: int) -> list[ConversationMessage]:
        return list(self.messages.get(user_id, []))

    def subscribe(self, user_id: int, on_change: Callable) -> Callable[[], None]:
        self.listeners.setdefault(user_id, []).append(on_change)
        return lambda: self.listeners[user_id].remove(on_change)


def complete_profile_fields() -> dict[str, Any]:
    return {
        "display_name": "Sam",
        "age": 34,
        "gender": "female",
        "height": 170.0,
        "weight": 68.5,
        "goals": ["more energy", "lose fat"],
        "activity_preference": "gym",
        "days_per_week": 4,
        "injuries": "none",
        "food_dislikes": "mushrooms",
    }


@pytest.fixture
def profile_store() -> InMemoryProfileStore:
    return InMemoryProfileStore()


@pytest.fixture
def message_store() -> InMemoryMessageStore:
    return InMemoryMessageStore()


@pytest.fixture(scope="session")
def test_db_path(tmp_path_factory: pytest.TempPathFactory) -> Path:
    db_path = tmp_path_factory.mktemp("db") / "aura_coach_test.db"
    configure_database(str(db_path))
    create_tables()
    return db_path


@pytest.fixture(scope="session")
def app(test_db_path: Path):
    from app.main import app as fastapi_app

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
    def _create_user() -> User:
        email = f"user_{uuid4().hex[:10]}@test.com"
        user = User(email=email, password_hash=get_password_hash("StrongPass123"))
        db_session.add(user)
        db_session.commit()
        db_session.refresh(user)
        return user

    return _create_user


@pytest.fixture
def auth_token(client: TestClient) -> str:
    email = f"auth_{uuid4().hex[:10]}@test.com"
    password = "StrongPass123"
    signup = client.post("/auth/signup", json={"email": email, "password": password})
    assert signup.status_code == 201
    login = client.post("/auth/login", data={"username": email, "password": password})
    assert login.status_code == 200
    return login.json()["access_token"]


@pytest.fixture
def auth_headers(auth_token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {auth_token}"}


@pytest.fixture
def ready_for_chat(client: TestClient, auth_headers: dict[str, str]) -> dict[str, str]:
    """A signed-up user who has dismissed the welcome screen and completed the profile."""
    welcome = client.post("/profile/welcome", headers=auth_headers)
    assert welcome.status_code == 200
    profile = client.put("/profile", headers=auth_headers, json={**complete_profile_fields(), "mark_complete": True})
    assert profile.status_code == 200
    return auth_headers


@pytest.fixture
def override_plan(app) -> Callable[[FakeScenario], FakePlanGenerator]:
    def _override(scenario: FakeScenario) -> FakePlanGenerator:
        generator = FakePlanGenerator(scenario)
        app.dependency_overrides[get_plan_generator] = lambda: generator
        return generator

    return _override


@pytest.fixture
def override_coach(app) -> Callable[..., FakeCoachClient]:
    def _override(reply: Optional[str] = "Nice work. Try a 10 minute walk after dinner tonight.") -> FakeCoachClient:
        coach = FakeCoachClient(reply)
        app.dependency_overrides[get_coach_client] = lambda: coach
        return coach

    return _override


ONBOARDING_ANSWERS = ["boundless energy for my kids", "6, late work meetings", "pizza on Fridays", "more energy at night"]


@pytest.fixture
def onboarded(client: TestClient, ready_for_chat: dict[str, str], override_plan) -> dict[str, str]:
    """A user who has answered every onboarding question and received a plan."""
    override_plan(FakeScenario.OK_PLAN)
    assert client.post("/onboarding/sync", headers=ready_for_chat).status_code == 200
    for step, text in enumerate(ONBOARDING_ANSWERS):
        response = client.post("/onboarding/answer", headers=ready_for_chat, json={"text": text, "step": step})
        assert response.status_code == 200
    assert response.json()["status"]["onboarded"] is True
    return ready_for_chat
