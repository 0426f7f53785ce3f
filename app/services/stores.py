import json
from collections.abc import Iterable, Mapping
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from pydantic import BaseModel
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.messages import ChatRole, ConversationMessage, dump_meta, parse_meta
from app.core.stores import (
    MessageListener,
    ProfileListener,
    ProfileNotFoundError,
    ProfileRecord,
    StaleWriteError,
    StoreWriteError,
    Unsubscribe,
)
from app.db.models import ChatMessage, Profile

PROFILE_FIELDS = (
    "display_name",
    "age",
    "gender",
    "height",
    "weight",
    "goals",
    "activity_preference",
    "days_per_week",
    "injuries",
    "food_dislikes",
    "profile_completed",
    "welcomed",
    "onboarding_step",
    "onboarded",
    "last_onboarding_update",
    "onboarding_completed_at",
    "plan_status",
    "plan_requested_at",
)


def _load_goals(raw: Optional[str]) -> list[str]:
    if not raw:
        return []
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return []
    if not isinstance(parsed, list):
        return []
    return [str(item).strip() for item in parsed if str(item).strip()]


def profile_to_record(row: Profile) -> ProfileRecord:
    return {
        "user_id": row.user_id,
        "display_name": row.display_name,
        "age": row.age,
        "gender": row.gender,
        "height": row.height,
        "weight": row.weight,
        "goals": _load_goals(row.goals_json),
        "activity_preference": row.activity_preference,
        "days_per_week": row.days_per_week,
        "injuries": row.injuries,
        "food_dislikes": row.food_dislikes,
        "profile_completed": bool(row.profile_completed),
        "welcomed": bool(row.welcomed),
        "onboarding_step": row.onboarding_step,
        "onboarded": bool(row.onboarded),
        "last_onboarding_update": row.last_onboarding_update,
        "onboarding_completed_at": row.onboarding_completed_at,
        "plan_status": row.plan_status,
        "plan_requested_at": row.plan_requested_at,
    }


def _column_values(fields: Mapping[str, Any]) -> dict[str, Any]:
    unknown = sorted(set(fields) - set(PROFILE_FIELDS))
    if unknown:
        raise ValueError(f"Unknown profile fields: {', '.join(unknown)}")
    values = dict(fields)
    if "goals" in values:
        goals = values.pop("goals") or []
        values["goals_json"] = json.dumps([str(g).strip() for g in goals if str(g).strip()])
    return values


class _ListenerRegistry:
    def __init__(self) -> None:
        self._listeners: dict[int, list[Callable[..., None]]] = {}

    def add(self, user_id: int, listener: Callable[..., None]) -> Unsubscribe:
        self._listeners.setdefault(user_id, []).append(listener)

        def _unsubscribe() -> None:
            listeners = self._listeners.get(user_id, [])
            if listener in listeners:
                listeners.remove(listener)

        return _unsubscribe

    def notify(self, user_id: int, payload: Any) -> None:
        for listener in list(self._listeners.get(user_id, [])):
            listener(payload)


class SqlProfileStore:
    def __init__(self, db: Session) -> None:
        self.db = db
        self._listeners = _ListenerRegistry()

    def read(self, user_id: int) -> Optional[ProfileRecord]:
        row = self.db.query(Profile).filter(Profile.user_id == user_id).first()
        return profile_to_record(row) if row else None

    def create(self, user_id: int, fields: Optional[Mapping[str, Any]] = None) -> bool:
        values = _column_values(fields or {})
        self.db.add(Profile(user_id=user_id, **values))
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            return False
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise StoreWriteError(f"Could not create profile for user {user_id}") from exc
        self._listeners.notify(user_id, self.read(user_id))
        return True

    def write(
        self,
        user_id: int,
        fields: Mapping[str, Any],
        expected: Optional[Mapping[str, Iterable[Any]]] = None,
    ) -> ProfileRecord:
        values = _column_values(fields)
        conditions = {name: list(allowed) for name, allowed in (expected or {}).items()}
        query = self.db.query(Profile).filter(Profile.user_id == user_id)
        for name, allowed in conditions.items():
            query = query.filter(getattr(Profile, name).in_(allowed))
        try:
            updated = query.update(values, synchronize_session=False)
            if updated == 0:
                self.db.rollback()
                current = self.read(user_id)
                if current is None:
                    raise ProfileNotFoundError(user_id)
                for name, allowed in conditions.items():
                    if current.get(name) not in allowed:
                        raise StaleWriteError(user_id, name, allowed, current.get(name))
                raise StoreWriteError(f"Profile write for user {user_id} matched no rows")
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise StoreWriteError(f"Could not write profile for user {user_id}") from exc
        record = self.read(user_id)
        if record is None:
            raise ProfileNotFoundError(user_id)
        self._listeners.notify(user_id, record)
        return record

    def subscribe(self, user_id: int, on_change: ProfileListener) -> Unsubscribe:
        return self._listeners.add(user_id, on_change)


def message_to_model(row: ChatMessage) -> ConversationMessage:
    try:
        role = ChatRole(row.role)
    except ValueError:
        role = ChatRole.event
    return ConversationMessage(
        id=row.id,
        role=role,
        text=row.text,
        created_at=row.created_at,
        meta=parse_meta(row.meta_json),
    )


class SqlMessageStore:
    def __init__(self, db: Session) -> None:
        self.db = db
        self._listeners = _ListenerRegistry()

    def append(
        self, user_id: int, role: ChatRole, text: str, meta: Optional[BaseModel] = None
    ) -> ConversationMessage:
        row = ChatMessage(
            user_id=user_id,
            role=role.value,
            text=text[:8000],
            meta_json=dump_meta(meta),
            created_at=datetime.now(timezone.utc),
        )
        self.db.add(row)
        try:
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise StoreWriteError(f"Could not append message for user {user_id}") from exc
        self.db.refresh(row)
        message = message_to_model(row)
        self._listeners.notify(user_id, self.list(user_id))
        return message

    def list(self, user_id: int) -> list[ConversationMessage]:
        rows = (
            self.db.query(ChatMessage)
            .filter(ChatMessage.user_id == user_id)
            .order_by(ChatMessage.created_at.asc(), ChatMessage.id.asc())
            .all()
        )
        return [message_to_model(row) for row in rows]

    def subscribe(self, user_id: int, on_change: MessageListener) -> Unsubscribe:
        return self._listeners.add(user_id, on_change)
