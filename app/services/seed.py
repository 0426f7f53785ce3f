import logging
from datetime import datetime, timezone

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.messages import ChatRole, WelcomeMeta, dump_meta
from app.core.stores import StoreWriteError
from app.db.models import ChatMessage, Habit, Profile

logger = logging.getLogger("uvicorn.error")

EVERY_DAY = "0,1,2,3,4,5,6"

DEFAULT_HABITS = [
    {"name": "Daily reflection", "description": "Reflect on your day", "icon": "✍️", "kind": "task"},
    {"name": "8k steps", "description": "Walk 8,000 steps", "icon": "🚶", "kind": "metric", "unit": "steps", "goal": 8000},
    {"name": "Eat protein", "description": "Eat 100g of protein", "icon": "🍗", "kind": "metric", "unit": "grams", "goal": 100},
    {"name": "Drink water", "description": "Drink 2 liters of water", "icon": "💧", "kind": "metric", "unit": "liters", "goal": 2},
    {"name": "Track meals", "description": "Track your meals", "icon": "🥗", "kind": "task"},
]


def display_name_guess(email: str) -> str:
    local = (email or "").split("@")[0]
    words = [w for w in local.replace(".", " ").replace("_", " ").replace("-", " ").split() if w]
    if not words:
        return "there"
    return " ".join(word.capitalize() for word in words)


def welcome_text(name: str) -> str:
    return (
        f"Hi {name}, welcome 🎉 Before we start, let me quickly show you around! This chat is your home "
        "for our daily check-ins. You'll find your workouts and meal plans in the tabs below, your stats "
        "in the Progress tab, and your daily habits in the Habits tab. Now, let's make your plan truly "
        "powerful by understanding your 'Why'."
    )


def seed_for_new_user(db: Session, user_id: int, name_guess: str = "there") -> bool:
    """Create the starter profile, default habits and greeting in one commit.

    No-op when a profile exists. A failed commit leaves nothing behind, so the
    next session start seeds again.
    """
    db.add(Profile(user_id=user_id, onboarded=False, onboarding_step=0, welcomed=False, profile_completed=False))
    for habit in DEFAULT_HABITS:
        db.add(Habit(user_id=user_id, days_of_week_csv=EVERY_DAY, **habit))
    db.add(
        ChatMessage(
            user_id=user_id,
            role=ChatRole.assistant.value,
            text=welcome_text(name_guess),
            meta_json=dump_meta(WelcomeMeta()),
            created_at=datetime.now(timezone.utc),
        )
    )
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        return False
    except SQLAlchemyError as exc:
        db.rollback()
        raise StoreWriteError(f"Could not seed starter data for user {user_id}") from exc
    logger.info("user_seeded user_id=%s habits=%s", user_id, len(DEFAULT_HABITS))
    return True
