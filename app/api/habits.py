import logging
from datetime import date, datetime, timedelta, timezone
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.api.auth import get_current_user
from app.api.session import RETRY_MESSAGE
from app.core.streaks import completion_rate, streak
from app.db.models import Habit, HabitLog, User
from app.db.session import get_db

logger = logging.getLogger("uvicorn.error")

router = APIRouter(prefix="/habits", tags=["habits"])

DEFAULT_STATS_WINDOW_DAYS = 30


class HabitItem(BaseModel):
    id: int
    name: str
    description: Optional[str] = None
    icon: Optional[str] = None
    kind: str
    unit: Optional[str] = None
    goal: Optional[float] = None
    days_of_week: list[int]


class HabitListResponse(BaseModel):
    items: list[HabitItem]


class HabitLogRequest(BaseModel):
    completed: Optional[bool] = None
    value: Optional[float] = Field(default=None, ge=0)


class HabitLogResponse(BaseModel):
    habit_id: int
    log_date: date
    completed: Optional[bool] = None
    value: Optional[float] = None
    counts_as_complete: bool


class HabitStatsResponse(BaseModel):
    habit_id: int
    start: date
    end: date
    streak: int
    completion_rate: int


def parse_days_of_week(raw: Optional[str]) -> list[int]:
    days = []
    for part in (raw or "").split(","):
        part = part.strip()
        if part.isdigit() and 0 <= int(part) <= 6:
            days.append(int(part))
    return sorted(set(days))


def log_counts_as_complete(habit: Habit, log: HabitLog) -> bool:
    if log.completed is True:
        return True
    return habit.goal is not None and habit.goal > 0 and log.value is not None and log.value >= habit.goal


def _habit_item(habit: Habit) -> HabitItem:
    return HabitItem(
        id=habit.id,
        name=habit.name,
        description=habit.description,
        icon=habit.icon,
        kind=habit.kind,
        unit=habit.unit,
        goal=habit.goal,
        days_of_week=parse_days_of_week(habit.days_of_week_csv),
    )


def _owned_habit(db: Session, user_id: int, habit_id: int) -> Habit:
    habit = db.query(Habit).filter(Habit.id == habit_id, Habit.user_id == user_id).first()
    if not habit:
        raise HTTPException(status_code=404, detail="Habit not found")
    return habit


@router.get("", response_model=HabitListResponse)
def list_habits(user: User = Depends(get_current_user), db: Session = Depends(get_db)) -> HabitListResponse:
    rows = (
        db.query(Habit)
        .filter(Habit.user_id == user.id, Habit.archived.is_(False))
        .order_by(Habit.id.asc())
        .all()
    )
    return HabitListResponse(items=[_habit_item(row) for row in rows])


@router.put("/{habit_id}/logs/{log_date}", response_model=HabitLogResponse)
def upsert_log(
    habit_id: int,
    log_date: date,
    payload: HabitLogRequest,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> HabitLogResponse:
    habit = _owned_habit(db, user.id, habit_id)
    log = db.query(HabitLog).filter(HabitLog.habit_id == habit.id, HabitLog.log_date == log_date).first()
    if not log:
        log = HabitLog(user_id=user.id, habit_id=habit.id, log_date=log_date)
        db.add(log)
    values = payload.model_dump(exclude_unset=True)
    if "completed" in values:
        log.completed = values["completed"]
    if "value" in values:
        log.value = values["value"]
    log.updated_at = datetime.now(timezone.utc)
    try:
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception("habit_log_write_failed user_id=%s habit_id=%s date=%s", user.id, habit.id, log_date)
        raise HTTPException(status_code=503, detail=RETRY_MESSAGE) from exc
    db.refresh(log)
    return HabitLogResponse(
        habit_id=habit.id,
        log_date=log.log_date,
        completed=log.completed,
        value=log.value,
        counts_as_complete=log_counts_as_complete(habit, log),
    )


@router.get("/{habit_id}/stats", response_model=HabitStatsResponse)
def get_stats(
    habit_id: int,
    start: Optional[date] = Query(default=None),
    end: Optional[date] = Query(default=None),
    today: Optional[date] = Query(default=None),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> HabitStatsResponse:
    habit = _owned_habit(db, user.id, habit_id)
    today = today or date.today()
    end = end or today
    start = start or end - timedelta(days=DEFAULT_STATS_WINDOW_DAYS - 1)
    if start > end:
        raise HTTPException(status_code=400, detail="start must not be after end")

    logs = db.query(HabitLog).filter(HabitLog.habit_id == habit.id).all()
    completed_dates = [log.log_date for log in logs if log_counts_as_complete(habit, log)]
    return HabitStatsResponse(
        habit_id=habit.id,
        start=start,
        end=end,
        streak=streak(completed_dates, today=today),
        completion_rate=completion_rate(completed_dates, start, end, parse_days_of_week(habit.days_of_week_csv)),
    )
