import json
from typing import Any

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy.orm import Session

from app.api.auth import get_current_user
from app.db.models import Profile, User, UserPlan
from app.db.session import get_db

router = APIRouter(prefix="/plan", tags=["plan"])


class PlanResponse(BaseModel):
    plan_status: str
    meal_plan: Any
    workout_plan: Any
    created_at: str


def _load(raw: str) -> Any:
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return None


@router.get("", response_model=PlanResponse)
def get_plan(user: User = Depends(get_current_user), db: Session = Depends(get_db)) -> PlanResponse:
    """Meal and workout plan produced at the end of onboarding.

    Until a plan exists the 404 detail carries ``plan_status`` so the client can
    tell "still building" (pending) from "failed" and "not started" (none).
    """
    plan = db.query(UserPlan).filter(UserPlan.user_id == user.id).first()
    if plan is None:
        profile = db.query(Profile).filter(Profile.user_id == user.id).first()
        raise HTTPException(
            status_code=404,
            detail={"message": "Plan not available", "plan_status": profile.plan_status if profile else "none"},
        )
    return PlanResponse(
        plan_status="ready",
        meal_plan=_load(plan.meal_plan_json),
        workout_plan=_load(plan.workout_plan_json),
        created_at=plan.created_at.isoformat(),
    )
