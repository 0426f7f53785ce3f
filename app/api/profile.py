import logging
from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from app.api.session import SessionStateResponse, get_user_session, state_response, store_error_to_http
from app.core.session_state import derive_session_state, missing_profile_fields
from app.core.stores import ProfileRecord, StoreWriteError
from app.services.session import UserSession

logger = logging.getLogger("uvicorn.error")

router = APIRouter(prefix="/profile", tags=["profile"])


class ProfileUpdateRequest(BaseModel):
    display_name: Optional[str] = Field(default=None, max_length=120)
    age: Optional[int] = Field(default=None, ge=10, le=120)
    gender: Optional[str] = Field(default=None, max_length=32)
    height: Optional[float] = Field(default=None, gt=0, le=300)
    weight: Optional[float] = Field(default=None, gt=0, le=500)
    goals: Optional[list[str]] = None
    activity_preference: Optional[str] = Field(default=None, max_length=64)
    days_per_week: Optional[int] = Field(default=None, ge=1, le=7)
    injuries: Optional[str] = Field(default=None, max_length=2000)
    food_dislikes: Optional[str] = Field(default=None, max_length=2000)
    mark_complete: bool = False


class ProfileResponse(BaseModel):
    display_name: Optional[str] = None
    age: Optional[int] = None
    gender: Optional[str] = None
    height: Optional[float] = None
    weight: Optional[float] = None
    goals: list[str] = []
    activity_preference: Optional[str] = None
    days_per_week: Optional[int] = None
    injuries: Optional[str] = None
    food_dislikes: Optional[str] = None
    profile_completed: bool = False
    welcomed: bool = False
    plan_status: str = "none"
    missing_fields: list[str] = []
    state: SessionStateResponse


def _profile_response(record: ProfileRecord) -> ProfileResponse:
    fields = {key: value for key, value in record.items() if key in ProfileResponse.model_fields}
    return ProfileResponse(
        **fields,
        missing_fields=missing_profile_fields(record),
        state=state_response(derive_session_state(record, True)),
    )


def _current_record(session: UserSession) -> ProfileRecord:
    record = session.profiles.read(session.user.id)
    if record is None:
        raise HTTPException(status_code=404, detail="Profile not found")
    return record


@router.get("", response_model=ProfileResponse)
def get_profile(session: UserSession = Depends(get_user_session)) -> ProfileResponse:
    return _profile_response(_current_record(session))


@router.put("", response_model=ProfileResponse)
def update_profile(
    payload: ProfileUpdateRequest,
    session: UserSession = Depends(get_user_session),
) -> ProfileResponse:
    current = _current_record(session)
    fields: dict[str, Any] = payload.model_dump(exclude_unset=True, exclude={"mark_complete"})
    if payload.mark_complete:
        missing = missing_profile_fields({**current, **fields})
        if missing:
            raise HTTPException(status_code=400, detail=f"Profile missing required fields: {', '.join(missing)}")
        # Finishing the profile form also dismisses the welcome screen.
        fields["profile_completed"] = True
        fields["welcomed"] = True
    if not fields:
        return _profile_response(current)

    try:
        record = session.profiles.write(session.user.id, fields)
    except StoreWriteError as exc:
        logger.exception("profile_update_failed user_id=%s", session.user.id)
        raise store_error_to_http(exc) from exc
    logger.info(
        "profile_updated user_id=%s fields=%s complete=%s",
        session.user.id,
        ",".join(sorted(fields)),
        payload.mark_complete,
    )
    return _profile_response(record)


@router.post("/welcome", response_model=ProfileResponse)
def dismiss_welcome(session: UserSession = Depends(get_user_session)) -> ProfileResponse:
    try:
        record = session.profiles.write(session.user.id, {"welcomed": True})
    except StoreWriteError as exc:
        logger.exception("welcome_dismiss_failed user_id=%s", session.user.id)
        raise store_error_to_http(exc) from exc
    return _profile_response(record)
