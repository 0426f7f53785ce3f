import logging
from collections.abc import Iterator
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel
from sqlalchemy.orm import Session

from app.api.auth import get_current_user, get_optional_user
from app.core.access_gate import Allow, Decision, RedirectTo, RouteId, decide
from app.core.session_state import SessionState
from app.core.stores import ProfileNotFoundError, StaleWriteError, StoreWriteError
from app.db.models import User
from app.db.session import get_db
from app.services.plan import PlanGenerator, get_plan_generator
from app.services.session import UserSession

logger = logging.getLogger("uvicorn.error")

router = APIRouter(prefix="/session", tags=["session"])

RETRY_MESSAGE = "Couldn't continue, please try again."


class SessionStateResponse(BaseModel):
    authenticated: bool
    welcomed: bool
    profile_complete: bool
    onboarding_step: int
    onboarded: bool


class GateDecisionResponse(BaseModel):
    route: RouteId
    decision: str
    redirect_to: Optional[RouteId] = None
    reason: Optional[str] = None
    confirmation_title: Optional[str] = None
    confirmation_message: Optional[str] = None


def state_response(state: SessionState) -> SessionStateResponse:
    return SessionStateResponse(
        authenticated=state.authenticated,
        welcomed=state.welcomed,
        profile_complete=state.profile_complete,
        onboarding_step=state.onboarding_step,
        onboarded=state.onboarded,
    )


def decision_response(route: RouteId, decision: Decision) -> GateDecisionResponse:
    if isinstance(decision, Allow):
        return GateDecisionResponse(route=route, decision="allow")
    title, message = decision.confirmation
    return GateDecisionResponse(
        route=route,
        decision="redirect",
        redirect_to=decision.route,
        reason=decision.reason.value,
        confirmation_title=title,
        confirmation_message=message,
    )


def store_error_to_http(exc: StoreWriteError) -> HTTPException:
    if isinstance(exc, ProfileNotFoundError):
        return HTTPException(status_code=404, detail="Profile not found")
    if isinstance(exc, StaleWriteError):
        return HTTPException(status_code=409, detail=str(exc))
    return HTTPException(status_code=503, detail=RETRY_MESSAGE)


def blocked_to_http(decision: RedirectTo) -> HTTPException:
    title, message = decision.confirmation
    return HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail={
            "redirect_to": decision.route.value,
            "reason": decision.reason.value,
            "title": title,
            "message": message,
        },
    )


def _open(session: UserSession) -> Iterator[UserSession]:
    try:
        session.pipeline.start()
    except StoreWriteError as exc:
        logger.exception("session_start_failed user_id=%s", session.context.user_id)
        raise store_error_to_http(exc) from exc
    try:
        yield session
    finally:
        session.pipeline.close()


def get_user_session(
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    generator: PlanGenerator = Depends(get_plan_generator),
) -> Iterator[UserSession]:
    yield from _open(UserSession(db, user, generator))


def get_optional_session(
    user: Optional[User] = Depends(get_optional_user),
    db: Session = Depends(get_db),
) -> Iterator[UserSession]:
    yield from _open(UserSession(db, user))


@router.get("/state", response_model=SessionStateResponse)
def get_state(session: UserSession = Depends(get_optional_session)) -> SessionStateResponse:
    return state_response(session.context.state)


@router.get("/gate", response_model=GateDecisionResponse)
def get_gate(
    route: RouteId = Query(...),
    session: UserSession = Depends(get_optional_session),
) -> GateDecisionResponse:
    return decision_response(route, decide(session.context.state, route))
