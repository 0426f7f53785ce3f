import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from app.api.chat import MessageItem, enter_chat, last_message_id, message_item
from app.api.session import blocked_to_http, get_user_session, store_error_to_http
from app.core.pipeline import AnswerSubmitted, GateBlockedError, OnboardingClosedError
from app.core.stores import StaleWriteError, StoreWriteError
from app.services.session import UserSession

logger = logging.getLogger("uvicorn.error")

router = APIRouter(prefix="/onboarding", tags=["onboarding"])


class OnboardingStatusResponse(BaseModel):
    onboarded: bool
    onboarding_step: int
    total_steps: int
    awaiting_answer: bool
    current_prompt: Optional[str] = None
    plan_status: str = "none"


class AnswerRequest(BaseModel):
    text: str = Field(min_length=1, max_length=4000)
    step: int = Field(ge=0)


class OnboardingTurnResponse(BaseModel):
    status: OnboardingStatusResponse
    messages: list[MessageItem]


def _status(session: UserSession) -> OnboardingStatusResponse:
    state = session.context.state
    record = session.profiles.read(session.user.id) or {}
    question = None if state.onboarded else session.sequencer.question_for_step(state.onboarding_step)
    return OnboardingStatusResponse(
        onboarded=state.onboarded,
        onboarding_step=state.onboarding_step,
        total_steps=session.sequencer.total_steps,
        awaiting_answer=bool(question and question.answer_required),
        current_prompt=question.prompt if question else None,
        plan_status=record.get("plan_status") or "none",
    )


def _turn(session: UserSession, after_id: int) -> OnboardingTurnResponse:
    fresh = [m for m in session.messages.list(session.user.id) if m.id > after_id]
    return OnboardingTurnResponse(status=_status(session), messages=[message_item(m) for m in fresh])


@router.get("/status", response_model=OnboardingStatusResponse)
def get_status(session: UserSession = Depends(get_user_session)) -> OnboardingStatusResponse:
    return _status(session)


@router.post("/sync", response_model=OnboardingTurnResponse)
def sync(session: UserSession = Depends(get_user_session)) -> OnboardingTurnResponse:
    """Enter the chat screen and emit whatever scripted message is due."""
    after_id = last_message_id(session)
    try:
        enter_chat(session)
    except StoreWriteError as exc:
        logger.exception("onboarding_sync_failed user_id=%s", session.user.id)
        raise store_error_to_http(exc) from exc
    return _turn(session, after_id)


@router.post("/answer", response_model=OnboardingTurnResponse)
def answer(payload: AnswerRequest, session: UserSession = Depends(get_user_session)) -> OnboardingTurnResponse:
    after_id = last_message_id(session)
    try:
        enter_chat(session)
        session.pipeline.publish(AnswerSubmitted(text=payload.text.strip(), step=payload.step))
    except GateBlockedError as exc:
        raise blocked_to_http(exc.decision) from exc
    except OnboardingClosedError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except StaleWriteError as exc:
        logger.info("onboarding_answer_stale user_id=%s step=%s detail=%s", session.user.id, payload.step, str(exc))
        raise store_error_to_http(exc) from exc
    except StoreWriteError as exc:
        logger.exception("onboarding_answer_failed user_id=%s step=%s", session.user.id, payload.step)
        raise store_error_to_http(exc) from exc
    return _turn(session, after_id)

