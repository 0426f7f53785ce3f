import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from app.api.session import blocked_to_http, get_user_session, store_error_to_http
from app.core.access_gate import RedirectTo, RouteId
from app.core.messages import ChatRole, ConversationMessage, ErrorMeta, OnboardingMeta, PlainMeta
from app.core.pipeline import RouteChanged
from app.core.stores import StoreWriteError
from app.services.coach import COACH_FALLBACK_MESSAGE, CoachClient, get_coach_client
from app.services.session import UserSession

logger = logging.getLogger("uvicorn.error")

router = APIRouter(prefix="/chat", tags=["chat"])


class MessageItem(BaseModel):
    id: int
    role: str
    text: str
    kind: str
    onboarding_step: Optional[int] = None
    answer_required: Optional[bool] = None
    created_at: str


class MessagesResponse(BaseModel):
    messages: list[MessageItem]


class ChatRequest(BaseModel):
    text: str = Field(min_length=1, max_length=4000)


def message_item(message: ConversationMessage) -> MessageItem:
    meta = message.meta
    step = getattr(meta, "step", None)
    return MessageItem(
        id=message.id,
        role=message.role.value,
        text=message.text,
        kind=meta.kind,
        onboarding_step=step,
        answer_required=meta.answer_required if isinstance(meta, OnboardingMeta) else None,
        created_at=message.created_at.isoformat(),
    )


def last_message_id(session: UserSession) -> int:
    messages = session.messages.list(session.user.id)
    return messages[-1].id if messages else 0


def enter_chat(session: UserSession) -> None:
    session.pipeline.publish(RouteChanged(RouteId.chat))
    decision = session.context.decision
    if isinstance(decision, RedirectTo):
        raise blocked_to_http(decision)


def _messages_after(session: UserSession, after_id: int) -> MessagesResponse:
    messages = [m for m in session.messages.list(session.user.id) if m.id > after_id]
    return MessagesResponse(messages=[message_item(m) for m in messages])


@router.get("/messages", response_model=MessagesResponse)
def list_messages(
    after_id: int = Query(default=0, ge=0),
    session: UserSession = Depends(get_user_session),
) -> MessagesResponse:
    return _messages_after(session, after_id)


@router.post("/messages", response_model=MessagesResponse)
def send_message(
    payload: ChatRequest,
    session: UserSession = Depends(get_user_session),
    coach: CoachClient = Depends(get_coach_client),
) -> MessagesResponse:
    """Log a free-form message and append the coach's reply.

    Only open once onboarding is complete; scripted answers go through
    ``/onboarding/answer``. A failed coach call still produces an assistant
    message carrying the error.
    """
    user_id = session.user.id
    text = payload.text.strip()
    after_id = last_message_id(session)
    try:
        enter_chat(session)
        if not session.context.state.onboarded:
            raise HTTPException(status_code=409, detail="Onboarding is still in progress")
        session.messages.append(user_id, ChatRole.user, text, PlainMeta())
    except StoreWriteError as exc:
        logger.exception("chat_message_failed user_id=%s", user_id)
        raise store_error_to_http(exc) from exc

    try:
        reply, meta = coach.reply(text, session.profiles.read(user_id) or {}), PlainMeta()
    except Exception as exc:
        logger.exception("coach_reply_failed user_id=%s detail=%s", user_id, str(exc))
        reply, meta = COACH_FALLBACK_MESSAGE, ErrorMeta(error=str(exc)[:500])

    try:
        session.messages.append(user_id, ChatRole.assistant, reply, meta)
    except StoreWriteError as exc:
        logger.exception("coach_reply_store_failed user_id=%s", user_id)
        raise store_error_to_http(exc) from exc
    logger.info("coach_reply_sent user_id=%s kind=%s", user_id, meta.kind)
    return _messages_after(session, after_id)
