import json
import logging
from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, ValidationError

logger = logging.getLogger("uvicorn.error")


class ChatRole(str, Enum):
    user = "user"
    assistant = "assistant"
    system = "system"
    event = "event"


class OnboardingMeta(BaseModel):
    kind: Literal["onboarding"] = "onboarding"
    step: int = Field(ge=0)
    answer_required: bool


class AnswerMeta(BaseModel):
    kind: Literal["answer"] = "answer"
    step: int = Field(ge=0)


class WelcomeMeta(BaseModel):
    kind: Literal["welcome"] = "welcome"


class CompletionMeta(BaseModel):
    kind: Literal["completion"] = "completion"


class ErrorMeta(BaseModel):
    kind: Literal["error"] = "error"
    error: str = Field(default="", max_length=500)


class PlainMeta(BaseModel):
    kind: Literal["plain"] = "plain"


MessageMeta = Annotated[
    Union[OnboardingMeta, AnswerMeta, WelcomeMeta, CompletionMeta, ErrorMeta, PlainMeta],
    Field(discriminator="kind"),
]

_meta_adapter: TypeAdapter[Any] = TypeAdapter(MessageMeta)


class ConversationMessage(BaseModel):
    id: int
    role: ChatRole
    text: str
    created_at: datetime
    meta: MessageMeta = Field(default_factory=PlainMeta)


def parse_meta(raw: Any) -> Any:
    """Decode stored metadata into its tagged variant.

    Anything that does not validate becomes ``PlainMeta`` so a damaged row can
    never be mistaken for an emitted onboarding question.
    """
    if raw is None or raw == "":
        return PlainMeta()
    data = raw
    if isinstance(raw, str):
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("message_meta_unparseable raw=%s", raw[:120])
            return PlainMeta()
    if not isinstance(data, dict) or "kind" not in data:
        return PlainMeta()
    try:
        return _meta_adapter.validate_python(data)
    except ValidationError:
        logger.warning("message_meta_invalid kind=%s", data.get("kind"))
        return PlainMeta()


def dump_meta(meta: Optional[BaseModel]) -> str:
    return json.dumps((meta or PlainMeta()).model_dump(), separators=(",", ":"))
