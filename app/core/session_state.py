from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Optional

from app.core.onboarding_questions import TOTAL_ONBOARDING_STEPS

REQUIRED_PROFILE_FIELDS = (
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
)


@dataclass(frozen=True)
class SessionState:
    authenticated: bool = False
    welcomed: bool = False
    profile_complete: bool = False
    onboarding_step: int = 0
    onboarded: bool = False


SIGNED_OUT = SessionState()


def _has_value(value: Any) -> bool:
    if value is None or isinstance(value, bool):
        return False
    if isinstance(value, str):
        return bool(value.strip())
    if isinstance(value, dict):
        return bool(value)
    if isinstance(value, (list, tuple, set)):
        return any(_has_value(item) for item in value)
    if isinstance(value, (int, float)):
        return value > 0
    return bool(value)


def missing_profile_fields(record: Optional[Mapping[str, Any]]) -> list[str]:
    if not record:
        return list(REQUIRED_PROFILE_FIELDS)
    return [name for name in REQUIRED_PROFILE_FIELDS if not _has_value(record.get(name))]


def is_profile_complete(record: Optional[Mapping[str, Any]]) -> bool:
    # Field presence alone is not enough: partially restored records stay incomplete
    # until the profile form sets the explicit flag.
    if not record:
        return False
    return not missing_profile_fields(record) and record.get("profile_completed") is True


def _coerce_step(raw: Any) -> int:
    if isinstance(raw, bool):
        return 0
    if isinstance(raw, int):
        return max(0, raw)
    if isinstance(raw, float) and raw.is_integer():
        return max(0, int(raw))
    return 0


def derive_session_state(
    record: Optional[Mapping[str, Any]],
    has_identity: bool,
    total_steps: int = TOTAL_ONBOARDING_STEPS,
) -> SessionState:
    if not has_identity:
        return SIGNED_OUT
    if record is None:
        return SessionState(authenticated=True)
    onboarded = record.get("onboarded") is True
    step = total_steps if onboarded else _coerce_step(record.get("onboarding_step"))
    return SessionState(
        authenticated=True,
        welcomed=record.get("welcomed") is True,
        profile_complete=is_profile_complete(record),
        onboarding_step=step,
        onboarded=onboarded,
    )
