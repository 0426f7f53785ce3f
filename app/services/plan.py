import json
import logging
import os
from datetime import datetime, timezone
from typing import Any, Optional, Protocol

import httpx
from pydantic import BaseModel
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.messages import AnswerMeta, ChatRole, CompletionMeta, ConversationMessage, ErrorMeta
from app.core.onboarding_questions import ONBOARDING_QUESTIONS, OnboardingQuestion
from app.core.stores import MessageStore, ProfileRecord, ProfileStore, StaleWriteError, StoreWriteError
from app.db.models import UserPlan

logger = logging.getLogger("uvicorn.error")

AI_PROXY_URL = os.getenv("AI_PROXY_URL", "http://localhost:8787").rstrip("/")
AI_PROXY_TIMEOUT_SECONDS = float(os.getenv("AI_PROXY_TIMEOUT_SECONDS", "90"))
AI_PROXY_CONNECT_TIMEOUT_SECONDS = float(os.getenv("AI_PROXY_CONNECT_TIMEOUT_SECONDS", "10"))

COMPLETION_MESSAGE = (
    "🎉 Congratulations! Your onboarding is complete. I now have everything I need to create your "
    "personalized wellness plan. Welcome to your journey with Aura!"
)
PLAN_FALLBACK_MESSAGE = (
    "Your onboarding is complete, but I couldn't finish building your plan just now. "
    "Explore the other tabs in the meantime and check back shortly."
)


def proxy_timeout() -> httpx.Timeout:
    return httpx.Timeout(
        connect=AI_PROXY_CONNECT_TIMEOUT_SECONDS,
        read=AI_PROXY_TIMEOUT_SECONDS,
        write=AI_PROXY_CONNECT_TIMEOUT_SECONDS,
        pool=AI_PROXY_CONNECT_TIMEOUT_SECONDS,
    )


class PlanGenerationError(RuntimeError):
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class PlanDocument(BaseModel):
    mealPlan: Any
    workoutPlan: Any


def parse_llm_json(raw_text: str) -> dict[str, Any]:
    try:
        parsed = json.loads(raw_text)
        if isinstance(parsed, dict):
            return parsed
    except json.JSONDecodeError:
        pass

    start = raw_text.find("{")
    end = raw_text.rfind("}")
    if start != -1 and end != -1 and end > start:
        try:
            parsed = json.loads(raw_text[start : end + 1])
            if isinstance(parsed, dict):
                return parsed
        except json.JSONDecodeError:
            pass
    raise ValueError("Invalid JSON response from plan generator")


class PlanGenerator(Protocol):
    def generate_plan(self, context_text: str, profile: ProfileRecord, core_motivation: str) -> dict[str, Any]:
        ...


class ProxyPlanGenerator:
    def __init__(self, base_url: str = AI_PROXY_URL) -> None:
        self.base_url = base_url

    def generate_plan(self, context_text: str, profile: ProfileRecord, core_motivation: str) -> dict[str, Any]:
        payload = {
            "message": context_text,
            "profile": profile_payload(profile),
            "coreMotivation": core_motivation,
        }
        # No retry: a request that reached the proxy may already have produced a plan.
        try:
            response = httpx.post(f"{self.base_url}/create-plan", json=payload, timeout=proxy_timeout())
            response.raise_for_status()
        except httpx.TimeoutException as exc:
            raise PlanGenerationError("Plan request timed out while waiting for the AI proxy.") from exc
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code if exc.response is not None else None
            detail = (exc.response.text or "").strip()[:220] if exc.response is not None else ""
            raise PlanGenerationError(
                f"Plan request failed (status={status}): {detail or 'no response body'}",
                status_code=status,
            ) from exc
        except httpx.HTTPError as exc:
            raise PlanGenerationError(f"Plan request failed: {str(exc)[:220]}") from exc

        try:
            data = response.json()
        except ValueError as exc:
            raise PlanGenerationError("AI proxy returned a non-JSON envelope") from exc
        reply = data.get("reply") if isinstance(data, dict) else None
        if isinstance(reply, dict):
            return reply
        if not isinstance(reply, str) or not reply.strip():
            raise PlanGenerationError("AI proxy returned an empty plan reply")
        try:
            return parse_llm_json(reply)
        except ValueError as exc:
            raise PlanGenerationError(str(exc)) from exc


def get_plan_generator() -> PlanGenerator:
    return ProxyPlanGenerator()


def profile_payload(profile: ProfileRecord) -> dict[str, Any]:
    keys = (
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
    return {key: profile.get(key) for key in keys}


def build_plan_context(
    messages: list[ConversationMessage],
    questions: tuple[OnboardingQuestion, ...] = ONBOARDING_QUESTIONS,
) -> tuple[str, str]:
    """Concatenate the user's onboarding answers in step order.

    A step answered more than once (a retried submission) contributes its most
    recent answer. Returns ``(context_text, core_motivation)``.
    """
    answers: dict[int, str] = {}
    for message in messages:
        if message.role == ChatRole.user and isinstance(message.meta, AnswerMeta):
            answers[message.meta.step] = message.text.strip()
    lines = []
    for step in sorted(answers):
        label = questions[step].short_label if 0 <= step < len(questions) else ""
        lines.append(f"{label} {answers[step]}".strip())
    return "\n".join(lines), answers.get(0, "")


class PlanHandoff:
    """Turns a completed onboarding into exactly one plan request.

    The ``plan_status`` compare-and-set from ``none`` to ``pending`` is the
    claim: duplicate completion events lose the claim and return without
    calling the generator.
    """

    def __init__(
        self,
        db: Session,
        profiles: ProfileStore,
        messages: MessageStore,
        generator: PlanGenerator,
        questions: tuple[OnboardingQuestion, ...] = ONBOARDING_QUESTIONS,
    ) -> None:
        self.db = db
        self.profiles = profiles
        self.messages = messages
        self.generator = generator
        self.questions = questions

    def __call__(self, user_id: int) -> Optional[UserPlan]:
        try:
            profile = self.profiles.write(
                user_id,
                {"plan_status": "pending", "plan_requested_at": datetime.now(timezone.utc)},
                expected={"plan_status": ("none",)},
            )
        except StaleWriteError as exc:
            logger.info("plan_handoff_already_claimed user_id=%s status=%s", user_id, exc.actual)
            return None

        context_text, core_motivation = build_plan_context(self.messages.list(user_id), self.questions)
        try:
            raw_plan = self.generator.generate_plan(context_text, profile, core_motivation)
            document = PlanDocument.model_validate(raw_plan)
            plan = self._save_plan(user_id, document)
        except Exception as exc:
            logger.exception("plan_generation_failed user_id=%s detail=%s", user_id, str(exc))
            self._mark_failed(user_id, exc)
            return None

        self.profiles.write(user_id, {"plan_status": "ready"})
        self.messages.append(user_id, ChatRole.system, COMPLETION_MESSAGE, CompletionMeta())
        logger.info("plan_generated user_id=%s plan_id=%s", user_id, plan.id)
        return plan

    def _mark_failed(self, user_id: int, exc: Exception) -> None:
        try:
            self.profiles.write(user_id, {"plan_status": "failed"})
        except StoreWriteError:
            # The fallback message below still tells the user; status stays pending.
            logger.exception("plan_status_write_failed user_id=%s status=failed", user_id)
        self.messages.append(user_id, ChatRole.assistant, PLAN_FALLBACK_MESSAGE, ErrorMeta(error=str(exc)[:500]))

    def _save_plan(self, user_id: int, document: PlanDocument) -> UserPlan:
        plan = UserPlan(
            user_id=user_id,
            meal_plan_json=json.dumps(document.mealPlan),
            workout_plan_json=json.dumps(document.workoutPlan),
        )
        self.db.add(plan)
        try:
            self.db.commit()
        except IntegrityError as exc:
            self.db.rollback()
            raise StoreWriteError(f"A plan already exists for user {user_id}") from exc
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise StoreWriteError(f"Could not save plan for user {user_id}") from exc
        self.db.refresh(plan)
        return plan
