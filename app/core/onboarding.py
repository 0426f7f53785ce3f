import logging
from collections.abc import Iterable
from datetime import datetime, timezone
from typing import Callable, Optional

from app.core.messages import ChatRole, ConversationMessage, OnboardingMeta
from app.core.onboarding_questions import (
    ONBOARDING_QUESTIONS,
    OnboardingQuestion,
    validate_question_table,
)
from app.core.stores import MessageStore, ProfileStore, StoreWriteError

logger = logging.getLogger("uvicorn.error")

AutoAdvanceScheduler = Callable[[int, int], None]
CompletionHook = Callable[[int], None]


def has_question_been_sent(messages: Iterable[ConversationMessage], step: int) -> bool:
    return any(
        message.role == ChatRole.assistant
        and isinstance(message.meta, OnboardingMeta)
        and message.meta.step == step
        for message in messages
    )


class OnboardingSequencer:
    """Drives the scripted onboarding conversation for one user.

    The step counter lives in the profile store and is only advanced by
    ``progress_onboarding_step``. Question emission is idempotent: the message
    log is checked before every append, so replaying the same profile change
    never sends a question twice.

    Informational steps (``answer_required=False``) are advanced through the
    ``schedule`` callable, which receives ``(user_id, step)``. Without one the
    advance runs inline.
    """

    def __init__(
        self,
        profiles: ProfileStore,
        messages: MessageStore,
        questions: tuple[OnboardingQuestion, ...] = ONBOARDING_QUESTIONS,
        schedule: Optional[AutoAdvanceScheduler] = None,
        on_complete: Optional[CompletionHook] = None,
    ) -> None:
        validate_question_table(questions)
        self.profiles = profiles
        self.messages = messages
        self.questions = questions
        self._schedule = schedule
        self._on_complete = on_complete

    @property
    def total_steps(self) -> int:
        return len(self.questions)

    def set_scheduler(self, schedule: Optional[AutoAdvanceScheduler]) -> None:
        self._schedule = schedule

    def question_for_step(self, step: int) -> Optional[OnboardingQuestion]:
        if 0 <= step < len(self.questions):
            return self.questions[step]
        return None

    def does_step_require_answer(self, step: int) -> bool:
        question = self.question_for_step(step)
        return question.answer_required if question else False

    def send_next_question(
        self,
        user_id: int,
        step: int,
        messages: Optional[list[ConversationMessage]] = None,
    ) -> Optional[ConversationMessage]:
        if step >= self.total_steps:
            self.complete_onboarding(user_id)
            return None

        question = self.question_for_step(step)
        if question is None:
            logger.error("onboarding_question_missing user_id=%s step=%s", user_id, step)
            return None

        existing = messages if messages is not None else self.messages.list(user_id)
        if has_question_been_sent(existing, step):
            logger.info("onboarding_question_already_sent user_id=%s step=%s", user_id, step)
            return None

        sent = self.messages.append(
            user_id,
            ChatRole.assistant,
            question.prompt,
            OnboardingMeta(step=step, answer_required=question.answer_required),
        )
        logger.info("onboarding_question_sent user_id=%s step=%s", user_id, step)

        if not question.answer_required:
            if self._schedule is not None:
                self._schedule(user_id, step)
            else:
                self.progress_onboarding_step(user_id, step)
        return sent

    def progress_onboarding_step(self, user_id: int, current_step: int) -> int:
        next_step = current_step + 1
        try:
            # Accepting next_step as a prior value makes a retry of a write that already
            # landed a no-op instead of a double advance.
            self.profiles.write(
                user_id,
                {
                    "onboarding_step": next_step,
                    "last_onboarding_update": datetime.now(timezone.utc),
                },
                expected={"onboarding_step": (current_step, next_step)},
            )
        except StoreWriteError:
            logger.exception(
                "onboarding_progress_failed user_id=%s from_step=%s to_step=%s",
                user_id,
                current_step,
                next_step,
            )
            raise
        logger.info("onboarding_progressed user_id=%s from_step=%s to_step=%s", user_id, current_step, next_step)

        # The write is acknowledged at this point, so the log read below sees every
        # question emitted before the advance.
        self.send_next_question(user_id, next_step, self.messages.list(user_id))
        return next_step

    def complete_onboarding(self, user_id: int) -> None:
        try:
            self.profiles.write(
                user_id,
                {
                    "onboarded": True,
                    "onboarding_step": self.total_steps,
                    "onboarding_completed_at": datetime.now(timezone.utc),
                },
            )
        except StoreWriteError:
            logger.exception("onboarding_complete_failed user_id=%s", user_id)
            raise
        logger.info("onboarding_completed user_id=%s", user_id)
        if self._on_complete is not None:
            self._on_complete(user_id)
