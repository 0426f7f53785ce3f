from conftest import FakePlanGenerator, FakeScenario, InMemoryMessageStore, InMemoryProfileStore

from app.core.messages import AnswerMeta, ChatRole, CompletionMeta, ErrorMeta, OnboardingMeta, PlainMeta
from app.core.onboarding_questions import ONBOARDING_QUESTIONS
from app.core.stores import StoreWriteError
from app.db.models import UserPlan
from app.services.plan import COMPLETION_MESSAGE, PLAN_FALLBACK_MESSAGE, PlanHandoff, build_plan_context
from app.services.stores import SqlMessageStore, SqlProfileStore


def _completed_user(db_session, create_user):
    user = create_user()
    profiles = SqlProfileStore(db_session)
    messages = SqlMessageStore(db_session)
    profiles.create(user.id, {"onboarded": True, "onboarding_step": 5, "welcomed": True})
    for step, answer in enumerate(["boundless energy", "7, travel", "pizza night", "all habits done"]):
        messages.append(user.id, ChatRole.assistant, ONBOARDING_QUESTIONS[step].prompt, OnboardingMeta(step=step, answer_required=True))
        messages.append(user.id, ChatRole.user, answer, AnswerMeta(step=step))
    return user, profiles, messages


def test_build_plan_context_orders_steps_and_keeps_latest_answer(message_store) -> None:
    message_store.append(1, ChatRole.user, "tired of being tired", AnswerMeta(step=1))
    message_store.append(1, ChatRole.user, "energy", AnswerMeta(step=0))
    message_store.append(1, ChatRole.user, "just chatting", PlainMeta())
    message_store.append(1, ChatRole.user, "8, work travel", AnswerMeta(step=1))

    text, motivation = build_plan_context(message_store.list(1))

    assert text.splitlines() == [
        f"{ONBOARDING_QUESTIONS[0].short_label} energy",
        f"{ONBOARDING_QUESTIONS[1].short_label} 8, work travel",
    ]
    assert motivation == "energy"


def test_build_plan_context_without_answers_is_empty(message_store) -> None:
    assert build_plan_context(message_store.list(1)) == ("", "")


def test_handoff_generates_and_persists_exactly_one_plan(db_session, create_user) -> None:
    user, profiles, messages = _completed_user(db_session, create_user)
    generator = FakePlanGenerator(FakeScenario.OK_PLAN)
    handoff = PlanHandoff(db_session, profiles, messages, generator)

    plan = handoff(user.id)
    again = handoff(user.id)

    assert plan is not None
    assert again is None
    assert len(generator.calls) == 1
    assert generator.calls[0]["core_motivation"] == "boundless energy"
    assert "pizza night" in generator.calls[0]["context_text"]
    assert db_session.query(UserPlan).filter(UserPlan.user_id == user.id).count() == 1
    assert profiles.read(user.id)["plan_status"] == "ready"

    completions = [m for m in messages.list(user.id) if isinstance(m.meta, CompletionMeta)]
    assert len(completions) == 1
    assert completions[0].role == ChatRole.system
    assert completions[0].text == COMPLETION_MESSAGE


def test_handoff_failure_keeps_onboarded_and_sends_fallback(db_session, create_user) -> None:
    user, profiles, messages = _completed_user(db_session, create_user)
    generator = FakePlanGenerator(FakeScenario.TIMEOUT)

    assert PlanHandoff(db_session, profiles, messages, generator)(user.id) is None

    record = profiles.read(user.id)
    assert record["onboarded"] is True
    assert record["plan_status"] == "failed"
    assert db_session.query(UserPlan).filter(UserPlan.user_id == user.id).count() == 0
    fallbacks = [m for m in messages.list(user.id) if isinstance(m.meta, ErrorMeta)]
    assert len(fallbacks) == 1
    assert fallbacks[0].text == PLAN_FALLBACK_MESSAGE
    assert "timed out" in fallbacks[0].meta.error


def test_handoff_rejects_plan_missing_sections(db_session, create_user) -> None:
    user, profiles, messages = _completed_user(db_session, create_user)
    generator = FakePlanGenerator(FakeScenario.MALFORMED)

    PlanHandoff(db_session, profiles, messages, generator)(user.id)

    assert profiles.read(user.id)["plan_status"] == "failed"
    assert not any(isinstance(m.meta, CompletionMeta) for m in messages.list(user.id))


def test_failed_plan_is_not_retried_by_duplicate_completion(db_session, create_user) -> None:
    user, profiles, messages = _completed_user(db_session, create_user)
    generator = FakePlanGenerator(FakeScenario.TIMEOUT)
    handoff = PlanHandoff(db_session, profiles, messages, generator)

    handoff(user.id)
    handoff(user.id)

    assert len(generator.calls) == 1
    assert len([m for m in messages.list(user.id) if isinstance(m.meta, ErrorMeta)]) == 1


def test_unexpected_generator_error_marks_plan_failed(db_session, create_user) -> None:
    user, profiles, messages = _completed_user(db_session, create_user)
    generator = FakePlanGenerator(FakeScenario.CRASH)

    assert PlanHandoff(db_session, profiles, messages, generator)(user.id) is None

    record = profiles.read(user.id)
    assert record["onboarded"] is True
    assert record["plan_status"] == "failed"
    last = messages.list(user.id)[-1]
    assert isinstance(last.meta, ErrorMeta)
    assert last.text == PLAN_FALLBACK_MESSAGE
    assert last.meta.error == "proxy client bug"


class _StatusWriteFailingStore(InMemoryProfileStore):
    def write(self, user_id, fields, expected=None):
        if fields.get("plan_status") == "failed":
            raise StoreWriteError("profile store unavailable")
        return super().write(user_id, fields, expected)


def test_fallback_is_sent_even_when_failed_status_cannot_be_saved(db_session) -> None:
    profiles = _StatusWriteFailingStore()
    messages = InMemoryMessageStore()
    profiles.seed(7, onboarded=True, onboarding_step=5, plan_status="none")

    PlanHandoff(db_session, profiles, messages, FakePlanGenerator(FakeScenario.TIMEOUT))(7)

    assert profiles.read(7)["plan_status"] == "pending"
    assert [m.text for m in messages.list(7)] == [PLAN_FALLBACK_MESSAGE]
