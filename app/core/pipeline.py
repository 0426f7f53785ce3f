import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Optional, Union

from app.core.access_gate import ALLOW, Allow, Decision, GateNavigator, RedirectTo, RouteId, decide
from app.core.messages import AnswerMeta, ChatRole, ConversationMessage, PlainMeta
from app.core.onboarding import OnboardingSequencer
from app.core.session_state import SIGNED_OUT, SessionState, derive_session_state
from app.core.stores import MessageStore, ProfileRecord, ProfileStore, StaleWriteError, Unsubscribe

logger = logging.getLogger("uvicorn.error")


@dataclass
class SessionContext:
    """Per-session state. Created at sign-in (or request start), dropped at sign-out."""

    user_id: Optional[int]
    seeded: bool = False
    initialized: bool = False
    state: SessionState = SIGNED_OUT
    current_route: Optional[RouteId] = None
    decision: Decision = ALLOW
    unsubscribers: list[Unsubscribe] = field(default_factory=list)


@dataclass(frozen=True)
class ProfileChanged:
    record: Optional[ProfileRecord] = None


@dataclass(frozen=True)
class MessagesChanged:
    messages: Optional[tuple[ConversationMessage, ...]] = None


@dataclass(frozen=True)
class RouteChanged:
    route: RouteId


@dataclass(frozen=True)
class AnswerSubmitted:
    text: str
    step: int


@dataclass(frozen=True)
class AutoAdvance:
    step: int


SessionEvent = Union[ProfileChanged, MessagesChanged, RouteChanged, AnswerSubmitted, AutoAdvance]


class OnboardingClosedError(RuntimeError):
    pass


class GateBlockedError(RuntimeError):
    def __init__(self, decision: RedirectTo):
        super().__init__(f"Route blocked, redirect to {decision.route.value}")
        self.decision = decision


class StepMismatchError(StaleWriteError):
    pass


class SessionPipeline:
    """Single ordered queue turning data-change events into side effects.

    Handlers only run from ``drain``; events published while draining are
    queued behind the current one, so store listeners never re-enter the
    sequencer. Every handler is safe to run on a duplicated event.
    """

    def __init__(
        self,
        context: SessionContext,
        sequencer: Optional[OnboardingSequencer] = None,
        navigator: Optional[GateNavigator] = None,
        profiles: Optional[ProfileStore] = None,
        messages: Optional[MessageStore] = None,
        seed: Optional[Callable[[int], None]] = None,
    ) -> None:
        self.context = context
        self.sequencer = sequencer
        self.navigator = navigator
        self.profiles = profiles or (sequencer.profiles if sequencer else None)
        self.messages = messages or (sequencer.messages if sequencer else None)
        self._seed = seed
        self._queue: deque[SessionEvent] = deque()
        self._draining = False
        if sequencer is not None:
            sequencer.set_scheduler(self._schedule_auto_advance)

    def start(self) -> None:
        ctx = self.context
        if ctx.initialized:
            return
        ctx.initialized = True
        if ctx.user_id is None:
            self.publish(ProfileChanged(None))
            return
        if self._seed is not None and not ctx.seeded:
            self._seed(ctx.user_id)
            ctx.seeded = True
        if self.profiles is not None:
            ctx.unsubscribers.append(
                self.profiles.subscribe(ctx.user_id, lambda record: self.publish(ProfileChanged(record)))
            )
        if self.messages is not None:
            ctx.unsubscribers.append(
                self.messages.subscribe(
                    ctx.user_id, lambda items: self.publish(MessagesChanged(tuple(items)))
                )
            )
        self.publish(ProfileChanged(None))

    def close(self) -> None:
        while self.context.unsubscribers:
            self.context.unsubscribers.pop()()
        self._queue.clear()

    def publish(self, event: SessionEvent) -> None:
        self._queue.append(event)
        if not self._draining:
            self.drain()

    def drain(self) -> None:
        self._draining = True
        try:
            while self._queue:
                self._handle(self._queue.popleft())
        finally:
            self._draining = False

    def _schedule_auto_advance(self, user_id: int, step: int) -> None:
        if user_id == self.context.user_id:
            self.publish(AutoAdvance(step))

    def _handle(self, event: SessionEvent) -> None:
        if isinstance(event, ProfileChanged):
            self._on_profile_changed(event)
        elif isinstance(event, MessagesChanged):
            self._sync_onboarding(list(event.messages) if event.messages is not None else None)
        elif isinstance(event, RouteChanged):
            self._on_route_changed(event)
        elif isinstance(event, AnswerSubmitted):
            self._on_answer(event)
        elif isinstance(event, AutoAdvance):
            self._on_auto_advance(event)

    def _on_profile_changed(self, event: ProfileChanged) -> None:
        ctx = self.context
        record = event.record
        if ctx.user_id is not None and self.profiles is not None:
            # Queued snapshots can be stale; the latest stored record wins.
            record = self.profiles.read(ctx.user_id)
        ctx.state = derive_session_state(record, ctx.user_id is not None)
        self._evaluate_gate()
        self._sync_onboarding(None)

    def _on_route_changed(self, event: RouteChanged) -> None:
        self.context.current_route = event.route
        if self.navigator is not None:
            self.navigator.route_changed(event.route)
        self._evaluate_gate()
        self._sync_onboarding(None)

    def _evaluate_gate(self) -> None:
        ctx = self.context
        if ctx.current_route is None:
            return
        ctx.decision = decide(ctx.state, ctx.current_route)
        if self.navigator is not None:
            self.navigator.apply(ctx.decision, ctx.current_route)

    def _chat_allowed(self) -> bool:
        ctx = self.context
        return ctx.current_route == RouteId.chat and isinstance(decide(ctx.state, RouteId.chat), Allow)

    def _sync_onboarding(self, messages: Optional[list[ConversationMessage]]) -> None:
        ctx = self.context
        if self.sequencer is None or ctx.user_id is None:
            return
        if ctx.state.onboarded or not self._chat_allowed():
            return
        self.sequencer.send_next_question(ctx.user_id, ctx.state.onboarding_step, messages)

    def _on_answer(self, event: AnswerSubmitted) -> None:
        ctx = self.context
        if self.sequencer is None or self.messages is None or ctx.user_id is None:
            raise RuntimeError("Answer submitted to a pipeline without an onboarding sequencer")
        decision = decide(ctx.state, RouteId.chat)
        if isinstance(decision, RedirectTo):
            raise GateBlockedError(decision)
        if ctx.state.onboarded:
            raise OnboardingClosedError("Onboarding is already complete")
        step = ctx.state.onboarding_step
        if event.step != step:
            raise StepMismatchError(ctx.user_id, "onboarding_step", [event.step], step)

        required = self.sequencer.does_step_require_answer(step)
        # Text typed during an informational step is kept in the log but never counted.
        meta = AnswerMeta(step=step) if required else PlainMeta()
        self.messages.append(ctx.user_id, ChatRole.user, event.text, meta)
        if required:
            self.sequencer.progress_onboarding_step(ctx.user_id, step)
        else:
            logger.info("onboarding_answer_not_required user_id=%s step=%s", ctx.user_id, step)

    def _on_auto_advance(self, event: AutoAdvance) -> None:
        ctx = self.context
        if self.sequencer is None or ctx.user_id is None:
            return
        record = self.profiles.read(ctx.user_id) if self.profiles is not None else None
        state = derive_session_state(record, True) if record is not None else ctx.state
        if state.onboarded or state.onboarding_step != event.step:
            logger.info(
                "onboarding_auto_advance_skipped user_id=%s step=%s current=%s",
                ctx.user_id,
                event.step,
                state.onboarding_step,
            )
            return
        self.sequencer.progress_onboarding_step(ctx.user_id, event.step)
