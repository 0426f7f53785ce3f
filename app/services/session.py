from typing import Optional

from sqlalchemy.orm import Session

from app.core.access_gate import GateNavigator, RouteId
from app.core.onboarding import OnboardingSequencer
from app.core.pipeline import SessionContext, SessionPipeline
from app.db.models import User
from app.services.plan import PlanGenerator, PlanHandoff
from app.services.seed import display_name_guess, seed_for_new_user
from app.services.stores import SqlMessageStore, SqlProfileStore


class UserSession:
    """Everything one authenticated request needs to drive the engine."""

    def __init__(self, db: Session, user: Optional[User], generator: Optional[PlanGenerator] = None) -> None:
        self.db = db
        self.user = user
        self.profiles = SqlProfileStore(db)
        self.messages = SqlMessageStore(db)
        self.redirects: list[RouteId] = []
        self.confirmations: list[tuple[str, str]] = []
        self.navigator = GateNavigator(
            navigate=self.redirects.append,
            confirm=lambda title, message: self.confirmations.append((title, message)),
        )
        on_complete = None
        if generator is not None:
            on_complete = PlanHandoff(db, self.profiles, self.messages, generator)
        self.sequencer = OnboardingSequencer(self.profiles, self.messages, on_complete=on_complete)
        self.pipeline = SessionPipeline(
            SessionContext(user_id=user.id if user else None),
            sequencer=self.sequencer,
            navigator=self.navigator,
            seed=self._seed if user else None,
        )

    @property
    def context(self) -> SessionContext:
        return self.pipeline.context

    def _seed(self, user_id: int) -> None:
        name = display_name_guess(self.user.email) if self.user else "there"
        seed_for_new_user(self.db, user_id, name)
