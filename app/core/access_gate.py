import logging
import os
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional, Union

from app.core.session_state import SessionState

logger = logging.getLogger("uvicorn.error")

GATE_CONFIRM_REDIRECTS = os.getenv("GATE_CONFIRM_REDIRECTS", "false").strip().lower() in {"1", "true", "yes"}


class RouteId(str, Enum):
    landing = "landing"
    sign_in = "sign-in"
    sign_up = "sign-up"
    welcome = "welcome"
    profile = "profile"
    chat = "chat"
    meal = "meal"
    workout = "workout"
    daily = "daily"
    progress = "progress"
    home = "home"
    settings = "settings"
    account = "account"


PUBLIC_ROUTES = frozenset({RouteId.sign_in, RouteId.sign_up, RouteId.landing})
AUTH_ONLY_ROUTES = frozenset({RouteId.sign_in, RouteId.sign_up})
DEFAULT_AUTHENTICATED_ROUTE = RouteId.chat


class GateReason(str, Enum):
    sign_in_required = "sign_in_required"
    welcome_required = "welcome_required"
    profile_required = "profile_required"
    already_signed_in = "already_signed_in"


CONFIRMATION_COPY: dict[GateReason, tuple[str, str]] = {
    GateReason.sign_in_required: ("Access Required", "Please sign in to access this feature."),
    GateReason.welcome_required: ("Access Required", "Please complete the welcome setup first."),
    GateReason.profile_required: (
        "Complete Your Profile",
        "Please complete your profile to access all features of the app.",
    ),
    GateReason.already_signed_in: ("Welcome back", "You're already signed in."),
}


@dataclass(frozen=True)
class Allow:
    pass


@dataclass(frozen=True)
class RedirectTo:
    route: RouteId
    reason: GateReason

    @property
    def confirmation(self) -> tuple[str, str]:
        return CONFIRMATION_COPY[self.reason]


Decision = Union[Allow, RedirectTo]
ALLOW = Allow()


def decide(state: SessionState, route: RouteId) -> Decision:
    # Rule order is part of the policy: the first matching rule wins.
    if not state.authenticated and route not in PUBLIC_ROUTES:
        return RedirectTo(RouteId.sign_in, GateReason.sign_in_required)
    if state.authenticated and not state.welcomed and route not in {RouteId.welcome, RouteId.profile}:
        return RedirectTo(RouteId.welcome, GateReason.welcome_required)
    if state.welcomed and not state.profile_complete and route not in {RouteId.profile, RouteId.welcome}:
        return RedirectTo(RouteId.profile, GateReason.profile_required)
    if state.authenticated and state.welcomed and state.profile_complete and route in AUTH_ONLY_ROUTES:
        return RedirectTo(DEFAULT_AUTHENTICATED_ROUTE, GateReason.already_signed_in)
    return ALLOW


class GateNavigator:
    """Applies gate decisions through the navigation collaborator.

    ``navigate`` performs the screen transition. ``confirm`` is called with a
    title and message before navigating when confirmation mode is on. A
    redirect to the route already being navigated to is dropped.
    """

    def __init__(
        self,
        navigate: Callable[[RouteId], None],
        confirm: Optional[Callable[[str, str], None]] = None,
        confirm_redirects: bool = GATE_CONFIRM_REDIRECTS,
    ) -> None:
        self._navigate = navigate
        self._confirm = confirm
        self.confirm_redirects = confirm_redirects and confirm is not None
        self.navigating_to: Optional[RouteId] = None

    def apply(self, decision: Decision, current_route: Optional[RouteId]) -> bool:
        if isinstance(decision, Allow):
            return False
        if decision.route == self.navigating_to or decision.route == current_route:
            return False
        self.navigating_to = decision.route
        logger.info("gate_redirect to=%s reason=%s from=%s", decision.route.value, decision.reason.value,
                    current_route.value if current_route else None)
        if self.confirm_redirects and self._confirm is not None:
            title, message = decision.confirmation
            self._confirm(title, message)
        self._navigate(decision.route)
        return True

    def route_changed(self, route: RouteId) -> None:
        if route == self.navigating_to:
            self.navigating_to = None
