from typing import Protocol

import httpx

from app.core.stores import ProfileRecord
from app.services.plan import AI_PROXY_URL, profile_payload, proxy_timeout

COACH_FALLBACK_MESSAGE = (
    "Thanks for your message! I'm having trouble reaching my coaching brain right now. "
    "Please try again in a moment, or explore the other tabs to see your plan and track your progress!"
)


class CoachReplyError(RuntimeError):
    pass


class CoachClient(Protocol):
    def reply(self, text: str, profile: ProfileRecord) -> str:
        ...


class ProxyCoachClient:
    """Free-form coach chat through the AI proxy's ``/chat`` route."""

    def __init__(self, base_url: str = AI_PROXY_URL) -> None:
        self.base_url = base_url

    def reply(self, text: str, profile: ProfileRecord) -> str:
        payload = {"message": text, "userData": profile_payload(profile)}
        try:
            response = httpx.post(f"{self.base_url}/chat", json=payload, timeout=proxy_timeout())
            response.raise_for_status()
        except httpx.TimeoutException as exc:
            raise CoachReplyError("Coach request timed out while waiting for the AI proxy.") from exc
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code if exc.response is not None else None
            raise CoachReplyError(f"Coach request failed (status={status})") from exc
        except httpx.HTTPError as exc:
            raise CoachReplyError(f"Coach request failed: {str(exc)[:220]}") from exc

        try:
            data = response.json()
        except ValueError as exc:
            raise CoachReplyError("AI proxy returned a non-JSON envelope") from exc
        reply = data.get("reply") if isinstance(data, dict) else None
        if not isinstance(reply, str) or not reply.strip():
            raise CoachReplyError("AI proxy returned an empty coach reply")
        return reply.strip()


def get_coach_client() -> CoachClient:
    return ProxyCoachClient()
