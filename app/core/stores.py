from collections.abc import Iterable, Mapping
from typing import Any, Callable, Optional, Protocol

from pydantic import BaseModel

from app.core.messages import ChatRole, ConversationMessage

ProfileRecord = dict[str, Any]
ProfileListener = Callable[[Optional[ProfileRecord]], None]
MessageListener = Callable[[list[ConversationMessage]], None]
Unsubscribe = Callable[[], None]


class StoreWriteError(RuntimeError):
    """A store could not persist a write. The write must be treated as not applied."""


class StaleWriteError(StoreWriteError):
    def __init__(self, user_id: int, field: str, expected: Iterable[Any], actual: Any):
        super().__init__(
            f"Stale write for user {user_id}: {field} is {actual!r}, expected one of {list(expected)!r}"
        )
        self.user_id = user_id
        self.field = field
        self.actual = actual


class ProfileNotFoundError(StoreWriteError):
    def __init__(self, user_id: int):
        super().__init__(f"Profile not found for user {user_id}")
        self.user_id = user_id


class ProfileStore(Protocol):
    def read(self, user_id: int) -> Optional[ProfileRecord]:
        ...

    def write(
        self,
        user_id: int,
        fields: Mapping[str, Any],
        expected: Optional[Mapping[str, Iterable[Any]]] = None,
    ) -> ProfileRecord:
        ...

    def subscribe(self, user_id: int, on_change: ProfileListener) -> Unsubscribe:
        ...


class MessageStore(Protocol):
    def append(
        self, user_id: int, role: ChatRole, text: str, meta: Optional[BaseModel] = None
    ) -> ConversationMessage:
        ...

    def list(self, user_id: int) -> list[ConversationMessage]:
        ...

    def subscribe(self, user_id: int, on_change: MessageListener) -> Unsubscribe:
        ...
