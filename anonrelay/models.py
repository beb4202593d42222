from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional

MESSAGE = "message"
REPLY = "reply"
DIRECTIONS = (MESSAGE, REPLY)


# --------------------------- Domain Model ---------------------------
@dataclass
class User:
    platform_id: int
    handle: Optional[str]
    created_at: float
    last_activity: float
    invited_by: Optional[int] = None
    answer_tip: bool = True

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "User":
        return cls(**row)

    def to_row(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class LinkToken:
    value: str
    owner_id: int
    created_at: float
    revoked: bool = False

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "LinkToken":
        return cls(**row)

    def to_row(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class PendingExchange:
    exchange_id: str
    sender_id: int  # server-side only, never shown to the recipient
    recipient_id: int
    direction: str
    content_ref: str
    created_at: float
    expires_at: float
    answered: bool = False
    answered_at: Optional[float] = None
    answers: Optional[str] = None  # the exchange this reply answered

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "PendingExchange":
        return cls(**row)

    def to_row(self) -> Dict[str, Any]:
        return asdict(self)

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at

    def is_open(self, now: float) -> bool:
        return not self.answered and not self.is_expired(now)


# --------------------------- Conversation State ---------------------------
@dataclass(frozen=True)
class Idle:
    name = "idle"


@dataclass(frozen=True)
class AwaitingMessage:
    token: str
    name = "awaiting_message"


@dataclass(frozen=True)
class AwaitingReply:
    exchange_id: str
    name = "awaiting_reply"


@dataclass(frozen=True)
class ChatState:
    """A chat's state plus the moment it was entered."""

    state: Any
    updated_at: float

    def to_row(self) -> Dict[str, Any]:
        arg = None
        if isinstance(self.state, AwaitingMessage):
            arg = self.state.token
        elif isinstance(self.state, AwaitingReply):
            arg = self.state.exchange_id
        return {"name": self.state.name, "arg": arg, "updated_at": self.updated_at}

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "ChatState":
        name, arg = row.get("name"), row.get("arg")
        if name == AwaitingMessage.name and arg:
            state: Any = AwaitingMessage(arg)
        elif name == AwaitingReply.name and arg:
            state = AwaitingReply(arg)
        else:
            state = Idle()
        return cls(state=state, updated_at=float(row.get("updated_at", 0)))
