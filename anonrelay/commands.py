from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Tuple

MAX_TEXT_LENGTH = 4096  # Telegram's limit for one text message


class CommandKind(str, Enum):
    RELAY = "relay"  # anonymous message to a recipient
    REPLY = "reply"  # anonymous reply back to the other side
    CONFIRMATION = "confirmation"
    EXPIRY_NOTICE = "expiry_notice"
    GUIDANCE = "guidance"
    LINK = "link"
    FAILURE = "failure"


RELAYED_KINDS = (CommandKind.RELAY, CommandKind.REPLY)


@dataclass(frozen=True)
class Button:
    label: str
    callback_data: str


@dataclass(frozen=True)
class OutboundCommand:
    """One message the Delivery Gateway should send.

    ``exchange_id`` and ``copy_from`` stay on the server: the first names the
    exchange a relayed message belongs to, the second is the (chat, message)
    pair Telegram copies media from. Neither is shown to the recipient.
    """

    chat_id: int
    kind: CommandKind
    text: str
    buttons: Tuple[Button, ...] = field(default_factory=tuple)
    exchange_id: Optional[str] = None
    copy_from: Optional[Tuple[int, int]] = None


REPLY_CALLBACK = "reply:"
CANCEL_CALLBACK = "cancel"


def reply_button(exchange_id: str) -> Button:
    return Button("Ответить", REPLY_CALLBACK + exchange_id)


def cancel_button() -> Button:
    return Button("Отмена", CANCEL_CALLBACK)
