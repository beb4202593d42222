"""Conversation State Machine.

    Idle --Start(token)--> AwaitingMessage(token) --Text|Media--> Idle   (sender's chat)
                                                      \\-> AwaitingReply(exchange)  (recipient's chat)
    AwaitingReply(exchange) --Text|Media--> Idle           (reply relayed back)

Every (state, event) pair has an outcome. Events a state does not expect
leave the state alone and answer with a guidance message. Non-idle states
older than the inactivity window fall back to Idle the next time the chat is
touched.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Union

from anonrelay import texts
from anonrelay.anonymizer import IdentityAnonymizer
from anonrelay.commands import MAX_TEXT_LENGTH, CommandKind, OutboundCommand, cancel_button, reply_button
from anonrelay.errors import AddressError, AlreadyAnswered, ExchangeConflict, ExchangeExpired
from anonrelay.models import AwaitingMessage, AwaitingReply, ChatState, Idle, User
from anonrelay.telemetry import TelemetrySink

logger = logging.getLogger(__name__)

State = Union[Idle, AwaitingMessage, AwaitingReply]


# --------------------------- Inbound Events ---------------------------
@dataclass(frozen=True)
class Start:
    token: Optional[str] = None


@dataclass(frozen=True)
class Text:
    text: str


@dataclass(frozen=True)
class Media:
    """A photo, voice, sticker or other message the bot re-sends with copy_message."""

    message_id: int


@dataclass(frozen=True)
class ReplyPressed:
    exchange_id: str


@dataclass(frozen=True)
class Cancel:
    pass


@dataclass(frozen=True)
class ShowLink:
    pass


@dataclass(frozen=True)
class RegenerateLink:
    pass


@dataclass(frozen=True)
class Help:
    pass


@dataclass(frozen=True)
class Stats:
    pass


@dataclass(frozen=True)
class UnknownCommand:
    name: str


@dataclass(frozen=True)
class Unsupported:
    pass


Content = Union[Text, Media]
Event = Union[
    Start, Text, Media, ReplyPressed, Cancel, ShowLink, RegenerateLink, Help, Stats, UnknownCommand, Unsupported
]


@dataclass(frozen=True)
class InboundUpdate:
    """What the transport hands over: who wrote and what they did."""

    sender_id: int
    event: Event
    handle: Optional[str] = None


@dataclass
class Step:
    state: State
    commands: List[OutboundCommand] = field(default_factory=list)


# --------------------------- Machine ---------------------------
class ConversationMachine:
    def __init__(
        self,
        anonymizer: IdentityAnonymizer,
        telemetry: TelemetrySink,
        link_for: Callable[[str], str],
        timeout: float,
        is_admin: Callable[[int], bool] = lambda user_id: False,
    ):
        self.anonymizer = anonymizer
        self.store = anonymizer.store
        self.telemetry = telemetry
        self.link_for = link_for
        self.timeout = timeout
        self.is_admin = is_admin

    def _my_link(self, user: User) -> str:
        return self.link_for(self.anonymizer.mint_link(user))

    def _is_busy(self, current: ChatState) -> bool:
        if isinstance(current.state, Idle):
            return False
        return self.store.clock() - current.updated_at <= self.timeout

    def _say(self, chat_id: int, kind: CommandKind, text: str, **kwargs) -> OutboundCommand:
        return OutboundCommand(chat_id=chat_id, kind=kind, text=text, **kwargs)

    def handle(self, chat_id: int, user: User, event: Event) -> List[OutboundCommand]:
        """Apply one event to the chat's stored state and return what to send."""
        current = self.store.get_chat_state(chat_id)
        commands: List[OutboundCommand] = []
        state: State = current.state

        if not isinstance(state, Idle) and not self._is_busy(current):
            logger.info("Chat %s: %s expired", chat_id, state.name)
            self.store.clear_chat_state(chat_id)
            commands.append(self._say(chat_id, CommandKind.EXPIRY_NOTICE, texts.EXPIRED))
            state = Idle()
            if isinstance(event, (Text, Media)):
                return commands

        step = self.step(chat_id, user, state, event)
        if step.state != state or not isinstance(state, Idle):
            self.store.set_chat_state(chat_id, step.state)
        return commands + step.commands

    def step(self, chat_id: int, user: User, state: State, event: Event) -> Step:
        if isinstance(event, Start):
            return self._on_start(chat_id, user, state, event.token)
        if isinstance(event, Cancel):
            if isinstance(state, Idle):
                return Step(state, [self._say(chat_id, CommandKind.GUIDANCE, texts.NOTHING_TO_CANCEL)])
            return Step(Idle(), [self._say(chat_id, CommandKind.GUIDANCE, texts.CANCELLED)])
        if isinstance(event, ReplyPressed):
            return self._on_reply_pressed(chat_id, user, state, event.exchange_id)
        if isinstance(event, (Text, Media)):
            if isinstance(state, AwaitingMessage):
                return self._on_message(chat_id, user, state, event)
            if isinstance(state, AwaitingReply):
                return self._on_reply(chat_id, user, state, event)
            return Step(state, [
                self._say(chat_id, CommandKind.GUIDANCE, texts.UNEXPECTED_MESSAGE.format(link=self._my_link(user)))
            ])
        if isinstance(event, ShowLink):
            return Step(state, [self._say(chat_id, CommandKind.LINK, texts.YOUR_LINK.format(link=self._my_link(user)))])
        if isinstance(event, RegenerateLink):
            link = self.link_for(self.anonymizer.regenerate_link(user))
            return Step(state, [self._say(chat_id, CommandKind.LINK, texts.NEW_LINK.format(link=link))])
        if isinstance(event, Help):
            return Step(state, [self._say(chat_id, CommandKind.GUIDANCE, texts.HELP)])
        if isinstance(event, Stats):
            if not self.is_admin(user.platform_id):
                return Step(state, [self._say(chat_id, CommandKind.GUIDANCE, texts.NOT_ALLOWED)])
            return Step(state, [self._say(chat_id, CommandKind.GUIDANCE, texts.STATS.format(**self.store.stats()))])
        if isinstance(event, UnknownCommand):
            return Step(state, [self._say(chat_id, CommandKind.GUIDANCE, texts.UNKNOWN_COMMAND)])
        return Step(state, [self._say(chat_id, CommandKind.GUIDANCE, texts.UNSUPPORTED)])

    # --------------------------- Transitions ---------------------------
    def _on_start(self, chat_id: int, user: User, state: State, token: Optional[str]) -> Step:
        commands = []
        if not isinstance(state, Idle):
            commands.append(self._say(chat_id, CommandKind.GUIDANCE, texts.CANCELLED))

        if not token:
            commands.append(self._say(chat_id, CommandKind.LINK, texts.WELCOME.format(link=self._my_link(user))))
            return Step(Idle(), commands)

        try:
            recipient_id = self.anonymizer.address_of(token)
        except AddressError as e:
            self.telemetry.report("address_error", reason=e.reason, chat_id=chat_id)
            commands.append(
                self._say(chat_id, CommandKind.GUIDANCE, texts.LINK_INVALID.format(link=self._my_link(user)))
            )
            return Step(Idle(), commands)

        if recipient_id == user.platform_id:
            commands.append(self._say(chat_id, CommandKind.GUIDANCE, texts.SELF_LINK))
            return Step(Idle(), commands)

        if user.invited_by is None:
            self.store.set_invited_by(user.platform_id, recipient_id)

        commands.append(self._say(chat_id, CommandKind.GUIDANCE, texts.ASK_MESSAGE, buttons=(cancel_button(),)))
        return Step(AwaitingMessage(token), commands)

    def _on_message(self, chat_id: int, sender: User, state: AwaitingMessage, content: Content) -> Step:
        try:
            exchange_id = self.anonymizer.begin_anonymous_send(sender, state.token, digest_source(chat_id, content))
        except AddressError as e:
            self.telemetry.report("address_error", reason=e.reason, chat_id=chat_id)
            if e.reason == AddressError.SELF:
                return Step(Idle(), [self._say(chat_id, CommandKind.GUIDANCE, texts.SELF_LINK)])
            link = self._my_link(sender)
            return Step(Idle(), [self._say(chat_id, CommandKind.GUIDANCE, texts.LINK_INVALID.format(link=link))])
        except ExchangeConflict:
            self.telemetry.report("exchange_conflict", chat_id=chat_id)
            return Step(Idle(), [self._say(chat_id, CommandKind.GUIDANCE, texts.ALREADY_WAITING)])

        recipient_id = self.anonymizer.address_of(state.token)
        commands = self._deliver(recipient_id, CommandKind.RELAY, texts.INCOMING, chat_id, content, exchange_id)
        link = self._my_link(sender)
        commands.append(self._say(chat_id, CommandKind.CONFIRMATION, texts.SENT.format(link=link)))
        return Step(Idle(), commands)

    def _on_reply_pressed(self, chat_id: int, user: User, state: State, exchange_id: str) -> Step:
        try:
            self.anonymizer.resolve_reply_target(exchange_id, user)
        except (ExchangeExpired, AlreadyAnswered) as e:
            return Step(state, [self._exchange_problem(chat_id, e)])
        commands = []
        if isinstance(state, AwaitingMessage):
            commands.append(self._say(chat_id, CommandKind.GUIDANCE, texts.CANCELLED))
        commands.append(self._say(chat_id, CommandKind.GUIDANCE, texts.ASK_REPLY, buttons=(cancel_button(),)))
        return Step(AwaitingReply(exchange_id), commands)

    def _on_reply(self, chat_id: int, user: User, state: AwaitingReply, content: Content) -> Step:
        try:
            target_id, next_id = self.anonymizer.send_reply(user, state.exchange_id, digest_source(chat_id, content))
        except (ExchangeExpired, AlreadyAnswered) as e:
            return Step(Idle(), [self._exchange_problem(chat_id, e)])
        commands = self._deliver(target_id, CommandKind.REPLY, texts.INCOMING_REPLY, chat_id, content, next_id)
        commands.append(self._say(chat_id, CommandKind.CONFIRMATION, texts.REPLY_SENT))
        return Step(Idle(), commands)

    def _exchange_problem(self, chat_id: int, error) -> OutboundCommand:
        self.telemetry.report("exchange_error", reason=error.reason, chat_id=chat_id)
        text = texts.ALREADY_ANSWERED if isinstance(error, AlreadyAnswered) else texts.EXCHANGE_EXPIRED
        return self._say(chat_id, CommandKind.GUIDANCE, text)

    def _deliver(
        self,
        target_id: int,
        kind: CommandKind,
        header: str,
        source_chat: int,
        content: Content,
        exchange_id: str,
    ) -> List[OutboundCommand]:
        """Build what the other side receives. Only the content and the exchange id go in."""
        extra = {"buttons": (reply_button(exchange_id),), "exchange_id": exchange_id}
        if isinstance(content, Media):
            # Telegram copies the message server-side; the recipient never sees where from.
            relayed = self._say(target_id, kind, "", copy_from=(source_chat, content.message_id), **extra)
        else:
            relayed = self._say(target_id, kind, with_header(header, content.text), **extra)
        commands = [relayed]

        target = self.store.get_user(target_id)
        if target is not None and target.answer_tip:
            commands.append(self._say(target_id, CommandKind.GUIDANCE, texts.ANSWER_TIP))
            self.store.set_answer_tip(target_id, False)

        # Private chats share the user's id; don't clobber a flow in progress.
        if not self._is_busy(self.store.get_chat_state(target_id)):
            self.store.set_chat_state(target_id, AwaitingReply(exchange_id))
            commands.append(self._say(target_id, CommandKind.GUIDANCE, texts.REPLY_READY, buttons=(cancel_button(),)))
        return commands


def with_header(header: str, text: str) -> str:
    """Prefix the header unless that would push the text past Telegram's limit."""
    framed = f"{header}\n\n{text}"
    return framed if len(framed) <= MAX_TEXT_LENGTH else text


def digest_source(chat_id: int, content: Content) -> str:
    if isinstance(content, Media):
        return f"media:{chat_id}:{content.message_id}"
    return content.text
