from __future__ import annotations

from typing import Any, List, Tuple

import pytest
from telegram.error import Forbidden

from anonrelay.config import Settings
from anonrelay.conversation import InboundUpdate
from anonrelay.dispatcher import RelayDispatcher, build_context

BOT = "anon_test_bot"
ADMIN = 42


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeBot:
    """Records sends; chats in ``blocked`` refuse everything, ``failures`` are raised one per call."""

    def __init__(self, *failures, blocked=()):
        self.failures = list(failures)
        self.blocked = set(blocked)
        self.sent = []
        self.copied = []

    def _check(self, chat_id):
        if chat_id in self.blocked:
            raise Forbidden("Forbidden: bot was blocked by the user")
        if self.failures:
            raise self.failures.pop(0)

    async def send_message(self, chat_id, text, reply_markup=None):
        self._check(chat_id)
        self.sent.append((chat_id, text, reply_markup))

    async def copy_message(self, chat_id, from_chat_id, message_id, reply_markup=None):
        self._check(chat_id)
        self.copied.append((chat_id, from_chat_id, message_id, reply_markup))


class RecordingTelemetry:
    def __init__(self):
        self.events: List[Tuple[str, dict]] = []

    def report(self, kind: str, **fields: Any) -> None:
        self.events.append((kind, fields))

    def kinds(self) -> List[str]:
        return [kind for kind, _ in self.events]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def telemetry():
    return RecordingTelemetry()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        bot_token="test-token",
        data_dir=tmp_path,
        admins=[ADMIN],
        exchange_retention_hours=168,
        conversation_timeout_minutes=30,
        transient_retries=2,
        retry_backoff_seconds=0.001,
        lock_timeout_seconds=2,
    )


@pytest.fixture
def ctx(settings, telemetry, clock):
    return build_context(settings, BOT, telemetry=telemetry, clock=clock)


@pytest.fixture
def store(ctx):
    return ctx.store


@pytest.fixture
def anonymizer(ctx):
    return ctx.anonymizer


@pytest.fixture
def dispatcher(ctx):
    return RelayDispatcher(ctx)


@pytest.fixture
def send(dispatcher):
    """Deliver an event from a user's private chat (chat id == user id)."""

    async def _send(user_id: int, event, handle: str = None):
        return await dispatcher.handle_update(user_id, InboundUpdate(sender_id=user_id, event=event, handle=handle))

    return _send


def token_from_link(link_text: str) -> str:
    marker = f"https://t.me/{BOT}?start="
    start = link_text.index(marker) + len(marker)
    return link_text[start:].split()[0]
