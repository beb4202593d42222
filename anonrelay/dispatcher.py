"""Relay Dispatcher: inbound update in, outbound commands out. Never sends anything itself."""
from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Callable, DefaultDict, List, Optional

from anonrelay import texts
from anonrelay.anonymizer import IdentityAnonymizer, deep_link
from anonrelay.commands import CommandKind, OutboundCommand
from anonrelay.config import Settings
from anonrelay.conversation import ConversationMachine, InboundUpdate
from anonrelay.errors import CorruptionError, TransientError
from anonrelay.models import AwaitingReply
from anonrelay.storage import Store
from anonrelay.telemetry import LoggingTelemetry, TelemetrySink

logger = logging.getLogger(__name__)


@dataclass
class RelayContext:
    """Everything a dispatcher needs, passed explicitly instead of module globals."""

    settings: Settings
    store: Store
    anonymizer: IdentityAnonymizer
    telemetry: TelemetrySink
    link_for: Callable[[str], str]


def build_context(
    settings: Settings,
    bot_username: str,
    telemetry: Optional[TelemetrySink] = None,
    clock: Optional[Callable[[], float]] = None,
) -> RelayContext:
    kwargs = {"clock": clock} if clock else {}
    store = Store(
        settings.store_path,
        retention=settings.exchange_retention,
        lock_timeout=settings.lock_timeout_seconds,
        **kwargs,
    )
    return RelayContext(
        settings=settings,
        store=store,
        anonymizer=IdentityAnonymizer(store),
        telemetry=telemetry or LoggingTelemetry(),
        link_for=lambda token: deep_link(bot_username, token),
    )


class RelayDispatcher:
    def __init__(self, ctx: RelayContext):
        self.ctx = ctx
        self.machine = ConversationMachine(
            ctx.anonymizer,
            ctx.telemetry,
            link_for=ctx.link_for,
            timeout=ctx.settings.conversation_timeout,
            is_admin=ctx.settings.is_admin,
        )
        self._chat_locks: DefaultDict[int, asyncio.Lock] = defaultdict(asyncio.Lock)

    def apply(self, chat_id: int, update: InboundUpdate) -> List[OutboundCommand]:
        """Run one update as a single store transaction."""
        store = self.ctx.store
        with store.transaction():
            store.purge_expired()
            user = store.upsert_user(update.sender_id, update.handle)
            return self.machine.handle(chat_id, user, update.event)

    async def handle_update(self, chat_id: int, update: InboundUpdate) -> List[OutboundCommand]:
        async with self._chat_locks[chat_id]:
            return await self._handle_with_retry(chat_id, update)

    async def _handle_with_retry(self, chat_id: int, update: InboundUpdate) -> List[OutboundCommand]:
        settings = self.ctx.settings
        for attempt in range(settings.transient_retries + 1):
            try:
                return await asyncio.to_thread(self.apply, chat_id, update)
            except TransientError as e:
                self.ctx.telemetry.report("store_unavailable", attempt=attempt, error=str(e))
                if attempt < settings.transient_retries:
                    await asyncio.sleep(settings.retry_backoff_seconds * 2 ** attempt)
            except CorruptionError as e:
                logger.exception("Chat %s: corrupted state", chat_id)
                self.ctx.telemetry.report("corruption", chat_id=chat_id, error=str(e))
                return [OutboundCommand(chat_id=chat_id, kind=CommandKind.FAILURE, text=texts.FAILURE)]

        logger.error("Chat %s: store unavailable after %d attempts", chat_id, settings.transient_retries + 1)
        return [OutboundCommand(chat_id=chat_id, kind=CommandKind.FAILURE, text=texts.TRY_LATER)]

    def withdraw(self, command: OutboundCommand) -> None:
        """Undo the exchange behind a relayed message that was never delivered."""
        store = self.ctx.store
        with store.transaction():
            self.ctx.anonymizer.withdraw_exchange(command.exchange_id)
            if store.get_chat_state(command.chat_id).state == AwaitingReply(command.exchange_id):
                store.clear_chat_state(command.chat_id)

    async def delivery_failed(self, chat_id: int, command: OutboundCommand) -> List[OutboundCommand]:
        """Called when ``command``, produced for an update from ``chat_id``, could not be sent."""
        self.ctx.telemetry.report("delivery_failed", chat_id=chat_id, kind=command.kind.value)
        if command.exchange_id is not None:
            async with self._chat_locks[chat_id]:
                try:
                    await asyncio.to_thread(self.withdraw, command)
                except (TransientError, CorruptionError):
                    logger.exception("Chat %s: could not withdraw exchange %s", chat_id, command.exchange_id)
        return [OutboundCommand(chat_id=chat_id, kind=CommandKind.FAILURE, text=texts.NOT_DELIVERED)]
