"""Delivery Gateway: turns OutboundCommands into Telegram sends, with retries."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Iterable, Optional

from telegram import Bot, InlineKeyboardButton, InlineKeyboardMarkup
from telegram.error import BadRequest, Forbidden, NetworkError, RetryAfter

from anonrelay.commands import RELAYED_KINDS, OutboundCommand

logger = logging.getLogger(__name__)


def markup_for(command: OutboundCommand) -> Optional[InlineKeyboardMarkup]:
    if not command.buttons:
        return None
    return InlineKeyboardMarkup(
        [[InlineKeyboardButton(b.label, callback_data=b.callback_data) for b in command.buttons]]
    )


def _seconds(delay) -> float:
    if isinstance(delay, timedelta):
        return delay.total_seconds()
    return float(delay)


@dataclass
class DeliveryReport:
    delivered: int = 0
    failed: Optional[OutboundCommand] = None  # the relayed message that stopped the batch


class TelegramGateway:
    def __init__(self, bot: Bot, retries: int = 3, backoff: float = 1.0):
        self.bot = bot
        self.retries = retries
        self.backoff = backoff

    async def _push(self, command: OutboundCommand) -> None:
        markup = markup_for(command)
        if command.copy_from is not None:
            # copyMessage sends as the bot, the original sender stays hidden
            from_chat_id, message_id = command.copy_from
            await self.bot.copy_message(
                chat_id=command.chat_id,
                from_chat_id=from_chat_id,
                message_id=message_id,
                reply_markup=markup,
            )
        else:
            await self.bot.send_message(chat_id=command.chat_id, text=command.text, reply_markup=markup)

    async def send(self, command: OutboundCommand) -> bool:
        for attempt in range(self.retries + 1):
            try:
                await self._push(command)
                return True
            except RetryAfter as e:
                delay = _seconds(e.retry_after)
                logger.warning("Flood control for chat %s, waiting %.1fs", command.chat_id, delay)
                await asyncio.sleep(delay)
            except Forbidden:
                logger.warning("Chat %s blocked the bot; %s not delivered", command.chat_id, command.kind.value)
                return False
            except BadRequest as e:
                logger.error("Chat %s rejected %s: %s", command.chat_id, command.kind.value, e)
                return False
            except NetworkError as e:
                logger.warning("Send to chat %s failed (attempt %d): %s", command.chat_id, attempt + 1, e)
                await asyncio.sleep(self.backoff * 2 ** attempt)

        logger.error("Giving up on %s to chat %s", command.kind.value, command.chat_id)
        return False

    async def deliver(self, commands: Iterable[OutboundCommand]) -> DeliveryReport:
        """Send commands in order.

        A relayed message that can't be sent stops the batch: what follows it
        (tips for the recipient, the author's confirmation) only makes sense
        once it has arrived.
        """
        report = DeliveryReport()
        for command in commands:
            if await self.send(command):
                report.delivered += 1
            elif command.kind in RELAYED_KINDS:
                report.failed = command
                break
        return report
