"""Identity Anonymizer: the only place that maps tokens and exchanges to real users."""
from __future__ import annotations

import hashlib
import logging
from typing import Optional, Tuple

from anonrelay.errors import (
    AddressError,
    AlreadyAnswered,
    CorruptionError,
    ExchangeExpired,
    TokenNotFound,
)
from anonrelay.models import MESSAGE, REPLY, PendingExchange, User
from anonrelay.storage import Store

logger = logging.getLogger(__name__)


def content_ref(content: str) -> str:
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


def deep_link(bot_username: str, token: str) -> str:
    return f"https://t.me/{bot_username}?start={token}"


class IdentityAnonymizer:
    def __init__(self, store: Store):
        self.store = store

    # --------------------------- Links ---------------------------
    def mint_link(self, user: User) -> str:
        """Return the user's shareable token, creating one on first use."""
        with self.store.transaction():
            token = self.store.active_link_token(user)
            if token is None:
                token = self.store.create_link_token(user)
                logger.info("Minted link for user %s", user.platform_id)
            return token.value

    def regenerate_link(self, user: User) -> str:
        with self.store.transaction():
            self.store.revoke_link_tokens(user)
            token = self.store.create_link_token(user)
        logger.info("Regenerated link for user %s", user.platform_id)
        return token.value

    def revoke_link(self, user: User) -> None:
        self.store.revoke_link_tokens(user)

    def address_of(self, token: str) -> int:
        try:
            return self.store.resolve_token(token).platform_id
        except TokenNotFound:
            raise AddressError(AddressError.INVALID)

    # --------------------------- Exchanges ---------------------------
    def begin_anonymous_send(self, sender: User, token: str, content: str) -> str:
        with self.store.transaction():
            try:
                recipient = self.store.resolve_token(token)
            except TokenNotFound:
                raise AddressError(AddressError.INVALID)
            if recipient.platform_id == sender.platform_id:
                raise AddressError(AddressError.SELF)
            return self.store.open_exchange(sender, recipient, content_ref(content), direction=MESSAGE)

    def _exchange_for(self, exchange_id: str, replier: Optional[User]) -> PendingExchange:
        exchange = self.store.get_exchange(exchange_id)
        if exchange is None or exchange.is_expired(self.store.clock()):
            raise ExchangeExpired(exchange_id)
        # Someone other than the addressee gets the same answer as for a stale id.
        if replier is not None and exchange.recipient_id != replier.platform_id:
            raise ExchangeExpired(exchange_id)
        return exchange

    def resolve_reply_target(self, exchange_id: str, replier: Optional[User] = None) -> int:
        with self.store.transaction():
            exchange = self._exchange_for(exchange_id, replier)
            if exchange.answered:
                raise AlreadyAnswered(exchange_id)
            return exchange.sender_id

    def send_reply(self, replier: User, exchange_id: str, content: str) -> Tuple[int, str]:
        """Answer an exchange and open the one the other side can answer in turn.

        Returns the chat to deliver to and the id of the new exchange.
        """
        with self.store.transaction():
            target_id = self.resolve_reply_target(exchange_id, replier)
            self.store.close_exchange(exchange_id)
            target = self.store.get_user(target_id)
            if target is None:
                raise CorruptionError(f"exchange {exchange_id} points at missing user")
            new_id = self.store.open_exchange(
                replier, target, content_ref(content), direction=REPLY, supersede=True, answers=exchange_id
            )
        return target_id, new_id

    def withdraw_exchange(self, exchange_id: str) -> None:
        """Forget an exchange whose message never reached the other side.

        A reply that bounced re-opens the exchange it answered, so the replier
        can try again.
        """
        with self.store.transaction():
            exchange = self.store.get_exchange(exchange_id)
            if exchange is None:
                return
            self.store.delete_exchange(exchange_id)
            if exchange.answers:
                self.store.reopen_exchange(exchange.answers)
        logger.info("Withdrew undelivered exchange %s", exchange_id)
