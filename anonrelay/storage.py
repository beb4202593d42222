"""Persistence Store.

One JSON document holds every durable record:

    {
      "schema": 1,
      "users":     {"<platform_id>": {...}},
      "tokens":    {"<token>": {...}},
      "exchanges": {"<exchange_id>": {...}},
      "chats":     {"<chat_id>": {"name": ..., "arg": ..., "updated_at": ...}}
    }

Every operation runs inside ``Store.transaction()``: the document is loaded
under a process mutex plus a FileLock, mutated in memory and written back
through a temp file + rename, so a transaction is applied completely or not
at all. Transactions nest within a thread; only the outermost one writes.
"""
from __future__ import annotations

import json
import logging
import os
import secrets
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional

from filelock import FileLock, Timeout

from anonrelay.errors import (
    AlreadyAnswered,
    CorruptionError,
    ExchangeConflict,
    ExchangeExpired,
    TokenNotFound,
    TransientError,
)
from anonrelay.models import (
    DIRECTIONS,
    MESSAGE,
    ChatState,
    Idle,
    LinkToken,
    PendingExchange,
    User,
)

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1
TOKEN_BYTES = 16  # 128 bits
EXCHANGE_ID_BYTES = 12
USER_DEFAULTS = {"invited_by": None, "answer_tip": True}


def empty_document() -> Dict[str, Any]:
    return {"schema": SCHEMA_VERSION, "users": {}, "tokens": {}, "exchanges": {}, "chats": {}}


def ensure_schema(data: Dict[str, Any]) -> Dict[str, Any]:
    """Fill in collections and user columns missing from older documents."""
    for key, value in empty_document().items():
        data.setdefault(key, value)
    for row in data["users"].values():
        for column, default in USER_DEFAULTS.items():
            row.setdefault(column, default)
    data["schema"] = SCHEMA_VERSION
    return data


class Store:
    def __init__(
        self,
        path: Path,
        retention: float,
        lock_timeout: float = 5,
        clock: Callable[[], float] = time.time,
    ):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.retention = retention
        self.clock = clock
        self.lock_timeout = lock_timeout
        self._lock = FileLock(str(self.path) + ".lock", timeout=lock_timeout)
        self._mutex = threading.RLock()
        self._local = threading.local()

    # --------------------------- Transactions ---------------------------
    @contextmanager
    def transaction(self) -> Iterator[Dict[str, Any]]:
        current = getattr(self._local, "data", None)
        if current is not None:
            yield current
            return

        if not self._mutex.acquire(timeout=self.lock_timeout):
            raise TransientError(f"store busy: {self.path}")
        try:
            try:
                self._lock.acquire()
            except (Timeout, OSError) as e:
                raise TransientError(f"store lock unavailable: {self.path}") from e
            try:
                data = self._read()
                self._local.data = data
                try:
                    yield data
                finally:
                    self._local.data = None
                self._write(data)
            finally:
                self._lock.release()
        finally:
            self._mutex.release()

    def _read(self) -> Dict[str, Any]:
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return empty_document()
        except OSError as e:
            raise TransientError(f"store unreadable: {e}") from e
        try:
            data = json.loads(raw)
        except ValueError as e:
            raise CorruptionError(f"store document is not valid JSON: {self.path}") from e
        if not isinstance(data, dict):
            raise CorruptionError(f"store document is not an object: {self.path}")
        return ensure_schema(data)

    def _write(self, data: Dict[str, Any]) -> None:
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp.write_text(json.dumps(data, ensure_ascii=False, indent=2), encoding="utf-8")
            os.replace(tmp, self.path)
        except OSError as e:
            raise TransientError(f"store unwritable: {e}") from e

    # --------------------------- Users ---------------------------
    def upsert_user(
        self,
        platform_id: int,
        handle: Optional[str] = None,
        invited_by: Optional[int] = None,
    ) -> User:
        now = self.clock()
        with self.transaction() as data:
            row = data["users"].get(str(platform_id))
            if row is None:
                user = User(
                    platform_id=platform_id,
                    handle=handle,
                    created_at=now,
                    last_activity=now,
                    invited_by=invited_by,
                )
                logger.info("New user %s", platform_id)
            else:
                user = User.from_row(row)
                user.last_activity = now
                if handle:
                    user.handle = handle
            data["users"][str(platform_id)] = user.to_row()
            return user

    def get_user(self, platform_id: int) -> Optional[User]:
        with self.transaction() as data:
            row = data["users"].get(str(platform_id))
            return User.from_row(row) if row else None

    def set_invited_by(self, platform_id: int, inviter: int) -> None:
        """Remember the first link owner a user arrived through; later links don't count."""
        with self.transaction() as data:
            row = data["users"].get(str(platform_id))
            if row is not None and row.get("invited_by") is None:
                row["invited_by"] = inviter

    def set_answer_tip(self, platform_id: int, value: bool) -> None:
        with self.transaction() as data:
            row = data["users"].get(str(platform_id))
            if row is None:
                raise CorruptionError(f"no user {platform_id}")
            row["answer_tip"] = value

    # --------------------------- Link Tokens ---------------------------
    def create_link_token(self, owner: User) -> LinkToken:
        with self.transaction() as data:
            if str(owner.platform_id) not in data["users"]:
                raise CorruptionError(f"token owner {owner.platform_id} is not stored")
            value = secrets.token_urlsafe(TOKEN_BYTES)
            while value in data["tokens"]:
                value = secrets.token_urlsafe(TOKEN_BYTES)
            token = LinkToken(value=value, owner_id=owner.platform_id, created_at=self.clock())
            data["tokens"][value] = token.to_row()
            return token

    def active_link_token(self, owner: User) -> Optional[LinkToken]:
        with self.transaction() as data:
            for row in data["tokens"].values():
                if row["owner_id"] == owner.platform_id and not row["revoked"]:
                    return LinkToken.from_row(row)
            return None

    def revoke_link_tokens(self, owner: User) -> int:
        revoked = 0
        with self.transaction() as data:
            for row in data["tokens"].values():
                if row["owner_id"] == owner.platform_id and not row["revoked"]:
                    row["revoked"] = True
                    revoked += 1
        return revoked

    def resolve_token(self, token: str) -> User:
        with self.transaction() as data:
            row = data["tokens"].get(token)
            if row is None:
                logger.debug("Token lookup failed: unknown")
                raise TokenNotFound()
            if row["revoked"]:
                logger.debug("Token lookup failed: revoked")
                raise TokenNotFound()
            owner = data["users"].get(str(row["owner_id"]))
            if owner is None:
                raise CorruptionError(f"token resolves to missing user {row['owner_id']}")
            return User.from_row(owner)

    # --------------------------- Pending Exchanges ---------------------------
    def _open_for(self, data: Dict[str, Any], sender: int, recipient: int, direction: str) -> List[Dict[str, Any]]:
        now = self.clock()
        return [
            row
            for row in data["exchanges"].values()
            if row["sender_id"] == sender
            and row["recipient_id"] == recipient
            and row["direction"] == direction
            and PendingExchange.from_row(row).is_open(now)
        ]

    def open_exchange(
        self,
        sender: User,
        recipient: User,
        content_ref: str,
        direction: str = MESSAGE,
        supersede: bool = False,
        answers: Optional[str] = None,
    ) -> str:
        if direction not in DIRECTIONS:
            raise ValueError(f"unknown direction {direction!r}")
        now = self.clock()
        with self.transaction() as data:
            existing = self._open_for(data, sender.platform_id, recipient.platform_id, direction)
            if existing and not supersede:
                raise ExchangeConflict(f"open {direction} exchange already exists")
            for row in existing:
                row["answered"] = True
                row["answered_at"] = now

            exchange_id = secrets.token_urlsafe(EXCHANGE_ID_BYTES)
            while exchange_id in data["exchanges"]:
                exchange_id = secrets.token_urlsafe(EXCHANGE_ID_BYTES)
            exchange = PendingExchange(
                exchange_id=exchange_id,
                sender_id=sender.platform_id,
                recipient_id=recipient.platform_id,
                direction=direction,
                content_ref=content_ref,
                created_at=now,
                expires_at=now + self.retention,
                answers=answers,
            )
            data["exchanges"][exchange_id] = exchange.to_row()
            return exchange_id

    def get_exchange(self, exchange_id: str) -> Optional[PendingExchange]:
        with self.transaction() as data:
            row = data["exchanges"].get(exchange_id)
            return PendingExchange.from_row(row) if row else None

    def lookup_open_exchange(self, exchange_id: str) -> Optional[PendingExchange]:
        exchange = self.get_exchange(exchange_id)
        if exchange is None or not exchange.is_open(self.clock()):
            return None
        return exchange

    def close_exchange(self, exchange_id: str) -> None:
        now = self.clock()
        with self.transaction() as data:
            row = data["exchanges"].get(exchange_id)
            if row is None or PendingExchange.from_row(row).is_expired(now):
                raise ExchangeExpired(exchange_id)
            if row["answered"]:
                raise AlreadyAnswered(exchange_id)
            row["answered"] = True
            row["answered_at"] = now

    def delete_exchange(self, exchange_id: str) -> bool:
        with self.transaction() as data:
            return data["exchanges"].pop(exchange_id, None) is not None

    def reopen_exchange(self, exchange_id: str) -> bool:
        """Mark an answered exchange unanswered again, unless that would break the one-open-per-pair rule."""
        now = self.clock()
        with self.transaction() as data:
            row = data["exchanges"].get(exchange_id)
            if row is None:
                return False
            exchange = PendingExchange.from_row(row)
            if not exchange.answered or exchange.is_expired(now):
                return False
            if self._open_for(data, exchange.sender_id, exchange.recipient_id, exchange.direction):
                return False
            row["answered"] = False
            row["answered_at"] = None
            return True

    def count_open_exchanges(self, sender: Optional[int] = None, recipient: Optional[int] = None) -> int:
        now = self.clock()
        with self.transaction() as data:
            return sum(
                1
                for row in data["exchanges"].values()
                if (sender is None or row["sender_id"] == sender)
                and (recipient is None or row["recipient_id"] == recipient)
                and PendingExchange.from_row(row).is_open(now)
            )

    def purge_expired(self) -> int:
        now = self.clock()
        with self.transaction() as data:
            stale = [k for k, row in data["exchanges"].items() if now >= row["expires_at"]]
            for key in stale:
                del data["exchanges"][key]
        if stale:
            logger.info("Purged %d expired exchanges", len(stale))
        return len(stale)

    # --------------------------- Conversation State ---------------------------
    def get_chat_state(self, chat_id: int) -> ChatState:
        with self.transaction() as data:
            row = data["chats"].get(str(chat_id))
            if row is None:
                return ChatState(state=Idle(), updated_at=self.clock())
            return ChatState.from_row(row)

    def set_chat_state(self, chat_id: int, state: Any) -> None:
        if isinstance(state, Idle):
            self.clear_chat_state(chat_id)
            return
        with self.transaction() as data:
            data["chats"][str(chat_id)] = ChatState(state=state, updated_at=self.clock()).to_row()

    def clear_chat_state(self, chat_id: int) -> None:
        with self.transaction() as data:
            data["chats"].pop(str(chat_id), None)

    def stats(self) -> Dict[str, int]:
        now = self.clock()
        with self.transaction() as data:
            return {
                "users": len(data["users"]),
                "active_tokens": sum(1 for row in data["tokens"].values() if not row["revoked"]),
                "open_exchanges": sum(
                    1 for row in data["exchanges"].values() if PendingExchange.from_row(row).is_open(now)
                ),
                "busy_chats": len(data["chats"]),
            }
