import re
from concurrent.futures import ThreadPoolExecutor

import pytest
from filelock import Timeout

from anonrelay.errors import (
    AlreadyAnswered,
    CorruptionError,
    ExchangeConflict,
    ExchangeExpired,
    TokenNotFound,
    TransientError,
)
from anonrelay.models import REPLY, AwaitingMessage, AwaitingReply, Idle
from anonrelay.storage import Store, ensure_schema

WEEK = 7 * 24 * 3600


@pytest.fixture
def alice(store):
    return store.upsert_user(100, "alice")


@pytest.fixture
def bob(store):
    return store.upsert_user(200, "bob")


# --------------------------- Users ---------------------------
def test_upsert_user_is_idempotent(store, clock):
    first = store.upsert_user(1, "old")
    clock.advance(60)
    second = store.upsert_user(1, "new")

    assert second.created_at == first.created_at
    assert second.last_activity == first.last_activity + 60
    assert second.handle == "new"
    assert store.stats()["users"] == 1


def test_upsert_keeps_handle_when_none_given(store):
    store.upsert_user(1, "kept")
    assert store.upsert_user(1).handle == "kept"


def test_invited_by_keeps_the_first_inviter(store):
    store.upsert_user(1)
    store.set_invited_by(1, 2)
    store.set_invited_by(1, 3)
    assert store.get_user(1).invited_by == 2


# --------------------------- Link tokens ---------------------------
def test_tokens_are_url_safe_and_long(store, alice):
    tokens = {store.create_link_token(alice).value for _ in range(200)}

    assert len(tokens) == 200
    for value in tokens:
        # 16 random bytes -> 22 url-safe base64 characters
        assert re.fullmatch(r"[A-Za-z0-9_-]{22,}", value)


def test_resolve_token_until_revoked(store, alice):
    token = store.create_link_token(alice).value
    assert store.resolve_token(token).platform_id == alice.platform_id

    assert store.revoke_link_tokens(alice) == 1

    with pytest.raises(TokenNotFound) as revoked:
        store.resolve_token(token)
    with pytest.raises(TokenNotFound) as unknown:
        store.resolve_token("never-issued-token-value")
    assert type(revoked.value) is type(unknown.value)
    assert revoked.value.args == unknown.value.args


def test_revoked_token_is_kept(store, alice):
    token = store.create_link_token(alice).value
    store.revoke_link_tokens(alice)
    with store.transaction() as data:
        assert data["tokens"][token]["revoked"] is True
    assert store.active_link_token(alice) is None


def test_token_without_owner_is_corruption(store, alice):
    token = store.create_link_token(alice).value
    with store.transaction() as data:
        del data["users"][str(alice.platform_id)]

    with pytest.raises(CorruptionError):
        store.resolve_token(token)


# --------------------------- Exchanges ---------------------------
def test_second_open_exchange_for_pair_conflicts(store, alice, bob):
    store.open_exchange(alice, bob, "ref")
    with pytest.raises(ExchangeConflict):
        store.open_exchange(alice, bob, "ref2")

    # other direction and other pair are independent
    store.open_exchange(alice, bob, "ref3", direction=REPLY)
    store.open_exchange(bob, alice, "ref4")
    assert store.count_open_exchanges() == 3


def test_supersede_closes_previous_exchange(store, alice, bob):
    first = store.open_exchange(alice, bob, "ref", direction=REPLY)
    second = store.open_exchange(alice, bob, "ref", direction=REPLY, supersede=True)

    assert store.lookup_open_exchange(first) is None
    assert store.lookup_open_exchange(second) is not None
    assert store.count_open_exchanges(sender=alice.platform_id) == 1


def test_concurrent_opens_leave_exactly_one(store, alice, bob):
    def attempt(i):
        try:
            return store.open_exchange(alice, bob, f"ref{i}")
        except ExchangeConflict:
            return None

    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(attempt, range(16)))

    assert len([r for r in results if r]) == 1
    assert store.count_open_exchanges(sender=alice.platform_id, recipient=bob.platform_id) == 1


def test_close_exchange_once(store, alice, bob):
    exchange_id = store.open_exchange(alice, bob, "ref")
    store.close_exchange(exchange_id)

    assert store.lookup_open_exchange(exchange_id) is None
    with pytest.raises(AlreadyAnswered):
        store.close_exchange(exchange_id)


def test_close_unknown_or_expired_exchange(store, clock, alice, bob):
    with pytest.raises(ExchangeExpired):
        store.close_exchange("nope")

    exchange_id = store.open_exchange(alice, bob, "ref")
    clock.advance(WEEK)
    with pytest.raises(ExchangeExpired):
        store.close_exchange(exchange_id)


def test_expired_exchange_no_longer_blocks_pair(store, clock, alice, bob):
    store.open_exchange(alice, bob, "ref")
    clock.advance(WEEK + 1)
    store.open_exchange(alice, bob, "ref")


def test_purge_expired(store, clock, alice, bob):
    old = store.open_exchange(alice, bob, "ref")
    clock.advance(WEEK - 10)
    fresh = store.open_exchange(bob, alice, "ref")
    clock.advance(20)

    assert store.purge_expired() == 1
    assert store.get_exchange(old) is None
    assert store.get_exchange(fresh) is not None


def test_delete_exchange(store, alice, bob):
    exchange_id = store.open_exchange(alice, bob, "ref")

    assert store.delete_exchange(exchange_id)
    assert not store.delete_exchange(exchange_id)
    assert store.get_exchange(exchange_id) is None
    store.open_exchange(alice, bob, "ref")


def test_reopen_exchange(store, clock, alice, bob):
    exchange_id = store.open_exchange(alice, bob, "ref")
    assert not store.reopen_exchange(exchange_id)

    store.close_exchange(exchange_id)
    assert store.reopen_exchange(exchange_id)
    assert store.lookup_open_exchange(exchange_id) is not None

    store.close_exchange(exchange_id)
    clock.advance(WEEK)
    assert not store.reopen_exchange(exchange_id)


def test_reopen_keeps_one_open_per_pair(store, alice, bob):
    first = store.open_exchange(alice, bob, "ref")
    store.close_exchange(first)
    second = store.open_exchange(alice, bob, "ref")

    assert not store.reopen_exchange(first)
    assert store.count_open_exchanges(sender=alice.platform_id) == 1
    assert store.lookup_open_exchange(second) is not None


def test_exchange_keeps_only_a_digest(store, alice, bob):
    exchange_id = store.open_exchange(alice, bob, "0" * 64)
    assert store.get_exchange(exchange_id).content_ref == "0" * 64


# --------------------------- Chat state ---------------------------
def test_chat_state_round_trip(store, clock):
    assert isinstance(store.get_chat_state(1).state, Idle)

    store.set_chat_state(1, AwaitingMessage("tok"))
    assert store.get_chat_state(1).state == AwaitingMessage("tok")
    assert store.get_chat_state(1).updated_at == clock.now

    store.set_chat_state(1, AwaitingReply("ex"))
    assert store.get_chat_state(1).state == AwaitingReply("ex")

    store.set_chat_state(1, Idle())
    assert store.stats()["busy_chats"] == 0


def test_state_survives_restart(settings, store, clock):
    store.set_chat_state(7, AwaitingReply("ex"))

    reopened = Store(settings.store_path, retention=WEEK, clock=clock)
    assert reopened.get_chat_state(7).state == AwaitingReply("ex")


# --------------------------- Transactions ---------------------------
def test_failed_transaction_writes_nothing(store):
    with pytest.raises(RuntimeError):
        with store.transaction():
            store.upsert_user(5)
            raise RuntimeError("boom")

    assert store.get_user(5) is None


def test_nested_transactions_commit_together(store):
    with store.transaction():
        store.upsert_user(5)
        store.upsert_user(6)
    assert store.stats()["users"] == 2


def test_lock_timeout_is_transient(store, monkeypatch):
    def busy(*args, **kwargs):
        raise Timeout(str(store.path) + ".lock")

    monkeypatch.setattr(store._lock, "acquire", busy)
    with pytest.raises(TransientError):
        store.upsert_user(1)


def test_unreadable_document_is_corruption(store):
    store.path.write_text("{not json", encoding="utf-8")
    with pytest.raises(CorruptionError):
        store.upsert_user(1)


def test_ensure_schema_fills_old_documents():
    data = ensure_schema({"users": {"1": {"platform_id": 1, "handle": None, "created_at": 0, "last_activity": 0}}})

    assert data["tokens"] == {} and data["exchanges"] == {} and data["chats"] == {}
    assert data["users"]["1"]["answer_tip"] is True
    assert data["users"]["1"]["invited_by"] is None
