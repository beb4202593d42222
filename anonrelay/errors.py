"""Error taxonomy shared by the store, the anonymizer and the dispatcher.

- TransientError: store or gateway temporarily unavailable, retried.
- InvalidInput: malformed, revoked or expired token/exchange, shown to the user.
- ConflictError: reuse of an exchange, shown to the user.
- CorruptionError: a stored invariant does not hold, fatal for the request.
"""
from __future__ import annotations


class RelayError(Exception):
    """Base class for everything the relay core raises on purpose."""


class ConfigError(RelayError):
    pass


class TransientError(RelayError):
    pass


class InvalidInput(RelayError):
    pass


class ConflictError(RelayError):
    pass


class CorruptionError(RelayError):
    pass


# --------------------------- Tokens ---------------------------
class TokenNotFound(InvalidInput):
    """Unknown or revoked token. Both cases look the same to the caller."""


class AddressError(InvalidInput):
    INVALID = "invalid"
    SELF = "self"

    def __init__(self, reason: str = INVALID):
        super().__init__(reason)
        self.reason = reason


# --------------------------- Exchanges ---------------------------
class ExchangeError(RelayError):
    EXPIRED = "expired"
    ALREADY_ANSWERED = "already_answered"
    reason = ""

    def __init__(self, exchange_id: str):
        super().__init__(f"{self.reason}: {exchange_id}")
        self.exchange_id = exchange_id


class ExchangeExpired(ExchangeError, InvalidInput):
    reason = ExchangeError.EXPIRED


class AlreadyAnswered(ExchangeError, ConflictError):
    reason = ExchangeError.ALREADY_ANSWERED


class ExchangeConflict(ConflictError):
    """An open exchange already exists for (sender, recipient, direction)."""
