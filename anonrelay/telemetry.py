from __future__ import annotations

import logging
from typing import Any, Protocol

logger = logging.getLogger(__name__)


class TelemetrySink(Protocol):
    def report(self, kind: str, **fields: Any) -> None:
        ...


class LoggingTelemetry:
    """Writes error events to the log; shipping them elsewhere is the log handler's job."""

    def report(self, kind: str, **fields: Any) -> None:
        details = " ".join(f"{k}={v}" for k, v in sorted(fields.items()))
        logger.warning("event=%s %s", kind, details)
