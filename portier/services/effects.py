"""Best-effort side effects collected during a request and run after it.

This is the one place where failures are swallowed: the sign-in logic queues
alerts here instead of sending them inline, and a failing alert only costs a
log line.
"""
from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)

Effect = Callable[[], Awaitable[Any]]


class OutboundEffects:
    def __init__(self) -> None:
        self._pending: list[tuple[str, Effect]] = []

    def enqueue(self, name: str, effect: Effect) -> None:
        self._pending.append((name, effect))

    @property
    def pending(self) -> list[str]:
        return [name for name, _ in self._pending]

    async def dispatch(self) -> int:
        """Run every queued effect once; return how many failed."""
        pending, self._pending = self._pending, []
        failures = 0
        for name, effect in pending:
            try:
                await effect()
            except Exception:  # noqa: BLE001
                failures += 1
                logger.exception("Outbound effect %s failed", name)
        return failures


__all__ = ["OutboundEffects"]
