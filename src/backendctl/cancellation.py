"""Cooperative cancellation for long-running calls."""
from __future__ import annotations

import threading


class OperationCanceled(RuntimeError):
    """Raised by long-running calls that observe a cancellation request."""


class CancellationToken:
    """Thread-safe flag passed into pulls, registry calls, and health polls."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self._reason: str | None = None

    @property
    def cancelled(self) -> bool:
        """Return ``True`` once :meth:`cancel` has been called."""
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        """Return the reason supplied to :meth:`cancel`."""
        return self._reason

    def cancel(self, reason: str | None = None) -> None:
        """Request cancellation."""
        if not self._event.is_set():
            self._reason = reason
            self._event.set()

    def raise_if_cancelled(self) -> None:
        """Raise :class:`OperationCanceled` when cancellation was requested."""
        if self._event.is_set():
            raise OperationCanceled(self._reason or "Operation canceled")

    def wait(self, timeout: float) -> bool:
        """Sleep up to *timeout* seconds; return ``True`` if cancelled meanwhile."""
        return self._event.wait(max(0.0, timeout))


def is_cancelled(token: CancellationToken | None) -> bool:
    """Return ``True`` when *token* exists and has been cancelled."""
    return token is not None and token.cancelled


__all__ = ["CancellationToken", "OperationCanceled", "is_cancelled"]
