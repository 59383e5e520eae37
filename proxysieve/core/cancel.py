"""
Cancellation tokens for the probe pipeline.

A run token is cancelled by Ctrl-C; each round and each probe task
hangs a child token off it. Cancelling a token cancels its whole
subtree, never its parent. A token with a timeout cancels itself
with reason TIMEOUT when the deadline passes.
"""

import asyncio
from typing import List, Optional

TIMEOUT = "timeout"
CANCELLED = "cancelled"


class CancelToken:
    """asyncio.Event based cancellation signal with an observable reason."""

    def __init__(self, parent: Optional["CancelToken"] = None, timeout: Optional[float] = None):
        self._event = asyncio.Event()
        self._reason: Optional[str] = None
        self._parent = parent
        self._children: List["CancelToken"] = []
        self._timer: Optional[asyncio.TimerHandle] = None

        if parent is not None:
            if parent.cancelled:
                self._cancel(parent.reason)
                return
            parent._children.append(self)

        if timeout is not None:
            loop = asyncio.get_running_loop()
            self._timer = loop.call_later(timeout, self._cancel, TIMEOUT)

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def cancel(self):
        self._cancel(CANCELLED)

    def _cancel(self, reason: Optional[str]):
        if self._event.is_set():
            return
        self._reason = reason or CANCELLED
        self._event.set()
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        for child in list(self._children):
            child._cancel(self._reason)

    def child(self, timeout: Optional[float] = None) -> "CancelToken":
        return CancelToken(parent=self, timeout=timeout)

    async def wait(self) -> str:
        """Block until cancelled, return the reason."""
        await self._event.wait()
        return self._reason

    def close(self):
        """Stop the timer and detach from the parent."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        if self._parent is not None:
            try:
                self._parent._children.remove(self)
            except ValueError:
                pass
            self._parent = None

    def __enter__(self) -> "CancelToken":
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def __repr__(self) -> str:
        state = f"cancelled:{self._reason}" if self.cancelled else "active"
        return f"CancelToken({state})"
