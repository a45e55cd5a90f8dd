"""Cancellation primitives for command execution.

A ``CancellationToken`` is a one-shot signal with callbacks. Several tokens
can be merged with ``CancellationToken.any_of``; the merged token fires once,
when the first source fires, and remembers which one it was. The
``InactivityTimer`` cancels its own token after a period without output.
"""

import asyncio
import itertools
from functools import partial
from typing import Callable

from agentic_shell.logging import Loggers

logger = Loggers.execution()

REASON_USER = "user"
REASON_TIMEOUT = "timeout"

CancelCallback = Callable[["CancellationToken"], None]


class CancellationToken:
    """One-shot cancellation signal.

    Example:
        token = CancellationToken()
        token.add_callback(lambda t: print("cancelled:", t.reason))
        token.cancel()
    """

    def __init__(self) -> None:
        self._cancelled = False
        self._reason: str | None = None
        self._callbacks: dict[int, CancelCallback] = {}
        self._ids = itertools.count()
        self._event: asyncio.Event | None = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def reason(self) -> str | None:
        return self._reason

    def cancel(self, reason: str = REASON_USER) -> bool:
        """Fire the token.

        Returns:
            True if this call fired the token, False if it had already fired.
        """
        if self._cancelled:
            return False
        self._cancelled = True
        self._reason = reason
        if self._event is not None:
            self._event.set()

        callbacks = list(self._callbacks.values())
        self._callbacks.clear()
        for callback in callbacks:
            callback(self)
        return True

    def add_callback(self, callback: CancelCallback) -> int:
        """Register a callback; runs immediately if the token already fired.

        Returns:
            Handle for ``remove_callback``.
        """
        handle = next(self._ids)
        if self._cancelled:
            callback(self)
        else:
            self._callbacks[handle] = callback
        return handle

    def remove_callback(self, handle: int) -> None:
        self._callbacks.pop(handle, None)

    async def wait(self) -> str | None:
        """Wait until the token fires and return its reason."""
        if not self._cancelled:
            if self._event is None:
                self._event = asyncio.Event()
            await self._event.wait()
        return self._reason

    @classmethod
    def any_of(cls, *tokens: "CancellationToken | None") -> "MergedCancellation":
        """Merge tokens; the result fires when the first of them fires."""
        return MergedCancellation([token for token in tokens if token is not None])


class MergedCancellation(CancellationToken):
    """Token that fires once when any of its sources fires.

    Attributes:
        sources: The merged tokens.
        fired_source: The source that fired first, or None.
    """

    def __init__(self, sources: list[CancellationToken]) -> None:
        super().__init__()
        self.sources = sources
        self.fired_source: CancellationToken | None = None
        self._handles = [
            (source, source.add_callback(partial(self._on_source_cancelled, source)))
            for source in sources
        ]

    def _on_source_cancelled(self, source: CancellationToken, _token: CancellationToken) -> None:
        if self._cancelled:
            return
        self.fired_source = source
        self.cancel(source.reason or REASON_USER)

    def close(self) -> None:
        """Detach from all sources."""
        for source, handle in self._handles:
            source.remove_callback(handle)
        self._handles = []


class InactivityTimer:
    """Cancels ``token`` after ``timeout_ms`` without a ``reset()``.

    A non-positive timeout disables the timer.
    """

    def __init__(self, timeout_ms: int, token: CancellationToken | None = None) -> None:
        self.timeout_ms = timeout_ms
        self.token = token if token is not None else CancellationToken()
        self._handle: asyncio.TimerHandle | None = None
        self._stopped = False

    @property
    def enabled(self) -> bool:
        return self.timeout_ms > 0

    @property
    def fired(self) -> bool:
        return self.token.cancelled and self.token.reason == REASON_TIMEOUT

    def start(self) -> None:
        """Arm the timer. Must be called from a running event loop."""
        if not self.enabled or self._stopped:
            return
        self._schedule()

    def reset(self) -> None:
        """Restart the countdown (called on every output chunk)."""
        if self._handle is None or self._stopped:
            return
        self._handle.cancel()
        self._schedule()

    def cancel(self) -> None:
        """Disarm permanently."""
        self._stopped = True
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def _schedule(self) -> None:
        loop = asyncio.get_running_loop()
        self._handle = loop.call_later(self.timeout_ms / 1000, self._fire)

    def _fire(self) -> None:
        self._handle = None
        if self._stopped:
            return
        logger.debug("inactivity_timeout", timeout_ms=self.timeout_ms)
        self.token.cancel(REASON_TIMEOUT)
