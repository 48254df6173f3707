"""Cancellation, completion latch and signal-driven shutdown.

The pieces, and who touches them::

    CancellationSource  ← written once by the ShutdownCoordinator
    CancellationToken   ← read-only view handed to the invocation loop
    CompletionLatch     ← released once by the main flow after teardown

On the first SIGTERM/SIGINT the coordinator cancels the source and
starts a grace timer.  Releasing the latch stops the timer; if the timer
fires first, ``on_force_exit`` runs.  The default terminates the process
immediately, which is the only way out of a call that never returns.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import signal
from collections.abc import Callable, Sequence

logger = logging.getLogger(__name__)

EXIT_FORCED_SHUTDOWN = 4

DEFAULT_SIGNALS: tuple[signal.Signals, ...] = (signal.SIGTERM, signal.SIGINT)

# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------


class CancellationToken:
    """Read-only view of a :class:`CancellationSource`."""

    def __init__(self, event: asyncio.Event) -> None:
        self._event = event

    @property
    def is_cancelled(self) -> bool:
        """True once cancellation has been requested."""
        return self._event.is_set()

    async def wait(self) -> None:
        """Block until cancellation is requested."""
        await self._event.wait()

    async def sleep(self, seconds: float) -> bool:
        """Cancellation-aware sleep.

        Returns early (without exception) if cancellation is requested
        during the sleep period.

        Returns:
            True if the sleep was cut short by cancellation.
        """
        if self.is_cancelled:
            return True

        sleep_task = asyncio.ensure_future(asyncio.sleep(seconds))
        cancel_task = asyncio.ensure_future(self._event.wait())

        _done, pending = await asyncio.wait(
            {sleep_task, cancel_task},
            return_when=asyncio.FIRST_COMPLETED,
        )

        for task in pending:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

        return self.is_cancelled


class CancellationSource:
    """Owner of a monotonic cancellation flag.

    Usage::

        source = CancellationSource()
        loop = InvocationLoop(..., cancellation=source.token)
        source.cancel()
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._token = CancellationToken(self._event)

    @property
    def token(self) -> CancellationToken:
        """The read-only token to hand to consumers."""
        return self._token

    @property
    def is_cancelled(self) -> bool:
        """True once :meth:`cancel` has been called."""
        return self._event.is_set()

    def cancel(self) -> bool:
        """Request cancellation.

        Returns:
            True if this call made the transition, False if it had
            already happened.
        """
        if self._event.is_set():
            return False
        self._event.set()
        return True


# ---------------------------------------------------------------------------
# Completion latch
# ---------------------------------------------------------------------------


class CompletionLatch:
    """One-shot signal that teardown has finished.

    Raises:
        RuntimeError: From :meth:`release` if released a second time.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._callbacks: list[Callable[[], None]] = []

    @property
    def released(self) -> bool:
        """True once :meth:`release` has been called."""
        return self._event.is_set()

    def add_release_callback(self, callback: Callable[[], None]) -> None:
        """Run *callback* when the latch is released."""
        self._callbacks.append(callback)

    def release(self) -> None:
        """Mark teardown as complete."""
        if self._event.is_set():
            msg = "Completion latch already released"
            raise RuntimeError(msg)
        self._event.set()
        for callback in self._callbacks:
            callback()

    async def wait(self) -> None:
        """Block until the latch is released."""
        await self._event.wait()


# ---------------------------------------------------------------------------
# Coordinator
# ---------------------------------------------------------------------------


def force_exit() -> None:
    """Terminate the process without running any further cleanup."""
    os._exit(EXIT_FORCED_SHUTDOWN)


class ShutdownCoordinator:
    """Turns termination signals into cancellation with a bounded grace period.

    Args:
        grace_period: Seconds teardown may take after the first
            termination request before ``on_force_exit`` runs.
        on_force_exit: Last-resort callback.  Defaults to
            :func:`force_exit`.
        signals: Signals that request shutdown.
        install_signal_handlers: Set to False to drive shutdown only via
            :meth:`request_shutdown` (tests, embedding).
    """

    def __init__(
        self,
        *,
        grace_period: float,
        on_force_exit: Callable[[], None] | None = None,
        signals: Sequence[signal.Signals] = DEFAULT_SIGNALS,
        install_signal_handlers: bool = True,
    ) -> None:
        if grace_period <= 0:
            msg = f"grace_period must be positive, got {grace_period}"
            raise ValueError(msg)
        self._grace_period = grace_period
        self._on_force_exit = on_force_exit if on_force_exit is not None else force_exit
        self._signals = tuple(signals)
        self._install_signal_handlers = install_signal_handlers
        self._source = CancellationSource()
        self._latch = CompletionLatch()
        self._latch.add_release_callback(self._cancel_grace_timer)
        self._grace_timer: asyncio.TimerHandle | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._installed: list[signal.Signals] = []

    @property
    def shutdown_requested(self) -> bool:
        """True once a termination request has been received."""
        return self._source.is_cancelled

    @property
    def grace_timer_pending(self) -> bool:
        """True while the grace timer is running."""
        return self._grace_timer is not None

    def arm(self) -> tuple[CancellationToken, CompletionLatch]:
        """Install signal handlers and hand out the token and latch.

        Must be called from inside the running event loop.  If a handler
        cannot be installed, the ones already installed are removed and
        the coordinator stays unarmed.

        Raises:
            RuntimeError: If already armed.
            ValueError: If called off the main thread.
            NotImplementedError: If the event loop has no signal support.
        """
        if self._loop is not None:
            msg = "ShutdownCoordinator is already armed"
            raise RuntimeError(msg)
        loop = asyncio.get_running_loop()
        if self._install_signal_handlers:
            try:
                for sig in self._signals:
                    loop.add_signal_handler(sig, self.request_shutdown, sig)
                    self._installed.append(sig)
            except (ValueError, NotImplementedError, RuntimeError):
                for sig in self._installed:
                    loop.remove_signal_handler(sig)
                self._installed.clear()
                raise
        self._loop = loop
        return self._source.token, self._latch

    def request_shutdown(self, sig: signal.Signals | None = None) -> None:
        """Cancel the token and start the grace timer.

        Only the first request has an effect; later ones are ignored.
        """
        reason = sig.name if sig is not None else "programmatic"
        if not self._source.cancel():
            logger.debug("Shutdown already in progress, ignoring %s", reason)
            return
        logger.info("Shutdown requested (%s); stopping invocation loop", reason)
        if self._latch.released:
            return
        loop = self._loop if self._loop is not None else asyncio.get_running_loop()
        self._grace_timer = loop.call_later(self._grace_period, self._expire)

    def disarm(self) -> None:
        """Remove signal handlers and stop the grace timer."""
        self._cancel_grace_timer()
        if self._loop is not None:
            for sig in self._installed:
                self._loop.remove_signal_handler(sig)
        self._installed.clear()

    def _expire(self) -> None:
        self._grace_timer = None
        if self._latch.released:
            return
        logger.critical(
            "Teardown did not finish within %.1fs of shutdown; forcing exit",
            self._grace_period,
        )
        self._on_force_exit()

    def _cancel_grace_timer(self) -> None:
        if self._grace_timer is not None:
            self._grace_timer.cancel()
            self._grace_timer = None
