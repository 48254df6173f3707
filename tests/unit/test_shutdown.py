"""Unit tests for dmsender._shutdown — cancellation and shutdown.

Test Techniques Used:
    - State Transition Testing: token, latch and coordinator states
    - Timing-based Testing: interruptible sleep, grace-period expiry
    - Error Condition Testing: double release, double arm
    - Behavioural Testing: real signal delivery via os.kill
"""

from __future__ import annotations

import asyncio
import os
import signal
import time

import pytest

from dmsender._shutdown import (
    EXIT_FORCED_SHUTDOWN,
    CancellationSource,
    CompletionLatch,
    ShutdownCoordinator,
)

# ---------------------------------------------------------------------------
# CancellationSource / CancellationToken
# ---------------------------------------------------------------------------


class TestCancellation:
    """Technique: State Transition Testing."""

    def test_starts_uncancelled(self, cancellation: CancellationSource) -> None:
        assert not cancellation.is_cancelled
        assert not cancellation.token.is_cancelled

    def test_cancel_is_visible_through_token(
        self,
        cancellation: CancellationSource,
    ) -> None:
        cancellation.cancel()
        assert cancellation.token.is_cancelled

    def test_cancel_reports_transition_once(
        self,
        cancellation: CancellationSource,
    ) -> None:
        """Cancellation is monotonic: only the first call transitions."""
        assert cancellation.cancel() is True
        assert cancellation.cancel() is False
        assert cancellation.is_cancelled

    async def test_wait_returns_after_cancel(
        self,
        cancellation: CancellationSource,
    ) -> None:
        asyncio.get_running_loop().call_later(0.01, cancellation.cancel)
        async with asyncio.timeout(1):
            await cancellation.token.wait()


class TestCancellableSleep:
    """Technique: Timing-based Testing."""

    async def test_full_sleep_returns_false(
        self,
        cancellation: CancellationSource,
    ) -> None:
        assert await cancellation.token.sleep(0.01) is False

    async def test_cancel_cuts_sleep_short(
        self,
        cancellation: CancellationSource,
    ) -> None:
        asyncio.get_running_loop().call_later(0.05, cancellation.cancel)

        started = time.monotonic()
        interrupted = await cancellation.token.sleep(10)

        assert interrupted is True
        assert time.monotonic() - started < 1.0

    async def test_already_cancelled_returns_immediately(
        self,
        cancellation: CancellationSource,
    ) -> None:
        cancellation.cancel()

        started = time.monotonic()
        assert await cancellation.token.sleep(10) is True
        assert time.monotonic() - started < 0.5

    async def test_zero_sleep(self, cancellation: CancellationSource) -> None:
        assert await cancellation.token.sleep(0) is False


# ---------------------------------------------------------------------------
# CompletionLatch
# ---------------------------------------------------------------------------


class TestCompletionLatch:
    """Technique: State Transition and Error Condition Testing."""

    def test_release_sets_flag(self) -> None:
        latch = CompletionLatch()
        assert not latch.released
        latch.release()
        assert latch.released

    def test_second_release_raises(self) -> None:
        latch = CompletionLatch()
        latch.release()
        with pytest.raises(RuntimeError, match="already released"):
            latch.release()

    def test_release_runs_callbacks(self) -> None:
        latch = CompletionLatch()
        calls: list[str] = []
        latch.add_release_callback(lambda: calls.append("a"))
        latch.add_release_callback(lambda: calls.append("b"))

        latch.release()

        assert calls == ["a", "b"]

    async def test_wait_returns_after_release(self) -> None:
        latch = CompletionLatch()
        asyncio.get_running_loop().call_later(0.01, latch.release)
        async with asyncio.timeout(1):
            await latch.wait()


# ---------------------------------------------------------------------------
# ShutdownCoordinator
# ---------------------------------------------------------------------------


def _coordinator(
    forced: list[str],
    grace_period: float = 5.0,
    **kwargs: object,
) -> ShutdownCoordinator:
    kwargs.setdefault("install_signal_handlers", False)
    return ShutdownCoordinator(
        grace_period=grace_period,
        on_force_exit=lambda: forced.append("forced"),
        **kwargs,  # type: ignore[arg-type]
    )


class TestShutdownCoordinator:
    """Technique: State Transition Testing."""

    @pytest.mark.parametrize("grace_period", [0, -1.0])
    def test_non_positive_grace_period_rejected(self, grace_period: float) -> None:
        with pytest.raises(ValueError, match="grace_period"):
            ShutdownCoordinator(grace_period=grace_period)

    async def test_arm_returns_live_token_and_latch(self) -> None:
        coordinator = _coordinator([])

        token, latch = coordinator.arm()

        assert not token.is_cancelled
        assert not latch.released
        coordinator.disarm()

    async def test_arm_twice_raises(self) -> None:
        coordinator = _coordinator([])
        coordinator.arm()
        try:
            with pytest.raises(RuntimeError, match="already armed"):
                coordinator.arm()
        finally:
            coordinator.disarm()

    async def test_request_cancels_and_starts_timer(self) -> None:
        coordinator = _coordinator([])
        token, _latch = coordinator.arm()

        coordinator.request_shutdown()

        assert token.is_cancelled
        assert coordinator.shutdown_requested
        assert coordinator.grace_timer_pending
        coordinator.disarm()

    async def test_release_stops_timer(self) -> None:
        forced: list[str] = []
        coordinator = _coordinator(forced, grace_period=0.05)
        _token, latch = coordinator.arm()

        coordinator.request_shutdown()
        latch.release()
        await asyncio.sleep(0.1)

        assert not coordinator.grace_timer_pending
        assert forced == []
        coordinator.disarm()

    async def test_timer_expiry_forces_exit(self) -> None:
        forced: list[str] = []
        coordinator = _coordinator(forced, grace_period=0.05)
        coordinator.arm()

        coordinator.request_shutdown()
        await asyncio.sleep(0.15)

        assert forced == ["forced"]
        assert not coordinator.grace_timer_pending
        coordinator.disarm()

    async def test_repeated_requests_start_one_timer(self) -> None:
        """A second signal is ignored; the first timer keeps running."""
        forced: list[str] = []
        coordinator = _coordinator(forced, grace_period=0.05)
        coordinator.arm()

        coordinator.request_shutdown()
        await asyncio.sleep(0.03)
        coordinator.request_shutdown(signal.SIGTERM)
        await asyncio.sleep(0.04)

        assert forced == ["forced"]
        coordinator.disarm()

    async def test_request_after_release_starts_no_timer(self) -> None:
        forced: list[str] = []
        coordinator = _coordinator(forced, grace_period=0.01)
        _token, latch = coordinator.arm()
        latch.release()

        coordinator.request_shutdown()
        await asyncio.sleep(0.05)

        assert not coordinator.grace_timer_pending
        assert forced == []
        coordinator.disarm()

    async def test_disarm_cancels_pending_timer(self) -> None:
        forced: list[str] = []
        coordinator = _coordinator(forced, grace_period=0.05)
        coordinator.arm()
        coordinator.request_shutdown()

        coordinator.disarm()
        await asyncio.sleep(0.1)

        assert forced == []

    async def test_request_logs_reason(
        self,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        coordinator = _coordinator([])
        coordinator.arm()

        with caplog.at_level("INFO", logger="dmsender._shutdown"):
            coordinator.request_shutdown(signal.SIGTERM)

        assert "SIGTERM" in caplog.text
        coordinator.disarm()


class TestSignalHandlers:
    """Technique: Behavioural Testing — real signal delivery."""

    async def test_sigterm_requests_shutdown(self) -> None:
        coordinator = _coordinator(
            [],
            signals=(signal.SIGTERM,),
            install_signal_handlers=True,
        )
        token, latch = coordinator.arm()
        try:
            os.kill(os.getpid(), signal.SIGTERM)
            async with asyncio.timeout(1):
                await token.wait()
            assert coordinator.grace_timer_pending
        finally:
            latch.release()
            coordinator.disarm()

    async def test_failed_install_rolls_back(
        self,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        """A handler that cannot be installed leaves no others behind."""
        loop = asyncio.get_running_loop()
        real_add = loop.add_signal_handler

        def _add(sig: signal.Signals, callback: object, *args: object) -> None:
            if sig == signal.SIGUSR2:
                raise NotImplementedError
            real_add(sig, callback, *args)  # type: ignore[arg-type]

        monkeypatch.setattr(loop, "add_signal_handler", _add)
        coordinator = _coordinator(
            [],
            signals=(signal.SIGUSR1, signal.SIGUSR2),
            install_signal_handlers=True,
        )

        with pytest.raises(NotImplementedError):
            coordinator.arm()

        assert signal.getsignal(signal.SIGUSR1) is signal.SIG_DFL
        monkeypatch.undo()
        coordinator.arm()
        coordinator.disarm()

    async def test_disarm_restores_default_handling(self) -> None:
        coordinator = _coordinator(
            [],
            signals=(signal.SIGUSR1,),
            install_signal_handlers=True,
        )
        coordinator.arm()
        coordinator.disarm()

        assert signal.getsignal(signal.SIGUSR1) is signal.SIG_DFL


def test_forced_exit_code() -> None:
    assert EXIT_FORCED_SHUTDOWN == 4
