"""Application orchestrator for the direct-method probe.

:class:`App` is the composition root.  It wires settings, logging, the
method client, the shutdown coordinator and the invocation loop, then
drives the lifecycle::

    1. Bootstrap   — settings, logging, environment dump
    2. Connect     — open the method client (fatal on failure)
    3. Arm         — SIGTERM/SIGINT → cancellation + grace timer
    4. Run         — invocation loop until cancelled
    5. Tear down   — close the client, release the completion latch

Typical usage::

    from dmsender import App

    App(name="dmsender", version="1.0.0").cli()

Every collaborator can be injected for tests; see
:class:`dmsender.testing.ProbeHarness`.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Callable

from dmsender._client import (
    MethodClientLifecycle,
    MethodClientPort,
    MqttMethodClient,
    NullMethodClient,
)
from dmsender._diagnostics import dump_environment
from dmsender._errors import ErrorPolicy, LogAndContinue
from dmsender._logging import configure_logging
from dmsender._loop import InvocationLoop
from dmsender._settings import Settings
from dmsender._shutdown import CompletionLatch, ShutdownCoordinator

logger = logging.getLogger(__name__)


class App:
    """Central composition root and lifecycle driver.

    Args:
        name: Service name used in logs and the CLI.
        version: Application version string.
        description: Short description for CLI help text.
        settings_class: Settings subclass to instantiate at startup.
        dry_run: When True, use :class:`NullMethodClient` instead of
            connecting to a broker.
        on_error: Policy receiving every per-attempt failure.  Defaults
            to :class:`LogAndContinue`.
        on_force_exit: Callback run when teardown overruns the grace
            period.  Defaults to terminating the process.
    """

    def __init__(
        self,
        name: str = "dmsender",
        version: str = "0.0.0",
        *,
        description: str = "Direct-method probe for edge messaging fabrics",
        settings_class: type[Settings] = Settings,
        dry_run: bool = False,
        on_error: ErrorPolicy | None = None,
        on_force_exit: Callable[[], None] | None = None,
    ) -> None:
        self._name = name
        self._version = version
        self._description = description
        self._settings_class = settings_class
        self._dry_run = dry_run
        self._on_error: ErrorPolicy = on_error if on_error is not None else LogAndContinue()
        self._on_force_exit = on_force_exit

    # --- Entrypoints ---------------------------------------------------------

    def run(
        self,
        *,
        client: MethodClientPort | None = None,
        settings: Settings | None = None,
        coordinator: ShutdownCoordinator | None = None,
    ) -> None:
        """Start the probe (blocking, synchronous entrypoint).

        Wraps :meth:`_run_async` in :func:`asyncio.run` and suppresses
        ``KeyboardInterrupt``.

        Args:
            client: Override the method client (e.g. ``MockMethodClient``).
            settings: Override settings (skip env/file loading).
            coordinator: Override the shutdown coordinator (e.g. one
                without OS signal handlers).

        See Also:
            :meth:`cli` — CLI entrypoint with Typer argument parsing.
        """
        with contextlib.suppress(KeyboardInterrupt):
            asyncio.run(
                self._run_async(
                    client=client,
                    settings=settings,
                    coordinator=coordinator,
                ),
            )

    def cli(self) -> None:
        """Start the probe with CLI argument parsing."""
        from dmsender._cli import build_cli

        cli = build_cli(self)
        cli(standalone_mode=True)

    # --- Lifecycle -----------------------------------------------------------

    async def _run_async(
        self,
        *,
        client: MethodClientPort | None = None,
        settings: Settings | None = None,
        coordinator: ShutdownCoordinator | None = None,
    ) -> None:
        """Async orchestration: bootstrap, connect, arm, run, tear down.

        Raises:
            ConnectionOpenError: If the client cannot be opened.
            RuntimeError: If the coordinator is already armed.  The
                client is closed before it propagates.

        Per-attempt failures never escape; they stay in the loop.
        """
        # --- Phase 1: Bootstrap ---
        resolved_settings = settings if settings is not None else self._settings_class()
        configure_logging(
            resolved_settings.logging,
            service=self._name,
            version=self._version,
        )
        logger.info("%s v%s starting", self._name, self._version)
        dump_environment()
        logger.info("Using transport %s", resolved_settings.transport)

        if coordinator is None:
            coordinator = ShutdownCoordinator(
                grace_period=resolved_settings.shutdown_grace_period.total_seconds(),
                on_force_exit=self._on_force_exit,
            )

        # --- Phase 2: Connect ---
        resolved_client = self._create_client(client, resolved_settings)
        if isinstance(resolved_client, MethodClientLifecycle):
            await resolved_client.open()
        logger.info("Successfully initialized method client")

        # From here on the connection is open and must be closed exactly once.
        completed: CompletionLatch | None = None
        try:
            # --- Phase 3: Arm shutdown ---
            cancellation, completed = coordinator.arm()

            # --- Phase 4: Run ---
            invocation_loop = InvocationLoop(
                client=resolved_client,
                target=resolved_settings.target,
                interval=resolved_settings.interval.total_seconds(),
                cancellation=cancellation,
                on_error=self._on_error,
            )
            await invocation_loop.run()
        finally:
            # --- Phase 5: Tear down ---
            if isinstance(resolved_client, MethodClientLifecycle):
                await resolved_client.close()
            if completed is not None:
                completed.release()
                coordinator.disarm()

        logger.info("Shutdown complete")

    def _create_client(
        self,
        client: MethodClientPort | None,
        settings: Settings,
    ) -> MethodClientPort:
        """Return the injected client, or build one from settings."""
        if client is not None:
            return client
        if self._dry_run:
            logger.info("Dry run: method calls are answered locally")
            return NullMethodClient()
        return MqttMethodClient(
            settings=settings.mqtt,
            identity=settings.source,
            transport=settings.transport,
            response_timeout=settings.response_timeout.total_seconds(),
        )
