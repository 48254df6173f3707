"""Command-line entrypoint (Typer-based).

The probe takes almost all of its configuration from the environment the
edge runtime injects.  The flags only cover what an operator changes for
a single run::

    dmsender --dry-run --log-format text
    dmsender --interval 0.5 --target-module EchoModule

Flag values are handed to the settings class as constructor arguments,
so they outrank every other source and are validated like the rest.

Exit codes::

    0  clean shutdown (including Ctrl+C)
    1  configuration could not be loaded or failed validation
    3  connection could not be opened, or the run failed unexpectedly
    4  teardown overran the grace period (raised by the coordinator)
"""

import asyncio
import contextlib
import logging
from typing import TYPE_CHECKING, Annotated, Any, get_args

import typer
from pydantic import ValidationError
from pydantic_settings import SettingsError

from dmsender._errors import ConnectionOpenError
from dmsender._settings import LoggingSettings
from dmsender._shutdown import EXIT_FORCED_SHUTDOWN

if TYPE_CHECKING:
    from dmsender._app import App
    from dmsender._settings import Settings

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_CONFIG_ERROR = 1
EXIT_RUNTIME_ERROR = 3

__all__ = [
    "EXIT_CONFIG_ERROR",
    "EXIT_FORCED_SHUTDOWN",
    "EXIT_OK",
    "EXIT_RUNTIME_ERROR",
    "build_cli",
    "load_settings",
    "run_probe",
]

_LOG_LEVELS: tuple[str, ...] = get_args(LoggingSettings.model_fields["level"].annotation)
_LOG_FORMATS: tuple[str, ...] = get_args(LoggingSettings.model_fields["format"].annotation)


def _choice(value: str | None, choices: tuple[str, ...], option: str) -> str | None:
    """Match *value* case-insensitively against *choices*."""
    if value is None:
        return None
    for choice in choices:
        if value.lower() == choice.lower():
            return choice
    raise typer.BadParameter(
        f"{value!r} is not one of: {', '.join(choices)}",
        param_hint=f"'{option}'",
    )


def load_settings(
    app: "App",
    *,
    env_file: str | None,
    overrides: dict[str, Any],
) -> "Settings":
    """Build the app's settings with CLI *overrides* on top.

    Nested overrides (``{"logging": {"level": "DEBUG"}}``) are merged
    into the values from the other sources, not substituted for them.

    Raises:
        typer.Exit: With :data:`EXIT_CONFIG_ERROR` if loading fails.
    """
    try:
        return app._settings_class(_env_file=env_file, **overrides)  # type: ignore[call-arg]
    except ValidationError as exc:
        for error in exc.errors():
            location = ".".join(str(part) for part in error["loc"]) or "settings"
            logger.error("Invalid setting %s: %s", location, error["msg"])
        raise typer.Exit(EXIT_CONFIG_ERROR) from exc
    except SettingsError as exc:
        logger.error("Could not read settings: %s", exc)
        raise typer.Exit(EXIT_CONFIG_ERROR) from exc


def run_probe(app: "App", settings: "Settings") -> int:
    """Run the probe until shutdown and return the process exit code.

    A refused connection is an operational failure and is reported
    without a traceback; anything else is a bug and keeps it.
    """
    try:
        with contextlib.suppress(KeyboardInterrupt):
            asyncio.run(app._run_async(settings=settings))
    except ConnectionOpenError as exc:
        logger.error(
            "Could not open connection to %s:%d: %s",
            settings.mqtt.host,
            settings.mqtt.port,
            exc.__cause__ or exc,
        )
        return EXIT_RUNTIME_ERROR
    except Exception:
        logger.exception("Probe stopped on an unexpected error")
        return EXIT_RUNTIME_ERROR
    return EXIT_OK


def build_cli(app: "App") -> typer.Typer:
    """Construct a Typer CLI for an :class:`App` instance.

    Args:
        app: The probe application to wrap.

    Returns:
        A configured :class:`typer.Typer` ready to invoke.
    """
    cli = typer.Typer(help=f"{app._name} v{app._version}: {app._description}")

    def _show_version(value: bool) -> None:
        if value:
            typer.echo(f"{app._name} v{app._version}")
            raise typer.Exit()

    @cli.callback(invoke_without_command=True)
    def main(
        version: Annotated[
            bool,
            typer.Option(
                "--version",
                callback=_show_version,
                is_eager=True,
                help="Show version and exit.",
            ),
        ] = False,
        dry_run: Annotated[
            bool,
            typer.Option(
                "--dry-run",
                help="Answer method calls locally instead of connecting.",
            ),
        ] = False,
        interval: Annotated[
            float | None,
            typer.Option(
                "--interval",
                help="Seconds between method calls (overrides DMDelay).",
            ),
        ] = None,
        target_module: Annotated[
            str | None,
            typer.Option(
                "--target-module",
                help="Module to call (overrides TargetModuleId).",
            ),
        ] = None,
        log_level: Annotated[
            str | None,
            typer.Option("--log-level", help="Override log level."),
        ] = None,
        log_format: Annotated[
            str | None,
            typer.Option("--log-format", help="Override log format."),
        ] = None,
        env_file: Annotated[
            str,
            typer.Option("--env-file", help="Path to .env file."),
        ] = ".env",
    ) -> None:
        overrides: dict[str, Any] = {}
        if interval is not None:
            overrides["interval"] = interval
        if target_module is not None:
            overrides["target_module_id"] = target_module

        logging_overrides = {
            "level": _choice(log_level, _LOG_LEVELS, "--log-level"),
            "format": _choice(log_format, _LOG_FORMATS, "--log-format"),
        }
        logging_overrides = {k: v for k, v in logging_overrides.items() if v is not None}
        if logging_overrides:
            overrides["logging"] = logging_overrides

        app._dry_run = dry_run
        settings = load_settings(app, env_file=env_file, overrides=overrides)
        raise typer.Exit(run_probe(app, settings))

    return cli
