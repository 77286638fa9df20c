"""CLI for the upnp2mqtt bridge (Typer-based).

Provides :func:`build_cli` which constructs a Typer app that parses
bridge-level options (``--version``, ``--broker``, ``--log-level``,
``--log-format``, ``--env-file``) and hands off to the bridge's async
lifecycle.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import sys
from typing import TYPE_CHECKING, Annotated, get_args

import typer
from pydantic import ValidationError

from upnp2mqtt._settings import LoggingSettings

if TYPE_CHECKING:
    from upnp2mqtt._bridge import Bridge
    from upnp2mqtt._settings import Settings

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Exit codes
# ---------------------------------------------------------------------------

EXIT_OK = 0
EXIT_CONFIG_ERROR = 1
EXIT_RUNTIME_ERROR = 3

# ---------------------------------------------------------------------------
# Allowed values (extracted from LoggingSettings Literal types)
# ---------------------------------------------------------------------------

_VALID_LOG_LEVELS: tuple[str, ...] = get_args(
    LoggingSettings.model_fields["level"].annotation,
)
_VALID_LOG_FORMATS: tuple[str, ...] = get_args(
    LoggingSettings.model_fields["format"].annotation,
)


def parse_broker(value: str) -> tuple[str, int | None]:
    """Split ``HOST[:PORT]`` into host and optional port.

    Bracketed IPv6 literals (``[::1]:1883``) are accepted.

    Raises:
        ValueError: Empty host, or a port that is not an integer in
            1-65535.
    """
    value = value.strip()
    port_text: str | None = None
    if value.startswith("["):
        host, sep, rest = value[1:].partition("]")
        if not sep or (rest and not rest.startswith(":")):
            raise ValueError(f"malformed broker address '{value}'")
        port_text = rest[1:] if rest else None
    elif value.count(":") == 1:
        host, port_text = value.split(":")
    else:
        host = value
    if not host:
        raise ValueError(f"missing host in broker address '{value}'")
    if port_text is None:
        return host, None
    if not port_text.isdigit() or not 0 < int(port_text) < 65536:
        raise ValueError(f"invalid port '{port_text}'")
    return host, int(port_text)


def build_cli(bridge: Bridge) -> typer.Typer:
    """Construct a Typer CLI from a :class:`Bridge` instance.

    The returned Typer app exposes a single default command.  When
    invoked it bootstraps settings, applies CLI overrides, runs
    :meth:`Bridge._run_async` and exits with its exit code.
    """
    name = bridge._name
    version = bridge._version
    description = bridge._description

    cli = typer.Typer(help=f"{name} v{version}: {description}")

    @cli.callback(invoke_without_command=True)
    def main(
        version_flag: Annotated[
            bool | None,
            typer.Option(
                "--version",
                is_eager=True,
                help="Show version and exit.",
            ),
        ] = None,
        broker: Annotated[
            str | None,
            typer.Option("--broker", help="MQTT broker as HOST[:PORT]."),
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
        # -- version ---------------------------------------------------------
        if version_flag:
            typer.echo(f"{name} v{version}")
            raise typer.Exit()

        # -- validate options -----------------------------------------------
        if log_level is not None and log_level.upper() not in _VALID_LOG_LEVELS:
            raise typer.BadParameter(
                f"Invalid log level '{log_level}'. "
                f"Choose from: {', '.join(_VALID_LOG_LEVELS)}",
                param_hint="'--log-level'",
            )

        if log_format is not None and log_format.lower() not in _VALID_LOG_FORMATS:
            raise typer.BadParameter(
                f"Invalid log format '{log_format}'. "
                f"Choose from: {', '.join(_VALID_LOG_FORMATS)}",
                param_hint="'--log-format'",
            )

        broker_override: dict[str, str | int] = {}
        if broker is not None:
            try:
                host, port = parse_broker(broker)
            except ValueError as exc:
                raise typer.BadParameter(str(exc), param_hint="'--broker'") from exc
            broker_override["host"] = host
            if port is not None:
                broker_override["port"] = port

        # -- build settings -------------------------------------------------
        try:
            settings: Settings = bridge._settings_class(_env_file=env_file)  # type: ignore[call-arg]
        except ValidationError as exc:
            logger.error("Configuration error: %s", exc)
            raise SystemExit(EXIT_CONFIG_ERROR) from exc

        # -- apply CLI overrides --------------------------------------------
        if broker_override:
            settings.mqtt = settings.mqtt.model_copy(update=broker_override)

        if log_level is not None:
            settings.logging = settings.logging.model_copy(
                update={"level": log_level.upper()},
            )

        if log_format is not None:
            settings.logging = settings.logging.model_copy(
                update={"format": log_format.lower()},
            )

        # -- run the async lifecycle ----------------------------------------
        exit_code = EXIT_OK
        try:
            with contextlib.suppress(KeyboardInterrupt):
                exit_code = asyncio.run(bridge._run_async(settings=settings))
        except SystemExit:
            raise
        except Exception as exc:
            logger.error("Runtime error: %s", exc)
            sys.exit(EXIT_RUNTIME_ERROR)
        if exit_code != EXIT_OK:
            sys.exit(exit_code)

    return cli
