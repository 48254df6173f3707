"""Startup dump of the module-client environment.

The edge runtime hands a module its identity and credentials through
environment variables.  Logging them at startup is the quickest way to
tell a misconfigured deployment from a broken fabric.  Shared access
keys inside connection strings are redacted.
"""

from __future__ import annotations

import logging
import os
import re
from collections.abc import Mapping

logger = logging.getLogger(__name__)

MODULE_CLIENT_VARIABLES: tuple[str, ...] = (
    "EdgeHubConnectionString",
    "IOTEDGE_WORKLOADURI",
    "IOTEDGE_DEVICEID",
    "IOTEDGE_MODULEID",
    "IOTEDGE_IOTHUBHOSTNAME",
    "IOTEDGE_AUTHSCHEME",
    "IOTEDGE_MODULEGENERATIONID",
    "IOTEDGE_GATEWAYHOSTNAME",
)

_SECRET = re.compile(r"(SharedAccessKey=)[^;]*", re.IGNORECASE)


def redact(value: str) -> str:
    """Hide shared access keys in a connection string."""
    return _SECRET.sub(r"\1***", value)


def module_client_environment(
    environ: Mapping[str, str] | None = None,
) -> dict[str, str | None]:
    """Return the module-client variables, redacted, ``None`` when unset."""
    env = os.environ if environ is None else environ
    return {
        name: redact(env[name]) if name in env else None
        for name in MODULE_CLIENT_VARIABLES
    }


def dump_environment(environ: Mapping[str, str] | None = None) -> None:
    """Log each module-client variable on its own line."""
    logger.info("[Configuration for module client]")
    for name, value in module_client_environment(environ).items():
        logger.info("%s=%s", name, value)
