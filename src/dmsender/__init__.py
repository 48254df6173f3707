"""dmsender.

A diagnostic probe that keeps invoking a direct method on a peer module
and emits telemetry on every successful call.
"""

from importlib.metadata import PackageNotFoundError, version

from dmsender._app import App
from dmsender._client import (
    MethodClientLifecycle,
    MethodClientPort,
    MockMethodClient,
    MqttMethodClient,
    NullMethodClient,
)
from dmsender._diagnostics import dump_environment
from dmsender._errors import (
    ClientNotOpenError,
    ConnectionLostError,
    ConnectionOpenError,
    DmSenderError,
    ErrorPolicy,
    LogAndContinue,
    MalformedResponseError,
    MethodTimeoutError,
)
from dmsender._logging import JsonFormatter, configure_logging
from dmsender._loop import InvocationLoop
from dmsender._models import MethodCall, MethodResponse, TargetIdentity
from dmsender._settings import LoggingSettings, MqttSettings, Settings, Transport
from dmsender._shutdown import (
    CancellationSource,
    CancellationToken,
    CompletionLatch,
    ShutdownCoordinator,
)

try:
    __version__ = version("dmsender")
except PackageNotFoundError:
    # Source checkout without installed metadata
    __version__ = "0.0.0+unknown"

__all__ = [
    # Version
    "__version__",
    # App
    "App",
    "InvocationLoop",
    # Client
    "MethodClientLifecycle",
    "MethodClientPort",
    "MockMethodClient",
    "MqttMethodClient",
    "NullMethodClient",
    # Models
    "MethodCall",
    "MethodResponse",
    "TargetIdentity",
    # Shutdown
    "CancellationSource",
    "CancellationToken",
    "CompletionLatch",
    "ShutdownCoordinator",
    # Errors
    "ClientNotOpenError",
    "ConnectionLostError",
    "ConnectionOpenError",
    "DmSenderError",
    "ErrorPolicy",
    "LogAndContinue",
    "MalformedResponseError",
    "MethodTimeoutError",
    # Logging / diagnostics
    "JsonFormatter",
    "configure_logging",
    "dump_environment",
    # Settings
    "LoggingSettings",
    "MqttSettings",
    "Settings",
    "Transport",
]
