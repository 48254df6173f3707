"""Exception types and the per-attempt error policy.

Failure categories::

    ConnectionOpenError      ← fatal, aborts startup before the loop
    invoke / publish errors  ← per attempt, handed to an ErrorPolicy
    non-200 status           ← not an error, telemetry is skipped
    grace-period expiry      ← handled by the shutdown coordinator

Only :class:`ConnectionOpenError` escapes to the process exit path.
Everything raised during an attempt is given to an :class:`ErrorPolicy`
and the loop carries on.  The default :class:`LogAndContinue` logs the
failure with its traceback; tests swap in a counting policy.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Literal, Protocol, runtime_checkable

if TYPE_CHECKING:
    from dmsender._models import TargetIdentity

logger = logging.getLogger(__name__)

FailureStage = Literal["invoke", "publish"]
"""The step of an attempt that raised."""

_FAILURE_MESSAGES: dict[str, str] = {
    "invoke": "Direct method call on %s failed: %s",
    "publish": "Telemetry publish after a successful call on %s failed: %s",
}

# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class DmSenderError(Exception):
    """Base class for errors raised by dmsender."""


class ConnectionOpenError(DmSenderError):
    """The connection could not be established at startup."""


class ClientNotOpenError(DmSenderError, RuntimeError):
    """A call was made on a connection that is not open."""


class ConnectionLostError(DmSenderError, ConnectionError):
    """The connection dropped while a call was waiting for its reply."""


class MethodTimeoutError(DmSenderError, TimeoutError):
    """The callee did not reply within the response timeout."""


class MalformedResponseError(DmSenderError, ValueError):
    """A reply arrived but its body could not be decoded."""


# ---------------------------------------------------------------------------
# Policy
# ---------------------------------------------------------------------------


@runtime_checkable
class ErrorPolicy(Protocol):
    """Decides what happens to an exception raised during an attempt.

    Implementations must not raise; the invocation loop relies on the
    policy to contain every per-attempt failure.
    """

    def __call__(
        self,
        error: Exception,
        *,
        stage: FailureStage,
        target: TargetIdentity,
    ) -> None: ...


@dataclass
class LogAndContinue:
    """Default policy: log the failure and let the loop keep going.

    Args:
        level: Log level for the failure line.
        include_traceback: Attach the traceback to the log record.
    """

    level: int = logging.ERROR
    include_traceback: bool = True

    def __call__(
        self,
        error: Exception,
        *,
        stage: FailureStage,
        target: TargetIdentity,
    ) -> None:
        logger.log(
            self.level,
            _FAILURE_MESSAGES[stage],
            target,
            error,
            exc_info=error if self.include_traceback else None,
            extra={"target": str(target), "error_type": type(error).__name__},
        )
