"""The probe's invocation loop.

Each iteration is independent::

    build MethodCall → invoke → (status 200?) publish telemetry
                     ↘ error → ErrorPolicy
    sleep(interval) — cut short by cancellation
    cancelled? → stop

No failure stops the loop; only the cancellation token does.  An
in-flight call is never aborted, the sleep is.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field

from dmsender._client import MethodClientPort
from dmsender._errors import ErrorPolicy, LogAndContinue
from dmsender._models import (
    SUCCESS_MESSAGE,
    SUCCESS_OUTPUT,
    MethodCall,
    TargetIdentity,
)
from dmsender._shutdown import CancellationToken

logger = logging.getLogger(__name__)


@dataclass
class InvocationLoop:
    """Repeatedly calls the diagnostic direct method on *target*.

    Args:
        client: Open connection used for every call.
        target: Device/module whose method is invoked.
        interval: Seconds to pause between attempts.
        cancellation: Token observed between and during sleeps.
        on_error: Receives every invoke/publish failure.
    """

    client: MethodClientPort
    target: TargetIdentity
    interval: float
    cancellation: CancellationToken
    on_error: ErrorPolicy = field(default_factory=LogAndContinue)

    def __post_init__(self) -> None:
        if self.interval < 0:
            msg = f"interval must not be negative, got {self.interval}"
            raise ValueError(msg)

    async def run(self) -> None:
        """Run attempts until the cancellation token fires."""
        logger.info(
            "Calling direct method on device [%s] and module [%s] every %gs",
            self.target.device_id,
            self.target.module_id,
            self.interval,
        )
        while not self.cancellation.is_cancelled:
            await self.attempt()
            await self.cancellation.sleep(self.interval)
        logger.info("Invocation loop stopped")

    async def attempt(self) -> None:
        """One invoke/publish round.  Never raises except on task cancellation."""
        call = MethodCall.hello()
        extra = {"target": str(self.target), "method": call.name}
        logger.info("Calling direct method %s on %s", call.name, self.target, extra=extra)

        try:
            response = await self.client.invoke(self.target, call)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self.on_error(exc, stage="invoke", target=self.target)
            return

        if not response.ok:
            logger.info(
                "Direct method %s on %s returned status %d; no telemetry sent",
                call.name,
                self.target,
                response.status,
                extra=extra,
            )
            return

        try:
            await self.client.publish(SUCCESS_OUTPUT, SUCCESS_MESSAGE)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self.on_error(exc, stage="publish", target=self.target)
            return

        logger.info(
            "Direct method %s on %s succeeded; telemetry sent to %s",
            call.name,
            self.target,
            SUCCESS_OUTPUT,
            extra=extra,
        )
