"""Direct-method client port and adapters.

Provides MethodClientPort (Protocol) and three implementations:

- MqttMethodClient — aiomqtt-based request/response client
- MockMethodClient — test double that records calls and replays a script
- NullMethodClient — dry-run adapter that answers every call with 200

Design decisions:

- One connection per process: ``open()`` once, reuse, ``close()`` once
- No reconnect and no retry; transient errors reach the caller unchanged
- aiomqtt imported lazily inside MqttMethodClient.open() so Mock/Null
  work without aiomqtt installed
- Replies are correlated by request id and bounded by a response timeout

Wire format (``{p}`` is ``mqtt.topic_prefix``)::

    {p}/{device}/{module}/methods/POST/{method}     ← request
    {p}/{device}/{module}/methods/res/{request_id}  ← reply
    {p}/{device}/{module}/outputs/{output}          ← telemetry
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import ssl
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from http import HTTPStatus
from typing import Any, Protocol, runtime_checkable

from dmsender._errors import (
    ClientNotOpenError,
    ConnectionLostError,
    ConnectionOpenError,
    MalformedResponseError,
    MethodTimeoutError,
)
from dmsender._models import MethodCall, MethodResponse, TargetIdentity
from dmsender._settings import MqttSettings, Transport

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Ports (Protocols)
# ---------------------------------------------------------------------------


@runtime_checkable
class MethodClientPort(Protocol):
    """Port contract for invoking direct methods and sending telemetry."""

    async def invoke(
        self,
        target: TargetIdentity,
        call: MethodCall,
    ) -> MethodResponse: ...

    async def publish(self, output: str, payload: str) -> None: ...


@runtime_checkable
class MethodClientLifecycle(Protocol):
    """Adapters that hold a connection implement open/close.

    ``close()`` must be idempotent and must not raise.
    """

    async def open(self) -> None: ...

    async def close(self) -> None: ...


# ---------------------------------------------------------------------------
# Null adapter
# ---------------------------------------------------------------------------


@dataclass
class NullMethodClient:
    """Dry-run adapter that never touches the network.

    Every invocation succeeds with status 200 and every publish is
    discarded, so the loop can be exercised without a broker.
    """

    async def invoke(
        self,
        target: TargetIdentity,
        call: MethodCall,
    ) -> MethodResponse:
        """Answer locally with 200."""
        logger.debug("NullMethodClient.invoke(%s, %s) — answered", target, call.name)
        return MethodResponse(status=HTTPStatus.OK)

    async def publish(self, output: str, payload: str) -> None:  # noqa: ARG002
        """Silently discard a telemetry event."""
        logger.debug("NullMethodClient.publish(%s) — discarded", output)


# ---------------------------------------------------------------------------
# Mock / test-double adapter
# ---------------------------------------------------------------------------

Outcome = int | MethodResponse | Exception
"""Scripted result of one invocation: a status, a response or an error."""


@dataclass
class MockMethodClient:
    """In-memory test double for :class:`MethodClientPort`.

    Invocations consume ``script`` front to back; once it is exhausted
    every call answers ``default_status``.  ``events`` keeps the order
    of lifecycle and call activity for sequencing assertions.

    Args:
        script: Outcomes for successive invocations.
        default_status: Status used when the script is exhausted.
        publish_error: Raised by every ``publish()`` when set.
        invoke_delay: Seconds each invocation stays in flight.
        after_invoke: Called with the 1-based invocation number after
            each invocation is recorded, before the outcome is returned.
    """

    script: list[Outcome] = field(default_factory=list)
    default_status: int = HTTPStatus.OK
    publish_error: Exception | None = None
    invoke_delay: float = 0.0
    after_invoke: Callable[[int], None] | None = field(default=None, repr=False)

    invocations: list[tuple[TargetIdentity, MethodCall]] = field(
        default_factory=list,
    )
    published: list[tuple[str, str]] = field(default_factory=list)
    events: list[str] = field(default_factory=list)
    open_count: int = 0
    close_count: int = 0
    _in_flight: int = field(default=0, init=False, repr=False)

    # -- MethodClientLifecycle -----------------------------------------------

    async def open(self) -> None:
        """Record an open call."""
        self.open_count += 1
        self.events.append("open")

    async def close(self) -> None:
        """Record a close call, flagging it if a call is still in flight."""
        self.close_count += 1
        self.events.append("close-during-call" if self._in_flight else "close")

    # -- MethodClientPort ------------------------------------------------------

    async def invoke(
        self,
        target: TargetIdentity,
        call: MethodCall,
    ) -> MethodResponse:
        """Record the invocation and play back the next scripted outcome."""
        self._in_flight += 1
        try:
            self.invocations.append((target, call))
            self.events.append("invoke")
            if self.invoke_delay:
                await asyncio.sleep(self.invoke_delay)
            if self.after_invoke is not None:
                self.after_invoke(len(self.invocations))
            outcome: Outcome = (
                self.script.pop(0) if self.script else self.default_status
            )
        finally:
            self._in_flight -= 1
        if isinstance(outcome, Exception):
            raise outcome
        if isinstance(outcome, MethodResponse):
            return outcome
        return MethodResponse(status=outcome)

    async def publish(self, output: str, payload: str) -> None:
        """Record a telemetry event, or raise ``publish_error``."""
        self.events.append("publish")
        if self.publish_error is not None:
            raise self.publish_error
        self.published.append((output, payload))

    # -- Test helpers ----------------------------------------------------------

    @property
    def invoke_count(self) -> int:
        """Number of recorded invocations."""
        return len(self.invocations)

    @property
    def publish_count(self) -> int:
        """Number of successfully recorded publishes."""
        return len(self.published)

    def reset(self) -> None:
        """Clear all recorded data."""
        self.invocations.clear()
        self.published.clear()
        self.events.clear()
        self.open_count = 0
        self.close_count = 0


# ---------------------------------------------------------------------------
# Real adapter
# ---------------------------------------------------------------------------


def decode_response(payload: Any) -> MethodResponse:
    """Decode a reply body ``{"status": int, "payload": ...}``.

    Raises:
        MalformedResponseError: If the body is not valid JSON or has no
            integer ``status``.
    """
    try:
        text = (
            payload.decode("utf-8")
            if isinstance(payload, (bytes, bytearray))
            else str(payload)
        )
        body = json.loads(text)
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        msg = f"Reply is not valid JSON: {exc}"
        raise MalformedResponseError(msg) from exc

    status = body.get("status") if isinstance(body, dict) else None
    if not isinstance(status, int) or isinstance(status, bool):
        msg = f"Reply has no integer status: {body!r}"
        raise MalformedResponseError(msg)
    return MethodResponse(status=status, payload=body.get("payload"))


@dataclass
class MqttMethodClient:
    """Production adapter: direct methods as request/response over MQTT.

    ``open()`` connects, subscribes to this module's reply topic and
    starts a listener task that resolves pending calls.  If the
    connection drops the listener fails every pending call with
    :class:`ConnectionLostError` and the client stops accepting calls;
    it does not reconnect.

    Args:
        settings: Broker connection settings.
        identity: This probe's ``(device, module)`` identity; used for
            reply and telemetry topics and as the default client id.
        transport: ``tcp`` or ``websockets``.
        response_timeout: Seconds a call waits for its reply.
    """

    settings: MqttSettings
    identity: TargetIdentity
    transport: Transport = Transport.TCP
    response_timeout: float = 30.0

    # internal state --------------------------------------------------------
    _client: Any = field(default=None, init=False, repr=False)
    _stack: contextlib.AsyncExitStack | None = field(
        default=None,
        init=False,
        repr=False,
    )
    _listen_task: asyncio.Task[None] | None = field(
        default=None,
        init=False,
        repr=False,
    )
    _pending: dict[str, asyncio.Future[MethodResponse]] = field(
        default_factory=dict,
        init=False,
        repr=False,
    )

    # -- Topics -----------------------------------------------------------------

    def _topic(self, identity: TargetIdentity, *parts: str) -> str:
        return "/".join(
            (self.settings.topic_prefix, identity.device_id, identity.module_id, *parts),
        )

    def request_topic(self, target: TargetIdentity, method: str) -> str:
        """Topic the callee listens on for *method*."""
        return self._topic(target, "methods", "POST", method)

    def reply_topic(self, request_id: str) -> str:
        """Topic the reply to *request_id* is expected on."""
        return self._topic(self.identity, "methods", "res", request_id)

    def output_topic(self, output: str) -> str:
        """Topic telemetry for *output* is published to."""
        return self._topic(self.identity, "outputs", output)

    @property
    def reply_filter(self) -> str:
        """Wildcard subscription covering every reply to this module."""
        return self.reply_topic("+")

    @property
    def is_open(self) -> bool:
        """Whether calls are currently accepted."""
        return self._client is not None

    # -- Lifecycle --------------------------------------------------------------

    async def open(self) -> None:
        """Connect to the broker and start listening for replies.

        Raises:
            ConnectionOpenError: If aiomqtt is missing, the broker
                refuses the connection or the reply subscription fails.
        """
        if self._stack is not None:
            logger.debug("MqttMethodClient.open() called while already open")
            return

        try:
            import aiomqtt  # noqa: PLC0415
        except ModuleNotFoundError as exc:
            msg = "aiomqtt is required to use MqttMethodClient"
            raise ConnectionOpenError(msg) from exc

        self._stack = contextlib.AsyncExitStack()
        try:
            client = await self._stack.enter_async_context(
                aiomqtt.Client(**self._client_options()),
            )
            await client.subscribe(self.reply_filter, qos=1)
        except Exception as exc:
            await self.close()
            msg = (
                f"Could not connect to {self.settings.host}:{self.settings.port} "
                f"over {self.transport}: {exc}"
            )
            raise ConnectionOpenError(msg) from exc

        self._client = client
        self._listen_task = asyncio.create_task(self._listen(client))
        logger.info(
            "Connected to %s:%d over %s as %s",
            self.settings.host,
            self.settings.port,
            self.transport,
            self.identity,
        )

    async def close(self) -> None:
        """Stop listening and disconnect.

        Idempotent and best effort: failures while disconnecting are
        logged, never raised, so it is safe after a partial ``open()``.
        """
        self._client = None
        if self._listen_task is not None:
            self._listen_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._listen_task
            self._listen_task = None
        self._fail_pending(ConnectionLostError("connection closed"))

        stack, self._stack = self._stack, None
        if stack is None:
            return
        try:
            await stack.aclose()
        except Exception:
            logger.warning("Error while disconnecting from broker", exc_info=True)
        else:
            logger.info("Disconnected from %s:%d", self.settings.host, self.settings.port)

    # -- MethodClientPort ------------------------------------------------------

    async def invoke(
        self,
        target: TargetIdentity,
        call: MethodCall,
    ) -> MethodResponse:
        """Send *call* to *target* and wait for the reply.

        Raises:
            ClientNotOpenError: If the client is not open.
            MethodTimeoutError: If no reply arrives in time.
            ConnectionLostError: If the connection drops while waiting.
            MalformedResponseError: If the reply cannot be decoded.
        """
        client = self._require_client()
        request_id = uuid.uuid4().hex
        body = json.dumps(
            {
                "request_id": request_id,
                "reply_to": self.reply_topic(request_id),
                "payload": call.payload,
            },
        )
        future: asyncio.Future[MethodResponse] = (
            asyncio.get_running_loop().create_future()
        )
        self._pending[request_id] = future
        try:
            await client.publish(
                self.request_topic(target, call.name),
                body,
                qos=1,
                retain=False,
            )
            try:
                async with asyncio.timeout(self.response_timeout):
                    return await future
            except TimeoutError as exc:
                msg = (
                    f"{call.name} on {target} did not reply within "
                    f"{self.response_timeout:g}s"
                )
                raise MethodTimeoutError(msg) from exc
        finally:
            self._pending.pop(request_id, None)

    async def publish(self, output: str, payload: str) -> None:
        """Publish a telemetry event on this module's *output*.

        Raises:
            ClientNotOpenError: If the client is not open.
        """
        client = self._require_client()
        topic = self.output_topic(output)
        await client.publish(topic, payload, qos=1, retain=False)
        logger.debug("Published telemetry to %s", topic)

    # -- Internal ---------------------------------------------------------------

    def _client_options(self) -> dict[str, Any]:
        """Keyword arguments for ``aiomqtt.Client``."""
        password: str | None = None
        if self.settings.password is not None:
            password = self.settings.password.get_secret_value()
        websockets = self.transport is Transport.WEBSOCKETS
        return {
            "hostname": self.settings.host,
            "port": self.settings.port,
            "username": self.settings.username,
            "password": password,
            "identifier": self.settings.client_id or str(self.identity),
            "transport": str(self.transport),
            "websocket_path": self.settings.websocket_path if websockets else None,
            "timeout": self.settings.connect_timeout,
            "tls_context": ssl.create_default_context() if self.settings.tls else None,
        }

    def _require_client(self) -> Any:
        if self._client is None:
            msg = "MqttMethodClient is not open"
            raise ClientNotOpenError(msg)
        return self._client

    async def _listen(self, client: Any) -> None:
        """Resolve pending calls from inbound replies until disconnected."""
        try:
            async for message in client.messages:
                self._dispatch(message)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            reason = str(exc) or type(exc).__name__
        else:
            reason = "message stream ended"
        logger.warning("Connection to broker lost: %s", reason)
        self._client = None
        self._fail_pending(ConnectionLostError(reason))

    def _dispatch(self, message: Any) -> None:
        """Hand one reply to the call waiting for it."""
        topic = str(message.topic)
        request_id = topic.rsplit("/", 1)[-1]
        future = self._pending.get(request_id)
        if future is None or future.done():
            logger.debug("Dropping reply for unknown request %s", request_id)
            return
        try:
            response = decode_response(message.payload)
        except MalformedResponseError as exc:
            future.set_exception(exc)
            return
        future.set_result(response)

    def _fail_pending(self, error: Exception) -> None:
        for future in self._pending.values():
            if not future.done():
                future.set_exception(error)
