"""Value objects exchanged between the invocation loop and the client.

All of them are frozen: a :class:`TargetIdentity` is fixed for the
lifetime of the process, while :class:`MethodCall` and
:class:`MethodResponse` live for exactly one attempt.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from http import HTTPStatus

HELLO_METHOD = "HelloWorldMethod"
HELLO_PAYLOAD: dict[str, object] = {"Message": "Hello"}

SUCCESS_OUTPUT = "AnyOutput"
SUCCESS_MESSAGE = "Method Call succeeded."


@dataclass(frozen=True, slots=True)
class TargetIdentity:
    """A ``(device, module)`` pair naming a participant on the fabric."""

    device_id: str
    module_id: str

    def __str__(self) -> str:
        return f"{self.device_id}/{self.module_id}"


@dataclass(frozen=True, slots=True)
class MethodCall:
    """A single direct-method request.

    Build one per attempt with :meth:`hello`; the probe never reuses a
    call across attempts.
    """

    name: str
    payload: dict[str, object] = field(default_factory=dict)

    @classmethod
    def hello(cls) -> MethodCall:
        """The diagnostic call the probe sends on every attempt."""
        return cls(name=HELLO_METHOD, payload=dict(HELLO_PAYLOAD))

    def to_json(self) -> str:
        """Serialise the request body."""
        return json.dumps(self.payload)


@dataclass(frozen=True, slots=True)
class MethodResponse:
    """Reply to a :class:`MethodCall`."""

    status: int
    payload: object = None

    @property
    def ok(self) -> bool:
        """True when the callee answered with HTTP-style 200."""
        return self.status == HTTPStatus.OK
