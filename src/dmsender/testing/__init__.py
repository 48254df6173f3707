"""Public test-support utilities for dmsender.

Provided symbols:

- :class:`ProbeHarness` — App wired with test doubles and no OS signals.
- :class:`MockMethodClient` — scripted method client that records calls.
- :class:`NullMethodClient` — client that answers 200 locally.
- :class:`CountingErrorPolicy` — error policy that records failures.
- :func:`make_settings` — ``Settings`` without env vars or files.
"""

from dmsender._client import MockMethodClient, NullMethodClient
from dmsender.testing._harness import ProbeHarness
from dmsender.testing._policy import CountingErrorPolicy
from dmsender.testing._settings import make_settings

__all__ = [
    "CountingErrorPolicy",
    "MockMethodClient",
    "NullMethodClient",
    "ProbeHarness",
    "make_settings",
]
