"""Unit tests for dmsender._diagnostics — startup environment dump.

Test Techniques Used:
    - Specification-based Testing: variable list and output lines
    - Error Condition Testing: unset variables, secrets in values
"""

from __future__ import annotations

import logging

import pytest

from dmsender._diagnostics import (
    MODULE_CLIENT_VARIABLES,
    dump_environment,
    module_client_environment,
    redact,
)


class TestRedact:
    """Technique: Error Condition Testing."""

    def test_hides_shared_access_key(self) -> None:
        value = "HostName=hub;DeviceId=d;SharedAccessKey=abc123==;GatewayHostName=gw"
        assert redact(value) == (
            "HostName=hub;DeviceId=d;SharedAccessKey=***;GatewayHostName=gw"
        )

    def test_case_insensitive(self) -> None:
        assert "secret" not in redact("sharedaccesskey=secret")

    def test_plain_values_unchanged(self) -> None:
        assert redact("edge-device-1") == "edge-device-1"


class TestModuleClientEnvironment:
    """Technique: Specification-based Testing."""

    def test_covers_all_variables(self) -> None:
        env = module_client_environment({})
        assert tuple(env) == MODULE_CLIENT_VARIABLES
        assert len(env) == 8

    def test_unset_variables_are_none(self) -> None:
        env = module_client_environment({"IOTEDGE_DEVICEID": "edge-1"})
        assert env["IOTEDGE_DEVICEID"] == "edge-1"
        assert env["IOTEDGE_MODULEID"] is None

    def test_reads_process_environment(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("IOTEDGE_MODULEID", "DirectMethodSender")
        assert module_client_environment()["IOTEDGE_MODULEID"] == "DirectMethodSender"

    def test_connection_string_redacted(self) -> None:
        env = module_client_environment(
            {"EdgeHubConnectionString": "HostName=h;SharedAccessKey=k"},
        )
        assert env["EdgeHubConnectionString"] == "HostName=h;SharedAccessKey=***"


class TestDumpEnvironment:
    """Technique: Specification-based Testing."""

    def test_logs_header_then_one_line_per_variable(
        self,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        with caplog.at_level(logging.INFO, logger="dmsender._diagnostics"):
            dump_environment({"IOTEDGE_DEVICEID": "edge-1"})

        messages = [r.getMessage() for r in caplog.records]
        assert messages[0] == "[Configuration for module client]"
        assert len(messages) == 1 + len(MODULE_CLIENT_VARIABLES)
        assert "IOTEDGE_DEVICEID=edge-1" in messages
        assert "IOTEDGE_MODULEID=None" in messages
