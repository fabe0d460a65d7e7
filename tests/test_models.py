"""Tests for chromevm data models and the error taxonomy."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from chromevm.errors import (
    AgentError,
    Busy,
    Conflict,
    NotFound,
    ScriptError,
    SelectorTimeout,
    error_from_payload,
    format_error,
)
from chromevm.models import (
    CreateHostRequest,
    CreateVMRequest,
    HostRecord,
    JobStatus,
    RunRequest,
    VMRecord,
    VMStatus,
)


class TestModels:
    def test_vm_defaults(self):
        vm = VMRecord(vm_id="v1", name="box")
        assert vm.status == VMStatus.INITIALIZING
        assert vm.host_id is None
        assert vm.metadata == {}

    def test_job_status_terminal(self):
        assert JobStatus.COMPLETED.is_terminal
        assert JobStatus.FAILED.is_terminal
        assert not JobStatus.PENDING.is_terminal
        assert not JobStatus.RUNNING.is_terminal

    def test_host_urls(self):
        host = HostRecord(host_id="h1", name="edge", address="10.0.0.5", stream_port=6090)
        assert host.agent_url == "http://10.0.0.5:3000"
        assert host.stream_url == "http://10.0.0.5:6090/vnc.html"
        assert host.max_vms == 10
        assert host.location == "Unknown"

    def test_create_vm_name_required(self):
        with pytest.raises(ValidationError):
            CreateVMRequest(name="")

    def test_host_max_vms_bounds(self):
        with pytest.raises(ValidationError):
            CreateHostRequest(name="h", address="a", max_vms=0)
        with pytest.raises(ValidationError):
            CreateHostRequest(name="h", address="a", max_vms=101)

    def test_run_request_rejects_negative_wait(self):
        with pytest.raises(ValidationError):
            RunRequest(job_id="j", script="return 1", wait_time=-1)


class TestErrors:
    def test_kind_and_status(self):
        assert NotFound("x").kind == "NotFound"
        assert NotFound("x").status_code == 404
        assert Conflict("x").status_code == 409
        assert Busy("x").status_code == 409

    def test_selector_timeout_message(self):
        err = SelectorTimeout("#missing", 500)
        assert isinstance(err, ScriptError)
        assert err.message == "Element #missing not found within 500ms"

    def test_format_error(self):
        assert format_error(SelectorTimeout("#a", 10)) == (
            "SelectorTimeout: Element #a not found within 10ms"
        )
        assert format_error(ValueError("bad")) == "ValueError: bad"

    def test_error_from_payload_known_kind(self):
        err = error_from_payload({"error": {"kind": "Busy", "message": "in use"}})
        assert isinstance(err, Busy)
        assert err.message == "in use"

    def test_error_from_payload_unknown_kind(self):
        err = error_from_payload({"error": {"kind": "Weird", "message": "?"}})
        assert isinstance(err, AgentError)

    def test_error_from_payload_plain_string(self):
        err = error_from_payload({"error": "Browser not available"})
        assert isinstance(err, AgentError)
        assert err.message == "Browser not available"

    def test_error_from_payload_nothing(self):
        assert error_from_payload({"detail": "Not Found"}) is None
        assert error_from_payload([]) is None
