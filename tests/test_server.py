"""Tests for the orchestrator HTTP API (allocator and agents mocked)."""

from __future__ import annotations

import time
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from chromevm.config import ChromeVMConfig, DispatchConfig, ServerConfig
from chromevm.errors import AgentUnreachable
from chromevm.models import Allocation, ContainerState, JobStatus, RunResponse
from chromevm.server import ChromeVMServer, create_app


def _make_allocator() -> MagicMock:
    allocator = MagicMock()

    async def allocate(vm_id, vm_name):
        return Allocation(
            vm_id=vm_id,
            container_ref=f"chrome-vm-{vm_id}",
            control_port=3003,
            stream_port=6082,
            control_url="http://localhost:3003",
            stream_url="http://localhost:6082/vnc.html",
        )

    allocator.allocate = AsyncMock(side_effect=allocate)
    allocator.deallocate = AsyncMock()
    allocator.describe = AsyncMock(return_value=ContainerState.READY)
    allocator.logs = AsyncMock(return_value=["agent listening on 3000"])
    return allocator


def _make_agents() -> MagicMock:
    agents = MagicMock()
    agents.start = AsyncMock()
    agents.close = AsyncMock()
    agents.health = AsyncMock(return_value={"status": "healthy", "browser": "connected"})
    agents.info = AsyncMock(return_value={"browser_version": "124.0", "python_version": "3.12.3"})

    async def run(agent_url, request):
        return RunResponse(job_id=request.job_id, status=JobStatus.COMPLETED, result=2)

    agents.run = AsyncMock(side_effect=run)
    return agents


@pytest.fixture
def server(tmp_path):
    config = ChromeVMConfig(
        server=ServerConfig(data_dir=str(tmp_path / "data")),
        dispatch=DispatchConfig(boot_timeout=1, boot_poll_interval=0.01),
    )
    return ChromeVMServer(config, allocator=_make_allocator(), agents=_make_agents())


@pytest.fixture
def client(server):
    with TestClient(create_app(server)) as c:
        yield c


def _wait_for_status(client: TestClient, vm_id: str, status: str, timeout: float = 5.0) -> dict:
    deadline = time.monotonic() + timeout
    while True:
        vm = client.get(f"/vms/{vm_id}").json()
        if vm["status"] == status or time.monotonic() > deadline:
            return vm
        time.sleep(0.02)


class TestServer:
    def test_startup_creates_db(self, server, client, tmp_path):
        assert (tmp_path / "data" / "chromevm.db").exists()
        server.agents.start.assert_awaited_once()

    def test_health(self, client):
        resp = client.get("/health")
        assert resp.status_code == 200
        assert resp.json()["status"] == "ok"
        assert resp.json()["total_vms"] == 0

    def test_vm_lifecycle(self, client, server):
        resp = client.post("/vms", json={"name": "box"})
        assert resp.status_code == 201
        vm_id = resp.json()["vm_id"]
        assert resp.json()["status"] == "initializing"

        vm = _wait_for_status(client, vm_id, "ready")
        assert vm["status"] == "ready"
        assert vm["stream_url"] == "http://localhost:6082/vnc.html"

        listed = client.get("/vms").json()["vms"]
        assert [v["vm_id"] for v in listed] == [vm_id]

        resp = client.post(f"/vms/{vm_id}/run-script", json={"script": "return 1 + 1"})
        assert resp.status_code == 200
        job = resp.json()
        assert job["status"] == "completed"
        assert job["result"] == 2

        jobs = client.get(f"/vms/{vm_id}/jobs").json()["jobs"]
        assert [j["job_id"] for j in jobs] == [job["job_id"]]
        assert client.get(f"/jobs/{job['job_id']}").json()["status"] == "completed"

        assert client.get(f"/vms/{vm_id}/status").json()["agent"] == "healthy"
        logs = client.get(f"/vms/{vm_id}/logs", params={"tail": 5}).json()
        assert logs == {"vm_id": vm_id, "logs": ["agent listening on 3000"]}

        assert client.delete(f"/vms/{vm_id}").status_code == 204
        assert client.get(f"/vms/{vm_id}").status_code == 404
        assert client.get(f"/jobs/{job['job_id']}").status_code == 404
        server.allocator.deallocate.assert_awaited_once()

    def test_create_vm_validation(self, client):
        resp = client.post("/vms", json={"name": ""})
        assert resp.status_code == 400
        assert resp.json()["error"]["kind"] == "InvalidRequest"

    def test_create_vm_unknown_host(self, client):
        resp = client.post("/vms", json={"name": "box", "host_id": "nope"})
        assert resp.status_code == 404

    def test_run_script_on_initializing_vm(self, client, server):
        server.agents.health.side_effect = AgentUnreachable("booting")
        vm_id = client.post("/vms", json={"name": "box"}).json()["vm_id"]

        resp = client.post(f"/vms/{vm_id}/run-script", json={"script": "return 1"})
        assert resp.status_code == 409
        assert resp.json()["error"]["kind"] == "Conflict"
        server.agents.run.assert_not_awaited()

    def test_run_script_unknown_vm(self, client):
        resp = client.post("/vms/nope/run-script", json={"script": "return 1"})
        assert resp.status_code == 404

    def test_jobs_of_unknown_vm(self, client):
        assert client.get("/vms/nope/jobs").status_code == 404
        assert client.get("/jobs/nope").status_code == 404

    def test_hosts(self, client):
        resp = client.post("/hosts", json={"name": "edge-1", "address": "10.0.0.5", "max_vms": 2})
        assert resp.status_code == 201
        host_id = resp.json()["host_id"]

        hosts = client.get("/hosts").json()["hosts"]
        assert [h["host_id"] for h in hosts] == [host_id]
        assert hosts[0]["health"] == "healthy"

    def test_host_validation(self, client):
        resp = client.post("/hosts", json={"name": "edge", "address": "10.0.0.5", "max_vms": 0})
        assert resp.status_code == 400

    def test_remote_vm(self, client):
        host_id = client.post("/hosts", json={"name": "edge", "address": "10.0.0.5"}).json()[
            "host_id"
        ]
        vm_id = client.post("/vms", json={"name": "box", "host_id": host_id}).json()["vm_id"]
        vm = _wait_for_status(client, vm_id, "ready")
        assert vm["agent_url"] == "http://10.0.0.5:3000"
        assert vm["host_id"] == host_id
