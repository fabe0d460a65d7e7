"""Tests for job dispatch and the ready/running handshake."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio

from chromevm.dispatcher import JobDispatcher
from chromevm.errors import (
    AgentTimeout,
    AgentUnreachable,
    BrowserUnavailable,
    Busy,
    Conflict,
    InvalidRequest,
    NotFound,
)
from chromevm.models import JobStatus, RunOptions, RunResponse, VMRecord, VMStatus
from chromevm.registry import VMRegistry

AGENT = "http://localhost:3003"


@pytest_asyncio.fixture
async def registry(tmp_path):
    reg = VMRegistry(str(tmp_path / "dispatch.db"))
    await reg.initialize()
    yield reg
    await reg.close()


async def _ready_vm(registry: VMRegistry, vm_id: str = "vm-1") -> None:
    await registry.create_vm(VMRecord(vm_id=vm_id, name="box", container_ref=f"chrome-vm-{vm_id}"))
    await registry.finish_provisioning(vm_id, VMStatus.READY, agent_url=AGENT)


def _make_agents(**run_kwargs) -> MagicMock:
    agents = MagicMock()
    agents.run = AsyncMock(**run_kwargs)
    return agents


def _completed(request_result=None, **fields):
    async def run(agent_url, request):
        return RunResponse(
            job_id=request.job_id, status=JobStatus.COMPLETED, result=request_result, **fields
        )

    return run


class TestDispatch:
    async def test_completed(self, registry):
        await _ready_vm(registry)
        agents = _make_agents(side_effect=_completed({"title": "Example"}, selected_text="hi"))
        dispatcher = JobDispatcher(registry, agents)

        job = await dispatcher.dispatch(
            "vm-1", "return await page.title()", RunOptions(selector="h1", wait_ms=10)
        )

        assert job.status == JobStatus.COMPLETED
        assert job.result == {"title": "Example"}
        assert job.selected_text == "hi"
        assert job.started_at is not None
        assert job.completed_at is not None
        assert (await registry.get_vm("vm-1")).status == VMStatus.READY

        agent_url, request = agents.run.call_args.args
        assert agent_url == AGENT
        assert request.job_id == job.job_id
        assert request.selector == "h1"
        assert request.wait_time == 10

    async def test_script_failure_reported(self, registry):
        await _ready_vm(registry)

        async def run(agent_url, request):
            return RunResponse(
                job_id=request.job_id,
                status=JobStatus.FAILED,
                error="SelectorTimeout: Element #x not found within 500ms",
                screenshot="iVBORw0KGgo=",
            )

        dispatcher = JobDispatcher(registry, _make_agents(side_effect=run))
        job = await dispatcher.dispatch("vm-1", "await page.wait_for_selector('#x', 500)")

        assert job.status == JobStatus.FAILED
        assert job.error.startswith("SelectorTimeout")
        assert job.screenshot == "iVBORw0KGgo="
        assert (await registry.get_vm("vm-1")).status == VMStatus.READY

    @pytest.mark.parametrize(
        "exc, kind",
        [
            (AgentTimeout("no answer within 300s"), "AgentTimeout"),
            (AgentUnreachable("connection refused"), "AgentUnreachable"),
            (Busy("Sandbox is busy with job x"), "Busy"),
        ],
    )
    async def test_agent_errors_release_vm(self, registry, exc, kind):
        await _ready_vm(registry)
        dispatcher = JobDispatcher(registry, _make_agents(side_effect=exc))

        job = await dispatcher.dispatch("vm-1", "return 1")

        assert job.status == JobStatus.FAILED
        assert job.error.startswith(f"{kind}: ")
        assert (await registry.get_vm("vm-1")).status == VMStatus.READY

    async def test_browser_unavailable_releases_vm(self, registry):
        await _ready_vm(registry)
        agents = _make_agents(
            side_effect=[BrowserUnavailable("Browser failed to start"), _completed(3)]
        )
        dispatcher = JobDispatcher(registry, agents)

        job = await dispatcher.dispatch("vm-1", "return 1")

        assert job.status == JobStatus.FAILED
        assert job.error == "BrowserUnavailable: Browser failed to start"
        assert (await registry.get_vm("vm-1")).status == VMStatus.READY
        assert (await dispatcher.dispatch("vm-1", "return 3")).status == JobStatus.COMPLETED

    async def test_empty_script(self, registry):
        await _ready_vm(registry)
        dispatcher = JobDispatcher(registry, _make_agents())
        with pytest.raises(InvalidRequest):
            await dispatcher.dispatch("vm-1", "  \n")
        assert await registry.list_jobs("vm-1") == []

    async def test_unknown_vm(self, registry):
        dispatcher = JobDispatcher(registry, _make_agents())
        with pytest.raises(NotFound):
            await dispatcher.dispatch("nope", "return 1")

    async def test_vm_not_ready(self, registry):
        await registry.create_vm(VMRecord(vm_id="vm-1", name="box"))
        agents = _make_agents()
        dispatcher = JobDispatcher(registry, agents)
        with pytest.raises(Conflict):
            await dispatcher.dispatch("vm-1", "return 1")
        assert await registry.list_jobs("vm-1") == []
        agents.run.assert_not_awaited()

    async def test_second_dispatch_conflicts(self, registry):
        await _ready_vm(registry)
        release = asyncio.Event()

        async def slow_run(agent_url, request):
            await release.wait()
            return RunResponse(job_id=request.job_id, status=JobStatus.COMPLETED, result=1)

        dispatcher = JobDispatcher(registry, _make_agents(side_effect=slow_run))
        first = asyncio.create_task(dispatcher.dispatch("vm-1", "return 1"))
        await asyncio.sleep(0.05)
        assert (await registry.get_vm("vm-1")).status == VMStatus.RUNNING

        with pytest.raises(Conflict):
            await dispatcher.dispatch("vm-1", "return 2")

        release.set()
        job = await first
        assert job.status == JobStatus.COMPLETED
        assert len(await registry.list_jobs("vm-1")) == 1

    async def test_cancelled_dispatch_releases_vm(self, registry):
        await _ready_vm(registry)

        async def hang(agent_url, request):
            await asyncio.Event().wait()

        dispatcher = JobDispatcher(registry, _make_agents(side_effect=hang))
        task = asyncio.create_task(dispatcher.dispatch("vm-1", "return 1"))
        await asyncio.sleep(0.05)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert (await registry.get_vm("vm-1")).status == VMStatus.READY
        jobs = await registry.list_jobs("vm-1")
        assert jobs[0].status == JobStatus.FAILED
        assert jobs[0].error.startswith("Cancelled")

    async def test_deleted_vm_takes_its_jobs(self, registry):
        await _ready_vm(registry)
        dispatcher = JobDispatcher(registry, _make_agents(side_effect=_completed(1)))
        first = await dispatcher.dispatch("vm-1", "return 1")
        second = await dispatcher.dispatch("vm-1", "return 1")

        await registry.delete_vm("vm-1")

        assert await registry.get_job(first.job_id) is None
        assert await registry.get_job(second.job_id) is None
        with pytest.raises(NotFound):
            await dispatcher.dispatch("vm-1", "return 1")

    async def test_vm_deleted_mid_run(self, registry):
        await _ready_vm(registry)

        async def run_then_vanish(agent_url, request):
            await registry.delete_vm("vm-1")
            return RunResponse(job_id=request.job_id, status=JobStatus.COMPLETED, result=7)

        dispatcher = JobDispatcher(registry, _make_agents(side_effect=run_then_vanish))
        job = await dispatcher.dispatch("vm-1", "return 7")

        assert job.status == JobStatus.COMPLETED
        assert job.result == 7
        assert await registry.get_job(job.job_id) is None
