"""chromevm server: the orchestrator's FastAPI application.

Startup:
1. Open the SQLite registry (data dir from config)
2. Start the agent HTTP client
3. Reserve host ports still held by recorded VMs
4. Begin accepting requests

Shutdown:
1. Cancel provisioning still in flight
2. Close the agent client
3. Close the registry

Records are not reconciled against the container engine on restart; a VM
left ``initializing`` or ``running`` by a crash stays that way until it is
deleted.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI, Query, Response

from chromevm.agent_client import AgentClient
from chromevm.allocator import ContainerAllocator
from chromevm.config import ChromeVMConfig, load_config
from chromevm.dispatcher import JobDispatcher
from chromevm.errors import NotFound, register_error_handlers
from chromevm.hosts import HostManager
from chromevm.log_buffer import LogBuffer
from chromevm.models import (
    CreateHostRequest,
    CreateVMRequest,
    RunOptions,
    RunScriptRequest,
)
from chromevm.orchestrator import Orchestrator
from chromevm.registry import VMRegistry

logger = logging.getLogger(__name__)


class ChromeVMServer:
    """Encapsulates all server components and lifecycle."""

    def __init__(
        self,
        config: ChromeVMConfig | None = None,
        *,
        allocator: ContainerAllocator | None = None,
        agents: AgentClient | None = None,
    ):
        self.config = config or load_config()
        self.registry: VMRegistry | None = None
        self.agents = agents or AgentClient(self.config.dispatch)
        self.allocator = allocator or ContainerAllocator(self.config.allocator)
        self.hosts: HostManager | None = None
        self.orchestrator: Orchestrator | None = None
        self.dispatcher: JobDispatcher | None = None
        self.log_buffer = LogBuffer()
        self._log_handler = None

    async def start(self) -> None:
        """Initialize all components."""
        self._log_handler = self.log_buffer.attach()

        data_dir = Path(self.config.server.data_dir)
        data_dir.mkdir(parents=True, exist_ok=True)
        db_path = str(self.config.server.db_path)
        logger.info("Registry DB path: %s", db_path)

        self.registry = VMRegistry(db_path)
        await self.registry.initialize()

        await self.agents.start()
        self.hosts = HostManager(self.registry, self.agents, self.config.hosts)
        self.orchestrator = Orchestrator(
            self.registry, self.allocator, self.agents, self.hosts, self.config.dispatch
        )
        await self.orchestrator.start()
        self.dispatcher = JobDispatcher(self.registry, self.agents)
        logger.info("chromevm server started")

    async def stop(self) -> None:
        """Graceful shutdown of all components."""
        logger.info("chromevm server shutting down")
        if self.orchestrator:
            await self.orchestrator.stop()
        await self.agents.close()
        if self.registry:
            await self.registry.close()
        if self._log_handler:
            self.log_buffer.detach(self._log_handler)
            self._log_handler = None
        logger.info("chromevm server stopped")


def create_app(server: ChromeVMServer | None = None) -> FastAPI:
    """Create the orchestrator application."""
    server = server or ChromeVMServer()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await server.start()
        try:
            yield
        finally:
            await server.stop()

    app = FastAPI(
        title="chromevm",
        version="0.1.0",
        description="Browser-automation sandbox orchestrator",
        lifespan=lifespan,
    )
    app.state.server = server
    register_error_handlers(app)

    @app.get("/health")
    async def health():
        """Orchestrator liveness with VM counts by status."""
        counts = await server.registry.vm_status_counts()
        return {
            "status": "ok",
            "vms": counts,
            "total_vms": sum(counts.values()),
        }

    @app.get("/logs")
    async def logs(
        level: str | None = None,
        name: str | None = None,
        contains: str | None = None,
        limit: int = Query(default=200, ge=1, le=5000),
    ):
        return {
            "logs": server.log_buffer.query(level=level, name=name, contains=contains, limit=limit)
        }

    # ── VMs ──────────────────────────────────────────────────────────────

    @app.post("/vms", status_code=201)
    async def create_vm(body: CreateVMRequest):
        vm = await server.orchestrator.create_vm(body.name, body.instance_type, body.host_id)
        return vm.model_dump(mode="json")

    @app.get("/vms")
    async def list_vms():
        vms = await server.orchestrator.list_vms()
        return {"vms": [vm.model_dump(mode="json") for vm in vms]}

    @app.get("/vms/{vm_id}")
    async def get_vm(vm_id: str):
        vm = await server.orchestrator.get_vm(vm_id)
        return vm.model_dump(mode="json")

    @app.delete("/vms/{vm_id}", status_code=204)
    async def delete_vm(vm_id: str):
        await server.orchestrator.delete_vm(vm_id)
        return Response(status_code=204)

    @app.get("/vms/{vm_id}/status")
    async def vm_status(vm_id: str):
        return await server.orchestrator.check_vm(vm_id)

    @app.get("/vms/{vm_id}/logs")
    async def vm_logs(vm_id: str, tail: int = Query(default=100, ge=1, le=10000)):
        lines = await server.orchestrator.vm_logs(vm_id, tail=tail)
        return {"vm_id": vm_id, "logs": lines}

    # ── Jobs ─────────────────────────────────────────────────────────────

    @app.post("/vms/{vm_id}/run-script")
    async def run_script(vm_id: str, body: RunScriptRequest):
        options = RunOptions(
            screenshot=body.screenshot, selector=body.selector, wait_ms=body.wait_time
        )
        job = await server.dispatcher.dispatch(vm_id, body.script, options)
        return job.model_dump(mode="json")

    @app.get("/vms/{vm_id}/jobs")
    async def list_jobs(
        vm_id: str,
        limit: int = Query(default=50, ge=1, le=500),
        offset: int = Query(default=0, ge=0),
    ):
        await server.orchestrator.get_vm(vm_id)
        jobs = await server.registry.list_jobs(vm_id, limit=limit, offset=offset)
        return {"jobs": [job.model_dump(mode="json") for job in jobs]}

    @app.get("/jobs/{job_id}")
    async def get_job(job_id: str):
        job = await server.registry.get_job(job_id)
        if job is None:
            raise NotFound(f"Job {job_id} not found")
        return job.model_dump(mode="json")

    # ── Hosts ────────────────────────────────────────────────────────────

    @app.get("/hosts")
    async def list_hosts():
        hosts = await server.hosts.list_with_health()
        return {"hosts": [h.model_dump(mode="json") for h in hosts]}

    @app.post("/hosts", status_code=201)
    async def create_host(body: CreateHostRequest):
        host = await server.hosts.register(body)
        return host.model_dump(mode="json")

    return app
