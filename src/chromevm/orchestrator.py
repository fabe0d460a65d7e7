"""Orchestrator: VM creation, provisioning, deletion and health checks.

Creation inserts an ``initializing`` record and returns immediately.
Provisioning runs as an ``asyncio.Task`` per VM whose result is a
``ProvisionOutcome``; the VM's move to ``ready`` or ``error`` is derived
from that outcome with a conditional update, so it happens at most once
and never resurrects a deleted VM.

The orchestrator owns every transition out of ``initializing``. The
dispatcher owns ``ready <-> running``.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import datetime, timezone
from typing import Any
from urllib.parse import urlsplit

from chromevm.agent_client import AgentClient
from chromevm.allocator import ContainerAllocator, container_name
from chromevm.config import DispatchConfig
from chromevm.errors import (
    BackendUnavailable,
    ChromeVMError,
    ImageBuildFailed,
    InvalidRequest,
    NotFound,
)
from chromevm.hosts import HostManager
from chromevm.models import Allocation, ProvisionOutcome, VMRecord, VMStatus
from chromevm.registry import VMRegistry

logger = logging.getLogger(__name__)

CLOUD_PREFIX = "cloud-vm-"


class Orchestrator:
    """Creates, provisions, inspects and deletes VMs."""

    def __init__(
        self,
        registry: VMRegistry,
        allocator: ContainerAllocator,
        agents: AgentClient,
        hosts: HostManager,
        config: DispatchConfig | None = None,
    ):
        self.registry = registry
        self.allocator = allocator
        self.agents = agents
        self.hosts = hosts
        self.config = config or DispatchConfig()
        self._tasks: dict[str, asyncio.Task[ProvisionOutcome]] = {}

    async def start(self) -> None:
        """Seed the allocator with ports still held by recorded VMs."""
        in_use = await self.registry.local_ports_in_use()
        self.allocator.reserve(in_use)
        logger.info("Orchestrator started (%d host ports reserved)", len(in_use))

    async def stop(self) -> None:
        """Cancel provisioning still in flight."""
        tasks = [t for t in self._tasks.values() if not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()

    # ── Queries ──────────────────────────────────────────────────────────

    async def get_vm(self, vm_id: str) -> VMRecord:
        vm = await self.registry.get_vm(vm_id)
        if vm is None:
            raise NotFound(f"VM {vm_id} not found")
        return vm

    async def list_vms(self) -> list[VMRecord]:
        return await self.registry.list_vms()

    # ── Creation ─────────────────────────────────────────────────────────

    async def create_vm(
        self, name: str, instance_type: str = "t3.medium", host_id: str | None = None
    ) -> VMRecord:
        """Record a new VM as ``initializing`` and start provisioning it.

        Raises:
            InvalidRequest: Empty name.
            NotFound: ``host_id`` names no registered host.
        """
        name = (name or "").strip()
        if not name:
            raise InvalidRequest("VM name is required")
        if host_id is not None:
            await self.hosts.get(host_id)

        vm_id = str(uuid.uuid4())
        record = VMRecord(
            vm_id=vm_id,
            name=name,
            host_id=host_id,
            container_ref=f"{CLOUD_PREFIX}{vm_id}" if host_id else container_name(vm_id),
            metadata={"instance_type": instance_type, "host_id": host_id},
        )
        await self.registry.create_vm(record)

        self._tasks[vm_id] = asyncio.create_task(
            self._provision(record), name=f"provision-{vm_id}"
        )
        return record

    async def wait_provisioned(
        self, vm_id: str, timeout: float | None = None
    ) -> ProvisionOutcome | None:
        """Await a VM's provisioning outcome. None if nothing is tracked for it."""
        task = self._tasks.get(vm_id)
        if task is None:
            return None
        return await asyncio.wait_for(asyncio.shield(task), timeout)

    async def _provision(self, record: VMRecord) -> ProvisionOutcome:
        try:
            if record.host_id:
                outcome = await self._provision_remote(record)
            else:
                outcome = await self._provision_local(record)
        except asyncio.CancelledError:
            logger.info("Provisioning of VM %s cancelled", record.vm_id)
            raise
        except Exception as e:
            logger.exception("Unexpected error provisioning VM %s", record.vm_id)
            outcome = self._failed(record.vm_id, "internal", e)

        await self._apply_outcome(outcome)
        return outcome

    @staticmethod
    def _failed(
        vm_id: str, stage: str, exc: BaseException, allocation: Allocation | None = None
    ) -> ProvisionOutcome:
        kind = exc.kind if isinstance(exc, ChromeVMError) else type(exc).__name__
        return ProvisionOutcome(
            vm_id=vm_id,
            ok=False,
            stage=stage,
            error_kind=kind,
            error=str(exc),
            allocation=allocation,
        )

    async def _provision_local(self, record: VMRecord) -> ProvisionOutcome:
        # The engine call runs in a thread that cannot be interrupted; let it
        # settle before honouring a cancellation so deletion sees the container.
        allocating = asyncio.ensure_future(self.allocator.allocate(record.vm_id, record.name))
        try:
            allocation = await asyncio.shield(allocating)
        except asyncio.CancelledError:
            await asyncio.gather(allocating, return_exceptions=True)
            raise
        except BackendUnavailable as e:
            return self._failed(record.vm_id, "backend", e)
        except ImageBuildFailed as e:
            return self._failed(record.vm_id, "image", e)
        except Exception as e:
            logger.exception("Container creation failed for VM %s", record.vm_id)
            return self._failed(record.vm_id, "container", e)

        return await self._await_agent(record.vm_id, allocation)

    async def _provision_remote(self, record: VMRecord) -> ProvisionOutcome:
        try:
            host = await self.hosts.check_placement(record.host_id, vm_id=record.vm_id)
        except ChromeVMError as e:
            return self._failed(record.vm_id, "placement", e)

        allocation = Allocation(
            vm_id=record.vm_id,
            container_ref=f"{CLOUD_PREFIX}{record.vm_id}",
            control_port=host.control_port,
            stream_port=host.stream_port,
            control_url=host.agent_url,
            stream_url=host.stream_url,
            host_id=host.host_id,
        )
        return await self._await_agent(record.vm_id, allocation)

    async def _await_agent(self, vm_id: str, allocation: Allocation) -> ProvisionOutcome:
        """Poll the agent's /health until it answers or ``boot_timeout`` passes."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.config.boot_timeout
        last_error: ChromeVMError | None = None
        while True:
            try:
                await self.agents.health(allocation.control_url)
                break
            except ChromeVMError as e:
                last_error = e
            if loop.time() >= deadline:
                message = (
                    f"Agent at {allocation.control_url} did not become healthy "
                    f"within {self.config.boot_timeout:g}s"
                )
                if last_error is not None:
                    message += f" (last error: {last_error.message})"
                return ProvisionOutcome(
                    vm_id=vm_id,
                    ok=False,
                    stage="agent",
                    error_kind=last_error.kind if last_error else "AgentTimeout",
                    error=message,
                    allocation=allocation,
                )
            await asyncio.sleep(self.config.boot_poll_interval)

        info: dict[str, Any] = {}
        try:
            info = await self.agents.info(allocation.control_url)
        except ChromeVMError as e:
            logger.warning("Could not read agent info for VM %s: %s", vm_id, e)
        return ProvisionOutcome(vm_id=vm_id, ok=True, allocation=allocation, agent_info=info)

    async def _apply_outcome(self, outcome: ProvisionOutcome) -> None:
        fields: dict[str, Any] = {}
        allocation = outcome.allocation
        if allocation is not None:
            fields.update(
                container_ref=allocation.container_ref,
                control_port=allocation.control_port,
                stream_port=allocation.stream_port,
                agent_url=allocation.control_url,
                stream_url=allocation.stream_url,
                public_ip=urlsplit(allocation.control_url).hostname,
            )

        if outcome.ok:
            fields.update(
                browser_version=outcome.agent_info.get("browser_version"),
                runtime_version=outcome.agent_info.get("python_version"),
            )
            applied = await self.registry.finish_provisioning(
                outcome.vm_id, VMStatus.READY, **fields
            )
        else:
            logger.warning(
                "VM %s failed at stage %s: %s: %s",
                outcome.vm_id,
                outcome.stage,
                outcome.error_kind,
                outcome.error,
            )
            applied = await self.registry.finish_provisioning(
                outcome.vm_id,
                VMStatus.ERROR,
                error=f"{outcome.error_kind}: {outcome.error}",
                **fields,
            )

        if not applied and allocation is not None and allocation.host_id is None:
            # The VM row is gone; its container must not outlive it.
            try:
                await self.allocator.deallocate(
                    outcome.vm_id, ports=(allocation.control_port, allocation.stream_port)
                )
            except ChromeVMError as e:
                logger.warning("Could not remove container of deleted VM %s: %s", outcome.vm_id, e)

    # ── Deletion ─────────────────────────────────────────────────────────

    async def delete_vm(self, vm_id: str) -> None:
        """Cancel provisioning, release the container or placement, drop the row.

        Raises:
            NotFound: Unknown VM.
            BackendUnavailable: The engine could not remove a container that
                was allocated. The VM record is kept so deletion can be retried.
        """
        vm = await self.get_vm(vm_id)

        task = self._tasks.pop(vm_id, None)
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

        if vm.host_id is None:
            ports = [p for p in (vm.control_port, vm.stream_port) if p is not None]
            try:
                await self.allocator.deallocate(vm_id, ports=ports)
            except BackendUnavailable:
                if ports:
                    raise
                logger.warning("Engine unavailable; VM %s had no container to remove", vm_id)

        await self.registry.delete_vm(vm_id)
        logger.info("VM %s deleted", vm_id)

    # ── Inspection ───────────────────────────────────────────────────────

    async def check_vm(self, vm_id: str) -> dict[str, Any]:
        """Advisory health report. Reads only; never changes the VM's state."""
        vm = await self.get_vm(vm_id)
        report: dict[str, Any] = {
            "vm_id": vm.vm_id,
            "status": vm.status.value,
            "placement": vm.host_id or "local",
            "checked_at": datetime.now(timezone.utc).isoformat(),
        }
        if vm.host_id is None:
            report["container"] = (await self.allocator.describe(vm_id)).value
        else:
            report["container"] = "remote"

        if vm.agent_url:
            try:
                health = await self.agents.health(vm.agent_url)
                report["agent"] = "healthy"
                report["browser"] = health.get("browser")
            except ChromeVMError as e:
                report["agent"] = "unreachable"
                report["agent_error"] = f"{e.kind}: {e.message}"
        else:
            report["agent"] = "unassigned"
        return report

    async def vm_logs(self, vm_id: str, tail: int = 100) -> list[str]:
        """Recent container log lines. Remote VMs have none to show."""
        vm = await self.get_vm(vm_id)
        if vm.host_id is not None:
            return []
        return await self.allocator.logs(vm_id, tail=tail)
