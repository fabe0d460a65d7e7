"""Registered remote hosts: registration, health probes, placement checks.

Health is advisory. A probe failure marks the host ``unhealthy`` and keeps
it out of placement, but never fails a listing or an unrelated operation.
"""

from __future__ import annotations

import asyncio
import logging
import uuid

from chromevm.agent_client import AgentClient
from chromevm.config import HostsConfig
from chromevm.errors import ChromeVMError, NotFound, PlacementFailed
from chromevm.models import CreateHostRequest, HostHealth, HostRecord, HostStatus
from chromevm.registry import VMRegistry

logger = logging.getLogger(__name__)


class HostManager:
    def __init__(self, registry: VMRegistry, agents: AgentClient, config: HostsConfig | None = None):
        self.registry = registry
        self.agents = agents
        self.config = config or HostsConfig()

    async def register(self, request: CreateHostRequest) -> HostRecord:
        record = HostRecord(
            host_id=str(uuid.uuid4()),
            name=request.name,
            address=request.address,
            control_port=request.control_port,
            stream_port=request.stream_port,
            max_vms=request.max_vms,
            location=request.location,
            status=request.status,
        )
        return await self.registry.create_host(record)

    async def probe(self, host: HostRecord) -> HostRecord:
        """Check a host's agent and persist the result. Never raises."""
        try:
            await self.agents.health(host.agent_url, timeout=self.config.probe_timeout)
            health = HostHealth.HEALTHY
        except ChromeVMError as e:
            logger.info("Host %s (%s) unhealthy: %s", host.host_id, host.address, e)
            health = HostHealth.UNHEALTHY
        except Exception:
            logger.exception("Unexpected error probing host %s", host.host_id)
            health = HostHealth.UNHEALTHY

        try:
            host.last_check = await self.registry.update_host_health(host.host_id, health)
        except Exception:
            logger.exception("Failed to record health for host %s", host.host_id)
        host.health = health
        return host

    async def list_with_health(self) -> list[HostRecord]:
        """All hosts, each freshly probed concurrently."""
        hosts = await self.registry.list_hosts()
        if not hosts:
            return []
        return list(await asyncio.gather(*(self.probe(h) for h in hosts)))

    async def get(self, host_id: str) -> HostRecord:
        host = await self.registry.get_host(host_id)
        if host is None:
            raise NotFound(f"Host {host_id} not found")
        return host

    async def check_placement(self, host_id: str, vm_id: str | None = None) -> HostRecord:
        """Confirm a host can take one more VM (``vm_id`` itself is not counted).

        Raises:
            NotFound: Unknown host.
            PlacementFailed: Host inactive, unhealthy, or full.
        """
        host = await self.get(host_id)
        if host.status != HostStatus.ACTIVE:
            raise PlacementFailed(f"Host {host.name} is {host.status.value}")

        host = await self.probe(host)
        if host.health != HostHealth.HEALTHY:
            raise PlacementFailed(f"Host {host.name} failed its health check")

        placed = await self.registry.count_vms_on_host(host_id, exclude_vm_id=vm_id)
        if placed >= host.max_vms:
            raise PlacementFailed(f"Host {host.name} is full ({placed}/{host.max_vms} VMs)")
        return host
