"""Port/Container Allocator for the local container engine.

Reserves a unique (control, stream) host port pair per sandbox and creates
and starts the sandbox container through the Docker SDK. The container
name is derived from the VM id (``chrome-vm-{vm_id}``), so no side index
is needed to find it again.

Docker SDK calls are blocking; they are pushed to a worker thread with
``asyncio.to_thread``.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from typing import Any

import docker
from docker.errors import APIError, BuildError, DockerException, ImageNotFound, NotFound

from chromevm.config import AllocatorConfig
from chromevm.errors import BackendUnavailable, ImageBuildFailed
from chromevm.models import Allocation, ContainerState

logger = logging.getLogger(__name__)

CONTAINER_PREFIX = "chrome-vm-"
LABEL = "chromevm"


def container_name(vm_id: str) -> str:
    return f"{CONTAINER_PREFIX}{vm_id}"


def volume_name(vm_id: str) -> str:
    return f"chrome-data-{vm_id}"


class ContainerAllocator:
    """Allocates ports and containers for sandboxes on the local engine."""

    def __init__(self, config: AllocatorConfig, client: Any | None = None):
        self.config = config
        self._client = client
        self._lock = asyncio.Lock()
        self._next_control_port = config.control_port_start
        self._next_stream_port = config.stream_port_start
        self._reserved: set[int] = set(config.reserved_ports)
        self._in_use: set[int] = set()
        self._ports_by_vm: dict[str, tuple[int, int]] = {}

    @property
    def client(self):
        """Docker client, created from the environment on first use."""
        if self._client is None:
            try:
                self._client = docker.from_env()
            except DockerException as e:
                raise BackendUnavailable(f"Container engine unavailable: {e}") from e
            logger.info("Docker client initialized")
        return self._client

    # ── Ports ────────────────────────────────────────────────────────────

    def reserve(self, ports: Iterable[int]) -> None:
        """Mark ports held by existing VMs so the counters skip them."""
        for port in ports:
            self._in_use.add(port)

    def _take_port(self, start: int) -> int:
        port = start
        while port in self._reserved or port in self._in_use:
            port += 1
        if port > 65535:
            raise BackendUnavailable("No free host ports left")
        self._in_use.add(port)
        return port

    def _allocate_ports(self, vm_id: str) -> tuple[int, int]:
        control = self._take_port(self._next_control_port)
        self._next_control_port = control + 1
        stream = self._take_port(self._next_stream_port)
        self._next_stream_port = stream + 1
        self._ports_by_vm[vm_id] = (control, stream)
        return control, stream

    def release_ports(self, vm_id: str, ports: Iterable[int] = ()) -> None:
        """Forget a VM's ports. Counters never move back, so they are not handed out again."""
        held = self._ports_by_vm.pop(vm_id, ())
        for port in (*held, *ports):
            self._in_use.discard(port)

    # ── Engine ───────────────────────────────────────────────────────────

    def _ping(self) -> None:
        try:
            self.client.ping()
        except (DockerException, OSError) as e:
            raise BackendUnavailable(f"Container engine unreachable: {e}") from e

    def _ensure_image(self) -> None:
        image = self.config.image
        try:
            self.client.images.get(image)
            return
        except ImageNotFound:
            logger.info("Image %s not found, building from %s", image, self.config.build_context)
        except APIError as e:
            raise BackendUnavailable(f"Could not inspect image {image}: {e}") from e

        try:
            self.client.images.build(
                path=self.config.build_context,
                dockerfile=self.config.dockerfile,
                tag=image,
                rm=True,
            )
        except (BuildError, APIError, TypeError) as e:
            raise ImageBuildFailed(f"Failed to build image {image}: {e}") from e
        logger.info("Built image %s", image)

    def _create_container(self, vm_id: str, vm_name: str, control: int, stream: int):
        cfg = self.config
        name = container_name(vm_id)
        container = self.client.containers.create(
            image=cfg.image,
            name=name,
            environment={"VM_ID": vm_id, "DISPLAY": ":1"},
            labels={
                LABEL: "true",
                f"{LABEL}.vm-id": vm_id,
                f"{LABEL}.vm-name": vm_name,
            },
            ports={
                f"{cfg.container_control_port}/tcp": control,
                f"{cfg.container_stream_port}/tcp": stream,
            },
            volumes={volume_name(vm_id): {"bind": cfg.profile_dir, "mode": "rw"}},
            restart_policy={"Name": cfg.restart_policy},
            shm_size=cfg.shm_size,
            detach=True,
        )
        container.start()
        return container

    def _allocate(self, vm_id: str, vm_name: str, control: int, stream: int) -> Allocation:
        self._ping()
        self._ensure_image()
        try:
            container = self._create_container(vm_id, vm_name, control, stream)
        except APIError as e:
            raise BackendUnavailable(f"Failed to start container for VM {vm_id}: {e}") from e

        host = self.config.public_host
        return Allocation(
            vm_id=vm_id,
            container_ref=container_name(vm_id),
            container_id=container.id,
            control_port=control,
            stream_port=stream,
            control_url=f"http://{host}:{control}",
            stream_url=f"http://{host}:{stream}/vnc.html",
        )

    async def allocate(self, vm_id: str, vm_name: str) -> Allocation:
        """Reserve ports and start the sandbox container.

        Raises:
            BackendUnavailable: The engine is unreachable or refused the container.
            ImageBuildFailed: The image was missing and could not be built.
        """
        async with self._lock:
            control, stream = self._allocate_ports(vm_id)
        logger.info(
            "Allocating VM %s: control_port=%d stream_port=%d", vm_id, control, stream
        )
        try:
            allocation = await asyncio.to_thread(self._allocate, vm_id, vm_name, control, stream)
        except BaseException:
            self.release_ports(vm_id)
            raise
        logger.info("Container %s started for VM %s", allocation.container_ref, vm_id)
        return allocation

    def _deallocate(self, vm_id: str) -> None:
        try:
            container = self.client.containers.get(container_name(vm_id))
        except NotFound:
            logger.info("Container for VM %s already gone", vm_id)
            return
        try:
            container.stop(timeout=10)
        except APIError as e:
            logger.warning("Stopping container for VM %s failed: %s", vm_id, e)
        try:
            container.remove(force=True)
        except NotFound:
            pass

    async def deallocate(self, vm_id: str, ports: Iterable[int] = ()) -> None:
        """Stop and remove the VM's container. A missing container is not an error."""
        try:
            await asyncio.to_thread(self._deallocate, vm_id)
        except (DockerException, OSError) as e:
            raise BackendUnavailable(f"Could not remove container for VM {vm_id}: {e}") from e
        self.release_ports(vm_id, ports)
        logger.info("Deallocated VM %s", vm_id)

    def _describe(self, vm_id: str) -> ContainerState:
        try:
            container = self.client.containers.get(container_name(vm_id))
        except NotFound:
            return ContainerState.NOT_FOUND
        return ContainerState.READY if container.status == "running" else ContainerState.STOPPED

    async def describe(self, vm_id: str) -> ContainerState:
        """Best-effort container state. Never raises."""
        try:
            return await asyncio.to_thread(self._describe, vm_id)
        except Exception as e:
            logger.warning("Could not describe container for VM %s: %s", vm_id, e)
            return ContainerState.NOT_FOUND

    def _logs(self, vm_id: str, tail: int) -> list[str]:
        container = self.client.containers.get(container_name(vm_id))
        raw = container.logs(tail=tail, timestamps=True)
        return raw.decode("utf-8", errors="replace").splitlines()

    async def logs(self, vm_id: str, tail: int = 100) -> list[str]:
        """Recent container log lines; empty when the container is gone."""
        try:
            return await asyncio.to_thread(self._logs, vm_id, tail)
        except NotFound:
            return []

    def _list_containers(self) -> list[dict[str, Any]]:
        containers = self.client.containers.list(all=True, filters={"label": f"{LABEL}=true"})
        return [
            {
                "name": c.name,
                "id": c.id,
                "status": c.status,
                "vm_id": c.labels.get(f"{LABEL}.vm-id"),
                "vm_name": c.labels.get(f"{LABEL}.vm-name"),
            }
            for c in containers
        ]

    async def list_containers(self) -> list[dict[str, Any]]:
        """Containers carrying the chromevm label, running or not."""
        return await asyncio.to_thread(self._list_containers)
