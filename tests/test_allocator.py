"""Tests for the container allocator (Docker client mocked)."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest
from docker.errors import APIError, BuildError, ImageNotFound, NotFound

from chromevm.allocator import ContainerAllocator, container_name, volume_name
from chromevm.config import AllocatorConfig
from chromevm.errors import BackendUnavailable, ImageBuildFailed
from chromevm.models import ContainerState


def _make_client() -> MagicMock:
    client = MagicMock()
    container = MagicMock()
    container.id = "abc123"
    client.containers.create.return_value = container
    return client


def _make_allocator(client=None, **overrides) -> ContainerAllocator:
    config = AllocatorConfig(public_host="vm.example.com", **overrides)
    return ContainerAllocator(config, client=client or _make_client())


class TestPorts:
    def test_skips_reserved_ports(self):
        alloc = _make_allocator(control_port_start=3000, stream_port_start=6080)
        assert alloc._allocate_ports("a") == (3003, 6082)

    def test_skips_ports_held_by_existing_vms(self):
        alloc = _make_allocator()
        alloc.reserve({3003, 3004, 6082})
        assert alloc._allocate_ports("a") == (3005, 6083)

    def test_pairs_are_distinct(self):
        alloc = _make_allocator()
        first = alloc._allocate_ports("a")
        second = alloc._allocate_ports("b")
        assert first == (3003, 6082)
        assert second == (3004, 6083)

    def test_released_ports_not_reissued(self):
        alloc = _make_allocator()
        alloc._allocate_ports("a")
        alloc.release_ports("a")
        assert alloc._allocate_ports("b") == (3004, 6083)


class TestAllocate:
    async def test_allocate_creates_and_starts_container(self):
        client = _make_client()
        alloc = _make_allocator(client)

        allocation = await alloc.allocate("vm-1", "box")

        assert allocation.container_ref == "chrome-vm-vm-1"
        assert allocation.container_id == "abc123"
        assert allocation.control_url == "http://vm.example.com:3003"
        assert allocation.stream_url == "http://vm.example.com:6082/vnc.html"
        assert allocation.host_id is None

        kwargs = client.containers.create.call_args.kwargs
        assert kwargs["name"] == container_name("vm-1")
        assert kwargs["image"] == "chromevm-sandbox:latest"
        assert kwargs["environment"]["VM_ID"] == "vm-1"
        assert kwargs["labels"]["chromevm"] == "true"
        assert kwargs["labels"]["chromevm.vm-id"] == "vm-1"
        assert kwargs["ports"] == {"3000/tcp": 3003, "6080/tcp": 6082}
        assert volume_name("vm-1") in kwargs["volumes"]
        assert kwargs["restart_policy"] == {"Name": "on-failure"}
        client.containers.create.return_value.start.assert_called_once()

    async def test_engine_down(self):
        client = _make_client()
        client.ping.side_effect = APIError("engine down")
        alloc = _make_allocator(client)

        with pytest.raises(BackendUnavailable):
            await alloc.allocate("vm-1", "box")
        client.containers.create.assert_not_called()
        # Ports go back to the pool, but the counter has moved on
        assert alloc._in_use == set()

    async def test_missing_image_is_built(self):
        client = _make_client()
        client.images.get.side_effect = ImageNotFound("no such image")
        alloc = _make_allocator(client, build_context="/ctx")

        await alloc.allocate("vm-1", "box")

        build = client.images.build.call_args.kwargs
        assert build["path"] == "/ctx"
        assert build["tag"] == "chromevm-sandbox:latest"
        client.containers.create.assert_called_once()

    async def test_image_build_failure(self):
        client = _make_client()
        client.images.get.side_effect = ImageNotFound("no such image")
        client.images.build.side_effect = BuildError("step 3 failed", build_log=[])
        alloc = _make_allocator(client)

        with pytest.raises(ImageBuildFailed):
            await alloc.allocate("vm-1", "box")
        client.containers.create.assert_not_called()

    async def test_container_create_refused(self):
        client = _make_client()
        client.containers.create.side_effect = APIError("port is already allocated")
        alloc = _make_allocator(client)

        with pytest.raises(BackendUnavailable):
            await alloc.allocate("vm-1", "box")
        assert "vm-1" not in alloc._ports_by_vm


class TestDeallocate:
    async def test_stops_and_removes(self):
        client = _make_client()
        container = MagicMock()
        client.containers.get.return_value = container
        alloc = _make_allocator(client)
        await alloc.allocate("vm-1", "box")

        await alloc.deallocate("vm-1")

        client.containers.get.assert_called_with("chrome-vm-vm-1")
        container.stop.assert_called_once()
        container.remove.assert_called_once_with(force=True)
        assert alloc._in_use == set()

    async def test_missing_container_is_fine(self):
        client = _make_client()
        client.containers.get.side_effect = NotFound("gone")
        alloc = _make_allocator(client)
        alloc.reserve({3003, 6082})

        await alloc.deallocate("vm-1", ports=(3003, 6082))
        assert alloc._in_use == set()

    async def test_engine_down(self):
        client = _make_client()
        client.containers.get.side_effect = APIError("engine down")
        alloc = _make_allocator(client)
        alloc.reserve({3003, 6082})

        with pytest.raises(BackendUnavailable):
            await alloc.deallocate("vm-1", ports=(3003, 6082))
        assert alloc._in_use == {3003, 6082}


class TestInspection:
    async def test_describe(self):
        client = _make_client()
        alloc = _make_allocator(client)

        client.containers.get.return_value = MagicMock(status="running")
        assert await alloc.describe("vm-1") == ContainerState.READY

        client.containers.get.return_value = MagicMock(status="exited")
        assert await alloc.describe("vm-1") == ContainerState.STOPPED

        client.containers.get.side_effect = NotFound("gone")
        assert await alloc.describe("vm-1") == ContainerState.NOT_FOUND

    async def test_describe_never_raises(self):
        client = _make_client()
        client.containers.get.side_effect = APIError("engine down")
        alloc = _make_allocator(client)
        assert await alloc.describe("vm-1") == ContainerState.NOT_FOUND

    async def test_logs(self):
        client = _make_client()
        container = MagicMock()
        container.logs.return_value = b"line one\nline two\n"
        client.containers.get.return_value = container
        alloc = _make_allocator(client)

        assert await alloc.logs("vm-1", tail=2) == ["line one", "line two"]
        container.logs.assert_called_once_with(tail=2, timestamps=True)

    async def test_logs_missing_container(self):
        client = _make_client()
        client.containers.get.side_effect = NotFound("gone")
        alloc = _make_allocator(client)
        assert await alloc.logs("vm-1") == []

    async def test_list_containers(self):
        client = _make_client()
        c = MagicMock(id="abc", status="running", labels={"chromevm.vm-id": "vm-1"})
        c.name = "chrome-vm-vm-1"
        client.containers.list.return_value = [c]
        alloc = _make_allocator(client)

        listed = await alloc.list_containers()
        assert listed[0]["name"] == "chrome-vm-vm-1"
        assert listed[0]["vm_id"] == "vm-1"
        assert client.containers.list.call_args.kwargs["filters"] == {"label": "chromevm=true"}
