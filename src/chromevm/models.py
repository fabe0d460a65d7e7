"""Core data models for chromevm."""

from __future__ import annotations

import enum
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── Status enums ─────────────────────────────────────────────────────────────


class VMStatus(str, enum.Enum):
    """VM lifecycle states.

    ``initializing → ready → running → ready`` is the normal loop.
    ``error`` is terminal for automation: the VM must be deleted and
    recreated. Deletion removes the row, so there is no ``deleted`` value.
    """

    INITIALIZING = "initializing"
    READY = "ready"
    RUNNING = "running"
    ERROR = "error"


class JobStatus(str, enum.Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


class HostStatus(str, enum.Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    MAINTENANCE = "maintenance"


class HostHealth(str, enum.Enum):
    UNKNOWN = "unknown"
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"


class ContainerState(str, enum.Enum):
    """Best-effort container liveness as seen by the allocator."""

    READY = "ready"
    STOPPED = "stopped"
    NOT_FOUND = "not_found"


# ── Records ──────────────────────────────────────────────────────────────────


class VMRecord(BaseModel):
    """A sandbox tracked in the VM registry."""

    vm_id: str
    name: str
    status: VMStatus = VMStatus.INITIALIZING
    host_id: str | None = Field(
        default=None, description="Registered remote host, or None for the local engine"
    )
    container_ref: str | None = Field(default=None, description="Container name or cloud ref")
    control_port: int | None = None
    stream_port: int | None = None
    agent_url: str | None = None
    stream_url: str | None = None
    public_ip: str | None = None
    browser_version: str | None = None
    runtime_version: str | None = None
    error: str | None = Field(default=None, description="Last provisioning error")
    created_at: datetime = Field(default_factory=utcnow)
    last_activity: datetime | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class JobRecord(BaseModel):
    """One script execution and its recorded outcome."""

    job_id: str
    vm_id: str
    script: str
    status: JobStatus = JobStatus.PENDING
    result: Any = None
    error: str | None = None
    screenshot: str | None = Field(default=None, description="Base64-encoded PNG")
    selected_text: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
    started_at: datetime | None = None
    completed_at: datetime | None = None


class HostRecord(BaseModel):
    """A pre-registered remote machine that already runs a sandbox agent."""

    host_id: str
    name: str
    address: str
    control_port: int = 3000
    stream_port: int = 6080
    max_vms: int = 10
    location: str = "Unknown"
    status: HostStatus = HostStatus.ACTIVE
    health: HostHealth = HostHealth.UNKNOWN
    last_check: datetime | None = None
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def agent_url(self) -> str:
        return f"http://{self.address}:{self.control_port}"

    @property
    def stream_url(self) -> str:
        return f"http://{self.address}:{self.stream_port}/vnc.html"


# ── Allocation / provisioning ────────────────────────────────────────────────


class Allocation(BaseModel):
    """Ports and container identity reserved for one sandbox."""

    vm_id: str
    container_ref: str
    container_id: str | None = None
    control_port: int
    stream_port: int
    control_url: str
    stream_url: str
    host_id: str | None = None


class ProvisionOutcome(BaseModel):
    """Result-or-error value of one provisioning attempt.

    ``stage`` names the step that failed, so a container that was created
    but whose agent never answered is distinguishable from a backend that
    was never reachable.
    """

    vm_id: str
    ok: bool
    allocation: Allocation | None = None
    stage: str | None = None
    error_kind: str | None = None
    error: str | None = None
    agent_info: dict[str, Any] = Field(default_factory=dict)


# ── Dispatch / agent wire models ─────────────────────────────────────────────


class RunOptions(BaseModel):
    screenshot: bool = False
    selector: str | None = None
    wait_ms: int = Field(default=0, ge=0)


class RunRequest(BaseModel):
    """Body of the agent's ``POST /run``."""

    job_id: str
    script: str
    screenshot: bool = False
    selector: str | None = None
    wait_time: int = Field(default=0, ge=0, description="Delay before execution, in ms")


class RunResponse(BaseModel):
    """Body returned by the agent's ``POST /run``."""

    job_id: str
    status: JobStatus
    result: Any = None
    error: str | None = None
    timestamp: datetime = Field(default_factory=utcnow)
    screenshot: str | None = None
    selected_text: str | None = None


class NavigateRequest(BaseModel):
    url: str


# ── Orchestrator API bodies ──────────────────────────────────────────────────


class CreateVMRequest(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    instance_type: str = "t3.medium"
    host_id: str | None = None


class RunScriptRequest(BaseModel):
    script: str
    screenshot: bool = False
    selector: str | None = None
    wait_time: int = Field(default=0, ge=0)


class CreateHostRequest(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    address: str = Field(min_length=1)
    control_port: int = Field(default=3000, ge=1, le=65535)
    stream_port: int = Field(default=6080, ge=1, le=65535)
    max_vms: int = Field(default=10, ge=1, le=100)
    location: str = Field(default="Unknown", max_length=100)
    status: HostStatus = HostStatus.ACTIVE
