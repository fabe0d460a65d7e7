"""VM Registry: SQLite-backed VM, job and host state.

One connection is shared by the orchestrator and the dispatcher. Every
write goes through ``_transaction()``, which holds an asyncio lock for the
duration of a ``BEGIN IMMEDIATE`` transaction so multi-step transitions
(dispatch begin/finish) never interleave with other writers.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any

import aiosqlite

from chromevm.errors import Conflict, NotFound
from chromevm.models import (
    HostHealth,
    HostRecord,
    HostStatus,
    JobRecord,
    JobStatus,
    VMRecord,
    VMStatus,
)

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS hosts (
    host_id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    address TEXT NOT NULL,
    control_port INTEGER NOT NULL DEFAULT 3000,
    stream_port INTEGER NOT NULL DEFAULT 6080,
    max_vms INTEGER NOT NULL DEFAULT 10,
    location TEXT NOT NULL DEFAULT 'Unknown',
    status TEXT NOT NULL DEFAULT 'active',
    health TEXT NOT NULL DEFAULT 'unknown',
    last_check TEXT,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS vms (
    vm_id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'initializing',
    host_id TEXT REFERENCES hosts(host_id) ON DELETE SET NULL,
    container_ref TEXT UNIQUE,
    control_port INTEGER,
    stream_port INTEGER,
    agent_url TEXT,
    stream_url TEXT,
    public_ip TEXT,
    browser_version TEXT,
    runtime_version TEXT,
    error TEXT,
    created_at TEXT NOT NULL,
    last_activity TEXT,
    metadata TEXT NOT NULL DEFAULT '{}'
);

-- Local container port bindings; remote VMs reuse their host's ports
CREATE UNIQUE INDEX IF NOT EXISTS idx_vms_local_control_port
    ON vms(control_port) WHERE host_id IS NULL AND control_port IS NOT NULL;
CREATE UNIQUE INDEX IF NOT EXISTS idx_vms_local_stream_port
    ON vms(stream_port) WHERE host_id IS NULL AND stream_port IS NOT NULL;

CREATE TABLE IF NOT EXISTS jobs (
    job_id TEXT PRIMARY KEY,
    vm_id TEXT NOT NULL REFERENCES vms(vm_id) ON DELETE CASCADE,
    script TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending',
    result TEXT,
    error TEXT,
    screenshot TEXT,
    selected_text TEXT,
    created_at TEXT NOT NULL,
    started_at TEXT,
    completed_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_vms_status ON vms(status);
CREATE INDEX IF NOT EXISTS idx_vms_host ON vms(host_id);
CREATE INDEX IF NOT EXISTS idx_jobs_vm ON jobs(vm_id, created_at);
"""

_TERMINAL_JOB_STATUSES = (JobStatus.COMPLETED.value, JobStatus.FAILED.value)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


class VMRegistry:
    """SQLite-backed store for VMs, their jobs, and registered hosts."""

    def __init__(self, db_path: str):
        self.db_path = db_path
        self._db: aiosqlite.Connection | None = None
        self._lock = asyncio.Lock()

    async def initialize(self) -> None:
        """Open database and create tables."""
        self._db = await aiosqlite.connect(self.db_path)
        self._db.row_factory = aiosqlite.Row
        await self._db.execute("PRAGMA journal_mode=WAL")
        await self._db.execute("PRAGMA foreign_keys=ON")
        await self._db.executescript(SCHEMA)
        await self._db.commit()
        logger.info("VM registry initialized: %s", self.db_path)

    async def close(self) -> None:
        if self._db:
            await self._db.close()
            self._db = None

    @property
    def db(self) -> aiosqlite.Connection:
        if self._db is None:
            raise RuntimeError("Registry not initialized, call initialize() first")
        return self._db

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        async with self._lock:
            db = self.db
            await db.execute("BEGIN IMMEDIATE")
            try:
                yield db
            except BaseException:
                await db.rollback()
                raise
            else:
                await db.commit()

    # ── VMs ──────────────────────────────────────────────────────────────

    async def create_vm(self, record: VMRecord) -> VMRecord:
        """Insert a new VM record."""
        async with self._transaction() as db:
            await db.execute(
                """INSERT INTO vms
                   (vm_id, name, status, host_id, container_ref, control_port,
                    stream_port, agent_url, stream_url, public_ip,
                    browser_version, runtime_version, error,
                    created_at, last_activity, metadata)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    record.vm_id,
                    record.name,
                    record.status.value,
                    record.host_id,
                    record.container_ref,
                    record.control_port,
                    record.stream_port,
                    record.agent_url,
                    record.stream_url,
                    record.public_ip,
                    record.browser_version,
                    record.runtime_version,
                    record.error,
                    record.created_at.isoformat(),
                    _iso(record.last_activity),
                    json.dumps(record.metadata),
                ),
            )
        logger.info("Created VM: %s (name=%s, host=%s)", record.vm_id, record.name, record.host_id)
        return record

    async def get_vm(self, vm_id: str) -> VMRecord | None:
        cursor = await self.db.execute("SELECT * FROM vms WHERE vm_id = ?", (vm_id,))
        row = await cursor.fetchone()
        return self._row_to_vm(row) if row else None

    async def list_vms(self, status: VMStatus | None = None) -> list[VMRecord]:
        """List VMs, newest first."""
        if status is None:
            cursor = await self.db.execute("SELECT * FROM vms ORDER BY created_at DESC")
        else:
            cursor = await self.db.execute(
                "SELECT * FROM vms WHERE status = ? ORDER BY created_at DESC", (status.value,)
            )
        rows = await cursor.fetchall()
        return [self._row_to_vm(row) for row in rows]

    async def delete_vm(self, vm_id: str) -> bool:
        """Delete a VM row; its jobs go with it. Returns False if absent."""
        async with self._transaction() as db:
            cursor = await db.execute("DELETE FROM vms WHERE vm_id = ?", (vm_id,))
            deleted = cursor.rowcount > 0
        if deleted:
            logger.info("Deleted VM record: %s", vm_id)
        return deleted

    async def finish_provisioning(self, vm_id: str, status: VMStatus, **fields: Any) -> bool:
        """Move a VM out of ``initializing`` exactly once.

        The update is conditional on the current status, so a VM that was
        deleted (or already transitioned) is left untouched and False is
        returned.
        """
        if status not in (VMStatus.READY, VMStatus.ERROR):
            raise ValueError(f"Provisioning cannot end in {status.value!r}")

        allowed = {
            "container_ref",
            "control_port",
            "stream_port",
            "agent_url",
            "stream_url",
            "public_ip",
            "browser_version",
            "runtime_version",
            "error",
        }
        unknown = set(fields) - allowed
        if unknown:
            raise ValueError(f"Unknown VM fields: {sorted(unknown)}")

        assignments = ["status = ?", "last_activity = ?"]
        params: list[Any] = [status.value, _now().isoformat()]
        for column, value in fields.items():
            assignments.append(f"{column} = ?")
            params.append(value)
        params.extend([vm_id, VMStatus.INITIALIZING.value])

        async with self._transaction() as db:
            cursor = await db.execute(
                f"UPDATE vms SET {', '.join(assignments)} WHERE vm_id = ? AND status = ?",
                params,
            )
            changed = cursor.rowcount > 0
        if changed:
            logger.info("VM %s provisioning finished: %s", vm_id, status.value)
        else:
            logger.info("VM %s no longer initializing, provisioning result dropped", vm_id)
        return changed

    async def local_ports_in_use(self) -> set[int]:
        """Host ports bound by local containers of live VM rows."""
        cursor = await self.db.execute(
            "SELECT control_port, stream_port FROM vms WHERE host_id IS NULL"
        )
        ports: set[int] = set()
        for row in await cursor.fetchall():
            for port in (row["control_port"], row["stream_port"]):
                if port is not None:
                    ports.add(port)
        return ports

    async def count_vms_on_host(self, host_id: str, exclude_vm_id: str | None = None) -> int:
        """Non-error VMs placed on a host."""
        cursor = await self.db.execute(
            "SELECT COUNT(*) FROM vms WHERE host_id = ? AND status != ? AND vm_id != ?",
            (host_id, VMStatus.ERROR.value, exclude_vm_id or ""),
        )
        row = await cursor.fetchone()
        return row[0]

    async def vm_status_counts(self) -> dict[str, int]:
        counts = {status.value: 0 for status in VMStatus}
        cursor = await self.db.execute("SELECT status, COUNT(*) AS n FROM vms GROUP BY status")
        for row in await cursor.fetchall():
            counts[row["status"]] = row["n"]
        return counts

    # ── Jobs ─────────────────────────────────────────────────────────────

    async def begin_job(self, job: JobRecord) -> JobRecord:
        """Insert a pending job and flip its VM ``ready → running`` atomically.

        Raises:
            NotFound: The VM does not exist.
            Conflict: The VM is not ``ready``. No job row is written.
        """
        now = _now()
        job.status = JobStatus.PENDING
        job.created_at = now
        async with self._transaction() as db:
            cursor = await db.execute("SELECT status FROM vms WHERE vm_id = ?", (job.vm_id,))
            row = await cursor.fetchone()
            if row is None:
                raise NotFound(f"VM {job.vm_id} not found")
            if row["status"] != VMStatus.READY.value:
                raise Conflict(f"VM {job.vm_id} is {row['status']}, not ready")

            await db.execute(
                """INSERT INTO jobs (job_id, vm_id, script, status, created_at)
                   VALUES (?, ?, ?, ?, ?)""",
                (job.job_id, job.vm_id, job.script, job.status.value, now.isoformat()),
            )
            await db.execute(
                "UPDATE vms SET status = ?, last_activity = ? WHERE vm_id = ?",
                (VMStatus.RUNNING.value, now.isoformat(), job.vm_id),
            )
        logger.info("Job %s started on VM %s", job.job_id, job.vm_id)
        return job

    async def mark_job_running(self, job_id: str) -> datetime | None:
        """Stamp ``started_at`` on a pending job. Returns the timestamp if applied."""
        now = _now()
        async with self._transaction() as db:
            cursor = await db.execute(
                "UPDATE jobs SET status = ?, started_at = ? WHERE job_id = ? AND status = ?",
                (JobStatus.RUNNING.value, now.isoformat(), job_id, JobStatus.PENDING.value),
            )
            applied = cursor.rowcount > 0
        return now if applied else None

    async def finish_job(
        self,
        job_id: str,
        status: JobStatus,
        *,
        result: Any = None,
        error: str | None = None,
        screenshot: str | None = None,
        selected_text: str | None = None,
    ) -> JobRecord | None:
        """Finalize a job and release its VM from ``running`` in one transaction.

        Only non-terminal jobs are updated, and the VM only changes if it is
        still ``running``. Returns the stored job, or None if the job row no
        longer exists (VM deleted mid-run).
        """
        if not status.is_terminal:
            raise ValueError(f"finish_job needs a terminal status, got {status.value!r}")

        now = _now().isoformat()
        async with self._transaction() as db:
            cursor = await db.execute("SELECT vm_id FROM jobs WHERE job_id = ?", (job_id,))
            row = await cursor.fetchone()
            if row is None:
                logger.info("Job %s vanished before finishing (VM deleted?)", job_id)
                return None
            vm_id = row["vm_id"]

            await db.execute(
                """UPDATE jobs SET status = ?, result = ?, error = ?, screenshot = ?,
                   selected_text = ?, completed_at = ?
                   WHERE job_id = ? AND status NOT IN (?, ?)""",
                (
                    status.value,
                    json.dumps(result) if result is not None else None,
                    error,
                    screenshot,
                    selected_text,
                    now,
                    job_id,
                    *_TERMINAL_JOB_STATUSES,
                ),
            )
            await db.execute(
                "UPDATE vms SET status = ?, last_activity = ? WHERE vm_id = ? AND status = ?",
                (VMStatus.READY.value, now, vm_id, VMStatus.RUNNING.value),
            )
            cursor = await db.execute("SELECT * FROM jobs WHERE job_id = ?", (job_id,))
            row = await cursor.fetchone()
        job = self._row_to_job(row)
        logger.info("Job %s finished: %s (VM %s released)", job_id, job.status.value, vm_id)
        return job

    async def get_job(self, job_id: str) -> JobRecord | None:
        cursor = await self.db.execute("SELECT * FROM jobs WHERE job_id = ?", (job_id,))
        row = await cursor.fetchone()
        return self._row_to_job(row) if row else None

    async def list_jobs(self, vm_id: str, limit: int = 50, offset: int = 0) -> list[JobRecord]:
        """Jobs for a VM, newest first."""
        cursor = await self.db.execute(
            "SELECT * FROM jobs WHERE vm_id = ? ORDER BY created_at DESC LIMIT ? OFFSET ?",
            (vm_id, limit, offset),
        )
        rows = await cursor.fetchall()
        return [self._row_to_job(row) for row in rows]

    # ── Hosts ────────────────────────────────────────────────────────────

    async def create_host(self, record: HostRecord) -> HostRecord:
        async with self._transaction() as db:
            await db.execute(
                """INSERT INTO hosts
                   (host_id, name, address, control_port, stream_port, max_vms,
                    location, status, health, last_check, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    record.host_id,
                    record.name,
                    record.address,
                    record.control_port,
                    record.stream_port,
                    record.max_vms,
                    record.location,
                    record.status.value,
                    record.health.value,
                    _iso(record.last_check),
                    record.created_at.isoformat(),
                ),
            )
        logger.info("Registered host: %s (%s)", record.host_id, record.address)
        return record

    async def get_host(self, host_id: str) -> HostRecord | None:
        cursor = await self.db.execute("SELECT * FROM hosts WHERE host_id = ?", (host_id,))
        row = await cursor.fetchone()
        return self._row_to_host(row) if row else None

    async def list_hosts(self) -> list[HostRecord]:
        cursor = await self.db.execute("SELECT * FROM hosts ORDER BY created_at DESC")
        rows = await cursor.fetchall()
        return [self._row_to_host(row) for row in rows]

    async def update_host_health(self, host_id: str, health: HostHealth) -> datetime:
        now = _now()
        async with self._transaction() as db:
            await db.execute(
                "UPDATE hosts SET health = ?, last_check = ? WHERE host_id = ?",
                (health.value, now.isoformat(), host_id),
            )
        return now

    # ── Row conversion ───────────────────────────────────────────────────

    @staticmethod
    def _row_to_vm(row: aiosqlite.Row) -> VMRecord:
        return VMRecord(
            vm_id=row["vm_id"],
            name=row["name"],
            status=VMStatus(row["status"]),
            host_id=row["host_id"],
            container_ref=row["container_ref"],
            control_port=row["control_port"],
            stream_port=row["stream_port"],
            agent_url=row["agent_url"],
            stream_url=row["stream_url"],
            public_ip=row["public_ip"],
            browser_version=row["browser_version"],
            runtime_version=row["runtime_version"],
            error=row["error"],
            created_at=datetime.fromisoformat(row["created_at"]),
            last_activity=_dt(row["last_activity"]),
            metadata=json.loads(row["metadata"] or "{}"),
        )

    @staticmethod
    def _row_to_job(row: aiosqlite.Row) -> JobRecord:
        return JobRecord(
            job_id=row["job_id"],
            vm_id=row["vm_id"],
            script=row["script"],
            status=JobStatus(row["status"]),
            result=json.loads(row["result"]) if row["result"] is not None else None,
            error=row["error"],
            screenshot=row["screenshot"],
            selected_text=row["selected_text"],
            created_at=datetime.fromisoformat(row["created_at"]),
            started_at=_dt(row["started_at"]),
            completed_at=_dt(row["completed_at"]),
        )

    @staticmethod
    def _row_to_host(row: aiosqlite.Row) -> HostRecord:
        return HostRecord(
            host_id=row["host_id"],
            name=row["name"],
            address=row["address"],
            control_port=row["control_port"],
            stream_port=row["stream_port"],
            max_vms=row["max_vms"],
            location=row["location"],
            status=HostStatus(row["status"]),
            health=HostHealth(row["health"]),
            last_check=_dt(row["last_check"]),
            created_at=datetime.fromisoformat(row["created_at"]),
        )
