"""Job Dispatcher: runs one script against one ready VM.

    ready ──begin_job──▶ running ──finish_job──▶ ready

``begin_job`` inserts the pending job and flips the VM in a single
transaction; ``finish_job`` finalizes the job and releases the VM in
another. The finish step sits in a ``finally`` block so a VM never stays
``running`` after dispatch returns, raises, or is cancelled. Jobs are
never retried.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Any

from chromevm.agent_client import AgentClient
from chromevm.errors import Conflict, InvalidRequest, NotFound, format_error
from chromevm.models import JobRecord, JobStatus, RunOptions, RunRequest, VMStatus
from chromevm.registry import VMRegistry

logger = logging.getLogger(__name__)


class JobDispatcher:
    def __init__(self, registry: VMRegistry, agents: AgentClient):
        self.registry = registry
        self.agents = agents

    async def dispatch(
        self, vm_id: str, script: str, options: RunOptions | None = None
    ) -> JobRecord:
        """Run ``script`` on ``vm_id`` and return the finished job.

        Raises:
            InvalidRequest: Empty script.
            NotFound: Unknown VM.
            Conflict: VM not ``ready``.

        None of these create a job. Every other failure, agent-side
        ``BrowserUnavailable`` included, is recorded on the returned job with
        ``status="failed"`` and the VM goes back to ``ready``.
        """
        options = options or RunOptions()
        if not script or not script.strip():
            raise InvalidRequest("Script is required")

        vm = await self.registry.get_vm(vm_id)
        if vm is None:
            raise NotFound(f"VM {vm_id} not found")
        if vm.status != VMStatus.READY:
            raise Conflict(f"VM {vm_id} is {vm.status.value}, not ready")
        if not vm.agent_url:
            raise Conflict(f"VM {vm_id} has no agent endpoint")

        job = await self.registry.begin_job(
            JobRecord(job_id=str(uuid.uuid4()), vm_id=vm_id, script=script)
        )

        outcome: dict[str, Any] = {
            "status": JobStatus.FAILED,
            "error": "Cancelled: dispatch interrupted before the agent answered",
        }
        try:
            job.started_at = await self.registry.mark_job_running(job.job_id)
            job.status = JobStatus.RUNNING

            request = RunRequest(
                job_id=job.job_id,
                script=script,
                screenshot=options.screenshot,
                selector=options.selector,
                wait_time=options.wait_ms,
            )
            try:
                response = await self.agents.run(vm.agent_url, request)
            except Exception as e:
                outcome = {"status": JobStatus.FAILED, "error": format_error(e)}
            else:
                outcome = {
                    "status": response.status,
                    "result": response.result,
                    "error": response.error,
                    "screenshot": response.screenshot,
                    "selected_text": response.selected_text,
                }
                if response.status not in (JobStatus.COMPLETED, JobStatus.FAILED):
                    outcome["status"] = JobStatus.FAILED
                    outcome["error"] = f"AgentError: agent reported status {response.status.value}"
        finally:
            finished = await asyncio.shield(self.registry.finish_job(job.job_id, **outcome))

        if finished is None:
            # VM deleted mid-run; report what happened without a stored row.
            job.status = outcome["status"]
            job.error = outcome.get("error")
            job.result = outcome.get("result")
            return job

        logger.info("Job %s on VM %s: %s", finished.job_id, vm_id, finished.status.value)
        return finished
