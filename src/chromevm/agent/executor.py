"""Script executor: one run at a time against the agent's browser session."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

from chromevm.agent.capabilities import PageCapabilities, ScriptConsole
from chromevm.agent.interpreter import ScriptInterpreter
from chromevm.agent.session import BrowserSession
from chromevm.config import AgentConfig
from chromevm.errors import Busy, NotFound, format_error
from chromevm.models import JobStatus, RunRequest, RunResponse

logger = logging.getLogger(__name__)


class ScriptExecutor:
    """Owns the browser session and serializes script runs.

    A second ``run`` while one is in flight is rejected with ``Busy``
    instead of being queued.
    """

    def __init__(
        self,
        config: AgentConfig,
        session: BrowserSession | None = None,
        interpreter: ScriptInterpreter | None = None,
    ):
        self.config = config
        self.session = session or BrowserSession(config)
        self.interpreter = interpreter or ScriptInterpreter(timeout=config.script_timeout)
        self._run_lock = asyncio.Lock()
        self.current_job: str | None = None

    @property
    def busy(self) -> bool:
        return self._run_lock.locked()

    async def run(self, request: RunRequest) -> RunResponse:
        """Execute one script.

        Script failures are reported in the response (``status="failed"``).
        Only ``Busy`` and ``BrowserUnavailable`` are raised.
        """
        if self._run_lock.locked():
            raise Busy(f"Sandbox is busy with job {self.current_job}")

        async with self._run_lock:
            self.current_job = request.job_id
            try:
                return await self._run_locked(request)
            finally:
                self.current_job = None

    async def _run_locked(self, request: RunRequest) -> RunResponse:
        page = await self.session.ensure()
        logger.info("Executing job %s", request.job_id)

        if request.wait_time > 0:
            await asyncio.sleep(request.wait_time / 1000)

        capabilities = PageCapabilities(page, navigation_timeout=self.config.navigation_timeout)
        console = ScriptConsole(request.job_id)
        response = RunResponse(job_id=request.job_id, status=JobStatus.COMPLETED)
        try:
            response.result = await self.interpreter.run(request.script, capabilities, console)
        except Exception as e:
            response.status = JobStatus.FAILED
            response.error = format_error(e)
            logger.info("Job %s failed: %s", request.job_id, response.error)

        if request.screenshot:
            try:
                response.screenshot = await capabilities.screenshot()
            except Exception as e:
                logger.warning("Screenshot for job %s failed: %s", request.job_id, e)

        if request.selector:
            try:
                response.selected_text = await capabilities.text(request.selector)
            except Exception as e:
                logger.warning(
                    "Text extraction of %r for job %s failed: %s", request.selector, request.job_id, e
                )

        if response.status == JobStatus.COMPLETED:
            logger.info("Job %s completed", request.job_id)
        return response


class ScriptLibrary:
    """Named scripts stored as ``<name>.py`` files in one directory."""

    def __init__(self, directory: Path):
        self.directory = directory

    def list(self) -> list[dict]:
        if not self.directory.is_dir():
            return []
        entries = []
        for path in sorted(self.directory.glob("*.py")):
            stat = path.stat()
            entries.append({"name": path.stem, "size": stat.st_size, "modified": stat.st_mtime})
        return entries

    def load(self, name: str) -> str:
        if not name or "/" in name or "\\" in name or name.startswith("."):
            raise NotFound(f"Script {name!r} not found")
        path = self.directory / f"{name}.py"
        if not path.is_file():
            raise NotFound(f"Script {name!r} not found")
        return path.read_text()
