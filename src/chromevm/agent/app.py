"""Sandbox agent HTTP surface.

Runs inside every sandbox container and exposes the browser to the
orchestrator. State lives on ``app.state.executor``; the lifespan closes
the browser on shutdown (uvicorn turns SIGTERM/SIGINT into a lifespan
shutdown).
"""

from __future__ import annotations

import logging
import platform
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path

from fastapi import FastAPI, Query, Request

from chromevm.agent.executor import ScriptExecutor, ScriptLibrary
from chromevm.config import AgentConfig
from chromevm.errors import register_error_handlers
from chromevm.log_buffer import LogBuffer
from chromevm.models import NavigateRequest, RunOptions, RunRequest, RunResponse

logger = logging.getLogger(__name__)


def _executor(request: Request) -> ScriptExecutor:
    return request.app.state.executor


def create_app(
    config: AgentConfig | None = None, executor: ScriptExecutor | None = None
) -> FastAPI:
    """Create the agent application."""
    config = config or AgentConfig.from_env()
    executor = executor or ScriptExecutor(config)
    library = ScriptLibrary(Path(config.scripts_dir))
    started_at = datetime.now(timezone.utc)
    log_buffer = LogBuffer()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        handler = log_buffer.attach()
        logger.info("Sandbox agent starting for VM %s", config.vm_id)
        try:
            yield
        finally:
            logger.info("Sandbox agent shutting down")
            await app.state.executor.session.close()
            log_buffer.detach(handler)

    app = FastAPI(
        title="chromevm sandbox agent",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.executor = executor
    app.state.config = config
    register_error_handlers(app)

    @app.get("/health")
    async def health(request: Request):
        session = _executor(request).session
        return {
            "status": "healthy",
            "browser": "connected" if session.connected else "disconnected",
            "vm_id": config.vm_id,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    @app.get("/info")
    async def info(request: Request):
        ex = _executor(request)
        return {
            "vm_id": config.vm_id,
            "browser_version": ex.session.browser_version,
            "python_version": platform.python_version(),
            "created_at": started_at.isoformat(),
            "status": "busy" if ex.busy else "running",
        }

    @app.post("/run", response_model=RunResponse)
    async def run(body: RunRequest, request: Request):
        """Execute a script. Script failures come back as ``status="failed"``."""
        return await _executor(request).run(body)

    @app.get("/scripts")
    async def list_scripts():
        return {"scripts": library.list()}

    @app.post("/run-script/{name}", response_model=RunResponse)
    async def run_named_script(name: str, request: Request, options: RunOptions | None = None):
        """Execute a script stored in the agent's scripts directory."""
        options = options or RunOptions()
        script = library.load(name)
        run_request = RunRequest(
            job_id=str(uuid.uuid4()),
            script=script,
            screenshot=options.screenshot,
            selector=options.selector,
            wait_time=options.wait_ms,
        )
        return await _executor(request).run(run_request)

    @app.get("/logs")
    async def logs(
        level: str | None = None,
        name: str | None = None,
        contains: str | None = None,
        limit: int = Query(default=200, ge=1, le=5000),
    ):
        """Recent agent log lines, newest first (script output: ``name=chromevm.agent.script``)."""
        return {"logs": log_buffer.query(level=level, name=name, contains=contains, limit=limit)}

    @app.post("/browser/restart")
    async def restart_browser(request: Request):
        await _executor(request).session.restart()
        return {"status": "success", "message": "Browser restarted"}

    @app.post("/browser/navigate")
    async def navigate(body: NavigateRequest, request: Request):
        return await _executor(request).session.navigate(body.url)

    return app
