"""Error taxonomy shared by the orchestrator, dispatcher and sandbox agent.

Every error carries a stable ``kind`` (the class name) and an HTTP status
used when it crosses an API boundary.
"""

from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse


class ChromeVMError(Exception):
    """Base class for all chromevm errors."""

    status_code: int = 500

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message or self.__class__.__name__

    @property
    def kind(self) -> str:
        return self.__class__.__name__

    def to_dict(self) -> dict:
        return {"kind": self.kind, "message": self.message}

    def __str__(self) -> str:
        return self.message


# ── Client errors (no state change) ──────────────────────────────────────────


class InvalidRequest(ChromeVMError):
    status_code = 400


class NotFound(ChromeVMError):
    status_code = 404


class Conflict(ChromeVMError):
    """Operation is not valid for the VM's current state."""

    status_code = 409


class Busy(ChromeVMError):
    """The sandbox is already executing a script."""

    status_code = 409


# ── Provisioning errors (VM → error) ─────────────────────────────────────────


class BackendUnavailable(ChromeVMError):
    """The container engine could not be reached."""

    status_code = 503


class ImageBuildFailed(ChromeVMError):
    status_code = 500


class PlacementFailed(ChromeVMError):
    """No usable remote host for the requested placement."""

    status_code = 503


# ── Job-level errors (Job → failed, VM → ready) ──────────────────────────────


class AgentUnreachable(ChromeVMError):
    status_code = 502


class AgentTimeout(ChromeVMError):
    status_code = 504


class AgentError(ChromeVMError):
    """The agent answered with an error it did not classify."""

    status_code = 502


# ── Agent-local errors ───────────────────────────────────────────────────────


class BrowserUnavailable(ChromeVMError):
    status_code = 503


class NavigationFailed(ChromeVMError):
    status_code = 502


class ScriptError(ChromeVMError):
    """A user script raised, timed out, or was rejected before running."""

    status_code = 422


class SelectorTimeout(ScriptError):
    def __init__(self, selector: str, timeout_ms: int):
        super().__init__(f"Element {selector} not found within {timeout_ms}ms")
        self.selector = selector
        self.timeout_ms = timeout_ms


_BY_KIND: dict[str, type[ChromeVMError]] = {
    cls.__name__: cls
    for cls in (
        InvalidRequest,
        NotFound,
        Conflict,
        Busy,
        BackendUnavailable,
        ImageBuildFailed,
        PlacementFailed,
        AgentUnreachable,
        AgentTimeout,
        AgentError,
        BrowserUnavailable,
        NavigationFailed,
        ScriptError,
        ChromeVMError,
    )
}


def error_from_payload(
    payload: dict, default: type[ChromeVMError] = AgentError
) -> ChromeVMError | None:
    """Rebuild an error from a ``{"error": {"kind", "message"}}`` body.

    Returns None when the payload carries no error at all.
    """
    body = payload.get("error") if isinstance(payload, dict) else None
    if isinstance(body, dict):
        cls = _BY_KIND.get(body.get("kind", ""), default)
        return cls(body.get("message", ""))
    if isinstance(body, str):
        return default(body)
    return None


def format_error(exc: BaseException) -> str:
    """Render an exception as ``"<Kind>: message"`` for job error fields."""
    if isinstance(exc, ChromeVMError):
        return f"{exc.kind}: {exc.message}"
    return f"{type(exc).__name__}: {exc}"


def register_error_handlers(app: FastAPI) -> None:
    """Render taxonomy errors as ``{"error": {"kind", "message"}}`` responses."""

    @app.exception_handler(ChromeVMError)
    async def _chromevm_error(request: Request, exc: ChromeVMError) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content={"error": exc.to_dict()})

    @app.exception_handler(RequestValidationError)
    async def _validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        details = "; ".join(
            f"{'.'.join(str(p) for p in err.get('loc', ()))}: {err.get('msg')}"
            for err in exc.errors()
        )
        error = InvalidRequest(details or "Invalid request body")
        return JSONResponse(status_code=error.status_code, content={"error": error.to_dict()})
