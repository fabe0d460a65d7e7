"""HTTP client for talking to sandbox agents.

One ``httpx.AsyncClient`` is shared across agents; each call passes the
agent's absolute URL. Transport failures are translated into the error
taxonomy (``AgentUnreachable``/``AgentTimeout``); structured error bodies
from the agent are rebuilt into their original kind.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from chromevm.config import DispatchConfig
from chromevm.errors import AgentError, AgentTimeout, AgentUnreachable, error_from_payload
from chromevm.models import RunRequest, RunResponse

logger = logging.getLogger(__name__)


class AgentClient:
    """Async client for the sandbox agent HTTP surface."""

    def __init__(self, config: DispatchConfig | None = None):
        self.config = config or DispatchConfig()
        self._client: httpx.AsyncClient | None = None

    async def start(self) -> None:
        """Initialize HTTP client."""
        self._client = httpx.AsyncClient(
            headers={"User-Agent": "chromevm/0.1.0"},
            timeout=self.config.run_timeout,
        )
        logger.info("Agent client started")

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            raise RuntimeError("Agent client not started")
        return self._client

    async def _request(
        self, method: str, url: str, *, timeout: float, **kwargs: Any
    ) -> httpx.Response:
        try:
            resp = await self.client.request(method, url, timeout=timeout, **kwargs)
        except httpx.TimeoutException as e:
            raise AgentTimeout(f"Agent at {url} did not answer within {timeout:g}s") from e
        except httpx.TransportError as e:
            raise AgentUnreachable(f"Agent at {url} unreachable: {e}") from e

        if resp.status_code >= 400:
            try:
                payload = resp.json()
            except ValueError:
                payload = {}
            raise error_from_payload(payload, default=AgentError) or AgentError(
                f"Agent at {url} returned HTTP {resp.status_code}"
            )
        return resp

    # ── Agent endpoints ──────────────────────────────────────────────────

    async def health(self, agent_url: str, timeout: float | None = None) -> dict:
        resp = await self._request(
            "GET", f"{agent_url}/health", timeout=timeout or self.config.health_timeout
        )
        return resp.json()

    async def info(self, agent_url: str) -> dict:
        resp = await self._request(
            "GET", f"{agent_url}/info", timeout=self.config.health_timeout
        )
        return resp.json()

    async def run(self, agent_url: str, request: RunRequest) -> RunResponse:
        """POST a script to the agent and return its outcome.

        Raises:
            AgentTimeout: No answer within ``run_timeout``.
            AgentUnreachable: Connection failed.
            ChromeVMError: The agent rejected the run (``Busy``,
                ``BrowserUnavailable``, ...).
        """
        resp = await self._request(
            "POST",
            f"{agent_url}/run",
            timeout=self.config.run_timeout,
            json=request.model_dump(mode="json"),
        )
        try:
            return RunResponse.model_validate(resp.json())
        except ValueError as e:
            raise AgentError(f"Agent at {agent_url} returned a malformed run response") from e
