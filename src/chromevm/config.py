"""Configuration loading for chromevm.

The orchestrator reads ``chromevm.yaml``; every section has defaults so a
missing file yields a working local setup. The sandbox agent is configured
from the ``agent`` section layered under its environment
(see ``AgentConfig.from_env``).
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILE = "chromevm.yaml"


# ── Config Models ────────────────────────────────────────────────────────────


class ServerConfig(BaseModel):
    host: str = "0.0.0.0"
    port: int = 8000
    data_dir: str = ".chromevm"
    db_name: str = "chromevm.db"

    @property
    def db_path(self) -> Path:
        return Path(self.data_dir) / self.db_name


class AllocatorConfig(BaseModel):
    """Local container engine settings."""

    image: str = "chromevm-sandbox:latest"
    build_context: str = "."
    dockerfile: str = "Dockerfile"
    public_host: str = "localhost"
    control_port_start: int = 3003
    stream_port_start: int = 6082
    reserved_ports: list[int] = Field(default_factory=lambda: [3000, 3001, 3002, 6080, 6081])
    restart_policy: str = "on-failure"
    profile_dir: str = "/home/chromeuser/.config/chromium"
    container_control_port: int = 3000
    container_stream_port: int = 6080
    shm_size: str = "2g"

    @field_validator("restart_policy")
    @classmethod
    def _validate_restart_policy(cls, v: str) -> str:
        allowed = {"no", "on-failure", "unless-stopped", "always"}
        if v not in allowed:
            raise ValueError(f"restart_policy must be one of {sorted(allowed)}, got {v!r}")
        return v


class DispatchConfig(BaseModel):
    """Timeouts for orchestrator → agent calls, in seconds."""

    run_timeout: float = 300.0
    health_timeout: float = 5.0
    boot_timeout: float = 60.0
    boot_poll_interval: float = 1.0


class HostsConfig(BaseModel):
    probe_timeout: float = 5.0


class AgentConfig(BaseModel):
    """Sandbox agent settings, one agent per container."""

    vm_id: str = "unknown"
    port: int = 3000
    headless: bool = True
    browser_args: list[str] = Field(
        default_factory=lambda: ["--no-sandbox", "--disable-dev-shm-usage"]
    )
    viewport_width: int = 1280
    viewport_height: int = 800
    script_timeout: float = 240.0
    navigation_timeout: float = 30.0
    selector_timeout_ms: int = 30000
    scripts_dir: str = "/opt/chromevm/scripts"

    @classmethod
    def from_env(
        cls, environ: dict[str, str] | None = None, base: AgentConfig | None = None
    ) -> AgentConfig:
        """Build agent settings from environment variables layered over ``base``."""
        env = os.environ if environ is None else environ
        values: dict = base.model_dump() if base is not None else {}
        if env.get("VM_ID"):
            values["vm_id"] = env["VM_ID"]
        if env.get("PORT"):
            values["port"] = int(env["PORT"])
        if env.get("CHROMEVM_HEADLESS"):
            values["headless"] = env["CHROMEVM_HEADLESS"].lower() in ("1", "true", "yes")
        if env.get("CHROMEVM_SCRIPT_TIMEOUT"):
            values["script_timeout"] = float(env["CHROMEVM_SCRIPT_TIMEOUT"])
        if env.get("CHROMEVM_NAVIGATION_TIMEOUT"):
            values["navigation_timeout"] = float(env["CHROMEVM_NAVIGATION_TIMEOUT"])
        if env.get("CHROMEVM_SCRIPTS_DIR"):
            values["scripts_dir"] = env["CHROMEVM_SCRIPTS_DIR"]
        return cls(**values)


class ChromeVMConfig(BaseModel):
    """Top-level configuration (``chromevm.yaml``)."""

    server: ServerConfig = Field(default_factory=ServerConfig)
    allocator: AllocatorConfig = Field(default_factory=AllocatorConfig)
    dispatch: DispatchConfig = Field(default_factory=DispatchConfig)
    hosts: HostsConfig = Field(default_factory=HostsConfig)
    agent: AgentConfig = Field(default_factory=AgentConfig)


# ── Loading ──────────────────────────────────────────────────────────────────


def load_config(config_path: Path | None = None) -> ChromeVMConfig:
    """Load orchestrator configuration.

    Resolution order for the file: explicit ``config_path``, then
    ``CHROMEVM_CONFIG``, then ``./chromevm.yaml``. A missing file is not an
    error; defaults are used. Environment variables override file values.

    Raises:
        ValueError: If the file exists but fails validation.
    """
    if config_path is None:
        env_path = os.environ.get("CHROMEVM_CONFIG")
        config_path = Path(env_path) if env_path else Path(DEFAULT_CONFIG_FILE)

    raw: dict = {}
    if config_path.exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        logger.info("Loaded chromevm config from %s", config_path)
    else:
        logger.info("No config at %s, using defaults", config_path)

    config = ChromeVMConfig(**raw)

    # Environment variable overrides for deployment
    data_dir = os.environ.get("CHROMEVM_DATA_DIR")
    if data_dir:
        config.server.data_dir = data_dir

    public_host = os.environ.get("CHROMEVM_PUBLIC_HOST")
    if public_host:
        config.allocator.public_host = public_host

    image = os.environ.get("CHROMEVM_IMAGE")
    if image:
        config.allocator.image = image

    build_context = os.environ.get("CHROMEVM_BUILD_CONTEXT")
    if build_context:
        config.allocator.build_context = build_context

    return config


DEFAULT_CONFIG_YAML = """\
# chromevm orchestrator configuration
server:
  host: 0.0.0.0
  port: 8000
  data_dir: .chromevm

allocator:
  image: chromevm-sandbox:latest
  build_context: .
  public_host: localhost
  control_port_start: 3003
  stream_port_start: 6082
  restart_policy: on-failure

dispatch:
  run_timeout: 300
  boot_timeout: 60

hosts:
  probe_timeout: 5
"""


def write_default_config(path: Path, *, force: bool = False) -> bool:
    """Write a starter ``chromevm.yaml``. Returns False if one already exists."""
    if path.exists() and not force:
        return False
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(DEFAULT_CONFIG_YAML)
    return True
