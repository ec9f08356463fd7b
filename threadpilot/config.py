"""Environment loading and runtime configuration.

Call `load_env()` before `load_config()` so values from `.env` are visible.
"""

from __future__ import annotations

import logging
import os
import shlex
from dataclasses import dataclass, field
from pathlib import Path

from threadpilot.errors import ConfigurationError

log = logging.getLogger("config")


def load_env(env_path: Path | None = None) -> None:
    """Load .env file into os.environ. Handles quoted values and spaces."""
    if env_path is None:
        env_path = Path.cwd() / ".env"

    if not env_path.exists():
        return

    for line in env_path.read_text().splitlines():
        line = line.strip()
        if line and not line.startswith("#") and "=" in line:
            key, val = line.split("=", 1)
            val = val.strip().strip('"').strip("'")
            os.environ[key.strip()] = val


def _env_float(name: str, default: float, *, minimum: float = 0.0) -> float:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        log.warning("Invalid %s=%r; using default %s", name, raw, default)
        return default
    if value <= minimum:
        log.warning("Invalid %s=%r; using default %s", name, raw, default)
        return default
    return value


def _parse_bool(value: object, default: bool = False) -> bool:
    if isinstance(value, bool):
        return value
    if value is None:
        return default
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def _env_list(name: str) -> tuple[str, ...]:
    raw = os.getenv(name, "") or ""
    return tuple(p.strip() for p in raw.split(",") if p.strip())


@dataclass(frozen=True)
class XMPPConfig:
    jid: str
    password: str
    server: str
    port: int = 5222
    allowed_jids: tuple[str, ...] = ()
    plaintext: bool = False


@dataclass(frozen=True)
class Config:
    data_dir: Path
    base_dir: Path
    claude_bin: str = "claude"
    claude_args: tuple[str, ...] = ()
    inactivity_timeout_s: float = 30 * 60
    workspace_ttl_s: float = 24 * 3600
    payload_ttl_s: float = 24 * 3600
    sweep_interval_s: float = 300
    kill_grace_s: float = 5.0
    xmpp: XMPPConfig | None = field(default=None)

    @property
    def channels_file(self) -> Path:
        return self.data_dir / "channels.json"

    @property
    def workspaces_file(self) -> Path:
        return self.data_dir / "workspaces.json"

    @property
    def payloads_file(self) -> Path:
        return self.data_dir / "payloads.json"

    @property
    def output_dir(self) -> Path:
        return self.data_dir / "output"

    @property
    def pid_file(self) -> Path:
        return self.data_dir / "threadpilot.pid"


def get_xmpp_config() -> XMPPConfig:
    """Get XMPP credentials from environment; both JID and password are required."""
    jid = (os.getenv("XMPP_JID") or "").strip()
    password = os.getenv("XMPP_PASSWORD") or ""
    missing = [n for n, v in (("XMPP_JID", jid), ("XMPP_PASSWORD", password)) if not v]
    if missing:
        raise ConfigurationError(
            "Missing required environment variables: " + ", ".join(missing)
        )

    domain = jid.split("@", 1)[-1].split("/", 1)[0]
    server = (os.getenv("XMPP_SERVER") or domain).strip()
    raw_port = (os.getenv("XMPP_PORT") or "5222").strip()
    try:
        port = int(raw_port)
    except ValueError as e:
        raise ConfigurationError(f"Invalid XMPP_PORT={raw_port!r}") from e

    return XMPPConfig(
        jid=jid,
        password=password,
        server=server,
        port=port,
        allowed_jids=_env_list("XMPP_ALLOWED_JIDS"),
        plaintext=_parse_bool(os.getenv("XMPP_PLAINTEXT")),
    )


def load_config(*, require_xmpp: bool = True) -> Config:
    """Build the runtime configuration from the environment."""
    data_dir = Path(
        os.getenv("THREADPILOT_DATA_DIR", str(Path.home() / ".threadpilot"))
    ).expanduser()
    base_dir = Path(os.getenv("THREADPILOT_BASE_DIR", str(Path.home()))).expanduser()

    raw_args = (os.getenv("THREADPILOT_CLAUDE_ARGS") or "").strip()
    claude_args = tuple(shlex.split(raw_args)) if raw_args else ()

    return Config(
        data_dir=data_dir,
        base_dir=base_dir,
        claude_bin=(os.getenv("THREADPILOT_CLAUDE_BIN") or "claude").strip(),
        claude_args=claude_args,
        inactivity_timeout_s=_env_float("INACTIVITY_TIMEOUT_MINUTES", 30) * 60,
        workspace_ttl_s=_env_float("THREADPILOT_WORKSPACE_TTL_HOURS", 24) * 3600,
        payload_ttl_s=_env_float("THREADPILOT_PAYLOAD_TTL_HOURS", 24) * 3600,
        sweep_interval_s=_env_float("THREADPILOT_SWEEP_INTERVAL_SECONDS", 300),
        kill_grace_s=_env_float("THREADPILOT_KILL_GRACE_SECONDS", 5),
        xmpp=get_xmpp_config() if require_xmpp else None,
    )
