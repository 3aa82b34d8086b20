import os
from typing import Mapping, Optional

from pydantic import BaseModel, ConfigDict, field_validator

from .errors import ConfigError

_TRUTHY = {"1", "true", "yes", "on"}


def _flag(env: Mapping[str, str], key: str, default: str = "false") -> bool:
    return env.get(key, default).strip().lower() in _TRUTHY


class Settings(BaseModel):
    """
    Process-wide configuration. Read once at startup, never mutated.
    """

    model_config = ConfigDict(frozen=True)

    config_file: str = "mcp_servers.config.json"
    default_server: Optional[str] = None
    host: str = "0.0.0.0"
    port: int = 3000
    api_key: Optional[str] = None
    disable_auth: bool = False
    work_dir: str = "/tmp/mcp-servers"
    log_level: str = "INFO"

    request_timeout: float = 30.0
    handshake_timeout: float = 30.0
    build_timeout: float = 600.0
    max_restarts: int = 5
    restart_backoff: float = 0.5
    restart_backoff_max: float = 30.0
    stable_window: float = 30.0
    max_consecutive_timeouts: int = 3
    shutdown_grace: float = 5.0
    eager_start: bool = False

    @field_validator("max_restarts", "max_consecutive_timeouts")
    @classmethod
    def _at_least_one(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be >= 1")
        return v

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if env is None else env
        try:
            return cls(
                config_file=env.get("MCP_CONFIG_FILE", "mcp_servers.config.json"),
                # MCP_SERVER_KEY is the older name for the same setting
                default_server=env.get("MCP_SERVER_NAME") or env.get("MCP_SERVER_KEY") or None,
                host=env.get("HOST", "0.0.0.0"),
                port=int(env.get("PORT", "3000")),
                api_key=env.get("HTTP_API_KEY") or None,
                disable_auth=_flag(env, "DISABLE_AUTH"),
                work_dir=env.get("WORK_DIR", "/tmp/mcp-servers"),
                log_level=env.get("LOG_LEVEL", "INFO").upper(),
                request_timeout=float(env.get("MCP_REQUEST_TIMEOUT", "30")),
                handshake_timeout=float(env.get("MCP_HANDSHAKE_TIMEOUT", "30")),
                build_timeout=float(env.get("MCP_BUILD_TIMEOUT", "600")),
                max_restarts=int(env.get("MCP_MAX_RESTARTS", "5")),
                restart_backoff=float(env.get("MCP_RESTART_BACKOFF", "0.5")),
                restart_backoff_max=float(env.get("MCP_RESTART_BACKOFF_MAX", "30")),
                stable_window=float(env.get("MCP_STABLE_WINDOW", "30")),
                max_consecutive_timeouts=int(env.get("MCP_MAX_CONSECUTIVE_TIMEOUTS", "3")),
                shutdown_grace=float(env.get("MCP_SHUTDOWN_GRACE", "5")),
                eager_start=_flag(env, "MCP_EAGER_START"),
            )
        except ValueError as e:
            # pydantic's ValidationError is a ValueError too
            raise ConfigError(f"invalid environment configuration: {e}") from e

    def check_auth(self) -> None:
        """Auth must either have a secret or be switched off on purpose."""
        if not self.disable_auth and not self.api_key:
            raise ConfigError(
                "HTTP_API_KEY is not set. Set it, or set DISABLE_AUTH=true to run without authentication."
            )
