import json
import logging
import os
import re
import shlex
from pathlib import Path
from typing import Dict, Iterator, List, Literal, Mapping, Optional, Sequence, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .errors import ConfigError, UnknownServer

logger = logging.getLogger(__name__)


class RuntimeConfig(BaseModel):
    """Per-server launch tuning. Unknown keys are ignored."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    # "handshake": MCP initialize round trip; "grace": child must survive grace_period
    readiness: Literal["handshake", "grace"] = "handshake"
    grace_period: float = 1.0
    handshake_timeout: Optional[float] = None
    min_version: Optional[str] = None
    version_command: Optional[List[str]] = None
    cwd: Optional[str] = None


class ServerDefinition(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    name: str
    command: Union[str, List[str]]
    args: List[str] = Field(default_factory=list)
    env: Dict[str, str] = Field(default_factory=dict)
    repository: Optional[str] = None
    build_command: Optional[str] = None
    runtime_config: RuntimeConfig = Field(default_factory=RuntimeConfig)

    @field_validator("command")
    @classmethod
    def _non_empty(cls, v):
        if isinstance(v, str) and not v.strip():
            raise ValueError("command must not be empty")
        if isinstance(v, list) and not v:
            raise ValueError("command must not be empty")
        return v

    @field_validator("env", mode="before")
    @classmethod
    def _stringify_env(cls, v):
        if isinstance(v, dict):
            return {str(k): "" if val is None else str(val) for k, val in v.items()}
        return v

    @property
    def needs_build(self) -> bool:
        return bool(self.repository or self.build_command)

    def argv(self) -> List[str]:
        """
        Accept either a single command string or a pre-split list and return
        the full argument vector for the launch.
        """
        if isinstance(self.command, (list, tuple)):
            command = list(self.command)
        else:
            command = shlex.split(self.command)
        return command + list(self.args)

    def launch_env(self, base: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
        """Gateway environment overlaid with this server's overrides ($VAR expanded)."""
        base = os.environ if base is None else base
        merged = dict(base)
        for key, value in self.env.items():
            merged[key] = _expand(value, base)
        return merged


_VAR_RE = re.compile(r"\$(?:\{([A-Za-z_][A-Za-z0-9_]*)\}|([A-Za-z_][A-Za-z0-9_]*))")


def _expand(value: str, env: Mapping[str, str]) -> str:
    # only $NAME and ${NAME}; unknown names and any other "$" stay as written
    if "$" not in value:
        return value
    return _VAR_RE.sub(lambda m: env.get(m.group(1) or m.group(2), m.group(0)), value)


class ServerRegistry:
    """Immutable name -> ServerDefinition mapping."""

    def __init__(self, definitions: Sequence[ServerDefinition]) -> None:
        by_name: Dict[str, ServerDefinition] = {}
        for d in definitions:
            if d.name in by_name:
                raise ConfigError(f"duplicate server name '{d.name}'")
            by_name[d.name] = d
        self._by_name = by_name

    def get(self, name: str) -> ServerDefinition:
        try:
            return self._by_name[name]
        except KeyError:
            raise UnknownServer(name) from None

    def names(self) -> List[str]:
        return sorted(self._by_name)

    def __contains__(self, name: object) -> bool:
        return name in self._by_name

    def __iter__(self) -> Iterator[ServerDefinition]:
        return iter(self._by_name.values())

    def __len__(self) -> int:
        return len(self._by_name)

    @classmethod
    def from_mapping(cls, data: Mapping) -> "ServerRegistry":
        # Claude-desktop style files wrap the servers in "mcpServers"
        if isinstance(data, Mapping) and isinstance(data.get("mcpServers"), Mapping):
            data = data["mcpServers"]
        if not isinstance(data, Mapping):
            raise ConfigError("server config must be a JSON object of name -> definition")

        definitions = []
        for name, raw in data.items():
            if not isinstance(raw, Mapping):
                raise ConfigError(f"server '{name}': definition must be an object")
            try:
                definitions.append(ServerDefinition.model_validate({**raw, "name": name}))
            except ValidationError as ve:
                raise ConfigError(f"server '{name}': {ve}") from ve
        return cls(definitions)


def load_registry(path: Union[str, Path]) -> ServerRegistry:
    """Read and validate the server config file. Any problem is a ConfigError."""
    path = Path(path)
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"failed to read MCP config file '{path}': {e}") from e
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise ConfigError(f"failed to parse MCP config file '{path}': {e}") from e

    registry = ServerRegistry.from_mapping(data)
    logger.info("Loaded %d MCP server definition(s) from %s: %s", len(registry), path, ", ".join(registry.names()))
    return registry
