from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field


class CommandRequest(BaseModel):
    """Body of POST /api/v1."""

    # raw JSON-RPC text (forwarded as-is) or an already-parsed JSON-RPC object
    command: Union[str, Dict[str, Any]]
    server: Optional[str] = Field(default=None, description="Server name; defaults to MCP_SERVER_NAME")


class ErrorBody(BaseModel):
    type: str
    message: str
    server: Optional[str] = None


class ErrorEnvelope(BaseModel):
    error: ErrorBody


class ServerStatus(BaseModel):
    name: str
    state: str
    pid: Optional[int] = None
    started_at: Optional[float] = None
    last_healthy_at: Optional[float] = None
    restart_count: int = 0
    launch_count: int = 0
    consecutive_timeouts: int = 0
    last_exit_status: Optional[int] = None
    pending_requests: int = 0
    server_info: Optional[Dict[str, Any]] = None


class ServerStatusList(BaseModel):
    default_server: Optional[str] = None
    servers: List[ServerStatus]
