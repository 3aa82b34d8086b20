from __future__ import annotations
import os, requests
from typing import Any, Dict, Optional, Union

DEFAULT_BASE = os.getenv("MCP_HTTP_BASE", "http://127.0.0.1:3000")


class GatewayError(Exception):
    """Non-2xx answer from the gateway, carrying its error envelope."""

    def __init__(self, status: int, kind: str, message: str) -> None:
        super().__init__(f"{status} {kind}: {message}")
        self.status = status
        self.kind = kind
        self.message = message


class MCPClient:
    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.base_url = (base_url or DEFAULT_BASE).rstrip("/")
        self.s = session or requests.Session()
        key = api_key if api_key is not None else os.getenv("HTTP_API_KEY")
        if key:
            self.s.headers["Authorization"] = f"Bearer {key}"

    def health(self) -> Dict[str, Any]:
        r = self.s.get(f"{self.base_url}/health", timeout=5)
        r.raise_for_status()
        return r.json()

    def call(self, command: Union[str, Dict[str, Any]], server: Optional[str] = None, timeout: int = 60) -> Dict[str, Any]:
        body: Dict[str, Any] = {"command": command}
        if server:
            body["server"] = server
        r = self.s.post(f"{self.base_url}/api/v1", json=body, timeout=timeout)
        if r.status_code >= 400:
            raise _error_from(r)
        return r.json()

    def servers(self) -> Dict[str, Any]:
        r = self.s.get(f"{self.base_url}/servers", timeout=5)
        if r.status_code >= 400:
            raise _error_from(r)
        return r.json()

    def reset(self, server: str) -> Dict[str, Any]:
        r = self.s.post(f"{self.base_url}/servers/{server}/reset", timeout=30)
        if r.status_code >= 400:
            raise _error_from(r)
        return r.json()


def _error_from(r: requests.Response) -> GatewayError:
    try:
        err = r.json()["error"]
        return GatewayError(r.status_code, err.get("type", "Error"), err.get("message", ""))
    except (ValueError, KeyError, TypeError):
        return GatewayError(r.status_code, "HTTPError", r.text[:500])


# module-level singleton-style helpers
_client = MCPClient()

def health() -> Dict[str, Any]:
    return _client.health()

def call(command: Union[str, Dict[str, Any]], server: Optional[str] = None, timeout: int = 60) -> Dict[str, Any]:
    return _client.call(command, server=server, timeout=timeout)
