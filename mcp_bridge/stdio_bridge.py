import asyncio
import json
import logging
from typing import Any, Dict, Optional, Tuple, Union

from .channel import RequestId
from .errors import InvalidRequest, Timeout
from .supervisor import ProcessSupervisor, ServerHandle

logger = logging.getLogger(__name__)

Payload = Union[str, bytes, Dict[str, Any]]


def extract_request_id(payload: Payload) -> Tuple[RequestId, Payload]:
    """
    Find the JSON-RPC id of a payload without otherwise interpreting it.

    Returns the id and the payload to forward: raw text stays raw, objects
    stay objects. Anything we cannot correlate a response to is rejected.
    """
    if isinstance(payload, (str, bytes)):
        try:
            message = json.loads(payload)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise InvalidRequest(f"command is not valid JSON: {e}") from e
    else:
        message = payload

    if isinstance(message, list):
        raise InvalidRequest("batch requests are not supported; send one JSON-RPC object per call")
    if not isinstance(message, dict):
        raise InvalidRequest("command must be a JSON-RPC object")

    request_id = message.get("id")
    if request_id is None:
        raise InvalidRequest("command has no id; a response cannot be correlated to it")
    if isinstance(request_id, bool) or not isinstance(request_id, (int, str)):
        raise InvalidRequest(f"command id must be a string or an integer, got {request_id!r}")
    return request_id, payload


class ProtocolBridge:
    """
    HTTP-side entry point: resolves a server, makes sure it runs, and does
    one request/response round trip over its stdio channel.
    """

    def __init__(self, supervisor: ProcessSupervisor, *, default_timeout: float = 30.0) -> None:
        self.supervisor = supervisor
        self.default_timeout = default_timeout

    async def call(self, server: str, payload: Payload, timeout: Optional[float] = None) -> Dict[str, Any]:
        request_id, outgoing = extract_request_id(payload)
        handle = await self.supervisor.ensure_running(server)
        return await self._round_trip(handle, request_id, outgoing, timeout or self.default_timeout)

    async def send(self, server_handle: ServerHandle, jsonrpc_payload: Payload, timeout: Optional[float] = None) -> Dict[str, Any]:
        request_id, outgoing = extract_request_id(jsonrpc_payload)
        return await self._round_trip(server_handle, request_id, outgoing, timeout or self.default_timeout)

    async def _round_trip(self, handle: ServerHandle, request_id: RequestId, outgoing: Payload, timeout: float) -> Dict[str, Any]:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        channel = handle.channel

        pending = channel.register(request_id, timeout)
        try:
            try:
                # a child that stops reading must not stall us past the deadline either
                await asyncio.wait_for(channel.write(outgoing), timeout)
                response = await asyncio.wait_for(pending.future, max(deadline - loop.time(), 0))
            except asyncio.TimeoutError:
                logger.warning("Request %r to '%s' timed out after %.1fs", request_id, handle.name, timeout)
                await self.supervisor.record_timeout(handle.name, pid=handle.pid)
                raise Timeout(
                    f"server '{handle.name}' did not answer request {request_id!r} within {timeout:g}s",
                    server=handle.name,
                ) from None
        finally:
            # also runs when the HTTP client goes away and we are cancelled
            channel.discard(request_id, pending)

        await self.supervisor.record_success(handle.name)
        return response
