import asyncio
import json
import logging
from contextlib import asynccontextmanager
from typing import Any, Awaitable, Dict, Optional, Protocol, Type, TypeVar, Union, runtime_checkable

from fastapi import Body, Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from mcp_bridge.auth import BearerAuth, authorize_request
from mcp_bridge.errors import (
    BridgeError,
    ChildExited,
    ConfigError,
    CrashLoopError,
    InvalidRequest,
    SpawnError,
    Timeout,
    Unauthorized,
    UnknownServer,
)
from mcp_bridge.servers import load_registry
from mcp_bridge.settings import Settings
from mcp_bridge.stdio_bridge import ProtocolBridge
from mcp_bridge.supervisor import ProcessSupervisor
from routers.servers import router as servers_router
from schemas.api import CommandRequest, ErrorBody, ErrorEnvelope

logger = logging.getLogger(__name__)

T = TypeVar("T")

# the one place internal error kinds become HTTP statuses
ERROR_STATUS: Dict[Type[BridgeError], int] = {
    InvalidRequest: 400,
    Unauthorized: 401,
    UnknownServer: 404,
    SpawnError: 502,
    ChildExited: 502,
    CrashLoopError: 503,
    Timeout: 504,
}

DISCONNECT_POLL_SECONDS = 0.5


class RelayResponse(JSONResponse):
    """Child responses go back as parsed; NaN/Infinity from json.loads survive the trip."""

    def render(self, content: Any) -> bytes:
        return json.dumps(content, ensure_ascii=False, allow_nan=True, separators=(",", ":")).encode("utf-8")


@runtime_checkable
class BridgeProtocol(Protocol):
    """Anything that can forward one JSON-RPC payload to a named server."""

    async def call(
        self, server: str, payload: Union[str, Dict[str, Any]], timeout: Optional[float] = None
    ) -> Dict[str, Any]: ...


def status_for(exc: BridgeError) -> int:
    for cls in type(exc).__mro__:
        if cls in ERROR_STATUS:
            return ERROR_STATUS[cls]
    return 500


def error_response(exc: BridgeError) -> JSONResponse:
    status = status_for(exc)
    body = ErrorEnvelope(error=ErrorBody(type=exc.kind, message=exc.message, server=exc.server))
    headers = {"WWW-Authenticate": "Bearer"} if isinstance(exc, Unauthorized) else None
    return JSONResponse(status_code=status, content=body.model_dump(exclude_none=True), headers=headers)


async def _abandon_on_disconnect(request: Request, work: Awaitable[T]) -> Optional[T]:
    """
    Run `work` until it finishes or the client hangs up. On hang-up the work
    is cancelled (its pending request is dropped) and None is returned.
    """
    task = asyncio.ensure_future(work)
    try:
        while True:
            done, _ = await asyncio.wait({task}, timeout=DISCONNECT_POLL_SECONDS)
            if done:
                return task.result()
            if await request.is_disconnected():
                logger.info("Client disconnected; abandoning request")
                task.cancel()
                return None
    finally:
        if not task.done():
            task.cancel()


def create_gateway_app(bridge: BridgeProtocol, supervisor: ProcessSupervisor, settings: Settings) -> FastAPI:
    # fail fast if the bridge doesn't meet the protocol
    if not isinstance(bridge, BridgeProtocol):
        raise TypeError("bridge must satisfy BridgeProtocol (missing async .call(server, payload, timeout)?)")

    auth = BearerAuth.from_settings(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if settings.eager_start and settings.default_server:
            try:
                await supervisor.ensure_running(settings.default_server)
            except BridgeError as e:
                # keep serving; requests will retry the spawn
                logger.error("Eager start of '%s' failed: %s", settings.default_server, e)
        yield
        await supervisor.shutdown()

    app = FastAPI(title="MCP HTTP Server", version="0.1.0", lifespan=lifespan)
    app.state.settings = settings
    app.state.supervisor = supervisor
    app.state.bridge = bridge
    app.state.auth = auth

    @app.exception_handler(BridgeError)
    async def handle_bridge_error(request: Request, exc: BridgeError) -> JSONResponse:
        status = status_for(exc)
        if status >= 500:
            logger.warning("%s %s -> %d %s: %s", request.method, request.url.path, status, exc.kind, exc.message)
        else:
            logger.info("%s %s -> %d %s", request.method, request.url.path, status, exc.kind)
        return error_response(exc)

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        return error_response(InvalidRequest(f"invalid request body: {exc.errors()}"))

    # ----- health check ------------------------------------------------------
    @app.get("/health", tags=["system"])
    def health() -> Dict[str, str]:
        return {"status": "ok"}

    # ----- MCP endpoint ------------------------------------------------------
    @app.post("/api/v1", tags=["mcp"], dependencies=[Depends(authorize_request)])
    async def call_mcp(request: Request, raw_body: Any = Body(...)):
        # 1. validate presence of 'command'
        if not isinstance(raw_body, dict) or "command" not in raw_body:
            raise InvalidRequest("'command' field missing from request body")
        try:
            body = CommandRequest.model_validate(raw_body)
        except ValidationError as ve:
            raise InvalidRequest(f"invalid request body: {ve.errors(include_url=False)}")

        server = body.server or settings.default_server
        if not server:
            raise InvalidRequest("no 'server' in the request and no MCP_SERVER_NAME configured")

        # 2. delegate to the bridge
        logger.debug("Forwarding to '%s': %.500s", server, body.command)
        response = await _abandon_on_disconnect(request, bridge.call(server, body.command))
        if response is None:
            # client is gone; nobody reads this
            return JSONResponse(status_code=499, content=None)
        return RelayResponse(content=response)

    app.include_router(servers_router)
    return app


def build_app(settings: Settings) -> FastAPI:
    """Wire config -> supervisor -> bridge -> gateway. Raises ConfigError on bad config."""
    registry = load_registry(settings.config_file)
    if settings.default_server and settings.default_server not in registry:
        raise ConfigError(
            f"MCP_SERVER_NAME '{settings.default_server}' is not defined in {settings.config_file} "
            f"(known: {', '.join(registry.names()) or 'none'})"
        )
    supervisor = ProcessSupervisor(registry, settings)
    bridge = ProtocolBridge(supervisor, default_timeout=settings.request_timeout)
    return create_gateway_app(bridge, supervisor, settings)
