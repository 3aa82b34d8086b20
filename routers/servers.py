from fastapi import APIRouter, Depends, Request

from mcp_bridge.auth import authorize_request
from schemas.api import ServerStatus, ServerStatusList

router = APIRouter(tags=["servers"], dependencies=[Depends(authorize_request)])


@router.get("/servers", response_model=ServerStatusList)
def list_servers(request: Request) -> ServerStatusList:
    """
    Lifecycle snapshot of every configured server. Servers that were never
    requested show up as 'stopped'.
    """
    supervisor = request.app.state.supervisor
    return ServerStatusList(
        default_server=request.app.state.settings.default_server,
        servers=[ServerStatus.model_validate(s) for s in supervisor.status()],
    )


@router.post("/servers/{name}/reset", response_model=ServerStatus)
async def reset_server(name: str, request: Request) -> ServerStatus:
    """
    Clear a server's state, including a crash-loop termination. The next
    request to it spawns a fresh process.
    """
    supervisor = request.app.state.supervisor
    await supervisor.reset(name)
    return ServerStatus(name=name, state=supervisor.state_of(name).value)
