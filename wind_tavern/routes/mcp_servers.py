"""Tool server connection endpoints."""

from fastapi import APIRouter, Depends

from wind_tavern.errors import AppError
from wind_tavern.models import MCPServer
from wind_tavern.services import Services

from .deps import get_services

router = APIRouter()


def _get_server(services: Services, server_id: str) -> MCPServer:
    server = services.storage.get_mcp_server(server_id)
    if server is None:
        raise AppError("MCP_SERVER_NOT_FOUND", "MCP server not found")
    return server


@router.post("/mcp-servers/{server_id}/probe")
async def probe_server(server_id: str, reset: bool = False, services: Services = Depends(get_services)):
    """Liveness check; reports {"status", "tool_count", "error"} instead of failing."""
    server = _get_server(services, server_id)
    return await services.tools.probe(server, reset=reset)


@router.post("/mcp-servers/{server_id}/reset", status_code=204)
async def reset_server(server_id: str, services: Services = Depends(get_services)):
    """Drop the live connection; the next call starts the server again."""
    _get_server(services, server_id)
    await services.tools.reset_connection(server_id)
