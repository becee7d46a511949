"""FastAPI API endpoints under /api.

Endpoint groups: chats (turns, runs, messages, live events), prompt stack,
tool servers (probe, reset). Handlers reach the service container through
the `services` dependency and raise AppError; the app-level handler turns it
into {"code", "message", "details"?} with the code's status.
"""

from fastapi import APIRouter

from .chats import router as chats_router
from .mcp_servers import router as mcp_servers_router
from .prompt_stack import router as prompt_stack_router

router = APIRouter()
router.include_router(chats_router)
router.include_router(prompt_stack_router)
router.include_router(mcp_servers_router)
