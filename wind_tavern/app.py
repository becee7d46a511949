import logging
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from wind_tavern.config import load_settings
from wind_tavern.errors import AppError
from wind_tavern.llm import LLM
from wind_tavern.mcp_client import Connector
from wind_tavern.routes import router
from wind_tavern.services import build_services

logger = logging.getLogger(__name__)


def create_app(
    data_dir: Path | None = None,
    llm: LLM | None = None,
    connector: Connector | None = None,
) -> FastAPI:
    settings = load_settings(data_dir)
    services = build_services(settings, llm=llm, connector=connector)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        await services.aclose()

    app = FastAPI(title="Wind Tavern", lifespan=lifespan)
    app.state.services = services
    app.include_router(router, prefix="/api")

    @app.exception_handler(AppError)
    async def app_error_handler(request: Request, exc: AppError):
        if exc.status >= 500:
            logger.error("%s %s -> %s: %s", request.method, request.url.path, exc.code, exc.message)
        else:
            logger.info("%s %s -> %s: %s", request.method, request.url.path, exc.code, exc.message)
        return JSONResponse(status_code=exc.status, content=exc.to_dict())

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception("unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(
            status_code=500,
            content={"code": "INTERNAL_ERROR", "message": "Internal server error"},
        )

    return app
