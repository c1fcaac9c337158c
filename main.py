"""Main entry point for the clan roster and promotion service."""

import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from api import router
from config import LOG_LEVEL, get_env_int
from db import close_db, connect_db
from discord_api import close_api_client
from errors import ClanServiceError, ValidationError

# Configure logging
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for startup and shutdown events.

    Handles:
    - Database connection setup/teardown
    - Discord API client cleanup
    """
    logger.info("Starting service...")
    await connect_db()
    logger.info("Connected to PostgreSQL")

    yield

    logger.info("Shutting down service...")
    await close_api_client()
    await close_db()
    logger.info("Cleanup complete")


async def handle_service_error(request: Request, exc: ClanServiceError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    headers = {}
    retry_after = exc.extra.get("retry_after")
    if retry_after is not None:
        headers["Retry-After"] = str(retry_after)
    return JSONResponse(exc.to_dict(), status_code=exc.status_code, headers=headers)


async def handle_request_validation_error(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Malformed bodies, missing fields and bad path params are plain 400s."""
    details = [
        {"loc": list(error.get("loc", ())), "msg": error.get("msg", "")}
        for error in exc.errors()
    ]
    error = ValidationError("Malformed request", details=details)
    return JSONResponse(error.to_dict(), status_code=error.status_code)


def create_app() -> FastAPI:
    app = FastAPI(title="Clan roster service", lifespan=lifespan)
    app.add_exception_handler(ClanServiceError, handle_service_error)
    app.add_exception_handler(RequestValidationError, handle_request_validation_error)
    app.include_router(router)
    return app


app = create_app()


if __name__ == "__main__":
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=get_env_int("PORT", 8000),
        log_level=LOG_LEVEL.lower(),
    )
