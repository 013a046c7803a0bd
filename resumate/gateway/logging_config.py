"""loguru setup for the billing gateway.

Everything, including stdlib loggers from uvicorn, sqlalchemy and alembic,
ends up in two sinks: a human-readable stdout stream and a JSON lines file
that keeps the bound fields (user_id, event_id, subscription_id, ...) intact.
"""

import logging
import sys
import uuid
from collections.abc import Callable
from pathlib import Path

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from loguru import logger
from starlette.middleware.base import BaseHTTPMiddleware

from resumate.gateway.exceptions import APIError
from resumate.gateway.metrics import log_error

REQUEST_ID_HEADER = "x-request-id"

STDOUT_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{line}</cyan> - <level>{message}</level> | {extra}"
)


class InterceptHandler(logging.Handler):
    def emit(self, record: logging.LogRecord) -> None:
        level: str | int
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        frame, depth = logging.currentframe(), 2
        while frame is not None and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


def configure_logging(log_dir: Path, level: str = "INFO") -> None:
    logger.remove()
    logger.add(sys.stdout, format=STDOUT_FORMAT, level=level, colorize=True)

    log_dir.mkdir(parents=True, exist_ok=True)
    logger.add(
        log_dir / "billing.jsonl",
        level=level,
        serialize=True,
        rotation="50 MB",
        retention=30,
        compression="gz",
    )

    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)
    # SQL echo is controlled by SQLALCHEMY_ECHO, not by the root level
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Tag every log line of a request with its id, reusing the caller's id when one is sent."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex[:8]
        request.state.request_id = request_id

        with logger.contextualize(request_id=request_id):
            response = await call_next(request)

        response.headers[REQUEST_ID_HEADER] = request_id
        return response


async def api_error_handler(request: Request, exc: APIError) -> JSONResponse:
    log = logger.bind(
        path=request.url.path,
        code=exc.code,
        status_code=exc.status_code,
        user_id=getattr(request.state, "user_id", None),
    )
    if exc.status_code >= 500:
        log.error(f"Billing request failed: {exc}")
    else:
        log.info(f"Billing request rejected: {exc}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    request_id = getattr(request.state, "request_id", None)
    user_id = getattr(request.state, "user_id", None)

    logger.bind(method=request.method, path=request.url.path, user_id=user_id).exception(
        f"Unhandled exception: {exc}"
    )
    await log_error(
        f"Unhandled 500: {type(exc).__name__}: {exc}",
        method=request.method,
        path=request.url.path,
        request_id=request_id,
        user_id=user_id,
    )
    return JSONResponse(status_code=500, content={"detail": "Internal server error", "request_id": request_id})
