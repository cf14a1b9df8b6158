"""Logging configuration: loguru setup, standard logging interception, request context."""

import logging
import re
import sys
import uuid
from collections.abc import Callable
from pathlib import Path

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from loguru import logger
from starlette.middleware.base import BaseHTTPMiddleware

from mindscript.gateway.exceptions import APIError
from mindscript.gateway.metrics import log_error

JOB_PATH = re.compile(r"^/v1/jobs/(?P<job_id>[0-9a-fA-F-]{36})(?:/|$)")


class InterceptHandler(logging.Handler):
    """Route standard library logging to loguru."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        # Find caller frame (skip logging internals)
        frame, depth = sys._getframe(), 0
        while frame and (depth == 0 or frame.f_code.co_filename == logging.__file__):
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


def configure_logging(log_dir: Path, name: str = "gateway") -> None:
    """Configure loguru with stdout + JSON file, intercept standard logging.

    `name` picks the JSONL file, so the gateway and each worker process log separately.
    """
    logger.remove()
    logger.add(
        sys.stdout,
        format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>",
        level="INFO",
        colorize=True,
    )

    log_dir.mkdir(parents=True, exist_ok=True)
    logger.add(
        log_dir / f"{name}.jsonl",
        format="{message}",
        level="INFO",
        serialize=True,
        rotation="100 MB",
        retention=100,
        compression="gz",
    )

    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)


def request_log_context(request: Request) -> dict[str, str]:
    context: dict[str, str] = {}
    if request_id := getattr(request.state, "request_id", None):
        context["request_id"] = request_id
    if user_id := request.headers.get("X-User-Id"):
        context["user_id"] = user_id
    if match := JOB_PATH.match(request.url.path):
        context["job_id"] = match["job_id"].lower()
    return context


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Add request_id, the calling user and the job a path names to the logging context."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = uuid.uuid4().hex[:8]
        request.state.request_id = request_id
        context = request_log_context(request)
        request.state.log_context = context

        with logger.contextualize(**context):
            response = await call_next(request)

        return response


async def api_error_handler(request: Request, exc: Exception) -> JSONResponse:
    assert isinstance(exc, APIError)
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
    elif exc.status_code == 409:
        logger.info(f"{request.method} {request.url.path} rejected: {exc}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Log unhandled exceptions with request context."""
    context = getattr(request.state, "log_context", None) or request_log_context(request)

    described = " ".join(f"{key}={value}" for key, value in context.items())
    logger.exception(f"Unhandled exception on {request.method} {request.url.path} {described}: {exc}")

    await log_error(
        f"Unhandled 500: {exc}",
        method=request.method,
        path=request.url.path,
        **context,
    )

    return JSONResponse(status_code=500, content={"detail": "Internal server error"})
