"""
FastAPI exception handlers.

``futureself_error_handler`` turns FutureSelfError into a structured JSON
response using the registry. ``request_validation_handler`` maps FastAPI
body validation failures onto FS-VAL-001 so every 4xx shares one shape.
"""

import logging

from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from futureself.core.errors import FutureSelfError
from futureself.core.errors.registry import error_registry

logger = logging.getLogger(__name__)


def _error_body(code: str, title: str, message: str, retryable: bool,
                user_action_required: bool, remediation: list) -> dict:
    return {
        "error": {
            "code": code,
            "title": title,
            "message": message,
            "retryable": retryable,
            "user_action_required": user_action_required,
            "remediation": remediation,
        }
    }


async def futureself_error_handler(request: Request, exc: FutureSelfError) -> JSONResponse:
    """Convert FutureSelfError into a structured JSON response."""
    entry = error_registry.get(exc.code)

    if entry is None:
        logger.error(
            "unregistered_error_code",
            extra={"error.code": exc.code, "error.message": exc.detail},
        )
        return JSONResponse(
            status_code=500,
            content=_error_body(exc.code, "Internal error", "An unexpected error occurred.", False, False, []),
        )

    log_extra = {
        "error.code": exc.code,
        "error.message": exc.detail,
        "error.retryable": entry.retryable,
        "http.path": request.url.path,
        **{f"error.ctx.{k}": v for k, v in exc.context.items()},
    }
    _severity_to_log_fn(entry.severity)(entry.title, extra=log_extra)

    return JSONResponse(
        status_code=entry.http_status,
        content=_error_body(
            entry.code,
            entry.title,
            entry.safe_message,
            entry.retryable,
            entry.user_action_required,
            entry.remediation,
        ),
        headers=exc.headers or None,
    )


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Render body/query validation errors as FS-VAL-001 with a readable message."""
    message = ", ".join(
        f"{'.'.join(str(p) for p in err.get('loc', ())[1:]) or 'body'}: {err.get('msg')}"
        for err in exc.errors()
    )
    logger.info("request_validation_failed", extra={"http.path": request.url.path, "errors": message})
    return JSONResponse(
        status_code=400,
        content=_error_body(
            "FS-VAL-001",
            "Invalid request body",
            f"Validation error: {message}",
            False,
            True,
            [],
        ),
    )


def _severity_to_log_fn(severity: str):
    return {
        "DEBUG": logger.debug,
        "INFO": logger.info,
        "WARN": logger.warning,
        "ERROR": logger.error,
        "CRITICAL": logger.critical,
    }.get(severity, logger.error)
