"""Error taxonomy for the chat API and its JSON rendering.

Every failure the core raises is a ``ChatError`` subclass carrying its HTTP
status. Routers let them propagate; ``install_error_handlers`` turns them
into ``{"error": "..."}`` bodies. Upstream (store) failures are logged with
their detail and reach the client as a generic message unless the service
runs in development mode.
"""
import logging
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from roomcast.config import get_config

logger = logging.getLogger(__name__)

GENERIC_ERROR = "Internal server error"


class ChatError(Exception):
    """Base class for all chat failures."""
    status_code: int = 500
    default_message: str = GENERIC_ERROR

    def __init__(self, message: Optional[str] = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class Unauthorized(ChatError):
    status_code = 401
    default_message = "Unauthorized"


class Forbidden(ChatError):
    status_code = 403
    default_message = "Access denied"


class NotFound(ChatError):
    status_code = 404
    default_message = "Not found"


class InvalidInput(ChatError):
    status_code = 400
    default_message = "Invalid input"


class PayloadTooLarge(InvalidInput):
    """Attachment over the configured size limit (reported as 400)."""
    default_message = "File too large"


class UnsupportedMediaType(InvalidInput):
    """Attachment outside the MIME allowlist (reported as 400)."""
    default_message = "File type not allowed"


class UpstreamFailure(ChatError):
    """The durable store or the change feed failed."""
    status_code = 500


def _client_message(exc: ChatError) -> str:
    if isinstance(exc, UpstreamFailure) and not get_config().logging.is_development:
        return GENERIC_ERROR
    return exc.message


async def chat_error_handler(request: Request, exc: ChatError) -> JSONResponse:
    if isinstance(exc, UpstreamFailure):
        if get_config().logging.is_development:
            logger.error(f"Upstream failure on {request.url.path}: {exc.message}")
        else:
            logger.error(f"Upstream failure on {request.url.path}")
    return JSONResponse({"error": _client_message(exc)}, status_code=exc.status_code)


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    if errors:
        first = errors[0]
        location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
        message = f"{location}: {first.get('msg')}" if location else str(first.get("msg"))
    else:
        message = "Invalid request"
    return JSONResponse({"error": message}, status_code=400)


def install_error_handlers(app: FastAPI) -> None:
    """Register the JSON error handlers on *app*."""
    app.add_exception_handler(ChatError, chat_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
