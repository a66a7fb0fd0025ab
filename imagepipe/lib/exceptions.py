"""Pipeline error taxonomy and the Litestar handlers that render it.

Every response uses the ``{"success": false, "message": ...}`` envelope.
Client errors carry their specific message; internal errors are logged with
full context and answered with a generic message.
"""

import logging

from litestar import Request, Response
from litestar.exceptions import HTTPException, ValidationException
from litestar.status_codes import (
    HTTP_400_BAD_REQUEST,
    HTTP_404_NOT_FOUND,
    HTTP_409_CONFLICT,
    HTTP_500_INTERNAL_SERVER_ERROR,
)

from imagepipe.lib import observability

logger = logging.getLogger(__name__)


class ImagePipeError(Exception):
    """Base class for errors raised inside the image pipeline."""

    status_code = HTTP_500_INTERNAL_SERVER_ERROR
    public = False


class RequestValidationError(ImagePipeError):
    """Malformed or out-of-policy request input."""

    status_code = HTTP_400_BAD_REQUEST
    public = True


class UploadValidationError(RequestValidationError):
    """Bad mime type, oversize or empty file."""


class AccessLinkError(RequestValidationError):
    """Access link request outside policy (TTL bounds, batch size)."""


class NotFoundError(ImagePipeError):
    """The requested asset does not exist or has been deleted."""

    status_code = HTTP_404_NOT_FOUND
    public = True


class ConflictError(ImagePipeError):
    """The asset is not in a state that allows the requested change."""

    status_code = HTTP_409_CONFLICT
    public = True


class TranscodeError(ImagePipeError):
    """No variant could be produced from the source image."""


class StorageError(ImagePipeError):
    """An object store call failed."""


class ObjectExistsError(StorageError):
    """A non-upsert put targeted a path that already holds an object."""


class MetadataError(ImagePipeError):
    """A relational write for an asset failed."""


def _error_response(status_code: int, message: str) -> Response:
    return Response(
        content={"success": False, "message": message},
        status_code=status_code,
        media_type="application/json",
    )


def pipeline_exception_handler(request: Request, exc: ImagePipeError) -> Response:
    if exc.public:
        return _error_response(exc.status_code, str(exc))

    if not observability.exception(
        "Pipeline failure on {method} {path}",
        method=request.method,
        path=request.url.path,
    ):
        logger.exception("Pipeline failure on %s %s", request.method, request.url.path)
    return _error_response(exc.status_code, "Image processing failed")


def http_exception_handler(request: Request, exc: HTTPException) -> Response:
    detail = exc.detail if isinstance(exc.detail, str) else str(exc.detail)
    if isinstance(exc, ValidationException) and exc.extra:
        detail = f"{detail}: {exc.extra}"
    return _error_response(exc.status_code, detail)


def internal_server_error_handler(request: Request, exc: Exception) -> Response:
    if not observability.exception(
        "Unhandled exception on {method} {path}",
        method=request.method,
        path=request.url.path,
    ):
        logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _error_response(HTTP_500_INTERNAL_SERVER_ERROR, "Internal Server Error")


EXCEPTION_HANDLERS = {
    ImagePipeError: pipeline_exception_handler,
    HTTPException: http_exception_handler,
    Exception: internal_server_error_handler,
}
