import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from linkdrop.core.errors import ConflictError, GoneError, InvalidKeyError, NotFoundError, StorageIOError

logger = logging.getLogger("linkdrop")

_STATUS_CODES = {
    400: "BAD_REQUEST",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    410: "GONE",
    413: "PAYLOAD_TOO_LARGE",
    415: "UNSUPPORTED_MEDIA_TYPE",
    429: "RATE_LIMITED",
    503: "UNAVAILABLE",
}

RETRY_AFTER_SECONDS = 5


def error_response(status_code: int, message: str, headers: dict | None = None, **extra) -> JSONResponse:
    body = {"code": _STATUS_CODES.get(status_code, "ERROR"), "message": message, **extra}
    return JSONResponse({"error": body}, status_code=status_code, headers=headers)


def _unavailable() -> JSONResponse:
    return error_response(
        503,
        "File temporarily unavailable, please retry",
        headers={"Retry-After": str(RETRY_AFTER_SECONDS)},
    )


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(NotFoundError)
    async def not_found_handler(request: Request, exc: NotFoundError):
        return error_response(404, "File not found")

    @app.exception_handler(GoneError)
    async def gone_handler(request: Request, exc: GoneError):
        return error_response(410, str(exc), reason=exc.reason.value)

    @app.exception_handler(StorageIOError)
    async def storage_handler(request: Request, exc: StorageIOError):
        logger.error("event=storage_unavailable path=%s error=%s cause=%r", request.url.path, exc, exc.__cause__)
        return _unavailable()

    @app.exception_handler(ConflictError)
    async def conflict_handler(request: Request, exc: ConflictError):
        logger.error("event=token_allocation_failed path=%s error=%s", request.url.path, exc)
        return _unavailable()

    @app.exception_handler(InvalidKeyError)
    async def invalid_key_handler(request: Request, exc: InvalidKeyError):
        logger.error("event=invalid_storage_key path=%s error=%s", request.url.path, exc)
        return JSONResponse({"error": {"code": "INTERNAL", "message": "Internal Server Error"}}, status_code=500)

    @app.exception_handler(StarletteHTTPException)
    async def http_handler(request: Request, exc: StarletteHTTPException):
        detail = exc.detail if isinstance(exc.detail, str) else "Request failed"
        return error_response(exc.status_code, detail, headers=getattr(exc, "headers", None))

    @app.exception_handler(RequestValidationError)
    async def validation_handler(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        first = errors[0] if errors else {}
        field = ".".join(str(part) for part in first.get("loc", ()) if part not in {"body", "query", "path"})
        message = f"{field}: {first.get('msg', 'invalid value')}" if field else "Invalid request"
        return error_response(400, message)
