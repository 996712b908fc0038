from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException
from typing import Optional
import logging

from .observability import REQUEST_ID_HEADER, get_request_id, log_ctx, log_ctx_json

logger = logging.getLogger("snapmeal-errors")


class SnapMealError(Exception):
    default_code = "INTERNAL_ERROR"
    default_message = "Internal server error"
    default_status_code = 500

    def __init__(
        self,
        message: Optional[str] = None,
        code: Optional[str] = None,
        status_code: Optional[int] = None,
        details: Optional[dict] = None,
    ):
        self.code = code or self.default_code
        self.message = message or self.default_message
        self.status_code = status_code or self.default_status_code
        self.details = details or {}
        super().__init__(self.message)


class Unauthorized(SnapMealError):
    default_code = "UNAUTHORIZED"
    default_message = "Unauthorized"
    default_status_code = 401


class BadRequest(SnapMealError):
    default_code = "VALIDATION_FAILED"
    default_message = "Bad request"
    default_status_code = 400


class ServerError(SnapMealError):
    pass


# The two below never reach an HTTP response: they are raised and handled
# inside the detached analysis task.
class AnalysisError(SnapMealError):
    default_code = "AI_PROVIDER_ERROR"
    default_message = "Inference provider error"
    default_status_code = 502


class ParseError(SnapMealError):
    default_code = "PARSE_FAILED"
    default_message = "Model output could not be parsed"
    default_status_code = 502


def error_body(message: str, code: str, details: Optional[dict] = None) -> dict:
    body = {"error": message, "status": "error", "code": code}
    if details:
        body["details"] = details
    return body


def setup_error_handlers(app: FastAPI):
    def _json_error_response(request: Request, status_code: int, content: dict) -> JSONResponse:
        response = JSONResponse(status_code=status_code, content=content)
        request_id = get_request_id(request)
        if request_id:
            response.headers[REQUEST_ID_HEADER] = request_id
        return response

    @app.exception_handler(SnapMealError)
    async def snapmeal_error_handler(request: Request, exc: SnapMealError):
        return _json_error_response(
            request=request,
            status_code=exc.status_code,
            content=error_body(exc.message, exc.code, exc.details),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        field_errors = []
        for error in exc.errors():
            field_errors.append({
                "field": ".".join(str(p) for p in error["loc"]),
                "issue": error["msg"]
            })

        return _json_error_response(
            request=request,
            status_code=400,
            content=error_body("Bad request", "VALIDATION_FAILED", {"fieldErrors": field_errors}),
        )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        code = "INTERNAL_ERROR"
        if exc.status_code == 401:
            code = "UNAUTHORIZED"
        elif exc.status_code == 404:
            code = "NOT_FOUND"
        elif exc.status_code == 405:
            code = "METHOD_NOT_ALLOWED"

        return _json_error_response(
            request=request,
            status_code=exc.status_code,
            content=error_body(exc.detail if isinstance(exc.detail, str) else "Error", code),
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        logger.error(
            "Unhandled exception context=%s",
            log_ctx_json(log_ctx(request, extra={"status_code": 500})),
            exc_info=True,
        )
        # Internal details stay in the log.
        return _json_error_response(
            request=request,
            status_code=500,
            content=error_body("Internal server error", "INTERNAL_ERROR"),
        )
