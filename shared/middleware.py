"""FastAPI middleware for request ID injection and error handling."""

from collections.abc import Callable
from contextvars import ContextVar
from uuid import uuid4

import structlog
from fastapi import Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.base import BaseHTTPMiddleware

from shared.exceptions import PROBLEM_BASE_URI, ProblemDetailError

PROBLEM_MEDIA_TYPE = "application/problem+json"

request_id_var: ContextVar[str] = ContextVar("request_id", default="")


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Tag every request and response with X-Request-ID and bind it for logging."""

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Callable[..., Response]]
    ):
        rid = request.headers.get("X-Request-ID") or str(uuid4())
        token = request_id_var.set(rid)
        structlog.contextvars.bind_contextvars(request_id=rid)

        try:
            response = await call_next(request)
            response.headers["X-Request-ID"] = rid
            return response
        finally:
            structlog.contextvars.unbind_contextvars("request_id")
            request_id_var.reset(token)


def _problem(request: Request, status: int, body: dict) -> JSONResponse:
    body.setdefault("instance", str(request.url.path))
    return JSONResponse(status_code=status, content=body, media_type=PROBLEM_MEDIA_TYPE)


async def problem_detail_handler(request: Request, exc: ProblemDetailError) -> JSONResponse:
    """Render a ProblemDetailError as RFC 9457 JSON."""
    body: dict = {
        "type": exc.type_uri,
        "title": exc.title,
        "status": exc.status,
        "detail": exc.detail,
    }
    if exc.violations:
        body["violations"] = exc.violations
    return _problem(request, exc.status, body)


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Render FastAPI/Pydantic request validation errors as problem details with violations."""
    violations = [
        {
            "field": ".".join(str(part) for part in err.get("loc", ()) if part != "body")
            or "(root)",
            "message": err.get("msg", "Validation error"),
            "constraint": err.get("type", "validation"),
        }
        for err in exc.errors()
    ]
    return _problem(
        request,
        422,
        {
            "type": f"{PROBLEM_BASE_URI}/validation-error",
            "title": "Validation Error",
            "status": 422,
            "detail": f"Request contains {len(violations)} validation error(s)",
            "violations": violations,
        },
    )


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    detail = exc.detail if isinstance(exc.detail, str) else str(exc.detail)
    return _problem(
        request,
        exc.status_code,
        {
            "type": "about:blank",
            "title": detail if isinstance(exc.detail, str) else "Error",
            "status": exc.status_code,
            "detail": detail,
        },
    )
