"""HTTP middleware: request ids, error fallback, request logging and timing."""

import time
import uuid
from datetime import datetime
from typing import Callable, Iterable

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from .exceptions import WorkflowEngineError, create_error_response, get_status_code_for_error
from .logging import clear_logging_context, get_logger, set_logging_context

logger = get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"
RESPONSE_TIME_HEADER = "X-Response-Time"
HEALTH_PATHS = ("/health", "/health/ready", "/health/live")


class ErrorHandlingMiddleware(BaseHTTPMiddleware):
    """Tag every request with an id and turn escaped exceptions into JSON.

    Engine errors normally reach the application's exception handlers first;
    this is the last line for anything raised outside them.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
        set_logging_context(request_id=request_id, method=request.method, path=request.url.path)
        started = time.perf_counter()

        try:
            response = await call_next(request)
        except WorkflowEngineError as e:
            logger.warning(f"{e.error_code} escaped handlers on {request.method} {request.url.path}",
                           extra={"extra_fields": {"error": e.to_dict()}})
            response = JSONResponse(status_code=get_status_code_for_error(e), content=create_error_response(e))
        except Exception as e:
            logger.error(f"Unhandled {type(e).__name__} on {request.method} {request.url.path}: {e}",
                         exc_info=True)
            response = JSONResponse(
                status_code=500,
                content={
                    "error": "InternalServerError",
                    "message": "An unexpected error occurred",
                    "details": {"error_type": type(e).__name__, "timestamp": datetime.utcnow().isoformat()},
                    "request_id": request_id,
                },
            )
        finally:
            clear_logging_context()

        response.headers[REQUEST_ID_HEADER] = request_id
        if response.status_code >= 400:
            logger.info(f"{request.method} {request.url.path} -> {response.status_code} "
                        f"in {time.perf_counter() - started:.3f}s [{request_id}]")
        return response


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Debug logging of requests and responses.

    Header values are not logged; they may carry credentials.
    """

    def __init__(self, app, skip_paths: Iterable[str] = HEALTH_PATHS):
        super().__init__(app)
        self.skip_paths = frozenset(skip_paths)

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if request.url.path in self.skip_paths:
            return await call_next(request)

        logger.debug(f"-> {request.method} {request.url.path} query={dict(request.query_params)} "
                     f"length={request.headers.get('content-length', '0')}")
        response = await call_next(request)
        logger.debug(f"<- {request.method} {request.url.path} {response.status_code} "
                     f"type={response.headers.get('content-type', '')}")
        return response


class PerformanceMonitoringMiddleware(BaseHTTPMiddleware):
    """Report each request's duration and warn about slow ones.

    Advance loops with slow automations show up here first.
    """

    def __init__(self, app, slow_request_threshold: float = 5.0):
        super().__init__(app)
        self.slow_request_threshold = slow_request_threshold

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        started = time.perf_counter()
        response = await call_next(request)
        elapsed = time.perf_counter() - started

        if elapsed > self.slow_request_threshold:
            logger.warning(f"Slow request: {request.method} {request.url.path} took {elapsed:.3f}s "
                           f"(threshold {self.slow_request_threshold}s)")

        response.headers[RESPONSE_TIME_HEADER] = f"{elapsed:.3f}s"
        return response
