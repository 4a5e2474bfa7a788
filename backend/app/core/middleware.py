"""
Request Middleware

Assigns every request an id (honouring an inbound X-Request-ID), resets the
tenant log context, times the request and turns anything the exception
handlers did not catch into a JSON 500 that still carries the request id.
"""
import time
from typing import Callable

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from app.core.logging import (
    elapsed_ms,
    api_logger,
    company_id_var,
    generate_request_id,
    request_id_var,
    request_start_var,
)

REQUEST_ID_HEADER = 'X-Request-ID'
QUIET_PATHS = frozenset({'/healthz', '/readyz'})


class RequestContextMiddleware(BaseHTTPMiddleware):

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or generate_request_id()
        request.state.request_id = request_id

        tokens = (
            (request_id_var, request_id_var.set(request_id)),
            (request_start_var, request_start_var.set(time.perf_counter())),
            (company_id_var, company_id_var.set(None)),
        )
        summary = f"{request.method} {request.url.path}"
        quiet = request.url.path in QUIET_PATHS

        try:
            try:
                response = await call_next(request)
            except Exception as e:
                api_logger.error(f"{summary} -> 500 (unhandled)", error=e, duration_ms=elapsed_ms(request_start_var.get()))
                response = JSONResponse(
                    status_code=500,
                    content={'error': 'Internal server error', 'request_id': request_id},
                )
            else:
                if not quiet:
                    report = api_logger.info if response.status_code < 400 else api_logger.warning
                    report(
                        f"{summary} -> {response.status_code}",
                        duration_ms=elapsed_ms(request_start_var.get()),
                    )
            response.headers[REQUEST_ID_HEADER] = request_id
            return response
        finally:
            for var, token in reversed(tokens):
                var.reset(token)
