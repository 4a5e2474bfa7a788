"""
Domain error taxonomy for the forms service.

Every error carries a human readable message plus optional structured
details, and knows the HTTP status the API layer should answer with.
"""
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from app.core.logging import api_logger


class FormsError(Exception):
    status_code = 500

    def __init__(self, message: str, *, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"error": self.message}
        if self.details:
            body["details"] = self.details
        return body


class ValidationError(FormsError):
    """Required input missing or malformed."""
    status_code = 400

    def __init__(self, message: str = "Missing required fields", *, field_errors: Optional[Dict[str, str]] = None):
        self.field_errors = dict(field_errors or {})
        super().__init__(message, details={"field_errors": self.field_errors} if self.field_errors else None)


class NotFoundError(FormsError):
    status_code = 404


class PersistenceError(FormsError):
    """A persistence call failed. `stage` names the step that broke."""

    def __init__(
        self,
        message: str,
        *,
        operation: Optional[str] = None,
        stage: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.operation = operation
        self.stage = stage
        merged = dict(details or {})
        if operation:
            merged.setdefault("operation", operation)
        if stage:
            merged.setdefault("stage", stage)
        super().__init__(message, details=merged)


class PartialWriteError(PersistenceError):
    """
    Raised when an operation failed after some of its writes were already
    committed. Callers should reload before retrying.
    """

    def __init__(
        self,
        message: str,
        *,
        operation: Optional[str] = None,
        stage: Optional[str] = None,
        completed: int = 0,
        failed_at: Optional[str] = None,
    ):
        self.completed = completed
        self.failed_at = failed_at
        super().__init__(
            message,
            operation=operation,
            stage=stage,
            details={"completed": completed, "failed_at": failed_at, "consistent": False},
        )


async def forms_error_handler(request: Request, exc: FormsError) -> JSONResponse:
    log = api_logger.error if exc.status_code >= 500 else api_logger.warning
    log(
        f"{type(exc).__name__} on {request.method} {request.url.path}: {exc.message}",
        status=exc.status_code,
        **({"details": exc.details} if exc.details else {}),
    )
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    api_logger.warning(f"Malformed payload on {request.method} {request.url.path}")
    errors = [
        {"loc": list(err.get("loc", ())), "msg": err.get("msg")}
        for err in exc.errors()
    ]
    return JSONResponse(status_code=400, content={"error": "Invalid request data", "details": {"errors": errors}})


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(FormsError, forms_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
