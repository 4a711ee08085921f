"""Application-level exceptions and FastAPI exception handlers."""

from typing import Iterable, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse


class AppException(Exception):
    """Base application exception."""

    def __init__(self, message: str, status_code: int = 500, code: str = "INTERNAL_ERROR"):
        self.message = message
        self.status_code = status_code
        self.code = code
        super().__init__(message)

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message}


class NotFoundError(AppException):
    def __init__(self, entity: str, entity_id: Optional[str] = None):
        msg = f"{entity} not found" if not entity_id else f"{entity} '{entity_id}' not found"
        super().__init__(msg, status_code=404, code="NOT_FOUND")


class AuthenticationError(AppException):
    """Credential presented at connection time is invalid, expired or unverifiable."""

    def __init__(self, message: str = "Authentication required"):
        super().__init__(message, status_code=401, code="UNAUTHORIZED")


class ConflictError(AppException):
    """Operation is not allowed from the record's current state.

    ``valid_sources`` lists the states the operation may be invoked from.
    """

    def __init__(
        self,
        message: str,
        valid_sources: Iterable[str] = (),
        current_status: Optional[str] = None,
    ):
        self.valid_sources = [str(s) for s in valid_sources]
        self.current_status = current_status
        super().__init__(message, status_code=409, code="CONFLICT")

    def to_dict(self) -> dict:
        body = super().to_dict()
        if self.valid_sources:
            body["validSources"] = self.valid_sources
        if self.current_status is not None:
            body["currentStatus"] = self.current_status
        return body


class ValidationError(AppException):
    def __init__(self, message: str):
        super().__init__(message, status_code=422, code="VALIDATION_ERROR")


# ---------------------------------------------------------------------------
# FastAPI exception handlers
# ---------------------------------------------------------------------------

def register_exception_handlers(app: FastAPI) -> None:
    """Attach all custom exception handlers to the FastAPI app."""

    @app.exception_handler(AppException)
    async def app_exception_handler(request: Request, exc: AppException) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.to_dict()},
        )
