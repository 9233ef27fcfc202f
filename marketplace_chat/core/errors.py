from __future__ import annotations

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse


class APIError(Exception):
    def __init__(
        self,
        *,
        status_code: int,
        code: str,
        message: str,
        details: object | None = None,
    ) -> None:
        self.status_code = status_code
        self.code = code
        self.message = message
        self.details = details
        super().__init__(message)


class InvalidParticipants(APIError):
    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(
            status_code=status.HTTP_400_BAD_REQUEST,
            code="invalid_participants",
            message="Cannot start a conversation with these users",
            details={"reason": reason},
        )


class Unauthenticated(APIError):
    def __init__(self) -> None:
        super().__init__(
            status_code=status.HTTP_401_UNAUTHORIZED,
            code="unauthenticated",
            message="Debes iniciar sesión para contactar",
        )


class NotAParticipant(APIError):
    def __init__(self) -> None:
        super().__init__(
            status_code=status.HTTP_403_FORBIDDEN,
            code="not_a_participant",
            message="You are not a participant of this conversation",
        )


class ConversationNotFound(APIError):
    def __init__(self) -> None:
        super().__init__(
            status_code=status.HTTP_404_NOT_FOUND,
            code="conversation_not_found",
            message="Conversation not found",
        )


class InvalidContent(APIError):
    EMPTY = "empty"
    TOO_LONG = "too_long"

    def __init__(self, reason: str, *, max_length: int) -> None:
        self.reason = reason
        if reason == self.EMPTY:
            message = "El mensaje no puede estar vacío"
        else:
            message = f"El mensaje no puede exceder {max_length} caracteres"
        super().__init__(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            code="invalid_content",
            message=message,
            details={"reason": reason, "max_length": max_length},
        )


class ConversationConflict(APIError):
    """Concurrent creation of the same conversation could not be settled; retry the read."""

    def __init__(self) -> None:
        super().__init__(
            status_code=status.HTTP_409_CONFLICT,
            code="conversation_conflict",
            message="Algo salió mal, inténtalo de nuevo",
        )


class TransportUnavailable(APIError):
    def __init__(self, message: str = "Live updates are unavailable") -> None:
        super().__init__(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            code="transport_unavailable",
            message=message,
        )


def success_response(data: object, status_code: int = status.HTTP_200_OK) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"data": data})


def error_response(
    *,
    status_code: int,
    code: str,
    message: str,
    details: object | None = None,
) -> JSONResponse:
    error_payload: dict[str, object] = {"code": code, "message": message}
    if details is not None:
        error_payload["details"] = details
    payload: dict[str, object] = {"error": error_payload}
    return JSONResponse(status_code=status_code, content=payload)


def add_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(APIError)
    async def handle_api_error(_: Request, exc: APIError) -> JSONResponse:
        return error_response(
            status_code=exc.status_code,
            code=exc.code,
            message=exc.message,
            details=exc.details,
        )

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(_: Request, exc: RequestValidationError) -> JSONResponse:
        return error_response(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            code="validation_error",
            message="Request validation failed",
            details=exc.errors(),
        )

    @app.exception_handler(HTTPException)
    async def handle_http_error(_: Request, exc: HTTPException) -> JSONResponse:
        message = exc.detail if isinstance(exc.detail, str) else "Request failed"
        return error_response(
            status_code=exc.status_code,
            code="http_error",
            message=message,
            details=None if isinstance(exc.detail, str) else exc.detail,
        )

    @app.exception_handler(Exception)
    async def handle_unexpected_error(_: Request, __: Exception) -> JSONResponse:
        return error_response(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            code="internal_error",
            message="Algo salió mal, inténtalo de nuevo",
        )
