from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError, ResponseValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
import logging

logger = logging.getLogger(__name__)


class LendingException(Exception):
    """Base exception for lending errors, carries the HTTP status to answer with."""

    status_code = 500

    def __init__(self, message: str):
        self.message = message
        super().__init__(self.message)


class NotFoundError(LendingException):
    status_code = 404


class BadRequestError(LendingException):
    status_code = 400


class ForbiddenError(LendingException):
    status_code = 403


class ConflictError(LendingException):
    status_code = 409


class UnauthorizedError(LendingException):
    status_code = 401


class DatabaseError(LendingException):
    def __init__(self, operation: str, details: str):
        super().__init__(f"Database error during {operation}: {details}")


# Missing records
class UserNotFoundError(NotFoundError):
    def __init__(self, user_id):
        super().__init__(f"User with id {user_id} not found")


class ResourceNotFoundError(NotFoundError):
    def __init__(self, resource_id):
        super().__init__(f"Resource with id {resource_id} not found")


class CopyNotFoundError(NotFoundError):
    def __init__(self, copy_id):
        super().__init__(f"Copy with id {copy_id} not found")


class BorrowingNotFoundError(NotFoundError):
    def __init__(self, borrowing_id):
        super().__init__(f"Borrowing with id {borrowing_id} not found")


class ReviewNotFoundError(NotFoundError):
    def __init__(self, resource_id):
        super().__init__(f"No review of yours found for resource {resource_id}")


class ContactRequestNotFoundError(NotFoundError):
    def __init__(self, request_id):
        super().__init__(f"Contact request with id {request_id} not found")


# Borrowing workflow
class CopyNotAvailableError(BadRequestError):
    def __init__(self, copy_id):
        super().__init__(f"Copy with id {copy_id} is not available")


class BorrowingLimitReachedError(ForbiddenError):
    def __init__(self, limit: int):
        super().__init__(f"Maximum number of active borrowings reached ({limit})")


class BorrowingAlreadyReturnedError(BadRequestError):
    def __init__(self, borrowing_id):
        super().__init__(f"Borrowing with id {borrowing_id} has already been returned")


class BorrowingNotRenewableError(BadRequestError):
    def __init__(self, message: str = "Only active borrowings can be renewed"):
        super().__init__(message)


class InvalidDueDateError(BadRequestError):
    def __init__(self, message: str = "Due date cannot be before the borrowing date"):
        super().__init__(message)


class CopyInUseError(BadRequestError):
    def __init__(self, copy_id):
        super().__init__(f"Copy with id {copy_id} cannot be removed while it is borrowed")


class CopyAvailabilityError(BadRequestError):
    def __init__(self, copy_id, borrowed: bool):
        if borrowed:
            message = f"Copy with id {copy_id} is borrowed and cannot be marked available"
        else:
            message = f"Copy with id {copy_id} is not borrowed and cannot be marked unavailable"
        super().__init__(message)


class ResourceInUseError(BadRequestError):
    def __init__(self, resource_id):
        super().__init__(
            f"Resource with id {resource_id} cannot be removed while one of its copies is borrowed"
        )


class PermissionDeniedError(ForbiddenError):
    def __init__(self, message: str = "You are not allowed to perform this action"):
        super().__init__(message)


# Uniqueness
class EmailAlreadyRegisteredError(ConflictError):
    def __init__(self, email: str):
        super().__init__(f"Email {email} is already registered")


class DuplicateReviewError(ConflictError):
    def __init__(self, resource_id):
        super().__init__(f"You have already reviewed resource {resource_id}")


class DuplicateFavoriteError(ConflictError):
    def __init__(self, resource_id):
        super().__init__(f"Resource {resource_id} is already in your favorites")


# Authentication
class InvalidCredentialsError(UnauthorizedError):
    def __init__(self):
        super().__init__("Invalid email or password")


class AccountLockedError(UnauthorizedError):
    def __init__(self, minutes: int):
        super().__init__(
            f"Account temporarily locked after too many failed attempts. Try again in {minutes} minutes."
        )


# Handlers

INVALID_INPUT_DETAIL = "Invalid request parameters. Please check your input."
SERVER_ERROR_DETAIL = "An unexpected error occurred. Please contact support."


def _route(request: Request) -> str:
    return f"{request.method} {request.url.path}"


async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    logger.warning(f"{_route(request)} answered {exc.status_code}: {exc.detail}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail},
        headers=getattr(exc, "headers", None),
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError):
    fields = [".".join(str(part) for part in error["loc"]) for error in exc.errors()]
    logger.warning(f"{_route(request)} rejected, invalid fields: {fields}")
    return JSONResponse(status_code=422, content={"detail": INVALID_INPUT_DETAIL})


async def response_validation_exception_handler(
    request: Request, exc: ResponseValidationError
):
    logger.error(f"{_route(request)} built an invalid response: {exc.errors()}")
    return JSONResponse(status_code=500, content={"detail": SERVER_ERROR_DETAIL})


async def general_exception_handler(request: Request, exc: Exception):
    logger.exception(f"{_route(request)} failed", exc_info=exc)
    return JSONResponse(status_code=500, content={"detail": SERVER_ERROR_DETAIL})


async def lending_exception_handler(request: Request, exc: LendingException):
    if exc.status_code >= 500:
        logger.error(f"{_route(request)} {type(exc).__name__}: {exc}")
    else:
        logger.warning(f"{_route(request)} {type(exc).__name__}: {exc}")
    headers = None
    if isinstance(exc, UnauthorizedError):
        headers = {"WWW-Authenticate": "Basic"}
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": str(exc)},
        headers=headers,
    )


def add_exception_handlers(app: FastAPI):
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(
        ResponseValidationError, response_validation_exception_handler
    )
    app.add_exception_handler(Exception, general_exception_handler)
    app.add_exception_handler(LendingException, lending_exception_handler)
