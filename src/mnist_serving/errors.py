from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from http import HTTPStatus
from typing import ClassVar, Final


class ErrorKind(str, Enum):
    invalid_input = "invalid_input"
    payload_too_large = "payload_too_large"
    not_found = "not_found"
    processing_failure = "processing_failure"
    unexpected = "unexpected"


@dataclass(frozen=True)
class ErrorPolicy:
    """How one error kind is surfaced: status, log level, metric and client message.

    ``client_message`` of None means the error's own message is safe to show.
    """

    http_status: HTTPStatus
    log_level: int
    error_reason: str | None
    client_message: str | None


_POLICIES: Final[dict[ErrorKind, ErrorPolicy]] = {
    ErrorKind.invalid_input: ErrorPolicy(HTTPStatus.BAD_REQUEST, logging.WARNING, None, None),
    ErrorKind.payload_too_large: ErrorPolicy(
        HTTPStatus.REQUEST_ENTITY_TOO_LARGE, logging.WARNING, None, None
    ),
    ErrorKind.not_found: ErrorPolicy(HTTPStatus.NOT_FOUND, logging.WARNING, None, None),
    ErrorKind.processing_failure: ErrorPolicy(
        HTTPStatus.INTERNAL_SERVER_ERROR,
        logging.ERROR,
        "processing_failure",
        "Error while processing the request with the model.",
    ),
    ErrorKind.unexpected: ErrorPolicy(
        HTTPStatus.INTERNAL_SERVER_ERROR,
        logging.ERROR,
        "unexpected",
        "An unexpected internal server error occurred.",
    ),
}


class ServingError(Exception):
    kind: ClassVar[ErrorKind] = ErrorKind.unexpected

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class InvalidInputError(ServingError):
    kind = ErrorKind.invalid_input


class PayloadTooLargeError(ServingError):
    kind = ErrorKind.payload_too_large


class NotFoundError(ServingError):
    kind = ErrorKind.not_found


class ProcessingError(ServingError):
    """Decoding or inference failed on well-formed input; ``__cause__`` holds the origin."""

    kind = ErrorKind.processing_failure


class UnexpectedError(ServingError):
    kind = ErrorKind.unexpected


@dataclass(frozen=True)
class ApiError:
    timestamp: datetime
    status: int
    error: str
    message: str
    path: str

    def to_dict(self) -> dict[str, object]:
        return {
            "timestamp": self.timestamp.isoformat().replace("+00:00", "Z"),
            "status": self.status,
            "error": self.error,
            "message": self.message,
            "path": self.path,
        }


def classify(exc: BaseException) -> ErrorKind:
    if isinstance(exc, ServingError):
        return exc.kind
    return ErrorKind.unexpected


def policy_for(kind: ErrorKind) -> ErrorPolicy:
    return _POLICIES[kind]


def status_for(kind: ErrorKind) -> int:
    return int(_POLICIES[kind].http_status)


def client_message_for(exc: BaseException) -> str:
    policy = policy_for(classify(exc))
    if policy.client_message is not None:
        return policy.client_message
    if isinstance(exc, ServingError):
        return exc.message
    return HTTPStatus(policy.http_status).phrase


def new_api_error(http_status: int, path: str, message: str) -> ApiError:
    return ApiError(
        timestamp=datetime.now(UTC),
        status=http_status,
        error=HTTPStatus(http_status).phrase,
        message=message,
        path=path,
    )


def new_error(kind: ErrorKind, path: str, message: str) -> ApiError:
    return new_api_error(status_for(kind), path, message)
