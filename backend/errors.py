"""
Structured failures returned by the service layer.

Services never raise for validation, not-found or business-rule problems;
they return a Failure and the API layer turns it into {"code", "message"}
with the matching HTTP status.
"""
from __future__ import annotations
from dataclasses import dataclass


@dataclass(frozen=True)
class Failure:
    status: int
    code: str
    message: str


def invalid(message: str, code: str = "VALIDATION_ERROR") -> Failure:
    return Failure(400, code, message)


def rejected(code: str, message: str) -> Failure:
    return Failure(400, code, message)


def not_found(code: str, message: str) -> Failure:
    return Failure(404, code, message)


def unauthorized(message: str = "User not authenticated") -> Failure:
    return Failure(401, "UNAUTHORIZED", message)


def forbidden(message: str = "You do not have permission to perform this action") -> Failure:
    return Failure(403, "FORBIDDEN", message)


class ApiError(Exception):
    """Raised at the HTTP boundary to send a Failure as the response."""

    def __init__(self, failure: Failure):
        super().__init__(failure.message)
        self.failure = failure
