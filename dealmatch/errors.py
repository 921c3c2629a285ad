"""Domain errors raised by the outreach orchestrator.

Each carries the HTTP status the API layer should surface. Per-recipient
delivery problems are never raised; they become delivery results.
"""
from __future__ import annotations


class OutreachError(Exception):
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class AuthorizationError(OutreachError):
    status_code = 403


class NotFoundError(OutreachError):
    status_code = 404


class InvalidRequestError(OutreachError):
    status_code = 400


class QuotaExceededError(InvalidRequestError):
    def __init__(self, message: str, remaining: int):
        super().__init__(message)
        self.remaining = remaining


class OutreachWriteError(OutreachError):
    status_code = 500


class ClaimExpiredError(OutreachError):
    status_code = 410
