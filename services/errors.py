"""Typed failures raised by the service layer.

Every error carries the HTTP status the API layer renders it with, so route
handlers never translate exceptions by hand.
"""
from __future__ import annotations


class ServiceError(RuntimeError):
    """Base class for every failure surfaced to API callers."""

    status_code = 400

    def __init__(self, message: str, *, status_code: int | None = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code

    @property
    def code(self) -> str:
        return type(self).__name__

    def to_dict(self):
        return {'error': self.message, 'code': self.code}


class ValidationError(ServiceError):
    status_code = 400


class NotFoundError(ServiceError):
    status_code = 404


class ConflictError(ServiceError):
    status_code = 409


class PersistenceError(ServiceError):
    status_code = 500


class Unauthenticated(ServiceError):
    status_code = 401


class Forbidden(ServiceError):
    status_code = 403


class AccountSuspended(Forbidden):
    pass


# Reservation preconditions: user-actionable, never retried.
class NotCertified(ServiceError):
    status_code = 400


class AlreadyBorrowing(ServiceError):
    status_code = 400


class BicycleUnavailable(ServiceError):
    status_code = 400
