"""
Error taxonomy shared by every layer.

Services raise these; the HTTP layer maps them to status codes (see
`api/main.py`). Storage backends raise `StorageError` /
`UniqueConstraintError` only, and services translate those into this taxonomy.
"""

from __future__ import annotations


class ServiceError(Exception):
    status_code = 500
    code = "error"

    def __init__(self, message: str = "", **details: object) -> None:
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__
        self.details = details


# Authentication: the caller could not be identified.
class Unauthenticated(ServiceError):
    status_code = 401
    code = "unauthenticated"


class TokenExpired(Unauthenticated):
    code = "token_expired"


class TokenMalformed(Unauthenticated):
    code = "token_malformed"


class TokenSignatureInvalid(Unauthenticated):
    code = "token_signature_invalid"


class TokenRevoked(Unauthenticated):
    code = "token_revoked"


# Authorization: the caller is known but may not do this.
class Forbidden(ServiceError):
    status_code = 403
    code = "forbidden"


class NotFound(ServiceError):
    status_code = 404
    code = "not_found"


class UniquenessViolation(ServiceError):
    status_code = 409
    code = "uniqueness_violation"


class Conflict(ServiceError):
    status_code = 409
    code = "conflict"


class AlreadyDeleted(ServiceError):
    status_code = 409
    code = "already_deleted"


class InvalidField(ServiceError):
    status_code = 400
    code = "invalid_field"


class InvalidOperator(ServiceError):
    status_code = 400
    code = "invalid_operator"


class InvalidPayload(ServiceError):
    status_code = 422
    code = "invalid_payload"


class Locked(ServiceError):
    status_code = 423
    code = "locked"


class Fatal(ServiceError):
    status_code = 500
    code = "fatal"


class AuditWriteError(Fatal):
    code = "audit_write_failed"


# Storage-level failures. These never leave the service layer.
class StorageError(RuntimeError):
    pass


class UniqueConstraintError(StorageError):
    pass
