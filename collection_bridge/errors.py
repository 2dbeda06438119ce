"""
collection-bridge error types.

Everything the data services and the items handler raise on purpose is
a ServiceError. Each subclass carries a stable wire ``code``; the
instance carries the human-readable ``message``. The handler turns any
ServiceError into an error envelope verbatim:

    {"type": "items", "status": "error",
     "error": {"code": "FORBIDDEN", "message": "..."}}

Anything that is not a ServiceError is a bug or an infrastructure
failure and goes out as INTERNAL with a generic message.
"""

from __future__ import annotations


class ErrorCode:
    INVALID_COLLECTION = "INVALID_COLLECTION"
    INVALID_PAYLOAD    = "INVALID_PAYLOAD"
    INVALID_QUERY      = "INVALID_QUERY"
    FORBIDDEN          = "FORBIDDEN"
    RECORD_NOT_UNIQUE  = "RECORD_NOT_UNIQUE"
    INTERNAL           = "INTERNAL"


class ServiceError(Exception):
    """Base for errors whose code and message are safe to send to clients."""

    code = ErrorCode.INTERNAL
    default_message = "An unexpected error occurred."

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message
        super().__init__(self.message)

    def __repr__(self) -> str:
        return f"{type(self).__name__}(code={self.code!r}, message={self.message!r})"


class InvalidCollectionError(ServiceError):
    code = ErrorCode.INVALID_COLLECTION
    default_message = "The provided collection does not exists or is not accessible."


class InvalidPayloadError(ServiceError):
    code = ErrorCode.INVALID_PAYLOAD
    default_message = "Invalid payload."


class InvalidQueryError(ServiceError):
    code = ErrorCode.INVALID_QUERY
    default_message = "Invalid query."


class ForbiddenError(ServiceError):
    """Missing and inaccessible records look the same from outside."""

    code = ErrorCode.FORBIDDEN
    default_message = "You don't have permission to access this."


class RecordNotUniqueError(ServiceError):
    code = ErrorCode.RECORD_NOT_UNIQUE

    def __init__(self, collection: str, key):
        self.collection = collection
        self.key = key
        super().__init__(
            f"Value {key!r} for the primary key in collection {collection!r} "
            f"has to be unique."
        )
