"""
Type definitions for the docstore client.

Provides result types that mirror the driver's result objects for insert,
update, delete and bulk write operations, the error taxonomy, and the
helpers that classify server replies into those errors.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping, Sequence

__all__ = [
    "InsertOneResult",
    "InsertManyResult",
    "UpdateResult",
    "DeleteResult",
    "BulkWriteResult",
    "Namespace",
    "Document",
    "MutableDocument",
    "Filter",
    "Update",
    "Pipeline",
    "Projection",
    "Sort",
    "DocStoreError",
    "ConfigurationError",
    "ValidationError",
    "TransportError",
    "ServerError",
    "CommandError",
    "DuplicateKeyError",
    "DocumentValidationError",
    "WriteConcernError",
    "BulkWriteError",
    "CursorError",
    "NoFileError",
    "CorruptFileError",
    "error_from_reply",
    "error_from_write_error",
    "raise_for_write_reply",
]


@dataclass
class InsertOneResult:
    """
    Result of an insert_one operation.

    Attributes:
        inserted_id: The _id of the inserted document.
        acknowledged: Whether the write was acknowledged.
    """

    inserted_id: Any
    acknowledged: bool = True


@dataclass
class InsertManyResult:
    """
    Result of an insert_many operation.

    Attributes:
        inserted_ids: List of _ids of the inserted documents, in input order.
        acknowledged: Whether the write was acknowledged.
    """

    inserted_ids: list[Any] = field(default_factory=list)
    acknowledged: bool = True


@dataclass
class UpdateResult:
    """
    Result of an update_one, update_many or replace_one operation.

    Attributes:
        matched_count: Number of documents matched.
        modified_count: Number of documents modified.
        upserted_id: The _id of the upserted document (if any).
        acknowledged: Whether the write was acknowledged.
    """

    matched_count: int = 0
    modified_count: int = 0
    upserted_id: Any = None
    acknowledged: bool = True

    @property
    def raw_result(self) -> dict[str, Any]:
        """Return the reply counters in server form."""
        return {
            "n": self.matched_count + (1 if self.upserted_id is not None else 0),
            "nModified": self.modified_count,
            "ok": 1.0 if self.acknowledged else 0.0,
        }


@dataclass
class DeleteResult:
    """
    Result of a delete_one or delete_many operation.

    Attributes:
        deleted_count: Number of documents deleted.
        acknowledged: Whether the write was acknowledged.
    """

    deleted_count: int = 0
    acknowledged: bool = True

    @property
    def raw_result(self) -> dict[str, Any]:
        """Return the reply counters in server form."""
        return {
            "n": self.deleted_count,
            "ok": 1.0 if self.acknowledged else 0.0,
        }


@dataclass
class BulkWriteResult:
    """
    Result of a bulk_write operation.

    Attributes:
        inserted_count: Number of documents inserted.
        matched_count: Number of documents matched for update.
        modified_count: Number of documents modified.
        deleted_count: Number of documents deleted.
        upserted_count: Number of documents upserted.
        upserted_ids: Mapping of model index to upserted _id.
        inserted_ids: Mapping of model index to the _id of the inserted document.
        acknowledged: Whether the write was acknowledged.
    """

    inserted_count: int = 0
    matched_count: int = 0
    modified_count: int = 0
    deleted_count: int = 0
    upserted_count: int = 0
    upserted_ids: dict[int, Any] = field(default_factory=dict)
    inserted_ids: dict[int, Any] = field(default_factory=dict)
    acknowledged: bool = True


@dataclass(frozen=True)
class Namespace:
    """A database and collection pair, e.g. ``Namespace("shop", "orders")``."""

    database: str
    collection: str

    @classmethod
    def parse(cls, full_name: str) -> Namespace:
        """Parse ``"db.coll"``; the collection part may itself contain dots."""
        database, sep, collection = full_name.partition(".")
        if not sep or not database or not collection:
            raise ValueError(f"Invalid namespace {full_name!r}")
        return cls(database, collection)

    def __str__(self) -> str:
        return f"{self.database}.{self.collection}"


# Type aliases for clarity
Document = Mapping[str, Any]
MutableDocument = dict[str, Any]
Filter = Mapping[str, Any]
Pipeline = Sequence[Mapping[str, Any]]
Update = Mapping[str, Any] | Pipeline
Projection = Mapping[str, Any] | Sequence[str] | None
Sort = list[tuple[str, int]] | None


class DocStoreError(Exception):
    """Base exception for docstore operations."""

    def __init__(self, message: str, code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.code = code


class ConfigurationError(DocStoreError):
    """Raised for a malformed connection string or conflicting options."""

    pass


class ValidationError(DocStoreError):
    """Raised when a document, update or pipeline has an invalid shape."""

    pass


class TransportError(DocStoreError):
    """Raised when the network or server selection fails."""

    pass


class ServerError(DocStoreError):
    """
    Error raised when the server rejects a command.

    Attributes:
        code: Server-assigned error code, when present.
        details: The raw server reply or write error document.
    """

    def __init__(
        self,
        message: str,
        code: int | None = None,
        details: Mapping[str, Any] | None = None,
    ) -> None:
        super().__init__(message, code)
        self.details: dict[str, Any] = dict(details or {})

    @property
    def code_name(self) -> str | None:
        """The symbolic name of the server error code, if reported."""
        return self.details.get("codeName")


CommandError = ServerError


class DuplicateKeyError(ServerError):
    """Error raised when a write violates a unique index."""

    pass


class DocumentValidationError(ServerError, ValidationError):
    """Error raised when a collection validator rejects a document."""

    pass


class WriteConcernError(ServerError):
    """Error raised when the requested write concern could not be satisfied."""

    pass


class BulkWriteError(ServerError):
    """
    Error raised when one or more models of a bulk write fail.

    Attributes:
        result: Counts for the models that did succeed.
        write_errors: Write error documents; ``index`` refers to the
            position of the model in the list given to ``bulk_write``.
        write_concern_errors: Write concern error documents, if any.
    """

    def __init__(
        self,
        message: str,
        result: BulkWriteResult,
        write_errors: list[dict[str, Any]],
        write_concern_errors: list[dict[str, Any]] | None = None,
    ) -> None:
        code = write_errors[0].get("code") if write_errors else None
        super().__init__(
            message,
            code,
            {
                "writeErrors": write_errors,
                "writeConcernErrors": write_concern_errors or [],
            },
        )
        self.result = result
        self.write_errors = write_errors
        self.write_concern_errors = write_concern_errors or []

    @property
    def has_duplicate_key(self) -> bool:
        """Whether any of the write errors is a unique index violation."""
        return any(e.get("code") in DUPLICATE_KEY_CODES for e in self.write_errors)


class CursorError(DocStoreError):
    """Error raised when a cursor is lost mid-iteration or misused."""

    pass


class NoFileError(DocStoreError):
    """Error raised when a GridFS file does not exist."""

    pass


class CorruptFileError(DocStoreError):
    """Error raised when a GridFS file has missing or misordered chunks."""

    pass


DUPLICATE_KEY_CODES = frozenset({11000, 11001, 12582})
DOCUMENT_VALIDATION_FAILURE = 121
CURSOR_NOT_FOUND = 43


def _error_class(code: int | None) -> type[ServerError]:
    if code in DUPLICATE_KEY_CODES:
        return DuplicateKeyError
    if code == DOCUMENT_VALIDATION_FAILURE:
        return DocumentValidationError
    return ServerError


def error_from_reply(reply: Mapping[str, Any]) -> ServerError:
    """
    Build the error for a command reply with ``ok: 0``.

    Args:
        reply: The server reply.

    Returns:
        The most specific ServerError subclass for the reply's code.
    """
    code = reply.get("code")
    message = reply.get("errmsg") or "command failed"
    return _error_class(code)(message, code, reply)


def error_from_write_error(error: Mapping[str, Any]) -> ServerError:
    """
    Build the error for a single entry of a reply's ``writeErrors``.

    Args:
        error: A write error document (``index``, ``code``, ``errmsg``).

    Returns:
        DuplicateKeyError, DocumentValidationError or ServerError.
    """
    code = error.get("code")
    message = error.get("errmsg") or "write failed"
    return _error_class(code)(message, code, error)


def raise_for_write_reply(reply: Mapping[str, Any]) -> None:
    """
    Raise if a write summary reports a write or write concern error.

    Args:
        reply: The bulk write summary of an insert, update or delete.

    Raises:
        ServerError: The classified first write error.
        WriteConcernError: If the reply carries a write concern error.
    """
    write_errors = reply.get("writeErrors")
    if write_errors:
        raise error_from_write_error(write_errors[0])

    wce_list = reply.get("writeConcernErrors")
    if wce_list:
        wce = wce_list[0]
        raise WriteConcernError(wce.get("errmsg", "write concern error"), wce.get("code"), wce)
