"""
Transport - the seam between the facade and the database driver.

The facade describes reads as command documents (``find``, ``aggregate``,
``listIndexes``, ...) and writes as insert/update/delete statements. A
transport runs them and raises the docstore error taxonomy on failure.
``PyMongoTransport`` hands them to the collection helpers of PyMongo's
asyncio client (``find``, ``aggregate``, ``bulk_write``, ``watch``),
which own the wire protocol, server discovery, pooling, authentication,
retryable reads and writes, getMore pinning and write batch splitting.
"""

from __future__ import annotations

import logging
from dataclasses import fields
from typing import Any, Mapping, Protocol, Sequence, runtime_checkable

from bson.errors import BSONError
from gridfs import AsyncGridFSBucket
from pymongo import AsyncMongoClient, CursorType, operations
from pymongo.asynchronous.command_cursor import AsyncCommandCursor
from pymongo.errors import BulkWriteError as _PyMongoBulkWriteError
from pymongo.errors import ConfigurationError as _PyMongoConfigurationError
from pymongo.errors import ConnectionFailure, OperationFailure, PyMongoError
from pymongo.server_api import ServerApi as _PyMongoServerApi

from .monitoring import guard_listeners
from .options import ChangeStreamOptions, ClientOptions, FullDocument, GridFSBucketOptions
from .types import (
    ConfigurationError,
    DocStoreError,
    TransportError,
    ValidationError,
    error_from_reply,
)

__all__ = [
    "Transport",
    "RemoteCursor",
    "RemoteChangeStream",
    "PyMongoTransport",
    "driver_kwargs",
    "translate_error",
]

logger = logging.getLogger(__name__)

# A write statement: ("insert", document), ("update", {"q", "u", "multi",
# "upsert"}) or ("delete", {"q", "limit"}).
WriteRequest = tuple[str, Mapping[str, Any]]


@runtime_checkable
class RemoteCursor(Protocol):
    """An open server cursor."""

    @property
    def cursor_id(self) -> int:
        """The server cursor id; 0 once the server has no more results."""
        ...

    @property
    def alive(self) -> bool:
        ...

    async def next_document(self) -> dict[str, Any] | None:
        """Return the next document, making at most one round trip; None if none arrived."""
        ...

    async def close(self) -> None:
        ...


@runtime_checkable
class RemoteChangeStream(Protocol):
    """An open change stream."""

    @property
    def alive(self) -> bool:
        ...

    @property
    def resume_token(self) -> Any:
        """Token to resume after the last event returned, or after the last empty batch."""
        ...

    async def next_document(self) -> dict[str, Any] | None:
        ...

    async def close(self) -> None:
        ...


@runtime_checkable
class Transport(Protocol):
    """What the client needs from a driver."""

    async def command(
        self,
        database: str,
        command: Mapping[str, Any],
        session: Any = None,
    ) -> dict[str, Any]:
        """Run a single-reply command against ``database`` and return the reply."""
        ...

    async def open_cursor(
        self,
        database: str,
        command: Mapping[str, Any],
        session: Any = None,
        *,
        max_await_time_ms: int | None = None,
    ) -> RemoteCursor:
        """Run a cursor-returning command; getMore and killCursors stay on its server."""
        ...

    async def watch(
        self,
        database: str | None,
        collection: str | None,
        pipeline: Sequence[Mapping[str, Any]],
        options: ChangeStreamOptions,
    ) -> RemoteChangeStream:
        """Open a change stream on a collection, a database, or (database None) the deployment."""
        ...

    async def bulk_write(
        self,
        database: str,
        collection: str,
        requests: Sequence[WriteRequest],
        ordered: bool = True,
    ) -> dict[str, Any]:
        """
        Run write statements against one collection.

        Returns the combined summary (``nInserted``, ``nMatched``,
        ``nModified``, ``nUpserted``, ``nRemoved``, ``upserted``,
        ``writeErrors``, ``writeConcernErrors``); indexes in it refer to
        ``requests``. Write errors are reported there, not raised.
        """
        ...

    def gridfs_bucket(self, database: str, options: GridFSBucketOptions) -> Any:
        """Return the driver's GridFS bucket for ``database``."""
        ...

    def start_session(self) -> Any:
        """Start a session that pins a server cursor's commands together."""
        ...

    async def end_session(self, session: Any) -> None:
        ...

    async def close(self) -> None:
        ...


# ClientOptions field -> AsyncMongoClient keyword, for values passed unchanged
_DRIVER_KEYWORDS = {
    "username": "username",
    "password": "password",
    "auth_source": "authSource",
    "tls": "tls",
    "tls_allow_invalid_certificates": "tlsAllowInvalidCertificates",
    "tls_ca_file": "tlsCAFile",
    "tls_certificate_key_file": "tlsCertificateKeyFile",
    "app_name": "appname",
    "replica_set": "replicaSet",
    "direct_connection": "directConnection",
    "max_pool_size": "maxPoolSize",
    "min_pool_size": "minPoolSize",
    "retry_writes": "retryWrites",
    "retry_reads": "retryReads",
}


def _overridden(options: ClientOptions) -> set[str]:
    if options.overrides is not None:
        return set(options.overrides)
    # built directly: everything that differs from the default was chosen by the caller
    return {f.name for f in fields(options) if getattr(options, f.name) != f.default}


def driver_kwargs(options: ClientOptions) -> dict[str, Any]:
    """
    Map client options to ``AsyncMongoClient`` keyword arguments.

    The connection string is passed to the driver as is, and keyword
    arguments override it, so only options the caller set explicitly are
    passed. Listeners are wrapped so their exceptions are logged.
    """
    names = _overridden(options)
    kwargs: dict[str, Any] = {}

    for name, keyword in _DRIVER_KEYWORDS.items():
        value = getattr(options, name)
        if name in names and value is not None:
            kwargs[keyword] = value

    if "server_selection_timeout" in names:
        kwargs["serverSelectionTimeoutMS"] = int(options.server_selection_timeout * 1000)
    if "connect_timeout" in names:
        kwargs["connectTimeoutMS"] = int(options.connect_timeout * 1000)
    if "auth_mechanism" in names and options.auth_mechanism is not None:
        kwargs["authMechanism"] = options.auth_mechanism.value
    if "auth_mechanism_properties" in names and options.auth_mechanism_properties:
        kwargs["authMechanismProperties"] = dict(options.auth_mechanism_properties)

    if options.server_api is not None:
        kwargs["server_api"] = _PyMongoServerApi(
            options.server_api.version,
            strict=options.server_api.strict,
            deprecation_errors=options.server_api.deprecation_errors,
        )
    if options.event_listeners:
        kwargs["event_listeners"] = guard_listeners(options.event_listeners)
    return kwargs


def translate_error(error: Exception) -> DocStoreError:
    """
    Translate a PyMongo or BSON exception into the docstore taxonomy.

    Args:
        error: The exception raised by the driver.

    Returns:
        The equivalent docstore error; callers raise it ``from`` the original.
    """
    if isinstance(error, OperationFailure):
        details = error.details or {"errmsg": str(error), "code": error.code}
        if "errmsg" not in details:
            details = {**details, "errmsg": str(error)}
        return error_from_reply(details)
    if isinstance(error, ConnectionFailure):
        return TransportError(str(error))
    if isinstance(error, _PyMongoConfigurationError):
        return ConfigurationError(str(error))
    if isinstance(error, BSONError):
        return ValidationError(str(error))
    return DocStoreError(str(error))


# find command field -> AsyncCollection.find keyword
_FIND_KEYWORDS = {
    "filter": "filter",
    "projection": "projection",
    "sort": "sort",
    "skip": "skip",
    "limit": "limit",
    "batchSize": "batch_size",
    "hint": "hint",
    "maxTimeMS": "max_time_ms",
    "allowDiskUse": "allow_disk_use",
    "comment": "comment",
    "noCursorTimeout": "no_cursor_timeout",
}

# aggregate command fields passed through to the aggregate helpers
_AGGREGATE_KEYWORDS = ("allowDiskUse", "maxTimeMS", "comment", "let", "hint", "collation")


def _driver_request(kind: str, body: Mapping[str, Any]) -> Any:
    if kind == "insert":
        return operations.InsertOne(body)
    if kind == "delete":
        if body["limit"] == 1:
            return operations.DeleteOne(body["q"])
        return operations.DeleteMany(body["q"])

    update = body["u"]
    upsert = body.get("upsert", False)
    if body.get("multi"):
        return operations.UpdateMany(body["q"], update, upsert=upsert)
    if isinstance(update, Mapping) and not any(key.startswith("$") for key in update):
        return operations.ReplaceOne(body["q"], update, upsert=upsert)
    return operations.UpdateOne(body["q"], update, upsert=upsert)


class _DriverCursor:
    """RemoteCursor over an AsyncCursor or AsyncCommandCursor."""

    __slots__ = ("_cursor",)

    def __init__(self, cursor: Any) -> None:
        self._cursor = cursor

    @property
    def cursor_id(self) -> int:
        return int(self._cursor.cursor_id or 0)

    @property
    def alive(self) -> bool:
        return bool(self._cursor.alive)

    async def next_document(self) -> dict[str, Any] | None:
        try:
            if isinstance(self._cursor, AsyncCommandCursor):
                return await self._cursor.try_next()
            # a find cursor makes one round trip and raises when it brings nothing
            return await self._cursor.next()
        except StopAsyncIteration:
            return None
        except (PyMongoError, BSONError) as e:
            raise translate_error(e) from e

    async def close(self) -> None:
        try:
            await self._cursor.close()
        except PyMongoError as e:
            raise translate_error(e) from e


class _DriverChangeStream:
    """RemoteChangeStream over an AsyncChangeStream; the driver resumes it once on network errors."""

    __slots__ = ("_stream",)

    def __init__(self, stream: Any) -> None:
        self._stream = stream

    @property
    def alive(self) -> bool:
        return bool(self._stream.alive)

    @property
    def resume_token(self) -> Any:
        return self._stream.resume_token

    async def next_document(self) -> dict[str, Any] | None:
        try:
            return await self._stream.try_next()
        except (PyMongoError, BSONError) as e:
            raise translate_error(e) from e

    async def close(self) -> None:
        try:
            await self._stream.close()
        except PyMongoError as e:
            raise translate_error(e) from e


class PyMongoTransport:
    """
    Transport backed by ``pymongo.AsyncMongoClient``.

    Example:
        transport = PyMongoTransport(ClientOptions.from_uri("mongodb://localhost"))
        reply = await transport.command("admin", {"ping": 1})
        await transport.close()
    """

    __slots__ = ("_client",)

    def __init__(self, options: ClientOptions, client: AsyncMongoClient | None = None) -> None:
        """
        Create the driver client. No I/O happens until the first command.

        Args:
            options: Validated client options.
            client: An existing driver client to use instead of creating one.

        Raises:
            ConfigurationError: If the driver rejects the options.
        """
        if client is None:
            try:
                client = AsyncMongoClient(options.uri, **driver_kwargs(options))
            except (_PyMongoConfigurationError, ValueError, TypeError, OSError) as e:
                raise ConfigurationError(f"Driver rejected options: {e}") from e
        self._client = client

    @property
    def driver(self) -> AsyncMongoClient:
        """The underlying driver client."""
        return self._client

    async def command(
        self,
        database: str,
        command: Mapping[str, Any],
        session: Any = None,
    ) -> dict[str, Any]:
        try:
            return await self._client[database].command(dict(command), session=session)
        except (PyMongoError, BSONError) as e:
            raise translate_error(e) from e

    async def open_cursor(
        self,
        database: str,
        command: Mapping[str, Any],
        session: Any = None,
        *,
        max_await_time_ms: int | None = None,
    ) -> _DriverCursor:
        name = next(iter(command))
        db = self._client[database]
        try:
            if name == "find":
                cursor = self._find(db, command, session, max_await_time_ms)
            elif name == "aggregate":
                cursor = await self._aggregate(db, command, session, max_await_time_ms)
            else:
                cursor = await db.cursor_command(
                    dict(command), session=session, max_await_time_ms=max_await_time_ms
                )
                batch_size = (command.get("cursor") or {}).get("batchSize")
                if batch_size:
                    cursor.batch_size(batch_size)
        except (PyMongoError, BSONError) as e:
            raise translate_error(e) from e
        return _DriverCursor(cursor)

    def _find(
        self,
        db: Any,
        command: Mapping[str, Any],
        session: Any,
        max_await_time_ms: int | None,
    ) -> Any:
        kwargs = {keyword: command[field] for field, keyword in _FIND_KEYWORDS.items() if field in command}
        if command.get("awaitData"):
            kwargs["cursor_type"] = CursorType.TAILABLE_AWAIT
        elif command.get("tailable"):
            kwargs["cursor_type"] = CursorType.TAILABLE
        cursor = db[command["find"]].find(session=session, **kwargs)
        if max_await_time_ms is not None:
            cursor.max_await_time_ms(max_await_time_ms)
        return cursor

    async def _aggregate(
        self,
        db: Any,
        command: Mapping[str, Any],
        session: Any,
        max_await_time_ms: int | None,
    ) -> Any:
        kwargs = {field: command[field] for field in _AGGREGATE_KEYWORDS if field in command}
        batch_size = (command.get("cursor") or {}).get("batchSize")
        if batch_size:
            kwargs["batchSize"] = batch_size
        if max_await_time_ms is not None:
            kwargs["maxAwaitTimeMS"] = max_await_time_ms

        target = command["aggregate"]
        if target == 1:
            return await db.aggregate(list(command["pipeline"]), session=session, **kwargs)
        return await db[target].aggregate(list(command["pipeline"]), session=session, **kwargs)

    async def watch(
        self,
        database: str | None,
        collection: str | None,
        pipeline: Sequence[Mapping[str, Any]],
        options: ChangeStreamOptions,
    ) -> _DriverChangeStream:
        if database is None:
            target: Any = self._client
        elif collection is None:
            target = self._client[database]
        else:
            target = self._client[database][collection]

        try:
            stream = await target.watch(
                list(pipeline),
                full_document=None if options.full_document is FullDocument.DEFAULT else options.full_document.value,
                full_document_before_change=options.full_document_before_change,
                resume_after=options.resume_after,
                start_after=options.start_after,
                start_at_operation_time=options.start_at_operation_time,
                batch_size=options.batch_size,
                max_await_time_ms=options.max_await_time_ms,
                show_expanded_events=options.show_expanded_events or None,
            )
        except (PyMongoError, BSONError) as e:
            raise translate_error(e) from e
        return _DriverChangeStream(stream)

    async def bulk_write(
        self,
        database: str,
        collection: str,
        requests: Sequence[WriteRequest],
        ordered: bool = True,
    ) -> dict[str, Any]:
        driver_requests = [_driver_request(kind, body) for kind, body in requests]
        try:
            result = await self._client[database][collection].bulk_write(driver_requests, ordered=ordered)
        except _PyMongoBulkWriteError as e:
            return e.details
        except (PyMongoError, BSONError) as e:
            raise translate_error(e) from e
        return result.bulk_api_result

    def gridfs_bucket(self, database: str, options: GridFSBucketOptions) -> AsyncGridFSBucket:
        return AsyncGridFSBucket(
            self._client[database],
            bucket_name=options.bucket_name,
            chunk_size_bytes=options.chunk_size_bytes,
        )

    def start_session(self) -> Any:
        try:
            return self._client.start_session()
        except PyMongoError as e:
            raise translate_error(e) from e

    async def end_session(self, session: Any) -> None:
        if session is not None:
            await session.end_session()

    async def close(self) -> None:
        await self._client.close()

    def __repr__(self) -> str:
        return f"PyMongoTransport({self._client!r})"
