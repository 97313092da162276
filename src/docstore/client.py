"""
DocumentStoreClient - the connection to a document database.

The client parses and validates its configuration once, owns the
transport, and dispatches every command issued by its databases,
collections and cursors. Construct one at startup and pass it to the code
that needs it; it is safe to share between tasks.
"""

from __future__ import annotations

import logging
import os
import time
from types import TracebackType
from typing import Any, Mapping, Sequence, TypeVar

from .bulk import WriteModel, run_bulk_write
from .change_stream import ChangeStream
from .collection import Collection
from .database import Database
from .options import ChangeStreamOptions, ClientOptions, GridFSBucketOptions
from .transport import PyMongoTransport, RemoteChangeStream, RemoteCursor, Transport, WriteRequest
from .types import BulkWriteResult, DocStoreError, Namespace, error_from_reply

T = TypeVar("T")

__all__ = ["DocumentStoreClient", "connect"]

logger = logging.getLogger(__name__)

URI_ENVIRONMENT_VARIABLE = "DOCSTORE_URI"


class DocumentStoreClient:
    """
    Async client for a MongoDB-compatible document database.

    Databases can be accessed using either attribute access or subscript
    notation; ``collection()`` is a shortcut for both levels.

    Example:
        # Create client
        client = DocumentStoreClient("mongodb://localhost:27017", app_name="inventory")
        await client.connect()

        # Access databases and collections
        db = client["myapp"]
        users = client.collection("myapp", "users")

        # Close connection
        await client.close()

        # Or use as async context manager
        async with DocumentStoreClient("mongodb://localhost:27017") as client:
            ...
    """

    __slots__ = ("_options", "_transport", "_owns_transport", "_connected", "_databases")

    def __init__(
        self,
        uri: str | None = None,
        *,
        transport: Transport | None = None,
        **options: Any,
    ) -> None:
        """
        Initialize the client. No I/O happens until connect().

        Args:
            uri: Connection string. If not provided, uses the DOCSTORE_URI
                 environment variable, then ``mongodb://localhost:27017``.
            transport: Transport to use instead of the PyMongo one.
            **options: ClientOptions fields overriding the URI, e.g.
                ``server_api=ServerApi("1")``, ``event_listeners=[...]``.

        Raises:
            ConfigurationError: If the URI is malformed or options conflict.
        """
        uri = uri or os.environ.get(URI_ENVIRONMENT_VARIABLE)
        self._options = ClientOptions.from_uri(uri, **options)
        self._transport: Transport | None = transport
        self._owns_transport = transport is None
        self._connected = False
        self._databases: dict[str, Database] = {}

    @property
    def options(self) -> ClientOptions:
        """The immutable client configuration."""
        return self._options

    @property
    def uri(self) -> str:
        """Get the connection URI."""
        return self._options.uri

    @property
    def is_connected(self) -> bool:
        """Check if the client is connected."""
        return self._connected

    async def connect(self) -> DocumentStoreClient:
        """
        Create the transport.

        Server discovery and authentication are left to the driver and
        happen on first use; call ``ping()`` to check reachability.

        Returns:
            Self for chaining.

        Raises:
            ConfigurationError: If the driver rejects the options.
        """
        if self._connected:
            return self

        if self._transport is None:
            self._transport = PyMongoTransport(self._options)
            self._owns_transport = True
        self._connected = True
        logger.info("Connected to %s", ", ".join(self._options.hosts))
        return self

    async def close(self) -> None:
        """Close the connection."""
        transport = self._transport
        if transport is not None and self._owns_transport:
            self._transport = None
            await transport.close()
        self._connected = False
        self._databases.clear()
        logger.info("Closed connection to %s", ", ".join(self._options.hosts))

    def _ensure_connected(self) -> Transport:
        """Ensure the client is connected."""
        if not self._connected or self._transport is None:
            raise DocStoreError("Client is not connected. Call connect() first.")
        return self._transport

    async def _command(
        self,
        database: str,
        command: Mapping[str, Any],
        session: Any = None,
    ) -> dict[str, Any]:
        """Send one command, raising the classified error for an ``ok: 0`` reply."""
        transport = self._ensure_connected()
        name = next(iter(command))
        start = time.monotonic()

        try:
            reply = await transport.command(database, command, session=session)
            if not reply.get("ok", 1):
                raise error_from_reply(reply)
        except DocStoreError as e:
            logger.debug("%s on %s failed after %.3fs: %s", name, database, time.monotonic() - start, e)
            raise

        logger.debug("%s on %s succeeded in %.3fs", name, database, time.monotonic() - start)
        return reply

    async def _open_cursor(
        self,
        database: str,
        command: Mapping[str, Any],
        session: Any = None,
        *,
        max_await_time_ms: int | None = None,
    ) -> RemoteCursor:
        transport = self._ensure_connected()
        name = next(iter(command))
        start = time.monotonic()
        try:
            cursor = await transport.open_cursor(
                database, command, session=session, max_await_time_ms=max_await_time_ms
            )
        except DocStoreError as e:
            logger.debug("%s on %s failed after %.3fs: %s", name, database, time.monotonic() - start, e)
            raise
        logger.debug("%s on %s opened cursor %s in %.3fs", name, database, cursor.cursor_id, time.monotonic() - start)
        return cursor

    async def _watch(
        self,
        database: str | None,
        collection: str | None,
        pipeline: Sequence[Mapping[str, Any]],
        options: ChangeStreamOptions,
    ) -> RemoteChangeStream:
        stream = await self._ensure_connected().watch(database, collection, pipeline, options)
        logger.debug("Opened change stream on %s", ".".join(filter(None, (database, collection))) or "the deployment")
        return stream

    async def _bulk_write(
        self,
        namespace: Namespace,
        requests: Sequence[WriteRequest],
        ordered: bool = True,
    ) -> dict[str, Any]:
        """Run write statements against one namespace and return the driver summary."""
        transport = self._ensure_connected()
        start = time.monotonic()
        summary = await transport.bulk_write(namespace.database, namespace.collection, requests, ordered=ordered)
        logger.debug(
            "%d writes on %s finished in %.3fs with %d errors",
            len(requests),
            namespace,
            time.monotonic() - start,
            len(summary.get("writeErrors") or ()),
        )
        return summary

    def _gridfs_bucket(self, database: str, options: GridFSBucketOptions) -> Any:
        return self._ensure_connected().gridfs_bucket(database, options)

    def _start_session(self) -> Any:
        return self._ensure_connected().start_session()

    async def _end_session(self, session: Any) -> None:
        if self._transport is not None:
            await self._transport.end_session(session)

    def __getitem__(self, name: str) -> Database:
        """
        Get a database by name using subscript notation.

        Example:
            db = client["myapp"]
        """
        if name not in self._databases:
            self._databases[name] = Database(self, name)
        return self._databases[name]

    def __getattr__(self, name: str) -> Database:
        """
        Get a database by name using attribute access.

        Example:
            db = client.myapp
        """
        if name.startswith("_"):
            raise AttributeError(f"'{type(self).__name__}' has no attribute '{name}'")

        return self[name]

    def get_database(self, name: str | None = None) -> Database:
        """
        Get a database by name.

        Args:
            name: Database name; defaults to the one in the connection string.

        Raises:
            DocStoreError: If no name is given and the URI names no database.
        """
        name = name or self._options.default_database
        if not name:
            raise DocStoreError("No database name given and none in the connection string")
        return self[name]

    def collection(self, db_name: str, coll_name: str, schema: type[T] | None = None) -> Collection[T]:
        """
        Get a collection handle. Never fails; errors surface on first use.

        Args:
            db_name: Database name.
            coll_name: Collection name.
            schema: Optional schema type for typed documents.
        """
        return self[db_name].get_collection(coll_name, schema)

    async def bulk_write(
        self,
        models: Sequence[WriteModel],
        ordered: bool = True,
    ) -> BulkWriteResult:
        """
        Execute write models that may target different namespaces.

        Args:
            models: Write models; each must name its namespace.
            ordered: If True, stop at the first failing model.

        Returns:
            Aggregated counts.

        Raises:
            BulkWriteError: If any model failed; carries the partial result.

        Example:
            await client.bulk_write([
                InsertOne({"name": "shiitake"}, namespace=mushrooms.namespace),
                InsertOne({"name": "Alex"}, namespace=students.namespace),
            ])
        """
        return await run_bulk_write(self, models, ordered=ordered)

    def watch(
        self,
        pipeline: Sequence[Mapping[str, Any]] | None = None,
        options: ChangeStreamOptions | None = None,
    ) -> ChangeStream:
        """Watch every database of the deployment for changes."""
        return ChangeStream(self, None, None, pipeline, options)

    async def list_database_names(self) -> list[str]:
        """
        List all database names.

        Returns:
            List of database names.
        """
        reply = await self._command("admin", {"listDatabases": 1, "nameOnly": True})
        return [info["name"] for info in reply.get("databases", [])]

    async def drop_database(self, name: str) -> None:
        """
        Drop a database.

        Args:
            name: Name of the database to drop.
        """
        await self[name]._drop()
        self._databases.pop(name, None)

    async def server_info(self) -> dict[str, Any]:
        """
        Get server build information.

        Returns:
            The buildInfo reply.
        """
        return await self._command("admin", {"buildInfo": 1})

    async def ping(self) -> bool:
        """Round-trip a ping to the deployment; raises if it is unreachable."""
        reply = await self._command("admin", {"ping": 1})
        return bool(reply.get("ok"))

    async def __aenter__(self) -> DocumentStoreClient:
        """Async context manager entry."""
        await self.connect()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        """Async context manager exit."""
        await self.close()

    def __repr__(self) -> str:
        status = "connected" if self._connected else "disconnected"
        return f"DocumentStoreClient({', '.join(self._options.hosts)!r}, {status})"


async def connect(uri: str | None = None, *, transport: Transport | None = None, **options: Any) -> DocumentStoreClient:
    """
    Create and connect a client.

    Example:
        client = await connect("mongodb://localhost:27017", server_api=ServerApi("1"))
    """
    client = DocumentStoreClient(uri, transport=transport, **options)
    return await client.connect()
