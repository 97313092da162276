"""
Cursor - Async cursors for iterating over query results.

Results arrive in batches: the first with the initial command, the rest
through ``getMore`` as the batch drains. The transport keeps every
``getMore`` on the server that created the cursor, and each cursor owns
one session for its whole life. Closing a cursor early releases the
server cursor.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
from typing import TYPE_CHECKING, Any, AsyncIterator, Callable, Generic, Mapping, TypeVar

from .documents import sort_document
from .options import CursorType, FindOptions
from .types import CURSOR_NOT_FOUND, CursorError, ServerError, TransportError

if TYPE_CHECKING:
    from .client import DocumentStoreClient
    from .collection import Collection
    from .transport import RemoteCursor
    from .types import Filter, Projection

T = TypeVar("T")

__all__ = ["Cursor", "CommandCursor"]

logger = logging.getLogger(__name__)

_TAILABLE_POLL_INTERVAL = 0.1


def _projection_document(projection: Projection) -> dict[str, Any] | None:
    if not projection:
        return None
    if isinstance(projection, Mapping):
        return dict(projection)
    # Convert list of field names to projection dict
    return {field: 1 for field in projection}


class _BaseCursor(Generic[T]):
    """Session ownership, limits, blocking and closing shared by all cursors."""

    __slots__ = (
        "_client",
        "_database",
        "_collection_name",
        "_decode",
        "_remote",
        "_session",
        "_started",
        "_killed",
        "_returned",
    )

    def __init__(
        self,
        client: DocumentStoreClient,
        database: str,
        collection_name: str,
        decode: Callable[[dict[str, Any]], T] | None = None,
    ) -> None:
        self._client = client
        self._database = database
        self._collection_name = collection_name
        self._decode = decode
        self._remote: RemoteCursor | None = None
        self._session: Any = None
        self._started = False
        self._killed = False
        self._returned = 0

    # Subclass hooks

    def _initial_command(self) -> dict[str, Any]:
        raise NotImplementedError

    def _max_await_time_ms(self) -> int | None:
        return None

    def _limit(self) -> int:
        return 0

    def _tailable(self) -> bool:
        return False

    def _await_data(self) -> bool:
        return False

    # Server interaction

    @property
    def cursor_id(self) -> int:
        """The server cursor id; 0 before the first batch and once the server has no more results."""
        if self._remote is None:
            return 0
        return self._remote.cursor_id

    @property
    def alive(self) -> bool:
        """Whether the cursor may still yield documents."""
        if self._killed:
            return False
        return self._remote is None or self._remote.alive

    def _check_not_started(self) -> None:
        if self._started or self._killed:
            raise CursorError("Cannot modify a cursor that has already been iterated")

    async def _end_session(self) -> None:
        session, self._session = self._session, None
        if session is not None:
            await self._client._end_session(session)

    async def _open(self) -> None:
        self._started = True
        self._session = self._client._start_session()
        try:
            self._remote = await self._client._open_cursor(
                self._database,
                self._initial_command(),
                session=self._session,
                max_await_time_ms=self._max_await_time_ms(),
            )
        except BaseException:
            self._killed = True
            await self._end_session()
            raise

    async def _fetch(self) -> dict[str, Any] | None:
        """Return the next document, making at most one round trip."""
        remote = self._remote
        assert remote is not None
        get_more = remote.cursor_id != 0

        try:
            document = await remote.next_document()
        except TransportError as e:
            self._killed = True
            await self._end_session()
            if get_more:
                raise CursorError(f"Cursor lost during getMore: {e.message}") from e
            raise
        except ServerError as e:
            self._killed = True
            await self._end_session()
            if get_more and e.code == CURSOR_NOT_FOUND:
                raise CursorError(f"Cursor expired on the server: {e.message}", e.code) from e
            raise

        if not remote.alive:
            await self._end_session()
        return document

    async def _next_raw(self, *, block: bool) -> dict[str, Any] | None:
        limit = self._limit()
        if limit and self._returned >= limit:
            await self.close()
            return None
        if self._killed:
            return None
        if not self._started:
            await self._open()

        while True:
            document = await self._fetch()
            if document is not None:
                break
            if not self.alive or not block:
                return None
            if self._tailable() and not self._await_data():
                await asyncio.sleep(_TAILABLE_POLL_INTERVAL)
            else:
                await asyncio.sleep(0)

        self._returned += 1
        return document

    def _wrap(self, document: dict[str, Any]) -> T:
        if self._decode is None:
            return document  # type: ignore[return-value]
        return self._decode(document)

    # Public iteration API

    def __aiter__(self) -> AsyncIterator[T]:
        """Return async iterator."""
        return self

    async def __anext__(self) -> T:
        """
        Get the next document.

        Raises:
            StopAsyncIteration: When the cursor is exhausted or closed.
            CursorError: If the server cursor was lost mid-iteration.
        """
        document = await self._next_raw(block=True)
        if document is None:
            raise StopAsyncIteration
        return self._wrap(document)

    async def next(self) -> T:
        """
        Get the next document.

        Raises:
            StopAsyncIteration: When all documents have been iterated.
        """
        return await self.__anext__()

    async def try_next(self) -> T | None:
        """
        Get the next document without waiting past one round trip.

        Returns:
            The next document, or None if none is available right now.
        """
        document = await self._next_raw(block=False)
        return None if document is None else self._wrap(document)

    async def to_list(self, length: int | None = None) -> list[T]:
        """
        Collect the remaining documents into a list.

        Args:
            length: Maximum number of documents to return.
                    If None, returns all documents.

        Returns:
            List of documents.
        """
        results: list[T] = []
        while length is None or len(results) < length:
            # a tailable cursor never ends, so stop at the first empty batch
            document = await self._next_raw(block=not self._tailable())
            if document is None:
                break
            results.append(self._wrap(document))
        return results

    async def close(self) -> None:
        """Close the cursor, releasing the server cursor if it is still open."""
        if self._killed:
            return
        self._killed = True

        remote = self._remote
        try:
            if remote is not None and remote.cursor_id:
                logger.debug(
                    "Killing cursor %s on %s.%s", remote.cursor_id, self._database, self._collection_name
                )
                await remote.close()
        finally:
            await self._end_session()

    async def __aenter__(self) -> _BaseCursor[T]:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()


class Cursor(_BaseCursor[T]):
    """
    Async cursor for iterating over find results.

    Cursor provides a lazy, async iterable interface over a query's result
    set. It supports chaining operations like sort, limit, skip, and
    projection before iteration begins. A cursor is not restartable; use
    :meth:`clone` to run the same query again.

    Example:
        async for doc in collection.find({"status": "active"}):
            print(doc)

        # With chaining
        cursor = collection.find({}).sort("created_at", -1).limit(10)
        async for doc in cursor:
            print(doc)
    """

    __slots__ = ("_collection", "_filter", "_options")

    def __init__(
        self,
        collection: Collection[T],
        filter: Filter | None = None,
        options: FindOptions | None = None,
    ) -> None:
        """
        Initialize a cursor.

        Args:
            collection: The collection to query.
            filter: Query filter.
            options: Find options.
        """
        super().__init__(
            collection.database.client,
            collection.database.name,
            collection.name,
            collection._decode_document,
        )
        self._collection = collection
        self._filter: dict[str, Any] = dict(filter or {})
        self._options = options or FindOptions()

    @property
    def options(self) -> FindOptions:
        return self._options

    def _replace(self, **changes: Any) -> Cursor[T]:
        self._check_not_started()
        self._options = dataclasses.replace(self._options, **changes)
        return self

    def sort(self, key_or_list: str | list[tuple[str, int]], direction: int = 1) -> Cursor[T]:
        """
        Sort the results.

        Args:
            key_or_list: Field name or list of (field, direction) tuples.
            direction: Sort direction (1 for ascending, -1 for descending).
                       Only used if key_or_list is a string.

        Returns:
            Self for chaining.
        """
        if isinstance(key_or_list, str):
            return self._replace(sort=[(key_or_list, direction)])
        return self._replace(sort=list(key_or_list))

    def limit(self, limit: int) -> Cursor[T]:
        """Limit the number of results. Returns self for chaining."""
        return self._replace(limit=limit)

    def skip(self, skip: int) -> Cursor[T]:
        """Skip the first N results. Returns self for chaining."""
        return self._replace(skip=skip)

    def batch_size(self, size: int) -> Cursor[T]:
        """Set the number of documents per batch. Returns self for chaining."""
        return self._replace(batch_size=size)

    def project(self, projection: Projection) -> Cursor[T]:
        """Set field projection. Returns self for chaining."""
        return self._replace(projection=projection)

    def max_time_ms(self, max_time_ms: int) -> Cursor[T]:
        """Set a server-side time limit. Returns self for chaining."""
        return self._replace(max_time_ms=max_time_ms)

    def hint(self, index: str | list[tuple[str, int]]) -> Cursor[T]:
        """Force the query planner to use an index. Returns self for chaining."""
        return self._replace(hint=index)

    def _initial_command(self) -> dict[str, Any]:
        opts = self._options
        command: dict[str, Any] = {"find": self._collection_name, "filter": self._filter}

        projection = _projection_document(opts.projection)
        if projection is not None:
            command["projection"] = projection
        sort = sort_document(opts.sort)
        if sort:
            command["sort"] = sort
        if opts.skip:
            command["skip"] = opts.skip
        if opts.limit:
            command["limit"] = opts.limit
        if opts.batch_size is not None:
            command["batchSize"] = min(opts.batch_size, opts.limit) if opts.limit else opts.batch_size
        if opts.hint is not None:
            command["hint"] = opts.hint if isinstance(opts.hint, str) else sort_document(opts.hint)
        if opts.max_time_ms is not None:
            command["maxTimeMS"] = opts.max_time_ms
        if opts.allow_disk_use is not None:
            command["allowDiskUse"] = opts.allow_disk_use
        if opts.comment is not None:
            command["comment"] = opts.comment
        if opts.no_cursor_timeout:
            command["noCursorTimeout"] = True
        if opts.cursor_type is not CursorType.NON_TAILABLE:
            command["tailable"] = True
        if opts.cursor_type is CursorType.TAILABLE_AWAIT:
            command["awaitData"] = True
        return command

    def _max_await_time_ms(self) -> int | None:
        if self._options.cursor_type is CursorType.TAILABLE_AWAIT:
            return self._options.max_await_time_ms
        return None

    def _limit(self) -> int:
        return self._options.limit

    def _tailable(self) -> bool:
        return self._options.cursor_type is not CursorType.NON_TAILABLE

    def _await_data(self) -> bool:
        return self._options.cursor_type is CursorType.TAILABLE_AWAIT

    async def count(self) -> int:
        """
        Count documents matching the query, honouring skip and limit.

        Returns:
            Number of documents.
        """
        return await self._collection.count_documents(
            self._filter,
            skip=self._options.skip,
            limit=self._options.limit,
        )

    async def distinct(self, key: str) -> list[Any]:
        """
        Get distinct values for a field among the matching documents.

        Args:
            key: Field name to get distinct values for.

        Returns:
            List of distinct values.
        """
        return await self._collection.distinct(key, self._filter)

    def clone(self) -> Cursor[T]:
        """
        Clone this cursor.

        Returns:
            A new, unexecuted cursor with the same query parameters.
        """
        return Cursor(self._collection, self._filter, self._options)

    def __repr__(self) -> str:
        return f"Cursor({self._database}.{self._collection_name}, filter={self._filter!r})"


class CommandCursor(_BaseCursor[T]):
    """
    Cursor over the result of a cursor-returning command.

    Used for aggregate, listIndexes and listCollections. The batch size
    travels in the command's ``cursor`` document.
    """

    __slots__ = ("_command",)

    def __init__(
        self,
        client: DocumentStoreClient,
        database: str,
        collection_name: str,
        command: Mapping[str, Any],
        *,
        decode: Callable[[dict[str, Any]], T] | None = None,
    ) -> None:
        """
        Initialize a command cursor.

        Args:
            client: The client that dispatches commands.
            database: Database the command runs against.
            collection_name: Collection the results come from, for logging.
            command: The cursor-returning command.
            decode: Converts each raw document before it is returned.
        """
        super().__init__(client, database, collection_name, decode)
        self._command = dict(command)

    def _initial_command(self) -> dict[str, Any]:
        return self._command

    def __repr__(self) -> str:
        name = next(iter(self._command), "?")
        return f"CommandCursor({name!r} on {self._database}.{self._collection_name})"
