"""
Collection - document collection operations.

Provides a Collection handle with async CRUD, aggregation, index and
change stream operations, each sent as a database command through the
owning client.
"""

from __future__ import annotations

import dataclasses
import logging
from typing import TYPE_CHECKING, Any, Generic, Iterable, Mapping, Sequence, TypeVar

from .bulk import WriteModel, run_bulk_write
from .change_stream import ChangeStream
from .cursor import CommandCursor, Cursor
from .documents import (
    check_document,
    check_filter,
    check_pipeline,
    check_replacement,
    check_update,
    index_keys,
    index_name,
    new_object_id,
)
from .options import ChangeStreamOptions, FindOptions, IndexModel, IndexOptions
from .schema import DocumentSchema
from .types import (
    DeleteResult,
    InsertManyResult,
    InsertOneResult,
    Namespace,
    ServerError,
    UpdateResult,
    ValidationError,
    error_from_write_error,
    raise_for_write_reply,
)

if TYPE_CHECKING:
    from .database import Database
    from .types import BulkWriteResult, Filter, Projection, Update

T = TypeVar("T")

__all__ = ["Collection"]

logger = logging.getLogger(__name__)

NAMESPACE_NOT_FOUND = 26


class Collection(Generic[T]):
    """
    Collection handle with async CRUD operations.

    Handles are cheap and never fail on creation; errors surface on first
    use. With a ``schema`` the collection encodes inserted values with it
    and returns validated instances from reads.

    Example:
        users = client.collection("app", "users")

        # Insert
        result = await users.insert_one({"name": "Alice"})
        print(result.inserted_id)

        # Find
        user = await users.find_one({"name": "Alice"})
        async for user in users.find({"status": "active"}):
            print(user)

        # Update
        await users.update_one({"name": "Alice"}, {"$set": {"status": "vip"}})

        # Delete
        await users.delete_one({"name": "Alice"})
    """

    __slots__ = ("_database", "_name", "_namespace", "_schema")

    def __init__(
        self,
        database: Database,
        name: str,
        schema: type[T] | DocumentSchema[T] | None = None,
    ) -> None:
        """
        Initialize a collection.

        Args:
            database: Parent database instance.
            name: Collection name.
            schema: Optional schema type for typed documents.
        """
        self._database = database
        self._name = name
        self._namespace = Namespace(database.name, name)
        if schema is not None and not isinstance(schema, DocumentSchema):
            schema = DocumentSchema(schema)
        self._schema: DocumentSchema[T] | None = schema

    @property
    def name(self) -> str:
        """Get the collection name."""
        return self._name

    @property
    def full_name(self) -> str:
        """Get the full collection name (database.collection)."""
        return str(self._namespace)

    @property
    def namespace(self) -> Namespace:
        """Get the namespace used to address this collection in bulk writes."""
        return self._namespace

    @property
    def database(self) -> Database:
        """Get the parent database."""
        return self._database

    @property
    def schema(self) -> DocumentSchema[T] | None:
        return self._schema

    def with_schema(self, schema: type[Any]) -> Collection[Any]:
        """Return a handle on the same collection that uses ``schema``."""
        return Collection(self._database, self._name, schema)

    async def _command(self, command: Mapping[str, Any]) -> dict[str, Any]:
        return await self._database.client._command(self._database.name, command)

    async def _write(self, kind: str, body: Mapping[str, Any]) -> dict[str, Any]:
        summary = await self._database.client._bulk_write(self.namespace, [(kind, body)])
        raise_for_write_reply(summary)
        return summary

    def _encode(self, value: Any) -> Any:
        if self._schema is None:
            return value
        return self._schema.encode(value)

    def _decode_document(self, document: dict[str, Any]) -> T:
        if self._schema is None:
            return document  # type: ignore[return-value]
        return self._schema.decode(document)

    def _prepare_insert(self, document: Any) -> dict[str, Any]:
        encoded = self._encode(document)
        check_document(encoded)
        # Generate _id if not provided
        doc = dict(encoded)
        if "_id" not in doc:
            doc["_id"] = new_object_id()
        return doc

    async def insert_one(self, document: T | Mapping[str, Any]) -> InsertOneResult:
        """
        Insert a single document.

        An ``_id`` is generated locally when the document has none, so the
        result always reports it.

        Args:
            document: The document to insert.

        Returns:
            InsertOneResult with the inserted ID.

        Raises:
            ValidationError: If the document holds unsupported values.
            DuplicateKeyError: If the insert violates a unique index.
            DocumentValidationError: If the collection validator rejects it.
        """
        doc = self._prepare_insert(document)
        await self._write("insert", doc)
        return InsertOneResult(inserted_id=doc["_id"])

    async def insert_many(
        self,
        documents: Iterable[T | Mapping[str, Any]],
        ordered: bool = True,
    ) -> InsertManyResult:
        """
        Insert multiple documents.

        Args:
            documents: Documents to insert.
            ordered: If True, stop on first error. If False, continue.

        Returns:
            InsertManyResult with the inserted IDs.

        Raises:
            DuplicateKeyError: If a document violates a unique index; its
                ``details`` list every write error and the inserted ids.
            ServerError: For any other write error.
        """
        docs = [self._prepare_insert(document) for document in documents]
        if not docs:
            raise ValidationError("insert_many requires at least one document")

        summary = await self._database.client._bulk_write(
            self.namespace, [("insert", doc) for doc in docs], ordered=ordered
        )

        write_errors = summary.get("writeErrors") or []
        failed = {error["index"] for error in write_errors}
        stop = min(failed) if ordered and failed else len(docs)
        inserted_ids = [doc["_id"] for i, doc in enumerate(docs[:stop]) if i not in failed]

        if write_errors:
            error = error_from_write_error(write_errors[0])
            error.details.update(writeErrors=write_errors, insertedIds=inserted_ids)
            raise error

        raise_for_write_reply(summary)
        return InsertManyResult(inserted_ids=inserted_ids)

    async def find_one(
        self,
        filter: Filter | None = None,
        projection: Projection = None,
        sort: Any = None,
        skip: int = 0,
    ) -> T | None:
        """
        Find a single document.

        Args:
            filter: Query filter.
            projection: Fields to include/exclude.
            sort: Sort order deciding which match is first.
            skip: Number of matches to skip.

        Returns:
            The matching document, or None if not found.
        """
        options = FindOptions(projection=projection, sort=sort, skip=skip, limit=1, batch_size=1)
        async with Cursor(self, check_filter(filter), options) as cursor:
            documents = await cursor.to_list(1)
        return documents[0] if documents else None

    def find(
        self,
        filter: Filter | None = None,
        projection: Projection = None,
        options: FindOptions | None = None,
    ) -> Cursor[T]:
        """
        Find documents matching the filter.

        Nothing is sent until the cursor is iterated.

        Args:
            filter: Query filter.
            projection: Fields to include/exclude.
            options: Sort, skip, limit, batch size and cursor behaviour.

        Returns:
            Cursor for iterating over results.

        Example:
            async for doc in collection.find({"status": "active"}):
                print(doc)

            # With chaining
            cursor = collection.find({}).sort("name").limit(10)
            docs = await cursor.to_list()
        """
        options = options or FindOptions()
        if projection is not None:
            options = dataclasses.replace(options, projection=projection)
        return Cursor(self, check_filter(filter), options)

    async def _update(self, statement: dict[str, Any]) -> UpdateResult:
        summary = await self._write("update", statement)

        upserted = summary.get("upserted") or []
        return UpdateResult(
            matched_count=summary.get("nMatched", 0),
            modified_count=summary.get("nModified", 0),
            upserted_id=upserted[0]["_id"] if upserted else None,
        )

    async def update_one(
        self,
        filter: Filter,
        update: Update,
        upsert: bool = False,
    ) -> UpdateResult:
        """
        Update a single document.

        Args:
            filter: Query filter to match the document.
            update: Update operators ($set, $unset, $inc, ...), an update
                pipeline, or a full replacement document.
            upsert: If True, insert if no document matches.

        Returns:
            UpdateResult with match/modify counts.

        Raises:
            ValidationError: If the update mixes operators and plain fields.
        """
        return await self._update(
            {
                "q": check_filter(filter),
                "u": check_update(update, allow_replacement=True),
                "multi": False,
                "upsert": upsert,
            }
        )

    async def update_many(
        self,
        filter: Filter,
        update: Update,
        upsert: bool = False,
    ) -> UpdateResult:
        """
        Update multiple documents.

        Args:
            filter: Query filter to match documents.
            update: Update operators or an update pipeline.
            upsert: If True, insert if no document matches.

        Returns:
            UpdateResult with match/modify counts.

        Raises:
            ValidationError: If the update is a replacement document or
                mixes operators and plain fields.
        """
        return await self._update(
            {
                "q": check_filter(filter),
                "u": check_update(update, allow_replacement=False),
                "multi": True,
                "upsert": upsert,
            }
        )

    async def replace_one(
        self,
        filter: Filter,
        replacement: T | Mapping[str, Any],
        upsert: bool = False,
    ) -> UpdateResult:
        """
        Replace a single document.

        Args:
            filter: Query filter to match the document.
            replacement: The replacement document; no update operators.
            upsert: If True, insert if no document matches.

        Returns:
            UpdateResult with match/modify counts.
        """
        return await self._update(
            {
                "q": check_filter(filter),
                "u": check_replacement(self._encode(replacement)),
                "multi": False,
                "upsert": upsert,
            }
        )

    async def _delete(self, filter: Filter, limit: int) -> DeleteResult:
        summary = await self._write("delete", {"q": check_filter(filter), "limit": limit})
        return DeleteResult(deleted_count=summary.get("nRemoved", 0))

    async def delete_one(self, filter: Filter) -> DeleteResult:
        """
        Delete a single document.

        Args:
            filter: Query filter to match the document.

        Returns:
            DeleteResult with the deleted count.
        """
        return await self._delete(filter, 1)

    async def delete_many(self, filter: Filter) -> DeleteResult:
        """
        Delete multiple documents.

        Args:
            filter: Query filter to match documents; ``{}`` deletes all.

        Returns:
            DeleteResult with the deleted count.
        """
        return await self._delete(filter, 0)

    async def count_documents(
        self,
        filter: Filter | None = None,
        skip: int = 0,
        limit: int = 0,
    ) -> int:
        """
        Count documents matching the filter.

        Args:
            filter: Query filter.
            skip: Number of matching documents to skip.
            limit: Maximum count to return (0 means no limit).

        Returns:
            Number of matching documents.
        """
        pipeline: list[dict[str, Any]] = [{"$match": check_filter(filter)}]
        if skip:
            pipeline.append({"$skip": skip})
        if limit:
            pipeline.append({"$limit": limit})
        pipeline.append({"$group": {"_id": 1, "n": {"$sum": 1}}})

        async with self.aggregate(pipeline) as cursor:
            results = await cursor.to_list()
        return results[0]["n"] if results else 0

    async def estimated_document_count(self) -> int:
        """
        Get an estimated count of documents in the collection.

        This is faster than count_documents() but may not be accurate.

        Returns:
            Estimated number of documents.
        """
        reply = await self._command({"count": self._name})
        return int(reply.get("n", 0))

    async def distinct(
        self,
        key: str,
        filter: Filter | None = None,
    ) -> list[Any]:
        """
        Get distinct values for a field.

        Args:
            key: Field name to get distinct values for.
            filter: Query filter.

        Returns:
            List of distinct values.
        """
        reply = await self._command(
            {"distinct": self._name, "key": key, "query": check_filter(filter)}
        )
        return list(reply.get("values") or [])

    def aggregate(
        self,
        pipeline: Sequence[Mapping[str, Any]],
        batch_size: int | None = None,
        allow_disk_use: bool | None = None,
        max_time_ms: int | None = None,
    ) -> CommandCursor[dict[str, Any]]:
        """
        Run an aggregation pipeline.

        Args:
            pipeline: List of aggregation stages.
            batch_size: Documents per batch.
            allow_disk_use: Let stages spill to disk.
            max_time_ms: Server-side time limit.

        Returns:
            A cursor over the pipeline's output; nothing is sent until it
            is iterated.
        """
        command: dict[str, Any] = {
            "aggregate": self._name,
            "pipeline": check_pipeline(pipeline),
            "cursor": {"batchSize": batch_size} if batch_size else {},
        }
        if allow_disk_use is not None:
            command["allowDiskUse"] = allow_disk_use
        if max_time_ms is not None:
            command["maxTimeMS"] = max_time_ms
        return CommandCursor(
            self._database.client,
            self._database.name,
            self._name,
            command,
        )

    async def bulk_write(
        self,
        models: Sequence[WriteModel],
        ordered: bool = True,
    ) -> BulkWriteResult:
        """
        Execute write models; models without a namespace target this collection.

        Raises:
            BulkWriteError: If any model failed; carries the partial result.
        """
        return await run_bulk_write(
            self._database.client,
            models,
            ordered=ordered,
            default_namespace=self._namespace,
            encode=self._encode if self._schema is not None else None,
        )

    async def create_index(
        self,
        keys: str | Sequence[tuple[str, Any]] | Mapping[str, Any],
        options: IndexOptions | None = None,
    ) -> str:
        """
        Create an index on the collection.

        Args:
            keys: A field name, (field, direction) pairs, or a key mapping.
                Directions are 1, -1, "text", "2dsphere", "hashed", ...
            options: Index options (unique, sparse, TTL, ...).

        Returns:
            Name of the created index.
        """
        names = await self.create_indexes([IndexModel(keys, options or IndexOptions())])
        return names[0]

    async def create_indexes(self, indexes: Sequence[IndexModel]) -> list[str]:
        """
        Create several indexes in one command.

        Returns:
            The index names, in input order.
        """
        specs = []
        for model in indexes:
            key = index_keys(model.keys)
            specs.append(
                {"key": key, "name": model.options.name or index_name(key), **model.options.to_document()}
            )
        if not specs:
            raise ValidationError("create_indexes requires at least one index")

        await self._command({"createIndexes": self._name, "indexes": specs})
        return [spec["name"] for spec in specs]

    async def drop_index(self, index_or_keys: str | Sequence[tuple[str, Any]] | Mapping[str, Any]) -> None:
        """
        Drop an index from the collection.

        Args:
            index_or_keys: Index name, or the keys it was created with.
        """
        if isinstance(index_or_keys, str):
            name = index_or_keys
        else:
            name = index_name(index_keys(index_or_keys))
        if name == "*":
            raise ValidationError("Use drop_indexes() to drop every index")
        await self._command({"dropIndexes": self._name, "index": name})

    async def drop_indexes(self) -> None:
        """Drop every index except the one on ``_id``."""
        await self._command({"dropIndexes": self._name, "index": "*"})

    def list_indexes(self) -> CommandCursor[dict[str, Any]]:
        """Return a cursor over the collection's index descriptions."""
        return CommandCursor(
            self._database.client,
            self._database.name,
            self._name,
            {"listIndexes": self._name, "cursor": {}},
        )

    def watch(
        self,
        pipeline: Sequence[Mapping[str, Any]] | None = None,
        options: ChangeStreamOptions | None = None,
    ) -> ChangeStream:
        """
        Watch this collection for changes.

        Args:
            pipeline: Stages applied to the events, e.g. a ``$match``.
            options: Full-document mode, resume token, batch size, ...

        Returns:
            A change stream; iterate it to wait for events.
        """
        return ChangeStream(
            self._database.client,
            self._database.name,
            self._name,
            pipeline,
            options,
        )

    async def drop(self) -> None:
        """Drop the collection. Dropping a missing collection is not an error."""
        try:
            await self._command({"drop": self._name})
        except ServerError as e:
            if e.code != NAMESPACE_NOT_FOUND:
                raise
            logger.debug("Collection %s did not exist", self.full_name)

    def __repr__(self) -> str:
        return f"Collection({self.full_name!r})"
