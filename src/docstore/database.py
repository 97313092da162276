"""
Database - database-level operations.

Provides a Database handle for collections, explicit collection creation
(with validation rules), database commands, database-wide aggregation and
change streams.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Mapping, Sequence, TypeVar

from .change_stream import ChangeStream
from .collection import NAMESPACE_NOT_FOUND, Collection
from .cursor import CommandCursor
from .documents import check_filter, check_pipeline
from .gridfs import GridFSBucket
from .options import ChangeStreamOptions, CreateCollectionOptions, GridFSBucketOptions
from .types import ServerError

if TYPE_CHECKING:
    from .client import DocumentStoreClient

T = TypeVar("T")

__all__ = ["Database"]

logger = logging.getLogger(__name__)


class Database:
    """
    Database handle with async operations.

    Collections can be accessed using either attribute access or
    subscript notation. Handles are cheap and never fail on creation.

    Example:
        db = client["myapp"]

        # Access collections
        users = db.users
        orders = db["orders"]

        # List collections
        names = await db.list_collection_names()

        # Drop database
        await db.drop()
    """

    __slots__ = ("_client", "_name", "_collections")

    def __init__(self, client: DocumentStoreClient, name: str) -> None:
        """
        Initialize a database.

        Args:
            client: Parent client instance.
            name: Database name.
        """
        self._client = client
        self._name = name
        self._collections: dict[str, Collection[Any]] = {}

    @property
    def name(self) -> str:
        """Get the database name."""
        return self._name

    @property
    def client(self) -> DocumentStoreClient:
        """Get the parent client."""
        return self._client

    def __getitem__(self, name: str) -> Collection[Any]:
        """
        Get a collection by name using subscript notation.

        Example:
            users = db["users"]
        """
        if name not in self._collections:
            self._collections[name] = Collection(self, name)
        return self._collections[name]

    def __getattr__(self, name: str) -> Collection[Any]:
        """
        Get a collection by name using attribute access.

        Example:
            users = db.users
        """
        if name.startswith("_"):
            raise AttributeError(f"'{type(self).__name__}' has no attribute '{name}'")

        return self[name]

    def get_collection(self, name: str, schema: type[T] | None = None) -> Collection[T]:
        """
        Get a collection, optionally typed.

        Args:
            name: Collection name.
            schema: Optional schema type; reads return instances of it.

        Returns:
            Collection instance.

        Example:
            class User(BaseModel):
                name: str
                email: str

            users = db.get_collection("users", User)
            user: User | None = await users.find_one({"email": "alice@example.com"})
        """
        if schema is None:
            return self[name]
        return Collection(self, name, schema)

    async def command(self, command: str | Mapping[str, Any], value: Any = 1, **kwargs: Any) -> dict[str, Any]:
        """
        Run a database command.

        Args:
            command: Command name or command document.
            value: Command value (default 1).
            **kwargs: Additional command fields.

        Returns:
            Command reply.

        Example:
            await client["admin"].command("ping")
        """
        if isinstance(command, str):
            cmd = {command: value, **kwargs}
        else:
            cmd = {**command, **kwargs}

        return await self._client._command(self._name, cmd)

    run_command = command

    async def create_collection(
        self,
        name: str,
        options: CreateCollectionOptions | None = None,
    ) -> Collection[Any]:
        """
        Create a collection explicitly.

        Args:
            name: Collection name.
            options: Validator, validation level/action, capped settings.

        Returns:
            The created Collection instance.

        Example:
            await db.create_collection(
                "survey_answers",
                CreateCollectionOptions(
                    validator={"$jsonSchema": {"required": ["answer"]}},
                    validation_action="error",
                ),
            )
        """
        spec = (options or CreateCollectionOptions()).to_document()
        await self._client._command(self._name, {"create": name, **spec})
        logger.info("Created collection %s.%s", self._name, name)
        return self[name]

    async def drop_collection(self, name: str) -> None:
        """
        Drop a collection. Dropping a missing collection is not an error.

        Args:
            name: Name of the collection to drop.
        """
        await self[name].drop()
        self._collections.pop(name, None)

    def list_collections(self, filter: Mapping[str, Any] | None = None) -> CommandCursor[dict[str, Any]]:
        """
        List collections in the database with metadata.

        Args:
            filter: Optional filter on the collection descriptions.

        Returns:
            A cursor over collection info documents.
        """
        return CommandCursor(
            self._client,
            self._name,
            "$cmd.listCollections",
            {"listCollections": 1, "filter": check_filter(filter), "cursor": {}},
        )

    async def list_collection_names(self, filter: Mapping[str, Any] | None = None) -> list[str]:
        """
        List all collection names in the database.

        Args:
            filter: Optional filter on the collection descriptions.

        Returns:
            List of collection names.
        """
        async with self.list_collections(filter) as cursor:
            return [info["name"] async for info in cursor]

    def aggregate(
        self,
        pipeline: Sequence[Mapping[str, Any]],
        batch_size: int | None = None,
    ) -> CommandCursor[dict[str, Any]]:
        """
        Run a database-level pipeline, e.g. starting with ``$currentOp``.

        Returns:
            A cursor over the pipeline's output.
        """
        return CommandCursor(
            self._client,
            self._name,
            "$cmd.aggregate",
            {
                "aggregate": 1,
                "pipeline": check_pipeline(pipeline),
                "cursor": {"batchSize": batch_size} if batch_size else {},
            },
        )

    def watch(
        self,
        pipeline: Sequence[Mapping[str, Any]] | None = None,
        options: ChangeStreamOptions | None = None,
    ) -> ChangeStream:
        """Watch every collection of this database for changes."""
        return ChangeStream(self._client, self._name, None, pipeline, options)

    def gridfs_bucket(self, options: GridFSBucketOptions | None = None) -> GridFSBucket:
        """
        Get a GridFS bucket stored in this database.

        Example:
            bucket = db.gridfs_bucket(GridFSBucketOptions(bucket_name="images"))
        """
        return GridFSBucket(self, options)

    async def drop(self) -> None:
        """Drop the database."""
        await self._client.drop_database(self._name)

    async def _drop(self) -> None:
        try:
            await self._client._command(self._name, {"dropDatabase": 1})
        except ServerError as e:
            if e.code != NAMESPACE_NOT_FOUND:
                raise
        self._collections.clear()

    def __repr__(self) -> str:
        return f"Database({self._name!r})"
