"""
docstore - an async facade over a MongoDB-compatible document database.

This package wraps the official driver behind a small, typed async API:
- Full CRUD operations (insert, find, update, replace, delete)
- Lazy cursors with chaining (sort, limit, skip, batch size, projection)
- Aggregation pipelines, counts and distinct values
- Bulk writes across namespaces
- Change streams with resume tokens
- Index and collection management, including validation rules
- GridFS file storage
- Command, connection pool and server monitoring

Example usage:
    from docstore import DocumentStoreClient

    async def main():
        # Connect to a deployment
        async with DocumentStoreClient("mongodb://localhost:27017") as client:
            users = client.collection("myapp", "users")

            # Insert documents
            result = await users.insert_one({"name": "Alice", "email": "alice@example.com"})
            print(result.inserted_id)

            # Find documents
            user = await users.find_one({"email": "alice@example.com"})
            print(user)

            # Iterate over results
            async for user in users.find({"status": "active"}).sort("name"):
                print(user["name"])

            # Update documents
            await users.update_one(
                {"email": "alice@example.com"},
                {"$set": {"status": "vip"}}
            )

            # Delete documents
            await users.delete_one({"email": "alice@example.com"})

    import asyncio
    asyncio.run(main())
"""

from __future__ import annotations

__version__ = "0.1.0"

from .bulk import DeleteMany, DeleteOne, InsertOne, ReplaceOne, UpdateMany, UpdateOne, WriteModel
from .change_stream import ChangeEvent, ChangeStream
from .client import DocumentStoreClient, connect
from .collection import Collection
from .cursor import CommandCursor, Cursor
from .database import Database
from .gridfs import GridFSBucket, GridIn, GridOut
from .monitoring import (
    CommandFailedEvent,
    CommandListener,
    CommandLogger,
    CommandStartedEvent,
    CommandSucceededEvent,
    ConnectionPoolListener,
    ServerHeartbeatListener,
    ServerListener,
    TopologyListener,
)
from .options import (
    AuthMechanism,
    ChangeStreamOptions,
    ClientOptions,
    CreateCollectionOptions,
    CursorType,
    FindOptions,
    FullDocument,
    GridFSBucketOptions,
    IndexModel,
    IndexOptions,
    ServerApi,
)
from .schema import DocumentSchema
from .transport import PyMongoTransport, Transport
from .types import (
    BulkWriteError,
    BulkWriteResult,
    CommandError,
    ConfigurationError,
    CorruptFileError,
    CursorError,
    DeleteResult,
    DocStoreError,
    DocumentValidationError,
    DuplicateKeyError,
    InsertManyResult,
    InsertOneResult,
    Namespace,
    NoFileError,
    ServerError,
    TransportError,
    UpdateResult,
    ValidationError,
    WriteConcernError,
)

__all__ = [
    # Main classes
    "DocumentStoreClient",
    "connect",
    "Database",
    "Collection",
    "Cursor",
    "CommandCursor",
    "ChangeStream",
    "ChangeEvent",
    "GridFSBucket",
    "GridIn",
    "GridOut",
    "DocumentSchema",
    "Namespace",
    # Transport
    "Transport",
    "PyMongoTransport",
    # Options
    "AuthMechanism",
    "ClientOptions",
    "ServerApi",
    "FindOptions",
    "CursorType",
    "IndexOptions",
    "IndexModel",
    "ChangeStreamOptions",
    "FullDocument",
    "CreateCollectionOptions",
    "GridFSBucketOptions",
    # Bulk write models
    "InsertOne",
    "ReplaceOne",
    "UpdateOne",
    "UpdateMany",
    "DeleteOne",
    "DeleteMany",
    "WriteModel",
    # Monitoring
    "CommandListener",
    "CommandStartedEvent",
    "CommandSucceededEvent",
    "CommandFailedEvent",
    "CommandLogger",
    "ConnectionPoolListener",
    "ServerListener",
    "ServerHeartbeatListener",
    "TopologyListener",
    # Result types
    "InsertOneResult",
    "InsertManyResult",
    "UpdateResult",
    "DeleteResult",
    "BulkWriteResult",
    # Exceptions
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
    # Version
    "__version__",
]
