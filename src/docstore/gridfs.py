"""
GridFS - storing files larger than one document.

A bucket keeps each file as one ``<bucket>.files`` document (length, chunk
size, upload date, filename, metadata) and an ordered run of
``<bucket>.chunks`` documents holding ``chunk_size_bytes`` of data each.
Chunking, the bucket indexes and chunk validation are done by the
driver's ``AsyncGridFSBucket``; this module exposes it with docstore's
errors and option types.
"""

from __future__ import annotations

import datetime
import logging
from contextlib import contextmanager
from typing import IO, TYPE_CHECKING, Any, Iterator, Mapping

from gridfs.errors import CorruptGridFile, FileExists, NoFile
from pymongo.errors import PyMongoError

from .documents import check_filter
from .options import FindOptions, GridFSBucketOptions
from .transport import translate_error
from .types import CorruptFileError, DuplicateKeyError, NoFileError

if TYPE_CHECKING:
    from .cursor import Cursor
    from .database import Database

__all__ = ["GridFSBucket", "GridIn", "GridOut"]

logger = logging.getLogger(__name__)

DUPLICATE_KEY = 11000


@contextmanager
def _gridfs_errors() -> Iterator[None]:
    """Re-raise driver GridFS errors as docstore errors."""
    try:
        yield
    except NoFile as e:
        raise NoFileError(str(e)) from e
    except CorruptGridFile as e:
        raise CorruptFileError(str(e)) from e
    except FileExists as e:
        raise DuplicateKeyError(str(e), DUPLICATE_KEY) from e
    except PyMongoError as e:
        raise translate_error(e) from e


class GridFSBucket:
    """
    A named set of files inside a database.

    Example:
        bucket = GridFSBucket(client["media"])

        file_id = await bucket.upload_from_stream("report.pdf", data)

        async with await bucket.open_download_stream(file_id) as stream:
            contents = await stream.read()

        await bucket.rename(file_id, "report-2024.pdf")
        await bucket.delete(file_id)
    """

    __slots__ = ("_database", "_options", "_bucket")

    def __init__(self, database: Database, options: GridFSBucketOptions | None = None) -> None:
        """
        Initialize a bucket. Collections are created on first upload.

        Args:
            database: Database holding the bucket.
            options: Bucket name and default chunk size.
        """
        self._database = database
        self._options = options or GridFSBucketOptions()
        self._bucket: Any = None

    @property
    def bucket_name(self) -> str:
        return self._options.bucket_name

    @property
    def chunk_size_bytes(self) -> int:
        return self._options.chunk_size_bytes

    def _driver_bucket(self) -> Any:
        # the client must be connected before the driver bucket exists
        if self._bucket is None:
            self._bucket = self._database.client._gridfs_bucket(self._database.name, self._options)
        return self._bucket

    def open_upload_stream(
        self,
        filename: str,
        metadata: Mapping[str, Any] | None = None,
        file_id: Any = None,
        chunk_size_bytes: int | None = None,
    ) -> GridIn:
        """
        Open a stream to write a new file into.

        Args:
            filename: Name stored in the files document.
            metadata: Optional user metadata.
            file_id: Id for the file; a new ObjectId when omitted.
            chunk_size_bytes: Chunk size for this file only.

        Returns:
            A GridIn; the file becomes visible once it is closed.
        """
        bucket = self._driver_bucket()
        metadata = dict(metadata) if metadata is not None else None
        with _gridfs_errors():
            if file_id is None:
                stream = bucket.open_upload_stream(
                    filename, chunk_size_bytes=chunk_size_bytes, metadata=metadata
                )
            else:
                stream = bucket.open_upload_stream_with_id(
                    file_id, filename, chunk_size_bytes=chunk_size_bytes, metadata=metadata
                )
        return GridIn(self, stream)

    async def upload_from_stream(
        self,
        filename: str,
        source: bytes | bytearray | memoryview | IO[bytes],
        metadata: Mapping[str, Any] | None = None,
        file_id: Any = None,
    ) -> Any:
        """
        Upload a whole file.

        Args:
            filename: Name stored in the files document.
            source: The contents, or a binary file object to read them from.
            metadata: Optional user metadata.
            file_id: Id for the file; a new ObjectId when omitted.

        Returns:
            The id of the stored file.

        Raises:
            DuplicateKeyError: If a file with ``file_id`` already exists.
        """
        async with self.open_upload_stream(filename, metadata, file_id) as stream:
            await stream.write(source)
        return stream.id

    async def open_download_stream(self, file_id: Any) -> GridOut:
        """
        Open a file for reading.

        Raises:
            NoFileError: If no file has this id.
        """
        with _gridfs_errors():
            stream = await self._driver_bucket().open_download_stream(file_id)
        return GridOut(stream)

    async def download_to_bytes(self, file_id: Any) -> bytes:
        """Read a whole file into memory."""
        async with await self.open_download_stream(file_id) as stream:
            return await stream.read()

    def find(self, filter: Mapping[str, Any] | None = None, options: FindOptions | None = None) -> Cursor[Any]:
        """Return a cursor over the files documents matching ``filter``."""
        files = self._database[f"{self.bucket_name}.files"]
        return files.find(check_filter(filter), options=options)

    async def rename(self, file_id: Any, new_filename: str) -> None:
        """
        Change the filename of a stored file.

        Raises:
            NoFileError: If no file has this id.
        """
        with _gridfs_errors():
            await self._driver_bucket().rename(file_id, new_filename)

    async def delete(self, file_id: Any) -> None:
        """
        Delete a file and its chunks.

        Orphaned chunks are removed even when the files document is gone.

        Raises:
            NoFileError: If no file has this id.
        """
        with _gridfs_errors():
            await self._driver_bucket().delete(file_id)
        logger.debug("Deleted file %r from bucket %s", file_id, self.bucket_name)

    async def drop(self) -> None:
        """Drop both bucket collections."""
        with _gridfs_errors():
            await self._driver_bucket().drop()

    def __repr__(self) -> str:
        return f"GridFSBucket({self._database.name}.{self.bucket_name})"


class GridIn:
    """
    Writable stream for a new GridFS file.

    Data is split into chunks as it is written. The files document is
    written by close(), so readers never see a partial file.
    """

    __slots__ = ("_bucket", "_stream", "_length")

    def __init__(self, bucket: GridFSBucket, stream: Any) -> None:
        self._bucket = bucket
        self._stream = stream
        self._length = 0

    @property
    def id(self) -> Any:
        """The id the file is stored under."""
        return self._stream._id

    @property
    def filename(self) -> str:
        return self._stream.filename

    @property
    def chunk_size(self) -> int:
        return self._stream.chunk_size

    @property
    def length(self) -> int:
        """Bytes written so far."""
        return self._length

    @property
    def closed(self) -> bool:
        return bool(self._stream.closed)

    async def write(self, data: bytes | bytearray | memoryview | IO[bytes]) -> None:
        """
        Append data, or everything a binary file object yields, to the file.

        Raises:
            ValueError: If the stream is closed.
            TypeError: If ``data`` is neither bytes-like nor readable.
        """
        if self.closed:
            raise ValueError("Cannot write to a closed GridIn")
        if isinstance(data, (bytearray, memoryview)):
            data = bytes(data)

        if isinstance(data, bytes):
            with _gridfs_errors():
                await self._stream.write(data)
            self._length += len(data)
            return

        if not callable(getattr(data, "read", None)):
            raise TypeError(f"GridIn.write() expects bytes, got {type(data).__name__}")
        while True:
            block = data.read(self.chunk_size)
            if not block:
                break
            await self.write(block)

    async def close(self) -> None:
        """Store the last partial chunk and the files document."""
        if self.closed:
            return
        with _gridfs_errors():
            await self._stream.close()
        logger.debug(
            "Stored file %r (%d bytes) in bucket %s", self.id, self._length, self._bucket.bucket_name
        )

    async def abort(self) -> None:
        """Discard the file, removing any chunks already stored."""
        with _gridfs_errors():
            await self._stream.abort()

    async def __aenter__(self) -> GridIn:
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        if exc_type is not None:
            await self.abort()
        else:
            await self.close()

    def __repr__(self) -> str:
        return f"GridIn({self.filename!r}, id={self.id!r})"


class GridOut:
    """
    Readable stream for a stored GridFS file.

    Attributes mirror the files document. Chunks are fetched in ``n``
    order as the data is read and checked for gaps and size.
    """

    __slots__ = ("_stream",)

    def __init__(self, stream: Any) -> None:
        self._stream = stream

    @property
    def id(self) -> Any:
        return self._stream._id

    @property
    def filename(self) -> str | None:
        return self._stream.filename

    @property
    def length(self) -> int:
        return int(self._stream.length)

    @property
    def chunk_size(self) -> int:
        return int(self._stream.chunk_size)

    @property
    def upload_date(self) -> datetime.datetime | None:
        return self._stream.upload_date

    @property
    def metadata(self) -> dict[str, Any] | None:
        return self._stream.metadata

    @property
    def file_document(self) -> dict[str, Any]:
        """The files document fields."""
        document: dict[str, Any] = {
            "_id": self.id,
            "length": self.length,
            "chunkSize": self.chunk_size,
            "uploadDate": self.upload_date,
            "filename": self.filename,
        }
        if self.metadata is not None:
            document["metadata"] = self.metadata
        return document

    async def read(self, size: int = -1) -> bytes:
        """
        Read up to ``size`` bytes; all remaining bytes when ``size`` < 0.

        Returns:
            The data read; ``b""`` at end of file.

        Raises:
            CorruptFileError: If a chunk is missing, misordered or the wrong size.
        """
        with _gridfs_errors():
            return await self._stream.read(size)

    def tell(self) -> int:
        return self._stream.tell()

    async def close(self) -> None:
        with _gridfs_errors():
            await self._stream.close()

    async def __aenter__(self) -> GridOut:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    def __repr__(self) -> str:
        return f"GridOut({self.filename!r}, id={self.id!r}, length={self.length})"
