"""
Pytest fixtures for docstore tests.

Provides an in-memory transport that executes database commands the way
a server would (cursors, sessions, write errors, unique indexes,
validators, change streams) and the driver objects built on top of them
(cursors, change streams, bulk writes, GridFS buckets) so the client can
be tested without a deployment.
"""

from __future__ import annotations

import asyncio
import collections
import copy
import datetime
import itertools
import re
from typing import Any, Mapping

import pytest
from bson import ObjectId
from bson.timestamp import Timestamp

_MISSING = object()


def _get_path(doc: Mapping[str, Any], path: str) -> Any:
    """Resolve a dotted path; returns _MISSING when absent."""
    value: Any = doc
    for part in path.split("."):
        if isinstance(value, Mapping) and part in value:
            value = value[part]
        elif isinstance(value, list) and part.isdigit() and int(part) < len(value):
            value = value[int(part)]
        else:
            return _MISSING
    return value


def _set_path(doc: dict[str, Any], path: str, value: Any) -> None:
    parts = path.split(".")
    for part in parts[:-1]:
        doc = doc.setdefault(part, {})
    doc[parts[-1]] = value


def _unset_path(doc: dict[str, Any], path: str) -> bool:
    parts = path.split(".")
    for part in parts[:-1]:
        doc = doc.get(part)
        if not isinstance(doc, dict):
            return False
    return doc.pop(parts[-1], _MISSING) is not _MISSING


def _index_key(index: Mapping[str, Any], doc: Mapping[str, Any]) -> str:
    return repr(tuple(_get_path(doc, field) for field in index["key"]))


def _sort_key(value: Any) -> tuple[bool, Any]:
    return (value is not _MISSING and value is not None, None if value is _MISSING else value)


def _token(sequence: int) -> dict[str, Any]:
    return {"_data": f"{sequence:016d}"}


def _token_sequence(token: Mapping[str, Any]) -> int:
    return int(token["_data"])


class MemorySession:
    """Stands in for a driver session."""

    _ids = itertools.count(1)

    def __init__(self) -> None:
        self.id = next(self._ids)
        self.ended = False

    def __repr__(self) -> str:
        return f"MemorySession({self.id})"


class _ServerCursor:
    def __init__(
        self,
        ns: str,
        documents: list[dict[str, Any]],
        session: Any,
        stream: dict[str, Any] | None = None,
    ) -> None:
        self.ns = ns
        self.documents = documents
        self.session = session
        self.stream = stream


class CommandFailed(Exception):
    """Raised inside a handler to produce an ``ok: 0`` reply."""

    def __init__(self, code: int, message: str, code_name: str = "") -> None:
        super().__init__(message)
        self.reply = {"ok": 0.0, "errmsg": message, "code": code, "codeName": code_name}


class MemoryCursor:
    """Driver-side cursor: buffers batches and issues getMore/killCursors on its session."""

    def __init__(
        self,
        transport: MemoryTransport,
        database: str,
        cursor: dict[str, Any],
        session: Any,
        batch_size: int | None,
        max_await_time_ms: int | None,
    ) -> None:
        self._transport = transport
        self._database = database
        self._collection = cursor["ns"].split(".", 1)[1]
        self._session = session
        self._batch_size = batch_size
        self._max_await_time_ms = max_await_time_ms
        self._batch = collections.deque(cursor["firstBatch"])
        self.cursor_id = cursor["id"]
        self.post_batch_resume_token = cursor.get("postBatchResumeToken")

    @property
    def alive(self) -> bool:
        return bool(self._batch) or self.cursor_id != 0

    @property
    def drained(self) -> bool:
        return not self._batch

    async def _get_more(self) -> None:
        from docstore.types import error_from_reply

        command: dict[str, Any] = {"getMore": self.cursor_id, "collection": self._collection}
        if self._batch_size:
            command["batchSize"] = self._batch_size
        if self._max_await_time_ms is not None:
            command["maxTimeMS"] = self._max_await_time_ms
        try:
            reply = await self._transport.command(self._database, command, session=self._session)
        except Exception:
            self.cursor_id = 0
            raise
        if not reply.get("ok", 1):
            self.cursor_id = 0
            raise error_from_reply(reply)

        cursor = reply["cursor"]
        self.cursor_id = cursor["id"]
        self.post_batch_resume_token = cursor.get("postBatchResumeToken", self.post_batch_resume_token)
        self._batch.extend(cursor["nextBatch"])

    async def next_document(self) -> dict[str, Any] | None:
        if not self._batch and self.cursor_id:
            await self._get_more()
        return self._batch.popleft() if self._batch else None

    async def close(self) -> None:
        self._batch.clear()
        cursor_id, self.cursor_id = self.cursor_id, 0
        if cursor_id:
            await self._transport.command(
                self._database, {"killCursors": self._collection, "cursors": [cursor_id]}, session=self._session
            )


class MemoryChangeStream:
    """Driver-side change stream over a MemoryCursor."""

    def __init__(self, cursor: MemoryCursor) -> None:
        self._cursor = cursor
        self._last_id: Any = None

    @property
    def alive(self) -> bool:
        return self._cursor.alive

    @property
    def resume_token(self) -> Any:
        if self._cursor.drained and self._cursor.post_batch_resume_token is not None:
            return self._cursor.post_batch_resume_token
        return self._last_id

    async def next_document(self) -> dict[str, Any] | None:
        document = await self._cursor.next_document()
        if document is not None:
            self._last_id = document["_id"]
        return document

    async def close(self) -> None:
        await self._cursor.close()


class MemoryGridIn:
    """Driver-side upload stream; the file is stored on close."""

    def __init__(
        self,
        bucket: MemoryGridFSBucket,
        file_id: Any,
        filename: str,
        chunk_size: int,
        metadata: Mapping[str, Any] | None,
    ) -> None:
        self._bucket = bucket
        self._id = file_id
        self.filename = filename
        self.chunk_size = chunk_size
        self.metadata = metadata
        self.data = bytearray()
        self.closed = False
        self.aborted = False

    async def write(self, data: bytes) -> None:
        self.data.extend(data)

    async def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._bucket._store(self)

    async def abort(self) -> None:
        self.closed = True
        self.aborted = True


class MemoryGridOut:
    """Driver-side download stream."""

    def __init__(self, document: Mapping[str, Any], data: bytes, corrupt: bool) -> None:
        self._id = document["_id"]
        self.filename = document["filename"]
        self.length = document["length"]
        self.chunk_size = document["chunkSize"]
        self.upload_date = document["uploadDate"]
        self.metadata = document.get("metadata")
        self._data = data
        self._corrupt = corrupt
        self._position = 0
        self.closed = False

    async def read(self, size: int = -1) -> bytes:
        from gridfs.errors import CorruptGridFile

        if self._corrupt:
            raise CorruptGridFile(f"no chunk #0 for file {self._id!r}")
        end = len(self._data) if size < 0 else self._position + size
        data = self._data[self._position : end]
        self._position += len(data)
        return data

    def tell(self) -> int:
        return self._position

    async def close(self) -> None:
        self.closed = True


class MemoryGridFSBucket:
    """Driver-side GridFS bucket keeping files documents in the transport's storage."""

    def __init__(self, transport: MemoryTransport, database: str, bucket_name: str, chunk_size_bytes: int) -> None:
        self._transport = transport
        self.database = database
        self.bucket_name = bucket_name
        self.chunk_size_bytes = chunk_size_bytes
        self.contents: dict[Any, bytes] = {}
        self.corrupted: set[Any] = set()
        self.uploads: list[MemoryGridIn] = []

    def _files(self) -> list[dict[str, Any]]:
        return self._transport._collection(self.database, f"{self.bucket_name}.files")

    def _find(self, file_id: Any) -> dict[str, Any] | None:
        return next((doc for doc in self._files() if doc["_id"] == file_id), None)

    def _store(self, stream: MemoryGridIn) -> None:
        from gridfs.errors import FileExists

        if self._find(stream._id) is not None:
            raise FileExists(f"file with _id {stream._id!r} already exists")
        document: dict[str, Any] = {
            "_id": stream._id,
            "length": len(stream.data),
            "chunkSize": stream.chunk_size,
            "uploadDate": datetime.datetime(2024, 1, 1, tzinfo=datetime.timezone.utc),
            "filename": stream.filename,
        }
        if stream.metadata is not None:
            document["metadata"] = dict(stream.metadata)
        self._files().append(document)
        self.contents[stream._id] = bytes(stream.data)

    def open_upload_stream(
        self,
        filename: str,
        chunk_size_bytes: int | None = None,
        metadata: Mapping[str, Any] | None = None,
        session: Any = None,
    ) -> MemoryGridIn:
        return self.open_upload_stream_with_id(ObjectId(), filename, chunk_size_bytes, metadata)

    def open_upload_stream_with_id(
        self,
        file_id: Any,
        filename: str,
        chunk_size_bytes: int | None = None,
        metadata: Mapping[str, Any] | None = None,
        session: Any = None,
    ) -> MemoryGridIn:
        stream = MemoryGridIn(self, file_id, filename, chunk_size_bytes or self.chunk_size_bytes, metadata)
        self.uploads.append(stream)
        return stream

    async def open_download_stream(self, file_id: Any, session: Any = None) -> MemoryGridOut:
        from gridfs.errors import NoFile

        document = self._find(file_id)
        if document is None:
            raise NoFile(f"no file in gridfs collection {self.bucket_name}.files with _id {file_id!r}")
        return MemoryGridOut(document, self.contents[file_id], file_id in self.corrupted)

    async def rename(self, file_id: Any, new_filename: str, session: Any = None) -> None:
        from gridfs.errors import NoFile

        document = self._find(file_id)
        if document is None:
            raise NoFile(f"no files could be renamed {file_id!r} because none matched in {self.bucket_name}")
        document["filename"] = new_filename

    async def delete(self, file_id: Any, session: Any = None) -> None:
        from gridfs.errors import NoFile

        self.contents.pop(file_id, None)
        document = self._find(file_id)
        if document is None:
            raise NoFile(f"File id {file_id!r} not found")
        self._files().remove(document)

    async def drop(self, session: Any = None) -> None:
        self._transport._data.get(self.database, {}).pop(f"{self.bucket_name}.files", None)
        self.contents.clear()


class MemoryTransport:
    """In-memory command executor implementing the Transport protocol."""

    DEFAULT_BATCH_SIZE = 101

    def __init__(self) -> None:
        self._data: dict[str, dict[str, list[dict[str, Any]]]] = {}
        self._indexes: dict[tuple[str, str], list[dict[str, Any]]] = {}
        self._options: dict[tuple[str, str], dict[str, Any]] = {}
        self._cursors: dict[int, _ServerCursor] = {}
        self._cursor_ids = itertools.count(1001)
        self._events: list[dict[str, Any]] = []
        self._failures: dict[str, list[Any]] = {}
        self.commands: list[tuple[str, dict[str, Any]]] = []
        self.killed_cursors: list[int] = []
        self.bulk_writes: list[tuple[str, str, list[Any]]] = []
        self.buckets: dict[tuple[str, str], MemoryGridFSBucket] = {}
        self.sessions_started = 0
        self.sessions_ended = 0
        self.closed = False

    # Transport protocol

    async def command(
        self,
        database: str,
        command: Mapping[str, Any],
        session: Any = None,
    ) -> dict[str, Any]:
        command = copy.deepcopy(dict(command))
        self.commands.append((database, command))
        name = next(iter(command))

        pending = self._failures.get(name)
        if pending:
            failure = pending.pop(0)
            if isinstance(failure, BaseException):
                raise failure
            return dict(failure)

        handler = getattr(self, f"_cmd_{name}", None)
        if handler is None:
            return {"ok": 0.0, "errmsg": f"no such command: '{name}'", "code": 59, "codeName": "CommandNotFound"}
        try:
            reply = handler(database, command, session)
        except CommandFailed as e:
            return e.reply
        if name == "getMore" and not reply["cursor"]["nextBatch"] and reply["cursor"]["id"]:
            # an await cursor with nothing new waits before answering
            await asyncio.sleep(0.001)
        return reply

    async def open_cursor(
        self,
        database: str,
        command: Mapping[str, Any],
        session: Any = None,
        *,
        max_await_time_ms: int | None = None,
    ) -> MemoryCursor:
        from docstore.types import error_from_reply

        if session is None:
            session = MemorySession()
        reply = await self.command(database, command, session=session)
        if not reply.get("ok", 1):
            raise error_from_reply(reply)
        batch_size = command.get("batchSize") or (command.get("cursor") or {}).get("batchSize")
        return MemoryCursor(self, database, reply["cursor"], session, batch_size, max_await_time_ms)

    async def watch(
        self,
        database: str | None,
        collection: str | None,
        pipeline: Any,
        options: Any,
    ) -> MemoryChangeStream:
        stage = options.to_stage()
        if database is None:
            database = "admin"
            stage["allChangesForCluster"] = True
        command = {
            "aggregate": collection if collection is not None else 1,
            "pipeline": [{"$changeStream": stage}, *pipeline],
            "cursor": {"batchSize": options.batch_size} if options.batch_size else {},
        }
        cursor = await self.open_cursor(database, command, max_await_time_ms=options.max_await_time_ms)
        return MemoryChangeStream(cursor)

    async def bulk_write(
        self,
        database: str,
        collection: str,
        requests: Any,
        ordered: bool = True,
    ) -> dict[str, Any]:
        from docstore.types import error_from_reply

        self.bulk_writes.append((database, collection, list(requests)))
        summary: dict[str, Any] = {
            "nInserted": 0,
            "nMatched": 0,
            "nModified": 0,
            "nUpserted": 0,
            "nRemoved": 0,
            "upserted": [],
            "writeErrors": [],
            "writeConcernErrors": [],
        }
        offset = 0
        for kind, group in itertools.groupby(requests, key=lambda request: request[0]):
            bodies = [body for _, body in group]
            field = {"insert": "documents", "update": "updates", "delete": "deletes"}[kind]
            reply = await self.command(database, {kind: collection, field: bodies, "ordered": ordered})
            if not reply.get("ok", 1):
                raise error_from_reply(reply)

            errors = reply.get("writeErrors") or []
            summary["writeErrors"].extend({**error, "index": error["index"] + offset} for error in errors)
            if reply.get("writeConcernError"):
                summary["writeConcernErrors"].append(reply["writeConcernError"])

            n = reply.get("n", 0)
            if kind == "insert":
                summary["nInserted"] += n
            elif kind == "update":
                upserted = reply.get("upserted") or []
                summary["nUpserted"] += len(upserted)
                summary["nMatched"] += n - len(upserted)
                summary["nModified"] += reply.get("nModified", 0)
                summary["upserted"].extend({"index": u["index"] + offset, "_id": u["_id"]} for u in upserted)
            else:
                summary["nRemoved"] += n

            offset += len(bodies)
            if ordered and errors:
                break
        return summary

    def gridfs_bucket(self, database: str, options: Any) -> MemoryGridFSBucket:
        key = (database, options.bucket_name)
        if key not in self.buckets:
            self.buckets[key] = MemoryGridFSBucket(self, database, options.bucket_name, options.chunk_size_bytes)
        return self.buckets[key]

    def start_session(self) -> MemorySession:
        self.sessions_started += 1
        return MemorySession()

    async def end_session(self, session: MemorySession) -> None:
        session.ended = True
        self.sessions_ended += 1

    async def close(self) -> None:
        self.closed = True

    # Test helpers

    def fail_command(self, name: str, failure: Mapping[str, Any] | BaseException) -> None:
        """Make the next ``name`` command return ``failure`` (or raise it)."""
        self._failures.setdefault(name, []).append(failure)

    def documents(self, database: str, collection: str) -> list[dict[str, Any]]:
        return self._data.get(database, {}).get(collection, [])

    def sent(self, name: str) -> list[dict[str, Any]]:
        """Commands named ``name`` sent so far."""
        return [command for _, command in self.commands if next(iter(command)) == name]

    @property
    def open_cursors(self) -> int:
        return len(self._cursors)

    # Storage

    def _collection(self, database: str, collection: str) -> list[dict[str, Any]]:
        """Get or create collection data."""
        if database not in self._data:
            self._data[database] = {}
        if collection not in self._data[database]:
            self._data[database][collection] = []
            self._indexes[(database, collection)] = [{"v": 2, "key": {"_id": 1}, "name": "_id_", "unique": True}]
        return self._data[database][collection]

    def _exists(self, database: str, collection: str) -> bool:
        return collection in self._data.get(database, {})

    # Cursors

    def _open_cursor(
        self,
        database: str,
        collection: str,
        documents: list[dict[str, Any]],
        session: Any,
        batch_size: int | None,
        stream: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        size = self.DEFAULT_BATCH_SIZE if batch_size is None else batch_size
        first, rest = documents[:size], documents[size:]
        cursor_id = 0
        if rest or stream is not None:
            cursor_id = next(self._cursor_ids)
            self._cursors[cursor_id] = _ServerCursor(f"{database}.{collection}", rest, session, stream)

        cursor: dict[str, Any] = {"id": cursor_id, "ns": f"{database}.{collection}", "firstBatch": first}
        if stream is not None:
            cursor["postBatchResumeToken"] = stream["token"]
        return {"cursor": cursor, "ok": 1.0}

    def _cmd_getMore(self, database: str, command: dict[str, Any], session: Any) -> dict[str, Any]:
        cursor_id = int(command["getMore"])
        cursor = self._cursors.get(cursor_id)
        if cursor is None or cursor.ns != f"{database}.{command['collection']}":
            raise CommandFailed(43, f"cursor id {cursor_id} not found", "CursorNotFound")
        if cursor.session is not session:
            raise CommandFailed(50738, "Cannot run getMore on cursor in a different session")

        if cursor.stream is not None:
            return self._stream_get_more(cursor_id, cursor, command.get("batchSize"))

        size = command.get("batchSize") or len(cursor.documents)
        batch, cursor.documents = cursor.documents[:size], cursor.documents[size:]
        if not cursor.documents:
            del self._cursors[cursor_id]
            cursor_id = 0
        return {"cursor": {"id": cursor_id, "ns": cursor.ns, "nextBatch": batch}, "ok": 1.0}

    def _cmd_killCursors(self, database: str, command: dict[str, Any], session: Any) -> dict[str, Any]:
        killed = []
        for cursor_id in command["cursors"]:
            if self._cursors.pop(int(cursor_id), None) is not None:
                killed.append(int(cursor_id))
        self.killed_cursors.extend(killed)
        return {"cursorsKilled": killed, "ok": 1.0}

    # Reads

    def _cmd_find(self, database: str, command: dict[str, Any], session: Any) -> dict[str, Any]:
        collection = command["find"]
        results = [copy.deepcopy(doc) for doc in self.documents(database, collection) if self._matches(doc, command.get("filter") or {})]

        for field, direction in reversed(list((command.get("sort") or {}).items())):
            results.sort(key=lambda d, f=field: _sort_key(_get_path(d, f)), reverse=direction == -1)
        results = results[command.get("skip", 0) :]
        if command.get("limit"):
            results = results[: command["limit"]]
        if command.get("projection"):
            results = [self._project(doc, command["projection"]) for doc in results]

        return self._open_cursor(database, collection, results, session, command.get("batchSize"))

    def _cmd_aggregate(self, database: str, command: dict[str, Any], session: Any) -> dict[str, Any]:
        pipeline = command["pipeline"]
        target = command["aggregate"]
        batch_size = (command.get("cursor") or {}).get("batchSize")

        if pipeline and "$changeStream" in pipeline[0]:
            return self._open_change_stream(database, target, pipeline, session, batch_size)
        if target == 1:
            raise CommandFailed(73, "aggregate 1 requires a collectionless first stage", "InvalidNamespace")

        results = [copy.deepcopy(doc) for doc in self.documents(database, target)]
        for stage in pipeline:
            (op, arg), = stage.items()
            if op == "$match":
                results = [doc for doc in results if self._matches(doc, arg)]
            elif op == "$sort":
                for field, direction in reversed(list(arg.items())):
                    results.sort(key=lambda d, f=field: _sort_key(_get_path(d, f)), reverse=direction == -1)
            elif op == "$skip":
                results = results[arg:]
            elif op == "$limit":
                results = results[:arg]
            elif op == "$project":
                results = [self._project(doc, arg) for doc in results]
            elif op == "$count":
                results = [{arg: len(results)}] if results else []
            elif op == "$group":
                results = self._group(results, arg)
            else:
                raise CommandFailed(40324, f"Unrecognized pipeline stage name: '{op}'")

        return self._open_cursor(database, target, results, session, batch_size)

    def _group(self, documents: list[dict[str, Any]], spec: dict[str, Any]) -> list[dict[str, Any]]:
        def evaluate(doc: dict[str, Any], expression: Any) -> Any:
            if isinstance(expression, str) and expression.startswith("$"):
                value = _get_path(doc, expression[1:])
                return None if value is _MISSING else value
            return expression

        groups: dict[Any, dict[str, Any]] = {}
        for doc in documents:
            key = evaluate(doc, spec["_id"])
            group = groups.setdefault(repr(key), {"_id": key})
            for field, accumulator in spec.items():
                if field == "_id":
                    continue
                (op, expression), = accumulator.items()
                if op != "$sum":
                    raise CommandFailed(15952, f"unknown group operator '{op}'")
                group[field] = group.get(field, 0) + (evaluate(doc, expression) or 0)
        return list(groups.values())

    def _cmd_count(self, database: str, command: dict[str, Any], session: Any) -> dict[str, Any]:
        docs = self.documents(database, command["count"])
        return {"n": sum(1 for doc in docs if self._matches(doc, command.get("query") or {})), "ok": 1.0}

    def _cmd_distinct(self, database: str, command: dict[str, Any], session: Any) -> dict[str, Any]:
        values: list[Any] = []
        for doc in self.documents(database, command["distinct"]):
            if not self._matches(doc, command.get("query") or {}):
                continue
            value = _get_path(doc, command["key"])
            for item in value if isinstance(value, list) else [value]:
                if item is not _MISSING and item not in values:
                    values.append(item)
        return {"values": values, "ok": 1.0}

    # Writes

    def _unique_keys(self, database: str, collection: str, ignore: Any = None) -> dict[str, set[str]]:
        """Existing key values of every unique index, by index name."""
        docs = [doc for doc in self.documents(database, collection) if doc is not ignore]
        return {
            index["name"]: {_index_key(index, doc) for doc in docs}
            for index in self._indexes.get((database, collection), [])
            if index.get("unique")
        }

    def _duplicate_key(
        self,
        database: str,
        collection: str,
        doc: dict[str, Any],
        ignore: Any = None,
        seen: dict[str, set[str]] | None = None,
    ) -> str | None:
        if seen is None:
            seen = self._unique_keys(database, collection, ignore)
        for index in self._indexes.get((database, collection), []):
            if index["name"] in seen and _index_key(index, doc) in seen[index["name"]]:
                shown = {field: _get_path(doc, field) for field in index["key"]}
                return (
                    f"E11000 duplicate key error collection: {database}.{collection} "
                    f"index: {index['name']} dup key: {shown}"
                )
        return None

    def _validation_failure(self, database: str, collection: str, doc: dict[str, Any]) -> bool:
        options = self._options.get((database, collection), {})
        validator = options.get("validator")
        if not validator or options.get("validationAction") == "warn":
            return False
        return not self._validate(doc, validator)

    def _validate(self, doc: dict[str, Any], validator: dict[str, Any]) -> bool:
        types = {"string": str, "int": int, "double": float, "bool": bool, "object": dict, "array": list}
        schema = validator.get("$jsonSchema")
        if schema is not None:
            if any(field not in doc for field in schema.get("required", [])):
                return False
            for field, rules in (schema.get("properties") or {}).items():
                if field in doc and "bsonType" in rules and not isinstance(doc[field], types[rules["bsonType"]]):
                    return False
        rest = {k: v for k, v in validator.items() if k != "$jsonSchema"}
        return self._matches(doc, rest)

    def _record(self, operation: str, database: str, collection: str | None, **fields: Any) -> None:
        event: dict[str, Any] = {
            "_id": _token(len(self._events) + 1),
            "operationType": operation,
            "clusterTime": Timestamp(1700000000, len(self._events) + 1),
            "ns": {"db": database} if collection is None else {"db": database, "coll": collection},
        }
        event.update(fields)
        self._events.append(event)

    def _cmd_insert(self, database: str, command: dict[str, Any], session: Any) -> dict[str, Any]:
        collection = command["insert"]
        data = self._collection(database, collection)
        ordered = command.get("ordered", True)
        n = 0
        write_errors = []
        seen = self._unique_keys(database, collection)

        for index, doc in enumerate(command["documents"]):
            message = self._duplicate_key(database, collection, doc, seen=seen)
            if message:
                write_errors.append({"index": index, "code": 11000, "errmsg": message})
            elif self._validation_failure(database, collection, doc):
                write_errors.append({"index": index, "code": 121, "errmsg": "Document failed validation"})
            else:
                data.append(doc)
                for spec in self._indexes[(database, collection)]:
                    if spec["name"] in seen:
                        seen[spec["name"]].add(_index_key(spec, doc))
                n += 1
                self._record(
                    "insert",
                    database,
                    collection,
                    documentKey={"_id": doc["_id"]},
                    fullDocument=copy.deepcopy(doc),
                )
                continue
            if ordered:
                break

        reply: dict[str, Any] = {"n": n, "ok": 1.0}
        if write_errors:
            reply["writeErrors"] = write_errors
        return reply

    def _cmd_update(self, database: str, command: dict[str, Any], session: Any) -> dict[str, Any]:
        collection = command["update"]
        data = self._collection(database, collection)
        ordered = command.get("ordered", True)
        n = 0
        modified = 0
        upserted = []
        write_errors = []

        for index, statement in enumerate(command["updates"]):
            query, update = statement["q"], statement["u"]
            targets = [doc for doc in data if self._matches(doc, query)]
            if not statement.get("multi"):
                targets = targets[:1]

            error = None
            for doc in targets:
                new_doc = copy.deepcopy(doc)
                changed = self._apply(new_doc, update)
                message = self._duplicate_key(database, collection, new_doc, ignore=doc)
                if message:
                    error = {"index": index, "code": 11000, "errmsg": message}
                    break
                if changed and self._validation_failure(database, collection, new_doc):
                    error = {"index": index, "code": 121, "errmsg": "Document failed validation"}
                    break
                n += 1
                if changed:
                    modified += 1
                    before = dict(doc)
                    doc.clear()
                    doc.update(new_doc)
                    self._record_update(database, collection, before, doc, update)

            if not targets and statement.get("upsert"):
                new_doc = {k: v for k, v in query.items() if not k.startswith("$") and not isinstance(v, dict)}
                self._apply(new_doc, update, inserting=True)
                new_doc.setdefault("_id", ObjectId())
                message = self._duplicate_key(database, collection, new_doc)
                if message:
                    error = {"index": index, "code": 11000, "errmsg": message}
                else:
                    data.append(new_doc)
                    n += 1
                    upserted.append({"index": index, "_id": new_doc["_id"]})
                    self._record(
                        "insert",
                        database,
                        collection,
                        documentKey={"_id": new_doc["_id"]},
                        fullDocument=copy.deepcopy(new_doc),
                    )

            if error is not None:
                write_errors.append(error)
                if ordered:
                    break

        reply: dict[str, Any] = {"n": n, "nModified": modified, "ok": 1.0}
        if upserted:
            reply["upserted"] = upserted
        if write_errors:
            reply["writeErrors"] = write_errors
        return reply

    def _record_update(
        self,
        database: str,
        collection: str,
        before: dict[str, Any],
        after: dict[str, Any],
        update: Any,
    ) -> None:
        if isinstance(update, dict) and not any(key.startswith("$") for key in update):
            self._record(
                "replace",
                database,
                collection,
                documentKey={"_id": after["_id"]},
                fullDocument=copy.deepcopy(after),
            )
            return
        self._record(
            "update",
            database,
            collection,
            documentKey={"_id": after["_id"]},
            updateDescription={
                "updatedFields": {k: v for k, v in after.items() if before.get(k, _MISSING) != v},
                "removedFields": [k for k in before if k not in after],
            },
        )

    def _cmd_delete(self, database: str, command: dict[str, Any], session: Any) -> dict[str, Any]:
        collection = command["delete"]
        n = 0
        for statement in command["deletes"]:
            if not self._exists(database, collection):
                break
            kept = []
            deleted = 0
            for doc in self._data[database][collection]:
                if self._matches(doc, statement["q"]) and not (statement["limit"] == 1 and deleted):
                    deleted += 1
                    self._record("delete", database, collection, documentKey={"_id": doc["_id"]})
                else:
                    kept.append(doc)
            self._data[database][collection] = kept
            n += deleted
        return {"n": n, "ok": 1.0}

    # Collections and indexes

    def _cmd_create(self, database: str, command: dict[str, Any], session: Any) -> dict[str, Any]:
        collection = command["create"]
        if self._exists(database, collection):
            raise CommandFailed(48, f"Collection {database}.{collection} already exists.", "NamespaceExists")
        self._collection(database, collection)
        self._options[(database, collection)] = {k: v for k, v in command.items() if k != "create"}
        return {"ok": 1.0}

    def _cmd_drop(self, database: str, command: dict[str, Any], session: Any) -> dict[str, Any]:
        collection = command["drop"]
        if not self._exists(database, collection):
            raise CommandFailed(26, "ns not found", "NamespaceNotFound")
        del self._data[database][collection]
        self._indexes.pop((database, collection), None)
        self._options.pop((database, collection), None)
        self._record("drop", database, collection)
        return {"ns": f"{database}.{collection}", "ok": 1.0}

    def _cmd_dropDatabase(self, database: str, command: dict[str, Any], session: Any) -> dict[str, Any]:
        for collection in list(self._data.pop(database, {})):
            self._indexes.pop((database, collection), None)
            self._options.pop((database, collection), None)
        self._record("dropDatabase", database, None)
        return {"dropped": database, "ok": 1.0}

    def _cmd_listCollections(self, database: str, command: dict[str, Any], session: Any) -> dict[str, Any]:
        infos = [
            {"name": name, "type": "collection", "options": self._options.get((database, name), {})}
            for name in self._data.get(database, {})
        ]
        infos = [info for info in infos if self._matches(info, command.get("filter") or {})]
        return self._open_cursor(database, "$cmd.listCollections", infos, session, None)

    def _cmd_listDatabases(self, database: str, command: dict[str, Any], session: Any) -> dict[str, Any]:
        return {"databases": [{"name": name} for name in self._data], "ok": 1.0}

    def _cmd_createIndexes(self, database: str, command: dict[str, Any], session: Any) -> dict[str, Any]:
        collection = command["createIndexes"]
        self._collection(database, collection)
        indexes = self._indexes[(database, collection)]
        before = len(indexes)
        for spec in command["indexes"]:
            existing = next((index for index in indexes if index["name"] == spec["name"]), None)
            if existing is not None:
                if existing["key"] != spec["key"]:
                    raise CommandFailed(86, f"Index with name: {spec['name']} already exists with a different key spec", "IndexKeySpecsConflict")
                continue
            indexes.append({"v": 2, **spec})
        return {"numIndexesBefore": before, "numIndexesAfter": len(indexes), "ok": 1.0}

    def _cmd_dropIndexes(self, database: str, command: dict[str, Any], session: Any) -> dict[str, Any]:
        collection = command["dropIndexes"]
        if not self._exists(database, collection):
            raise CommandFailed(26, "ns not found", "NamespaceNotFound")
        indexes = self._indexes[(database, collection)]
        if command["index"] == "*":
            indexes[1:] = []
        else:
            remaining = [index for index in indexes if index["name"] != command["index"]]
            if len(remaining) == len(indexes):
                raise CommandFailed(27, f"index not found with name [{command['index']}]", "IndexNotFound")
            indexes[:] = remaining
        return {"ok": 1.0}

    def _cmd_listIndexes(self, database: str, command: dict[str, Any], session: Any) -> dict[str, Any]:
        collection = command["listIndexes"]
        if not self._exists(database, collection):
            raise CommandFailed(26, f"ns does not exist: {database}.{collection}", "NamespaceNotFound")
        indexes = copy.deepcopy(self._indexes[(database, collection)])
        return self._open_cursor(database, collection, indexes, session, None)

    # Administration

    def _cmd_ping(self, database: str, command: dict[str, Any], session: Any) -> dict[str, Any]:
        return {"ok": 1.0}

    def _cmd_buildInfo(self, database: str, command: dict[str, Any], session: Any) -> dict[str, Any]:
        return {"version": "7.0.0", "versionArray": [7, 0, 0, 0], "ok": 1.0}

    # Change streams

    def _open_change_stream(
        self,
        database: str,
        target: Any,
        pipeline: list[dict[str, Any]],
        session: Any,
        batch_size: int | None,
    ) -> dict[str, Any]:
        spec = pipeline[0]["$changeStream"]
        resume = spec.get("resumeAfter") or spec.get("startAfter")
        position = _token_sequence(resume) if resume else len(self._events)
        stream = {
            "database": database,
            "collection": target if isinstance(target, str) else None,
            "cluster": bool(spec.get("allChangesForCluster")),
            "full_document": spec.get("fullDocument", "default"),
            "pipeline": pipeline[1:],
            "position": position,
            "token": _token(position),
        }
        collection = target if isinstance(target, str) else "$cmd.aggregate"
        events = self._stream_events(stream, batch_size)
        return self._open_cursor(database, collection, events, session, None, stream=stream)

    def _stream_get_more(self, cursor_id: int, cursor: _ServerCursor, batch_size: int | None) -> dict[str, Any]:
        stream = cursor.stream
        assert stream is not None
        events = self._stream_events(stream, batch_size)
        if stream.get("invalidated"):
            del self._cursors[cursor_id]
            cursor_id = 0
        return {
            "cursor": {
                "id": cursor_id,
                "ns": cursor.ns,
                "nextBatch": events,
                "postBatchResumeToken": stream["token"],
            },
            "ok": 1.0,
        }

    def _in_scope(self, stream: dict[str, Any], event: dict[str, Any]) -> bool:
        if stream["cluster"]:
            return True
        if event["ns"]["db"] != stream["database"]:
            return False
        return stream["collection"] is None or event["ns"].get("coll") == stream["collection"]

    def _stream_events(self, stream: dict[str, Any], batch_size: int | None) -> list[dict[str, Any]]:
        batch: list[dict[str, Any]] = []
        while stream["position"] < len(self._events) and not stream.get("invalidated"):
            if batch_size and len(batch) >= batch_size:
                break
            event = copy.deepcopy(self._events[stream["position"]])
            stream["position"] += 1
            stream["token"] = _token(stream["position"])
            if not self._in_scope(stream, event):
                continue

            if event["operationType"] == "update" and stream["full_document"] == "updateLookup":
                ns = event["ns"]
                current = [
                    doc for doc in self.documents(ns["db"], ns["coll"]) if doc["_id"] == event["documentKey"]["_id"]
                ]
                event["fullDocument"] = copy.deepcopy(current[0]) if current else None

            if all(self._matches(event, stage["$match"]) for stage in stream["pipeline"] if "$match" in stage):
                batch.append(event)

            ends_stream = (event["operationType"] == "drop" and stream["collection"] is not None) or (
                event["operationType"] == "dropDatabase" and not stream["cluster"]
            )
            if ends_stream:
                stream["invalidated"] = True
                batch.append({"_id": _token(stream["position"]), "operationType": "invalidate"})
        return batch

    # Query evaluation

    def _matches(self, doc: Mapping[str, Any], filter: Mapping[str, Any]) -> bool:
        """Check if document matches filter."""
        for key, value in filter.items():
            if key.startswith("$"):
                # Handle operators
                if key == "$and":
                    if not all(self._matches(doc, f) for f in value):
                        return False
                elif key == "$or":
                    if not any(self._matches(doc, f) for f in value):
                        return False
                elif key == "$nor":
                    if any(self._matches(doc, f) for f in value):
                        return False
                continue

            doc_value = _get_path(doc, key)

            if isinstance(value, dict) and value and all(op.startswith("$") for op in value):
                if not all(self._compare(doc_value, op, op_value) for op, op_value in value.items()):
                    return False
            elif isinstance(doc_value, list) and not isinstance(value, list):
                if value not in doc_value:
                    return False
            elif (None if doc_value is _MISSING else doc_value) != value:
                return False

        return True

    def _compare(self, doc_value: Any, op: str, op_value: Any) -> bool:
        present = doc_value is not _MISSING and doc_value is not None
        if op == "$eq":
            return doc_value == op_value
        if op == "$ne":
            return doc_value != op_value
        if op == "$gt":
            return present and doc_value > op_value
        if op == "$gte":
            return present and doc_value >= op_value
        if op == "$lt":
            return present and doc_value < op_value
        if op == "$lte":
            return present and doc_value <= op_value
        if op == "$in":
            if isinstance(doc_value, list):
                return any(item in op_value for item in doc_value)
            return (None if doc_value is _MISSING else doc_value) in op_value
        if op == "$nin":
            return not self._compare(doc_value, "$in", op_value)
        if op == "$exists":
            return (doc_value is not _MISSING) == bool(op_value)
        if op == "$regex":
            return isinstance(doc_value, str) and re.search(op_value, doc_value) is not None
        if op == "$size":
            return isinstance(doc_value, list) and len(doc_value) == op_value
        raise CommandFailed(2, f"unknown operator: {op}", "BadValue")

    def _apply(self, doc: dict[str, Any], update: Any, inserting: bool = False) -> bool:
        """Apply an update document, pipeline or replacement; returns whether doc changed."""
        before = copy.deepcopy(doc)
        if isinstance(update, list):
            for stage in update:
                (op, fields), = stage.items()
                if op in ("$set", "$addFields"):
                    self._apply_update(doc, {"$set": fields}, inserting)
                elif op == "$unset":
                    names = [fields] if isinstance(fields, str) else fields
                    self._apply_update(doc, {"$unset": dict.fromkeys(names, 1)}, inserting)
                else:
                    raise CommandFailed(40324, f"Unrecognized pipeline stage name: '{op}'")
        elif any(key.startswith("$") for key in update):
            self._apply_update(doc, update, inserting)
        else:
            doc_id = doc.get("_id", _MISSING)
            doc.clear()
            doc.update(copy.deepcopy(update))
            if doc_id is not _MISSING:
                doc["_id"] = doc_id
        return doc != before

    def _apply_update(self, doc: dict[str, Any], update: dict[str, Any], inserting: bool) -> None:
        """Apply update operators to document."""
        for op, fields in update.items():
            if op == "$setOnInsert":
                if inserting:
                    for key, value in fields.items():
                        _set_path(doc, key, value)
            elif op == "$set":
                for key, value in fields.items():
                    _set_path(doc, key, value)
            elif op == "$unset":
                for key in fields:
                    _unset_path(doc, key)
            elif op == "$inc":
                for key, value in fields.items():
                    current = _get_path(doc, key)
                    _set_path(doc, key, (0 if current is _MISSING else current) + value)
            elif op == "$mul":
                for key, value in fields.items():
                    current = _get_path(doc, key)
                    _set_path(doc, key, (0 if current is _MISSING else current) * value)
            elif op == "$push":
                for key, value in fields.items():
                    current = _get_path(doc, key)
                    items = value["$each"] if isinstance(value, dict) and "$each" in value else [value]
                    _set_path(doc, key, ([] if current is _MISSING else list(current)) + list(items))
            elif op == "$addToSet":
                for key, value in fields.items():
                    current = _get_path(doc, key)
                    current = [] if current is _MISSING else list(current)
                    if value not in current:
                        current.append(value)
                    _set_path(doc, key, current)
            elif op == "$pull":
                for key, value in fields.items():
                    current = _get_path(doc, key)
                    if isinstance(current, list):
                        _set_path(doc, key, [x for x in current if x != value])
            elif op == "$min":
                for key, value in fields.items():
                    current = _get_path(doc, key)
                    if current is _MISSING or value < current:
                        _set_path(doc, key, value)
            elif op == "$max":
                for key, value in fields.items():
                    current = _get_path(doc, key)
                    if current is _MISSING or value > current:
                        _set_path(doc, key, value)
            elif op == "$rename":
                for old_key, new_key in fields.items():
                    if old_key in doc:
                        doc[new_key] = doc.pop(old_key)
            else:
                raise CommandFailed(9, f"Unknown modifier: {op}", "FailedToParse")

    def _project(self, doc: dict[str, Any], projection: dict[str, Any]) -> dict[str, Any]:
        """Apply projection to document."""
        include_mode = any(v for k, v in projection.items() if k != "_id")

        if include_mode:
            # Include specified fields
            result = {}
            if "_id" in doc and projection.get("_id", 1):
                result["_id"] = doc["_id"]
            for key, include in projection.items():
                if include and key != "_id" and key in doc:
                    result[key] = doc[key]
            return result

        # Exclude specified fields
        return {k: v for k, v in doc.items() if projection.get(k, 1)}


@pytest.fixture
def transport() -> MemoryTransport:
    """Create an in-memory transport."""
    return MemoryTransport()


@pytest.fixture
async def client(transport: MemoryTransport):
    """Create a connected DocumentStoreClient."""
    from docstore import DocumentStoreClient

    client = DocumentStoreClient("mongodb://localhost:27017", transport=transport)
    await client.connect()
    return client


@pytest.fixture
async def database(client):
    """Create a database."""
    return client["testdb"]


@pytest.fixture
async def collection(database):
    """Create a collection."""
    return database["testcollection"]
