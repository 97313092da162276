"""
ChangeStream - a subscription to mutation events.

A change stream is a tailable-await cursor over an aggregation whose first
stage is ``$changeStream``. Iteration suspends the calling task until the
next event arrives and only ends when the stream is closed or invalidated.
"""

from __future__ import annotations

import asyncio
import contextlib
import dataclasses
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, AsyncIterator, Mapping, Sequence

from .documents import check_pipeline
from .options import ChangeStreamOptions
from .types import CursorError, DocStoreError, Namespace, ServerError, TransportError

if TYPE_CHECKING:
    from .client import DocumentStoreClient
    from .transport import RemoteChangeStream

__all__ = ["ChangeEvent", "ChangeStream", "is_resumable"]

logger = logging.getLogger(__name__)

# Server errors after which a change stream can continue from its resume token
RESUMABLE_CODES = frozenset(
    {6, 7, 43, 63, 89, 91, 133, 150, 189, 234, 262, 9001, 10107, 11600, 11602, 13388, 13435, 13436}
)


def is_resumable(error: DocStoreError) -> bool:
    """
    Whether a change stream may be reopened after ``error``.

    Network errors always are. Server errors are when the server labels
    them ``ResumableChangeStreamError`` or their code is a known
    transient one.
    """
    if isinstance(error, TransportError):
        return True
    if not isinstance(error, ServerError):
        return False
    if "ResumableChangeStreamError" in (error.details.get("errorLabels") or ()):
        return True
    return error.code in RESUMABLE_CODES


@dataclass(frozen=True)
class ChangeEvent:
    """
    One change stream event.

    Attributes:
        operation_type: "insert", "update", "replace", "delete",
            "invalidate", "drop", "rename", "dropDatabase", ...
        resume_token: The event ``_id``; pass it as ``resume_after``.
        namespace: Where the change happened, if reported.
        document_key: The ``_id`` (and shard key) of the changed document.
        full_document: The document after the change, when available.
        full_document_before_change: The pre-image, when requested.
        update_description: Updated and removed fields of an update.
        cluster_time: Timestamp of the operation.
        raw: The event as returned by the server.
    """

    operation_type: str
    resume_token: Mapping[str, Any]
    namespace: Namespace | None = None
    document_key: Mapping[str, Any] | None = None
    full_document: Mapping[str, Any] | None = None
    full_document_before_change: Mapping[str, Any] | None = None
    update_description: Mapping[str, Any] | None = None
    cluster_time: Any = None
    raw: Mapping[str, Any] = field(default_factory=dict, repr=False)

    @classmethod
    def from_document(cls, document: Mapping[str, Any]) -> ChangeEvent:
        """
        Build an event from a raw change document.

        Raises:
            CursorError: If the document has no resume token.
        """
        token = document.get("_id")
        if token is None:
            raise CursorError("Change event is missing its resume token (_id); was it projected out?")

        ns = document.get("ns")
        namespace = None
        if isinstance(ns, Mapping) and ns.get("db") and ns.get("coll"):
            namespace = Namespace(ns["db"], ns["coll"])

        return cls(
            operation_type=document.get("operationType", ""),
            resume_token=token,
            namespace=namespace,
            document_key=document.get("documentKey"),
            full_document=document.get("fullDocument"),
            full_document_before_change=document.get("fullDocumentBeforeChange"),
            update_description=document.get("updateDescription"),
            cluster_time=document.get("clusterTime"),
            raw=dict(document),
        )


class ChangeStream:
    """
    Async iterator over change events.

    The driver resumes the stream once after a network error. If the
    error still surfaces, or the server reports a resumable error, the
    stream is reopened once from the last resume token before the error
    is raised.

    Example:
        async with collection.watch([{"$match": {"operationType": "insert"}}]) as stream:
            async for event in stream:
                print(event.operation_type, event.full_document)
    """

    __slots__ = (
        "_client",
        "_database",
        "_target",
        "_pipeline",
        "_options",
        "_remote",
        "_resume_token",
        "_seen_event",
        "_closed",
    )

    def __init__(
        self,
        client: DocumentStoreClient,
        database: str | None,
        target: str | None,
        pipeline: Sequence[Mapping[str, Any]] | None = None,
        options: ChangeStreamOptions | None = None,
    ) -> None:
        """
        Open a change stream lazily; the aggregate runs on first iteration.

        Args:
            client: The client that owns the transport.
            database: Database to watch, or None for the whole deployment.
            target: Collection to watch, or None for a database or deployment.
            pipeline: Extra stages applied to the events.
            options: Change stream options.
        """
        self._client = client
        self._database = database
        self._target = target
        self._pipeline = check_pipeline(pipeline or [])
        self._options = options or ChangeStreamOptions()
        self._remote: RemoteChangeStream | None = None
        self._resume_token: Any = self._options.start_after or self._options.resume_after
        self._seen_event = False
        self._closed = False

    @property
    def resume_token(self) -> Any:
        """The token to resume after the last event returned."""
        return self._resume_token

    @property
    def alive(self) -> bool:
        if self._closed:
            return False
        return self._remote is None or self._remote.alive

    def _namespace(self) -> str:
        if self._database is None:
            return "the deployment"
        if self._target is None:
            return self._database
        return f"{self._database}.{self._target}"

    def _resume_options(self) -> ChangeStreamOptions:
        token = self._resume_token
        if token is None:
            return self._options
        if not self._seen_event and self._options.start_after is not None:
            return dataclasses.replace(
                self._options, start_after=token, resume_after=None, start_at_operation_time=None
            )
        return dataclasses.replace(
            self._options, resume_after=token, start_after=None, start_at_operation_time=None
        )

    async def _resume(self, error: DocStoreError) -> None:
        logger.info("Resuming change stream on %s after: %s", self._namespace(), error.message)
        remote, self._remote = self._remote, None
        if remote is not None:
            # the failed stream's server cursor may already be gone
            with contextlib.suppress(TransportError, ServerError):
                await remote.close()
        self._remote = await self._client._watch(
            self._database, self._target, self._pipeline, self._resume_options()
        )

    async def _fetch(self) -> dict[str, Any] | None:
        if self._remote is None:
            self._remote = await self._client._watch(
                self._database, self._target, self._pipeline, self._options
            )

        resumed = False
        while True:
            try:
                return await self._remote.next_document()
            except (TransportError, ServerError) as e:
                if resumed or not is_resumable(e):
                    await self.close()
                    raise
                resumed = True
                try:
                    await self._resume(e)
                except DocStoreError:
                    await self.close()
                    raise

    def _track(self, document: dict[str, Any] | None) -> ChangeEvent | None:
        assert self._remote is not None
        token = self._remote.resume_token

        if document is None:
            if token is not None:
                self._resume_token = token
            return None

        event = ChangeEvent.from_document(document)
        self._seen_event = True
        self._resume_token = token if token is not None else event.resume_token
        return event

    async def _next_event(self, *, block: bool) -> ChangeEvent | None:
        while not self._closed:
            event = self._track(await self._fetch())
            if event is not None:
                return event
            if not self._remote.alive:
                await self.close()
            elif not block:
                return None
            else:
                await asyncio.sleep(0)
        return None

    def __aiter__(self) -> AsyncIterator[ChangeEvent]:
        return self

    async def __anext__(self) -> ChangeEvent:
        """
        Wait for the next event.

        Raises:
            StopAsyncIteration: After close() or once an invalidate event ended the stream.
            ServerError: If the server rejects the stream and it cannot be resumed.
        """
        event = await self._next_event(block=True)
        if event is None:
            raise StopAsyncIteration
        return event

    async def next(self) -> ChangeEvent:
        return await self.__anext__()

    async def try_next(self) -> ChangeEvent | None:
        """
        Return the next event if one arrives within one round trip.

        Returns:
            The next event, or None when none is available yet.
        """
        return await self._next_event(block=False)

    async def close(self) -> None:
        """Stop the stream and release its server cursor."""
        if self._closed:
            return
        self._closed = True
        remote, self._remote = self._remote, None
        if remote is not None:
            await remote.close()

    async def __aenter__(self) -> ChangeStream:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    def __repr__(self) -> str:
        return f"ChangeStream({self._namespace()})"
