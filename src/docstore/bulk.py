"""
Bulk writes - heterogeneous insert/update/delete models in one call.

Models may target different namespaces. Consecutive models on the same
namespace are handed to the driver as one bulk write; an ordered bulk
write stops at the first failing model, an unordered one attempts every
model and reports all failures together.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable, Iterable, Mapping, Sequence, Union

from .documents import check_document, check_filter, check_replacement, check_update, new_object_id
from .types import BulkWriteError, BulkWriteResult, Namespace, ValidationError

if TYPE_CHECKING:
    from .client import DocumentStoreClient

__all__ = [
    "InsertOne",
    "ReplaceOne",
    "UpdateOne",
    "UpdateMany",
    "DeleteOne",
    "DeleteMany",
    "WriteModel",
    "run_bulk_write",
]

logger = logging.getLogger(__name__)

@dataclass(frozen=True)
class InsertOne:
    """Insert ``document``; an ``_id`` is generated when it has none."""

    document: Any
    namespace: Namespace | None = None


@dataclass(frozen=True)
class ReplaceOne:
    """Replace the first document matching ``filter`` with ``replacement``."""

    filter: Mapping[str, Any]
    replacement: Any
    upsert: bool = False
    namespace: Namespace | None = None


@dataclass(frozen=True)
class UpdateOne:
    """Apply ``update`` to the first document matching ``filter``."""

    filter: Mapping[str, Any]
    update: Any
    upsert: bool = False
    namespace: Namespace | None = None


@dataclass(frozen=True)
class UpdateMany:
    """Apply ``update`` to every document matching ``filter``."""

    filter: Mapping[str, Any]
    update: Any
    upsert: bool = False
    namespace: Namespace | None = None


@dataclass(frozen=True)
class DeleteOne:
    """Delete the first document matching ``filter``."""

    filter: Mapping[str, Any]
    namespace: Namespace | None = None


@dataclass(frozen=True)
class DeleteMany:
    """Delete every document matching ``filter``."""

    filter: Mapping[str, Any]
    namespace: Namespace | None = None


WriteModel = Union[InsertOne, ReplaceOne, UpdateOne, UpdateMany, DeleteOne, DeleteMany]

@dataclass
class _Statement:
    index: int
    kind: str
    namespace: Namespace
    body: dict[str, Any]


def _statement(
    index: int,
    model: WriteModel,
    namespace: Namespace,
    encode: Callable[[Any], dict[str, Any]] | None,
) -> _Statement:
    if isinstance(model, InsertOne):
        document = encode(model.document) if encode else model.document
        check_document(document)
        document = dict(document)
        if "_id" not in document:
            document["_id"] = new_object_id()
        return _Statement(index, "insert", namespace, document)

    if isinstance(model, ReplaceOne):
        replacement = encode(model.replacement) if encode else model.replacement
        body = {
            "q": check_filter(model.filter),
            "u": check_replacement(replacement),
            "multi": False,
            "upsert": model.upsert,
        }
        return _Statement(index, "update", namespace, body)

    if isinstance(model, (UpdateOne, UpdateMany)):
        multi = isinstance(model, UpdateMany)
        body = {
            "q": check_filter(model.filter),
            "u": check_update(model.update, allow_replacement=not multi),
            "multi": multi,
            "upsert": model.upsert,
        }
        return _Statement(index, "update", namespace, body)

    if isinstance(model, (DeleteOne, DeleteMany)):
        body = {"q": check_filter(model.filter), "limit": 1 if isinstance(model, DeleteOne) else 0}
        return _Statement(index, "delete", namespace, body)

    raise ValidationError(f"Unsupported write model {type(model).__name__}")


def _batches(statements: list[_Statement]) -> Iterable[list[_Statement]]:
    batch: list[_Statement] = []
    for statement in statements:
        if batch and statement.namespace != batch[0].namespace:
            yield batch
            batch = []
        batch.append(statement)
    if batch:
        yield batch


async def run_bulk_write(
    client: DocumentStoreClient,
    models: Sequence[WriteModel],
    *,
    ordered: bool = True,
    default_namespace: Namespace | None = None,
    encode: Callable[[Any], dict[str, Any]] | None = None,
) -> BulkWriteResult:
    """
    Execute write models and aggregate their results.

    All models are validated before anything is sent. Consecutive models
    on one namespace go to the driver together; it splits them into
    write commands within the server's message size and count limits.

    Args:
        client: The client that dispatches the writes.
        models: The write models, in execution order.
        ordered: Stop at the first failing model.
        default_namespace: Namespace for models that do not name one.
        encode: Converts insert documents and replacements (schema adapter).

    Returns:
        Aggregated counts.

    Raises:
        ValidationError: If a model is malformed or lacks a namespace.
        BulkWriteError: If any model failed; carries the partial result.
    """
    if not models:
        raise ValidationError("bulk_write requires at least one model")

    statements = []
    for index, model in enumerate(models):
        namespace = getattr(model, "namespace", None) or default_namespace
        if namespace is None:
            raise ValidationError(f"Model {index} has no namespace")
        statements.append(_statement(index, model, namespace, encode))

    result = BulkWriteResult()
    write_errors: list[dict[str, Any]] = []
    write_concern_errors: list[dict[str, Any]] = []

    for batch in _batches(statements):
        summary = await client._bulk_write(
            batch[0].namespace,
            [(statement.kind, statement.body) for statement in batch],
            ordered=ordered,
        )

        failed: set[int] = set()
        for error in summary.get("writeErrors") or []:
            position = error.get("index", 0)
            failed.add(position)
            write_errors.append({**error, "index": batch[position].index})
        write_concern_errors.extend(summary.get("writeConcernErrors") or [])

        result.inserted_count += summary.get("nInserted", 0)
        result.matched_count += summary.get("nMatched", 0)
        result.modified_count += summary.get("nModified", 0)
        result.deleted_count += summary.get("nRemoved", 0)
        result.upserted_count += summary.get("nUpserted", 0)
        for entry in summary.get("upserted") or []:
            result.upserted_ids[batch[entry["index"]].index] = entry["_id"]

        for position, statement in enumerate(batch):
            # an ordered write stops at its first error
            if ordered and failed and position >= min(failed):
                break
            if statement.kind == "insert" and position not in failed:
                result.inserted_ids[statement.index] = statement.body["_id"]

        if ordered and failed:
            break

    logger.debug(
        "Bulk write of %d model(s): %d inserted, %d matched, %d deleted, %d error(s)",
        len(models),
        result.inserted_count,
        result.matched_count,
        result.deleted_count,
        len(write_errors),
    )

    if write_errors or write_concern_errors:
        raise BulkWriteError(
            f"Bulk write failed with {len(write_errors)} write error(s)",
            result,
            write_errors,
            write_concern_errors,
        )
    return result
