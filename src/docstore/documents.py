"""
Document shapes and the local checks applied before a command is sent.

Filters, update operators and pipeline stages are passed through to the
server uninterpreted; only their outer shape is checked here.
"""

from __future__ import annotations

import datetime
import re
import uuid
from typing import Any, Mapping, Sequence, Union

from bson import ObjectId
from bson.binary import Binary
from bson.code import Code
from bson.dbref import DBRef
from bson.decimal128 import Decimal128
from bson.int64 import Int64
from bson.max_key import MaxKey
from bson.min_key import MinKey
from bson.regex import Regex
from bson.timestamp import Timestamp

from .types import ValidationError

__all__ = [
    "DocumentValue",
    "UPDATE_OPERATORS",
    "check_document",
    "check_filter",
    "check_pipeline",
    "check_replacement",
    "check_update",
    "is_operator_update",
    "new_object_id",
    "sort_document",
    "index_keys",
    "index_name",
]

# The closed set of values a document may hold.
DocumentValue = Union[
    None,
    bool,
    int,
    float,
    str,
    bytes,
    datetime.datetime,
    ObjectId,
    "list[DocumentValue]",
    "dict[str, DocumentValue]",
]

_SCALAR_TYPES = (
    type(None),
    bool,
    float,
    str,
    bytes,
    datetime.datetime,
    ObjectId,
    Binary,
    Code,
    DBRef,
    Decimal128,
    Int64,
    MaxKey,
    MinKey,
    Regex,
    Timestamp,
    uuid.UUID,
    re.Pattern,
)

_INT64_MIN = -(2**63)
_INT64_MAX = 2**63 - 1

UPDATE_OPERATORS = frozenset(
    {
        "$currentDate",
        "$inc",
        "$min",
        "$max",
        "$mul",
        "$rename",
        "$set",
        "$setOnInsert",
        "$unset",
        "$addToSet",
        "$pop",
        "$pull",
        "$push",
        "$pullAll",
        "$bit",
    }
)


def new_object_id() -> ObjectId:
    """Generate a new object identifier for a document ``_id``."""
    return ObjectId()


def _check_value(value: Any, path: str) -> None:
    if isinstance(value, int) and not isinstance(value, bool):
        if not _INT64_MIN <= value <= _INT64_MAX:
            raise ValidationError(f"Integer at {path!r} does not fit in 64 bits")
        return
    if isinstance(value, _SCALAR_TYPES):
        return
    if isinstance(value, Mapping):
        _check_fields(value, path)
        return
    if isinstance(value, (list, tuple)):
        for i, item in enumerate(value):
            _check_value(item, f"{path}.{i}")
        return
    raise ValidationError(f"Unsupported value of type {type(value).__name__} at {path!r}")


def _check_fields(document: Mapping[str, Any], prefix: str) -> None:
    for key, value in document.items():
        if not isinstance(key, str):
            raise ValidationError(f"Field names must be strings, got {key!r}")
        if "\x00" in key:
            raise ValidationError(f"Field name {key!r} contains a null character")
        _check_value(value, f"{prefix}.{key}" if prefix else key)


def check_document(document: Any) -> None:
    """
    Check that ``document`` is a mapping holding only supported values.

    Raises:
        ValidationError: Naming the offending field path.
    """
    if not isinstance(document, Mapping):
        raise ValidationError(f"Document must be a mapping, got {type(document).__name__}")
    _check_fields(document, "")


def check_filter(filter: Any) -> dict[str, Any]:
    """Return the filter as a dict, treating None as match-all."""
    if filter is None:
        return {}
    if not isinstance(filter, Mapping):
        raise ValidationError(f"Filter must be a mapping, got {type(filter).__name__}")
    return dict(filter)


def check_pipeline(pipeline: Any) -> list[dict[str, Any]]:
    """Return the pipeline as a list of stage dicts."""
    if isinstance(pipeline, (str, bytes, Mapping)) or not isinstance(pipeline, Sequence):
        raise ValidationError("Pipeline must be a list of stage documents")
    stages = []
    for stage in pipeline:
        if not isinstance(stage, Mapping) or len(stage) != 1:
            raise ValidationError(f"Each pipeline stage must be a single-key mapping, got {stage!r}")
        stages.append(dict(stage))
    return stages


def is_operator_update(update: Mapping[str, Any]) -> bool:
    """
    Tell whether an update document uses operators or is a replacement.

    Raises:
        ValidationError: If the document is empty, mixes operator and plain
            fields, or uses an unknown operator.
    """
    if not update:
        raise ValidationError("Update document must not be empty")

    operators = [key for key in update if key.startswith("$")]
    if not operators:
        return False
    if len(operators) != len(update):
        raise ValidationError("Update document mixes update operators and replacement fields")

    unknown = sorted(set(operators) - UPDATE_OPERATORS)
    if unknown:
        raise ValidationError(f"Unknown update operator(s): {', '.join(unknown)}")
    for op in operators:
        if not isinstance(update[op], Mapping):
            raise ValidationError(f"Argument of {op} must be a document")
    return True


def check_update(update: Any, *, allow_replacement: bool) -> dict[str, Any] | list[dict[str, Any]]:
    """
    Validate the ``u`` field of an update statement.

    Args:
        update: An operator document, a pipeline, or a replacement document.
        allow_replacement: Whether a replacement document is acceptable.

    Returns:
        The update as a dict or a list of stage dicts.
    """
    if isinstance(update, Mapping):
        if is_operator_update(update):
            return dict(update)
        if not allow_replacement:
            raise ValidationError("Update requires update operators such as $set")
        check_document(update)
        return dict(update)
    return check_pipeline(update)


def check_replacement(replacement: Any) -> dict[str, Any]:
    """Validate a replacement document; operators are not allowed."""
    check_document(replacement)
    if any(key.startswith("$") for key in replacement):
        raise ValidationError("Replacement document must not contain update operators")
    return dict(replacement)


def sort_document(sort: Any) -> dict[str, Any] | None:
    """Normalise a sort given as a field name, (field, direction) pairs or a mapping."""
    if sort is None:
        return None
    if isinstance(sort, str):
        return {sort: 1}
    if isinstance(sort, Mapping):
        return dict(sort)
    return {key: direction for key, direction in sort}


def index_keys(keys: str | Sequence[tuple[str, Any]] | Mapping[str, Any]) -> dict[str, Any]:
    """Normalise index keys into an ordered key document."""
    if isinstance(keys, str):
        return {keys: 1}
    if isinstance(keys, Mapping):
        spec = dict(keys)
    else:
        spec = {}
        for item in keys:
            if isinstance(item, str):
                spec[item] = 1
            else:
                key, direction = item
                spec[key] = direction
    if not spec:
        raise ValidationError("Index keys must not be empty")
    return spec


def index_name(keys: Mapping[str, Any]) -> str:
    """Generate the default index name, e.g. ``name_1_age_-1``."""
    return "_".join(f"{key}_{direction}" for key, direction in keys.items())
