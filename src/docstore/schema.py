"""
Typed schema adapter for collections.

A collection created with a schema accepts instances of that type on
insert/replace and returns validated instances from reads. Any type a
pydantic ``TypeAdapter`` understands works: ``BaseModel`` subclasses,
dataclasses and ``TypedDict`` classes.

Example:
    class User(BaseModel):
        model_config = ConfigDict(populate_by_name=True, arbitrary_types_allowed=True)

        id: ObjectId | None = Field(default=None, alias="_id")
        name: str

    users = client.collection("app", "users", schema=User)
    await users.insert_one(User(name="Alice"))
    alice = await users.find_one({"name": "Alice"})  # -> User
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any, Generic, TypeVar

import pydantic
from pydantic import TypeAdapter

from .types import ValidationError

__all__ = ["DocumentSchema"]

T = TypeVar("T")


class DocumentSchema(Generic[T]):
    """Encodes values of a schema type to documents and decodes them back."""

    __slots__ = ("_type", "_adapter")

    def __init__(self, schema: type[T]) -> None:
        self._type = schema
        self._adapter: TypeAdapter[T] = TypeAdapter(schema)

    @property
    def type(self) -> type[T]:
        return self._type

    def encode(self, value: T | Mapping[str, Any]) -> dict[str, Any]:
        """
        Dump a schema instance to a document.

        Plain mappings are validated against the schema first. A ``None``
        ``_id`` is dropped so the client generates one.

        Raises:
            ValidationError: If the value does not satisfy the schema.
        """
        try:
            if isinstance(value, Mapping):
                value = self._adapter.validate_python(value)
            document = self._adapter.dump_python(value, by_alias=True)
        except pydantic.ValidationError as e:
            raise ValidationError(f"Document does not match {self._type.__name__}: {e}") from e

        if not isinstance(document, dict):
            raise ValidationError(f"{self._type.__name__} does not dump to a document")
        if document.get("_id", 0) is None:
            del document["_id"]
        return document

    def decode(self, document: Mapping[str, Any]) -> T:
        """
        Validate a document returned by the server.

        Raises:
            ValidationError: If the stored document does not satisfy the schema.
        """
        try:
            return self._adapter.validate_python(document)
        except pydantic.ValidationError as e:
            raise ValidationError(f"Stored document does not match {self._type.__name__}: {e}") from e

    def __repr__(self) -> str:
        return f"DocumentSchema({self._type.__name__})"
