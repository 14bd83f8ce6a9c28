"""Shared pydantic base for documents persisted in the keyed store."""

from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class StoredModel(BaseModel):
    """Base model whose stored form uses camelCase field names.

    Python code uses snake_case attributes; ``to_document()`` produces the
    JSON-ready dict written to the store and ``from_document()`` reads it
    back.  The ``id`` lives in the path, not inside the document.
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )

    id: Optional[str] = None

    def to_document(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude={"id"}, exclude_none=True)

    @classmethod
    def from_document(cls, doc_id: str, doc: dict[str, Any]):
        return cls.model_validate({**doc, "id": doc_id})

    @classmethod
    def by_field_name(cls, data: dict[str, Any]) -> dict[str, Any]:
        """Re-key ``data`` from stored camelCase names to attribute names."""
        aliases = {info.alias: name for name, info in cls.model_fields.items() if info.alias}
        return {aliases.get(key, key): value for key, value in data.items()}
