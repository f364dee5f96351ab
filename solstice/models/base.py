from __future__ import annotations

from typing import Any, ClassVar, Dict, Type, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ..store.base import DocumentSnapshot
from ..store.exceptions import DocumentDecodeError

T = TypeVar("T", bound="DocumentModel")


class DocumentModel(BaseModel):
    """Pydantic model stored as one document; ``id`` lives outside the body."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore", use_enum_values=True)

    collection: ClassVar[str] = ""

    id: str = Field("", exclude=True)

    @classmethod
    def from_document(cls: Type[T], snapshot: DocumentSnapshot) -> T:
        if snapshot.data is None:
            raise DocumentDecodeError(snapshot.collection, snapshot.id, "document does not exist")
        try:
            return cls.model_validate({**snapshot.data, "id": snapshot.id})
        except ValidationError as exc:
            raise DocumentDecodeError(snapshot.collection, snapshot.id, str(exc)) from exc

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


__all__ = ["DocumentModel"]
