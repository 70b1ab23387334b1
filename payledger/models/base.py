from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, Field, ConfigDict


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Mongo hands back naive datetimes; treat them as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class LedgerModel(BaseModel):
    """Common shape for documents read from and written to the store."""

    id: Optional[str] = Field(default=None, validation_alias="_id", serialization_alias="_id")
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    model_config = ConfigDict(
        populate_by_name=True,
        arbitrary_types_allowed=True,
        from_attributes=True
    )

    @classmethod
    def from_document(cls, doc: dict[str, Any]):
        """Build a model from a raw Mongo document (ObjectId ids become str)."""
        doc = dict(doc)
        if "_id" in doc and doc["_id"] is not None:
            doc["_id"] = str(doc["_id"])
        return cls(**doc)
