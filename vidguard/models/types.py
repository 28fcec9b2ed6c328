"""
Column types shared by the video tables.

Rows are read and written from the worker against PostgreSQL in production
and SQLite in the integration tests, so both types pick their storage per
dialect.
"""

import uuid
from typing import Any

from pydantic import BaseModel
from sqlalchemy import JSON
from sqlalchemy.dialects.postgresql import JSONB, UUID as PG_UUID
from sqlalchemy.types import CHAR, TypeDecorator


def as_uuid(value: str | uuid.UUID) -> uuid.UUID:
    """Video ids arrive as strings in queue messages; anything else is rejected."""
    if isinstance(value, uuid.UUID):
        return value
    return uuid.UUID(str(value))


class GUID(TypeDecorator):
    """
    Video and owner ids.

    Accepts a UUID or its string form on every dialect and always loads a
    UUID, so ids taken straight from a request compare equal to stored ones.
    """

    impl = CHAR(36)
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(PG_UUID(as_uuid=True))
        return dialect.type_descriptor(CHAR(36))

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        value = as_uuid(value)
        return value if dialect.name == "postgresql" else str(value)

    def process_result_value(self, value, dialect):
        return None if value is None else as_uuid(value)


class JSONType(TypeDecorator):
    """
    Analysis documents: category scores, classifier metadata, event payloads.

    Pydantic models are stored in their camelCase wire form, the same shape
    the notification messages carry.
    """

    impl = JSON
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(JSONB())
        return dialect.type_descriptor(JSON())

    def process_bind_param(self, value: Any, dialect) -> Any:
        if isinstance(value, BaseModel):
            return value.model_dump(mode="json", by_alias=True)
        return value
