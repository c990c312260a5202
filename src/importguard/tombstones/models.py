"""Tombstone row model."""

from __future__ import annotations

import uuid
from collections.abc import Mapping
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

# Well-known source tags. Any non-blank string is accepted as a source.
SOURCE_GOOGLE_CONTACTS = "google_contacts"
SOURCE_GMAIL = "gmail"


class DeletedImport(BaseModel):
    """Durable marker: ``external_id`` from ``source`` was deleted by ``user_id``.

    ``entity_name`` and ``entity_email`` are an audit snapshot of the deleted
    contact and play no part in any lookup.
    """

    model_config = ConfigDict(extra="ignore", frozen=True)

    id: uuid.UUID
    user_id: uuid.UUID
    source: str = Field(min_length=1)
    external_id: str = Field(min_length=1)
    entity_name: str | None = None
    entity_email: str | None = None
    inserted_at: datetime

    @field_validator("source", "external_id")
    @classmethod
    def _non_blank(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("must be a non-empty string")
        return normalized

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> DeletedImport:
        return cls.model_validate(dict(row))

    @property
    def key(self) -> tuple[str, str]:
        """``(source, external_id)`` pair this tombstone suppresses."""
        return self.source, self.external_id
