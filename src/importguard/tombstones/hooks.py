"""Deletion hook: turn a deleted entity's metadata into tombstones.

Imported entities carry their external identity in ``metadata`` in one of two
shapes:

- current: ``{"external_ids": {"google_contacts": "people/123", "gmail": "gmail:x"}}``
- legacy:  ``{"external_id": "people/123", "source": "google_contacts"}``

:func:`resolve_external_ids` reads the metadata once and returns one of
:class:`ExternalIdMap`, :class:`LegacyExternalId` or :class:`NoExternalIds`.
Storage code only ever sees the resulting ``source -> external_id`` mapping.
"""

from __future__ import annotations

import json
import logging
import uuid
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from importguard.tombstones.imports import record_deleted_imports

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ExternalIdMap:
    """``metadata["external_ids"]``: one external id per source.

    ``pairs`` holds ``(source, external_id)`` tuples in metadata order.
    """

    pairs: tuple[tuple[str, str], ...] = ()

    @classmethod
    def from_mapping(cls, ids: Mapping[str, str]) -> ExternalIdMap:
        return cls(pairs=tuple(ids.items()))

    def as_mapping(self) -> dict[str, str]:
        return dict(self.pairs)


@dataclass(frozen=True)
class LegacyExternalId:
    """``metadata["external_id"]`` + ``metadata["source"]``."""

    external_id: str
    source: str

    def as_mapping(self) -> dict[str, str]:
        return {self.source: self.external_id}


@dataclass(frozen=True)
class NoExternalIds:
    """The entity was not imported, or its metadata is unusable."""

    def as_mapping(self) -> dict[str, str]:
        return {}


ExternalIdRefs = ExternalIdMap | LegacyExternalId | NoExternalIds


def _non_blank(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    normalized = value.strip()
    return normalized or None


def _decode_metadata(metadata: Any) -> Mapping[str, Any]:
    # JSONB columns come back from asyncpg as text unless a codec is set.
    if isinstance(metadata, str):
        try:
            metadata = json.loads(metadata)
        except ValueError:
            logger.warning("Ignoring entity metadata that is not valid JSON")
            return {}
    if isinstance(metadata, Mapping):
        return metadata
    return {}


def resolve_external_ids(metadata: Any) -> ExternalIdRefs:
    """Classify entity metadata into one of the external-id variants.

    The map form wins when both forms are present. Entries of the map with a
    blank or non-string source/id are dropped; nothing here ever raises.
    """
    meta = _decode_metadata(metadata)

    raw_map = meta.get("external_ids")
    if isinstance(raw_map, Mapping):
        ids: dict[str, str] = {}
        for source, external_id in raw_map.items():
            clean_source = _non_blank(source)
            clean_id = _non_blank(external_id)
            if clean_source is None or clean_id is None:
                continue
            ids[clean_source] = clean_id
        if ids:
            return ExternalIdMap.from_mapping(ids)

    legacy_id = _non_blank(meta.get("external_id"))
    legacy_source = _non_blank(meta.get("source"))
    if legacy_id is not None and legacy_source is not None:
        return LegacyExternalId(external_id=legacy_id, source=legacy_source)

    return NoExternalIds()


async def record_entity_deletion(
    pool: Any,
    owner_id: uuid.UUID | str,
    metadata: Any,
    *,
    entity_name: str | None = None,
    entity_email: str | None = None,
) -> int:
    """Record tombstones for every external id of a deleted entity.

    ``entity_name`` and ``entity_email`` are stored on each tombstone as an
    audit snapshot. Returns how many ``(source, external_id)`` pairs were
    recorded; an entity without external ids records nothing and returns 0.
    Store errors propagate; the caller decides whether they abort the delete.
    """
    refs = resolve_external_ids(metadata)
    if isinstance(refs, NoExternalIds):
        logger.debug("Deleted entity has no external ids; nothing to record")
        return 0

    mapping = refs.as_mapping()
    await record_deleted_imports(
        pool,
        owner_id,
        mapping,
        entity_name=entity_name,
        entity_email=entity_email,
    )
    return len(mapping)
