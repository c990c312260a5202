"""Entity operations behind import deduplication.

Creating an entity with its metadata and optional email identifier, finding
the entity an external contact was already imported as, merging further
external ids into it, and deleting it while recording its external ids.
"""

from __future__ import annotations

import json
import logging
import uuid
from collections.abc import Iterable, Mapping
from typing import Any

import asyncpg

from importguard.tombstones.hooks import record_entity_deletion

logger = logging.getLogger(__name__)


def _parse_json_field(value: Any) -> dict[str, Any]:
    if value is None:
        return {}
    if isinstance(value, str):
        value = json.loads(value)
    if isinstance(value, dict):
        return value
    return {}


def _parse_entity(row: asyncpg.Record) -> dict[str, Any]:
    d = dict(row)
    d["metadata"] = _parse_json_field(d.get("metadata"))
    return d


async def entity_create(
    pool: asyncpg.Pool,
    owner_id: uuid.UUID | str,
    name: str,
    *,
    entity_type: str = "person",
    metadata: dict[str, Any] | None = None,
    email: str | None = None,
) -> dict[str, Any]:
    """Create an entity and, when given, its primary email identifier."""
    if not name or not name.strip():
        raise ValueError("name must be a non-empty string")
    owner = owner_id if isinstance(owner_id, uuid.UUID) else uuid.UUID(str(owner_id))

    async with pool.acquire() as conn:
        async with conn.transaction():
            row = await conn.fetchrow(
                """
                INSERT INTO entities (owner_id, name, type, metadata)
                VALUES ($1, $2, $3, $4::jsonb)
                RETURNING *
                """,
                owner,
                name.strip(),
                entity_type,
                json.dumps(metadata or {}),
            )
            if email:
                await conn.execute(
                    """
                    INSERT INTO identifiers (entity_id, type, value, is_primary)
                    VALUES ($1, 'email', $2, true)
                    """,
                    row["id"],
                    email.strip(),
                )
    return _parse_entity(row)


ExternalIds = Mapping[str, str] | Iterable[tuple[str, str]]


def _non_blank(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    normalized = value.strip()
    return normalized or None


def _external_id_pairs(external_ids: ExternalIds | None) -> list[tuple[str, str]]:
    """Normalize a ``source -> external_id`` map or pair list, dropping blanks."""
    if not external_ids:
        return []
    items = external_ids.items() if isinstance(external_ids, Mapping) else external_ids
    pairs: list[tuple[str, str]] = []
    for source, external_id in items:
        clean_source = _non_blank(source)
        clean_id = _non_blank(external_id)
        if clean_source is None or clean_id is None:
            continue
        if (clean_source, clean_id) not in pairs:
            pairs.append((clean_source, clean_id))
    return pairs


async def entity_find_by_external_id(
    pool: Any,
    owner_id: uuid.UUID | str,
    external_ids: ExternalIds | None,
) -> dict[str, Any] | None:
    """Return the owner's entity imported under any of *external_ids*.

    Both metadata shapes are matched: the ``external_ids`` map and the legacy
    ``external_id`` + ``source`` pair. When several entities match, the oldest
    wins. Returns ``None`` when nothing matches or no usable id was given.
    """
    pairs = _external_id_pairs(external_ids)
    if not pairs:
        return None
    owner = owner_id if isinstance(owner_id, uuid.UUID) else uuid.UUID(str(owner_id))
    row = await pool.fetchrow(
        """
        SELECT e.*
        FROM entities e
        JOIN unnest($2::text[], $3::text[]) AS k(source, external_id)
          ON e.metadata -> 'external_ids' ->> k.source = k.external_id
          OR (e.metadata ->> 'source' = k.source AND e.metadata ->> 'external_id' = k.external_id)
        WHERE e.owner_id = $1
        ORDER BY e.created_at, e.id
        LIMIT 1
        """,
        owner,
        [source for source, _ in pairs],
        [external_id for _, external_id in pairs],
    )
    return _parse_entity(row) if row is not None else None


def merge_import_metadata(
    metadata: Any,
    external_ids: ExternalIds | None,
    *,
    source: str | None = None,
) -> dict[str, Any]:
    """Fold *external_ids* and *source* into existing entity metadata.

    Ids already on the entity win over incoming ids for the same source. A
    legacy ``external_id`` + ``source`` pair is carried into the
    ``external_ids`` map, and ``sources`` lists every source the entity was
    imported from. Other metadata keys are kept as they are.
    """
    merged = dict(_parse_json_field(metadata))

    ids: dict[str, str] = {}
    current = merged.get("external_ids")
    if isinstance(current, Mapping):
        ids.update(_external_id_pairs(current))
    legacy_source = _non_blank(merged.get("source"))
    legacy_id = _non_blank(merged.get("external_id"))
    if legacy_source is not None and legacy_id is not None:
        ids.setdefault(legacy_source, legacy_id)
    for pair_source, external_id in _external_id_pairs(external_ids):
        ids.setdefault(pair_source, external_id)
    merged["external_ids"] = ids

    current_sources = merged.get("sources")
    sources: list[str] = []
    if isinstance(current_sources, list):
        sources = [s.strip() for s in current_sources if _non_blank(s)]
    for candidate in (legacy_source, _non_blank(source)):
        if candidate is not None and candidate not in sources:
            sources.append(candidate)
    merged["sources"] = sources
    return merged


async def entity_merge_external_ids(
    pool: asyncpg.Pool,
    entity_id: uuid.UUID | str,
    external_ids: ExternalIds | None,
    *,
    source: str | None = None,
) -> dict[str, Any] | None:
    """Merge external ids into an entity's metadata; ``None`` if it is gone."""
    eid = entity_id if isinstance(entity_id, uuid.UUID) else uuid.UUID(str(entity_id))

    async with pool.acquire() as conn:
        async with conn.transaction():
            row = await conn.fetchrow(
                "SELECT metadata FROM entities WHERE id = $1 FOR UPDATE",
                eid,
            )
            if row is None:
                return None
            metadata = merge_import_metadata(row["metadata"], external_ids, source=source)
            updated = await conn.fetchrow(
                """
                UPDATE entities
                SET metadata = $2::jsonb, updated_at = now()
                WHERE id = $1
                RETURNING *
                """,
                eid,
                json.dumps(metadata),
            )
    return _parse_entity(updated)


async def _primary_email(conn: Any, entity_id: uuid.UUID) -> str | None:
    return await conn.fetchval(
        """
        SELECT value FROM identifiers
        WHERE entity_id = $1 AND type = 'email'
        ORDER BY is_primary DESC, created_at
        LIMIT 1
        """,
        entity_id,
    )


async def entity_delete(
    pool: asyncpg.Pool,
    entity_id: uuid.UUID | str,
    *,
    strict: bool = True,
) -> bool:
    """Delete an entity and tombstone the external ids it was imported under.

    With ``strict=True`` the tombstones are written in the same transaction as
    the delete, so a store failure rolls the delete back and propagates. With
    ``strict=False`` the delete commits first and tombstones are recorded
    fail-open: a failure is logged and the delete still stands.

    Returns ``False`` when the entity does not exist.
    """
    eid = entity_id if isinstance(entity_id, uuid.UUID) else uuid.UUID(str(entity_id))

    async with pool.acquire() as conn:
        async with conn.transaction():
            row = await conn.fetchrow(
                "SELECT id, owner_id, name, metadata FROM entities WHERE id = $1 FOR UPDATE",
                eid,
            )
            if row is None:
                return False
            entity = _parse_entity(row)
            email = await _primary_email(conn, eid)
            await conn.execute("DELETE FROM entities WHERE id = $1", eid)
            if strict:
                await record_entity_deletion(
                    conn,
                    entity["owner_id"],
                    entity["metadata"],
                    entity_name=entity["name"],
                    entity_email=email,
                )

        if not strict:
            try:
                await record_entity_deletion(
                    conn,
                    entity["owner_id"],
                    entity["metadata"],
                    entity_name=entity["name"],
                    entity_email=email,
                )
            except Exception:
                logger.exception(
                    "Recording deleted imports failed for entity_id=%s; deletion kept",
                    eid,
                )

    logger.info("Deleted entity %s", eid, extra={"user_id": str(entity["owner_id"])})
    return True
