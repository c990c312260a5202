"""Deleted-import tombstones: record, query and undelete.

A tombstone says "this user deleted the contact that ``source`` knows as
``external_id``; do not import it again". Import pipelines consult
:func:`is_deleted_import`, :func:`any_deleted_import` or
:func:`get_deleted_external_ids` before creating an entity from external data.

Recording is idempotent: the unique key ``(user_id, source, external_id)`` is
the only concurrency control, and a duplicate insert resolves to the existing
row instead of an error. Reads are not linked to concurrent writes, so an
import that checks just before a deletion commits can still import the
contact once.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Mapping
from typing import Any

from importguard.tombstones import store
from importguard.tombstones.models import DeletedImport

logger = logging.getLogger(__name__)


def _coerce_user_id(user_id: uuid.UUID | str) -> uuid.UUID:
    if isinstance(user_id, uuid.UUID):
        return user_id
    return uuid.UUID(str(user_id))


def _require_key_part(value: Any, name: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"{name} must be a non-empty string")
    return value.strip()


def _clean_snapshot(value: str | None) -> str | None:
    if value is None:
        return None
    normalized = value.strip()
    return normalized or None


def _valid_pairs(external_ids_by_source: Mapping[str, Any] | None) -> list[tuple[str, str]]:
    """Return ``(source, external_id)`` pairs, dropping blank or non-string entries."""
    if not external_ids_by_source:
        return []
    pairs: list[tuple[str, str]] = []
    for source, external_id in external_ids_by_source.items():
        if (
            not isinstance(source, str)
            or not source.strip()
            or not isinstance(external_id, str)
            or not external_id.strip()
        ):
            logger.warning(
                "Skipping malformed external id entry (source=%r, external_id=%r)",
                source,
                external_id,
            )
            continue
        pairs.append((source.strip(), external_id.strip()))
    return pairs


async def record_deleted_import(
    pool: Any,
    user_id: uuid.UUID | str,
    external_id: str,
    source: str,
    *,
    entity_name: str | None = None,
    entity_email: str | None = None,
) -> DeletedImport | None:
    """Ensure a tombstone exists for ``(user_id, source, external_id)``.

    Returns the inserted row or, when the key was already tombstoned, the
    existing row unchanged (its original snapshot is kept). ``None`` is only
    returned if a concurrent :func:`undelete_import` removed the row between
    the conflicting insert and the follow-up read.

    Raises ``ValueError`` for a blank ``external_id`` or ``source``. Store
    errors propagate unchanged.
    """
    uid = _coerce_user_id(user_id)
    external_id = _require_key_part(external_id, "external_id")
    source = _require_key_part(source, "source")

    row = await store.insert_if_absent(
        pool,
        uid,
        source,
        external_id,
        _clean_snapshot(entity_name),
        _clean_snapshot(entity_email),
    )
    if row is not None:
        logger.info(
            "Recorded deleted import (source=%s, external_id=%s)",
            source,
            external_id,
            extra={"user_id": str(uid)},
        )
        return DeletedImport.from_row(row)

    logger.debug(
        "Deleted import already recorded (source=%s, external_id=%s)",
        source,
        external_id,
        extra={"user_id": str(uid)},
    )
    existing = await store.fetch_one(pool, uid, source, external_id)
    return DeletedImport.from_row(existing) if existing is not None else None


async def record_deleted_imports(
    pool: Any,
    user_id: uuid.UUID | str,
    external_ids_by_source: Mapping[str, str] | None,
    *,
    entity_name: str | None = None,
    entity_email: str | None = None,
) -> None:
    """Record one tombstone per ``source -> external_id`` entry.

    Best-effort per id: each pair is its own statement, so pairs recorded
    before a failing one stay recorded and the failure propagates. An empty or
    ``None`` map is a no-op; blank or non-string entries are skipped.
    """
    for source, external_id in _valid_pairs(external_ids_by_source):
        await record_deleted_import(
            pool,
            user_id,
            external_id,
            source,
            entity_name=entity_name,
            entity_email=entity_email,
        )


async def is_deleted_import(
    pool: Any,
    user_id: uuid.UUID | str,
    external_id: str,
    source: str,
) -> bool:
    """Return True if the user deleted ``external_id`` from ``source``."""
    return await store.exists(
        pool,
        _coerce_user_id(user_id),
        _require_key_part(source, "source"),
        _require_key_part(external_id, "external_id"),
    )


async def any_deleted_import(
    pool: Any,
    user_id: uuid.UUID | str,
    external_ids_by_source: Mapping[str, str] | None,
) -> bool:
    """Return True if any ``source -> external_id`` entry has a tombstone.

    All pairs are checked in a single round-trip; an empty map is ``False``.
    """
    pairs = _valid_pairs(external_ids_by_source)
    if not pairs:
        return False
    sources = [source for source, _ in pairs]
    external_ids = [external_id for _, external_id in pairs]
    return await store.exists_any(pool, _coerce_user_id(user_id), sources, external_ids)


async def get_deleted_external_ids(
    pool: Any,
    user_id: uuid.UUID | str,
    source: str,
) -> set[str]:
    """Return every external id the user deleted from ``source``.

    Meant for import scans over many candidates from one source: load once,
    then test membership locally.
    """
    return set(
        await store.select_external_ids(
            pool, _coerce_user_id(user_id), _require_key_part(source, "source")
        )
    )


async def list_deleted_imports(
    pool: Any,
    user_id: uuid.UUID | str,
    *,
    source: str | None = None,
) -> list[DeletedImport]:
    """Return the user's tombstones, newest first. Inspection only."""
    if source is not None:
        source = _require_key_part(source, "source")
    rows = await store.select_for_user(pool, _coerce_user_id(user_id), source)
    return [DeletedImport.from_row(row) for row in rows]


async def undelete_import(
    pool: Any,
    user_id: uuid.UUID | str,
    external_id: str,
    source: str,
) -> bool:
    """Remove the tombstone so the contact may be imported again.

    Removing a tombstone that does not exist is a no-op. Returns whether a row
    was removed.
    """
    uid = _coerce_user_id(user_id)
    source = _require_key_part(source, "source")
    external_id = _require_key_part(external_id, "external_id")
    removed = await store.delete(pool, uid, source, external_id)
    if removed:
        logger.info(
            "Removed deleted import (source=%s, external_id=%s)",
            source,
            external_id,
            extra={"user_id": str(uid)},
        )
    return removed > 0
