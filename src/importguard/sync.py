"""Tombstone-aware import primitives for contact sync pipelines.

This module covers:
- provider fetch contract (paged full scans)
- tombstone filtering of fetched candidates
- collapsing duplicates of one contact within a scan
- applying the surviving candidates: create-or-merge by external id, or a
  caller-supplied callback
- explicit restore of a previously deleted external contact
"""

from __future__ import annotations

import abc
import logging
import uuid
from typing import Any, Protocol

from pydantic import BaseModel, ConfigDict, Field, field_validator

from importguard.entities import (
    entity_create,
    entity_find_by_external_id,
    entity_merge_external_ids,
)
from importguard.tombstones.imports import get_deleted_external_ids, undelete_import
from importguard.tombstones.models import SOURCE_GMAIL, SOURCE_GOOGLE_CONTACTS

logger = logging.getLogger(__name__)


class ImportSyncError(RuntimeError):
    """Base import sync error."""


class ImportCandidate(BaseModel):
    """Provider-neutral contact about to be materialized as an entity."""

    model_config = ConfigDict(extra="forbid")

    source: str = Field(min_length=1)
    external_id: str = Field(min_length=1)
    external_ids: dict[str, str] = Field(default_factory=dict)
    display_name: str | None = None
    email: str | None = None
    raw: dict[str, Any] | None = None

    @field_validator("source", "external_id")
    @classmethod
    def _normalize_key(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("must be a non-empty string")
        return normalized

    def id_pairs(self) -> dict[str, str]:
        """One external id per source.

        An ``external_ids`` entry for the primary source wins over
        ``external_id``, the same way ids already on an entity win on merge.
        """
        pairs = {
            source.strip(): external_id.strip()
            for source, external_id in self.external_ids.items()
            if source.strip() and external_id.strip()
        }
        pairs.setdefault(self.source, self.external_id)
        return pairs

    def all_pairs(self) -> list[tuple[str, str]]:
        """Every ``(source, external_id)`` this candidate is known by, primary first."""
        pairs = [(self.source, self.external_id)]
        for pair in self.id_pairs().items():
            if pair not in pairs:
                pairs.append(pair)
        return pairs

    def entity_metadata(self) -> dict[str, Any]:
        """Metadata to store on the created entity so its deletion can be tombstoned."""
        return {"external_ids": self.id_pairs(), "source": self.source, "sources": [self.source]}

    def merged_with(self, other: ImportCandidate) -> ImportCandidate:
        """Fold a duplicate of the same contact into this one; this one's values win."""
        ids = self.id_pairs()
        for source, external_id in other.all_pairs():
            ids.setdefault(source, external_id)
        return self.model_copy(
            update={
                "external_ids": ids,
                "display_name": self.display_name or other.display_name,
                "email": self.email or other.email,
            }
        )


class ImportBatch(BaseModel):
    """One provider page."""

    model_config = ConfigDict(extra="forbid")

    candidates: list[ImportCandidate] = Field(default_factory=list)
    next_page_token: str | None = None

    @field_validator("next_page_token")
    @classmethod
    def _normalize_token(cls, value: str | None) -> str | None:
        if value is None:
            return None
        normalized = value.strip()
        return normalized or None


class ImportSyncResult(BaseModel):
    """Outcome summary from one import scan."""

    model_config = ConfigDict(extra="forbid")

    fetched: int
    collapsed: int = 0
    applied: int
    suppressed: int
    suppressed_ids: list[str] = Field(default_factory=list)


class ContactsProvider(abc.ABC):
    """Provider contract for paged contact import."""

    @property
    @abc.abstractmethod
    def name(self) -> str:
        """Stable source tag recorded on imported entities."""
        ...

    @abc.abstractmethod
    async def fetch_page(self, *, account_id: str, page_token: str | None = None) -> ImportBatch:
        """Fetch one page of candidates."""
        ...


class TombstoneFilter:
    """Per-scan membership cache over a user's tombstones.

    The first lookup for a source loads every deleted external id for that
    source with one query; later checks are set lookups. Build a new filter for
    each scan so deletions made between scans are picked up.
    """

    def __init__(self, pool: Any, user_id: uuid.UUID | str) -> None:
        self._pool = pool
        self._user_id = user_id
        self._deleted: dict[str, set[str]] = {}

    async def deleted_ids(self, source: str) -> set[str]:
        cached = self._deleted.get(source)
        if cached is None:
            cached = await get_deleted_external_ids(self._pool, self._user_id, source)
            self._deleted[source] = cached
        return cached

    async def is_suppressed(self, candidate: ImportCandidate) -> bool:
        for source, external_id in candidate.all_pairs():
            if external_id in await self.deleted_ids(source):
                return True
        return False

    async def partition(
        self, candidates: list[ImportCandidate]
    ) -> tuple[list[ImportCandidate], list[ImportCandidate]]:
        """Split *candidates* into ``(importable, suppressed)``, preserving order."""
        importable: list[ImportCandidate] = []
        suppressed: list[ImportCandidate] = []
        for candidate in candidates:
            if await self.is_suppressed(candidate):
                suppressed.append(candidate)
            else:
                importable.append(candidate)
        return importable, suppressed


class ContactApplyFn(Protocol):
    """Callback invoked for each candidate that survives tombstone filtering."""

    async def __call__(self, candidate: ImportCandidate) -> None:
        """Create or merge the entity for one candidate."""
        ...


class EntityContactApplier:
    """Default ``apply_contact``: merge into the entity already imported, else create one.

    A candidate matches an existing entity when any of its external ids does,
    so the same person seen through several sources ends up as one entity
    whose metadata carries every id. Those are the ids tombstoned on delete.
    """

    def __init__(self, pool: Any, user_id: uuid.UUID | str) -> None:
        self._pool = pool
        self._user_id = user_id
        self.created = 0
        self.merged = 0

    async def __call__(self, candidate: ImportCandidate) -> None:
        existing = await entity_find_by_external_id(
            self._pool, self._user_id, candidate.all_pairs()
        )
        if existing is not None:
            await entity_merge_external_ids(
                self._pool, existing["id"], candidate.id_pairs(), source=candidate.source
            )
            self.merged += 1
            return

        await entity_create(
            self._pool,
            self._user_id,
            candidate.display_name or candidate.email or candidate.external_id,
            metadata=candidate.entity_metadata(),
            email=candidate.email,
        )
        self.created += 1


def collapse_candidates(candidates: list[ImportCandidate]) -> list[ImportCandidate]:
    """Merge candidates that share any ``(source, external_id)``, keeping first-seen order."""
    collapsed: list[ImportCandidate] = []
    index_by_pair: dict[tuple[str, str], int] = {}
    for candidate in candidates:
        pairs = candidate.all_pairs()
        index = next((index_by_pair[pair] for pair in pairs if pair in index_by_pair), None)
        if index is None:
            collapsed.append(candidate)
            index = len(collapsed) - 1
        else:
            collapsed[index] = collapsed[index].merged_with(candidate)
        for pair in pairs:
            index_by_pair.setdefault(pair, index)
    return collapsed


class ImportSyncEngine:
    """Runs a full import scan, skipping contacts the user deleted.

    Without an ``apply_contact`` callback each scan uses an
    :class:`EntityContactApplier` bound to the scanned user.
    """

    def __init__(
        self,
        *,
        provider: ContactsProvider,
        pool: Any,
        apply_contact: ContactApplyFn | None = None,
    ) -> None:
        self._provider = provider
        self._pool = pool
        self._apply_contact = apply_contact

    async def sync(self, *, user_id: uuid.UUID | str, account_id: str) -> ImportSyncResult:
        fetched = await self._collect(account_id=account_id)
        candidates = collapse_candidates(fetched)
        guard = TombstoneFilter(self._pool, user_id)
        importable, suppressed = await guard.partition(candidates)
        apply_contact = self._apply_contact or EntityContactApplier(self._pool, user_id)

        for candidate in suppressed:
            logger.info(
                "Skipping deleted import (source=%s, external_id=%s)",
                candidate.source,
                candidate.external_id,
                extra={"user_id": str(user_id)},
            )

        for candidate in importable:
            await apply_contact(candidate)

        return ImportSyncResult(
            fetched=len(fetched),
            collapsed=len(fetched) - len(candidates),
            applied=len(importable),
            suppressed=len(suppressed),
            suppressed_ids=[candidate.external_id for candidate in suppressed],
        )

    async def _collect(self, *, account_id: str) -> list[ImportCandidate]:
        page_token: str | None = None
        seen_tokens: set[str] = set()
        candidates: list[ImportCandidate] = []

        while True:
            batch = await self._provider.fetch_page(account_id=account_id, page_token=page_token)
            candidates.extend(batch.candidates)
            page_token = batch.next_page_token
            if page_token is None:
                break
            if page_token in seen_tokens:
                raise ImportSyncError(
                    f"Provider {self._provider.name} repeated page token {page_token!r}"
                )
            seen_tokens.add(page_token)

        return candidates


async def restore_import(
    pool: Any,
    user_id: uuid.UUID | str,
    external_id: str,
    source: str,
) -> bool:
    """Allow a previously deleted external contact to be imported again."""
    return await undelete_import(pool, user_id, external_id, source)


def _as_non_empty_string(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    normalized = value.strip()
    return normalized or None


def _pick_primary_entry(values: list[Any]) -> dict[str, Any] | None:
    first_dict: dict[str, Any] | None = None
    for item in values:
        if not isinstance(item, dict):
            continue
        if first_dict is None:
            first_dict = item
        metadata = item.get("metadata")
        if isinstance(metadata, dict) and metadata.get("primary") is True:
            return item
    return first_dict


def candidate_from_google_person(payload: dict[str, Any]) -> ImportCandidate | None:
    """Build a candidate from a Google People API ``person`` resource.

    The resource name (``people/<id>``) is the ``google_contacts`` external
    id. When the person has a primary email it is also exposed under the
    ``gmail`` source as ``gmail:<address>``, which is how contacts discovered
    from mail are keyed. Returns ``None`` for payloads without a resource name.
    """
    resource_name = _as_non_empty_string(payload.get("resourceName"))
    if resource_name is None:
        logger.warning("Skipping Google contact without resourceName")
        return None

    names = payload.get("names")
    primary_name = _pick_primary_entry(names) if isinstance(names, list) else None
    display_name = (
        _as_non_empty_string(primary_name.get("displayName")) if primary_name else None
    )

    emails = payload.get("emailAddresses")
    primary_email = _pick_primary_entry(emails) if isinstance(emails, list) else None
    email = _as_non_empty_string(primary_email.get("value")) if primary_email else None

    external_ids: dict[str, str] = {}
    if email is not None:
        external_ids[SOURCE_GMAIL] = f"gmail:{email.lower()}"

    return ImportCandidate(
        source=SOURCE_GOOGLE_CONTACTS,
        external_id=resource_name,
        external_ids=external_ids,
        display_name=display_name,
        email=email,
        raw=payload,
    )
