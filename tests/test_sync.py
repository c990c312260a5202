"""Tests for tombstone-aware import sync."""

from __future__ import annotations

import uuid
from unittest.mock import AsyncMock, patch

import pytest
from pydantic import ValidationError

from importguard.entities import entity_create, entity_delete
from importguard.sync import (
    ContactsProvider,
    EntityContactApplier,
    ImportBatch,
    ImportCandidate,
    ImportSyncEngine,
    ImportSyncError,
    TombstoneFilter,
    candidate_from_google_person,
    collapse_candidates,
    restore_import,
)

USER_ID = uuid.UUID("33333333-3333-3333-3333-333333333333")


class FakeProvider(ContactsProvider):
    """Serves pre-built pages keyed by page token."""

    def __init__(self, pages: dict[str | None, ImportBatch]) -> None:
        self._pages = pages
        self.calls: list[str | None] = []

    @property
    def name(self) -> str:
        return "google_contacts"

    async def fetch_page(self, *, account_id: str, page_token: str | None = None) -> ImportBatch:
        self.calls.append(page_token)
        return self._pages[page_token]


def _candidate(external_id: str, email: str | None = None) -> ImportCandidate:
    external_ids = {"gmail": f"gmail:{email}"} if email else {}
    return ImportCandidate(
        source="google_contacts",
        external_id=external_id,
        external_ids=external_ids,
        display_name=external_id,
        email=email,
    )


# ---------------------------------------------------------------------------
# ImportCandidate
# ---------------------------------------------------------------------------


@pytest.mark.unit
class TestImportCandidate:
    def test_primary_pair_is_included(self):
        candidate = _candidate("people/1", "a@example.com")

        assert candidate.id_pairs() == {
            "gmail": "gmail:a@example.com",
            "google_contacts": "people/1",
        }

    def test_map_entry_wins_for_primary_source(self):
        candidate = ImportCandidate(
            source="google_contacts",
            external_id="people/1",
            external_ids={"google_contacts": "people/old"},
        )

        assert candidate.id_pairs() == {"google_contacts": "people/old"}
        assert candidate.all_pairs() == [
            ("google_contacts", "people/1"),
            ("google_contacts", "people/old"),
        ]

    def test_entity_metadata_uses_map_form(self):
        metadata = _candidate("people/1", "a@example.com").entity_metadata()

        assert metadata["external_ids"]["google_contacts"] == "people/1"
        assert metadata["source"] == "google_contacts"
        assert metadata["sources"] == ["google_contacts"]

    @pytest.mark.parametrize("field", ["source", "external_id"])
    def test_blank_key_is_rejected(self, field):
        kwargs = {"source": "google_contacts", "external_id": "people/1", field: "  "}

        with pytest.raises(ValidationError):
            ImportCandidate(**kwargs)


# ---------------------------------------------------------------------------
# TombstoneFilter
# ---------------------------------------------------------------------------


@pytest.mark.unit
class TestTombstoneFilter:
    async def test_loads_each_source_once(self):
        deleted = {"google_contacts": {"people/2"}, "gmail": set()}

        async def fake_get(pool, user_id, source):
            return deleted[source]

        with patch(
            "importguard.sync.get_deleted_external_ids", new=AsyncMock(side_effect=fake_get)
        ) as mock_get:
            guard = TombstoneFilter(object(), USER_ID)
            importable, suppressed = await guard.partition(
                [
                    _candidate("people/1", "a@example.com"),
                    _candidate("people/2", "b@example.com"),
                    _candidate("people/3", "c@example.com"),
                ]
            )

        assert [c.external_id for c in importable] == ["people/1", "people/3"]
        assert [c.external_id for c in suppressed] == ["people/2"]
        sources = [call.args[2] for call in mock_get.await_args_list]
        assert sorted(sources) == ["gmail", "google_contacts"]

    async def test_secondary_id_suppresses(self):
        deleted = {"google_contacts": set(), "gmail": {"gmail:a@example.com"}}

        async def fake_get(pool, user_id, source):
            return deleted[source]

        with patch(
            "importguard.sync.get_deleted_external_ids", new=AsyncMock(side_effect=fake_get)
        ):
            guard = TombstoneFilter(object(), USER_ID)
            assert await guard.is_suppressed(_candidate("people/9", "a@example.com"))

    @pytest.mark.parametrize("deleted_id", ["people/1", "people/old"])
    async def test_both_ids_for_primary_source_are_checked(self, deleted_id):
        candidate = ImportCandidate(
            source="google_contacts",
            external_id="people/1",
            external_ids={"google_contacts": "people/old"},
        )

        with patch(
            "importguard.sync.get_deleted_external_ids",
            new=AsyncMock(return_value={deleted_id}),
        ):
            guard = TombstoneFilter(object(), USER_ID)
            assert await guard.is_suppressed(candidate)


# ---------------------------------------------------------------------------
# Duplicate collapsing
# ---------------------------------------------------------------------------


@pytest.mark.unit
class TestCollapseCandidates:
    def test_shared_secondary_id_collapses(self):
        first = _candidate("people/1", "a@example.com")
        second = ImportCandidate(
            source="google_contacts",
            external_id="people/2",
            external_ids={"gmail": "gmail:a@example.com"},
            display_name="Second",
        )

        collapsed = collapse_candidates([first, second])

        assert len(collapsed) == 1
        merged = collapsed[0]
        assert merged.external_id == "people/1"
        assert merged.display_name == "people/1"
        assert merged.id_pairs() == {
            "gmail": "gmail:a@example.com",
            "google_contacts": "people/1",
        }

    def test_duplicate_fills_missing_fields(self):
        bare = ImportCandidate(source="google_contacts", external_id="people/1")
        rich = _candidate("people/1", "a@example.com")

        (merged,) = collapse_candidates([bare, rich])

        assert merged.email == "a@example.com"
        assert merged.display_name == "people/1"
        assert ("gmail", "gmail:a@example.com") in merged.all_pairs()

    def test_distinct_candidates_keep_order(self):
        candidates = [_candidate("people/3"), _candidate("people/1"), _candidate("people/2")]

        collapsed = collapse_candidates(candidates)

        assert [c.external_id for c in collapsed] == ["people/3", "people/1", "people/2"]


@pytest.mark.unit
def test_provider_contract_is_name_and_fetch_page():
    assert ContactsProvider.__abstractmethods__ == frozenset({"name", "fetch_page"})
    assert not hasattr(ContactsProvider, "shutdown")


# ---------------------------------------------------------------------------
# EntityContactApplier
# ---------------------------------------------------------------------------


@pytest.mark.unit
class TestEntityContactApplier:
    async def test_creates_when_no_entity_matches(self):
        candidate = _candidate("people/1", "a@example.com")
        with (
            patch(
                "importguard.sync.entity_find_by_external_id", new=AsyncMock(return_value=None)
            ) as mock_find,
            patch("importguard.sync.entity_create", new=AsyncMock()) as mock_create,
            patch("importguard.sync.entity_merge_external_ids", new=AsyncMock()) as mock_merge,
        ):
            applier = EntityContactApplier("pool", USER_ID)
            await applier(candidate)

        mock_find.assert_awaited_once_with("pool", USER_ID, candidate.all_pairs())
        mock_create.assert_awaited_once_with(
            "pool",
            USER_ID,
            "people/1",
            metadata=candidate.entity_metadata(),
            email="a@example.com",
        )
        mock_merge.assert_not_awaited()
        assert (applier.created, applier.merged) == (1, 0)

    async def test_merges_into_matching_entity(self):
        candidate = _candidate("people/1", "a@example.com")
        entity_id = uuid.uuid4()
        with (
            patch(
                "importguard.sync.entity_find_by_external_id",
                new=AsyncMock(return_value={"id": entity_id}),
            ),
            patch("importguard.sync.entity_create", new=AsyncMock()) as mock_create,
            patch("importguard.sync.entity_merge_external_ids", new=AsyncMock()) as mock_merge,
        ):
            applier = EntityContactApplier("pool", USER_ID)
            await applier(candidate)

        mock_merge.assert_awaited_once_with(
            "pool", entity_id, candidate.id_pairs(), source="google_contacts"
        )
        mock_create.assert_not_awaited()
        assert (applier.created, applier.merged) == (0, 1)


# ---------------------------------------------------------------------------
# ImportSyncEngine
# ---------------------------------------------------------------------------


@pytest.mark.unit
class TestImportSyncEngine:
    async def test_paginates_and_skips_deleted(self):
        provider = FakeProvider(
            {
                None: ImportBatch(candidates=[_candidate("people/1")], next_page_token="p2"),
                "p2": ImportBatch(candidates=[_candidate("people/2")]),
            }
        )
        apply_contact = AsyncMock()

        async def fake_get(pool, user_id, source):
            return {"people/2"} if source == "google_contacts" else set()

        with patch(
            "importguard.sync.get_deleted_external_ids", new=AsyncMock(side_effect=fake_get)
        ):
            engine = ImportSyncEngine(provider=provider, pool=object(), apply_contact=apply_contact)
            result = await engine.sync(user_id=USER_ID, account_id="acct")

        assert provider.calls == [None, "p2"]
        assert result.fetched == 2
        assert result.applied == 1
        assert result.suppressed == 1
        assert result.suppressed_ids == ["people/2"]
        apply_contact.assert_awaited_once()
        assert apply_contact.await_args.args[0].external_id == "people/1"

    async def test_repeated_page_token_raises(self):
        provider = FakeProvider(
            {
                None: ImportBatch(candidates=[], next_page_token="loop"),
                "loop": ImportBatch(candidates=[], next_page_token="loop"),
            }
        )
        engine = ImportSyncEngine(provider=provider, pool=object(), apply_contact=AsyncMock())

        with pytest.raises(ImportSyncError, match="repeated page token"):
            await engine.sync(user_id=USER_ID, account_id="acct")

    async def test_blank_next_page_token_ends_scan(self):
        provider = FakeProvider({None: ImportBatch(candidates=[], next_page_token="  ")})
        engine = ImportSyncEngine(provider=provider, pool=object(), apply_contact=AsyncMock())

        with patch("importguard.sync.get_deleted_external_ids", new=AsyncMock(return_value=set())):
            result = await engine.sync(user_id=USER_ID, account_id="acct")

        assert provider.calls == [None]
        assert result.fetched == 0

    async def test_default_applier_and_batch_collapsing(self):
        provider = FakeProvider(
            {
                None: ImportBatch(
                    candidates=[
                        _candidate("people/1", "a@example.com"),
                        _candidate("people/1", "a@example.com"),
                        _candidate("people/2"),
                    ]
                )
            }
        )

        with (
            patch("importguard.sync.get_deleted_external_ids", new=AsyncMock(return_value=set())),
            patch(
                "importguard.sync.entity_find_by_external_id", new=AsyncMock(return_value=None)
            ),
            patch("importguard.sync.entity_create", new=AsyncMock()) as mock_create,
        ):
            engine = ImportSyncEngine(provider=provider, pool="pool")
            result = await engine.sync(user_id=USER_ID, account_id="acct")

        assert (result.fetched, result.collapsed, result.applied) == (3, 1, 2)
        assert [call.args[2] for call in mock_create.await_args_list] == ["people/1", "people/2"]


@pytest.mark.unit
async def test_restore_import_delegates_to_undelete():
    with patch(
        "importguard.sync.undelete_import", new=AsyncMock(return_value=True)
    ) as mock_undelete:
        assert await restore_import("pool", USER_ID, "people/1", "google_contacts") is True

    mock_undelete.assert_awaited_once_with("pool", USER_ID, "people/1", "google_contacts")


# ---------------------------------------------------------------------------
# candidate_from_google_person
# ---------------------------------------------------------------------------


@pytest.mark.unit
class TestCandidateFromGooglePerson:
    def test_full_person(self):
        payload = {
            "resourceName": "people/c123",
            "names": [
                {"displayName": "Other"},
                {"displayName": "Jane Doe", "metadata": {"primary": True}},
            ],
            "emailAddresses": [{"value": "Jane@Example.com"}],
        }

        candidate = candidate_from_google_person(payload)

        assert candidate is not None
        assert candidate.source == "google_contacts"
        assert candidate.external_id == "people/c123"
        assert candidate.display_name == "Jane Doe"
        assert candidate.email == "Jane@Example.com"
        assert candidate.external_ids == {"gmail": "gmail:jane@example.com"}
        assert candidate.raw == payload

    def test_person_without_email(self):
        candidate = candidate_from_google_person({"resourceName": "people/c1"})

        assert candidate is not None
        assert candidate.external_ids == {}
        assert candidate.display_name is None

    @pytest.mark.parametrize("payload", [{}, {"resourceName": ""}, {"resourceName": 5}])
    def test_missing_resource_name(self, payload):
        assert candidate_from_google_person(payload) is None


# ---------------------------------------------------------------------------
# End to end against Postgres
# ---------------------------------------------------------------------------


@pytest.mark.integration
async def test_deleted_contact_is_not_reimported(pool):
    person = {
        "resourceName": "people/c42",
        "names": [{"displayName": "Jane Doe"}],
        "emailAddresses": [{"value": "jane@example.com"}],
    }
    provider = FakeProvider({None: ImportBatch(candidates=[candidate_from_google_person(person)])})

    async def apply_contact(candidate: ImportCandidate) -> None:
        await entity_create(
            pool,
            USER_ID,
            candidate.display_name or candidate.external_id,
            metadata=candidate.entity_metadata(),
            email=candidate.email,
        )

    engine = ImportSyncEngine(provider=provider, pool=pool, apply_contact=apply_contact)

    first = await engine.sync(user_id=USER_ID, account_id="acct")
    assert first.applied == 1

    entity_id = await pool.fetchval("SELECT id FROM entities WHERE owner_id = $1", USER_ID)
    assert await entity_delete(pool, entity_id)

    second = await engine.sync(user_id=USER_ID, account_id="acct")
    assert second.applied == 0
    assert second.suppressed_ids == ["people/c42"]
    assert await pool.fetchval("SELECT count(*) FROM entities") == 0

    assert await restore_import(pool, USER_ID, "people/c42", "google_contacts")
    assert await restore_import(pool, USER_ID, "gmail:jane@example.com", "gmail")

    third = await engine.sync(user_id=USER_ID, account_id="acct")
    assert third.applied == 1


@pytest.mark.integration
async def test_resync_merges_into_the_imported_entity(pool):
    person = {
        "resourceName": "people/c7",
        "names": [{"displayName": "Sam Lee"}],
        "emailAddresses": [{"value": "sam@example.com"}],
    }
    mail_contact = ImportCandidate(
        source="gmail", external_id="gmail:sam@example.com", email="sam@example.com"
    )
    provider = FakeProvider(
        {None: ImportBatch(candidates=[candidate_from_google_person(person), mail_contact])}
    )
    engine = ImportSyncEngine(provider=provider, pool=pool)

    first = await engine.sync(user_id=USER_ID, account_id="acct")
    second = await engine.sync(user_id=USER_ID, account_id="acct")

    assert (first.fetched, first.collapsed, first.applied) == (2, 1, 1)
    assert second.applied == 1
    rows = await pool.fetch("SELECT metadata FROM entities WHERE owner_id = $1", USER_ID)
    assert len(rows) == 1


@pytest.mark.integration
async def test_deleting_a_merged_contact_suppresses_every_source(pool):
    legacy = await entity_create(
        pool,
        USER_ID,
        "Sam Lee",
        metadata={"external_id": "people/c7", "source": "google_contacts"},
    )
    mail_contact = ImportCandidate(
        source="gmail",
        external_id="gmail:sam@example.com",
        external_ids={"google_contacts": "people/c7"},
    )
    engine = ImportSyncEngine(
        provider=FakeProvider({None: ImportBatch(candidates=[mail_contact])}), pool=pool
    )

    merged = await engine.sync(user_id=USER_ID, account_id="acct")
    assert merged.applied == 1
    assert await entity_delete(pool, legacy["id"])

    only_mail = ImportCandidate(source="gmail", external_id="gmail:sam@example.com")
    engine = ImportSyncEngine(
        provider=FakeProvider({None: ImportBatch(candidates=[only_mail])}), pool=pool
    )
    result = await engine.sync(user_id=USER_ID, account_id="acct")

    assert result.suppressed_ids == ["gmail:sam@example.com"]
    assert await pool.fetchval("SELECT count(*) FROM entities") == 0
