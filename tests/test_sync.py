"""
Unit tests for the sync engine.

Tests SyncEngine runs in insert, sync and incremental modes against an
in-memory store and a mocked CRM client.
"""

import sqlite3
from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

import pytest

from crm_sync.api.crm_api import ContactPage, CRMAPIError, CRMClient
from crm_sync.auth import operator_auth
from crm_sync.auth.operator_auth import OperatorAuth, OperatorCredentials
from crm_sync.sync.contact import RemoteContact
from crm_sync.sync.engine import (
    SyncEngine,
    SyncMode,
    SyncResult,
    SyncStats,
)
from crm_sync.sync.merge import new_record_skeleton
from crm_sync.sync.upsert import UpsertResult


def remote(contact_id, **values):
    values.setdefault("email", f"c{contact_id}@example.com")
    return RemoteContact(contact_id, **values)


def stored(crm_id, owner="owner-a", **values):
    record = new_record_skeleton()
    record.update(
        {
            "id": f"local-{crm_id}",
            "crm_contact_id": crm_id,
            "owner_id": owner,
            "synced_at": "2024-03-01T00:00:00.000Z",
        }
    )
    record.update(values)
    return record


@pytest.fixture(autouse=True)
def no_sleep():
    # engine and retry helpers share the time module, one patch covers both
    with patch("crm_sync.sync.engine.time.sleep") as mock_sleep:
        yield mock_sleep


@pytest.fixture
def api():
    client = MagicMock(spec=CRMClient)
    client.get_company_associations.return_value = {}
    return client


@pytest.fixture
def engine(api, db):
    return SyncEngine(api=api, database=db)


class TestSyncResult:
    """Tests for SyncResult helpers."""

    def test_to_dict_uses_mode_value(self):
        result = SyncResult(success=True, mode=SyncMode.SYNC, duration_ms=61000)
        data = result.to_dict()
        assert data["mode"] == "sync"
        assert data["duration"] == result.duration

    def test_has_record_errors(self):
        assert SyncResult(success=True, mode=SyncMode.SYNC, errors=2).has_record_errors
        assert not SyncResult(
            success=False, mode=SyncMode.SYNC, errors=2
        ).has_record_errors

    def test_summary_mentions_counts(self):
        result = SyncResult(
            success=True,
            mode=SyncMode.INCREMENTAL,
            inserted=3,
            sync_since_timestamp="2024-03-15T00:00:00.000Z",
        )
        text = result.summary()
        assert "Inserted: 3" in text
        assert "2024-03-15T00:00:00.000Z" in text

    def test_stats_written(self):
        assert SyncStats(inserted=2, updated=3).written == 5


class TestPageCaps:
    """Tests for max_pages."""

    def test_derived_from_record_ceilings(self, engine):
        assert engine.max_pages(SyncMode.SYNC) == 3000
        assert engine.max_pages(SyncMode.INSERT) == 3000
        assert engine.max_pages(SyncMode.INCREMENTAL) == 100
        assert engine.max_pages(SyncMode.CUSTOMERS) == 100


class TestOwnerResolution:
    """Tests for authentication at the start of a run."""

    def test_requires_credentials_or_owner(self, engine, api):
        result = engine.run(SyncMode.SYNC)

        assert not result.success
        assert result.errors == 1
        api.list_contacts_page.assert_not_called()

    def test_bad_credentials_fail_without_fetching(self, engine, api):
        result = engine.run(
            SyncMode.SYNC, credentials=OperatorCredentials("x@y.z", "nope-nope")
        )

        assert not result.success
        assert "Invalid email or password" in result.error_message
        api.list_contacts_page.assert_not_called()

    def test_credentials_resolve_owner_scope(self, api, db, monkeypatch):
        monkeypatch.setattr(operator_auth, "HASH_ITERATIONS", 1000)
        auth = OperatorAuth(db)
        owner = auth.register("ops@example.com", "correct horse")
        api.list_contacts_page.return_value = ContactPage([remote("1")])
        engine = SyncEngine(api=api, database=db, auth=auth)

        result = engine.run(
            "sync", credentials=OperatorCredentials("ops@example.com", "correct horse")
        )

        assert result.success
        assert db.get_contact("1", owner) is not None

    def test_unknown_mode(self, engine):
        result = engine.run("mirror", owner_id="owner-a")
        assert not result.success
        assert "Unknown sync mode" in result.error_message


class TestSyncMode:
    """Tests for full sync runs."""

    def test_inserts_and_updates(self, engine, api, db):
        db.upsert_contacts([stored("1", email="old@example.com")])
        api.list_contacts_page.side_effect = [
            ContactPage([remote("1", email="new@example.com")], next_cursor="p2"),
            ContactPage([remote("2")]),
        ]

        result = engine.run(SyncMode.SYNC, owner_id="owner-a")

        assert result.success
        assert result.mode is SyncMode.SYNC
        assert result.total_contacts == 2
        assert result.inserted == 1
        assert result.updated == 1
        assert result.synced_contacts is None
        assert db.get_contact("1", "owner-a")["email"] == "new@example.com"
        assert db.get_contact("1", "owner-a")["id"] == "local-1"
        api.list_contacts_page.assert_any_call(after="p2")

    def test_local_fields_preserved(self, engine, api, db):
        """Test locally owned columns and non-empty values survive a sync."""
        db.upsert_contacts(
            [
                stored(
                    "1",
                    business_type="SAB",
                    gbp_ready=1,
                    phone="555-0100",
                    company="Acme",
                )
            ]
        )
        api.list_contacts_page.return_value = ContactPage(
            [remote("1", phone="", company="Acme Corp")]
        )

        engine.run(SyncMode.SYNC, owner_id="owner-a")

        row = db.get_contact("1", "owner-a")
        assert row["business_type"] == "SAB"
        assert row["gbp_ready"] == 1
        assert row["phone"] == "555-0100"
        assert row["company"] == "Acme Corp"

    def test_local_edit_during_run_survives(self, engine, api, db):
        """Test a local-only edit made after the load is not reverted."""
        db.upsert_contacts([stored("1", business_type="SAB")])

        def edit_then_return_page(after=None):
            with db.connection() as conn:
                conn.execute(
                    "UPDATE contacts SET business_type = 'CUSTOM' "
                    "WHERE crm_contact_id = '1'"
                )
            return ContactPage([remote("1", first_name="Ada")])

        api.list_contacts_page.side_effect = edit_then_return_page

        result = engine.run(SyncMode.SYNC, owner_id="owner-a")

        row = db.get_contact("1", "owner-a")
        assert result.updated == 1
        assert row["first_name"] == "Ada"
        assert row["business_type"] == "CUSTOM"

    def test_rerun_is_idempotent(self, engine, api, db):
        api.list_contacts_page.return_value = ContactPage(
            [remote("1", first_name="Ada")]
        )

        engine.run(SyncMode.SYNC, owner_id="owner-a")
        first = db.get_contact("1", "owner-a")
        second_result = engine.run(SyncMode.SYNC, owner_id="owner-a")
        second = db.get_contact("1", "owner-a")

        assert second_result.updated == 1
        assert db.get_contact_count("owner-a") == 1
        for column in ("id", "email", "first_name", "created_at"):
            assert first[column] == second[column]

    def test_duplicates_across_pages_skipped(self, engine, api, db):
        api.list_contacts_page.side_effect = [
            ContactPage([remote("1"), remote("2")], next_cursor="p2"),
            ContactPage([remote("2"), remote("3")]),
        ]

        result = engine.run(SyncMode.SYNC, owner_id="owner-a")

        assert result.total_contacts == 4
        assert result.inserted == 3
        assert result.skipped == 1
        assert db.get_contact_count("owner-a") == 3

    def test_owner_scopes_are_isolated(self, engine, api, db):
        db.upsert_contacts([stored("1", owner="owner-b", business_type="SAB")])
        api.list_contacts_page.return_value = ContactPage([remote("1")])

        result = engine.run(SyncMode.SYNC, owner_id="owner-a")

        assert result.inserted == 1
        assert db.get_contact("1", "owner-b")["business_type"] == "SAB"
        assert db.get_contact("1", "owner-a")["business_type"] is None

    def test_delay_between_pages(self, engine, api, no_sleep):
        api.list_contacts_page.side_effect = [
            ContactPage([remote("1")], next_cursor="p2"),
            ContactPage([remote("2")]),
        ]

        engine.run(SyncMode.SYNC, owner_id="owner-a")

        no_sleep.assert_called_once_with(0.15)

    def test_page_cap_stops_paging(self, api, db):
        engine = SyncEngine(api=api, database=db, page_size=100, max_records_full=200)
        api.list_contacts_page.side_effect = [
            ContactPage([remote(str(i))], next_cursor=f"p{i + 1}") for i in range(5)
        ]

        result = engine.run(SyncMode.SYNC, owner_id="owner-a")

        assert result.success
        assert api.list_contacts_page.call_count == 2

    def test_partial_write_failure(self, api, db):
        upserter = MagicMock()
        upserter.upsert.return_value = UpsertResult(written_ids=["1"], failed=50)
        engine = SyncEngine(api=api, database=db, upserter=upserter)
        api.list_contacts_page.return_value = ContactPage([remote("1"), remote("2")])

        result = engine.run(SyncMode.SYNC, owner_id="owner-a")

        assert result.success
        assert result.errors == 50
        assert result.inserted == 1
        assert result.has_record_errors

    def test_fetch_failure_keeps_progress(self, engine, api, db):
        api.list_contacts_page.side_effect = [
            ContactPage([remote("1")], next_cursor="p2"),
            CRMAPIError("boom", status_code=500),
        ]

        result = engine.run(SyncMode.SYNC, owner_id="owner-a")

        assert not result.success
        assert result.inserted == 1
        assert result.errors == 1
        assert "boom" in result.error_message
        assert db.get_contact_count("owner-a") == 1

    def test_store_failure_is_fatal(self, api):
        database = MagicMock()
        database.load_existing_contacts.side_effect = sqlite3.OperationalError(
            "unable to open database file"
        )
        engine = SyncEngine(api=api, database=database, auth=MagicMock())

        result = engine.run(SyncMode.SYNC, owner_id="owner-a")

        assert not result.success
        api.list_contacts_page.assert_not_called()


class TestInsertMode:
    """Tests for insert-only runs."""

    def test_existing_contacts_skipped(self, engine, api, db):
        db.upsert_contacts([stored("1", email="keep@example.com")])
        api.list_contacts_page.return_value = ContactPage(
            [remote("1", email="changed@example.com"), remote("2")]
        )

        result = engine.run(SyncMode.INSERT, owner_id="owner-a")

        assert result.inserted == 1
        assert result.updated == 0
        assert result.skipped == 1
        assert db.get_contact("1", "owner-a")["email"] == "keep@example.com"

    def test_uses_light_load(self, api):
        database = MagicMock()
        database.load_existing_contacts.return_value = {}
        api.list_contacts_page.return_value = ContactPage([])
        engine = SyncEngine(api=api, database=database, auth=MagicMock())

        engine.run(SyncMode.INSERT, owner_id="owner-a")

        assert database.load_existing_contacts.call_args.kwargs["full"] is False


class TestIncrementalMode:
    """Tests for incremental runs."""

    def test_cutoff_is_start_of_day_utc(self, engine, api, db):
        db.upsert_contacts(
            [
                stored("1", crm_modified_at="2024-03-15T14:32:07Z"),
                stored("2", crm_modified_at="2024-03-10T09:00:00Z"),
            ]
        )
        api.search_contacts_modified_since.return_value = ContactPage([], total=0)

        result = engine.run(SyncMode.INCREMENTAL, owner_id="owner-a")

        assert result.success
        assert result.mode is SyncMode.INCREMENTAL
        assert result.sync_since_timestamp == "2024-03-15T00:00:00.000Z"
        assert result.synced_contacts == []
        api.search_contacts_modified_since.assert_called_once_with(1710460800000)
        api.list_contacts_page.assert_not_called()

    def test_derive_cutoff(self, engine, db):
        db.upsert_contacts([stored("1", crm_modified_at="2024-03-15T14:32:07Z")])
        assert engine.derive_cutoff("owner-a") == datetime(
            2024, 3, 15, tzinfo=timezone.utc
        )

    def test_empty_store_falls_back_to_sync(self, engine, api):
        api.list_contacts_page.return_value = ContactPage([remote("1")])

        result = engine.run(SyncMode.INCREMENTAL, owner_id="owner-a")

        assert result.success
        assert result.mode is SyncMode.SYNC
        assert result.sync_since_timestamp is None
        assert result.synced_contacts is None
        api.search_contacts_modified_since.assert_not_called()

    def test_search_over_limit_falls_back_to_sync(self, api, db):
        db.upsert_contacts([stored("1", crm_modified_at="2024-03-15T14:32:07Z")])
        api.search_contacts_modified_since.return_value = ContactPage(
            [remote("9")], next_cursor="100", total=25_000
        )
        api.list_contacts_page.return_value = ContactPage([remote("1")])
        engine = SyncEngine(api=api, database=db)

        result = engine.run(SyncMode.INCREMENTAL, owner_id="owner-a")

        assert result.mode is SyncMode.SYNC
        assert result.total_contacts == 1
        assert db.get_contact("9", "owner-a") is None

    def test_reports_new_and_changed_contacts(self, engine, api, db):
        db.upsert_contacts(
            [
                stored(
                    "1",
                    email="old@example.com",
                    first_name="Ada",
                    crm_modified_at="2024-03-15T08:00:00Z",
                )
            ]
        )
        api.search_contacts_modified_since.side_effect = [
            ContactPage(
                [
                    remote(
                        "1",
                        email="new@example.com",
                        first_name="Ada",
                        crm_modified_at="2024-03-16T09:00:00Z",
                    )
                ],
                next_cursor="1",
                total=2,
            ),
            ContactPage([remote("2", first_name="Grace")], total=2),
        ]

        result = engine.run(SyncMode.INCREMENTAL, owner_id="owner-a")

        assert result.inserted == 1
        assert result.updated == 1
        by_id = {info.crm_contact_id: info for info in result.synced_contacts}
        assert by_id["2"].is_new
        assert not by_id["1"].is_new
        assert [c.field for c in by_id["1"].changed_fields] == ["email"]
        assert by_id["1"].changed_fields[0].old_value == "old@example.com"
        api.search_contacts_modified_since.assert_called_with(
            1710460800000, after="1"
        )

    def test_search_failure_reports_incremental_mode(self, engine, api, db):
        db.upsert_contacts([stored("1", crm_modified_at="2024-03-15T14:32:07Z")])
        api.search_contacts_modified_since.side_effect = CRMAPIError("down")

        result = engine.run(SyncMode.INCREMENTAL, owner_id="owner-a")

        assert not result.success
        assert result.mode is SyncMode.INCREMENTAL
        assert result.errors == 1


class TestCustomersMode:
    """Tests for customer-only runs."""

    def test_searches_customer_stages_and_inserts_missing(self, engine, api, db):
        db.upsert_contacts([stored("1", email="keep@example.com")])
        api.search_contacts_by_lifecycle_stage.side_effect = [
            ContactPage(
                [remote("1", email="changed@example.com"), remote("2")],
                next_cursor="2",
                total=3,
            ),
            ContactPage([remote("3", lifecycle_stage="customer")], total=3),
        ]

        result = engine.run(SyncMode.CUSTOMERS, owner_id="owner-a")

        assert result.success
        assert result.mode is SyncMode.CUSTOMERS
        assert result.inserted == 2
        assert result.updated == 0
        assert result.skipped == 1
        assert result.synced_contacts is None
        assert db.get_contact("1", "owner-a")["email"] == "keep@example.com"
        assert db.get_contact("3", "owner-a")["lifecycle_stage"] == "Customer"
        api.search_contacts_by_lifecycle_stage.assert_any_call(
            ["customer", "dnc", "active"], after=None
        )
        api.search_contacts_by_lifecycle_stage.assert_called_with(
            ["customer", "dnc", "active"], after="2"
        )
        api.list_contacts_page.assert_not_called()

    def test_configured_stages(self, api, db):
        api.search_contacts_by_lifecycle_stage.return_value = ContactPage([])
        engine = SyncEngine(api=api, database=db, customer_stages=["999377175"])

        engine.run("customers", owner_id="owner-a")

        api.search_contacts_by_lifecycle_stage.assert_called_once_with(
            ["999377175"], after=None
        )

    def test_uses_light_load(self, api):
        database = MagicMock()
        database.load_existing_contacts.return_value = {}
        api.search_contacts_by_lifecycle_stage.return_value = ContactPage([])
        engine = SyncEngine(api=api, database=database, auth=MagicMock())

        engine.run(SyncMode.CUSTOMERS, owner_id="owner-a")

        assert database.load_existing_contacts.call_args.kwargs["full"] is False

    def test_page_cap(self, api, db):
        engine = SyncEngine(
            api=api, database=db, page_size=100, max_records_customers=300
        )
        api.search_contacts_by_lifecycle_stage.side_effect = [
            ContactPage([remote(str(i))], next_cursor=f"p{i + 1}") for i in range(5)
        ]

        result = engine.run(SyncMode.CUSTOMERS, owner_id="owner-a")

        assert result.success
        assert api.search_contacts_by_lifecycle_stage.call_count == 3


class TestCompanyAssociations:
    """Tests for seeding crm_company_id from the CRM company association."""

    def test_new_contacts_get_their_company(self, engine, api, db):
        db.upsert_contacts([stored("1", crm_company_id="old-co")])
        api.list_contacts_page.return_value = ContactPage(
            [remote("1"), remote("2"), remote("3")]
        )
        api.get_company_associations.return_value = {"1": "new-co", "2": "501"}

        result = engine.run(SyncMode.SYNC, owner_id="owner-a")

        assert result.inserted == 2
        api.get_company_associations.assert_called_once_with(["2", "3"])
        assert db.get_contact("1", "owner-a")["crm_company_id"] == "old-co"
        assert db.get_contact("2", "owner-a")["crm_company_id"] == "501"
        assert db.get_contact("3", "owner-a")["crm_company_id"] is None

    def test_no_lookup_when_nothing_is_new(self, engine, api, db):
        db.upsert_contacts([stored("1")])
        api.list_contacts_page.return_value = ContactPage([remote("1")])

        engine.run(SyncMode.SYNC, owner_id="owner-a")

        api.get_company_associations.assert_not_called()

    def test_lookup_failure_still_inserts(self, engine, api, db):
        api.search_contacts_by_lifecycle_stage.return_value = ContactPage(
            [remote("7")]
        )
        api.get_company_associations.side_effect = CRMAPIError("forbidden", 403)

        result = engine.run(SyncMode.CUSTOMERS, owner_id="owner-a")

        assert result.success
        assert result.inserted == 1
        assert result.errors == 0
        assert db.get_contact("7", "owner-a")["crm_company_id"] is None

    def test_lookup_disabled(self, api, db):
        api.list_contacts_page.return_value = ContactPage([remote("1")])
        engine = SyncEngine(api=api, database=db, fetch_company_associations=False)

        result = engine.run(SyncMode.SYNC, owner_id="owner-a")

        assert result.inserted == 1
        api.get_company_associations.assert_not_called()
