"""
Sync engine for one-way CRM to local store contact synchronization.

Orchestrates a run through its states:

    Authenticating -> LoadingExisting -> DeterminingCutoff (incremental only)
    -> Paging -> Finalizing

Pages are fetched and written strictly one after another. Each page goes
through the duplicate tracker, the company lookup for contacts not yet
stored, the record merger (plus change detection in incremental mode) and
the batch upserter before the next page is requested.
"""

import logging
import math
import sqlite3
import time
from collections.abc import Sequence
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional, Union

from crm_sync.api.crm_api import DEFAULT_PAGE_SIZE, ContactPage, CRMAPIError, CRMClient
from crm_sync.auth.operator_auth import (
    AuthenticationError,
    OperatorAuth,
    OperatorCredentials,
)
from crm_sync.storage.db import DEFAULT_LOAD_PAGE_SIZE, SyncDatabase
from crm_sync.sync.contact import LifecycleStageMapper, RemoteContact
from crm_sync.sync.dedupe import DuplicateTracker
from crm_sync.sync.merge import FieldChange, build_merged_record, detect_field_changes
from crm_sync.sync.upsert import BatchUpserter
from crm_sync.utils.timing import (
    format_duration,
    format_iso,
    parse_timestamp,
    start_of_day_utc,
    to_epoch_millis,
    utc_now,
)

# Fixed delay between page requests (seconds)
DEFAULT_REQUEST_DELAY = 0.15

# Record ceilings used to derive the page-count safety caps
DEFAULT_MAX_RECORDS_FULL = 300_000
DEFAULT_MAX_RECORDS_INCREMENTAL = 10_000
DEFAULT_MAX_RECORDS_CUSTOMERS = 10_000

# Lifecycle stage codes fetched by customer-only runs
DEFAULT_CUSTOMER_STAGES = ("customer", "dnc", "active")

# Most results the search endpoint will page through for one query
DEFAULT_SEARCH_RESULT_LIMIT = 10_000

# Log a progress line every N pages
PROGRESS_LOG_INTERVAL = 10

logger = logging.getLogger(__name__)


class SyncMode(Enum):
    """Traversal and write policy of a run."""

    # Write contacts missing locally, skip the ones already stored
    INSERT = "insert"
    # Full listing, merge every contact onto its local row
    SYNC = "sync"
    # Only contacts modified since the derived cutoff
    INCREMENTAL = "incremental"
    # Only contacts in a customer lifecycle stage, insert missing ones
    CUSTOMERS = "customers"

    @property
    def inserts_only(self) -> bool:
        """True for modes that never touch contacts already stored."""
        return self in (SyncMode.INSERT, SyncMode.CUSTOMERS)


class SyncConfigurationError(Exception):
    """Raised when a run cannot start because of missing or invalid inputs."""

    pass


@dataclass
class SyncStats:
    """
    Counters accumulated over the pages of one run.

    skipped covers both duplicates filtered within the run and, in insert
    mode, contacts that already exist locally.
    """

    total_contacts: int = 0
    inserted: int = 0
    updated: int = 0
    skipped: int = 0
    errors: int = 0
    pages: int = 0
    duplicates_filtered: int = 0

    @property
    def written(self) -> int:
        return self.inserted + self.updated


@dataclass
class SyncedContactInfo:
    """Per-contact detail reported by incremental runs."""

    crm_contact_id: str
    email: Optional[str]
    name: str
    company: Optional[str]
    lifecycle_stage: Optional[str]
    lifecycle_label: str
    last_modified: Optional[str]
    is_new: bool
    changed_fields: list[FieldChange] = field(default_factory=list)


@dataclass
class SyncResult:
    """
    Terminal result of a run.

    mode is the mode actually used, which differs from the requested one
    when an incremental run falls back to a full sync.
    """

    success: bool
    mode: SyncMode
    total_contacts: int = 0
    inserted: int = 0
    updated: int = 0
    skipped: int = 0
    errors: int = 0
    duration_ms: int = 0
    timestamp: str = ""
    error_message: Optional[str] = None
    synced_contacts: Optional[list[SyncedContactInfo]] = None
    sync_since_timestamp: Optional[str] = None

    @property
    def duration(self) -> str:
        """Human-readable duration, e.g. '5m 3s'."""
        return format_duration(self.duration_ms)

    @property
    def has_record_errors(self) -> bool:
        """True when the run finished but some records failed to write."""
        return self.success and self.errors > 0

    def to_dict(self) -> dict[str, Any]:
        """Serialize to plain types, suitable for JSON output."""
        data = asdict(self)
        data["mode"] = self.mode.value
        data["duration"] = self.duration
        return data

    def summary(self) -> str:
        """
        Generate a human-readable summary of the run.

        Returns:
            Formatted multi-line string
        """
        status = "succeeded" if self.success else "FAILED"
        lines = [
            f"Sync {status} ({self.mode.value} mode) in {self.duration}",
            f"  Contacts fetched: {self.total_contacts}",
            f"  Inserted: {self.inserted}",
            f"  Updated: {self.updated}",
            f"  Skipped: {self.skipped}",
            f"  Errors: {self.errors}",
        ]
        if self.sync_since_timestamp:
            lines.append(f"  Modified since: {self.sync_since_timestamp}")
        if self.error_message:
            lines.append(f"  Error: {self.error_message}")
        return "\n".join(lines)


class SyncEngine:
    """
    One-way sync engine from the CRM into the local contact store.

    The CRM is authoritative for the fields it populates. Locally owned
    columns are only set when a contact is first inserted.

    Usage:
        engine = SyncEngine(
            api=CRMClient(token),
            database=SyncDatabase('/path/to/crm_sync.db'),
            auth=OperatorAuth(database),
        )

        # Full reconciliation for an operator
        result = engine.run(SyncMode.SYNC, credentials=creds)

        # Only contacts modified since the last synced day
        result = engine.run(SyncMode.INCREMENTAL, owner_id=owner_id)
        print(result.summary())
    """

    def __init__(
        self,
        api: CRMClient,
        database: SyncDatabase,
        auth: Optional[OperatorAuth] = None,
        stage_mapper: Optional[LifecycleStageMapper] = None,
        upserter: Optional[BatchUpserter] = None,
        request_delay: float = DEFAULT_REQUEST_DELAY,
        page_size: int = DEFAULT_PAGE_SIZE,
        store_page_size: int = DEFAULT_LOAD_PAGE_SIZE,
        max_records_full: int = DEFAULT_MAX_RECORDS_FULL,
        max_records_incremental: int = DEFAULT_MAX_RECORDS_INCREMENTAL,
        search_result_limit: int = DEFAULT_SEARCH_RESULT_LIMIT,
        max_records_customers: int = DEFAULT_MAX_RECORDS_CUSTOMERS,
        customer_stages: Sequence[str] = DEFAULT_CUSTOMER_STAGES,
        fetch_company_associations: bool = True,
    ):
        """
        Initialize the sync engine.

        Args:
            api: CRM client used for both traversal modes
            database: Local contact store
            auth: Resolves operator credentials to an owner scope
                (defaults to an OperatorAuth over the same database)
            stage_mapper: Lifecycle code to label translation
            upserter: Batch writer (defaults to a BatchUpserter over database)
            request_delay: Seconds to wait between page requests
            page_size: Contacts per CRM page, used to derive page caps
            store_page_size: Rows per query when loading existing contacts
            max_records_full: Record ceiling for listing traversals
            max_records_incremental: Record ceiling for search traversals
            search_result_limit: Search totals above this fall back to listing
            max_records_customers: Record ceiling for customer-only runs
            customer_stages: Lifecycle stage codes fetched by customer-only runs
            fetch_company_associations: Look up the company of contacts not
                yet stored and keep it in crm_company_id
        """
        self.api = api
        self.database = database
        self.auth = auth or OperatorAuth(database)
        self.stage_mapper = stage_mapper or LifecycleStageMapper()
        self.upserter = upserter or BatchUpserter(database)
        self.request_delay = request_delay
        self.page_size = max(1, page_size)
        self.store_page_size = store_page_size
        self.max_records_full = max_records_full
        self.max_records_incremental = max_records_incremental
        self.search_result_limit = search_result_limit
        self.max_records_customers = max_records_customers
        self.customer_stages = list(customer_stages)
        self.fetch_company_associations = fetch_company_associations

    def max_pages(self, mode: SyncMode) -> int:
        """Page-count safety cap for a traversal mode."""
        if mode is SyncMode.INCREMENTAL:
            limit = self.max_records_incremental
        elif mode is SyncMode.CUSTOMERS:
            limit = self.max_records_customers
        else:
            limit = self.max_records_full
        return max(1, math.ceil(limit / self.page_size))

    def derive_cutoff(self, owner_id: str) -> Optional[datetime]:
        """
        Derive the incremental cutoff for an owner scope.

        Takes the newest stored CRM modification time and rounds it down
        to midnight UTC of that day.

        Returns:
            Cutoff datetime, or None if no stored row has a usable timestamp
        """
        raw = self.database.get_max_crm_modified_at(owner_id)
        if raw is None:
            return None

        latest = parse_timestamp(raw)
        if latest is None:
            logger.warning(f"Unparseable stored modification time: {raw!r}")
            return None

        return start_of_day_utc(latest)

    def _resolve_owner(
        self,
        credentials: Optional[OperatorCredentials],
        owner_id: Optional[str],
    ) -> str:
        if credentials is not None:
            return self.auth.authenticate(credentials)
        if owner_id:
            return owner_id
        raise SyncConfigurationError(
            "Either operator credentials or an owner id is required"
        )

    def run(
        self,
        mode: Union[SyncMode, str] = SyncMode.SYNC,
        credentials: Optional[OperatorCredentials] = None,
        owner_id: Optional[str] = None,
    ) -> SyncResult:
        """
        Run one synchronization.

        Args:
            mode: insert, sync, incremental or customers
            credentials: Operator credentials; when given, the owner scope is
                the authenticated operator's id
            owner_id: Explicit owner scope, used when no credentials are given

        Returns:
            SyncResult. Fatal failures return success=False with the counters
            accumulated up to the failure.
        """
        started = time.monotonic()
        timestamp = format_iso(utc_now())
        stats = SyncStats()

        try:
            requested = SyncMode(mode)
        except ValueError:
            return SyncResult(
                success=False,
                mode=SyncMode.SYNC,
                errors=1,
                timestamp=timestamp,
                error_message=f"Unknown sync mode: {mode!r}",
            )

        effective_mode = requested
        cutoff: Optional[datetime] = None
        synced_contacts: Optional[list[SyncedContactInfo]] = None

        try:
            # Authenticating
            owner = self._resolve_owner(credentials, owner_id)
            logger.info(f"Starting {requested.value} sync for owner {owner}")

            # LoadingExisting
            existing = self.database.load_existing_contacts(
                owner,
                full=not requested.inserts_only,
                page_size=self.store_page_size,
            )
            logger.info(f"Loaded {len(existing)} existing contacts")

            # DeterminingCutoff
            first_page: Optional[ContactPage] = None
            if requested is SyncMode.INCREMENTAL:
                cutoff = self.derive_cutoff(owner)
                if cutoff is None:
                    logger.info(
                        "No stored modification times, running full sync instead"
                    )
                    effective_mode = SyncMode.SYNC
                else:
                    logger.info(f"Fetching contacts modified since {format_iso(cutoff)}")
                    first_page = self.api.search_contacts_modified_since(
                        to_epoch_millis(cutoff)
                    )
                    if (
                        first_page.total is not None
                        and first_page.total > self.search_result_limit
                    ):
                        logger.warning(
                            f"Search matched {first_page.total} contacts, above the "
                            f"{self.search_result_limit} search limit; "
                            "running full sync instead"
                        )
                        effective_mode = SyncMode.SYNC
                        cutoff = None
                        first_page = None
                    else:
                        synced_contacts = []

            # Paging
            self._page_loop(
                effective_mode,
                owner,
                existing,
                stats,
                cutoff,
                first_page,
                synced_contacts,
            )

        except (
            AuthenticationError,
            SyncConfigurationError,
            CRMAPIError,
            sqlite3.Error,
        ) as e:
            stats.errors += 1
            duration_ms = int((time.monotonic() - started) * 1000)
            logger.error(f"Sync aborted after {stats.pages} page(s): {e}")
            return self._build_result(
                False,
                effective_mode,
                stats,
                duration_ms,
                timestamp,
                cutoff,
                synced_contacts,
                error_message=str(e),
            )

        # Finalizing
        duration_ms = int((time.monotonic() - started) * 1000)
        result = self._build_result(
            True,
            effective_mode,
            stats,
            duration_ms,
            timestamp,
            cutoff,
            synced_contacts,
        )
        logger.info(
            f"Sync complete ({effective_mode.value}): {stats.total_contacts} fetched, "
            f"{stats.inserted} inserted, {stats.updated} updated, "
            f"{stats.skipped} skipped, {stats.errors} errors in {result.duration}"
        )
        return result

    @staticmethod
    def _build_result(
        success: bool,
        mode: SyncMode,
        stats: SyncStats,
        duration_ms: int,
        timestamp: str,
        cutoff: Optional[datetime],
        synced_contacts: Optional[list[SyncedContactInfo]],
        error_message: Optional[str] = None,
    ) -> SyncResult:
        incremental = mode is SyncMode.INCREMENTAL
        return SyncResult(
            success=success,
            mode=mode,
            total_contacts=stats.total_contacts,
            inserted=stats.inserted,
            updated=stats.updated,
            skipped=stats.skipped,
            errors=stats.errors,
            duration_ms=duration_ms,
            timestamp=timestamp,
            error_message=error_message,
            synced_contacts=synced_contacts if incremental else None,
            sync_since_timestamp=format_iso(cutoff) if incremental and cutoff else None,
        )

    def _fetch_page(
        self, mode: SyncMode, cutoff: Optional[datetime], after: Optional[str]
    ) -> ContactPage:
        if mode is SyncMode.INCREMENTAL and cutoff is not None:
            return self.api.search_contacts_modified_since(
                to_epoch_millis(cutoff), after=after
            )
        if mode is SyncMode.CUSTOMERS:
            return self.api.search_contacts_by_lifecycle_stage(
                self.customer_stages, after=after
            )
        return self.api.list_contacts_page(after=after)

    def _page_loop(
        self,
        mode: SyncMode,
        owner_id: str,
        existing: dict[str, Optional[dict[str, Any]]],
        stats: SyncStats,
        cutoff: Optional[datetime],
        first_page: Optional[ContactPage],
        synced_contacts: Optional[list[SyncedContactInfo]],
    ) -> None:
        """Fetch and process pages until the cursor runs out or the cap is hit."""
        tracker = DuplicateTracker()
        max_pages = self.max_pages(mode)
        page = first_page
        cursor: Optional[str] = None

        while True:
            if page is None:
                page = self._fetch_page(mode, cutoff, cursor)
            stats.pages += 1

            self.process_page(
                page, mode, owner_id, existing, tracker, stats, synced_contacts
            )

            cursor = page.next_cursor
            page = None
            if not cursor:
                break
            if stats.pages >= max_pages:
                logger.warning(
                    f"Stopped after {stats.pages} pages (safety cap) "
                    "with more pages pending"
                )
                break

            if stats.pages % PROGRESS_LOG_INTERVAL == 0:
                logger.info(
                    f"Progress: {stats.pages} pages, {stats.total_contacts} fetched, "
                    f"{stats.written} written, {stats.errors} errors"
                )
            time.sleep(self.request_delay)

        if stats.duplicates_filtered:
            logger.info(
                f"Filtered {stats.duplicates_filtered} duplicate contact(s) "
                "seen on earlier pages"
            )

    def process_page(
        self,
        page: ContactPage,
        mode: SyncMode,
        owner_id: str,
        existing: dict[str, Optional[dict[str, Any]]],
        tracker: DuplicateTracker,
        stats: SyncStats,
        synced_contacts: Optional[list[SyncedContactInfo]] = None,
    ) -> None:
        """
        Apply one page: dedupe, merge, write and count.

        Args:
            page: Page returned by the CRM
            mode: Effective mode of the run
            owner_id: Owner scope being synced
            existing: Index of local rows by CRM id (values are None for light loads)
            tracker: Run-scoped duplicate tracker
            stats: Accumulator updated in place
            synced_contacts: Receives per-contact details in incremental mode
        """
        stats.total_contacts += len(page.contacts)

        fresh = tracker.filter_new(page.contacts)
        duplicates = len(page.contacts) - len(fresh)
        stats.duplicates_filtered += duplicates
        stats.skipped += duplicates

        if mode.inserts_only:
            to_write = [c for c in fresh if c.contact_id not in existing]
            stats.skipped += len(fresh) - len(to_write)
        else:
            to_write = fresh

        if not to_write:
            return

        companies = self._company_ids_for(
            [c.contact_id for c in to_write if c.contact_id not in existing]
        )

        synced_at = utc_now()
        changes: dict[str, list[FieldChange]] = {}
        payloads: list[dict[str, Any]] = []
        for contact in to_write:
            row = existing.get(contact.contact_id)
            payloads.append(
                build_merged_record(
                    contact,
                    row,
                    owner_id,
                    self.stage_mapper,
                    synced_at=synced_at,
                    company_id=companies.get(contact.contact_id),
                )
            )
            if mode is SyncMode.INCREMENTAL:
                changes[contact.contact_id] = detect_field_changes(
                    contact, row, self.stage_mapper
                )

        result = self.upserter.upsert(payloads)
        stats.errors += result.failed
        written = set(result.written_ids)

        for contact in to_write:
            if contact.contact_id not in written:
                continue
            is_new = contact.contact_id not in existing
            if is_new:
                stats.inserted += 1
            else:
                stats.updated += 1

            if mode is SyncMode.INCREMENTAL and synced_contacts is not None:
                info = self._contact_info(
                    contact, is_new, changes.get(contact.contact_id, [])
                )
                synced_contacts.append(info)
                self._log_synced_contact(info)

    def _company_ids_for(self, contact_ids: list[str]) -> dict[str, str]:
        """
        Company ids for contacts about to be inserted.

        A failed lookup is logged and the contacts are written without a
        company.
        """
        if not self.fetch_company_associations or not contact_ids:
            return {}
        try:
            return self.api.get_company_associations(contact_ids)
        except CRMAPIError as e:
            logger.warning(
                f"Company lookup failed for {len(contact_ids)} new contact(s), "
                f"storing them without a company: {e}"
            )
            return {}

    def _contact_info(
        self, contact: RemoteContact, is_new: bool, changed: list[FieldChange]
    ) -> SyncedContactInfo:
        stage = contact.value_for("lifecycle_stage")
        return SyncedContactInfo(
            crm_contact_id=contact.contact_id,
            email=contact.email,
            name=contact.display_name,
            company=contact.company,
            lifecycle_stage=stage,
            lifecycle_label=self.stage_mapper.display(stage),
            last_modified=contact.crm_modified_at or contact.updated_at,
            is_new=is_new,
            changed_fields=changed,
        )

    @staticmethod
    def _log_synced_contact(info: SyncedContactInfo) -> None:
        if info.is_new:
            logger.info(
                f"NEW {info.crm_contact_id} {info.name} "
                f"<{info.email or '-'}> [{info.lifecycle_label}]"
            )
            return

        if info.changed_fields:
            details = ", ".join(
                f"{c.field}: {c.old_value!r} -> {c.new_value!r}"
                for c in info.changed_fields
            )
        else:
            details = "no field changes"
        logger.info(f"UPD {info.crm_contact_id} {info.name}: {details}")
