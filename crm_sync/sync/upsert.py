"""
Batch writes of merged contacts to the local store.

The BatchUpserter deduplicates a batch by business key, splits it into
fixed-size sub-batches and writes each one with retry. A sub-batch that
still fails after retries is counted as failed and the remaining
sub-batches are still attempted.
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from crm_sync.storage.db import SyncDatabase
from crm_sync.sync.dedupe import dedupe_by_business_key
from crm_sync.utils.retry import (
    DEFAULT_INITIAL_RETRY_DELAY,
    DEFAULT_MAX_ATTEMPTS,
    retry_with_backoff,
)

# Records per write statement
DEFAULT_UPSERT_BATCH_SIZE = 50

logger = logging.getLogger(__name__)


class UpsertPolicy(Enum):
    """How a sub-batch that keeps failing is handled."""

    # Count every record of the failed sub-batch as failed
    BATCH = "batch"
    # Replay the failed sub-batch one record at a time
    BATCH_THEN_ROW = "batch_then_row"


@dataclass
class UpsertResult:
    """
    Outcome of one BatchUpserter.upsert() call.

    Attributes:
        written_ids: CRM contact ids that were written
        failed: Number of records that could not be written
        duplicates_removed: Payloads dropped by in-batch deduplication
    """

    written_ids: list[str] = field(default_factory=list)
    failed: int = 0
    duplicates_removed: int = 0

    @property
    def written(self) -> int:
        return len(self.written_ids)


class BatchUpserter:
    """
    Writes merged payloads in sub-batches keyed by (crm_contact_id, owner_id).

    Usage:
        upserter = BatchUpserter(database)
        result = upserter.upsert(payloads)
        print(f"{result.written} written, {result.failed} failed")
    """

    def __init__(
        self,
        database: SyncDatabase,
        batch_size: int = DEFAULT_UPSERT_BATCH_SIZE,
        policy: UpsertPolicy = UpsertPolicy.BATCH,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        initial_retry_delay: float = DEFAULT_INITIAL_RETRY_DELAY,
    ):
        """
        Initialize the upserter.

        Args:
            database: Local store to write to
            batch_size: Records per sub-batch (default 50)
            policy: Handling of sub-batches that fail after retries
            max_attempts: Attempts per sub-batch, including the first
            initial_retry_delay: Backoff delay after the first failure
        """
        if batch_size < 1:
            raise ValueError(f"batch_size must be >= 1, got {batch_size}")

        self.database = database
        self.batch_size = batch_size
        self.policy = policy
        self.max_attempts = max_attempts
        self.initial_retry_delay = initial_retry_delay

    def upsert(self, records: list[dict[str, Any]]) -> UpsertResult:
        """
        Write a list of merged payloads.

        Args:
            records: Payloads from build_merged_record()

        Returns:
            UpsertResult with the written ids and the failure count
        """
        result = UpsertResult()
        if not records:
            return result

        unique = dedupe_by_business_key(records)
        result.duplicates_removed = len(records) - len(unique)

        for start in range(0, len(unique), self.batch_size):
            chunk = unique[start : start + self.batch_size]
            batch_number = start // self.batch_size + 1

            try:
                retry_with_backoff(
                    lambda: self.database.upsert_contacts(chunk),
                    f"Upsert batch {batch_number} ({len(chunk)} records)",
                    max_attempts=self.max_attempts,
                    initial_delay=self.initial_retry_delay,
                    retry_on=(sqlite3.Error,),
                )
            except sqlite3.Error as e:
                logger.error(
                    f"Batch {batch_number} failed: size={len(chunk)}, error={e}, "
                    f"first record keys={sorted(chunk[0].keys())}"
                )
                if self.policy is UpsertPolicy.BATCH_THEN_ROW:
                    self._write_rows(chunk, result)
                else:
                    result.failed += len(chunk)
                continue

            result.written_ids.extend(r["crm_contact_id"] for r in chunk)

        return result

    def _write_rows(self, chunk: list[dict[str, Any]], result: UpsertResult) -> None:
        """Replay a failed sub-batch one record at a time, single attempt each."""
        recovered = 0
        for record in chunk:
            try:
                self.database.upsert_contacts([record])
            except sqlite3.Error as e:
                logger.error(
                    f"Row write failed for contact {record.get('crm_contact_id')}: {e}"
                )
                result.failed += 1
                continue
            result.written_ids.append(record["crm_contact_id"])
            recovered += 1

        logger.info(f"Row fallback recovered {recovered}/{len(chunk)} record(s)")
