"""
Sync job ledger.

Every run is recorded as one row in sync_jobs: created as 'running' when
the run starts and updated once with its outcome. A process that dies
mid-run leaves its row in 'running'; mark_stale_jobs_failed() cleans those up.

summarize_sync_jobs() aggregates recent rows into the per-job-type status
report (last status, last success, success rate).
"""

import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from typing import Any, Optional, Union

from crm_sync.auth.operator_auth import OperatorCredentials
from crm_sync.storage.db import SyncDatabase
from crm_sync.sync.engine import SyncEngine, SyncMode, SyncResult
from crm_sync.utils.logging import bind_job_id
from crm_sync.utils.timing import format_duration, utc_now

JOB_TYPE_PREFIX = "crm_contacts"

# Job type -> display label
JOB_TYPE_LABELS: dict[str, str] = {
    "crm_contacts_sync": "CRM Contacts (full sync)",
    "crm_contacts_incremental": "CRM Contacts (incremental)",
    "crm_contacts_insert": "CRM Contacts (insert new)",
    "crm_contacts_customers": "CRM Contacts (customers only)",
}

logger = logging.getLogger(__name__)


class JobStatus(Enum):
    """Lifecycle states of a sync job row."""

    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


def job_type_for_mode(mode: Union[SyncMode, str]) -> str:
    """Return the ledger job type for a sync mode, e.g. 'crm_contacts_sync'."""
    return f"{JOB_TYPE_PREFIX}_{SyncMode(mode).value}"


def job_type_label(job_type: str) -> str:
    """Display label for a job type, falling back to the raw type."""
    return JOB_TYPE_LABELS.get(job_type, job_type)


def run_sync_job(
    engine: SyncEngine,
    database: SyncDatabase,
    mode: Union[SyncMode, str] = SyncMode.SYNC,
    credentials: Optional[OperatorCredentials] = None,
    owner_id: Optional[str] = None,
    trigger: str = "manual",
) -> SyncResult:
    """
    Run the engine and record the run in the job ledger.

    The row is filed under the requested mode's job type; the mode actually
    used is kept in the row's metadata.

    Args:
        engine: Configured SyncEngine
        database: Store holding the sync_jobs table
        mode: Requested sync mode
        credentials: Operator credentials, passed to the engine
        owner_id: Explicit owner scope, passed to the engine
        trigger: What started the run (e.g. 'manual', 'cron')

    Returns:
        The engine's SyncResult

    Raises:
        Any exception escaping the engine, after the row is marked failed
    """
    requested = SyncMode(mode)
    job_id = str(uuid.uuid4())
    job_type = job_type_for_mode(requested)

    with bind_job_id(job_id):
        database.create_sync_job(
            job_id,
            job_type,
            JobStatus.RUNNING.value,
            metadata={"requested_mode": requested.value, "trigger": trigger},
        )
        logger.info(f"Started sync job {job_id} ({job_type}, trigger={trigger})")

        started = time.monotonic()
        try:
            result = engine.run(requested, credentials=credentials, owner_id=owner_id)
        except Exception as e:
            database.finish_sync_job(
                job_id,
                JobStatus.FAILED.value,
                errors=1,
                error_message=str(e),
                duration_ms=int((time.monotonic() - started) * 1000),
            )
            logger.error(f"Sync job {job_id} crashed: {e}")
            raise

        database.finish_sync_job(
            job_id,
            JobStatus.COMPLETED.value if result.success else JobStatus.FAILED.value,
            records_fetched=result.total_contacts,
            records_created=result.inserted,
            records_updated=result.updated,
            records_skipped=result.skipped,
            errors=result.errors,
            error_message=result.error_message,
            duration_ms=result.duration_ms,
            metadata={
                "mode": result.mode.value,
                "synced_contacts_count": len(result.synced_contacts or []),
                "sync_since_timestamp": result.sync_since_timestamp,
            },
        )
        logger.info(
            f"Sync job {job_id} {'completed' if result.success else 'failed'} "
            f"in {result.duration}"
        )
        return result


@dataclass
class JobTypeSummary:
    """Status report for one job type."""

    job_type: str
    label: str
    last_status: Optional[str] = None
    last_run_at: Optional[str] = None
    last_success_at: Optional[str] = None
    last_success_duration: Optional[str] = None
    last_success_records: int = 0
    success_rate: Optional[float] = None
    job_count: int = 0


@dataclass
class SyncStatusReport:
    """Aggregated job ledger status over a time window."""

    days: int
    job_types: list[JobTypeSummary] = field(default_factory=list)
    completed: int = 0
    failed: int = 0
    running: int = 0

    @property
    def total(self) -> int:
        return self.completed + self.failed + self.running

    @property
    def success_rate(self) -> Optional[float]:
        """Percentage of finished jobs that completed, None if none finished."""
        finished = self.completed + self.failed
        if finished == 0:
            return None
        return round(self.completed / finished * 100, 1)

    def to_dict(self) -> dict[str, Any]:
        return {
            "days": self.days,
            "completed": self.completed,
            "failed": self.failed,
            "running": self.running,
            "success_rate": self.success_rate,
            "job_types": [vars(s) for s in self.job_types],
        }


def _summarize_job_type(
    database: SyncDatabase, job_type: str, jobs: list[dict[str, Any]]
) -> JobTypeSummary:
    summary = JobTypeSummary(
        job_type=job_type, label=job_type_label(job_type), job_count=len(jobs)
    )

    if jobs:
        summary.last_status = jobs[0]["status"]
        summary.last_run_at = jobs[0]["started_at"]

    finished = [j for j in jobs if j["status"] in ("completed", "failed")]
    if finished:
        completed = sum(1 for j in finished if j["status"] == "completed")
        summary.success_rate = round(completed / len(finished) * 100, 1)

    # Last success is looked up without the time window
    last_success = database.get_latest_completed_job(job_type)
    if last_success:
        summary.last_success_at = last_success["completed_at"]
        if last_success["duration_ms"] is not None:
            summary.last_success_duration = format_duration(
                last_success["duration_ms"]
            )
        summary.last_success_records = (last_success["records_created"] or 0) + (
            last_success["records_updated"] or 0
        )

    return summary


def summarize_sync_jobs(
    database: SyncDatabase,
    job_type: Optional[str] = None,
    days: int = 7,
    limit: int = 20,
) -> SyncStatusReport:
    """
    Build the status report from recent job rows.

    Args:
        database: Store holding the sync_jobs table
        job_type: Only report this job type (all known types if None)
        days: Time window in days
        limit: Maximum rows considered per job type

    Returns:
        SyncStatusReport with one summary per job type plus overall totals
    """
    since = utc_now() - timedelta(days=days)
    job_types = [job_type] if job_type else list(JOB_TYPE_LABELS)
    report = SyncStatusReport(days=days)

    for jt in job_types:
        jobs = database.get_sync_jobs(job_type=jt, since=since, limit=limit)
        report.job_types.append(_summarize_job_type(database, jt, jobs))

        for job in jobs:
            if job["status"] == JobStatus.COMPLETED.value:
                report.completed += 1
            elif job["status"] == JobStatus.FAILED.value:
                report.failed += 1
            elif job["status"] == JobStatus.RUNNING.value:
                report.running += 1

    return report
