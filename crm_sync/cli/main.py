"""
Command-line interface for crm_sync.

Provides CLI commands for running CRM contact synchronization, managing
operators and inspecting the sync job ledger.

Usage:
    # Show help
    crm-sync --help

    # Create an operator (its id is the owner scope of synced contacts)
    crm-sync add-operator --email ops@example.com

    # Run synchronization
    export CRM_SYNC_ACCESS_TOKEN=...
    crm-sync sync --email ops@example.com
    crm-sync sync --mode incremental --owner-id <operator id>

    # Check status
    crm-sync status --days 7
"""

import json
import logging
import sys
from pathlib import Path
from typing import Any, Optional

import click

from crm_sync import __version__
from crm_sync.api.crm_api import CRMAPIError, CRMClient
from crm_sync.auth.operator_auth import (
    AuthenticationError,
    OperatorAuth,
    OperatorCredentials,
    get_access_token,
)
from crm_sync.cli.formatters import show_status_report, show_sync_result
from crm_sync.config.generator import save_config_file
from crm_sync.config.loader import (
    DEFAULT_CONFIG_FILE,
    VALID_MODES,
    ConfigError,
    ConfigLoader,
)
from crm_sync.storage.db import SyncDatabase
from crm_sync.sync.contact import LifecycleStageMapper
from crm_sync.sync.engine import SyncEngine, SyncMode
from crm_sync.sync.jobs import JOB_TYPE_LABELS, run_sync_job, summarize_sync_jobs
from crm_sync.sync.upsert import BatchUpserter, UpsertPolicy
from crm_sync.utils.logging import cleanup_old_logs, setup_logging
from crm_sync.utils.paths import (
    CONFIG_DIR_ENV_VAR,
    resolve_config_dir,
    resolve_db_path,
    resolve_log_dir,
)

logger = logging.getLogger(__name__)


def get_config_dir(config_dir: str | None) -> Path:
    """Get the configuration directory path."""
    return resolve_config_dir(config_dir)


def open_database(settings: dict[str, Any], config_dir: Path) -> SyncDatabase:
    """Open (and create if needed) the SQLite store named by the settings."""
    db_path = resolve_db_path(config_dir, settings.get("db_path"))
    db_path.parent.mkdir(parents=True, exist_ok=True)
    database = SyncDatabase(str(db_path))
    database.initialize()
    return database


def build_engine(
    settings: dict[str, Any], database: SyncDatabase, access_token: str
) -> SyncEngine:
    """
    Wire a SyncEngine from merged settings.

    Args:
        settings: DEFAULTS overlaid with the config file
        database: Initialized local store
        access_token: CRM access token

    Returns:
        Configured SyncEngine
    """
    api = CRMClient(
        access_token,
        base_url=settings["crm_base_url"],
        page_size=settings["crm_page_size"],
        timeout=settings["crm_timeout"],
        max_retries=settings["max_retries"],
        initial_retry_delay=settings["initial_retry_delay"],
        max_retry_delay=settings["max_retry_delay"],
    )
    upserter = BatchUpserter(
        database,
        batch_size=settings["upsert_batch_size"],
        policy=UpsertPolicy(settings["upsert_policy"]),
        max_attempts=settings["max_retries"],
        initial_retry_delay=settings["initial_retry_delay"],
    )
    return SyncEngine(
        api=api,
        database=database,
        auth=OperatorAuth(database),
        stage_mapper=LifecycleStageMapper(settings["lifecycle_stage_labels"]),
        upserter=upserter,
        request_delay=settings["request_delay"],
        page_size=settings["crm_page_size"],
        store_page_size=settings["store_page_size"],
        max_records_full=settings["max_records_full"],
        max_records_incremental=settings["max_records_incremental"],
        search_result_limit=settings["search_result_limit"],
        max_records_customers=settings["max_records_customers"],
        customer_stages=settings["customer_lifecycle_stages"],
        fetch_company_associations=settings["fetch_company_associations"],
    )


@click.group()
@click.version_option(version=__version__, prog_name="crm-sync")
@click.option(
    "--verbose", "-v", is_flag=True, help="Enable verbose output with detailed logging."
)
@click.option(
    "--config-dir",
    "-c",
    type=click.Path(exists=False, file_okay=False, dir_okay=True),
    envvar=CONFIG_DIR_ENV_VAR,
    help="Configuration directory path (default: ~/.crm-sync).",
)
@click.pass_context
def cli(ctx: click.Context, verbose: bool, config_dir: str | None) -> None:
    """
    CRM to local store contact sync.

    Pulls contacts from the CRM page by page and merges them into the local
    SQLite store, keeping locally owned fields intact.
    """
    ctx.ensure_object(dict)

    resolved_config_dir = get_config_dir(config_dir)
    loader = ConfigLoader(config_dir=resolved_config_dir)
    ctx.obj["config_dir"] = resolved_config_dir
    ctx.obj["config_file"] = resolved_config_dir / DEFAULT_CONFIG_FILE

    config: dict[str, Any] = {}
    try:
        config = loader.load_and_validate()
    except ConfigError as e:
        # Show error but don't fail - fall back to defaults
        click.echo(
            click.style(f"Warning: Configuration error: {e}", fg="yellow"), err=True
        )
        config = {}

    settings = ConfigLoader.with_defaults(config)
    ctx.obj["settings"] = settings

    effective_verbose = verbose or settings["verbose"]
    ctx.obj["verbose"] = effective_verbose

    log_dir = resolve_log_dir(resolved_config_dir, settings["log_dir"])
    setup_logging(log_dir=log_dir, verbose=effective_verbose)
    cleanup_old_logs(log_dir=log_dir, keep_count=settings["log_retention_count"])


# =============================================================================
# Sync Command
# =============================================================================


@cli.command("sync")
@click.option(
    "--mode",
    "-m",
    type=click.Choice(VALID_MODES, case_sensitive=False),
    default=None,
    help="insert, sync, incremental or customers (default: config default_mode).",
)
@click.option("--email", "-e", help="Operator email; the run syncs its contacts.")
@click.option(
    "--password",
    envvar="CRM_SYNC_OPERATOR_PASSWORD",
    help="Operator password (prompted if --email is given without it).",
)
@click.option("--owner-id", help="Owner scope to sync into, instead of --email.")
@click.option(
    "--trigger",
    default="manual",
    show_default=True,
    help="Recorded in the job ledger as what started the run.",
)
@click.option(
    "--json", "as_json", is_flag=True, help="Print the result as JSON."
)
@click.option(
    "--show-contacts",
    is_flag=True,
    help="List each synced contact (incremental runs only).",
)
@click.pass_context
def sync_command(
    ctx: click.Context,
    mode: Optional[str],
    email: Optional[str],
    password: Optional[str],
    owner_id: Optional[str],
    trigger: str,
    as_json: bool,
    show_contacts: bool,
) -> None:
    """
    Synchronize CRM contacts into the local store.

    Examples:

        # Full reconciliation for an operator
        crm-sync sync --email ops@example.com

        # Only contacts modified since the last synced day
        crm-sync sync --mode incremental --owner-id 1b9d...

        # Add new contacts only, leave existing rows alone
        crm-sync sync --mode insert --owner-id 1b9d...

        # Add missing customers, linked to their CRM company
        crm-sync sync --mode customers --owner-id 1b9d...
    """
    settings = ctx.obj["settings"]
    config_dir = ctx.obj["config_dir"]

    effective_mode = SyncMode(mode or settings["default_mode"])

    if not email and not owner_id:
        click.echo(
            click.style("Error: either --email or --owner-id is required.", fg="red"),
            err=True,
        )
        sys.exit(1)

    credentials = None
    if email:
        if password is None:
            password = click.prompt("Password", hide_input=True)
        credentials = OperatorCredentials(email=email, password=password)

    token = get_access_token(settings["access_token_env"])
    if not token:
        click.echo(
            click.style(
                f"Error: CRM access token not set. "
                f"Export {settings['access_token_env']}.",
                fg="red",
            ),
            err=True,
        )
        sys.exit(1)

    try:
        database = open_database(settings, config_dir)
        engine = build_engine(settings, database, token)

        if not as_json:
            click.echo(f"Running {effective_mode.value} sync...")

        result = run_sync_job(
            engine,
            database,
            effective_mode,
            credentials=credentials,
            owner_id=None if credentials else owner_id,
            trigger=trigger,
        )
    except Exception as e:
        logger.exception(f"Sync failed: {e}")
        click.echo(click.style(f"\nSync failed: {e}", fg="red"), err=True)
        sys.exit(1)

    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2, default=str))
    else:
        show_sync_result(result, show_contacts=show_contacts)

    if not result.success:
        sys.exit(1)


# =============================================================================
# Status Command
# =============================================================================


@cli.command("status")
@click.option(
    "--job-type",
    type=click.Choice(sorted(JOB_TYPE_LABELS)),
    help="Only report one job type.",
)
@click.option("--days", default=7, show_default=True, help="Time window in days.")
@click.option(
    "--limit", default=20, show_default=True, help="Rows considered per job type."
)
@click.option("--json", "as_json", is_flag=True, help="Print the report as JSON.")
@click.pass_context
def status_command(
    ctx: click.Context,
    job_type: Optional[str],
    days: int,
    limit: int,
    as_json: bool,
) -> None:
    """
    Show sync job history and success rates.

    Example:

        crm-sync status --days 30
    """
    settings = ctx.obj["settings"]
    config_dir = ctx.obj["config_dir"]

    db_path = resolve_db_path(config_dir, settings.get("db_path"))
    if not db_path.exists():
        click.echo("Sync database: Not initialized (no syncs performed yet)")
        return

    try:
        database = open_database(settings, config_dir)
        report = summarize_sync_jobs(database, job_type=job_type, days=days, limit=limit)
    except Exception as e:
        logger.exception(f"Error getting status: {e}")
        click.echo(click.style(f"Error: {e}", fg="red"), err=True)
        sys.exit(1)

    if as_json:
        click.echo(json.dumps(report.to_dict(), indent=2, default=str))
        return

    click.echo(f"Database: {db_path}")
    click.echo(f"Stored contacts: {database.get_contact_count()}\n")
    show_status_report(report)


# =============================================================================
# Add-Operator Command
# =============================================================================


@cli.command("add-operator")
@click.option("--email", "-e", required=True, help="Operator email address.")
@click.password_option(
    "--password", envvar="CRM_SYNC_OPERATOR_PASSWORD", help="Operator password."
)
@click.pass_context
def add_operator_command(ctx: click.Context, email: str, password: str) -> None:
    """
    Register an operator.

    The printed operator id is the owner scope under which its contacts
    are stored.

    Example:

        crm-sync add-operator --email ops@example.com
    """

    try:
        database = open_database(ctx.obj["settings"], ctx.obj["config_dir"])
        operator_id = OperatorAuth(database).register(email, password)
    except AuthenticationError as e:
        click.echo(click.style(f"Error: {e}", fg="red"), err=True)
        sys.exit(1)
    except Exception as e:
        logger.exception(f"Failed to add operator: {e}")
        click.echo(click.style(f"Error: {e}", fg="red"), err=True)
        sys.exit(1)

    click.echo(click.style(f"Operator created: {email}", fg="green"))
    click.echo(f"Owner id: {operator_id}")


# =============================================================================
# Init-Config Command
# =============================================================================


@cli.command("init-config")
@click.option(
    "--force",
    "-f",
    is_flag=True,
    help="Overwrite existing configuration file if it exists.",
)
@click.pass_context
def init_config_command(ctx: click.Context, force: bool) -> None:
    """
    Generate a default configuration file.

    Creates a configuration file with all available options documented
    and commented out.

    Examples:

        # Create config file (fails if already exists)
        crm-sync init-config

        # Overwrite existing config file
        crm-sync init-config --force
    """
    config_file = ctx.obj["config_file"]

    click.echo(f"Creating configuration file: {config_file}")

    success, error = save_config_file(config_file, overwrite=force)

    if success:
        click.echo(click.style("Configuration file created successfully!", fg="green"))
        click.echo(f"\nLocation: {config_file}")
        click.echo("\nNext steps:")
        click.echo("1. Edit the file to uncomment and configure desired options")
        click.echo("2. Export CRM_SYNC_ACCESS_TOKEN and run 'crm-sync sync'")
    else:
        click.echo(click.style(f"Error: {error}", fg="red"), err=True)
        sys.exit(1)


# =============================================================================
# Cleanup-Jobs Command
# =============================================================================


@cli.command("cleanup-jobs")
@click.option(
    "--older-than",
    "older_than_minutes",
    default=60,
    show_default=True,
    type=click.IntRange(min=1),
    help="Minutes a job must have been running to be marked failed.",
)
@click.pass_context
def cleanup_jobs_command(ctx: click.Context, older_than_minutes: int) -> None:
    """
    Mark jobs stuck in 'running' as failed.

    A process killed mid-run leaves its job row running forever; this
    closes such rows.

    Example:

        crm-sync cleanup-jobs --older-than 120
    """
    database = open_database(ctx.obj["settings"], ctx.obj["config_dir"])
    count = database.mark_stale_jobs_failed(older_than_minutes)

    if count:
        click.echo(click.style(f"Marked {count} stale job(s) as failed.", fg="yellow"))
    else:
        click.echo("No stale jobs found.")


# =============================================================================
# Health Command
# =============================================================================


@cli.command("health")
@click.option(
    "--check-crm", is_flag=True, help="Also verify the CRM access token works."
)
@click.pass_context
def health_command(ctx: click.Context, check_crm: bool) -> None:
    """
    Check application health status.

    Returns a simple health status indicator. Useful for container
    health checks and monitoring.

    Example:

        crm-sync health --check-crm
    """
    if check_crm:
        settings = ctx.obj["settings"]
        token = get_access_token(settings["access_token_env"])
        if not token:
            click.echo("unhealthy: CRM access token not set")
            sys.exit(1)
        client = CRMClient(
            token, base_url=settings["crm_base_url"], timeout=settings["crm_timeout"]
        )
        try:
            client.check_connection()
        except CRMAPIError as e:
            click.echo(f"unhealthy: {e}")
            sys.exit(1)
        finally:
            client.close()

    click.echo("healthy")
