"""
Entry point for running crm_sync as a module.

Usage:
    python -m crm_sync --help
    python -m crm_sync sync --mode incremental --owner-id <id>
    python -m crm_sync status
"""

from crm_sync.cli import cli

if __name__ == "__main__":
    cli()
