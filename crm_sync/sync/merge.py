"""
Record merging and change detection.

build_merged_record() produces the exact payload written to the local store
for one CRM contact:

1. Start from the existing local row (or an empty skeleton for a new contact)
2. Overlay CRM values only where the CRM actually has a value
3. Hand the complete record to the upserter

An empty CRM value never overwrites a local value, and columns the CRM has
no concept of are carried over untouched. The one exception is
crm_company_id, seeded from the company association when a contact is new.
"""

from __future__ import annotations

import uuid
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

from crm_sync.sync.contact import (
    CHANGE_TRACKED_COLUMNS,
    LOCAL_ONLY_COLUMNS,
    MIRRORED_COLUMNS,
    NEW_RECORD_NULL_COLUMNS,
    STORE_MANAGED_COLUMNS,
    LifecycleStageMapper,
    RemoteContact,
)
from crm_sync.utils.timing import format_iso, utc_now

_DEFAULT_MAPPER = LifecycleStageMapper()


@dataclass(frozen=True)
class FieldChange:
    """A single mirrored field whose CRM value differs from the stored one."""

    field: str
    old_value: Optional[str]
    new_value: Optional[str]


def new_record_skeleton() -> dict[str, Any]:
    """Return an empty record with every mirrored and local-only column set to None."""
    skeleton: dict[str, Any] = {column: None for column in MIRRORED_COLUMNS}
    skeleton.update({column: None for column in LOCAL_ONLY_COLUMNS})
    return skeleton


def build_merged_record(
    remote: RemoteContact,
    existing: Optional[Mapping[str, Any]],
    owner_id: str,
    stage_mapper: Optional[LifecycleStageMapper] = None,
    synced_at: Optional[datetime] = None,
    company_id: Optional[str] = None,
) -> dict[str, Any]:
    """
    Merge a CRM contact onto its local row.

    Args:
        remote: Contact fetched from the CRM
        existing: Current local row, or None for a contact not yet stored
        owner_id: Owner scope the record belongs to
        stage_mapper: Lifecycle code translation (default table if None)
        synced_at: Sync timestamp to stamp (defaults to now)
        company_id: Associated CRM company, stored on new contacts only

    Returns:
        Payload dict ready for the batch upserter
    """
    mapper = stage_mapper or _DEFAULT_MAPPER

    merged: dict[str, Any] = dict(existing) if existing else new_record_skeleton()

    for column in STORE_MANAGED_COLUMNS:
        merged.pop(column, None)

    # Existing rows keep their key; conflicts resolve on the business key
    if existing and existing.get("id"):
        merged["id"] = existing["id"]
    else:
        merged["id"] = str(uuid.uuid4())

    merged["crm_contact_id"] = remote.contact_id
    merged["owner_id"] = owner_id
    merged["synced_at"] = format_iso(synced_at or utc_now())

    for column in MIRRORED_COLUMNS:
        value = remote.value_for(column)
        if not value:
            continue
        if column == "lifecycle_stage":
            value = mapper.translate(value)
        merged[column] = value

    if not existing:
        for column in NEW_RECORD_NULL_COLUMNS:
            if not merged.get(column):
                merged[column] = None
        merged["crm_company_id"] = company_id

    return merged


def _normalize(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = value if isinstance(value, str) else str(value)
    return text if text != "" else None


def detect_field_changes(
    remote: RemoteContact,
    existing: Optional[Mapping[str, Any]],
    stage_mapper: Optional[LifecycleStageMapper] = None,
) -> list[FieldChange]:
    """
    List the mirrored fields whose CRM value differs from the stored one.

    Only used for reporting; it never influences what gets written. Empty
    strings and None are treated as equal, and a field is only reported
    when the CRM has a value for it (empty CRM values never overwrite).
    The lifecycle stage is compared as a label, which is what the store holds.

    Args:
        remote: Contact fetched from the CRM
        existing: Current local row, or None for a new contact
        stage_mapper: Lifecycle code translation (default table if None)

    Returns:
        List of FieldChange, empty for new contacts
    """
    if not existing:
        return []

    mapper = stage_mapper or _DEFAULT_MAPPER
    changes: list[FieldChange] = []

    for column in CHANGE_TRACKED_COLUMNS:
        new_value = _normalize(remote.value_for(column))
        if new_value is None:
            continue
        if column == "lifecycle_stage":
            new_value = mapper.translate(new_value)

        old_value = _normalize(existing.get(column))
        if new_value != old_value:
            changes.append(
                FieldChange(field=column, old_value=old_value, new_value=new_value)
            )

    return changes
