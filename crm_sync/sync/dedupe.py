"""
Duplicate filtering for a single sync run.

Cursor pagination over a long run can hand back the same contact on two
different pages when CRM data changes underneath the traversal. The
DuplicateTracker remembers every CRM id already handed to the upserter
during the run so repeats are skipped instead of written twice.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Any

from crm_sync.sync.contact import RemoteContact

logger = logging.getLogger(__name__)


class DuplicateTracker:
    """
    Run-scoped set of CRM contact ids already processed.

    Not shared between runs: two overlapping runs each have their own tracker.

    Usage:
        tracker = DuplicateTracker()
        fresh = tracker.filter_new(page.contacts)
        skipped = len(page.contacts) - len(fresh)
    """

    def __init__(self) -> None:
        self._seen: set[str] = set()
        self.duplicates_skipped = 0

    def filter_new(self, contacts: Iterable[RemoteContact]) -> list[RemoteContact]:
        """
        Drop contacts already seen in this run and remember the rest.

        A contact repeated within the same page is also dropped.

        Returns:
            Contacts not seen before, in their original order
        """
        fresh: list[RemoteContact] = []
        for contact in contacts:
            if contact.contact_id in self._seen:
                self.duplicates_skipped += 1
                continue
            self._seen.add(contact.contact_id)
            fresh.append(contact)
        return fresh

    def __contains__(self, contact_id: object) -> bool:
        return contact_id in self._seen

    def __len__(self) -> int:
        return len(self._seen)


def dedupe_by_business_key(records: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """
    Collapse payloads sharing (crm_contact_id, owner_id), last one wins.

    The surviving payload keeps the position of the first occurrence.

    Args:
        records: Merged payloads

    Returns:
        Deduplicated list of payloads
    """
    unique: dict[tuple[Any, Any], dict[str, Any]] = {}
    for record in records:
        unique[(record.get("crm_contact_id"), record.get("owner_id"))] = record

    removed = len(records) - len(unique)
    if removed > 0:
        logger.info(f"Removed {removed} duplicate record(s) from batch")

    return list(unique.values())
