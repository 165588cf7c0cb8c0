"""
Contact data model for CRM to local store synchronization.

Provides:
- RemoteContact, a typed view of one CRM contact with a named attribute for
  every property the engine consumes
- The fixed property list requested from the CRM and its mapping onto
  local store columns
- The lifecycle stage code to label translation table
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Optional

# CRM property name -> local column name, for every mirrored field.
# The CRM is only ever asked for exactly these properties.
PROPERTY_COLUMN_MAP: dict[str, str] = {
    "hs_object_id": "hs_object_id",
    "email": "email",
    "firstname": "first_name",
    "lastname": "last_name",
    "phone": "phone",
    "mobilephone": "mobile_phone",
    "company": "company",
    "address": "address",
    "city": "city",
    "state": "state",
    "zip": "zip",
    "country": "country",
    "website": "website",
    "lifecyclestage": "lifecycle_stage",
    "createdate": "crm_created_at",
    "lastmodifieddate": "crm_modified_at",
}

# Properties requested from the CRM, in a stable order
CONTACT_PROPERTIES: list[str] = list(PROPERTY_COLUMN_MAP)

# Local columns mirrored from the CRM
MIRRORED_COLUMNS: list[str] = list(PROPERTY_COLUMN_MAP.values())

# Columns owned by the local store. Sync seeds them on insert (crm_company_id
# from the company association) and never overwrites them afterwards.
LOCAL_ONLY_COLUMNS: list[str] = [
    "crm_company_id",
    "business_type",
    "business_category_type",
    "business_hours",
    "locations",
    "active_customer",
    "gbp_ready",
    "published_status",
    "publishing_fee_paid",
    "completeness_score",
    "current_website",
    "website_status",
]

# Columns managed by the store itself
STORE_MANAGED_COLUMNS: list[str] = ["created_at", "updated_at"]

# Mirrored columns that are explicitly nulled on brand-new records
NEW_RECORD_NULL_COLUMNS: list[str] = [
    "email",
    "first_name",
    "last_name",
    "phone",
    "company",
    "lifecycle_stage",
]

# Mirrored columns compared by change detection. Timestamps are left out:
# their formats differ between systems and the modification time always moves.
CHANGE_TRACKED_COLUMNS: list[str] = [
    column
    for column in MIRRORED_COLUMNS
    if column not in ("crm_created_at", "crm_modified_at")
]

# Label shown when a contact has no lifecycle stage
NO_STAGE_LABEL = "(none)"

# CRM lifecycle stage codes -> human-readable labels.
# Custom stages get numeric identifiers in the CRM.
DEFAULT_LIFECYCLE_STAGE_LABELS: dict[str, str] = {
    # Custom stages
    "944991848": "HOT",
    "999377175": "Active",
    "958707767": "No Show",
    "946862144": "DNC",
    "81722417": "Zing Employee",
    "1000822942": "Reengage",
    "1009016957": "VC",
    # Standard stages
    "customer": "Customer",
    "lead": "Lead",
    "salesqualifiedlead": "Sales Qualified Lead",
    "opportunity": "Opportunity",
    "other": "Other",
    "subscriber": "Subscriber",
    "marketingqualifiedlead": "Marketing Qualified Lead",
    "evangelist": "Evangelist",
}


class LifecycleStageMapper:
    """
    Translates raw CRM lifecycle stage codes into labels.

    Unknown codes pass through unchanged so a newly created custom stage
    is stored as its code until a label is configured for it.

    Usage:
        mapper = LifecycleStageMapper({"123456": "Partner"})
        mapper.translate("customer")  # "Customer"
        mapper.translate("123456")    # "Partner"
        mapper.translate("777")       # "777"
    """

    def __init__(
        self,
        labels: Optional[Mapping[str, str]] = None,
        include_defaults: bool = True,
    ):
        """
        Initialize the mapper.

        Args:
            labels: Extra or overriding code -> label entries
            include_defaults: Start from DEFAULT_LIFECYCLE_STAGE_LABELS
        """
        self.labels: dict[str, str] = (
            dict(DEFAULT_LIFECYCLE_STAGE_LABELS) if include_defaults else {}
        )
        if labels:
            self.labels.update({str(k): str(v) for k, v in labels.items()})

    def translate(self, code: Optional[str]) -> Optional[str]:
        """Return the label for a code, the code itself if unknown, or None."""
        if not code:
            return None
        return self.labels.get(code, code)

    def display(self, code: Optional[str]) -> str:
        """Return a label suitable for display, '(none)' for an empty stage."""
        return self.translate(code) or NO_STAGE_LABEL

    def __len__(self) -> int:
        return len(self.labels)


@dataclass(frozen=True)
class RemoteContact:
    """
    One contact as returned by the CRM.

    Attribute names follow the local column naming; see PROPERTY_COLUMN_MAP.
    Any property may be None when the CRM has no value for it.

    Usage:
        contact = RemoteContact.from_api_response(api_result)
        contact.value_for("first_name")
    """

    contact_id: str
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    hs_object_id: Optional[str] = None
    email: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone: Optional[str] = None
    mobile_phone: Optional[str] = None
    company: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip: Optional[str] = None
    country: Optional[str] = None
    website: Optional[str] = None
    lifecycle_stage: Optional[str] = None
    crm_created_at: Optional[str] = None
    crm_modified_at: Optional[str] = None

    @classmethod
    def from_api_response(cls, record: dict[str, Any]) -> RemoteContact:
        """
        Create a RemoteContact from a CRM object.

        Args:
            record: CRM object with ``id``, ``properties``, ``createdAt``
                and ``updatedAt``. Unknown properties are ignored.

        Returns:
            RemoteContact populated from the response

        Raises:
            ValueError: If the record has no identifier

        Example API response structure::

            {
                'id': '51',
                'properties': {'email': 'jo@example.com', 'firstname': 'Jo', ...},
                'createdAt': '2024-01-02T10:00:00.000Z',
                'updatedAt': '2024-03-15T14:32:07.000Z',
            }
        """
        contact_id = record.get("id")
        if contact_id is None or str(contact_id) == "":
            raise ValueError("CRM record has no id")

        properties = record.get("properties") or {}
        values: dict[str, Optional[str]] = {}
        for prop, column in PROPERTY_COLUMN_MAP.items():
            raw = properties.get(prop)
            values[column] = None if raw is None else str(raw)

        return cls(
            contact_id=str(contact_id),
            created_at=record.get("createdAt"),
            updated_at=record.get("updatedAt"),
            **values,
        )

    def value_for(self, column: str) -> Optional[str]:
        """Return the value of a mirrored column, or None if the CRM left it empty."""
        if column not in PROPERTY_COLUMN_MAP.values():
            raise KeyError(f"Not a mirrored column: {column}")
        value: Optional[str] = getattr(self, column)
        return value if value else None

    @property
    def display_name(self) -> str:
        """Full name, falling back to the email address, then 'Unknown'."""
        name = " ".join(p for p in (self.first_name, self.last_name) if p).strip()
        return name or self.email or "Unknown"
