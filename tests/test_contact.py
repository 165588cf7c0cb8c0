"""
Unit tests for the contact data model.

Tests RemoteContact decoding, the mirrored column lists and the lifecycle
stage mapper.
"""

import pytest

from crm_sync.sync.contact import (
    CHANGE_TRACKED_COLUMNS,
    CONTACT_PROPERTIES,
    LOCAL_ONLY_COLUMNS,
    MIRRORED_COLUMNS,
    LifecycleStageMapper,
    RemoteContact,
)


def make_api_record(**properties):
    return {
        "id": "101",
        "properties": properties,
        "createdAt": "2024-01-02T10:00:00.000Z",
        "updatedAt": "2024-03-15T14:32:07.000Z",
    }


class TestColumnLists:
    """Tests for the property and column constants."""

    def test_explicit_property_list(self):
        """Test exactly the consumed properties are requested."""
        assert "firstname" in CONTACT_PROPERTIES
        assert "lastmodifieddate" in CONTACT_PROPERTIES
        assert len(CONTACT_PROPERTIES) == len(MIRRORED_COLUMNS) == 16

    def test_local_only_columns_not_mirrored(self):
        """Test no locally owned column is ever mirrored."""
        assert not set(LOCAL_ONLY_COLUMNS) & set(MIRRORED_COLUMNS)
        assert "business_type" in LOCAL_ONLY_COLUMNS

    def test_change_tracking_excludes_timestamps(self):
        """Test both CRM timestamps are left out of change detection."""
        assert "crm_created_at" not in CHANGE_TRACKED_COLUMNS
        assert "crm_modified_at" not in CHANGE_TRACKED_COLUMNS
        assert "email" in CHANGE_TRACKED_COLUMNS


class TestRemoteContactFromApiResponse:
    """Tests for RemoteContact.from_api_response."""

    def test_maps_properties_to_columns(self):
        """Test CRM property names are mapped onto column attributes."""
        contact = RemoteContact.from_api_response(
            make_api_record(
                firstname="Ada",
                lastname="Lovelace",
                mobilephone="+44 20 0000",
                lifecyclestage="customer",
                lastmodifieddate="2024-03-15T14:32:07.000Z",
            )
        )

        assert contact.contact_id == "101"
        assert contact.first_name == "Ada"
        assert contact.last_name == "Lovelace"
        assert contact.mobile_phone == "+44 20 0000"
        assert contact.lifecycle_stage == "customer"
        assert contact.crm_modified_at == "2024-03-15T14:32:07.000Z"
        assert contact.updated_at == "2024-03-15T14:32:07.000Z"

    def test_unknown_properties_ignored(self):
        """Test properties outside the map are dropped."""
        contact = RemoteContact.from_api_response(
            make_api_record(email="a@b.co", hs_unknown_thing="x")
        )
        assert contact.email == "a@b.co"
        assert not hasattr(contact, "hs_unknown_thing")

    def test_missing_properties_are_none(self):
        """Test absent properties decode as None."""
        contact = RemoteContact.from_api_response({"id": 5})
        assert contact.contact_id == "5"
        assert contact.email is None
        assert contact.created_at is None

    def test_missing_id_raises(self):
        """Test a record without id is rejected."""
        with pytest.raises(ValueError):
            RemoteContact.from_api_response({"properties": {"email": "x@y.z"}})

    def test_is_immutable(self):
        """Test contacts are frozen."""
        contact = RemoteContact(contact_id="1")
        with pytest.raises(AttributeError):
            contact.email = "new@example.com"


class TestRemoteContactHelpers:
    """Tests for value_for and display_name."""

    def test_value_for_empty_string_is_none(self):
        """Test empty strings read as no value."""
        contact = RemoteContact(contact_id="1", phone="")
        assert contact.value_for("phone") is None

    def test_value_for_rejects_local_columns(self):
        """Test asking for a non-mirrored column is an error."""
        with pytest.raises(KeyError):
            RemoteContact(contact_id="1").value_for("business_type")

    def test_display_name_fallbacks(self):
        """Test name, then email, then 'Unknown'."""
        assert RemoteContact("1", first_name="Ada", last_name="L").display_name == (
            "Ada L"
        )
        assert RemoteContact("1", email="a@b.co").display_name == "a@b.co"
        assert RemoteContact("1").display_name == "Unknown"


class TestLifecycleStageMapper:
    """Tests for lifecycle stage translation."""

    def test_standard_stage(self):
        assert LifecycleStageMapper().translate("salesqualifiedlead") == (
            "Sales Qualified Lead"
        )

    def test_custom_numeric_stage(self):
        assert LifecycleStageMapper().translate("944991848") == "HOT"

    def test_unknown_code_passes_through(self):
        assert LifecycleStageMapper().translate("123") == "123"

    def test_empty_code(self):
        mapper = LifecycleStageMapper()
        assert mapper.translate("") is None
        assert mapper.display(None) == "(none)"
        assert mapper.display("999377175") == "Active"

    def test_injected_labels_extend_defaults(self):
        """Test configured labels add to and override the built-in table."""
        mapper = LifecycleStageMapper({"555": "Partner", "lead": "Prospect"})
        assert mapper.translate("555") == "Partner"
        assert mapper.translate("lead") == "Prospect"
        assert mapper.translate("customer") == "Customer"

    def test_without_defaults(self):
        mapper = LifecycleStageMapper({"555": "Partner"}, include_defaults=False)
        assert len(mapper) == 1
        assert mapper.translate("customer") == "customer"
