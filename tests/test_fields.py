"""Tests for downstream field extraction and write-back."""

from member_sync.sync.fields import (
    apply_resolutions,
    extract_field_value,
    extract_tracked_values,
)


def _fields(*contacts, **extra):
    return {
        "contact_info": [
            {"contact_type": t, "contact_value": v} for t, v in contacts
        ],
        **extra,
    }


# ---------------------------------------------------------------------------
# extract_field_value
# ---------------------------------------------------------------------------


class TestExtractFieldValue:
    """Tests for reading tracked fields from a profile."""

    def test_plain_and_contact_fields(self):
        fields = _fields(("mobile", "0611"), helpdesk_id="H7")
        assert extract_field_value(fields, "helpdesk_id") == "H7"
        assert extract_field_value(fields, "mobile") == "0611"
        assert extract_field_value(fields, "phone") is None

    def test_email2_prefers_explicit_entry(self):
        fields = _fields(
            ("email", "a@ex.org"),
            ("email", "b@ex.org"),
            ("email2", "c@ex.org"),
        )
        assert extract_field_value(fields, "email2") == "c@ex.org"

    def test_email2_falls_back_to_second_email(self):
        fields = _fields(("email", "a@ex.org"), ("email", "b@ex.org"))
        assert extract_field_value(fields, "email") == "a@ex.org"
        assert extract_field_value(fields, "email2") == "b@ex.org"

    def test_booleans_normalized(self):
        values = extract_tracked_values(
            {"financial_block": True}, ["financial_block"]
        )
        assert values == {"financial_block": "1"}


# ---------------------------------------------------------------------------
# apply_resolutions
# ---------------------------------------------------------------------------


class TestApplyResolutions:
    """Tests for writing winning values back into a payload."""

    def test_email2_updates_second_email_entry(self):
        fields = _fields(("email", "a@ex.org"), ("email", "b@ex.org"))
        result = apply_resolutions(fields, {"email2": "new@ex.org"})
        assert result["contact_info"] == [
            {"contact_type": "email", "contact_value": "a@ex.org"},
            {"contact_type": "email", "contact_value": "new@ex.org"},
        ]

    def test_extract_then_apply_keeps_contacts(self):
        fields = _fields(
            ("email", "a@ex.org"), ("email", "b@ex.org"), ("mobile", "06")
        )
        values = {
            name: extract_field_value(fields, name)
            for name in ("email", "email2", "mobile", "phone")
        }
        assert apply_resolutions(fields, values) == fields

    def test_missing_contact_appended(self):
        result = apply_resolutions(_fields(), {"phone": "030"})
        assert result["contact_info"] == [
            {"contact_type": "phone", "contact_value": "030"}
        ]

    def test_input_not_mutated(self):
        fields = _fields(("email", "a@ex.org"))
        apply_resolutions(fields, {"email": "b@ex.org", "city": "Zeist"})
        assert fields == _fields(("email", "a@ex.org"))
