"""
Tests for column typing: coercion, validation, defaults and display formatting.
"""
import datetime as dt

import pytest

from opsgrid.cell_types import (
    check_column_settings,
    coerce_cell_value,
    decode_cell_value,
    default_cell_value,
    encode_cell_value,
    format_cell_value,
    missing_cell_value,
    normalize_column_type,
    validate_cell_value,
)
from opsgrid.errors import ValidationError


def column(ctype, **overrides):
    base = {
        "id": 1,
        "sheet_id": 1,
        "name": "Field",
        "type": ctype,
        "position": 0,
        "width": 120,
        "is_required": False,
        "is_unique": False,
        "default_value": None,
        "validation_rules": {},
        "format_options": {},
    }
    base.update(overrides)
    return base


class TestCoercion:
    """Values are converted to the column type or rejected."""

    def test_number_accepts_thousands_separators(self):
        assert coerce_cell_value(column("number"), "1,234") == 1234
        assert coerce_cell_value(column("number"), "12.5") == 12.5
        assert coerce_cell_value(column("number"), 7) == 7

    def test_number_empty_is_none(self):
        assert coerce_cell_value(column("number"), "") is None
        assert coerce_cell_value(column("number"), None) is None

    def test_number_rejects_text_and_booleans(self):
        with pytest.raises(ValidationError):
            coerce_cell_value(column("number"), "abc")
        with pytest.raises(ValidationError):
            coerce_cell_value(column("number"), True)
        with pytest.raises(ValidationError):
            coerce_cell_value(column("number"), "inf")

    def test_large_integers_keep_every_digit(self):
        big = "9007199254740993"
        assert coerce_cell_value(column("number"), big) == 9007199254740993
        assert coerce_cell_value(column("number"), "-" + big) == -9007199254740993
        assert coerce_cell_value(column("number"), 10 ** 400) == 10 ** 400
        assert decode_cell_value(column("number"), encode_cell_value(int(big))) == int(big)
        assert coerce_cell_value(column("number"), "1e3") == 1000

    def test_checkbox_tokens(self):
        assert coerce_cell_value(column("checkbox"), "yes") is True
        assert coerce_cell_value(column("checkbox"), "off") is False
        assert coerce_cell_value(column("checkbox"), 1) is True
        assert coerce_cell_value(column("checkbox"), None) is False
        with pytest.raises(ValidationError):
            coerce_cell_value(column("checkbox"), "maybe")

    def test_date_formats(self):
        assert coerce_cell_value(column("date"), "2026-03-15") == "2026-03-15"
        assert coerce_cell_value(column("date"), "03/15/2026") == "2026-03-15"
        assert coerce_cell_value(column("date"), "2026-03-15T10:00:00Z") == "2026-03-15"
        assert coerce_cell_value(column("date"), dt.date(2026, 1, 2)) == "2026-01-02"
        assert coerce_cell_value(column("date"), "") is None
        with pytest.raises(ValidationError):
            coerce_cell_value(column("date"), "next week")

    def test_select_blank_is_none(self):
        assert coerce_cell_value(column("select"), "  ") is None
        assert coerce_cell_value(column("select"), " Done ") == "Done"

    def test_text_keeps_value_verbatim(self):
        assert coerce_cell_value(column("text"), "  padded ") == "  padded "
        assert coerce_cell_value(column("text"), None) == ""
        assert coerce_cell_value(column("text"), 3.0) == "3"

    def test_unknown_type_rejected(self):
        with pytest.raises(ValidationError):
            normalize_column_type("currency")
        assert normalize_column_type(" Number ") == "number"


class TestValidation:
    """Representable values are graded valid, invalid or warning."""

    def test_select_outside_options_is_invalid(self):
        col = column("select", validation_rules={"options": ["Pending", "Done"]})
        assert validate_cell_value(col, "Done") == ("valid", None)
        status, message = validate_cell_value(col, "Later")
        assert status == "invalid"
        assert "Pending" in message

    def test_required_empty_is_warning(self):
        col = column("text", is_required=True, name="Site ID")
        assert validate_cell_value(col, "") == ("warning", "Site ID is required")

    def test_email_and_url(self):
        assert validate_cell_value(column("email"), "ops@example.com")[0] == "valid"
        assert validate_cell_value(column("email"), "not-an-email")[0] == "invalid"
        assert validate_cell_value(column("url"), "https://example.com/x")[0] == "valid"
        assert validate_cell_value(column("url"), "example.com")[0] == "invalid"

    def test_number_bounds(self):
        col = column("number", validation_rules={"min": 0, "max": 10})
        assert validate_cell_value(col, 5)[0] == "valid"
        assert validate_cell_value(col, -1)[0] == "invalid"
        assert validate_cell_value(col, 11)[0] == "invalid"

    def test_text_length_and_pattern(self):
        col = column("text", validation_rules={"max_length": 4, "pattern": "[A-Z]+"})
        assert validate_cell_value(col, "ABC")[0] == "valid"
        assert validate_cell_value(col, "ABCDE")[0] == "invalid"
        assert validate_cell_value(col, "ab")[0] == "invalid"


class TestColumnSettings:
    """Rule and format bags are checked when a column is defined."""

    def test_well_formed_settings_pass(self):
        check_column_settings(
            {"min": 0, "max": 2.5, "max_length": 10, "pattern": "[A-Z]+", "options": ["A"]},
            {"decimals": 2, "format": "%d/%m/%Y"},
        )
        check_column_settings({}, {})

    @pytest.mark.parametrize(
        "rules,options",
        [
            ({"min": "abc"}, {}),
            ({"max": True}, {}),
            ({"min": 5, "max": 1}, {}),
            ({"max_length": 2.5}, {}),
            ({"max_length": -1}, {}),
            ({"pattern": "("}, {}),
            ({"pattern": 42}, {}),
            ({"options": "A,B"}, {}),
            ({}, {"decimals": "two"}),
            ({}, {"decimals": 1.5}),
            ({}, {"decimals": 99}),
            ({}, {"format": 7}),
        ],
    )
    def test_malformed_settings_rejected(self, rules, options):
        with pytest.raises(ValidationError):
            check_column_settings(rules, options)


class TestDefaults:
    """New rows get type-derived defaults unless the column names one."""

    def test_type_derived_defaults(self):
        assert default_cell_value(column("number")) == 0
        assert default_cell_value(column("checkbox")) is False
        assert default_cell_value(column("date")) == dt.date.today().isoformat()
        assert default_cell_value(column("select")) is None
        assert default_cell_value(column("text")) == ""
        assert default_cell_value(column("email")) == ""

    def test_explicit_default_overrides(self):
        assert default_cell_value(column("number", default_value="5")) == 5
        assert default_cell_value(column("select", default_value="Pending")) == "Pending"

    def test_missing_cell_reads(self):
        assert missing_cell_value(column("text")) == ""
        assert missing_cell_value(column("number")) is None
        assert missing_cell_value(column("checkbox")) is False
        assert missing_cell_value(column("number", default_value="3")) == 3


class TestStorageAndFormatting:
    def test_storage_text(self):
        assert encode_cell_value(True) == "true"
        assert encode_cell_value(12.5) == "12.5"
        assert encode_cell_value(None) is None
        assert decode_cell_value(column("number"), "12") == 12
        assert decode_cell_value(column("checkbox"), "false") is False
        assert decode_cell_value(column("text"), "12") == "12"

    def test_number_format_options(self):
        col = column("number", format_options={"decimals": 2, "thousands": True, "prefix": "$"})
        assert format_cell_value(col, 1234.5) == "$1,234.50"

    def test_checkbox_and_date_format(self):
        assert format_cell_value(column("checkbox"), True) == "Yes"
        col = column("date", format_options={"format": "%d/%m/%Y"})
        assert format_cell_value(col, "2026-03-15") == "15/03/2026"
        assert format_cell_value(column("text"), None) is None
