"""Column types and the value rules attached to them.

Every write into `sheet_cells` passes through `coerce_cell_value` (which
rejects values that cannot be represented in the column type) and
`validate_cell_value` (which grades representable values as valid, invalid
or warning). Values are stored as text and decoded per column type on read.
"""

from __future__ import annotations

import datetime as dt
import json
import math
import re
from typing import Any, Dict, Optional, Tuple
from urllib.parse import urlparse

from opsgrid.errors import ValidationError
from opsgrid.util import parse_date, today_iso

COLUMN_TYPES = ("text", "number", "date", "checkbox", "select", "email", "url")
VALIDATION_STATUSES = ("valid", "invalid", "warning")
TEXT_LIKE_TYPES = {"text", "email", "url"}

TRUE_TOKENS = {"true", "1", "yes", "y", "on", "x"}
FALSE_TOKENS = {"false", "0", "no", "n", "off", ""}
EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
ISO_DATETIME_PREFIX_RE = re.compile(r"^\d{4}-\d{2}-\d{2}[T ]")
INTEGER_RE = re.compile(r"^[+-]?\d+$")
MAX_DECIMALS = 20


def normalize_column_type(value: object) -> str:
    ctype = str(value or "").strip().lower()
    if ctype not in COLUMN_TYPES:
        raise ValidationError(f"Unsupported column type '{value}'", {"allowed": list(COLUMN_TYPES)})
    return ctype


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


def _is_count(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value >= 0


def check_column_settings(rules: Dict[str, Any], options: Dict[str, Any]) -> None:
    """Reject rule and format values that cell writes could not apply."""
    for key in ("min", "max"):
        if rules.get(key) is not None and not _is_number(rules[key]):
            raise ValidationError(f"validation_rules.{key} must be a number")
    if _is_number(rules.get("min")) and _is_number(rules.get("max")) and rules["min"] > rules["max"]:
        raise ValidationError("validation_rules.min must not be greater than max")
    if rules.get("max_length") is not None and not _is_count(rules["max_length"]):
        raise ValidationError("validation_rules.max_length must be a non-negative integer")
    pattern = rules.get("pattern")
    if pattern not in (None, ""):
        if not isinstance(pattern, str):
            raise ValidationError("validation_rules.pattern must be a string")
        try:
            re.compile(pattern)
        except re.error as exc:
            raise ValidationError(f"validation_rules.pattern is not a valid regular expression: {exc}") from exc
    if rules.get("options") is not None and not isinstance(rules["options"], list):
        raise ValidationError("validation_rules.options must be a list")

    decimals = options.get("decimals")
    if decimals is not None and not (_is_count(decimals) and decimals <= MAX_DECIMALS):
        raise ValidationError(f"format_options.decimals must be an integer between 0 and {MAX_DECIMALS}")
    date_format = options.get("format")
    if date_format not in (None, "") and not isinstance(date_format, str):
        raise ValidationError("format_options.format must be a string")


def _coerce_number(value: Any):
    if value is None:
        return None
    if isinstance(value, bool):
        raise ValidationError("Expected a number, got a boolean")
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        number = value
    else:
        text = str(value).strip().replace(",", "").replace(" ", "")
        if not text:
            return None
        if INTEGER_RE.match(text):
            return int(text)
        try:
            number = float(text)
        except ValueError as exc:
            raise ValidationError(f"'{value}' is not a number") from exc
    if not math.isfinite(number):
        raise ValidationError(f"'{value}' is not a finite number")
    return int(number) if number.is_integer() else number


def _coerce_checkbox(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)) and value in (0, 1):
        return bool(value)
    token = str(value).strip().lower()
    if token in TRUE_TOKENS:
        return True
    if token in FALSE_TOKENS:
        return False
    raise ValidationError(f"'{value}' is not a checkbox value")


def _coerce_date(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, dt.datetime):
        return value.date().isoformat()
    if isinstance(value, dt.date):
        return value.isoformat()
    text = str(value).strip()
    if not text:
        return None
    parsed = parse_date(text)
    if parsed is None and ISO_DATETIME_PREFIX_RE.match(text):
        parsed = parse_date(text[:10])
    if parsed is None:
        raise ValidationError(f"'{value}' is not a date (expected YYYY-MM-DD)")
    return parsed


def _coerce_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (dict, list)):
        return json.dumps(value, ensure_ascii=False)
    return str(value)


def coerce_cell_value(column: Dict[str, Any], value: Any):
    """Convert `value` into the Python value the column type stores.

    Raises ValidationError when the value cannot be represented.
    """
    ctype = column["type"]
    if ctype == "number":
        return _coerce_number(value)
    if ctype == "checkbox":
        return _coerce_checkbox(value)
    if ctype == "date":
        return _coerce_date(value)
    if ctype == "select":
        text = _coerce_text(value).strip()
        return text or None
    if ctype in {"email", "url"}:
        return _coerce_text(value).strip()
    return _coerce_text(value)


def validate_cell_value(column: Dict[str, Any], value: Any) -> Tuple[str, Optional[str]]:
    rules = column.get("validation_rules") or {}
    name = column.get("name") or "Value"
    if value is None or value == "":
        if column.get("is_required"):
            return "warning", f"{name} is required"
        return "valid", None

    ctype = column["type"]
    if ctype == "select":
        options = [str(option) for option in rules.get("options") or []]
        if options and str(value) not in options:
            return "invalid", f"'{value}' is not one of: {', '.join(options)}"
    elif ctype == "email":
        if not EMAIL_RE.match(str(value)):
            return "invalid", "Invalid email address"
    elif ctype == "url":
        parsed = urlparse(str(value))
        if parsed.scheme not in {"http", "https"} or not parsed.netloc:
            return "invalid", "Invalid URL"
    elif ctype == "number":
        minimum = rules.get("min")
        maximum = rules.get("max")
        if minimum is not None and value < float(minimum):
            return "invalid", f"Must be at least {minimum}"
        if maximum is not None and value > float(maximum):
            return "invalid", f"Must be at most {maximum}"
    elif ctype == "text":
        max_length = rules.get("max_length")
        if max_length and len(str(value)) > int(max_length):
            return "invalid", f"Must be at most {max_length} characters"
        pattern = rules.get("pattern")
        if pattern and not re.fullmatch(str(pattern), str(value)):
            return "invalid", "Does not match the required pattern"
    return "valid", None


def default_cell_value(column: Dict[str, Any]):
    """Value written into a new row's cell for this column."""
    explicit = column.get("default_value")
    if explicit not in (None, ""):
        try:
            return coerce_cell_value(column, explicit)
        except ValidationError:
            return explicit

    ctype = column["type"]
    if ctype == "number":
        return 0
    if ctype == "checkbox":
        return False
    if ctype == "date":
        return today_iso()
    if ctype == "select":
        return None
    return ""


def missing_cell_value(column: Dict[str, Any]):
    """Value a reader sees for a (row, column) pair that has no stored cell."""
    explicit = column.get("default_value")
    if explicit not in (None, ""):
        try:
            return coerce_cell_value(column, explicit)
        except ValidationError:
            return explicit
    if column["type"] in TEXT_LIKE_TYPES:
        return ""
    if column["type"] == "checkbox":
        return False
    return None


def encode_cell_value(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def decode_cell_value(column: Dict[str, Any], raw: Optional[str]):
    if raw is None:
        return None
    ctype = column["type"]
    if ctype in {"number", "checkbox"}:
        try:
            return coerce_cell_value(column, raw)
        except ValidationError:
            return raw
    return raw


def format_cell_value(column: Dict[str, Any], value: Any) -> Optional[str]:
    if value is None:
        return None
    opts = column.get("format_options") or {}
    ctype = column["type"]
    if ctype == "number" and isinstance(value, (int, float)) and not isinstance(value, bool):
        decimals = opts.get("decimals")
        thousands = "," if opts.get("thousands") else ""
        if decimals is not None:
            text = f"{value:{thousands}.{int(decimals)}f}"
        else:
            text = f"{value:{thousands}}"
        return f"{opts.get('prefix', '')}{text}{opts.get('suffix', '')}"
    if ctype == "date" and opts.get("format"):
        try:
            return dt.date.fromisoformat(str(value)).strftime(str(opts["format"]))
        except ValueError:
            return str(value)
    if ctype == "checkbox":
        if value:
            return str(opts.get("true_label", "Yes"))
        return str(opts.get("false_label", "No"))
    return str(value)
