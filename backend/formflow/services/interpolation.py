"""
Interpolation Engine - binds submission field data into template text.

Rules:
- Nested mappings flatten to dotted keys (a.b.c); nested values are also bound
  under their bare key (c). Keys are bound in one depth-first pass in insertion
  order, so when two paths share a bare key the later one wins.
- Lists render as ", "-joined formatted elements.
- Dates render DD/MM/YYYY, booleans Yes/No, None/missing as "".
- {{ALL_FORM_DATA}} expands to a Field | Value table, one row per top-level field.
- Substitution is a single pass: substituted text is never re-scanned.
"""
import re
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional

from formflow.models.submissions import Submission
from formflow.services.placeholders import PLACEHOLDER_PATTERN

ALL_FORM_DATA = "ALL_FORM_DATA"

# Table rows in resolved text: cells joined by this separator
CELL_SEPARATOR = " | "

DATE_FIELD_TYPES = {"date", "datetime", "datepicker"}
BOOLEAN_FIELD_TYPES = {"checkbox", "toggle", "boolean", "switch"}
TRUTHY_STRINGS = {"true", "yes", "1", "on"}

# Mapping members that read as an address, in display order
ADDRESS_KEYS = ("address", "street", "location", "suburb", "city", "province", "postalCode")
# Mapping members that carry a single display value, in priority order
DISPLAY_KEYS = ("value", "label", "text", "name")


class FieldType(str, Enum):
    """Closed set of value shapes the engine knows how to render."""
    EMPTY = "empty"
    TEXT = "text"
    NUMBER = "number"
    BOOLEAN = "boolean"
    DATE = "date"
    LIST = "list"
    MAPPING = "mapping"


def classify(value: Any) -> FieldType:
    if value is None:
        return FieldType.EMPTY
    # bool is an int subclass; check it first
    if isinstance(value, bool):
        return FieldType.BOOLEAN
    if isinstance(value, (int, float, Decimal)):
        return FieldType.NUMBER
    if isinstance(value, (datetime, date)):
        return FieldType.DATE
    if isinstance(value, Mapping):
        return FieldType.MAPPING
    if isinstance(value, (list, tuple, set, frozenset)):
        return FieldType.LIST
    return FieldType.TEXT


# ============================================================================
# Formatters, one per FieldType
# ============================================================================

def format_date(value: date) -> str:
    return value.strftime("%d/%m/%Y")


def format_number(value: Any) -> str:
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def format_boolean(value: bool) -> str:
    return "Yes" if value else "No"


def format_list(value: Any) -> str:
    return ", ".join(format_value(item) for item in value)


def format_mapping(value: Mapping) -> str:
    """Readable one-line summary of a mapping value."""
    parts = [format_value(value[key]) for key in ADDRESS_KEYS if value.get(key) not in (None, "")]
    if parts:
        return ", ".join(parts)

    for key in DISPLAY_KEYS:
        if value.get(key) is not None:
            return format_value(value[key])

    if len(value) == 1:
        return format_value(next(iter(value.values())))

    return ", ".join(f"{key}: {format_value(member)}" for key, member in value.items())


FORMATTERS: Dict[FieldType, Callable[[Any], str]] = {
    FieldType.EMPTY: lambda value: "",
    FieldType.TEXT: str,
    FieldType.NUMBER: format_number,
    FieldType.BOOLEAN: format_boolean,
    FieldType.DATE: format_date,
    FieldType.LIST: format_list,
    FieldType.MAPPING: format_mapping,
}


def format_value(value: Any) -> str:
    return FORMATTERS[classify(value)](value)


# ============================================================================
# Field schema typing
# ============================================================================

def _field_name(field_def: Mapping) -> Optional[str]:
    for key in ("name", "key", "id"):
        if field_def.get(key):
            return str(field_def[key])
    return None


def schema_types(snapshot: Optional[List[Any]]) -> Dict[str, str]:
    """Field name -> declared type, from a field-schema snapshot."""
    types = {}
    for field_def in snapshot or []:
        if isinstance(field_def, Mapping):
            name = _field_name(field_def)
            if name and field_def.get("type"):
                types[name] = str(field_def["type"]).lower()
    return types


def schema_labels(snapshot: Optional[List[Any]]) -> Dict[str, str]:
    labels = {}
    for field_def in snapshot or []:
        if isinstance(field_def, Mapping):
            name = _field_name(field_def)
            if name and field_def.get("label"):
                labels[name] = str(field_def["label"])
    return labels


def parse_boolean(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in TRUTHY_STRINGS
    return bool(value)


def parse_date(value: str) -> Optional[date]:
    try:
        return datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        return None


def apply_schema_type(value: Any, declared: Optional[str]) -> Any:
    """Type a textual value according to its declared field type."""
    if declared in BOOLEAN_FIELD_TYPES and not isinstance(value, (Mapping, list, tuple, set, frozenset)):
        return None if value is None else parse_boolean(value)
    if declared in DATE_FIELD_TYPES and isinstance(value, str):
        parsed = parse_date(value)
        return parsed if parsed is not None else value
    return value


# ============================================================================
# Bindings
# ============================================================================

def humanize(key: str) -> str:
    """clientName / client_name -> Client Name"""
    spaced = re.sub(r"(?<=[a-z0-9])(?=[A-Z])", " ", key).replace("_", " ")
    return " ".join(word[:1].upper() + word[1:] for word in spaced.split())


def build_bindings(
    data: Optional[Mapping],
    snapshot: Optional[List[Any]] = None,
) -> Dict[str, str]:
    """Flatten field data into placeholder name -> rendered text."""
    types = schema_types(snapshot)
    bindings: Dict[str, str] = {}

    def visit(prefix: str, mapping: Mapping) -> None:
        for key, value in mapping.items():
            key = str(key)
            path = f"{prefix}.{key}" if prefix else key
            value = apply_schema_type(value, types.get(key))
            rendered = format_value(value)

            bindings[path] = rendered
            if prefix:
                bindings[key] = rendered
            elif isinstance(value, bool):
                bindings.setdefault(f"{key}_YesNo", format_boolean(value))
                bindings.setdefault(f"{key}_XMark", "X" if value else "")

            if isinstance(value, Mapping):
                visit(path, value)

    visit("", data or {})
    return bindings


def _cell(text: str) -> str:
    return " ".join(text.split()).replace(CELL_SEPARATOR, " / ")


def render_all_form_data(data: Optional[Mapping], snapshot: Optional[List[Any]] = None) -> str:
    """Field / Value table rows, one per top-level field, under a header row.

    No fields, no table.
    """
    if not data:
        return ""
    types = schema_types(snapshot)
    labels = schema_labels(snapshot)
    rows = [f"Field{CELL_SEPARATOR}Value"]
    for key, value in (data or {}).items():
        key = str(key)
        value = apply_schema_type(value, types.get(key))
        label = labels.get(key) or humanize(key)
        rows.append(f"{_cell(label)}{CELL_SEPARATOR}{_cell(format_value(value))}")
    return "\n".join(rows)


def computed_bindings(submission: Submission) -> Dict[str, str]:
    """Values every template may use, derived from the submission itself."""
    data = submission.field_data or {}
    contact = [
        format_value(data.get(key))
        for key in ("clientName", "clientPhone", "clientEmail")
        if data.get(key) not in (None, "")
    ]
    submitted_at = submission.created_at
    return {
        "submissionId": submission.submission_id,
        "submissionDate": format_date(submitted_at),
        "submissionTime": submitted_at.strftime("%H:%M"),
        "formType": submission.form_type,
        "formTitle": submission.title,
        "contactSummary": " | ".join(contact),
    }


def interpolate(
    text: str,
    data: Optional[Mapping],
    snapshot: Optional[List[Any]] = None,
    extra: Optional[Mapping[str, str]] = None,
) -> str:
    """
    Replace every {{name}} in `text`.

    `extra` bindings never override field data. Unknown names resolve to "".
    """
    if not text:
        return ""

    bindings = build_bindings(data, snapshot)
    for key, value in (extra or {}).items():
        bindings.setdefault(key, value)

    expanded: Dict[str, str] = {}

    def replace(match: re.Match) -> str:
        name = match.group(1).strip()
        if name == ALL_FORM_DATA:
            if ALL_FORM_DATA not in expanded:
                expanded[ALL_FORM_DATA] = render_all_form_data(data, snapshot)
            return expanded[ALL_FORM_DATA]
        return bindings.get(name, "")

    return PLACEHOLDER_PATTERN.sub(replace, text)


def interpolate_submission(text: str, submission: Submission) -> str:
    return interpolate(
        text,
        submission.field_data,
        submission.field_schema_snapshot,
        extra=computed_bindings(submission),
    )
