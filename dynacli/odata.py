"""Pure helpers for the Dynamics Web API: URLs, plurals and result formatting."""

from __future__ import annotations

import json
import logging
import xml.etree.ElementTree as ET
from typing import Any

from dynacli.metadata import (
    FormInfo,
    MetadataError,
    ViewInfo,
    parse_form_structure,
    parse_view_columns,
)

log = logging.getLogger(__name__)

API_PATH = "api/data/v9.2/"

_I64_MIN = -(2**63)
_I64_MAX = 2**63 - 1

_BUILTIN_PLURALS = {
    "account": "accounts",
    "contact": "contacts",
    "lead": "leads",
    "opportunity": "opportunities",
    "campaign": "campaigns",
    "incident": "incidents",
    "quote": "quotes",
    "salesorder": "salesorders",
    "invoice": "invoices",
    "product": "products",
    "appointment": "appointments",
    "task": "tasks",
    "phonecall": "phonecalls",
    "email": "emails",
    "letter": "letters",
    "fax": "faxes",
    "activitypointer": "activitypointers",
    "annotation": "annotations",
    "systemuser": "systemusers",
    "team": "teams",
    "businessunit": "businessunits",
    "role": "roles",
}

_VIEW_TYPES = {
    0: "Public",
    1: "Advanced Find",
    2: "Associated",
    4: "Quick Find",
}

_FORM_TYPES = {
    2: "Main",
    7: "QuickCreate",
    8: "QuickView",
    11: "Card",
}

_TABLE_SAMPLE = 10
_COLUMN_WIDTH = 15


class ODataError(Exception):
    """Raised when a query or response cannot be handled."""


def builtin_plural(entity_name: str) -> str | None:
    """The Web API collection name of a well-known entity, if there is one."""
    return _BUILTIN_PLURALS.get(entity_name)


def api_base(host: str) -> str:
    """Base URL of the Web API for an environment host."""
    base = host if host.endswith("/") else host + "/"
    return base + API_PATH


def fetchxml_entity_name(fetchxml: str) -> str:
    """The name of the first entity element in a FetchXML query."""
    try:
        root = ET.fromstring(fetchxml)
    except ET.ParseError as exc:
        raise ODataError(f"Failed to parse FetchXML: {exc}") from exc
    entity = next(
        (
            node
            for node in root.iter()
            if isinstance(node.tag, str) and node.tag.rsplit("}", 1)[-1] == "entity"
        ),
        None,
    )
    if entity is None:
        raise ODataError("No entity element found in FetchXML")
    name = entity.get("name")
    if name is None:
        raise ODataError("Entity element missing 'name' attribute")
    return name


def _str(data: Any, key: str, default: str) -> str:
    value = data.get(key) if isinstance(data, dict) else None
    return value if isinstance(value, str) else default


def _int(data: Any, key: str) -> int:
    value = data.get(key) if isinstance(data, dict) else None
    if isinstance(value, bool) or not isinstance(value, int):
        return 0
    return value if _I64_MIN <= value <= _I64_MAX else 0


def _bool(value: Any) -> bool:
    return value if isinstance(value, bool) else False


def _wrap_i32(value: int) -> int:
    return ((value + 2**31) % 2**32) - 2**31


def view_from_json(view_data: Any) -> ViewInfo | None:
    """A view from one savedqueries record, or None if it has no FetchXML."""
    fetch_xml = _str(view_data, "fetchxml", "")
    if not fetch_xml:
        return None
    query_type = _int(view_data, "querytype")
    try:
        columns = parse_view_columns(fetch_xml)
    except MetadataError:
        columns = []
    return ViewInfo(
        name=_str(view_data, "name", "Unknown View"),
        entity_name=_str(view_data, "returnedtypecode", "unknown"),
        view_type=_VIEW_TYPES.get(query_type, f"Type {query_type}"),
        is_custom=_bool(view_data.get("iscustom")),
        columns=columns,
        fetch_xml=fetch_xml,
    )


def form_from_json(form_data: Any) -> FormInfo | None:
    """A form from one systemforms record, or None if it has no FormXML."""
    form_xml = _str(form_data, "formxml", "")
    if not form_xml:
        return None
    type_code = _int(form_data, "type")
    customizable = form_data.get("iscustomizable")
    is_custom = _bool(customizable.get("Value")) if isinstance(customizable, dict) else False
    form = FormInfo(
        name=_str(form_data, "name", "Unknown Form"),
        entity_name=_str(form_data, "objecttypecode", "unknown"),
        form_type=_FORM_TYPES.get(type_code, f"Type{type_code}"),
        is_custom=is_custom,
        state=_wrap_i32(_int(form_data, "formactivationstate")),
        form_xml=form_xml,
    )
    try:
        form.form_structure = parse_form_structure(form)
    except MetadataError as exc:
        log.debug("Keeping form '%s' without structure: %s", form.name, exc)
    return form


def _cell(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return "null"
    if isinstance(value, (int, float)):
        return json.dumps(value)
    return "..."


def format_table(result: Any) -> str:
    """Render the records of a query result as a plain text table."""
    values = result.get("value") if isinstance(result, dict) else None
    if not isinstance(values, list):
        return "Invalid response format\n"
    if not values:
        return "No records found."

    columns = sorted(
        {
            key
            for record in values[:_TABLE_SAMPLE]
            if isinstance(record, dict)
            for key in record
            if not key.startswith(("@", "_"))
        }
    )

    lines = [" | ".join(columns), "-" * (len(columns) * _COLUMN_WIDTH)]
    lines.extend(
        " | ".join(_cell(record[col]) if col in record else "" for col in columns)
        for record in values
        if isinstance(record, dict)
    )
    return "\n".join(lines) + f"\n\nTotal records: {len(values)}\n"


def _to_json(result: Any, pretty: bool) -> str:
    if pretty:
        return json.dumps(result, indent=2, sort_keys=True, ensure_ascii=False)
    return json.dumps(result, separators=(",", ":"), sort_keys=True, ensure_ascii=False)


def format_result(result: Any, fetchxml: str, output_format: str, pretty: bool) -> str:
    """Format a query result as json, xml or table."""
    if output_format == "json":
        return _to_json(result, pretty)
    if output_format == "xml":
        if pretty:
            return (
                f"<!-- FetchXML Query -->\n{fetchxml}\n\n"
                f"<!-- Results -->\n{_to_json(result, True)}"
            )
        return f"{fetchxml}\n{_to_json(result, False)}"
    if output_format == "table":
        return format_table(result)
    raise ODataError(f"Unsupported format: {output_format}")