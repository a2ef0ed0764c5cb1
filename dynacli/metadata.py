"""Parsing of entity metadata (EDMX), view FetchXML and form FormXML."""

from __future__ import annotations

import logging
import re
import xml.etree.ElementTree as ET
from collections.abc import Iterator
from dataclasses import dataclass, field

log = logging.getLogger(__name__)

_U32_MAX = 2**32 - 1
_I32_MIN = -(2**31)
_I32_MAX = 2**31 - 1

_SIMPLE_TYPES = {
    "Edm.String": "string",
    "Edm.Int32": "integer",
    "Edm.Int64": "long",
    "Edm.Decimal": "decimal",
    "Edm.Double": "double",
    "Edm.Boolean": "boolean",
    "Edm.DateTime": "datetime",
    "Edm.DateTimeOffset": "datetime",
    "Edm.Guid": "guid",
    "Edm.Binary": "binary",
}

_COLLECTION_PREFIX = "Collection("


class MetadataError(Exception):
    """Raised when metadata, FetchXML or FormXML cannot be understood."""


@dataclass
class FieldInfo:
    name: str
    field_type: str
    is_required: bool
    is_custom: bool


@dataclass
class ViewColumn:
    name: str
    width: int | None = None
    is_primary: bool = False


@dataclass
class ViewInfo:
    name: str
    entity_name: str
    view_type: str
    is_custom: bool
    columns: list[ViewColumn]
    fetch_xml: str


@dataclass
class FormField:
    logical_name: str
    label: str
    visible: bool
    required_level: str
    readonly: bool
    row: int
    column: int


@dataclass
class FormSection:
    name: str
    label: str
    visible: bool
    columns: int
    order: int
    fields: list[FormField] = field(default_factory=list)


@dataclass
class FormTab:
    name: str
    label: str
    visible: bool
    expanded: bool
    order: int
    sections: list[FormSection] = field(default_factory=list)


@dataclass
class FormStructure:
    name: str
    entity_name: str
    tabs: list[FormTab] = field(default_factory=list)


@dataclass
class FormInfo:
    name: str
    entity_name: str
    form_type: str
    is_custom: bool
    state: int
    form_xml: str
    form_structure: FormStructure | None = None


@dataclass
class ViewColumnDetail:
    name: str
    alias: str | None
    width: int | None
    is_primary: bool
    data_type: str
    aggregate: str | None


@dataclass
class ViewFilter:
    attribute: str
    operator: str
    value: str | None
    entity_alias: str | None


@dataclass
class ViewSortOrder:
    attribute: str
    direction: str
    entity_alias: str | None


@dataclass
class FetchXmlDetails:
    entity: str
    top_count: int | None
    distinct: bool
    no_lock: bool
    page: int | None
    page_size: int | None


@dataclass
class ViewStructure:
    name: str
    entity_name: str
    view_type: str
    is_custom: bool
    columns: list[ViewColumnDetail]
    filters: list[ViewFilter]
    sort_orders: list[ViewSortOrder]
    fetch_xml_details: FetchXmlDetails


# --- XML helpers -------------------------------------------------------------


def _parse_xml(text: str, what: str) -> ET.Element:
    try:
        return ET.fromstring(text)
    except ET.ParseError as exc:
        raise MetadataError(f"Failed to parse {what}: {exc}") from exc


def _local(tag: object) -> str:
    if not isinstance(tag, str):
        return ""
    return tag.rsplit("}", 1)[-1]


def _descendants(node: ET.Element, name: str) -> Iterator[ET.Element]:
    """Elements named ``name`` in document order, the node itself included."""
    return (element for element in node.iter() if _local(element.tag) == name)


def _first(node: ET.Element, name: str) -> ET.Element | None:
    return next(_descendants(node, name), None)


def _children(node: ET.Element, name: str) -> Iterator[ET.Element]:
    return (child for child in node if _local(child.tag) == name)


def _flag(node: ET.Element, name: str, default: bool) -> bool:
    value = node.get(name)
    return default if value is None else value == "true"


def _parse_int(value: str | None, low: int, high: int, signed: bool) -> int | None:
    if value is None:
        return None
    pattern = r"[+-]?[0-9]+" if signed else r"\+?[0-9]+"
    if not re.fullmatch(pattern, value):
        return None
    number = int(value)
    return number if low <= number <= high else None


def _u32(value: str | None) -> int | None:
    return _parse_int(value, 0, _U32_MAX, signed=False)


def _i32(value: str | None, default: int) -> int:
    number = _parse_int(value, _I32_MIN, _I32_MAX, signed=True)
    return default if number is None else number


def _ascii_lower(text: str) -> str:
    return "".join(ch.lower() if ch.isascii() else ch for ch in text)


def _label(node: ET.Element, fallback: str) -> str:
    label = _first(node, "label")
    if label is not None:
        description = label.get("description")
        if description is not None:
            return description
    return fallback


# --- type names --------------------------------------------------------------


def _collection_inner(odata_type: str) -> str:
    inner = odata_type[len(_COLLECTION_PREFIX):]
    return inner[:-1] if inner.endswith(")") else odata_type


def extract_entity_name(odata_type: str) -> str:
    """The last dotted component of an OData type name."""
    return odata_type.split(".")[-1]


def simplify_type(odata_type: str) -> str:
    """A readable name for an OData type."""
    simple = _SIMPLE_TYPES.get(odata_type)
    if simple is not None:
        return simple
    if odata_type.startswith(_COLLECTION_PREFIX):
        return f"1:N → {extract_entity_name(_collection_inner(odata_type))}"
    if "." in odata_type:
        return odata_type.split(".")[-1].lower()
    return odata_type


def determine_relationship_type(field_type: str, field_name: str) -> str:
    """Describe a navigation property as a 1:N or N:1 relationship."""
    if field_type.startswith(_COLLECTION_PREFIX):
        return f"1:N → {extract_entity_name(_collection_inner(field_type))}"
    if "." in field_type:
        return f"N:1 → {extract_entity_name(field_type)}"
    return f"nav → {field_type}"


# --- entity metadata ---------------------------------------------------------


def parse_entity_fields(metadata_xml: str, entity_name: str) -> list[FieldInfo]:
    """Fields and navigation properties of one entity, sorted by name."""
    root = _parse_xml(metadata_xml, "metadata XML")
    log.debug("Parsing metadata for entity: %s", entity_name)

    wanted = _ascii_lower(entity_name)
    entity_type = next(
        (
            node
            for node in _descendants(root, "EntityType")
            if node.get("Name") is not None and _ascii_lower(node.get("Name")) == wanted
        ),
        None,
    )
    if entity_type is None:
        raise MetadataError(f"Entity '{entity_name}' not found in metadata")

    fields: list[FieldInfo] = []
    for prop in _children(entity_type, "Property"):
        name = prop.get("Name")
        if name is None:
            continue
        nullable = _flag(prop, "Nullable", True)
        fields.append(
            FieldInfo(
                name=name,
                field_type=simplify_type(prop.get("Type", "unknown")),
                is_required=not nullable,
                is_custom="_" in name or name.startswith("new_"),
            )
        )

    for nav in _children(entity_type, "NavigationProperty"):
        name = nav.get("Name")
        if name is None:
            continue
        fields.append(
            FieldInfo(
                name=name,
                field_type=determine_relationship_type(nav.get("Type", "unknown"), name),
                is_required=False,
                is_custom=False,
            )
        )

    fields.sort(key=lambda f: f.name)
    log.debug("Parsed %d fields for entity '%s'", len(fields), entity_name)
    return fields


# --- views -------------------------------------------------------------------


def parse_view_columns(fetch_xml: str) -> list[ViewColumn]:
    """Columns named by the attribute elements of a FetchXML query."""
    root = _parse_xml(fetch_xml, "FetchXML")
    return [
        ViewColumn(name=node.get("name"), width=None, is_primary=_flag(node, "primary", False))
        for node in _descendants(root, "attribute")
        if node.get("name") is not None
    ]


def parse_view_structure(view_info: ViewInfo) -> ViewStructure:
    """Columns, filters, sort orders and fetch options of a view."""
    root = _parse_xml(view_info.fetch_xml, "FetchXML")
    fetch = _first(root, "fetch")
    if fetch is None:
        raise MetadataError("No fetch element found")

    details = FetchXmlDetails(
        entity=view_info.entity_name,
        top_count=_u32(fetch.get("top")),
        distinct=_flag(fetch, "distinct", False),
        no_lock=_flag(fetch, "no-lock", False),
        page=_u32(fetch.get("page")),
        page_size=_u32(fetch.get("page-size")),
    )

    columns = [
        ViewColumnDetail(
            name=node.get("name"),
            alias=node.get("alias"),
            width=None,
            is_primary=_flag(node, "primary", False),
            data_type="unknown",
            aggregate=node.get("aggregate"),
        )
        for node in _descendants(root, "attribute")
        if node.get("name") is not None
    ]

    filters = [
        ViewFilter(
            attribute=node.get("attribute"),
            operator=node.get("operator", "eq"),
            value=node.get("value"),
            entity_alias=node.get("entityname"),
        )
        for node in _descendants(root, "condition")
        if node.get("attribute") is not None
    ]

    sort_orders = [
        ViewSortOrder(
            attribute=node.get("attribute"),
            direction="desc" if node.get("descending") == "true" else "asc",
            entity_alias=node.get("entityname"),
        )
        for node in _descendants(root, "order")
        if node.get("attribute") is not None
    ]

    return ViewStructure(
        name=view_info.name,
        entity_name=view_info.entity_name,
        view_type=view_info.view_type,
        is_custom=view_info.is_custom,
        columns=columns,
        filters=filters,
        sort_orders=sort_orders,
        fetch_xml_details=details,
    )


# --- forms -------------------------------------------------------------------


def _parse_field(node: ET.Element) -> FormField | None:
    logical_name = node.get("datafieldname", "")
    if not logical_name:
        return None
    return FormField(
        logical_name=logical_name,
        label=_label(node, logical_name),
        visible=_flag(node, "visible", True),
        required_level=node.get("requiredlevel", "None"),
        readonly=_flag(node, "disabled", False),
        row=_i32(node.get("row"), 0),
        column=_i32(node.get("col"), 0),
    )


def _parse_section(node: ET.Element) -> FormSection:
    name = node.get("name", "")
    fields = [f for f in map(_parse_field, _descendants(node, "control")) if f is not None]
    return FormSection(
        name=name,
        label=_label(node, name),
        visible=_flag(node, "visible", True),
        columns=_i32(node.get("columns"), 1),
        order=_i32(node.get("order"), 0),
        fields=fields,
    )


def _parse_tab(node: ET.Element) -> FormTab:
    name = node.get("name", "")
    return FormTab(
        name=name,
        label=_label(node, name),
        visible=_flag(node, "visible", True),
        expanded=_flag(node, "expanded", True),
        order=_i32(node.get("order"), 0),
        sections=[_parse_section(section) for section in _descendants(node, "section")],
    )


def parse_form_structure(form_info: FormInfo) -> FormStructure:
    """Tabs, sections and fields of a form."""
    root = _parse_xml(form_info.form_xml, "FormXML")
    form = _first(root, "form")
    if form is None:
        raise MetadataError("No form element found")
    return FormStructure(
        name=form_info.name,
        entity_name=form_info.entity_name,
        tabs=[_parse_tab(tab) for tab in _descendants(form, "tab")],
    )