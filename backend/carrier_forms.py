"""
Carrier application form filling.

A template is an existing carrier PDF. Each field mapping names a data source
(company, owner, application or employee), the field to read from it and
where the value goes: an AcroForm field of the same name, or a literal x/y
position on a page (PDF user space, origin at the bottom-left corner).
"""
from __future__ import annotations

import base64
import re
from dataclasses import dataclass, field, replace
from datetime import date, datetime
from io import BytesIO
from pathlib import Path
from typing import Any, Dict, List, Optional

from pypdf import PdfReader, PdfWriter
from pypdf.generic import NameObject, TextStringObject
from reportlab.lib.utils import ImageReader
from reportlab.pdfgen import canvas

from logging_config import get_logger

logger = get_logger(__name__)

DATA_SOURCES = ("company", "owner", "application", "employee")
FIELD_TYPES = ("text", "signature", "checkbox", "date")
TRUTHY_STRINGS = {"1", "true", "yes", "y", "on", "x"}
DATA_URL_PREFIX = "data:image/"
RADIO_FLAG = 1 << 15


class CarrierFormError(Exception):
    pass


@dataclass
class FieldMapping:
    field_name: str
    data_source: str
    data_field: str
    page_number: int = 1
    x_position: Optional[float] = None
    y_position: Optional[float] = None
    width: Optional[float] = None
    height: Optional[float] = None
    field_type: str = "text"

    @property
    def has_position(self) -> bool:
        return self.x_position is not None and self.y_position is not None


@dataclass
class FilledForm:
    file_name: str
    file_path: Path
    filled_fields: List[str] = field(default_factory=list)
    placed_fields: List[str] = field(default_factory=list)
    unmatched_fields: List[str] = field(default_factory=list)


def _mapping(field_name: str, data_source: str, data_field: str) -> FieldMapping:
    return FieldMapping(field_name=field_name, data_source=data_source, data_field=data_field)


# Field names used by the stock carrier application forms.
CARRIER_FIELD_MAPPINGS: Dict[str, List[FieldMapping]] = {
    "Anthem": [
        _mapping("company_name", "company", "name"),
        _mapping("company_address", "company", "address"),
        _mapping("company_city", "company", "city"),
        _mapping("company_state", "company", "state"),
        _mapping("company_zip", "company", "zip"),
        _mapping("company_phone", "company", "phone"),
        _mapping("tax_id", "company", "tax_id"),
        _mapping("owner_first_name", "owner", "first_name"),
        _mapping("owner_last_name", "owner", "last_name"),
        _mapping("owner_title", "owner", "title"),
        _mapping("plan_name", "application", "plan_name"),
        _mapping("employee_contribution", "application", "employee_contribution"),
        _mapping("dependent_contribution", "application", "dependent_contribution"),
    ],
    "Blue Shield": [
        _mapping("employer_name", "company", "name"),
        _mapping("employer_address", "company", "address"),
        _mapping("employer_city", "company", "city"),
        _mapping("employer_state", "company", "state"),
        _mapping("employer_zip", "company", "zip"),
        _mapping("employer_phone", "company", "phone"),
        _mapping("employer_tax_id", "company", "tax_id"),
        _mapping("owner_name", "owner", "full_name"),
        _mapping("owner_title", "owner", "title"),
        _mapping("medical_plan", "application", "plan_name"),
        _mapping("ee_contribution", "application", "employee_contribution"),
        _mapping("dep_contribution", "application", "dependent_contribution"),
    ],
    "CCSB": [
        _mapping("business_name", "company", "name"),
        _mapping("business_address", "company", "address"),
        _mapping("business_city", "company", "city"),
        _mapping("business_state", "company", "state"),
        _mapping("business_zip", "company", "zip"),
        _mapping("business_phone", "company", "phone"),
        _mapping("fein", "company", "tax_id"),
        _mapping("principal_name", "owner", "full_name"),
        _mapping("principal_title", "owner", "title"),
        _mapping("selected_plan", "application", "plan_name"),
        _mapping("employee_contrib", "application", "employee_contribution"),
        _mapping("dependent_contrib", "application", "dependent_contribution"),
    ],
}


def default_mappings_for_carrier(carrier: Optional[str]) -> List[FieldMapping]:
    if not carrier:
        return []
    key = carrier.strip().lower()
    for name, mappings in CARRIER_FIELD_MAPPINGS.items():
        if name.lower() == key:
            return list(mappings)
    return []


def validate_mapping(mapping: FieldMapping) -> FieldMapping:
    if not (mapping.field_name or "").strip():
        raise CarrierFormError("Field name is required")
    if mapping.data_source not in DATA_SOURCES:
        raise CarrierFormError(f"Unknown data source: {mapping.data_source}")
    if not (mapping.data_field or "").strip():
        raise CarrierFormError("Data field is required")
    if mapping.field_type not in FIELD_TYPES:
        raise CarrierFormError(f"Unknown field type: {mapping.field_type}")
    if mapping.page_number < 1:
        raise CarrierFormError("Page number must be 1 or greater")
    if (mapping.x_position is None) != (mapping.y_position is None):
        raise CarrierFormError("Both x and y positions are required for positioned fields")
    return mapping


def resolve_mapping_value(mapping: FieldMapping, sources: Dict[str, Optional[Dict[str, Any]]]) -> Any:
    if mapping.data_source not in DATA_SOURCES:
        raise CarrierFormError(f"Unknown data source: {mapping.data_source}")
    source = sources.get(mapping.data_source) or {}
    return source.get(mapping.data_field)


def is_truthy(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in TRUTHY_STRINGS
    return bool(value)


def format_date_value(value: Any) -> str:
    if isinstance(value, datetime):
        return value.strftime("%m/%d/%Y")
    if isinstance(value, date):
        return value.strftime("%m/%d/%Y")
    text = str(value).strip()
    try:
        return datetime.fromisoformat(text[:10]).strftime("%m/%d/%Y")
    except ValueError:
        return text


def format_mapped_value(value: Any, field_type: str) -> Any:
    """Text for text/date/signature fields, a bool for checkboxes, None when empty."""
    if field_type == "checkbox":
        return is_truthy(value)
    if value is None or value == "":
        return None
    if field_type == "date":
        return format_date_value(value)
    if isinstance(value, bool):
        return "Yes" if value else "No"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def build_field_values(
    mappings: List[FieldMapping], sources: Dict[str, Optional[Dict[str, Any]]]
) -> List[tuple[FieldMapping, Any]]:
    resolved = []
    for mapping in mappings:
        value = format_mapped_value(resolve_mapping_value(mapping, sources), mapping.field_type)
        if value is None or value is False:
            continue
        resolved.append((mapping, value))
    return resolved


def list_template_fields(template_path: Path) -> List[Dict[str, Any]]:
    reader = PdfReader(str(template_path))
    fields = reader.get_fields() or {}
    return [
        {"name": name, "type": str(info.get("/FT", "")).lstrip("/") or None}
        for name, info in sorted(fields.items())
    ]


def _discover_checkbox_on_state(annot: Any) -> str:
    ap = annot.get("/AP")
    if not ap:
        return "/Yes"
    normal = ap.get_object().get("/N")
    if normal is not None:
        states = normal.get_object()
        if hasattr(states, "keys"):
            for key in states.keys():
                if str(key) != "/Off":
                    return str(key)
    return "/Yes"


def _field_dict(annot: Any) -> Any:
    if "/T" not in annot and "/Parent" in annot:
        return annot["/Parent"].get_object()
    return annot


def _inherited(annot: Any, key: str) -> Any:
    value = annot.get(key)
    parent = annot.get("/Parent")
    while value is None and parent is not None:
        parent_obj = parent.get_object()
        value = parent_obj.get(key)
        parent = parent_obj.get("/Parent")
    return value


def _field_type(annot: Any) -> str:
    return str(_inherited(annot, "/FT") or "")


def _is_radio(annot: Any) -> bool:
    return bool(int(_inherited(annot, "/Ff") or 0) & RADIO_FLAG)


def _qualified_name(annot: Any) -> str:
    name = annot.get("/T")
    parts = [str(name)] if name else []
    parent = annot.get("/Parent")
    while parent is not None:
        parent_obj = parent.get_object()
        parent_name = parent_obj.get("/T")
        if parent_name:
            parts.insert(0, str(parent_name))
        parent = parent_obj.get("/Parent")
    return ".".join(parts)


def _widget_placement(mapping: FieldMapping, annot: Any, page_number: int) -> FieldMapping:
    x1, y1, x2, y2 = [float(value) for value in annot["/Rect"]]
    return replace(
        mapping,
        page_number=page_number,
        x_position=min(x1, x2),
        y_position=min(y1, y2),
        width=abs(x2 - x1) or None,
        height=abs(y2 - y1) or None,
    )


def _fill_acroform(
    writer: PdfWriter, values: Dict[str, tuple[FieldMapping, Any]]
) -> tuple[List[str], List[tuple[FieldMapping, Any]]]:
    """Fill named fields in place.

    Returns the matched names plus image signatures to draw over their widgets.
    Checkbox values only fill checkbox buttons; radio groups and non-checkbox
    values on buttons stay unmatched.
    """
    matched: List[str] = []
    widget_images: List[tuple[FieldMapping, Any]] = []
    for page_index, page in enumerate(writer.pages):
        if "/Annots" not in page:
            continue
        for annot_ref in page["/Annots"]:
            annot = annot_ref.get_object()
            field_obj = _field_dict(annot)
            short_name = str(field_obj.get("/T", ""))
            qualified = _qualified_name(field_obj)
            key = short_name if short_name in values else qualified
            if key not in values:
                continue
            mapping, value = values[key]
            if _field_type(annot) == "/Btn":
                if value is not True or _is_radio(annot):
                    continue
                on_state = _discover_checkbox_on_state(annot)
                field_obj[NameObject("/V")] = NameObject(on_state)
                annot[NameObject("/AS")] = NameObject(on_state)
            elif value is True:
                continue
            elif mapping.field_type == "signature" and _signature_image(value) is not None:
                widget_images.append((_widget_placement(mapping, annot, page_index + 1), value))
            else:
                field_obj[NameObject("/V")] = TextStringObject(str(value))
                if "/AP" in annot:
                    del annot["/AP"]
            if key not in matched:
                matched.append(key)
    if matched:
        writer.set_need_appearances_writer(True)
    return matched, widget_images


def _signature_image(value: str) -> Optional[ImageReader]:
    if not value.startswith(DATA_URL_PREFIX) or "," not in value:
        return None
    encoded = value.split(",", 1)[1]
    try:
        return ImageReader(BytesIO(base64.b64decode(encoded)))
    except (ValueError, OSError) as exc:
        raise CarrierFormError("Signature image could not be decoded") from exc


def _draw_overlay(page_width: float, page_height: float, entries: List[tuple[FieldMapping, Any]]) -> PdfReader:
    buffer = BytesIO()
    c = canvas.Canvas(buffer, pagesize=(page_width, page_height))
    for mapping, value in entries:
        x = float(mapping.x_position)
        y = float(mapping.y_position)
        if mapping.field_type == "checkbox":
            c.setFont("Helvetica-Bold", 12)
            c.drawString(x, y, "X")
            continue
        if mapping.field_type == "signature":
            image = _signature_image(value)
            if image is not None:
                width = mapping.width or 150
                height = mapping.height or 40
                c.drawImage(image, x, y, width=width, height=height, preserveAspectRatio=True, mask="auto")
                continue
            c.setFont("Helvetica-Oblique", 14)
            c.drawString(x, y, value)
            continue
        size = 10
        if mapping.height:
            size = max(6, min(12, float(mapping.height) - 2))
        c.setFont("Helvetica", size)
        text = value
        if mapping.width:
            while text and c.stringWidth(text, "Helvetica", size) > float(mapping.width):
                text = text[:-1]
        c.drawString(x, y, text)
    c.showPage()
    c.save()
    buffer.seek(0)
    return PdfReader(buffer)


def slugify(value: str) -> str:
    slug = re.sub(r"[^A-Za-z0-9]+", "_", value or "").strip("_")
    return slug or "form"


def fill_carrier_form(
    template_path: Path,
    mappings: List[FieldMapping],
    sources: Dict[str, Optional[Dict[str, Any]]],
    output_dir: Path,
    file_stem: str,
) -> FilledForm:
    if not template_path.exists():
        raise CarrierFormError("Template file not found")
    for mapping in mappings:
        validate_mapping(mapping)

    reader = PdfReader(str(template_path))
    writer = PdfWriter()
    writer.clone_document_from_reader(reader)

    resolved = build_field_values(mappings, sources)
    named_values: Dict[str, tuple[FieldMapping, Any]] = {}
    positioned: Dict[int, List[tuple[FieldMapping, Any]]] = {}
    for mapping, value in resolved:
        if mapping.has_position:
            if mapping.page_number > len(writer.pages):
                raise CarrierFormError(
                    f"Field {mapping.field_name} targets page {mapping.page_number} "
                    f"but the template has {len(writer.pages)} page(s)"
                )
            positioned.setdefault(mapping.page_number, []).append((mapping, value))
        else:
            named_values[mapping.field_name] = (mapping, value)

    filled: List[str] = []
    widget_images: List[tuple[FieldMapping, Any]] = []
    if named_values:
        filled, widget_images = _fill_acroform(writer, named_values)
    unmatched = [name for name in named_values if name not in filled]

    placed = [mapping.field_name for _, entries in sorted(positioned.items()) for mapping, _ in entries]
    for mapping, value in widget_images:
        positioned.setdefault(mapping.page_number, []).append((mapping, value))

    for page_number, entries in sorted(positioned.items()):
        page = writer.pages[page_number - 1]
        width = float(page.mediabox.width)
        height = float(page.mediabox.height)
        overlay = _draw_overlay(width, height, entries)
        page.merge_page(overlay.pages[0])

    output_dir.mkdir(parents=True, exist_ok=True)
    file_name = f"{slugify(file_stem)}_{datetime.utcnow().strftime('%Y%m%d%H%M%S%f')}.pdf"
    file_path = output_dir / file_name
    with file_path.open("wb") as f:
        writer.write(f)

    if unmatched:
        logger.warning("carrier_form_unmatched_fields", template=template_path.name, fields=unmatched)
    logger.info(
        "carrier_form_filled",
        template=template_path.name,
        output=file_name,
        filled=len(filled),
        placed=len(placed),
    )
    return FilledForm(
        file_name=file_name,
        file_path=file_path,
        filled_fields=filled,
        placed_fields=placed,
        unmatched_fields=unmatched,
    )
