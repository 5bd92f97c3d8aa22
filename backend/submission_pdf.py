"""
Submission summary PDF renderer.

Draws a header, a details panel and one bordered section per group of form
fields onto A4 pages with a top-down cursor. Page decoration (footer, page
numbers, watermark) is applied when the document is saved so that every
page knows the total page count.
"""
from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from datetime import datetime
from io import BytesIO
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

from reportlab.lib.colors import HexColor
from reportlab.lib.pagesizes import A4
from reportlab.lib.utils import simpleSplit
from reportlab.pdfgen import canvas

from logging_config import get_logger

logger = get_logger(__name__)

FONTS = {
    "regular": "Helvetica",
    "bold": "Helvetica-Bold",
    "italic": "Helvetica-Oblique",
}

COLORS = {
    "primary": "#2563eb",
    "secondary": "#64748b",
    "text": "#1e293b",
    "border": "#e2e8f0",
    "background": "#f8fafc",
}

SECTION_FIELDS: Dict[str, List[str]] = {
    "Company Information": [
        "companyName",
        "companyAddress",
        "companyCity",
        "companyState",
        "companyZip",
        "companyPhone",
        "taxId",
        "industry",
        "employeeCount",
    ],
    "Contact Information": [
        "contactName",
        "contactTitle",
        "contactEmail",
        "contactPhone",
        "initiatorName",
        "initiatorEmail",
        "initiatorPhone",
    ],
    "Owner Information": [
        "ownerName",
        "ownerEmail",
        "ownerPhone",
        "ownerAddress",
        "ownershipPercentage",
        "isOwner",
    ],
    "Coverage Details": [
        "requestedCoverage",
        "coverageType",
        "effectiveDate",
        "priorCoverage",
        "currentCarrier",
    ],
}
ADDITIONAL_SECTION = "Additional Information"

Rows = List[Tuple[str, str]]


@dataclass
class SubmissionUser:
    name: str
    email: str
    phone: Optional[str] = None


@dataclass
class FormSubmission:
    submission_id: str
    submission_type: str
    submitted_at: datetime
    form_data: Dict[str, Any]
    user: SubmissionUser


@dataclass
class PDFOptions:
    include_header: bool = True
    include_footer: bool = True
    watermark: Optional[str] = None
    brand_name: str = "Benefits Enrollment"
    primary_color: str = COLORS["primary"]
    extra_details: Dict[str, str] = field(default_factory=dict)


def submission_heading(submission_type: str) -> str:
    heading = (submission_type or "").strip() or "Form"
    if heading.lower().endswith("submission"):
        return heading
    return f"{heading} Submission"


def format_field_label(key: str) -> str:
    spaced = re.sub(r"(?<=[a-z0-9])([A-Z])", r" \1", key).replace("_", " ")
    return " ".join(word[:1].upper() + word[1:] for word in spaced.split())


def format_field_value(value: Any) -> str:
    if value is None:
        return "Not provided"
    if isinstance(value, bool):
        return "Yes" if value else "No"
    if isinstance(value, (list, tuple)):
        return ", ".join(str(item) for item in value) or "Not provided"
    if isinstance(value, dict):
        return json.dumps(value, indent=2, default=str)
    return str(value)


def organize_form_data(form_data: Dict[str, Any]) -> Dict[str, Rows]:
    sections: Dict[str, Rows] = {title: [] for title in SECTION_FIELDS}
    sections[ADDITIONAL_SECTION] = []
    known = {key: title for title, keys in SECTION_FIELDS.items() for key in keys}
    ordered_keys = [key for keys in SECTION_FIELDS.values() for key in keys if key in form_data]
    ordered_keys += [key for key in form_data if key not in known]

    for key in ordered_keys:
        value = form_data[key]
        if value is None or value == "":
            continue
        title = known.get(key, ADDITIONAL_SECTION)
        sections[title].append((format_field_label(key), format_field_value(value)))
    return {title: rows for title, rows in sections.items() if rows}


class _NumberedCanvas(canvas.Canvas):
    """Canvas that defers page decoration until the page count is known."""

    def __init__(self, *args: Any, decorate_page: Optional[Callable[..., None]] = None, **kwargs: Any):
        self._decorate_page = decorate_page
        super().__init__(*args, **kwargs)
        self._saved_page_states: List[Dict[str, Any]] = []

    def showPage(self) -> None:
        self._saved_page_states.append(dict(self.__dict__))
        self._startPage()

    def save(self) -> None:
        total = len(self._saved_page_states)
        for state in self._saved_page_states:
            self.__dict__.update(state)
            if self._decorate_page:
                self._decorate_page(self, self.getPageNumber(), total)
            canvas.Canvas.showPage(self)
        canvas.Canvas.save(self)


class SubmissionPDFGenerator:
    PAGE_WIDTH, PAGE_HEIGHT = A4
    MARGIN = 50
    CONTENT_WIDTH = 495
    SECTION_BREAK_Y = 700
    FIELD_BREAK_Y = 750
    ROW_HEIGHT = 25
    LINE_HEIGHT = 12
    LABEL_X = 70
    LABEL_WIDTH = 150
    VALUE_X = 230
    VALUE_WIDTH = 300

    def __init__(
        self,
        submission: FormSubmission,
        options: Optional[PDFOptions] = None,
        sections: Optional[Dict[str, Rows]] = None,
    ):
        self.submission = submission
        self.options = options or PDFOptions()
        self.sections = sections if sections is not None else organize_form_data(submission.form_data)
        self.buffer = BytesIO()
        self.c: Optional[_NumberedCanvas] = None
        self.page_count = 0

    @property
    def footer_top(self) -> float:
        return self.PAGE_HEIGHT - 80

    def generate(self) -> BytesIO:
        self.c = _NumberedCanvas(self.buffer, pagesize=A4, decorate_page=self._decorate_page)
        self.c.setTitle(f"{submission_heading(self.submission.submission_type)} - {self.submission.submission_id}")
        self.c.setAuthor(f"{self.options.brand_name} Submission Center")
        self.c.setSubject(f"{self.submission.submission_type} submission")

        y: float = self.MARGIN
        if self.options.include_header:
            y = self._draw_header(y)
        y = self._draw_details(y)
        for title, rows in self.sections.items():
            y = self._draw_section(title, rows, y) + 20

        self.c.showPage()
        self.page_count = len(self.c._saved_page_states)
        self.c.save()
        self.buffer.seek(0)
        logger.info(
            "submission_pdf_generated",
            submission_id=self.submission.submission_id,
            submission_type=self.submission.submission_type,
            sections=len(self.sections),
            pages=self.page_count,
        )
        return self.buffer

    # ----------------------
    # Drawing helpers
    # ----------------------

    def _color(self, name: str) -> HexColor:
        if name == "primary":
            return HexColor(self.options.primary_color)
        return HexColor(COLORS[name])

    def _text(
        self,
        text: str,
        x: float,
        top: float,
        *,
        font: str = "regular",
        size: float = 10,
        color: str = "text",
    ) -> None:
        self.c.setFont(FONTS[font], size)
        self.c.setFillColor(self._color(color))
        self.c.drawString(x, self.PAGE_HEIGHT - top - size, text)

    def _rect(
        self,
        x: float,
        top: float,
        width: float,
        height: float,
        *,
        stroke: str = "border",
        fill: Optional[str] = None,
    ) -> None:
        self.c.setStrokeColor(self._color(stroke))
        if fill:
            self.c.setFillColor(self._color(fill))
        self.c.rect(x, self.PAGE_HEIGHT - top - height, width, height, stroke=1, fill=1 if fill else 0)

    def _new_page(self) -> float:
        self.c.showPage()
        return self.MARGIN

    # ----------------------
    # Blocks
    # ----------------------

    def _draw_header(self, y: float) -> float:
        brand = self.options.brand_name
        self._rect(self.MARGIN, y, 100, 60, stroke="primary")
        self._text("LOGO", 85, y + 25, font="bold", size=12, color="primary")
        self._text(brand, 170, y + 5, font="bold", size=24)
        self._text("Submission Center", 170, y + 35, size=16, color="secondary")
        self._text(
            submission_heading(self.submission.submission_type).upper(),
            self.MARGIN,
            y + 80,
            font="bold",
            size=18,
            color="primary",
        )
        return y + 120

    def _draw_details(self, y: float) -> float:
        submission = self.submission
        left = [
            ("Submission ID", submission.submission_id),
            ("Submitted By", submission.user.name),
            ("Email", submission.user.email),
        ]
        right = [
            ("Submission Date", submission.submitted_at.strftime("%B %d, %Y %I:%M %p")),
            ("Type", submission.submission_type),
        ]
        if submission.user.phone:
            right.append(("Phone", submission.user.phone))
        right.extend(self.options.extra_details.items())

        rows = max(len(left), len(right))
        height = max(100, rows * 25 + 25)
        self._rect(self.MARGIN, y, self.CONTENT_WIDTH, height, fill="background")
        for column_x, entries in ((70, left), (320, right)):
            row_y = y + 15
            for label, value in entries:
                self._text(f"{label}:", column_x, row_y, font="bold", size=9, color="secondary")
                self._text(str(value), column_x + 90, row_y, size=10)
                row_y += 25
        return y + height + 20

    def _draw_section(self, title: str, rows: Rows, y: float) -> float:
        if y > self.SECTION_BREAK_Y:
            y = self._new_page()

        self._text(title, self.MARGIN, y, font="bold", size=14, color="primary")
        y += 25
        box_top = y - 5

        for label, value in rows:
            value_lines = simpleSplit(value, FONTS["regular"], 10, self.VALUE_WIDTH) or [""]
            row_height = max(self.ROW_HEIGHT, len(value_lines) * self.LINE_HEIGHT + 13)
            if y > self.FIELD_BREAK_Y or (len(value_lines) > 1 and y + row_height > self.footer_top):
                self._rect(self.MARGIN, box_top, self.CONTENT_WIDTH, y - box_top + 5)
                y = self._new_page()
                box_top = y - 5

            label_lines = simpleSplit(f"{label}:", FONTS["bold"], 10, self.LABEL_WIDTH) or [""]
            self._text(label_lines[0], self.LABEL_X, y + 5, font="bold", size=10, color="secondary")
            for index, line in enumerate(value_lines):
                self._text(line, self.VALUE_X, y + 5 + index * self.LINE_HEIGHT, size=10)
            y += row_height

        self._rect(self.MARGIN, box_top, self.CONTENT_WIDTH, y - box_top + 5)
        return y + 10

    def _decorate_page(self, c: canvas.Canvas, page_number: int, total_pages: int) -> None:
        if self.options.include_footer:
            footer_y = self.footer_top
            c.setStrokeColor(self._color("border"))
            c.line(self.MARGIN, self.PAGE_HEIGHT - footer_y, self.PAGE_WIDTH - self.MARGIN, self.PAGE_HEIGHT - footer_y)
            c.setFont(FONTS["regular"], 8)
            c.setFillColor(self._color("secondary"))
            generated = self.submission.submitted_at.strftime("%B %d, %Y")
            c.drawCentredString(
                self.PAGE_WIDTH / 2,
                self.PAGE_HEIGHT - footer_y - 18,
                f"Generated by {self.options.brand_name} Submission Center on {generated}",
            )
            c.drawCentredString(
                self.PAGE_WIDTH / 2,
                self.PAGE_HEIGHT - footer_y - 30,
                "This document contains confidential enrollment information.",
            )
            c.drawCentredString(
                self.PAGE_WIDTH / 2,
                self.PAGE_HEIGHT - footer_y - 45,
                f"Page {page_number} of {total_pages}",
            )

        if self.options.watermark:
            c.saveState()
            c.translate(self.PAGE_WIDTH / 2, self.PAGE_HEIGHT / 2)
            c.rotate(45)
            c.setFillAlpha(0.1)
            c.setFillColor(self._color("secondary"))
            c.setFont(FONTS["bold"], 60)
            c.drawCentredString(0, 0, self.options.watermark)
            c.restoreState()


def generate_submission_pdf(
    submission: FormSubmission,
    options: Optional[PDFOptions] = None,
    sections: Optional[Dict[str, Rows]] = None,
) -> bytes:
    generator = SubmissionPDFGenerator(submission, options, sections)
    return generator.generate().getvalue()


def save_pdf_to_file(pdf_bytes: bytes, file_name: str, directory: Path) -> Path:
    directory.mkdir(parents=True, exist_ok=True)
    safe_name = Path(file_name).name or "submission.pdf"
    target = directory / safe_name
    target.write_bytes(pdf_bytes)
    return target
