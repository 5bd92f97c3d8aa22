import io
import tempfile
import unittest
from datetime import datetime
from pathlib import Path
import sys

from pypdf import PdfReader

BACKEND_DIR = Path(__file__).resolve().parents[1]
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

from submission_pdf import (  # noqa: E402
    FormSubmission,
    PDFOptions,
    SubmissionPDFGenerator,
    SubmissionUser,
    format_field_label,
    format_field_value,
    generate_submission_pdf,
    organize_form_data,
    save_pdf_to_file,
    submission_heading,
)


def make_submission(form_data):
    return FormSubmission(
        submission_id="app-123",
        submission_type="Enrollment",
        submitted_at=datetime(2026, 3, 14, 9, 30),
        form_data=form_data,
        user=SubmissionUser(name="Dana Reyes", email="dana@example.com", phone="555-0101"),
    )


def page_text(pdf_bytes: bytes) -> list:
    reader = PdfReader(io.BytesIO(pdf_bytes))
    return [page.extract_text() or "" for page in reader.pages]


class FormattingTests(unittest.TestCase):
    def test_labels_split_camel_and_snake_case(self) -> None:
        self.assertEqual(format_field_label("companyName"), "Company Name")
        self.assertEqual(format_field_label("tax_id"), "Tax Id")
        self.assertEqual(format_field_label("employeeCount"), "Employee Count")

    def test_values(self) -> None:
        self.assertEqual(format_field_value(None), "Not provided")
        self.assertEqual(format_field_value(True), "Yes")
        self.assertEqual(format_field_value(False), "No")
        self.assertEqual(format_field_value(["medical", "dental"]), "medical, dental")
        self.assertEqual(format_field_value([]), "Not provided")
        self.assertEqual(format_field_value({"a": 1}), '{\n  "a": 1\n}')
        self.assertEqual(format_field_value(12), "12")

    def test_organize_groups_known_fields_and_drops_empty(self) -> None:
        sections = organize_form_data(
            {
                "ownerName": "Dana Reyes",
                "companyName": "Acme Co",
                "taxId": "",
                "favoriteColor": "green",
                "contactEmail": None,
            }
        )
        self.assertEqual(
            list(sections),
            ["Company Information", "Owner Information", "Additional Information"],
        )
        self.assertEqual(sections["Company Information"], [("Company Name", "Acme Co")])
        self.assertEqual(sections["Additional Information"], [("Favorite Color", "green")])


class GeneratorTests(unittest.TestCase):
    def test_generates_pdf_with_header_details_and_footer(self) -> None:
        pdf_bytes = generate_submission_pdf(
            make_submission({"companyName": "Acme Co", "priorCoverage": True}),
            PDFOptions(brand_name="Harbor Benefits"),
        )
        self.assertTrue(pdf_bytes.startswith(b"%PDF"))
        pages = page_text(pdf_bytes)
        self.assertEqual(len(pages), 1)
        self.assertIn("Harbor Benefits", pages[0])
        self.assertIn("ENROLLMENT SUBMISSION", pages[0])
        self.assertIn("Acme Co", pages[0])
        self.assertIn("Page 1 of 1", pages[0])

        reader = PdfReader(io.BytesIO(pdf_bytes))
        self.assertEqual(reader.metadata.title, "Enrollment Submission - app-123")

    def test_long_sections_break_onto_new_pages(self) -> None:
        form_data = {f"extraField{index}": f"value {index}" for index in range(60)}
        generator = SubmissionPDFGenerator(make_submission(form_data), PDFOptions(watermark="DRAFT"))
        pdf_bytes = generator.generate().getvalue()

        self.assertGreaterEqual(generator.page_count, 3)
        pages = page_text(pdf_bytes)
        self.assertEqual(len(pages), generator.page_count)
        total = generator.page_count
        for number, text in enumerate(pages, start=1):
            self.assertIn(f"Page {number} of {total}", text)
        self.assertIn("value 59", pages[-1])

    def test_heading_does_not_repeat_submission(self) -> None:
        self.assertEqual(submission_heading("Submission"), "Submission")
        self.assertEqual(submission_heading("quote"), "quote Submission")

        submission = make_submission({"companyName": "Acme Co"})
        submission.submission_type = "Submission"
        pdf_bytes = generate_submission_pdf(submission)
        text = page_text(pdf_bytes)[0]
        self.assertIn("SUBMISSION", text)
        self.assertNotIn("SUBMISSION SUBMISSION", text)
        self.assertEqual(PdfReader(io.BytesIO(pdf_bytes)).metadata.title, "Submission - app-123")

    def test_watermark_is_drawn_on_every_page(self) -> None:
        form_data = {f"extraField{index}": f"value {index}" for index in range(60)}
        marked = PdfReader(
            io.BytesIO(generate_submission_pdf(make_submission(form_data), PDFOptions(watermark="DRAFT")))
        )
        self.assertGreater(len(marked.pages), 1)
        for page in marked.pages:
            self.assertIn(b"(DRAFT) Tj", page.get_contents().get_data())

        plain = PdfReader(io.BytesIO(generate_submission_pdf(make_submission(form_data))))
        for page in plain.pages:
            self.assertNotIn(b"(DRAFT)", page.get_contents().get_data())

    def test_footer_can_be_disabled(self) -> None:
        pdf_bytes = generate_submission_pdf(
            make_submission({"companyName": "Acme Co"}),
            PDFOptions(include_footer=False),
        )
        self.assertNotIn("Page 1 of 1", page_text(pdf_bytes)[0])

    def test_explicit_sections_replace_form_data(self) -> None:
        pdf_bytes = generate_submission_pdf(
            make_submission({"companyName": "Hidden Co"}),
            sections={"Plan: Gold PPO": [("Employee Only", "Employer $400.00")]},
        )
        text = page_text(pdf_bytes)[0]
        self.assertIn("Plan: Gold PPO", text)
        self.assertNotIn("Hidden Co", text)

    def test_save_pdf_to_file_creates_directory(self) -> None:
        with tempfile.TemporaryDirectory() as tempdir:
            target_dir = Path(tempdir) / "nested" / "pdfs"
            path = save_pdf_to_file(b"%PDF-1.4", "../submission.pdf", target_dir)
            self.assertEqual(path, target_dir / "submission.pdf")
            self.assertEqual(path.read_bytes(), b"%PDF-1.4")


if __name__ == "__main__":
    unittest.main()
