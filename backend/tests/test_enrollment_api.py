import io
import json
import shutil
import tempfile
import unittest
from pathlib import Path
from types import SimpleNamespace
import sys

from fastapi import HTTPException, Response, UploadFile
from pypdf import PdfReader
from reportlab.pdfgen import canvas

BACKEND_DIR = Path(__file__).resolve().parents[1]
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

import main  # noqa: E402

SILVER_PLAN = "Anthem Silver PPO 2000/20%"


def cookie_request(token: str) -> SimpleNamespace:
    return SimpleNamespace(
        cookies={main.SESSION_COOKIE_NAME: token},
        client=SimpleNamespace(host="127.0.0.1"),
        headers={"user-agent": "unittest"},
    )


def upload(content: bytes, filename: str) -> UploadFile:
    return UploadFile(file=io.BytesIO(content), filename=filename)


def template_pdf_bytes() -> bytes:
    buffer = io.BytesIO()
    c = canvas.Canvas(buffer, pagesize=(612, 792))
    c.drawString(72, 740, "Anthem Small Group Application")
    c.acroForm.textfield(name="company_name", x=72, y=680, width=250, height=20)
    c.acroForm.textfield(name="owner_first_name", x=72, y=640, width=150, height=20)
    c.showPage()
    c.save()
    return buffer.getvalue()


def pdf_text(path: Path) -> str:
    reader = PdfReader(str(path))
    return "\n".join(page.extract_text() or "" for page in reader.pages)


class EnrollmentApiTests(unittest.TestCase):
    @classmethod
    def setUpClass(cls) -> None:
        cls.original_db_path = main.DB_PATH
        cls.original_uploads_dir = main.UPLOADS_DIR
        cls.original_flags_path = main.FEATURE_FLAGS_PATH
        cls.tempdir = tempfile.TemporaryDirectory()
        cls.temp_root = Path(cls.tempdir.name)
        cls.test_db_path = cls.temp_root / "test.db"
        cls.test_uploads_dir = cls.temp_root / "uploads"
        cls.test_flags_path = cls.temp_root / "feature_flags.json"

    @classmethod
    def tearDownClass(cls) -> None:
        main.DB_PATH = cls.original_db_path
        main.UPLOADS_DIR = cls.original_uploads_dir
        main.FEATURE_FLAGS_PATH = cls.original_flags_path
        cls.tempdir.cleanup()

    def setUp(self) -> None:
        if self.test_db_path.exists():
            self.test_db_path.unlink()
        if self.test_flags_path.exists():
            self.test_flags_path.unlink()
        shutil.rmtree(self.test_uploads_dir, ignore_errors=True)
        self.test_uploads_dir.mkdir(parents=True, exist_ok=True)
        main.DB_PATH = self.test_db_path
        main.UPLOADS_DIR = self.test_uploads_dir
        main.FEATURE_FLAGS_PATH = self.test_flags_path
        main.init_db()

        self.employer, self.employer_request = self.register_user("dana", "dana@example.com")
        self.admin_request = self.login(main.DEFAULT_ADMIN_EMAIL, main.DEFAULT_ADMIN_PASSWORD)

    # helpers

    def register_user(self, username: str, email: str):
        response = Response()
        user = main.register(
            main.RegisterIn(
                username=username,
                email=email,
                password="EmployerPass123!",
                first_name=username.title(),
                last_name="Tester",
            ),
            response=response,
        )
        with main.get_db() as conn:
            token = main.create_auth_session(conn, user.id)
        return user, cookie_request(token)

    def login(self, email: str, password: str) -> SimpleNamespace:
        with main.get_db() as conn:
            cur = conn.cursor()
            cur.execute("SELECT id FROM User WHERE email = ?", (email,))
            user_id = cur.fetchone()["id"]
            token = main.create_auth_session(conn, user_id)
        return cookie_request(token)

    def set_flags(self, **flags) -> None:
        self.test_flags_path.write_text(json.dumps(flags), encoding="utf-8")

    def create_company(self, request=None, **overrides):
        data = {"name": "Acme Co", "employee_count": 12, "tax_id": "12-3456789"}
        data.update(overrides)
        return main.create_company(main.CompanyIn(**data), request=request or self.employer_request)

    def plan_id(self, name: str = SILVER_PLAN) -> str:
        plans = main.list_plans(request=self.employer_request, search=name)
        return [plan for plan in plans if plan["name"] == name][0]["id"]

    def select_plan_with_contribution(self, company_id: str, name: str = SILVER_PLAN) -> str:
        plan_id = self.plan_id(name)
        main.add_company_plan(company_id, main.CompanyPlanIn(plan_id=plan_id), request=self.employer_request)
        main.save_contribution(
            company_id,
            main.ContributionIn(plan_id=plan_id, employee_contribution=80, dependent_contribution=50),
            request=self.employer_request,
        )
        return plan_id

    def audit_actions(self):
        return [row["action"] for row in main.list_audit_logs(request=self.admin_request)]

    # setup forms

    def test_initiator_creates_placeholder_company_and_records_progress(self) -> None:
        saved = main.save_application_initiator(
            main.InitiatorIn(first_name="Dana", last_name="Reyes", title="CEO", is_owner=True),
            request=self.employer_request,
        )
        self.assertTrue(saved["is_owner"])
        self.assertTrue(saved["application_id"])

        companies = main.list_companies(request=self.employer_request)
        self.assertEqual([company["name"] for company in companies], ["Dana Reyes Company"])

        again = main.save_application_initiator(
            main.InitiatorIn(first_name="Dana", last_name="Reyes", title="President"),
            request=self.employer_request,
        )
        self.assertEqual(again["id"], saved["id"])
        self.assertEqual(main.get_application_initiator(request=self.employer_request)["title"], "President")
        self.assertEqual(len(main.list_companies(request=self.employer_request)), 1)

        application = main.get_application(companies[0]["id"], request=self.employer_request)
        self.assertIn("application-initiator", application["completed_steps"])

    def test_company_and_coverage_information(self) -> None:
        self.assertIsNone(main.get_company_information(request=self.employer_request))

        company = main.save_company_information(
            main.CompanyIn(name="Acme Co", employee_count=8, has_prior_coverage=True),
            request=self.employer_request,
        )
        self.assertTrue(company["has_prior_coverage"])

        updated = main.save_company_information(
            main.CompanyIn(name="Acme Holdings", employee_count=9),
            request=self.employer_request,
        )
        self.assertEqual(updated["id"], company["id"])
        self.assertEqual(updated["name"], "Acme Holdings")

        coverage = main.save_coverage_information(
            main.CoverageIn(
                full_time_employees=25,
                had_20_plus_employees=True,
                benefits=["Medical", " dental ", ""],
                selected_carriers=["Anthem"],
            ),
            request=self.employer_request,
        )
        self.assertEqual(coverage["cobra_type"], "federal")
        self.assertEqual(coverage["benefits"], ["medical", "dental"])

        small = main.save_coverage_information(
            main.CoverageIn(full_time_employees=5), request=self.employer_request
        )
        self.assertEqual(small["id"], coverage["id"])
        self.assertEqual(small["cobra_type"], "cal-cobra")

        application = main.get_application(company["id"], request=self.employer_request)
        self.assertIn("company-information", application["completed_steps"])
        self.assertIn("coverage-information", application["completed_steps"])

    # companies, owners, employees

    def test_company_access_is_limited_to_its_employer(self) -> None:
        company = self.create_company()
        _, other_request = self.register_user("riley", "riley@example.com")

        with self.assertRaises(HTTPException) as exc:
            main.get_company(company["id"], request=other_request)
        self.assertEqual(exc.exception.status_code, 403)

        self.assertEqual(main.get_company(company["id"], request=self.admin_request)["name"], "Acme Co")

        with self.assertRaises(HTTPException) as exc:
            main.get_company("missing", request=self.employer_request)
        self.assertEqual(exc.exception.status_code, 404)

    def test_owners_cannot_exceed_full_ownership(self) -> None:
        company = self.create_company()
        owner = main.create_owner(
            company["id"],
            main.OwnerIn(
                first_name="Dana",
                last_name="Reyes",
                title="CEO",
                email="dana@acme.test",
                ownership_percentage=60,
                is_authorized_contact=True,
            ),
            request=self.employer_request,
        )
        self.assertTrue(owner["is_authorized_contact"])

        with self.assertRaises(HTTPException) as exc:
            main.create_owner(
                company["id"],
                main.OwnerIn(first_name="Sam", last_name="Lee", ownership_percentage=50),
                request=self.employer_request,
            )
        self.assertEqual(exc.exception.detail, "Total ownership cannot exceed 100%")

        second = main.create_owner(
            company["id"],
            main.OwnerIn(first_name="Sam", last_name="Lee", ownership_percentage=40),
            request=self.employer_request,
        )
        updated = main.update_owner(
            company["id"],
            owner["id"],
            main.OwnerUpdate(ownership_percentage=55),
            request=self.employer_request,
        )
        self.assertEqual(updated["ownership_percentage"], 55)

        main.delete_owner(company["id"], second["id"], request=self.employer_request)
        self.assertEqual(len(main.list_owners(company["id"], request=self.employer_request)), 1)

        application = main.get_application(company["id"], request=self.employer_request)
        self.assertEqual(application["authorized_contact_name"], "Dana Reyes")
        self.assertEqual(application["authorized_contact_title"], "CEO")
        self.assertIn("ownership", application["completed_steps"])
        self.assertIn("authorized-contact", application["completed_steps"])

    def test_employee_ssn_is_masked_and_tiers_normalized(self) -> None:
        company = self.create_company()
        employee = main.create_employee(
            company["id"],
            main.EmployeeIn(
                first_name="Jo",
                last_name="Park",
                ssn="123-45-6789",
                enrollment_tier="Employee Spouse",
            ),
            request=self.employer_request,
        )
        self.assertEqual(employee["ssn"], "***-**-6789")
        self.assertEqual(employee["enrollment_tier"], "spouse")

        waived = main.update_employee(
            company["id"],
            employee["id"],
            main.EmployeeUpdate(enrollment_tier="waived"),
            request=self.employer_request,
        )
        self.assertIsNone(waived["enrollment_tier"])

        with self.assertRaises(HTTPException) as exc:
            main.create_employee(
                company["id"],
                main.EmployeeIn(first_name="Al", last_name="Wu", enrollment_tier="grandparents"),
                request=self.employer_request,
            )
        self.assertEqual(exc.exception.status_code, 400)

        listed = main.list_employees(company["id"], request=self.employer_request)
        self.assertEqual([row["ssn"] for row in listed], ["***-**-6789"])

    # documents

    def test_document_upload_validation_and_override(self) -> None:
        company = self.create_company()
        document = main.upload_document(
            company["id"],
            request=self.employer_request,
            file=upload(b"%PDF-1.4 payroll", "de9c.pdf"),
            document_type="DE-9C",
            category="payroll",
        )
        self.assertEqual(document["filename"], "de9c.pdf")
        self.assertTrue(Path(document["path"]).exists())

        with self.assertRaises(HTTPException) as exc:
            main.upload_document(
                company["id"],
                request=self.employer_request,
                file=upload(b"MZ", "payload.exe"),
                document_type="DE-9C",
            )
        self.assertIn("File type not allowed", exc.exception.detail)

        validation = main.get_document_validation(company["id"], request=self.employer_request)
        self.assertFalse(validation["is_valid"])
        self.assertEqual(validation["missing_requirements"], ["Business License", "Articles of Incorporation"])

        with self.assertRaises(HTTPException) as exc:
            main.override_document_validation(
                company["id"], main.OverrideIn(reason="Please"), request=self.employer_request
            )
        self.assertEqual(exc.exception.status_code, 403)

        with self.assertRaises(HTTPException) as exc:
            main.override_document_validation(
                company["id"], main.OverrideIn(reason="   "), request=self.admin_request
            )
        self.assertEqual(exc.exception.status_code, 400)

        overridden = main.override_document_validation(
            company["id"], main.OverrideIn(reason="Carrier waived the license"), request=self.admin_request
        )
        self.assertTrue(overridden["is_valid"])
        self.assertTrue(overridden["override_applied"])
        self.assertIn(main.AuditAction.DOCUMENT_OVERRIDE, self.audit_actions())

        license_document = main.upload_document(
            company["id"],
            request=self.employer_request,
            file=upload(b"%PDF-1.4 license", "license.pdf"),
            document_type="Business License",
        )
        self.assertIsNone(license_document["category"])
        self.assertTrue(main.get_document_validation(company["id"], request=self.employer_request)["is_valid"])

        main.delete_document(document["id"], request=self.employer_request)
        self.assertFalse(Path(document["path"]).exists())
        self.assertEqual(len(main.list_documents(company["id"], request=self.employer_request)), 1)

    def test_validate_documents_endpoint_uses_feature_flags(self) -> None:
        payload = main.DocumentValidationIn(uploaded_types=["DE-9C", "Business License"], carrier="Anthem")
        self.assertTrue(main.validate_document_set(payload, request=self.employer_request)["is_valid"])

        self.set_flags(CARRIER_SPECIFIC_DOCUMENTS=True)
        result = main.validate_document_set(payload, request=self.employer_request)
        self.assertFalse(result["is_valid"])
        self.assertEqual(result["missing_requirements"], ["Anthem-Group-App"])

    # plans and contributions

    def test_plan_upload_skips_existing_plans(self) -> None:
        csv_bytes = (
            "Plan Name,Plan Type,Metal Tier,Monthly Premium\n"
            f"{SILVER_PLAN},PPO,Silver,345.80\n"
            "Anthem Starter HMO,HMO,Bronze,299.00\n"
        ).encode("utf-8")

        with self.assertRaises(HTTPException) as exc:
            main.upload_plans(
                request=self.employer_request,
                file=upload(csv_bytes, "plans.csv"),
                carrier="Anthem",
                plan_year=2026,
            )
        self.assertEqual(exc.exception.status_code, 403)

        result = main.upload_plans(
            request=self.admin_request,
            file=upload(csv_bytes, "plans.csv"),
            carrier="Anthem",
            plan_year=2026,
        )
        self.assertEqual((result["inserted"], result["skipped"], result["total"]), (1, 1, 2))

        uploads = main.list_plan_uploads(request=self.admin_request)
        self.assertEqual(uploads[0]["plan_count"], 1)
        self.assertIn(main.AuditAction.PLAN_UPLOAD, self.audit_actions())

        starter = main.list_plans(request=self.employer_request, search="starter")
        self.assertEqual(len(starter), 1)
        self.assertEqual(starter[0]["plan_year"], 2026)
        self.assertEqual(starter[0]["metal_tier"], "Bronze")

        with self.assertRaises(HTTPException) as exc:
            main.upload_plans(
                request=self.admin_request,
                file=upload(b"name\n", "plans.txt"),
                carrier="Anthem",
                plan_year=None,
            )
        self.assertEqual(exc.exception.status_code, 400)

        main.delete_plan(starter[0]["id"], request=self.admin_request)
        self.assertEqual(main.list_plans(request=self.employer_request, search="starter"), [])

    def test_corrupt_plan_workbook_is_rejected_and_removed(self) -> None:
        with self.assertRaises(HTTPException) as exc:
            main.upload_plans(
                request=self.admin_request,
                file=upload(b"not a zip workbook", "plans.xlsx"),
                carrier="Anthem",
            )
        self.assertEqual(exc.exception.status_code, 400)
        self.assertIn("could not be read", exc.exception.detail)
        self.assertEqual(list((self.test_uploads_dir / "plan_uploads").iterdir()), [])
        self.assertEqual(main.list_plan_uploads(request=self.admin_request), [])

    def test_plan_listing_filters_and_groups(self) -> None:
        grouped = main.list_plans(request=self.employer_request, group_by="carrier")
        self.assertIn("Blue Shield", grouped)

        with self.assertRaises(HTTPException) as exc:
            main.list_plans(request=self.employer_request, group_by="color")
        self.assertEqual(exc.exception.status_code, 400)

        cheap = main.list_plans(request=self.employer_request, benefit_type="medical", max_premium=350)
        self.assertTrue(cheap)
        self.assertTrue(all(plan["monthly_premium"] <= 350 for plan in cheap))

        self.assertIn("VSP", main.list_carriers(benefit="vision")["carriers"])
        with self.assertRaises(HTTPException) as exc:
            main.list_carriers(benefit="pet")
        self.assertEqual(exc.exception.status_code, 404)

    def test_contributions_require_selected_plan(self) -> None:
        company = self.create_company()
        plan_id = self.plan_id()

        with self.assertRaises(HTTPException) as exc:
            main.save_contribution(
                company["id"],
                main.ContributionIn(plan_id=plan_id, employee_contribution=80, dependent_contribution=50),
                request=self.employer_request,
            )
        self.assertEqual(exc.exception.detail, "Plan is not selected for this company")

        selected = main.add_company_plan(company["id"], main.CompanyPlanIn(plan_id=plan_id), request=self.employer_request)
        self.assertEqual([plan["id"] for plan in selected], [plan_id])

        with self.assertRaises(HTTPException) as exc:
            main.save_contribution(
                company["id"],
                main.ContributionIn(plan_id=plan_id, employee_contribution=40, dependent_contribution=50),
                request=self.employer_request,
            )
        self.assertIn("at least 50%", exc.exception.detail)

        with self.assertRaises(HTTPException) as exc:
            main.save_contribution(
                company["id"],
                main.ContributionIn(plan_id=plan_id, employee_contribution=80),
                request=self.employer_request,
            )
        self.assertEqual(exc.exception.detail, "Employee + Spouse contribution is required")

        saved = main.save_contribution(
            company["id"],
            main.ContributionIn(plan_id=plan_id, employee_contribution=80, dependent_contribution=50),
            request=self.employer_request,
        )
        costs = {cost["tier"]: cost for cost in saved["tier_costs"]}
        self.assertEqual(costs["employee"]["employer_cost"], 276.64)
        self.assertEqual(costs["employee"]["employee_cost"], 69.16)
        self.assertEqual(costs["spouse"]["employer_cost"], 259.35)

        resaved = main.save_contribution(
            company["id"],
            main.ContributionIn(plan_id=plan_id, employee_contribution=100, dependent_contribution=100),
            request=self.employer_request,
        )
        self.assertEqual(resaved["id"], saved["id"])
        self.assertEqual(len(main.list_contributions(company["id"], request=self.employer_request)), 1)

        main.remove_company_plan(company["id"], plan_id, request=self.employer_request)
        self.assertEqual(main.list_contributions(company["id"], request=self.employer_request), [])
        with self.assertRaises(HTTPException) as exc:
            main.remove_company_plan(company["id"], plan_id, request=self.employer_request)
        self.assertEqual(exc.exception.status_code, 404)

    def test_contribution_summary_uses_census(self) -> None:
        company = self.create_company(employee_count=12)
        plan_id = self.select_plan_with_contribution(company["id"])
        other_plan = self.plan_id("Anthem Gold HMO 25/500")
        main.add_company_plan(company["id"], main.CompanyPlanIn(plan_id=other_plan), request=self.employer_request)

        summary = main.contribution_summary(company["id"], request=self.employer_request)
        self.assertEqual(summary["tier_counts"]["employee"], 12)
        self.assertEqual(summary["plans_missing_contributions"], [other_plan])
        self.assertEqual(summary["employer_monthly"], 3319.68)
        self.assertEqual(summary["employer_annual"], 39836.16)

        main.create_employee(
            company["id"],
            main.EmployeeIn(first_name="Jo", last_name="Park", enrollment_tier="family"),
            request=self.employer_request,
        )
        summary = main.contribution_summary(company["id"], request=self.employer_request)
        self.assertEqual(summary["tier_counts"], {"employee": 0, "spouse": 0, "children": 0, "family": 1})
        entry = [item for item in summary["plans"] if item["plan"]["id"] == plan_id][0]
        self.assertEqual(entry["census"]["enrolled"], 1)
        self.assertEqual(summary["employer_monthly"], 432.25)

    def test_contribution_preview(self) -> None:
        preview = main.preview_contribution(
            main.ContributionPreviewIn(
                monthly_premium=500,
                employee_contribution=80,
                dependent_contribution=50,
                tier_counts={"employee": 3, "family": 1},
            ),
            request=self.employer_request,
        )
        self.assertEqual(preview["census"]["employer_monthly"], 1825.0)

        with self.assertRaises(HTTPException) as exc:
            main.preview_contribution(
                main.ContributionPreviewIn(employee_contribution=80, dependent_contribution=50),
                request=self.employer_request,
            )
        self.assertEqual(exc.exception.status_code, 400)

    # application workflow

    def test_signature_requires_plans_and_contributions(self) -> None:
        company = self.create_company()
        signature = main.SignatureIn(signature="Dana Reyes")

        with self.assertRaises(HTTPException) as exc:
            main.sign_application(company["id"], signature, request=self.employer_request)
        self.assertEqual(exc.exception.detail, "Select at least one plan before signing")

        plan_id = self.plan_id()
        main.add_company_plan(company["id"], main.CompanyPlanIn(plan_id=plan_id), request=self.employer_request)
        with self.assertRaises(HTTPException) as exc:
            main.sign_application(company["id"], signature, request=self.employer_request)
        self.assertEqual(exc.exception.detail, f"Contribution model required for: {SILVER_PLAN}")

        with self.assertRaises(HTTPException) as exc:
            main.sign_application(company["id"], main.SignatureIn(signature="  "), request=self.employer_request)
        self.assertEqual(exc.exception.detail, "Signature is required")

        main.save_contribution(
            company["id"],
            main.ContributionIn(plan_id=plan_id, employee_contribution=80, dependent_contribution=50),
            request=self.employer_request,
        )
        signed = main.sign_application(company["id"], signature, request=self.employer_request)
        self.assertEqual(signed["status"], "submitted")
        self.assertTrue(signed["signature"])
        self.assertEqual(signed["signed_by"], "Dana Tester")
        self.assertIn("review", signed["completed_steps"])
        self.assertTrue(signed["submitted_at"])

        with self.assertRaises(HTTPException) as exc:
            main.sign_application(company["id"], signature, request=self.employer_request)
        self.assertEqual(exc.exception.detail, "Cannot sign an application with status submitted")

        with self.assertRaises(HTTPException) as exc:
            main.update_application(
                company["id"], main.ApplicationUpdate(selected_carrier="Anthem"), request=self.employer_request
            )
        self.assertEqual(exc.exception.status_code, 400)

        self.assertIn(main.AuditAction.SIGN, self.audit_actions())

    def test_signature_can_be_disabled(self) -> None:
        company = self.create_company()
        self.select_plan_with_contribution(company["id"])
        self.set_flags(E_SIGNATURE=False)

        with self.assertRaises(HTTPException) as exc:
            main.sign_application(company["id"], main.SignatureIn(signature="Dana"), request=self.employer_request)
        self.assertEqual(exc.exception.detail, "Electronic signature is disabled")

    def test_application_progress_and_review_flow(self) -> None:
        company = self.create_company()
        application = main.update_application(
            company["id"],
            main.ApplicationUpdate(selected_carrier="Anthem", current_step="ownership"),
            request=self.employer_request,
        )
        self.assertEqual(application["selected_carrier"], "Anthem")
        self.assertEqual(application["current_step"], "ownership")
        self.assertEqual(application["next_step"], "authorized-contact")
        self.assertEqual(application["previous_step"], "company")
        self.assertEqual(application["completion_percentage"], 25)

        with self.assertRaises(HTTPException) as exc:
            main.update_application(
                company["id"], main.ApplicationUpdate(current_step="employees"), request=self.employer_request
            )
        self.assertIn("Unknown enrollment step", exc.exception.detail)

        pending = main.request_application_review(company["id"], request=self.employer_request)
        self.assertEqual(pending["status"], "pending_review")

        self.select_plan_with_contribution(company["id"])
        submitted = main.sign_application(
            company["id"], main.SignatureIn(signature="Dana", signed_by="Dana Reyes"), request=self.employer_request
        )
        self.assertEqual(submitted["signed_by"], "Dana Reyes")

        queue = main.list_applications(request=self.admin_request, status="submitted")
        self.assertEqual([row["company_name"] for row in queue], ["Acme Co"])

        with self.assertRaises(HTTPException) as exc:
            main.review_application(submitted["id"], main.ReviewIn(status="approved"), request=self.employer_request)
        self.assertEqual(exc.exception.status_code, 403)

        approved = main.review_application(
            submitted["id"],
            main.ReviewIn(status="approved", review_notes="Looks complete"),
            request=self.admin_request,
        )
        self.assertEqual(approved["status"], "approved")
        self.assertEqual(approved["review_notes"], "Looks complete")

        with self.assertRaises(HTTPException) as exc:
            main.review_application(submitted["id"], main.ReviewIn(status="declined"), request=self.admin_request)
        self.assertIn("Cannot move application from approved to declined", exc.exception.detail)

        self.assertIn(main.AuditAction.STATUS_CHANGE, self.audit_actions())

    def test_audit_log_export(self) -> None:
        company = self.create_company()
        main.request_application_review(company["id"], request=self.employer_request)

        logs = main.list_audit_logs(request=self.admin_request, action=main.AuditAction.REVIEW_REQUESTED)
        self.assertEqual(len(logs), 1)
        self.assertEqual(logs[0]["details"], {"from": "in_progress", "to": "pending_review"})
        self.assertEqual(logs[0]["ip_address"], "127.0.0.1")
        self.assertEqual(logs[0]["user_agent"], "unittest")

        response = main.export_audit_logs(request=self.admin_request)
        lines = response.body.decode("utf-8").splitlines()
        self.assertEqual(lines[0], "Timestamp,Action,User,Agency,Details,IP Address")
        self.assertIn("application_review_requested", lines[1])
        self.assertIn("dana@example.com", lines[1])
        self.assertIn('filename="audit-log-', response.headers["content-disposition"])

        with self.assertRaises(HTTPException) as exc:
            main.export_audit_logs(request=self.employer_request)
        self.assertEqual(exc.exception.status_code, 403)

    # generated documents

    def test_submission_pdf_is_recorded_and_downloadable(self) -> None:
        company = self.create_company()
        main.create_owner(
            company["id"],
            main.OwnerIn(first_name="Dana", last_name="Reyes", ownership_percentage=100),
            request=self.employer_request,
        )
        response = main.create_submission_pdf(
            company["id"], main.PdfRequestIn(watermark="DRAFT"), request=self.employer_request
        )
        path = Path(response.path)
        self.assertTrue(path.exists())
        text = pdf_text(path)
        self.assertIn("Acme Co", text)
        self.assertIn("Dana Reyes", text)
        self.assertIn(main.DEFAULT_BRAND_NAME, text)

        generated = main.list_generated_pdfs(company["id"], request=self.employer_request)
        self.assertEqual([row["kind"] for row in generated], ["submission"])
        self.assertEqual(response.headers["x-generated-pdf-id"], generated[0]["id"])

        download = main.download_generated_pdf(generated[0]["id"], request=self.employer_request)
        self.assertEqual(Path(download.path), path)
        self.assertIn(main.AuditAction.PDF_GENERATED, self.audit_actions())

    def test_proposal_pdf_includes_census_when_enabled(self) -> None:
        company = self.create_company()
        self.select_plan_with_contribution(company["id"])

        response = main.create_proposal_pdf(company["id"], main.PdfRequestIn(), request=self.employer_request)
        text = pdf_text(Path(response.path))
        self.assertIn(f"Plan: {SILVER_PLAN}", text)
        self.assertIn("Employee Only", text)
        self.assertNotIn("Employer Monthly Cost", text)

        self.set_flags(PREMIUM_CALCULATION=True)
        response = main.create_proposal_pdf(company["id"], main.PdfRequestIn(), request=self.employer_request)
        text = pdf_text(Path(response.path))
        self.assertIn("Employer Monthly Cost", text)
        self.assertIn("$3,319.68", text)

    def test_broker_branding_is_applied_to_pdfs(self) -> None:
        broker = main.create_broker(main.BrokerIn(name="Harbor Benefits"), request=self.admin_request)
        main.update_user(self.employer.id, main.UserUpdate(broker_id=broker.id), request=self.admin_request)
        company = self.create_company()

        response = main.create_submission_pdf(company["id"], main.PdfRequestIn(), request=self.employer_request)
        self.assertIn("Harbor Benefits", pdf_text(Path(response.path)))

    def test_carrier_form_uses_default_carrier_mappings(self) -> None:
        template = main.upload_pdf_template(
            request=self.admin_request,
            file=upload(template_pdf_bytes(), "anthem.pdf"),
            name="Anthem Group App",
            carrier="Anthem",
        )
        self.assertEqual([field["name"] for field in template["fields"]], ["company_name", "owner_first_name"])

        company = self.create_company()
        main.create_owner(
            company["id"],
            main.OwnerIn(first_name="Dana", last_name="Reyes", ownership_percentage=100),
            request=self.employer_request,
        )
        response = main.create_carrier_form(
            company["id"], main.CarrierFormIn(template_id=template["id"]), request=self.employer_request
        )
        fields = PdfReader(str(response.path)).get_fields()
        self.assertEqual(fields["company_name"]["/V"], "Acme Co")
        self.assertEqual(fields["owner_first_name"]["/V"], "Dana")
        self.assertIn("tax_id", response.headers["x-unmatched-fields"].split(","))

        generated = main.list_generated_pdfs(company["id"], request=self.employer_request)
        self.assertEqual(generated[0]["kind"], "carrier_form")
        self.assertEqual(generated[0]["template_name"], "Anthem Group App")

    def test_carrier_form_with_stored_positioned_mappings(self) -> None:
        template = main.upload_pdf_template(
            request=self.admin_request,
            file=upload(template_pdf_bytes(), "custom.pdf"),
            name="Custom Carrier Form",
            carrier=None,
        )
        company = self.create_company()

        with self.assertRaises(HTTPException) as exc:
            main.create_carrier_form(
                company["id"], main.CarrierFormIn(template_id=template["id"]), request=self.employer_request
            )
        self.assertEqual(exc.exception.detail, "No field mappings configured for this template")

        with self.assertRaises(HTTPException) as exc:
            main.create_pdf_template_mapping(
                template["id"],
                main.FieldMappingIn(field_name="broker", data_source="broker", data_field="name"),
                request=self.admin_request,
            )
        self.assertEqual(exc.exception.detail, "Unknown data source: broker")

        main.create_pdf_template_mapping(
            template["id"],
            main.FieldMappingIn(
                field_name="tax_id_overlay",
                data_source="company",
                data_field="tax_id",
                x_position=300,
                y_position=600,
            ),
            request=self.admin_request,
        )
        mappings = main.list_pdf_template_mappings(template["id"], request=self.admin_request)
        self.assertEqual([row["field_name"] for row in mappings], ["tax_id_overlay"])
        listed = main.list_pdf_templates(request=self.admin_request)
        self.assertEqual(listed[0]["mapping_count"], 1)

        response = main.create_carrier_form(
            company["id"], main.CarrierFormIn(template_id=template["id"]), request=self.employer_request
        )
        self.assertIn("12-3456789", pdf_text(Path(response.path)))
        self.assertNotIn("x-unmatched-fields", response.headers)

    def test_unmatched_field_header_is_percent_encoded(self) -> None:
        template = main.upload_pdf_template(
            request=self.admin_request,
            file=upload(template_pdf_bytes(), "custom.pdf"),
            name="Custom Carrier Form",
        )
        for field_name in ("company_name", "Firma_签名"):
            main.create_pdf_template_mapping(
                template["id"],
                main.FieldMappingIn(field_name=field_name, data_source="company", data_field="name"),
                request=self.admin_request,
            )
        company = self.create_company()

        response = main.create_carrier_form(
            company["id"], main.CarrierFormIn(template_id=template["id"]), request=self.employer_request
        )
        self.assertEqual(response.headers["x-unmatched-fields"], "Firma_%E7%AD%BE%E5%90%8D")
        self.assertEqual(PdfReader(str(response.path)).get_fields()["company_name"]["/V"], "Acme Co")

    def test_template_upload_rejects_non_pdf(self) -> None:
        with self.assertRaises(HTTPException) as exc:
            main.upload_pdf_template(
                request=self.admin_request,
                file=upload(b"hello", "form.txt"),
                name="Form",
                carrier=None,
            )
        self.assertEqual(exc.exception.detail, "Templates must be PDF files")

        with self.assertRaises(HTTPException) as exc:
            main.upload_pdf_template(
                request=self.admin_request,
                file=upload(b"not really a pdf", "form.pdf"),
                name="Form",
                carrier=None,
            )
        self.assertEqual(exc.exception.detail, "Invalid PDF template")

    # broker portal

    def test_broker_staff_see_their_agency_companies(self) -> None:
        broker = main.create_broker(main.BrokerIn(name="Harbor Benefits"), request=self.admin_request)
        main.update_user(self.employer.id, main.UserUpdate(broker_id=broker.id), request=self.admin_request)
        company = self.create_company()

        staff, staff_request = self.register_user("sam", "sam@harbor.test")
        with self.assertRaises(HTTPException) as exc:
            main.list_broker_companies(request=staff_request)
        self.assertEqual(exc.exception.detail, "Access denied: No broker association")

        main.update_user(staff.id, main.UserUpdate(role="staff", broker_id=broker.id), request=self.admin_request)
        companies = main.list_broker_companies(request=staff_request)
        self.assertEqual([row["id"] for row in companies], [company["id"]])
        self.assertEqual(main.get_company(company["id"], request=staff_request)["name"], "Acme Co")
        self.assertEqual(len(main.list_broker_applications(request=staff_request)), 1)

        with self.assertRaises(HTTPException) as exc:
            main.list_broker_users(request=staff_request)
        self.assertEqual(exc.exception.status_code, 403)

        main.update_user(staff.id, main.UserUpdate(role="owner"), request=self.admin_request)
        users = main.list_broker_users(request=staff_request)
        self.assertEqual({user.username for user in users}, {"dana", "sam"})

    def test_delete_company_removes_files(self) -> None:
        company = self.create_company()
        document = main.upload_document(
            company["id"],
            request=self.employer_request,
            file=upload(b"%PDF-1.4", "license.pdf"),
            document_type="Business License",
        )
        response = main.create_submission_pdf(company["id"], main.PdfRequestIn(), request=self.employer_request)

        result = main.delete_company(company["id"], request=self.employer_request)
        self.assertEqual(result["status"], "deleted")
        self.assertFalse(Path(document["path"]).exists())
        self.assertFalse(Path(response.path).exists())
        self.assertEqual(main.list_companies(request=self.employer_request), [])


    # saved forms

    def test_form_progress_save_load_and_clear(self) -> None:
        self.assertIsNone(main.load_form_progress("enrollment-main", request=self.employer_request))

        saved = main.save_form_progress(
            main.FormProgressIn(form_id="enrollment-main", data={"companyName": "Acme Co"}, current_step=2),
            request=self.employer_request,
        )
        self.assertEqual(saved["data"], {"companyName": "Acme Co"})
        self.assertEqual(saved["current_step"], 2)
        self.assertFalse(saved["is_completed"])

        main.save_form_progress(
            main.FormProgressIn(
                form_id="enrollment-main",
                data={"companyName": "Acme Co", "employeeCount": 12},
                current_step=3,
                last_saved="2026-03-14T09:30:00Z",
            ),
            request=self.employer_request,
        )
        loaded = main.load_form_progress("enrollment-main", request=self.employer_request)
        self.assertEqual(loaded["current_step"], 3)
        self.assertEqual(loaded["data"]["employeeCount"], 12)
        self.assertEqual(loaded["last_saved"], "2026-03-14T09:30:00+00:00")

        other, other_request = self.register_user("lee", "lee@example.com")
        self.assertIsNone(main.load_form_progress("enrollment-main", request=other_request))

        cleared = main.clear_form_progress("enrollment-main", request=self.employer_request)
        self.assertEqual(cleared, {"status": "cleared", "form_id": "enrollment-main"})
        self.assertIsNone(main.load_form_progress("enrollment-main", request=self.employer_request))

    def test_form_progress_rejects_bad_input(self) -> None:
        for payload in (
            main.FormProgressIn(form_id="", data={}),
            main.FormProgressIn(form_id="x" * 51, data={}),
            main.FormProgressIn(form_id="quote", data={}, current_step=21),
            main.FormProgressIn(form_id="quote", data={}, last_saved="yesterday"),
        ):
            with self.assertRaises(HTTPException) as exc:
                main.save_form_progress(payload, request=self.employer_request)
            self.assertEqual(exc.exception.status_code, 400)

    def test_submit_form_records_submission_and_completes_progress(self) -> None:
        form_data = {"companyName": "Acme Co", "contactEmail": "dana@example.com", "employeeCount": 12}
        main.save_form_progress(
            main.FormProgressIn(form_id="quote-request", data=form_data, current_step=1),
            request=self.employer_request,
        )

        with self.assertRaises(HTTPException) as exc:
            main.submit_form(
                main.FormSubmitIn(form_id="quote-request", form_data={"companyName": "Acme Co"}, submission_type="quote"),
                request=self.employer_request,
            )
        self.assertEqual(exc.exception.detail, "contactEmail is required for quote submission")

        with self.assertRaises(HTTPException) as exc:
            main.submit_form(
                main.FormSubmitIn(form_id="quote-request", form_data=form_data, submission_type="renewal"),
                request=self.employer_request,
            )
        self.assertEqual(exc.exception.status_code, 400)

        result = main.submit_form(
            main.FormSubmitIn(form_id="quote-request", form_data=form_data, submission_type="quote"),
            request=self.employer_request,
        )
        self.assertEqual(result["status"], "submitted")
        self.assertEqual(result["next_steps"], main.form_next_steps("quote"))

        with main.get_db() as conn:
            cur = conn.cursor()
            cur.execute("SELECT * FROM FormSubmission WHERE id = ?", (result["submission_id"],))
            row = cur.fetchone()
        self.assertEqual(row["ip_address"], "127.0.0.1")
        self.assertEqual(row["user_agent"], "unittest")
        self.assertEqual(json.loads(row["form_data"]), form_data)

        progress = main.load_form_progress("quote-request", request=self.employer_request)
        self.assertTrue(progress["is_completed"])
        self.assertEqual(progress["completed_at"], result["submitted_at"])
        self.assertIn("form_submitted", self.audit_actions())

    def test_submission_history_detail_and_pdf(self) -> None:
        form_data = {
            "companyName": "Acme Co",
            "companyAddress": "1 Main St",
            "contactName": "Dana Reyes",
            "contactEmail": "dana@example.com",
            "contactPhone": "555-0101",
            "employeeCount": 12,
        }
        result = main.submit_form(
            main.FormSubmitIn(form_id="enrollment-main", form_data=form_data, submission_type="enrollment"),
            request=self.employer_request,
        )

        history = main.list_form_submissions(request=self.employer_request)
        self.assertEqual(len(history), 1)
        self.assertEqual(history[0]["id"], result["submission_id"])
        self.assertEqual(history[0]["submission_type"], "enrollment")
        self.assertTrue(history[0]["has_data"])

        detail = main.get_form_submission(result["submission_id"], request=self.employer_request)
        self.assertEqual(detail["form_data"], form_data)
        admin_view = main.get_form_submission(result["submission_id"], request=self.admin_request)
        self.assertEqual(admin_view["id"], result["submission_id"])

        other, other_request = self.register_user("lee", "lee@example.com")
        self.assertEqual(main.list_form_submissions(request=other_request), [])
        with self.assertRaises(HTTPException) as exc:
            main.get_form_submission(result["submission_id"], request=other_request)
        self.assertEqual(exc.exception.status_code, 404)

        response = main.create_form_submission_pdf(
            result["submission_id"], main.PdfRequestIn(), request=self.employer_request
        )
        self.assertEqual(response.media_type, "application/pdf")
        self.assertIn("attachment;", response.headers["content-disposition"])
        reader = PdfReader(io.BytesIO(response.body))
        text = "\n".join(page.extract_text() or "" for page in reader.pages)
        self.assertIn("ENROLLMENT SUBMISSION", text)
        self.assertIn("Acme Co", text)
        self.assertIn("1 Main St", text)
        self.assertEqual(reader.metadata.title, f"Enrollment Submission - {result['submission_id']}")

    # quotes

    def test_quote_crud_and_access(self) -> None:
        company = self.create_company(zip="94105", effective_date="2026-07-01")
        quote = main.create_quote(
            main.QuoteIn(company_id=company["id"], plan_types=["ppo", "HMO", "PPO"], notes="Renewal"),
            request=self.employer_request,
        )
        self.assertEqual(quote["company_name"], "Acme Co")
        self.assertEqual(quote["zip_code"], "94105")
        self.assertEqual(quote["employee_count"], 12)
        self.assertEqual(quote["plan_types"], ["PPO", "HMO"])
        self.assertEqual(quote["status"], "Draft")
        self.assertEqual(quote["results"], [])

        self.assertEqual([row["id"] for row in main.list_quotes(request=self.employer_request)], [quote["id"]])
        self.assertEqual(len(main.list_quotes(request=self.admin_request)), 1)

        updated = main.update_quote(
            quote["id"], main.QuoteUpdate(status="Submitted", employee_count=15), request=self.employer_request
        )
        self.assertEqual(updated["status"], "Submitted")
        self.assertEqual(updated["employee_count"], 15)
        self.assertEqual(main.get_quote(quote["id"], request=self.employer_request)["notes"], "Renewal")

        with self.assertRaises(HTTPException) as exc:
            main.update_quote(quote["id"], main.QuoteUpdate(status="Lost"), request=self.employer_request)
        self.assertEqual(exc.exception.status_code, 400)

        other, other_request = self.register_user("lee", "lee@example.com")
        self.assertEqual(main.list_quotes(request=other_request), [])
        with self.assertRaises(HTTPException) as exc:
            main.get_quote(quote["id"], request=other_request)
        self.assertEqual(exc.exception.status_code, 403)
        with self.assertRaises(HTTPException) as exc:
            main.update_quote(quote["id"], main.QuoteUpdate(notes="mine"), request=other_request)
        self.assertEqual(exc.exception.status_code, 403)

    def test_quote_validation(self) -> None:
        for payload in (
            main.QuoteIn(),
            main.QuoteIn(company_name="Acme Co", zip_code="941"),
            main.QuoteIn(company_name="Acme Co", effective_date="07/01/2026"),
            main.QuoteIn(company_name="Acme Co", employee_count=0),
            main.QuoteIn(company_name="Acme Co", plan_types=["Indemnity"]),
        ):
            with self.assertRaises(HTTPException) as exc:
                main.create_quote(payload, request=self.employer_request)
            self.assertEqual(exc.exception.status_code, 400)

    def test_generate_quotes_from_plan_catalog(self) -> None:
        with self.assertRaises(HTTPException) as exc:
            main.generate_quotes(main.QuoteGenerateIn(zip_code="94105", plan_types=["PPO"]), request=self.employer_request)
        self.assertEqual(exc.exception.detail, "Missing required quote parameters")

        quote = main.create_quote(main.QuoteIn(company_name="Acme Co"), request=self.employer_request)
        generated = main.generate_quotes(
            main.QuoteGenerateIn(
                zip_code="94105",
                effective_date="2026-07-01",
                employee_count=10,
                plan_types=["PPO"],
                quote_id=quote["id"],
            ),
            request=self.employer_request,
        )
        results = generated["quotes"]
        self.assertTrue(results)
        self.assertTrue(all(item["plan_type"] == "PPO" for item in results))
        premiums = [item["monthly_premium"] for item in results]
        self.assertEqual(premiums, sorted(premiums))
        silver = [item for item in results if item["plan_name"] == SILVER_PLAN][0]
        self.assertEqual(silver["monthly_premium"], 345.8)
        self.assertEqual(silver["estimated_monthly_total"], 3458.0)

        stored = main.get_quote(quote["id"], request=self.employer_request)
        self.assertEqual(stored["status"], "Quoted")
        self.assertEqual(stored["plan_types"], ["PPO"])
        self.assertEqual(stored["employee_count"], 10)
        self.assertEqual(len(stored["results"]), len(results))


if __name__ == "__main__":
    unittest.main()
