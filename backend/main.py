from __future__ import annotations

import csv
import hashlib
import io
import json
import os
import re
import secrets
import sqlite3
import uuid
from datetime import date, datetime, timedelta
from pathlib import Path
from typing import Annotated, Any, Dict, List, Optional
from urllib.parse import quote

from dotenv import load_dotenv
from fastapi import FastAPI, File, Form, HTTPException, Request, Response, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse
from pydantic import BaseModel
from pypdf.errors import PyPdfError

from carrier_forms import (
    DATA_SOURCES,
    CarrierFormError,
    FieldMapping,
    default_mappings_for_carrier,
    fill_carrier_form,
    list_template_fields,
    validate_mapping,
)
from contributions import (
    ENROLLMENT_TIERS,
    TIER_LABELS,
    ContributionError,
    ContributionModel,
    calculate_employer_cost,
    calculate_tier_costs,
    normalize_enrollment_tier,
    validate_contribution_model,
)
from enrollment import (
    DEFAULT_FEATURE_FLAGS,
    SIGNABLE_STATUSES,
    WorkflowError,
    completion_percentage,
    enabled_steps,
    form_next_steps,
    missing_form_field,
    next_step,
    normalize_form_id,
    previous_step,
    record_step,
    require_transition,
    validate_documents,
    validate_form_step,
    validate_with_override,
)
from logging_config import configure_logging, get_logger
from plans import (
    PLAN_TYPES,
    SAMPLE_PLANS,
    PlanFilter,
    PlanImportError,
    carriers_for_benefit,
    filter_plans,
    group_plans,
    parse_plan_file,
)
from submission_pdf import (
    FormSubmission,
    PDFOptions,
    SubmissionUser,
    format_field_value,
    generate_submission_pdf,
    save_pdf_to_file,
)

load_dotenv()

BASE_DIR = Path(__file__).resolve().parent


def resolve_path(raw: str, base: Path) -> Path:
    path = Path(raw).expanduser()
    if not path.is_absolute():
        return (base / path).resolve()
    return path.resolve()


DB_PATH = resolve_path(os.getenv("DB_PATH", str(BASE_DIR / "app.db")), BASE_DIR)
UPLOADS_DIR = resolve_path(os.getenv("UPLOADS_DIR", str(BASE_DIR.parent / "uploads")), BASE_DIR.parent)
FEATURE_FLAGS_PATH = resolve_path(
    os.getenv("FEATURE_FLAGS_PATH", str(BASE_DIR / "data" / "feature_flags.json")),
    BASE_DIR,
)
GENERATED_PDF_DIR_RAW = os.getenv("GENERATED_PDF_DIR", "").strip()
PDF_TEMPLATES_DIR_RAW = os.getenv("PDF_TEMPLATES_DIR", "").strip()

SESSION_COOKIE_SECURE = os.getenv("SESSION_COOKIE_SECURE", "false").strip().lower() in {
    "1",
    "true",
    "yes",
    "on",
}
SESSION_COOKIE_SAMESITE = os.getenv("SESSION_COOKIE_SAMESITE", "lax").strip().lower()
if SESSION_COOKIE_SAMESITE not in {"lax", "strict", "none"}:
    SESSION_COOKIE_SAMESITE = "lax"

DEFAULT_ADMIN_EMAIL = os.getenv("DEFAULT_ADMIN_EMAIL", "admin@example.com").strip().lower()
DEFAULT_ADMIN_USERNAME = os.getenv("DEFAULT_ADMIN_USERNAME", "admin").strip().lower()
DEFAULT_ADMIN_FIRST_NAME = os.getenv("DEFAULT_ADMIN_FIRST_NAME", "Portal").strip()
DEFAULT_ADMIN_LAST_NAME = os.getenv("DEFAULT_ADMIN_LAST_NAME", "Admin").strip()
DEFAULT_ADMIN_PASSWORD = os.getenv("DEFAULT_ADMIN_PASSWORD", "ChangeMe123!").strip()

MAX_UPLOAD_BYTES = int(os.getenv("MAX_UPLOAD_BYTES", str(10 * 1024 * 1024)))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").strip().upper() or "INFO"
LOG_JSON = os.getenv("LOG_JSON", "false").strip().lower() in {"1", "true", "yes", "on"}

SESSION_COOKIE_NAME = "enrollment_session"
SESSION_DURATION_HOURS = 24 * 7
PASSWORD_MIN_LENGTH = 8

ALLOWED_USER_ROLES = {"employer", "admin", "owner", "staff"}
BROKER_ROLES = {"owner", "staff"}
DOCUMENT_EXTENSIONS = {".pdf", ".doc", ".docx", ".jpg", ".jpeg", ".png"}
PLAN_UPLOAD_EXTENSIONS = {".csv", ".xlsx", ".xls"}
HEX_COLOR_RE = re.compile(r"^#[0-9a-fA-F]{6}$")
DEFAULT_BROKER_COLORS = {"primary_color": "#3b82f6", "secondary_color": "#1e40af"}
DEFAULT_BRAND_NAME = "Benefits Enrollment"
QUOTE_STATUSES = ("Draft", "Submitted", "Quoted", "Accepted", "Declined")
ZIP_CODE_RE = re.compile(r"^\d{5}$")


class AuditAction:
    SIGN = "application_signed"
    STATUS_CHANGE = "application_status_changed"
    REVIEW_REQUESTED = "application_review_requested"
    DOCUMENT_OVERRIDE = "document_validation_override"
    PLAN_UPLOAD = "plan_upload"
    TEMPLATE_UPLOAD = "pdf_template_upload"
    PDF_GENERATED = "pdf_generated"
    FORM_SUBMITTED = "form_submitted"


def generated_pdf_dir() -> Path:
    if GENERATED_PDF_DIR_RAW:
        return resolve_path(GENERATED_PDF_DIR_RAW, BASE_DIR.parent)
    return UPLOADS_DIR / "pdfs"


def pdf_templates_dir() -> Path:
    if PDF_TEMPLATES_DIR_RAW:
        return resolve_path(PDF_TEMPLATES_DIR_RAW, BASE_DIR.parent)
    return UPLOADS_DIR / "templates"


app = FastAPI(title="Benefits Enrollment Portal API")

FRONTEND_BASE_URL = os.getenv("FRONTEND_BASE_URL", "http://localhost:5173").rstrip("/")
_extra_origins_raw = os.getenv("ALLOWED_ORIGINS", "")
EXTRA_ALLOWED_ORIGINS = [
    origin.strip().rstrip("/")
    for origin in _extra_origins_raw.split(",")
    if origin.strip()
]
ALLOWED_ORIGINS = sorted(set([
    FRONTEND_BASE_URL,
    "http://localhost:5173",
    "http://127.0.0.1:5173",
    *EXTRA_ALLOWED_ORIGINS,
]))

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

logger = get_logger(__name__)


# ----------------------
# Database helpers
# ----------------------

def get_db() -> sqlite3.Connection:
    conn = sqlite3.connect(DB_PATH, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


def now_iso() -> str:
    return datetime.utcnow().isoformat()


def ensure_columns(conn: sqlite3.Connection, table: str, columns: Dict[str, str]) -> None:
    cur = conn.cursor()
    cur.execute(f"PRAGMA table_info({table})")
    existing = {row["name"] for row in cur.fetchall()}
    for name, ddl in columns.items():
        if name not in existing:
            cur.execute(f"ALTER TABLE {table} ADD COLUMN {name} {ddl}")


def init_db() -> None:
    UPLOADS_DIR.mkdir(parents=True, exist_ok=True)
    generated_pdf_dir().mkdir(parents=True, exist_ok=True)
    pdf_templates_dir().mkdir(parents=True, exist_ok=True)
    with get_db() as conn:
        cur = conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS Broker(
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                logo_url TEXT,
                primary_color TEXT,
                secondary_color TEXT,
                created_at TEXT,
                updated_at TEXT
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS User(
                id TEXT PRIMARY KEY,
                username TEXT UNIQUE,
                email TEXT UNIQUE,
                first_name TEXT,
                last_name TEXT,
                phone TEXT,
                company_name TEXT,
                role TEXT NOT NULL DEFAULT 'employer',
                broker_id TEXT REFERENCES Broker(id) ON DELETE SET NULL,
                password_salt TEXT,
                password_hash TEXT,
                created_at TEXT,
                updated_at TEXT
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS AuthSession(
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL REFERENCES User(id) ON DELETE CASCADE,
                session_hash TEXT NOT NULL,
                expires_at TEXT,
                created_at TEXT,
                last_seen_at TEXT
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS Company(
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL REFERENCES User(id) ON DELETE CASCADE,
                name TEXT NOT NULL,
                address TEXT,
                city TEXT,
                state TEXT,
                zip TEXT,
                phone TEXT,
                tax_id TEXT,
                industry TEXT,
                employee_count INTEGER DEFAULT 0,
                created_at TEXT,
                updated_at TEXT
            )
            """
        )
        ensure_columns(
            conn,
            "Company",
            {
                "has_prior_coverage": "INTEGER DEFAULT 0",
                "current_carrier": "TEXT",
                "effective_date": "TEXT",
            },
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS Owner(
                id TEXT PRIMARY KEY,
                company_id TEXT NOT NULL REFERENCES Company(id) ON DELETE CASCADE,
                first_name TEXT,
                last_name TEXT,
                title TEXT,
                email TEXT,
                phone TEXT,
                address TEXT,
                ownership_percentage REAL DEFAULT 0,
                is_authorized_contact INTEGER DEFAULT 0,
                created_at TEXT,
                updated_at TEXT
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS Employee(
                id TEXT PRIMARY KEY,
                company_id TEXT NOT NULL REFERENCES Company(id) ON DELETE CASCADE,
                first_name TEXT,
                last_name TEXT,
                email TEXT,
                phone TEXT,
                date_of_birth TEXT,
                ssn TEXT,
                hire_date TEXT,
                job_title TEXT,
                salary REAL,
                enrollment_tier TEXT,
                created_at TEXT,
                updated_at TEXT
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS Document(
                id TEXT PRIMARY KEY,
                company_id TEXT NOT NULL REFERENCES Company(id) ON DELETE CASCADE,
                user_id TEXT,
                type TEXT,
                category TEXT,
                filename TEXT,
                path TEXT,
                size INTEGER,
                created_at TEXT
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS Plan(
                id TEXT PRIMARY KEY,
                carrier TEXT NOT NULL,
                name TEXT NOT NULL,
                plan_type TEXT,
                benefit_type TEXT DEFAULT 'medical',
                network TEXT,
                network_type TEXT,
                metal_tier TEXT,
                monthly_premium REAL,
                deductible REAL,
                out_of_pocket_max REAL,
                details TEXT,
                contract_code TEXT,
                plan_year INTEGER,
                effective_start TEXT,
                effective_end TEXT,
                upload_id TEXT,
                created_at TEXT,
                UNIQUE(carrier, name)
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS PlanUpload(
                id TEXT PRIMARY KEY,
                user_id TEXT,
                carrier TEXT,
                plan_year INTEGER,
                filename TEXT,
                path TEXT,
                plan_count INTEGER DEFAULT 0,
                skipped_count INTEGER DEFAULT 0,
                created_at TEXT
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS CompanyPlan(
                id TEXT PRIMARY KEY,
                company_id TEXT NOT NULL REFERENCES Company(id) ON DELETE CASCADE,
                plan_id TEXT NOT NULL REFERENCES Plan(id) ON DELETE CASCADE,
                created_at TEXT,
                UNIQUE(company_id, plan_id)
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS Contribution(
                id TEXT PRIMARY KEY,
                company_id TEXT NOT NULL REFERENCES Company(id) ON DELETE CASCADE,
                plan_id TEXT NOT NULL REFERENCES Plan(id) ON DELETE CASCADE,
                employee_contribution REAL NOT NULL,
                spouse_contribution REAL NOT NULL,
                children_contribution REAL NOT NULL,
                family_contribution REAL NOT NULL,
                contribution_type TEXT NOT NULL DEFAULT 'percentage',
                max_employer_contribution REAL,
                created_at TEXT,
                updated_at TEXT,
                UNIQUE(company_id, plan_id)
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS ApplicationInitiator(
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL UNIQUE REFERENCES User(id) ON DELETE CASCADE,
                company_id TEXT REFERENCES Company(id) ON DELETE SET NULL,
                first_name TEXT,
                last_name TEXT,
                title TEXT,
                email TEXT,
                phone TEXT,
                is_owner INTEGER DEFAULT 0,
                created_at TEXT,
                updated_at TEXT
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS CoverageInformation(
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL UNIQUE REFERENCES User(id) ON DELETE CASCADE,
                company_id TEXT REFERENCES Company(id) ON DELETE SET NULL,
                full_time_employees INTEGER DEFAULT 0,
                part_time_employees INTEGER DEFAULT 0,
                had_20_plus_employees INTEGER DEFAULT 0,
                cobra_type TEXT,
                benefits TEXT,
                selected_carriers TEXT,
                effective_date TEXT,
                created_at TEXT,
                updated_at TEXT
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS Application(
                id TEXT PRIMARY KEY,
                company_id TEXT NOT NULL UNIQUE REFERENCES Company(id) ON DELETE CASCADE,
                user_id TEXT,
                status TEXT NOT NULL DEFAULT 'in_progress',
                current_step TEXT,
                completed_steps TEXT,
                selected_carrier TEXT,
                authorized_contact_name TEXT,
                authorized_contact_title TEXT,
                authorized_contact_email TEXT,
                authorized_contact_phone TEXT,
                review_notes TEXT,
                reviewed_by TEXT,
                reviewed_at TEXT,
                signature TEXT,
                signed_by TEXT,
                signed_at TEXT,
                submitted_at TEXT,
                created_at TEXT,
                updated_at TEXT
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS AuditLog(
                id TEXT PRIMARY KEY,
                user_id TEXT,
                user_email TEXT,
                broker_id TEXT,
                action TEXT NOT NULL,
                entity_type TEXT,
                entity_id TEXT,
                details TEXT,
                ip_address TEXT,
                user_agent TEXT,
                created_at TEXT
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS PdfTemplate(
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                carrier TEXT,
                filename TEXT,
                path TEXT,
                uploaded_by TEXT,
                created_at TEXT
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS PdfFieldMapping(
                id TEXT PRIMARY KEY,
                template_id TEXT NOT NULL REFERENCES PdfTemplate(id) ON DELETE CASCADE,
                field_name TEXT NOT NULL,
                data_source TEXT NOT NULL,
                data_field TEXT NOT NULL,
                page_number INTEGER DEFAULT 1,
                x_position REAL,
                y_position REAL,
                width REAL,
                height REAL,
                field_type TEXT DEFAULT 'text',
                created_at TEXT
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS GeneratedPdf(
                id TEXT PRIMARY KEY,
                company_id TEXT NOT NULL REFERENCES Company(id) ON DELETE CASCADE,
                template_id TEXT REFERENCES PdfTemplate(id) ON DELETE SET NULL,
                kind TEXT NOT NULL,
                filename TEXT,
                path TEXT,
                status TEXT DEFAULT 'generated',
                created_by TEXT,
                created_at TEXT
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS FormProgress(
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL REFERENCES User(id) ON DELETE CASCADE,
                form_id TEXT NOT NULL,
                form_data TEXT,
                current_step INTEGER DEFAULT 0,
                last_saved TEXT,
                is_completed INTEGER DEFAULT 0,
                completed_at TEXT,
                created_at TEXT,
                updated_at TEXT,
                UNIQUE(user_id, form_id)
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS FormSubmission(
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL REFERENCES User(id) ON DELETE CASCADE,
                form_id TEXT NOT NULL,
                submission_type TEXT NOT NULL,
                form_data TEXT,
                status TEXT DEFAULT 'submitted',
                submitted_at TEXT,
                ip_address TEXT,
                user_agent TEXT
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS Quote(
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL REFERENCES User(id) ON DELETE CASCADE,
                company_id TEXT REFERENCES Company(id) ON DELETE SET NULL,
                company_name TEXT NOT NULL,
                zip_code TEXT,
                effective_date TEXT,
                employee_count INTEGER,
                plan_types TEXT,
                notes TEXT,
                status TEXT DEFAULT 'Draft',
                results TEXT,
                created_at TEXT,
                updated_at TEXT
            )
            """
        )
        conn.commit()

        cur.execute("SELECT COUNT(*) as cnt FROM Plan")
        if cur.fetchone()["cnt"] == 0:
            seed_plans(conn)
        ensure_default_admin_user(conn)


def ensure_default_admin_user(conn: sqlite3.Connection) -> None:
    email = DEFAULT_ADMIN_EMAIL
    if not email:
        return
    now = now_iso()
    salt = None
    password_hash = None
    if DEFAULT_ADMIN_PASSWORD:
        salt, password_hash = create_password_credentials(DEFAULT_ADMIN_PASSWORD)
    cur = conn.cursor()
    cur.execute("SELECT * FROM User WHERE email = ?", (email,))
    existing = cur.fetchone()
    if existing:
        if salt and not (existing["password_salt"] and existing["password_hash"]):
            cur.execute(
                """
                UPDATE User
                SET password_salt = ?, password_hash = ?, updated_at = ?
                WHERE id = ?
                """,
                (salt, password_hash, now, existing["id"]),
            )
            conn.commit()
        return
    cur.execute(
        """
        INSERT INTO User (
            id, username, email, first_name, last_name, role,
            password_salt, password_hash, created_at, updated_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            str(uuid.uuid4()),
            DEFAULT_ADMIN_USERNAME or None,
            email,
            DEFAULT_ADMIN_FIRST_NAME,
            DEFAULT_ADMIN_LAST_NAME,
            "admin",
            salt,
            password_hash,
            now,
            now,
        ),
    )
    conn.commit()
    logger.info("default_admin_seeded", email=email)


# ----------------------
# Seed data
# ----------------------

def seed_plans(conn: sqlite3.Connection) -> None:
    now = now_iso()
    cur = conn.cursor()
    for plan in SAMPLE_PLANS:
        cur.execute(
            """
            INSERT OR IGNORE INTO Plan (
                id, carrier, name, plan_type, benefit_type, network, network_type,
                metal_tier, monthly_premium, deductible, out_of_pocket_max, details, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                str(uuid.uuid4()),
                plan["carrier"],
                plan["name"],
                plan.get("plan_type"),
                plan.get("benefit_type", "medical"),
                plan.get("network"),
                plan.get("network_type"),
                plan.get("metal_tier"),
                plan.get("monthly_premium"),
                plan.get("deductible"),
                plan.get("out_of_pocket_max"),
                plan.get("details"),
                now,
            ),
        )
    conn.commit()
    logger.info("sample_plans_seeded", count=len(SAMPLE_PLANS))


# ----------------------
# Models
# ----------------------

class RegisterIn(BaseModel):
    username: str
    email: str
    password: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone: Optional[str] = None
    company_name: Optional[str] = None


class LoginIn(BaseModel):
    email: Optional[str] = None
    username: Optional[str] = None
    password: str


class UserOut(BaseModel):
    id: str
    username: Optional[str] = None
    email: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone: Optional[str] = None
    company_name: Optional[str] = None
    role: str
    broker_id: Optional[str] = None


class UserUpdate(BaseModel):
    role: Optional[str] = None
    broker_id: Optional[str] = None


class BrokerIn(BaseModel):
    name: str
    logo_url: Optional[str] = None
    primary_color: Optional[str] = None
    secondary_color: Optional[str] = None


class BrokerUpdate(BaseModel):
    name: Optional[str] = None
    logo_url: Optional[str] = None
    primary_color: Optional[str] = None
    secondary_color: Optional[str] = None


class BrokerOut(BaseModel):
    id: str
    name: str
    logo_url: Optional[str] = None
    primary_color: str
    secondary_color: str
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class InitiatorIn(BaseModel):
    first_name: str
    last_name: str
    title: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    is_owner: bool = False


class CompanyIn(BaseModel):
    name: str
    address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip: Optional[str] = None
    phone: Optional[str] = None
    tax_id: Optional[str] = None
    industry: Optional[str] = None
    employee_count: int = 0
    has_prior_coverage: bool = False
    current_carrier: Optional[str] = None
    effective_date: Optional[str] = None


class CompanyUpdate(BaseModel):
    name: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip: Optional[str] = None
    phone: Optional[str] = None
    tax_id: Optional[str] = None
    industry: Optional[str] = None
    employee_count: Optional[int] = None
    has_prior_coverage: Optional[bool] = None
    current_carrier: Optional[str] = None
    effective_date: Optional[str] = None


class CoverageIn(BaseModel):
    full_time_employees: int = 0
    part_time_employees: int = 0
    had_20_plus_employees: bool = False
    benefits: List[str] = []
    selected_carriers: List[str] = []
    effective_date: Optional[str] = None


class OwnerIn(BaseModel):
    first_name: str
    last_name: str
    title: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    ownership_percentage: float = 0
    is_authorized_contact: bool = False


class OwnerUpdate(BaseModel):
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    title: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    ownership_percentage: Optional[float] = None
    is_authorized_contact: Optional[bool] = None


class EmployeeIn(BaseModel):
    first_name: str
    last_name: str
    email: Optional[str] = None
    phone: Optional[str] = None
    date_of_birth: Optional[str] = None
    ssn: Optional[str] = None
    hire_date: Optional[str] = None
    job_title: Optional[str] = None
    salary: Optional[float] = None
    enrollment_tier: Optional[str] = None


class EmployeeUpdate(BaseModel):
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    date_of_birth: Optional[str] = None
    ssn: Optional[str] = None
    hire_date: Optional[str] = None
    job_title: Optional[str] = None
    salary: Optional[float] = None
    enrollment_tier: Optional[str] = None


class DocumentValidationIn(BaseModel):
    uploaded_types: List[str] = []
    has_prior_coverage: bool = False
    employee_count: int = 0
    carrier: Optional[str] = None


class OverrideIn(BaseModel):
    reason: str


class CompanyPlanIn(BaseModel):
    plan_id: str


class ContributionIn(BaseModel):
    plan_id: str
    employee_contribution: float
    spouse_contribution: Optional[float] = None
    children_contribution: Optional[float] = None
    family_contribution: Optional[float] = None
    dependent_contribution: Optional[float] = None
    contribution_type: str = "percentage"
    max_employer_contribution: Optional[float] = None


class ContributionPreviewIn(BaseModel):
    plan_id: Optional[str] = None
    monthly_premium: Optional[float] = None
    employee_contribution: float
    spouse_contribution: Optional[float] = None
    children_contribution: Optional[float] = None
    family_contribution: Optional[float] = None
    dependent_contribution: Optional[float] = None
    contribution_type: str = "percentage"
    max_employer_contribution: Optional[float] = None
    tier_counts: Dict[str, int] = {}


class ApplicationUpdate(BaseModel):
    current_step: Optional[str] = None
    completed_step: Optional[str] = None
    selected_carrier: Optional[str] = None
    authorized_contact_name: Optional[str] = None
    authorized_contact_title: Optional[str] = None
    authorized_contact_email: Optional[str] = None
    authorized_contact_phone: Optional[str] = None


class SignatureIn(BaseModel):
    signature: str
    signed_by: Optional[str] = None


class ReviewIn(BaseModel):
    status: str
    review_notes: Optional[str] = None


class PdfRequestIn(BaseModel):
    watermark: Optional[str] = None
    include_header: bool = True
    include_footer: bool = True


class FieldMappingIn(BaseModel):
    field_name: str
    data_source: str
    data_field: str
    page_number: int = 1
    x_position: Optional[float] = None
    y_position: Optional[float] = None
    width: Optional[float] = None
    height: Optional[float] = None
    field_type: str = "text"


class CarrierFormIn(BaseModel):
    template_id: str
    plan_id: Optional[str] = None
    employee_id: Optional[str] = None


class FormProgressIn(BaseModel):
    form_id: str
    data: Dict[str, Any]
    current_step: int = 0
    last_saved: Optional[str] = None


class FormSubmitIn(BaseModel):
    form_id: str
    form_data: Dict[str, Any]
    submission_type: str


class QuoteIn(BaseModel):
    company_name: Optional[str] = None
    company_id: Optional[str] = None
    zip_code: Optional[str] = None
    effective_date: Optional[str] = None
    employee_count: Optional[int] = None
    plan_types: List[str] = []
    notes: Optional[str] = None


class QuoteUpdate(BaseModel):
    company_name: Optional[str] = None
    zip_code: Optional[str] = None
    effective_date: Optional[str] = None
    employee_count: Optional[int] = None
    plan_types: Optional[List[str]] = None
    notes: Optional[str] = None
    status: Optional[str] = None


class QuoteGenerateIn(BaseModel):
    zip_code: Optional[str] = None
    effective_date: Optional[str] = None
    employee_count: int = 1
    plan_types: List[str] = []
    quote_id: Optional[str] = None


# ----------------------
# Auth helpers
# ----------------------

def sha256_hex(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def hash_password(password: str, salt: str) -> str:
    return hashlib.pbkdf2_hmac(
        "sha256",
        password.encode("utf-8"),
        salt.encode("utf-8"),
        120000,
    ).hex()


def create_password_credentials(password: str) -> tuple[str, str]:
    salt = secrets.token_hex(16)
    return salt, hash_password(password, salt)


def verify_password(password: str, salt: Optional[str], expected_hash: Optional[str]) -> bool:
    if not password or not salt or not expected_hash:
        return False
    actual_hash = hash_password(password, salt)
    return secrets.compare_digest(actual_hash, expected_hash)


def normalize_user_email(email: Optional[str]) -> str:
    value = (email or "").strip().lower()
    if not value or "@" not in value:
        raise HTTPException(status_code=400, detail="A valid email is required")
    return value


def normalize_username(username: Optional[str]) -> str:
    value = (username or "").strip().lower()
    if not value:
        raise HTTPException(status_code=400, detail="Username is required")
    return value


def normalize_user_role(role: Optional[str]) -> str:
    value = (role or "").strip().lower()
    if value not in ALLOWED_USER_ROLES:
        allowed = ", ".join(sorted(ALLOWED_USER_ROLES))
        raise HTTPException(status_code=400, detail=f"Role must be one of: {allowed}")
    return value


def require_valid_password(password: Optional[str], *, required: bool) -> Optional[str]:
    value = (password or "").strip()
    if not value:
        if required:
            raise HTTPException(status_code=400, detail="Password is required")
        return None
    if len(value) < PASSWORD_MIN_LENGTH:
        raise HTTPException(
            status_code=400,
            detail=f"Password must be at least {PASSWORD_MIN_LENGTH} characters",
        )
    return value


def create_auth_session(conn: sqlite3.Connection, user_id: str) -> str:
    token = secrets.token_urlsafe(32)
    session_hash = sha256_hex(token)
    now = now_iso()
    expires_at = (datetime.utcnow() + timedelta(hours=SESSION_DURATION_HOURS)).isoformat()
    cur = conn.cursor()
    cur.execute(
        """
        INSERT INTO AuthSession (id, user_id, session_hash, expires_at, created_at, last_seen_at)
        VALUES (?, ?, ?, ?, ?, ?)
        """,
        (str(uuid.uuid4()), user_id, session_hash, expires_at, now, now),
    )
    conn.commit()
    return token


def set_session_cookie(response: Response, token: str) -> None:
    response.set_cookie(
        SESSION_COOKIE_NAME,
        token,
        httponly=True,
        samesite=SESSION_COOKIE_SAMESITE,
        secure=SESSION_COOKIE_SECURE,
        max_age=SESSION_DURATION_HOURS * 3600,
        path="/",
    )


def get_session_user(conn: sqlite3.Connection, request: Request) -> Optional[sqlite3.Row]:
    token = request.cookies.get(SESSION_COOKIE_NAME)
    if not token:
        return None
    session_hash = sha256_hex(token)
    now = now_iso()
    cur = conn.cursor()
    cur.execute(
        """
        SELECT u.*
        FROM AuthSession s
        JOIN User u ON u.id = s.user_id
        WHERE s.session_hash = ? AND s.expires_at > ?
        ORDER BY s.created_at DESC
        LIMIT 1
        """,
        (session_hash, now),
    )
    row = cur.fetchone()
    if not row:
        return None
    cur.execute(
        "UPDATE AuthSession SET last_seen_at = ? WHERE session_hash = ?",
        (now_iso(), session_hash),
    )
    conn.commit()
    return row


def require_session_user(conn: sqlite3.Connection, request: Request) -> sqlite3.Row:
    user = get_session_user(conn, request)
    if not user:
        raise HTTPException(status_code=401, detail="Authentication required")
    return user


def require_session_role(
    conn: sqlite3.Connection, request: Request, allowed_roles: set[str]
) -> sqlite3.Row:
    user = require_session_user(conn, request)
    if (user["role"] or "").strip().lower() not in allowed_roles:
        raise HTTPException(status_code=403, detail="Insufficient permissions")
    return user


def require_broker_id(user: Any) -> str:
    broker_id = (user["broker_id"] or "").strip()
    if not broker_id:
        raise HTTPException(status_code=403, detail="Access denied: No broker association")
    return broker_id


def to_user_out(row: Any) -> UserOut:
    data = dict(row)
    return UserOut(
        id=data["id"],
        username=data.get("username"),
        email=data.get("email"),
        first_name=data.get("first_name"),
        last_name=data.get("last_name"),
        phone=data.get("phone"),
        company_name=data.get("company_name"),
        role=data.get("role") or "employer",
        broker_id=data.get("broker_id"),
    )


# ----------------------
# Lookups and access control
# ----------------------

def fetch_user(conn: sqlite3.Connection, user_id: str) -> sqlite3.Row:
    cur = conn.cursor()
    cur.execute("SELECT * FROM User WHERE id = ?", (user_id,))
    row = cur.fetchone()
    if not row:
        raise HTTPException(status_code=404, detail="User not found")
    return row


def fetch_broker(conn: sqlite3.Connection, broker_id: str) -> sqlite3.Row:
    cur = conn.cursor()
    cur.execute("SELECT * FROM Broker WHERE id = ?", (broker_id,))
    row = cur.fetchone()
    if not row:
        raise HTTPException(status_code=404, detail="Broker not found")
    return row


def fetch_company(conn: sqlite3.Connection, company_id: str) -> sqlite3.Row:
    cur = conn.cursor()
    cur.execute("SELECT * FROM Company WHERE id = ?", (company_id,))
    row = cur.fetchone()
    if not row:
        raise HTTPException(status_code=404, detail="Company not found")
    return row


def fetch_plan(conn: sqlite3.Connection, plan_id: str) -> sqlite3.Row:
    cur = conn.cursor()
    cur.execute("SELECT * FROM Plan WHERE id = ?", (plan_id,))
    row = cur.fetchone()
    if not row:
        raise HTTPException(status_code=404, detail="Plan not found")
    return row


def fetch_owner(conn: sqlite3.Connection, company_id: str, owner_id: str) -> sqlite3.Row:
    cur = conn.cursor()
    cur.execute("SELECT * FROM Owner WHERE id = ? AND company_id = ?", (owner_id, company_id))
    row = cur.fetchone()
    if not row:
        raise HTTPException(status_code=404, detail="Owner not found")
    return row


def fetch_employee(conn: sqlite3.Connection, company_id: str, employee_id: str) -> sqlite3.Row:
    cur = conn.cursor()
    cur.execute("SELECT * FROM Employee WHERE id = ? AND company_id = ?", (employee_id, company_id))
    row = cur.fetchone()
    if not row:
        raise HTTPException(status_code=404, detail="Employee not found")
    return row


def fetch_document(conn: sqlite3.Connection, document_id: str) -> sqlite3.Row:
    cur = conn.cursor()
    cur.execute("SELECT * FROM Document WHERE id = ?", (document_id,))
    row = cur.fetchone()
    if not row:
        raise HTTPException(status_code=404, detail="Document not found")
    return row


def fetch_template(conn: sqlite3.Connection, template_id: str) -> sqlite3.Row:
    cur = conn.cursor()
    cur.execute("SELECT * FROM PdfTemplate WHERE id = ?", (template_id,))
    row = cur.fetchone()
    if not row:
        raise HTTPException(status_code=404, detail="Template not found")
    return row


def fetch_application(conn: sqlite3.Connection, application_id: str) -> sqlite3.Row:
    cur = conn.cursor()
    cur.execute("SELECT * FROM Application WHERE id = ?", (application_id,))
    row = cur.fetchone()
    if not row:
        raise HTTPException(status_code=404, detail="Application not found")
    return row


def user_can_access_owned(conn: sqlite3.Connection, user: Any, owner_id: Optional[str]) -> bool:
    role = (user["role"] or "").strip().lower()
    if role == "admin":
        return True
    if owner_id == user["id"]:
        return True
    if role in BROKER_ROLES and user["broker_id"]:
        cur = conn.cursor()
        cur.execute("SELECT broker_id FROM User WHERE id = ?", (owner_id,))
        owner = cur.fetchone()
        return bool(owner and owner["broker_id"] == user["broker_id"])
    return False


def user_can_access_company(conn: sqlite3.Connection, user: Any, company: Any) -> bool:
    return user_can_access_owned(conn, user, company["user_id"])


def require_company_access(conn: sqlite3.Connection, user: Any, company_id: str) -> sqlite3.Row:
    company = fetch_company(conn, company_id)
    if not user_can_access_company(conn, user, company):
        raise HTTPException(status_code=403, detail="Forbidden")
    return company


# ----------------------
# Shared helpers
# ----------------------

def read_feature_flags() -> Dict[str, bool]:
    flags = dict(DEFAULT_FEATURE_FLAGS)
    if not FEATURE_FLAGS_PATH.exists():
        return flags
    try:
        raw = json.loads(FEATURE_FLAGS_PATH.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        logger.warning("feature_flags_unreadable", path=str(FEATURE_FLAGS_PATH))
        return flags
    if not isinstance(raw, dict):
        return flags
    for key, value in raw.items():
        if key in flags:
            flags[key] = bool(value)
    return flags


def apply_updates(conn: sqlite3.Connection, table: str, row_id: str, updates: Dict[str, Any]) -> None:
    if not updates:
        return
    updates = {**updates, "updated_at": now_iso()}
    assignments = ", ".join(f"{column} = ?" for column in updates)
    cur = conn.cursor()
    cur.execute(
        f"UPDATE {table} SET {assignments} WHERE id = ?",
        (*updates.values(), row_id),
    )


def normalize_color(value: Optional[str], default: str) -> str:
    color = (value or "").strip()
    if not color:
        return default
    if not HEX_COLOR_RE.match(color):
        raise HTTPException(status_code=400, detail="Colors must be hex values like #1e40af")
    return color.lower()


def broker_out(row: Any) -> BrokerOut:
    data = dict(row)
    return BrokerOut(
        id=data["id"],
        name=data["name"],
        logo_url=data.get("logo_url"),
        primary_color=data.get("primary_color") or DEFAULT_BROKER_COLORS["primary_color"],
        secondary_color=data.get("secondary_color") or DEFAULT_BROKER_COLORS["secondary_color"],
        created_at=data.get("created_at"),
        updated_at=data.get("updated_at"),
    )


def company_out(row: Any) -> Dict[str, Any]:
    data = dict(row)
    data["has_prior_coverage"] = bool(data.get("has_prior_coverage"))
    data["employee_count"] = int(data.get("employee_count") or 0)
    return data


def owner_out(row: Any) -> Dict[str, Any]:
    data = dict(row)
    data["is_authorized_contact"] = bool(data.get("is_authorized_contact"))
    return data


def mask_ssn(value: Optional[str]) -> Optional[str]:
    digits = re.sub(r"\D", "", value or "")
    if not digits:
        return None
    return f"***-**-{digits[-4:]}"


def employee_out(row: Any) -> Dict[str, Any]:
    data = dict(row)
    data["ssn"] = mask_ssn(data.get("ssn"))
    return data


def parse_json_list(value: Optional[str]) -> List[Any]:
    if not value:
        return []
    try:
        parsed = json.loads(value)
    except ValueError:
        return []
    return parsed if isinstance(parsed, list) else []


def ensure_application(conn: sqlite3.Connection, company_id: str, user_id: Optional[str]) -> sqlite3.Row:
    cur = conn.cursor()
    cur.execute("SELECT * FROM Application WHERE company_id = ?", (company_id,))
    row = cur.fetchone()
    if row:
        return row
    now = now_iso()
    application_id = str(uuid.uuid4())
    cur.execute(
        """
        INSERT INTO Application (
            id, company_id, user_id, status, current_step, completed_steps, created_at, updated_at
        ) VALUES (?, ?, ?, 'in_progress', ?, ?, ?, ?)
        """,
        (application_id, company_id, user_id, "carriers", "[]", now, now),
    )
    cur.execute("SELECT * FROM Application WHERE id = ?", (application_id,))
    return cur.fetchone()


def record_application_progress(conn: sqlite3.Connection, company_id: str, step: str) -> sqlite3.Row:
    application = ensure_application(conn, company_id, None)
    try:
        completed = record_step(parse_json_list(application["completed_steps"]), step)
    except WorkflowError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    apply_updates(
        conn,
        "Application",
        application["id"],
        {"completed_steps": json.dumps(completed), "current_step": step},
    )
    return fetch_application(conn, application["id"])


def application_out(row: Any, flags: Optional[Dict[str, bool]] = None) -> Dict[str, Any]:
    flags = flags if flags is not None else read_feature_flags()
    data = dict(row)
    completed = parse_json_list(data.get("completed_steps"))
    data["completed_steps"] = completed
    data["completion_percentage"] = completion_percentage(completed, flags)
    current = data.get("current_step") or ""
    following = next_step(current, flags)
    preceding = previous_step(current, flags)
    data["next_step"] = following.id if following else None
    data["previous_step"] = preceding.id if preceding else None
    data["signature"] = bool(data.get("signature"))
    return data


def client_meta(request: Any) -> tuple[Optional[str], Optional[str]]:
    client = getattr(request, "client", None)
    headers = getattr(request, "headers", None)
    ip_address = getattr(client, "host", None) if client else None
    user_agent = headers.get("user-agent") if headers is not None else None
    return ip_address, user_agent


def write_audit_log(
    conn: sqlite3.Connection,
    request: Any,
    user: Any,
    action: str,
    entity_type: str,
    entity_id: Optional[str],
    details: Optional[Dict[str, Any]] = None,
) -> None:
    ip_address, user_agent = client_meta(request)
    cur = conn.cursor()
    cur.execute(
        """
        INSERT INTO AuditLog (
            id, user_id, user_email, broker_id, action, entity_type, entity_id,
            details, ip_address, user_agent, created_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            str(uuid.uuid4()),
            user["id"],
            user["email"],
            user["broker_id"],
            action,
            entity_type,
            entity_id,
            json.dumps(details or {}, default=str),
            ip_address,
            user_agent,
            now_iso(),
        ),
    )
    logger.info("audit_logged", action=action, entity_type=entity_type, entity_id=entity_id, user_id=user["id"])


def save_document_upload(company_id: str, file: UploadFile) -> tuple[str, str, Path, int]:
    safe_name = Path(file.filename or "").name
    extension = Path(safe_name).suffix.lower()
    if extension not in DOCUMENT_EXTENSIONS:
        allowed = ", ".join(sorted(ext.lstrip(".") for ext in DOCUMENT_EXTENSIONS))
        raise HTTPException(status_code=400, detail=f"File type not allowed. Allowed types: {allowed}")
    content = file.file.read()
    if len(content) > MAX_UPLOAD_BYTES:
        raise HTTPException(status_code=400, detail="File exceeds the maximum upload size")
    company_dir = UPLOADS_DIR / company_id
    company_dir.mkdir(parents=True, exist_ok=True)
    file_id = str(uuid.uuid4())
    target_path = company_dir / f"{file_id}-{safe_name}"
    with target_path.open("wb") as f:
        f.write(content)
    return file_id, safe_name, target_path, len(content)


def remove_file(path_value: Optional[str]) -> None:
    if not path_value:
        return
    try:
        Path(path_value).unlink(missing_ok=True)
    except OSError:
        logger.warning("file_remove_failed", path=path_value)


def contribution_model_from_row(row: Any) -> ContributionModel:
    return ContributionModel(
        employee_contribution=row["employee_contribution"],
        spouse_contribution=row["spouse_contribution"],
        children_contribution=row["children_contribution"],
        family_contribution=row["family_contribution"],
        contribution_type=row["contribution_type"] or "percentage",
        max_employer_contribution=row["max_employer_contribution"],
    )


def contribution_model_from_payload(payload: Any) -> ContributionModel:
    values: Dict[str, float] = {"employee": payload.employee_contribution}
    for tier in ("spouse", "children", "family"):
        value = getattr(payload, f"{tier}_contribution")
        if value is None:
            value = payload.dependent_contribution
        if value is None:
            raise ContributionError(f"{TIER_LABELS[tier]} contribution is required")
        values[tier] = value
    model = ContributionModel(
        employee_contribution=values["employee"],
        spouse_contribution=values["spouse"],
        children_contribution=values["children"],
        family_contribution=values["family"],
        contribution_type=(payload.contribution_type or "percentage").strip().lower(),
        max_employer_contribution=payload.max_employer_contribution,
    )
    return validate_contribution_model(model)


def selected_plan_rows(conn: sqlite3.Connection, company_id: str) -> List[sqlite3.Row]:
    cur = conn.cursor()
    cur.execute(
        """
        SELECT p.*
        FROM CompanyPlan cp
        JOIN Plan p ON p.id = cp.plan_id
        WHERE cp.company_id = ?
        ORDER BY cp.created_at, p.carrier, p.name
        """,
        (company_id,),
    )
    return cur.fetchall()


def company_contribution_rows(conn: sqlite3.Connection, company_id: str) -> Dict[str, sqlite3.Row]:
    cur = conn.cursor()
    cur.execute("SELECT * FROM Contribution WHERE company_id = ?", (company_id,))
    return {row["plan_id"]: row for row in cur.fetchall()}


def contribution_out(row: Any, plan: Any) -> Dict[str, Any]:
    data = dict(row)
    data["plan"] = dict(plan)
    model = contribution_model_from_row(row)
    data["tier_costs"] = [cost.to_dict() for cost in calculate_tier_costs(plan["monthly_premium"], model)]
    return data


def census_tier_counts(conn: sqlite3.Connection, company: Any) -> Dict[str, int]:
    counts = {tier: 0 for tier in ENROLLMENT_TIERS}
    cur = conn.cursor()
    cur.execute("SELECT enrollment_tier FROM Employee WHERE company_id = ?", (company["id"],))
    employees = cur.fetchall()
    if employees:
        for row in employees:
            tier = row["enrollment_tier"]
            if tier in counts:
                counts[tier] += 1
        return counts
    cur.execute("SELECT full_time_employees FROM CoverageInformation WHERE company_id = ?", (company["id"],))
    coverage = cur.fetchone()
    if coverage and coverage["full_time_employees"]:
        counts["employee"] = int(coverage["full_time_employees"])
    else:
        counts["employee"] = int(company["employee_count"] or 0)
    return counts


def primary_owner(conn: sqlite3.Connection, company_id: str) -> Optional[sqlite3.Row]:
    cur = conn.cursor()
    cur.execute(
        """
        SELECT * FROM Owner
        WHERE company_id = ?
        ORDER BY ownership_percentage DESC, created_at
        LIMIT 1
        """,
        (company_id,),
    )
    return cur.fetchone()


def coverage_for_company(conn: sqlite3.Connection, company_id: str) -> Optional[sqlite3.Row]:
    cur = conn.cursor()
    cur.execute("SELECT * FROM CoverageInformation WHERE company_id = ?", (company_id,))
    return cur.fetchone()


def initiator_for_company(conn: sqlite3.Connection, company_id: str) -> Optional[sqlite3.Row]:
    cur = conn.cursor()
    cur.execute("SELECT * FROM ApplicationInitiator WHERE company_id = ?", (company_id,))
    return cur.fetchone()


# ----------------------
# Document assembly
# ----------------------

def build_form_sources(
    conn: sqlite3.Connection,
    company: Any,
    plan: Optional[Any] = None,
    employee: Optional[Any] = None,
) -> Dict[str, Optional[Dict[str, Any]]]:
    application = ensure_application(conn, company["id"], company["user_id"])
    owner = primary_owner(conn, company["id"])
    owner_data: Optional[Dict[str, Any]] = None
    if owner:
        owner_data = owner_out(owner)
        owner_data["full_name"] = " ".join(
            part for part in (owner["first_name"], owner["last_name"]) if part
        )

    application_data = application_out(application)
    application_data["company_name"] = company["name"]
    if plan is None:
        plans = selected_plan_rows(conn, company["id"])
        plan = plans[0] if plans else None
    if plan is not None:
        application_data["plan_name"] = plan["name"]
        application_data["plan_carrier"] = plan["carrier"]
        contribution = company_contribution_rows(conn, company["id"]).get(plan["id"])
        if contribution:
            application_data["employee_contribution"] = contribution["employee_contribution"]
            application_data["dependent_contribution"] = contribution["spouse_contribution"]
            application_data["contribution_type"] = contribution["contribution_type"]

    return {
        "company": company_out(company),
        "owner": owner_data,
        "application": application_data,
        "employee": employee_out(employee) if employee else None,
    }


def build_submission_form_data(conn: sqlite3.Connection, company: Any) -> Dict[str, Any]:
    application = ensure_application(conn, company["id"], company["user_id"])
    owner = primary_owner(conn, company["id"])
    coverage = coverage_for_company(conn, company["id"])
    initiator = initiator_for_company(conn, company["id"])
    plans = selected_plan_rows(conn, company["id"])

    form_data: Dict[str, Any] = {
        "companyName": company["name"],
        "companyAddress": company["address"],
        "companyCity": company["city"],
        "companyState": company["state"],
        "companyZip": company["zip"],
        "companyPhone": company["phone"],
        "taxId": company["tax_id"],
        "industry": company["industry"],
        "employeeCount": company["employee_count"],
        "contactName": application["authorized_contact_name"],
        "contactTitle": application["authorized_contact_title"],
        "contactEmail": application["authorized_contact_email"],
        "contactPhone": application["authorized_contact_phone"],
        "priorCoverage": bool(company["has_prior_coverage"]),
        "currentCarrier": company["current_carrier"],
        "effectiveDate": company["effective_date"],
        "selectedCarrier": application["selected_carrier"],
        "selectedPlans": [f"{plan['carrier']} {plan['name']}" for plan in plans],
        "applicationStatus": application["status"],
    }
    if initiator:
        form_data["initiatorName"] = f"{initiator['first_name']} {initiator['last_name']}".strip()
        form_data["initiatorEmail"] = initiator["email"]
        form_data["initiatorPhone"] = initiator["phone"]
    if owner:
        form_data["ownerName"] = f"{owner['first_name'] or ''} {owner['last_name'] or ''}".strip()
        form_data["ownerEmail"] = owner["email"]
        form_data["ownerPhone"] = owner["phone"]
        form_data["ownerAddress"] = owner["address"]
        form_data["ownershipPercentage"] = f"{owner['ownership_percentage'] or 0:g}%"
    if coverage:
        form_data["requestedCoverage"] = parse_json_list(coverage["benefits"])
        form_data["coverageType"] = coverage["cobra_type"]
        form_data["effectiveDate"] = coverage["effective_date"] or company["effective_date"]
    return form_data


def submission_user(user: Any) -> SubmissionUser:
    name = " ".join(part for part in (user["first_name"], user["last_name"]) if part)
    return SubmissionUser(
        name=name or (user["username"] or user["email"] or "Unknown"),
        email=user["email"] or "",
        phone=user["phone"],
    )


def money(value: Any) -> str:
    return f"${float(value or 0):,.2f}"


def build_proposal_sections(
    conn: sqlite3.Connection, company: Any, flags: Dict[str, bool]
) -> Dict[str, List[tuple[str, str]]]:
    sections: Dict[str, List[tuple[str, str]]] = {
        "Company Information": [
            ("Company Name", format_field_value(company["name"])),
            ("Employee Count", format_field_value(company["employee_count"])),
            ("Effective Date", format_field_value(company["effective_date"])),
        ]
    }
    contributions = company_contribution_rows(conn, company["id"])
    counts = census_tier_counts(conn, company)
    for plan in selected_plan_rows(conn, company["id"]):
        rows: List[tuple[str, str]] = [
            ("Carrier", plan["carrier"]),
            ("Plan Type", format_field_value(plan["plan_type"])),
            ("Metal Tier", format_field_value(plan["metal_tier"])),
            ("Base Monthly Premium", money(plan["monthly_premium"])),
        ]
        contribution = contributions.get(plan["id"])
        if contribution is None:
            rows.append(("Employer Contribution", "Not configured"))
            sections[f"Plan: {plan['name']}"] = rows
            continue
        model = contribution_model_from_row(contribution)
        for cost in calculate_tier_costs(plan["monthly_premium"], model):
            rows.append(
                (
                    cost.label,
                    f"Premium {money(cost.premium)} | Employer {money(cost.employer_cost)} "
                    f"| Employee {money(cost.employee_cost)}",
                )
            )
        if flags.get("PREMIUM_CALCULATION"):
            totals = calculate_employer_cost(plan["monthly_premium"], model, counts)
            rows.append(("Enrolled Employees", str(totals["enrolled"])))
            rows.append(("Employer Monthly Cost", money(totals["employer_monthly"])))
            rows.append(("Employer Annual Cost", money(totals["employer_annual"])))
            rows.append(("Employee Monthly Cost", money(totals["employee_monthly"])))
        sections[f"Plan: {plan['name']}"] = rows
    return sections


def company_branding(conn: sqlite3.Connection, company: Any) -> Dict[str, Any]:
    return user_branding(conn, company["user_id"])


def user_branding(conn: sqlite3.Connection, user_id: str) -> Dict[str, Any]:
    cur = conn.cursor()
    cur.execute(
        """
        SELECT b.*
        FROM User u
        JOIN Broker b ON b.id = u.broker_id
        WHERE u.id = ?
        """,
        (user_id,),
    )
    broker = cur.fetchone()
    if not broker:
        return {"name": DEFAULT_BRAND_NAME, **DEFAULT_BROKER_COLORS}
    out = broker_out(broker)
    return {"name": out.name, "primary_color": out.primary_color, "secondary_color": out.secondary_color}


def record_generated_pdf(
    conn: sqlite3.Connection,
    company_id: str,
    kind: str,
    path: Path,
    user: Any,
    template_id: Optional[str] = None,
) -> str:
    generated_id = str(uuid.uuid4())
    cur = conn.cursor()
    cur.execute(
        """
        INSERT INTO GeneratedPdf (
            id, company_id, template_id, kind, filename, path, status, created_by, created_at
        ) VALUES (?, ?, ?, ?, ?, ?, 'generated', ?, ?)
        """,
        (generated_id, company_id, template_id, kind, path.name, str(path), user["id"], now_iso()),
    )
    return generated_id


def pdf_file_response(path: Path, filename: str, generated_id: str) -> FileResponse:
    return FileResponse(
        path,
        media_type="application/pdf",
        filename=filename,
        headers={"X-Generated-Pdf-Id": generated_id},
    )


# ----------------------
# Error handlers
# ----------------------

@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = [
        {
            "path": ".".join(str(part) for part in error.get("loc", ()) if part != "body"),
            "message": error.get("msg", "Invalid value"),
        }
        for error in exc.errors()
    ]
    return JSONResponse(status_code=400, content={"message": "Validation error", "errors": errors})


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("unhandled_error", path=request.url.path, method=request.method)
    return JSONResponse(status_code=500, content={"message": "Internal server error"})


# ----------------------
# API routes
# ----------------------

@app.on_event("startup")
async def startup_event() -> None:
    configure_logging(LOG_LEVEL, LOG_JSON)
    init_db()
    logger.info("startup_complete", db_path=str(DB_PATH), uploads_dir=str(UPLOADS_DIR))


@app.get("/health")
def health() -> Dict[str, str]:
    return {"status": "ok"}


@app.post("/api/auth/register", response_model=UserOut)
def register(payload: RegisterIn, response: Response) -> UserOut:
    username = normalize_username(payload.username)
    email = normalize_user_email(payload.email)
    password = require_valid_password(payload.password, required=True)
    salt, password_hash = create_password_credentials(password)
    now = now_iso()
    user_id = str(uuid.uuid4())
    with get_db() as conn:
        cur = conn.cursor()
        cur.execute(
            "SELECT username, email FROM User WHERE username = ? OR email = ?",
            (username, email),
        )
        existing = cur.fetchone()
        if existing:
            if existing["username"] == username:
                raise HTTPException(status_code=400, detail="Username is already taken")
            raise HTTPException(status_code=400, detail="Email is already registered")
        cur.execute(
            """
            INSERT INTO User (
                id, username, email, first_name, last_name, phone, company_name, role,
                password_salt, password_hash, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, 'employer', ?, ?, ?, ?)
            """,
            (
                user_id,
                username,
                email,
                (payload.first_name or "").strip() or None,
                (payload.last_name or "").strip() or None,
                (payload.phone or "").strip() or None,
                (payload.company_name or "").strip() or None,
                salt,
                password_hash,
                now,
                now,
            ),
        )
        conn.commit()
        session_token = create_auth_session(conn, user_id)
        user = fetch_user(conn, user_id)
    set_session_cookie(response, session_token)
    logger.info("user_registered", user_id=user_id, username=username)
    return to_user_out(user)


@app.get("/api/auth/check-availability")
def check_availability(username: Optional[str] = None, email: Optional[str] = None) -> Dict[str, Optional[bool]]:
    result: Dict[str, Optional[bool]] = {"username_available": None, "email_available": None}
    with get_db() as conn:
        cur = conn.cursor()
        if username and username.strip():
            cur.execute("SELECT 1 FROM User WHERE username = ?", (username.strip().lower(),))
            result["username_available"] = cur.fetchone() is None
        if email and email.strip():
            cur.execute("SELECT 1 FROM User WHERE email = ?", (email.strip().lower(),))
            result["email_available"] = cur.fetchone() is None
    return result


@app.post("/api/auth/login", response_model=UserOut)
def login_with_password(payload: LoginIn, response: Response) -> UserOut:
    identifier = (payload.email or payload.username or "").strip().lower()
    if not identifier or not payload.password:
        raise HTTPException(status_code=400, detail="Username or email and password are required")

    with get_db() as conn:
        cur = conn.cursor()
        cur.execute("SELECT * FROM User WHERE email = ? OR username = ?", (identifier, identifier))
        user = cur.fetchone()
        if not user or not verify_password(
            payload.password,
            user["password_salt"],
            user["password_hash"],
        ):
            logger.info("login_failed", identifier=identifier)
            raise HTTPException(status_code=401, detail="Invalid credentials")
        session_token = create_auth_session(conn, user["id"])

    set_session_cookie(response, session_token)
    return to_user_out(user)


@app.get("/api/auth/me", response_model=UserOut)
def get_auth_me(request: Request) -> UserOut:
    with get_db() as conn:
        user = require_session_user(conn, request)
    return to_user_out(user)


@app.post("/api/auth/logout")
def logout(response: Response, request: Request) -> Dict[str, str]:
    token = request.cookies.get(SESSION_COOKIE_NAME)
    if token:
        session_hash = sha256_hex(token)
        with get_db() as conn:
            cur = conn.cursor()
            cur.execute("DELETE FROM AuthSession WHERE session_hash = ?", (session_hash,))
            conn.commit()
    response.delete_cookie(SESSION_COOKIE_NAME, path="/")
    return {"status": "ok"}


@app.get("/api/feature-flags")
def get_feature_flags() -> Dict[str, bool]:
    return read_feature_flags()


@app.get("/api/enrollment/steps")
def get_enrollment_steps() -> List[Dict[str, Any]]:
    flags = read_feature_flags()
    return [
        {"id": step.id, "title": step.title, "description": step.description, "index": index}
        for index, step in enumerate(enabled_steps(flags))
    ]


# ----------------------
# Admin: users and brokers
# ----------------------

@app.get("/api/admin/users", response_model=List[UserOut])
def list_users(request: Request) -> List[UserOut]:
    with get_db() as conn:
        require_session_role(conn, request, {"admin"})
        cur = conn.cursor()
        cur.execute("SELECT * FROM User ORDER BY created_at DESC")
        rows = cur.fetchall()
    return [to_user_out(row) for row in rows]


@app.patch("/api/admin/users/{user_id}", response_model=UserOut)
def update_user(user_id: str, payload: UserUpdate, request: Request) -> UserOut:
    data = payload.model_dump(exclude_unset=True)
    with get_db() as conn:
        require_session_role(conn, request, {"admin"})
        fetch_user(conn, user_id)
        updates: Dict[str, Any] = {}
        if "role" in data:
            updates["role"] = normalize_user_role(data["role"])
        if "broker_id" in data:
            broker_id = (data["broker_id"] or "").strip() or None
            if broker_id:
                fetch_broker(conn, broker_id)
            updates["broker_id"] = broker_id
        apply_updates(conn, "User", user_id, updates)
        conn.commit()
        user = fetch_user(conn, user_id)
    return to_user_out(user)


@app.get("/api/admin/brokers", response_model=List[BrokerOut])
def list_brokers(request: Request) -> List[BrokerOut]:
    with get_db() as conn:
        require_session_role(conn, request, {"admin"})
        cur = conn.cursor()
        cur.execute("SELECT * FROM Broker ORDER BY name")
        rows = cur.fetchall()
    return [broker_out(row) for row in rows]


@app.post("/api/admin/brokers", response_model=BrokerOut)
def create_broker(payload: BrokerIn, request: Request) -> BrokerOut:
    name = payload.name.strip()
    if not name:
        raise HTTPException(status_code=400, detail="Broker name is required")
    primary = normalize_color(payload.primary_color, DEFAULT_BROKER_COLORS["primary_color"])
    secondary = normalize_color(payload.secondary_color, DEFAULT_BROKER_COLORS["secondary_color"])
    now = now_iso()
    broker_id = str(uuid.uuid4())
    with get_db() as conn:
        require_session_role(conn, request, {"admin"})
        cur = conn.cursor()
        cur.execute(
            """
            INSERT INTO Broker (id, name, logo_url, primary_color, secondary_color, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (broker_id, name, (payload.logo_url or "").strip() or None, primary, secondary, now, now),
        )
        conn.commit()
        broker = fetch_broker(conn, broker_id)
    return broker_out(broker)


@app.patch("/api/admin/brokers/{broker_id}", response_model=BrokerOut)
def update_broker(broker_id: str, payload: BrokerUpdate, request: Request) -> BrokerOut:
    data = payload.model_dump(exclude_unset=True)
    with get_db() as conn:
        require_session_role(conn, request, {"admin"})
        fetch_broker(conn, broker_id)
        updates: Dict[str, Any] = {}
        if "name" in data:
            name = (data["name"] or "").strip()
            if not name:
                raise HTTPException(status_code=400, detail="Broker name is required")
            updates["name"] = name
        if "logo_url" in data:
            updates["logo_url"] = (data["logo_url"] or "").strip() or None
        for key in ("primary_color", "secondary_color"):
            if key in data:
                updates[key] = normalize_color(data[key], DEFAULT_BROKER_COLORS[key])
        apply_updates(conn, "Broker", broker_id, updates)
        conn.commit()
        broker = fetch_broker(conn, broker_id)
    return broker_out(broker)


# ----------------------
# Broker portal
# ----------------------

@app.get("/api/broker/branding")
def get_broker_branding(request: Request) -> Dict[str, Any]:
    with get_db() as conn:
        user = require_session_user(conn, request)
        broker = None
        if user["broker_id"]:
            cur = conn.cursor()
            cur.execute("SELECT * FROM Broker WHERE id = ?", (user["broker_id"],))
            broker = cur.fetchone()
    if not broker:
        return {"name": DEFAULT_BRAND_NAME, "logo_url": None, **DEFAULT_BROKER_COLORS}
    out = broker_out(broker)
    return {
        "name": out.name,
        "logo_url": out.logo_url,
        "primary_color": out.primary_color,
        "secondary_color": out.secondary_color,
    }


@app.get("/api/broker/companies")
def list_broker_companies(request: Request) -> List[Dict[str, Any]]:
    with get_db() as conn:
        user = require_session_user(conn, request)
        broker_id = require_broker_id(user)
        cur = conn.cursor()
        cur.execute(
            """
            SELECT c.*, u.email AS owner_email
            FROM Company c
            JOIN User u ON u.id = c.user_id
            WHERE u.broker_id = ?
            ORDER BY c.created_at DESC
            """,
            (broker_id,),
        )
        rows = cur.fetchall()
    return [company_out(row) for row in rows]


@app.get("/api/broker/applications")
def list_broker_applications(request: Request) -> List[Dict[str, Any]]:
    with get_db() as conn:
        user = require_session_user(conn, request)
        broker_id = require_broker_id(user)
        flags = read_feature_flags()
        cur = conn.cursor()
        cur.execute(
            """
            SELECT a.*, c.name AS company_name
            FROM Application a
            JOIN Company c ON c.id = a.company_id
            JOIN User u ON u.id = c.user_id
            WHERE u.broker_id = ?
            ORDER BY a.updated_at DESC
            """,
            (broker_id,),
        )
        rows = cur.fetchall()
    return [application_out(row, flags) for row in rows]


@app.get("/api/broker/users", response_model=List[UserOut])
def list_broker_users(request: Request) -> List[UserOut]:
    with get_db() as conn:
        user = require_session_role(conn, request, {"owner"})
        broker_id = require_broker_id(user)
        cur = conn.cursor()
        cur.execute("SELECT * FROM User WHERE broker_id = ? ORDER BY created_at", (broker_id,))
        rows = cur.fetchall()
    return [to_user_out(row) for row in rows]


# ----------------------
# Enrollment setup
# ----------------------

def first_company_for_user(conn: sqlite3.Connection, user_id: str) -> Optional[sqlite3.Row]:
    cur = conn.cursor()
    cur.execute(
        "SELECT * FROM Company WHERE user_id = ? ORDER BY created_at LIMIT 1",
        (user_id,),
    )
    return cur.fetchone()


def insert_company(conn: sqlite3.Connection, user_id: str, data: Dict[str, Any]) -> sqlite3.Row:
    name = (data.get("name") or "").strip()
    if not name:
        raise HTTPException(status_code=400, detail="Company name is required")
    employee_count = int(data.get("employee_count") or 0)
    if employee_count < 0:
        raise HTTPException(status_code=400, detail="Employee count cannot be negative")
    now = now_iso()
    company_id = str(uuid.uuid4())
    cur = conn.cursor()
    cur.execute(
        """
        INSERT INTO Company (
            id, user_id, name, address, city, state, zip, phone, tax_id, industry,
            employee_count, has_prior_coverage, current_carrier, effective_date, created_at, updated_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            company_id,
            user_id,
            name,
            data.get("address"),
            data.get("city"),
            data.get("state"),
            data.get("zip"),
            data.get("phone"),
            data.get("tax_id"),
            data.get("industry"),
            employee_count,
            1 if data.get("has_prior_coverage") else 0,
            data.get("current_carrier"),
            data.get("effective_date"),
            now,
            now,
        ),
    )
    ensure_application(conn, company_id, user_id)
    logger.info("company_created", company_id=company_id, user_id=user_id)
    return fetch_company(conn, company_id)


def company_updates(data: Dict[str, Any]) -> Dict[str, Any]:
    updates: Dict[str, Any] = {}
    for key, value in data.items():
        if key == "name":
            name = (value or "").strip()
            if not name:
                raise HTTPException(status_code=400, detail="Company name is required")
            updates["name"] = name
        elif key == "employee_count":
            if value is not None and value < 0:
                raise HTTPException(status_code=400, detail="Employee count cannot be negative")
            updates["employee_count"] = value or 0
        elif key == "has_prior_coverage":
            updates["has_prior_coverage"] = 1 if value else 0
        else:
            updates[key] = value
    return updates


@app.get("/api/application-initiator")
def get_application_initiator(request: Request) -> Optional[Dict[str, Any]]:
    with get_db() as conn:
        user = require_session_user(conn, request)
        cur = conn.cursor()
        cur.execute("SELECT * FROM ApplicationInitiator WHERE user_id = ?", (user["id"],))
        row = cur.fetchone()
    if not row:
        return None
    data = dict(row)
    data["is_owner"] = bool(data.get("is_owner"))
    return data


@app.post("/api/application-initiator")
def save_application_initiator(payload: InitiatorIn, request: Request) -> Dict[str, Any]:
    first_name = payload.first_name.strip()
    last_name = payload.last_name.strip()
    if not first_name or not last_name:
        raise HTTPException(status_code=400, detail="First and last name are required")
    with get_db() as conn:
        user = require_session_user(conn, request)
        company = first_company_for_user(conn, user["id"])
        if not company:
            company = insert_company(conn, user["id"], {"name": f"{first_name} {last_name} Company"})
        ensure_application(conn, company["id"], user["id"])

        now = now_iso()
        cur = conn.cursor()
        cur.execute("SELECT id FROM ApplicationInitiator WHERE user_id = ?", (user["id"],))
        existing = cur.fetchone()
        values = {
            "company_id": company["id"],
            "first_name": first_name,
            "last_name": last_name,
            "title": payload.title,
            "email": payload.email,
            "phone": payload.phone,
            "is_owner": 1 if payload.is_owner else 0,
        }
        if existing:
            apply_updates(conn, "ApplicationInitiator", existing["id"], values)
            initiator_id = existing["id"]
        else:
            initiator_id = str(uuid.uuid4())
            cur.execute(
                """
                INSERT INTO ApplicationInitiator (
                    id, user_id, company_id, first_name, last_name, title, email, phone,
                    is_owner, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    initiator_id,
                    user["id"],
                    company["id"],
                    first_name,
                    last_name,
                    payload.title,
                    payload.email,
                    payload.phone,
                    values["is_owner"],
                    now,
                    now,
                ),
            )
        application = record_application_progress(conn, company["id"], "application-initiator")
        conn.commit()
        cur.execute("SELECT * FROM ApplicationInitiator WHERE id = ?", (initiator_id,))
        row = cur.fetchone()
    data = dict(row)
    data["is_owner"] = bool(data.get("is_owner"))
    data["application_id"] = application["id"]
    return data


@app.get("/api/company-information")
def get_company_information(request: Request) -> Optional[Dict[str, Any]]:
    with get_db() as conn:
        user = require_session_user(conn, request)
        company = first_company_for_user(conn, user["id"])
    return company_out(company) if company else None


@app.post("/api/company-information")
def save_company_information(payload: CompanyIn, request: Request) -> Dict[str, Any]:
    data = payload.model_dump()
    with get_db() as conn:
        user = require_session_user(conn, request)
        company = first_company_for_user(conn, user["id"])
        if company:
            apply_updates(conn, "Company", company["id"], company_updates(data))
            company_id = company["id"]
        else:
            company_id = insert_company(conn, user["id"], data)["id"]
        record_application_progress(conn, company_id, "company-information")
        conn.commit()
        company = fetch_company(conn, company_id)
    return company_out(company)


def coverage_out(row: Any) -> Dict[str, Any]:
    data = dict(row)
    data["had_20_plus_employees"] = bool(data.get("had_20_plus_employees"))
    data["benefits"] = parse_json_list(data.get("benefits"))
    data["selected_carriers"] = parse_json_list(data.get("selected_carriers"))
    return data


@app.get("/api/coverage-information")
def get_coverage_information(request: Request) -> Optional[Dict[str, Any]]:
    with get_db() as conn:
        user = require_session_user(conn, request)
        cur = conn.cursor()
        cur.execute("SELECT * FROM CoverageInformation WHERE user_id = ?", (user["id"],))
        row = cur.fetchone()
    return coverage_out(row) if row else None


@app.post("/api/coverage-information")
def save_coverage_information(payload: CoverageIn, request: Request) -> Dict[str, Any]:
    if payload.full_time_employees < 0 or payload.part_time_employees < 0:
        raise HTTPException(status_code=400, detail="Employee counts cannot be negative")
    cobra_type = "federal" if payload.had_20_plus_employees else "cal-cobra"
    benefits = [value.strip().lower() for value in payload.benefits if value.strip()]
    carriers = [value.strip() for value in payload.selected_carriers if value.strip()]
    with get_db() as conn:
        user = require_session_user(conn, request)
        company = first_company_for_user(conn, user["id"])
        company_id = company["id"] if company else None
        values = {
            "company_id": company_id,
            "full_time_employees": payload.full_time_employees,
            "part_time_employees": payload.part_time_employees,
            "had_20_plus_employees": 1 if payload.had_20_plus_employees else 0,
            "cobra_type": cobra_type,
            "benefits": json.dumps(benefits),
            "selected_carriers": json.dumps(carriers),
            "effective_date": payload.effective_date,
        }
        cur = conn.cursor()
        cur.execute("SELECT id FROM CoverageInformation WHERE user_id = ?", (user["id"],))
        existing = cur.fetchone()
        if existing:
            apply_updates(conn, "CoverageInformation", existing["id"], values)
            coverage_id = existing["id"]
        else:
            coverage_id = str(uuid.uuid4())
            now = now_iso()
            columns = ["id", "user_id", *values.keys(), "created_at", "updated_at"]
            placeholders = ", ".join("?" for _ in columns)
            cur.execute(
                f"INSERT INTO CoverageInformation ({', '.join(columns)}) VALUES ({placeholders})",
                (coverage_id, user["id"], *values.values(), now, now),
            )
        if company_id:
            record_application_progress(conn, company_id, "coverage-information")
        conn.commit()
        cur.execute("SELECT * FROM CoverageInformation WHERE id = ?", (coverage_id,))
        row = cur.fetchone()
    return coverage_out(row)


# ----------------------
# Companies
# ----------------------

@app.get("/api/companies")
def list_companies(request: Request) -> List[Dict[str, Any]]:
    with get_db() as conn:
        user = require_session_user(conn, request)
        role = (user["role"] or "").strip().lower()
        cur = conn.cursor()
        if role == "admin":
            cur.execute("SELECT * FROM Company ORDER BY created_at DESC")
        elif role in BROKER_ROLES and user["broker_id"]:
            cur.execute(
                """
                SELECT c.*
                FROM Company c
                JOIN User u ON u.id = c.user_id
                WHERE u.broker_id = ? OR c.user_id = ?
                ORDER BY c.created_at DESC
                """,
                (user["broker_id"], user["id"]),
            )
        else:
            cur.execute("SELECT * FROM Company WHERE user_id = ? ORDER BY created_at DESC", (user["id"],))
        rows = cur.fetchall()
    return [company_out(row) for row in rows]


@app.post("/api/companies")
def create_company(payload: CompanyIn, request: Request) -> Dict[str, Any]:
    with get_db() as conn:
        user = require_session_user(conn, request)
        company = insert_company(conn, user["id"], payload.model_dump())
        record_application_progress(conn, company["id"], "company")
        conn.commit()
    return company_out(company)


@app.get("/api/companies/{company_id}")
def get_company(company_id: str, request: Request) -> Dict[str, Any]:
    with get_db() as conn:
        user = require_session_user(conn, request)
        company = require_company_access(conn, user, company_id)
    return company_out(company)


@app.patch("/api/companies/{company_id}")
def update_company(company_id: str, payload: CompanyUpdate, request: Request) -> Dict[str, Any]:
    updates = company_updates(payload.model_dump(exclude_unset=True))
    with get_db() as conn:
        user = require_session_user(conn, request)
        require_company_access(conn, user, company_id)
        apply_updates(conn, "Company", company_id, updates)
        record_application_progress(conn, company_id, "company")
        conn.commit()
        company = fetch_company(conn, company_id)
    return company_out(company)


@app.delete("/api/companies/{company_id}")
def delete_company(company_id: str, request: Request) -> Dict[str, Any]:
    with get_db() as conn:
        user = require_session_user(conn, request)
        require_company_access(conn, user, company_id)
        cur = conn.cursor()
        cur.execute("SELECT path FROM Document WHERE company_id = ?", (company_id,))
        paths = [row["path"] for row in cur.fetchall()]
        cur.execute("SELECT path FROM GeneratedPdf WHERE company_id = ?", (company_id,))
        paths.extend(row["path"] for row in cur.fetchall())
        cur.execute("DELETE FROM Company WHERE id = ?", (company_id,))
        conn.commit()
    for path in paths:
        remove_file(path)
    logger.info("company_deleted", company_id=company_id, files_removed=len(paths))
    return {"status": "deleted", "company_id": company_id}


# ----------------------
# Owners
# ----------------------

def ownership_total(conn: sqlite3.Connection, company_id: str, exclude_owner_id: Optional[str] = None) -> float:
    cur = conn.cursor()
    cur.execute(
        "SELECT COALESCE(SUM(ownership_percentage), 0) AS total FROM Owner WHERE company_id = ? AND id != ?",
        (company_id, exclude_owner_id or ""),
    )
    return float(cur.fetchone()["total"] or 0)


def check_ownership(conn: sqlite3.Connection, company_id: str, percentage: float, owner_id: Optional[str] = None) -> None:
    if percentage < 0 or percentage > 100:
        raise HTTPException(status_code=400, detail="Ownership percentage must be between 0 and 100")
    if ownership_total(conn, company_id, owner_id) + percentage > 100:
        raise HTTPException(status_code=400, detail="Total ownership cannot exceed 100%")


def sync_authorized_contact(conn: sqlite3.Connection, company_id: str, owner: Any) -> None:
    if not owner["is_authorized_contact"]:
        return
    application = ensure_application(conn, company_id, None)
    apply_updates(
        conn,
        "Application",
        application["id"],
        {
            "authorized_contact_name": f"{owner['first_name'] or ''} {owner['last_name'] or ''}".strip(),
            "authorized_contact_title": owner["title"],
            "authorized_contact_email": owner["email"],
            "authorized_contact_phone": owner["phone"],
        },
    )
    record_application_progress(conn, company_id, "authorized-contact")


@app.get("/api/companies/{company_id}/owners")
def list_owners(company_id: str, request: Request) -> List[Dict[str, Any]]:
    with get_db() as conn:
        user = require_session_user(conn, request)
        require_company_access(conn, user, company_id)
        cur = conn.cursor()
        cur.execute("SELECT * FROM Owner WHERE company_id = ? ORDER BY created_at", (company_id,))
        rows = cur.fetchall()
    return [owner_out(row) for row in rows]


@app.post("/api/companies/{company_id}/owners")
def create_owner(company_id: str, payload: OwnerIn, request: Request) -> Dict[str, Any]:
    first_name = payload.first_name.strip()
    last_name = payload.last_name.strip()
    if not first_name or not last_name:
        raise HTTPException(status_code=400, detail="First and last name are required")
    with get_db() as conn:
        user = require_session_user(conn, request)
        require_company_access(conn, user, company_id)
        check_ownership(conn, company_id, payload.ownership_percentage)
        now = now_iso()
        owner_id = str(uuid.uuid4())
        cur = conn.cursor()
        cur.execute(
            """
            INSERT INTO Owner (
                id, company_id, first_name, last_name, title, email, phone, address,
                ownership_percentage, is_authorized_contact, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                owner_id,
                company_id,
                first_name,
                last_name,
                payload.title,
                payload.email,
                payload.phone,
                payload.address,
                payload.ownership_percentage,
                1 if payload.is_authorized_contact else 0,
                now,
                now,
            ),
        )
        owner = fetch_owner(conn, company_id, owner_id)
        record_application_progress(conn, company_id, "ownership")
        sync_authorized_contact(conn, company_id, owner)
        conn.commit()
    return owner_out(owner)


@app.patch("/api/companies/{company_id}/owners/{owner_id}")
def update_owner(company_id: str, owner_id: str, payload: OwnerUpdate, request: Request) -> Dict[str, Any]:
    data = payload.model_dump(exclude_unset=True)
    with get_db() as conn:
        user = require_session_user(conn, request)
        require_company_access(conn, user, company_id)
        fetch_owner(conn, company_id, owner_id)
        if data.get("ownership_percentage") is not None:
            check_ownership(conn, company_id, data["ownership_percentage"], owner_id)
        if "is_authorized_contact" in data:
            data["is_authorized_contact"] = 1 if data["is_authorized_contact"] else 0
        apply_updates(conn, "Owner", owner_id, data)
        owner = fetch_owner(conn, company_id, owner_id)
        record_application_progress(conn, company_id, "ownership")
        sync_authorized_contact(conn, company_id, owner)
        conn.commit()
    return owner_out(owner)


@app.delete("/api/companies/{company_id}/owners/{owner_id}")
def delete_owner(company_id: str, owner_id: str, request: Request) -> Dict[str, str]:
    with get_db() as conn:
        user = require_session_user(conn, request)
        require_company_access(conn, user, company_id)
        fetch_owner(conn, company_id, owner_id)
        cur = conn.cursor()
        cur.execute("DELETE FROM Owner WHERE id = ?", (owner_id,))
        conn.commit()
    return {"status": "deleted"}


# ----------------------
# Employees
# ----------------------

def normalize_tier_or_400(value: Optional[str]) -> Optional[str]:
    try:
        return normalize_enrollment_tier(value)
    except ContributionError as exc:
        raise HTTPException(status_code=400, detail=str(exc))


@app.get("/api/companies/{company_id}/employees")
def list_employees(company_id: str, request: Request) -> List[Dict[str, Any]]:
    with get_db() as conn:
        user = require_session_user(conn, request)
        require_company_access(conn, user, company_id)
        cur = conn.cursor()
        cur.execute(
            "SELECT * FROM Employee WHERE company_id = ? ORDER BY last_name, first_name",
            (company_id,),
        )
        rows = cur.fetchall()
    return [employee_out(row) for row in rows]


@app.post("/api/companies/{company_id}/employees")
def create_employee(company_id: str, payload: EmployeeIn, request: Request) -> Dict[str, Any]:
    first_name = payload.first_name.strip()
    last_name = payload.last_name.strip()
    if not first_name or not last_name:
        raise HTTPException(status_code=400, detail="First and last name are required")
    tier = normalize_tier_or_400(payload.enrollment_tier)
    with get_db() as conn:
        user = require_session_user(conn, request)
        require_company_access(conn, user, company_id)
        now = now_iso()
        employee_id = str(uuid.uuid4())
        cur = conn.cursor()
        cur.execute(
            """
            INSERT INTO Employee (
                id, company_id, first_name, last_name, email, phone, date_of_birth, ssn,
                hire_date, job_title, salary, enrollment_tier, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                employee_id,
                company_id,
                first_name,
                last_name,
                payload.email,
                payload.phone,
                payload.date_of_birth,
                payload.ssn,
                payload.hire_date,
                payload.job_title,
                payload.salary,
                tier,
                now,
                now,
            ),
        )
        record_application_progress(conn, company_id, "employees")
        conn.commit()
        employee = fetch_employee(conn, company_id, employee_id)
    return employee_out(employee)


@app.patch("/api/companies/{company_id}/employees/{employee_id}")
def update_employee(company_id: str, employee_id: str, payload: EmployeeUpdate, request: Request) -> Dict[str, Any]:
    data = payload.model_dump(exclude_unset=True)
    if "enrollment_tier" in data:
        data["enrollment_tier"] = normalize_tier_or_400(data["enrollment_tier"])
    with get_db() as conn:
        user = require_session_user(conn, request)
        require_company_access(conn, user, company_id)
        fetch_employee(conn, company_id, employee_id)
        apply_updates(conn, "Employee", employee_id, data)
        record_application_progress(conn, company_id, "employees")
        conn.commit()
        employee = fetch_employee(conn, company_id, employee_id)
    return employee_out(employee)


@app.delete("/api/companies/{company_id}/employees/{employee_id}")
def delete_employee(company_id: str, employee_id: str, request: Request) -> Dict[str, str]:
    with get_db() as conn:
        user = require_session_user(conn, request)
        require_company_access(conn, user, company_id)
        fetch_employee(conn, company_id, employee_id)
        cur = conn.cursor()
        cur.execute("DELETE FROM Employee WHERE id = ?", (employee_id,))
        conn.commit()
    return {"status": "deleted"}


# ----------------------
# Documents
# ----------------------

def company_document_validation(conn: sqlite3.Connection, company: Any, flags: Dict[str, bool]):
    cur = conn.cursor()
    cur.execute("SELECT DISTINCT type FROM Document WHERE company_id = ?", (company["id"],))
    uploaded = [row["type"] for row in cur.fetchall()]
    application = ensure_application(conn, company["id"], company["user_id"])
    carrier = application["selected_carrier"] or company["current_carrier"]
    return validate_documents(
        uploaded,
        has_prior_coverage=bool(company["has_prior_coverage"]),
        employee_count=int(company["employee_count"] or 0),
        carrier=carrier,
        flags=flags,
    )


@app.post("/api/companies/{company_id}/documents")
def upload_document(
    company_id: str,
    request: Request,
    file: UploadFile = File(...),
    document_type: str = Form(...),
    category: Annotated[Optional[str], Form()] = None,
) -> Dict[str, Any]:
    document_type = (document_type or "").strip()
    if not document_type:
        raise HTTPException(status_code=400, detail="Document type is required")
    with get_db() as conn:
        user = require_session_user(conn, request)
        require_company_access(conn, user, company_id)
    file_id, filename, path, size = save_document_upload(company_id, file)
    created_at = now_iso()
    with get_db() as conn:
        cur = conn.cursor()
        cur.execute(
            """
            INSERT INTO Document (id, company_id, user_id, type, category, filename, path, size, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (file_id, company_id, user["id"], document_type, category, filename, str(path), size, created_at),
        )
        record_application_progress(conn, company_id, "documents")
        conn.commit()
        document = fetch_document(conn, file_id)
    logger.info("document_uploaded", company_id=company_id, document_id=file_id, type=document_type, size=size)
    return dict(document)


@app.get("/api/companies/{company_id}/documents")
def list_documents(company_id: str, request: Request) -> List[Dict[str, Any]]:
    with get_db() as conn:
        user = require_session_user(conn, request)
        require_company_access(conn, user, company_id)
        cur = conn.cursor()
        cur.execute("SELECT * FROM Document WHERE company_id = ? ORDER BY created_at DESC", (company_id,))
        rows = cur.fetchall()
    return [dict(row) for row in rows]


@app.get("/api/documents/{document_id}/download")
def download_document(document_id: str, request: Request) -> FileResponse:
    with get_db() as conn:
        user = require_session_user(conn, request)
        document = fetch_document(conn, document_id)
        require_company_access(conn, user, document["company_id"])
    path = Path(document["path"] or "")
    if not path.exists():
        raise HTTPException(status_code=404, detail="File not found")
    return FileResponse(path, filename=document["filename"])


@app.delete("/api/documents/{document_id}")
def delete_document(document_id: str, request: Request) -> Dict[str, str]:
    with get_db() as conn:
        user = require_session_user(conn, request)
        document = fetch_document(conn, document_id)
        require_company_access(conn, user, document["company_id"])
        cur = conn.cursor()
        cur.execute("DELETE FROM Document WHERE id = ?", (document_id,))
        conn.commit()
    remove_file(document["path"])
    return {"status": "deleted"}


@app.get("/api/companies/{company_id}/document-validation")
def get_document_validation(company_id: str, request: Request) -> Dict[str, Any]:
    flags = read_feature_flags()
    with get_db() as conn:
        user = require_session_user(conn, request)
        company = require_company_access(conn, user, company_id)
        result = company_document_validation(conn, company, flags)
    return result.to_dict()


@app.post("/api/validate-documents")
def validate_document_set(payload: DocumentValidationIn, request: Request) -> Dict[str, Any]:
    with get_db() as conn:
        require_session_user(conn, request)
    result = validate_documents(
        payload.uploaded_types,
        has_prior_coverage=payload.has_prior_coverage,
        employee_count=payload.employee_count,
        carrier=payload.carrier,
        flags=read_feature_flags(),
    )
    return result.to_dict()


@app.post("/api/companies/{company_id}/document-override")
def override_document_validation(company_id: str, payload: OverrideIn, request: Request) -> Dict[str, Any]:
    flags = read_feature_flags()
    with get_db() as conn:
        user = require_session_user(conn, request)
        company = require_company_access(conn, user, company_id)
        result = company_document_validation(conn, company, flags)
        try:
            overridden = validate_with_override(result, role=user["role"], reason=payload.reason, flags=flags)
        except WorkflowError as exc:
            status = 403 if "not permitted" in str(exc) else 400
            raise HTTPException(status_code=status, detail=str(exc))
        if overridden.override_applied:
            application = record_application_progress(conn, company_id, "documents")
            write_audit_log(
                conn,
                request,
                user,
                AuditAction.DOCUMENT_OVERRIDE,
                "application",
                application["id"],
                {"reason": payload.reason.strip(), "missing": overridden.missing_requirements},
            )
        conn.commit()
    return overridden.to_dict()


# ----------------------
# Plans
# ----------------------

PLAN_GROUP_KEYS = {"benefit_type", "carrier", "plan_type", "metal_tier", "network_type"}


@app.get("/api/plans")
def list_plans(
    request: Request,
    search: Optional[str] = None,
    carrier: Optional[str] = None,
    plan_type: Optional[str] = None,
    benefit_type: Optional[str] = None,
    metal_tier: Optional[str] = None,
    network: Optional[str] = None,
    network_type: Optional[str] = None,
    max_premium: Optional[float] = None,
    coverage_date: Optional[str] = None,
    group_by: Optional[str] = None,
) -> Any:
    if group_by and group_by not in PLAN_GROUP_KEYS:
        allowed = ", ".join(sorted(PLAN_GROUP_KEYS))
        raise HTTPException(status_code=400, detail=f"group_by must be one of: {allowed}")
    with get_db() as conn:
        require_session_user(conn, request)
        cur = conn.cursor()
        cur.execute("SELECT * FROM Plan ORDER BY carrier, monthly_premium, name")
        rows = [dict(row) for row in cur.fetchall()]
    criteria = PlanFilter(
        search=search,
        carrier=carrier,
        plan_type=plan_type,
        benefit_type=benefit_type,
        metal_tier=metal_tier,
        network=network,
        network_type=network_type,
        max_premium=max_premium,
        coverage_date=coverage_date,
    )
    plans = filter_plans(rows, criteria)
    if group_by:
        return group_plans(plans, key=group_by)
    return plans


@app.get("/api/carriers")
def list_carriers(benefit: str = "medical") -> Dict[str, Any]:
    carriers = carriers_for_benefit(benefit)
    if not carriers:
        raise HTTPException(status_code=404, detail=f"No carriers for benefit: {benefit}")
    return {"benefit": benefit.strip().lower(), "carriers": carriers}


@app.post("/api/admin/plans/upload")
def upload_plans(
    request: Request,
    file: UploadFile = File(...),
    carrier: str = Form(...),
    plan_year: Annotated[Optional[int], Form()] = None,
) -> Dict[str, Any]:
    safe_name = Path(file.filename or "").name
    if Path(safe_name).suffix.lower() not in PLAN_UPLOAD_EXTENSIONS:
        raise HTTPException(status_code=400, detail="Plan files must be CSV, XLSX or XLS")
    with get_db() as conn:
        user = require_session_role(conn, request, {"admin"})

    upload_id = str(uuid.uuid4())
    upload_dir = UPLOADS_DIR / "plan_uploads"
    upload_dir.mkdir(parents=True, exist_ok=True)
    target_path = upload_dir / f"{upload_id}-{safe_name}"
    with target_path.open("wb") as f:
        f.write(file.file.read())

    try:
        plans = parse_plan_file(target_path, carrier, plan_year)
    except PlanImportError as exc:
        remove_file(str(target_path))
        logger.warning("plan_import_failed", file=safe_name, error=str(exc))
        raise HTTPException(status_code=400, detail=str(exc))

    now = now_iso()
    inserted = 0
    skipped = 0
    with get_db() as conn:
        cur = conn.cursor()
        for plan in plans:
            cur.execute(
                """
                INSERT OR IGNORE INTO Plan (
                    id, carrier, name, plan_type, benefit_type, network, network_type, metal_tier,
                    monthly_premium, deductible, out_of_pocket_max, details, contract_code,
                    plan_year, effective_start, effective_end, upload_id, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    str(uuid.uuid4()),
                    plan["carrier"],
                    plan["name"],
                    plan["plan_type"],
                    plan["benefit_type"],
                    plan["network"],
                    plan["network_type"],
                    plan["metal_tier"],
                    plan["monthly_premium"],
                    plan["deductible"],
                    plan["out_of_pocket_max"],
                    plan["details"],
                    plan["contract_code"],
                    plan["plan_year"],
                    plan["effective_start"],
                    plan["effective_end"],
                    upload_id,
                    now,
                ),
            )
            if cur.rowcount:
                inserted += 1
            else:
                skipped += 1
        cur.execute(
            """
            INSERT INTO PlanUpload (
                id, user_id, carrier, plan_year, filename, path, plan_count, skipped_count, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (upload_id, user["id"], carrier.strip(), plan_year, safe_name, str(target_path), inserted, skipped, now),
        )
        write_audit_log(
            conn,
            request,
            user,
            AuditAction.PLAN_UPLOAD,
            "plan_upload",
            upload_id,
            {"filename": safe_name, "carrier": carrier.strip(), "inserted": inserted, "skipped": skipped},
        )
        conn.commit()
    logger.info("plans_imported", upload_id=upload_id, inserted=inserted, skipped=skipped)
    return {"upload_id": upload_id, "inserted": inserted, "skipped": skipped, "total": len(plans)}


@app.get("/api/admin/plans/uploads")
def list_plan_uploads(request: Request) -> List[Dict[str, Any]]:
    with get_db() as conn:
        require_session_role(conn, request, {"admin"})
        cur = conn.cursor()
        cur.execute("SELECT * FROM PlanUpload ORDER BY created_at DESC")
        rows = cur.fetchall()
    return [dict(row) for row in rows]


@app.delete("/api/admin/plans/{plan_id}")
def delete_plan(plan_id: str, request: Request) -> Dict[str, str]:
    with get_db() as conn:
        require_session_role(conn, request, {"admin"})
        fetch_plan(conn, plan_id)
        cur = conn.cursor()
        cur.execute("DELETE FROM Plan WHERE id = ?", (plan_id,))
        conn.commit()
    return {"status": "deleted"}


@app.get("/api/companies/{company_id}/plans")
def list_company_plans(company_id: str, request: Request) -> List[Dict[str, Any]]:
    with get_db() as conn:
        user = require_session_user(conn, request)
        require_company_access(conn, user, company_id)
        rows = selected_plan_rows(conn, company_id)
    return [dict(row) for row in rows]


@app.post("/api/companies/{company_id}/plans")
def add_company_plan(company_id: str, payload: CompanyPlanIn, request: Request) -> List[Dict[str, Any]]:
    with get_db() as conn:
        user = require_session_user(conn, request)
        require_company_access(conn, user, company_id)
        fetch_plan(conn, payload.plan_id)
        cur = conn.cursor()
        cur.execute(
            "INSERT OR IGNORE INTO CompanyPlan (id, company_id, plan_id, created_at) VALUES (?, ?, ?, ?)",
            (str(uuid.uuid4()), company_id, payload.plan_id, now_iso()),
        )
        record_application_progress(conn, company_id, "plans")
        conn.commit()
        rows = selected_plan_rows(conn, company_id)
    return [dict(row) for row in rows]


@app.delete("/api/companies/{company_id}/plans/{plan_id}")
def remove_company_plan(company_id: str, plan_id: str, request: Request) -> List[Dict[str, Any]]:
    with get_db() as conn:
        user = require_session_user(conn, request)
        require_company_access(conn, user, company_id)
        cur = conn.cursor()
        cur.execute("DELETE FROM CompanyPlan WHERE company_id = ? AND plan_id = ?", (company_id, plan_id))
        if not cur.rowcount:
            raise HTTPException(status_code=404, detail="Plan is not selected for this company")
        cur.execute("DELETE FROM Contribution WHERE company_id = ? AND plan_id = ?", (company_id, plan_id))
        conn.commit()
        rows = selected_plan_rows(conn, company_id)
    return [dict(row) for row in rows]


# ----------------------
# Contributions
# ----------------------

@app.post("/api/companies/{company_id}/contributions")
def save_contribution(company_id: str, payload: ContributionIn, request: Request) -> Dict[str, Any]:
    try:
        model = contribution_model_from_payload(payload)
    except ContributionError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    with get_db() as conn:
        user = require_session_user(conn, request)
        require_company_access(conn, user, company_id)
        plan = fetch_plan(conn, payload.plan_id)
        cur = conn.cursor()
        cur.execute(
            "SELECT 1 FROM CompanyPlan WHERE company_id = ? AND plan_id = ?",
            (company_id, payload.plan_id),
        )
        if not cur.fetchone():
            raise HTTPException(status_code=400, detail="Plan is not selected for this company")
        now = now_iso()
        cur.execute(
            """
            INSERT INTO Contribution (
                id, company_id, plan_id, employee_contribution, spouse_contribution,
                children_contribution, family_contribution, contribution_type,
                max_employer_contribution, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(company_id, plan_id) DO UPDATE SET
                employee_contribution = excluded.employee_contribution,
                spouse_contribution = excluded.spouse_contribution,
                children_contribution = excluded.children_contribution,
                family_contribution = excluded.family_contribution,
                contribution_type = excluded.contribution_type,
                max_employer_contribution = excluded.max_employer_contribution,
                updated_at = excluded.updated_at
            """,
            (
                str(uuid.uuid4()),
                company_id,
                payload.plan_id,
                model.employee_contribution,
                model.spouse_contribution,
                model.children_contribution,
                model.family_contribution,
                model.contribution_type,
                model.max_employer_contribution,
                now,
                now,
            ),
        )
        record_application_progress(conn, company_id, "contributions")
        conn.commit()
        row = company_contribution_rows(conn, company_id)[payload.plan_id]
    return contribution_out(row, plan)


@app.get("/api/companies/{company_id}/contributions")
def list_contributions(company_id: str, request: Request) -> List[Dict[str, Any]]:
    with get_db() as conn:
        user = require_session_user(conn, request)
        require_company_access(conn, user, company_id)
        contributions = company_contribution_rows(conn, company_id)
        results = []
        for plan_id, row in contributions.items():
            results.append(contribution_out(row, fetch_plan(conn, plan_id)))
    return results


@app.get("/api/companies/{company_id}/contributions/summary")
def contribution_summary(company_id: str, request: Request) -> Dict[str, Any]:
    with get_db() as conn:
        user = require_session_user(conn, request)
        company = require_company_access(conn, user, company_id)
        contributions = company_contribution_rows(conn, company_id)
        counts = census_tier_counts(conn, company)
        plans = selected_plan_rows(conn, company_id)

    entries: List[Dict[str, Any]] = []
    missing: List[str] = []
    employer_monthly = 0.0
    employee_monthly = 0.0
    for plan in plans:
        contribution = contributions.get(plan["id"])
        if contribution is None:
            missing.append(plan["id"])
            entries.append({"plan": dict(plan), "contribution": None, "tier_costs": [], "census": None})
            continue
        model = contribution_model_from_row(contribution)
        census = calculate_employer_cost(plan["monthly_premium"], model, counts)
        employer_monthly += census["employer_monthly"]
        employee_monthly += census["employee_monthly"]
        entries.append(
            {
                "plan": dict(plan),
                "contribution": dict(contribution),
                "tier_costs": [cost.to_dict() for cost in calculate_tier_costs(plan["monthly_premium"], model)],
                "census": census,
            }
        )
    return {
        "company_id": company_id,
        "tier_counts": counts,
        "plans": entries,
        "plans_missing_contributions": missing,
        "employer_monthly": round(employer_monthly, 2),
        "employer_annual": round(employer_monthly * 12, 2),
        "employee_monthly": round(employee_monthly, 2),
    }


@app.post("/api/contributions/preview")
def preview_contribution(payload: ContributionPreviewIn, request: Request) -> Dict[str, Any]:
    with get_db() as conn:
        require_session_user(conn, request)
        premium = payload.monthly_premium
        if payload.plan_id:
            premium = fetch_plan(conn, payload.plan_id)["monthly_premium"]
    if premium is None:
        raise HTTPException(status_code=400, detail="A plan or monthly premium is required")
    try:
        model = contribution_model_from_payload(payload)
        tier_costs = calculate_tier_costs(premium, model)
        census = calculate_employer_cost(premium, model, payload.tier_counts) if payload.tier_counts else None
    except ContributionError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return {
        "monthly_premium": premium,
        "tier_costs": [cost.to_dict() for cost in tier_costs],
        "census": census,
    }


# ----------------------
# Application workflow
# ----------------------

def fetch_company_application(conn: sqlite3.Connection, company: Any) -> sqlite3.Row:
    return ensure_application(conn, company["id"], company["user_id"])


def user_display_name(user: Any) -> str:
    name = " ".join(part for part in (user["first_name"], user["last_name"]) if part)
    return name or user["username"] or user["email"] or user["id"]


@app.get("/api/companies/{company_id}/application")
def get_application(company_id: str, request: Request) -> Dict[str, Any]:
    with get_db() as conn:
        user = require_session_user(conn, request)
        company = require_company_access(conn, user, company_id)
        application = fetch_company_application(conn, company)
        conn.commit()
    return application_out(application)


@app.patch("/api/companies/{company_id}/application")
def update_application(company_id: str, payload: ApplicationUpdate, request: Request) -> Dict[str, Any]:
    data = payload.model_dump(exclude_unset=True)
    flags = read_feature_flags()
    with get_db() as conn:
        user = require_session_user(conn, request)
        company = require_company_access(conn, user, company_id)
        application = fetch_company_application(conn, company)
        if application["status"] not in SIGNABLE_STATUSES:
            raise HTTPException(status_code=400, detail="Application has been submitted and can no longer be edited")

        updates: Dict[str, Any] = {}
        if data.get("current_step"):
            step_ids = [step.id for step in enabled_steps(flags)]
            if data["current_step"] not in step_ids:
                raise HTTPException(status_code=400, detail=f"Unknown enrollment step: {data['current_step']}")
            updates["current_step"] = data["current_step"]
        if "selected_carrier" in data:
            updates["selected_carrier"] = (data["selected_carrier"] or "").strip() or None
        contact_fields = [key for key in data if key.startswith("authorized_contact_")]
        for key in contact_fields:
            updates[key] = data[key]
        apply_updates(conn, "Application", application["id"], updates)

        if "selected_carrier" in data:
            record_application_progress(conn, company_id, "carriers")
        if contact_fields:
            record_application_progress(conn, company_id, "authorized-contact")
        if data.get("completed_step"):
            record_application_progress(conn, company_id, data["completed_step"])
        if "current_step" in updates:
            apply_updates(conn, "Application", application["id"], {"current_step": updates["current_step"]})
        conn.commit()
        application = fetch_application(conn, application["id"])
    return application_out(application, flags)


@app.post("/api/companies/{company_id}/application/request-review")
def request_application_review(company_id: str, request: Request) -> Dict[str, Any]:
    with get_db() as conn:
        user = require_session_user(conn, request)
        company = require_company_access(conn, user, company_id)
        application = fetch_company_application(conn, company)
        try:
            require_transition(application["status"], "pending_review")
        except WorkflowError as exc:
            raise HTTPException(status_code=400, detail=str(exc))
        apply_updates(conn, "Application", application["id"], {"status": "pending_review"})
        write_audit_log(
            conn,
            request,
            user,
            AuditAction.REVIEW_REQUESTED,
            "application",
            application["id"],
            {"from": application["status"], "to": "pending_review"},
        )
        conn.commit()
        application = fetch_application(conn, application["id"])
    return application_out(application)


@app.post("/api/companies/{company_id}/application/signature")
def sign_application(company_id: str, payload: SignatureIn, request: Request) -> Dict[str, Any]:
    flags = read_feature_flags()
    if not flags.get("E_SIGNATURE"):
        raise HTTPException(status_code=400, detail="Electronic signature is disabled")
    signature = (payload.signature or "").strip()
    if not signature:
        raise HTTPException(status_code=400, detail="Signature is required")
    with get_db() as conn:
        user = require_session_user(conn, request)
        company = require_company_access(conn, user, company_id)
        application = fetch_company_application(conn, company)
        if application["status"] not in SIGNABLE_STATUSES:
            raise HTTPException(
                status_code=400,
                detail=f"Cannot sign an application with status {application['status']}",
            )
        plans = selected_plan_rows(conn, company_id)
        if not plans:
            raise HTTPException(status_code=400, detail="Select at least one plan before signing")
        contributions = company_contribution_rows(conn, company_id)
        missing = [plan["name"] for plan in plans if plan["id"] not in contributions]
        if missing:
            raise HTTPException(
                status_code=400,
                detail=f"Contribution model required for: {', '.join(missing)}",
            )

        now = now_iso()
        completed = record_step(parse_json_list(application["completed_steps"]), "review")
        apply_updates(
            conn,
            "Application",
            application["id"],
            {
                "status": "submitted",
                "signature": signature,
                "signed_by": (payload.signed_by or "").strip() or user_display_name(user),
                "signed_at": now,
                "submitted_at": now,
                "completed_steps": json.dumps(completed),
                "current_step": "review",
            },
        )
        write_audit_log(
            conn,
            request,
            user,
            AuditAction.SIGN,
            "application",
            application["id"],
            {"company_id": company_id, "plans": [plan["id"] for plan in plans]},
        )
        conn.commit()
        application = fetch_application(conn, application["id"])
    logger.info("application_signed", application_id=application["id"], company_id=company_id)
    return application_out(application, flags)


@app.get("/api/admin/applications")
def list_applications(request: Request, status: Optional[str] = None) -> List[Dict[str, Any]]:
    flags = read_feature_flags()
    with get_db() as conn:
        require_session_role(conn, request, {"admin"})
        cur = conn.cursor()
        query = """
            SELECT a.*, c.name AS company_name
            FROM Application a
            JOIN Company c ON c.id = a.company_id
        """
        params: List[Any] = []
        if status:
            query += " WHERE a.status = ?"
            params.append(status.strip().lower())
        query += " ORDER BY a.updated_at DESC"
        cur.execute(query, params)
        rows = cur.fetchall()
    return [application_out(row, flags) for row in rows]


@app.patch("/api/admin/applications/{application_id}")
def review_application(application_id: str, payload: ReviewIn, request: Request) -> Dict[str, Any]:
    target = (payload.status or "").strip().lower()
    with get_db() as conn:
        user = require_session_role(conn, request, {"admin"})
        application = fetch_application(conn, application_id)
        try:
            require_transition(application["status"], target)
        except WorkflowError as exc:
            raise HTTPException(status_code=400, detail=str(exc))
        apply_updates(
            conn,
            "Application",
            application_id,
            {
                "status": target,
                "review_notes": payload.review_notes,
                "reviewed_by": user["id"],
                "reviewed_at": now_iso(),
            },
        )
        write_audit_log(
            conn,
            request,
            user,
            AuditAction.STATUS_CHANGE,
            "application",
            application_id,
            {"from": application["status"], "to": target, "notes": payload.review_notes},
        )
        conn.commit()
        application = fetch_application(conn, application_id)
    return application_out(application)


# ----------------------
# Generated PDFs
# ----------------------

def render_company_pdf(
    conn: sqlite3.Connection,
    request: Request,
    company: Any,
    user: Any,
    payload: PdfRequestIn,
    *,
    kind: str,
    sections: Optional[Dict[str, List[tuple[str, str]]]] = None,
) -> tuple[Path, str]:
    application = fetch_company_application(conn, company)
    branding = company_branding(conn, company)
    submission = FormSubmission(
        submission_id=application["id"],
        submission_type=kind,
        submitted_at=datetime.utcnow(),
        form_data=build_submission_form_data(conn, company),
        user=submission_user(user),
    )
    options = PDFOptions(
        include_header=payload.include_header,
        include_footer=payload.include_footer,
        watermark=(payload.watermark or "").strip() or None,
        brand_name=branding["name"],
        primary_color=branding["primary_color"],
        extra_details={"Company": company["name"], "Status": application["status"]},
    )
    try:
        pdf_bytes = generate_submission_pdf(submission, options, sections)
    except Exception:
        logger.exception("pdf_generation_failed", company_id=company["id"], kind=kind)
        raise HTTPException(status_code=500, detail="Failed to generate PDF")
    stamp = datetime.utcnow().strftime("%Y%m%d%H%M%S%f")
    path = save_pdf_to_file(pdf_bytes, f"{kind.lower()}_{company['id']}_{stamp}.pdf", generated_pdf_dir())
    generated_id = record_generated_pdf(conn, company["id"], kind.lower(), path, user)
    write_audit_log(
        conn,
        request,
        user,
        AuditAction.PDF_GENERATED,
        "generated_pdf",
        generated_id,
        {"kind": kind.lower(), "company_id": company["id"], "filename": path.name},
    )
    return path, generated_id


@app.post("/api/companies/{company_id}/submission-pdf")
def create_submission_pdf(company_id: str, payload: PdfRequestIn, request: Request) -> FileResponse:
    with get_db() as conn:
        user = require_session_user(conn, request)
        company = require_company_access(conn, user, company_id)
        path, generated_id = render_company_pdf(conn, request, company, user, payload, kind="Submission")
        conn.commit()
    return pdf_file_response(path, path.name, generated_id)


@app.post("/api/companies/{company_id}/proposal-pdf")
def create_proposal_pdf(company_id: str, payload: PdfRequestIn, request: Request) -> FileResponse:
    flags = read_feature_flags()
    with get_db() as conn:
        user = require_session_user(conn, request)
        company = require_company_access(conn, user, company_id)
        sections = build_proposal_sections(conn, company, flags)
        path, generated_id = render_company_pdf(
            conn, request, company, user, payload, kind="Proposal", sections=sections
        )
        conn.commit()
    return pdf_file_response(path, path.name, generated_id)


@app.get("/api/companies/{company_id}/generated-pdfs")
def list_generated_pdfs(company_id: str, request: Request) -> List[Dict[str, Any]]:
    with get_db() as conn:
        user = require_session_user(conn, request)
        require_company_access(conn, user, company_id)
        cur = conn.cursor()
        cur.execute(
            """
            SELECT g.*, t.name AS template_name
            FROM GeneratedPdf g
            LEFT JOIN PdfTemplate t ON t.id = g.template_id
            WHERE g.company_id = ?
            ORDER BY g.created_at DESC
            """,
            (company_id,),
        )
        rows = cur.fetchall()
    return [dict(row) for row in rows]


@app.get("/api/generated-pdfs/{generated_id}/download")
def download_generated_pdf(generated_id: str, request: Request) -> FileResponse:
    with get_db() as conn:
        user = require_session_user(conn, request)
        cur = conn.cursor()
        cur.execute("SELECT * FROM GeneratedPdf WHERE id = ?", (generated_id,))
        row = cur.fetchone()
        if not row:
            raise HTTPException(status_code=404, detail="Generated PDF not found")
        require_company_access(conn, user, row["company_id"])
    path = Path(row["path"] or "")
    if not path.exists():
        raise HTTPException(status_code=404, detail="File not found")
    return pdf_file_response(path, row["filename"], generated_id)


@app.post("/api/companies/{company_id}/carrier-forms")
def create_carrier_form(company_id: str, payload: CarrierFormIn, request: Request) -> FileResponse:
    with get_db() as conn:
        user = require_session_user(conn, request)
        company = require_company_access(conn, user, company_id)
        template = fetch_template(conn, payload.template_id)
        mappings = template_mappings(conn, template["id"]) or default_mappings_for_carrier(template["carrier"])
        if not mappings:
            raise HTTPException(status_code=400, detail="No field mappings configured for this template")
        plan = fetch_plan(conn, payload.plan_id) if payload.plan_id else None
        employee = fetch_employee(conn, company_id, payload.employee_id) if payload.employee_id else None
        sources = build_form_sources(conn, company, plan, employee)
        try:
            filled = fill_carrier_form(
                Path(template["path"] or ""),
                mappings,
                sources,
                generated_pdf_dir(),
                f"{template['name']}_{company['name']}",
            )
        except CarrierFormError as exc:
            logger.warning("carrier_form_failed", template_id=template["id"], error=str(exc))
            raise HTTPException(status_code=400, detail=str(exc))
        generated_id = record_generated_pdf(
            conn, company_id, "carrier_form", filled.file_path, user, template_id=template["id"]
        )
        write_audit_log(
            conn,
            request,
            user,
            AuditAction.PDF_GENERATED,
            "generated_pdf",
            generated_id,
            {
                "kind": "carrier_form",
                "template_id": template["id"],
                "filled": filled.filled_fields,
                "placed": filled.placed_fields,
                "unmatched": filled.unmatched_fields,
            },
        )
        conn.commit()
    logger.info(
        "carrier_form_generated",
        template_id=template["id"],
        company_id=company_id,
        filled=len(filled.filled_fields),
        placed=len(filled.placed_fields),
    )
    response = pdf_file_response(filled.file_path, filled.file_name, generated_id)
    if filled.unmatched_fields:
        response.headers["X-Unmatched-Fields"] = ",".join(quote(name, safe="") for name in filled.unmatched_fields)
    return response


# ----------------------
# PDF templates
# ----------------------

def template_mappings(conn: sqlite3.Connection, template_id: str) -> List[FieldMapping]:
    cur = conn.cursor()
    cur.execute(
        "SELECT * FROM PdfFieldMapping WHERE template_id = ? ORDER BY page_number, created_at",
        (template_id,),
    )
    return [
        FieldMapping(
            field_name=row["field_name"],
            data_source=row["data_source"],
            data_field=row["data_field"],
            page_number=row["page_number"] or 1,
            x_position=row["x_position"],
            y_position=row["y_position"],
            width=row["width"],
            height=row["height"],
            field_type=row["field_type"] or "text",
        )
        for row in cur.fetchall()
    ]


@app.get("/api/admin/pdf-templates")
def list_pdf_templates(request: Request) -> List[Dict[str, Any]]:
    with get_db() as conn:
        require_session_role(conn, request, {"admin"})
        cur = conn.cursor()
        cur.execute(
            """
            SELECT t.*, COUNT(m.id) AS mapping_count
            FROM PdfTemplate t
            LEFT JOIN PdfFieldMapping m ON m.template_id = t.id
            GROUP BY t.id
            ORDER BY t.created_at DESC
            """
        )
        rows = cur.fetchall()
    return [dict(row) for row in rows]


@app.post("/api/admin/pdf-templates")
def upload_pdf_template(
    request: Request,
    file: UploadFile = File(...),
    name: str = Form(...),
    carrier: Annotated[Optional[str], Form()] = None,
) -> Dict[str, Any]:
    template_name = (name or "").strip()
    if not template_name:
        raise HTTPException(status_code=400, detail="Template name is required")
    safe_name = Path(file.filename or "").name
    if Path(safe_name).suffix.lower() != ".pdf":
        raise HTTPException(status_code=400, detail="Templates must be PDF files")
    content = file.file.read()
    if len(content) > MAX_UPLOAD_BYTES:
        raise HTTPException(status_code=400, detail="File exceeds the maximum upload size")
    with get_db() as conn:
        user = require_session_role(conn, request, {"admin"})

    template_id = str(uuid.uuid4())
    directory = pdf_templates_dir()
    directory.mkdir(parents=True, exist_ok=True)
    target_path = directory / f"{template_id}-{safe_name}"
    target_path.write_bytes(content)
    try:
        fields = list_template_fields(target_path)
    except PyPdfError as exc:
        remove_file(str(target_path))
        logger.warning("pdf_template_invalid", filename=safe_name, error=str(exc))
        raise HTTPException(status_code=400, detail="Invalid PDF template")

    with get_db() as conn:
        cur = conn.cursor()
        cur.execute(
            """
            INSERT INTO PdfTemplate (id, name, carrier, filename, path, uploaded_by, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                template_id,
                template_name,
                (carrier or "").strip() or None,
                safe_name,
                str(target_path),
                user["id"],
                now_iso(),
            ),
        )
        write_audit_log(
            conn,
            request,
            user,
            AuditAction.TEMPLATE_UPLOAD,
            "pdf_template",
            template_id,
            {"name": template_name, "filename": safe_name, "fields": len(fields)},
        )
        conn.commit()
        template = fetch_template(conn, template_id)
    data = dict(template)
    data["fields"] = fields
    return data


@app.get("/api/admin/pdf-templates/{template_id}/fields")
def get_pdf_template_fields(template_id: str, request: Request) -> List[Dict[str, Any]]:
    with get_db() as conn:
        require_session_role(conn, request, {"admin"})
        template = fetch_template(conn, template_id)
    path = Path(template["path"] or "")
    if not path.exists():
        raise HTTPException(status_code=404, detail="Template file not found")
    return list_template_fields(path)


@app.get("/api/admin/pdf-templates/{template_id}/mappings")
def list_pdf_template_mappings(template_id: str, request: Request) -> List[Dict[str, Any]]:
    with get_db() as conn:
        require_session_role(conn, request, {"admin"})
        fetch_template(conn, template_id)
        cur = conn.cursor()
        cur.execute(
            "SELECT * FROM PdfFieldMapping WHERE template_id = ? ORDER BY page_number, created_at",
            (template_id,),
        )
        rows = cur.fetchall()
    return [dict(row) for row in rows]


@app.post("/api/admin/pdf-templates/{template_id}/mappings")
def create_pdf_template_mapping(template_id: str, payload: FieldMappingIn, request: Request) -> Dict[str, Any]:
    mapping = FieldMapping(
        field_name=payload.field_name.strip(),
        data_source=payload.data_source.strip().lower(),
        data_field=payload.data_field.strip(),
        page_number=payload.page_number,
        x_position=payload.x_position,
        y_position=payload.y_position,
        width=payload.width,
        height=payload.height,
        field_type=payload.field_type.strip().lower(),
    )
    try:
        validate_mapping(mapping)
    except CarrierFormError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    with get_db() as conn:
        require_session_role(conn, request, {"admin"})
        fetch_template(conn, template_id)
        mapping_id = str(uuid.uuid4())
        cur = conn.cursor()
        cur.execute(
            """
            INSERT INTO PdfFieldMapping (
                id, template_id, field_name, data_source, data_field, page_number,
                x_position, y_position, width, height, field_type, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                mapping_id,
                template_id,
                mapping.field_name,
                mapping.data_source,
                mapping.data_field,
                mapping.page_number,
                mapping.x_position,
                mapping.y_position,
                mapping.width,
                mapping.height,
                mapping.field_type,
                now_iso(),
            ),
        )
        conn.commit()
        cur.execute("SELECT * FROM PdfFieldMapping WHERE id = ?", (mapping_id,))
        row = cur.fetchone()
    return dict(row)


@app.get("/api/pdf-templates/data-sources")
def list_data_sources() -> List[str]:
    return list(DATA_SOURCES)


# ----------------------
# Saved forms and submissions
# ----------------------

def fetch_form_progress(conn: sqlite3.Connection, user_id: str, form_id: str) -> Optional[sqlite3.Row]:
    cur = conn.cursor()
    cur.execute("SELECT * FROM FormProgress WHERE user_id = ? AND form_id = ?", (user_id, form_id))
    return cur.fetchone()


def parse_json_object(value: Optional[str]) -> Dict[str, Any]:
    if not value:
        return {}
    try:
        parsed = json.loads(value)
    except ValueError:
        return {}
    return parsed if isinstance(parsed, dict) else {}


def form_progress_out(row: Any) -> Dict[str, Any]:
    return {
        "form_id": row["form_id"],
        "data": parse_json_object(row["form_data"]),
        "current_step": row["current_step"] or 0,
        "last_saved": row["last_saved"],
        "is_completed": bool(row["is_completed"]),
        "completed_at": row["completed_at"],
    }


def form_id_or_400(form_id: Optional[str]) -> str:
    try:
        return normalize_form_id(form_id)
    except WorkflowError as exc:
        raise HTTPException(status_code=400, detail=str(exc))


def fetch_form_submission(conn: sqlite3.Connection, user: Any, submission_id: str) -> sqlite3.Row:
    cur = conn.cursor()
    cur.execute("SELECT * FROM FormSubmission WHERE id = ?", (submission_id,))
    row = cur.fetchone()
    if not row or not user_can_access_owned(conn, user, row["user_id"]):
        raise HTTPException(status_code=404, detail="Submission not found")
    return row


@app.post("/api/forms/save-progress")
def save_form_progress(payload: FormProgressIn, request: Request) -> Dict[str, Any]:
    form_id = form_id_or_400(payload.form_id)
    try:
        current_step = validate_form_step(payload.current_step)
    except WorkflowError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    last_saved = now_iso()
    if payload.last_saved:
        try:
            last_saved = datetime.fromisoformat(payload.last_saved.replace("Z", "+00:00")).isoformat()
        except ValueError:
            raise HTTPException(status_code=400, detail="last_saved must be an ISO-8601 timestamp")

    with get_db() as conn:
        user = require_session_user(conn, request)
        existing = fetch_form_progress(conn, user["id"], form_id)
        values = {
            "form_data": json.dumps(payload.data, default=str),
            "current_step": current_step,
            "last_saved": last_saved,
            "is_completed": 0,
            "completed_at": None,
        }
        if existing:
            apply_updates(conn, "FormProgress", existing["id"], values)
        else:
            now = now_iso()
            cur = conn.cursor()
            cur.execute(
                """
                INSERT INTO FormProgress (
                    id, user_id, form_id, form_data, current_step, last_saved, is_completed,
                    completed_at, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    str(uuid.uuid4()),
                    user["id"],
                    form_id,
                    values["form_data"],
                    current_step,
                    last_saved,
                    0,
                    None,
                    now,
                    now,
                ),
            )
        conn.commit()
        row = fetch_form_progress(conn, user["id"], form_id)
    logger.info(
        "form_progress_saved",
        user_id=user["id"],
        form_id=form_id,
        current_step=current_step,
        field_count=len(payload.data),
    )
    return form_progress_out(row)


@app.get("/api/forms/load-progress/{form_id}")
def load_form_progress(form_id: str, request: Request) -> Optional[Dict[str, Any]]:
    form_id = form_id_or_400(form_id)
    with get_db() as conn:
        user = require_session_user(conn, request)
        row = fetch_form_progress(conn, user["id"], form_id)
    return form_progress_out(row) if row else None


@app.delete("/api/forms/progress/{form_id}")
def clear_form_progress(form_id: str, request: Request) -> Dict[str, str]:
    form_id = form_id_or_400(form_id)
    with get_db() as conn:
        user = require_session_user(conn, request)
        cur = conn.cursor()
        cur.execute("DELETE FROM FormProgress WHERE user_id = ? AND form_id = ?", (user["id"], form_id))
        conn.commit()
    return {"status": "cleared", "form_id": form_id}


@app.post("/api/forms/submit")
def submit_form(payload: FormSubmitIn, request: Request) -> Dict[str, Any]:
    form_id = form_id_or_400(payload.form_id)
    submission_type = (payload.submission_type or "").strip().lower()
    try:
        missing = missing_form_field(payload.form_data, submission_type)
    except WorkflowError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    if missing:
        raise HTTPException(status_code=400, detail=missing["message"])

    ip_address, user_agent = client_meta(request)
    submission_id = str(uuid.uuid4())
    submitted_at = now_iso()
    with get_db() as conn:
        user = require_session_user(conn, request)
        cur = conn.cursor()
        cur.execute(
            """
            INSERT INTO FormSubmission (
                id, user_id, form_id, submission_type, form_data, status, submitted_at,
                ip_address, user_agent
            ) VALUES (?, ?, ?, ?, ?, 'submitted', ?, ?, ?)
            """,
            (
                submission_id,
                user["id"],
                form_id,
                submission_type,
                json.dumps(payload.form_data, default=str),
                submitted_at,
                ip_address,
                user_agent or "",
            ),
        )
        progress = fetch_form_progress(conn, user["id"], form_id)
        if progress:
            apply_updates(conn, "FormProgress", progress["id"], {"is_completed": 1, "completed_at": submitted_at})
        write_audit_log(
            conn,
            request,
            user,
            AuditAction.FORM_SUBMITTED,
            "form_submission",
            submission_id,
            {"form_id": form_id, "submission_type": submission_type},
        )
        conn.commit()
    logger.info("form_submitted", submission_id=submission_id, user_id=user["id"], type=submission_type)
    return {
        "submission_id": submission_id,
        "submitted_at": submitted_at,
        "status": "submitted",
        "next_steps": form_next_steps(submission_type),
    }


@app.get("/api/forms/submissions")
def list_form_submissions(request: Request) -> List[Dict[str, Any]]:
    with get_db() as conn:
        user = require_session_user(conn, request)
        cur = conn.cursor()
        cur.execute(
            "SELECT * FROM FormSubmission WHERE user_id = ? ORDER BY submitted_at DESC",
            (user["id"],),
        )
        rows = cur.fetchall()
    return [
        {
            "id": row["id"],
            "form_id": row["form_id"],
            "submission_type": row["submission_type"],
            "status": row["status"],
            "submitted_at": row["submitted_at"],
            "has_data": bool(parse_json_object(row["form_data"])),
        }
        for row in rows
    ]


@app.get("/api/forms/submissions/{submission_id}")
def get_form_submission(submission_id: str, request: Request) -> Dict[str, Any]:
    with get_db() as conn:
        user = require_session_user(conn, request)
        row = fetch_form_submission(conn, user, submission_id)
    data = dict(row)
    data["form_data"] = parse_json_object(row["form_data"])
    return data


@app.post("/api/forms/submissions/{submission_id}/pdf")
def create_form_submission_pdf(submission_id: str, payload: PdfRequestIn, request: Request) -> Response:
    with get_db() as conn:
        user = require_session_user(conn, request)
        row = fetch_form_submission(conn, user, submission_id)
        submitter = fetch_user(conn, row["user_id"])
        branding = user_branding(conn, submitter["id"])
        submission = FormSubmission(
            submission_id=row["id"],
            submission_type=(row["submission_type"] or "").title(),
            submitted_at=datetime.fromisoformat(row["submitted_at"]),
            form_data=parse_json_object(row["form_data"]),
            user=submission_user(submitter),
        )
        options = PDFOptions(
            include_header=payload.include_header,
            include_footer=payload.include_footer,
            watermark=(payload.watermark or "").strip() or None,
            brand_name=branding["name"],
            primary_color=branding["primary_color"],
        )
        try:
            pdf_bytes = generate_submission_pdf(submission, options)
        except Exception:
            logger.exception("pdf_generation_failed", submission_id=submission_id, kind="form_submission")
            raise HTTPException(status_code=500, detail="Failed to generate PDF")
        write_audit_log(
            conn,
            request,
            user,
            AuditAction.PDF_GENERATED,
            "form_submission",
            submission_id,
            {"kind": "form_submission", "submission_type": row["submission_type"]},
        )
        conn.commit()
    filename = f"{row['submission_type']}_submission_{submission_id}.pdf"
    return Response(
        content=pdf_bytes,
        media_type="application/pdf",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


# ----------------------
# Quotes
# ----------------------

def fetch_quote(conn: sqlite3.Connection, quote_id: str) -> sqlite3.Row:
    cur = conn.cursor()
    cur.execute("SELECT * FROM Quote WHERE id = ?", (quote_id,))
    row = cur.fetchone()
    if not row:
        raise HTTPException(status_code=404, detail="Quote not found")
    return row


def require_quote_access(conn: sqlite3.Connection, user: Any, quote_id: str) -> sqlite3.Row:
    row = fetch_quote(conn, quote_id)
    if not user_can_access_owned(conn, user, row["user_id"]):
        raise HTTPException(status_code=403, detail="Forbidden")
    return row


def quote_out(row: Any) -> Dict[str, Any]:
    data = dict(row)
    data["plan_types"] = parse_json_list(data.get("plan_types"))
    data["results"] = parse_json_list(data.get("results"))
    return data


def normalize_plan_types(values: List[str]) -> List[str]:
    normalized: List[str] = []
    for value in values:
        plan_type = (value or "").strip().upper()
        if plan_type not in PLAN_TYPES:
            raise HTTPException(status_code=400, detail=f"Unknown plan type: {value}")
        if plan_type not in normalized:
            normalized.append(plan_type)
    return normalized


def check_quote_fields(data: Dict[str, Any]) -> None:
    zip_code = data.get("zip_code")
    if zip_code and not ZIP_CODE_RE.match(zip_code.strip()):
        raise HTTPException(status_code=400, detail="ZIP code must be 5 digits")
    effective_date = data.get("effective_date")
    if effective_date:
        try:
            date.fromisoformat(effective_date)
        except ValueError:
            raise HTTPException(status_code=400, detail="Effective date must be YYYY-MM-DD")
    employee_count = data.get("employee_count")
    if employee_count is not None and employee_count < 1:
        raise HTTPException(status_code=400, detail="Employee count must be at least 1")


@app.post("/api/quotes")
def create_quote(payload: QuoteIn, request: Request) -> Dict[str, Any]:
    data = payload.model_dump()
    check_quote_fields(data)
    plan_types = normalize_plan_types(payload.plan_types)
    with get_db() as conn:
        user = require_session_user(conn, request)
        company = require_company_access(conn, user, payload.company_id) if payload.company_id else None
        company_name = (payload.company_name or "").strip() or (company["name"] if company else "")
        if not company_name:
            raise HTTPException(status_code=400, detail="Company name is required")
        employee_count = payload.employee_count
        if employee_count is None and company is not None:
            employee_count = company["employee_count"]
        quote_id = str(uuid.uuid4())
        now = now_iso()
        cur = conn.cursor()
        cur.execute(
            """
            INSERT INTO Quote (
                id, user_id, company_id, company_name, zip_code, effective_date, employee_count,
                plan_types, notes, status, results, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, 'Draft', '[]', ?, ?)
            """,
            (
                quote_id,
                user["id"],
                company["id"] if company else None,
                company_name,
                (payload.zip_code or "").strip() or (company["zip"] if company else None),
                payload.effective_date or (company["effective_date"] if company else None),
                employee_count,
                json.dumps(plan_types),
                payload.notes,
                now,
                now,
            ),
        )
        conn.commit()
        row = fetch_quote(conn, quote_id)
    logger.info("quote_created", quote_id=quote_id, user_id=user["id"])
    return quote_out(row)


@app.get("/api/quotes")
def list_quotes(request: Request) -> List[Dict[str, Any]]:
    with get_db() as conn:
        user = require_session_user(conn, request)
        role = (user["role"] or "").strip().lower()
        cur = conn.cursor()
        if role == "admin":
            cur.execute("SELECT * FROM Quote ORDER BY created_at DESC")
        elif role in BROKER_ROLES and user["broker_id"]:
            cur.execute(
                """
                SELECT q.*
                FROM Quote q
                JOIN User u ON u.id = q.user_id
                WHERE u.broker_id = ? OR q.user_id = ?
                ORDER BY q.created_at DESC
                """,
                (user["broker_id"], user["id"]),
            )
        else:
            cur.execute("SELECT * FROM Quote WHERE user_id = ? ORDER BY created_at DESC", (user["id"],))
        rows = cur.fetchall()
    return [quote_out(row) for row in rows]


@app.get("/api/quotes/{quote_id}")
def get_quote(quote_id: str, request: Request) -> Dict[str, Any]:
    with get_db() as conn:
        user = require_session_user(conn, request)
        row = require_quote_access(conn, user, quote_id)
    return quote_out(row)


@app.patch("/api/quotes/{quote_id}")
def update_quote(quote_id: str, payload: QuoteUpdate, request: Request) -> Dict[str, Any]:
    updates = payload.model_dump(exclude_unset=True)
    check_quote_fields(updates)
    if "company_name" in updates:
        updates["company_name"] = (updates["company_name"] or "").strip()
        if not updates["company_name"]:
            raise HTTPException(status_code=400, detail="Company name is required")
    if "plan_types" in updates:
        updates["plan_types"] = json.dumps(normalize_plan_types(updates["plan_types"] or []))
    if "status" in updates and updates["status"] not in QUOTE_STATUSES:
        allowed = ", ".join(QUOTE_STATUSES)
        raise HTTPException(status_code=400, detail=f"Status must be one of: {allowed}")
    with get_db() as conn:
        user = require_session_user(conn, request)
        require_quote_access(conn, user, quote_id)
        apply_updates(conn, "Quote", quote_id, updates)
        conn.commit()
        row = fetch_quote(conn, quote_id)
    return quote_out(row)


@app.post("/api/quotes/generate")
def generate_quotes(payload: QuoteGenerateIn, request: Request) -> Dict[str, Any]:
    if not payload.zip_code or not payload.effective_date or not payload.plan_types:
        raise HTTPException(status_code=400, detail="Missing required quote parameters")
    check_quote_fields(payload.model_dump())
    plan_types = normalize_plan_types(payload.plan_types)

    with get_db() as conn:
        user = require_session_user(conn, request)
        if payload.quote_id:
            require_quote_access(conn, user, payload.quote_id)
        cur = conn.cursor()
        cur.execute("SELECT * FROM Plan ORDER BY monthly_premium, carrier, name")
        catalog = [dict(row) for row in cur.fetchall()]
        results: List[Dict[str, Any]] = []
        for plan_type in plan_types:
            matches = filter_plans(
                catalog,
                PlanFilter(plan_type=plan_type, benefit_type="medical", coverage_date=payload.effective_date),
            )
            for plan in matches:
                premium = float(plan["monthly_premium"] or 0)
                results.append(
                    {
                        "plan_id": plan["id"],
                        "carrier": plan["carrier"],
                        "plan_name": plan["name"],
                        "plan_type": plan["plan_type"],
                        "metal_tier": plan["metal_tier"],
                        "network": plan["network"],
                        "monthly_premium": premium,
                        "deductible": plan["deductible"],
                        "out_of_pocket_max": plan["out_of_pocket_max"],
                        "estimated_monthly_total": round(premium * payload.employee_count, 2),
                    }
                )
        results.sort(key=lambda item: (item["monthly_premium"], item["carrier"], item["plan_name"]))
        if payload.quote_id:
            apply_updates(
                conn,
                "Quote",
                payload.quote_id,
                {
                    "results": json.dumps(results),
                    "status": "Quoted",
                    "zip_code": payload.zip_code.strip(),
                    "effective_date": payload.effective_date,
                    "employee_count": payload.employee_count,
                    "plan_types": json.dumps(plan_types),
                },
            )
            conn.commit()
    logger.info("quotes_generated", user_id=user["id"], quote_id=payload.quote_id, results=len(results))
    return {
        "quote_id": payload.quote_id,
        "zip_code": payload.zip_code.strip(),
        "effective_date": payload.effective_date,
        "employee_count": payload.employee_count,
        "quotes": results,
    }


# ----------------------
# Audit log
# ----------------------

AUDIT_EXPORT_HEADERS = ["Timestamp", "Action", "User", "Agency", "Details", "IP Address"]


def fetch_audit_rows(conn: sqlite3.Connection, action: Optional[str], limit: int) -> List[sqlite3.Row]:
    query = """
        SELECT l.*, b.name AS broker_name
        FROM AuditLog l
        LEFT JOIN Broker b ON b.id = l.broker_id
    """
    params: List[Any] = []
    if action:
        query += " WHERE l.action = ?"
        params.append(action)
    query += " ORDER BY l.created_at DESC LIMIT ?"
    params.append(limit)
    cur = conn.cursor()
    cur.execute(query, params)
    return cur.fetchall()


@app.get("/api/admin/audit-logs")
def list_audit_logs(request: Request, action: Optional[str] = None, limit: int = 100) -> List[Dict[str, Any]]:
    limit = max(1, min(limit, 1000))
    with get_db() as conn:
        require_session_role(conn, request, {"admin"})
        rows = fetch_audit_rows(conn, action, limit)
    results = []
    for row in rows:
        data = dict(row)
        data["details"] = json.loads(data["details"]) if data.get("details") else {}
        results.append(data)
    return results


@app.get("/api/admin/audit-logs/export")
def export_audit_logs(request: Request, action: Optional[str] = None) -> Response:
    with get_db() as conn:
        require_session_role(conn, request, {"admin"})
        rows = fetch_audit_rows(conn, action, 10000)
    buffer = io.StringIO()
    writer = csv.writer(buffer)
    writer.writerow(AUDIT_EXPORT_HEADERS)
    for row in rows:
        writer.writerow(
            [
                row["created_at"],
                row["action"],
                row["user_email"] or row["user_id"] or "",
                row["broker_name"] or "",
                row["details"] or "",
                row["ip_address"] or "",
            ]
        )
    stamp = datetime.utcnow().strftime("%Y%m%d")
    return Response(
        content=buffer.getvalue(),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="audit-log-{stamp}.csv"'},
    )


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
