"""
Enrollment workflow rules: step sequencing, application status transitions,
the document requirements an application has to satisfy, and the checks
applied to saved and submitted forms.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

DEFAULT_FEATURE_FLAGS: Dict[str, bool] = {
    "EMPLOYEE_MANAGEMENT": False,
    "CARRIER_SPECIFIC_DOCUMENTS": False,
    "PREMIUM_CALCULATION": False,
    "E_SIGNATURE": True,
    "SMART_DOCUMENTS": True,
    "ADMIN_OVERRIDE": True,
    "BROKER_OVERRIDE": False,
}


@dataclass(frozen=True)
class EnrollmentStep:
    id: str
    title: str
    description: str
    feature_flag: Optional[str] = None


ENROLLMENT_STEPS: List[EnrollmentStep] = [
    EnrollmentStep("carriers", "Carriers", "Choose the carriers to quote"),
    EnrollmentStep("company", "Company", "Company information"),
    EnrollmentStep("ownership", "Ownership", "Business owners"),
    EnrollmentStep("authorized-contact", "Authorized Contact", "Who can act for the company"),
    EnrollmentStep("employees", "Employees", "Employee census", feature_flag="EMPLOYEE_MANAGEMENT"),
    EnrollmentStep("documents", "Documents", "Required documents"),
    EnrollmentStep("plans", "Plans", "Plan selection"),
    EnrollmentStep("contributions", "Contributions", "Employer contributions"),
    EnrollmentStep("review", "Review", "Review and sign"),
]

# Progress markers recorded by the setup forms; they are not wizard steps.
SETUP_STEPS = {"application-initiator", "company-information", "coverage-information"}

APPLICATION_STATUSES = ("in_progress", "pending_review", "submitted", "approved", "declined")

STATUS_TRANSITIONS: Dict[str, set] = {
    "in_progress": {"pending_review", "submitted"},
    "pending_review": {"in_progress", "submitted"},
    "submitted": {"approved", "declined"},
    "approved": set(),
    "declined": {"in_progress"},
}

SIGNABLE_STATUSES = {"in_progress", "pending_review"}


class WorkflowError(ValueError):
    pass


def enabled_steps(flags: Dict[str, bool]) -> List[EnrollmentStep]:
    return [
        step
        for step in ENROLLMENT_STEPS
        if step.feature_flag is None or flags.get(step.feature_flag, False)
    ]


def step_index(step_id: str, flags: Dict[str, bool]) -> int:
    for index, step in enumerate(enabled_steps(flags)):
        if step.id == step_id:
            return index
    return -1


def next_step(step_id: str, flags: Dict[str, bool]) -> Optional[EnrollmentStep]:
    steps = enabled_steps(flags)
    index = step_index(step_id, flags)
    if index < 0 or index + 1 >= len(steps):
        return None
    return steps[index + 1]


def previous_step(step_id: str, flags: Dict[str, bool]) -> Optional[EnrollmentStep]:
    steps = enabled_steps(flags)
    index = step_index(step_id, flags)
    if index <= 0:
        return None
    return steps[index - 1]


def is_known_step(step_id: str) -> bool:
    return step_id in SETUP_STEPS or any(step.id == step_id for step in ENROLLMENT_STEPS)


def record_step(completed_steps: Iterable[str], step_id: str) -> List[str]:
    if not is_known_step(step_id):
        raise WorkflowError(f"Unknown enrollment step: {step_id}")
    steps = list(completed_steps)
    if step_id not in steps:
        steps.append(step_id)
    return steps


def completion_percentage(completed_steps: Iterable[str], flags: Dict[str, bool]) -> int:
    steps = enabled_steps(flags)
    if not steps:
        return 0
    done = set(completed_steps)
    finished = sum(1 for step in steps if step.id in done)
    return int(round(finished * 100 / len(steps)))


def can_transition(current: str, target: str) -> bool:
    return target in STATUS_TRANSITIONS.get(current, set())


def require_transition(current: str, target: str) -> None:
    if target not in APPLICATION_STATUSES:
        allowed = ", ".join(APPLICATION_STATUSES)
        raise WorkflowError(f"Status must be one of: {allowed}")
    if current == target:
        return
    if not can_transition(current, target):
        raise WorkflowError(f"Cannot move application from {current} to {target}")


# ----------------------
# Document requirements
# ----------------------

BASE_DOCUMENTS = [
    {"name": "DE-9C", "label": "DE-9C Quarterly Wage Report", "required": True},
    {"name": "Business License", "label": "Business License", "required": True},
    {"name": "Articles of Incorporation", "label": "Articles of Incorporation", "required": True},
    {"name": "Wage and Tax Statement", "label": "Wage and Tax Statement", "required": True},
    {"name": "Current Carrier Bill", "label": "Current Carrier Bill", "required": False},
]

CARRIER_DOCUMENTS: Dict[str, List[Dict[str, Any]]] = {
    "Anthem": [
        {"name": "Anthem-Group-App", "label": "Anthem Group Application", "required": True},
    ],
    "Blue Shield": [
        {"name": "BlueShield-MasterGroup-App", "label": "Blue Shield Master Group Application", "required": True},
        {"name": "BlueShield-RefusalOfCoverage", "label": "Blue Shield Refusal of Coverage", "required": True},
    ],
    "Kaiser": [
        {"name": "Kaiser-GroupApp", "label": "Kaiser Group Application", "required": True},
    ],
    "UnitedHealthcare": [
        {"name": "UHC-GroupApp", "label": "UHC Group Application", "required": True},
        {"name": "UHC-EmployerApp", "label": "UHC Employer Application", "required": True},
    ],
}

LARGE_GROUP_THRESHOLD = 50


@dataclass
class RequirementGroup:
    id: str
    label: str
    documents: List[str]
    one_of: bool = False

    def is_satisfied(self, uploaded: set) -> bool:
        if self.one_of:
            return any(doc in uploaded for doc in self.documents)
        return all(doc in uploaded for doc in self.documents)

    def missing(self, uploaded: set) -> List[str]:
        if self.one_of:
            return [] if self.is_satisfied(uploaded) else list(self.documents)
        return [doc for doc in self.documents if doc not in uploaded]


@dataclass
class DocumentValidation:
    is_valid: bool
    missing_requirements: List[str] = field(default_factory=list)
    satisfied_groups: int = 0
    total_groups: int = 0
    errors: List[str] = field(default_factory=list)
    override_applied: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "is_valid": self.is_valid,
            "missing_requirements": list(self.missing_requirements),
            "satisfied_groups": self.satisfied_groups,
            "total_groups": self.total_groups,
            "errors": list(self.errors),
            "override_applied": self.override_applied,
        }


def carrier_documents(carrier: Optional[str]) -> List[Dict[str, Any]]:
    if not carrier:
        return []
    return list(CARRIER_DOCUMENTS.get(carrier, []))


def requirement_groups(
    *,
    has_prior_coverage: bool,
    employee_count: int,
    carrier: Optional[str],
    flags: Dict[str, bool],
) -> List[RequirementGroup]:
    groups = [
        RequirementGroup(
            "payProof",
            "Proof of payroll",
            ["DE-9C", "Wage and Tax Statement"],
            one_of=True,
        ),
        RequirementGroup(
            "businessDocs",
            "Proof of business",
            ["Business License", "Articles of Incorporation"],
            one_of=True,
        ),
    ]
    if has_prior_coverage:
        groups.append(RequirementGroup("priorCoverage", "Prior coverage", ["Current Carrier Bill"]))
    if employee_count > LARGE_GROUP_THRESHOLD:
        groups.append(
            RequirementGroup("largeGroup", "Large group payroll", ["DE-9C", "Wage and Tax Statement"])
        )
    if flags.get("CARRIER_SPECIFIC_DOCUMENTS"):
        carrier_docs = [doc["name"] for doc in carrier_documents(carrier) if doc["required"]]
        if carrier_docs:
            groups.append(RequirementGroup("carrierSpecific", f"{carrier} forms", carrier_docs))
    return groups


def validate_documents(
    uploaded_types: Iterable[str],
    *,
    has_prior_coverage: bool = False,
    employee_count: int = 0,
    carrier: Optional[str] = None,
    flags: Optional[Dict[str, bool]] = None,
) -> DocumentValidation:
    flags = flags if flags is not None else DEFAULT_FEATURE_FLAGS
    groups = requirement_groups(
        has_prior_coverage=has_prior_coverage,
        employee_count=employee_count,
        carrier=carrier,
        flags=flags,
    )
    if not flags.get("SMART_DOCUMENTS", True):
        return DocumentValidation(
            is_valid=True,
            satisfied_groups=len(groups),
            total_groups=len(groups),
        )

    uploaded = {value for value in uploaded_types if value}
    missing: List[str] = []
    errors: List[str] = []
    satisfied = 0
    for group in groups:
        if group.is_satisfied(uploaded):
            satisfied += 1
            continue
        for doc in group.missing(uploaded):
            if doc not in missing:
                missing.append(doc)
        joiner = " or " if group.one_of else ", "
        errors.append(f"Missing required documents: {group.label} ({joiner.join(group.missing(uploaded))})")

    return DocumentValidation(
        is_valid=not errors,
        missing_requirements=missing,
        satisfied_groups=satisfied,
        total_groups=len(groups),
        errors=errors,
    )


def can_override_validation(role: Optional[str], flags: Dict[str, bool]) -> bool:
    normalized = (role or "").strip().lower()
    if normalized == "admin":
        return bool(flags.get("ADMIN_OVERRIDE"))
    if normalized in {"owner", "staff"}:
        return bool(flags.get("BROKER_OVERRIDE"))
    return False


def validate_with_override(
    result: DocumentValidation,
    *,
    role: Optional[str],
    reason: Optional[str],
    flags: Dict[str, bool],
) -> DocumentValidation:
    if result.is_valid:
        return result
    if not can_override_validation(role, flags):
        raise WorkflowError("Override not permitted for this role")
    reason_text = (reason or "").strip()
    if not reason_text:
        raise WorkflowError("Override reason is required")
    return DocumentValidation(
        is_valid=True,
        missing_requirements=list(result.missing_requirements),
        satisfied_groups=result.satisfied_groups,
        total_groups=result.total_groups,
        errors=[f"Override applied by {role}: {reason_text}"],
        override_applied=True,
    )


# ----------------------
# Saved forms and submissions
# ----------------------

FORM_ID_MAX_LENGTH = 50
FORM_MAX_STEP = 20

FORM_REQUIRED_FIELDS: Dict[str, List[str]] = {
    "enrollment": [
        "companyName",
        "companyAddress",
        "contactName",
        "contactEmail",
        "contactPhone",
        "employeeCount",
    ],
    "quote": ["companyName", "contactEmail", "employeeCount"],
    "application": [
        "companyName",
        "contactName",
        "contactEmail",
        "contactPhone",
        "requestedCoverage",
    ],
}

FORM_NEXT_STEPS: Dict[str, List[str]] = {
    "enrollment": [
        "Your enrollment application has been received",
        "A representative will contact you within 2 business days",
        "Please check your email for confirmation and next steps",
        "You can download a PDF copy of your submission",
    ],
    "quote": [
        "Your quote request has been submitted",
        "You will receive a detailed quote within 1 business day",
        "Check your email for quote details and options",
    ],
    "application": [
        "Your application has been received",
        "Processing typically takes 3-5 business days",
        "You will be notified of any additional requirements",
    ],
}


def normalize_form_id(form_id: Optional[str]) -> str:
    value = (form_id or "").strip()
    if not value or len(value) > FORM_ID_MAX_LENGTH:
        raise WorkflowError(f"Form id must be 1 to {FORM_ID_MAX_LENGTH} characters")
    return value


def validate_form_step(current_step: int) -> int:
    if current_step < 0 or current_step > FORM_MAX_STEP:
        raise WorkflowError(f"Current step must be between 0 and {FORM_MAX_STEP}")
    return current_step


def missing_form_field(form_data: Dict[str, Any], submission_type: str) -> Optional[Dict[str, str]]:
    """First required field that is blank, as a ``{"field", "message"}`` error."""
    if submission_type not in FORM_REQUIRED_FIELDS:
        allowed = ", ".join(FORM_REQUIRED_FIELDS)
        raise WorkflowError(f"Submission type must be one of: {allowed}")
    for name in FORM_REQUIRED_FIELDS[submission_type]:
        value = form_data.get(name)
        if value is None or str(value).strip() == "" or value == []:
            return {"field": name, "message": f"{name} is required for {submission_type} submission"}
    return None


def form_next_steps(submission_type: str) -> List[str]:
    return list(
        FORM_NEXT_STEPS.get(submission_type, ["Your submission has been received and will be processed shortly"])
    )
