"""
Employer contribution modelling.

A contribution model says how much of each coverage tier's premium the
employer pays, either as a percentage or as a fixed dollar amount, with an
optional per-tier cap. Tier premiums are derived from a plan's base
(employee-only) monthly premium.
"""
from __future__ import annotations

from dataclasses import asdict, dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, List, Optional

ENROLLMENT_TIERS = ("employee", "spouse", "children", "family")

TIER_LABELS = {
    "employee": "Employee Only",
    "spouse": "Employee + Spouse",
    "children": "Employee + Children",
    "family": "Family",
}

TIER_PREMIUM_FACTORS = {
    "employee": Decimal("1.0"),
    "spouse": Decimal("1.5"),
    "children": Decimal("0.8"),
    "family": Decimal("2.5"),
}

CONTRIBUTION_TYPES = {"percentage", "fixed_amount"}

BENEFIT_TYPES = (
    "medical",
    "dental",
    "vision",
    "basic_life",
    "supplemental_life",
    "voluntary_accident",
    "critical_illness",
    "universal_life",
)

MIN_EMPLOYEE_PERCENTAGE = Decimal("50")

# Stored employee tiers map onto the four contribution tiers.
EMPLOYEE_TIER_ALIASES = {
    "employee": "employee",
    "employee_only": "employee",
    "employee_spouse": "spouse",
    "spouse": "spouse",
    "employee_children": "children",
    "children": "children",
    "family": "family",
}

CENTS = Decimal("0.01")


class ContributionError(ValueError):
    pass


def to_money(value: Any) -> Decimal:
    return Decimal(str(value)).quantize(CENTS, rounding=ROUND_HALF_UP)


@dataclass
class ContributionModel:
    employee_contribution: float
    spouse_contribution: float
    children_contribution: float
    family_contribution: float
    contribution_type: str = "percentage"
    max_employer_contribution: Optional[float] = None

    def tier_value(self, tier: str) -> Decimal:
        return Decimal(str(getattr(self, f"{tier}_contribution")))

    @classmethod
    def from_dependent(
        cls,
        employee_contribution: float,
        dependent_contribution: float,
        contribution_type: str = "percentage",
        max_employer_contribution: Optional[float] = None,
    ) -> "ContributionModel":
        return cls(
            employee_contribution=employee_contribution,
            spouse_contribution=dependent_contribution,
            children_contribution=dependent_contribution,
            family_contribution=dependent_contribution,
            contribution_type=contribution_type,
            max_employer_contribution=max_employer_contribution,
        )


DEFAULT_CONTRIBUTION_MODEL = ContributionModel(
    employee_contribution=80,
    spouse_contribution=50,
    children_contribution=50,
    family_contribution=50,
)


@dataclass
class TierCost:
    tier: str
    label: str
    premium: float
    employer_cost: float
    employee_cost: float

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def normalize_enrollment_tier(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    key = value.strip().lower().replace("-", "_").replace(" ", "_")
    if not key or key in {"waived", "none"}:
        return None
    tier = EMPLOYEE_TIER_ALIASES.get(key)
    if tier is None:
        raise ContributionError(f"Unknown enrollment tier: {value}")
    return tier


def validate_contribution_model(model: ContributionModel, *, enforce_minimum: bool = True) -> ContributionModel:
    if model.contribution_type not in CONTRIBUTION_TYPES:
        allowed = ", ".join(sorted(CONTRIBUTION_TYPES))
        raise ContributionError(f"Contribution type must be one of: {allowed}")

    for tier in ENROLLMENT_TIERS:
        value = model.tier_value(tier)
        label = TIER_LABELS[tier]
        if value < 0:
            raise ContributionError(f"{label} contribution cannot be negative")
        if model.contribution_type == "percentage" and value > 100:
            raise ContributionError(f"{label} contribution cannot exceed 100%")

    if (
        enforce_minimum
        and model.contribution_type == "percentage"
        and model.tier_value("employee") < MIN_EMPLOYEE_PERCENTAGE
    ):
        raise ContributionError(f"Employee contribution must be at least {MIN_EMPLOYEE_PERCENTAGE}%")

    if model.max_employer_contribution is not None and model.max_employer_contribution < 0:
        raise ContributionError("Maximum employer contribution cannot be negative")
    return model


def tier_premiums(base_premium: Any) -> Dict[str, Decimal]:
    base = Decimal(str(base_premium or 0))
    if base < 0:
        raise ContributionError("Premium cannot be negative")
    return {tier: to_money(base * factor) for tier, factor in TIER_PREMIUM_FACTORS.items()}


def calculate_tier_costs(base_premium: Any, model: ContributionModel) -> List[TierCost]:
    premiums = tier_premiums(base_premium)
    cap = None
    if model.max_employer_contribution is not None:
        cap = Decimal(str(model.max_employer_contribution))

    results: List[TierCost] = []
    for tier in ENROLLMENT_TIERS:
        premium = premiums[tier]
        value = model.tier_value(tier)
        if model.contribution_type == "percentage":
            employer = to_money(premium * value / Decimal("100"))
        else:
            employer = to_money(min(value, premium))
        if cap is not None:
            employer = min(employer, to_money(cap))
        results.append(
            TierCost(
                tier=tier,
                label=TIER_LABELS[tier],
                premium=float(premium),
                employer_cost=float(employer),
                employee_cost=float(premium - employer),
            )
        )
    return results


def calculate_employer_cost(
    base_premium: Any,
    model: ContributionModel,
    tier_counts: Dict[str, int],
) -> Dict[str, Any]:
    """
    Total monthly cost of a plan for a census.

    ``tier_counts`` maps enrollment tier to the number of enrolled employees;
    unknown tiers raise ``ContributionError``.
    """
    costs = {cost.tier: cost for cost in calculate_tier_costs(base_premium, model)}
    counts = {tier: 0 for tier in ENROLLMENT_TIERS}
    for raw_tier, count in (tier_counts or {}).items():
        tier = normalize_enrollment_tier(raw_tier)
        if tier is None:
            continue
        if count < 0:
            raise ContributionError("Enrollment counts cannot be negative")
        counts[tier] += int(count)

    tiers: List[Dict[str, Any]] = []
    employer_total = Decimal("0")
    employee_total = Decimal("0")
    premium_total = Decimal("0")
    for tier in ENROLLMENT_TIERS:
        cost = costs[tier]
        count = counts[tier]
        employer_monthly = to_money(Decimal(str(cost.employer_cost)) * count)
        employee_monthly = to_money(Decimal(str(cost.employee_cost)) * count)
        premium_monthly = to_money(Decimal(str(cost.premium)) * count)
        employer_total += employer_monthly
        employee_total += employee_monthly
        premium_total += premium_monthly
        tiers.append(
            {
                **cost.to_dict(),
                "enrolled": count,
                "employer_monthly": float(employer_monthly),
                "employee_monthly": float(employee_monthly),
                "premium_monthly": float(premium_monthly),
            }
        )

    return {
        "tiers": tiers,
        "enrolled": sum(counts.values()),
        "total_premium_monthly": float(premium_total),
        "employer_monthly": float(employer_total),
        "employer_annual": float(to_money(employer_total * 12)),
        "employee_monthly": float(employee_total),
    }
