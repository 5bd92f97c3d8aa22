from __future__ import annotations

import csv
import zipfile
from dataclasses import dataclass
from datetime import date
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

import openpyxl
import xlrd
from openpyxl.utils.exceptions import InvalidFileException

from logging_config import get_logger

logger = get_logger(__name__)

PLAN_TYPES = {"PPO", "HMO", "EPO", "HSA", "POS"}
METAL_TIERS = {"Bronze", "Silver", "Gold", "Platinum"}
NETWORK_TYPES = {"Full Network", "Limited Network"}

DEFAULT_PLAN_TYPE = "PPO"
DEFAULT_NETWORK = "Standard"
DEFAULT_METAL_TIER = "Silver"
DEFAULT_BENEFIT_TYPE = "medical"

CARRIERS_BY_BENEFIT = {
    "medical": ["Aetna", "Anthem BC", "Blue Shield", "United HealthCare", "HealthNet"],
    "dental": ["Delta Dental", "MetLife", "Guardian"],
    "vision": ["VSP", "EyeMed", "Humana Vision"],
    "life": ["MetLife", "Guardian", "Principal"],
}

SAMPLE_PLANS: List[Dict[str, Any]] = [
    {
        "carrier": "Anthem",
        "name": "Anthem Silver PPO 2000/20%",
        "plan_type": "PPO",
        "benefit_type": "medical",
        "network": "Prudent Buyer PPO",
        "network_type": "Full Network",
        "metal_tier": "Silver",
        "monthly_premium": 345.80,
        "deductible": 2000,
        "out_of_pocket_max": 7500,
        "details": "20% coinsurance after deductible",
    },
    {
        "carrier": "Anthem",
        "name": "Anthem Gold HMO 25/500",
        "plan_type": "HMO",
        "benefit_type": "medical",
        "network": "California Care HMO",
        "network_type": "Limited Network",
        "metal_tier": "Gold",
        "monthly_premium": 456.25,
        "deductible": 500,
        "out_of_pocket_max": 5000,
        "details": "$25 office visit copay",
    },
    {
        "carrier": "Anthem",
        "name": "Anthem Platinum PPO 250/10%",
        "plan_type": "PPO",
        "benefit_type": "medical",
        "network": "Prudent Buyer PPO",
        "network_type": "Full Network",
        "metal_tier": "Platinum",
        "monthly_premium": 587.40,
        "deductible": 250,
        "out_of_pocket_max": 3500,
        "details": "10% coinsurance after deductible",
    },
    {
        "carrier": "Blue Shield",
        "name": "Blue Shield Gold PPO 500/30",
        "plan_type": "PPO",
        "benefit_type": "medical",
        "network": "Full PPO Network",
        "network_type": "Full Network",
        "metal_tier": "Gold",
        "monthly_premium": 478.90,
        "deductible": 500,
        "out_of_pocket_max": 5500,
        "details": "$30 office visit copay",
    },
    {
        "carrier": "Blue Shield",
        "name": "Blue Shield Silver PPO 1700/40",
        "plan_type": "PPO",
        "benefit_type": "medical",
        "network": "Full PPO Network",
        "network_type": "Full Network",
        "metal_tier": "Silver",
        "monthly_premium": 392.50,
        "deductible": 1700,
        "out_of_pocket_max": 8000,
        "details": "$40 office visit copay",
    },
    {
        "carrier": "CCSB",
        "name": "CCSB Bronze HDHP 7000/0%",
        "plan_type": "HSA",
        "benefit_type": "medical",
        "network": "CCSB Network",
        "network_type": "Limited Network",
        "metal_tier": "Bronze",
        "monthly_premium": 285.00,
        "deductible": 7000,
        "out_of_pocket_max": 7000,
        "details": "HSA eligible",
    },
    {
        "carrier": "CCSB",
        "name": "CCSB Silver HMO 55/2250",
        "plan_type": "HMO",
        "benefit_type": "medical",
        "network": "CCSB Network",
        "network_type": "Limited Network",
        "metal_tier": "Silver",
        "monthly_premium": 378.40,
        "deductible": 2250,
        "out_of_pocket_max": 8200,
        "details": "$55 office visit copay",
    },
    {
        "carrier": "Delta Dental",
        "name": "Delta Dental PPO 1500",
        "plan_type": "PPO",
        "benefit_type": "dental",
        "network": "Delta Dental PPO",
        "network_type": "Full Network",
        "metal_tier": None,
        "monthly_premium": 42.15,
        "deductible": 50,
        "out_of_pocket_max": None,
        "details": "$1,500 annual maximum",
    },
    {
        "carrier": "VSP",
        "name": "VSP Choice 12/12/24",
        "plan_type": "PPO",
        "benefit_type": "vision",
        "network": "VSP Choice",
        "network_type": "Full Network",
        "metal_tier": None,
        "monthly_premium": 8.90,
        "deductible": 0,
        "out_of_pocket_max": None,
        "details": "$10 exam copay",
    },
]

# Normalized header -> plan column.
PLAN_HEADER_ALIASES = {
    "carrier": "carrier",
    "carriername": "carrier",
    "name": "name",
    "planname": "name",
    "plan": "name",
    "type": "plan_type",
    "plantype": "plan_type",
    "benefit": "benefit_type",
    "benefittype": "benefit_type",
    "coverage": "benefit_type",
    "network": "network",
    "networkname": "network",
    "networktype": "network_type",
    "metaltier": "metal_tier",
    "metal": "metal_tier",
    "tier": "metal_tier",
    "monthlypremium": "monthly_premium",
    "premium": "monthly_premium",
    "monthlycost": "monthly_premium",
    "rate": "monthly_premium",
    "deductible": "deductible",
    "outofpocketmax": "out_of_pocket_max",
    "oopmax": "out_of_pocket_max",
    "moop": "out_of_pocket_max",
    "details": "details",
    "description": "details",
    "contractcode": "contract_code",
    "effectivestart": "effective_start",
    "effectivedate": "effective_start",
    "effectiveend": "effective_end",
    "terminationdate": "effective_end",
}


class PlanImportError(ValueError):
    pass


@dataclass
class PlanFilter:
    search: Optional[str] = None
    carrier: Optional[str] = None
    plan_type: Optional[str] = None
    benefit_type: Optional[str] = None
    metal_tier: Optional[str] = None
    network: Optional[str] = None
    network_type: Optional[str] = None
    max_premium: Optional[float] = None
    coverage_date: Optional[str] = None


def normalize_header(header: str) -> str:
    return "".join(ch for ch in header.lower() if ch.isalnum())


def carriers_for_benefit(benefit: str) -> List[str]:
    return list(CARRIERS_BY_BENEFIT.get((benefit or "").strip().lower(), []))


def _parse_date(value: Optional[str]) -> Optional[date]:
    if not value:
        return None
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        return None


def plan_in_effect(plan: Dict[str, Any], coverage_date: Optional[str]) -> bool:
    target = _parse_date(coverage_date)
    if target is None:
        return True
    start = _parse_date(plan.get("effective_start"))
    end = _parse_date(plan.get("effective_end"))
    if start and target < start:
        return False
    if end and target > end:
        return False
    return True


def filter_plans(plans: Iterable[Dict[str, Any]], criteria: PlanFilter) -> List[Dict[str, Any]]:
    search = (criteria.search or "").strip().lower()
    exact_fields = ("carrier", "plan_type", "benefit_type", "metal_tier", "network", "network_type")
    results: List[Dict[str, Any]] = []
    for plan in plans:
        if search:
            haystack = f"{plan.get('name') or ''} {plan.get('carrier') or ''}".lower()
            if search not in haystack:
                continue
        if any(
            getattr(criteria, field) and plan.get(field) != getattr(criteria, field)
            for field in exact_fields
        ):
            continue
        if criteria.max_premium is not None:
            premium = plan.get("monthly_premium")
            if premium is None or float(premium) > criteria.max_premium:
                continue
        if not plan_in_effect(plan, criteria.coverage_date):
            continue
        results.append(plan)
    return results


def group_plans(plans: Iterable[Dict[str, Any]], key: str = "benefit_type") -> Dict[str, List[Dict[str, Any]]]:
    grouped: Dict[str, List[Dict[str, Any]]] = {}
    for plan in plans:
        grouped.setdefault(plan.get(key) or "other", []).append(plan)
    return grouped


def _read_plan_rows(path: Path) -> tuple[List[str], List[Dict[str, Any]]]:
    suffix = path.suffix.lower()
    if suffix == ".csv":
        with path.open("r", encoding="utf-8", errors="ignore") as f:
            sample = f.read(2048)
            f.seek(0)
            delimiter = ","
            try:
                delimiter = csv.Sniffer().sniff(sample).delimiter
            except csv.Error:
                delimiter = ","
            reader = csv.DictReader(f, delimiter=delimiter)
            if not reader.fieldnames:
                raise PlanImportError("Plan file has no header row")
            rows = [dict(row) for row in reader]
            return list(reader.fieldnames), rows
    if suffix == ".xlsx":
        wb = openpyxl.load_workbook(path, data_only=True)
        ws = wb.active
        rows_iter = list(ws.iter_rows(values_only=True))
        if not rows_iter:
            raise PlanImportError("Plan file has no rows")
        headers = [str(cell).strip() if cell is not None else "" for cell in rows_iter[0]]
        if not any(headers):
            raise PlanImportError("Plan file has no header row")
        rows = []
        for row in rows_iter[1:]:
            row_dict: Dict[str, Any] = {}
            for idx, header in enumerate(headers):
                if header == "":
                    continue
                value = row[idx] if idx < len(row) else ""
                row_dict[header] = "" if value is None else str(value)
            rows.append(row_dict)
        return headers, rows
    if suffix == ".xls":
        book = xlrd.open_workbook(path)
        sheet = book.sheet_by_index(0)
        if sheet.nrows == 0:
            raise PlanImportError("Plan file has no rows")
        headers = [str(cell.value).strip() for cell in sheet.row(0)]
        if not any(headers):
            raise PlanImportError("Plan file has no header row")
        rows = []
        for r in range(1, sheet.nrows):
            row_dict = {}
            for c, header in enumerate(headers):
                if header == "":
                    continue
                value = sheet.cell_value(r, c)
                row_dict[header] = "" if value is None else str(value)
            rows.append(row_dict)
        return headers, rows
    raise PlanImportError("Unsupported file type. Please upload a .csv or .xls/.xlsx file.")


def load_plan_rows(path: Path) -> tuple[List[str], List[Dict[str, Any]]]:
    try:
        return _read_plan_rows(path)
    except (zipfile.BadZipFile, InvalidFileException, KeyError, xlrd.XLRDError, UnicodeDecodeError) as exc:
        logger.warning("plan_file_unreadable", file=path.name, error=str(exc))
        raise PlanImportError("Plan file could not be read. Please upload a valid spreadsheet.") from exc


def parse_money(value: Any) -> Optional[float]:
    text = str(value or "").strip().replace("$", "").replace(",", "")
    if not text:
        return None
    try:
        return round(float(text), 2)
    except ValueError:
        return None


def normalize_plan_row(
    row: Dict[str, Any],
    index: int,
    default_carrier: str,
    plan_year: Optional[int] = None,
) -> Dict[str, Any]:
    values: Dict[str, str] = {}
    for header, value in row.items():
        column = PLAN_HEADER_ALIASES.get(normalize_header(header or ""))
        if column and column not in values:
            values[column] = str(value or "").strip()

    carrier = values.get("carrier") or default_carrier
    plan_type = (values.get("plan_type") or DEFAULT_PLAN_TYPE).upper()
    metal = values.get("metal_tier") or DEFAULT_METAL_TIER
    network_type = values.get("network_type") or None
    if network_type and not network_type.lower().endswith("network"):
        network_type = f"{network_type.title()} Network"
    return {
        "carrier": carrier,
        "name": values.get("name") or f"{carrier} Plan {index}",
        "plan_type": plan_type,
        "benefit_type": (values.get("benefit_type") or DEFAULT_BENEFIT_TYPE).lower(),
        "network": values.get("network") or DEFAULT_NETWORK,
        "network_type": network_type,
        "metal_tier": metal.title(),
        "monthly_premium": parse_money(values.get("monthly_premium")),
        "deductible": parse_money(values.get("deductible")),
        "out_of_pocket_max": parse_money(values.get("out_of_pocket_max")),
        "details": values.get("details") or None,
        "contract_code": values.get("contract_code") or None,
        "effective_start": values.get("effective_start") or None,
        "effective_end": values.get("effective_end") or None,
        "plan_year": plan_year,
    }


def parse_plan_file(path: Path, default_carrier: str, plan_year: Optional[int] = None) -> List[Dict[str, Any]]:
    carrier = (default_carrier or "").strip()
    if not carrier:
        raise PlanImportError("Carrier is required")
    _, rows = load_plan_rows(path)
    plans: List[Dict[str, Any]] = []
    for index, row in enumerate(rows, start=1):
        if not any(str(value or "").strip() for value in row.values()):
            continue
        plans.append(normalize_plan_row(row, index, carrier, plan_year))
    logger.info("plan_file_parsed", file=path.name, carrier=carrier, rows=len(rows), plans=len(plans))
    return plans
