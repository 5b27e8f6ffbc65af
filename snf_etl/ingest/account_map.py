"""
Static label lookups for the monthly income-statement template.

Each facility sheet labels its ledger lines in a fixed column. A label that
matches one of these tables exactly is a fact; anything else (subtotals we
recompute, spacer rows, notes) is ignored.

  REVENUE_LINES  label → (Revenue, subcategory, payer)
  EXPENSE_LINES  label → (Expense, subcategory, None)
  CENSUS_LINES   label → (payer, is_skilled, is_vent)

The tables are read-only mappings; add new labels here, not in the parser.
"""
from __future__ import annotations

from types import MappingProxyType
from typing import NamedTuple, Optional


class AccountLine(NamedTuple):
    category: str
    subcategory: str
    payer: Optional[str] = None


class CensusLine(NamedTuple):
    payer: str
    is_skilled: bool
    is_vent: bool


# Canonical payer categories
PAYER_CATEGORIES = (
    "MEDICARE_A",
    "MEDICARE_ADVANTAGE",  # HMO / MA plans
    "MANAGED_CARE",
    "COMMERCIAL",
    "VA",
    "MEDICAID",
    "MANAGED_MEDICAID",
    "PRIVATE_PAY",
    "HOSPICE",
    "ISNP",  # Institutional Special Needs Plan
    "OTHER",
)

DENOMINATOR_TYPES = ("resident_days", "skilled_days", "payer_days", "occupied_units", "vent_days")


def _revenue(subcategory: str, payer: Optional[str] = None) -> AccountLine:
    return AccountLine("Revenue", subcategory, payer)


def _expense(subcategory: str) -> AccountLine:
    return AccountLine("Expense", subcategory)


REVENUE_LINES = MappingProxyType({
    # -- Non-skilled --
    "Medicaid Revenue": _revenue("Non-Skilled", "MEDICAID"),
    "Managed Medicaid Revenue": _revenue("Non-Skilled", "MANAGED_MEDICAID"),
    "Private Revenue": _revenue("Non-Skilled", "PRIVATE_PAY"),
    "Veterans Revenue": _revenue("Non-Skilled", "VA"),
    "Hospice Revenue": _revenue("Non-Skilled", "HOSPICE"),
    "Total Non-Skilled Revenue": _revenue("Total Non-Skilled"),
    # -- Skilled --
    "Managed Medicaid Revenue - Skilled": _revenue("Skilled", "MANAGED_MEDICAID"),
    "Medicaid Complex Revenue": _revenue("Skilled", "MEDICAID"),
    "Medicaid Bariatric Revenue": _revenue("Skilled", "MEDICAID"),
    "Medicare Revenue": _revenue("Skilled", "MEDICARE_A"),
    "Veterans Revenue - Skilled": _revenue("Skilled", "VA"),
    "HMO Revenue": _revenue("Skilled", "MEDICARE_ADVANTAGE"),
    "ISNP Revenue": _revenue("Skilled", "ISNP"),
    "Total Skilled Revenue": _revenue("Total Skilled"),
    # -- Vent / other --
    "Total Vent Revenue": _revenue("Vent"),
    "Med B": _revenue("Other"),
    "Revenue - Other": _revenue("Other"),
    "Total Other Revenue": _revenue("Total Other"),
    "Total Revenue": _revenue("Total"),
})


def _department(name: str, lines: tuple[str, ...], total_label: str) -> dict[str, AccountLine]:
    out = {f"{name} {line}": _expense(name) for line in lines}
    out[total_label] = _expense(f"Total {name}")
    return out


EXPENSE_LINES = MappingProxyType({
    "Therapy Wages": _expense("Therapy"),
    "Therapy Benefits": _expense("Therapy"),
    "Therapy Other": _expense("Therapy"),
    "Total Therapy Expenses": _expense("Total Therapy"),

    "Pharmacy": _expense("Ancillary"),
    "Lab": _expense("Ancillary"),
    "Radiology": _expense("Ancillary"),
    "Non-Therapy Other": _expense("Ancillary"),
    "Total Non-Therapy Expenses": _expense("Total Ancillary Non-Therapy"),
    "Total Ancillary Expenses": _expense("Total Ancillary"),

    "Nursing Wages": _expense("Nursing"),
    "Nursing Benefits": _expense("Nursing"),
    "Nursing Agency/Contract": _expense("Nursing Contract Labor"),
    "Nursing Purchased Services/Consulting": _expense("Nursing"),
    "Nursing Patient Supplies": _expense("Nursing"),
    "Nursing Resource Fee": _expense("Nursing"),
    "Nursing Other": _expense("Nursing"),
    "Total Nursing Expenses": _expense("Total Nursing"),

    "Total Vent Expenses": _expense("Total Vent"),

    **_department("Plant", ("Wages", "Benefits", "Utilities", "Minor Equip/R&M", "Other"), "Total Plant Expenses"),
    **_department("Housekeeping", ("Wages", "Benefits", "Other"), "Total Housekeeping Expenses"),
    **_department("Laundry", ("Wages", "Benefits", "Other"), "Total Laundry Expenses"),
    **_department(
        "Dietary",
        ("Wages", "Benefits", "Purchased Services/Consulting", "Food & Supplements", "Other"),
        "Total Dietary Expenses",
    ),
    **_department("Social Services", ("Wages", "Benefits", "Other"), "Total Social Services Expenses"),
    **_department("Activities", ("Wages", "Benefits", "Other"), "Total Activities Expenses"),
    **_department("Medical Records", ("Wages", "Benefits", "Other"), "Total Medical Records Expenses"),
    **_department(
        "Administration",
        (
            "Wages", "Benefits", "Purchased Services/Consulting", "Minor Equip/R&M", "IT",
            "Insurance", "Telecom", "Travel", "Legal Fees", "Recruitment", "Resource Fee", "Other",
        ),
        "Total Administration Expenses",
    ),

    "Bad Debt": _expense("Bad Debt"),
    "Bed Tax": _expense("Bed Tax"),
    "Total Operating Expenses": _expense("Total Operating"),

    # Below the line (net income only)
    "Management Fee": _expense("Management Fee"),
    "Rent/Lease Expense": _expense("Property"),
    "Property Taxes": _expense("Property"),
    "Total Property Expenses": _expense("Total Property"),
    "Depreciation & Amortization": _expense("Depreciation"),
    "Other Misc (Income)/Expense": _expense("Other Non-Operating"),
    "(Gain)/Loss on Assets": _expense("Other Non-Operating"),
    "Interest": _expense("Interest"),
    "Total Other Expenses": _expense("Total Other"),
})


# VA days count as skilled, vent or not.
CENSUS_LINES = MappingProxyType({
    "Medicaid Days": CensusLine("MEDICAID", False, False),
    "Managed Medicaid Days": CensusLine("MANAGED_MEDICAID", False, False),
    "Private Days": CensusLine("PRIVATE_PAY", False, False),
    "Veterans Days": CensusLine("VA", True, False),
    "Hospice Days": CensusLine("HOSPICE", False, False),
    "Medicare Days": CensusLine("MEDICARE_A", True, False),
    "Managed Medicaid Skilled Days": CensusLine("MANAGED_MEDICAID", True, False),
    "Medicaid Complex Days": CensusLine("MEDICAID", True, False),
    "Medicaid Bariatric Days": CensusLine("MEDICAID", True, False),
    "Veterans Skilled Days": CensusLine("VA", True, False),
    "HMO Days": CensusLine("MEDICARE_ADVANTAGE", True, False),
    "ISNP Days": CensusLine("ISNP", True, False),
    "Medicaid Days - Vent": CensusLine("MEDICAID", False, True),
    "Managed Medicaid Days - Vent": CensusLine("MANAGED_MEDICAID", False, True),
    "Private Days - Vent": CensusLine("PRIVATE_PAY", False, True),
    "Veterans Days - Vent": CensusLine("VA", True, True),
    "Hospice Days - Vent": CensusLine("HOSPICE", False, True),
    "Medicare Days - Vent": CensusLine("MEDICARE_A", True, True),
    "HMO Days - Vent": CensusLine("MEDICARE_ADVANTAGE", True, True),
})

# Occupancy scalars in the census block: label → OccupancyFact field
OCCUPANCY_DAYS_LABELS = MappingProxyType({
    "Total Second Occupant Days": "second_occupant_days",
})
OCCUPANCY_LABELS = MappingProxyType({
    "Total Patient Days": "total_patient_days",
    "Total Unit Days": "total_unit_days",
    "Operational Beds/Units": "operational_beds",
    "License Beds/Units": "licensed_beds",
    "Operational Occupancy": "operational_occupancy",
})


def denominator_type_for(ppd_lookup: object) -> str:
    """Infer a line's denominator type from the template's PPD-lookup cell."""
    if not ppd_lookup:
        return "resident_days"
    lookup = str(ppd_lookup).lower()
    if "skilled" in lookup:
        return "skilled_days"
    if "vent" in lookup:
        return "vent_days"
    return "resident_days"
