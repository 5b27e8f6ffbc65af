"""
KPI registry: every KPI the calculator knows how to evaluate.

Each definition names its numerator and denominator as quantity keys; the
calculator resolves those keys per (facility, period) and divides. A
definition never carries code, so a test can hand the calculator a synthetic
registry built from the same KPIDefinition type.
"""
from __future__ import annotations

from dataclasses import dataclass
from types import MappingProxyType
from typing import Mapping, Union

UNITS = ("currency", "percentage", "hours", "number")
SETTINGS = ("SNF", "ALF", "ILF", "SeniorLiving")
SNF = ("SNF",)
SENIOR_LIVING = ("SeniorLiving", "ALF", "ILF")


@dataclass(frozen=True)
class KPIDefinition:
    kpi_id: str
    name: str
    description: str
    formula: str
    numerator: str
    denominator: str
    denominator_type: str
    payer_scope: Union[str, tuple[str, ...]]
    unit: str
    settings: tuple[str, ...]
    higher_is_better: bool

    @property
    def payer_scope_text(self) -> str:
        if isinstance(self.payer_scope, tuple):
            return ",".join(self.payer_scope)
        return self.payer_scope


_DEFINITIONS = [
    # -- Revenue --
    KPIDefinition(
        "total_revenue_ppd", "Total Revenue PPD",
        "Total revenue per patient day across all payers",
        "Total Revenue / Resident Days",
        "total_revenue", "resident_days", "resident_days", "all", "currency", SNF, True,
    ),
    KPIDefinition(
        "skilled_revenue_psd", "Skilled Revenue PSD",
        "Revenue from skilled payers per skilled day",
        "Skilled Revenue / Skilled Days",
        "skilled_revenue", "skilled_days", "skilled_days", "skilled", "currency", SNF, True,
    ),
    KPIDefinition(
        "medicare_a_revenue_psd", "Medicare A Revenue PSD",
        "Medicare Part A revenue per Medicare A day",
        "Medicare A Revenue / Medicare A Days",
        "medicare_a_revenue", "medicare_a_days", "payer_days", ("MEDICARE_A",), "currency", SNF, True,
    ),
    KPIDefinition(
        "ma_revenue_psd", "Medicare Advantage Revenue PSD",
        "Medicare Advantage (HMO) revenue per MA day",
        "MA Revenue / MA Days",
        "ma_revenue", "ma_days", "payer_days", ("MEDICARE_ADVANTAGE",), "currency", SNF, True,
    ),
    KPIDefinition(
        "medicaid_revenue_ppd", "Medicaid Revenue PPD",
        "Medicaid revenue per Medicaid day",
        "Medicaid Revenue / Medicaid Days",
        "medicaid_revenue", "medicaid_days", "payer_days", ("MEDICAID",), "currency", SNF, True,
    ),
    # -- Mix --
    KPIDefinition(
        "skilled_mix_pct", "Skilled Mix %",
        "Percentage of total patient days that are skilled days",
        "(Skilled Days / Resident Days) × 100",
        "skilled_days", "resident_days", "resident_days", "skilled", "percentage", SNF, True,
    ),
    KPIDefinition(
        "medicare_a_mix_pct", "Medicare A Mix %",
        "Percentage of total patient days that are Medicare A days",
        "(Medicare A Days / Resident Days) × 100",
        "medicare_a_days", "resident_days", "resident_days", ("MEDICARE_A",), "percentage", SNF, True,
    ),
    KPIDefinition(
        "ma_mix_pct", "Medicare Advantage Mix %",
        "Percentage of total patient days that are MA/HMO days",
        "(MA Days / Resident Days) × 100",
        "ma_days", "resident_days", "resident_days", ("MEDICARE_ADVANTAGE",), "percentage", SNF, True,
    ),
    # -- Expense --
    KPIDefinition(
        "total_cost_ppd", "Total Operating Cost PPD",
        "Total operating expenses per patient day",
        "Total Operating Expenses / Resident Days",
        "total_operating_expenses", "resident_days", "resident_days", "all", "currency", SNF, False,
    ),
    KPIDefinition(
        "nursing_cost_ppd", "Nursing Cost PPD",
        "Total nursing department expenses per patient day",
        "Total Nursing Expenses / Resident Days",
        "total_nursing_expenses", "resident_days", "resident_days", "all", "currency", SNF, False,
    ),
    KPIDefinition(
        "therapy_cost_psd", "Therapy Cost PSD",
        "Therapy expenses per skilled day",
        "Total Therapy Expenses / Skilled Days",
        "total_therapy_expenses", "skilled_days", "skilled_days", "skilled", "currency", SNF, False,
    ),
    KPIDefinition(
        "ancillary_cost_psd", "Ancillary Cost PSD",
        "Ancillary expenses (pharmacy, lab, radiology) per skilled day",
        "Total Ancillary Expenses / Skilled Days",
        "total_ancillary_expenses", "skilled_days", "skilled_days", "skilled", "currency", SNF, False,
    ),
    KPIDefinition(
        "dietary_cost_ppd", "Dietary Cost PPD",
        "Dietary expenses per patient day",
        "Total Dietary Expenses / Resident Days",
        "total_dietary_expenses", "resident_days", "resident_days", "all", "currency", SNF, False,
    ),
    KPIDefinition(
        "admin_cost_ppd", "Administration Cost PPD",
        "Administration expenses per patient day",
        "Total Administration Expenses / Resident Days",
        "total_administration_expenses", "resident_days", "resident_days", "all", "currency", SNF, False,
    ),
    # -- Labour --
    KPIDefinition(
        "contract_labor_pct_nursing", "Contract Labor % (Nursing)",
        "Percentage of nursing labor costs from agency/contract staff",
        "(Nursing Agency/Contract Cost / Total Nursing Expenses) × 100",
        "nursing_agency_contract", "total_nursing_expenses", "resident_days", "all", "percentage", SNF, False,
    ),
    KPIDefinition(
        "nurse_hprd_paid", "Nursing Hours PPD",
        "Total paid nursing hours per patient day",
        "Total Nursing Hours / Resident Days",
        "total_nursing_hours", "resident_days", "resident_days", "all", "hours", SNF, True,
    ),
    # -- Margin --
    KPIDefinition(
        "operating_margin_pct", "Operating Margin %",
        "Operating income as percentage of total revenue",
        "((Total Revenue - Total Operating Expenses) / Total Revenue) × 100",
        "operating_income", "total_revenue", "resident_days", "all", "percentage", SNF, True,
    ),
    KPIDefinition(
        "skilled_margin_pct", "Skilled Margin %",
        "Margin on skilled payer revenue after therapy and ancillary costs",
        "((Skilled Revenue - Therapy Cost - Ancillary Cost) / Skilled Revenue) × 100",
        "skilled_margin", "skilled_revenue", "skilled_days", "skilled", "percentage", SNF, True,
    ),
    # -- Senior living --
    KPIDefinition(
        "sl_occupancy_pct", "Occupancy %",
        "Operational occupancy percentage",
        "Total Unit Days / (Operational Beds × Days in Month) × 100",
        "total_unit_days", "bed_days", "occupied_units", "all", "percentage", SENIOR_LIVING, True,
    ),
    KPIDefinition(
        "sl_revpor", "RevPOR (Monthly)",
        "Revenue per occupied room per month",
        "Total Revenue / (Total Unit Days / Days in Month)",
        "total_revenue", "avg_occupied_units", "occupied_units", "all", "currency", SENIOR_LIVING, True,
    ),
    KPIDefinition(
        "sl_revenue_prd", "Revenue PPD",
        "Total revenue per patient day",
        "Total Revenue / Total Patient Days",
        "total_revenue", "patient_days", "resident_days", "all", "currency", SENIOR_LIVING, True,
    ),
    KPIDefinition(
        "sl_expense_prd", "Expense PPD",
        "Total operating expense per patient day",
        "Total Operating Expenses / Total Patient Days",
        "total_operating_expenses", "patient_days", "resident_days", "all", "currency", SENIOR_LIVING, False,
    ),
    KPIDefinition(
        "sl_private_pay_pct", "Private Pay %",
        "Percentage of patient days from private pay residents",
        "(Private Pay Days / Total Patient Days) × 100",
        "private_pay_days", "patient_days", "resident_days", ("PRIVATE_PAY",), "percentage", SENIOR_LIVING, True,
    ),
    KPIDefinition(
        "sl_operating_margin_pct", "Operating Margin %",
        "Operating income as percentage of total revenue",
        "((Total Revenue - Total Operating Expenses) / Total Revenue) × 100",
        "operating_income", "total_revenue", "resident_days", "all", "percentage", SENIOR_LIVING, True,
    ),
    KPIDefinition(
        "sl_nursing_prd", "Nursing Cost PPD",
        "Nursing expenses per patient day",
        "Total Nursing Expenses / Total Patient Days",
        "total_nursing_expenses", "patient_days", "resident_days", "all", "currency", SENIOR_LIVING, False,
    ),
    KPIDefinition(
        "sl_dietary_prd", "Dietary Cost PPD",
        "Dietary expenses per patient day",
        "Total Dietary Expenses / Total Patient Days",
        "total_dietary_expenses", "patient_days", "resident_days", "all", "currency", SENIOR_LIVING, False,
    ),
    KPIDefinition(
        "sl_admin_prd", "Admin Cost PPD",
        "Administration expenses per patient day",
        "Total Administration Expenses / Total Patient Days",
        "total_administration_expenses", "patient_days", "resident_days", "all", "currency", SENIOR_LIVING, False,
    ),
]


def build_registry(definitions) -> Mapping[str, KPIDefinition]:
    """Read-only kpi_id → definition mapping; duplicate ids are an error."""
    registry: dict[str, KPIDefinition] = {}
    for d in definitions:
        if d.kpi_id in registry:
            raise ValueError(f"duplicate KPI id: {d.kpi_id}")
        if d.unit not in UNITS:
            raise ValueError(f"{d.kpi_id}: unknown unit {d.unit!r}")
        registry[d.kpi_id] = d
    return MappingProxyType(registry)


KPI_REGISTRY = build_registry(_DEFINITIONS)


def kpis_for_setting(setting: str, registry: Mapping[str, KPIDefinition] = KPI_REGISTRY) -> list[KPIDefinition]:
    return [d for d in registry.values() if setting in d.settings]


def is_higher_better(kpi_id: str, registry: Mapping[str, KPIDefinition] = KPI_REGISTRY) -> bool:
    """Direction of a KPI; unknown ids default to higher-is-better."""
    d = registry.get(kpi_id)
    return True if d is None else d.higher_is_better


def kpi_glossary(registry: Mapping[str, KPIDefinition] = KPI_REGISTRY) -> list[dict]:
    return [
        {
            "term": d.name,
            "abbreviation": d.kpi_id,
            "definition": f"{d.description}. Formula: {d.formula}",
            "denominator_type": d.denominator_type,
            "payer_scope": d.payer_scope_text.replace(",", ", "),
        }
        for d in registry.values()
    ]
