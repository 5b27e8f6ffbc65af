"""
KPI calculator
==============

Evaluates every definition in a KPI registry for one (facility, period):

  1. aggregate finance facts into named totals (Total lines preferred,
     rebuilt from components when a Total line is missing)
  2. resolve census denominators
  3. derive occupancy quantities (bed days, average occupied units)
  4. divide each definition's numerator quantity by its denominator quantity

A zero denominator yields value None plus a warning; nothing here raises on
missing data. Currency values are rounded to cents, percentages are left
unrounded.

Usage
-----
    python -m snf_etl.compute.kpi_calculator            # recompute every key in the store
    python -m snf_etl.compute.kpi_calculator --facility 101 --period 2025-01
"""
from __future__ import annotations

import argparse
import calendar
import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional

import polars as pl

from snf_etl.compute.denominators import Anomaly, Denominators, check_denominators, resolve
from snf_etl.compute.kpi_registry import KPI_REGISTRY, KPIDefinition
from snf_etl.transform import fact_store

# Blended nursing wage assumptions used when no staffing hours are available
NURSING_WAGE_SHARE = 0.70
NURSING_HOURLY_RATE = 35.0

# quantity → (account_category, Total-line subcategory, component subcategories)
_SUBTOTALS = {
    "skilled_revenue": ("Revenue", "Total Skilled", ("Skilled",)),
    "non_skilled_revenue": ("Revenue", "Total Non-Skilled", ("Non-Skilled",)),
    "vent_revenue": ("Revenue", "Vent", ()),
    "other_revenue": ("Revenue", "Total Other", ("Other",)),
    "total_nursing_expenses": ("Expense", "Total Nursing", ("Nursing", "Nursing Contract Labor")),
    "total_therapy_expenses": ("Expense", "Total Therapy", ("Therapy",)),
    "total_ancillary_expenses": ("Expense", "Total Ancillary", ("Ancillary",)),
    "total_vent_expenses": ("Expense", "Total Vent", ()),
    "total_dietary_expenses": ("Expense", "Total Dietary", ("Dietary",)),
    "total_administration_expenses": ("Expense", "Total Administration", ("Administration",)),
    "total_plant_expenses": ("Expense", "Total Plant", ("Plant",)),
    "total_housekeeping_expenses": ("Expense", "Total Housekeeping", ("Housekeeping",)),
    "total_laundry_expenses": ("Expense", "Total Laundry", ("Laundry",)),
    "total_social_services_expenses": ("Expense", "Total Social Services", ("Social Services",)),
    "total_activities_expenses": ("Expense", "Total Activities", ("Activities",)),
    "total_medical_records_expenses": ("Expense", "Total Medical Records", ("Medical Records",)),
    "bad_debt": ("Expense", "Bad Debt", ()),
    "bed_tax": ("Expense", "Bed Tax", ()),
}

# (quantity, subcategory, payer) for single-payer revenue lines
_PAYER_REVENUE = [
    ("medicare_a_revenue", "Skilled", "MEDICARE_A"),
    ("ma_revenue", "Skilled", "MEDICARE_ADVANTAGE"),
    ("va_revenue", "Skilled", "VA"),
    ("medicaid_revenue", "Non-Skilled", "MEDICAID"),
    ("private_revenue", "Non-Skilled", "PRIVATE_PAY"),
    ("hospice_revenue", "Non-Skilled", "HOSPICE"),
]

_REVENUE_PARTS = ["skilled_revenue", "non_skilled_revenue", "vent_revenue", "other_revenue"]
_OPERATING_PARTS = [
    "total_nursing_expenses", "total_therapy_expenses", "total_ancillary_expenses",
    "total_vent_expenses", "total_dietary_expenses", "total_administration_expenses",
    "total_plant_expenses", "total_housekeeping_expenses", "total_laundry_expenses",
    "total_social_services_expenses", "total_activities_expenses",
    "total_medical_records_expenses", "bad_debt", "bed_tax",
]

_NO_OCCUPANCY = "No occupancy data available"


@dataclass
class KPIResult:
    facility_id: str
    period_id: str
    kpi_id: str
    value: Optional[float]
    numerator_value: float
    denominator_value: float
    denominator_type: str
    payer_scope: str
    unit: str
    warnings: list[str] = field(default_factory=list)


@dataclass
class KPIRun:
    results: list[KPIResult]
    anomalies: list[Anomaly]
    denominators: Denominators


def _for_key(df: Optional[pl.DataFrame], facility_id: str, period_id: str) -> Optional[pl.DataFrame]:
    if df is None:
        return None
    return df.filter((pl.col("facility_id") == facility_id) & (pl.col("period_id") == period_id))


def aggregate_financials(finance_facts: pl.DataFrame) -> dict[str, float]:
    """Named totals from one key's finance facts."""
    sums: dict[tuple, float] = {}
    if not finance_facts.is_empty():
        grouped = finance_facts.group_by(
            ["account_category", "account_subcategory", "payer_category"]
        ).agg(pl.col("amount").sum())
        for cat, sub, payer, amount in grouped.iter_rows():
            sums[(cat, sub, payer)] = float(amount or 0.0)

    def line_sum(category: str, subcategory: str, payer: str | None = None) -> tuple[float, bool]:
        hits = [
            v for (c, s, p), v in sums.items()
            if c == category and s == subcategory and (payer is None or p == payer)
        ]
        return sum(hits), bool(hits)

    totals: dict[str, float] = {}
    for key, (category, total_sub, parts) in _SUBTOTALS.items():
        amount, found = line_sum(category, total_sub)
        if not found:
            amount = sum(line_sum(category, part)[0] for part in parts)
        totals[key] = amount

    for key, sub, payer in _PAYER_REVENUE:
        totals[key] = line_sum("Revenue", sub, payer)[0]
    totals["nursing_agency_contract"] = line_sum("Expense", "Nursing Contract Labor")[0]

    total_revenue, found = line_sum("Revenue", "Total")
    totals["total_revenue"] = total_revenue if found else sum(totals[k] for k in _REVENUE_PARTS)

    total_operating, found = line_sum("Expense", "Total Operating")
    totals["total_operating_expenses"] = (
        total_operating if found else sum(totals[k] for k in _OPERATING_PARTS)
    )
    return totals


def days_in_period(period_id: str) -> int:
    year, month = (int(p) for p in period_id.split("-")[:2])
    return calendar.monthrange(year, month)[1]


def build_quantities(
    totals: dict[str, float],
    denoms: Denominators,
    occupancy: Optional[dict],
    days_in_month: int,
) -> tuple[dict[str, float], dict[str, list[str]]]:
    """
    Every value a KPI can reference as numerator or denominator.

    Returns (quantities, notes); notes carry per-quantity warnings that are
    attached to any KPI using that quantity.
    """
    q: dict[str, float] = dict(totals)
    notes: dict[str, list[str]] = {}

    q["operating_income"] = totals["total_revenue"] - totals["total_operating_expenses"]
    q["skilled_margin"] = (
        totals["skilled_revenue"] - totals["total_therapy_expenses"] - totals["total_ancillary_expenses"]
    )

    q["resident_days"] = denoms.resident_days
    q["skilled_days"] = denoms.skilled_days
    q["vent_days"] = denoms.vent_days
    q["medicare_a_days"] = denoms.payer_days.get("MEDICARE_A", 0.0)
    q["ma_days"] = denoms.payer_days.get("MEDICARE_ADVANTAGE", 0.0)
    q["medicaid_days"] = denoms.payer_days.get("MEDICAID", 0.0)
    q["private_pay_days"] = denoms.payer_days.get("PRIVATE_PAY", 0.0)

    # No staffing feed: estimate paid hours from nursing spend
    q["total_nursing_hours"] = 0.0
    if totals["total_nursing_expenses"] > 0:
        q["total_nursing_hours"] = totals["total_nursing_expenses"] * NURSING_WAGE_SHARE / NURSING_HOURLY_RATE
        notes["total_nursing_hours"] = ["Nursing hours estimated from expenses (no staffing data)"]

    occupancy = occupancy or {}
    patient_days = float(occupancy.get("total_patient_days") or 0.0)
    q["patient_days"] = patient_days if patient_days > 0 else denoms.resident_days

    unit_days = float(occupancy.get("total_unit_days") or 0.0)
    beds = float(occupancy.get("operational_beds") or 0.0)
    q["total_unit_days"] = unit_days
    q["operational_beds"] = beds
    q["bed_days"] = beds * days_in_month
    q["avg_occupied_units"] = unit_days / days_in_month if days_in_month else 0.0
    if not occupancy:
        for key in ("total_unit_days", "bed_days", "avg_occupied_units"):
            notes[key] = [_NO_OCCUPANCY]

    return q, notes


def calculate_kpi(
    definition: KPIDefinition,
    quantities: dict[str, float],
    notes: dict[str, list[str]],
    facility_id: str,
    period_id: str,
) -> KPIResult:
    warnings: list[str] = []
    for key in (definition.numerator, definition.denominator):
        if key not in quantities:
            warnings.append(f"Unknown quantity: {key}")
        for note in notes.get(key, []):
            if note not in warnings:
                warnings.append(note)

    numerator = quantities.get(definition.numerator, 0.0)
    denominator = quantities.get(definition.denominator, 0.0)

    value: Optional[float] = None
    if denominator != 0:
        value = numerator / denominator
        if definition.unit == "percentage":
            value *= 100
        elif definition.unit == "currency":
            value = round(value, 2)
    else:
        warnings.append(f"zero denominator for {definition.kpi_id}")

    if numerator == 0:
        warnings.append(f"No data for numerator: {definition.numerator}")

    return KPIResult(
        facility_id=facility_id,
        period_id=period_id,
        kpi_id=definition.kpi_id,
        value=value,
        numerator_value=numerator,
        denominator_value=denominator,
        denominator_type=definition.denominator_type,
        payer_scope=definition.payer_scope_text,
        unit=definition.unit,
        warnings=warnings,
    )


def calculate_all_kpis(
    finance_facts: pl.DataFrame,
    census_facts: pl.DataFrame,
    facility_id: str,
    period_id: str,
    registry: Mapping[str, KPIDefinition] = KPI_REGISTRY,
    kpi_ids: Optional[list[str]] = None,
    occupancy_facts: Optional[pl.DataFrame] = None,
    days_in_month: Optional[int] = None,
) -> KPIRun:
    """
    Evaluate the registry for one (facility, period).

    Results cover every requested KPI present in the registry, in registry
    order unless kpi_ids sets the order. Ids not in the registry are ignored.
    """
    denoms = resolve(census_facts, facility_id, period_id)
    anomalies = check_denominators(denoms, facility_id, period_id)
    totals = aggregate_financials(_for_key(finance_facts, facility_id, period_id))

    occupancy = None
    occ = _for_key(occupancy_facts, facility_id, period_id)
    if occ is not None and not occ.is_empty():
        occupancy = occ.tail(1).row(0, named=True)

    quantities, notes = build_quantities(
        totals, denoms, occupancy, days_in_month or days_in_period(period_id)
    )

    definitions = (
        [registry[k] for k in kpi_ids if k in registry] if kpi_ids is not None
        else list(registry.values())
    )
    results = [calculate_kpi(d, quantities, notes, facility_id, period_id) for d in definitions]
    return KPIRun(results=results, anomalies=anomalies, denominators=denoms)


def results_frame(results: list[KPIResult]) -> pl.DataFrame:
    rows = [
        {
            "facility_id": r.facility_id,
            "period_id": r.period_id,
            "kpi_id": r.kpi_id,
            "value": r.value,
            "numerator_value": r.numerator_value,
            "denominator_value": r.denominator_value,
            "denominator_type": r.denominator_type,
            "payer_scope": r.payer_scope,
            "unit": r.unit,
            "warnings": json.dumps(r.warnings),
        }
        for r in results
    ]
    return fact_store.frame_from_rows("kpi_results", rows)


def compute_kpi_results(
    finance_facts: pl.DataFrame,
    census_facts: pl.DataFrame,
    occupancy_facts: Optional[pl.DataFrame] = None,
    keys: Optional[pl.DataFrame] = None,
    registry: Mapping[str, KPIDefinition] = KPI_REGISTRY,
) -> pl.DataFrame:
    """kpi_results frame for every (facility, period) in *keys* (default: all keys in the facts)."""
    if keys is None:
        frames = [finance_facts, census_facts] + ([occupancy_facts] if occupancy_facts is not None else [])
        keys = fact_store.touched_keys(*frames)

    results: list[KPIResult] = []
    anomaly_count = 0
    for facility_id, period_id in keys.select(fact_store.FACT_KEYS).iter_rows():
        run = calculate_all_kpis(
            finance_facts, census_facts, facility_id, period_id,
            registry=registry, occupancy_facts=occupancy_facts,
        )
        results.extend(run.results)
        anomaly_count += len(run.anomalies)

    df = results_frame(results)
    print(f"[kpi] {keys.height:,} facility-periods → {df.height:,} KPI rows "
          f"({df['value'].null_count():,} null, {anomaly_count:,} census anomalies)")
    return df


def recompute_store(keys: Optional[pl.DataFrame] = None, store_dir: Optional[Path] = None) -> pl.DataFrame:
    """
    Recompute KPI results for *keys* and replace them in the processed store.

    Keys with no facts left keep no KPI rows.
    """
    finance = fact_store.read_table("finance_facts", store_dir)
    census = fact_store.read_table("census_facts", store_dir)
    occupancy = fact_store.read_table("occupancy_facts", store_dir)
    with_facts = fact_store.touched_keys(finance, census, occupancy)
    if keys is None:
        keys = with_facts
    keys = keys.select(fact_store.FACT_KEYS)
    live = keys.join(with_facts, on=fact_store.FACT_KEYS, how="semi")
    kpis = compute_kpi_results(finance, census, occupancy, keys=live)
    existing = fact_store.read_table("kpi_results", store_dir)
    # Drop every result for the keys, including KPIs no longer in the registry
    kept = existing.join(keys, on=fact_store.FACT_KEYS, how="anti")
    fact_store.write_table("kpi_results", fact_store.replace_facts(kept, kpis), store_dir)
    return kpis


def main() -> None:
    parser = argparse.ArgumentParser(description="Compute KPI results from the processed fact store")
    parser.add_argument("--facility", help="Single facility id (with --period prints its KPIs)")
    parser.add_argument("--period", help="Single period YYYY-MM")
    parser.add_argument("--store-dir", type=Path, default=None)
    args = parser.parse_args()

    if args.facility and args.period:
        run = calculate_all_kpis(
            fact_store.read_table("finance_facts", args.store_dir),
            fact_store.read_table("census_facts", args.store_dir),
            args.facility.zfill(3),
            args.period,
            occupancy_facts=fact_store.read_table("occupancy_facts", args.store_dir),
        )
        for r in run.results:
            shown = "n/a" if r.value is None else f"{r.value:,.2f}"
            print(f"  {r.kpi_id:<30} {shown:>14}  {'; '.join(r.warnings)}")
        for a in run.anomalies:
            print(f"  [{a.severity}] {a.message}")
        return

    recompute_store(store_dir=args.store_dir)


if __name__ == "__main__":
    main()
