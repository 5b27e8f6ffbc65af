"""
Census denominators for one (facility, period).

Every ratio KPI divides by one of these day counts:

  resident_days   all census days, every payer
  skilled_days    days on rows flagged is_skilled
  vent_days       days on rows flagged is_vent (also counted in the two above)
  payer_days      days per payer category; sums to resident_days

DENOMINATOR_GLOSSARY describes these terms for exported bundles.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

import polars as pl

from snf_etl.ingest.account_map import PAYER_CATEGORIES

# Allowed gap between sum(payer_days) and resident_days before flagging
PAYER_DAYS_TOLERANCE = 1.0


@dataclass
class Denominators:
    resident_days: float = 0.0
    skilled_days: float = 0.0
    vent_days: float = 0.0
    payer_days: dict[str, float] = field(default_factory=lambda: {p: 0.0 for p in PAYER_CATEGORIES})
    row_count: int = 0


@dataclass
class Anomaly:
    type: str
    severity: str  # "warning" | "error"
    message: str
    field: str
    expected: Optional[str] = None
    actual: Optional[str] = None


def _fmt(days: float) -> str:
    return f"{days:g}"


def resolve(census_facts: pl.DataFrame, facility_id: str, period_id: str) -> Denominators:
    """Aggregate census days for the key. No rows gives all-zero denominators."""
    denoms = Denominators()
    facts = census_facts.filter(
        (pl.col("facility_id") == facility_id) & (pl.col("period_id") == period_id)
    )
    if facts.is_empty():
        return denoms

    denoms.row_count = facts.height
    for row in facts.select(["payer_category", "days", "is_skilled", "is_vent"]).iter_rows(named=True):
        days = float(row["days"] or 0.0)
        payer = row["payer_category"] or "OTHER"
        denoms.payer_days[payer] = denoms.payer_days.get(payer, 0.0) + days
        denoms.resident_days += days
        if row["is_skilled"]:
            denoms.skilled_days += days
        if row["is_vent"]:
            denoms.vent_days += days
    return denoms


def check_denominators(denoms: Denominators, facility_id: str, period_id: str) -> list[Anomaly]:
    """Data-quality findings for a resolved set of denominators."""
    anomalies: list[Anomaly] = []

    if denoms.skilled_days > denoms.resident_days and denoms.resident_days > 0:
        anomalies.append(Anomaly(
            type="skilled_exceeds_total",
            severity="error",
            message=(f"Skilled days ({_fmt(denoms.skilled_days)}) exceed total "
                     f"resident days ({_fmt(denoms.resident_days)})"),
            field="skilled_days",
            expected=f"<= {_fmt(denoms.resident_days)}",
            actual=_fmt(denoms.skilled_days),
        ))

    payer_total = sum(denoms.payer_days.values())
    if abs(payer_total - denoms.resident_days) > PAYER_DAYS_TOLERANCE:
        anomalies.append(Anomaly(
            type="payer_days_mismatch",
            severity="warning",
            message=(f"Sum of payer days ({_fmt(payer_total)}) does not match total "
                     f"resident days ({_fmt(denoms.resident_days)})"),
            field="payer_days",
            expected=_fmt(denoms.resident_days),
            actual=_fmt(payer_total),
        ))

    if denoms.row_count == 0:
        anomalies.append(Anomaly(
            type="missing_data",
            severity="warning",
            message=f"No census data found for facility {facility_id} period {period_id}",
            field="census_facts",
        ))

    return anomalies


def denominator_value(denoms: Denominators, denominator_type: str, payer: str | None = None) -> float:
    """Day count for a denominator type; unknown types and missing payers give 0."""
    if denominator_type == "resident_days":
        return denoms.resident_days
    if denominator_type == "skilled_days":
        return denoms.skilled_days
    if denominator_type == "vent_days":
        return denoms.vent_days
    if denominator_type == "payer_days" and payer:
        return denoms.payer_days.get(payer, 0.0)
    return 0.0


def skilled_mix(denoms: Denominators) -> float | None:
    """Skilled days as a percentage of resident days."""
    if denoms.resident_days == 0:
        return None
    return denoms.skilled_days / denoms.resident_days * 100


DENOMINATOR_GLOSSARY = (
    {
        "term": "Per Patient Day",
        "abbreviation": "PPD",
        "definition": "Metric calculated using total resident/patient days as the denominator. Includes all payers.",
        "denominator_type": "resident_days",
        "payer_scope": "all",
    },
    {
        "term": "Per Skilled Day",
        "abbreviation": "PSD",
        "definition": ("Metric calculated using skilled days as the denominator. Skilled days = "
                       "Medicare A + Medicare Advantage + Commercial + VA + ISNP days."),
        "denominator_type": "skilled_days",
        "payer_scope": "skilled",
    },
    {
        "term": "Per Vent Day",
        "abbreviation": "PVD",
        "definition": "Metric calculated using ventilator patient days as the denominator.",
        "denominator_type": "vent_days",
        "payer_scope": "vent",
    },
    {
        "term": "Resident Days",
        "abbreviation": "RD",
        "definition": "Total patient days across all payer types for the period.",
        "denominator_type": "resident_days",
        "payer_scope": "all",
    },
    {
        "term": "Skilled Mix",
        "abbreviation": "SM%",
        "definition": "Skilled days as a percentage of resident days: Skilled Days / Resident Days x 100.",
        "denominator_type": "skilled_days",
        "payer_scope": "skilled",
    },
)
