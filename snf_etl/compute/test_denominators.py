"""
Unit tests for census denominator resolution.

Run:
    pytest snf_etl/compute/test_denominators.py -v
"""
from __future__ import annotations

import polars as pl
import pytest

from snf_etl.compute.denominators import (
    Denominators,
    check_denominators,
    denominator_value,
    resolve,
    skilled_mix,
)
from snf_etl.transform.fact_store import frame_from_rows


def census(rows: list[tuple]) -> pl.DataFrame:
    """rows: (facility_id, period_id, payer, days, is_skilled, is_vent)"""
    return frame_from_rows("census_facts", [
        {
            "facility_id": f,
            "period_id": p,
            "payer_category": payer,
            "days": days,
            "is_skilled": skilled,
            "is_vent": vent,
            "source_file": "wb.xlsx",
        }
        for f, p, payer, days, skilled, vent in rows
    ])


SAMPLE = census([
    ("101", "2025-01", "MEDICARE_A", 300.0, True, False),
    ("101", "2025-01", "MEDICARE_ADVANTAGE", 100.0, True, False),
    ("101", "2025-01", "MEDICAID", 500.0, False, False),
    ("101", "2025-01", "MEDICAID", 50.0, False, True),
    ("101", "2025-01", "PRIVATE_PAY", 50.0, False, False),
    ("101", "2025-02", "MEDICAID", 999.0, False, False),
    ("202", "2025-01", "MEDICAID", 777.0, False, False),
])


class TestResolve:
    def test_totals(self):
        d = resolve(SAMPLE, "101", "2025-01")
        assert d.resident_days == pytest.approx(1000.0)
        assert d.skilled_days == pytest.approx(400.0)
        assert d.vent_days == pytest.approx(50.0)
        assert d.payer_days["MEDICAID"] == pytest.approx(550.0)
        assert d.payer_days["MEDICARE_A"] == pytest.approx(300.0)

    def test_invariants(self):
        d = resolve(SAMPLE, "101", "2025-01")
        assert d.resident_days >= d.skilled_days >= 0
        assert sum(d.payer_days.values()) == pytest.approx(d.resident_days)

    def test_filters_to_key(self):
        assert resolve(SAMPLE, "202", "2025-01").resident_days == pytest.approx(777.0)
        assert resolve(SAMPLE, "101", "2025-02").resident_days == pytest.approx(999.0)

    def test_no_facts_gives_zero_denominators(self):
        d = resolve(SAMPLE, "999", "2025-01")
        assert isinstance(d, Denominators)
        assert d.resident_days == 0.0
        assert d.skilled_days == 0.0
        assert all(v == 0.0 for v in d.payer_days.values())

    def test_empty_frame(self):
        d = resolve(census([]), "101", "2025-01")
        assert d.resident_days == 0.0

    def test_vent_skilled_row_counted_once_in_totals(self):
        d = resolve(census([
            ("101", "2025-01", "MEDICARE_A", 10.0, True, True),
        ]), "101", "2025-01")
        assert d.resident_days == 10.0
        assert d.skilled_days == 10.0
        assert d.vent_days == 10.0


class TestCheckDenominators:
    def test_clean_data_has_no_anomalies(self):
        d = resolve(SAMPLE, "101", "2025-01")
        assert check_denominators(d, "101", "2025-01") == []

    def test_missing_data(self):
        d = resolve(SAMPLE, "999", "2025-01")
        anomalies = check_denominators(d, "999", "2025-01")
        assert [a.type for a in anomalies] == ["missing_data"]
        assert anomalies[0].severity == "warning"

    def test_skilled_exceeds_total(self):
        d = Denominators(resident_days=100.0, skilled_days=150.0, row_count=2)
        d.payer_days["MEDICAID"] = 100.0
        anomalies = check_denominators(d, "101", "2025-01")
        assert [a.type for a in anomalies] == ["skilled_exceeds_total"]
        assert anomalies[0].severity == "error"
        assert anomalies[0].actual == "150"

    def test_payer_mismatch_beyond_tolerance(self):
        d = Denominators(resident_days=100.0, row_count=1)
        d.payer_days["MEDICAID"] = 98.0
        assert [a.type for a in check_denominators(d, "101", "2025-01")] == ["payer_days_mismatch"]

    def test_payer_mismatch_within_tolerance(self):
        d = Denominators(resident_days=100.0, row_count=1)
        d.payer_days["MEDICAID"] = 99.5
        assert check_denominators(d, "101", "2025-01") == []


class TestLookups:
    def test_denominator_value(self):
        d = resolve(SAMPLE, "101", "2025-01")
        assert denominator_value(d, "resident_days") == pytest.approx(1000.0)
        assert denominator_value(d, "skilled_days") == pytest.approx(400.0)
        assert denominator_value(d, "vent_days") == pytest.approx(50.0)
        assert denominator_value(d, "payer_days", "MEDICARE_A") == pytest.approx(300.0)
        assert denominator_value(d, "payer_days") == 0.0
        assert denominator_value(d, "occupied_units") == 0.0
        assert denominator_value(d, "bogus") == 0.0

    def test_skilled_mix(self):
        assert skilled_mix(resolve(SAMPLE, "101", "2025-01")) == pytest.approx(40.0)
        assert skilled_mix(Denominators()) is None
