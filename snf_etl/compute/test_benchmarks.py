"""
Unit tests for peer benchmarks.

Run:
    pytest snf_etl/compute/test_benchmarks.py -v
"""
from __future__ import annotations

import math

import numpy as np
import polars as pl
import pytest

from snf_etl.compute.benchmarks import (
    BenchmarkStats,
    benchmark_stats,
    facility_benchmarks,
    generate_benchmarks,
    percentile_rank,
    performance_label,
)
from snf_etl.transform.fact_store import frame_from_rows

FACILITIES = frame_from_rows("facilities", [
    {"facility_id": "101", "name": "A", "setting": "SNF", "state": "ID", "region": "West_of_Mississippi"},
    {"facility_id": "102", "name": "B", "setting": "SNF", "state": "ID", "region": "West_of_Mississippi"},
    {"facility_id": "103", "name": "C", "setting": "ALF", "state": "OH", "region": "East_of_Mississippi"},
    {"facility_id": "104", "name": "D", "setting": "SNF", "state": "UNKNOWN", "region": None},
])


def kpis(rows: list[tuple]) -> pl.DataFrame:
    return frame_from_rows("kpi_results", [
        {"facility_id": f, "period_id": p, "kpi_id": k, "value": v, "warnings": "[]"}
        for f, p, k, v in rows
    ])


class TestBenchmarkStats:
    def test_quartiles_interpolated(self):
        stats = benchmark_stats([1.0, 2.0, 3.0, 4.0])
        assert stats.count == 4
        assert stats.p25 == pytest.approx(1.75)
        assert stats.median == pytest.approx(2.5)
        assert stats.p75 == pytest.approx(3.25)
        assert stats.std_dev == pytest.approx(np.std([1, 2, 3, 4]))

    def test_non_finite_dropped(self):
        stats = benchmark_stats([1.0, None, math.nan, math.inf, 3.0])
        assert stats.count == 2
        assert stats.mean == pytest.approx(2.0)

    def test_nothing_usable(self):
        assert benchmark_stats([None, math.nan]) is None
        assert benchmark_stats([]) is None

    def test_single_value(self):
        stats = benchmark_stats([7.0])
        assert stats.min == stats.max == stats.median == 7.0
        assert stats.std_dev == 0.0


class TestGenerateBenchmarks:
    RESULTS = kpis([
        ("101", "2025-01", "total_revenue_ppd", 100.0),
        ("102", "2025-01", "total_revenue_ppd", 200.0),
        ("103", "2025-01", "total_revenue_ppd", 300.0),
        ("104", "2025-01", "total_revenue_ppd", None),
        ("999", "2025-01", "total_revenue_ppd", 10_000.0),  # not in master
        ("101", "2024-12", "total_revenue_ppd", 50.0),
    ])

    def test_cohorts(self):
        bench = generate_benchmarks(self.RESULTS, FACILITIES, "2025-01")
        cohorts = dict(zip(bench["cohort"].to_list(), bench["count"].to_list()))
        assert cohorts == {
            "all": 3,
            "state:ID": 2,
            "region:West_of_Mississippi": 2,
            "setting:SNF": 2,
        }

    def test_all_cohort_matches_stats_helper(self):
        bench = generate_benchmarks(self.RESULTS, FACILITIES, "2025-01")
        row = bench.filter(pl.col("cohort") == "all").row(0, named=True)
        expected = benchmark_stats([100.0, 200.0, 300.0])
        assert row["median"] == pytest.approx(expected.median)
        assert row["p25"] == pytest.approx(expected.p25)
        assert row["std_dev"] == pytest.approx(expected.std_dev)
        assert row["period_id"] == "2025-01"

    def test_empty_period(self):
        bench = generate_benchmarks(self.RESULTS, FACILITIES, "2030-01")
        assert bench.is_empty()
        assert "median" in bench.columns

    def test_facility_lookup(self):
        bench = generate_benchmarks(self.RESULTS, FACILITIES, "2025-01")
        found = facility_benchmarks(
            bench, {"state": "ID", "region": "West_of_Mississippi", "setting": "SNF"}, "total_revenue_ppd",
        )
        assert set(found) == {"all", "state_ID", "region_West_of_Mississippi", "setting_SNF"}
        assert found["state_ID"].median == pytest.approx(150.0)


class TestRanking:
    STATS = BenchmarkStats(count=5, min=0.0, p25=10.0, median=20.0, p75=30.0, max=40.0, mean=20.0, std_dev=1.0)

    @pytest.mark.parametrize("value,rank", [
        (-5.0, 0.0), (0.0, 0.0), (5.0, 12.5), (10.0, 25.0), (25.0, 62.5), (35.0, 87.5), (40.0, 100.0),
    ])
    def test_percentile_rank(self, value, rank):
        assert percentile_rank(value, self.STATS) == pytest.approx(rank)

    def test_flat_quartile(self):
        stats = BenchmarkStats(count=3, min=0.0, p25=10.0, median=10.0, p75=10.0, max=20.0, mean=10.0, std_dev=1.0)
        assert percentile_rank(10.0, stats) == pytest.approx(25.0)

    @pytest.mark.parametrize("rank,higher,label", [
        (80.0, True, "Top Quartile"),
        (60.0, True, "Above Median"),
        (30.0, True, "Below Median"),
        (10.0, True, "Bottom Quartile"),
        (10.0, False, "Top Quartile"),
        (80.0, False, "Bottom Quartile"),
    ])
    def test_performance_label(self, rank, higher, label):
        assert performance_label(rank, higher) == label
