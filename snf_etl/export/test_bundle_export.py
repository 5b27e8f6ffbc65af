"""
Unit tests for facility-month bundle export.

Run:
    pytest snf_etl/export/test_bundle_export.py -v
"""
from __future__ import annotations

import json

import pytest

from snf_etl.compute.benchmarks import generate_benchmarks
from snf_etl.compute.kpi_calculator import compute_kpi_results
from snf_etl.export.bundle_export import (
    COMBINED_FILE,
    benchmarks_section,
    export_bundles,
    glossary_section,
)
from snf_etl.transform import fact_store


def _finance(facility_id: str, period_id: str, revenue: float, expenses: float) -> list[dict]:
    return [
        {"facility_id": facility_id, "period_id": period_id, "account_category": "Revenue",
         "account_subcategory": "Total", "amount": revenue, "source_file": "Income Statements.xlsx"},
        {"facility_id": facility_id, "period_id": period_id, "account_category": "Expense",
         "account_subcategory": "Total Operating", "amount": expenses, "source_file": "Income Statements.xlsx"},
    ]


def _census(facility_id: str, period_id: str, days: float) -> list[dict]:
    return [
        {"facility_id": facility_id, "period_id": period_id, "payer_category": "MEDICARE_A",
         "days": days * 0.2, "is_skilled": True, "is_vent": False, "source_file": "Income Statements.xlsx"},
        {"facility_id": facility_id, "period_id": period_id, "payer_category": "MEDICAID",
         "days": days * 0.8, "is_skilled": False, "is_vent": False, "source_file": "Income Statements.xlsx"},
    ]


@pytest.fixture
def store(tmp_path):
    """Three ID facilities over two months; facility 103 has no census in 2025-02."""
    finance, census = [], []
    for fid, revenue in (("101", 100_000.0), ("102", 150_000.0), ("103", 200_000.0)):
        for period, scale in (("2025-01", 1.0), ("2025-02", 1.1)):
            finance += _finance(fid, period, revenue * scale, revenue * 0.9)
            if not (fid == "103" and period == "2025-02"):
                census += _census(fid, period, 1000.0)
    finance_df = fact_store.frame_from_rows("finance_facts", finance)
    census_df = fact_store.frame_from_rows("census_facts", census)
    fact_store.write_table("finance_facts", finance_df, tmp_path)
    fact_store.write_table("census_facts", census_df, tmp_path)
    fact_store.upsert_facilities(fact_store.frame_from_rows("facilities", [
        {"facility_id": fid, "name": f"Home {fid}", "setting": "SNF", "state": "ID", "region": "West_of_Mississippi"}
        for fid in ("101", "102", "103")
    ]), tmp_path)

    kpis = compute_kpi_results(finance_df, census_df)
    fact_store.write_table("kpi_results", kpis, tmp_path)
    facilities = fact_store.read_table("facilities", tmp_path)
    bench = generate_benchmarks(kpis, facilities, "2025-02")
    bench.write_parquet(fact_store.table_path("benchmarks", tmp_path))
    return tmp_path


def _load(path):
    with open(path) as f:
        return json.load(f)


# ---------------------------------------------------------------------------
# export_bundles
# ---------------------------------------------------------------------------

class TestExportBundles:
    def test_latest_period_by_default(self, store, tmp_path):
        out = tmp_path / "exports"
        paths = export_bundles(store, out)
        assert len(paths) == 3
        assert (out / "101" / "2025_02" / "bundle.json") in paths
        assert not (out / "101" / "2025_01").exists()

    def test_bundle_sections(self, store, tmp_path):
        out = tmp_path / "exports"
        export_bundles(store, out, facility_id="101", period_id="2025-02")
        bundle = _load(out / "101" / "2025_02" / "bundle.json")

        assert bundle["meta"]["facility_name"] == "Home 101"
        assert bundle["meta"]["source_files"] == ["Income Statements.xlsx"]
        assert bundle["denominators"]["resident_days"] == pytest.approx(1000.0)
        assert bundle["denominators"]["skilled_mix_pct"] == pytest.approx(20.0)

        kpis = {k["kpi_id"]: k for k in bundle["kpis"]}
        assert kpis["total_revenue_ppd"]["value"] == pytest.approx(110.0)
        assert isinstance(kpis["total_revenue_ppd"]["warnings"], list)

        bench = bundle["benchmarks"]["total_revenue_ppd"]
        assert bench["cohort"] == "state_ID"
        assert bench["count"] == 2  # 103 has no census in 2025-02
        assert bench["performance"] == "Bottom Quartile"

        trend = bundle["trends"]["total_revenue_ppd"]
        assert trend["direction"] == "up"
        assert trend["change_percent"] == pytest.approx(10.0)
        assert bundle["anomalies"] == []

    def test_missing_census_reported_as_anomaly(self, store, tmp_path):
        out = tmp_path / "exports"
        export_bundles(store, out, facility_id="103", period_id="2025-02")
        bundle = _load(out / "103" / "2025_02" / "bundle.json")
        assert [a["type"] for a in bundle["anomalies"]] == ["missing_data"]

    def test_combined_table(self, store, tmp_path):
        out = tmp_path / "exports"
        export_bundles(store, out)
        combined = _load(out / COMBINED_FILE)
        assert combined["periods"] == ["2025-02"]
        assert combined["facilities"] == ["101", "102", "103"]
        row = next(r for r in combined["data"] if r["facility_id"] == "103")
        assert row["anomaly_count"] == 1
        assert row["kpis"]["total_revenue_ppd"] is None

    def test_no_kpi_results(self, tmp_path):
        fact_store.write_table("kpi_results", fact_store.empty_frame("kpi_results"), tmp_path)
        with pytest.raises(ValueError):
            export_bundles(tmp_path, tmp_path / "exports")

    def test_store_not_built(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            export_bundles(tmp_path / "nothing", tmp_path / "exports")


# ---------------------------------------------------------------------------
# section helpers
# ---------------------------------------------------------------------------

class TestSections:
    def test_glossary_lists_valued_kpis_only(self):
        kpis = [{"kpi_id": "total_revenue_ppd", "value": 1.0}, {"kpi_id": "total_cost_ppd", "value": None}]
        abbreviations = [g["abbreviation"] for g in glossary_section(kpis)]
        assert "PPD" in abbreviations
        assert "total_revenue_ppd" in abbreviations
        assert "total_cost_ppd" not in abbreviations

    def test_benchmarks_fall_back_to_all(self, store):
        kpis = fact_store.read_table("kpi_results", store)
        facilities = fact_store.read_table("facilities", store)
        benchmarks = generate_benchmarks(kpis, facilities, "2025-01")
        section = benchmarks_section(
            benchmarks, {"facility_id": "999", "state": "OH"}, [{"kpi_id": "total_revenue_ppd", "value": 500.0}],
        )
        assert section["total_revenue_ppd"]["cohort"] == "all"
        assert section["total_revenue_ppd"]["percentile_rank"] == 100.0
        assert section["total_revenue_ppd"]["performance"] == "Top Quartile"
