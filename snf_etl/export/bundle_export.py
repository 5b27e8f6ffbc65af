"""
Export facility-month JSON bundles from the processed store.

One bundle per (facility, period) holds everything needed to read that
month's results without the store. Files are written under data/exports/
(override with DATA_EXPORTS):

  <facility_id>/<YYYY_MM>/bundle.json
      meta          facility, period, state, setting, source files
      denominators  resident / skilled / vent / payer days and skilled mix
      kpis          kpi_results rows for the key, warnings as lists
      benchmarks    per valued KPI: the facility's state cohort (else "all")
                    with the facility's percentile rank and quartile label
      trends        trailing-12-month stats per KPI ending at the period
      anomalies     census data-quality findings
      glossary      denominator terms plus every KPI that has a value
  kpis_all.json     one row per bundle: kpi_id -> value, anomaly count

Without --period only the most recent period in kpi_results is exported.

Usage
-----
  python -m snf_etl.export.bundle_export
  python -m snf_etl.export.bundle_export --period 2025-01 --facility 101
"""
from __future__ import annotations

import argparse
import json
import os
from dataclasses import asdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Mapping, Optional

import polars as pl
from dotenv import load_dotenv

from snf_etl.compute.benchmarks import BENCHMARK_SCHEMA, facility_benchmarks, percentile_rank, performance_label
from snf_etl.compute.denominators import DENOMINATOR_GLOSSARY, Denominators, check_denominators, resolve, skilled_mix
from snf_etl.compute.kpi_registry import KPI_REGISTRY, KPIDefinition, is_higher_better, kpi_glossary
from snf_etl.compute.kpi_trends import facility_t12m
from snf_etl.transform import fact_store

load_dotenv()

_REPO_ROOT = Path(__file__).resolve().parents[2]
_exports = os.environ.get("DATA_EXPORTS", "data/exports")
EXPORTS = Path(_exports) if Path(_exports).is_absolute() else _REPO_ROOT / _exports

COMBINED_FILE = "kpis_all.json"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _read_required(table: str, store_dir: Optional[Path]) -> pl.DataFrame:
    path = fact_store.table_path(table, store_dir)
    if not path.exists():
        raise FileNotFoundError(
            f"Required Parquet missing: {path}\n"
            f"  → Run the pipeline (snf-etl) first."
        )
    return fact_store.read_table(table, store_dir)


def _read_benchmarks(store_dir: Optional[Path]) -> pl.DataFrame:
    path = fact_store.table_path("benchmarks", store_dir)
    if not path.exists():
        print(f"[export] SKIP benchmarks (not found): {path}")
        return pl.DataFrame(schema=BENCHMARK_SCHEMA)
    return pl.read_parquet(path)


def _facility_row(facilities: pl.DataFrame, facility_id: str) -> dict:
    match = facilities.filter(pl.col("facility_id") == facility_id)
    if match.is_empty():
        return {"facility_id": facility_id, "name": f"Facility {facility_id}", "setting": "SNF", "state": "UNKNOWN"}
    return match.row(0, named=True)


def _source_files(frames: list[pl.DataFrame], facility_id: str, period_id: str) -> list[str]:
    files: set[str] = set()
    for df in frames:
        key = df.filter((pl.col("facility_id") == facility_id) & (pl.col("period_id") == period_id))
        files.update(f for f in key["source_file"].to_list() if f)
    return sorted(files)


def _kpi_rows(kpi_results: pl.DataFrame, facility_id: str, period_id: str) -> list[dict]:
    rows = kpi_results.filter(
        (pl.col("facility_id") == facility_id) & (pl.col("period_id") == period_id)
    ).drop(["facility_id", "period_id"])
    out = []
    for row in rows.iter_rows(named=True):
        row["warnings"] = json.loads(row["warnings"] or "[]")
        out.append(row)
    return out


def denominators_section(denoms: Denominators) -> dict:
    section = asdict(denoms)
    section["skilled_mix_pct"] = skilled_mix(denoms)
    return section


def benchmarks_section(
    benchmarks: pl.DataFrame,
    facility: dict,
    kpis: list[dict],
    registry: Mapping[str, KPIDefinition] = KPI_REGISTRY,
) -> dict[str, dict]:
    """State cohort when reported, else "all"; KPIs without a value or cohort are left out."""
    out: dict[str, dict] = {}
    for kpi in kpis:
        if kpi["value"] is None:
            continue
        cohorts = facility_benchmarks(benchmarks, facility, kpi["kpi_id"])
        state_key = f"state_{facility.get('state')}"
        cohort = state_key if state_key in cohorts else "all"
        stats = cohorts.get(cohort)
        if stats is None:
            continue
        rank = percentile_rank(kpi["value"], stats)
        out[kpi["kpi_id"]] = {
            "cohort": cohort,
            **asdict(stats),
            "percentile_rank": round(rank, 1),
            "performance": performance_label(rank, is_higher_better(kpi["kpi_id"], registry)),
        }
    return out


def trends_section(kpi_results: pl.DataFrame, facility_id: str, period_id: str) -> dict[str, dict]:
    out = {}
    for kpi_id, stats in facility_t12m(kpi_results, facility_id, end_period=period_id).items():
        out[kpi_id] = {
            "current": stats.current,
            "average": stats.average,
            "min": asdict(stats.min),
            "max": asdict(stats.max),
            "std_dev": stats.std_dev,
            "direction": stats.trend.direction,
            "performance": stats.performance,
            "change_percent": stats.trend.change_percent,
            "volatility": stats.trend.volatility,
            "forecast_next": stats.trend.forecast(1),
            "mom_change": stats.mom_change,
            "yoy_change": stats.yoy_change,
        }
    return out


def glossary_section(kpis: list[dict], registry: Mapping[str, KPIDefinition] = KPI_REGISTRY) -> list[dict]:
    valued = {k["kpi_id"] for k in kpis if k["value"] is not None}
    return list(DENOMINATOR_GLOSSARY) + [g for g in kpi_glossary(registry) if g["abbreviation"] in valued]


def build_bundle(
    facility: dict,
    period_id: str,
    kpi_results: pl.DataFrame,
    census_facts: pl.DataFrame,
    benchmarks: pl.DataFrame,
    source_files: list[str],
    registry: Mapping[str, KPIDefinition] = KPI_REGISTRY,
) -> dict:
    facility_id = facility["facility_id"]
    denoms = resolve(census_facts, facility_id, period_id)
    anomalies = check_denominators(denoms, facility_id, period_id)
    kpis = _kpi_rows(kpi_results, facility_id, period_id)
    return {
        "meta": {
            "facility_id": facility_id,
            "facility_name": facility.get("name"),
            "period": period_id,
            "state": facility.get("state"),
            "region": facility.get("region"),
            "setting": facility.get("setting"),
            "source_files": source_files,
            "generated_at": datetime.now(timezone.utc).isoformat(),
        },
        "denominators": denominators_section(denoms),
        "kpis": kpis,
        "benchmarks": benchmarks_section(benchmarks, facility, kpis, registry),
        "trends": trends_section(kpi_results, facility_id, period_id),
        "anomalies": [asdict(a) for a in anomalies],
        "glossary": glossary_section(kpis, registry),
    }


def write_bundle(bundle: dict, out_dir: Path) -> Path:
    meta = bundle["meta"]
    path = out_dir / meta["facility_id"] / meta["period"].replace("-", "_") / "bundle.json"
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as f:
        json.dump(bundle, f, indent=2)
    return path


def write_combined_table(bundles: list[dict], out_dir: Path) -> Path:
    combined = {
        "generated_at": datetime.now(timezone.utc).isoformat(),
        "periods": sorted({b["meta"]["period"] for b in bundles}),
        "facilities": sorted({b["meta"]["facility_id"] for b in bundles}),
        "data": [
            {
                "facility_id": b["meta"]["facility_id"],
                "facility_name": b["meta"]["facility_name"],
                "period": b["meta"]["period"],
                "state": b["meta"]["state"],
                "setting": b["meta"]["setting"],
                "kpis": {k["kpi_id"]: k["value"] for k in b["kpis"]},
                "anomaly_count": len(b["anomalies"]),
            }
            for b in bundles
        ],
    }
    out_dir.mkdir(parents=True, exist_ok=True)
    path = out_dir / COMBINED_FILE
    with open(path, "w") as f:
        json.dump(combined, f, indent=2)
    return path


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def export_bundles(
    store_dir: Optional[Path] = None,
    out_dir: Optional[Path] = None,
    facility_id: Optional[str] = None,
    period_id: Optional[str] = None,
) -> list[Path]:
    """
    Write bundles for one period (default: the latest in kpi_results) and the
    combined table. Returns the bundle paths; raises ValueError when there are
    no KPI results to export.
    """
    out_dir = out_dir or EXPORTS
    kpi_results = _read_required("kpi_results", store_dir)
    if kpi_results.is_empty():
        raise ValueError("No KPI results found. Run the pipeline first.")

    period_id = period_id or kpi_results["period_id"].max()
    keys = fact_store.touched_keys(kpi_results.filter(pl.col("period_id") == period_id))
    if facility_id:
        keys = keys.filter(pl.col("facility_id") == facility_id.zfill(3))

    facilities = fact_store.read_table("facilities", store_dir)
    finance = fact_store.read_table("finance_facts", store_dir)
    census = fact_store.read_table("census_facts", store_dir)
    occupancy = fact_store.read_table("occupancy_facts", store_dir)
    benchmarks = _read_benchmarks(store_dir)
    benchmarks = benchmarks.filter(pl.col("period_id") == period_id)

    bundles: list[dict] = []
    paths: list[Path] = []
    for fid, pid in keys.iter_rows():
        bundle = build_bundle(
            _facility_row(facilities, fid),
            pid,
            kpi_results,
            census,
            benchmarks,
            _source_files([finance, census, occupancy], fid, pid),
        )
        bundles.append(bundle)
        paths.append(write_bundle(bundle, out_dir))
        print(f"[export]   {fid}/{pid}: {paths[-1]}")

    if bundles:
        print(f"[export] Combined KPI table → {write_combined_table(bundles, out_dir)}")
    print(f"[export] {len(bundles)} bundles → {out_dir}")
    return paths


def main() -> None:
    parser = argparse.ArgumentParser(description="Export facility-month JSON bundles")
    parser.add_argument("--facility", help="Single facility id")
    parser.add_argument("--period", help="Period YYYY-MM (default: latest)")
    parser.add_argument("--store-dir", type=Path, default=None)
    parser.add_argument("--output", "-o", type=Path, default=None, help=f"Output directory (default {EXPORTS})")
    args = parser.parse_args()
    export_bundles(args.store_dir, args.output, facility_id=args.facility, period_id=args.period)


if __name__ == "__main__":
    main()
