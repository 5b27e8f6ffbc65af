#!/usr/bin/env python3
"""
End-to-end run: workbooks → processed fact store → KPI results → benchmarks
(→ Postgres with --load).

Usage:
  snf-etl "data/raw/Income Statements 2025.xlsx"
  snf-etl --facilities data/raw/CHCMASTERINFO.csv workbook.xlsx --load
  snf-etl --dry-run workbook.xlsx        # parse and report, write nothing
  snf-etl workbook.xlsx --export         # also write JSON bundles (data/exports)
  snf-etl --status                       # row counts in the processed store

Exits 1 when no workbook yields a facility sheet.
"""
from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import Optional

import polars as pl

from snf_etl.compute import benchmarks, kpi_calculator
from snf_etl.export import bundle_export
from snf_etl.ingest import facility_master_ingest, income_statement_ingest
from snf_etl.transform import fact_store

logger = logging.getLogger(__name__)

NO_DATA_HINT = (
    "No valid financial data found in {name}. "
    'Check sheet naming: facility sheets must be named like "101 (Facility Name)".'
)


def benchmarks_path(store_dir: Optional[Path] = None) -> Path:
    return fact_store.table_path("benchmarks", store_dir)


def refresh_benchmarks(periods: list[str], store_dir: Optional[Path] = None) -> pl.DataFrame:
    """Rebuild benchmark rows for *periods* and replace them in benchmarks.parquet."""
    kpis = fact_store.read_table("kpi_results", store_dir)
    facilities = fact_store.read_table("facilities", store_dir)
    fresh = [benchmarks.generate_benchmarks(kpis, facilities, p) for p in periods]
    fresh_df = pl.concat(fresh) if fresh else pl.DataFrame(schema=benchmarks.BENCHMARK_SCHEMA)

    path = benchmarks_path(store_dir)
    existing = pl.read_parquet(path) if path.exists() else pl.DataFrame(schema=benchmarks.BENCHMARK_SCHEMA)
    merged = pl.concat([
        existing.filter(~pl.col("period_id").is_in(periods)),
        fresh_df,
    ]).sort(["period_id", "kpi_id", "cohort"])
    path.parent.mkdir(parents=True, exist_ok=True)
    merged.write_parquet(path, compression="zstd")
    print(f"[benchmarks] {len(periods)} periods → {fresh_df.height:,} rows")
    return merged


def run(
    workbooks: list[Path],
    facilities_file: Optional[Path] = None,
    store_dir: Optional[Path] = None,
    load: bool = False,
    dry_run: bool = False,
    export_dir: Optional[Path] = None,
    export: bool = False,
) -> int:
    if dry_run:
        found = 0
        for path in workbooks:
            parsed = income_statement_ingest.parse_workbook(path)
            n = len(parsed["facility_ids"])
            found += n
            print(f"[dry-run] {path.name}: {n} facilities, "
                  f"{parsed['finance_facts'].height:,} finance / {parsed['census_facts'].height:,} census / "
                  f"{parsed['occupancy_facts'].height:,} occupancy rows")
            if not n:
                print(NO_DATA_HINT.format(name=path.name))
        return 0 if found else 1

    if facilities_file:
        facility_master_ingest.ingest(facilities_file, store_dir)

    touched: list[pl.DataFrame] = []
    for path in workbooks:
        result = income_statement_ingest.ingest(path, store_dir)
        if not result["facility_ids"]:
            print(NO_DATA_HINT.format(name=path.name))
            continue
        touched.append(result["touched_keys"])

    if not touched:
        return 1

    keys = pl.concat(touched).unique().sort(fact_store.FACT_KEYS)
    kpi_calculator.recompute_store(keys, store_dir)
    refresh_benchmarks(sorted(keys["period_id"].unique().to_list()), store_dir)

    if load:
        # Deferred: psycopg2 only needed with --load
        from snf_etl.load import postgres_loader
        postgres_loader.load_all(keys=keys, store_dir=store_dir)

    if export or export_dir:
        bundle_export.export_bundles(store_dir, export_dir)
    return 0


def print_status(store_dir: Optional[Path] = None) -> None:
    status = fact_store.store_status(store_dir)
    print("[status] rows per table")
    for table, count in status["counts"].items():
        print(f"  {table:<16} {count:>10,}")
    if status["recent_periods"]:
        print("[status] recent periods: " + ", ".join(status["recent_periods"]))
    if status["facilities_by_state"]:
        print("[status] facilities by state")
        for state, count in status["facilities_by_state"].items():
            print(f"  {state or 'UNKNOWN':<8} {count:>5}")


def main(argv: Optional[list[str]] = None) -> None:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s")
    parser = argparse.ArgumentParser(description="SNF financials ETL")
    parser.add_argument("workbooks", nargs="*", type=Path, help="Income statement .xlsx files")
    parser.add_argument("--facilities", type=Path, help="Facility master CSV / Excel")
    parser.add_argument("--store-dir", type=Path, default=None, help="Processed store directory")
    parser.add_argument("--load", action="store_true", help="Load touched keys into Postgres")
    parser.add_argument("--dry-run", action="store_true", help="Parse only, write nothing")
    parser.add_argument("--export", action="store_true", help="Write JSON bundles for the latest period")
    parser.add_argument("--export-dir", type=Path, default=None, help="Bundle output directory (implies --export)")
    parser.add_argument("--status", action="store_true", help="Print store row counts and exit")
    parser.add_argument("--verbose", "-v", action="store_true", help="Log skipped sheets")
    args = parser.parse_args(argv)

    if args.verbose:
        logging.getLogger("snf_etl").setLevel(logging.DEBUG)

    if args.status:
        print_status(args.store_dir)
        sys.exit(0)

    workbooks = args.workbooks
    if not workbooks:
        workbooks = sorted(
            p for p in income_statement_ingest.INCOME_STATEMENT_DIR.glob("*.xlsx")
            if "Income Statements" in p.name
        )
    if not workbooks:
        parser.error(f"no workbooks given and none found under {income_statement_ingest.INCOME_STATEMENT_DIR}")

    missing = [p for p in workbooks if not p.exists()]
    if missing:
        logger.error("Workbook not found: %s", ", ".join(str(p) for p in missing))
        sys.exit(2)

    sys.exit(run(
        workbooks, args.facilities, args.store_dir,
        load=args.load, dry_run=args.dry_run, export_dir=args.export_dir, export=args.export,
    ))


if __name__ == "__main__":
    main()
