"""
Processed fact store: one Parquet file per table under data/processed/facts/.

Tables:
  facilities        facility master (one row per facility_id)
  finance_facts     income-statement lines, many rows per (facility_id, period_id)
  census_facts      resident days per payer / skilled / vent flag
  occupancy_facts   at most one row per (facility_id, period_id)
  kpi_results       one row per (facility_id, period_id, kpi_id)

Writes follow a full-replace policy: every existing row whose
(facility_id, period_id) appears in the incoming frame is dropped before the
incoming rows are appended. Re-running the same workbook therefore leaves the
store unchanged, and a smaller re-upload shrinks the history for that period.
"""
from __future__ import annotations

import os
from pathlib import Path

import polars as pl
from dotenv import load_dotenv

load_dotenv()

_REPO_ROOT = Path(__file__).resolve().parents[2]
_proc = os.environ.get("DATA_PROCESSED", "data/processed")
PROCESSED = Path(_proc) if Path(_proc).is_absolute() else _REPO_ROOT / _proc
STORE_DIR = PROCESSED / "facts"

FACT_KEYS = ["facility_id", "period_id"]

FACILITY_SCHEMA = {
    "facility_id": pl.Utf8,
    "name": pl.Utf8,
    "short_name": pl.Utf8,
    "dba": pl.Utf8,
    "legal_name": pl.Utf8,
    "parent_opco": pl.Utf8,
    "setting": pl.Utf8,
    "state": pl.Utf8,
    "city": pl.Utf8,
    "address": pl.Utf8,
    "licensed_beds": pl.Float64,
    "operational_beds": pl.Float64,
    "region": pl.Utf8,
}
FINANCE_SCHEMA = {
    "facility_id": pl.Utf8,
    "period_id": pl.Utf8,
    "account_category": pl.Utf8,
    "account_subcategory": pl.Utf8,
    "department": pl.Utf8,
    "payer_category": pl.Utf8,
    "amount": pl.Float64,
    "denominator_type": pl.Utf8,
    "source_file": pl.Utf8,
}
CENSUS_SCHEMA = {
    "facility_id": pl.Utf8,
    "period_id": pl.Utf8,
    "payer_category": pl.Utf8,
    "days": pl.Float64,
    "is_skilled": pl.Boolean,
    "is_vent": pl.Boolean,
    "source_file": pl.Utf8,
}
OCCUPANCY_SCHEMA = {
    "facility_id": pl.Utf8,
    "period_id": pl.Utf8,
    "operational_beds": pl.Float64,
    "licensed_beds": pl.Float64,
    "total_patient_days": pl.Float64,
    "total_unit_days": pl.Float64,
    "second_occupant_days": pl.Float64,
    "operational_occupancy": pl.Float64,
    "source_file": pl.Utf8,
}
KPI_RESULT_SCHEMA = {
    "facility_id": pl.Utf8,
    "period_id": pl.Utf8,
    "kpi_id": pl.Utf8,
    "value": pl.Float64,
    "numerator_value": pl.Float64,
    "denominator_value": pl.Float64,
    "denominator_type": pl.Utf8,
    "payer_scope": pl.Utf8,
    "unit": pl.Utf8,
    "warnings": pl.Utf8,  # JSON list
}

TABLE_SCHEMAS: dict[str, dict[str, pl.DataType]] = {
    "facilities": FACILITY_SCHEMA,
    "finance_facts": FINANCE_SCHEMA,
    "census_facts": CENSUS_SCHEMA,
    "occupancy_facts": OCCUPANCY_SCHEMA,
    "kpi_results": KPI_RESULT_SCHEMA,
}

# Child tables removed with their facility
DEPENDENT_TABLES = ["finance_facts", "census_facts", "occupancy_facts", "kpi_results"]


def empty_frame(table: str) -> pl.DataFrame:
    return pl.DataFrame(schema=TABLE_SCHEMAS[table])


def frame_from_rows(table: str, rows: list[dict]) -> pl.DataFrame:
    """Build a table frame from row dicts, pinned to the table schema."""
    schema = TABLE_SCHEMAS[table]
    if not rows:
        return empty_frame(table)
    return pl.DataFrame(rows, schema=schema)


def conform(table: str, df: pl.DataFrame) -> pl.DataFrame:
    """Select the table's columns in schema order and cast to schema types."""
    schema = TABLE_SCHEMAS[table]
    missing = [c for c in schema if c not in df.columns]
    if missing:
        df = df.with_columns([pl.lit(None).cast(schema[c]).alias(c) for c in missing])
    return df.select([pl.col(c).cast(t, strict=False) for c, t in schema.items()])


def table_path(table: str, store_dir: Path | None = None) -> Path:
    return (store_dir or STORE_DIR) / f"{table}.parquet"


def read_table(table: str, store_dir: Path | None = None) -> pl.DataFrame:
    path = table_path(table, store_dir)
    if not path.exists():
        return empty_frame(table)
    return conform(table, pl.read_parquet(path))


def write_table(table: str, df: pl.DataFrame, store_dir: Path | None = None) -> Path:
    path = table_path(table, store_dir)
    path.parent.mkdir(parents=True, exist_ok=True)
    conform(table, df).write_parquet(path, compression="zstd")
    return path


def replace_facts(
    existing: pl.DataFrame,
    incoming: pl.DataFrame,
    keys: list[str] | None = None,
) -> pl.DataFrame:
    """
    Drop every existing row sharing a key with *incoming*, then append *incoming*.

    Output is sorted by key with insertion order kept inside a key, so the same
    inputs always produce the same frame.
    """
    keys = keys or FACT_KEYS
    if incoming.is_empty():
        return existing
    touched = incoming.select(keys).unique()
    kept = existing.join(touched, on=keys, how="anti")
    incoming = incoming.select(existing.columns).cast(dict(existing.schema), strict=False)
    return pl.concat([kept, incoming], how="vertical").sort(keys, maintain_order=True)


def replace_in_store(table: str, incoming: pl.DataFrame, store_dir: Path | None = None) -> pl.DataFrame:
    existing = read_table(table, store_dir)
    merged = replace_facts(existing, conform(table, incoming))
    write_table(table, merged, store_dir)
    return merged


def touched_keys(*frames: pl.DataFrame) -> pl.DataFrame:
    """Distinct (facility_id, period_id) pairs across the given frames."""
    parts = [f.select(FACT_KEYS) for f in frames if not f.is_empty()]
    if not parts:
        return pl.DataFrame(schema={"facility_id": pl.Utf8, "period_id": pl.Utf8})
    return pl.concat(parts).unique().sort(FACT_KEYS)


# ---------------------------------------------------------------------------
# Facility master CRUD
# ---------------------------------------------------------------------------

def upsert_facilities(incoming: pl.DataFrame, store_dir: Path | None = None) -> pl.DataFrame:
    """Insert or replace facilities by facility_id."""
    existing = read_table("facilities", store_dir)
    merged = replace_facts(existing, conform("facilities", incoming), keys=["facility_id"])
    write_table("facilities", merged, store_dir)
    return merged


def add_missing_facilities(facility_ids: list[str], store_dir: Path | None = None) -> list[str]:
    """Add placeholder SNF rows for ids seen in workbooks but absent from the master."""
    existing = set(read_table("facilities", store_dir)["facility_id"].to_list())
    missing = [fid for fid in facility_ids if fid not in existing]
    if missing:
        rows = [
            {
                "facility_id": fid,
                "name": f"Facility {fid}",
                "short_name": f"Facility {fid}",
                "setting": "SNF",
                "state": "UNKNOWN",
            }
            for fid in missing
        ]
        upsert_facilities(frame_from_rows("facilities", rows), store_dir)
    return missing


def delete_facility(facility_id: str, store_dir: Path | None = None) -> dict[str, int]:
    """Remove a facility and every dependent row. Returns rows removed per table."""
    removed: dict[str, int] = {}
    for table in ["facilities"] + DEPENDENT_TABLES:
        df = read_table(table, store_dir)
        kept = df.filter(pl.col("facility_id") != facility_id)
        removed[table] = df.height - kept.height
        if removed[table]:
            write_table(table, kept, store_dir)
    return removed


# ---------------------------------------------------------------------------
# Status
# ---------------------------------------------------------------------------

def store_status(store_dir: Path | None = None, recent: int = 5) -> dict:
    """Row count per table, the most recent finance periods and facilities per state."""
    counts = {table: read_table(table, store_dir).height for table in TABLE_SCHEMAS}
    finance = read_table("finance_facts", store_dir)
    periods = sorted(finance["period_id"].unique().to_list(), reverse=True)[:recent]
    by_state = (
        read_table("facilities", store_dir)
        .group_by("state")
        .len()
        .sort(["len", "state"], descending=[True, False])
    )
    return {
        "counts": counts,
        "recent_periods": periods,
        "facilities_by_state": dict(by_state.iter_rows()),
    }
