"""
Postgres loader: pushes processed-store tables into Postgres with COPY.

Tables loaded (in order, facilities first for the foreign keys):
  facilities        upsert by facility_id
  finance_facts     delete rows for the incoming (facility_id, period_id) keys, then COPY
  census_facts      same
  occupancy_facts   same
  kpi_results       same

Each table loads inside one transaction, so a failed COPY leaves the previous
rows for its keys in place.

Usage:
  python -m snf_etl.load.postgres_loader [table ...]
  python -m snf_etl.load.postgres_loader --delete-facility 405
"""
from __future__ import annotations

import argparse
import io
import os
import time
from pathlib import Path
from typing import Optional

import polars as pl
import psycopg2
from dotenv import load_dotenv

from snf_etl.transform import fact_store

load_dotenv()

SCHEMAS_DIR = Path(__file__).resolve().parent.parent / "schemas"
SCHEMA_FILES = ["facts.sql"]

FACT_TABLES = ["finance_facts", "census_facts", "occupancy_facts", "kpi_results"]
TABLE_ORDER = ["facilities"] + FACT_TABLES

_KEYS_TEMP = "_load_keys"
_STAGE_TEMP = "_load_facilities"


def _get_conn() -> psycopg2.extensions.connection:
    url = os.environ.get("POSTGRES_URL") or os.environ.get("DATABASE_URL")
    if url:
        try:
            return psycopg2.connect(url, connect_timeout=10)
        except psycopg2.OperationalError:
            pass

    password = os.environ.get("POSTGRES_PASSWORD", "")
    if not password:
        raise ValueError(
            "POSTGRES_PASSWORD not set in environment.\n"
            "  Set in .env: POSTGRES_PASSWORD=yourpassword\n"
            "  Or set POSTGRES_URL / DATABASE_URL"
        )

    host = os.environ.get("POSTGRES_HOST", "127.0.0.1")
    # localhost can resolve to ::1 and miss a Docker-mapped port
    if host == "localhost":
        host = "127.0.0.1"

    last_err: Optional[Exception] = None
    for attempt in range(1, 6):
        try:
            return psycopg2.connect(
                host=host,
                port=int(os.environ.get("POSTGRES_PORT", "5432")),
                dbname=os.environ.get("POSTGRES_DB", "snf_financials"),
                user=os.environ.get("POSTGRES_USER", "snf"),
                password=password,
                connect_timeout=5,
            )
        except psycopg2.OperationalError as e:
            last_err = e
            if attempt < 5:
                time.sleep(3)
    raise last_err


def apply_schemas(cur) -> None:
    for name in SCHEMA_FILES:
        path = SCHEMAS_DIR / name
        if path.exists():
            cur.execute(path.read_text())


def _csv_buffer(df: pl.DataFrame) -> io.BytesIO:
    buf = io.BytesIO()
    df.write_csv(buf)
    buf.seek(0)
    return buf


def _copy(cur, table: str, df: pl.DataFrame) -> None:
    cols = ", ".join(df.columns)
    cur.copy_expert(
        f"COPY {table} ({cols}) FROM STDIN WITH (FORMAT CSV, HEADER TRUE, NULL '')",
        _csv_buffer(df),
    )


def upsert_facilities(cur, df: pl.DataFrame) -> None:
    """Stage rows in a temp table, then INSERT ... ON CONFLICT so child facts survive."""
    cols = list(fact_store.FACILITY_SCHEMA)
    cur.execute(f"CREATE TEMP TABLE {_STAGE_TEMP} (LIKE facilities INCLUDING DEFAULTS) ON COMMIT DROP")
    _copy(cur, _STAGE_TEMP, df.select(cols))
    updates = ", ".join(f"{c} = EXCLUDED.{c}" for c in cols if c != "facility_id")
    cur.execute(
        f"INSERT INTO facilities ({', '.join(cols)}) "
        f"SELECT {', '.join(cols)} FROM {_STAGE_TEMP} "
        f"ON CONFLICT (facility_id) DO UPDATE SET {updates}, updated_at = now()"
    )


def replace_fact_rows(cur, table: str, df: pl.DataFrame, keys: pl.DataFrame) -> None:
    """Delete every row of *table* for *keys*, then COPY *df*."""
    cur.execute(
        f"CREATE TEMP TABLE {_KEYS_TEMP} (facility_id TEXT, period_id TEXT) ON COMMIT DROP"
    )
    _copy(cur, _KEYS_TEMP, keys.select(fact_store.FACT_KEYS))
    cur.execute(
        f"DELETE FROM {table} t USING {_KEYS_TEMP} k "
        f"WHERE t.facility_id = k.facility_id AND t.period_id = k.period_id"
    )
    if not df.is_empty():
        _copy(cur, table, df)


def load_table(
    table: str,
    keys: Optional[pl.DataFrame] = None,
    store_dir: Optional[Path] = None,
    conn=None,
) -> int:
    """
    Load one processed-store table. With *keys*, only those (facility, period)
    pairs are replaced; without, every key present in the store is.
    """
    if table not in TABLE_ORDER:
        raise ValueError(f"Unknown table: {table}  (known: {TABLE_ORDER})")

    df = fact_store.read_table(table, store_dir)
    if table != "facilities":
        if keys is None:
            keys = fact_store.touched_keys(df)
        else:
            df = df.join(keys.select(fact_store.FACT_KEYS), on=fact_store.FACT_KEYS, how="semi")
        if keys.is_empty():
            print(f"[postgres] SKIP {table}: no rows")
            return 0
    elif df.is_empty():
        print(f"[postgres] SKIP {table}: no rows")
        return 0

    print(f"[postgres] Loading {table}: {len(df):,} rows")
    own_conn = conn is None
    conn = conn or _get_conn()
    try:
        with conn:
            with conn.cursor() as cur:
                apply_schemas(cur)
                if table == "facilities":
                    upsert_facilities(cur, df)
                else:
                    replace_fact_rows(cur, table, df, keys)
        print(f"[postgres] ✓ {table}")
    finally:
        if own_conn:
            conn.close()
    return len(df)


def load_all(
    tables: Optional[list[str]] = None,
    keys: Optional[pl.DataFrame] = None,
    store_dir: Optional[Path] = None,
) -> dict[str, int]:
    targets = [t for t in TABLE_ORDER if t in (tables or TABLE_ORDER)]
    unknown = sorted(set(tables or []) - set(TABLE_ORDER))
    for t in unknown:
        print(f"[postgres] Unknown table: {t}  (known: {TABLE_ORDER})")

    loaded: dict[str, int] = {}
    conn = _get_conn()
    try:
        for table in targets:
            loaded[table] = load_table(table, keys=keys, store_dir=store_dir, conn=conn)
    finally:
        conn.close()
    return loaded


def delete_facility(facility_id: str, conn=None) -> int:
    """Delete a facility; the schema cascades to every fact and KPI row."""
    own_conn = conn is None
    conn = conn or _get_conn()
    try:
        with conn:
            with conn.cursor() as cur:
                cur.execute("DELETE FROM facilities WHERE facility_id = %s", (facility_id,))
                deleted = cur.rowcount
    finally:
        if own_conn:
            conn.close()
    print(f"[postgres] Deleted facility {facility_id} ({deleted} row)")
    return deleted


def main() -> None:
    parser = argparse.ArgumentParser(description="Load the processed fact store into Postgres")
    parser.add_argument("tables", nargs="*", help=f"Subset of {TABLE_ORDER}")
    parser.add_argument("--delete-facility", metavar="ID", help="Delete one facility and its facts")
    parser.add_argument("--store-dir", type=Path, default=None)
    args = parser.parse_args()

    if args.delete_facility:
        delete_facility(args.delete_facility.zfill(3))
        return
    load_all(args.tables or None, store_dir=args.store_dir)


if __name__ == "__main__":
    main()
