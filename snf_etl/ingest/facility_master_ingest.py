"""
Facility master ingest.

Source (first found under DATA_RAW):
  CHCMASTERINFO.csv    facility master export
  Entity List.xlsx     same columns, first sheet

Columns used: Facility Code, Short Name, Legal Name, DBA, Parent OpCo, Type,
Location, Licensed Beds, Operational Beds.

Output: facilities table in the processed store (upsert by facility_id).
"""
from __future__ import annotations

import os
import re
import sys
from pathlib import Path
from typing import Optional

import openpyxl
import polars as pl
from dotenv import load_dotenv

from snf_etl.transform import fact_store

load_dotenv()

_REPO_ROOT = Path(__file__).resolve().parents[2]
_raw = os.environ.get("DATA_RAW", "data/raw")
RAW = Path(_raw) if Path(_raw).is_absolute() else _REPO_ROOT / _raw

MASTER_CSV = "CHCMASTERINFO.csv"
MASTER_XLSX = "Entity List.xlsx"

_STATE_ZIP_AFTER_COMMA = re.compile(r",\s*([A-Z]{2})\s*\d{5}")
_STATE_ZIP = re.compile(r"([A-Z]{2})\s*\d{5}")
_NON_NUMERIC = re.compile(r"[^\d.\-]")

STATE_NAMES = {
    "Idaho": "ID",
    "Montana": "MT",
    "Oregon": "OR",
    "Washington": "WA",
    "Arizona": "AZ",
}

WEST_OF_MISSISSIPPI = frozenset({
    "AK", "AZ", "CA", "CO", "HI", "ID", "KS", "MT", "NE", "NV",
    "NM", "ND", "OK", "OR", "SD", "TX", "UT", "WA", "WY",
})


def _text(value: object) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    text = str(value).strip()
    return text or None


def parse_setting(type_text: Optional[str]) -> str:
    if not type_text:
        return "SNF"
    normalized = type_text.strip().upper()
    if normalized in ("SNF", "ALF", "ILF"):
        return normalized
    if "SENIOR" in normalized or "RETIREMENT" in normalized:
        return "SeniorLiving"
    return "SNF"


def extract_state(location: Optional[str]) -> str:
    """"1204 Shriver, Orofino, ID 83544" -> "ID"."""
    if not location:
        return "UNKNOWN"
    for pattern in (_STATE_ZIP_AFTER_COMMA, _STATE_ZIP):
        m = pattern.search(location)
        if m:
            return m.group(1)
    for name, code in STATE_NAMES.items():
        if name in location:
            return code
    return "UNKNOWN"


def extract_city(location: Optional[str]) -> Optional[str]:
    if not location:
        return None
    parts = location.split(",")
    if len(parts) < 2:
        return None
    return parts[-2].strip() or None


def region_for_state(state: str) -> Optional[str]:
    if state == "UNKNOWN":
        return None
    return "West_of_Mississippi" if state in WEST_OF_MISSISSIPPI else "East_of_Mississippi"


def parse_number(value: object) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    cleaned = _NON_NUMERIC.sub("", str(value))
    try:
        return float(cleaned)
    except ValueError:
        return None


def normalize_row(row: dict) -> Optional[dict]:
    """Map one raw master row to a facilities record; None for non-facility rows."""
    code = _text(row.get("Facility Code"))
    if not code or code == "Facility Code":
        return None
    facility_id = code.zfill(3)
    if facility_id == "000":
        return None

    location = _text(row.get("Location"))
    short_name = _text(row.get("Short Name"))
    legal_name = _text(row.get("Legal Name"))
    state = extract_state(location)
    return {
        "facility_id": facility_id,
        "name": short_name or legal_name or f"Facility {facility_id}",
        "short_name": short_name or "",
        "dba": _text(row.get("DBA")),
        "legal_name": legal_name,
        "parent_opco": _text(row.get("Parent OpCo")),
        "setting": parse_setting(_text(row.get("Type"))),
        "state": state,
        "city": extract_city(location),
        "address": location,
        "licensed_beds": parse_number(row.get("Licensed Beds")),
        "operational_beds": parse_number(row.get("Operational Beds")),
        "region": region_for_state(state),
    }


def _read_csv_rows(path: Path) -> list[dict]:
    df = pl.read_csv(path, infer_schema_length=0, null_values=["", " "], encoding="utf8-lossy")
    df = df.rename({c: c.strip().strip('"') for c in df.columns})
    return df.to_dicts()


def _read_excel_rows(path: Path) -> list[dict]:
    wb = openpyxl.load_workbook(path, read_only=True, data_only=True)
    try:
        ws = wb[wb.sheetnames[0]]
        rows = ws.iter_rows(values_only=True)
        header = next(rows, None)
        if not header:
            return []
        names = [_text(h) for h in header]
        return [
            {name: value for name, value in zip(names, values) if name}
            for values in rows
            if any(v is not None for v in values)
        ]
    finally:
        wb.close()


def parse_facility_master(path: Path | str) -> pl.DataFrame:
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Facility master not found: {path}")
    raw = _read_excel_rows(path) if path.suffix.lower() in (".xlsx", ".xlsm") else _read_csv_rows(path)
    records = [r for r in (normalize_row(row) for row in raw) if r is not None]
    df = fact_store.frame_from_rows("facilities", records)
    # Later rows for the same code win
    return df.unique(subset=["facility_id"], keep="last", maintain_order=True)


def find_master_file(raw_dir: Path | None = None) -> Path:
    raw_dir = raw_dir or RAW
    for name in (MASTER_CSV, MASTER_XLSX):
        candidate = raw_dir / name
        if candidate.exists():
            return candidate
    raise FileNotFoundError(f"No {MASTER_CSV} or {MASTER_XLSX} under {raw_dir}")


def ingest(path: Path | str | None = None, store_dir: Path | None = None) -> pl.DataFrame:
    path = Path(path) if path else find_master_file()
    df = parse_facility_master(path)
    print(f"[facilities] {path.name}: {len(df):,} facilities")
    for setting, n in df.group_by("setting").len().sort("setting").iter_rows():
        print(f"[facilities]   {setting}: {n:,}")
    fact_store.upsert_facilities(df, store_dir)
    return df


if __name__ == "__main__":
    ingest(sys.argv[1] if len(sys.argv) > 1 else None)
