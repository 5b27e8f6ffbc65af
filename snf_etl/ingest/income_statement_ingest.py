"""
Monthly income-statement workbook ingest.

Reads a multi-sheet .xlsx where each facility has its own sheet named
"<code> (<name>)", e.g. "405 (Alderwood)". Every facility sheet follows the
same template:

  Excel row 27              period header: one month-start date per column
  Excel columns H..AE       monthly amounts (columns AF+ hold PPD formulas)
  Excel rows 31..197        income statement; account label in column F,
                            PPD lookup text in column B, department in column C
  "Patient Days" sentinel   somewhere in Excel rows 191..210; the census block
                            follows it, payer-day labels in column D and
                            occupancy labels in column F

Output (merged into the processed store, see snf_etl/transform/fact_store.py):
  finance_facts.parquet, census_facts.parquet, occupancy_facts.parquet

Sheets that do not fit the template are skipped, never raised on; callers
judge success from the returned counts.
"""
from __future__ import annotations

import logging
import os
import re
import sys
from datetime import date, datetime
from pathlib import Path

import openpyxl
import polars as pl
from dotenv import load_dotenv
from openpyxl.utils.datetime import from_excel

from snf_etl.ingest.account_map import (
    CENSUS_LINES,
    EXPENSE_LINES,
    OCCUPANCY_DAYS_LABELS,
    OCCUPANCY_LABELS,
    REVENUE_LINES,
    denominator_type_for,
)
from snf_etl.transform import fact_store

load_dotenv()

logger = logging.getLogger(__name__)

_REPO_ROOT = Path(__file__).resolve().parents[2]
_raw = os.environ.get("DATA_RAW", "data/raw")
RAW = Path(_raw) if Path(_raw).is_absolute() else _REPO_ROOT / _raw
INCOME_STATEMENT_DIR = RAW / "income_statements"

# -- Template offsets (0-based row / column indexes into the sheet grid) --
MIN_SHEET_ROWS = 35
DATE_HEADER_ROW = 26          # Excel row 27
PERIOD_FIRST_COL = 7          # column H
PERIOD_LAST_COL = 30          # column AE (inclusive)
FINANCE_FIRST_ROW = 30        # Excel row 31
FINANCE_END_ROW = 197         # exclusive; census section starts after
CENSUS_SCAN_FIRST_ROW = 190
CENSUS_SCAN_END_ROW = 210     # exclusive
CENSUS_BLOCK_ROWS = 45        # sentinel row + 44 rows of census lines
MIN_DATA_ROW_WIDTH = 8        # rows ending before column H carry no amounts

PPD_LOOKUP_COL = 1            # column B
DEPARTMENT_COL = 2            # column C
CENSUS_DAYS_LABEL_COL = 3     # column D
LABEL_COL = 5                 # column F

CENSUS_SENTINEL = "Patient Days"
HIDDEN_ROW_LABEL = "#hiderow"

# -- Sheet selection --
SHEET_NAME_PATTERN = re.compile(r"^(\d+)\s*\((.+)\)$")
SKIP_SHEET_PREFIXES = ("vena", "_vena")
SKIP_SHEET_NAMES = frozenset({"List", "Name"})
SKIP_SHEET_SUBSTRINGS = ("Company", "Healthcare", "Services", "Total", "Summary")

_ISO_DATE_PREFIX = re.compile(r"^(\d{4})-(\d{2})-\d{2}")


def is_system_sheet(sheet_name: str) -> bool:
    """Summary, total and add-in sheets that never hold a facility."""
    return (
        sheet_name.startswith(SKIP_SHEET_PREFIXES)
        or sheet_name in SKIP_SHEET_NAMES
        or any(s in sheet_name for s in SKIP_SHEET_SUBSTRINGS)
    )


def facility_from_sheet_name(sheet_name: str) -> tuple[str, str] | None:
    """"405 (Alderwood)" -> ("405", "Alderwood"); codes are zero-padded to 3."""
    m = SHEET_NAME_PATTERN.match(sheet_name.strip())
    if not m:
        return None
    return m.group(1).zfill(3), m.group(2).strip()


def period_from_cell(value: object) -> str | None:
    """Resolve a header cell to "YYYY-MM", or None when it is not a date."""
    if isinstance(value, (datetime, date)):
        return f"{value.year:04d}-{value.month:02d}"
    if isinstance(value, str):
        m = _ISO_DATE_PREFIX.match(value.strip())
        return f"{m.group(1)}-{m.group(2)}" if m else None
    if isinstance(value, (int, float)) and not isinstance(value, bool) and value > 0:
        # Excel serial date stored without a date format
        try:
            d = from_excel(value)
        except (ValueError, OverflowError):
            return None
        return f"{d.year:04d}-{d.month:02d}" if d else None
    return None


def to_number(value: object) -> float:
    """Numeric cell value; blanks, text and errors count as 0."""
    if isinstance(value, bool):
        return 0.0
    if isinstance(value, (int, float)):
        return 0.0 if value != value else float(value)  # NaN -> 0
    if isinstance(value, str):
        try:
            return float(value.strip().replace(",", ""))
        except ValueError:
            return 0.0
    return 0.0


def _cell(row: list, idx: int) -> object:
    return row[idx] if idx < len(row) else None


def _cell_text(value: object) -> str | None:
    if value is None:
        return None
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    text = str(value).strip()
    return text or None


def _trim(row: tuple | list) -> list:
    """Drop trailing empty cells so row width reflects the last populated column."""
    cells = list(row)
    while cells and cells[-1] is None:
        cells.pop()
    return cells


def sheet_rows(ws) -> list[list]:
    """Cell values of a worksheet as a list of rows, anchored at A1."""
    rows = [_trim(r) for r in ws.iter_rows(min_row=1, min_col=1, values_only=True)]
    while rows and not rows[-1]:
        rows.pop()
    return rows


def _find_census_start(rows: list[list]) -> int:
    for idx in range(CENSUS_SCAN_FIRST_ROW, min(CENSUS_SCAN_END_ROW, len(rows))):
        first = next((c for c in rows[idx] if c is not None and str(c).strip() != ""), None)
        if first is not None and str(first).strip() == CENSUS_SENTINEL:
            return idx
    return -1


def parse_sheet(rows: list[list], sheet_name: str, source_file: str) -> dict | None:
    """
    Parse one facility sheet grid into finance / census / occupancy row dicts.

    Returns None when the sheet fails a structural check (name pattern, too few
    rows, no resolvable period in the header row).
    """
    facility = facility_from_sheet_name(sheet_name)
    if facility is None:
        return None
    facility_id, facility_name = facility

    if len(rows) < MIN_SHEET_ROWS or DATE_HEADER_ROW >= len(rows):
        return None

    header = rows[DATE_HEADER_ROW]
    period_cols: list[tuple[int, str]] = []
    for col in range(PERIOD_FIRST_COL, PERIOD_LAST_COL + 1):
        period = period_from_cell(_cell(header, col))
        if period:
            period_cols.append((col, period))
    if not period_cols:
        return None

    finance: list[dict] = []
    census: list[dict] = []

    # -- Income statement --
    for row in rows[FINANCE_FIRST_ROW:min(FINANCE_END_ROW, len(rows))]:
        if len(row) < MIN_DATA_ROW_WIDTH:
            continue
        label = _cell(row, LABEL_COL)
        if not isinstance(label, str) or not label or label == HIDDEN_ROW_LABEL:
            continue
        line = REVENUE_LINES.get(label.strip()) or EXPENSE_LINES.get(label.strip())
        if line is None:
            continue
        denominator_type = denominator_type_for(_cell(row, PPD_LOOKUP_COL))
        department = _cell_text(_cell(row, DEPARTMENT_COL))
        for col, period in period_cols:
            amount = to_number(_cell(row, col))
            if amount != 0:
                finance.append({
                    "facility_id": facility_id,
                    "period_id": period,
                    "account_category": line.category,
                    "account_subcategory": line.subcategory,
                    "department": department,
                    "payer_category": line.payer,
                    "amount": amount,
                    "denominator_type": denominator_type,
                    "source_file": source_file,
                })

    # -- Census block --
    occupancy = {
        period: {
            "operational_beds": 0.0,
            "licensed_beds": 0.0,
            "total_patient_days": 0.0,
            "total_unit_days": 0.0,
            "second_occupant_days": 0.0,
            "operational_occupancy": 0.0,
        }
        for _, period in period_cols
    }

    census_start = _find_census_start(rows)
    if census_start > 0:
        for row in rows[census_start + 1:min(census_start + CENSUS_BLOCK_ROWS, len(rows))]:
            if len(row) < MIN_DATA_ROW_WIDTH:
                continue
            days_label = _cell_text(_cell(row, CENSUS_DAYS_LABEL_COL))
            if days_label:
                mapping = CENSUS_LINES.get(days_label)
                if mapping is not None:
                    for col, period in period_cols:
                        days = to_number(_cell(row, col))
                        if days > 0:
                            census.append({
                                "facility_id": facility_id,
                                "period_id": period,
                                "payer_category": mapping.payer,
                                "days": days,
                                "is_skilled": mapping.is_skilled,
                                "is_vent": mapping.is_vent,
                                "source_file": source_file,
                            })
                field = OCCUPANCY_DAYS_LABELS.get(days_label)
                if field:
                    for col, period in period_cols:
                        occupancy[period][field] = to_number(_cell(row, col))

            label = _cell_text(_cell(row, LABEL_COL))
            field = OCCUPANCY_LABELS.get(label) if label else None
            if field:
                for col, period in period_cols:
                    occupancy[period][field] = to_number(_cell(row, col))

    occupancy_rows = [
        {"facility_id": facility_id, "period_id": period, **values, "source_file": source_file}
        for period, values in occupancy.items()
        if values["operational_beds"] > 0 or values["total_patient_days"] > 0
    ]

    return {
        "facility_id": facility_id,
        "facility_name": facility_name,
        "periods": [p for _, p in period_cols],
        "finance_facts": finance,
        "census_facts": census,
        "occupancy_facts": occupancy_rows,
    }


def parse_workbook(path: Path | str) -> dict:
    """
    Parse every facility sheet in a workbook.

    Returns {finance_facts, census_facts, occupancy_facts} as DataFrames plus
    facility_ids (first-seen order), facility_names {id: name} and
    replace_keys: every facility crossed with the periods its sheet declares,
    whether or not a period column holds data.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Workbook not found: {path}")

    finance: list[dict] = []
    census: list[dict] = []
    occupancy: list[dict] = []
    facility_ids: list[str] = []
    facility_names: dict[str, str] = {}
    replace_keys: list[dict] = []

    wb = openpyxl.load_workbook(path, read_only=True, data_only=True)
    try:
        # worksheets excludes chart sheets, which have no cells
        for ws in wb.worksheets:
            sheet_name = ws.title
            if is_system_sheet(sheet_name):
                logger.debug("skip system sheet %r", sheet_name)
                continue
            if facility_from_sheet_name(sheet_name) is None:
                logger.debug("skip sheet %r: name is not \"<code> (<name>)\"", sheet_name)
                continue
            parsed = parse_sheet(sheet_rows(ws), sheet_name, path.name)
            if parsed is None:
                logger.debug("skip sheet %r: does not match the income-statement template", sheet_name)
                continue
            finance.extend(parsed["finance_facts"])
            census.extend(parsed["census_facts"])
            occupancy.extend(parsed["occupancy_facts"])
            fid = parsed["facility_id"]
            if fid not in facility_ids:
                facility_ids.append(fid)
                facility_names[fid] = parsed["facility_name"]
            replace_keys.extend({"facility_id": fid, "period_id": p} for p in parsed["periods"])
    finally:
        wb.close()

    occupancy_df = fact_store.frame_from_rows("occupancy_facts", occupancy)
    # Two sheets for one facility: the later sheet wins for a period
    occupancy_df = occupancy_df.unique(subset=fact_store.FACT_KEYS, keep="last", maintain_order=True)

    keys_df = pl.DataFrame(replace_keys, schema={"facility_id": pl.Utf8, "period_id": pl.Utf8})

    return {
        "finance_facts": fact_store.frame_from_rows("finance_facts", finance),
        "census_facts": fact_store.frame_from_rows("census_facts", census),
        "occupancy_facts": occupancy_df,
        "facility_ids": facility_ids,
        "facility_names": facility_names,
        "replace_keys": keys_df.unique().sort(fact_store.FACT_KEYS),
    }


def ingest(path: Path | str, store_dir: Path | None = None) -> dict:
    """
    Parse a workbook and replace its (facility, period) facts in the processed store.

    Every period column a facility sheet declares is replaced, including columns
    that are now empty, so a corrected re-upload clears stale facts. Returns
    counts plus the touched (facility_id, period_id) keys so the caller can
    recompute KPI results for exactly those keys.
    """
    path = Path(path)
    parsed = parse_workbook(path)
    finance, census, occupancy = parsed["finance_facts"], parsed["census_facts"], parsed["occupancy_facts"]
    keys = parsed["replace_keys"]
    result = {
        "source_file": path.name,
        "facility_ids": parsed["facility_ids"],
        "finance_facts": finance.height,
        "census_facts": census.height,
        "occupancy_facts": occupancy.height,
        "touched_keys": keys,
        "added_facilities": [],
    }
    print(f"[ingest] {path.name}: {len(parsed['facility_ids'])} facilities, "
          f"{finance.height:,} finance / {census.height:,} census / {occupancy.height:,} occupancy rows")
    if not parsed["facility_ids"]:
        return result

    # Full replace: every declared key is cleared in every stream
    for table, df in (("finance_facts", finance), ("census_facts", census), ("occupancy_facts", occupancy)):
        existing = fact_store.read_table(table, store_dir)
        kept = existing.join(keys, on=fact_store.FACT_KEYS, how="anti")
        fact_store.write_table(table, fact_store.replace_facts(kept, df), store_dir)

    result["added_facilities"] = fact_store.add_missing_facilities(parsed["facility_ids"], store_dir)
    for fid in result["added_facilities"]:
        print(f"[ingest]   added placeholder facility {fid} ({parsed['facility_names'].get(fid, '')})")
    return result


def ingest_dir(raw_dir: Path | None = None, store_dir: Path | None = None) -> list[dict]:
    """Ingest every "*Income Statements*.xlsx" under raw_dir."""
    raw_dir = raw_dir or INCOME_STATEMENT_DIR
    files = sorted(p for p in raw_dir.glob("*.xlsx") if "Income Statements" in p.name)
    if not files:
        raise FileNotFoundError(f"No income statement workbooks found under {raw_dir}")
    return [ingest(p, store_dir) for p in files]


if __name__ == "__main__":
    targets = [Path(a) for a in sys.argv[1:]]
    if targets:
        for t in targets:
            ingest(t)
    else:
        ingest_dir()
