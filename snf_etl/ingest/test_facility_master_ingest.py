"""
Unit tests for facility master parsing.

Run:
    pytest snf_etl/ingest/test_facility_master_ingest.py -v
"""
from __future__ import annotations

import openpyxl
import pytest

from snf_etl.ingest.facility_master_ingest import (
    extract_city,
    extract_state,
    find_master_file,
    ingest,
    normalize_row,
    parse_facility_master,
    parse_number,
    parse_setting,
    region_for_state,
)
from snf_etl.transform import fact_store

HEADER = [
    "Facility Code", "Short Name", "Legal Name", "DBA", "Parent OpCo",
    "Type", "Location", "Licensed Beds", "Operational Beds",
]


class TestFieldRules:
    @pytest.mark.parametrize("raw,expected", [
        ("SNF", "SNF"),
        ("alf", "ALF"),
        (" ILF ", "ILF"),
        ("Senior Living", "SeniorLiving"),
        ("Retirement Community", "SeniorLiving"),
        ("Hospital", "SNF"),
        (None, "SNF"),
    ])
    def test_setting(self, raw, expected):
        assert parse_setting(raw) == expected

    def test_state_after_comma(self):
        assert extract_state("1204 Shriver, Orofino, ID 83544") == "ID"

    def test_state_without_comma(self):
        assert extract_state("500 Main St Missoula MT 59801") == "MT"

    def test_state_from_name(self):
        assert extract_state("Somewhere in Oregon") == "OR"

    def test_state_unknown(self):
        assert extract_state("no address") == "UNKNOWN"
        assert extract_state(None) == "UNKNOWN"

    def test_city_second_to_last_part(self):
        assert extract_city("1204 Shriver, Orofino, ID 83544") == "Orofino"
        assert extract_city("Orofino") is None

    def test_region(self):
        assert region_for_state("ID") == "West_of_Mississippi"
        assert region_for_state("OH") == "East_of_Mississippi"
        assert region_for_state("UNKNOWN") is None

    def test_parse_number(self):
        assert parse_number("120 beds") == 120.0
        assert parse_number("1,050") == 1050.0
        assert parse_number(98) == 98.0
        assert parse_number("") is None
        assert parse_number(None) is None


class TestNormalizeRow:
    def test_full_row(self):
        rec = normalize_row({
            "Facility Code": "5",
            "Short Name": "Alderwood",
            "Legal Name": "Alderwood Health LLC",
            "Type": "SNF",
            "Location": "1 Elm St, Boise, ID 83702",
            "Licensed Beds": "120",
            "Operational Beds": "110",
        })
        assert rec["facility_id"] == "005"
        assert rec["name"] == "Alderwood"
        assert rec["state"] == "ID"
        assert rec["city"] == "Boise"
        assert rec["region"] == "West_of_Mississippi"
        assert rec["licensed_beds"] == 120.0

    def test_name_falls_back_to_legal_then_code(self):
        assert normalize_row({"Facility Code": "12", "Legal Name": "Legal"})["name"] == "Legal"
        assert normalize_row({"Facility Code": "12"})["name"] == "Facility 012"

    def test_float_code_from_excel(self):
        assert normalize_row({"Facility Code": 405.0})["facility_id"] == "405"

    @pytest.mark.parametrize("code", [None, "", "0", "Facility Code"])
    def test_rows_without_code_dropped(self, code):
        assert normalize_row({"Facility Code": code}) is None


class TestParseFiles:
    def test_csv_with_quoted_location(self, tmp_path):
        path = tmp_path / "CHCMASTERINFO.csv"
        path.write_text(
            ",".join(HEADER) + "\n"
            '101,Alderwood,Alderwood LLC,,OpCo A,SNF,"1 Elm St, Boise, ID 83702",120,110\n'
            '202,Birch,,,OpCo A,ALF,"9 Oak Ave, Columbus, OH 43004",60,55\n'
            ",,,,,,,,\n"
        )
        df = parse_facility_master(path)
        assert df["facility_id"].to_list() == ["101", "202"]
        assert df["setting"].to_list() == ["SNF", "ALF"]
        assert df["state"].to_list() == ["ID", "OH"]

    def test_excel_first_sheet(self, tmp_path):
        path = tmp_path / "Entity List.xlsx"
        wb = openpyxl.Workbook()
        ws = wb.active
        ws.append(HEADER)
        ws.append([7, "Cedar", None, None, None, "ILF", "2 Pine Rd, Helena, MT 59601", 80, 75])
        wb.save(path)
        df = parse_facility_master(path)
        row = df.row(0, named=True)
        assert row["facility_id"] == "007"
        assert row["setting"] == "ILF"
        assert row["operational_beds"] == 75.0

    def test_find_master_prefers_csv(self, tmp_path):
        (tmp_path / "Entity List.xlsx").write_bytes(b"")
        (tmp_path / "CHCMASTERINFO.csv").write_text("Facility Code\n")
        assert find_master_file(tmp_path).name == "CHCMASTERINFO.csv"

    def test_find_master_missing(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            find_master_file(tmp_path)

    def test_ingest_upserts(self, tmp_path):
        path = tmp_path / "CHCMASTERINFO.csv"
        path.write_text(",".join(HEADER) + "\n101,Alderwood,,,,SNF,,,\n")
        store = tmp_path / "store"
        fact_store.add_missing_facilities(["101", "303"], store)
        ingest(path, store)
        fac = fact_store.read_table("facilities", store)
        names = dict(zip(fac["facility_id"].to_list(), fac["name"].to_list()))
        assert names == {"101": "Alderwood", "303": "Facility 303"}
