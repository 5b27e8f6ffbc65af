"""
KPI trends built from the kpi_results table.

  facility_t12m       trailing-12-month stats per KPI for one facility
  kpi_correlations    Pearson r between KPI pairs across a facility's periods
"""
from __future__ import annotations

from datetime import date
from itertools import combinations
from typing import Mapping, Optional

import polars as pl

from snf_etl.compute.kpi_registry import KPI_REGISTRY, KPIDefinition, is_higher_better
from snf_etl.compute.statistics import T12M_WINDOW, Correlation, T12MStats, pearson_correlation, t12m_stats


def format_period_id(period_id: str) -> str:
    """"2025-01" -> "Jan 2025"."""
    year, month = (int(p) for p in period_id.split("-")[:2])
    return date(year, month, 1).strftime("%b %Y")


def period_months_ago(period_id: str, months: int) -> str:
    year, month = (int(p) for p in period_id.split("-")[:2])
    index = year * 12 + (month - 1) - months
    return f"{index // 12:04d}-{index % 12 + 1:02d}"


def _window(kpi_results: pl.DataFrame, facility_id: str, end_period: Optional[str], months: int) -> pl.DataFrame:
    df = kpi_results.filter(
        (pl.col("facility_id") == facility_id) & pl.col("value").is_not_null()
    )
    if end_period:
        start = period_months_ago(end_period, months - 1)
        df = df.filter(pl.col("period_id").is_between(start, end_period))
    return df.sort("period_id")


def kpi_series(
    kpi_results: pl.DataFrame,
    facility_id: str,
    kpi_id: str,
    end_period: Optional[str] = None,
    months: int = T12M_WINDOW,
) -> list[tuple[str, float]]:
    """Non-null (period_id, value) points, oldest first."""
    df = _window(kpi_results, facility_id, end_period, months).filter(pl.col("kpi_id") == kpi_id)
    return list(df.select(["period_id", "value"]).iter_rows())


def facility_t12m(
    kpi_results: pl.DataFrame,
    facility_id: str,
    end_period: Optional[str] = None,
    registry: Mapping[str, KPIDefinition] = KPI_REGISTRY,
) -> dict[str, T12MStats]:
    df = _window(kpi_results, facility_id, end_period, T12M_WINDOW)
    out: dict[str, T12MStats] = {}
    for kpi_id in df["kpi_id"].unique(maintain_order=True).to_list():
        points = list(df.filter(pl.col("kpi_id") == kpi_id).select(["period_id", "value"]).iter_rows())
        stats = t12m_stats(points, is_higher_better(kpi_id, registry))
        if stats is not None:
            out[kpi_id] = stats
    return out


def kpi_correlations(
    kpi_results: pl.DataFrame,
    facility_id: str,
    kpi_ids: Optional[list[str]] = None,
    end_period: Optional[str] = None,
    months: int = T12M_WINDOW,
) -> list[tuple[str, str, Correlation]]:
    """
    Pearson correlation for every pair of KPIs, aligned on period_id.

    Pairs without a defined r are left out; the rest are sorted by |r| descending.
    """
    df = _window(kpi_results, facility_id, end_period, months)
    if kpi_ids is not None:
        df = df.filter(pl.col("kpi_id").is_in(kpi_ids))

    by_kpi: dict[str, dict[str, float]] = {}
    for kpi_id, period_id, value in df.select(["kpi_id", "period_id", "value"]).iter_rows():
        by_kpi.setdefault(kpi_id, {})[period_id] = value
    periods = sorted(df["period_id"].unique().to_list())

    pairs = []
    for a, b in combinations(sorted(by_kpi), 2):
        corr = pearson_correlation(
            [by_kpi[a].get(p) for p in periods],
            [by_kpi[b].get(p) for p in periods],
        )
        if corr.r == corr.r:  # NaN sentinel dropped
            pairs.append((a, b, corr))
    pairs.sort(key=lambda t: abs(t[2].r), reverse=True)
    return pairs
