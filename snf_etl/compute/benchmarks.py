"""
Peer benchmarks per KPI and period.

Cohorts:
  all                 every facility with a value
  state:<XX>          facilities in one state
  region:<R>          West_of_Mississippi / East_of_Mississippi / Unknown
  setting:<S>         SNF / ALF / ILF / SeniorLiving

Non-"all" cohorts need at least MIN_COHORT_SIZE values to be reported.
Quantiles use linear interpolation; std_dev is the population form.
"""
from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Optional, Sequence

import numpy as np
import polars as pl

MIN_COHORT_SIZE = 2

BENCHMARK_SCHEMA = {
    "kpi_id": pl.Utf8,
    "cohort": pl.Utf8,
    "period_id": pl.Utf8,
    "count": pl.UInt32,
    "min": pl.Float64,
    "p25": pl.Float64,
    "median": pl.Float64,
    "p75": pl.Float64,
    "max": pl.Float64,
    "mean": pl.Float64,
    "std_dev": pl.Float64,
}


@dataclass
class BenchmarkStats:
    count: int
    min: float
    p25: float
    median: float
    p75: float
    max: float
    mean: float
    std_dev: float


def benchmark_stats(values: Sequence[Optional[float]]) -> Optional[BenchmarkStats]:
    """Distribution summary of the finite values, or None when there are none."""
    arr = np.array([v for v in values if v is not None], dtype=float)
    arr = arr[np.isfinite(arr)]
    if arr.size == 0:
        return None
    p25, median, p75 = np.percentile(arr, [25, 50, 75])
    return BenchmarkStats(
        count=int(arr.size),
        min=float(arr.min()),
        p25=float(p25),
        median=float(median),
        p75=float(p75),
        max=float(arr.max()),
        mean=float(arr.mean()),
        std_dev=float(arr.std()) if arr.size > 1 else 0.0,
    )


def _cohort_stats(df: pl.DataFrame, cohort_expr: pl.Expr) -> pl.DataFrame:
    return (
        df.with_columns(cohort_expr.alias("cohort"))
        .group_by(["kpi_id", "cohort"])
        .agg([
            pl.len().cast(pl.UInt32).alias("count"),
            pl.col("value").min().alias("min"),
            pl.col("value").quantile(0.25, interpolation="linear").alias("p25"),
            pl.col("value").quantile(0.50, interpolation="linear").alias("median"),
            pl.col("value").quantile(0.75, interpolation="linear").alias("p75"),
            pl.col("value").max().alias("max"),
            pl.col("value").mean().alias("mean"),
            pl.col("value").std(ddof=0).fill_null(0.0).alias("std_dev"),
        ])
    )


def generate_benchmarks(kpi_results: pl.DataFrame, facilities: pl.DataFrame, period_id: str) -> pl.DataFrame:
    """
    Benchmark rows (kpi_id, cohort, period_id, stats...) for one period.

    Only facilities present in *facilities* and non-null finite values count.
    """
    df = (
        kpi_results
        .filter((pl.col("period_id") == period_id) & pl.col("value").is_not_null())
        .filter(pl.col("value").is_finite())
        .join(
            facilities.select(["facility_id", "state", "region", "setting"]),
            on="facility_id",
            how="inner",
        )
        .with_columns(pl.col("region").fill_null("Unknown"))
    )
    if df.is_empty():
        return pl.DataFrame(schema=BENCHMARK_SCHEMA)

    parts = [_cohort_stats(df, pl.lit("all"))]
    for column in ("state", "region", "setting"):
        stats = _cohort_stats(df, pl.lit(f"{column}:") + pl.col(column).fill_null("Unknown"))
        parts.append(stats.filter(pl.col("count") >= MIN_COHORT_SIZE))

    return (
        pl.concat(parts)
        .with_columns(pl.lit(period_id).alias("period_id"))
        .select(list(BENCHMARK_SCHEMA))
        .sort(["kpi_id", "cohort"])
    )


def percentile_rank(value: float, stats: BenchmarkStats) -> float:
    """Approximate 0-100 rank by interpolating between the quartile points."""
    if stats.count == 0:
        return 50.0
    if value <= stats.min:
        return 0.0
    if value >= stats.max:
        return 100.0
    knots = [(stats.min, 0.0), (stats.p25, 25.0), (stats.median, 50.0), (stats.p75, 75.0), (stats.max, 100.0)]
    for (lo_v, lo_r), (hi_v, hi_r) in zip(knots, knots[1:]):
        if value <= hi_v:
            if hi_v == lo_v:
                return hi_r
            return lo_r + (hi_r - lo_r) * (value - lo_v) / (hi_v - lo_v)
    return 100.0


def performance_label(rank: float, higher_is_better: bool = True) -> str:
    adjusted = rank if higher_is_better else 100 - rank
    if adjusted >= 75:
        return "Top Quartile"
    if adjusted >= 50:
        return "Above Median"
    if adjusted >= 25:
        return "Below Median"
    return "Bottom Quartile"


def stats_from_row(row: dict) -> BenchmarkStats:
    return BenchmarkStats(**{k: row[k] for k in BenchmarkStats.__dataclass_fields__})


def facility_benchmarks(benchmarks: pl.DataFrame, facility: dict, kpi_id: str) -> dict[str, BenchmarkStats]:
    """Cohort stats relevant to one facility: all, its state, region and setting."""
    wanted = {
        "all": "all",
        f"state:{facility.get('state')}": f"state_{facility.get('state')}",
        f"region:{facility.get('region') or 'Unknown'}": f"region_{facility.get('region') or 'Unknown'}",
        f"setting:{facility.get('setting')}": f"setting_{facility.get('setting')}",
    }
    out: dict[str, BenchmarkStats] = {}
    for row in benchmarks.filter(pl.col("kpi_id") == kpi_id).iter_rows(named=True):
        key = wanted.get(row["cohort"])
        if key and not math.isnan(row["mean"]):
            out[key] = stats_from_row(row)
    return out
