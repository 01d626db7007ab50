from __future__ import annotations

from typing import Any, Dict, Iterable, Sequence

import pandas as pd

from mfgsync.frames import records_frame
from mfgsync.models import (
    STOCK_ADEQUACIES,
    URGENCIES,
    JobRecord,
    LeadTimeRecord,
    ParallelizationPair,
    StockRecord,
)


def _mean(series: pd.Series) -> float:
    return float(series.mean()) if len(series) else 0.0


def _pct(part: float, whole: float) -> float:
    return float(part) / float(whole) * 100.0 if whole else 0.0


def breakdown(values: pd.Series, vocabulary: Iterable[str] = ()) -> Dict[str, Dict[str, float]]:
    """Counts and percentage shares per value; vocabulary entries always present."""
    counts = {v: 0 for v in vocabulary}
    for key, n in sorted(values.value_counts().items(), key=lambda kv: str(kv[0])):
        counts[str(key)] = int(n)
    total = int(len(values))
    return {"counts": counts, "pct": {k: _pct(v, total) for k, v in counts.items()}}


def job_metrics(jobs: Sequence[JobRecord]) -> Dict[str, Any]:
    df = records_frame(jobs)
    if df.empty:
        return {
            "count": 0,
            "total_quantity": 0.0,
            "avg_lead_time_estimate": 0.0,
            "by_urgency": breakdown(pd.Series(dtype=object), URGENCIES),
            "by_stage": breakdown(pd.Series(dtype=object)),
        }
    return {
        "count": int(len(df)),
        "total_quantity": float(df["quantity"].sum()),
        "avg_lead_time_estimate": _mean(df["lead_time_estimate_days"]),
        "by_urgency": breakdown(df["urgency"], URGENCIES),
        "by_stage": breakdown(df["stage"]),
    }


def lead_time_metrics(rows: Sequence[LeadTimeRecord]) -> Dict[str, Any]:
    df = records_frame(rows)
    if df.empty:
        return {
            "count": 0,
            "avg_serial_time": 0.0,
            "avg_parallel_time": 0.0,
            "total_time_savings": 0.0,
            "avg_efficiency_gain": 0.0,
        }
    return {
        "count": int(len(df)),
        "avg_serial_time": _mean(df["serial_lead_time_days"]),
        "avg_parallel_time": _mean(df["parallelized_lead_time_days"]),
        "total_time_savings": float(df["time_saved_days"].sum()),
        "avg_efficiency_gain": _mean(df["efficiency_gain_pct"]),
    }


def pair_metrics(pairs: Sequence[ParallelizationPair]) -> Dict[str, Any]:
    df = records_frame(pairs)
    if df.empty:
        return {
            "total_pairs_analyzed": 0,
            "parallelizable_pairs": 0,
            "total_time_savings": 0.0,
            "avg_efficiency_gain": 0.0,
            "top_efficiency_gain": 0.0,
        }
    parallel = df[df["can_run_parallel"]]
    return {
        "total_pairs_analyzed": int(len(df)),
        "parallelizable_pairs": int(len(parallel)),
        "total_time_savings": float(parallel["time_saved_days"].sum()),
        "avg_efficiency_gain": _mean(parallel["efficiency_gain_pct"]),
        "top_efficiency_gain": float(parallel["efficiency_gain_pct"].max()) if len(parallel) else 0.0,
    }


def stock_metrics(stock: Sequence[StockRecord]) -> Dict[str, Any]:
    df = records_frame(stock)
    values = df["stock_adequacy"] if not df.empty else pd.Series(dtype=object)
    out = breakdown(values, STOCK_ADEQUACIES)
    out["count"] = int(len(values))
    return out


def stage_breakdown(jobs: Sequence[JobRecord]) -> list:
    """Per-stage inventory rows: item count, total quantity, urgency mix."""
    df = records_frame(jobs)
    if df.empty:
        return []
    rows = []
    for stage, group in df.groupby("stage", sort=True):
        urgency = group["urgency"].value_counts()
        rows.append(
            {
                "stage": str(stage),
                "item_count": int(len(group)),
                "total_quantity": float(group["quantity"].sum()),
                "urgency_breakdown": {str(k): int(v) for k, v in sorted(urgency.items())},
            }
        )
    return rows


VIEW_METRICS = {
    "jobs": job_metrics,
    "lead_times": lead_time_metrics,
    "pairs": pair_metrics,
    "stock": stock_metrics,
}


def compute_view_metrics(view: str, records: Sequence[Any]) -> Dict[str, Any]:
    return VIEW_METRICS[view](records)
