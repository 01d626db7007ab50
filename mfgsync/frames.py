from __future__ import annotations

from dataclasses import asdict
from typing import Any, Dict, Sequence

import pandas as pd

from mfgsync.models import LeadTimeRecord, ParallelizationPair


POSITION_COLUMN = "_pos"


def flatten_record(record: Any) -> Dict[str, Any]:
    """Flat row for one canonical record, derived fields included."""
    if isinstance(record, ParallelizationPair):
        row: Dict[str, Any] = {}
        for prefix, item in (("item_a", record.item_a), ("item_b", record.item_b)):
            row[f"{prefix}_code"] = item.item_code
            row[f"{prefix}_urgency"] = item.urgency
            row[f"{prefix}_process"] = item.process
            row[f"{prefix}_machines"] = item.machines
        row.update(
            {
                "sequential_time_days": record.sequential_time_days,
                "parallel_time_days": record.parallel_time_days,
                "time_saved_days": record.time_saved_days,
                "efficiency_gain_pct": record.efficiency_gain_pct,
                "can_run_parallel": record.can_run_parallel,
                "process_conflicts": ", ".join(record.process_conflicts),
                "machine_conflicts": ", ".join(record.machine_conflicts),
            }
        )
        return row
    row = asdict(record)
    if isinstance(record, LeadTimeRecord):
        row["time_saved_days"] = record.time_saved_days
        row["efficiency_gain_pct"] = record.efficiency_gain_pct
    return row


def records_frame(records: Sequence[Any]) -> pd.DataFrame:
    """DataFrame of flattened records with their insertion position in ``_pos``."""
    rows = [flatten_record(r) for r in records]
    df = pd.DataFrame(rows)
    df[POSITION_COLUMN] = range(len(rows))
    return df
