"""Map upstream rows of inconsistent shape onto the canonical entities.

Every alias for a logical field lives here; the rest of the package only
sees :mod:`mfgsync.models` types. Nothing in this module raises on bad
input: unusable numbers become ``0.0``, unknown enum values become
``UNKNOWN`` and rows without an identity are dropped and counted.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from mfgsync.models import (
    STAGES,
    UNKNOWN,
    URGENCIES,
    JobRecord,
    LeadTimeRecord,
    PairItem,
    ParallelizationPair,
    StockRecord,
    efficiency_gain,
)


ITEM_CODE_KEYS = ("ITEM_CODE", "item_code", "itemCode", "Item Code")
STAGE_KEYS = ("STAGE", "stage", "Stage")
PROCESS_KEYS = ("PROCESS", "process", "PROCESS_CODE", "process_code")
QUANTITY_KEYS = ("QUANTITY", "quantity", "QTY", "qty")
URGENCY_KEYS = ("URGENCY", "urgency_tag", "urgency", "URGENCY_TAG")
LEAD_ESTIMATE_KEYS = ("LEAD_TIME_ESTIMATE", "lead_time_estimate", "leadTimeEstimateDays", "lead_time_estimate_days")

SERIAL_KEYS = ("LEAD_TIME_SERIAL", "current_days", "currentDays", "serial_lead_time_days")
PARALLEL_KEYS = ("LEAD_TIME_PARALLELIZED", "optimized_days", "optimizedDays", "parallelized_lead_time_days")
CATEGORY_KEYS = ("CATEGORY", "category")
PRIORITY_KEYS = ("PRIORITY", "priority")

ADEQUACY_KEYS = ("STOCK_ADEQUACY", "stock_adequacy", "stockAdequacy")

SEQUENTIAL_KEYS = ("SEQUENTIAL_TIME_DAYS", "sequential_time_days", "sequentialTimeDays")
PARALLEL_TIME_KEYS = ("PARALLEL_TIME_DAYS", "parallel_time_days", "parallelTimeDays")
CAN_PARALLEL_KEYS = ("CAN_RUN_PARALLEL", "can_run_parallel", "canRunParallel")
PROCESS_CONFLICT_KEYS = ("PROCESS_CONFLICTS", "process_conflicts", "processConflicts")
MACHINE_CONFLICT_KEYS = ("MACHINE_CONFLICTS", "machine_conflicts", "machineConflicts")

NA_TOKENS = {"nan", "none", "null", "<na>", "na", "n/a", "unknown"}

ADEQUACY_ALIASES = {
    "OUTOFSTOCK": "OutOfStock",
    "SHORTAGE": "Shortage",
    "ADEQUATE": "Adequate",
    "EXCESS": "Excess",
}

PRIORITY_ALIASES = {"HIGH": "High", "MEDIUM": "Medium", "LOW": "Low"}


@dataclass(frozen=True)
class NormalizedCollection:
    records: Tuple[Any, ...]
    dropped: int = 0


def first_present(row: Mapping[str, Any], keys: Sequence[str]) -> Any:
    """Value of the first alias present and not blank, else ``None``."""
    for key in keys:
        if key in row:
            value = row[key]
            if value is None:
                continue
            if isinstance(value, str) and not value.strip():
                continue
            return value
    return None


def safe_number(value: Any) -> float:
    if value is None or isinstance(value, bool):
        return 0.0
    try:
        out = float(str(value).strip().replace(",", ""))
    except (TypeError, ValueError):
        return 0.0
    if math.isnan(out) or math.isinf(out):
        return 0.0
    return out


def non_negative(value: Any) -> float:
    return max(safe_number(value), 0.0)


def safe_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return safe_number(value) != 0
    if isinstance(value, str):
        return value.strip().lower() in {"true", "yes", "y", "1"}
    return False


def normalize_code(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, float) and math.isnan(value):
        return None
    s = str(value).strip()
    if not s or s.lower() in NA_TOKENS:
        return None
    return s


def normalize_enum(value: Any, vocabulary: Iterable[str]) -> str:
    if value is None:
        return UNKNOWN
    token = str(value).strip().upper().replace(" ", "_").replace("-", "_")
    return token if token in set(vocabulary) else UNKNOWN


def normalize_adequacy(value: Any) -> str:
    if value is None:
        return UNKNOWN
    token = "".join(ch for ch in str(value).upper() if ch.isalpha())
    return ADEQUACY_ALIASES.get(token, UNKNOWN)


def split_conflicts(value: Any) -> Tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, (list, tuple)):
        parts = [str(v) for v in value]
    else:
        parts = str(value).split(",")
    return tuple(p.strip() for p in parts if p is not None and p.strip() and p.strip().lower() not in NA_TOKENS)


def derive_priority(efficiency_pct: float) -> str:
    if efficiency_pct > 25:
        return "High"
    if efficiency_pct > 15:
        return "Medium"
    return "Low"


def normalize_job(row: Mapping[str, Any]) -> Optional[JobRecord]:
    item_code = normalize_code(first_present(row, ITEM_CODE_KEYS))
    if item_code is None:
        return None
    return JobRecord(
        item_code=item_code,
        stage=normalize_enum(first_present(row, STAGE_KEYS), STAGES),
        process=normalize_code(first_present(row, PROCESS_KEYS)) or "",
        quantity=non_negative(first_present(row, QUANTITY_KEYS)),
        urgency=normalize_enum(first_present(row, URGENCY_KEYS), URGENCIES),
        lead_time_estimate_days=non_negative(first_present(row, LEAD_ESTIMATE_KEYS)),
    )


def normalize_lead_time(row: Mapping[str, Any]) -> Optional[LeadTimeRecord]:
    item_code = normalize_code(first_present(row, ITEM_CODE_KEYS))
    if item_code is None:
        return None
    serial = non_negative(first_present(row, SERIAL_KEYS))
    # parallelized can never exceed serial; savings clamp to zero
    parallel = min(non_negative(first_present(row, PARALLEL_KEYS)), serial)

    raw_priority = first_present(row, PRIORITY_KEYS)
    priority = PRIORITY_ALIASES.get(str(raw_priority).strip().upper()) if raw_priority is not None else None
    if priority is None:
        priority = derive_priority(efficiency_gain(serial, parallel))

    return LeadTimeRecord(
        item_code=item_code,
        serial_lead_time_days=serial,
        parallelized_lead_time_days=parallel,
        category=normalize_code(first_present(row, CATEGORY_KEYS)) or "General",
        priority=priority,
    )


def normalize_stock(row: Mapping[str, Any]) -> Optional[StockRecord]:
    item_code = normalize_code(first_present(row, ITEM_CODE_KEYS))
    if item_code is None:
        return None
    return StockRecord(item_code=item_code, stock_adequacy=normalize_adequacy(first_present(row, ADEQUACY_KEYS)))


def _pair_item(row: Mapping[str, Any], n: int, letter: str) -> Optional[PairItem]:
    code = normalize_code(first_present(row, (f"ITEM_{n}", f"item_{n}", f"item{letter}", f"item_{letter.lower()}")))
    if code is None:
        return None
    return PairItem(
        item_code=code,
        urgency=normalize_enum(first_present(row, (f"ITEM_{n}_URGENCY", f"item_{n}_urgency", f"item{letter}Urgency")), URGENCIES),
        process=normalize_code(first_present(row, (f"ITEM_{n}_PROCESSES", f"ITEM_{n}_PROCESS", f"item_{n}_process"))) or "",
        machines=normalize_code(first_present(row, (f"ITEM_{n}_MACHINES", f"item_{n}_machines", f"item{letter}Machines"))) or "",
    )


def normalize_pair(row: Mapping[str, Any]) -> Optional[ParallelizationPair]:
    item_a = _pair_item(row, 1, "A")
    item_b = _pair_item(row, 2, "B")
    if item_a is None or item_b is None:
        return None
    sequential = non_negative(first_present(row, SEQUENTIAL_KEYS))
    parallel = min(non_negative(first_present(row, PARALLEL_TIME_KEYS)), sequential)
    can_run = safe_bool(first_present(row, CAN_PARALLEL_KEYS))
    return ParallelizationPair(
        item_a=item_a,
        item_b=item_b,
        sequential_time_days=sequential,
        parallel_time_days=parallel,
        can_run_parallel=can_run,
        process_conflicts=split_conflicts(first_present(row, PROCESS_CONFLICT_KEYS)),
        machine_conflicts=split_conflicts(first_present(row, MACHINE_CONFLICT_KEYS)),
    )


NORMALIZERS: Dict[str, Callable[[Mapping[str, Any]], Any]] = {
    "jobs": normalize_job,
    "lead_times": normalize_lead_time,
    "stock": normalize_stock,
    "pairs": normalize_pair,
}


def unwrap_rows(body: Any, *keys: str) -> List[Any]:
    """Pull a row list out of the envelopes the backend uses.

    Accepts a bare list or a dict carrying the list under ``data`` (or any
    of ``keys``, tried in order, dotted for nesting).
    """
    if isinstance(body, list):
        return body
    if not isinstance(body, Mapping):
        return []
    for key in keys + ("data",):
        node: Any = body
        for part in key.split("."):
            node = node.get(part) if isinstance(node, Mapping) else None
        if isinstance(node, list):
            return node
    return []


def normalize_collection(kind: str, rows: Any) -> NormalizedCollection:
    normalizer = NORMALIZERS[kind]
    if not isinstance(rows, list):
        return NormalizedCollection(records=())
    records = []
    dropped = 0
    seen = set()
    for row in rows:
        record = normalizer(row) if isinstance(row, Mapping) else None
        if record is None:
            dropped += 1
            continue
        key = getattr(record, "key", None)
        if key is not None:
            if key in seen:
                dropped += 1
                continue
            seen.add(key)
        records.append(record)
    return NormalizedCollection(records=tuple(records), dropped=dropped)
