from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Optional, Tuple


UNKNOWN = "UNKNOWN"

STAGES: Tuple[str, ...] = ("WIP_RAW", "WIP_MC", "WIP_DM", "RFM", "RFD")
URGENCIES: Tuple[str, ...] = ("CRITICAL", "HIGH", "MEDIUM", "LOW")
STOCK_ADEQUACIES: Tuple[str, ...] = ("OutOfStock", "Shortage", "Adequate", "Excess")
PRIORITIES: Tuple[str, ...] = ("High", "Medium", "Low")


def efficiency_gain(serial: float, parallel: float) -> float:
    """Percentage of ``serial`` saved by running in ``parallel``; 0 when serial is 0."""
    if serial <= 0:
        return 0.0
    return max(serial - parallel, 0.0) / serial * 100.0


@dataclass(frozen=True)
class JobRecord:
    item_code: str
    stage: str
    process: str
    quantity: float = 0.0
    urgency: str = UNKNOWN
    lead_time_estimate_days: float = 0.0

    @property
    def key(self) -> Tuple[str, str, str]:
        return (self.item_code, self.stage, self.process)


@dataclass(frozen=True)
class LeadTimeRecord:
    item_code: str
    serial_lead_time_days: float = 0.0
    parallelized_lead_time_days: float = 0.0
    category: str = "General"
    priority: str = "Low"

    @property
    def time_saved_days(self) -> float:
        return max(self.serial_lead_time_days - self.parallelized_lead_time_days, 0.0)

    @property
    def efficiency_gain_pct(self) -> float:
        return efficiency_gain(self.serial_lead_time_days, self.parallelized_lead_time_days)


@dataclass(frozen=True)
class PairItem:
    item_code: str
    urgency: str = UNKNOWN
    process: str = ""
    machines: str = ""


@dataclass(frozen=True)
class ParallelizationPair:
    item_a: PairItem
    item_b: PairItem
    sequential_time_days: float = 0.0
    parallel_time_days: float = 0.0
    can_run_parallel: bool = False
    process_conflicts: Tuple[str, ...] = ()
    machine_conflicts: Tuple[str, ...] = ()

    @property
    def key(self) -> Tuple[str, str]:
        a, b = sorted((self.item_a.item_code, self.item_b.item_code))
        return (a, b)

    @property
    def time_saved_days(self) -> float:
        return max(self.sequential_time_days - self.parallel_time_days, 0.0)

    @property
    def efficiency_gain_pct(self) -> float:
        return efficiency_gain(self.sequential_time_days, self.parallel_time_days)


@dataclass(frozen=True)
class StockRecord:
    item_code: str
    stock_adequacy: str = UNKNOWN


@dataclass(frozen=True)
class LeadTimeSummary:
    total_items: int = 0
    avg_serial_time: float = 0.0
    avg_parallel_time: float = 0.0
    total_time_savings: float = 0.0
    avg_efficiency_gain: float = 0.0


@dataclass(frozen=True)
class SummaryCounters:
    by_stage: Dict[str, int] = field(default_factory=dict)
    by_urgency: Dict[str, int] = field(default_factory=dict)
    by_stock_adequacy: Dict[str, int] = field(default_factory=dict)
    lead_time: LeadTimeSummary = field(default_factory=LeadTimeSummary)


@dataclass(frozen=True)
class DashboardSnapshot:
    jobs: Tuple[JobRecord, ...] = ()
    lead_times: Tuple[LeadTimeRecord, ...] = ()
    stock: Tuple[StockRecord, ...] = ()
    pairs: Tuple[ParallelizationPair, ...] = ()
    counters: SummaryCounters = field(default_factory=SummaryCounters)
    captured_at: int = 0
    degraded_endpoints: Tuple[str, ...] = ()
    dropped: Dict[str, int] = field(default_factory=dict)

    @property
    def is_partial(self) -> bool:
        return bool(self.degraded_endpoints)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "DashboardSnapshot":
        """Rebuild a snapshot written by :meth:`to_dict`.

        Raises ``KeyError``/``TypeError``/``ValueError`` on payloads of the wrong shape.
        """
        counters = raw["counters"]
        return cls(
            jobs=tuple(JobRecord(**r) for r in raw["jobs"]),
            lead_times=tuple(LeadTimeRecord(**r) for r in raw["lead_times"]),
            stock=tuple(StockRecord(**r) for r in raw["stock"]),
            pairs=tuple(
                ParallelizationPair(
                    item_a=PairItem(**p["item_a"]),
                    item_b=PairItem(**p["item_b"]),
                    sequential_time_days=float(p["sequential_time_days"]),
                    parallel_time_days=float(p["parallel_time_days"]),
                    can_run_parallel=bool(p["can_run_parallel"]),
                    process_conflicts=tuple(p.get("process_conflicts") or ()),
                    machine_conflicts=tuple(p.get("machine_conflicts") or ()),
                )
                for p in raw["pairs"]
            ),
            counters=SummaryCounters(
                by_stage={str(k): int(v) for k, v in counters["by_stage"].items()},
                by_urgency={str(k): int(v) for k, v in counters["by_urgency"].items()},
                by_stock_adequacy={str(k): int(v) for k, v in counters["by_stock_adequacy"].items()},
                lead_time=LeadTimeSummary(**counters["lead_time"]),
            ),
            captured_at=int(raw["captured_at"]),
            degraded_endpoints=tuple(raw.get("degraded_endpoints") or ()),
            dropped={str(k): int(v) for k, v in (raw.get("dropped") or {}).items()},
        )


@dataclass(frozen=True)
class PipelineState:
    etl_completed: bool = False
    last_updated: Optional[int] = None
