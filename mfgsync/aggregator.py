from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Sequence, Tuple

from mfgsync.cache import Clock, system_clock
from mfgsync.client import DashboardApi, HealthReport
from mfgsync.errors import BackendEmpty, TotalRefreshFailure, TransportError
from mfgsync.metrics import lead_time_metrics
from mfgsync.models import (
    STAGES,
    URGENCIES,
    DashboardSnapshot,
    LeadTimeSummary,
    SummaryCounters,
)
from mfgsync.normalize import normalize_adequacy, normalize_collection, normalize_enum, safe_number, unwrap_rows


logger = logging.getLogger(__name__)


class RefreshOutcome(str, enum.Enum):
    FULL = "full"
    PARTIAL = "partial"


@dataclass(frozen=True)
class EndpointSpec:
    name: str
    fetch: Callable[[DashboardApi], Awaitable[Any]]
    fallback: Any = None


DEFAULT_ENDPOINTS: Tuple[EndpointSpec, ...] = (
    EndpointSpec("summary", lambda api: api.summary(), fallback=None),
    EndpointSpec("lead_times", lambda api: api.lead_times(), fallback={"data": []}),
    EndpointSpec("stock", lambda api: api.stock_status(), fallback={"data": []}),
    EndpointSpec("pairs", lambda api: api.parallelization_pairs(), fallback={"data": []}),
)


@dataclass(frozen=True)
class RefreshResult:
    outcome: RefreshOutcome
    snapshot: DashboardSnapshot
    failures: Dict[str, str] = field(default_factory=dict)
    health: Optional[HealthReport] = None


STOCK_SUMMARY_KEYS = {
    "out_of_stock": "OutOfStock",
    "shortage": "Shortage",
    "adequate": "Adequate",
    "excess": "Excess",
}


def _count_map(raw: Any, canonical: Callable[[Any], str]) -> Dict[str, int]:
    if not isinstance(raw, Mapping):
        return {}
    out: Dict[str, int] = {}
    for key, value in raw.items():
        name = canonical(key)
        out[name] = out.get(name, 0) + int(max(safe_number(value), 0))
    return out


def _tally(values: Sequence[str]) -> Dict[str, int]:
    out: Dict[str, int] = {}
    for v in values:
        out[v] = out.get(v, 0) + 1
    return out


def summary_section(body: Any) -> Dict[str, Any]:
    if not isinstance(body, Mapping):
        return {}
    inner = body.get("summary")
    return dict(inner) if isinstance(inner, Mapping) else dict(body)


def build_counters(summary: Mapping[str, Any], snapshot_parts: Mapping[str, Sequence[Any]]) -> SummaryCounters:
    """Counters as reported upstream; derived from the collections only when absent."""
    jobs_section = summary.get("jobs") if isinstance(summary.get("jobs"), Mapping) else {}
    by_stage = _count_map(jobs_section.get("by_stage"), lambda k: normalize_enum(k, STAGES))
    by_urgency = _count_map(jobs_section.get("by_urgency"), lambda k: normalize_enum(k, URGENCIES))
    if not jobs_section:
        jobs = snapshot_parts["jobs"]
        by_stage = _tally([j.stage for j in jobs])
        by_urgency = _tally([j.urgency for j in jobs])

    stock_section = summary.get("stock")
    if isinstance(stock_section, Mapping) and stock_section:
        by_adequacy = _count_map(stock_section, lambda k: STOCK_SUMMARY_KEYS.get(str(k).lower(), normalize_adequacy(k)))
    else:
        by_adequacy = _tally([s.stock_adequacy for s in snapshot_parts["stock"]])

    lt = summary.get("lead_time")
    if isinstance(lt, Mapping) and lt:
        lead_time = LeadTimeSummary(
            total_items=int(max(safe_number(lt.get("total_items")), 0)),
            avg_serial_time=safe_number(lt.get("avg_serial_time")),
            avg_parallel_time=safe_number(lt.get("avg_parallel_time")),
            total_time_savings=safe_number(lt.get("total_time_savings")),
            avg_efficiency_gain=safe_number(lt.get("avg_efficiency_gain")),
        )
    else:
        derived = lead_time_metrics(snapshot_parts["lead_times"])
        lead_time = LeadTimeSummary(
            total_items=derived["count"],
            avg_serial_time=derived["avg_serial_time"],
            avg_parallel_time=derived["avg_parallel_time"],
            total_time_savings=derived["total_time_savings"],
            avg_efficiency_gain=derived["avg_efficiency_gain"],
        )
    return SummaryCounters(by_stage=by_stage, by_urgency=by_urgency, by_stock_adequacy=by_adequacy, lead_time=lead_time)


def build_snapshot(bodies: Mapping[str, Any], *, captured_at: int, degraded: Sequence[str] = ()) -> DashboardSnapshot:
    summary = summary_section(bodies.get("summary"))
    parts = {
        "jobs": normalize_collection("jobs", unwrap_rows(summary, "jobs.all_jobs", "all_jobs")),
        "lead_times": normalize_collection("lead_times", unwrap_rows(bodies.get("lead_times"), "items")),
        "stock": normalize_collection("stock", unwrap_rows(bodies.get("stock"), "items")),
        "pairs": normalize_collection("pairs", unwrap_rows(bodies.get("pairs"), "pairs")),
    }
    dropped = {name: coll.dropped for name, coll in parts.items() if coll.dropped}
    if dropped:
        logger.info("Dropped records without identity: %s", dropped)
    records = {name: coll.records for name, coll in parts.items()}
    return DashboardSnapshot(
        jobs=records["jobs"],
        lead_times=records["lead_times"],
        stock=records["stock"],
        pairs=records["pairs"],
        counters=build_counters(summary, records),
        captured_at=captured_at,
        degraded_endpoints=tuple(sorted(degraded)),
        dropped=dropped,
    )


class Aggregator:
    def __init__(
        self,
        api: DashboardApi,
        *,
        endpoints: Sequence[EndpointSpec] = DEFAULT_ENDPOINTS,
        clock: Clock = system_clock,
    ) -> None:
        self.api = api
        self.endpoints = tuple(endpoints)
        self.clock = clock

    async def probe(self) -> HealthReport:
        try:
            return await self.api.health()
        except TransportError as exc:
            raise TotalRefreshFailure(f"backend unreachable: {exc}") from exc

    async def refresh(self) -> RefreshResult:
        """Fetch every endpoint concurrently and assemble one snapshot.

        Raises ``TotalRefreshFailure`` when the health probe fails or when no
        endpoint returned data, ``BackendEmpty`` when the backend reports no
        processed ETL output.
        """
        captured_at = self.clock()
        health = await self.probe()
        if not health.has_data:
            raise BackendEmpty("backend reports no processed ETL data")

        results = await asyncio.gather(*(spec.fetch(self.api) for spec in self.endpoints), return_exceptions=True)

        bodies: Dict[str, Any] = {}
        failures: Dict[str, str] = {}
        for spec, result in zip(self.endpoints, results):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                logger.warning("Endpoint %s failed, using fallback: %s", spec.name, result)
                failures[spec.name] = str(result)
                bodies[spec.name] = spec.fallback
            else:
                bodies[spec.name] = result

        if self.endpoints and len(failures) == len(self.endpoints):
            raise TotalRefreshFailure(f"all endpoints failed: {', '.join(sorted(failures))}")

        snapshot = build_snapshot(bodies, captured_at=captured_at, degraded=list(failures))
        outcome = RefreshOutcome.PARTIAL if failures else RefreshOutcome.FULL
        return RefreshResult(outcome=outcome, snapshot=snapshot, failures=failures, health=health)
