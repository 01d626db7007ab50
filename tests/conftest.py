"""
Pytest configuration and shared fixtures for all tests
Fake clock, in-memory storage and a scriptable fake ETL backend
"""

from __future__ import annotations

import copy
from typing import Any, Dict, List

import httpx
import pytest

from mfgsync.aggregator import Aggregator
from mfgsync.cache import MemoryKeyValueStore, PipelineStateStore, SnapshotCache
from mfgsync.client import DashboardApi
from mfgsync.controller import PipelineController
from mfgsync.settings import SyncSettings


START_MS = 1_700_000_000_000
API_BASE = "http://backend.test"


class FakeClock:
    """Millisecond clock that only moves when told to."""

    def __init__(self, now: int = START_MS) -> None:
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


class FakeBackend:
    """MockTransport handler serving canned bodies per path.

    A route may hold a JSON body, an ``int`` status code or an exception
    instance to raise (simulating an unreachable host).
    """

    def __init__(self, routes: Dict[str, Any]) -> None:
        self.routes = routes
        self.calls: List[httpx.Request] = []

    def paths_called(self) -> List[str]:
        return [r.url.path for r in self.calls]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request)
        route = self.routes.get(request.url.path, 404)
        if isinstance(route, Exception):
            raise route
        if isinstance(route, int):
            return httpx.Response(route, json={"detail": "error"})
        return httpx.Response(200, json=route)

    def fail(self, path: str) -> None:
        self.routes[path] = httpx.ConnectError("connection refused")

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


# ===== SHARED BACKEND PAYLOADS =====

def backend_routes() -> Dict[str, Any]:
    """
    Response bodies shaped like the ETL backend:
    - summary wraps counts and the job list under "summary"
    - lead-time rows use the upper-case ETL column names
    - one stock row uses the spaced "Out of Stock" spelling
    - one pair is blocked by a machine conflict
    """
    return copy.deepcopy(
        {
            "/analysis_status/": {
                "status": "success",
                "completion_stats": {"etl": {"completion_percentage": 100}},
            },
            "/dashboard-summary": {
                "summary": {
                    "jobs": {
                        "total": 3,
                        "by_stage": {"WIP_RAW": 2, "RFM": 1},
                        "by_urgency": {"CRITICAL": 1, "HIGH": 1, "LOW": 1},
                        "all_jobs": [
                            {"ITEM_CODE": "A100", "STAGE": "WIP_RAW", "PROCESS": "CUT", "QUANTITY": 10, "URGENCY": "CRITICAL", "LEAD_TIME_ESTIMATE": 12},
                            {"ITEM_CODE": "B200", "STAGE": "WIP_RAW", "PROCESS": "WELD", "QUANTITY": "5", "URGENCY": "high", "LEAD_TIME_ESTIMATE": 4},
                            {"ITEM_CODE": "C300", "STAGE": "RFM", "PROCESS": "PAINT", "QUANTITY": 7, "URGENCY": "LOW", "LEAD_TIME_ESTIMATE": 8},
                        ],
                    },
                    "lead_time": {
                        "total_items": 2,
                        "avg_serial_time": 15.0,
                        "avg_parallel_time": 9.5,
                        "total_time_savings": 11.0,
                        "avg_efficiency_gain": 35.0,
                    },
                    "stock": {"out_of_stock": 1, "shortage": 0, "adequate": 1, "excess": 0},
                }
            },
            "/lead-time": {
                "data": [
                    {"ITEM_CODE": "A100", "LEAD_TIME_SERIAL": 10, "LEAD_TIME_PARALLELIZED": 7},
                    {"ITEM_CODE": "B200", "LEAD_TIME_SERIAL": 20, "LEAD_TIME_PARALLELIZED": 12},
                ],
                "total_items": 2,
            },
            "/stock-vs-demand": {
                "data": [
                    {"ITEM_CODE": "A100", "STOCK_ADEQUACY": "Out of Stock"},
                    {"ITEM_CODE": "B200", "STOCK_ADEQUACY": "Adequate"},
                ]
            },
            "/optimized-parallelization": {
                "data": [
                    {
                        "ITEM_1": "A100",
                        "ITEM_2": "B200",
                        "ITEM_1_URGENCY": "CRITICAL",
                        "ITEM_2_URGENCY": "HIGH",
                        "SEQUENTIAL_TIME_DAYS": 30,
                        "PARALLEL_TIME_DAYS": 20,
                        "CAN_RUN_PARALLEL": True,
                    },
                    {
                        "ITEM_1": "A100",
                        "ITEM_2": "C300",
                        "ITEM_1_URGENCY": "CRITICAL",
                        "ITEM_2_URGENCY": "LOW",
                        "SEQUENTIAL_TIME_DAYS": 16,
                        "PARALLEL_TIME_DAYS": 10,
                        "CAN_RUN_PARALLEL": False,
                        "MACHINE_CONFLICTS": "M1,M2",
                    },
                ],
                "summary": {"total_pairs_analyzed": 2},
            },
        }
    )


# ===== FIXTURES =====

@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return MemoryKeyValueStore()


@pytest.fixture
def settings():
    return SyncSettings(api_base=API_BASE)


@pytest.fixture
def backend():
    return FakeBackend(backend_routes())


@pytest.fixture
def api(settings, backend):
    client = httpx.AsyncClient(base_url=settings.api_base, transport=backend.transport())
    return DashboardApi(settings, client=client)


@pytest.fixture
def cache(store, clock):
    return SnapshotCache(store, ttl_ms=300_000, clock=clock)


@pytest.fixture
def make_controller(api, store, clock, cache):
    """Factory so each test picks its own auto-refresh setting."""

    def _make(auto_refresh: bool = False) -> PipelineController:
        return PipelineController(
            Aggregator(api, clock=clock),
            cache,
            PipelineStateStore(store),
            refresh_period_ms=300_000,
            auto_refresh=auto_refresh,
            clock=clock,
        )

    return _make
