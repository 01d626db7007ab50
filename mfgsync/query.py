"""Search, filter, sort and page-window slicing for the dashboard views.

Filters are split into two tiers. SERVER filters are sent to the backend
and a change re-issues the request; CLIENT filters only narrow whatever
rows are already loaded. Only the server-paged lead-time source has
SERVER filters (``stage`` and ``urgency``); every in-memory view applies
all of its filters on the client.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import math
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

import pandas as pd

from mfgsync.client import DashboardApi
from mfgsync.errors import RequestSuperseded, UnsupportedFilter
from mfgsync.frames import POSITION_COLUMN, flatten_record, records_frame
from mfgsync.normalize import normalize_collection, safe_number, unwrap_rows
from mfgsync.settings import MAX_PAGE_SIZE


logger = logging.getLogger(__name__)

ALL_TOKENS = {"", "all", "all categories", "all priorities", "all stages", "all urgencies"}


class FilterTier(str, enum.Enum):
    SERVER = "server"
    CLIENT = "client"


@dataclass(frozen=True)
class ViewDef:
    name: str
    search_fields: Tuple[str, ...]
    equals_fields: Dict[str, Tuple[str, ...]]
    minimum_fields: Dict[str, str]
    sort_keys: Dict[str, str]
    default_sort: str
    default_descending: bool = True
    server_filters: Tuple[str, ...] = ()


VIEWS: Dict[str, ViewDef] = {
    "jobs": ViewDef(
        name="jobs",
        search_fields=("item_code", "process"),
        equals_fields={"stage": ("stage",), "urgency": ("urgency",)},
        minimum_fields={"min_quantity": "quantity"},
        sort_keys={
            "item_code": "item_code",
            "stage": "stage",
            "quantity": "quantity",
            "urgency": "urgency",
            "lead_time": "lead_time_estimate_days",
        },
        default_sort="lead_time",
    ),
    "lead_times": ViewDef(
        name="lead_times",
        search_fields=("item_code",),
        equals_fields={"category": ("category",), "priority": ("priority",)},
        minimum_fields={"min_efficiency": "efficiency_gain_pct", "min_time_saved": "time_saved_days"},
        sort_keys={
            "item_code": "item_code",
            "current": "serial_lead_time_days",
            "optimized": "parallelized_lead_time_days",
            "savings": "time_saved_days",
            "efficiency": "efficiency_gain_pct",
        },
        default_sort="savings",
        server_filters=("stage", "urgency"),
    ),
    "pairs": ViewDef(
        name="pairs",
        search_fields=("item_a_code", "item_b_code"),
        equals_fields={"urgency": ("item_a_urgency", "item_b_urgency")},
        minimum_fields={"min_efficiency": "efficiency_gain_pct", "min_time_saved": "time_saved_days"},
        sort_keys={
            "item_a": "item_a_code",
            "item_b": "item_b_code",
            "sequential": "sequential_time_days",
            "parallel": "parallel_time_days",
            "savings": "time_saved_days",
            "efficiency": "efficiency_gain_pct",
        },
        default_sort="efficiency",
    ),
    "stock": ViewDef(
        name="stock",
        search_fields=("item_code",),
        equals_fields={"stock_adequacy": ("stock_adequacy",)},
        minimum_fields={},
        sort_keys={"item_code": "item_code", "stock_adequacy": "stock_adequacy"},
        default_sort="item_code",
        default_descending=False,
    ),
}


def filter_tiers(view: str, *, server_paged: bool = True) -> Dict[str, FilterTier]:
    """Which tier handles each filter of ``view``.

    SERVER filters belong to the server-paged source only;
    ``server_paged=False`` leaves them out.
    """
    vd = VIEWS[view]
    tiers = {"search": FilterTier.CLIENT}
    for name in list(vd.equals_fields) + list(vd.minimum_fields):
        tiers[name] = FilterTier.CLIENT
    if server_paged:
        for name in vd.server_filters:
            tiers[name] = FilterTier.SERVER
    return tiers


FILTER_TIERS: Dict[str, Dict[str, FilterTier]] = {view: filter_tiers(view) for view in VIEWS}


@dataclass(frozen=True)
class QuerySpec:
    view: str
    search: str = ""
    equals: Dict[str, Tuple[str, ...]] = field(default_factory=dict)
    minimums: Dict[str, float] = field(default_factory=dict)
    sort_key: str = ""
    descending: bool = True
    page: int = 1
    page_size: int = 25
    include_blocked: bool = False

    def server_params(self) -> Dict[str, Optional[str]]:
        vd = VIEWS[self.view]
        return {name: (self.equals.get(name) or (None,))[0] for name in vd.server_filters}


@dataclass(frozen=True)
class QueryPage:
    items: Tuple[Any, ...]
    total: int
    page: int
    page_size: int
    page_count: int

    def rows(self) -> List[Dict[str, Any]]:
        return [flatten_record(r) for r in self.items]


def _as_values(value: Any) -> Tuple[str, ...]:
    if value is None:
        return ()
    values = value if isinstance(value, (list, tuple, set)) else [value]
    out = []
    for v in values:
        if v is None:
            continue
        s = str(v).strip()
        if s.lower() in ALL_TOKENS:
            continue
        out.append(s)
    return tuple(out)


def _as_int(value: Any, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def normalize_query(
    raw: Mapping[str, Any],
    view: str,
    *,
    default_page_size: int = 25,
    server_paged: bool = False,
) -> QuerySpec:
    """Clean up raw view parameters.

    Raises ``UnsupportedFilter`` when a SERVER filter is set but the query
    is not for the server-paged source.
    """
    vd = VIEWS[view]

    equals: Dict[str, Tuple[str, ...]] = {}
    for name in vd.equals_fields:
        values = _as_values(raw.get(name))
        if values:
            equals[name] = values
    for name in vd.server_filters:
        values = _as_values(raw.get(name))
        if not values:
            continue
        if not server_paged:
            raise UnsupportedFilter(f"{name} filter on {view} requires server_paged")
        equals[name] = values

    minimums: Dict[str, float] = {}
    for name in vd.minimum_fields:
        if raw.get(name) is not None:
            threshold = safe_number(raw.get(name))
            if threshold > 0:
                minimums[name] = threshold

    sort_key = str(raw.get("sort_key") or vd.default_sort)
    if sort_key not in vd.sort_keys:
        sort_key = vd.default_sort

    direction = str(raw.get("sort_direction") or "").lower()
    descending = vd.default_descending if direction not in {"asc", "desc"} else direction == "desc"

    page_size = max(1, min(MAX_PAGE_SIZE, _as_int(raw.get("page_size"), default_page_size)))
    page = max(1, _as_int(raw.get("page"), 1))

    return QuerySpec(
        view=view,
        search=str(raw.get("search") or "").strip(),
        equals=equals,
        minimums=minimums,
        sort_key=sort_key,
        descending=descending,
        page=page,
        page_size=page_size,
        include_blocked=bool(raw.get("include_blocked", False)),
    )


def _sort_key(series: pd.Series) -> pd.Series:
    if pd.api.types.is_numeric_dtype(series):
        return series
    return series.astype(str).str.lower()


def _ordered_positions(records: Sequence[Any], spec: QuerySpec) -> List[int]:
    vd = VIEWS[spec.view]
    df = records_frame(records)
    if df.empty:
        return []

    mask = pd.Series(True, index=df.index)
    if spec.view == "pairs" and not spec.include_blocked:
        mask &= df["can_run_parallel"].astype(bool)

    if spec.search:
        needle = spec.search.lower()
        hit = pd.Series(False, index=df.index)
        for col in vd.search_fields:
            hit |= df[col].astype(str).str.lower().str.contains(needle, regex=False, na=False)
        mask &= hit

    for name, values in spec.equals.items():
        columns = vd.equals_fields.get(name)
        if not columns:
            continue
        wanted = {v.lower() for v in values}
        hit = pd.Series(False, index=df.index)
        for col in columns:
            hit |= df[col].astype(str).str.lower().isin(wanted)
        mask &= hit

    for name, threshold in spec.minimums.items():
        col = vd.minimum_fields.get(name)
        if col:
            mask &= df[col] >= threshold

    filtered = df[mask]
    col = vd.sort_keys.get(spec.sort_key, vd.sort_keys[vd.default_sort])
    # insertion order breaks ties
    filtered = filtered.sort_values(
        by=[col, POSITION_COLUMN],
        ascending=[not spec.descending, True],
        kind="mergesort",
        key=_sort_key,
    )
    return [int(pos) for pos in filtered[POSITION_COLUMN]]


def select_records(records: Sequence[Any], spec: QuerySpec) -> Tuple[Any, ...]:
    """Every record matching ``spec``, in sort order, without paging."""
    return tuple(records[pos] for pos in _ordered_positions(records, spec))


def run_query(records: Sequence[Any], spec: QuerySpec) -> QueryPage:
    """Filter, sort and slice ``records``; same inputs give the same page."""
    positions = _ordered_positions(records, spec)
    page_size = max(1, spec.page_size)
    total = len(positions)
    start = (spec.page - 1) * page_size
    items = tuple(records[pos] for pos in positions[start : start + page_size])
    return QueryPage(
        items=items,
        total=total,
        page=spec.page,
        page_size=page_size,
        page_count=int(math.ceil(total / page_size)),
    )


@dataclass(frozen=True)
class ServerPage:
    page: QueryPage
    server_total: int
    fetched: bool

    @property
    def page_count(self) -> int:
        return self.page.page_count


class ServerPagedLeadTimes:
    """Lead-time rows delivered one server page at a time.

    Page, page size and SERVER filters are part of the request; changing any
    of them cancels the in-flight request and issues a new one. CLIENT
    filters and sorting apply to the rows of the loaded page only.
    """

    def __init__(self, api: DashboardApi) -> None:
        self.api = api
        self.view = "lead_times"
        self._rows: Tuple[Any, ...] = ()
        self._server_total = 0
        self._loaded_key: Optional[Tuple[Any, ...]] = None
        self._task: Optional[asyncio.Task] = None
        self._seq = 0
        self._closed = False
        self.requests_issued = 0

    @staticmethod
    def _request_key(spec: QuerySpec) -> Tuple[Any, ...]:
        params = spec.server_params()
        return (spec.page, spec.page_size, params.get("stage"), params.get("urgency"))

    async def apply(self, spec: QuerySpec) -> ServerPage:
        if spec.view != self.view:
            raise ValueError(f"expected a {self.view} query, got {spec.view}")
        if self._closed:
            raise RequestSuperseded("view closed")
        key = self._request_key(spec)
        fetched = False
        if key == self._loaded_key:
            # a pending load for another key must not land after this answer
            self._cancel_pending()
        else:
            await self._load(key)
            fetched = True
        local = replace(spec, page=1, page_size=max(len(self._rows), 1))
        result = run_query(self._rows, local)
        page = QueryPage(
            items=result.items,
            total=result.total,
            page=spec.page,
            page_size=spec.page_size,
            page_count=int(math.ceil(self._server_total / spec.page_size)),
        )
        return ServerPage(page=page, server_total=self._server_total, fetched=fetched)

    def _cancel_pending(self) -> None:
        if self._task is not None and not self._task.done():
            self._seq += 1
            self._task.cancel()
        self._task = None

    async def _load(self, key: Tuple[Any, ...]) -> None:
        self._cancel_pending()
        self._seq += 1
        seq = self._seq
        page, page_size, stage, urgency = key
        task = asyncio.get_running_loop().create_task(
            self.api.lead_times(page=page, page_size=page_size, stage=stage, urgency=urgency)
        )
        self._task = task
        self.requests_issued += 1
        logger.debug("Requesting lead-time page %s (size %s, stage=%s, urgency=%s)", page, page_size, stage, urgency)
        try:
            body = await task
        except asyncio.CancelledError:
            if task.cancelled() and (seq != self._seq or self._closed):
                raise RequestSuperseded(f"lead-time request {seq} superseded") from None
            raise
        if seq != self._seq or self._closed:
            raise RequestSuperseded(f"lead-time request {seq} superseded")

        rows = unwrap_rows(body, "items")
        collection = normalize_collection("lead_times", rows)
        total = len(rows)
        if isinstance(body, Mapping):
            for name in ("total", "total_items", "totalCount"):
                if body.get(name) is not None:
                    total = int(max(safe_number(body.get(name)), 0))
                    break
        self._rows = collection.records
        self._server_total = total
        self._loaded_key = key

    def close(self) -> None:
        """Abort any in-flight request; later results are discarded."""
        self._closed = True
        self._cancel_pending()
