from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx

from mfgsync.errors import TransportError
from mfgsync.normalize import safe_number
from mfgsync.settings import SyncSettings


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class HealthReport:
    reachable: bool
    completion_pct: Optional[float] = None

    @property
    def has_data(self) -> bool:
        # older backends report no completion stats; assume data is there
        return self.completion_pct is None or self.completion_pct > 0


class DashboardApi:
    """Async client for the manufacturing ETL backend.

    Every call raises :class:`TransportError` on network failure, non-2xx
    status or a body that is not JSON.
    """

    def __init__(self, settings: SyncSettings, client: Optional[httpx.AsyncClient] = None) -> None:
        self.settings = settings
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(base_url=settings.api_base, timeout=settings.request_timeout_s)

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    async def _get_json(self, endpoint: str, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        try:
            response = await self.client.get(path, params=params)
        except httpx.HTTPError as exc:
            raise TransportError(endpoint, f"{type(exc).__name__}: {exc}") from exc
        if not response.is_success:
            raise TransportError(endpoint, f"HTTP {response.status_code}", status=response.status_code)
        try:
            body = response.json()
        except ValueError as exc:
            raise TransportError(endpoint, "invalid JSON body", status=response.status_code) from exc
        if isinstance(body, dict) and str(body.get("status", "")).lower() == "error":
            raise TransportError(endpoint, str(body.get("message") or body.get("error") or "backend error"), status=response.status_code)
        return body

    async def health(self) -> HealthReport:
        body = await self._get_json("health", self.settings.paths.health)
        completion = None
        if isinstance(body, dict):
            stats = body.get("completion_stats")
            etl = stats.get("etl") if isinstance(stats, dict) else None
            if isinstance(etl, dict) and "completion_percentage" in etl:
                completion = safe_number(etl.get("completion_percentage"))
        return HealthReport(reachable=True, completion_pct=completion)

    async def summary(self) -> Any:
        return await self._get_json("summary", self.settings.paths.summary)

    async def lead_times(
        self,
        *,
        page: Optional[int] = None,
        page_size: Optional[int] = None,
        stage: Optional[str] = None,
        urgency: Optional[str] = None,
    ) -> Any:
        params: Dict[str, Any] = {}
        if page is not None:
            params["page"] = page
        if page_size is not None:
            params["pageSize"] = page_size
        if stage:
            params["stage"] = stage
        if urgency:
            params["urgency"] = urgency
        return await self._get_json("lead_times", self.settings.paths.lead_times, params or None)

    async def stock_status(self) -> Any:
        return await self._get_json("stock", self.settings.paths.stock_status)

    async def parallelization_pairs(self) -> Any:
        return await self._get_json("pairs", self.settings.paths.parallelization_pairs)
