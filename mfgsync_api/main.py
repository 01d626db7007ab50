from __future__ import annotations

from contextlib import asynccontextmanager
from dataclasses import asdict
import logging
import math
from typing import Any, Callable, Dict, Optional

import numpy as np
import pandas as pd
import uvicorn
from fastapi import FastAPI, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response

from mfgsync.controller import PipelineController
from mfgsync.errors import InvalidTransition, PipelineNotReady, RequestSuperseded, UnsupportedFilter
from mfgsync.frames import POSITION_COLUMN, records_frame
from mfgsync.metrics import compute_view_metrics, stage_breakdown
from mfgsync.models import PRIORITIES, STAGES, STOCK_ADEQUACIES, URGENCIES
from mfgsync.query import (
    VIEWS,
    QueryPage,
    QuerySpec,
    ServerPagedLeadTimes,
    filter_tiers,
    normalize_query,
    run_query,
    select_records,
)
from mfgsync.settings import load_settings
from mfgsync_api.schemas import CompletionModel, QueryPageModel, ViewQueryModel


logger = logging.getLogger(__name__)

ControllerFactory = Callable[[], PipelineController]

FILTER_OPTIONS = {
    "stage": list(STAGES),
    "urgency": list(URGENCIES),
    "priority": list(PRIORITIES),
    "stock_adequacy": list(STOCK_ADEQUACIES),
}

CONFLICT_ERRORS = (PipelineNotReady, InvalidTransition, RequestSuperseded)


def _default_controller() -> PipelineController:
    return PipelineController.from_settings(load_settings())


def _json(data: object, status_code: int = 200) -> JSONResponse:
    """Return JSON with safe encoding for pandas/numpy objects."""

    def _safe_float(value: object) -> float | None:
        try:
            out = float(value)  # type: ignore[arg-type]
        except Exception:
            return None
        if math.isnan(out) or math.isinf(out):
            return None
        return out

    return JSONResponse(
        status_code=status_code,
        content=jsonable_encoder(
            data,
            custom_encoder={
                type(pd.NA): lambda _: None,
                np.integer: int,
                float: _safe_float,
                np.floating: _safe_float,
                np.bool_: bool,
                np.ndarray: lambda arr: arr.tolist(),
            },
        ),
    )


def _error(exc: Exception, what: str) -> JSONResponse:
    if isinstance(exc, UnsupportedFilter):
        logger.info("%s rejected: %s", what, exc)
        return JSONResponse(status_code=400, content={"error": str(exc), "type": type(exc).__name__})
    if isinstance(exc, CONFLICT_ERRORS):
        logger.info("%s rejected: %s", what, exc)
        return JSONResponse(status_code=409, content={"error": str(exc), "type": type(exc).__name__})
    logger.exception("%s failed", what)
    return JSONResponse(status_code=500, content={"error": str(exc), "type": type(exc).__name__})


def _view_spec(controller: PipelineController, view: str, body: ViewQueryModel) -> QuerySpec:
    server_paged = view == "lead_times" and body.server_paged
    if server_paged and not controller.is_view_reachable(view):
        raise PipelineNotReady(f"pipeline is {controller.phase.value}")
    raw = body.model_dump()
    if raw.get("page_size") is None:
        raw["page_size"] = controller.default_page_size
    return normalize_query(raw, view, server_paged=server_paged)


def _page_payload(page: QueryPage) -> Dict[str, Any]:
    return QueryPageModel(
        rows=[dict(r) for r in page.rows()],
        total=page.total,
        page=page.page,
        page_size=page.page_size,
        page_count=page.page_count,
    ).model_dump()


def create_app(controller_factory: Optional[ControllerFactory] = None) -> FastAPI:
    factory = controller_factory or _default_controller

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        controller = factory()
        app.state.controller = controller
        app.state.lead_time_pages = ServerPagedLeadTimes(controller.aggregator.api)
        status = await controller.start()
        logger.info("Dashboard sync started: %s", status.value)
        try:
            yield
        finally:
            app.state.lead_time_pages.close()
            await controller.close()

    app = FastAPI(title="Manufacturing Dashboard Sync API", version="0.1.0", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:3000", "http://127.0.0.1:3000"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/state")
    async def state(request: Request):
        try:
            return _json(request.app.state.controller.status())
        except Exception as exc:
            return _error(exc, "state")

    @app.get("/summary")
    async def summary(request: Request):
        try:
            snap = request.app.state.controller.snapshot
            return _json(
                {
                    "counters": asdict(snap.counters),
                    "stages": stage_breakdown(snap.jobs),
                    "captured_at": snap.captured_at,
                    "degraded_endpoints": list(snap.degraded_endpoints),
                }
            )
        except Exception as exc:
            return _error(exc, "summary")

    @app.post("/pipeline/processing")
    async def pipeline_processing(request: Request):
        try:
            controller: PipelineController = request.app.state.controller
            controller.begin_processing()
            return _json(controller.status())
        except Exception as exc:
            return _error(exc, "pipeline_processing")

    @app.post("/pipeline/complete")
    async def pipeline_complete(request: Request, body: CompletionModel):
        try:
            controller: PipelineController = request.app.state.controller
            await controller.on_external_processing_complete(body.succeeded, body.message)
            return _json(controller.status())
        except Exception as exc:
            return _error(exc, "pipeline_complete")

    @app.post("/pipeline/reset")
    async def pipeline_reset(request: Request):
        try:
            controller: PipelineController = request.app.state.controller
            controller.reset()
            request.app.state.lead_time_pages.close()
            request.app.state.lead_time_pages = ServerPagedLeadTimes(controller.aggregator.api)
            return _json(controller.status())
        except Exception as exc:
            return _error(exc, "pipeline_reset")

    @app.post("/refresh")
    async def refresh(request: Request, force: bool = Query(default=False)):
        try:
            controller: PipelineController = request.app.state.controller
            result = await controller.refresh(use_cache=not force)
            payload: Dict[str, Any] = {"refreshed": result is not None, "state": controller.status()}
            if result is not None:
                payload["outcome"] = result.outcome.value
                payload["failures"] = dict(result.failures)
            return _json(payload)
        except Exception as exc:
            return _error(exc, "refresh")

    @app.post("/retry")
    async def retry(request: Request):
        try:
            controller: PipelineController = request.app.state.controller
            await controller.retry()
            return _json(controller.status())
        except Exception as exc:
            return _error(exc, "retry")

    @app.post("/views/{view}")
    async def view_page(request: Request, view: str, body: ViewQueryModel):
        if view not in VIEWS:
            return JSONResponse(status_code=404, content={"error": f"unknown view: {view}", "type": "NotFound"})
        try:
            controller: PipelineController = request.app.state.controller
            spec = _view_spec(controller, view, body)

            if view == "lead_times" and body.server_paged:
                result = await request.app.state.lead_time_pages.apply(spec)
                return _json(
                    {
                        "view": view,
                        "page": _page_payload(result.page),
                        "server_total": result.server_total,
                        "server_page_count": result.page_count,
                        "fetched": result.fetched,
                        "metrics": compute_view_metrics(view, result.page.items),
                    }
                )

            records = getattr(controller.snapshot, view)
            page = run_query(records, spec)
            return _json(
                {
                    "view": view,
                    "page": _page_payload(page),
                    "metrics": compute_view_metrics(view, select_records(records, spec)),
                }
            )
        except Exception as exc:
            return _error(exc, f"view {view}")

    @app.post("/views/{view}/export")
    async def view_export(request: Request, view: str, body: ViewQueryModel):
        if view not in VIEWS:
            return JSONResponse(status_code=404, content={"error": f"unknown view: {view}", "type": "NotFound"})
        try:
            controller: PipelineController = request.app.state.controller
            spec = _view_spec(controller, view, body)
            if view == "lead_times" and body.server_paged:
                records = (await request.app.state.lead_time_pages.apply(spec)).page.items
            else:
                records = select_records(getattr(controller.snapshot, view), spec)
            export_df = records_frame(records).drop(columns=[POSITION_COLUMN])
            csv_bytes = export_df.to_csv(index=False).encode("utf-8")
            return Response(
                content=csv_bytes,
                media_type="text/csv",
                headers={"Content-Disposition": f"attachment; filename={view}.csv"},
            )
        except Exception as exc:
            return _error(exc, f"export {view}")

    @app.get("/views/{view}/filters")
    def view_filters(view: str, server_paged: bool = Query(default=False)):
        if view not in VIEWS:
            return JSONResponse(status_code=404, content={"error": f"unknown view: {view}", "type": "NotFound"})
        vd = VIEWS[view]
        tiers = filter_tiers(view, server_paged=view == "lead_times" and server_paged)
        return _json(
            {
                "view": view,
                "tiers": {name: tier.value for name, tier in tiers.items()},
                "options": {name: values for name, values in FILTER_OPTIONS.items() if name in tiers},
                "sort_keys": sorted(vd.sort_keys),
                "default_sort": vd.default_sort,
                "default_direction": "desc" if vd.default_descending else "asc",
            }
        )

    return app


app = create_app()


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    uvicorn.run(app, host="0.0.0.0", port=8080)
