from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel, Field


class ViewQueryModel(BaseModel):
    search: str = ""
    stage: List[str] = Field(default_factory=list)
    urgency: List[str] = Field(default_factory=list)
    category: List[str] = Field(default_factory=list)
    priority: List[str] = Field(default_factory=list)
    stock_adequacy: List[str] = Field(default_factory=list)
    min_efficiency: Optional[float] = None
    min_time_saved: Optional[float] = None
    min_quantity: Optional[float] = None
    sort_key: Optional[str] = None
    sort_direction: Optional[str] = None
    page: int = 1
    page_size: Optional[int] = None
    include_blocked: bool = False
    # lead_times only: fetch one backend page instead of slicing the snapshot
    server_paged: bool = False


class CompletionModel(BaseModel):
    succeeded: bool = True
    message: Optional[str] = None


class QueryPageModel(BaseModel):
    rows: List[dict]
    total: int
    page: int
    page_size: int
    page_count: int
