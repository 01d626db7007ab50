"""Core (UI-agnostic) dashboard sync engine.

This package contains:
- record normalization (raw API rows -> canonical entities)
- durable snapshot cache + pipeline state persistence
- multi-endpoint aggregation with per-endpoint fallbacks
- the pipeline-state controller (cache vs refetch vs upload prompt)
- paginated queries and derived metrics for the views
"""
