"""HTTP surface over the sync engine (FastAPI)."""
