from __future__ import annotations

from typing import Optional


class SyncError(Exception):
    """Base class for sync engine errors."""


class TransportError(SyncError):
    def __init__(self, endpoint: str, message: str, *, status: Optional[int] = None) -> None:
        super().__init__(f"{endpoint}: {message}")
        self.endpoint = endpoint
        self.status = status


class TotalRefreshFailure(SyncError):
    """No usable data arrived: the reachability probe failed or every endpoint did."""


class PipelineNotReady(SyncError):
    pass


class InvalidTransition(SyncError):
    def __init__(self, current: str, action: str) -> None:
        super().__init__(f"cannot {action} while {current}")
        self.current = current
        self.action = action


class BackendEmpty(SyncError):
    """Backend is reachable but reports no processed ETL data."""


class RequestSuperseded(SyncError):
    """A newer view request (or teardown) cancelled this one."""


class UnsupportedFilter(SyncError):
    """A filter was given to a source that cannot apply it."""
