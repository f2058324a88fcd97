"""Sync audit log model."""
from datetime import datetime, timezone
from typing import Optional

from sqlmodel import Field, SQLModel


class SyncLog(SQLModel, table=True):
    """Records each executed sync pass for audit and debugging."""

    id: Optional[int] = Field(default=None, primary_key=True)
    started_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: Optional[datetime] = None
    status: str = "running"  # "running", "success", "partial", "error"
    records_downloaded: int = 0
    mutations_uploaded: int = 0
    mutations_failed: int = 0
    error_message: Optional[str] = None
