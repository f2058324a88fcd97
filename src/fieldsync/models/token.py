"""Cached access credentials for offline continuity."""
from sqlmodel import Field, SQLModel


class CachedToken(SQLModel, table=True):
    """Most recent access token per scope. Discarded once `expires_at` passes."""

    scope: str = Field(primary_key=True)
    access_token: str
    expires_at: int = Field(index=True)  # epoch milliseconds
    saved_at: int = 0
