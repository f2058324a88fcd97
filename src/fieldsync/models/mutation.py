"""Durable mutation queue entries."""
from enum import Enum
from typing import Any, Dict, Optional

from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel


class MutationKind(str, Enum):
    ENTITY_SAVE = "ENTITY_SAVE"
    ENTITY_DELETE = "ENTITY_DELETE"


class MutationAction(str, Enum):
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class MutationStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class Mutation(SQLModel, table=True):
    """
    One pending create/update/delete against the remote store.

    The autoincrement id is the FIFO processing order. `revision` is bumped
    whenever a newer local write is folded into the entry, so the engine can
    tell whether the payload it uploaded is still the latest one.
    """

    id: Optional[int] = Field(default=None, primary_key=True)
    kind: str = Field(index=True)  # MutationKind
    entity_type: str = Field(index=True)  # EntityKind.name
    action: str  # MutationAction
    entity_id: str = Field(index=True)
    payload: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))
    status: str = Field(default=MutationStatus.PENDING.value, index=True)
    retry_count: int = 0
    revision: int = 0

    # Audit fields, epoch milliseconds
    timestamp: int = Field(default=0, index=True)
    last_attempt: Optional[int] = None
    last_error: Optional[str] = None
    completed_at: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind,
            "entityType": self.entity_type,
            "action": self.action,
            "entityId": self.entity_id,
            "payload": self.payload,
            "status": self.status,
            "retryCount": self.retry_count,
            "timestamp": self.timestamp,
            "lastAttempt": self.last_attempt,
            "lastError": self.last_error,
            "completedAt": self.completed_at,
        }
