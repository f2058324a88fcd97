"""Local entity records: one row per domain object, partitioned by entity kind."""
from typing import Any, Dict

from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel

OFFLINE_ID_PREFIX = "offline_"


def is_placeholder_id(record_id: str) -> bool:
    """True for ids generated locally while the record had no server identity."""
    return record_id.startswith(OFFLINE_ID_PREFIX)


class EntityRecord(SQLModel, table=True):
    """
    A locally stored record of one entity kind.

    `attributes` is an open map: its schema belongs to the remote store.
    `needs_sync` is True while the last local write has not been confirmed
    by the remote store; such a record always has a live queue entry.
    """

    kind: str = Field(primary_key=True)
    id: str = Field(primary_key=True)
    attributes: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    last_modified: int = Field(default=0, index=True)  # epoch milliseconds
    is_offline_created: bool = False
    needs_sync: bool = Field(default=False, index=True)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind,
            "fields": dict(self.attributes or {}),
            "lastModified": self.last_modified,
            "isOfflineCreated": self.is_offline_created,
            "needsSync": self.needs_sync,
        }
