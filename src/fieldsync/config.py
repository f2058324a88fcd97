from typing import Dict, List, Optional

from pydantic import BaseModel
from pydantic_settings import BaseSettings


class EntityKind(BaseModel):
    """One category of domain record: a local collection plus its remote endpoint."""

    name: str  # local collection, e.g. "participants"
    collection: str  # remote collection path, e.g. "participants"
    id_field: str = "id"  # server primary key attribute in list/create responses


DEFAULT_ENTITY_KINDS = [
    EntityKind(name="participants", collection="participants"),
    EntityKind(name="sessions", collection="sessions"),
]


class Settings(BaseSettings):
    database_url: str = "sqlite:///./fieldsync.db"

    # Remote record store
    remote_base_url: str = ""
    remote_api_path: str = ""
    remote_headers: Dict[str, str] = {}
    remote_item_style: str = "path"  # "path": /collection/{id}, "odata": /collection({id})
    remote_timeout_seconds: float = 30.0

    # Identity provider
    token_scope: str = "default"
    identity_token_url: str = ""
    identity_client_id: str = ""
    identity_client_secret: str = ""
    default_token_ttl_seconds: int = 3600

    # Queue policy
    max_retries: int = 3
    retry_backoff_seconds: float = 0.0  # 0 = retry on every pass
    queue_retention_days: int = 7

    # Background wake-ups
    sync_interval_minutes: int = 15
    connectivity_probe_url: str = ""  # empty = connectivity is host-driven only
    connectivity_check_seconds: int = 30
    cleanup_hour: int = 3

    entity_kinds: List[EntityKind] = DEFAULT_ENTITY_KINDS

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        env_prefix = "FIELDSYNC_"


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
