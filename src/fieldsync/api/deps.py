"""Request dependencies shared by the routers."""
from fastapi import Request

from fieldsync.service import OfflineDataService


def get_service(request: Request) -> OfflineDataService:
    """Return the service bound to this app (see create_app)."""
    return request.app.state.service
