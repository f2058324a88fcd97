"""
Async client for the remote record store.

One REST-style collection per entity kind:

    GET    {collection}          list every record
    POST   {collection}          create; the new id comes back in a header
    PATCH  {collection}/{id}     partial update   (or {collection}({id}))
    DELETE {collection}/{id}     delete

The access token is passed per call rather than fixed at construction, since
it is re-acquired (or read from the cache) on every sync pass.
"""
import re
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import httpx

from fieldsync.config import EntityKind
from fieldsync.remote.exceptions import (
    AuthenticationError,
    RemoteConnectionError,
    RemoteResponseError,
)
from fieldsync.remote.normalizer import unwrap_collection

CREATED_ID_HEADERS = ("OData-EntityId", "Location")
_PAREN_KEY = re.compile(r"\(([^()]+)\)")


def extract_created_id(response: httpx.Response, id_field: str = "id") -> Optional[str]:
    """
    Pull the server-assigned id out of a successful create response.

    Checks `OData-EntityId` then `Location` (either `.../collection(<id>)` or
    `.../collection/<id>`), then falls back to the id attribute of a JSON body.
    """
    for header in CREATED_ID_HEADERS:
        value = response.headers.get(header)
        if not value:
            continue
        keys = _PAREN_KEY.findall(value)
        if keys:
            return keys[-1].strip("'\"")
        tail = value.split("?", 1)[0].rstrip("/").rsplit("/", 1)[-1]
        if tail:
            return tail

    try:
        body = response.json()
    except ValueError:
        return None
    if isinstance(body, dict):
        for key in (id_field, "id"):
            if body.get(key) not in (None, ""):
                return str(body[key])
    return None


class RemoteStoreClient:
    """
    Thin async wrapper over httpx for the remote record store.

    Args:
        base_url: Remote service root, e.g. "https://example.org".
        api_path: Prefix joined before every collection path.
        headers: Extra static headers sent with every request.
        item_style: "path" for `/collection/{id}`, "odata" for `/collection({id})`.
        timeout: Per-request timeout in seconds.
        transport: Optional httpx transport (tests use httpx.MockTransport).
    """

    def __init__(
        self,
        base_url: str,
        *,
        api_path: str = "",
        headers: Optional[Dict[str, str]] = None,
        item_style: str = "path",
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        if item_style not in ("path", "odata"):
            raise ValueError(f"Unknown item_style {item_style!r}")
        self.base_url = base_url.rstrip("/")
        self.api_path = "/" + api_path.strip("/") if api_path.strip("/") else ""
        self.headers = dict(headers or {})
        self.item_style = item_style
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers={"Accept": "application/json", **self.headers},
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()
        self._client = None

    # ─── URL helpers ─────────────────────────────────────────────────────────

    def collection_path(self, kind: EntityKind) -> str:
        return f"{self.api_path}/{kind.collection.strip('/')}"

    def item_path(self, kind: EntityKind, record_id: str) -> str:
        if self.item_style == "odata":
            return f"{self.collection_path(kind)}({record_id})"
        return f"{self.collection_path(kind)}/{quote(record_id, safe='')}"

    # ─── Transport ───────────────────────────────────────────────────────────

    async def _request(
        self,
        method: str,
        path: str,
        token: str,
        *,
        json: Optional[Dict[str, Any]] = None,
        allow_statuses: tuple = (),
    ) -> httpx.Response:
        client = await self._get_client()
        try:
            response = await client.request(
                method, path, json=json,
                headers={"Authorization": f"Bearer {token}"},
            )
        except httpx.RequestError as e:  # ConnectError, TimeoutException, ...
            raise RemoteConnectionError(f"{method} {path} failed: {e}") from e

        if response.is_success or response.status_code in allow_statuses:
            return response

        detail = response.text
        try:
            data = response.json()
        except ValueError:
            data = None
        if isinstance(data, dict):
            error = data.get("error")
            if isinstance(error, dict) and error.get("message"):
                detail = error["message"]
            elif isinstance(data.get("detail"), str):
                detail = data["detail"]

        if response.status_code in (401, 403):
            raise AuthenticationError(response.status_code, detail, response_data=data)
        raise RemoteResponseError(response.status_code, detail, response_data=data)

    # ─── Operations ──────────────────────────────────────────────────────────

    async def list_records(self, kind: EntityKind, token: str) -> List[Dict[str, Any]]:
        """Fetch the full remote collection for one entity kind."""
        response = await self._request("GET", self.collection_path(kind), token)
        try:
            return unwrap_collection(response.json())
        except ValueError as e:
            raise RemoteResponseError(response.status_code, f"Unreadable collection: {e}") from e

    async def create_record(self, kind: EntityKind, body: Dict[str, Any], token: str) -> str:
        """POST a new record and return the server-issued id."""
        response = await self._request("POST", self.collection_path(kind), token, json=body)
        new_id = extract_created_id(response, kind.id_field)
        if not new_id:
            raise RemoteResponseError(
                response.status_code, "Create succeeded but no record id was returned",
            )
        return new_id

    async def update_record(self, kind: EntityKind, record_id: str, body: Dict[str, Any], token: str) -> None:
        await self._request("PATCH", self.item_path(kind, record_id), token, json=body)

    async def delete_record(self, kind: EntityKind, record_id: str, token: str) -> None:
        """DELETE a record. A 404 means it is already gone, which counts as success."""
        await self._request("DELETE", self.item_path(kind, record_id), token, allow_statuses=(404,))
