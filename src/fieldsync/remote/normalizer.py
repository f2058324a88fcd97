"""
Payload normalisation between the local store and the remote record store.

Local records carry bookkeeping the remote store must never see, and rows
downloaded from the server carry read-only system attributes the server
rejects on write. Both are stripped before a POST or PATCH.
"""
from typing import Any, Dict, Iterable, List, Optional, Tuple

LOCAL_METADATA_FIELDS = frozenset({
    "id", "lastModified", "isOfflineCreated", "needsSync",
})

# Read-only attributes the server sets itself
SYSTEM_FIELDS = frozenset({
    "createdon", "modifiedon", "versionnumber",
    "timezoneruleversionnumber", "utcconversiontimezonecode",
    "importsequencenumber", "overriddencreatedon",
    "statecode", "statuscode",
    "createdby", "modifiedby", "modifiedonbehalfby",
    "ownerid", "owningbusinessunit", "owningteam", "owninguser",
})


def _is_lookup_projection(key: str) -> bool:
    """`_<name>_value` attributes are read-only projections of lookup columns."""
    return key.startswith("_") and key.endswith("_value")


def clean_for_upload(fields: Dict[str, Any], *, id_field: Optional[str] = None) -> Dict[str, Any]:
    """
    Build the request body for a create/update from a local attribute map.

    Drops local metadata, the primary key attribute, server system fields,
    lookup projections, `@odata.*` annotations, and nulls.

    Args:
        fields: Attribute map as stored locally.
        id_field: The entity kind's primary key attribute, if any.

    Returns:
        A new dict safe to send to the remote store.
    """
    excluded = set(LOCAL_METADATA_FIELDS)
    if id_field:
        excluded.add(id_field)

    body = {}
    for key, value in (fields or {}).items():
        if key in excluded or key in SYSTEM_FIELDS:
            continue
        if _is_lookup_projection(key) or key.startswith("@odata."):
            continue
        if value is None:
            continue
        body[key] = value
    return body


def split_server_row(row: Dict[str, Any], id_field: str) -> Optional[Tuple[str, Dict[str, Any]]]:
    """
    Split a downloaded row into (record_id, attributes).

    Returns None for rows without a usable id.
    """
    record_id = row.get(id_field)
    if record_id in (None, ""):
        return None
    attributes = {
        k: v for k, v in row.items()
        if k != id_field and k not in LOCAL_METADATA_FIELDS and not k.startswith("@odata.")
    }
    return str(record_id), attributes


def unwrap_collection(body: Any) -> List[Dict[str, Any]]:
    """Accept either a bare JSON array or an OData-style `{"value": [...]}` envelope."""
    if isinstance(body, list):
        rows: Iterable = body
    elif isinstance(body, dict) and isinstance(body.get("value"), list):
        rows = body["value"]
    else:
        raise ValueError("Collection response is neither a list nor a {'value': [...]} object")
    return [r for r in rows if isinstance(r, dict)]
