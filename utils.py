from datetime import datetime, timezone
from typing import Any, Dict, Optional

from bson import ObjectId
from fastapi import HTTPException

PRIVATE_USER_FIELDS = ("password_hash", "refresh_tokens", "login_attempts", "lock_until")


def oid(id_str: str) -> ObjectId:
    try:
        return ObjectId(id_str)
    except Exception:
        raise HTTPException(status_code=400, detail="Invalid id format")


def serialize(value: Any) -> Any:
    """Make a Mongo document JSON friendly: `_id` -> `id`, ObjectIds -> str, datetimes -> isoformat."""
    if isinstance(value, dict):
        d = {}
        for k, v in value.items():
            if k == "_id":
                d["id"] = str(v)
            else:
                d[k] = serialize(v)
        return d
    if isinstance(value, list):
        return [serialize(v) for v in value]
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Mongo hands back naive UTC datetimes; bring aware input to the same form."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def public_profile(user: Dict[str, Any]) -> Dict[str, Any]:
    profile = {k: v for k, v in user.items() if k not in PRIVATE_USER_FIELDS}
    return serialize(profile)


def ok(data: Any = None, message: Optional[str] = None) -> Dict[str, Any]:
    body: Dict[str, Any] = {"success": True}
    if message:
        body["message"] = message
    if data is not None:
        body["data"] = data
    return body


def paginate(page: int, limit: int, total: int) -> Dict[str, Any]:
    total_pages = (total + limit - 1) // limit if limit else 0
    return {
        "page": page,
        "limit": limit,
        "total": total,
        "total_pages": total_pages,
        "has_next_page": page * limit < total,
        "has_prev_page": page > 1,
    }
