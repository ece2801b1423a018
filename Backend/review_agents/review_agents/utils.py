import json
import re
import secrets
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Optional

TS_FORMAT = "%Y-%m-%d %H:%M:%S"


def json_safe(obj: Any) -> Any:
    if isinstance(obj, Decimal):
        return float(obj)
    if isinstance(obj, datetime):
        return obj.strftime(TS_FORMAT)
    if isinstance(obj, date):
        return obj.isoformat()
    if isinstance(obj, bytes):
        return obj.decode("utf-8", errors="replace")
    if isinstance(obj, set):
        return [json_safe(v) for v in obj]
    if isinstance(obj, dict):
        return {k: json_safe(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [json_safe(v) for v in obj]
    return obj


def json_dumps(obj) -> str:
    return json.dumps(json_safe(obj), ensure_ascii=False, default=str)


def json_loads(s):
    if s is None:
        return {}
    if isinstance(s, (dict, list)):
        return s
    try:
        return json.loads(s or "{}")
    except (TypeError, ValueError):
        return {}


def now_dt() -> datetime:
    """Naive UTC, truncated to whole seconds (the store's resolution)."""
    return datetime.now(timezone.utc).replace(tzinfo=None, microsecond=0)


def to_db_ts(dt: Optional[datetime]) -> Optional[str]:
    if dt is None:
        return None
    return dt.strftime(TS_FORMAT)


def parse_ts(v: Any) -> Optional[datetime]:
    """
    MySQL hands back datetime objects, SQLite hands back strings.
    Both end up as naive UTC datetimes.
    """
    if v is None:
        return None
    if isinstance(v, datetime):
        if v.tzinfo is not None:
            v = v.astimezone(timezone.utc).replace(tzinfo=None)
        return v.replace(microsecond=0)
    s = str(v).strip()
    if not s:
        return None
    s = s.replace("T", " ").rstrip("Z")
    try:
        return datetime.strptime(s[:19], TS_FORMAT)
    except ValueError:
        return None


def seconds_between(later: datetime, earlier: datetime) -> int:
    return int((later - earlier).total_seconds())


def normalize_token(value: str, default: str = "") -> str:
    """
    "in review" -> "IN_REVIEW"
    "in-review" -> "IN_REVIEW"
    """
    s = (value or default).strip().upper()
    s = re.sub(r"[^A-Z0-9]+", "_", s)
    s = re.sub(r"_+", "_", s).strip("_")
    return s or default


_REF_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"


def new_reference_code(prefix: str = "RV") -> str:
    body = "".join(secrets.choice(_REF_ALPHABET) for _ in range(8))
    return f"{prefix}-{body[:4]}-{body[4:]}"
