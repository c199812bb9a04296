"""Small helpers shared by the services: clock and pagination."""

import math
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional


def utcnow() -> datetime:
    """Current UTC time as a naive datetime, the form stored in the database."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_utc_naive(value: Optional[datetime]) -> Optional[datetime]:
    """Convert an aware datetime to naive UTC; naive values are assumed UTC."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def paginate(items: List[Any], total: int, skip: int, take: int) -> Dict[str, Any]:
    take = take if take and take > 0 else 10
    skip = max(skip or 0, 0)
    return {
        "items": items,
        "total": total,
        "page": skip // take + 1,
        "page_size": take,
        "page_count": math.ceil(total / take),
    }
