"""
Shared utility functions.
"""

import logging
import uuid as uuid_mod
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional
from fastapi import HTTPException

logger = logging.getLogger(__name__)

CENTS = Decimal("0.01")
RATIO_PLACES = Decimal("0.0001")


def parse_uuid(value: str, field_name: str = "id") -> uuid_mod.UUID:
    """
    Parse a string as UUID, raising a 400 HTTPException on invalid input
    instead of letting a bare ValueError bubble up as a 500.
    """
    try:
        return uuid_mod.UUID(value)
    except (ValueError, AttributeError):
        raise HTTPException(
            status_code=400,
            detail=f"Invalid UUID for '{field_name}': {value!r}",
        )


def parse_uuid_list(values: Optional[list], field_name: str = "account_ids") -> list[uuid_mod.UUID]:
    """Parse a list of UUID strings, preserving order and dropping duplicates."""
    out: list[uuid_mod.UUID] = []
    for v in values or []:
        u = v if isinstance(v, uuid_mod.UUID) else parse_uuid(str(v), field_name)
        if u not in out:
            out.append(u)
    return out


def split_ids(raw: Optional[str], field_name: str = "account_ids") -> list[uuid_mod.UUID]:
    """Comma-separated query param -> UUID list. None or blank -> []."""
    if not raw:
        return []
    return parse_uuid_list([p.strip() for p in raw.split(",") if p.strip()], field_name)


def safe_error_detail(exc: Exception, fallback: str = "An internal error occurred. Please try again later.") -> str:
    """
    Return a sanitized error message safe for client consumption.
    Logs the real exception detail server-side.
    """
    logger.error(f"Operation failed: {exc}", exc_info=True)
    return fallback


def utcnow() -> datetime:
    """
    Return the current UTC time as a naive datetime (no tzinfo).
    Naive datetimes are used because our DB columns are TIMESTAMP WITHOUT TIME ZONE.
    """
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_decimal(value) -> Decimal:
    """Coerce DB/JSON numerics to Decimal. None becomes zero."""
    if value is None:
        return Decimal("0")
    if isinstance(value, Decimal):
        return value
    # str() first so floats keep their printed value (0.1 -> Decimal("0.1"))
    return Decimal(str(value))


def money(value) -> float:
    """Round to cents for presentation."""
    return float(to_decimal(value).quantize(CENTS, rounding=ROUND_HALF_UP))


def ratio(value) -> float:
    """Round a rate/ratio to 4 dp for presentation."""
    return float(to_decimal(value).quantize(RATIO_PLACES, rounding=ROUND_HALF_UP))


def optional_money(value) -> Optional[float]:
    return None if value is None else money(value)


def iso(dt: Optional[datetime]) -> Optional[str]:
    return dt.isoformat() if dt else None
