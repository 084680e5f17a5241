"""Single source of "now" for ledger timestamps (timezone-aware UTC)."""

from datetime import date, datetime, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def today() -> date:
    return utcnow().date()
