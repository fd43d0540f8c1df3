"""Time utilities."""
from datetime import UTC, datetime, timedelta, timezone

# Daraja timestamps are local Nairobi time without an offset.
EAT = timezone(timedelta(hours=3), name="EAT")
MPESA_TIMESTAMP_FORMAT = "%Y%m%d%H%M%S"


def utcnow() -> datetime:
    """Return current UTC time with timezone awareness."""

    return datetime.now(tz=UTC)


def ensure_aware(value: datetime) -> datetime:
    """SQLite hands back naive datetimes; treat them as UTC."""

    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def format_mpesa_timestamp(moment: datetime | None = None) -> str:
    """Render ``moment`` (default: now) as the ``YYYYMMDDHHMMSS`` string Daraja signs."""

    moment = moment or utcnow()
    return moment.astimezone(EAT).strftime(MPESA_TIMESTAMP_FORMAT)


def parse_mpesa_timestamp(value: str | int | None) -> datetime | None:
    """Parse a Daraja ``TransactionDate`` into an aware UTC datetime, or ``None``."""

    if value is None:
        return None
    text = str(value).strip()
    try:
        local = datetime.strptime(text, MPESA_TIMESTAMP_FORMAT)
    except ValueError:
        return None
    return local.replace(tzinfo=EAT).astimezone(timezone.utc)


__all__ = [
    "EAT",
    "utcnow",
    "ensure_aware",
    "format_mpesa_timestamp",
    "parse_mpesa_timestamp",
]
