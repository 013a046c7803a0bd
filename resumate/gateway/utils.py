import datetime as dt
from datetime import datetime


def utcnow() -> datetime:
    return datetime.now(tz=dt.UTC)


def ensure_utc(value: datetime | None) -> datetime | None:
    """Some drivers (sqlite) hand back naive datetimes for timezone-aware columns. We only ever store UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=dt.UTC)
