from datetime import datetime
from typing import Optional
import pytz
from circulation.config import settings

UTC = pytz.utc

# Timezone used when presenting dates to members
LIBRARY_TZ = pytz.timezone(settings.library_timezone)

def now_utc() -> datetime:
    """Get current datetime in UTC."""
    return datetime.now(UTC)

def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize a datetime to aware UTC.

    SQLite hands back naive values for timezone-aware columns; everything the
    engine stores is UTC, so naive values are localized as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return UTC.localize(value)
    return value.astimezone(UTC)

def to_library_time(value: Optional[datetime]) -> Optional[datetime]:
    """Convert a stored datetime to the library's local timezone."""
    if value is None:
        return None
    return ensure_utc(value).astimezone(LIBRARY_TZ)
