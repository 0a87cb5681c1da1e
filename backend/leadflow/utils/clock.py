from datetime import datetime, timezone

from leadflow.core.config import get_settings


def now_utc() -> datetime:
    # SQLite (used in CI/tests) stores timezone-aware datetimes as naive values.
    # Use a naive UTC "now" for SQLite to avoid naive/aware comparison crashes.
    if get_settings().is_sqlite:
        return datetime.now(timezone.utc).replace(tzinfo=None)
    return datetime.now(timezone.utc)
