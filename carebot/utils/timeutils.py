from datetime import datetime, timezone


def utcnow() -> datetime:
    """Naive UTC timestamp; matches what both SQLite and Postgres DateTime columns hand back."""
    return datetime.now(timezone.utc).replace(tzinfo=None)
