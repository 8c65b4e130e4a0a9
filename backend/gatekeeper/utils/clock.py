from datetime import datetime, timezone


def utcnow() -> datetime:
    """Current UTC time as a naive datetime.

    Timestamps are stored naive (UTC) so values read back from SQLite and
    PostgreSQL compare cleanly with this.
    """
    return datetime.now(timezone.utc).replace(tzinfo=None)
