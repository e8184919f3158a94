from __future__ import annotations

from datetime import datetime, timezone


class Clock:
    """Source of wall-clock time for session and audit timestamps."""

    def now(self) -> datetime:
        """Return current UTC time as a naive datetime.

        SQLite (via SQLModel) strips timezone info on round-trip, so all
        stored timestamps are naive-UTC.
        """
        return datetime.now(timezone.utc).replace(tzinfo=None)
