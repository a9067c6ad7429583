"""Document collection names and helpers for MongoDB persistence."""

from __future__ import annotations

from datetime import datetime, timezone

PROJECTS_COLLECTION = "projects"
CHARACTERS_COLLECTION = "characters"
PAGES_COLLECTION = "pages"


def now_utc() -> datetime:
    """Return a UTC timestamp helper."""

    return datetime.now(timezone.utc)
