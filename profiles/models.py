"""
profiles/models.py -- Domain dataclass for viewing profiles.

Pure data container. Defaults for the two JSON settings blobs live here so
the store, the service and the tests agree on what a fresh profile looks like.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

DEFAULT_PARENTAL_CONTROLS: dict[str, Any] = {
    "content_rating": "G",
    "watch_time_limit": None,  # minutes per day, None = unlimited
    "require_pin": False,
    "pin_code": None,  # bcrypt hash, never the raw PIN
}

DEFAULT_PREFERENCES: dict[str, Any] = {
    "language": "en",
    "subtitle_language": "en",
    "quality": "auto",
    "autoplay": True,
    "notifications": True,
}


@dataclass
class Profile:
    """A viewing profile owned by exactly one user.

    user_id never changes after insert. name is unique per owner.
    id is None before the record is written to the database.
    """

    user_id: int
    name: str
    id: int | None = None
    avatar: str | None = None
    kids_mode: bool = False
    parental_controls: dict[str, Any] = field(default_factory=lambda: dict(DEFAULT_PARENTAL_CONTROLS))
    preferences: dict[str, Any] = field(default_factory=lambda: dict(DEFAULT_PREFERENCES))
    created_at: str = ""  # ISO 8601, set by store on insert
    updated_at: str = ""

    @property
    def pin_set(self) -> bool:
        return bool(self.parental_controls.get("pin_code"))
