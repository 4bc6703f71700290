"""
profiles/pointer.py -- Active-profile pointer: user_id -> selected profile id.

Ephemeral by nature: losing it only means get_current() falls back to the
oldest profile. Held in process memory behind a threading.Lock because route
handlers run on the threadpool. Concurrent set() calls for the same user are
last-write-wins.
"""

from __future__ import annotations

import threading


class ActiveProfileStore:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._current: dict[int, int] = {}

    def get(self, user_id: int) -> int | None:
        with self._lock:
            return self._current.get(user_id)

    def set(self, user_id: int, profile_id: int) -> None:
        with self._lock:
            self._current[user_id] = profile_id

    def clear(self, user_id: int) -> None:
        with self._lock:
            self._current.pop(user_id, None)

    def clear_if(self, user_id: int, profile_id: int) -> bool:
        """Clear the pointer only if it still targets profile_id.

        A switch that landed between the caller's read and this call is kept.
        """
        with self._lock:
            if self._current.get(user_id) != profile_id:
                return False
            del self._current[user_id]
            return True
