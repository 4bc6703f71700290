"""
profiles/service.py -- Profile Manager: cap, ownership, floor, current pointer.

Every per-profile operation goes through _owned(), which loads the profile and
runs require_ownership() before any other rule. A missing id is ProfileNotFound
(404); a present-but-foreign id is NotProfileOwner (403) and leaves the row
untouched.

The cap and the floor are enforced inside ProfileStore transactions (see
profiles/store.py); this module maps storage errors to domain errors and keeps
the active-profile pointer consistent with deletions.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy.exc import IntegrityError

from auth.models import User
from auth.tokens import hash_password
from core.config import Settings, get_settings
from core.errors import DuplicateProfileName, NoProfileFound, NotProfileOwner, ProfileNotFound, ValidationFailed
from profiles.models import DEFAULT_PARENTAL_CONTROLS, DEFAULT_PREFERENCES, Profile
from profiles.pointer import ActiveProfileStore
from profiles.store import ProfileStore

logger = logging.getLogger("molunzaka.profiles")


def require_ownership(user: User, profile: Profile) -> Profile:
    """Raise NotProfileOwner unless user owns profile."""
    if profile.user_id != user.id:
        raise NotProfileOwner()
    return profile


def merge_parental_controls(current: dict[str, Any], patch: dict[str, Any]) -> dict[str, Any]:
    """Merge-patch parental controls. A supplied pin_code is stored as a bcrypt hash.

    Clearing the PIN also switches require_pin off. require_pin can only be
    true while a PIN is set; anything else is a ValidationFailed.
    """
    merged = {**current, **patch}
    if "pin_code" in patch:
        if patch["pin_code"] is not None:
            merged["pin_code"] = hash_password(str(patch["pin_code"]))
        elif "require_pin" not in patch:
            merged["require_pin"] = False
    if merged.get("require_pin") and not merged.get("pin_code"):
        raise ValidationFailed(errors={"parental_controls.require_pin": ["A PIN code is required to enable the PIN."]})
    return merged


def merge_preferences(current: dict[str, Any], patch: dict[str, Any]) -> dict[str, Any]:
    return {**current, **patch}


class ProfileManager:
    def __init__(self, store: ProfileStore, pointer: ActiveProfileStore, settings: Settings | None = None) -> None:
        self.store = store
        self.pointer = pointer
        self.settings = settings or get_settings()

    @property
    def limit(self) -> int:
        return self.settings.profile_limit

    def _owned(self, user: User, profile_id: int) -> Profile:
        profile = self.store.get_profile(profile_id)
        if profile is None:
            raise ProfileNotFound()
        return require_ownership(user, profile)

    # ------------------------------------------------------------------
    # Collection
    # ------------------------------------------------------------------

    def list_profiles(self, user: User) -> dict[str, Any]:
        """Return the user's profiles with cap bookkeeping and the current id."""
        profiles = self.store.list_profiles(user.id)
        current_id = self.pointer.get(user.id)
        if current_id not in {p.id for p in profiles}:
            current_id = profiles[0].id if profiles else None
        return {
            "profiles": profiles,
            "total": len(profiles),
            "limit": self.limit,
            "remaining": max(self.limit - len(profiles), 0),
            "current_profile_id": current_id,
        }

    def create(
        self,
        user: User,
        *,
        name: str,
        avatar: str | None = None,
        kids_mode: bool = False,
        parental_controls: dict[str, Any] | None = None,
        preferences: dict[str, Any] | None = None,
    ) -> Profile:
        """Create a profile. Raises ProfileLimitExceeded or DuplicateProfileName."""
        profile = Profile(
            user_id=user.id,
            name=name,
            avatar=avatar,
            kids_mode=kids_mode,
            parental_controls=merge_parental_controls(DEFAULT_PARENTAL_CONTROLS, parental_controls or {}),
            preferences=merge_preferences(DEFAULT_PREFERENCES, preferences or {}),
        )
        try:
            profile_id = self.store.create_profile(profile, self.limit)
        except IntegrityError as exc:
            raise DuplicateProfileName() from exc
        logger.info("User %s created profile %s", user.id, profile_id)
        return self.store.get_profile(profile_id)

    # ------------------------------------------------------------------
    # Single profile
    # ------------------------------------------------------------------

    def get(self, user: User, profile_id: int) -> Profile:
        return self._owned(user, profile_id)

    def update(self, user: User, profile_id: int, changes: dict[str, Any]) -> Profile:
        """Apply a partial update. Nested settings objects are merge-patched."""
        profile = self._owned(user, profile_id)
        fields: dict[str, Any] = {k: v for k, v in changes.items() if k in {"name", "avatar", "kids_mode"}}
        if changes.get("parental_controls") is not None:
            fields["parental_controls"] = merge_parental_controls(
                profile.parental_controls, changes["parental_controls"]
            )
        if changes.get("preferences") is not None:
            fields["preferences"] = merge_preferences(profile.preferences, changes["preferences"])
        if not fields:
            return profile
        self._write(profile, fields)
        return self.store.get_profile(profile_id)

    def delete(self, user: User, profile_id: int) -> Profile:
        """Delete an owned profile. Raises CannotDeleteOnlyProfile on the last one."""
        profile = self._owned(user, profile_id)
        if not self.store.delete_profile(profile.id, user.id):
            # Removed by a concurrent request after our read.
            raise ProfileNotFound()
        if self.pointer.clear_if(user.id, profile.id):
            logger.info("Cleared current profile for user %s", user.id)
        logger.info("User %s deleted profile %s", user.id, profile.id)
        return profile

    def update_parental_controls(self, user: User, profile_id: int, patch: dict[str, Any]) -> Profile:
        profile = self._owned(user, profile_id)
        self._write(profile, {"parental_controls": merge_parental_controls(profile.parental_controls, patch)})
        return self.store.get_profile(profile_id)

    def update_preferences(self, user: User, profile_id: int, patch: dict[str, Any]) -> Profile:
        profile = self._owned(user, profile_id)
        self._write(profile, {"preferences": merge_preferences(profile.preferences, patch)})
        return self.store.get_profile(profile_id)

    def _write(self, profile: Profile, fields: dict[str, Any]) -> None:
        try:
            updated = self.store.update_profile(profile.id, **fields)
        except IntegrityError as exc:
            raise DuplicateProfileName() from exc
        if not updated:
            raise ProfileNotFound()

    # ------------------------------------------------------------------
    # Current profile
    # ------------------------------------------------------------------

    def switch_current(self, user: User, profile_id: int) -> Profile:
        profile = self._owned(user, profile_id)
        self.pointer.set(user.id, profile.id)
        return profile

    def get_current(self, user: User) -> Profile:
        """The selected profile, else the oldest one. Raises NoProfileFound if none exist."""
        current_id = self.pointer.get(user.id)
        if current_id is not None:
            profile = self.store.get_profile(current_id)
            if profile is not None and profile.user_id == user.id:
                return profile
            self.pointer.clear_if(user.id, current_id)
        profile = self.store.oldest_profile(user.id)
        if profile is None:
            raise NoProfileFound()
        return profile
