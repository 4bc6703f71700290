"""
tests/test_profile_service.py -- Tests for profiles/service.py, profiles/store.py
and profiles/pointer.py.

Coverage:
  - Cap: the sixth create fails with the live count and writes nothing
  - Unique names per owner (but not across owners)
  - Ownership: foreign ids are 403 and leave state unchanged; missing ids are 404
  - Floor: the last profile cannot be deleted
  - Current pointer: switch, fallback to oldest, cleared on delete
  - Merge-patch of parental controls and preferences; PINs stored hashed
  - Concurrent creates never exceed the cap (file-backed SQLite, real threads)
"""

from __future__ import annotations

import threading

import pytest

from auth.models import User
from auth.tokens import verify_password
from core.errors import (
    CannotDeleteOnlyProfile,
    DuplicateProfileName,
    NoProfileFound,
    NotProfileOwner,
    ProfileLimitExceeded,
    ProfileNotFound,
    ValidationFailed,
)
from profiles.models import DEFAULT_PARENTAL_CONTROLS, DEFAULT_PREFERENCES, Profile
from profiles.pointer import ActiveProfileStore
from profiles.service import ProfileManager, merge_parental_controls, require_ownership
from profiles.store import ProfileStore


def _user(user_id: int) -> User:
    return User(id=user_id, email=f"u{user_id}@example.com", first_name="U", last_name=str(user_id))


ALICE = _user(1)
BOB = _user(2)

PIN_REQUIRED = {"require_pin": True, "pin_code": "1234"}


def _fill(manager: ProfileManager, user: User, count: int) -> list[Profile]:
    return [manager.create(user, name=f"Profile {i}") for i in range(count)]


class TestCreate:
    def test_defaults(self, profile_manager) -> None:
        """A bare create gets default settings and timestamps."""
        profile = profile_manager.create(ALICE, name="Main")
        assert profile.id is not None
        assert profile.user_id == ALICE.id
        assert profile.kids_mode is False
        assert profile.parental_controls == DEFAULT_PARENTAL_CONTROLS
        assert profile.preferences == DEFAULT_PREFERENCES
        assert profile.created_at

    def test_nested_settings_merge_over_defaults(self, profile_manager) -> None:
        """Settings supplied on create merge over the defaults."""
        profile = profile_manager.create(
            ALICE,
            name="Kids",
            kids_mode=True,
            parental_controls={"content_rating": "PG", "watch_time_limit": 90},
            preferences={"language": "ln"},
        )
        assert profile.parental_controls["content_rating"] == "PG"
        assert profile.parental_controls["watch_time_limit"] == 90
        assert profile.parental_controls["require_pin"] is False
        assert profile.preferences["language"] == "ln"
        assert profile.preferences["quality"] == "auto"

    def test_cap_of_five(self, profile_manager, profile_store) -> None:
        """The sixth create fails with the live count and writes nothing."""
        _fill(profile_manager, ALICE, 5)
        with pytest.raises(ProfileLimitExceeded) as excinfo:
            profile_manager.create(ALICE, name="Sixth")
        assert excinfo.value.detail == {"current_count": 5, "max_allowed": 5}
        assert excinfo.value.message == "Maximum profile limit (5) reached"
        assert profile_store.count_profiles(ALICE.id) == 5

    def test_cap_is_per_user(self, profile_manager) -> None:
        """One user at the cap does not block another."""
        _fill(profile_manager, ALICE, 5)
        assert profile_manager.create(BOB, name="Main").user_id == BOB.id

    def test_delete_frees_a_slot(self, profile_manager) -> None:
        """Deleting at the cap makes room for one more."""
        profiles = _fill(profile_manager, ALICE, 5)
        profile_manager.delete(ALICE, profiles[0].id)
        assert profile_manager.create(ALICE, name="Replacement").name == "Replacement"

    def test_duplicate_name_for_same_owner(self, profile_manager, profile_store) -> None:
        """A repeated name for one owner is rejected without a write."""
        profile_manager.create(ALICE, name="Main")
        with pytest.raises(DuplicateProfileName):
            profile_manager.create(ALICE, name="Main")
        assert profile_store.count_profiles(ALICE.id) == 1

    def test_same_name_for_different_owners(self, profile_manager) -> None:
        """Two owners may use the same profile name."""
        profile_manager.create(ALICE, name="Main")
        assert profile_manager.create(BOB, name="Main").name == "Main"


class TestList:
    def test_bookkeeping(self, profile_manager) -> None:
        """The listing reports total, limit, remaining and the current id."""
        created = _fill(profile_manager, ALICE, 3)
        listing = profile_manager.list_profiles(ALICE)
        assert [p.id for p in listing["profiles"]] == [p.id for p in created]
        assert listing["total"] == 3
        assert listing["limit"] == 5
        assert listing["remaining"] == 2
        assert listing["current_profile_id"] == created[0].id

    def test_only_own_profiles(self, profile_manager) -> None:
        """The listing never includes another user's profiles."""
        _fill(profile_manager, ALICE, 2)
        profile_manager.create(BOB, name="Bob's")
        assert [p.name for p in profile_manager.list_profiles(BOB)["profiles"]] == ["Bob's"]

    def test_empty(self, profile_manager) -> None:
        """A user with no profiles has no current id and a full allowance."""
        listing = profile_manager.list_profiles(ALICE)
        assert listing["profiles"] == []
        assert listing["current_profile_id"] is None
        assert listing["remaining"] == 5

    def test_current_reflects_switch(self, profile_manager) -> None:
        """The listing's current id follows switch_current."""
        created = _fill(profile_manager, ALICE, 2)
        profile_manager.switch_current(ALICE, created[1].id)
        assert profile_manager.list_profiles(ALICE)["current_profile_id"] == created[1].id


class TestOwnership:
    def test_require_ownership(self) -> None:
        """require_ownership passes the owner and rejects anyone else."""
        profile = Profile(user_id=ALICE.id, name="Main", id=10)
        assert require_ownership(ALICE, profile) is profile
        with pytest.raises(NotProfileOwner):
            require_ownership(BOB, profile)

    def test_foreign_profile_is_forbidden_everywhere(self, profile_manager, profile_store) -> None:
        """Every per-profile operation rejects a non-owner and changes nothing."""
        target = profile_manager.create(ALICE, name="Main")
        profile_manager.create(ALICE, name="Second")
        profile_manager.create(BOB, name="Bob")
        calls = [
            lambda: profile_manager.get(BOB, target.id),
            lambda: profile_manager.update(BOB, target.id, {"name": "Hijacked"}),
            lambda: profile_manager.delete(BOB, target.id),
            lambda: profile_manager.switch_current(BOB, target.id),
            lambda: profile_manager.update_parental_controls(BOB, target.id, {"require_pin": True}),
            lambda: profile_manager.update_preferences(BOB, target.id, {"autoplay": False}),
        ]
        for call in calls:
            with pytest.raises(NotProfileOwner):
                call()
        after = profile_store.get_profile(target.id)
        assert after.name == "Main"
        assert after.parental_controls == target.parental_controls
        assert after.preferences == target.preferences
        assert profile_manager.pointer.get(BOB.id) is None

    def test_missing_profile_is_not_found(self, profile_manager) -> None:
        """A missing profile id raises ProfileNotFound."""
        with pytest.raises(ProfileNotFound):
            profile_manager.get(ALICE, 999)
        with pytest.raises(ProfileNotFound):
            profile_manager.switch_current(ALICE, 999)


class TestUpdate:
    def test_top_level_fields(self, profile_manager) -> None:
        """Name, kids_mode and avatar update together."""
        profile = profile_manager.create(ALICE, name="Main")
        updated = profile_manager.update(ALICE, profile.id, {"name": "Renamed", "kids_mode": True, "avatar": "a.png"})
        assert (updated.name, updated.kids_mode, updated.avatar) == ("Renamed", True, "a.png")

    def test_nested_merge_keeps_unmentioned_keys(self, profile_manager) -> None:
        """A nested preferences update keeps unmentioned keys."""
        profile = profile_manager.create(ALICE, name="Main", preferences={"language": "fr", "autoplay": False})
        updated = profile_manager.update(ALICE, profile.id, {"preferences": {"quality": "1080p"}})
        assert updated.preferences["quality"] == "1080p"
        assert updated.preferences["language"] == "fr"
        assert updated.preferences["autoplay"] is False

    def test_empty_changes_are_a_no_op(self, profile_manager) -> None:
        """An empty update writes nothing."""
        profile = profile_manager.create(ALICE, name="Main")
        assert profile_manager.update(ALICE, profile.id, {}).updated_at == profile.updated_at

    def test_rename_collision(self, profile_manager) -> None:
        """Renaming onto a sibling's name raises DuplicateProfileName."""
        profile_manager.create(ALICE, name="Main")
        second = profile_manager.create(ALICE, name="Second")
        with pytest.raises(DuplicateProfileName):
            profile_manager.update(ALICE, second.id, {"name": "Main"})

    def test_parental_controls_merge(self, profile_manager) -> None:
        """A parental controls patch keeps the other keys."""
        profile = profile_manager.create(ALICE, name="Main", parental_controls={"content_rating": "PG-13"})
        updated = profile_manager.update_parental_controls(ALICE, profile.id, {"watch_time_limit": 60})
        assert updated.parental_controls["content_rating"] == "PG-13"
        assert updated.parental_controls["watch_time_limit"] == 60

    def test_watch_time_limit_can_be_cleared(self, profile_manager) -> None:
        """An explicit None clears watch_time_limit."""
        profile = profile_manager.create(ALICE, name="Main", parental_controls={"watch_time_limit": 60})
        updated = profile_manager.update_parental_controls(ALICE, profile.id, {"watch_time_limit": None})
        assert updated.parental_controls["watch_time_limit"] is None

    def test_preferences_merge(self, profile_manager) -> None:
        """A preferences patch keeps the other keys."""
        profile = profile_manager.create(ALICE, name="Main")
        updated = profile_manager.update_preferences(ALICE, profile.id, {"subtitle_language": "sw"})
        assert updated.preferences["subtitle_language"] == "sw"
        assert updated.preferences["language"] == "en"


class TestPin:
    def test_pin_is_hashed(self, profile_manager) -> None:
        """A PIN is stored as a bcrypt hash."""
        profile = profile_manager.create(ALICE, name="Kids", parental_controls=PIN_REQUIRED)
        stored = profile.parental_controls["pin_code"]
        assert stored != "1234"
        assert verify_password("1234", stored)
        assert profile.pin_set

    def test_unrelated_patch_keeps_pin(self, profile_manager) -> None:
        """A patch without pin_code keeps the stored hash."""
        profile = profile_manager.create(ALICE, name="Kids", parental_controls={"pin_code": "1234"})
        updated = profile_manager.update_parental_controls(ALICE, profile.id, {"content_rating": "PG"})
        assert updated.parental_controls["pin_code"] == profile.parental_controls["pin_code"]

    def test_pin_cleared_with_none(self) -> None:
        """pin_code=None removes the stored PIN."""
        merged = merge_parental_controls({"pin_code": "hash"}, {"pin_code": None})
        assert merged["pin_code"] is None

    def test_clearing_pin_turns_off_require_pin(self, profile_manager) -> None:
        """Removing the PIN also removes the demand for one."""
        profile = profile_manager.create(ALICE, name="Kids", parental_controls=PIN_REQUIRED)
        updated = profile_manager.update_parental_controls(ALICE, profile.id, {"pin_code": None})
        assert updated.parental_controls["require_pin"] is False
        assert not updated.pin_set

    def test_require_pin_needs_a_pin(self, profile_manager, profile_store) -> None:
        """require_pin=True with no PIN set is rejected and writes nothing."""
        profile = profile_manager.create(ALICE, name="Kids")
        with pytest.raises(ValidationFailed) as excinfo:
            profile_manager.update_parental_controls(ALICE, profile.id, {"require_pin": True})
        assert "parental_controls.require_pin" in excinfo.value.errors
        assert profile_store.get_profile(profile.id).parental_controls["require_pin"] is False

    def test_clear_pin_while_requiring_it_rejected(self) -> None:
        """Sending require_pin=True together with pin_code=None is contradictory."""
        with pytest.raises(ValidationFailed):
            merge_parental_controls({"require_pin": True, "pin_code": "hash"}, {"require_pin": True, "pin_code": None})

    def test_create_requiring_pin_without_one_rejected(self, profile_manager, profile_store) -> None:
        """A new profile cannot ask for a PIN it was never given."""
        with pytest.raises(ValidationFailed):
            profile_manager.create(ALICE, name="Kids", parental_controls={"require_pin": True})
        assert profile_store.count_profiles(ALICE.id) == 0


class TestDelete:
    def test_last_profile_cannot_be_deleted(self, profile_manager, profile_store) -> None:
        """The only profile cannot be deleted."""
        only = profile_manager.create(ALICE, name="Main")
        with pytest.raises(CannotDeleteOnlyProfile):
            profile_manager.delete(ALICE, only.id)
        assert profile_store.get_profile(only.id) is not None

    def test_delete_returns_removed_profile(self, profile_manager, profile_store) -> None:
        """delete returns the removed profile and the row is gone."""
        first, second = _fill(profile_manager, ALICE, 2)
        deleted = profile_manager.delete(ALICE, second.id)
        assert deleted.id == second.id
        assert profile_store.get_profile(second.id) is None
        assert profile_store.count_profiles(ALICE.id) == 1

    def test_delete_current_clears_pointer(self, profile_manager) -> None:
        """Deleting the current profile clears the pointer."""
        first, second = _fill(profile_manager, ALICE, 2)
        profile_manager.switch_current(ALICE, second.id)
        profile_manager.delete(ALICE, second.id)
        assert profile_manager.pointer.get(ALICE.id) is None
        assert profile_manager.get_current(ALICE).id == first.id

    def test_delete_other_profile_keeps_pointer(self, profile_manager) -> None:
        """Deleting a different profile leaves the pointer alone."""
        first, second, third = _fill(profile_manager, ALICE, 3)
        profile_manager.switch_current(ALICE, third.id)
        profile_manager.delete(ALICE, second.id)
        assert profile_manager.pointer.get(ALICE.id) == third.id


class TestCurrent:
    def test_no_profiles(self, profile_manager) -> None:
        """get_current with no profiles raises NoProfileFound."""
        with pytest.raises(NoProfileFound):
            profile_manager.get_current(ALICE)

    def test_fallback_to_oldest(self, profile_manager) -> None:
        """With no selection the oldest profile is current."""
        first, _ = _fill(profile_manager, ALICE, 2)
        assert profile_manager.get_current(ALICE).id == first.id

    def test_switch(self, profile_manager) -> None:
        """switch_current changes what get_current returns."""
        _, second = _fill(profile_manager, ALICE, 2)
        assert profile_manager.switch_current(ALICE, second.id).id == second.id
        assert profile_manager.get_current(ALICE).id == second.id

    def test_dangling_pointer_is_cleared(self, profile_manager, pointer) -> None:
        """A pointer to a vanished profile is dropped and the oldest is used."""
        first = profile_manager.create(ALICE, name="Main")
        pointer.set(ALICE.id, 999)
        assert profile_manager.get_current(ALICE).id == first.id
        assert pointer.get(ALICE.id) is None

    def test_pointer_to_foreign_profile_is_ignored(self, profile_manager, pointer) -> None:
        """A pointer to another user's profile is never honoured."""
        mine = profile_manager.create(ALICE, name="Main")
        theirs = profile_manager.create(BOB, name="Main")
        pointer.set(ALICE.id, theirs.id)
        assert profile_manager.get_current(ALICE).id == mine.id


class TestPointer:
    def test_clear_if_only_matching(self) -> None:
        """clear_if clears only when the stored id matches."""
        store = ActiveProfileStore()
        store.set(1, 10)
        assert store.clear_if(1, 11) is False
        assert store.get(1) == 10
        assert store.clear_if(1, 10) is True
        assert store.get(1) is None

    def test_clear(self) -> None:
        """clear is idempotent."""
        store = ActiveProfileStore()
        store.set(1, 10)
        store.clear(1)
        store.clear(1)
        assert store.get(1) is None


class TestStore:
    def test_unknown_update_field(self, profile_store) -> None:
        """update_profile refuses columns outside the allowed set."""
        with pytest.raises(ValueError):
            profile_store.update_profile(1, user_id=2)

    def test_update_missing_row(self, profile_store) -> None:
        """Updating a missing row reports False."""
        assert profile_store.update_profile(12345, name="x") is False


class TestConcurrency:
    def test_concurrent_creates_never_exceed_cap(self, tmp_path) -> None:
        """Eight racing creates against one free-slot count never pass the cap."""
        store = ProfileStore(f"sqlite:///{tmp_path / 'profiles.db'}")
        manager = ProfileManager(store, ActiveProfileStore())
        manager.create(ALICE, name="Seed")

        barrier = threading.Barrier(8)
        created: list[int] = []
        rejected: list[Exception] = []
        unexpected: list[Exception] = []
        lock = threading.Lock()

        def worker(n: int) -> None:
            barrier.wait()
            try:
                profile = manager.create(ALICE, name=f"Racer {n}")
            except ProfileLimitExceeded as exc:
                with lock:
                    rejected.append(exc)
            except Exception as exc:  # noqa: BLE001 -- surfaced by the assertion below
                with lock:
                    unexpected.append(exc)
            else:
                with lock:
                    created.append(profile.id)

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        try:
            assert unexpected == [], f"Unexpected errors: {unexpected!r}"
            assert store.count_profiles(ALICE.id) == 5
            assert len(created) == 4
            assert len(rejected) == 4
        finally:
            store.close()
