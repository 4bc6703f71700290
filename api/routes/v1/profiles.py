"""
api/routes/v1/profiles.py -- Viewing profile REST endpoints.

Routes (all require a bearer token):
  GET    /api/v1/profiles                         -- list + cap bookkeeping
  POST   /api/v1/profiles                         -- create (422 at the cap or on a duplicate name)
  GET    /api/v1/profiles/current                 -- selected profile, else the oldest
  GET    /api/v1/profiles/{id}                    -- 403 foreign, 404 missing
  PUT    /api/v1/profiles/{id}                    -- partial update
  DELETE /api/v1/profiles/{id}                    -- 400 on the last profile
  POST   /api/v1/profiles/{id}/switch             -- set the current profile
  POST   /api/v1/profiles/{id}/parental-controls  -- merge-patch
  POST   /api/v1/profiles/{id}/preferences        -- merge-patch

/profiles/current is registered before /profiles/{profile_id} so the literal
path wins the match.

Handlers stay thin: ProfileManager owns ownership, cap and floor checks and
raises core.errors exceptions that api/main.py renders.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends

from api.models import (
    DataResponse,
    ParentalControlsPatch,
    PreferencesPatch,
    ProfileCreate,
    ProfileDeletedPayload,
    ProfileListPayload,
    ProfileResponse,
    ProfileSwitchPayload,
    ProfileUpdate,
)
from auth.dependencies import get_current_user
from auth.models import User
from profiles.dependencies import get_owned_profile, get_profile_manager
from profiles.models import Profile
from profiles.service import ProfileManager

router = APIRouter()


@router.get("/profiles", response_model=DataResponse[ProfileListPayload])
def list_profiles(
    current_user: User = Depends(get_current_user),
    manager: ProfileManager = Depends(get_profile_manager),
) -> DataResponse[ProfileListPayload]:
    listing = manager.list_profiles(current_user)
    return DataResponse[ProfileListPayload](
        message="Profiles retrieved successfully",
        data=ProfileListPayload(
            profiles=[ProfileResponse.from_profile(p) for p in listing["profiles"]],
            total=listing["total"],
            limit=listing["limit"],
            remaining=listing["remaining"],
            current_profile_id=listing["current_profile_id"],
        ),
    )


@router.post("/profiles", response_model=DataResponse[ProfileResponse], status_code=201)
def create_profile(
    body: ProfileCreate,
    current_user: User = Depends(get_current_user),
    manager: ProfileManager = Depends(get_profile_manager),
) -> DataResponse[ProfileResponse]:
    profile = manager.create(
        current_user,
        name=body.name,
        avatar=body.avatar,
        kids_mode=body.kids_mode,
        parental_controls=body.parental_controls.to_patch() if body.parental_controls else None,
        preferences=body.preferences.to_patch() if body.preferences else None,
    )
    return DataResponse[ProfileResponse](
        message="Profile created successfully",
        data=ProfileResponse.from_profile(profile),
    )


@router.get("/profiles/current", response_model=DataResponse[ProfileResponse])
def current_profile(
    current_user: User = Depends(get_current_user),
    manager: ProfileManager = Depends(get_profile_manager),
) -> DataResponse[ProfileResponse]:
    profile = manager.get_current(current_user)
    return DataResponse[ProfileResponse](
        message="Current profile retrieved successfully",
        data=ProfileResponse.from_profile(profile),
    )


@router.get("/profiles/{profile_id}", response_model=DataResponse[ProfileResponse])
def get_profile(profile: Profile = Depends(get_owned_profile)) -> DataResponse[ProfileResponse]:
    return DataResponse[ProfileResponse](
        message="Profile retrieved successfully",
        data=ProfileResponse.from_profile(profile),
    )


@router.put("/profiles/{profile_id}", response_model=DataResponse[ProfileResponse])
def update_profile(
    profile_id: int,
    body: ProfileUpdate,
    current_user: User = Depends(get_current_user),
    manager: ProfileManager = Depends(get_profile_manager),
) -> DataResponse[ProfileResponse]:
    profile = manager.update(current_user, profile_id, body.to_changes())
    return DataResponse[ProfileResponse](
        message="Profile updated successfully",
        data=ProfileResponse.from_profile(profile),
    )


@router.delete("/profiles/{profile_id}", response_model=DataResponse[ProfileDeletedPayload])
def delete_profile(
    profile_id: int,
    current_user: User = Depends(get_current_user),
    manager: ProfileManager = Depends(get_profile_manager),
) -> DataResponse[ProfileDeletedPayload]:
    deleted = manager.delete(current_user, profile_id)
    return DataResponse[ProfileDeletedPayload](
        message="Profile deleted successfully",
        data=ProfileDeletedPayload(deleted_id=deleted.id, deleted_name=deleted.name),
    )


@router.post("/profiles/{profile_id}/switch", response_model=DataResponse[ProfileSwitchPayload])
def switch_profile(
    profile_id: int,
    current_user: User = Depends(get_current_user),
    manager: ProfileManager = Depends(get_profile_manager),
) -> DataResponse[ProfileSwitchPayload]:
    profile = manager.switch_current(current_user, profile_id)
    return DataResponse[ProfileSwitchPayload](
        message="Profile switched successfully",
        data=ProfileSwitchPayload(profile_id=profile.id, profile_name=profile.name, kids_mode=profile.kids_mode),
    )


@router.post("/profiles/{profile_id}/parental-controls", response_model=DataResponse[ProfileResponse])
def update_parental_controls(
    profile_id: int,
    body: ParentalControlsPatch,
    current_user: User = Depends(get_current_user),
    manager: ProfileManager = Depends(get_profile_manager),
) -> DataResponse[ProfileResponse]:
    """Merge-patch: only the keys present in the body change. pin_code is stored hashed."""
    profile = manager.update_parental_controls(current_user, profile_id, body.to_patch())
    return DataResponse[ProfileResponse](
        message="Parental controls updated successfully",
        data=ProfileResponse.from_profile(profile),
    )


@router.post("/profiles/{profile_id}/preferences", response_model=DataResponse[ProfileResponse])
def update_preferences(
    profile_id: int,
    body: PreferencesPatch,
    current_user: User = Depends(get_current_user),
    manager: ProfileManager = Depends(get_profile_manager),
) -> DataResponse[ProfileResponse]:
    profile = manager.update_preferences(current_user, profile_id, body.to_patch())
    return DataResponse[ProfileResponse](
        message="Preferences updated successfully",
        data=ProfileResponse.from_profile(profile),
    )
