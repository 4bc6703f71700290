"""
profiles/dependencies.py -- FastAPI Depends() helpers for /profiles routes.

get_owned_profile() is the ownership guard for every /profiles/{profile_id}
route. It runs after get_current_user(), so an unauthenticated caller gets 401
before the profile id is even looked up.
"""

from __future__ import annotations

from fastapi import Depends, Request

from auth.dependencies import get_current_user
from auth.models import User
from profiles.models import Profile
from profiles.service import ProfileManager


def get_profile_manager(request: Request) -> ProfileManager:
    return request.app.state.profile_manager


def get_owned_profile(
    profile_id: int,
    user: User = Depends(get_current_user),
    manager: ProfileManager = Depends(get_profile_manager),
) -> Profile:
    """Resolve profile_id for the caller. 404 if missing, 403 if foreign."""
    return manager.get(user, profile_id)
