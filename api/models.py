"""
API request and response models for Molunzaka REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py and
profiles/models.py, which own the internal domain representation. Route
handlers map between the two.

Field-level validation lives here, so services receive well-typed input.
Business rules (password policy, uniqueness, caps, ownership) live in the
services and surface as core.errors exceptions.
"""

from datetime import date
from enum import Enum
from typing import Annotated, Any, Generic, Optional, TypeVar

from pydantic import (
    AnyHttpUrl,
    BaseModel,
    ConfigDict,
    Field,
    StringConstraints,
    TypeAdapter,
    ValidationError,
    ValidationInfo,
    field_validator,
)

from auth.models import AccessToken, Role, User
from profiles.models import Profile

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

NAME_PATTERN = r"^[a-zA-Z\s'-]*$"
EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"
PHONE_PATTERN = r"^\+?[0-9 ()-]{7,20}$"
PIN_PATTERN = r"^\d{4}$"

_MIN_BIRTH_DATE = date(1900, 1, 1)

# Whitespace is part of a password, so these opt out of str_strip_whitespace.
Password = Annotated[str, StringConstraints(strip_whitespace=False, min_length=1, max_length=255)]
PasswordConfirmation = Annotated[str, StringConstraints(strip_whitespace=False)]

_HTTP_URL = TypeAdapter(AnyHttpUrl)

T = TypeVar("T")


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class ContentRatingEnum(str, Enum):
    G = "G"
    PG = "PG"
    PG13 = "PG-13"
    R = "R"
    NC17 = "NC-17"


class LanguageEnum(str, Enum):
    en = "en"
    es = "es"
    fr = "fr"
    de = "de"
    pt = "pt"
    ja = "ja"
    zh = "zh"
    ar = "ar"
    hi = "hi"


class SubtitleLanguageEnum(str, Enum):
    en = "en"
    es = "es"
    fr = "fr"
    de = "de"
    pt = "pt"
    ja = "ja"
    zh = "zh"
    ar = "ar"
    hi = "hi"
    none = "none"


class QualityEnum(str, Enum):
    auto = "auto"
    q480 = "480p"
    q720 = "720p"
    q1080 = "1080p"
    q4k = "4k"


def _normalize_email(value: Any) -> Any:
    return value.strip().lower() if isinstance(value, str) else value


def _check_avatar_url(value: Optional[str]) -> Optional[str]:
    """Accept an absolute http(s) URL and keep it exactly as sent."""
    if value is None:
        return value
    try:
        _HTTP_URL.validate_python(value)
    except ValidationError as exc:
        raise ValueError("The avatar must be a valid URL.") from exc
    return value


# ---------------------------------------------------------------------------
# Auth -- request models
# ---------------------------------------------------------------------------


class RegisterRequest(BaseModel):
    """Request body for POST /api/v1/auth/register."""

    model_config = ConfigDict(str_strip_whitespace=True)

    first_name: str = Field(min_length=1, max_length=255, pattern=NAME_PATTERN)
    last_name: str = Field(min_length=1, max_length=255, pattern=NAME_PATTERN)
    email: str = Field(max_length=255, pattern=EMAIL_PATTERN)
    password: Password
    password_confirmation: PasswordConfirmation
    phone: Optional[str] = Field(default=None, max_length=20, pattern=PHONE_PATTERN)
    date_of_birth: Optional[date] = None

    @field_validator("email", mode="before")
    @classmethod
    def normalize_email(cls, value: Any) -> Any:
        return _normalize_email(value)

    @field_validator("password_confirmation")
    @classmethod
    def passwords_match(cls, value: str, info: ValidationInfo) -> str:
        if "password" in info.data and value != info.data["password"]:
            raise ValueError("Passwords do not match.")
        return value

    @field_validator("date_of_birth")
    @classmethod
    def birth_date_in_range(cls, value: Optional[date]) -> Optional[date]:
        if value is None:
            return value
        if value >= date.today():
            raise ValueError("Date of birth must be in the past.")
        if value <= _MIN_BIRTH_DATE:
            raise ValueError("Date of birth must be after 1900-01-01.")
        return value


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login."""

    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(min_length=1, max_length=255)
    password: Password
    device_name: Optional[str] = Field(default=None, max_length=255)
    remember_me: bool = False

    @field_validator("email", mode="before")
    @classmethod
    def normalize_email(cls, value: Any) -> Any:
        return _normalize_email(value)


class ForgotPasswordRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(max_length=255, pattern=EMAIL_PATTERN)

    @field_validator("email", mode="before")
    @classmethod
    def normalize_email(cls, value: Any) -> Any:
        return _normalize_email(value)


class ResetPasswordRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(max_length=255, pattern=EMAIL_PATTERN)
    token: str = Field(min_length=1, max_length=255)
    password: Password
    password_confirmation: PasswordConfirmation

    @field_validator("email", mode="before")
    @classmethod
    def normalize_email(cls, value: Any) -> Any:
        return _normalize_email(value)

    @field_validator("password_confirmation")
    @classmethod
    def passwords_match(cls, value: str, info: ValidationInfo) -> str:
        if "password" in info.data and value != info.data["password"]:
            raise ValueError("Passwords do not match.")
        return value


class RolesUpdate(BaseModel):
    """Request body for PUT /api/v1/auth/users/{id}/roles. Replaces the role set."""

    roles: list[str] = Field(max_length=20)


# ---------------------------------------------------------------------------
# Profiles -- request models
# ---------------------------------------------------------------------------


class ParentalControlsPatch(BaseModel):
    """Merge-patch body for parental controls. Unsent fields keep their value.

    Unknown keys are ignored. watch_time_limit and pin_code accept an explicit
    null to clear them; the other keys ignore null.
    """

    content_rating: Optional[ContentRatingEnum] = None
    watch_time_limit: Optional[int] = Field(default=None, ge=0, le=1440)
    require_pin: Optional[bool] = None
    pin_code: Optional[str] = Field(default=None, pattern=PIN_PATTERN)

    def to_patch(self) -> dict[str, Any]:
        data = self.model_dump(exclude_unset=True, mode="json")
        return {k: v for k, v in data.items() if v is not None or k in {"watch_time_limit", "pin_code"}}


class PreferencesPatch(BaseModel):
    """Merge-patch body for viewing preferences. Unknown keys are ignored."""

    language: Optional[LanguageEnum] = None
    subtitle_language: Optional[SubtitleLanguageEnum] = None
    quality: Optional[QualityEnum] = None
    autoplay: Optional[bool] = None
    notifications: Optional[bool] = None

    def to_patch(self) -> dict[str, Any]:
        data = self.model_dump(exclude_unset=True, mode="json")
        return {k: v for k, v in data.items() if v is not None}


class ProfileCreate(BaseModel):
    """Request body for POST /api/v1/profiles."""

    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(min_length=1, max_length=50)
    avatar: Optional[str] = Field(default=None, max_length=500)
    kids_mode: bool = False
    parental_controls: Optional[ParentalControlsPatch] = None
    preferences: Optional[PreferencesPatch] = None

    @field_validator("avatar")
    @classmethod
    def avatar_is_url(cls, value: Optional[str]) -> Optional[str]:
        return _check_avatar_url(value)


class ProfileUpdate(BaseModel):
    """Request body for PUT /api/v1/profiles/{id}. Only sent fields change."""

    model_config = ConfigDict(str_strip_whitespace=True)

    name: Optional[str] = Field(default=None, min_length=1, max_length=50)
    avatar: Optional[str] = Field(default=None, max_length=500)
    kids_mode: Optional[bool] = None
    parental_controls: Optional[ParentalControlsPatch] = None
    preferences: Optional[PreferencesPatch] = None

    @field_validator("avatar")
    @classmethod
    def avatar_is_url(cls, value: Optional[str]) -> Optional[str]:
        return _check_avatar_url(value)

    def to_changes(self) -> dict[str, Any]:
        """Sent fields only. name and kids_mode ignore null; avatar=null clears it."""
        changes: dict[str, Any] = {}
        for key in self.model_fields_set:
            value = getattr(self, key)
            if key in {"parental_controls", "preferences"}:
                if value is not None:
                    changes[key] = value.to_patch()
            elif value is not None or key == "avatar":
                changes[key] = value
        return changes


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class DataResponse(BaseModel, Generic[T]):
    """Success envelope: every 2xx body is {"message": ..., "data": ...}."""

    message: str
    data: Optional[T] = None


class UserResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    first_name: str
    last_name: str
    email: str
    phone: Optional[str]
    date_of_birth: Optional[str]
    email_verified_at: Optional[str]
    created_at: Optional[str]
    roles: list[str] = Field(default_factory=list)

    @classmethod
    def from_user(cls, user: User, roles: Optional[list[Role]] = None) -> "UserResponse":
        return cls(
            id=user.id,
            first_name=user.first_name,
            last_name=user.last_name,
            email=user.email,
            phone=user.phone,
            date_of_birth=user.date_of_birth,
            email_verified_at=user.email_verified_at,
            created_at=user.created_at,
            roles=sorted(r.name for r in roles or []),
        )


class AuthPayload(BaseModel):
    """data for register and login. token is shown once and never stored."""

    model_config = ConfigDict(frozen=True)

    user: UserResponse
    token: str
    token_type: str = "Bearer"


class LoginPayload(AuthPayload):
    remember_me: bool = False


class UserPayload(BaseModel):
    model_config = ConfigDict(frozen=True)

    user: UserResponse


class VerificationPayload(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: int
    verified: bool
    email: str


class LogoutAllPayload(BaseModel):
    model_config = ConfigDict(frozen=True)

    revoked: int


class AccessTokenResponse(BaseModel):
    """One device token. The raw token value is never returned after creation."""

    model_config = ConfigDict(frozen=True)

    id: int
    name: str
    token_prefix: str
    created_at: Optional[str]
    last_used_at: Optional[str]
    current: bool = False

    @classmethod
    def from_token(cls, token: AccessToken, current_id: Optional[int] = None) -> "AccessTokenResponse":
        return cls(
            id=token.id,
            name=token.name,
            token_prefix=token.token_prefix,
            created_at=token.created_at,
            last_used_at=token.last_used_at,
            current=token.id == current_id,
        )


class RoleResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    permissions: list[str]

    @classmethod
    def from_role(cls, role: Role) -> "RoleResponse":
        return cls(name=role.name, permissions=sorted(role.permissions))


class UserRolesPayload(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: int
    roles: list[RoleResponse]
    permissions: list[str]


class ProfileResponse(BaseModel):
    """A profile as the owner sees it. The PIN hash is replaced by pin_set."""

    model_config = ConfigDict(frozen=True)

    id: int
    user_id: int
    name: str
    avatar: Optional[str]
    kids_mode: bool
    parental_controls: dict[str, Any]
    preferences: dict[str, Any]
    pin_set: bool
    created_at: str
    updated_at: str

    @classmethod
    def from_profile(cls, profile: Profile) -> "ProfileResponse":
        controls = {k: v for k, v in profile.parental_controls.items() if k != "pin_code"}
        return cls(
            id=profile.id,
            user_id=profile.user_id,
            name=profile.name,
            avatar=profile.avatar,
            kids_mode=profile.kids_mode,
            parental_controls=controls,
            preferences=dict(profile.preferences),
            pin_set=profile.pin_set,
            created_at=profile.created_at,
            updated_at=profile.updated_at,
        )


class ProfileListPayload(BaseModel):
    model_config = ConfigDict(frozen=True)

    profiles: list[ProfileResponse]
    total: int
    limit: int
    remaining: int
    current_profile_id: Optional[int]


class ProfileDeletedPayload(BaseModel):
    model_config = ConfigDict(frozen=True)

    deleted_id: int
    deleted_name: str


class ProfileSwitchPayload(BaseModel):
    model_config = ConfigDict(frozen=True)

    profile_id: int
    profile_name: str
    kids_mode: bool
    active: bool = True


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[Any] = None
    errors: Optional[dict[str, list[str]]] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    message: str
    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "ok"
    version: str
    components: dict[str, str] = Field(default_factory=dict)
