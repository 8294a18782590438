"""
API request and response models for tokenauth REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Separation of concerns: auth/ models = domain truth; api/ models = API contract.
"""

from typing import Annotated, Optional

from pydantic import BaseModel, ConfigDict, Field

from auth.models import PermissionGroup, Principal

# Passwords are capped well below anything that would stress bcrypt; bcrypt
# itself only looks at the first 72 bytes. Password fields are never
# whitespace-stripped.
_Password = Annotated[str, Field(min_length=1, max_length=255)]
_Login = Annotated[str, Field(min_length=1, max_length=255)]
_Lifetime = Annotated[int, Field(gt=0, description="Requested token lifetime in seconds.")]


# ---------------------------------------------------------------------------
# Signin / token
# ---------------------------------------------------------------------------


class SigninRequest(BaseModel):
    """Request body for POST /api/v1/auth/signin.

    login and password are optional at the schema level; the handler reports
    an absent one as missing_credential, the same as GET /auth/signin/code.
    """

    login: Optional[str] = Field(default=None, max_length=255)
    password: Optional[str] = Field(default=None, max_length=255)
    expire: Optional[_Lifetime] = None


class CodeSigninRequest(BaseModel):
    """Request body for POST /api/v1/auth/signin/code."""

    model_config = ConfigDict(str_strip_whitespace=True)

    login: Optional[str] = Field(default=None, max_length=255)
    code: Optional[str] = Field(default=None, max_length=128)
    expire: Optional[_Lifetime] = None


class TokenResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    token: str
    token_type: str = "bearer"  # noqa: S105 # nosec B105 -- OAuth token type, not a password


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


class RegisterRequest(BaseModel):
    """Request body for POST /auth/signup and PUT /auth/users/{id}."""

    login: _Login
    password: _Password
    email: str = Field(max_length=255)
    permissions: list[str] = Field(default_factory=list)
    groups: Optional[list[int]] = None


class UserPatch(BaseModel):
    """Request body for PATCH /auth/users/{id}. Omitted fields stay unchanged."""

    login: Optional[str] = Field(default=None, min_length=1, max_length=255)
    password: Optional[str] = Field(default=None, min_length=1, max_length=255)
    email: Optional[str] = Field(default=None, max_length=255)
    permissions: Optional[list[str]] = None
    groups: Optional[list[int]] = None


class UserIdResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    user: int


class UserInfoResponse(BaseModel):
    """Public view of a principal. Never includes the password hash."""

    model_config = ConfigDict(frozen=True)

    id: int
    login: str
    email: str
    permissions: list[str]
    groups: list[int]

    @classmethod
    def from_principal(cls, principal: Principal) -> "UserInfoResponse":
        return cls(
            id=principal.id,
            login=principal.login,
            email=principal.email,
            permissions=sorted(principal.permissions),
            groups=sorted(principal.groups),
        )


class UsersPageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    items: list[UserInfoResponse]
    total: int
    pages: int


class RestoreRequest(BaseModel):
    """Request body for POST /auth/restore/{id}.

    Without code: send a restore code. With code: set password to the new one.
    """

    code: Optional[str] = Field(default=None, min_length=1, max_length=128)
    password: Optional[str] = Field(default=None, min_length=1, max_length=255)


# ---------------------------------------------------------------------------
# Groups
# ---------------------------------------------------------------------------


class GroupBody(BaseModel):
    """Request body for POST /auth/groups and PUT /auth/groups/{id}."""

    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(min_length=1, max_length=255)
    permissions: list[str] = Field(default_factory=list)
    users: list[int] = Field(default_factory=list)


class GroupPatch(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    permissions: Optional[list[str]] = None
    users: Optional[list[int]] = None


class GroupIdResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int


class GroupResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    name: str
    permissions: list[str]
    users: list[int]

    @classmethod
    def from_group(cls, group: PermissionGroup) -> "GroupResponse":
        return cls(
            id=group.id,
            name=group.name,
            permissions=sorted(group.permissions),
            users=sorted(group.users),
        )


class GroupsPageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    items: list[GroupResponse]
    total: int
    pages: int


# ---------------------------------------------------------------------------
# Errors and health
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health.

    status is "healthy" when every component reports "ok", else "degraded".
    """

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)
