"""
api/routes/v1/auth.py -- Token authentication, user and group REST endpoints.

Routes:
  POST   /api/v1/auth/signin            -- password signin; returns bearer token
  GET    /api/v1/auth/signin/code       -- send a single-use signin code
  POST   /api/v1/auth/signin/code       -- redeem the code; returns bearer token
  POST   /api/v1/auth/touch             -- extend the presented token
  GET    /api/v1/auth/token             -- user info for the presented token
  POST   /api/v1/auth/signout           -- expire the presented token
  POST   /api/v1/auth/signup            -- create user          (auth-register)
  GET    /api/v1/auth/users             -- paged user list      (auth-info)
  GET    /api/v1/auth/users/{id}        -- one user             (auth-info)
  PATCH  /api/v1/auth/users/{id}        -- change some fields   (auth-update)
  PUT    /api/v1/auth/users/{id}        -- replace user         (auth-update)
  DELETE /api/v1/auth/users/{id}        -- cascading delete     (auth-delete)
  POST   /api/v1/auth/restore/{id}      -- send restore code / set new password
  GET    /api/v1/auth/groups            -- paged group list     (auth-info)
  POST   /api/v1/auth/groups            -- create group         (auth-update)
  GET    /api/v1/auth/groups/{id}       -- one group            (auth-info)
  PUT    /api/v1/auth/groups/{id}       -- replace group        (auth-update)
  PATCH  /api/v1/auth/groups/{id}       -- change some fields   (auth-update)
  DELETE /api/v1/auth/groups/{id}       -- delete group         (auth-delete)

Every handler is a stateless adapter: parse, call one auth/ operation, shape
the response. Typed auth errors propagate to the handlers in api/main.py.
The admin permission satisfies every requirement listed above.

Security:
  Signin endpoints are rate-limited per IP (SIGNIN_RATE_LIMIT) and respond
  with Cache-Control: no-store.
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query, Request, Response
from fastapi.responses import JSONResponse

from api.dependencies import bearer_token, get_context, require
from api.limiter import limiter, signin_rate_limit
from api.models import (
    CodeSigninRequest,
    GroupBody,
    GroupIdResponse,
    GroupPatch,
    GroupResponse,
    GroupsPageResponse,
    MessageResponse,
    RegisterRequest,
    RestoreRequest,
    SigninRequest,
    TokenResponse,
    UserIdResponse,
    UserInfoResponse,
    UserPatch,
    UsersPageResponse,
)
from auth import groups, users
from auth.context import AuthContext
from auth.errors import MissingCredential
from auth.models import AUTH_DELETE_PERM, AUTH_INFO_PERM, AUTH_REGISTER_PERM, AUTH_UPDATE_PERM, Principal
from auth.passwords import verify_credentials
from auth.restore import complete_restore, start_restore
from auth.single_use import complete_signin, start_signin
from auth.tokens import issue_or_refresh, revoke, token_info, touch

router = APIRouter()


def _token_response(token: str) -> JSONResponse:
    resp = JSONResponse(status_code=200, content=TokenResponse(token=token).model_dump())
    resp.headers["Cache-Control"] = "no-store"
    return resp


def _required(value: Optional[str], field: str) -> str:
    if not value:
        raise MissingCredential(field)
    return value


# ---------------------------------------------------------------------------
# Signin and token lifecycle
# ---------------------------------------------------------------------------


@limiter.limit(signin_rate_limit)  # above @router so the route keeps its introspectable signature
@router.post("/auth/signin", response_model=TokenResponse)
def signin(request: Request, body: SigninRequest, ctx: AuthContext = Depends(get_context)) -> JSONResponse:
    """Password signin.

    Unknown login and wrong password get the same 401 "bad_credentials".
    Returns the caller's existing token, with a fresh expiry, if one is active.
    """
    principal = verify_credentials(ctx, _required(body.login, "login"), _required(body.password, "password"))
    return _token_response(issue_or_refresh(ctx, principal.id, body.expire))


@limiter.limit(signin_rate_limit)
@router.get("/auth/signin/code", response_model=MessageResponse)
def signin_get_code(
    request: Request,
    login: Optional[str] = Query(default=None, max_length=255),
    ctx: AuthContext = Depends(get_context),
) -> MessageResponse:
    """Send a single-use signin code to the user's contact."""
    start_signin(ctx, _required(login, "login"))
    return MessageResponse(message="Code sent.")


@limiter.limit(signin_rate_limit)
@router.post("/auth/signin/code", response_model=TokenResponse)
def signin_post_code(
    request: Request, body: CodeSigninRequest, ctx: AuthContext = Depends(get_context)
) -> JSONResponse:
    """Redeem a single-use code for a bearer token."""
    login = _required(body.login, "login")
    code = _required(body.code, "code")
    return _token_response(complete_signin(ctx, login, code, body.expire))


@router.post("/auth/touch", response_model=MessageResponse)
def touch_token(
    request: Request,
    expire: Optional[int] = Query(default=None, gt=0),
    ctx: AuthContext = Depends(get_context),
) -> MessageResponse:
    """Extend the presented token. expire is the new lifetime in seconds from now."""
    touch(ctx, bearer_token(request), expire)
    return MessageResponse(message="Token extended.")


@router.get("/auth/token", response_model=UserInfoResponse)
def token_user(request: Request, ctx: AuthContext = Depends(get_context)) -> UserInfoResponse:
    """Return the user the presented token belongs to."""
    return UserInfoResponse.from_principal(token_info(ctx, bearer_token(request)))


@router.post("/auth/signout", response_model=MessageResponse)
def signout(request: Request, ctx: AuthContext = Depends(get_context)) -> MessageResponse:
    """Expire the presented token immediately."""
    revoke(ctx, bearer_token(request))
    return MessageResponse(message="Signed out.")


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


@router.post("/auth/signup", response_model=UserIdResponse, status_code=201)
def signup(
    body: RegisterRequest,
    ctx: AuthContext = Depends(get_context),
    caller: Principal = Depends(require(AUTH_REGISTER_PERM)),
) -> UserIdResponse:
    user_id = users.signup(ctx, body.login, body.password, body.email, body.permissions, body.groups)
    return UserIdResponse(user=user_id)


@router.get("/auth/users", response_model=UsersPageResponse)
def list_users(
    page: int = Query(default=0, ge=0),
    size: Optional[int] = Query(default=None, ge=1),
    ctx: AuthContext = Depends(get_context),
    caller: Principal = Depends(require(AUTH_INFO_PERM)),
) -> UsersPageResponse:
    result = users.list_users(ctx, page, size)
    return UsersPageResponse(
        items=[UserInfoResponse.from_principal(p) for p in result.items],
        total=result.total,
        pages=result.pages,
    )


@router.get("/auth/users/{user_id}", response_model=UserInfoResponse)
def get_user(
    user_id: int,
    ctx: AuthContext = Depends(get_context),
    caller: Principal = Depends(require(AUTH_INFO_PERM)),
) -> UserInfoResponse:
    return UserInfoResponse.from_principal(users.get_user(ctx, user_id))


@router.patch("/auth/users/{user_id}", response_model=MessageResponse)
def patch_user(
    user_id: int,
    body: UserPatch,
    ctx: AuthContext = Depends(get_context),
    caller: Principal = Depends(require(AUTH_UPDATE_PERM)),
) -> MessageResponse:
    users.patch_user(
        ctx,
        user_id,
        login=body.login,
        password=body.password,
        email=body.email,
        permissions=body.permissions,
        groups=body.groups,
    )
    return MessageResponse(message="User updated.")


@router.put("/auth/users/{user_id}", response_model=MessageResponse)
def replace_user(
    user_id: int,
    body: RegisterRequest,
    ctx: AuthContext = Depends(get_context),
    caller: Principal = Depends(require(AUTH_UPDATE_PERM)),
) -> MessageResponse:
    users.replace_user(ctx, user_id, body.login, body.password, body.email, body.permissions, body.groups)
    return MessageResponse(message="User replaced.")


@router.delete("/auth/users/{user_id}", status_code=204)
def delete_user(
    user_id: int,
    ctx: AuthContext = Depends(get_context),
    caller: Principal = Depends(require(AUTH_DELETE_PERM)),
) -> Response:
    users.delete_user(ctx, user_id)
    return Response(status_code=204)


@router.post("/auth/restore/{user_id}", response_model=MessageResponse)
def restore(user_id: int, body: RestoreRequest, ctx: AuthContext = Depends(get_context)) -> MessageResponse:
    """Two-phase password restore.

    Called without a code, sends a restore code to the user. Called with a
    code and a new password, sets the password.
    """
    if body.code is None:
        start_restore(ctx, user_id)
        return MessageResponse(message="Restore code sent.")
    complete_restore(ctx, user_id, body.code, _required(body.password, "password"))
    return MessageResponse(message="Password changed.")


# ---------------------------------------------------------------------------
# Groups
# ---------------------------------------------------------------------------


@router.get("/auth/groups", response_model=GroupsPageResponse)
def list_groups(
    page: int = Query(default=0, ge=0),
    size: Optional[int] = Query(default=None, ge=1),
    ctx: AuthContext = Depends(get_context),
    caller: Principal = Depends(require(AUTH_INFO_PERM)),
) -> GroupsPageResponse:
    result = groups.list_groups(ctx, page, size)
    return GroupsPageResponse(
        items=[GroupResponse.from_group(g) for g in result.items],
        total=result.total,
        pages=result.pages,
    )


@router.post("/auth/groups", response_model=GroupIdResponse, status_code=201)
def create_group(
    body: GroupBody,
    ctx: AuthContext = Depends(get_context),
    caller: Principal = Depends(require(AUTH_UPDATE_PERM)),
) -> GroupIdResponse:
    return GroupIdResponse(id=groups.create_group(ctx, body.name, body.permissions, body.users))


@router.get("/auth/groups/{group_id}", response_model=GroupResponse)
def get_group(
    group_id: int,
    ctx: AuthContext = Depends(get_context),
    caller: Principal = Depends(require(AUTH_INFO_PERM)),
) -> GroupResponse:
    return GroupResponse.from_group(groups.get_group(ctx, group_id))


@router.put("/auth/groups/{group_id}", response_model=MessageResponse)
def replace_group(
    group_id: int,
    body: GroupBody,
    ctx: AuthContext = Depends(get_context),
    caller: Principal = Depends(require(AUTH_UPDATE_PERM)),
) -> MessageResponse:
    groups.replace_group(ctx, group_id, body.name, body.permissions, body.users)
    return MessageResponse(message="Group replaced.")


@router.patch("/auth/groups/{group_id}", response_model=MessageResponse)
def patch_group(
    group_id: int,
    body: GroupPatch,
    ctx: AuthContext = Depends(get_context),
    caller: Principal = Depends(require(AUTH_UPDATE_PERM)),
) -> MessageResponse:
    groups.patch_group(ctx, group_id, name=body.name, permissions=body.permissions, users=body.users)
    return MessageResponse(message="Group updated.")


@router.delete("/auth/groups/{group_id}", status_code=204)
def delete_group(
    group_id: int,
    ctx: AuthContext = Depends(get_context),
    caller: Principal = Depends(require(AUTH_DELETE_PERM)),
) -> Response:
    groups.delete_group(ctx, group_id)
    return Response(status_code=204)
