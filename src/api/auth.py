"""FastAPI authentication endpoints.

POST /v1/auth/register — create a workspace and its owner
POST /v1/auth/login    — password login for owners, members and clients
POST /v1/auth/verify   — report whether the cookies hold a live session
POST /v1/auth/logout   — drop the stored refresh token and clear cookies
GET  /v1/auth/me       — current identity with permissions
POST /v1/auth/profile  — change display name and/or password
"""

from fastapi import APIRouter, Depends, Request, Response
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from src.api.dependencies import (
    get_app_settings,
    get_identity,
    get_lifetimes,
    get_permission_resolver,
)
from src.auth.cookies import ACCESS_COOKIE, REFRESH_COOKIE, clear_auth_cookies, set_auth_cookies
from src.auth.login import start_session
from src.auth.passwords import MIN_PASSWORD_LENGTH, hash_password, verify_password
from src.auth.principals import PrincipalHandle, PrincipalResolver
from src.auth.session_guard import Authenticated, SessionGuard, build_identity
from src.auth.tokens import TokenLifetimes, decode_unverified, generate_key_pair
from src.config.settings import Settings
from src.db.session import get_async_session
from src.models.common import ClientStatus, PrincipalKind, new_uuid7, normalize_email
from src.models.errors import Conflict, Forbidden, NotFound, Unauthenticated, ValidationFailed
from src.models.identity import Identity
from src.rbac.catalog import bootstrap_workspace_roles
from src.rbac.resolver import PermissionResolver
from src.repositories.principals import WorkspaceRepository, email_in_use, store_session

router = APIRouter(prefix="/v1/auth", tags=["auth"])


# ---------------------------------------------------------------------------
# Request schemas
# ---------------------------------------------------------------------------


class RegisterRequest(BaseModel):
    name: str = Field(..., min_length=1, description="Workspace name.")
    owner_name: str = Field(..., min_length=1)
    email: str
    password: str
    phone: str = ""


class LoginRequest(BaseModel):
    email: str
    password: str
    remember_me: bool = False


class ProfileRequest(BaseModel):
    name: str | None = None
    current_password: str | None = None
    new_password: str | None = None


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


@router.post("/register", status_code=201)
async def register(
    body: RegisterRequest,
    session: AsyncSession = Depends(get_async_session),
    settings: Settings = Depends(get_app_settings),
) -> dict:
    if not settings.ALLOW_REGISTRATION:
        raise Forbidden("Registration is disabled")
    email = normalize_email(body.email)
    if email is None:
        raise ValidationFailed("Invalid email address")
    if len(body.password) < MIN_PASSWORD_LENGTH:
        raise ValidationFailed(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")
    if (message := await email_in_use(session, email)) is not None:
        raise Conflict(message)

    keys = generate_key_pair()
    workspace = await WorkspaceRepository(session).create(
        workspace_id=new_uuid7(), name=body.name.strip(), owner_name=body.owner_name.strip(),
        email=email, password_hash=hash_password(body.password), phone=body.phone.strip(),
        private_key=keys.private_key, public_key=keys.public_key,
    )
    await bootstrap_workspace_roles(session, workspace.workspace_id)
    return {
        "message": "Workspace registered successfully",
        "user": {
            "id": str(workspace.workspace_id),
            "name": workspace.owner_name,
            "email": workspace.email,
            "workspace_name": workspace.name,
        },
    }


@router.post("/login")
async def login(
    body: LoginRequest,
    response: Response,
    session: AsyncSession = Depends(get_async_session),
    permissions: PermissionResolver = Depends(get_permission_resolver),
    settings: Settings = Depends(get_app_settings),
    lifetimes: TokenLifetimes = Depends(get_lifetimes),
) -> dict:
    email = normalize_email(body.email)
    handle = await PrincipalResolver(session).find_by_email(email) if email else None
    if handle is None or not verify_password(body.password, handle.row.password_hash):
        raise Unauthenticated("Invalid email or password")
    if handle.kind == PrincipalKind.CLIENT and handle.row.status != ClientStatus.ACTIVE:
        raise Forbidden("Client portal access is not active")

    started = await start_session(session, handle, body.remember_me, permissions, lifetimes)
    set_auth_cookies(
        response, started.tokens, started.remember_me,
        secure=not settings.is_development, lifetimes=lifetimes,
    )
    return {"message": "Login successful", "user": started.identity.to_profile()}


@router.post("/verify")
async def verify(
    request: Request,
    response: Response,
    session: AsyncSession = Depends(get_async_session),
    permissions: PermissionResolver = Depends(get_permission_resolver),
    settings: Settings = Depends(get_app_settings),
    lifetimes: TokenLifetimes = Depends(get_lifetimes),
) -> dict:
    """Never fails: an unusable session answers ``authenticated: false``."""
    secure = not settings.is_development
    access = request.cookies.get(ACCESS_COOKIE)
    refresh = request.cookies.get(REFRESH_COOKIE)
    if not access and not refresh:
        clear_auth_cookies(response, secure=secure)
        return {"authenticated": False}

    result = await SessionGuard(session, permissions, lifetimes).authenticate(access, refresh)
    if not isinstance(result, Authenticated):
        clear_auth_cookies(response, secure=secure)
        return {"authenticated": False}
    if result.rotated is not None:
        set_auth_cookies(
            response, result.rotated, result.remember_me, secure=secure, lifetimes=lifetimes,
        )
    return {"authenticated": True, "user": result.identity.to_profile()}


@router.post("/logout")
async def logout(
    request: Request,
    response: Response,
    session: AsyncSession = Depends(get_async_session),
    settings: Settings = Depends(get_app_settings),
) -> dict:
    refresh = request.cookies.get(REFRESH_COOKIE)
    if refresh:
        handle = await PrincipalResolver(session).resolve(decode_unverified(refresh))
        if handle is not None and handle.refresh_token == refresh:
            await store_session(
                session, handle.row, refresh_token=None, refresh_expires=None, remember_me=False,
            )
    clear_auth_cookies(response, secure=not settings.is_development)
    return {"message": "Logged out"}


@router.get("/me")
async def me(identity: Identity = Depends(get_identity)) -> dict:
    return {"user": identity.to_profile()}


@router.post("/profile")
async def update_profile(
    body: ProfileRequest,
    identity: Identity = Depends(get_identity),
    session: AsyncSession = Depends(get_async_session),
    permissions: PermissionResolver = Depends(get_permission_resolver),
) -> dict:
    if body.name is None and not body.new_password:
        raise ValidationFailed("Nothing to update")
    handle: PrincipalHandle | None = await PrincipalResolver(session).load(
        identity.kind, identity.principal_id,
    )
    if handle is None:
        raise NotFound("Account not found")
    row = handle.row

    if body.name is not None:
        name = body.name.strip()
        if not name:
            raise ValidationFailed("Name cannot be empty")
        if handle.kind == PrincipalKind.OWNER:
            row.owner_name = name
        elif handle.kind == PrincipalKind.CLIENT:
            row.contact_name = name
        else:
            row.name = name

    if body.new_password:
        if not body.current_password:
            raise ValidationFailed("Current password is required to set a new password")
        if len(body.new_password) < MIN_PASSWORD_LENGTH:
            raise ValidationFailed(
                f"New password must be at least {MIN_PASSWORD_LENGTH} characters"
            )
        if not verify_password(body.current_password, row.password_hash):
            raise ValidationFailed("Current password is incorrect")
        row.password_hash = hash_password(body.new_password)

    await session.flush()
    updated = await build_identity(handle, permissions)
    return {"message": "Profile updated successfully", "user": updated.to_profile()}
