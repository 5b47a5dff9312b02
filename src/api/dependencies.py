"""FastAPI dependency providers.

Process-wide collaborators (settings, cache, attachment store, email sender)
are built in the application lifespan and read from ``request.app.state``.
Repository factories take AsyncSession via Depends(get_async_session).
"""

from fastapi import Depends, Request, Response
from sqlalchemy.ext.asyncio import AsyncSession

from src.auth.cookies import ACCESS_COOKIE, REFRESH_COOKIE, set_auth_cookies
from src.auth.session_guard import Authenticated, SessionGuard
from src.auth.tokens import TokenLifetimes
from src.cache.redis_cache import RedisCache
from src.config.settings import Settings
from src.db.session import get_async_session
from src.models.identity import Identity
from src.notifications.email import EmailSender
from src.rbac.resolver import PermissionResolver
from src.repositories.principals import (
    ClientRepository,
    InviteRepository,
    MemberRepository,
    WorkspaceRepository,
)
from src.repositories.requirements import RequirementRepository
from src.repositories.roles import PermissionRepository, RoleRepository
from src.repositories.tasks import TaskRepository
from src.storage.attachments import AttachmentStore

# ---------------------------------------------------------------------------
# Application state
# ---------------------------------------------------------------------------


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_cache(request: Request) -> RedisCache:
    return request.app.state.cache


def get_attachment_store(request: Request) -> AttachmentStore:
    return request.app.state.attachment_store


def get_email_sender(request: Request) -> EmailSender:
    return request.app.state.email_sender


def get_lifetimes(settings: Settings = Depends(get_app_settings)) -> TokenLifetimes:
    return TokenLifetimes.from_settings(settings)


# ---------------------------------------------------------------------------
# Authentication
# ---------------------------------------------------------------------------


async def get_permission_resolver(
    session: AsyncSession = Depends(get_async_session),
    cache: RedisCache = Depends(get_cache),
    settings: Settings = Depends(get_app_settings),
) -> PermissionResolver:
    return PermissionResolver(session, cache, settings.PERMISSION_CACHE_TTL_SECONDS)


async def get_identity(
    request: Request,
    response: Response,
    session: AsyncSession = Depends(get_async_session),
    permissions: PermissionResolver = Depends(get_permission_resolver),
    settings: Settings = Depends(get_app_settings),
    lifetimes: TokenLifetimes = Depends(get_lifetimes),
) -> Identity:
    """Authenticate the request from its cookies, rotating them if needed."""
    guard = SessionGuard(session, permissions, lifetimes)
    result = await guard.authenticate(
        request.cookies.get(ACCESS_COOKIE), request.cookies.get(REFRESH_COOKIE),
    )
    if not isinstance(result, Authenticated):
        raise result.error
    if result.rotated is not None:
        set_auth_cookies(
            response, result.rotated, result.remember_me,
            secure=not settings.is_development, lifetimes=lifetimes,
        )
    return result.identity


# ---------------------------------------------------------------------------
# Repositories
# ---------------------------------------------------------------------------


async def get_workspace_repo(
    session: AsyncSession = Depends(get_async_session),
) -> WorkspaceRepository:
    return WorkspaceRepository(session)


async def get_member_repo(
    session: AsyncSession = Depends(get_async_session),
) -> MemberRepository:
    return MemberRepository(session)


async def get_client_repo(
    session: AsyncSession = Depends(get_async_session),
) -> ClientRepository:
    return ClientRepository(session)


async def get_invite_repo(
    session: AsyncSession = Depends(get_async_session),
) -> InviteRepository:
    return InviteRepository(session)


async def get_permission_repo(
    session: AsyncSession = Depends(get_async_session),
) -> PermissionRepository:
    return PermissionRepository(session)


async def get_role_repo(
    session: AsyncSession = Depends(get_async_session),
) -> RoleRepository:
    return RoleRepository(session)


async def get_task_repo(
    session: AsyncSession = Depends(get_async_session),
) -> TaskRepository:
    return TaskRepository(session)


async def get_requirement_repo(
    session: AsyncSession = Depends(get_async_session),
) -> RequirementRepository:
    return RequirementRepository(session)
