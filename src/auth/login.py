"""Session start shared by login, invite acceptance and client activation."""

from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession

from src.auth.principals import PrincipalHandle
from src.auth.session_guard import build_identity
from src.auth.tokens import (
    DEFAULT_LIFETIMES,
    TokenLifetimes,
    TokenPair,
    generate_key_pair,
    issue_token_pair,
)
from src.models.identity import Identity
from src.rbac.resolver import PermissionResolver
from src.repositories.principals import store_session


@dataclass(frozen=True)
class StartedSession:
    identity: Identity
    tokens: TokenPair
    remember_me: bool


def ensure_keys(handle: PrincipalHandle) -> None:
    """Give records created before per-principal keys a key pair."""
    if handle.row.private_key and handle.row.public_key:
        return
    keys = generate_key_pair()
    handle.row.private_key = keys.private_key
    handle.row.public_key = keys.public_key


async def start_session(
    session: AsyncSession,
    handle: PrincipalHandle,
    remember_me: bool,
    permissions: PermissionResolver,
    lifetimes: TokenLifetimes = DEFAULT_LIFETIMES,
) -> StartedSession:
    """Issue a token pair and overwrite the principal's stored refresh token.

    Any session on another device is invalidated by the overwrite.
    """
    ensure_keys(handle)
    tokens = issue_token_pair(
        handle.private_key, handle.build_claims(), remember_me, lifetimes=lifetimes,
    )
    await store_session(
        session, handle.row,
        refresh_token=tokens.refresh_token,
        refresh_expires=tokens.refresh_expires,
        remember_me=remember_me,
    )
    identity = await build_identity(handle, permissions)
    return StartedSession(identity=identity, tokens=tokens, remember_me=remember_me)
