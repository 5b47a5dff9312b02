"""Session guard — per-request authentication with refresh-token rotation.

Flow for each request:

1. Access token present: decode, resolve the principal, verify against its
   public key. If a refresh cookie is also present it must equal the stored
   refresh token, otherwise another device rotated the session first and the
   request is rejected as ``SessionInvalidated``.
2. Access token missing or failing verification and no refresh token:
   ``Unauthenticated``.
3. Refresh path: decode, resolve (needs both keys), verify, then require the
   exact stored value and an unexpired stored expiry.
4. Successful refresh issues a new pair with the recorded remember-me flag
   and persists it in the request's unit of work.
5. Established identities always carry resolved permissions.

Verification failures are normalised into rejections; only unexpected
exceptions are logged.
"""

from dataclasses import dataclass

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from src.auth.principals import PrincipalHandle, PrincipalResolver
from src.auth.tokens import (
    DEFAULT_LIFETIMES,
    TokenLifetimes,
    TokenPair,
    Valid,
    decode_unverified,
    issue_token_pair,
    verify_token,
)
from src.models.common import PrincipalKind, utc_now
from src.models.errors import SessionInvalidated, Unauthenticated
from src.models.identity import Identity
from src.rbac.resolver import PermissionResolver
from src.repositories.principals import store_session

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class Authenticated:
    identity: Identity
    rotated: TokenPair | None = None
    remember_me: bool = False


@dataclass(frozen=True)
class Rejected:
    error: Unauthenticated


AuthResult = Authenticated | Rejected


async def build_identity(handle: PrincipalHandle, permissions: PermissionResolver) -> Identity:
    """Identity for a resolved principal, permissions included."""
    resolved = await permissions.resolve(handle)
    claims = handle.build_claims()
    is_client = handle.kind == PrincipalKind.CLIENT
    return Identity(
        principal_id=handle.principal_id,
        kind=handle.kind,
        workspace_id=handle.workspace_id,
        name=claims["name"],
        email=claims["email"],
        role=claims["role"],
        role_id=handle.role_id,
        role_name=resolved.role_name,
        client_id=handle.principal_id if is_client else None,
        client_name=handle.row.name if is_client else None,
        permissions=resolved.permission_keys,
    )


class SessionGuard:
    def __init__(
        self,
        session: AsyncSession,
        permissions: PermissionResolver,
        lifetimes: TokenLifetimes = DEFAULT_LIFETIMES,
    ) -> None:
        self._session = session
        self._principals = PrincipalResolver(session)
        self._permissions = permissions
        self._lifetimes = lifetimes

    async def authenticate(self, access_token: str | None,
                           refresh_token: str | None) -> AuthResult:
        if access_token:
            try:
                result = await self._try_access(access_token, refresh_token)
            except Exception:
                logger.exception("session_guard_access_failed")
                result = None
            if result is not None:
                return result

        if not refresh_token:
            return Rejected(Unauthenticated("No valid tokens"))

        try:
            return await self._try_refresh(refresh_token)
        except Exception:
            logger.exception("session_guard_refresh_failed")
            return Rejected(Unauthenticated("Authentication failed"))

    async def _try_access(self, access_token: str,
                          refresh_token: str | None) -> AuthResult | None:
        """None means fall through to the refresh path."""
        handle = await self._principals.resolve(decode_unverified(access_token))
        if handle is None or not handle.public_key:
            return None
        if not isinstance(verify_token(access_token, handle.public_key), Valid):
            return None
        if refresh_token and handle.refresh_token != refresh_token:
            return Rejected(SessionInvalidated())
        return Authenticated(identity=await build_identity(handle, self._permissions))

    async def _try_refresh(self, refresh_token: str) -> AuthResult:
        handle = await self._principals.resolve(decode_unverified(refresh_token))
        if handle is None or not handle.public_key or not handle.private_key:
            return Rejected(Unauthenticated("User not found"))
        if not isinstance(verify_token(refresh_token, handle.public_key), Valid):
            return Rejected(Unauthenticated("Invalid refresh token"))

        stored_expiry = handle.refresh_token_expires
        if not handle.refresh_token or stored_expiry is None or stored_expiry < utc_now():
            return Rejected(Unauthenticated("Refresh token expired"))
        if handle.refresh_token != refresh_token:
            return Rejected(SessionInvalidated())

        remember_me = handle.remember_me
        tokens = issue_token_pair(
            handle.private_key, handle.build_claims(), remember_me, lifetimes=self._lifetimes,
        )
        await store_session(
            self._session, handle.row,
            refresh_token=tokens.refresh_token,
            refresh_expires=tokens.refresh_expires,
            remember_me=remember_me,
        )
        identity = await build_identity(handle, self._permissions)
        return Authenticated(identity=identity, rotated=tokens, remember_me=remember_me)
