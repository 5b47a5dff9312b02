"""Key & token issuer — per-principal RSA keys and RS256 token pairs.

Every principal signs its own tokens with its own private key; verification
uses the public key stored on the principal record. Access and refresh
tokens carry the same identity claims so either one can re-resolve the
principal. Deterministic apart from key generation and ``jti``.
"""

import hashlib
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta

import jwt
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from src.config.settings import Settings
from src.models.common import new_uuid7, utc_now

ALGORITHM = "RS256"
KEY_SIZE = 2048


@dataclass(frozen=True)
class KeyPair:
    private_key: str
    public_key: str


@dataclass(frozen=True)
class TokenLifetimes:
    access: timedelta = timedelta(minutes=15)
    refresh: timedelta = timedelta(hours=2)
    refresh_remember: timedelta = timedelta(days=7)

    @classmethod
    def from_settings(cls, settings: Settings) -> "TokenLifetimes":
        return cls(
            access=timedelta(seconds=settings.ACCESS_TOKEN_TTL_SECONDS),
            refresh=timedelta(seconds=settings.REFRESH_TOKEN_TTL_SECONDS),
            refresh_remember=timedelta(seconds=settings.REFRESH_TOKEN_REMEMBER_TTL_SECONDS),
        )

    def refresh_for(self, remember_me: bool) -> timedelta:
        return self.refresh_remember if remember_me else self.refresh


DEFAULT_LIFETIMES = TokenLifetimes()


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    refresh_expires: datetime


# ---------------------------------------------------------------------------
# Verification outcomes
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Valid:
    claims: dict


@dataclass(frozen=True)
class Expired:
    pass


@dataclass(frozen=True)
class SignatureMismatch:
    pass


@dataclass(frozen=True)
class Malformed:
    reason: str = ""


VerificationResult = Valid | Expired | SignatureMismatch | Malformed


# ---------------------------------------------------------------------------
# Keys
# ---------------------------------------------------------------------------


def generate_key_pair() -> KeyPair:
    """Generate a fresh 2048-bit RSA key pair as PEM strings."""
    private = rsa.generate_private_key(public_exponent=65537, key_size=KEY_SIZE)
    private_pem = private.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )
    public_pem = private.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    return KeyPair(private_key=private_pem.decode(), public_key=public_pem.decode())


# ---------------------------------------------------------------------------
# Tokens
# ---------------------------------------------------------------------------


def _sign(private_key: str, claims: dict, issued_at: datetime, lifetime: timedelta) -> str:
    payload = {
        **claims,
        "iat": issued_at,
        "exp": issued_at + lifetime,
        "jti": str(new_uuid7()),
    }
    return jwt.encode(payload, private_key, algorithm=ALGORITHM)


def issue_token_pair(
    private_key: str,
    claims: dict,
    remember_me: bool,
    *,
    lifetimes: TokenLifetimes = DEFAULT_LIFETIMES,
    now: datetime | None = None,
) -> TokenPair:
    """Sign an access/refresh pair with the same key and identity claims.

    Args:
        private_key: PEM-encoded RSA private key of the principal.
        claims: Identity claims (JSON-serialisable values).
        remember_me: Selects the long refresh lifetime.
        lifetimes: Token lifetimes; defaults to 15 min / 2 h / 7 d.
        now: Issue time, for tests.

    Returns:
        The signed tokens and the refresh expiry the caller must persist.
    """
    issued_at = now or utc_now()
    refresh_lifetime = lifetimes.refresh_for(remember_me)
    return TokenPair(
        access_token=_sign(private_key, claims, issued_at, lifetimes.access),
        refresh_token=_sign(private_key, claims, issued_at, refresh_lifetime),
        refresh_expires=issued_at + refresh_lifetime,
    )


def decode_unverified(token: str | None) -> dict | None:
    """Read claims without checking signature or expiry. None if unreadable."""
    if not token:
        return None
    try:
        claims = jwt.decode(token, options={"verify_signature": False})
    except jwt.PyJWTError:
        return None
    return claims if isinstance(claims, dict) else None


def verify_token(token: str, public_key: str) -> VerificationResult:
    """Verify signature and expiry against a principal's public key."""
    try:
        claims = jwt.decode(token, public_key, algorithms=[ALGORITHM])
    except jwt.ExpiredSignatureError:
        return Expired()
    except jwt.InvalidSignatureError:
        return SignatureMismatch()
    except (jwt.PyJWTError, ValueError) as exc:
        return Malformed(reason=type(exc).__name__)
    return Valid(claims=claims)


# ---------------------------------------------------------------------------
# Invite links
# ---------------------------------------------------------------------------


def new_invite_token() -> tuple[str, str]:
    """Opaque single-use link token and the hash stored in its place."""
    token = secrets.token_urlsafe(32)
    return token, hash_invite_token(token)


def hash_invite_token(token: str) -> str:
    return hashlib.sha256(token.encode()).hexdigest()
