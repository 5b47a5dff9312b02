"""Session cookies. The whole session lives in these two cookies."""

from fastapi import Response

from src.auth.tokens import DEFAULT_LIFETIMES, TokenLifetimes, TokenPair

ACCESS_COOKIE = "accessToken"
REFRESH_COOKIE = "refreshToken"


def set_auth_cookies(
    response: Response,
    tokens: TokenPair,
    remember_me: bool,
    *,
    secure: bool,
    lifetimes: TokenLifetimes = DEFAULT_LIFETIMES,
) -> None:
    common = {"httponly": True, "secure": secure, "samesite": "lax", "path": "/"}
    response.set_cookie(
        ACCESS_COOKIE, tokens.access_token,
        max_age=int(lifetimes.access.total_seconds()), **common,
    )
    response.set_cookie(
        REFRESH_COOKIE, tokens.refresh_token,
        max_age=int(lifetimes.refresh_for(remember_me).total_seconds()), **common,
    )


def clear_auth_cookies(response: Response, *, secure: bool) -> None:
    for name in (ACCESS_COOKIE, REFRESH_COOKIE):
        response.delete_cookie(name, path="/", secure=secure, httponly=True, samesite="lax")
