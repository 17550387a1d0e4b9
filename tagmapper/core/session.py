"""Access-token session stored in an HTTP-only cookie."""

from __future__ import annotations

from typing import Callable

from fastapi import Request, Response

from tagmapper.providers.readwise import ReadwiseClient

READWISE_ACCESS_TOKEN_COOKIE = "readwiseAccessToken"
COOKIE_MAX_AGE = 60 * 60 * 24 * 30  # 30 days


def get_token(request: Request) -> str | None:
    """Token from the session cookie, or None when missing or blank."""
    token = request.cookies.get(READWISE_ACCESS_TOKEN_COOKIE)
    if isinstance(token, str) and token.strip():
        return token
    return None


def set_token_cookie(response: Response, token: str, *, secure: bool = True) -> None:
    response.set_cookie(
        READWISE_ACCESS_TOKEN_COOKIE,
        token,
        max_age=COOKIE_MAX_AGE,
        path="/",
        httponly=True,
        secure=secure,
        samesite="strict",
    )


def clear_token_cookie(response: Response, *, secure: bool = True) -> None:
    """Overwrite the cookie with an empty, already expired value."""
    response.delete_cookie(
        READWISE_ACCESS_TOKEN_COOKIE,
        path="/",
        httponly=True,
        secure=secure,
        samesite="strict",
    )


def verify(
    token: str,
    client_factory: Callable[[str], ReadwiseClient] = ReadwiseClient,
) -> None:
    """Probe the Readwise auth endpoint with `token`.

    Raises:
        ReadwiseMissingTokenError: If the token is empty
        ReadwiseAuthError: If Readwise rejects the token (401)
        ReadwiseUnexpectedResponseError: On any other status
    """
    with client_factory(token) as client:
        client.validate_token()
