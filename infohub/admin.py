"""
Admin session cookies.

Login issues two cookies: a session token and a verifier, the hash of the
auth secret joined with the token. The gate needs both; the verifier is
then checked against the token.
"""

import hashlib
import hmac
from typing import Optional
from fastapi import Response

SESSION_COOKIE = "admin_session"
VERIFY_COOKIE = "admin_verify"
SESSION_MAX_AGE = 24 * 3600


def hash_token(value: str) -> str:
    """Hex SHA-256 of `value`."""
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def password_matches(candidate: Optional[str], expected: str) -> bool:
    if not candidate or not expected:
        return False
    return hmac.compare_digest(candidate.encode("utf-8"), expected.encode("utf-8"))


def issue_session(response: Response, secret: str, now_ms: int) -> str:
    """Set both admin cookies on `response`. Returns the session token."""
    token = hash_token(f"{secret}-{now_ms}")
    verifier = hash_token(f"{secret}-{token}")
    for name, value in ((SESSION_COOKIE, token), (VERIFY_COOKIE, verifier)):
        response.set_cookie(
            name, value,
            max_age=SESSION_MAX_AGE,
            path="/",
            httponly=True,
            samesite="strict",
        )
    return token


def clear_session(response: Response):
    response.delete_cookie(SESSION_COOKIE, path="/")
    response.delete_cookie(VERIFY_COOKIE, path="/")


def session_valid(session: Optional[str], verifier: Optional[str], secret: str) -> bool:
    """True when both cookies are present and the verifier matches the token."""
    if not session or not verifier:
        return False
    return hmac.compare_digest(hash_token(f"{secret}-{session}").encode("utf-8"), verifier.encode("utf-8"))


def bearer_matches(authorization: Optional[str], secret: str) -> bool:
    """True when `authorization` is exactly "Bearer <secret>"."""
    if not authorization or not secret:
        return False
    return hmac.compare_digest(authorization.encode("utf-8"), f"Bearer {secret}".encode("utf-8"))
