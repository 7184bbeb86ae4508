"""
admin_gate.py — bearer-token check in front of admin statistics.

authorize() never tells the caller *why* a token was rejected: expired, bad
signature and malformed all surface as the same Unauthorized message.
"""
import logging
from typing import Any, Optional

from fastapi import Depends, Header

from courseweb.auth.token_codec import TokenCodec, TokenError
from courseweb.config import settings
from courseweb.errors import Unauthorized

logger = logging.getLogger(__name__)

BEARER_PREFIX = "Bearer "


def extract_bearer_token(header: Optional[str]) -> Optional[str]:
    """Return the token from 'Bearer <token>', or None if the header is missing or malformed."""
    if not header or not header.startswith(BEARER_PREFIX):
        return None
    token = header[len(BEARER_PREFIX):].strip()
    return token or None


def authorize(header: Optional[str], codec: TokenCodec) -> dict[str, Any]:
    token = extract_bearer_token(header)
    if token is None:
        raise Unauthorized("Missing bearer token")
    return authorize_token(token, codec)


def authorize_token(token: str, codec: TokenCodec) -> dict[str, Any]:
    try:
        return codec.verify(token)
    except TokenError as exc:
        logger.info("Rejected admin token: %s", type(exc).__name__)
        raise Unauthorized("Invalid or expired token") from exc


# ---------------------------------------------------------------------------
# FastAPI dependencies
# ---------------------------------------------------------------------------

def get_token_codec() -> TokenCodec:
    """Build the codec from settings; raises ServerConfigError if JWT_SECRET is empty."""
    return TokenCodec(settings.jwt_secret, algorithm=settings.jwt_algorithm)


def require_admin(
    authorization: Optional[str] = Header(default=None),
) -> dict[str, Any]:
    """
    Dependency for admin-only routes.

    The header is checked before the codec is built, so a request without a
    token is a 401 even when the server secret is missing.
    """
    token = extract_bearer_token(authorization)
    if token is None:
        raise Unauthorized("Missing bearer token")
    return authorize_token(token, get_token_codec())
