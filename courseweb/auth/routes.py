"""
routes.py — admin login.

POST /api/auth/login  exchange the shared admin password for a bearer token
"""
import logging
import secrets
import time

from fastapi import APIRouter

from courseweb.auth.admin_gate import get_token_codec
from courseweb.auth.schemas import LoginRequest, LoginResponse
from courseweb.auth.token_codec import InvalidTTL
from courseweb.config import settings
from courseweb.errors import ServerConfigError, Unauthorized

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/auth", tags=["Auth"])


@router.post("/login", response_model=LoginResponse)
async def login(body: LoginRequest) -> LoginResponse:
    """
    Issue an admin token valid for ADMIN_TOKEN_TTL.

    500 when ADMIN_PASSWORD or JWT_SECRET is unset, 401 on a wrong password.
    """
    if not settings.admin_password:
        logger.error("ADMIN_PASSWORD is not configured")
        raise ServerConfigError("Server configuration error")

    if not body.password or not secrets.compare_digest(
        body.password.encode("utf-8"), settings.admin_password.encode("utf-8")
    ):
        raise Unauthorized("Incorrect password")

    codec = get_token_codec()
    try:
        token = codec.issue(
            {"role": "admin", "timestamp": int(time.time() * 1000)},
            ttl=settings.admin_token_ttl,
        )
    except InvalidTTL as exc:
        logger.error("ADMIN_TOKEN_TTL is invalid: %s", exc)
        raise ServerConfigError("Server configuration error") from exc
    logger.info("Admin token issued ttl=%s", settings.admin_token_ttl)
    return LoginResponse(token=token, expires_in=settings.admin_token_ttl)
