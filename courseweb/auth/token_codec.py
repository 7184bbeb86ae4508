"""
token_codec.py — compact signed session tokens (HS256 JWT).

Token layout: base64url(header) . base64url(payload) . base64url(signature)
  header    {"alg": "HS256", "typ": "JWT"}
  payload   caller claims + iat + exp (unix seconds, exp = iat + ttl)
  signature HMAC-SHA256(secret, header_b64 + "." + payload_b64)

Tokens are stateless: there is no revocation list, a token is valid until exp.
verify() fails closed; every failure is a TokenError subclass.
"""
from __future__ import annotations

import binascii
import logging
import re
import time
from typing import Any, Optional

import jwt
from jwt.utils import base64url_decode, base64url_encode

from courseweb.errors import ServerConfigError

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# TTL grammar: integer + unit
# ---------------------------------------------------------------------------
_TTL_PATTERN = re.compile(r"([0-9]+)([smhd])")
_TTL_UNIT_SECONDS = {"s": 1, "m": 60, "h": 60 * 60, "d": 24 * 60 * 60}


class InvalidTTL(ValueError):
    """TTL string does not match <integer><s|m|h|d>."""


class TokenError(Exception):
    """Base class for token verification failures."""


class MalformedToken(TokenError):
    pass


class InvalidSignature(TokenError):
    pass


class TokenExpired(TokenError):
    pass


def parse_ttl(ttl: str) -> int:
    """
    Convert a TTL string to seconds: "30s", "15m", "24h", "7d".
    Raises InvalidTTL for anything else.
    """
    match = _TTL_PATTERN.fullmatch(ttl) if isinstance(ttl, str) else None
    if match is None:
        raise InvalidTTL(f"Invalid TTL {ttl!r}: expected <integer><s|m|h|d>")
    value, unit = match.groups()
    return int(value) * _TTL_UNIT_SECONDS[unit]


class TokenCodec:
    """Issues and verifies tokens with one server-held symmetric secret."""

    def __init__(self, secret: str, algorithm: str = "HS256") -> None:
        if not secret:
            raise ServerConfigError("JWT secret is not configured")
        self._secret = secret
        self.algorithm = algorithm

    def issue(
        self,
        claims: dict[str, Any],
        ttl: str = "24h",
        now: Optional[float] = None,
    ) -> str:
        """Sign a copy of claims with iat/exp added. Raises InvalidTTL before signing."""
        lifetime = parse_ttl(ttl)
        issued_at = int(time.time() if now is None else now)
        payload = {**claims, "iat": issued_at, "exp": issued_at + lifetime}
        return jwt.encode(payload, self._secret, algorithm=self.algorithm)

    def verify(self, token: str) -> dict[str, Any]:
        """Return the token's claims, or raise MalformedToken / InvalidSignature / TokenExpired."""
        if not isinstance(token, str) or token.count(".") != 2:
            raise MalformedToken("Token must have three dot-separated segments")

        signature_segment = token.rsplit(".", 1)[1]
        try:
            canonical = base64url_encode(base64url_decode(signature_segment)).decode("ascii")
        except (binascii.Error, ValueError) as exc:
            # Three segments but unreadable signature bytes: a mismatch, not malformed
            raise InvalidSignature("Token signature mismatch") from exc
        if canonical != signature_segment:
            # Equivalent decodings of a different string are still a different signature
            raise InvalidSignature("Token signature mismatch")

        try:
            return jwt.decode(
                token,
                self._secret,
                algorithms=[self.algorithm],
                options={"require": ["exp", "iat"]},
            )
        except jwt.ExpiredSignatureError as exc:
            raise TokenExpired("Token expired") from exc
        except jwt.InvalidSignatureError as exc:
            raise InvalidSignature("Token signature mismatch") from exc
        except jwt.InvalidTokenError as exc:
            raise MalformedToken(f"Token rejected: {exc}") from exc
