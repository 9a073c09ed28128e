"""
verify.py
---------
Purpose:
    Request authentication for the bot's inbound endpoints.

Notes:
    - /api/messages: Bot Framework bearer tokens (RS256), verified against the
      Bot Framework JWKS. Skipped when MICROSOFT_APP_ID is unset so the local
      emulator can talk to the bot.
    - /api/processnow: shared secret in the X-Key header.
"""

import hmac
from functools import lru_cache

import jwt
from fastapi import Header, HTTPException, status
from jwt import PyJWKClient

from app.config import settings
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

BOT_FRAMEWORK_JWKS_URL = "https://login.botframework.com/v1/.well-known/keys"
BOT_FRAMEWORK_ISSUER = "https://api.botframework.com"


@lru_cache(maxsize=1)
def _jwk_client() -> PyJWKClient:
    return PyJWKClient(BOT_FRAMEWORK_JWKS_URL)


def verify_bot_framework_jwt(token: str) -> dict:
    try:
        signing_key = _jwk_client().get_signing_key_from_jwt(token)
        decoded = jwt.decode(
            token,
            signing_key.key,
            algorithms=["RS256"],
            audience=settings.MICROSOFT_APP_ID,
            issuer=BOT_FRAMEWORK_ISSUER,
            options={"verify_exp": True},
            leeway=300,
        )
        return decoded
    except Exception as e:
        logger.warning("Bot Framework token rejected", error=str(e), error_type=type(e).__name__)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid authentication token",
            headers={"WWW-Authenticate": "Bearer"},
        ) from e


def bot_auth_dependency(authorization: str | None = Header(default=None)) -> dict | None:
    if not settings.MICROSOFT_APP_ID:
        return None

    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing bearer token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return verify_bot_framework_jwt(token)


def verify_process_now_key(x_key: str | None = Header(default=None, alias="X-Key")) -> None:
    """Reject the request unless X-Key matches PROCESS_NOW_KEY."""
    expected = settings.PROCESS_NOW_KEY
    if not expected or not x_key or not hmac.compare_digest(
        x_key.encode("utf-8"), expected.encode("utf-8")
    ):
        logger.warning("Process-now request with invalid key", key_present=bool(x_key))
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid key")
