from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta

from jose import JWTError, jwt

from marketplace_chat.core.errors import APIError
from marketplace_chat.core.settings import get_settings

logger = logging.getLogger(__name__)


def create_access_token(*, subject: str, expires_delta: timedelta | None = None) -> str:
    """Mint a token shaped like the ones issued by the external auth provider.

    Production tokens come from the provider itself; this is used by local
    tooling and tests.
    """
    settings = get_settings()
    now = datetime.now(UTC)
    expire = now + (expires_delta or timedelta(minutes=settings.access_token_expire_minutes))
    payload: dict[str, object] = {
        "sub": subject,
        "role": "authenticated",
        "iat": int(now.timestamp()),
        "exp": int(expire.timestamp()),
    }
    if settings.jwt_audience:
        payload["aud"] = settings.jwt_audience
    logger.debug("Creating access token subject=%s expires_at=%s", subject, expire.isoformat())
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_access_token(token: str) -> dict[str, object]:
    settings = get_settings()
    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=[settings.jwt_algorithm],
            audience=settings.jwt_audience,
        )
    except JWTError as exc:
        logger.warning("Access token decode failed")
        raise APIError(status_code=401, code="invalid_token", message="Invalid or expired access token") from exc

    logger.debug("Access token decoded subject=%s", payload.get("sub"))
    return payload


def user_id_from_token(token: str) -> str:
    payload = decode_access_token(token)
    subject = payload.get("sub")
    if not isinstance(subject, str) or not subject.strip():
        logger.warning("Token subject is invalid")
        raise APIError(status_code=401, code="invalid_token", message="Token payload is invalid")
    return subject.strip()
