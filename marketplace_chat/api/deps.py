from __future__ import annotations

import logging

from fastapi import Depends
from fastapi.security import OAuth2PasswordBearer

from marketplace_chat.core.security import user_id_from_token

logger = logging.getLogger(__name__)

# Tokens are issued by the external auth provider; the URL only feeds the OpenAPI docs.
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/v1/token", auto_error=False)


def get_current_user_id(token: str | None = Depends(oauth2_scheme)) -> str | None:
    """Identity of the caller, or None for anonymous visitors.

    A token that is present but invalid is rejected outright; deciding whether
    an anonymous caller may proceed is left to the messaging facade.
    """
    if not token:
        logger.debug("No bearer token on request; caller is anonymous")
        return None
    user_id = user_id_from_token(token)
    logger.debug("Resolved current user user_id=%s", user_id)
    return user_id
