"""
Bearer-token identity for the worker routes.

Tokens are Supabase Auth access tokens issued to the web app. A missing or
invalid token makes the caller anonymous: generation still proceeds without
an owner, while the video library routes answer 401.
"""

import logging
from typing import Callable, Optional

from fastapi import Depends, Header, HTTPException

logger = logging.getLogger(__name__)


def resolve_identity(token: str) -> Optional[str]:
    """Return the Supabase user id for an access token, or None."""
    from .pipeline.store import _get_service_client, supabase_configured

    if not supabase_configured():
        return None
    try:
        response = _get_service_client().auth.get_user(token)
    except Exception as e:
        logger.warning(f"[Auth] Token rejected: {e}")
        return None
    user = getattr(response, "user", None)
    return user.id if user else None


def get_identity_resolver() -> Callable[[str], Optional[str]]:
    return resolve_identity


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def optional_user(
    authorization: Optional[str] = Header(None),
    resolver: Callable[[str], Optional[str]] = Depends(get_identity_resolver),
) -> Optional[str]:
    token = _bearer_token(authorization)
    if token is None:
        return None
    return resolver(token)


def require_user(user_id: Optional[str] = Depends(optional_user)) -> str:
    if not user_id:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return user_id
