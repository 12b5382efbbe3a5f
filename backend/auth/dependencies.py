"""
FastAPI dependencies for authentication.

This module maps an ``Authorization`` header to a user id:
- ``resolve_identity`` is the stateless resolver (no database access)
- ``get_current_user_id`` requires a valid bearer token
- ``get_optional_user_id`` allows anonymous callers on public reads
- ``get_current_user`` loads the caller's ``User`` row for profile routes

Every failure mode produces the same Unauthorized response.
"""

import logging
from typing import Optional

from fastapi import Depends, Header
from sqlalchemy.orm import Session

from database import get_db
from errors import Unauthorized
from models import User
from auth.security import verify_token

logger = logging.getLogger(__name__)


def extract_bearer_token(authorization_header: Optional[str]) -> str:
    """
    Pull the token out of ``Bearer <token>``.

    The scheme is matched case-insensitively.

    Raises:
        Unauthorized: if the header is absent, uses another scheme, or has no token
    """
    if not authorization_header:
        logger.info("Missing Authorization header")
        raise Unauthorized()

    scheme, _, token = authorization_header.strip().partition(" ")
    token = token.strip()
    if scheme.lower() != "bearer" or not token:
        logger.info(f"Malformed Authorization header (scheme={scheme!r})")
        raise Unauthorized()
    return token


def resolve_identity(authorization_header: Optional[str]) -> str:
    """
    Resolve the caller's user id from an Authorization header value.

    Args:
        authorization_header: Raw header value, or None when absent

    Returns:
        The ``user_id`` claim of a valid, unexpired token

    Raises:
        Unauthorized: on any extraction or verification failure

    Example:
        >>> user_id = resolve_identity(f"Bearer {issue_token('aZ3kP9qL')}")
        >>> user_id
        'aZ3kP9qL'
    """
    token = extract_bearer_token(authorization_header)
    claims = verify_token(token)
    if claims is None:
        raise Unauthorized()
    logger.debug(f"Resolved identity for user {claims.user_id}")
    return claims.user_id


def get_current_user_id(authorization: Optional[str] = Header(None)) -> str:
    """
    Dependency for routes that require an authenticated caller.

    Example:
        @app.post("/api/v1/projects")
        def create_project(user_id: str = Depends(get_current_user_id)):
            ...
    """
    return resolve_identity(authorization)


def get_optional_user_id(authorization: Optional[str] = Header(None)) -> Optional[str]:
    """
    Dependency for read routes that public projects expose.

    Returns None for anonymous callers. A header that is present but invalid is
    still rejected rather than silently downgraded to anonymous.
    """
    if authorization is None:
        logger.debug("No Authorization header, continuing as anonymous")
        return None
    return resolve_identity(authorization)


def get_current_user(
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
) -> User:
    """
    Load the authenticated caller's user row.

    A token for a user that no longer exists is treated as unauthenticated.
    """
    user = db.query(User).filter(User.id == user_id).first()
    if user is None:
        logger.info(f"Token subject {user_id} has no user row")
        raise Unauthorized()
    return user
