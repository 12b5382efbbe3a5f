"""
Security utilities for password hashing and JWT access tokens.

This module provides cryptographic functions for:
- Password hashing using Argon2id (memory-hard, GPU-resistant)
- Access token issuing and verification (claims: sub, iat, exp, type)
"""

import logging
import secrets
import os
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from jose import JWTError, jwt
from passlib.context import CryptContext

from config import is_production_like
from time_utils import utc_now, from_timestamp

logger = logging.getLogger(__name__)


# Password hashing configuration using Argon2id
pwd_context = CryptContext(schemes=["argon2"], deprecated="auto")

# JWT configuration
# Load SECRET_KEY from environment variable (REQUIRED for security)
SECRET_KEY = os.environ.get("JWT_SECRET_KEY")
if not SECRET_KEY:
    # CRITICAL: In production, this MUST be set via environment variable
    if is_production_like():
        raise ValueError(
            "JWT_SECRET_KEY environment variable is required in production. "
            "Generate a secure key with: python -c 'import secrets; print(secrets.token_urlsafe(32))'"
        )
    else:
        SECRET_KEY = "dev-insecure-key-" + secrets.token_urlsafe(32)
        logger.warning(
            "⚠️  JWT_SECRET_KEY not set! Using temporary development key. "
            "This is INSECURE for production. Set JWT_SECRET_KEY environment variable."
        )

ALGORITHM = os.environ.get("JWT_ALGORITHM", "HS256")

# Default lifetime is one week
try:
    ACCESS_TOKEN_EXPIRE_MINUTES = int(os.environ.get("ACCESS_TOKEN_EXPIRE_MINUTES", "10080"))
    if ACCESS_TOKEN_EXPIRE_MINUTES < 1 or ACCESS_TOKEN_EXPIRE_MINUTES > 43200:  # 1 min to 30 days
        logger.warning(
            f"⚠️  ACCESS_TOKEN_EXPIRE_MINUTES={ACCESS_TOKEN_EXPIRE_MINUTES} is outside safe range (1-43200). "
            "Using default of 10080 minutes."
        )
        ACCESS_TOKEN_EXPIRE_MINUTES = 10080
except ValueError:
    logger.warning(
        "⚠️  Invalid ACCESS_TOKEN_EXPIRE_MINUTES value in environment. Using default of 10080 minutes."
    )
    ACCESS_TOKEN_EXPIRE_MINUTES = 10080

# Validate JWT algorithm
SUPPORTED_ALGORITHMS = ["HS256", "HS384", "HS512"]
if ALGORITHM not in SUPPORTED_ALGORITHMS:
    logger.warning(
        f"⚠️  Unsupported JWT_ALGORITHM={ALGORITHM}. Using HS256. "
        f"Supported: {', '.join(SUPPORTED_ALGORITHMS)}"
    )
    ALGORITHM = "HS256"


@dataclass(frozen=True)
class TokenClaims:
    user_id: str
    issued_at: datetime
    expiry: datetime


def hash_password(password: str) -> str:
    """
    Hash a password using Argon2id.

    Example:
        >>> hashed = hash_password("my_secure_password")
        >>> verify_password("my_secure_password", hashed)
        True
    """
    logger.debug("Hashing password")
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    logger.debug("Verifying password")
    is_valid = pwd_context.verify(plain_password, hashed_password)
    logger.debug(f"Password verification result: {is_valid}")
    return is_valid


def issue_token(user_id: str, expires_delta: Optional[timedelta] = None) -> str:
    """
    Create a signed access token for ``user_id``.

    Args:
        user_id: Id of the user the token authenticates
        expires_delta: Optional custom lifetime; may be negative in tests

    Returns:
        Encoded JWT string

    Example:
        >>> token = issue_token("aZ3kP9qL")
    """
    now = utc_now()
    expire = now + (expires_delta if expires_delta is not None else timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))

    claims = {
        "sub": user_id,
        "iat": int(now.timestamp()),
        "exp": int(expire.timestamp()),
        "type": "access",
    }
    encoded_jwt = jwt.encode(claims, SECRET_KEY, algorithm=ALGORITHM)
    logger.debug(f"Access token issued for user {user_id}, expires at: {expire}")
    return encoded_jwt


def verify_token(token: str) -> Optional[TokenClaims]:
    """
    Verify a token's signature and expiry and return its claims.

    Expiry is checked against ``utc_now()``, not by the JWT library.

    Returns:
        TokenClaims if valid, None otherwise
    """
    logger.debug("Verifying JWT token")
    try:
        payload = jwt.decode(
            token,
            SECRET_KEY,
            algorithms=[ALGORITHM],
            options={"verify_exp": False, "verify_iat": False},
        )
    except JWTError as e:
        logger.info(f"JWT verification failed: {str(e)}")
        return None

    user_id = payload.get("sub")
    exp = payload.get("exp")
    iat = payload.get("iat", 0)
    if not isinstance(user_id, str) or not user_id:
        logger.info("Token payload missing 'sub' claim")
        return None
    if payload.get("type") != "access":
        logger.info(f"Invalid token type: {payload.get('type')}")
        return None
    if isinstance(exp, bool) or not isinstance(exp, int) or isinstance(iat, bool) or not isinstance(iat, int):
        logger.info("Token payload has malformed 'exp' or 'iat' claim")
        return None

    try:
        expiry = from_timestamp(exp)
        issued_at = from_timestamp(iat)
    except (OverflowError, ValueError, OSError):
        logger.info(f"Token timestamps out of range: exp={exp}, iat={iat}")
        return None
    if expiry <= utc_now():
        logger.info(f"Token for user {user_id} expired at {expiry}")
        return None

    logger.debug(f"Token verified successfully for user: {user_id}")
    return TokenClaims(user_id=user_id, issued_at=issued_at, expiry=expiry)
