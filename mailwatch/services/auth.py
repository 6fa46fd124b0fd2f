"""
Caller identity for the user-facing endpoints.

The browser sends the Cognito ID token in X-Id-Token and the access token
as a bearer token. Signatures are Cognito's business; here we only decode
the claims and check that both tokens are current and were issued by our
user pool.
"""

import time
from dataclasses import dataclass
from typing import Optional

import jwt
from fastapi import Header, HTTPException

from mailwatch.config import get_aws_region, get_user_pool_id
from mailwatch.errors import ConfigurationError
from mailwatch.logger import get_logger

logger = get_logger(__name__)


@dataclass
class CallerIdentity:
    """Authenticated user behind a request."""
    user_id: str
    email: str


def _decode_claims(token: str) -> dict:
    return jwt.decode(token, options={"verify_signature": False})


def validate_tokens(id_token: str, access_token: str) -> CallerIdentity:
    """
    Check Cognito ID and access token claims.

    Raises:
        HTTPException: 401 if either token is unreadable, expired, missing
            sub/email, or issued by another user pool
    """
    try:
        id_claims = _decode_claims(id_token)
        access_claims = _decode_claims(access_token)
    except jwt.PyJWTError:
        logger.error("Token decode/validation error", exc_info=True)
        raise HTTPException(status_code=401, detail="Unauthorized. Invalid tokens")

    now = int(time.time())
    if (
        not id_claims.get("sub")
        or not id_claims.get("email")
        or not id_claims.get("exp")
        or not access_claims.get("exp")
        or id_claims["exp"] < now
        or access_claims["exp"] < now
    ):
        logger.error(
            "Token validation failed",
            extra={"extra_fields": {
                "has_sub": bool(id_claims.get("sub")),
                "has_email": bool(id_claims.get("email"))
            }}
        )
        raise HTTPException(status_code=401, detail="Unauthorized. Tokens expired or invalid")

    try:
        issuer = f"https://cognito-idp.{get_aws_region()}.amazonaws.com/{get_user_pool_id()}"
    except ConfigurationError as e:
        raise HTTPException(status_code=500, detail=str(e))

    if id_claims.get("iss") != issuer or access_claims.get("iss") != issuer:
        raise HTTPException(status_code=401, detail="Unauthorized. Invalid token issuer")

    return CallerIdentity(user_id=id_claims["sub"], email=id_claims["email"])


def get_current_user(
    authorization: Optional[str] = Header(None),
    x_id_token: Optional[str] = Header(None)
) -> CallerIdentity:
    """FastAPI dependency returning the authenticated caller."""
    access_token = None
    if authorization and authorization.startswith("Bearer "):
        access_token = authorization[len("Bearer "):]

    if not x_id_token or not access_token:
        logger.error(
            "Missing required tokens",
            extra={"extra_fields": {
                "has_id_token": bool(x_id_token),
                "has_access_token": bool(access_token)
            }}
        )
        raise HTTPException(status_code=401, detail="Unauthorized. Missing required tokens.")

    return validate_tokens(x_id_token, access_token)
