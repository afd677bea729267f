"""
auth.py — Resolve the calling account from a bearer JWT.

Tokens are minted by the account service; billing only verifies them.
jose enforces the signature and `exp`; the account id is the `sub` claim.
"""
from __future__ import annotations

import logging
import os
from typing import Optional

from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import ExpiredSignatureError, JWTError, jwt

log = logging.getLogger(__name__)

SECRET = os.getenv("JWT_SECRET", "leaseline-dev-secret-change-in-production")
ALGORITHM = "HS256"

_bearer = HTTPBearer(auto_error=False)


def account_id_from_token(token: str) -> int:
    """Return the account id carried by *token* or raise 401."""
    try:
        claims = jwt.decode(token, SECRET, algorithms=[ALGORITHM],
                            options={"require_exp": True, "require_sub": True})
    except ExpiredSignatureError:
        raise HTTPException(401, "Token expired")
    except JWTError:
        raise HTTPException(401, "Invalid token")

    try:
        return int(claims["sub"])
    except (TypeError, ValueError):
        log.warning("Rejected token with non-numeric subject %r", claims.get("sub"))
        raise HTTPException(401, "Invalid token")


def get_account_id(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(_bearer),
) -> int:
    """FastAPI dependency for the self-service routes."""
    if credentials is None:
        raise HTTPException(401, "Missing authorization header")
    return account_id_from_token(credentials.credentials)
