"""
verify.py
---------
Purpose:
    Bearer JWT verification against the identity provider's JWKS.

Notes:
    - Signing keys are fetched lazily and cached by PyJWKClient.
    - Provides `auth_dependency` for protected routes and
      `account_context` to resolve the caller's account.
"""

from dataclasses import dataclass
from functools import lru_cache

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jwt import PyJWKClient

from leadinbox.config import settings

_security = HTTPBearer()


@lru_cache(maxsize=1)
def _jwk_client() -> PyJWKClient:
    return PyJWKClient(settings.AUTH_JWKS_URL)


def verify_jwt(token: str) -> dict:
    try:
        signing_key = _jwk_client().get_signing_key_from_jwt(token)
        decoded = jwt.decode(
            token,
            signing_key.key,
            algorithms=settings.AUTH_ALGORITHMS,
            audience=settings.AUTH_AUDIENCE,
            options={"verify_exp": True},
        )
        return decoded
    except Exception as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Invalid authentication token: {e}",
            headers={"WWW-Authenticate": "Bearer"},
        ) from e


def auth_dependency(credentials: HTTPAuthorizationCredentials = Depends(_security)) -> dict:
    token = credentials.credentials
    return verify_jwt(token)


@dataclass(frozen=True, slots=True)
class AccountContext:
    user_id: str
    account_id: str


def account_context(claims: dict = Depends(auth_dependency)) -> AccountContext:
    """Caller identity; the account defaults to the user when no claim names one."""
    user_id = claims.get("sub")
    if not user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")
    return AccountContext(user_id=user_id, account_id=claims.get("account_id") or user_id)
