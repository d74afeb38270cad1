"""
Bearer token decoding. Tokens are issued by the platform's auth service;
`sub` carries the employee code and `roles` the granted role names.
"""
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional, List

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from ..config import settings


http_bearer = HTTPBearer(auto_error=False)

OPERATOR_ROLES = ("admin", "operator")


def create_access_token(employee_code: str, roles: Optional[List[str]] = None, ttl_seconds: int = 3600) -> str:
    """Mint a token the way the auth service does. Used by the CLI and tests."""
    now = datetime.now(tz=timezone.utc)
    payload = {
        "sub": employee_code,
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(seconds=ttl_seconds)).timestamp()),
        "jti": str(uuid.uuid4()),
        "roles": roles or [],
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_token(token: str) -> dict:
    try:
        return jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")


def get_current_claims(
    creds: Optional[HTTPAuthorizationCredentials] = Depends(http_bearer),
) -> dict:
    if creds is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    payload = decode_token(creds.credentials)
    if not str(payload.get("sub") or "").strip():
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid subject")
    return payload


def get_current_employee_code(claims: dict = Depends(get_current_claims)) -> str:
    return str(claims["sub"]).strip()


def require_roles(*required_roles: str):
    """Any one of the roles is enough; admin always passes."""
    def _dep(claims: dict = Depends(get_current_claims)):
        role_names = {str(r).lower() for r in claims.get("roles") or []}
        if "admin" not in role_names and not role_names.intersection(required_roles):
            raise HTTPException(status_code=403, detail="Forbidden")
        return claims

    return _dep
