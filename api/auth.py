from __future__ import annotations

from dataclasses import dataclass
from os import getenv

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

ALGORITHM = "HS256"
AUDIENCE = "authenticated"

security = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class CurrentUser:
    id: str
    email: str | None = None


def _jwt_secret() -> str:
    secret = getenv("SUPABASE_JWT_SECRET", "")
    if not secret:
        raise HTTPException(status_code=503, detail="auth_not_configured")
    return secret


def verify_token(token: str, secret: str) -> CurrentUser | None:
    """Decode an identity-provider access token; None when it is invalid or expired."""
    try:
        payload = jwt.decode(token, secret, algorithms=[ALGORITHM], audience=AUDIENCE)
    except JWTError:
        return None
    user_id = payload.get("sub")
    if not user_id:
        return None
    return CurrentUser(id=str(user_id), email=payload.get("email"))


def get_current_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
) -> CurrentUser:
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="unauthorized",
            headers={"WWW-Authenticate": "Bearer"},
        )
    user = verify_token(credentials.credentials, _jwt_secret())
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="invalid_token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return user
