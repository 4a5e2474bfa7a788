from datetime import datetime, timedelta, timezone
from typing import Optional
from jose import JWTError, jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from app.core.config import settings
from app.core.logging import api_logger, bind_company
from app.integrations.identity import CompanyAccess, IdentityClient, IdentityServiceError

security = HTTPBearer(auto_error=False)


class PermissionDenied(HTTPException):
    def __init__(self, detail: str = "You do not have access to this company"):
        super().__init__(status_code=status.HTTP_403_FORBIDDEN, detail=detail)


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    """Mint a caller token. Used by tooling and tests; production tokens come from the identity provider."""
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(hours=1))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, settings.IDENTITY_TOKEN_SECRET, algorithm=settings.IDENTITY_TOKEN_ALGORITHM)


def decode_token(token: str) -> dict:
    try:
        return jwt.decode(token, settings.IDENTITY_TOKEN_SECRET, algorithms=[settings.IDENTITY_TOKEN_ALGORITHM])
    except JWTError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )


async def get_current_user(credentials: Optional[HTTPAuthorizationCredentials] = Depends(security)) -> dict:
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    payload = decode_token(credentials.credentials)
    user_id = payload.get("sub")
    if user_id is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
        )
    return {"user_id": str(user_id), "payload": payload}


async def _company_access(identity: IdentityClient, user_id: str, company_id: str) -> CompanyAccess:
    bind_company(company_id)
    try:
        return await identity.check_company_access(user_id, company_id)
    except IdentityServiceError as e:
        api_logger.error("Access check unavailable", error=e, company_id=company_id)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Identity provider unavailable",
        )


async def require_company_member(identity: IdentityClient, current_user: dict, company_id: str) -> CompanyAccess:
    access = await _company_access(identity, current_user["user_id"], company_id)
    if not access.has_access:
        raise PermissionDenied()
    return access


async def require_company_admin(identity: IdentityClient, current_user: dict, company_id: str) -> CompanyAccess:
    access = await _company_access(identity, current_user["user_id"], company_id)
    if not access.is_admin:
        raise PermissionDenied("Admin access to this company is required")
    return access
