"""
Bearer token verification.

Tokens are issued by the portal's identity service; this service only
verifies them. Claims: sub (user id), organization_id, role.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from app.config import settings
from app.errors import AuthorizationError
from app.logging_utils import annotate_request_log
from app.models import STAFF_ROLE

logger = logging.getLogger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class CurrentUser:
    user_id: str
    organization_id: Optional[str]
    role: Optional[str]

    @property
    def is_staff(self) -> bool:
        return self.role == STAFF_ROLE

    def scope_organization(self, requested: Optional[str]) -> Optional[str]:
        """
        Organization a read is allowed to cover.

        Staff get what they asked for (None means every organization).
        Everyone else is pinned to their own organization.
        """
        if self.is_staff:
            return requested
        if not self.organization_id:
            raise AuthorizationError("User is not assigned to an organization")
        if requested is not None and requested != self.organization_id:
            logger.warning(f"User {self.user_id} denied access to organization {requested}")
            raise AuthorizationError(f"Access denied to organization {requested}")
        return self.organization_id


def create_access_token(
    user_id: str,
    organization_id: Optional[str] = None,
    role: Optional[str] = None,
    expires_delta: Optional[timedelta] = None
) -> str:
    """Mint a token with the claims get_current_user expects."""
    expire = datetime.now(timezone.utc) + (
        expires_delta or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)
    )
    to_encode = {"exp": expire, "sub": str(user_id), "organization_id": organization_id, "role": role}
    return jwt.encode(to_encode, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


def verify_token(token: str) -> Optional[CurrentUser]:
    try:
        payload = jwt.decode(token, settings.JWT_SECRET_KEY, algorithms=[settings.JWT_ALGORITHM])
    except JWTError as e:
        logger.warning(f"Rejected bearer token: {e}")
        return None

    user_id = payload.get("sub")
    if not user_id:
        return None
    return CurrentUser(
        user_id=user_id,
        organization_id=payload.get("organization_id"),
        role=payload.get("role"),
    )


def get_current_user(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme)
) -> CurrentUser:
    """Dependency resolving the caller from the Authorization header; 401 otherwise."""
    user = verify_token(credentials.credentials) if credentials else None
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    annotate_request_log(request, user_id=user.user_id, organization_id=user.organization_id)
    return user


def require_staff(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
    if not user.is_staff:
        raise AuthorizationError("Staff access required")
    return user
