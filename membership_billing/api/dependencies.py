from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from typing import Optional, Dict, Any, List
from dataclasses import dataclass, field
import logging
import os
import jwt

from ..core.config import settings
from ..core.logging_config import generate_request_id
from ..services.audit_service import ActorContext

logger = logging.getLogger(__name__)
# Configure HTTPBearer to return 401 instead of 403 for authentication failures
security = HTTPBearer(auto_error=False)


@dataclass
class TokenClaims:
    """Simple container for validated JWT token claims"""
    user_id: str
    email: Optional[str] = None
    full_name: Optional[str] = None
    authorities: List[str] = field(default_factory=list)
    access_token: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return settings.ADMIN_AUTHORITY in (self.authorities or [])


def decode_token(token: str) -> Dict[str, Any]:
    """Verify an HS256 bearer token issued by the identity service"""
    secret = os.environ.get("JWT_SECRET_KEY")
    if not secret:
        logger.error("JWT_SECRET_KEY not configured - rejecting all tokens")
        raise jwt.InvalidTokenError("Token verification is not configured")
    return jwt.decode(token, secret, algorithms=[settings.JWT_ALGORITHM])


async def validate_token(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security)
) -> TokenClaims:
    """Validate the bearer token and extract claims"""

    if not credentials:
        logger.warning("No authorization credentials provided")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authorization header missing",
            headers={"WWW-Authenticate": "Bearer"}
        )

    token = credentials.credentials

    try:
        token_info = decode_token(token)
    except jwt.ExpiredSignatureError:
        logger.warning("Token has expired")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token has expired",
            headers={"WWW-Authenticate": "Bearer"}
        )
    except jwt.InvalidTokenError as e:
        logger.warning(f"Invalid token: {e}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token",
            headers={"WWW-Authenticate": "Bearer"}
        )

    user_id = token_info.get("user_id") or token_info.get("sub")
    if not user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token missing user_id claim",
            headers={"WWW-Authenticate": "Bearer"}
        )

    return TokenClaims(
        user_id=str(user_id),
        email=token_info.get("email"),
        full_name=token_info.get("full_name"),
        authorities=token_info.get("authorities", []),
        access_token=token
    )


async def require_admin(
    claims: TokenClaims = Depends(validate_token)
) -> TokenClaims:
    """Ensure the user has billing admin privileges"""

    if not claims.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin privileges required"
        )

    return claims


async def get_admin_actor(
    request: Request,
    claims: TokenClaims = Depends(require_admin)
) -> ActorContext:
    """The authenticated admin as the actor passed into service calls"""
    return ActorContext(
        actor_id=claims.user_id,
        actor_type="admin",
        email=claims.email,
        ip_address=request.client.host if request.client else None,
        request_id=request.headers.get("x-request-id") or generate_request_id(),
    )
