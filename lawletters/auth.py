"""
Talk to My Lawyer - Authentication Utilities
Password hashing, JWT tokens, request context and role capabilities
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

import bcrypt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import JWTError, jwt
from sqlalchemy.orm import Session

from .config import JWT_SECRET_KEY, JWT_ALGORITHM, ACCESS_TOKEN_EXPIRE_HOURS
from .database import get_db
from .errors import AuthorizationError
from .models.db_models import ProfileDB, Role

# Bearer token security
security = HTTPBearer()


# =============================================================================
# CAPABILITIES
# =============================================================================

class Capability(str, Enum):
    """Everything a role may be allowed to do, checked in one place."""
    SUBMIT_LETTER = "submit_letter"
    UPDATE_LETTER_STATUS = "update_letter_status"
    VIEW_ALL_LETTERS = "view_all_letters"
    EMAIL_ANY_LETTER = "email_any_letter"
    UNLIMITED_GENERATION = "unlimited_generation"
    VIEW_OWN_COMMISSIONS = "view_own_commissions"
    MANAGE_COUPONS = "manage_coupons"
    MANAGE_USERS = "manage_users"
    CHECKOUT_FOR_OTHERS = "checkout_for_others"


ROLE_CAPABILITIES = {
    Role.USER: frozenset({
        Capability.SUBMIT_LETTER,
    }),
    Role.EMPLOYEE: frozenset({
        Capability.SUBMIT_LETTER,
        Capability.UPDATE_LETTER_STATUS,
        Capability.VIEW_ALL_LETTERS,
        Capability.EMAIL_ANY_LETTER,
        Capability.UNLIMITED_GENERATION,
        Capability.VIEW_OWN_COMMISSIONS,
    }),
    Role.ADMIN: frozenset(Capability),
}


def has_capability(role: Role, capability: Capability) -> bool:
    """Single authorization check used by every router and service."""
    return capability in ROLE_CAPABILITIES.get(Role(role), frozenset())


@dataclass(frozen=True)
class RequestContext:
    """Verified identity passed explicitly to services."""
    user_id: str
    email: str
    role: Role

    def can(self, capability: Capability) -> bool:
        return has_capability(self.role, capability)

    def require(self, capability: Capability) -> None:
        if not self.can(capability):
            raise AuthorizationError(
                f"Role '{self.role.value}' is not allowed to {capability.value.replace('_', ' ')}"
            )

    @classmethod
    def from_profile(cls, profile: ProfileDB) -> "RequestContext":
        return cls(user_id=profile.id, email=profile.email, role=Role(profile.role))


# =============================================================================
# PASSWORDS & TOKENS
# =============================================================================

def hash_password(password: str) -> str:
    """Hash a password using bcrypt."""
    password_bytes = password.encode('utf-8')
    salt = bcrypt.gensalt()
    return bcrypt.hashpw(password_bytes, salt).decode('utf-8')


def verify_password(plain_password: str, hashed_password: str) -> bool:
    """Verify a password against its hash."""
    password_bytes = plain_password.encode('utf-8')
    hashed_bytes = hashed_password.encode('utf-8')
    return bcrypt.checkpw(password_bytes, hashed_bytes)


def create_access_token(user_id: str, email: str, role: str = "user") -> str:
    """Create a JWT access token with role claim."""
    expire = datetime.utcnow() + timedelta(hours=ACCESS_TOKEN_EXPIRE_HOURS)
    to_encode = {
        "sub": user_id,
        "email": email,
        "role": role,
        "exp": expire
    }
    return jwt.encode(to_encode, JWT_SECRET_KEY, algorithm=JWT_ALGORITHM)


def decode_token(token: str) -> Optional[dict]:
    """Decode and validate a JWT token. Expired tokens fail here too."""
    try:
        payload = jwt.decode(token, JWT_SECRET_KEY, algorithms=[JWT_ALGORITHM])
        return payload
    except JWTError:
        return None


def resolve_token(token: str, db: Session) -> Optional[ProfileDB]:
    """Map a bearer token to its profile, or None."""
    payload = decode_token(token)
    if payload is None:
        return None

    user_id = payload.get("sub")
    if user_id is None:
        return None

    return db.query(ProfileDB).filter(ProfileDB.id == user_id).first()


# =============================================================================
# FASTAPI DEPENDENCIES
# =============================================================================

async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    db: Session = Depends(get_db)
) -> RequestContext:
    """
    Dependency to get the current authenticated user.
    Validates JWT token and fetches the profile; the role always comes
    from the database, never from the token claim.
    """
    profile = resolve_token(credentials.credentials, db)
    if profile is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return RequestContext.from_profile(profile)


def require_capability(capability: Capability):
    """
    Dependency factory for role-gated routes.

    Usage:
        ctx: RequestContext = Depends(require_capability(Capability.MANAGE_USERS))
    """
    async def dependency(ctx: RequestContext = Depends(get_current_user)) -> RequestContext:
        if not ctx.can(capability):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Insufficient permissions"
            )
        return ctx

    return dependency
