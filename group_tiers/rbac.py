"""
group_tiers/rbac.py
Principal resolution and role checks.

The core never checks credentials. At the HTTP edge a bearer JWT issued by the
auth collaborator is decoded into a Principal(user_id, role); services only
ever see that principal.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from fastapi import Depends
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt

from group_tiers.config.settings import settings
from group_tiers.errors import ErrorCode, ForbiddenError, UnauthorizedError

logger = logging.getLogger(__name__)

# ================= CONFIG =================

SECRET_KEY = settings.JWT_SECRET_KEY
ALGORITHM = settings.JWT_ALGORITHM
ACCESS_TOKEN_EXPIRE_MINUTES = settings.ACCESS_TOKEN_EXPIRE_MINUTES

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/login", auto_error=False)

# ================= ROLES =================

STUDENT = "STUDENT"
CAPTAIN = "CAPTAIN"
ADMIN = "ADMIN"
SYSTEM_ADMIN = "SYSTEM_ADMIN"

PRINCIPAL_ROLES = [STUDENT, CAPTAIN, ADMIN, SYSTEM_ADMIN]
ADMIN_ROLES = [ADMIN, SYSTEM_ADMIN]


@dataclass(frozen=True)
class Principal:
    """An already-authenticated actor."""
    user_id: int
    role: str

    @property
    def is_admin(self) -> bool:
        return self.role in ADMIN_ROLES


# ================= TOKEN UTILS =================

def create_access_token(user_id: int, role: str, expires_delta: Optional[timedelta] = None) -> str:
    """Create JWT access token carrying user_id and role"""
    expire = datetime.utcnow() + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode = {
        "sub": str(user_id),
        "role": role,
        "exp": expire,
        "type": "access",
    }
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)


def decode_token(token: str) -> Optional[dict]:
    """Decode and validate JWT token"""
    try:
        return jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except JWTError:
        return None


# ================= AUTH DEPENDENCIES =================

async def get_current_principal(token: Optional[str] = Depends(oauth2_scheme)) -> Principal:
    """
    Resolve the bearer token into a Principal.
    Returns 401 when the token is missing, invalid or expired.
    """
    if not token:
        raise UnauthorizedError()

    payload = decode_token(token)
    if not payload or payload.get("type") != "access":
        raise UnauthorizedError("Invalid or expired token", code=ErrorCode.AUTH_INVALID)

    try:
        user_id = int(payload.get("sub"))
    except (TypeError, ValueError):
        raise UnauthorizedError("Invalid or expired token", code=ErrorCode.AUTH_INVALID)

    role = str(payload.get("role") or "").strip().upper()
    if role not in PRINCIPAL_ROLES:
        raise UnauthorizedError("Token carries an unknown role", code=ErrorCode.AUTH_INVALID)
    return Principal(user_id=user_id, role=role)


async def require_admin(principal: Principal = Depends(get_current_principal)) -> Principal:
    """Dependency: only ADMIN / SYSTEM_ADMIN may proceed"""
    ensure_admin(principal)
    return principal


def ensure_admin(principal: Principal, message: str = "This action requires an admin") -> None:
    if not principal.is_admin:
        logger.warning(f"Access denied: user {principal.user_id} with role {principal.role} needs admin")
        raise ForbiddenError(message, code=ErrorCode.ADMIN_REQUIRED)
