"""
shared/middleware/auth.py
Bearer-token dependencies. Tokens are minted by the accounts service; here
they are verified, checked against the Redis deny-list, and resolved to an
active operator (ADMIN) or donor (DONOR).
"""

import uuid
from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.redis_client import TokenDenyList, get_redis
from shared.models.models import Donor, User, UserRole
from shared.utils.security import verify_access_token

bearer_scheme = HTTPBearer(auto_error=False)


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


@dataclass(frozen=True)
class TokenData:
    user_id: uuid.UUID
    role: UserRole
    jti: str

    @classmethod
    def from_payload(cls, payload: dict) -> "TokenData":
        return cls(
            user_id=uuid.UUID(payload["sub"]),
            role=UserRole(payload["role"]),
            jti=payload["jti"],
        )


async def get_token_data(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    redis=Depends(get_redis),
) -> TokenData:
    if credentials is None:
        raise _unauthorized("Authentication required")
    try:
        token_data = TokenData.from_payload(verify_access_token(credentials.credentials))
    except (JWTError, KeyError, ValueError):
        raise _unauthorized("Invalid or expired token")

    if await TokenDenyList(redis).is_revoked(token_data.jti):
        raise _unauthorized("Token has been revoked")
    return token_data


async def get_current_user(
    token_data: TokenData = Depends(get_token_data),
    db: AsyncSession = Depends(get_db),
) -> User:
    user = await db.get(User, token_data.user_id)
    if user is None:
        raise _unauthorized("User not found")
    if not user.is_active:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="User account is inactive")
    return user


class RoleRequired:
    """`Depends(RoleRequired(UserRole.ADMIN))` admits only the listed roles."""

    def __init__(self, *roles: UserRole):
        self.roles = roles

    async def __call__(self, current_user: User = Depends(get_current_user)) -> User:
        if current_user.role not in self.roles:
            allowed = ", ".join(role.value for role in self.roles)
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"This action requires role: {allowed}",
            )
        return current_user


require_admin = RoleRequired(UserRole.ADMIN)
require_donor = RoleRequired(UserRole.DONOR)


async def get_current_donor(
    current_user: User = Depends(require_donor),
    db: AsyncSession = Depends(get_db),
) -> Donor:
    result = await db.execute(select(Donor).where(Donor.user_id == current_user.id))
    donor = result.scalar_one_or_none()
    if donor is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Donor profile not found")
    return donor
