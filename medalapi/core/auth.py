"""
인증 컨텍스트

사용자 인증은 외부 인증 서비스가 담당합니다. 이 서비스는 Bearer JWT를
디코드해 (user_id, role)만 신뢰하고 추가 검증(DB 조회 등)은 하지 않습니다.
"""

import enum
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from pydantic import BaseModel, ValidationError as PydanticValidationError

from medalapi.config import settings
from medalapi.core.exceptions import AuthenticationError, AuthorizationError


class UserRole(str, enum.Enum):
    USER = "user"
    ADMIN = "admin"


class AuthContext(BaseModel):
    user_id: int
    role: UserRole = UserRole.USER

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN


# Security scheme
security = HTTPBearer(auto_error=False)


def create_access_token(
    user_id: int, role: UserRole = UserRole.USER, expires_delta: Optional[timedelta] = None
) -> str:
    """테스트/내부 도구용 토큰 발급"""
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(hours=1))
    payload = {"user_id": user_id, "role": role.value, "exp": expire}
    return jwt.encode(payload, settings.SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> AuthContext:
    """JWT 토큰을 검증하고 인증 컨텍스트를 반환합니다."""
    if credentials is None:
        raise AuthenticationError("Missing bearer token")

    try:
        payload = jwt.decode(
            credentials.credentials,
            settings.SECRET_KEY,
            algorithms=[settings.JWT_ALGORITHM],
        )
        return AuthContext.model_validate(payload)
    except (JWTError, PydanticValidationError):
        raise AuthenticationError("Invalid authentication credentials")


def require_admin(current_user: AuthContext = Depends(get_current_user)) -> AuthContext:
    """관리자 권한 확인"""
    if not current_user.is_admin:
        raise AuthorizationError("Admin privileges required")
    return current_user
