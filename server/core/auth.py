"""
인증/인가 시스템
- bcrypt 비밀번호 해싱
- JWT 기반 인증 (python-jose)
- 역할 기반 접근 제어 (user / admin / super_admin)
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

import bcrypt
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from sqlmodel import Session

from core.config import AppSettings
from core.db import get_session
from core.models import ADMIN_ROLES, User, UserRole

logger = logging.getLogger(__name__)

# HTTP Bearer 토큰
security = HTTPBearer()
optional_security = HTTPBearer(auto_error=False)

# bcrypt는 최대 72바이트까지만 처리
BCRYPT_MAX_BYTES = 72


def get_settings(request: Request) -> AppSettings:
    return request.app.state.settings


def _password_bytes(password: str) -> bytes:
    return password.encode("utf-8")[:BCRYPT_MAX_BYTES]


def get_password_hash(password: str) -> str:
    """비밀번호 해싱"""
    if not password:
        raise ValueError("Password cannot be empty")
    return bcrypt.hashpw(_password_bytes(password), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain_password: str, hashed_password: Optional[str]) -> bool:
    """비밀번호 검증"""
    if not plain_password or not hashed_password:
        return False
    try:
        return bcrypt.checkpw(_password_bytes(plain_password), hashed_password.encode("utf-8"))
    except ValueError:
        # malformed stored hash
        return False


def create_access_token(
    data: dict,
    settings: AppSettings,
    expires_delta: Optional[timedelta] = None,
) -> str:
    """JWT 토큰 생성"""
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(hours=settings.jwt_expiration_hours))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_access_token(token: str, settings: AppSettings) -> Optional[dict]:
    """JWT 토큰 디코딩"""
    try:
        return jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return None


def issue_token_for(user: User, settings: AppSettings) -> str:
    return create_access_token({"sub": user.id, "role": user.role.value, "email": user.email}, settings)


def _user_from_token(token: str, settings: AppSettings, session: Session) -> User:
    payload = decode_access_token(token, settings)
    if payload is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid authentication credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )

    user_id = payload.get("sub")
    if not user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token payload",
        )

    # 역할은 토큰이 아니라 DB 기준 (승급/강등 즉시 반영)
    user = session.get(User, user_id)
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User not found",
        )
    if not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Account is deactivated",
        )
    return user


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    settings: AppSettings = Depends(get_settings),
    session: Session = Depends(get_session),
) -> User:
    """현재 사용자 정보 가져오기"""
    return _user_from_token(credentials.credentials, settings, session)


async def get_optional_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(optional_security),
    settings: AppSettings = Depends(get_settings),
    session: Session = Depends(get_session),
) -> Optional[User]:
    """토큰이 있으면 사용자, 없으면 None (공개 엔드포인트용)"""
    if credentials is None:
        return None
    return _user_from_token(credentials.credentials, settings, session)


def require_role(allowed_roles: list[UserRole]):
    """역할 기반 접근 제어"""
    def role_checker(current_user: User = Depends(get_current_user)) -> User:
        if current_user.role not in allowed_roles:
            logger.warning(f"[Auth] ⚠️ user={current_user.id} role={current_user.role.value} denied")
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Admin access required" if UserRole.user not in allowed_roles else "Access denied",
            )
        return current_user
    return role_checker


def require_admin():
    """admin / super_admin"""
    return require_role(list(ADMIN_ROLES))


def require_super_admin():
    """super_admin 전용"""
    return require_role([UserRole.super_admin])
