# labflow/core/security.py

"""
애플리케이션의 보안 관련 유틸리티 함수 및 의존성 주입을 정의하는 모듈입니다.

- JWT(JSON Web Token) 생성 및 검증.
- OAuth2 Password Bearer 스키마를 사용하여 현재 행위자(Actor) 획득.

사용자 계정 관리는 외부 인증 시스템의 책임이며, 이 모듈은 토큰에 담긴
사용자 ID(sub)와 역할(role) 클레임만 신뢰합니다.
"""

import logging
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional

from jose import jwt, JWTError
from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from pydantic import BaseModel

from labflow import API_PREFIX
from labflow.core.config import settings

logger = logging.getLogger(__name__)


class Role(str, Enum):
    ADMIN = "ADMIN"
    SAMPLE_COLLECTOR = "SAMPLE_COLLECTOR"
    ANALYST = "ANALYST"
    OM = "OM"   # Operational Manager (검토)
    LH = "LH"   # Laboratory Head (승인/확정)
    QA = "QA"   # 정도관리 담당


class Actor(BaseModel):
    """요청을 수행하는 인증된 행위자."""
    user_id: int
    role: Role
    name: Optional[str] = None


# --- OAuth2 스키마 설정 ---
oauth2_scheme = OAuth2PasswordBearer(tokenUrl=f"{API_PREFIX}/auth/token")


# --- JWT 토큰 생성 및 검증 ---
def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    """
    Access Token을 생성합니다. data에는 'sub'(사용자 ID)와 'role'이 포함되어야 합니다.
    """
    to_encode = data.copy()
    if expires_delta:
        expire = datetime.now(timezone.utc) + expires_delta
    else:
        expire = datetime.now(timezone.utc) + timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, settings.SECRET_KEY.get_secret_value(), algorithm=settings.ALGORITHM)


def decode_actor(token: str) -> Actor:
    """
    토큰을 디코딩하여 Actor를 반환합니다. 유효하지 않으면 401을 발생시킵니다.
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    try:
        payload = jwt.decode(token, settings.SECRET_KEY.get_secret_value(), algorithms=[settings.ALGORITHM])
    except JWTError as e:
        logger.debug("JWTError: %s", e)
        raise credentials_exception

    user_id = payload.get("sub")
    role = payload.get("role")
    if user_id is None or role is None:
        raise credentials_exception
    try:
        return Actor(user_id=int(user_id), role=Role(role), name=payload.get("name"))
    except ValueError:
        raise credentials_exception


async def get_current_actor(token: str = Depends(oauth2_scheme)) -> Actor:
    """
    요청 헤더의 Bearer 토큰에서 현재 행위자를 가져옵니다.
    """
    return decode_actor(token)


def get_current_admin_actor(actor: Actor = Depends(get_current_actor)) -> Actor:
    """
    관리자(ADMIN) 행위자만 허용합니다.
    """
    if actor.role != Role.ADMIN:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Not enough permissions. Admin role required."
        )
    return actor
