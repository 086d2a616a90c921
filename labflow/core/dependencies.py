# labflow/core/dependencies.py

"""
FastAPI 애플리케이션의 의존성 주입(Dependency Injection)을 정의하는 모듈입니다.

- 데이터베이스 세션 관리 (get_db_session).
- 현재 인증된 행위자 정보 획득 (get_current_actor).
- ARQ Redis 풀 획득 (get_arq_redis).
"""

from typing import AsyncGenerator, Optional

from fastapi import Request
from sqlmodel.ext.asyncio.session import AsyncSession

from labflow.core.database import get_session as get_main_app_session

# flake8: noqa
from labflow.core.security import (
    Actor,
    Role,
    oauth2_scheme,
    get_current_actor,
    get_current_admin_actor,
)


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """
    FastAPI 의존성 주입을 위한 비동기 데이터베이스 세션 제너레이터입니다.
    labflow.core.database.get_session을 래핑하여 사용합니다.
    """
    async for session in get_main_app_session():
        yield session


def get_arq_redis(request: Request) -> Optional[object]:
    """
    lifespan에서 생성한 ARQ Redis 풀을 반환합니다. 풀이 없으면 None.
    """
    return getattr(request.app.state, "redis", None)
