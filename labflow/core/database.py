# labflow/core/database.py

"""
애플리케이션의 데이터베이스 연결 및 세션 관리를 담당하는 모듈입니다.

- SQLModel의 비동기 엔진을 설정합니다.
- 비동기 세션 생성을 위한 유틸리티 함수를 제공합니다.
- 개발용 스키마/테이블 생성 함수를 포함합니다.
"""

import logging
from typing import AsyncGenerator
from contextlib import asynccontextmanager

from sqlalchemy import JSON, event, text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import create_async_engine, AsyncEngine
from sqlalchemy.orm import sessionmaker

from sqlmodel import SQLModel
from sqlmodel.ext.asyncio.session import AsyncSession

from labflow.core.config import settings

logger = logging.getLogger(__name__)

# 도메인 모델이 사용하는 PostgreSQL 스키마 목록
SCHEMAS = ["lims", "rpt"]

# PostgreSQL에서는 JSONB, 그 외(테스트용 SQLite 등)에서는 일반 JSON으로 저장합니다.
JSONType = JSON().with_variant(JSONB(), "postgresql")


def _engine_options(url: str) -> dict:
    # SQLite(aiosqlite)는 스키마를 지원하지 않으므로 스키마 이름을 제거합니다.
    if make_url(url).get_backend_name() == "sqlite":
        return {
            "execution_options": {"schema_translate_map": {name: None for name in SCHEMAS}},
            "connect_args": {"timeout": 30},
        }
    return {
        "pool_recycle": 3600,  # 1시간마다 연결 재활용
        "pool_size": 10,       # 최소 10개의 연결 유지
        "max_overflow": 20,    # 최대 20개의 추가 연결 허용 (총 30개)
    }


def configure_sqlite_engine(async_engine: AsyncEngine) -> None:
    """
    SQLite(aiosqlite)에서 트랜잭션을 BEGIN IMMEDIATE로 시작하여 쓰기 트랜잭션을 직렬화합니다.
    PostgreSQL의 행 잠금(FOR UPDATE)에 해당하는 동작을 개발/테스트 환경에서 보장합니다.
    """
    @event.listens_for(async_engine.sync_engine, "connect")
    def _disable_driver_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(async_engine.sync_engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


# SQLModel 엔진을 생성합니다.
engine: AsyncEngine = create_async_engine(
    settings.DATABASE_URL.get_secret_value(),  # SecretStr 값에 접근
    echo=settings.DEBUG_MODE,  # 디버그 모드일 때만 SQL 쿼리 출력
    future=True,
    **_engine_options(settings.DATABASE_URL.get_secret_value()),
)
if engine.dialect.name == "sqlite":
    configure_sqlite_engine(engine)

# 비동기 세션을 생성하는 '세션 공장'을 정의합니다.
AsyncSessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False,
)

metadata = SQLModel.metadata


# =============================================================================
# 데이터베이스 초기화 및 테이블 생성 함수
# =============================================================================
async def create_db_and_tables(bind: AsyncEngine = engine) -> None:
    """
    데이터베이스 스키마 및 테이블을 생성합니다.
    개발/테스트 환경에서만 사용하며, 운영 환경은 Alembic 마이그레이션을 사용합니다.
    """
    # 모든 모델이 SQLModel.metadata에 등록되도록 임포트합니다.
    from labflow.domains import models  # noqa: F401

    async with bind.begin() as conn:
        if conn.dialect.name == "postgresql":
            for schema_name in SCHEMAS:
                await conn.execute(text(f"CREATE SCHEMA IF NOT EXISTS {schema_name}"))
                logger.debug("스키마 '%s' 생성 완료 또는 이미 존재.", schema_name)
        await conn.run_sync(SQLModel.metadata.create_all)
    logger.info("데이터베이스 테이블 생성이 완료되었습니다 (또는 이미 존재).")


# =============================================================================
# 비동기 데이터베이스 세션 의존성 주입
# =============================================================================
async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """
    FastAPI 의존성 주입을 위한 비동기 데이터베이스 세션 제너레이터입니다.
    요청마다 새로운 세션을 생성하고, 요청 처리 후 세션을 자동으로 닫습니다.
    """
    async with AsyncSessionLocal() as session:
        yield session


@asynccontextmanager
async def get_async_session_context() -> AsyncGenerator[AsyncSession, None]:
    """
    ARQ Task 등 비동기 컨텍스트에서 사용할 수 있는
    독립적인 비동기 DB 세션을 제공하는 컨텍스트 관리자입니다.
    """
    async with AsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()
