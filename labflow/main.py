import logging
from typing import AsyncGenerator
from contextlib import asynccontextmanager
from arq import cron
from arq.connections import create_pool, RedisSettings

from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession
from fastapi import FastAPI, Depends, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

# 핵심 설정 및 데이터베이스 모듈 임포트
from labflow.core.config import settings
from labflow.core.database import engine, get_session
from labflow.core.exceptions import LabflowError

from labflow import API_PREFIX

# 태스크 모듈 임포트
from labflow.core import tasks as core_tasks
from labflow.domains.rpt import tasks as rpt_tasks

# 도메인 라우터 임포트
from labflow.domains.lims.routers import router as lims_router
from labflow.domains.rpt.routers import router as rpt_router

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)

# ARQ 워커가 실행할 태스크 함수 목록
worker_functions = [
    core_tasks.health_check_database_task,
    rpt_tasks.auto_generate_report_task,
]


# ARQ 워커 설정 클래스
class ArqWorkerSettings:
    redis_settings = RedisSettings(host=settings.REDIS_HOST, port=settings.REDIS_PORT)
    functions = worker_functions
    cron_jobs = [
        cron(core_tasks.health_check_database_task, hour={0}, minute={0}, timeout=300, keep_result=600),
    ]


# -- 애플리케이션 수명 주기 이벤트 핸들러 --
@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    FastAPI 애플리케이션의 수명 주기 이벤트(데이터베이스, ARQ Redis)를 함께 처리합니다.
    """
    logger.info("FastAPI 애플리케이션 시작 중...")
    app.state.redis = None
    try:
        # Redis가 없어도 API는 동작하며, 성적서 자동 생성 이벤트만 건너뜁니다.
        app.state.redis = await create_pool(ArqWorkerSettings.redis_settings)
        logger.info("ARQ Redis 커넥션 풀 생성 완료.")
    except Exception:
        logger.exception("ARQ Redis 커넥션 풀 생성 실패. 자동 성적서 생성 이벤트가 비활성화됩니다.")

    yield  # 애플리케이션 실행

    logger.info("FastAPI 애플리케이션 종료 중...")
    try:
        if app.state.redis:
            await app.state.redis.close()
            logger.info("ARQ Redis 연결 풀 종료 완료.")

        await engine.dispose()
        logger.info("데이터베이스 연결 풀 종료 완료.")
    except Exception:
        logger.exception("애플리케이션 종료 중 오류 발생")


# -- FastAPI 애플리케이션 인스턴스 생성 --
app = FastAPI(
    title=settings.APP_NAME,
    description=settings.APP_DESCRIPTION,
    version=settings.APP_VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan
)


# -- 도메인 예외 핸들러 --
# 서비스 계층의 타입 예외를 {"error": {code, message, class, retryable}} 응답으로 변환합니다.
@app.exception_handler(LabflowError)
async def labflow_error_handler(request: Request, exc: LabflowError) -> JSONResponse:
    if exc.http_status >= 500:
        logger.warning("협력자 오류: %s %s -> %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.http_status, content={"error": exc.to_dict()})


# -- CORS (Cross-Origin Resource Sharing) 미들웨어 설정 --
# 보안을 위해 'allow_origins'는 실제 프론트엔드 도메인으로 제한해야 합니다.
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# -- 도메인 라우터 포함 --
app.include_router(lims_router, prefix=f"{API_PREFIX}/lims", tags=["Laboratory Information Management (실험실 정보 관리)"])
app.include_router(rpt_router, prefix=f"{API_PREFIX}/rpt", tags=["Report Management (성적서 관리)"])


# -- 루트 엔드포인트 --
@app.get("/", summary="API Root", response_description="Welcome message and documentation link.")
async def read_root():
    return {"message": f"Welcome to {settings.APP_NAME}. Visit /docs for interactive API documentation."}


# -- 헬스 체크 엔드포인트 --
@app.get("/health-check", summary="Health Check", response_description="Status of the application and database connection.")
async def health_check(session: AsyncSession = Depends(get_session)):
    """
    데이터베이스 연결을 테스트하여 서비스의 정상 작동 여부를 확인합니다.
    """
    try:
        result = await session.exec(select(1))
        if result.first():
            return {"status": "ok", "database_connection": "successful"}
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Database health check failed: No result from test query"
        )
    except HTTPException:
        raise
    except Exception as e:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Database connection error during health check: {e}"
        )
