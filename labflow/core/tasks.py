# labflow/core/tasks.py

import logging
from typing import Any, Dict

from sqlmodel import select

from labflow.core.database import get_async_session_context

logger = logging.getLogger(__name__)


async def health_check_database_task(ctx: Dict[str, Any]) -> Dict[str, str]:
    """
    ARQ 워커에 의해 실행될 주기적인 데이터베이스 헬스 체크 태스크.
    """
    logger.info("ARQ 태스크: 데이터베이스 헬스 체크 실행")

    try:
        async with get_async_session_context() as db:
            result = await db.execute(select(1))
            if result.scalar_one_or_none() == 1:
                logger.info("데이터베이스 헬스 체크: 성공적으로 연결되었습니다.")
                return {"status": "success", "message": "Database connection successful."}
            error_msg = "Database health check failed: No result from test query."
            logger.error("데이터베이스 헬스 체크: 실패 - %s", error_msg)
            return {"status": "failed", "message": error_msg}
    except Exception as e:
        # 워커 크론 태스크는 결과로 상태를 보고하고 예외를 전파하지 않습니다.
        logger.exception("데이터베이스 헬스 체크: 실패")
        return {"status": "failed", "message": f"Database connection error: {e}"}
