# labflow/domains/rpt/tasks.py

import logging
from typing import Any, Dict, Optional

from sqlmodel import select

from labflow.core.database import get_async_session_context
from labflow.core.security import Actor, Role
from labflow.domains.lims import models as lims_models
from labflow.domains.lims.models import SampleStatus, TestStatus
from labflow.domains.rpt import generation

logger = logging.getLogger(__name__)


async def auto_generate_report_task(
    ctx: Dict[str, Any], sample_id: int, actor_id: Optional[int] = None
) -> Dict[str, Any]:
    """
    시료 승인(validated) 이벤트를 받아 성적서 초안을 자동 생성하는 백그라운드 작업.

    시료가 validated가 아니거나, 시험이 모두 validated + QC 완료가 아니거나,
    이미 성적서가 있으면 건너뜁니다. 실패는 기록만 하고 전파하지 않습니다.
    """
    logger.info("백그라운드 작업 시작: 시료 %s 성적서 자동 생성", sample_id)

    try:
        async with get_async_session_context() as db:
            sample = await db.get(lims_models.Sample, sample_id)
            if sample is None or sample.status != SampleStatus.VALIDATED.value:
                logger.info("건너뜀: 시료 %s 가 validated 상태가 아닙니다.", sample_id)
                return {"status": "skipped", "reason": "sample_not_validated"}

            tests = (await db.execute(
                select(lims_models.SampleTest).where(lims_models.SampleTest.sample_id == sample_id)
            )).scalars().all()
            if not tests or any(t.status != TestStatus.VALIDATED.value or not t.qc_done for t in tests):
                logger.info("건너뜀: 시료 %s 의 시험이 모두 승인/QC 완료되지 않았습니다.", sample_id)
                return {"status": "skipped", "reason": "tests_not_ready"}

            if await generation.find_active_report(db, sample_id) is not None:
                logger.info("건너뜀: 시료 %s 의 성적서가 이미 존재합니다.", sample_id)
                return {"status": "skipped", "reason": "report_exists"}

            # 시료 승인은 LH만 할 수 있으므로 이벤트 발행자를 LH로 기록합니다.
            actor = Actor(user_id=actor_id, role=Role.LH) if actor_id is not None else None
            report = await generation.generate_for_sample(db, sample_id=sample_id, actor=actor)
            logger.info("작업 완료! 시료 %s 성적서 초안 %s 생성", sample_id, report.report_no)
            return {"status": "success", "report_id": report.id, "report_no": report.report_no}
    except Exception as e:
        # 자동 생성 실패가 승인 자체를 되돌리지 않도록 여기서 끝냅니다.
        logger.exception("성적서 자동 생성 실패: sample=%s", sample_id)
        return {"status": "error", "message": str(e)}
