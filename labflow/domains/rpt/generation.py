# labflow/domains/rpt/generation.py

"""
성적서(Report) 초안 생성 서비스입니다.

승인(validated)된 시료와 그 시험 결과로부터 성적서 번호를 채번하고,
시험별 최신 결과를 스냅샷한 ReportItem과 빈 서명 슬롯(ReportSignature)을 생성합니다.
"""

import logging
from typing import Dict, List, Optional

from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from labflow.core.config import settings
from labflow.core.exceptions import AlreadyFinalized, PreconditionFailed
from labflow.core.security import Actor
from labflow.domains.lims import models as lims_models
from labflow.domains.lims import workflow as lims_workflow
from labflow.domains.lims.models import TestStatus
from labflow.domains.rpt import models as rpt_models
from labflow.domains.rpt import numbering
from labflow.services.audit import audit_sink

logger = logging.getLogger(__name__)

NO_TESTS_MESSAGE = "Cannot generate report: no tests for this sample."
NOT_VALIDATED_MESSAGE = "Cannot generate report: all tests must be validated."
QC_NOT_DONE_MESSAGE = "Cannot generate report: QC must be completed for all tests."


async def find_active_report(
    db: AsyncSession, sample_id: int, report_type: Optional[str] = None
) -> Optional[rpt_models.Report]:
    query = (
        select(rpt_models.Report)
        .where(
            rpt_models.Report.sample_id == sample_id,
            rpt_models.Report.report_type == (report_type or settings.REPORT_TYPE),
            rpt_models.Report.is_superseded == False,  # noqa: E712
        )
        .order_by(rpt_models.Report.id.desc())
        .limit(1)
        .execution_options(populate_existing=True)
    )
    return (await db.execute(query)).scalar_one_or_none()


async def _latest_results(db: AsyncSession, test_ids: List[int]) -> Dict[int, lims_models.TestResult]:
    if not test_ids:
        return {}
    query = (
        select(lims_models.TestResult)
        .where(lims_models.TestResult.sample_test_id.in_(test_ids))
        .order_by(lims_models.TestResult.sample_test_id, lims_models.TestResult.version)
    )
    latest: Dict[int, lims_models.TestResult] = {}
    for result in (await db.execute(query)).scalars().all():
        latest[result.sample_test_id] = result  # version 오름차순이므로 마지막이 최신
    return latest


async def _build_items(
    db: AsyncSession, report_id: int, tests: List[lims_models.SampleTest]
) -> List[rpt_models.ReportItem]:
    parameter_ids = {t.parameter_id for t in tests}
    method_ids = {t.method_id for t in tests if t.method_id is not None}
    parameters = {
        p.id: p for p in (await db.execute(
            select(lims_models.Parameter).where(lims_models.Parameter.id.in_(parameter_ids))
        )).scalars().all()
    }
    methods = {}
    if method_ids:
        methods = {
            m.id: m for m in (await db.execute(
                select(lims_models.Method).where(lims_models.Method.id.in_(method_ids))
            )).scalars().all()
        }
    results = await _latest_results(db, [t.id for t in tests])

    ordered = sorted(tests, key=lambda t: (parameters[t.parameter_id].sort_order, t.id))
    items = []
    for order_no, test in enumerate(ordered, start=1):
        parameter = parameters[test.parameter_id]
        method = methods.get(test.method_id)
        result = results.get(test.id)
        items.append(rpt_models.ReportItem(
            report_id=report_id,
            sample_test_id=test.id,
            parameter_name=parameter.name,
            method_name=method.name if method else None,
            result_value=result.value_final if result else None,
            unit_label=(result.unit if result and result.unit else parameter.unit),
            flags=list(result.flags or []) if result else [],
            interpretation=result.interpretation if result else None,
            tested_at=test.completed_at,
            order_no=order_no,
        ))
    return items


async def generate_for_sample(
    db: AsyncSession,
    *,
    sample_id: int,
    actor: Optional[Actor] = None,
) -> rpt_models.Report:
    """
    시료의 성적서 초안을 생성합니다.

    - 잠기지 않은 초안이 이미 있으면 그대로 반환합니다 (멱등).
    - 확정(잠금)된 성적서가 있으면 AlreadyFinalized.
    - 시료 상태가 SAMPLE_STATUS_MUST_BE가 아니거나 시험이 모두 validated가 아니면 PreconditionFailed.
    """
    try:
        sample = await lims_workflow.lock_sample(db, sample_id)

        existing = await find_active_report(db, sample_id)
        if existing is not None:
            if existing.is_locked:
                raise AlreadyFinalized(f"Report {existing.report_no} for sample {sample.sample_code} is already finalized")
            # 변경 사항이 없으므로 커밋으로 행 잠금만 해제합니다.
            await db.commit()
            logger.info("기존 성적서 초안 반환: report=%s sample=%s", existing.id, sample_id)
            return existing

        if settings.SAMPLE_STATUS_MUST_BE and sample.status != settings.SAMPLE_STATUS_MUST_BE:
            raise PreconditionFailed(
                f"Cannot generate report: sample status must be '{settings.SAMPLE_STATUS_MUST_BE}' "
                f"(current: '{sample.status}')"
            )

        tests = list((await db.execute(
            select(lims_models.SampleTest)
            .where(lims_models.SampleTest.sample_id == sample_id)
            .order_by(lims_models.SampleTest.id)
            .execution_options(populate_existing=True)
        )).scalars().all())
        if not tests:
            raise PreconditionFailed(NO_TESTS_MESSAGE)
        pending = [t for t in tests if t.status != TestStatus.VALIDATED.value]
        if pending:
            raise PreconditionFailed(NOT_VALIDATED_MESSAGE, details={"sample_test_ids": [t.id for t in pending]})
        if settings.REQUIRE_QC_PASS and any(not t.qc_done for t in tests):
            raise PreconditionFailed(QC_NOT_DONE_MESSAGE)

        report = rpt_models.Report(
            sample_id=sample_id,
            report_type=settings.REPORT_TYPE,
            report_no=await numbering.next_report_no(db),
            generated_by=actor.user_id if actor else None,
            is_locked=False,
        )
        db.add(report)
        await db.flush()

        for item in await _build_items(db, report.id, tests):
            db.add(item)
        for sort_order, role_code in enumerate(settings.REPORT_REQUIRED_SIGNATURE_ROLES, start=1):
            db.add(rpt_models.ReportSignature(report_id=report.id, role_code=role_code, sort_order=sort_order))

        await db.commit()
    except Exception:
        await db.rollback()
        raise

    await db.refresh(report)
    logger.info("성적서 초안 생성: report=%s no=%s sample=%s", report.id, report.report_no, sample_id)
    audit_sink.record("report.generate", actor, f"report:{report.id}", None,
                      {"report_no": report.report_no, "sample_id": sample_id})
    return report


async def get_items(db: AsyncSession, report_id: int) -> List[rpt_models.ReportItem]:
    query = (
        select(rpt_models.ReportItem)
        .where(rpt_models.ReportItem.report_id == report_id)
        .order_by(rpt_models.ReportItem.order_no)
    )
    return list((await db.execute(query)).scalars().all())


async def get_signatures(db: AsyncSession, report_id: int) -> List[rpt_models.ReportSignature]:
    query = (
        select(rpt_models.ReportSignature)
        .where(rpt_models.ReportSignature.report_id == report_id)
        .order_by(rpt_models.ReportSignature.sort_order)
    )
    return list((await db.execute(query)).scalars().all())
