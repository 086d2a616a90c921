# labflow/domains/lims/workflow.py

"""
시료(Sample)와 시료별 시험(SampleTest)의 상태 전이를 담당하는 모듈입니다.

상태 순서
  Sample     : received -> in_progress -> testing_completed -> verified -> validated -> reported
               (접수 단계 반려: received -> returned | rejected)
  SampleTest : assigned -> measured -> verified -> validated
               (반려: measured -> failed, verified -> failed)

전이 검증 순서
  1. 현재 상태와 같은 목표 상태 -> 변경 없이 현재 상태 반환 (오류 아님)
  2. 순서상 인접하지 않은 전이 -> InvalidTransition
  3. 권한 판단(authorization) 거부 -> Forbidden
  4. 형제 시험/QC 게이트 미충족 -> PreconditionFailed

게이트 검사는 부모 Sample 행을 FOR UPDATE로 잠근 같은 트랜잭션 안에서 다시 수행합니다.
transition_* 함수는 커밋하지 않으며(성적서 확정 등 상위 트랜잭션에서 재사용),
apply_* 함수가 커밋, 감사 기록, 커밋 이후 이벤트 발행을 담당합니다.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, UTC
from typing import Dict, List, Optional, Sequence, Set

from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from labflow.core.exceptions import Forbidden, InvalidTransition, NotFound, PreconditionFailed
from labflow.core.security import Actor
from labflow.domains.lims import models as lims_models
from labflow.domains.lims import qc
from labflow.domains.lims.models import SampleStatus, TestStatus
from labflow.services import authorization
from labflow.services.audit import audit_sink

logger = logging.getLogger(__name__)

SAMPLE_ORDER: List[str] = [
    SampleStatus.RECEIVED.value,
    SampleStatus.IN_PROGRESS.value,
    SampleStatus.TESTING_COMPLETED.value,
    SampleStatus.VERIFIED.value,
    SampleStatus.VALIDATED.value,
    SampleStatus.REPORTED.value,
]
SAMPLE_SIDE_CHANNEL: Dict[str, Set[str]] = {
    SampleStatus.RECEIVED.value: {SampleStatus.RETURNED.value, SampleStatus.REJECTED.value},
}

TEST_ORDER: List[str] = [
    TestStatus.ASSIGNED.value,
    TestStatus.MEASURED.value,
    TestStatus.VERIFIED.value,
    TestStatus.VALIDATED.value,
]
TEST_SIDE_CHANNEL: Dict[str, Set[str]] = {
    TestStatus.MEASURED.value: {TestStatus.FAILED.value},
    TestStatus.VERIFIED.value: {TestStatus.FAILED.value},
}

# Sample 목표 상태 -> 모든 시험이 도달해야 하는 최소 상태
SAMPLE_GATES: Dict[str, str] = {
    SampleStatus.TESTING_COMPLETED.value: TestStatus.MEASURED.value,
    SampleStatus.VERIFIED.value: TestStatus.VERIFIED.value,
    SampleStatus.VALIDATED.value: TestStatus.VALIDATED.value,
}

# SampleTest 목표 상태 -> 형제 시험이 도달해야 하는 최소 상태
TEST_GATES: Dict[str, str] = {
    TestStatus.VERIFIED.value: TestStatus.MEASURED.value,
    TestStatus.VALIDATED.value: TestStatus.VERIFIED.value,
}

QC_BLOCK_MESSAGE = "QC failed: cannot progress sample test status until QC is resolved."


@dataclass
class TransitionResult:
    entity: str
    entity_id: int
    from_state: str
    to_state: str
    changed: bool


def _test_rank(status: str) -> int:
    # 반려(failed) 등 순서 밖의 상태는 어떤 게이트도 통과하지 못합니다.
    return TEST_ORDER.index(status) if status in TEST_ORDER else -1


def check_ordering(order: Sequence[str], side_channel: Dict[str, Set[str]], current: str, target: str) -> None:
    if target in side_channel.get(current, set()):
        return
    if current not in order or target not in order:
        raise InvalidTransition(f"Cannot move from '{current}' to '{target}'")
    if order.index(target) != order.index(current) + 1:
        raise InvalidTransition(
            f"Cannot move from '{current}' to '{target}': transitions must follow "
            f"{' -> '.join(order)} without skipping"
        )


async def lock_sample(db: AsyncSession, sample_id: int) -> lims_models.Sample:
    query = (
        select(lims_models.Sample)
        .where(lims_models.Sample.id == sample_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    sample = (await db.execute(query)).scalar_one_or_none()
    if sample is None:
        raise NotFound(f"Sample {sample_id} not found")
    return sample


async def _tests_of_sample(db: AsyncSession, sample_id: int) -> List[lims_models.SampleTest]:
    query = (
        select(lims_models.SampleTest)
        .where(lims_models.SampleTest.sample_id == sample_id)
        .order_by(lims_models.SampleTest.id)
        .execution_options(populate_existing=True)
    )
    return list((await db.execute(query)).scalars().all())


async def _ensure_no_open_qc_fail(db: AsyncSession, tests: Sequence[lims_models.SampleTest]) -> None:
    failed = await qc.open_fail_batches(db, [t.batch_id for t in tests if t.batch_id])
    if failed:
        raise PreconditionFailed(
            QC_BLOCK_MESSAGE,
            details={"batches": sorted(failed)},
        )


# =============================================================================
# Sample 전이
# =============================================================================
async def transition_sample(
    db: AsyncSession, sample: lims_models.Sample, target: str, actor: Actor
) -> TransitionResult:
    """
    잠긴 Sample에 전이를 적용합니다. 커밋은 호출자가 합니다.
    """
    current = sample.status
    if current == target:
        return TransitionResult("sample", sample.id, current, target, changed=False)

    check_ordering(SAMPLE_ORDER, SAMPLE_SIDE_CHANNEL, current, target)
    if not authorization.can_transition(actor, authorization.SAMPLE, current, target):
        raise Forbidden(f"Role '{actor.role.value}' may not move a sample from '{current}' to '{target}'")

    required = SAMPLE_GATES.get(target)
    if required is not None:
        tests = await _tests_of_sample(db, sample.id)
        if not tests:
            raise PreconditionFailed(f"Sample {sample.sample_code} has no tests")
        for test in tests:
            if _test_rank(test.status) < _test_rank(required):
                raise PreconditionFailed(
                    f"Sibling test {test.id} (parameter {test.parameter_id}) is '{test.status}'; "
                    f"all tests must be at least '{required}'",
                    details={"sample_test_id": test.id, "status": test.status},
                )
        if target == SampleStatus.VALIDATED.value:
            not_qc_done = [t for t in tests if not t.qc_done]
            if not_qc_done:
                raise PreconditionFailed(
                    f"Sibling test {not_qc_done[0].id} has not completed QC",
                    details={"sample_test_id": not_qc_done[0].id},
                )
            await _ensure_no_open_qc_fail(db, tests)

    sample.status = target
    db.add(sample)
    await db.flush()
    return TransitionResult("sample", sample.id, current, target, changed=True)


async def apply_sample_transition(
    db: AsyncSession,
    *,
    sample_id: int,
    target: str,
    actor: Actor,
    arq_redis_pool=None,
) -> TransitionResult:
    try:
        sample = await lock_sample(db, sample_id)
        result = await transition_sample(db, sample, target, actor)
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    if result.changed:
        audit_sink.record("sample.transition", actor, f"sample:{sample_id}",
                          {"status": result.from_state}, {"status": result.to_state})
        if result.to_state == SampleStatus.VALIDATED.value:
            await publish_sample_validated(arq_redis_pool, sample_id, actor)
    return result


# =============================================================================
# SampleTest 전이
# =============================================================================
async def transition_sample_test(
    db: AsyncSession, test: lims_models.SampleTest, target: str, actor: Actor
) -> TransitionResult:
    """
    SampleTest에 전이를 적용합니다. 호출 전에 부모 Sample이 잠겨 있어야 합니다.
    """
    current = test.status
    if current == target:
        return TransitionResult("sample_test", test.id, current, target, changed=False)

    check_ordering(TEST_ORDER, TEST_SIDE_CHANNEL, current, target)
    if not authorization.can_transition(actor, authorization.SAMPLE_TEST, current, target):
        raise Forbidden(f"Role '{actor.role.value}' may not move a sample test from '{current}' to '{target}'")

    required = TEST_GATES.get(target)
    if required is not None:
        siblings = [t for t in await _tests_of_sample(db, test.sample_id) if t.id != test.id]
        for sibling in siblings:
            if _test_rank(sibling.status) < _test_rank(required):
                raise PreconditionFailed(
                    f"Sibling test {sibling.id} (parameter {sibling.parameter_id}) is '{sibling.status}'; "
                    f"all sibling tests must be at least '{required}'",
                    details={"sample_test_id": sibling.id, "status": sibling.status},
                )
        await _ensure_no_open_qc_fail(db, [test, *siblings])
        if target == TestStatus.VALIDATED.value and not test.qc_done:
            raise PreconditionFailed(f"Sample test {test.id} has not completed QC")

    now = datetime.now(UTC)
    if target == TestStatus.MEASURED.value:
        test.started_at = test.started_at or now
        test.completed_at = now
    elif target == TestStatus.VERIFIED.value:
        test.om_verified = True
        test.om_verified_at = now
        test.om_verified_by = actor.user_id
    elif target == TestStatus.VALIDATED.value:
        test.lh_validated = True
        test.lh_validated_at = now
        test.lh_validated_by = actor.user_id

    test.status = target
    db.add(test)
    await db.flush()
    return TransitionResult("sample_test", test.id, current, target, changed=True)


async def apply_sample_test_transition(
    db: AsyncSession,
    *,
    sample_test_id: int,
    target: str,
    actor: Actor,
) -> TransitionResult:
    try:
        test = await db.get(lims_models.SampleTest, sample_test_id)
        if test is None:
            raise NotFound(f"SampleTest {sample_test_id} not found")
        await lock_sample(db, test.sample_id)
        # 잠금 이후의 최신 상태로 다시 읽습니다.
        test = (await db.execute(
            select(lims_models.SampleTest)
            .where(lims_models.SampleTest.id == sample_test_id)
            .execution_options(populate_existing=True)
        )).scalar_one()
        result = await transition_sample_test(db, test, target, actor)
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    if result.changed:
        audit_sink.record("sample_test.transition", actor, f"sample_test:{sample_test_id}",
                          {"status": result.from_state}, {"status": result.to_state})
    return result


async def decide_sample_test(
    db: AsyncSession,
    *,
    sample_test_id: int,
    approve: bool,
    actor: Actor,
) -> TransitionResult:
    """
    OM/LH 판정. OM은 measured 상태에서, LH는 verified 상태에서만 판정할 수 있습니다.
    승인은 다음 단계로, 반려는 failed로 전이합니다.
    """
    test = await db.get(lims_models.SampleTest, sample_test_id)
    if test is None:
        raise NotFound(f"SampleTest {sample_test_id} not found")

    decision_stage = {
        TestStatus.MEASURED.value: TestStatus.VERIFIED.value,
        TestStatus.VERIFIED.value: TestStatus.VALIDATED.value,
    }
    if test.status not in decision_stage:
        raise InvalidTransition(
            f"Sample test {sample_test_id} is '{test.status}'; decisions are allowed only from "
            f"'{TestStatus.MEASURED.value}' or '{TestStatus.VERIFIED.value}'"
        )
    target = decision_stage[test.status] if approve else TestStatus.FAILED.value
    return await apply_sample_test_transition(db, sample_test_id=sample_test_id, target=target, actor=actor)


# =============================================================================
# 커밋 이후 이벤트 발행
# =============================================================================
async def publish_sample_validated(arq_redis_pool, sample_id: int, actor: Optional[Actor]) -> None:
    """
    시료 승인(validated) 이벤트를 ARQ 큐에 발행합니다.
    발행 실패는 기록만 하고 승인 자체에는 영향을 주지 않습니다.
    """
    if arq_redis_pool is None:
        logger.info("ARQ 풀이 없어 성적서 자동 생성 이벤트를 건너뜁니다: sample=%s", sample_id)
        return
    try:
        await arq_redis_pool.enqueue_job(
            "auto_generate_report_task",
            sample_id,
            actor.user_id if actor else None,
        )
        logger.info("성적서 자동 생성 작업 예약: sample=%s", sample_id)
    except Exception:
        logger.exception("성적서 자동 생성 작업 예약 실패: sample=%s", sample_id)
