# tests/domains/test_workflow_n.py

"""
시료(Sample)/시험(SampleTest) 상태 전이에 대한 테스트 모듈입니다.

- 순서 위반(건너뛰기, 역행)은 InvalidTransition, 역할 거부는 Forbidden.
- 형제 시험 게이트와 QC 게이트는 PreconditionFailed (막고 있는 조건을 메시지에 포함).
- 같은 상태로의 재요청은 변경 없는 성공.
- 시료 validated 도달 시 커밋 이후 성적서 자동 생성 이벤트 발행.
"""

from typing import List

import pytest

from labflow.core.exceptions import Forbidden, InvalidTransition, NotFound, PreconditionFailed
from labflow.domains.lims import crud as lims_crud
from labflow.domains.lims import models as lims_models
from labflow.domains.lims import qc as lims_qc
from labflow.domains.lims import schemas as lims_schemas
from labflow.domains.lims import workflow as lims_workflow


class _RecordingPool:
    """enqueue_job 호출을 기록하는 ARQ 풀 대역."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.jobs = []

    async def enqueue_job(self, function, *args):
        if self.fail:
            raise ConnectionError("redis unavailable")
        self.jobs.append((function, *args))


async def _move_tests(db, test_ids: List[int], target: str, actor) -> None:
    for test_id in test_ids:
        await lims_workflow.apply_sample_test_transition(db, sample_test_id=test_id, target=target, actor=actor)


async def _status_of(db, model, obj_id: int) -> str:
    obj = await db.get(model, obj_id)
    await db.refresh(obj)
    return obj.status


# =============================================================================
# 1. 순서 검증
# =============================================================================
def test_check_ordering_allows_only_next_state():
    order = lims_workflow.SAMPLE_ORDER
    side = lims_workflow.SAMPLE_SIDE_CHANNEL
    lims_workflow.check_ordering(order, side, "received", "in_progress")
    lims_workflow.check_ordering(order, side, "received", "returned")

    with pytest.raises(InvalidTransition):
        lims_workflow.check_ordering(order, side, "received", "validated")
    with pytest.raises(InvalidTransition):
        lims_workflow.check_ordering(order, side, "verified", "in_progress")
    with pytest.raises(InvalidTransition):
        lims_workflow.check_ordering(order, side, "in_progress", "rejected")


@pytest.mark.asyncio
async def test_skipping_states_is_invalid(db_session, sample_factory, lh_actor):
    sample, _ = await sample_factory(sample_code="S-WF-1")
    sample_id = sample.id

    with pytest.raises(InvalidTransition):
        await lims_workflow.apply_sample_transition(
            db_session, sample_id=sample_id, target="validated", actor=lh_actor
        )
    assert await _status_of(db_session, lims_models.Sample, sample_id) == "received"


@pytest.mark.asyncio
async def test_ordering_is_checked_before_authorization(db_session, sample_factory, analyst_actor):
    sample, _ = await sample_factory(sample_code="S-WF-2")

    # 분석자는 어떤 경우에도 received -> validated 권한이 없지만, 순서 위반이 먼저 보고됩니다.
    with pytest.raises(InvalidTransition):
        await lims_workflow.apply_sample_transition(
            db_session, sample_id=sample.id, target="validated", actor=analyst_actor
        )


@pytest.mark.asyncio
async def test_same_state_is_noop(db_session, sample_factory, collector_actor):
    sample, _ = await sample_factory(sample_code="S-WF-3")

    result = await lims_workflow.apply_sample_transition(
        db_session, sample_id=sample.id, target="received", actor=collector_actor
    )
    assert result.changed is False
    assert result.from_state == result.to_state == "received"


@pytest.mark.asyncio
async def test_unauthorized_role_is_forbidden(db_session, sample_factory, analyst_actor):
    sample, _ = await sample_factory(sample_code="S-WF-4")
    sample_id = sample.id

    with pytest.raises(Forbidden):
        await lims_workflow.apply_sample_transition(
            db_session, sample_id=sample_id, target="in_progress", actor=analyst_actor
        )
    assert await _status_of(db_session, lims_models.Sample, sample_id) == "received"


@pytest.mark.asyncio
async def test_unknown_sample_is_not_found(db_session, collector_actor):
    with pytest.raises(NotFound):
        await lims_workflow.apply_sample_transition(
            db_session, sample_id=9999, target="in_progress", actor=collector_actor
        )


@pytest.mark.asyncio
async def test_received_sample_can_be_rejected(db_session, sample_factory, collector_actor):
    sample, _ = await sample_factory(sample_code="S-WF-5")

    result = await lims_workflow.apply_sample_transition(
        db_session, sample_id=sample.id, target="rejected", actor=collector_actor
    )
    assert result.changed is True
    assert result.to_state == "rejected"


# =============================================================================
# 2. 형제 시험 / QC 게이트
# =============================================================================
@pytest.mark.asyncio
async def test_sample_waits_for_all_tests_measured(db_session, sample_factory, collector_actor, analyst_actor):
    sample, tests = await sample_factory(sample_code="S-GATE-1", n_tests=2)
    sample_id, test_ids = sample.id, [t.id for t in tests]

    await lims_workflow.apply_sample_transition(
        db_session, sample_id=sample_id, target="in_progress", actor=collector_actor
    )
    await _move_tests(db_session, test_ids[:1], "measured", analyst_actor)

    with pytest.raises(PreconditionFailed) as exc_info:
        await lims_workflow.apply_sample_transition(
            db_session, sample_id=sample_id, target="testing_completed", actor=analyst_actor
        )
    assert f"Sibling test {test_ids[1]}" in exc_info.value.message
    assert await _status_of(db_session, lims_models.Sample, sample_id) == "in_progress"


@pytest.mark.asyncio
async def test_test_verification_waits_for_siblings(db_session, sample_factory, analyst_actor, om_actor):
    _, tests = await sample_factory(sample_code="S-GATE-2", n_tests=2)
    test_ids = [t.id for t in tests]

    await _move_tests(db_session, test_ids[:1], "measured", analyst_actor)

    with pytest.raises(PreconditionFailed) as exc_info:
        await lims_workflow.apply_sample_test_transition(
            db_session, sample_test_id=test_ids[0], target="verified", actor=om_actor
        )
    assert f"Sibling test {test_ids[1]}" in exc_info.value.message
    assert exc_info.value.details["status"] == "assigned"
    assert await _status_of(db_session, lims_models.SampleTest, test_ids[0]) == "measured"


@pytest.mark.asyncio
async def test_open_qc_fail_blocks_verification(
    db_session, sample_factory, qc_control_factory, analyst_actor, om_actor
):
    _, tests = await sample_factory(sample_code="S-GATE-3", n_tests=1, batch_id="B-FAIL")
    test_id = tests[0].id
    control = await qc_control_factory()
    await lims_qc.evaluate_and_persist(db_session, batch_id="B-FAIL", control_id=control.id, value=3.4)

    await _move_tests(db_session, [test_id], "measured", analyst_actor)

    with pytest.raises(PreconditionFailed) as exc_info:
        await lims_workflow.apply_sample_test_transition(
            db_session, sample_test_id=test_id, target="verified", actor=om_actor
        )
    assert exc_info.value.message == lims_workflow.QC_BLOCK_MESSAGE
    assert exc_info.value.details == {"batches": ["B-FAIL"]}


@pytest.mark.asyncio
async def test_sibling_batch_qc_fail_blocks_verification(
    db_session, sample_factory, parameter_factory, qc_control_factory, analyst_actor, om_actor
):
    sample, tests = await sample_factory(sample_code="S-GATE-3B", n_tests=1, batch_id="B-OK")
    sibling = await lims_crud.sample_test.assign(
        db_session,
        sample_id=sample.id,
        obj_in=lims_schemas.SampleTestCreate(
            parameter_id=(await parameter_factory("S-GATE-3B-P2")).id, batch_id="B-BAD"
        ),
    )
    test_ids = [tests[0].id, sibling.id]

    control = await qc_control_factory()
    await lims_qc.evaluate_and_persist(db_session, batch_id="B-OK", control_id=control.id, value=0.1)
    await lims_qc.evaluate_and_persist(db_session, batch_id="B-BAD", control_id=control.id, value=3.5)

    await _move_tests(db_session, test_ids, "measured", analyst_actor)

    # 이 시험의 배치는 통과했지만 형제 시험의 배치에 fail이 열려 있습니다.
    with pytest.raises(PreconditionFailed) as exc_info:
        await lims_workflow.apply_sample_test_transition(
            db_session, sample_test_id=test_ids[0], target="verified", actor=om_actor
        )
    assert exc_info.value.message == lims_workflow.QC_BLOCK_MESSAGE
    assert exc_info.value.details == {"batches": ["B-BAD"]}
    assert await _status_of(db_session, lims_models.SampleTest, test_ids[0]) == "measured"


@pytest.mark.asyncio
async def test_validation_requires_qc_done(db_session, sample_factory, analyst_actor, om_actor, lh_actor):
    _, tests = await sample_factory(sample_code="S-GATE-4", n_tests=1, batch_id="B-NO-QC")
    test_id = tests[0].id

    await _move_tests(db_session, [test_id], "measured", analyst_actor)
    await _move_tests(db_session, [test_id], "verified", om_actor)

    with pytest.raises(PreconditionFailed) as exc_info:
        await lims_workflow.apply_sample_test_transition(
            db_session, sample_test_id=test_id, target="validated", actor=lh_actor
        )
    assert "has not completed QC" in exc_info.value.message


@pytest.mark.asyncio
async def test_rejected_sibling_blocks_sample(
    db_session, sample_factory, collector_actor, analyst_actor, om_actor
):
    sample, tests = await sample_factory(sample_code="S-GATE-5", n_tests=2)
    sample_id, test_ids = sample.id, [t.id for t in tests]

    await lims_workflow.apply_sample_transition(
        db_session, sample_id=sample_id, target="in_progress", actor=collector_actor
    )
    await _move_tests(db_session, test_ids, "measured", analyst_actor)
    await lims_workflow.apply_sample_transition(
        db_session, sample_id=sample_id, target="testing_completed", actor=analyst_actor
    )

    approved = await lims_workflow.decide_sample_test(
        db_session, sample_test_id=test_ids[1], approve=True, actor=om_actor
    )
    assert approved.to_state == "verified"
    rejected = await lims_workflow.decide_sample_test(
        db_session, sample_test_id=test_ids[0], approve=False, actor=om_actor
    )
    assert rejected.to_state == "failed"

    with pytest.raises(PreconditionFailed):
        await lims_workflow.apply_sample_transition(
            db_session, sample_id=sample_id, target="verified", actor=om_actor
        )


@pytest.mark.asyncio
async def test_decision_outside_review_stage_is_invalid(db_session, sample_factory, om_actor):
    _, tests = await sample_factory(sample_code="S-GATE-6", n_tests=1)

    with pytest.raises(InvalidTransition):
        await lims_workflow.decide_sample_test(db_session, sample_test_id=tests[0].id, approve=True, actor=om_actor)


@pytest.mark.asyncio
async def test_results_are_versioned(db_session, sample_factory, analyst_actor, om_actor):
    _, tests = await sample_factory(sample_code="S-RES-1", n_tests=1)
    test_id = tests[0].id

    first = await lims_crud.test_result.submit(
        db_session, sample_test_id=test_id,
        obj_in=lims_schemas.TestResultCreate(value_final="7.1", unit="pH"), actor=analyst_actor,
    )
    second = await lims_crud.test_result.submit(
        db_session, sample_test_id=test_id,
        obj_in=lims_schemas.TestResultCreate(value_final="7.3", unit="pH", flags=["rerun"]), actor=analyst_actor,
    )
    assert (first.version, second.version) == (1, 2)

    latest = await lims_crud.test_result.latest(db_session, sample_test_id=test_id)
    assert latest.value_final == "7.3"
    history = await lims_crud.test_result.history(db_session, sample_test_id=test_id)
    assert [r.value_final for r in history] == ["7.1", "7.3"]

    # 검토가 끝난 시험에는 결과를 추가할 수 없습니다.
    await _move_tests(db_session, [test_id], "measured", analyst_actor)
    await _move_tests(db_session, [test_id], "verified", om_actor)
    with pytest.raises(PreconditionFailed):
        await lims_crud.test_result.submit(
            db_session, sample_test_id=test_id,
            obj_in=lims_schemas.TestResultCreate(value_final="7.5"), actor=analyst_actor,
        )


# =============================================================================
# 3. 전체 흐름 및 이벤트 발행
# =============================================================================
@pytest.mark.asyncio
async def test_full_workflow_publishes_validated_event(
    db_session, sample_factory, qc_control_factory, collector_actor, analyst_actor, om_actor, lh_actor
):
    sample, tests = await sample_factory(sample_code="S-FLOW-1", n_tests=2, batch_id="B-FLOW")
    sample_id, test_ids = sample.id, [t.id for t in tests]
    control = await qc_control_factory()
    await lims_qc.evaluate_and_persist(
        db_session, batch_id="B-FLOW", control_id=control.id, value=0.3, actor=analyst_actor
    )

    await lims_workflow.apply_sample_transition(
        db_session, sample_id=sample_id, target="in_progress", actor=collector_actor
    )
    await _move_tests(db_session, test_ids, "measured", analyst_actor)
    await lims_workflow.apply_sample_transition(
        db_session, sample_id=sample_id, target="testing_completed", actor=analyst_actor
    )
    await _move_tests(db_session, test_ids, "verified", om_actor)
    await lims_workflow.apply_sample_transition(
        db_session, sample_id=sample_id, target="verified", actor=om_actor
    )
    await _move_tests(db_session, test_ids, "validated", lh_actor)

    pool = _RecordingPool()
    result = await lims_workflow.apply_sample_transition(
        db_session, sample_id=sample_id, target="validated", actor=lh_actor, arq_redis_pool=pool
    )
    assert result.changed is True
    assert pool.jobs == [("auto_generate_report_task", sample_id, lh_actor.user_id)]

    for test_id in test_ids:
        test = await db_session.get(lims_models.SampleTest, test_id)
        await db_session.refresh(test)
        assert test.status == "validated"
        assert test.om_verified and test.om_verified_by == om_actor.user_id
        assert test.lh_validated and test.lh_validated_by == lh_actor.user_id
        assert test.completed_at is not None

    # 재요청은 이벤트를 다시 발행하지 않습니다.
    again = await lims_workflow.apply_sample_transition(
        db_session, sample_id=sample_id, target="validated", actor=lh_actor, arq_redis_pool=pool
    )
    assert again.changed is False
    assert len(pool.jobs) == 1


@pytest.mark.asyncio
async def test_publish_without_pool_is_skipped(lh_actor):
    await lims_workflow.publish_sample_validated(None, 1, lh_actor)


@pytest.mark.asyncio
async def test_publish_failure_is_swallowed(lh_actor):
    pool = _RecordingPool(fail=True)
    await lims_workflow.publish_sample_validated(pool, 1, lh_actor)
    assert pool.jobs == []
