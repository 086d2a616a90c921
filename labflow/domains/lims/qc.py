# labflow/domains/lims/qc.py

"""
Westgard 다중 규칙 정도관리(QC) 평가 엔진입니다.

- evaluate(): 정도관리 물질 정의, 새 측정값, 직전 측정 이력으로 판정을 계산하는 순수 함수.
- evaluate_and_persist(): 판정을 계산해 QcRun을 추가하고, R-4s 위반 시 직전 측정의
  위반 목록을 보정(amend)한 뒤 배치에 속한 시험들의 qc_done을 갱신합니다.
- summarize_batch(): 배치 단위 QC 요약.

규칙
  1-3s : |z| > 3                       -> fail
  1-2s : |z| > 2 (1-3s가 잡지 않은 경우)   -> warning
  R-4s : |z_new - z_prev| > 4           -> fail (새 측정과 직전 측정 모두)
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set

from sqlalchemy import update
from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from labflow.core.config import settings
from labflow.core.exceptions import NotFound, PreconditionFailed
from labflow.core.security import Actor
from labflow.domains.lims import models as lims_models
from labflow.domains.lims.models import ControlType, QcStatus, TestStatus
from labflow.services.audit import audit_sink

logger = logging.getLogger(__name__)

RULE_1_2S = "1-2s"
RULE_1_3S = "1-3s"
RULE_R_4S = "R-4s"

# 규칙별 심각도
RULE_STATUS: Dict[str, QcStatus] = {
    RULE_1_2S: QcStatus.WARNING,
    RULE_1_3S: QcStatus.FAIL,
    RULE_R_4S: QcStatus.FAIL,
}

_SEVERITY = {QcStatus.PASS.value: 0, QcStatus.WARNING.value: 1, QcStatus.FAIL.value: 2}


@dataclass
class Verdict:
    status: str
    violations: List[str] = field(default_factory=list)
    z_score: float = 0.0
    # R-4s로 인해 직전 측정도 fail 처리되어야 하는지 여부
    amend_predecessor: bool = False


def z_score(value: float, target: float, tolerance: float) -> float:
    return (float(value) - float(target)) / float(tolerance)


def most_severe(*statuses: str) -> str:
    return max(statuses, key=lambda s: _SEVERITY[s], default=QcStatus.PASS.value)


def derive_status(violations: Iterable[str]) -> str:
    return most_severe(*[RULE_STATUS[rule].value for rule in violations])


def evaluate(control: Any, new_value: float, recent_runs: Sequence[Any]) -> Verdict:
    """
    control: target, tolerance, ruleset, control_type 속성을 가진 객체.
    recent_runs: 같은 물질의 이전 측정 (최신순). 첫 번째 항목이 직전 측정입니다.
    """
    z = z_score(new_value, control.target, control.tolerance)
    ruleset = list(control.ruleset or [])
    violations: List[str] = []
    amend = False

    for rule in ruleset:
        if rule == RULE_1_3S:
            if abs(z) > 3:
                violations.append(RULE_1_3S)
        elif rule == RULE_1_2S:
            caught_by_1_3s = RULE_1_3S in ruleset and abs(z) > 3
            if abs(z) > 2 and not caught_by_1_3s:
                violations.append(RULE_1_2S)
        elif rule == RULE_R_4S:
            # 블랭크는 범위 규칙 대상이 아닙니다.
            if control.control_type != ControlType.CONTROL_MATERIAL.value or not recent_runs:
                continue
            previous_z = float(recent_runs[0].z_score)
            if abs(z - previous_z) > 4:
                violations.append(RULE_R_4S)
                amend = True

    return Verdict(status=derive_status(violations), violations=violations, z_score=z, amend_predecessor=amend)


def amend_violations(run: lims_models.QcRun, rule: str) -> bool:
    """
    과거 QcRun에 허용되는 유일한 변경입니다. 위반 목록에 규칙을 추가하고
    상태는 상향만 합니다(하향 없음). 변경이 있었으면 True.
    """
    before = (run.status, list(run.violations or []))
    if rule not in (run.violations or []):
        run.violations = [*(run.violations or []), rule]
    run.status = most_severe(run.status, RULE_STATUS[rule].value)
    return before != (run.status, list(run.violations))


# =============================================================================
# 배치 상태 조회
# =============================================================================
async def _runs_for_batches(db: AsyncSession, batch_ids: Iterable[str]) -> List[lims_models.QcRun]:
    ids = [b for b in set(batch_ids) if b]
    if not ids:
        return []
    query = (
        select(lims_models.QcRun)
        .where(lims_models.QcRun.batch_id.in_(ids))
        .order_by(lims_models.QcRun.id)
    )
    result = await db.execute(query)
    return list(result.scalars().all())


def _latest_by_control(runs: Iterable[lims_models.QcRun]) -> Dict[int, lims_models.QcRun]:
    latest: Dict[int, lims_models.QcRun] = {}
    for run in runs:  # id 오름차순이므로 마지막 값이 최신
        latest[run.qc_control_id] = run
    return latest


async def open_fail_batches(db: AsyncSession, batch_ids: Iterable[str]) -> Set[str]:
    """
    물질별 최신 측정이 fail인 배치 목록을 반환합니다.
    같은 물질로 재측정하여 통과하면 해당 배치의 fail은 해소됩니다.
    """
    runs = await _runs_for_batches(db, batch_ids)
    by_batch: Dict[str, List[lims_models.QcRun]] = {}
    for run in runs:
        by_batch.setdefault(run.batch_id, []).append(run)
    return {
        batch_id
        for batch_id, batch_runs in by_batch.items()
        if any(r.status == QcStatus.FAIL.value for r in _latest_by_control(batch_runs).values())
    }


async def batch_qc_passed(db: AsyncSession, batch_id: Optional[str]) -> bool:
    """배치에 QC 측정이 하나 이상 있고 해소되지 않은 fail이 없으면 True."""
    if not batch_id:
        return False
    runs = await _runs_for_batches(db, [batch_id])
    if not runs:
        return False
    return not any(r.status == QcStatus.FAIL.value for r in _latest_by_control(runs).values())


async def _refresh_qc_done(db: AsyncSession, batch_ids: Iterable[str]) -> None:
    # 승인 완료된 시험은 변경하지 않습니다.
    for batch_id in {b for b in batch_ids if b}:
        passed = await batch_qc_passed(db, batch_id)
        await db.execute(
            update(lims_models.SampleTest)
            .where(
                lims_models.SampleTest.batch_id == batch_id,
                lims_models.SampleTest.status != TestStatus.VALIDATED.value,
            )
            .values(qc_done=passed)
        )


async def summarize_batch(db: AsyncSession, batch_id: str) -> Dict[str, Any]:
    runs = await _runs_for_batches(db, [batch_id])
    counts = {QcStatus.PASS.value: 0, QcStatus.WARNING.value: 0, QcStatus.FAIL.value: 0}
    for run in runs:
        counts[run.status] += 1
    latest = _latest_by_control(runs)
    return {
        "batch_id": batch_id,
        "status": most_severe(*[r.status for r in runs]),
        "counts": counts,
        "open_fail": any(r.status == QcStatus.FAIL.value for r in latest.values()),
        "total_runs": len(runs),
    }


# =============================================================================
# 평가 및 저장
# =============================================================================
async def evaluate_and_persist(
    db: AsyncSession,
    *,
    batch_id: str,
    control_id: int,
    value: float,
    actor: Optional[Actor] = None,
) -> lims_models.QcRun:
    # 물질 행을 잠가 같은 물질의 측정 기록을 직렬화합니다. 첫 측정끼리도 서로를 직전 측정으로 봅니다.
    control = (await db.execute(
        select(lims_models.QcControl)
        .where(lims_models.QcControl.id == control_id)
        .with_for_update()
    )).scalar_one_or_none()
    if control is None:
        raise NotFound(f"QcControl {control_id} not found")
    if not control.is_active:
        raise PreconditionFailed(f"QC control '{control.name}' is inactive")

    predecessor_query = select(lims_models.QcRun).where(lims_models.QcRun.qc_control_id == control_id)
    if settings.QC_R4S_SAME_BATCH_ONLY:
        predecessor_query = predecessor_query.where(lims_models.QcRun.batch_id == batch_id)
    predecessor_query = predecessor_query.order_by(lims_models.QcRun.id.desc()).limit(1)
    predecessor = (await db.execute(predecessor_query)).scalar_one_or_none()

    verdict = evaluate(control, value, [predecessor] if predecessor else [])

    run = lims_models.QcRun(
        qc_control_id=control_id,
        batch_id=batch_id,
        value=value,
        z_score=verdict.z_score,
        status=verdict.status,
        violations=list(verdict.violations),
        created_by=actor.user_id if actor else None,
    )
    db.add(run)

    touched_batches = {batch_id}
    amended_before = None
    if verdict.amend_predecessor and predecessor is not None:
        amended_before = {"status": predecessor.status, "violations": list(predecessor.violations or [])}
        if amend_violations(predecessor, RULE_R_4S):
            db.add(predecessor)
            touched_batches.add(predecessor.batch_id)

    try:
        await db.flush()
        await _refresh_qc_done(db, touched_batches)
        await db.commit()
    except Exception:
        await db.rollback()
        raise
    await db.refresh(run)

    logger.info(
        "QC 평가: control=%s batch=%s z=%.3f status=%s violations=%s",
        control_id, batch_id, verdict.z_score, verdict.status, verdict.violations,
    )
    audit_sink.record("qc.run", actor, f"qc_run:{run.id}", None, {"status": run.status, "violations": run.violations})
    if amended_before is not None:
        audit_sink.record(
            "qc.run.amend", actor, f"qc_run:{predecessor.id}", amended_before,
            {"status": predecessor.status, "violations": list(predecessor.violations)},
        )
    return run
