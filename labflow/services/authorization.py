# labflow/services/authorization.py

"""
역할 기반 권한 판단 모듈입니다.

상태 전이와 업무 동작에 대한 허용 여부를 하나의 데이터 테이블(역할 x 동작 -> bool)로 관리합니다.
상태 머신은 순서만 검증하고, 누가 할 수 있는지는 이 모듈에 위임합니다.
"""

from typing import Dict, FrozenSet, Tuple

from labflow.core.exceptions import Forbidden
from labflow.core.security import Actor, Role

SAMPLE = "sample"
SAMPLE_TEST = "sample_test"

# (엔티티, 현재 상태, 목표 상태) -> 허용 역할
TRANSITION_PERMISSIONS: Dict[Tuple[str, str, str], FrozenSet[Role]] = {
    # --- Sample ---
    (SAMPLE, "received", "in_progress"): frozenset({Role.ADMIN, Role.SAMPLE_COLLECTOR}),
    (SAMPLE, "received", "returned"): frozenset({Role.ADMIN, Role.SAMPLE_COLLECTOR}),
    (SAMPLE, "received", "rejected"): frozenset({Role.ADMIN, Role.SAMPLE_COLLECTOR}),
    (SAMPLE, "in_progress", "testing_completed"): frozenset({Role.ANALYST}),
    (SAMPLE, "testing_completed", "verified"): frozenset({Role.OM}),
    (SAMPLE, "verified", "validated"): frozenset({Role.LH}),
    (SAMPLE, "validated", "reported"): frozenset({Role.LH}),
    # --- SampleTest ---
    (SAMPLE_TEST, "assigned", "measured"): frozenset({Role.ANALYST}),
    (SAMPLE_TEST, "measured", "verified"): frozenset({Role.OM}),
    (SAMPLE_TEST, "measured", "failed"): frozenset({Role.OM}),
    (SAMPLE_TEST, "verified", "validated"): frozenset({Role.LH}),
    (SAMPLE_TEST, "verified", "failed"): frozenset({Role.LH}),
}

# 동작 -> 허용 역할
ACTION_PERMISSIONS: Dict[str, FrozenSet[Role]] = {
    "sample.register": frozenset({Role.ADMIN, Role.SAMPLE_COLLECTOR}),
    "result.submit": frozenset({Role.ANALYST}),
    "qc.define_control": frozenset({Role.ADMIN, Role.QA}),
    "qc.record_run": frozenset({Role.ANALYST, Role.QA}),
    "reference.manage": frozenset({Role.ADMIN}),
    "report.generate": frozenset({Role.ADMIN, Role.OM, Role.LH}),
    "report.finalize": frozenset({Role.LH}),
    "signature.register": frozenset({Role.ADMIN}),
}


def can_transition(actor: Actor, entity: str, from_state: str, to_state: str) -> bool:
    allowed = TRANSITION_PERMISSIONS.get((entity, from_state, to_state), frozenset())
    return actor.role in allowed


def can_perform(actor: Actor, action: str) -> bool:
    return actor.role in ACTION_PERMISSIONS.get(action, frozenset())


def can_sign(actor: Actor, role_code: str) -> bool:
    """서명 슬롯은 같은 역할 코드의 행위자만 채울 수 있습니다. ADMIN은 모든 슬롯에 서명할 수 있습니다."""
    return actor.role == Role.ADMIN or actor.role.value == role_code.upper()


def ensure_can_perform(actor: Actor, action: str) -> None:
    if not can_perform(actor, action):
        raise Forbidden(f"Role '{actor.role.value}' may not perform '{action}'")
