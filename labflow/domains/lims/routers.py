# labflow/domains/lims/routers.py

"""
'lims' 도메인 (시료 업무 흐름 및 정도관리) 관련 API 엔드포인트를 정의하는 모듈입니다.
"""
from typing import List
from sqlmodel.ext.asyncio.session import AsyncSession
from fastapi import APIRouter, Depends, status

# 중앙 의존성 관리 모듈 임포트
from labflow.core import dependencies as deps
from labflow.services import authorization

# 도메인 관련 모듈 임포트
from . import crud as lims_crud
from . import qc as lims_qc
from . import schemas as lims_schemas
from . import workflow as lims_workflow

router = APIRouter(
    tags=["Laboratory Information Management (실험실 정보 관리)"],
    responses={404: {"description": "Not found"}},
)


def _transition_response(result: lims_workflow.TransitionResult) -> lims_schemas.TransitionResponse:
    return lims_schemas.TransitionResponse(
        entity=result.entity,
        entity_id=result.entity_id,
        from_state=result.from_state,
        to_state=result.to_state,
        changed=result.changed,
    )


# =============================================================================
# 1. 분석 항목 (Parameter) / 시험 방법 (Method) 라우터
# =============================================================================
@router.post("/parameters", response_model=lims_schemas.ParameterResponse, status_code=status.HTTP_201_CREATED, summary="새 분석 항목 생성")
async def create_parameter(
    parameter_in: lims_schemas.ParameterCreate,
    db: AsyncSession = Depends(deps.get_db_session),
    current_actor: deps.Actor = Depends(deps.get_current_actor),
):
    """새로운 분석 항목을 생성합니다. 관리자 권한이 필요합니다."""
    authorization.ensure_can_perform(current_actor, "reference.manage")
    return await lims_crud.parameter.create(db=db, obj_in=parameter_in)


@router.get("/parameters", response_model=List[lims_schemas.ParameterResponse], summary="활성 분석 항목 조회")
async def read_parameters(
    skip: int = 0,
    limit: int = 100,
    db: AsyncSession = Depends(deps.get_db_session),
):
    return await lims_crud.parameter.get_multi(db, skip=skip, limit=limit, is_active=True)


@router.post("/methods", response_model=lims_schemas.MethodResponse, status_code=status.HTTP_201_CREATED, summary="새 시험 방법 생성")
async def create_method(
    method_in: lims_schemas.MethodCreate,
    db: AsyncSession = Depends(deps.get_db_session),
    current_actor: deps.Actor = Depends(deps.get_current_actor),
):
    authorization.ensure_can_perform(current_actor, "reference.manage")
    return await lims_crud.method.create(db=db, obj_in=method_in)


# =============================================================================
# 2. 시료 (Sample) 라우터
# =============================================================================
@router.post("/samples", response_model=lims_schemas.SampleResponse, status_code=status.HTTP_201_CREATED, summary="시료 접수")
async def register_sample(
    sample_in: lims_schemas.SampleCreate,
    db: AsyncSession = Depends(deps.get_db_session),
    current_actor: deps.Actor = Depends(deps.get_current_actor),
):
    """새 시료를 received 상태로 접수합니다."""
    authorization.ensure_can_perform(current_actor, "sample.register")
    return await lims_crud.sample.register(db, obj_in=sample_in, actor=current_actor)


@router.get("/samples/{sample_id}", response_model=lims_schemas.SampleResponse, summary="시료 조회")
async def read_sample(
    sample_id: int,
    db: AsyncSession = Depends(deps.get_db_session),
    current_actor: deps.Actor = Depends(deps.get_current_actor),
):
    return await lims_crud.sample.get_or_404(db, sample_id)


@router.post("/samples/{sample_id}/transition", response_model=lims_schemas.TransitionResponse, summary="시료 상태 전이")
async def transition_sample(
    sample_id: int,
    transition_in: lims_schemas.SampleTransitionRequest,
    db: AsyncSession = Depends(deps.get_db_session),
    current_actor: deps.Actor = Depends(deps.get_current_actor),
    arq_redis_pool=Depends(deps.get_arq_redis),
):
    """
    시료를 다음 상태로 전이합니다. 같은 상태로의 재요청은 변경 없이 현재 상태를 반환합니다.
    validated 도달 시 성적서 자동 생성 작업이 예약됩니다.
    """
    result = await lims_workflow.apply_sample_transition(
        db,
        sample_id=sample_id,
        target=transition_in.target_status.value,
        actor=current_actor,
        arq_redis_pool=arq_redis_pool,
    )
    return _transition_response(result)


# =============================================================================
# 3. 시료별 시험 (SampleTest) 라우터
# =============================================================================
@router.post("/samples/{sample_id}/tests", response_model=lims_schemas.SampleTestResponse, status_code=status.HTTP_201_CREATED, summary="시료에 시험 배정")
async def assign_sample_test(
    sample_id: int,
    test_in: lims_schemas.SampleTestCreate,
    db: AsyncSession = Depends(deps.get_db_session),
    current_actor: deps.Actor = Depends(deps.get_current_actor),
):
    authorization.ensure_can_perform(current_actor, "sample.register")
    return await lims_crud.sample_test.assign(db, sample_id=sample_id, obj_in=test_in)


@router.get("/samples/{sample_id}/tests", response_model=List[lims_schemas.SampleTestResponse], summary="시료의 시험 목록")
async def read_sample_tests(
    sample_id: int,
    db: AsyncSession = Depends(deps.get_db_session),
    current_actor: deps.Actor = Depends(deps.get_current_actor),
):
    await lims_crud.sample.get_or_404(db, sample_id)
    return await lims_crud.sample_test.get_by_sample(db, sample_id=sample_id)


@router.post("/sample-tests/{sample_test_id}/transition", response_model=lims_schemas.TransitionResponse, summary="시험 상태 전이")
async def transition_sample_test(
    sample_test_id: int,
    transition_in: lims_schemas.SampleTestTransitionRequest,
    db: AsyncSession = Depends(deps.get_db_session),
    current_actor: deps.Actor = Depends(deps.get_current_actor),
):
    result = await lims_workflow.apply_sample_test_transition(
        db, sample_test_id=sample_test_id, target=transition_in.target_status.value, actor=current_actor
    )
    return _transition_response(result)


@router.post("/sample-tests/{sample_test_id}/decision", response_model=lims_schemas.TransitionResponse, summary="OM/LH 판정")
async def decide_sample_test(
    sample_test_id: int,
    decision_in: lims_schemas.SampleTestDecisionRequest,
    db: AsyncSession = Depends(deps.get_db_session),
    current_actor: deps.Actor = Depends(deps.get_current_actor),
):
    """OM은 measured 시험을, LH는 verified 시험을 승인(approve) 또는 반려(reject)합니다."""
    result = await lims_workflow.decide_sample_test(
        db, sample_test_id=sample_test_id, approve=decision_in.decision == "approve", actor=current_actor
    )
    return _transition_response(result)


# =============================================================================
# 4. 시험 결과 (TestResult) 라우터
# =============================================================================
@router.post("/sample-tests/{sample_test_id}/results", response_model=lims_schemas.TestResultResponse, status_code=status.HTTP_201_CREATED, summary="시험 결과 제출 (새 버전)")
async def submit_test_result(
    sample_test_id: int,
    result_in: lims_schemas.TestResultCreate,
    db: AsyncSession = Depends(deps.get_db_session),
    current_actor: deps.Actor = Depends(deps.get_current_actor),
):
    authorization.ensure_can_perform(current_actor, "result.submit")
    return await lims_crud.test_result.submit(db, sample_test_id=sample_test_id, obj_in=result_in, actor=current_actor)


@router.get("/sample-tests/{sample_test_id}/results", response_model=List[lims_schemas.TestResultResponse], summary="시험 결과 이력")
async def read_test_results(
    sample_test_id: int,
    db: AsyncSession = Depends(deps.get_db_session),
    current_actor: deps.Actor = Depends(deps.get_current_actor),
):
    await lims_crud.sample_test.get_or_404(db, sample_test_id)
    return await lims_crud.test_result.history(db, sample_test_id=sample_test_id)


# =============================================================================
# 5. 정도관리 (QC) 라우터
# =============================================================================
@router.post("/qc/controls", response_model=lims_schemas.QcControlResponse, status_code=status.HTTP_201_CREATED, summary="정도관리 물질 정의")
async def create_qc_control(
    control_in: lims_schemas.QcControlCreate,
    db: AsyncSession = Depends(deps.get_db_session),
    current_actor: deps.Actor = Depends(deps.get_current_actor),
):
    """허용 편차(tolerance)는 0보다 커야 하며, ruleset은 1-2s/1-3s/R-4s 중에서 지정합니다."""
    authorization.ensure_can_perform(current_actor, "qc.define_control")
    return await lims_crud.qc_control.create(db, obj_in=control_in)


@router.patch("/qc/controls/{control_id}", response_model=lims_schemas.QcControlResponse, summary="정도관리 물질 수정/비활성화")
async def update_qc_control(
    control_id: int,
    control_in: lims_schemas.QcControlUpdate,
    db: AsyncSession = Depends(deps.get_db_session),
    current_actor: deps.Actor = Depends(deps.get_current_actor),
):
    authorization.ensure_can_perform(current_actor, "qc.define_control")
    db_obj = await lims_crud.qc_control.get_or_404(db, control_id)
    return await lims_crud.qc_control.update(db, db_obj=db_obj, obj_in=control_in)


@router.post("/qc/runs", response_model=lims_schemas.QcRunResponse, status_code=status.HTTP_201_CREATED, summary="정도관리 측정 기록 및 평가")
async def record_qc_run(
    run_in: lims_schemas.QcRunCreate,
    db: AsyncSession = Depends(deps.get_db_session),
    current_actor: deps.Actor = Depends(deps.get_current_actor),
):
    """
    측정값을 Westgard 규칙으로 평가하여 기록합니다.
    규칙 위반은 오류가 아니라 판정 데이터(status, violations)로 반환됩니다.
    """
    authorization.ensure_can_perform(current_actor, "qc.record_run")
    return await lims_qc.evaluate_and_persist(
        db,
        batch_id=run_in.batch_id,
        control_id=run_in.qc_control_id,
        value=run_in.value,
        actor=current_actor,
    )


@router.get("/qc/batches/{batch_id}/summary", response_model=lims_schemas.QcBatchSummary, summary="배치 QC 요약")
async def read_qc_batch_summary(
    batch_id: str,
    db: AsyncSession = Depends(deps.get_db_session),
    current_actor: deps.Actor = Depends(deps.get_current_actor),
):
    return await lims_qc.summarize_batch(db, batch_id)
