# labflow/domains/rpt/routers.py

"""
'rpt' 도메인 (성적서 생성, 서명, 확정) 관련 API 엔드포인트를 정의하는 모듈입니다.
"""

from fastapi import APIRouter, Depends, status
from sqlmodel.ext.asyncio.session import AsyncSession

from labflow.core import dependencies as deps
from labflow.core.exceptions import NotFound
from labflow.services import authorization
from . import finalization, generation, schemas
from . import models as rpt_models

router = APIRouter(
    tags=["Report Management (성적서 관리)"],
    responses={404: {"description": "Not found"}},
)


async def _with_details(session: AsyncSession, report: rpt_models.Report) -> schemas.ReportReadWithDetails:
    base = schemas.ReportRead.model_validate(report)
    return schemas.ReportReadWithDetails(
        **base.model_dump(),
        items=[schemas.ReportItemRead.model_validate(i) for i in await generation.get_items(session, report.id)],
        signatures=[
            schemas.ReportSignatureRead.model_validate(s) for s in await generation.get_signatures(session, report.id)
        ],
    )


@router.post(
    "/samples/{sample_id}/reports",
    response_model=schemas.ReportReadWithDetails,
    status_code=status.HTTP_201_CREATED,
    summary="성적서 초안 생성",
)
async def generate_report(
    sample_id: int,
    session: AsyncSession = Depends(deps.get_db_session),
    current_actor: deps.Actor = Depends(deps.get_current_actor),
):
    """
    승인된 시료의 성적서 초안을 생성합니다.
    확정되지 않은 초안이 이미 있으면 같은 초안을 반환합니다.
    """
    authorization.ensure_can_perform(current_actor, "report.generate")
    report = await generation.generate_for_sample(session, sample_id=sample_id, actor=current_actor)
    return await _with_details(session, report)


@router.get("/reports/{report_id}", response_model=schemas.ReportReadWithDetails, summary="성적서 조회")
async def read_report(
    report_id: int,
    session: AsyncSession = Depends(deps.get_db_session),
    current_actor: deps.Actor = Depends(deps.get_current_actor),
):
    report = await session.get(rpt_models.Report, report_id)
    if report is None:
        raise NotFound(f"Report {report_id} not found")
    return await _with_details(session, report)


@router.post("/reports/{report_id}/finalize", response_model=schemas.FinalizeResponse, summary="성적서 확정")
async def finalize_report(
    report_id: int,
    finalize_in: schemas.FinalizeRequest,
    session: AsyncSession = Depends(deps.get_db_session),
    current_actor: deps.Actor = Depends(deps.get_current_actor),
):
    """
    성적서를 확정합니다 (PDF 발행, LH 서명, 시료 reported 전이).
    이미 확정된 성적서는 409 Conflict를 반환합니다.
    """
    return await finalization.finalize(
        session, report_id=report_id, actor=current_actor, template_code=finalize_in.template_code
    )


@router.post(
    "/reports/{report_id}/signatures/{role_code}",
    response_model=schemas.ReportSignatureRead,
    summary="성적서 서명",
)
async def sign_report(
    report_id: int,
    role_code: str,
    session: AsyncSession = Depends(deps.get_db_session),
    current_actor: deps.Actor = Depends(deps.get_current_actor),
):
    return await finalization.sign_report(session, report_id=report_id, role_code=role_code, actor=current_actor)


@router.post(
    "/signature-specimens",
    response_model=schemas.SignatureSpecimenRead,
    status_code=status.HTTP_201_CREATED,
    summary="서명 견본 등록",
)
async def register_signature_specimen(
    specimen_in: schemas.SignatureSpecimenCreate,
    session: AsyncSession = Depends(deps.get_db_session),
    current_actor: deps.Actor = Depends(deps.get_current_actor),
):
    """
    서명자의 서명 견본을 등록합니다. 관리자 권한이 필요합니다.
    """
    authorization.ensure_can_perform(current_actor, "signature.register")
    return await finalization.register_signature_specimen(session, obj_in=specimen_in, actor=current_actor)
