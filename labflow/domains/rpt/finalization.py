# labflow/domains/rpt/finalization.py

"""
성적서 확정(finalize) 및 서명 서비스입니다.

확정은 한 번만 가능합니다. 잠금 플래그(is_locked)에 대한 조건부 UPDATE
(WHERE is_locked = false)가 동시 요청 간 상호 배제 역할을 하며, 진 쪽은 Conflict를 받습니다.
잠금 획득 이후에만 PDF를 저장하고, 이후 단계가 실패하면 트랜잭션을 롤백하고 저장한 파일을 삭제합니다.
"""

import hashlib
import logging
import re
import uuid
from datetime import datetime, UTC
from typing import Any, Dict, List, Optional

from sqlalchemy import update
from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from labflow.core.config import settings
from labflow.core.exceptions import Conflict, Forbidden, NotFound, PreconditionFailed, StorageFailed
from labflow.core.security import Actor
from labflow.domains.lims import models as lims_models
from labflow.domains.lims import workflow as lims_workflow
from labflow.domains.lims.models import SampleStatus
from labflow.domains.rpt import models as rpt_models
from labflow.domains.rpt import schemas as rpt_schemas
from labflow.domains.rpt.generation import get_items, get_signatures
from labflow.services import authorization
from labflow.services.audit import audit_sink
from labflow.services.pdf import get_renderer
from labflow.services.storage import get_storage

logger = logging.getLogger(__name__)

# 요청 템플릿 별칭 -> 표준 템플릿 코드
TEMPLATE_ALIASES = {
    "INDIVIDUAL": "COA_PCR_MANDIRI",
    "MANDIRI": "COA_PCR_MANDIRI",
    "INSTITUTION": "COA_PCR_KERJASAMA",
    "KERJASAMA": "COA_PCR_KERJASAMA",
}


def resolve_template_code(requested: Optional[str]) -> str:
    code = (requested or "").strip()
    if not code:
        return settings.DEFAULT_TEMPLATE_CODE
    upper = code.upper()
    if "WGS" in upper:
        return "COA_WGS"
    return TEMPLATE_ALIASES.get(upper, upper)


def signature_hash(report_id: int, role_code: str, actor_id: int, signed_at: datetime) -> str:
    payload = f"{report_id}|{role_code}|{actor_id}|{signed_at.isoformat()}|{uuid.uuid4()}"
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def pdf_path_for(report_no: str, template_code: str, year: int) -> str:
    safe_no = re.sub(r"[^A-Za-z0-9._-]+", "-", report_no.replace("/", "-"))
    return f"reports/{year}/{safe_no}_{template_code}_FINAL.pdf"


async def _load_report(db: AsyncSession, report_id: int) -> rpt_models.Report:
    report = (await db.execute(
        select(rpt_models.Report)
        .where(rpt_models.Report.id == report_id)
        .execution_options(populate_existing=True)
    )).scalar_one_or_none()
    if report is None:
        raise NotFound(f"Report {report_id} not found")
    return report


async def has_active_specimen(db: AsyncSession, user_id: int, role_code: str) -> bool:
    query = select(rpt_models.SignatureSpecimen.id).where(
        rpt_models.SignatureSpecimen.user_id == user_id,
        rpt_models.SignatureSpecimen.role_code == role_code,
        rpt_models.SignatureSpecimen.is_active == True,  # noqa: E712
    ).limit(1)
    return (await db.execute(query)).scalar_one_or_none() is not None


def _render_bag(
    report: rpt_models.Report,
    sample: lims_models.Sample,
    items: List[rpt_models.ReportItem],
    signatures: List[rpt_models.ReportSignature],
    finalized_at: datetime,
) -> Dict[str, Any]:
    return {
        "report_no": report.report_no,
        "sample_code": sample.sample_code,
        "client_reference": sample.client_reference,
        "generated_at": report.generated_at.isoformat() if report.generated_at else None,
        "finalized_at": finalized_at.strftime("%Y-%m-%d %H:%M UTC"),
        "items": [
            {
                "parameter_name": item.parameter_name,
                "method_name": item.method_name,
                "result_value": item.result_value,
                "unit_label": item.unit_label,
                "interpretation": item.interpretation,
            }
            for item in items
        ],
        "signatures": [
            {
                "role_code": s.role_code,
                "signed_by": s.signed_by,
                "signed_at": s.signed_at.strftime("%Y-%m-%d %H:%M") if s.signed_at else None,
            }
            for s in signatures
        ],
    }


# =============================================================================
# 성적서 확정
# =============================================================================
async def finalize(
    db: AsyncSession,
    *,
    report_id: int,
    actor: Actor,
    template_code: Optional[str] = None,
    renderer=None,
    storage=None,
) -> Dict[str, Any]:
    """
    성적서를 확정합니다.

    잠금 -> PDF 렌더링/저장 -> 확정 역할(LH) 서명 -> 시료 reported 전이를 한 트랜잭션에서 수행하며,
    이미 확정된 성적서에 대한 재요청은 Conflict 입니다.
    """
    renderer = renderer or get_renderer()
    storage = storage or get_storage()
    finalize_role = settings.REPORT_FINALIZE_ROLE.upper()
    stored_path: Optional[str] = None

    try:
        report = await _load_report(db, report_id)
        if report.is_locked:
            raise Conflict(f"Report {report.report_no} is already finalized")
        if report.report_type != settings.REPORT_TYPE:
            raise PreconditionFailed(
                f"Report {report.report_no} is of type '{report.report_type}', not '{settings.REPORT_TYPE}'"
            )
        if not authorization.can_perform(actor, "report.finalize"):
            raise Forbidden(f"Role '{actor.role.value}' may not finalize reports")
        if settings.REQUIRE_SIGNATURE_SPECIMEN and not await has_active_specimen(db, actor.user_id, finalize_role):
            raise PreconditionFailed(
                f"No active signature specimen on file for user {actor.user_id} ({finalize_role})"
            )

        final_template = resolve_template_code(template_code)
        now = datetime.now(UTC)

        # 잠금 획득: 동시에 들어온 요청 중 하나만 1행을 갱신합니다.
        locked = await db.execute(
            update(rpt_models.Report)
            .where(rpt_models.Report.id == report_id, rpt_models.Report.is_locked == False)  # noqa: E712
            .values(is_locked=True, finalized_at=now, finalized_by=actor.user_id, template_code=final_template)
            .execution_options(synchronize_session=False)
        )
        if locked.rowcount != 1:
            raise Conflict(f"Report {report.report_no} was finalized by a concurrent request")

        sample = await lims_workflow.lock_sample(db, report.sample_id)

        # 확정 역할 서명 (슬롯이 없으면 생성)
        signatures = await get_signatures(db, report_id)
        slot = next((s for s in signatures if s.role_code == finalize_role), None)
        if slot is None:
            slot = rpt_models.ReportSignature(
                report_id=report_id, role_code=finalize_role, sort_order=len(signatures) + 1
            )
            signatures.append(slot)
        slot.signed_by = actor.user_id
        slot.signed_at = now
        slot.signature_hash = signature_hash(report_id, finalize_role, actor.user_id, now)
        db.add(slot)

        pdf_bytes = renderer.render(
            final_template, _render_bag(report, sample, await get_items(db, report_id), signatures, now)
        )
        stored_path = await storage.store(pdf_path_for(report.report_no, final_template, now.year), pdf_bytes)

        report.is_locked = True
        report.template_code = final_template
        report.finalized_at = now
        report.finalized_by = actor.user_id
        report.pdf_url = stored_path
        db.add(report)

        transition = await lims_workflow.transition_sample(db, sample, SampleStatus.REPORTED.value, actor)
        await db.commit()
    except Exception:
        await db.rollback()
        if stored_path is not None:
            try:
                await storage.delete(stored_path)
            except StorageFailed:
                logger.exception("롤백 후 PDF 정리 실패: %s", stored_path)
        raise

    logger.info("성적서 확정: report=%s template=%s pdf=%s", report_id, final_template, stored_path)
    audit_sink.record(
        "report.finalize", actor, f"report:{report_id}",
        {"is_locked": False}, {"is_locked": True, "template_code": final_template, "pdf_url": stored_path},
    )
    if transition.changed:
        audit_sink.record("sample.transition", actor, f"sample:{transition.entity_id}",
                          {"status": transition.from_state}, {"status": transition.to_state})

    return {
        "report_id": report_id,
        "report_no": report.report_no,
        "template_code": final_template,
        "pdf_url": stored_path,
    }


# =============================================================================
# 개별 서명
# =============================================================================
async def sign_report(
    db: AsyncSession,
    *,
    report_id: int,
    role_code: str,
    actor: Actor,
) -> rpt_models.ReportSignature:
    """확정 전 성적서의 서명 슬롯 하나를 채웁니다. 이미 서명된 슬롯은 다시 서명할 수 없습니다."""
    role_code = role_code.strip().upper()
    try:
        report = await _load_report(db, report_id)
        if report.is_locked:
            raise Conflict(f"Report {report.report_no} is locked")
        if not authorization.can_sign(actor, role_code):
            raise Forbidden(f"Role '{actor.role.value}' may not sign the '{role_code}' slot")

        slot = (await db.execute(
            select(rpt_models.ReportSignature)
            .where(
                rpt_models.ReportSignature.report_id == report_id,
                rpt_models.ReportSignature.role_code == role_code,
            )
            .with_for_update()
            .execution_options(populate_existing=True)
        )).scalar_one_or_none()
        if slot is None:
            raise NotFound(f"Signature slot '{role_code}' not found for report {report_id}")
        if slot.signed_at is not None:
            raise Conflict(f"Signature slot '{role_code}' is already signed")

        now = datetime.now(UTC)
        slot.signed_by = actor.user_id
        slot.signed_at = now
        slot.signature_hash = signature_hash(report_id, role_code, actor.user_id, now)
        db.add(slot)
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    await db.refresh(slot)
    audit_sink.record("report.sign", actor, f"report:{report_id}", None, {"role_code": role_code})
    return slot


# =============================================================================
# 서명 견본 (SignatureSpecimen)
# =============================================================================
async def register_signature_specimen(
    db: AsyncSession,
    *,
    obj_in: rpt_schemas.SignatureSpecimenCreate,
    actor: Optional[Actor] = None,
) -> rpt_models.SignatureSpecimen:
    """
    서명자의 서명 견본을 등록합니다. 같은 사용자/역할의 기존 활성 견본은 비활성화됩니다.
    """
    role_code = obj_in.role_code.strip().upper()
    try:
        await db.execute(
            update(rpt_models.SignatureSpecimen)
            .where(
                rpt_models.SignatureSpecimen.user_id == obj_in.user_id,
                rpt_models.SignatureSpecimen.role_code == role_code,
                rpt_models.SignatureSpecimen.is_active == True,  # noqa: E712
            )
            .values(is_active=False)
            .execution_options(synchronize_session=False)
        )
        specimen = rpt_models.SignatureSpecimen(
            user_id=obj_in.user_id, role_code=role_code, image_ref=obj_in.image_ref, is_active=True
        )
        db.add(specimen)
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    await db.refresh(specimen)
    audit_sink.record("signature_specimen.register", actor, f"signature_specimen:{specimen.id}",
                      None, {"user_id": specimen.user_id, "role_code": role_code})
    return specimen
