# labflow/domains/rpt/schemas.py

"""
'rpt' 도메인의 Pydantic 스키마를 정의하는 모듈입니다.
"""

from typing import List, Optional
from datetime import datetime
from pydantic import BaseModel, Field


class ReportItemRead(BaseModel):
    """
    성적서 생성 시점에 스냅샷된 시험 결과 한 줄입니다.
    """
    id: int
    sample_test_id: int
    parameter_name: str
    method_name: Optional[str] = None
    result_value: Optional[str] = None
    unit_label: Optional[str] = None
    flags: List[str] = Field(default_factory=list)
    interpretation: Optional[str] = None
    tested_at: Optional[datetime] = None
    order_no: int

    class Config:
        from_attributes = True


class ReportSignatureRead(BaseModel):
    id: int
    role_code: str
    sort_order: int
    signed_by: Optional[int] = None
    signed_at: Optional[datetime] = None
    signature_hash: Optional[str] = None

    class Config:
        from_attributes = True


class ReportRead(BaseModel):
    """
    성적서 정보를 클라이언트에 응답하기 위한 Pydantic 모델입니다.
    """
    id: int
    sample_id: int
    report_type: str
    report_no: str
    generated_at: Optional[datetime] = None
    generated_by: Optional[int] = None
    is_locked: bool
    pdf_url: Optional[str] = None
    template_code: Optional[str] = None
    finalized_at: Optional[datetime] = None
    finalized_by: Optional[int] = None

    class Config:
        from_attributes = True  # ORM 모드 활성화


class ReportReadWithDetails(ReportRead):
    """
    성적서와 항목, 서명 슬롯을 함께 응답하기 위한 모델입니다.
    """
    items: List[ReportItemRead] = Field(default_factory=list)
    signatures: List[ReportSignatureRead] = Field(default_factory=list)


class FinalizeRequest(BaseModel):
    template_code: Optional[str] = Field(
        None, max_length=50, description="템플릿 코드 또는 별칭 (individual, institution, wgs 등)"
    )


class FinalizeResponse(BaseModel):
    report_id: int
    report_no: str
    template_code: str
    pdf_url: str


class SignatureSpecimenCreate(BaseModel):
    user_id: int = Field(..., description="서명자 사용자 ID")
    role_code: str = Field(..., max_length=20, description="서명 역할 코드 (예: LH)")
    image_ref: str = Field(..., max_length=500, description="서명 이미지 경로 또는 참조")


class SignatureSpecimenRead(SignatureSpecimenCreate):
    id: int
    is_active: bool
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True
