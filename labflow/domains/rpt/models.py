# labflow/domains/rpt/models.py

"""
'rpt' 도메인 (PostgreSQL 'rpt' 스키마)의 데이터베이스 ORM 모델을 정의하는 모듈입니다.
"""

from typing import Optional, List
from datetime import datetime, UTC

from sqlalchemy import UniqueConstraint
from sqlalchemy.sql import func
from sqlalchemy.types import TIMESTAMP

from sqlmodel import Field, Relationship, SQLModel, Column

from labflow.core.database import JSONType


# =============================================================================
# 1. rpt.reports 테이블 모델
# =============================================================================
class Report(SQLModel, table=True):
    __tablename__ = "reports"
    __table_args__ = {'schema': 'rpt'}

    id: Optional[int] = Field(default=None, primary_key=True)
    sample_id: int = Field(foreign_key="lims.samples.id", index=True, description="시료 ID (FK)")
    report_type: str = Field(default="coa", max_length=20, description="성적서 유형")
    report_no: str = Field(max_length=100, unique=True, description="성적서 번호 (연도별 무결번)")
    generated_at: Optional[datetime] = Field(
        default_factory=lambda: datetime.now(UTC),
        sa_column=Column(TIMESTAMP(timezone=True), server_default=func.now()),
    )
    generated_by: Optional[int] = Field(default=None, description="생성자 ID")
    is_locked: bool = Field(default=False, description="확정(잠금) 여부")
    is_superseded: bool = Field(default=False, description="대체 여부 (삭제 대신 사용)")
    pdf_url: Optional[str] = Field(default=None, max_length=500)
    template_code: Optional[str] = Field(default=None, max_length=50)
    finalized_at: Optional[datetime] = Field(default=None, sa_column=Column(TIMESTAMP(timezone=True)))
    finalized_by: Optional[int] = Field(default=None)
    created_at: Optional[datetime] = Field(
        default_factory=lambda: datetime.now(UTC),
        sa_column=Column(TIMESTAMP(timezone=True), server_default=func.now()),
    )
    updated_at: Optional[datetime] = Field(
        default_factory=lambda: datetime.now(UTC),
        sa_column=Column(TIMESTAMP(timezone=True), server_default=func.now(), onupdate=func.now()),
    )

    items: List["ReportItem"] = Relationship(back_populates="report")
    signatures: List["ReportSignature"] = Relationship(back_populates="report")


# =============================================================================
# 2. rpt.report_items 테이블 모델 (생성 시점 스냅샷)
# =============================================================================
class ReportItem(SQLModel, table=True):
    __tablename__ = "report_items"
    __table_args__ = {'schema': 'rpt'}

    id: Optional[int] = Field(default=None, primary_key=True)
    report_id: int = Field(foreign_key="rpt.reports.id", index=True)
    sample_test_id: int = Field(description="원본 시험 ID (스냅샷이므로 FK 아님)")
    parameter_name: str = Field(max_length=255)
    method_name: Optional[str] = Field(default=None, max_length=255)
    result_value: Optional[str] = Field(default=None, max_length=255)
    unit_label: Optional[str] = Field(default=None, max_length=50)
    flags: List[str] = Field(default_factory=list, sa_column=Column(JSONType, nullable=False))
    interpretation: Optional[str] = Field(default=None)
    tested_at: Optional[datetime] = Field(default=None, sa_column=Column(TIMESTAMP(timezone=True)))
    order_no: int = Field(default=0)

    report: "Report" = Relationship(back_populates="items")


# =============================================================================
# 3. rpt.report_signatures 테이블 모델
# =============================================================================
class ReportSignature(SQLModel, table=True):
    __tablename__ = "report_signatures"
    __table_args__ = (
        UniqueConstraint("report_id", "role_code", name="uq_report_signatures_report_role"),
        {'schema': 'rpt'},
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    report_id: int = Field(foreign_key="rpt.reports.id", index=True)
    role_code: str = Field(max_length=20)
    sort_order: int = Field(default=0)
    signed_by: Optional[int] = Field(default=None)
    signed_at: Optional[datetime] = Field(default=None, sa_column=Column(TIMESTAMP(timezone=True)))
    signature_hash: Optional[str] = Field(default=None, max_length=64)

    report: "Report" = Relationship(back_populates="signatures")


# =============================================================================
# 4. rpt.report_counters 테이블 모델 (채번 카운터)
# =============================================================================
class ReportCounter(SQLModel, table=True):
    __tablename__ = "report_counters"
    __table_args__ = {'schema': 'rpt'}

    id: Optional[int] = Field(default=None, primary_key=True)
    counter_key: str = Field(max_length=100, unique=True)
    next_seq: int = Field(default=1)


# =============================================================================
# 5. rpt.signature_specimens 테이블 모델 (서명 이미지/참조)
# =============================================================================
class SignatureSpecimen(SQLModel, table=True):
    __tablename__ = "signature_specimens"
    __table_args__ = {'schema': 'rpt'}

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(index=True, description="서명자 사용자 ID")
    role_code: str = Field(max_length=20)
    image_ref: str = Field(max_length=500, description="서명 이미지 경로 또는 참조")
    is_active: bool = Field(default=True)
    created_at: Optional[datetime] = Field(
        default_factory=lambda: datetime.now(UTC),
        sa_column=Column(TIMESTAMP(timezone=True), server_default=func.now()),
    )
