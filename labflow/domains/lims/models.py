# labflow/domains/lims/models.py

"""
'lims' 도메인 (PostgreSQL 'lims' 스키마)의 데이터베이스 ORM 모델을 정의하는 모듈입니다.
"""

from enum import Enum
from typing import Optional, List, Dict, Any
from datetime import datetime, UTC

from sqlalchemy import Numeric, UniqueConstraint, Index
from sqlalchemy.sql import func
from sqlalchemy.types import TIMESTAMP

from sqlmodel import Field, Relationship, SQLModel, Column

from labflow.core.database import JSONType


# =============================================================================
# 상태 및 코드 정의
# =============================================================================
class SampleStatus(str, Enum):
    RECEIVED = "received"
    IN_PROGRESS = "in_progress"
    TESTING_COMPLETED = "testing_completed"
    VERIFIED = "verified"
    VALIDATED = "validated"
    REPORTED = "reported"
    # 접수 단계 반려 (종료 상태)
    RETURNED = "returned"
    REJECTED = "rejected"


class TestStatus(str, Enum):
    ASSIGNED = "assigned"
    MEASURED = "measured"
    VERIFIED = "verified"
    VALIDATED = "validated"
    # 검토/승인 반려 (종료 상태)
    FAILED = "failed"


class QcStatus(str, Enum):
    PASS = "pass"
    WARNING = "warning"
    FAIL = "fail"


class ControlType(str, Enum):
    CONTROL_MATERIAL = "control_material"
    BLANK = "blank"


QC_RULES = ("1-2s", "1-3s", "R-4s")


def _created_at_field() -> Any:
    return Field(
        default_factory=lambda: datetime.now(UTC),
        sa_column=Column(TIMESTAMP(timezone=True), server_default=func.now()),
        description="레코드 생성 일시"
    )


def _updated_at_field() -> Any:
    return Field(
        default_factory=lambda: datetime.now(UTC),
        sa_column=Column(TIMESTAMP(timezone=True), server_default=func.now(), onupdate=func.now()),
        description="레코드 마지막 업데이트 일시"
    )


# =============================================================================
# 1. lims.parameters 테이블 모델
# =============================================================================
class ParameterBase(SQLModel):
    code: str = Field(max_length=20, unique=True, description="분석 항목 코드")
    name: str = Field(max_length=255, description="분석 항목명")
    unit: Optional[str] = Field(default=None, max_length=50, description="측정 단위")
    sort_order: int = Field(default=0, description="정렬순서")
    is_active: bool = Field(default=True, description="활성 여부")


class Parameter(ParameterBase, table=True):
    __tablename__ = "parameters"
    __table_args__ = {'schema': 'lims'}

    id: Optional[int] = Field(default=None, primary_key=True)
    created_at: Optional[datetime] = _created_at_field()
    updated_at: Optional[datetime] = _updated_at_field()


# =============================================================================
# 2. lims.methods 테이블 모델
# =============================================================================
class MethodBase(SQLModel):
    code: str = Field(max_length=20, unique=True, description="시험 방법 코드")
    name: str = Field(max_length=255, description="시험 방법명")
    is_active: bool = Field(default=True, description="활성 여부")


class Method(MethodBase, table=True):
    __tablename__ = "methods"
    __table_args__ = {'schema': 'lims'}

    id: Optional[int] = Field(default=None, primary_key=True)
    created_at: Optional[datetime] = _created_at_field()
    updated_at: Optional[datetime] = _updated_at_field()


# =============================================================================
# 3. lims.samples 테이블 모델
# =============================================================================
class SampleBase(SQLModel):
    sample_code: str = Field(max_length=50, unique=True, description="시료 코드")
    sample_type: str = Field(max_length=50, description="시료 유형")
    priority: int = Field(default=0, description="우선순위 (높을수록 우선)")
    client_reference: Optional[str] = Field(default=None, max_length=255, description="의뢰처 참조 번호")
    received_at: Optional[datetime] = Field(
        default_factory=lambda: datetime.now(UTC),
        sa_column=Column(TIMESTAMP(timezone=True), server_default=func.now()),
        description="접수 일시"
    )


class Sample(SampleBase, table=True):
    __tablename__ = "samples"
    __table_args__ = {'schema': 'lims'}

    id: Optional[int] = Field(default=None, primary_key=True)
    status: str = Field(default=SampleStatus.RECEIVED.value, max_length=30, index=True, description="시료 상태")
    is_archived: bool = Field(default=False, description="보관 처리 여부 (물리 삭제 없음)")
    received_by: Optional[int] = Field(default=None, description="접수자 ID")
    created_at: Optional[datetime] = _created_at_field()
    updated_at: Optional[datetime] = _updated_at_field()

    tests: List["SampleTest"] = Relationship(back_populates="sample")


# =============================================================================
# 4. lims.sample_tests 테이블 모델
# =============================================================================
class SampleTest(SQLModel, table=True):
    __tablename__ = "sample_tests"
    __table_args__ = {'schema': 'lims'}

    id: Optional[int] = Field(default=None, primary_key=True)
    sample_id: int = Field(foreign_key="lims.samples.id", index=True, description="시료 ID (FK)")
    parameter_id: int = Field(foreign_key="lims.parameters.id", description="분석 항목 ID (FK)")
    method_id: Optional[int] = Field(default=None, foreign_key="lims.methods.id", description="시험 방법 ID (FK)")
    batch_id: Optional[str] = Field(default=None, max_length=50, index=True, description="QC 배치 식별자")
    status: str = Field(default=TestStatus.ASSIGNED.value, max_length=30, description="시험 상태")
    qc_done: bool = Field(default=False, description="배치 QC 통과 여부")
    om_verified: bool = Field(default=False, description="OM 검토 완료 여부")
    om_verified_at: Optional[datetime] = Field(default=None, sa_column=Column(TIMESTAMP(timezone=True)))
    om_verified_by: Optional[int] = Field(default=None)
    lh_validated: bool = Field(default=False, description="LH 승인 완료 여부")
    lh_validated_at: Optional[datetime] = Field(default=None, sa_column=Column(TIMESTAMP(timezone=True)))
    lh_validated_by: Optional[int] = Field(default=None)
    assigned_to: Optional[int] = Field(default=None, description="담당 분석자 ID")
    started_at: Optional[datetime] = Field(default=None, sa_column=Column(TIMESTAMP(timezone=True)))
    completed_at: Optional[datetime] = Field(default=None, sa_column=Column(TIMESTAMP(timezone=True)))
    created_at: Optional[datetime] = _created_at_field()
    updated_at: Optional[datetime] = _updated_at_field()

    # --- 관계 정의 ---
    sample: "Sample" = Relationship(back_populates="tests")
    parameter: "Parameter" = Relationship()
    method: Optional["Method"] = Relationship()
    results: List["TestResult"] = Relationship(back_populates="sample_test")


# =============================================================================
# 5. lims.test_results 테이블 모델 (버전 관리, 추가 전용)
# =============================================================================
class TestResult(SQLModel, table=True):
    __tablename__ = "test_results"
    __table_args__ = (
        UniqueConstraint("sample_test_id", "version", name="uq_test_results_sample_test_version"),
        {'schema': 'lims'},
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    sample_test_id: int = Field(foreign_key="lims.sample_tests.id", index=True)
    version: int = Field(description="결과 버전 (시험별 단조 증가)")
    raw_data: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSONType))
    calc_data: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSONType))
    interpretation: Optional[str] = Field(default=None, description="결과 해석")
    value_final: Optional[str] = Field(default=None, max_length=255, description="최종 결과값")
    unit: Optional[str] = Field(default=None, max_length=50)
    flags: List[str] = Field(default_factory=list, sa_column=Column(JSONType, nullable=False))
    created_by: Optional[int] = Field(default=None, description="결과 입력자 ID")
    created_at: Optional[datetime] = _created_at_field()

    sample_test: "SampleTest" = Relationship(back_populates="results")


# =============================================================================
# 6. lims.qc_controls 테이블 모델
# =============================================================================
class QcControl(SQLModel, table=True):
    __tablename__ = "qc_controls"
    __table_args__ = {'schema': 'lims'}

    id: Optional[int] = Field(default=None, primary_key=True)
    parameter_id: Optional[int] = Field(default=None, foreign_key="lims.parameters.id")
    name: str = Field(max_length=255, description="정도관리 물질명")
    control_type: str = Field(default=ControlType.CONTROL_MATERIAL.value, max_length=30)
    target: float = Field(sa_column=Column(Numeric(28, 8), nullable=False), description="목표값")
    tolerance: float = Field(sa_column=Column(Numeric(28, 8), nullable=False), description="허용 편차 (1 SD)")
    ruleset: List[str] = Field(default_factory=lambda: list(QC_RULES), sa_column=Column(JSONType, nullable=False))
    is_active: bool = Field(default=True)
    created_at: Optional[datetime] = _created_at_field()
    updated_at: Optional[datetime] = _updated_at_field()

    runs: List["QcRun"] = Relationship(back_populates="control")


# =============================================================================
# 7. lims.qc_runs 테이블 모델 (추가 전용, R-4s 위반 보정만 허용)
# =============================================================================
class QcRun(SQLModel, table=True):
    __tablename__ = "qc_runs"
    __table_args__ = (
        Index("ix_qc_runs_control_batch", "qc_control_id", "batch_id"),
        {'schema': 'lims'},
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    qc_control_id: int = Field(foreign_key="lims.qc_controls.id")
    batch_id: str = Field(max_length=50, index=True)
    value: float = Field(sa_column=Column(Numeric(28, 8), nullable=False))
    z_score: float = Field(description="(value - target) / tolerance")
    status: str = Field(max_length=10)
    violations: List[str] = Field(default_factory=list, sa_column=Column(JSONType, nullable=False))
    created_by: Optional[int] = Field(default=None)
    created_at: Optional[datetime] = _created_at_field()

    control: "QcControl" = Relationship(back_populates="runs")
