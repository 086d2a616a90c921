# labflow/domains/lims/schemas.py

"""
'lims' 도메인의 Pydantic 스키마를 정의하는 모듈입니다.

API 요청(Request) 및 응답(Response) 데이터의 유효성을 검사하고 직렬화하는 데 사용됩니다.
"""

from typing import List, Optional, Dict, Any
from datetime import datetime
from pydantic import BaseModel, Field as PydanticField, field_validator

from labflow.domains.lims.models import QC_RULES, ControlType, SampleStatus, TestStatus


# =============================================================================
# 1. 분석 항목 (Parameter) / 시험 방법 (Method) 스키마
# =============================================================================
class ParameterCreate(BaseModel):
    code: str = PydanticField(max_length=20, description="분석 항목 코드")
    name: str = PydanticField(max_length=255, description="분석 항목명")
    unit: Optional[str] = PydanticField(default=None, max_length=50, description="측정 단위")
    sort_order: int = PydanticField(default=0, description="정렬 순서")
    is_active: bool = PydanticField(default=True)


class ParameterResponse(ParameterCreate):
    id: int
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class MethodCreate(BaseModel):
    code: str = PydanticField(max_length=20, description="시험 방법 코드")
    name: str = PydanticField(max_length=255, description="시험 방법명")
    is_active: bool = PydanticField(default=True)


class MethodResponse(MethodCreate):
    id: int

    class Config:
        from_attributes = True


# =============================================================================
# 2. 시료 (Sample) 스키마
# =============================================================================
class SampleCreate(BaseModel):
    sample_code: str = PydanticField(max_length=50, description="시료 코드")
    sample_type: str = PydanticField(max_length=50, description="시료 유형")
    priority: int = PydanticField(default=0)
    client_reference: Optional[str] = PydanticField(default=None, max_length=255)
    received_at: Optional[datetime] = None


class SampleResponse(BaseModel):
    id: int
    sample_code: str
    sample_type: str
    priority: int
    client_reference: Optional[str] = None
    status: str
    is_archived: bool
    received_at: Optional[datetime] = None
    received_by: Optional[int] = None

    class Config:
        from_attributes = True


class SampleTransitionRequest(BaseModel):
    target_status: SampleStatus


# =============================================================================
# 3. 시료별 시험 (SampleTest) 스키마
# =============================================================================
class SampleTestCreate(BaseModel):
    parameter_id: int
    method_id: Optional[int] = None
    batch_id: Optional[str] = PydanticField(default=None, max_length=50)
    assigned_to: Optional[int] = None


class SampleTestResponse(BaseModel):
    id: int
    sample_id: int
    parameter_id: int
    method_id: Optional[int] = None
    batch_id: Optional[str] = None
    status: str
    qc_done: bool
    om_verified: bool
    om_verified_at: Optional[datetime] = None
    om_verified_by: Optional[int] = None
    lh_validated: bool
    lh_validated_at: Optional[datetime] = None
    lh_validated_by: Optional[int] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class SampleTestTransitionRequest(BaseModel):
    target_status: TestStatus


class SampleTestDecisionRequest(BaseModel):
    decision: str = PydanticField(pattern="^(approve|reject)$", description="approve 또는 reject")
    note: Optional[str] = None


class TransitionResponse(BaseModel):
    entity: str
    entity_id: int
    from_state: str
    to_state: str
    changed: bool


# =============================================================================
# 4. 시험 결과 (TestResult) 스키마
# =============================================================================
class TestResultCreate(BaseModel):
    raw_data: Optional[Dict[str, Any]] = None
    calc_data: Optional[Dict[str, Any]] = None
    interpretation: Optional[str] = None
    value_final: Optional[str] = PydanticField(default=None, max_length=255)
    unit: Optional[str] = PydanticField(default=None, max_length=50)
    flags: List[str] = PydanticField(default_factory=list)


class TestResultResponse(TestResultCreate):
    id: int
    sample_test_id: int
    version: int
    created_by: Optional[int] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


# =============================================================================
# 5. 정도관리 (QC) 스키마
# =============================================================================
class QcControlCreate(BaseModel):
    parameter_id: Optional[int] = None
    name: str = PydanticField(max_length=255)
    control_type: ControlType = ControlType.CONTROL_MATERIAL
    target: float
    # 0으로 나누기를 막기 위해 정의 시점에 검증합니다.
    tolerance: float = PydanticField(gt=0, description="허용 편차 (1 SD), 0보다 커야 함")
    ruleset: List[str] = PydanticField(default_factory=lambda: list(QC_RULES))
    is_active: bool = True

    @field_validator("ruleset")
    @classmethod
    def _known_rules(cls, value: List[str]) -> List[str]:
        unknown = [rule for rule in value if rule not in QC_RULES]
        if unknown:
            raise ValueError(f"Unknown QC rules: {unknown}. Allowed: {list(QC_RULES)}")
        # 순서를 유지하며 중복 제거
        return list(dict.fromkeys(value))


class QcControlResponse(BaseModel):
    id: int
    parameter_id: Optional[int] = None
    name: str
    control_type: str
    target: float
    tolerance: float
    ruleset: List[str]
    is_active: bool

    class Config:
        from_attributes = True


class QcRunCreate(BaseModel):
    batch_id: str = PydanticField(max_length=50)
    qc_control_id: int
    value: float


class QcRunResponse(BaseModel):
    id: int
    qc_control_id: int
    batch_id: str
    value: float
    z_score: float
    status: str
    violations: List[str]
    created_by: Optional[int] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class QcBatchSummary(BaseModel):
    batch_id: str
    status: str
    counts: Dict[str, int]
    open_fail: bool
    total_runs: int


class QcControlUpdate(BaseModel):
    name: Optional[str] = PydanticField(default=None, max_length=255)
    is_active: Optional[bool] = None
