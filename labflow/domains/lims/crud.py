# labflow/domains/lims/crud.py

"""
'lims' 도메인의 기준 정보 및 등록 작업을 위한 비동기 CRUD 모듈입니다.
상태 변경은 workflow.py, QC 측정 기록은 qc.py가 담당합니다.
"""

from datetime import datetime, UTC
from typing import List

from sqlalchemy import func
from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from labflow.core.crud_base import CRUDBase
from labflow.core.exceptions import Conflict, NotFound, PreconditionFailed, ValidationFailed
from labflow.core.security import Actor
from labflow.domains.lims import models as lims_models
from labflow.domains.lims import qc
from labflow.domains.lims import schemas as lims_schemas
from labflow.domains.lims.models import SampleStatus, TestStatus


# =============================================================================
# 1. 분석 항목 / 시험 방법
# =============================================================================
class CRUDParameter(CRUDBase[lims_models.Parameter, lims_schemas.ParameterCreate, lims_schemas.ParameterCreate]):
    async def create(self, db: AsyncSession, *, obj_in: lims_schemas.ParameterCreate, **extra) -> lims_models.Parameter:
        if await self.get_by_attribute(db, attribute="code", value=obj_in.code):
            raise Conflict(f"Parameter code '{obj_in.code}' already exists")
        return await super().create(db, obj_in=obj_in, **extra)


class CRUDMethod(CRUDBase[lims_models.Method, lims_schemas.MethodCreate, lims_schemas.MethodCreate]):
    async def create(self, db: AsyncSession, *, obj_in: lims_schemas.MethodCreate, **extra) -> lims_models.Method:
        if await self.get_by_attribute(db, attribute="code", value=obj_in.code):
            raise Conflict(f"Method code '{obj_in.code}' already exists")
        return await super().create(db, obj_in=obj_in, **extra)


# =============================================================================
# 2. 시료 (Sample)
# =============================================================================
class CRUDSample(CRUDBase[lims_models.Sample, lims_schemas.SampleCreate, lims_schemas.SampleCreate]):
    async def register(self, db: AsyncSession, *, obj_in: lims_schemas.SampleCreate, actor: Actor) -> lims_models.Sample:
        """
        시료를 접수합니다. 상태는 항상 received로 시작합니다.
        """
        if await self.get_by_attribute(db, attribute="sample_code", value=obj_in.sample_code):
            raise Conflict(f"Sample code '{obj_in.sample_code}' already exists")
        data = obj_in.model_dump(exclude_none=True)
        db_obj = lims_models.Sample(**data, status=SampleStatus.RECEIVED.value, received_by=actor.user_id)
        db.add(db_obj)
        await db.commit()
        await db.refresh(db_obj)
        return db_obj


# =============================================================================
# 3. 시료별 시험 (SampleTest)
# =============================================================================
# 이 상태 이후의 시료에는 시험을 추가할 수 없습니다.
_OPEN_SAMPLE_STATUSES = {SampleStatus.RECEIVED.value, SampleStatus.IN_PROGRESS.value}


class CRUDSampleTest(CRUDBase[lims_models.SampleTest, lims_schemas.SampleTestCreate, lims_schemas.SampleTestCreate]):
    async def assign(
        self, db: AsyncSession, *, sample_id: int, obj_in: lims_schemas.SampleTestCreate
    ) -> lims_models.SampleTest:
        sample = await db.get(lims_models.Sample, sample_id)
        if sample is None:
            raise NotFound(f"Sample {sample_id} not found")
        if sample.status not in _OPEN_SAMPLE_STATUSES:
            raise PreconditionFailed(f"Cannot add tests to sample in status '{sample.status}'")
        if await db.get(lims_models.Parameter, obj_in.parameter_id) is None:
            raise NotFound(f"Parameter {obj_in.parameter_id} not found")
        if obj_in.method_id is not None and await db.get(lims_models.Method, obj_in.method_id) is None:
            raise NotFound(f"Method {obj_in.method_id} not found")

        db_obj = lims_models.SampleTest(
            sample_id=sample_id,
            **obj_in.model_dump(),
            status=TestStatus.ASSIGNED.value,
            # 이미 QC가 끝난 배치에 합류하는 경우
            qc_done=await qc.batch_qc_passed(db, obj_in.batch_id),
        )
        db.add(db_obj)
        await db.commit()
        await db.refresh(db_obj)
        return db_obj

    async def get_by_sample(self, db: AsyncSession, *, sample_id: int) -> List[lims_models.SampleTest]:
        query = (
            select(lims_models.SampleTest)
            .where(lims_models.SampleTest.sample_id == sample_id)
            .order_by(lims_models.SampleTest.id)
        )
        result = await db.execute(query)
        return list(result.scalars().all())


# =============================================================================
# 4. 시험 결과 (TestResult) - 추가 전용
# =============================================================================
_RESULT_WRITABLE = {TestStatus.ASSIGNED.value, TestStatus.MEASURED.value}


class CRUDTestResult(CRUDBase[lims_models.TestResult, lims_schemas.TestResultCreate, lims_schemas.TestResultCreate]):
    async def submit(
        self, db: AsyncSession, *, sample_test_id: int, obj_in: lims_schemas.TestResultCreate, actor: Actor
    ) -> lims_models.TestResult:
        """
        새 결과 버전을 추가합니다. 기존 버전은 덮어쓰지 않습니다.
        """
        try:
            test = (await db.execute(
                select(lims_models.SampleTest)
                .where(lims_models.SampleTest.id == sample_test_id)
                .with_for_update()
            )).scalar_one_or_none()
            if test is None:
                raise NotFound(f"SampleTest {sample_test_id} not found")
            if test.status not in _RESULT_WRITABLE:
                raise PreconditionFailed(
                    f"Sample test {sample_test_id} is '{test.status}'; results can only be submitted "
                    f"while the test is assigned or measured"
                )

            current = (await db.execute(
                select(func.max(lims_models.TestResult.version))
                .where(lims_models.TestResult.sample_test_id == sample_test_id)
            )).scalar_one_or_none()

            if test.started_at is None:
                test.started_at = datetime.now(UTC)
                db.add(test)

            db_obj = lims_models.TestResult(
                sample_test_id=sample_test_id,
                version=(current or 0) + 1,
                created_by=actor.user_id,
                **obj_in.model_dump(),
            )
            db.add(db_obj)
            await db.commit()
        except Exception:
            await db.rollback()
            raise
        await db.refresh(db_obj)
        return db_obj

    async def latest(self, db: AsyncSession, *, sample_test_id: int):
        query = (
            select(lims_models.TestResult)
            .where(lims_models.TestResult.sample_test_id == sample_test_id)
            .order_by(lims_models.TestResult.version.desc())
            .limit(1)
        )
        return (await db.execute(query)).scalar_one_or_none()

    async def history(self, db: AsyncSession, *, sample_test_id: int) -> List[lims_models.TestResult]:
        query = (
            select(lims_models.TestResult)
            .where(lims_models.TestResult.sample_test_id == sample_test_id)
            .order_by(lims_models.TestResult.version)
        )
        return list((await db.execute(query)).scalars().all())


# =============================================================================
# 5. 정도관리 물질 (QcControl)
# =============================================================================
class CRUDQcControl(CRUDBase[lims_models.QcControl, lims_schemas.QcControlCreate, lims_schemas.QcControlCreate]):
    async def create(self, db: AsyncSession, *, obj_in: lims_schemas.QcControlCreate, **extra) -> lims_models.QcControl:
        if obj_in.tolerance is None or obj_in.tolerance <= 0:
            raise ValidationFailed("QC control tolerance must be greater than zero")
        if obj_in.parameter_id is not None and await db.get(lims_models.Parameter, obj_in.parameter_id) is None:
            raise NotFound(f"Parameter {obj_in.parameter_id} not found")
        data = obj_in.model_dump()
        data["control_type"] = obj_in.control_type.value
        db_obj = lims_models.QcControl(**data)
        db.add(db_obj)
        await db.commit()
        await db.refresh(db_obj)
        return db_obj


parameter = CRUDParameter(lims_models.Parameter)
method = CRUDMethod(lims_models.Method)
sample = CRUDSample(lims_models.Sample)
sample_test = CRUDSampleTest(lims_models.SampleTest)
test_result = CRUDTestResult(lims_models.TestResult)
qc_control = CRUDQcControl(lims_models.QcControl)
