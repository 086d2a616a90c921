# tests/conftest.py

import os
import tempfile
from typing import AsyncGenerator, Callable, Dict, List, Tuple
from contextlib import asynccontextmanager
from datetime import datetime, UTC

# --- 테스트용 환경 변수 설정 ---
# labflow 모듈이 임포트되기 전에 설정되어야 Settings가 테스트 값을 읽습니다.
TEST_DATABASE_URL = os.environ.get(
    "TEST_DATABASE_URL",
    "sqlite+aiosqlite:///" + os.path.join(tempfile.gettempdir(), "labflow_test.db"),
)
os.environ["DATABASE_URL"] = TEST_DATABASE_URL
os.environ.setdefault("SECRET_KEY", "labflow-test-secret-key")
os.environ.setdefault("APP_ENV", "testing")
os.environ.setdefault("REPORT_STORAGE_DIR", os.path.join(tempfile.gettempdir(), "labflow_test_reports"))

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from httpx import AsyncClient, ASGITransport  # noqa: E402

from sqlalchemy import text  # noqa: E402
from sqlalchemy.engine import make_url  # noqa: E402
from sqlalchemy.ext.asyncio import create_async_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import NullPool  # noqa: E402
from sqlmodel import SQLModel  # noqa: E402
from sqlmodel.ext.asyncio.session import AsyncSession  # noqa: E402

# labflow.main을 임포트하여 FastAPI 앱 인스턴스에 접근합니다.
from labflow.main import app as main_app  # noqa: E402
from labflow.core import dependencies as deps  # noqa: E402
from labflow.core.database import SCHEMAS, configure_sqlite_engine, get_session  # noqa: E402
from labflow.core.security import Actor, Role, create_access_token  # noqa: E402
from labflow.services.storage import LocalFileStorage  # noqa: E402

# --- 모든 모델 임포트 ---
#  SQLModel.metadata.create_all()이 모든 테이블을 인식하려면 모든 모델이 한 번 이상 임포트되어야 합니다.
import labflow.domains.models  # noqa: F401, E402
from labflow.domains.lims import crud as lims_crud  # noqa: E402
from labflow.domains.lims import models as lims_models  # noqa: E402
from labflow.domains.lims import schemas as lims_schemas  # noqa: E402
from labflow.domains.rpt import models as rpt_models  # noqa: E402


# --- 테스트용 데이터베이스 설정 ---
IS_SQLITE = make_url(TEST_DATABASE_URL).get_backend_name() == "sqlite"

_engine_kwargs = {}
if IS_SQLITE:
    # SQLite는 스키마를 지원하지 않으므로 lims/rpt 스키마 이름을 제거합니다.
    _engine_kwargs = {
        "execution_options": {"schema_translate_map": {name: None for name in SCHEMAS}},
        "connect_args": {"timeout": 30},
    }

test_engine = create_async_engine(
    TEST_DATABASE_URL,
    echo=False,             # 테스트 시 SQL 쿼리 출력하지 않음
    future=True,
    poolclass=NullPool,     # 각 연결이 독립적으로 사용되고 바로 닫히도록 함
    **_engine_kwargs,
)
if IS_SQLITE:
    configure_sqlite_engine(test_engine)

# 테스트용 세션 팩토리 생성 (AsyncSession)
TestingSessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=test_engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


# --- 데이터베이스 픽스처 ---
@pytest_asyncio.fixture(scope="function", autouse=True)
async def setup_database():
    """
    각 테스트마다 모든 테이블을 삭제하고 재생성합니다.
    서비스 계층이 직접 커밋하므로 트랜잭션 롤백 대신 테이블 재생성으로 격리합니다.
    """
    async with test_engine.begin() as conn:
        if not IS_SQLITE:
            for schema_name in SCHEMAS:
                await conn.execute(text(f"CREATE SCHEMA IF NOT EXISTS {schema_name}"))
        await conn.run_sync(SQLModel.metadata.drop_all)
        await conn.run_sync(SQLModel.metadata.create_all)

    yield  # 테스트 실행

    async with test_engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.drop_all)


@pytest_asyncio.fixture(scope="function")
async def db_session() -> AsyncGenerator[AsyncSession, None]:
    """테스트 함수마다 독립적인 비동기 데이터베이스 세션을 제공합니다."""
    async with TestingSessionLocal() as session:
        yield session


@pytest.fixture(scope="function")
def session_factory() -> Callable[[], AsyncSession]:
    """동시성 테스트에서 요청마다 별도의 세션을 만들 때 사용합니다."""
    return TestingSessionLocal


@pytest.fixture(scope="function")
def storage(tmp_path) -> LocalFileStorage:
    """테스트 전용 임시 디렉토리에 기록하는 파일 저장소."""
    return LocalFileStorage(str(tmp_path / "reports"))


# --- 역할별 행위자 픽스처 ---
# 사용자 계정은 외부 인증 시스템의 책임이므로, 토큰 클레임에 해당하는 Actor만 만듭니다.
@pytest.fixture
def admin_actor() -> Actor:
    return Actor(user_id=1, role=Role.ADMIN, name="관리자")


@pytest.fixture
def collector_actor() -> Actor:
    return Actor(user_id=2, role=Role.SAMPLE_COLLECTOR, name="시료 접수자")


@pytest.fixture
def analyst_actor() -> Actor:
    return Actor(user_id=3, role=Role.ANALYST, name="분석자")


@pytest.fixture
def om_actor() -> Actor:
    return Actor(user_id=4, role=Role.OM, name="검토자")


@pytest.fixture
def lh_actor() -> Actor:
    return Actor(user_id=5, role=Role.LH, name="실험실장")


@pytest.fixture
def qa_actor() -> Actor:
    return Actor(user_id=6, role=Role.QA, name="정도관리 담당")


# --- 데이터 팩토리 픽스처 ---
@pytest.fixture(scope="function")
def parameter_factory(db_session: AsyncSession) -> Callable:
    """분석 항목(Parameter)을 생성하는 팩토리 함수를 반환합니다."""
    async def _create(code: str, name: str = None, unit: str = None, sort_order: int = 0) -> lims_models.Parameter:
        parameter = lims_models.Parameter(code=code, name=name or code, unit=unit, sort_order=sort_order)
        db_session.add(parameter)
        await db_session.commit()
        await db_session.refresh(parameter)
        return parameter
    return _create


@pytest.fixture(scope="function")
def sample_factory(db_session: AsyncSession, parameter_factory: Callable, collector_actor: Actor) -> Callable:
    """
    시료를 접수하고 지정한 수만큼 시험을 배정하는 팩토리 함수를 반환합니다.
    반환값: (Sample, [SampleTest, ...])
    """
    async def _create(
        sample_code: str = "S-0001", n_tests: int = 2, batch_id: str = "B-001"
    ) -> Tuple[lims_models.Sample, List[lims_models.SampleTest]]:
        sample = await lims_crud.sample.register(
            db_session,
            obj_in=lims_schemas.SampleCreate(sample_code=sample_code, sample_type="water"),
            actor=collector_actor,
        )
        tests = []
        for i in range(n_tests):
            parameter = await parameter_factory(f"{sample_code}-P{i + 1}", sort_order=i)
            tests.append(await lims_crud.sample_test.assign(
                db_session,
                sample_id=sample.id,
                obj_in=lims_schemas.SampleTestCreate(parameter_id=parameter.id, batch_id=batch_id),
            ))
        return sample, tests
    return _create


@pytest.fixture(scope="function")
def qc_control_factory(db_session: AsyncSession) -> Callable:
    """정도관리 물질(QcControl)을 생성하는 팩토리 함수를 반환합니다."""
    async def _create(
        name: str = "Control L1",
        target: float = 0.0,
        tolerance: float = 1.0,
        ruleset: List[str] = None,
        control_type: lims_models.ControlType = lims_models.ControlType.CONTROL_MATERIAL,
    ) -> lims_models.QcControl:
        control_in = lims_schemas.QcControlCreate(
            name=name,
            target=target,
            tolerance=tolerance,
            ruleset=ruleset if ruleset is not None else list(lims_models.QC_RULES),
            control_type=control_type,
        )
        return await lims_crud.qc_control.create(db_session, obj_in=control_in)
    return _create


@pytest_asyncio.fixture(scope="function")
async def validated_sample(db_session: AsyncSession) -> Dict[str, object]:
    """
    성적서 생성이 가능한 상태(시료 validated, 시험 모두 validated + QC 완료)의 데이터를 직접 만듭니다.
    두 번째 시험에는 결과 버전이 두 개 있어 최신 버전이 스냅샷되는지 확인할 수 있습니다.
    """
    now = datetime.now(UTC)
    method = lims_models.Method(code="RT-PCR", name="Real-time PCR")
    param_a = lims_models.Parameter(code="SARS2-N", name="SARS-CoV-2 N gene", unit="Ct", sort_order=2)
    param_b = lims_models.Parameter(code="SARS2-E", name="SARS-CoV-2 E gene", unit="Ct", sort_order=1)
    sample = lims_models.Sample(
        sample_code="S-VAL-001",
        sample_type="swab",
        client_reference="CLIENT-77",
        status=lims_models.SampleStatus.VALIDATED.value,
    )
    db_session.add_all([method, param_a, param_b, sample])
    await db_session.commit()

    tests = []
    for parameter in (param_a, param_b):
        tests.append(lims_models.SampleTest(
            sample_id=sample.id,
            parameter_id=parameter.id,
            method_id=method.id,
            batch_id="B-VAL",
            status=lims_models.TestStatus.VALIDATED.value,
            qc_done=True,
            om_verified=True,
            lh_validated=True,
            completed_at=now,
        ))
    db_session.add_all(tests)
    await db_session.commit()

    db_session.add_all([
        lims_models.TestResult(sample_test_id=tests[0].id, version=1, value_final="24.1", unit="Ct", flags=[]),
        lims_models.TestResult(sample_test_id=tests[1].id, version=1, value_final="31.0", unit="Ct", flags=[]),
        lims_models.TestResult(sample_test_id=tests[1].id, version=2, value_final="30.5", unit="Ct", flags=["rerun"]),
    ])
    await db_session.commit()
    return {"sample_id": sample.id, "test_ids": [t.id for t in tests], "method_id": method.id}


@pytest_asyncio.fixture(scope="function")
async def lh_specimen(db_session: AsyncSession, lh_actor: Actor) -> rpt_models.SignatureSpecimen:
    """실험실장(LH)의 활성 서명 견본을 등록합니다."""
    specimen = rpt_models.SignatureSpecimen(
        user_id=lh_actor.user_id, role_code="LH", image_ref="signatures/lh.png", is_active=True
    )
    db_session.add(specimen)
    await db_session.commit()
    await db_session.refresh(specimen)
    return specimen


# --- 인증 클라이언트 픽스처 ---
def bearer_token(actor: Actor) -> str:
    return create_access_token({"sub": str(actor.user_id), "role": actor.role.value, "name": actor.name})


@pytest.fixture(scope="function")
def client_factory(db_session: AsyncSession) -> Callable:
    """
    특정 행위자의 Bearer 토큰을 가진 AsyncClient를 생성하는 팩토리 함수를 반환합니다.
    actor가 None이면 인증 헤더 없는 클라이언트를 만듭니다.
    """
    @asynccontextmanager
    async def _create_client_context(actor: Actor = None) -> AsyncGenerator[AsyncClient, None]:
        async def override_get_session():
            yield db_session

        original_overrides = main_app.dependency_overrides.copy()
        try:
            main_app.dependency_overrides.update({
                get_session: override_get_session,
                deps.get_db_session: override_get_session,
            })
            transport = ASGITransport(app=main_app)
            async with AsyncClient(transport=transport, base_url="http://test") as client:
                if actor is not None:
                    client.headers["Authorization"] = f"Bearer {bearer_token(actor)}"
                yield client
        finally:
            # 테스트가 끝난 후 원래 의존성 상태로 되돌립니다.
            main_app.dependency_overrides.clear()
            main_app.dependency_overrides.update(original_overrides)

    return _create_client_context


@pytest_asyncio.fixture(scope="function")
async def client(client_factory: Callable) -> AsyncGenerator[AsyncClient, None]:
    """인증되지 않은 클라이언트를 반환합니다."""
    async with client_factory() as c:
        yield c
