# labflow/domains/lims/__init__.py

"""
FastAPI 애플리케이션의 'lims' 도메인 패키지입니다.

PostgreSQL의 'lims' 스키마에 해당하는 시료(Sample), 시료별 시험(SampleTest),
시험 결과(TestResult), 정도관리 물질(QcControl)과 정도관리 측정(QcRun)을 다룹니다.

주요 서브모듈:
- `models.py`: 'lims' 스키마 테이블에 매핑되는 SQLModel 정의.
- `schemas.py`: 요청 및 응답 유효성 검사를 위한 Pydantic 모델.
- `crud.py`: 기준 정보와 시료/시험 등록을 위한 비동기 CRUD 로직.
- `workflow.py`: 시료/시험 상태 전이(state machine).
- `qc.py`: Westgard 다중 규칙(1-2s, 1-3s, R-4s) 평가 엔진.
- `routers.py`: FastAPI API 엔드포인트 정의.
"""

__title__ = "LabFlow LIMS Domain"
__description__ = "Sample workflow and QC evaluation."
__version__ = "0.1.0"
__all__ = []
