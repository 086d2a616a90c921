# tests/domains/__init__.py

"""
LabFlow 도메인별 테스트 스위트 패키지입니다.

- `test_qc_n.py`: Westgard QC 평가 엔진.
- `test_workflow_n.py`: 시료/시험 상태 전이와 게이트.
- `test_rpt_n.py`: 성적서 채번, 생성, 서명, 확정, 자동 생성 작업.
- `test_api_n.py`: HTTP 엔드포인트와 오류 응답 형식.
"""

__title__ = "LabFlow Domain Tests"
__description__ = "Categorized tests for each business domain in LabFlow FastAPI application."
__version__ = "0.1.0"
__all__ = []
