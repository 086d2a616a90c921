# labflow/domains/models/__init__.py

"""
모든 도메인의 SQLModel 모델들을 한 곳에서 임포트하여
SQLModel.metadata가 모든 테이블을 인식하도록 보장합니다.
(Alembic env.py, 테스트 conftest, create_db_and_tables에서 사용)
"""

# lims
from labflow.domains.lims.models import (
    Parameter, Method, Sample, SampleTest, TestResult, QcControl, QcRun
)

# rpt
from labflow.domains.rpt.models import (
    Report, ReportItem, ReportSignature, ReportCounter, SignatureSpecimen
)


__all__ = [
    # lims
    "Parameter", "Method", "Sample", "SampleTest", "TestResult", "QcControl", "QcRun",
    # rpt
    "Report", "ReportItem", "ReportSignature", "ReportCounter", "SignatureSpecimen",
]
