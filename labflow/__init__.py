# labflow/__init__.py

"""
LabFlow FastAPI 애플리케이션의 메인 패키지입니다.

시료(Sample) 접수부터 성적서(Report) 발행까지의 실험실 업무 흐름을 다룹니다.
공통 설정, 데이터베이스 연결, 예외, 보안 유틸리티를 담는 core 서브패키지,
권한/감사/PDF/파일 저장 협력자를 담는 services 서브패키지,
그리고 각 비즈니스 도메인(lims, rpt)을 대표하는 domains 서브패키지로 구성됩니다.
"""

APP_NAME = "LabFlow FastAPI API"
APP_VERSION = "0.1.0"
API_PREFIX = "/api/v1"  # API 라우트의 공통 접두사 (main.py에서 적용)

__version__ = APP_VERSION
__title__ = APP_NAME
__description__ = "Laboratory workflow, QC and certificate reporting API backend."
__all__ = []
