# tests/__init__.py

"""
LabFlow FastAPI 애플리케이션의 테스트 스위트 패키지입니다.

- `domains/`: 도메인별(lims 업무 흐름과 QC, rpt 성적서) 테스트 모듈.
- `conftest.py`: 데이터베이스, 행위자(Actor), 인증 클라이언트 등 공용 픽스처.
"""

__title__ = "LabFlow API Tests"
__description__ = "Test suite for LabFlow FastAPI application."
__version__ = "0.1.0"
__all__ = []
