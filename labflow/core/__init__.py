# labflow/core/__init__.py

"""
FastAPI 애플리케이션의 핵심 구성 요소 패키지입니다.

- `config.py`: 애플리케이션 설정 및 환경 변수 관리 (Pydantic Settings).
- `database.py`: 데이터베이스 연결, 세션 관리 (SQLModel 및 AsyncSQLAlchemy).
- `exceptions.py`: 도메인 예외 계층과 안정적인 오류 코드.
- `security.py`: JWT 토큰 발급/검증과 현재 행위자(Actor) 획득.
- `dependencies.py`: FastAPI 의존성 주입에서 사용될 공통 의존성 함수들.
"""

__title__ = "LabFlow Core"
__description__ = "Core components for LabFlow FastAPI application."
__version__ = "0.1.0"
__all__ = []
