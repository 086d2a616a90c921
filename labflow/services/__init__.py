# labflow/services/__init__.py

"""
FastAPI 애플리케이션의 서비스 계층 패키지입니다.

도메인 모듈이 의존하는 협력자(collaborator)를 모아둡니다.
각 협력자는 기본 구현을 제공하며, 테스트나 배포 환경에 따라 교체할 수 있습니다.

- `authorization.py`: 역할 x 동작 권한 테이블.
- `audit.py`: 커밋 이후 감사 기록 싱크.
- `pdf.py`: 성적서 PDF 렌더러 (reportlab).
- `storage.py`: 확정된 PDF 파일 저장소 (aiofiles).
"""

__title__ = "LabFlow Services"
__description__ = "Collaborators shared by the LabFlow domains."
__version__ = "0.1.0"
__all__ = []
