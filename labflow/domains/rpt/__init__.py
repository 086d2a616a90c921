# labflow/domains/rpt/__init__.py

"""
FastAPI 애플리케이션의 'rpt' 도메인 패키지입니다.

PostgreSQL의 'rpt' 스키마에 해당하는 성적서(Report), 성적서 항목(ReportItem),
서명 슬롯(ReportSignature), 채번 카운터(ReportCounter)를 다룹니다.

주요 서브모듈:
- `numbering.py`: 연도별 무결번(gap-free) 성적서 번호 채번.
- `generation.py`: 검증 완료된 시료로부터 성적서 초안 생성.
- `finalization.py`: 성적서 확정(잠금, PDF 발행, 서명, 시료 상태 종료).
- `tasks.py`: 검증 완료 후 성적서 자동 생성 ARQ 태스크.
"""

__title__ = "LabFlow Report Domain"
__description__ = "Certificate of analysis generation and finalization."
__version__ = "0.1.0"
__all__ = []
