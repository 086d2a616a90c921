# labflow/services/audit.py

"""
감사 로그 싱크(sink) 모듈입니다.

커밋된 상태 전이, QC 측정, 성적서 확정 이후에 호출됩니다.
기록은 best-effort이며 실패해도 본 작업을 막거나 실패시키지 않습니다.
"""

import logging
from typing import Any, Dict, Optional

from labflow.core.security import Actor

audit_logger = logging.getLogger("labflow.audit")


class AuditSink:
    """기본 구현은 'labflow.audit' 로거에 구조화된 레코드를 남깁니다."""

    def __init__(self, logger: logging.Logger = audit_logger):
        self.logger = logger

    def record(
        self,
        action: str,
        actor: Optional[Actor],
        entity: str,
        before: Optional[Dict[str, Any]] = None,
        after: Optional[Dict[str, Any]] = None,
    ) -> None:
        try:
            self.logger.info(
                "audit action=%s actor=%s role=%s entity=%s before=%s after=%s",
                action,
                actor.user_id if actor else None,
                actor.role.value if actor else None,
                entity,
                before,
                after,
            )
        except Exception:
            # 감사 기록 실패는 호출자에게 전파하지 않습니다.
            logging.getLogger(__name__).warning("audit record dropped: %s %s", action, entity, exc_info=True)


audit_sink = AuditSink()
