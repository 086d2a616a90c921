# labflow/core/exceptions.py

"""
도메인 예외 계층을 정의하는 모듈입니다.

모든 예외는 안정적인 기계 판독용 코드(code), 사람이 읽을 메시지(message),
오류 분류(error_class), 재시도 가능 여부(retryable), HTTP 상태 코드(http_status)를 가집니다.
서비스 계층은 이 예외를 발생시키고, main.py의 예외 핸들러가 JSON 응답으로 변환합니다.
"""

from typing import Any, Dict, Optional


class LabflowError(Exception):
    code: str = "LABFLOW_ERROR"
    error_class: str = "internal"
    retryable: bool = False
    http_status: int = 500

    def __init__(self, message: str, *, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "code": self.code,
            "message": self.message,
            "class": self.error_class,
            "retryable": self.retryable,
        }
        if self.details:
            body["details"] = self.details
        return body


class NotFound(LabflowError):
    code = "NOT_FOUND"
    error_class = "client"
    http_status = 404


class ValidationFailed(LabflowError):
    code = "VALIDATION_FAILED"
    error_class = "client"
    http_status = 422


class InvalidTransition(LabflowError):
    """상태 전이 순서 위반 (건너뛰기, 역행)."""
    code = "INVALID_TRANSITION"
    error_class = "business_rule"
    http_status = 409


class PreconditionFailed(LabflowError):
    """형제 시험/QC 게이트 미충족. 메시지에 막고 있는 조건을 명시합니다."""
    code = "PRECONDITION_FAILED"
    error_class = "business_rule"
    http_status = 422


class Forbidden(LabflowError):
    code = "FORBIDDEN"
    error_class = "authorization"
    http_status = 403


class Conflict(LabflowError):
    """동시 쓰기 경합 패배 또는 이중 확정. 나중에 다시 시도할 수 있습니다."""
    code = "CONFLICT"
    error_class = "concurrency"
    retryable = True
    http_status = 409


class AlreadyFinalized(Conflict):
    code = "ALREADY_FINALIZED"
    error_class = "business_rule"
    retryable = False


class RenderFailed(LabflowError):
    code = "RENDER_FAILED"
    error_class = "dependency"
    retryable = True
    http_status = 502


class StorageFailed(LabflowError):
    code = "STORAGE_FAILED"
    error_class = "dependency"
    retryable = True
    http_status = 502
