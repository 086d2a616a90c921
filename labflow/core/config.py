# labflow/core/config.py

from typing import Any, List
from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
import os

# 프로젝트의 루트 디렉토리 경로를 계산합니다.
BASE_DIR = os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


class Settings(BaseSettings):
    """
    애플리케이션의 모든 설정을 정의하는 Pydantic BaseSettings 모델입니다.
    환경 변수 및 .env 파일에서 값을 자동으로 로드합니다.
    """

    # --- Pydantic Settings 설정 ---
    model_config = SettingsConfigDict(
        env_file=os.path.join(BASE_DIR, '.env'),  # 프로젝트 루트의 .env 파일을 명시적으로 지정
        env_file_encoding='utf-8',
        extra='ignore',                      # 모델에 없는 변수는 무시
        case_sensitive=True                  # 환경 변수 이름 대소문자 구분
    )

    # --- 애플리케이션 기본 설정 ---
    APP_NAME: str = "LabFlow FastAPI API"
    APP_VERSION: str = "0.1.0"
    APP_DESCRIPTION: str = "Laboratory workflow, QC and certificate reporting API"
    APP_ENV: str = Field("development", description="Application environment (e.g., development, production, testing)")
    DEBUG_MODE: bool = Field(False, description="Enable debug mode for SQL echo and detailed logging")
    LOG_LEVEL: str = Field("INFO", description="Root log level (DEBUG, INFO, WARNING, ...)")

    # --- 데이터베이스 설정 ---
    DATABASE_URL: SecretStr = Field(..., description="Async database connection URL (postgresql+asyncpg://...)")

    # --- JWT (JSON Web Token) 설정 ---
    SECRET_KEY: SecretStr = Field(..., description="Secret key for JWT token signing. Keep this highly secure!")
    ALGORITHM: str = Field("HS256", description="Algorithm used for JWT signing (e.g., HS256)")
    ACCESS_TOKEN_EXPIRE_MINUTES: int = Field(30, description="Access token expiration time in minutes")

    # --- ARQ (Redis) 설정 ---
    REDIS_HOST: str = Field("localhost", description="Redis host for the ARQ job queue")
    REDIS_PORT: int = Field(6379, description="Redis port for the ARQ job queue")

    # --- 성적서(Report) 설정 ---
    REPORT_STORAGE_DIR: str = Field("/app/data/reports", description="Directory for finalized report PDFs.")
    REPORT_TYPE: str = Field("coa", description="Report type produced by generation and accepted by finalization")
    REPORT_COUNTER_KEY: str = Field("REPORT_NO", description="Counter key prefix; the year is appended")
    REPORT_LAB_CODE: str = Field("LABFLOW", description="Lab code used as the report number suffix")
    REPORT_REQUIRED_SIGNATURE_ROLES: List[str] = Field(
        default_factory=lambda: ["OM", "LH"],
        description="Ordered signature slots created with every report"
    )
    REPORT_FINALIZE_ROLE: str = Field("LH", description="Signature slot filled by finalization")
    DEFAULT_TEMPLATE_CODE: str = Field("COA_PCR_MANDIRI", description="Template used when none is requested")

    # --- 업무 흐름 게이트 설정 ---
    REQUIRE_QC_PASS: bool = Field(True, description="Report generation requires qc_done on every test")
    SAMPLE_STATUS_MUST_BE: str = Field("validated", description="Sample status required before report generation ('' disables)")
    REQUIRE_SIGNATURE_SPECIMEN: bool = Field(True, description="Finalizer must have an on-file signature specimen")
    QC_R4S_SAME_BATCH_ONLY: bool = Field(False, description="Restrict the R-4s predecessor to the same batch")

    @field_validator("REPORT_REQUIRED_SIGNATURE_ROLES")
    @classmethod
    def _normalize_roles(cls, value: List[str]) -> List[str]:
        return [role.strip().upper() for role in value if role and role.strip()]

    # Post-initialization validation (Pydantic v2 BaseSettings)
    def model_post_init(self, __context: Any) -> None:  # noqa: ANN001
        # 개발 환경에서 기본 컨테이너 경로를 쓰면 로컬 경로로 변경
        if self.APP_ENV == "development" and self.REPORT_STORAGE_DIR == "/app/data/reports":
            self.REPORT_STORAGE_DIR = os.path.join(BASE_DIR, "data", "reports")


settings = Settings()
