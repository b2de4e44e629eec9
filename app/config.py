from pydantic_settings import BaseSettings
from pydantic import Field
from typing import List, Optional

class Settings(BaseSettings):
    DATABASE_URL: str = "sqlite:///./crm.db"
    ALLOWED_ORIGINS: str = "http://localhost:3000"
    LOG_LEVEL: str = "INFO"

    JWT_SECRET_KEY: str = "your-secret-key-change-in-production"
    JWT_ALGORITHM: str = "HS256"
    ACCESS_TOKEN_HOURS: int = 24

    # Outbound store calls (connect + statement timeout)
    STORE_TIMEOUT_SECONDS: int = 10

    # Lifecycle policy
    LEAD_LOAD_CAP: int = 10
    TRASH_RETENTION_DAYS: int = 30
    DEFAULT_LOAN_PROCESSING_FEE: float = 57000.0
    ALLOW_LOAN_OVERPAYMENT: bool = False
    COUNSELLOR_REQUIRED_DOCS: List[str] = [
        "passport",
        "high_school_marksheet",
        "intermediate_marksheet",
        "graduation_marksheet",
    ]

    # R2 settings - support both naming conventions
    R2_ACCESS_KEY: str = Field(default="", alias="R2_ACCESS_KEY_ID")
    R2_SECRET_KEY: str = Field(default="", alias="R2_SECRET_ACCESS_KEY")
    R2_BUCKET_URL: str = Field(default="", alias="R2_PUBLIC_URL")
    R2_ENDPOINT_URL: str = Field(default="", alias="R2_API_DEFAULT_VALUE")
    R2_BUCKET_NAME: Optional[str] = None
    SIGNED_URL_TTL_SECONDS: int = 900

    # Notification delivery (SMTP)
    SMTP_HOST: str = ""
    SMTP_PORT: int = 587
    SMTP_USERNAME: str = ""
    SMTP_PASSWORD: str = ""
    SMTP_USE_TLS: bool = True
    SMTP_FROM_EMAIL: str = "noreply@jvoverseas.com"
    SMTP_FROM_NAME: str = "JV Overseas"
    NOTIFICATION_MAX_ATTEMPTS: int = 5
    NOTIFICATION_DRAIN_SECONDS: int = 60

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"  # Ignore extra fields in .env

settings = Settings()
