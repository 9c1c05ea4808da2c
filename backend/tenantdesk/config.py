from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    DATABASE_URL: str = "postgresql+asyncpg://tenantdesk:tenantdesk_secret@db:5432/tenantdesk"
    JWT_SECRET: str = "tenantdesk-jwt-secret-change-in-production"
    JWT_ALGORITHM: str = "HS256"
    JWT_EXPIRY_MINUTES: int = 480
    CORS_ORIGINS: list[str] = ["http://localhost:5173"]
    LOG_LEVEL: str = "INFO"

    # Permission workflow
    REVIEW_COMMENT_MIN_LENGTH: int = 10
    STALE_REQUEST_DAYS: int = 30
    EXPIRY_SWEEP_HOURS: int = 24
    AUDIT_MAX_PAGE_SIZE: int = 500

    # First-run bootstrap
    AUTO_CREATE_SCHEMA: bool = False
    BOOTSTRAP_ORG_NAME: str = "Default Organization"
    BOOTSTRAP_VERTICAL: str = "business"
    BOOTSTRAP_ADMIN_EMAIL: str = "admin@example.com"
    BOOTSTRAP_ADMIN_PASSWORD: str = "change-me-now"

    class Config:
        env_file = ".env"


settings = Settings()
