import logging

from pydantic_settings import BaseSettings

class Settings(BaseSettings):
    # Security
    KR_SECRET_KEY: str = "dev-secret-change-me"
    KR_SESSION_MAX_AGE: int = 60 * 60 * 12
    KR_ADMIN_EMAIL: str = "admin@korpri-run.local"
    KR_ADMIN_PASSWORD: str = "change-me"
    KR_ADMIN_NAME: str = "Administrator"

    # Database
    KR_DB_URL: str = "sqlite:///./korpri_run.db"

    # Event
    KR_EVENT_NAME: str = "KORPRI RUN 2025"
    KR_TICKET_PREFIX: str = "KR25"
    KR_BIB_START: int = 1
    KR_REQUIRE_PAID_FOR_BIB: bool = True

    # Midtrans
    KR_MIDTRANS_SERVER_KEY: str = ""
    KR_MIDTRANS_CLIENT_KEY: str = ""
    KR_MIDTRANS_IS_PRODUCTION: bool = False
    KR_MIDTRANS_VERIFY_SIGNATURE: bool = True
    KR_WEBHOOK_URL: str = ""

    # External lookups
    KR_ADDRESS_API_URL: str = "https://api.kirimin.id/api"
    KR_ADDRESS_API_KEY: str = ""
    KR_QR_SERVICE_URL: str = "https://api.qrserver.com/v1/create-qr-code/"
    KR_HTTP_TIMEOUT_SECONDS: float = 15.0

    KR_LOG_LEVEL: str = "INFO"

    class Config:
        env_file = ".env"
        case_sensitive = True

settings = Settings()


def configure_logging() -> None:
    logging.basicConfig(
        level=getattr(logging, settings.KR_LOG_LEVEL.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
