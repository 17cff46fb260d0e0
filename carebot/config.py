from typing import Optional
from pydantic_settings import BaseSettings
from functools import lru_cache

class Settings(BaseSettings):
    DATABASE_URL: str
    TWILIO_ACCOUNT_SID: str
    TWILIO_AUTH_TOKEN: str
    TWILIO_PHONE_NUMBER: str
    LOG_LEVEL: str = "INFO"
    ENVIRONMENT: str = "development"

    # Downstream collaborators
    DOMAIN_API_URL: str
    DOMAIN_API_KEY: str = ""
    HTTP_TIMEOUT_SECONDS: float = 10.0
    NLP_SERVICE_URL: Optional[str] = None
    EMAIL_API_URL: str = ""
    EMAIL_API_KEY: str = ""
    EMAIL_SENDER: str = "no-reply@carebot.local"
    SUPPORT_API_KEY: str = ""

    # Used to encrypt payload snapshots stored next to one-time codes
    ENCRYPTION_KEY: str

    # Session and token lifecycle
    SESSION_IDLE_TIMEOUT_MINUTES: int = 10
    TOKEN_EXPIRY_MINUTES: int = 60
    TOKEN_REFRESH_THRESHOLD_MINUTES: int = 5

    # Retry/backoff for downstream calls
    RETRY_MAX_ATTEMPTS: int = 3
    RETRY_INITIAL_DELAY: float = 0.5
    RETRY_BACKOFF_MULTIPLIER: float = 2.0
    RETRY_JITTER: float = 0.1

    # One-time codes
    OTP_LENGTH: int = 4
    OTP_VALIDITY_MINUTES: int = 5
    OTP_MAX_ATTEMPTS: int = 5

    PAGE_SIZE_DEFAULT: int = 5
    DEFAULT_DOCTOR_LOCATION: str = "Lagos"

    class Config:
        env_file = ".env"

@lru_cache()
def get_settings():
    return Settings()
