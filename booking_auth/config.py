# booking_auth/config.py
from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEV_JWT_SECRET = "development-secret-change-in-production"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    ENVIRONMENT: str = "development"
    DATABASE_URL: str = "sqlite+aiosqlite:///./auth.db"
    DB_ECHO: bool = False
    API_PREFIX: str = "/v1"
    LOG_LEVEL: str = "INFO"

    # access tokens
    JWT_SECRET: str = DEV_JWT_SECRET
    JWT_ALGORITHM: str = "HS256"
    JWT_ISSUER: str = "appointment-booking-api"
    JWT_AUDIENCE: str = "appointment-booking-web"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 15

    # opaque tokens
    REFRESH_TOKEN_EXPIRE_DAYS: int = 7
    PASSWORD_RESET_EXPIRE_MINUTES: int = 60
    EMAIL_VERIFICATION_EXPIRE_HOURS: int = 24

    # argon2 cost, roughly 100ms per hash with the defaults
    ARGON2_TIME_COST: int = 3
    ARGON2_MEMORY_COST: int = 65536
    ARGON2_PARALLELISM: int = 4

    BREACH_CHECK_ENABLED: bool = True
    BREACH_CHECK_URL: str = "https://api.pwnedpasswords.com/range/"
    BREACH_CHECK_TIMEOUT_SECONDS: float = 2.5
    BREACH_THRESHOLD: int = 1
    BREACH_FAIL_OPEN: bool = True

    # only enable behind a proxy that overwrites X-Forwarded-For
    TRUST_PROXY_HEADERS: bool = False

    RATE_LIMIT_ENABLED: bool = True
    RATE_LIMIT_REGISTER: str = "3/hour"
    RATE_LIMIT_LOGIN: str = "20/15minutes"
    RATE_LIMIT_PASSWORD_RESET: str = "10/hour"
    RATE_LIMIT_VERIFICATION: str = "5/15minutes"
    RATE_LIMIT_REFRESH: str = "10/15minutes"

    AUDIT_RETENTION_DAYS: int = 90

    SMTP_HOST: str | None = None
    SMTP_PORT: int = 587
    SMTP_USER: str | None = None
    SMTP_PASSWORD: str | None = None
    SMTP_USE_TLS: bool = True
    EMAIL_FROM: str = "noreply@appointmentbooking.com"
    FRONTEND_URL: str = "http://localhost:5173"

    @model_validator(mode="after")
    def _check_signing_secret(self):
        if self.ENVIRONMENT == "production":
            if self.JWT_SECRET == DEV_JWT_SECRET or len(self.JWT_SECRET) < 32:
                raise ValueError("JWT_SECRET must be set to a random value of at least 32 characters in production")
        return self


settings = Settings()


def get_settings() -> Settings:
    return settings
