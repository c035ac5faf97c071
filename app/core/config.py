from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import List

class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra="ignore",
    )

    APP_ENV: str = "local"
    APP_NAME: str = "legal-connect"

    ACCESS_JWT_SECRET: str = "change_me_access"
    ACCESS_JWT_TTL_MINUTES: int = 60 * 24

    CORS_ORIGINS: str = "http://localhost:3000,http://localhost:5173"

    DATABASE_URL: str
    REDIS_URL: str

    CHAT_MESSAGE_MAX_LENGTH: int = 1000
    DIRECT_MESSAGE_MAX_LENGTH: int = 500
    CHAT_RATE_LIMIT_WINDOW_SECONDS: int = 60
    CHAT_RATE_LIMIT_MAX_MESSAGES: int = 30
    CHAT_RATE_LIMIT_PURGE_SECONDS: int = 60
    TYPING_TTL_SECONDS: int = 9

    # Persistence calls issued by the gateway and the matcher
    STORE_TIMEOUT_SECONDS: float = 5.0
    MATCHER_MAX_RETRIES: int = 3

    # Compose/infra vars that may exist in shared .env
    POSTGRES_USER: str = "postgres"
    POSTGRES_PASSWORD: str = "postgres"
    POSTGRES_DB: str = "legal"

    @property
    def cors_origins_list(self) -> List[str]:
        return [o.strip() for o in self.CORS_ORIGINS.split(",") if o.strip()]

settings = Settings()
