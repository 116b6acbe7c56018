from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # Application
    ENVIRONMENT: str = "development"
    NAME: str = "push-audience"
    VERSION: str = "0.1.0"
    LOG_LEVEL: str = "INFO"
    LOG_DIR: str = ""

    # Database
    DATABASE_URL: str = "sqlite+aiosqlite:///./push.db"

    # Queue / audience
    QUEUE_INSERT_BATCH: int = 10000
    USER_STREAM_CHUNK: int = 1000

    # Redis & Celery
    REDIS_PASSWORD: str = ""
    REDIS_HOST: str = "localhost"
    REDIS_PORT: int = 6379
    REDIS_DB: int = 0

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
    )


settings = Settings()
