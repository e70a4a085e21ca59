from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field
from pathlib import Path


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", case_sensitive=False
    )

    # App
    APP_NAME: str = Field(default="chatstream")
    LOG_LEVEL: str = Field(default="INFO")
    SQLITE_PATH: str = Field(default="./data/chat.sqlite3")
    DATABASE_URL: str | None = Field(default=None)

    # Auth & Rate limiting
    API_KEY: str | None = Field(default=None)
    SECRET_KEY: str = Field(default="dev-secret")
    AUTH_REQUIRED: bool = Field(default=False)
    TOKEN_TTL_SECONDS: int = Field(default=7 * 24 * 3600)
    RATE_LIMIT_PER_MINUTE: int = Field(default=120)
    RATE_LIMIT_WINDOW_SECONDS: int = Field(default=60)
    RATE_LIMIT_PATHS: list[str] = Field(default_factory=lambda: ["/auth"])

    # CORS
    CORS_ALLOW_ORIGINS: list[str] = Field(
        default_factory=lambda: ["http://localhost:5173", "http://localhost:8080"]
    )

    # Messages & backfill
    MAX_TEXT_LENGTH: int = Field(default=1000)
    BACKFILL_WINDOW_HOURS: int = Field(default=24)
    BACKFILL_DEFAULT_ROWS: int = Field(default=50)
    BACKFILL_MAX_ROWS: int = Field(default=200)

    # SSE hub
    SSE_QUEUE_SIZE: int = Field(default=100)
    SSE_MAX_SUBSCRIBERS: int = Field(default=0)  # 0 = unbounded
    SSE_HEARTBEAT_SECONDS: float = Field(default=20.0)
    SSE_REAP_INTERVAL_SECONDS: float = Field(default=30.0)
    SSE_MAX_IDLE_SECONDS: float = Field(default=90.0)

    # Retention
    RETENTION_INTERVAL_SECONDS: float = Field(default=86400.0)
    RETENTION_PURGE_DELETED_DAYS: int = Field(default=7)
    RETENTION_MAX_AGE_DAYS: int = Field(default=30)  # 0 = keep forever

    BACKGROUND_TASKS_ENABLED: bool = Field(default=True)

    @property
    def sqlite_uri(self) -> str:
        path = Path(self.SQLITE_PATH).expanduser().resolve()
        return f"sqlite+pysqlite:///{path}"


settings = Settings()
