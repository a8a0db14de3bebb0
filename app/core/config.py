import json

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    DATABASE_URL: str

    REDIS_URL: str = "redis://redis:6379/0"

    SECRET_KEY: str
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 30

    BACKEND_CORS_ORIGINS: str = (
        '["http://localhost:5173","http://localhost:3000","http://localhost:3001"]'
    )

    API_V1_PREFIX: str = "/api/v1"
    PROJECT_NAME: str = "Social DM API"
    DEBUG: bool = False

    # Client-side sync cadence (seconds)
    SYNC_POLL_INTERVAL_SECONDS: float = 3.0
    SYNC_POLL_TIMEOUT_SECONDS: float = 10.0
    # Re-read window behind the cursor for messages whose commit landed late
    SYNC_POLL_OVERLAP_SECONDS: float = 5.0
    SYNC_RECONNECTING_THRESHOLD: int = 3
    BADGE_REFRESH_INTERVAL_SECONDS: float = 30.0

    # Server-sent events keep-alive
    EVENTS_HEARTBEAT_SECONDS: float = 15.0

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"

    @property
    def cors_origins(self) -> list[str]:
        if isinstance(self.BACKEND_CORS_ORIGINS, str):
            try:
                parsed: list[str] = json.loads(self.BACKEND_CORS_ORIGINS)
                return parsed
            except json.JSONDecodeError:
                return ["http://localhost:5173", "http://localhost:3000"]
        return self.BACKEND_CORS_ORIGINS


settings = Settings()
