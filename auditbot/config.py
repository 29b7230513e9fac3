from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    database_url: str = "sqlite:///./auditbot.db"
    log_level: str = "INFO"

    telegram_debug_log_path: str = "logs/telegram-debug.log"
    debug_log_max_bytes: int = 5 * 1024 * 1024

    ai_timeout_seconds: float = 15.0

    pending_request_ttl_hours: float = 72.0
    conversation_ttl_minutes: float = 60.0
    expiry_sweep_interval_seconds: float = 300.0

    public_base_url: str = ""

    class Config:
        env_file = ".env"
        extra = "ignore"


settings = Settings()
