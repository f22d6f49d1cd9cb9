"""Application settings loaded from environment variables using pydantic-settings."""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """chatkpi application configuration.

    All settings can be overridden via environment variables.
    IN_MEMORY_STORE swaps the SQLite file under DATABASE_DIR for a
    process-local ``:memory:`` database (nothing survives a restart).
    """

    DATABASE_DIR: str = "./data"
    IN_MEMORY_STORE: bool = False
    UPLOAD_DIR: str = "./uploads"
    SAVE_UPLOADS: bool = True
    MAX_UPLOAD_MB: int = 50
    FRONTEND_URL: str = "http://localhost:3000"
    REPORT_TIMEZONE: str = "UTC"
    LOG_LEVEL: str = "INFO"

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }
