from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # App
    ENV: str = "development"
    DEBUG: bool = True
    LOG_LEVEL: str = "INFO"

    # Database
    DATABASE_URL: str = "sqlite:///./resource_planner.db"

    # Scheduling engine
    MAX_UNDO_OPERATIONS: int = 50
    DEFAULT_WEEKLY_CAPACITY: float = 40
    DEFAULT_VIEW_MODE: str = "week"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


settings = Settings()
