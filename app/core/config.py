from typing import List, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    DATABASE_URL: str
    DATABASE_ECHO: bool = False

    SECRET_KEY: str
    ALGORITHM: str
    ACCESS_TOKEN_EXPIRE_MINUTES: int

    # Text-completion service. Without a key every stage uses its deterministic path
    GEMINI_API_KEY: Optional[str] = None
    GEMINI_MODEL: str = "gemini-1.5-flash"

    # Per-caller request ceiling
    RATE_LIMIT_MAX_REQUESTS: int = 50
    RATE_LIMIT_WINDOW_SECONDS: int = 3600
    RATE_LIMIT_SWEEP_SECONDS: int = 600

    # Conversation sessions and memory
    SESSION_IDLE_MINUTES: int = 30
    HISTORY_LIMIT: int = 10

    # Stage deadlines
    CLASSIFICATION_TIMEOUT_SECONDS: float = 8.0
    QUERY_TIMEOUT_SECONDS: float = 10.0
    SYNTHESIS_TIMEOUT_SECONDS: float = 20.0

    # Per-caller cache of table results, TTL set per table
    QUERY_CACHE_ENABLED: bool = True
    QUERY_CACHE_MAX_ENTRIES: int = 1000

    EMPTY_RESULT_CONFIDENCE_FLOOR: float = 0.5
    QUERY_ROW_LIMIT: int = 50
    ELEVATED_ROLES: List[str] = ["admin", "manager"]

    # This tells Pydantic to read from the .env file
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


# Create a single instance of the settings to use everywhere
settings = Settings()
