"""Application configuration loaded from environment variables and .env."""
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Runtime settings for the chat backend.

    All credentials for the three external collaborators (database,
    identity provider, generation service) are read from here.
    """
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    DATABASE_URL: str = "sqlite:///./zanmisante.db"

    # Generation service (OpenAI-compatible chat completions endpoint)
    OPENAI_API_KEY: str = ""
    OPENAI_BASE_URL: str = "https://generativelanguage.googleapis.com/v1beta/openai/"
    OPENAI_MODEL: str = "gemini-2.0-flash"
    OPENAI_TIMEOUT: float = 30.0
    RESEND_HISTORY: bool = True

    # Identity provider
    JWT_SECRET: str = "change-me"
    JWT_ALGORITHM: str = "HS256"

    # Typing animation
    TYPING_DELAY_MS: int = 15
    TYPING_STEP: int = 3

    # Browser sessions
    SESSION_COOKIE: str = "chat_session"
    SESSION_TTL_SECONDS: int = 24 * 3600
    MAX_SESSIONS: int = 10000

    CORS_ORIGINS: list[str] = ["*"]
    LOG_LEVEL: str = "INFO"


settings = Settings()
