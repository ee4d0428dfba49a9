"""Configuration settings for the application."""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Pydantic settings class for the application."""

    # Define the settings with default values and types
    # These will be loaded from environment variables or a .env file if not provided
    API_PORT: int = 8000
    DEBUG: bool = False
    LOG_LEVEL: str = "info"  # Options: debug, info, warning, error, critical
    CORS_ORIGINS: list[str] = ["http://localhost:8000"]

    # Model backend configuration
    MODEL_BACKEND: str = "anthropic"  # Options: tgi, openai, anthropic
    OPENAI_API_KEY: str | None = None
    OPENAI_MODEL: str = "gpt-4o-mini"
    ANTHROPIC_API_KEY: str | None = None
    ANTHROPIC_MODEL: str = "claude-3-5-haiku-latest"
    TGI_ENDPOINT: str = "http://tgi:8080/generate"

    # Run limits (overridable per agent)
    MAX_OUTPUT_RETRIES: int = 2
    MAX_TOOL_RETRIES: int = 2
    MAX_TOOL_ERROR_RETRIES: int = 0  # 0 = tool failures end the run
    MODEL_TIMEOUT: float | None = 60.0  # Seconds per model call
    TOOL_TIMEOUT: float | None = 30.0  # Seconds per tool call
    SCHEMA_MAX_DEPTH: int = 16

    class Config:
        """Configuration for Pydantic settings."""

        # Load environment variables from a .env file
        env_file = ".env"
        env_file_encoding = "utf-8"


settings = Settings()
