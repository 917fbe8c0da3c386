"""Application configuration using pydantic-settings."""

from pathlib import Path
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # OpenAI (checked lazily so the service can boot without credentials)
    openai_api_key: Optional[str] = Field(default=None, description="OpenAI API key")
    generation_model: str = Field(
        default="gpt-4.1-mini",
        description="OpenAI model for question generation",
    )
    embedding_model: str = Field(
        default="text-embedding-3-small",
        description="OpenAI embedding model name",
    )
    generation_max_tokens: int = Field(
        default=5000, ge=1, description="Max completion tokens per generation call"
    )

    # Database
    database_url: str = Field(
        default="sqlite+aiosqlite:///./data/app.db",
        description="Async SQLAlchemy database URL",
    )

    # Vector Database
    vector_db_path: Path = Field(
        default=Path("./vector_store/chroma_index"),
        description="Path to vector database storage",
    )
    vector_collection_name: str = Field(
        default="question_metadata",
        description="Collection holding question metadata vectors",
    )

    # Deduplication
    question_dedupe_enabled: bool = Field(
        default=True, description="Enable similarity dedupe of generated questions"
    )
    dedupe_threshold: Optional[float] = Field(
        default=None,
        ge=0.0,
        lt=1.0,
        description="Common similarity threshold used when a specific one is unset",
    )
    question_dedupe_threshold: Optional[float] = Field(default=None, ge=0.0, lt=1.0)
    question_dedupe_top_k: int = Field(default=3, description="Neighbours per index query")
    metadata_dedupe_threshold: Optional[float] = Field(default=None, ge=0.0, lt=1.0)
    semantic_dedupe_enabled: bool = Field(
        default=False,
        description="Compare candidates against stored question embeddings",
    )
    semantic_dedupe_threshold: Optional[float] = Field(default=None, ge=0.0, lt=1.0)
    avoid_metadata_threshold: Optional[float] = Field(default=None, ge=0.0, lt=1.0)

    # Pool assembly
    fill_attempts: int = Field(default=3, description="Fill attempts before giving up")
    diagnostic_question_count: int = Field(
        default=5, ge=1, le=20, description="Default diagnostic batch size"
    )

    # Server Configuration
    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=8000, description="Server port")
    log_level: str = Field(default="INFO", description="Logging level")
    environment: str = Field(
        default="development", description="Environment (development/production)"
    )

    # Security
    cors_origins: str = Field(
        default="http://localhost:3000,http://localhost:5173",
        description="Comma-separated list of allowed CORS origins",
    )
    rate_limit_enabled: bool = Field(default=True, description="Enable rate limiting")
    rate_limit_per_minute: int = Field(
        default=60, ge=1, description="Rate limit per minute per IP"
    )

    @field_validator("question_dedupe_top_k")
    @classmethod
    def clamp_top_k(cls, value: int) -> int:
        return max(1, min(10, int(value)))

    @field_validator("fill_attempts")
    @classmethod
    def clamp_fill_attempts(cls, value: int) -> int:
        return max(1, min(4, int(value)))

    def __init__(self, **kwargs):
        """Initialize settings and prepare local storage directories."""
        super().__init__(**kwargs)
        if isinstance(self.vector_db_path, str):
            self.vector_db_path = Path(self.vector_db_path)
        self.vector_db_path.parent.mkdir(parents=True, exist_ok=True)

    def similarity_threshold(self, specific: Optional[float], default: float) -> float:
        """
        Resolve a dedupe threshold.

        A specific threshold wins, then the common ``dedupe_threshold``,
        then the documented default.

        Args:
            specific: Value of the specific threshold setting (may be None)
            default: Fallback when neither setting is present

        Returns:
            Effective threshold
        """
        if specific is not None:
            return float(specific)
        if self.dedupe_threshold is not None:
            return float(self.dedupe_threshold)
        return default


# Global settings instance
settings = Settings()
