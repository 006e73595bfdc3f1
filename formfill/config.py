"""
Application configuration via environment variables.

Uses Pydantic BaseSettings to load and validate all config from env vars
or a .env.local file. Every setting has a sensible default for local
development so the engine can start with minimal configuration.
"""

from __future__ import annotations

from enum import Enum
from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(str, Enum):
    """Deployment environment selector."""

    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"


class Settings(BaseSettings):
    """
    Central configuration for the form-fill engine.

    Values are loaded from environment variables first, falling back
    to a `.env.local` file in the project root. Secrets should NEVER
    be committed.
    """

    model_config = SettingsConfigDict(
        env_file=".env.local",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ── Environment ──────────────────────────────────────────────
    environment: Environment = Environment.DEVELOPMENT

    # ── AI Model Keys ────────────────────────────────────────────
    openai_api_key: str = Field(default="", description="OpenAI API key for extraction, verification and embeddings")
    gemini_api_key: str = Field(default="", description="Google Gemini API key for the secondary extractor")

    # ── Models ───────────────────────────────────────────────────
    fill_model_primary: str = Field(default="gpt-4.1", description="Primary extraction model (OpenAI)")
    fill_model_secondary: str = Field(default="gemini-2.5-flash", description="Secondary extraction model (Gemini)")
    verifier_model: str = Field(default="gpt-4.1-mini", description="Model used for reconciliation and quality passes")
    embedding_model: str = Field(default="text-embedding-3-large", description="Embedding model for exemplar retrieval")
    openai_base_url: str = Field(default="https://api.openai.com/v1")
    gemini_base_url: str = Field(default="https://generativelanguage.googleapis.com/v1beta")

    # ── Exemplar Index ───────────────────────────────────────────
    opensearch_url: str = Field(default="http://localhost:9200", description="OpenSearch base URL")
    exemplar_index: str = Field(default="exemplars", description="Index holding solved exemplars")
    domain_id: str = Field(default="default-v1", description="Template/domain id used to scope exemplars")
    vector_dim: int = Field(default=3072, ge=1, description="Embedding dimension (3072 for text-embedding-3-large)")
    fewshot_k: int = Field(default=3, ge=0, le=5, description="Exemplars retrieved per request (0 disables retrieval)")
    fewshot_max_chars: int = Field(default=1200, ge=100, description="Exemplar transcripts are truncated to this length")

    # ── Timeouts & Retries ───────────────────────────────────────
    llm_timeout_seconds: float = Field(default=20.0, gt=0, description="Per-attempt timeout for model calls")
    embedding_timeout_seconds: float = Field(default=10.0, gt=0)
    vector_search_timeout_seconds: float = Field(default=10.0, gt=0)
    max_retries: int = Field(default=2, ge=0, le=10, description="Retries after the first attempt of any external call")
    retry_base_delay_seconds: float = Field(default=0.5, ge=0, description="Backoff base; grows as base * 2^attempt")

    # ── Pipeline Defaults ────────────────────────────────────────
    provider_count: int = Field(default=1, ge=1, le=2, description="Number of extraction providers to run")
    granularity: str = Field(default="batch", description="'batch' (one prompt) or 'per_field'")
    reconciliation: str = Field(default="none", description="'none' or 'verifier' (quality pass)")
    max_parallel_fields: int = Field(default=4, ge=1, le=64, description="Concurrent per-field prompts")

    # ── Extraction Policy Defaults ───────────────────────────────
    confidence_threshold: float = Field(default=0.7, ge=0.0, le=1.0, description="Below this, escalate extracted fields")
    rejection_threshold: float = Field(default=0.4, ge=0.0, le=1.0, description="Below this, discard the candidate")
    max_escalations_per_field: int = Field(default=1, ge=0, le=5)
    preserve_user_edits: bool = Field(default=True, description="Never overwrite non-empty user-sourced values")

    # ── Logging ──────────────────────────────────────────────────
    log_level: str = Field(default="INFO", description="Root log level")

    # ── Derived helpers ──────────────────────────────────────────

    @property
    def is_production(self) -> bool:
        return self.environment == Environment.PRODUCTION

    @property
    def is_development(self) -> bool:
        return self.environment == Environment.DEVELOPMENT


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """
    Return cached Settings instance.

    Using lru_cache ensures we read env vars exactly once, and every
    module that calls ``get_settings()`` gets the same object.
    """
    return Settings()
