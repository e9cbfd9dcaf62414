"""Application configuration using Pydantic Settings.

This module provides centralized configuration management for the agent
cluster backend. All settings can be overridden via environment variables or
a .env file.
"""

import json
import logging
from typing import Any

import structlog
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    Attributes:
        default_model: Model used by the reasoning oracle (LiteLLM model string).
        llm_fallback_model: Optional model tried once when the primary fails.
        llm_max_retries: Retries for transient LLM failures before giving up.
        llm_request_timeout_seconds: Transport timeout for a single LLM request.
        oracle_timeout_seconds: Caller-side bound for one oracle operation.
        oracle_temperature: Sampling temperature for oracle prompts.
        use_mock_llm: If True, the offline oracle is used instead of LiteLLM.
        node_timeout_seconds: Task timeout for coordinator nodes.
        worker_timeout_seconds: Task timeout for worker nodes.
        node_max_retries: Retry budget recorded in every node's configuration.
        worker_template: Guidance template that spawned workers load on initialize.
        monitor_enabled: Whether nodes start a watchdog on initialize.
        monitor_interval_seconds: Seconds between watchdog check rounds.
        cluster_id: Identifier used to key cluster events.
        database_path: Path of the SQLite database holding node records.
        backend_port: Port for the FastAPI server.
        cors_origins: Allowed origins for CORS.
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR).
        log_format: Log format (json or text).
    """

    # Reasoning oracle
    default_model: str = "openai/gpt-4o-mini"
    llm_fallback_model: str | None = None
    llm_max_retries: int = 2
    llm_request_timeout_seconds: int = 120
    oracle_timeout_seconds: float = 60.0
    oracle_temperature: float = 0.7
    use_mock_llm: bool = False

    # Node defaults
    node_timeout_seconds: float = 300.0
    worker_timeout_seconds: float = 120.0
    node_max_retries: int = 3
    worker_template: str | None = "worker"
    monitor_enabled: bool = True
    monitor_interval_seconds: float = 5.0

    # Cluster and storage
    cluster_id: str = "default"
    database_path: str = "./data/cluster.db"

    # Server Configuration
    backend_port: int = 8000
    cors_origins: str | list[str] = ["http://localhost:3000"]
    log_level: str = "INFO"
    log_format: str = "json"

    @field_validator("cors_origins", mode="before")
    @classmethod
    def parse_cors_origins(cls, v: Any) -> list[str]:
        """Parse CORS origins from a JSON array, comma-separated string, or list."""
        if isinstance(v, list):
            return v
        if isinstance(v, str):
            v = v.strip()
            if v.startswith("["):
                try:
                    return json.loads(v)
                except json.JSONDecodeError:
                    pass
            return [origin.strip() for origin in v.split(",") if origin.strip()]
        return ["http://localhost:3000"]

    model_config = SettingsConfigDict(
        env_file=(".env", "../.env"),
        env_file_encoding="utf-8",
        case_sensitive=False,
    )


def configure_logging(log_level: str = "INFO", log_format: str = "json") -> None:
    """Configure structured logging for the application.

    Sets up structlog with appropriate processors for either JSON or console output.

    Args:
        log_level: The minimum log level to emit (DEBUG, INFO, WARNING, ERROR).
        log_format: Output format - 'json' for production, 'text' for development.
    """
    processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


# Global settings instance
settings = Settings()

# Configure logging on module import
configure_logging(settings.log_level, settings.log_format)

logger = structlog.get_logger(__name__)
