"""Application configuration using Pydantic Settings.

This module provides centralized configuration management for the code-agent
worker. All settings can be overridden via environment variables or a .env file.
"""

import logging
import os
from typing import Any

import structlog
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    Attributes:
        mistral_api_key: API key for Mistral models (code agent).
        groq_api_key: API key for Groq-hosted models (generators).
        code_agent_model: LiteLLM model id for the primary coding agent.
        title_generator_model: LiteLLM model id for the fragment title generator.
        response_generator_model: LiteLLM model id for the response generator.
        llm_fallback_model: Optional model tried once after primary retries fail.
        llm_max_retries: Retries for transient LLM failures.
        llm_request_timeout_seconds: Timeout for a single LLM API call.
        max_network_iterations: Hard cap on agent-network iterations.
        max_tool_calls_per_turn: Hard cap on tool calls inside one agent turn.
        history_limit: Number of persisted messages replayed as context.
        sandbox_template: Docker image the sandbox is started from.
        sandbox_timeout_seconds: Lifetime of a sandbox after acquisition.
        sandbox_preview_port: Port the template's dev server listens on.
        sandbox_workdir: Working directory inside the sandbox.
        sandbox_public_host: Host name used to build preview URLs.
        command_timeout_seconds: Timeout for a single terminal command.
        sandbox_reap_interval_seconds: Seconds between expired-sandbox sweeps.
        database_path: SQLite file for messages, fragments and step records.
        job_max_attempts: Attempts the job runner makes before giving up.
        max_retained_runs: Finished runs whose info and event history are kept.
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR).
        log_format: Log format (json or text).
    """

    # LLM Configuration
    mistral_api_key: str = ""
    groq_api_key: str = ""
    # Model names must include provider prefix for LiteLLM (e.g., mistral/, groq/)
    code_agent_model: str = "mistral/mistral-large-latest"
    title_generator_model: str = "groq/openai/gpt-oss-120b"
    response_generator_model: str = "groq/openai/gpt-oss-120b"
    llm_fallback_model: str | None = None
    llm_max_retries: int = 3
    llm_request_timeout_seconds: int = 120

    # Agent Network Limits
    max_network_iterations: int = 5
    max_tool_calls_per_turn: int = 25
    history_limit: int = 5

    # Sandbox Configuration
    sandbox_template: str = "vibe-nextjs-sandbox:latest"
    sandbox_timeout_seconds: int = 1800
    sandbox_preview_port: int = 3000
    sandbox_workdir: str = "/home/user"
    sandbox_public_host: str = "localhost"
    command_timeout_seconds: int = 60
    sandbox_reap_interval_seconds: int = 60

    # Persistence
    database_path: str = "./data/worker.db"

    # Job Runtime
    job_max_attempts: int = 3
    max_retained_runs: int = 100

    log_level: str = "INFO"
    log_format: str = "json"

    @field_validator(
        "max_network_iterations", "job_max_attempts", "history_limit", "max_retained_runs"
    )
    @classmethod
    def ensure_positive(cls, v: int) -> int:
        """Reject non-positive loop bounds."""
        if v < 1:
            raise ValueError("must be at least 1")
        return v

    model_config = SettingsConfigDict(
        # Support running from either the repo root or `backend/`
        env_file=(".env", "../.env"),
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    def model_post_init(self, __context: Any) -> None:
        """Export provider API keys to os.environ for LiteLLM discovery."""
        if self.mistral_api_key:
            os.environ.setdefault("MISTRAL_API_KEY", self.mistral_api_key)
        if self.groq_api_key:
            os.environ.setdefault("GROQ_API_KEY", self.groq_api_key)


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

# Create a logger for this module
logger = structlog.get_logger(__name__)
