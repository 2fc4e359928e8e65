#!/usr/bin/env python3
"""
Configuration Management - Centralized, validated configuration.

This module provides a single source of truth for all configuration,
replacing scattered env var reads with a validated config object.

Usage:
    from csv_rag_mcp.config import get_config

    cfg = get_config()
    print(cfg.csv_path)
    print(cfg.embedding_provider)
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from .constants import (
    DEFAULT_COLLECTION_NAME,
    DEFAULT_CSV_PATH,
    DEFAULT_DATE_FIELD,
    DEFAULT_MAX_LINE_BYTES,
    DEFAULT_MAX_QUERY_LENGTH,
    DEFAULT_MAX_TOP_K,
    DEFAULT_SIZE_FIELD,
)
from .embeddings import ALLOWED_MODELS, DEFAULT_MODEL_NAME, DEFAULT_OLLAMA_MODEL

logger = logging.getLogger(__name__)

EMBEDDING_PROVIDERS = ("http", "sentence-transformers")
EMBEDDING_APIS = ("ollama", "huggingface")
VECTOR_STORES = ("memory", "chroma")


class ConfigurationError(Exception):
    """Raised when configuration is invalid."""
    pass


def _env_flag(name: str) -> bool:
    return os.environ.get(name, "").lower() in ("1", "true", "yes")


@dataclass
class Config:
    """
    Validated configuration for the CSV RAG MCP server.

    Values come from environment variables; see get_config().
    """
    # Source table
    csv_path: Path
    date_field: str
    size_field: str

    # Embedding provider
    embedding_provider: str
    embedding_url: str
    embedding_api: str
    embedding_model: str
    embedding_timeout: float
    api_token: Optional[str]

    # Vector store
    vector_store: str
    chroma_url: Optional[str]
    collection_name: str

    # Text generation (optional; context-only answers when unset)
    generation_url: Optional[str]
    generation_model: str

    # Limits
    max_top_k: int
    max_query_length: int
    max_line_bytes: int

    # Transport
    host: str = "127.0.0.1"
    port: int = 3000

    # Logging
    log_level: str = "INFO"
    log_json: bool = False

    def validate(self) -> None:
        """
        Validate configuration values.

        Raises:
            ConfigurationError: If any validation fails
        """
        errors = []

        if self.embedding_provider not in EMBEDDING_PROVIDERS:
            errors.append(
                f"embedding_provider must be one of {EMBEDDING_PROVIDERS}, "
                f"got '{self.embedding_provider}'"
            )
        elif self.embedding_provider == "sentence-transformers":
            if self.embedding_model not in ALLOWED_MODELS:
                errors.append(
                    f"Model '{self.embedding_model}' not in allowed models: {sorted(ALLOWED_MODELS)}"
                )
        else:
            if not self.embedding_url:
                errors.append("embedding_url is required for the http embedding provider")
            # Ollama needs a model name in the request body
            if self.embedding_api == "ollama" and not self.embedding_model:
                errors.append("embedding_model is required for the ollama embedding api")

        if self.embedding_api not in EMBEDDING_APIS:
            errors.append(f"embedding_api must be one of {EMBEDDING_APIS}, got '{self.embedding_api}'")

        if self.vector_store not in VECTOR_STORES:
            errors.append(f"vector_store must be one of {VECTOR_STORES}, got '{self.vector_store}'")

        if not self.date_field or not self.size_field:
            errors.append("date_field and size_field must be non-empty")

        # Validate limits
        if self.max_top_k < 1:
            errors.append(f"max_top_k must be positive, got {self.max_top_k}")
        if self.max_query_length < 1:
            errors.append(f"max_query_length must be positive, got {self.max_query_length}")
        if self.max_line_bytes < 0:
            errors.append(f"max_line_bytes must be >= 0, got {self.max_line_bytes}")
        if self.embedding_timeout <= 0:
            errors.append(f"embedding_timeout must be positive, got {self.embedding_timeout}")
        if not 0 <= self.port <= 65535:
            errors.append(f"port out of range: {self.port}")

        if errors:
            raise ConfigurationError(
                "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            )


# Global config cache
_config: Optional[Config] = None


def get_config(reload: bool = False) -> Config:
    """
    Get validated configuration.

    Loads from environment variables on first call, caches for subsequent calls.

    Args:
        reload: Force reload from environment variables

    Returns:
        Validated Config object

    Raises:
        ConfigurationError: If configuration is invalid
    """
    global _config

    if _config is not None and not reload:
        return _config

    provider = os.environ.get("MCP_EMBEDDING_PROVIDER", "http")
    api = os.environ.get("MCP_EMBEDDING_API", "ollama")
    default_model = (
        DEFAULT_OLLAMA_MODEL if provider == "http" and api == "ollama" else DEFAULT_MODEL_NAME
    )

    try:
        config = Config(
            csv_path=Path(os.environ.get("MCP_CSV_PATH", str(DEFAULT_CSV_PATH))).expanduser(),
            date_field=os.environ.get("MCP_DATE_FIELD", DEFAULT_DATE_FIELD),
            size_field=os.environ.get("MCP_SIZE_FIELD", DEFAULT_SIZE_FIELD),
            embedding_provider=provider,
            embedding_url=os.environ.get("MCP_EMBEDDING_URL", "http://localhost:11434/api/embed"),
            embedding_api=api,
            embedding_model=os.environ.get("MCP_EMBEDDING_MODEL", default_model),
            embedding_timeout=float(os.environ.get("MCP_EMBEDDING_TIMEOUT", "20")),
            api_token=os.environ.get("HUGGINGFACE_API_TOKEN") or None,
            vector_store=os.environ.get("MCP_VECTOR_STORE", "memory"),
            chroma_url=os.environ.get("CHROMA_URL") or None,
            collection_name=os.environ.get("MCP_COLLECTION_NAME", DEFAULT_COLLECTION_NAME),
            generation_url=os.environ.get("MCP_GENERATION_URL") or None,
            generation_model=os.environ.get("MCP_GENERATION_MODEL", "llama3.2"),
            max_top_k=int(os.environ.get("MCP_MAX_TOP_K", str(DEFAULT_MAX_TOP_K))),
            max_query_length=int(os.environ.get("MCP_MAX_QUERY_LENGTH", str(DEFAULT_MAX_QUERY_LENGTH))),
            max_line_bytes=int(os.environ.get("MCP_MAX_LINE_BYTES", str(DEFAULT_MAX_LINE_BYTES))),
            host=os.environ.get("MCP_HOST", "127.0.0.1"),
            port=int(os.environ.get("MCP_PORT", "3000")),
            log_level=os.environ.get("MCP_LOG_LEVEL", "INFO").upper(),
            log_json=_env_flag("MCP_LOG_JSON"),
        )
    except ValueError as e:
        raise ConfigurationError(f"Invalid numeric configuration value: {e}") from e

    # Validate
    config.validate()

    # Log configuration (debug level, no secrets)
    logger.debug("Configuration loaded:")
    logger.debug(f"  csv_path: {config.csv_path}")
    logger.debug(f"  embedding_provider: {config.embedding_provider}")
    logger.debug(f"  vector_store: {config.vector_store}")

    _config = config
    return config


def reset_config() -> None:
    """Reset cached config (for testing)."""
    global _config
    _config = None
