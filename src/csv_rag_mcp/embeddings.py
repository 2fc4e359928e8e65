"""
Embedding providers - turn text into fixed-length vectors.

Two providers are available:
    HttpEmbeddingProvider: remote embedding service (Ollama /api/embed or a
        Hugging Face feature-extraction endpoint) called with urllib.
    SentenceTransformerProvider: local sentence-transformers model, loaded
        lazily on first use.

Both expose ``async embed(text) -> list[float]``. Blocking work runs in the
default executor so the event loop keeps serving messages.
"""

from __future__ import annotations

import asyncio
import http.client
import json
import logging
import random
import time
from abc import ABC, abstractmethod
from socket import timeout as SocketTimeout
from typing import Any, Optional
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from .errors import EmbeddingError

logger = logging.getLogger(__name__)

# Allowed local embedding models (security: prevent arbitrary model loading)
ALLOWED_MODELS = frozenset({
    "BAAI/bge-base-en-v1.5",
    "BAAI/bge-small-en-v1.5",
    "sentence-transformers/all-MiniLM-L6-v2",
    "sentence-transformers/all-mpnet-base-v2",
})

DEFAULT_MODEL_NAME = "sentence-transformers/all-MiniLM-L6-v2"
DEFAULT_OLLAMA_MODEL = "nomic-embed-text"

RETRY_BASE_DELAY = 0.5  # seconds


class EmbeddingProvider(ABC):
    """Abstract interface for embedding providers."""

    @abstractmethod
    async def embed(self, text: str) -> list[float]:
        """Return the embedding vector for ``text``.

        Raises:
            EmbeddingError: If the provider fails or returns an unusable vector
        """


def _is_retryable_error(error: Exception) -> bool:
    """Check if an error is retryable (transient)."""
    if isinstance(error, (SocketTimeout, TimeoutError)):
        return True
    if isinstance(error, (ConnectionError, http.client.IncompleteRead)):
        return True
    if isinstance(error, HTTPError):
        return error.code == 429 or error.code >= 500
    if isinstance(error, URLError):
        reason = str(error.reason).lower()
        return any(x in reason for x in ["connection reset", "connection refused",
                                         "temporary failure", "timed out"])
    return False


def _coerce_vector(payload: Any) -> list[float]:
    """
    Normalize a provider response into a flat list of floats.

    Accepts a flat vector, a single-item batch ``[[...]]``, or per-token
    vectors ``[[...], [...]]`` which are mean-pooled.
    """
    if not isinstance(payload, list) or not payload:
        raise EmbeddingError("Embedding response is empty or not a list")

    if all(isinstance(v, (int, float)) and not isinstance(v, bool) for v in payload):
        return [float(v) for v in payload]

    if all(isinstance(v, list) for v in payload):
        if len(payload) == 1:
            return _coerce_vector(payload[0])
        rows = [_coerce_vector(v) for v in payload]
        width = len(rows[0])
        if any(len(r) != width for r in rows):
            raise EmbeddingError("Token embeddings have inconsistent dimensions")
        return [sum(col) / len(rows) for col in zip(*rows)]

    raise EmbeddingError("Embedding response contains non-numeric values")


class HttpEmbeddingProvider(EmbeddingProvider):
    """
    Embedding provider backed by an HTTP service.

    Args:
        url: Endpoint URL
        model: Model name sent to Ollama-style endpoints
        api: "ollama" (POST {model, input}) or "huggingface" (POST {inputs})
        token: Optional bearer token
        timeout: Per-request timeout in seconds
        max_retries: Retries on transient failures (timeouts, 429, 5xx)
    """

    def __init__(
        self,
        url: str,
        model: str = DEFAULT_MODEL_NAME,
        api: str = "ollama",
        token: Optional[str] = None,
        timeout: float = 20.0,
        max_retries: int = 2,
    ) -> None:
        if api not in ("ollama", "huggingface"):
            raise ValueError(f"Unsupported embedding api: {api}")
        self.url = url
        self.model = model
        self.api = api
        self.token = token
        self.timeout = timeout
        self.max_retries = max_retries

    def _payload(self, text: str) -> dict[str, Any]:
        if self.api == "ollama":
            return {"model": self.model, "input": text}
        return {"inputs": text}

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def _extract(self, result: Any) -> list[float]:
        if self.api == "ollama":
            if not isinstance(result, dict):
                raise EmbeddingError("Unexpected embedding response shape")
            embeddings = result.get("embeddings")
            if embeddings is None and "embedding" in result:
                embeddings = result["embedding"]
            return _coerce_vector(embeddings)
        return _coerce_vector(result)

    def _request_once(self, text: str) -> list[float]:
        """Single request attempt (internal). Raises on error."""
        data = json.dumps(self._payload(text)).encode("utf-8")
        request = Request(self.url, data=data, headers=self._headers(), method="POST")
        with urlopen(request, timeout=self.timeout) as response:
            result = json.loads(response.read().decode("utf-8"))
        return self._extract(result)

    def embed_sync(self, text: str) -> list[float]:
        """Blocking embed with retry and exponential backoff."""
        last_error: Optional[Exception] = None

        for attempt in range(self.max_retries + 1):
            try:
                return self._request_once(text)

            except EmbeddingError:
                raise

            except json.JSONDecodeError as e:
                raise EmbeddingError(f"Invalid JSON from embedding service: {e}") from e

            except ValueError as e:
                raise EmbeddingError(f"Invalid embedding request or response: {e}") from e

            except (OSError, http.client.HTTPException) as e:
                last_error = e
                if _is_retryable_error(e) and attempt < self.max_retries:
                    delay = RETRY_BASE_DELAY * (2 ** attempt) + random.uniform(0, 0.5)
                    logger.warning(
                        f"Embedding request failed ({type(e).__name__}), retrying in "
                        f"{delay:.1f}s (attempt {attempt + 1}/{self.max_retries + 1})"
                    )
                    time.sleep(delay)
                    continue
                break

        if isinstance(last_error, HTTPError):
            raise EmbeddingError(f"Embedding API error: HTTP {last_error.code}") from last_error
        raise EmbeddingError(f"Embedding request failed: {last_error}") from last_error

    async def embed(self, text: str) -> list[float]:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self.embed_sync, text)


class SentenceTransformerProvider(EmbeddingProvider):
    """Local sentence-transformers model, loaded on first use."""

    def __init__(self, model_name: str = DEFAULT_MODEL_NAME) -> None:
        # Security: validate model name against allowlist
        if model_name not in ALLOWED_MODELS:
            raise ValueError(
                f"Model '{model_name}' is not allowed. "
                "Use one of the approved embedding models."
            )
        self.model_name = model_name
        self._model = None

    @property
    def model(self):
        if self._model is None:
            from sentence_transformers import SentenceTransformer

            logger.info(f"Loading embedding model: {self.model_name}")
            self._model = SentenceTransformer(self.model_name)
        return self._model

    def embed_sync(self, text: str) -> list[float]:
        try:
            return self.model.encode(text).tolist()
        except Exception as e:
            raise EmbeddingError(f"Local embedding failed: {e}") from e

    async def embed(self, text: str) -> list[float]:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self.embed_sync, text)


def create_embedding_provider(config) -> EmbeddingProvider:
    """Build the provider selected by configuration."""
    if config.embedding_provider == "sentence-transformers":
        return SentenceTransformerProvider(config.embedding_model)
    return HttpEmbeddingProvider(
        url=config.embedding_url,
        model=config.embedding_model,
        api=config.embedding_api,
        token=config.api_token,
        timeout=config.embedding_timeout,
    )
