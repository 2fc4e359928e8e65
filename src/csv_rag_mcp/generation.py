"""
Text generation collaborators for rag_query.

OllamaGenerator calls an Ollama-style /api/generate endpoint. When no
endpoint is configured, ContextOnlyGenerator answers with the best-matching
context row so retrieval remains usable without a language model.
"""

from __future__ import annotations

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from typing import Optional
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from .errors import GenerationError

logger = logging.getLogger(__name__)

PROMPT_TEMPLATE = (
    "Answer the question using only the CSV rows below.\n\n"
    "Rows:\n{context}\n\n"
    "Question: {question}\n"
    "Answer:"
)


class TextGenerator(ABC):
    """Opaque text-generation step: (question, context) -> answer."""

    @abstractmethod
    async def generate(self, question: str, context: str) -> str:
        """Return an answer for ``question`` grounded in ``context``."""


class ContextOnlyGenerator(TextGenerator):
    """Returns the first context line; used when no model is configured."""

    async def generate(self, question: str, context: str) -> str:
        first = context.splitlines()[0] if context else ""
        if not first:
            return "No matching rows found."
        return f"Closest matching row: {first}"


class OllamaGenerator(TextGenerator):
    """
    Generator backed by an Ollama /api/generate endpoint.

    Args:
        url: Full endpoint URL (e.g. http://localhost:11434/api/generate)
        model: Model name
        timeout: Request timeout in seconds
    """

    def __init__(self, url: str, model: str, timeout: float = 120.0) -> None:
        self.url = url
        self.model = model
        self.timeout = timeout

    def generate_sync(self, question: str, context: str) -> str:
        payload = {
            "model": self.model,
            "prompt": PROMPT_TEMPLATE.format(context=context, question=question),
            "stream": False,
        }
        request = Request(
            self.url,
            data=json.dumps(payload).encode("utf-8"),
            headers={"Content-Type": "application/json"},
            method="POST",
        )
        try:
            logger.debug(f"Making generation request to {self.url}")
            with urlopen(request, timeout=self.timeout) as response:
                result = json.loads(response.read().decode("utf-8"))
        except HTTPError as e:
            logger.error(f"HTTP error from generation service: {e.code}")
            raise GenerationError(f"Generation API error: HTTP {e.code}") from e
        except (URLError, TimeoutError) as e:
            logger.error(f"Failed to connect to generation service: {e}")
            raise GenerationError(f"Failed to connect to generation service: {e}") from e
        except json.JSONDecodeError as e:
            raise GenerationError(f"Invalid JSON response from generation service: {e}") from e

        answer = result.get("response") if isinstance(result, dict) else None
        if not isinstance(answer, str):
            raise GenerationError("Generation response has no 'response' text")
        return answer.strip()

    async def generate(self, question: str, context: str) -> str:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self.generate_sync, question, context)


def create_generator(config) -> TextGenerator:
    """Build the generator selected by configuration."""
    url: Optional[str] = config.generation_url
    if url:
        return OllamaGenerator(url, config.generation_model)
    return ContextOnlyGenerator()
