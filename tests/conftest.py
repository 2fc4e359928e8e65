"""Shared fixtures and fakes for the test suite."""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path
from typing import Optional

import pytest

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from csv_rag_mcp.config import Config
from csv_rag_mcp.constants import DEFAULT_MAX_LINE_BYTES
from csv_rag_mcp.embeddings import EmbeddingProvider
from csv_rag_mcp.errors import EmbeddingError
from csv_rag_mcp.generation import TextGenerator


SCENARIO_CSV = (
    "DATE,SIZE\n"
    "2024-05-01,70\n"
    "2024-06-15,75\n"
    "2024-07-01,90\n"
)

SCENARIO_TERMS = ["2024-05-01", "2024-06-15", "2024-07-01"]


class KeywordEmbedder(EmbeddingProvider):
    """
    Deterministic embedder: one dimension per vocabulary term.

    Texts containing a term in ``fail_on`` raise EmbeddingError. When a
    ``gate`` event is given, every call waits for it first.
    """

    def __init__(self, vocabulary: list[str], fail_on: tuple[str, ...] = (),
                 gate: Optional[asyncio.Event] = None) -> None:
        self.vocabulary = vocabulary
        self.fail_on = fail_on
        self.gate = gate
        self.calls: list[str] = []

    async def embed(self, text: str) -> list[float]:
        self.calls.append(text)
        if self.gate is not None:
            await self.gate.wait()
        if any(term in text for term in self.fail_on):
            raise EmbeddingError("embedding service unavailable")
        return [1.0 if term in text else 0.0 for term in self.vocabulary]


class RecordingGenerator(TextGenerator):
    """Returns a fixed answer and records what it was asked."""

    def __init__(self, answer: str = "generated answer") -> None:
        self.answer = answer
        self.calls: list[tuple[str, str]] = []

    async def generate(self, question: str, context: str) -> str:
        self.calls.append((question, context))
        return self.answer


def make_config(csv_path: Path, **overrides) -> Config:
    values = dict(
        csv_path=csv_path,
        date_field="DATE",
        size_field="SIZE",
        embedding_provider="http",
        embedding_url="http://localhost:11434/api/embed",
        embedding_api="ollama",
        embedding_model="nomic-embed-text",
        embedding_timeout=5.0,
        api_token=None,
        vector_store="memory",
        chroma_url=None,
        collection_name="test_rows",
        generation_url=None,
        generation_model="test-model",
        max_top_k=50,
        max_query_length=1000,
        max_line_bytes=DEFAULT_MAX_LINE_BYTES,
        host="127.0.0.1",
        port=0,
    )
    values.update(overrides)
    return Config(**values)


@pytest.fixture
def scenario_csv(tmp_path) -> Path:
    path = tmp_path / "rows.csv"
    path.write_text(SCENARIO_CSV, encoding="utf-8")
    return path


@pytest.fixture
def scenario_config(scenario_csv) -> Config:
    return make_config(scenario_csv)
