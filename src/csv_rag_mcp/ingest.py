#!/usr/bin/env python3
"""
Ingest - Build the vector index from CSV rows at startup.

The pipeline runs once, in the background, while the server already answers
requests:

    not_started -> in_progress -> ready | failed

Each row is serialized to text, embedded and collected; rows whose embedding
fails are skipped and reported in the summary. All successful vectors are
committed to the index in a single batch before the state becomes ready.

Fatal conditions (state -> failed):
    - the source table cannot be read
    - every row failed to embed
    - the embedding provider raised something other than EmbeddingError
    - the batch upsert failed
"""

from __future__ import annotations

import asyncio
import csv
import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Optional

from .constants import DEFAULT_DATE_FIELD, DEFAULT_SIZE_FIELD, ROW_ID_PREFIX
from .csv_data import Row, load_rows, row_to_text
from .embeddings import EmbeddingProvider
from .errors import EmbeddingError
from .vector_index import VectorIndex

logger = logging.getLogger(__name__)


class IngestionState(str, Enum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    READY = "ready"
    FAILED = "failed"


@dataclass
class RowResult:
    """Outcome of embedding one row: ok(vector) or skipped(reason)."""
    index: int
    vector: Optional[list[float]] = None
    reason: Optional[str] = None

    @classmethod
    def ok(cls, index: int, vector: list[float]) -> "RowResult":
        return cls(index=index, vector=vector)

    @classmethod
    def skipped(cls, index: int, reason: str) -> "RowResult":
        return cls(index=index, reason=reason)

    @property
    def is_ok(self) -> bool:
        return self.vector is not None


@dataclass
class IngestionSummary:
    """Result of an ingestion run."""
    state: IngestionState = IngestionState.NOT_STARTED
    total: int = 0
    embedded: int = 0
    skipped: int = 0
    failures: list[RowResult] = field(default_factory=list)
    error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "total": self.total,
            "embedded": self.embedded,
            "skipped": self.skipped,
            "failures": [{"index": r.index, "reason": r.reason} for r in self.failures],
            "error": self.error,
        }


def row_id(index: int) -> str:
    return f"{ROW_ID_PREFIX}{index}"


class IngestionPipeline:
    """
    One-shot CSV -> embeddings -> vector index pipeline.

    ``rows`` and the index are only written by the pipeline; handlers read
    them after checking ``is_ready`` (or ``rows_loaded`` for row-only tools).
    """

    def __init__(
        self,
        source: Path,
        embedder: EmbeddingProvider,
        index: VectorIndex,
        date_field: str = DEFAULT_DATE_FIELD,
        size_field: str = DEFAULT_SIZE_FIELD,
    ) -> None:
        self.source = Path(source)
        self.embedder = embedder
        self.index = index
        self.date_field = date_field
        self.size_field = size_field

        self.rows: list[Row] = []
        self.rows_loaded = False
        self.summary = IngestionSummary()
        self._listeners: list[Callable[[IngestionSummary], Any]] = []

    @property
    def state(self) -> IngestionState:
        return self.summary.state

    @property
    def is_ready(self) -> bool:
        return self.summary.state is IngestionState.READY

    def add_listener(self, callback: Callable[[IngestionSummary], Any]) -> None:
        """Register a callback run once the pipeline reaches a terminal state.

        Coroutine callbacks are awaited.
        """
        self._listeners.append(callback)

    async def run(self) -> IngestionSummary:
        """
        Run the pipeline once.

        Returns:
            IngestionSummary with per-row failures

        Raises:
            RuntimeError: If the pipeline was already started
        """
        if self.summary.state is not IngestionState.NOT_STARTED:
            raise RuntimeError("Ingestion pipeline already started")

        self.summary.state = IngestionState.IN_PROGRESS
        loop = asyncio.get_running_loop()

        try:
            rows = await loop.run_in_executor(
                None, load_rows, self.source, self.date_field, self.size_field
            )
        except (OSError, csv.Error, ValueError) as e:
            logger.error(f"Cannot read source table {self.source.name}: {e}")
            return await self._finish(IngestionState.FAILED, f"Cannot read source table: {e}")

        self.rows = rows
        self.rows_loaded = True
        self.summary.total = len(rows)
        logger.info(f"Loaded {len(rows)} rows from {self.source.name}, embedding...")

        try:
            results = [await self._embed_row(i, row) for i, row in enumerate(rows)]
        except Exception as e:
            logger.exception("Embedding provider failed unexpectedly")
            return await self._finish(
                IngestionState.FAILED, f"Embedding failed: {type(e).__name__}: {e}"
            )

        ok = [r for r in results if r.is_ok]
        self.summary.failures = [r for r in results if not r.is_ok]
        self.summary.embedded = len(ok)
        self.summary.skipped = len(self.summary.failures)

        if rows and not ok:
            return await self._finish(IngestionState.FAILED, "No rows could be embedded")

        try:
            await loop.run_in_executor(
                None,
                self.index.upsert,
                [row_id(r.index) for r in ok],
                [r.vector for r in ok],
                [{"index": r.index} for r in ok],
            )
        except Exception as e:
            logger.exception("Vector index upsert failed")
            return await self._finish(IngestionState.FAILED, f"Vector index upsert failed: {e}")

        logger.info(
            f"Ingestion complete: {self.summary.embedded}/{self.summary.total} rows embedded, "
            f"{self.summary.skipped} skipped"
        )
        return await self._finish(IngestionState.READY)

    async def _embed_row(self, index: int, row: Row) -> RowResult:
        try:
            vector = await self.embedder.embed(row_to_text(row))
        except EmbeddingError as e:
            logger.warning(f"Skipping row {index}: {e}")
            return RowResult.skipped(index, str(e))
        if not vector:
            logger.warning(f"Skipping row {index}: empty embedding")
            return RowResult.skipped(index, "empty embedding")
        return RowResult.ok(index, list(vector))

    async def _finish(self, state: IngestionState, error: Optional[str] = None) -> IngestionSummary:
        self.summary.state = state
        self.summary.error = error
        for callback in self._listeners:
            try:
                result = callback(self.summary)
                if asyncio.iscoroutine(result):
                    await result
            except Exception:
                logger.exception("Ingestion listener failed")
        return self.summary
