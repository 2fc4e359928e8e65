"""
Built-in tools.

Tools:
    echo: Return the input text unchanged
    get_time: Current server time (UTC)
    calculate: Basic arithmetic with a division-by-zero guard
    csv_analyze: Date/size filters and size statistics over ingested rows
    rag_query: Retrieval-augmented question answering over ingested rows
"""

from __future__ import annotations

import asyncio
import logging
import math
from datetime import datetime, timezone
from typing import Any

from .constants import DEFAULT_TOP_K
from .csv_data import calculate_size_stats, filter_by_date_range, filter_by_size, row_to_text
from .errors import DivisionByZeroError, IndexNotReadyError, InvalidArgumentsError, ToolError
from .ingest import IngestionState
from .registry import ToolRegistry

logger = logging.getLogger(__name__)

OPERATIONS = ("add", "subtract", "multiply", "divide")
CSV_ACTIONS = ("stats", "filter_date", "filter_size")


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _is_finite(value: Any) -> bool:
    # ints of any size are exact; math.isfinite would overflow converting them
    return isinstance(value, int) or math.isfinite(value)


def _optional_number(arguments: dict[str, Any], key: str) -> Any:
    value = arguments.get(key)
    if value is None:
        return None
    if not _is_number(value):
        raise InvalidArgumentsError(f"{key} must be a number")
    return value


def _optional_date(arguments: dict[str, Any], key: str) -> Any:
    value = arguments.get(key)
    if value is not None and not isinstance(value, str):
        raise InvalidArgumentsError(f"{key} must be a YYYY-MM-DD string")
    return value


# =============================================================================
# Handlers
# =============================================================================

async def echo(context, arguments: dict[str, Any]) -> dict[str, Any]:
    text = arguments.get("text")
    if not isinstance(text, str):
        raise InvalidArgumentsError("text is required and must be a string")
    return {"text": text}


async def get_time(context, arguments: dict[str, Any]) -> dict[str, Any]:
    return {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "timezone": "UTC",
    }


async def calculate(context, arguments: dict[str, Any]) -> dict[str, Any]:
    operation = arguments.get("operation")
    a = arguments.get("a")
    b = arguments.get("b")

    if not _is_number(a) or not _is_number(b):
        raise InvalidArgumentsError("a and b are required and must be numbers")
    if not _is_finite(a) or not _is_finite(b):
        raise InvalidArgumentsError("a and b must be finite numbers")

    try:
        if operation == "add":
            result = a + b
        elif operation == "subtract":
            result = a - b
        elif operation == "multiply":
            result = a * b
        elif operation == "divide":
            if b == 0:
                raise DivisionByZeroError("Division by zero")
            result = a / b
        else:
            raise InvalidArgumentsError(f"Unknown operation: {operation}")
    except OverflowError as e:
        raise InvalidArgumentsError(f"Result is not a finite number: {e}") from e

    if not _is_finite(result):
        raise InvalidArgumentsError("Result is not a finite number")

    return {"operation": operation, "a": a, "b": b, "result": result}


async def csv_analyze(context, arguments: dict[str, Any]) -> dict[str, Any]:
    """
    Filter ingested rows by date or size, or compute size statistics.

    ``stats`` applies every bound that is given; the filter actions apply
    only their own bounds.
    """
    pipeline = context.pipeline
    if pipeline.state is IngestionState.FAILED and not pipeline.rows_loaded:
        raise ToolError(pipeline.summary.error or "CSV source unavailable")
    if not pipeline.rows_loaded:
        raise IndexNotReadyError("CSV data is still loading, retry shortly")

    action = arguments.get("action")
    if action not in CSV_ACTIONS:
        raise InvalidArgumentsError(f"Unknown action: {action}")

    start_date = _optional_date(arguments, "startDate")
    end_date = _optional_date(arguments, "endDate")
    min_size = _optional_number(arguments, "minSize")
    max_size = _optional_number(arguments, "maxSize")

    config = context.config
    rows = pipeline.rows

    try:
        if action in ("filter_date", "stats"):
            rows = filter_by_date_range(rows, start_date, end_date, config.date_field)
    except ValueError as e:
        raise InvalidArgumentsError(str(e)) from e

    if action in ("filter_size", "stats"):
        rows = filter_by_size(rows, min_size, max_size, config.size_field)

    if action == "stats":
        return {"count": len(rows), "stats": calculate_size_stats(rows, config.size_field)}
    return {"count": len(rows), "rows": rows}


async def rag_query(context, arguments: dict[str, Any]) -> dict[str, Any]:
    """
    Answer a question from the rows nearest to it in embedding space.

    Fails fast with IndexNotReadyError until ingestion is ready; callers
    poll with a bounded retry count.
    """
    pipeline = context.pipeline
    config = context.config

    if not pipeline.is_ready:
        if pipeline.state is IngestionState.FAILED:
            raise ToolError(f"Ingestion failed: {pipeline.summary.error}")
        raise IndexNotReadyError(
            f"Index not ready (state: {pipeline.state.value}), retry shortly"
        )

    question = arguments.get("question")
    if not isinstance(question, str) or not question.strip():
        raise InvalidArgumentsError("question is required")
    if len(question) > config.max_query_length:
        raise InvalidArgumentsError(f"question exceeds maximum length of {config.max_query_length}")

    top_k = arguments.get("topK", DEFAULT_TOP_K)
    if not isinstance(top_k, int) or isinstance(top_k, bool) or top_k < 1:
        top_k = DEFAULT_TOP_K
    elif top_k > config.max_top_k:
        top_k = config.max_top_k

    vector = await context.embedder.embed(question)

    loop = asyncio.get_running_loop()
    hits = await loop.run_in_executor(None, context.index.query, vector, top_k)

    matched = []
    context_lines = []
    for hit in hits:
        index = hit.metadata.get("index")
        if not isinstance(index, int) or not 0 <= index < len(pipeline.rows):
            logger.warning(f"Hit {hit.id} has no valid row index, skipping")
            continue
        context_lines.append(row_to_text(pipeline.rows[index]))
        matched.append({"id": hit.id, "index": index, "distance": hit.distance})

    rag_context = "\n".join(context_lines)
    answer = await context.generator.generate(question, rag_context)

    return {"answer": answer, "context": rag_context, "matches": matched}


# =============================================================================
# Registration
# =============================================================================

def register_builtin_tools(registry: ToolRegistry) -> ToolRegistry:
    """Register every built-in tool."""
    registry.register(
        "echo",
        "Echo back the input text",
        {
            "type": "object",
            "properties": {
                "text": {"type": "string", "description": "Text to echo back"}
            },
            "required": ["text"]
        },
        echo,
    )
    registry.register(
        "get_time",
        "Get current server time",
        {"type": "object", "properties": {}},
        get_time,
    )
    registry.register(
        "calculate",
        "Perform basic arithmetic calculation",
        {
            "type": "object",
            "properties": {
                "operation": {
                    "type": "string",
                    "enum": list(OPERATIONS),
                    "description": "Arithmetic operation"
                },
                "a": {"type": "number", "description": "First number"},
                "b": {"type": "number", "description": "Second number"}
            },
            "required": ["operation", "a", "b"]
        },
        calculate,
    )
    registry.register(
        "csv_analyze",
        (
            "Analyze the ingested CSV rows. 'filter_date' and 'filter_size' return "
            "matching rows; 'stats' returns sum/average/max/min of the size column "
            "over rows matching every given bound."
        ),
        {
            "type": "object",
            "properties": {
                "action": {
                    "type": "string",
                    "enum": list(CSV_ACTIONS),
                    "description": "Analysis to run"
                },
                "startDate": {"type": "string", "description": "Inclusive start date (YYYY-MM-DD)"},
                "endDate": {"type": "string", "description": "Inclusive end date (YYYY-MM-DD)"},
                "minSize": {"type": "number", "description": "Inclusive minimum size"},
                "maxSize": {"type": "number", "description": "Inclusive maximum size"}
            },
            "required": ["action"]
        },
        csv_analyze,
    )
    registry.register(
        "rag_query",
        (
            "Answer a question using the CSV rows most similar to it. "
            "Returns an error with code -32001 while the index is still being built; "
            "retry after a few seconds."
        ),
        {
            "type": "object",
            "properties": {
                "question": {"type": "string", "description": "Natural language question"},
                "topK": {
                    "type": "integer",
                    "description": "Number of rows to retrieve (default: 3)",
                    "default": DEFAULT_TOP_K
                }
            },
            "required": ["question"]
        },
        rag_query,
    )
    return registry
