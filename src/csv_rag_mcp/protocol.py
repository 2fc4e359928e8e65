"""
JSON-RPC envelopes.

Messages are plain dicts on the wire:
    request       {"jsonrpc": "2.0", "id": 1, "method": "...", "params": {...}}
    notification  {"jsonrpc": "2.0", "method": "...", "params": {...}}
    response      {"jsonrpc": "2.0", "id": 1, "result": {...}}
    error         {"jsonrpc": "2.0", "id": 1, "error": {"code": -32603, "message": "..."}}
"""

from __future__ import annotations

import json
from typing import Any, Optional

from mcp.types import ErrorData

from .constants import JSONRPC_VERSION


def make_request(id_: int | str, method: str, params: Optional[dict[str, Any]] = None) -> dict[str, Any]:
    message: dict[str, Any] = {"jsonrpc": JSONRPC_VERSION, "id": id_, "method": method}
    if params is not None:
        message["params"] = params
    return message


def make_notification(method: str, params: Optional[dict[str, Any]] = None) -> dict[str, Any]:
    message: dict[str, Any] = {"jsonrpc": JSONRPC_VERSION, "method": method}
    if params is not None:
        message["params"] = params
    return message


def make_result(id_: Any, result: dict[str, Any]) -> dict[str, Any]:
    return {"jsonrpc": JSONRPC_VERSION, "id": id_, "result": result}


def make_error(id_: Any, code: int, message: str) -> dict[str, Any]:
    error = ErrorData(code=code, message=message)
    return {
        "jsonrpc": JSONRPC_VERSION,
        "id": id_,
        "error": error.model_dump(exclude_none=True),
    }


def has_id(message: dict[str, Any]) -> bool:
    """A message without an id (or with a null id) is a notification."""
    return message.get("id") is not None


def is_response(message: dict[str, Any]) -> bool:
    return "method" not in message and ("result" in message or "error" in message)


def encode(message: dict[str, Any]) -> bytes:
    """Serialize one message as a single newline-terminated line."""
    return (json.dumps(message, ensure_ascii=False, separators=(",", ":")) + "\n").encode("utf-8")
