"""
Error taxonomy shared by the server, tools and client.

Tool-domain errors carry a message that is surfaced verbatim to the caller
in the error response. Protocol errors carry their own JSON-RPC code.
"""

from __future__ import annotations

from .constants import ERROR_INTERNAL, ERROR_INVALID_REQUEST, ERROR_NOT_READY


class ProtocolError(Exception):
    """Raised when an inbound message violates the protocol envelope."""

    def __init__(self, message: str, code: int = ERROR_INVALID_REQUEST) -> None:
        super().__init__(message)
        self.code = code


class ToolError(Exception):
    """Base class for errors raised by tool handlers."""

    code = ERROR_INTERNAL


class UnknownToolError(ToolError):
    """Raised when tools/call names a tool that is not registered."""


class InvalidArgumentsError(ToolError):
    """Raised when tool arguments are missing or malformed."""


class DivisionByZeroError(ToolError):
    """Raised by calculate when dividing by zero."""


class IndexNotReadyError(ToolError):
    """Raised when retrieval is attempted before ingestion completes.

    Callers are expected to retry after a delay.
    """

    code = ERROR_NOT_READY


class EmbeddingError(ToolError):
    """Raised when the embedding provider fails or times out."""


class GenerationError(ToolError):
    """Raised when the text-generation collaborator fails."""


class ConnectionClosedError(ConnectionError):
    """Raised for client calls outstanding when the transport closes."""
