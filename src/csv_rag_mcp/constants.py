#!/usr/bin/env python3
"""
Project constants and protocol values.

Central location for project-wide constants, paths, and wire-level values.
All modules should derive paths and protocol identifiers from these
constants rather than computing them independently.
"""

from __future__ import annotations

from pathlib import Path

from mcp.types import INTERNAL_ERROR, INVALID_PARAMS, INVALID_REQUEST

# =============================================================================
# Project Structure
# =============================================================================

# Project root: two levels up from this file (src/csv_rag_mcp/constants.py)
PROJECT_ROOT = Path(__file__).resolve().parents[2]

# Default CSV source (can be overridden via MCP_CSV_PATH)
DEFAULT_CSV_PATH = PROJECT_ROOT / "data" / "sample.csv"

# =============================================================================
# Protocol
# =============================================================================

JSONRPC_VERSION = "2.0"
PROTOCOL_VERSION = "2024-11-05"

SERVER_NAME = "csv-rag-mcp"
SERVER_VERSION = "1.0.0"

# Error codes. The -32xxx standard codes come from the MCP type definitions;
# NOT_READY is server-defined and marks a retryable readiness failure.
ERROR_INVALID_REQUEST = INVALID_REQUEST
ERROR_INVALID_PARAMS = INVALID_PARAMS
ERROR_INTERNAL = INTERNAL_ERROR
ERROR_NOT_READY = -32001

# =============================================================================
# Data Source
# =============================================================================

DEFAULT_DATE_FIELD = "DATE"
DEFAULT_SIZE_FIELD = "SIZE"
DATE_FORMAT = "%Y-%m-%d"

# Vector ids are "row_<ordinal>"
ROW_ID_PREFIX = "row_"
DEFAULT_COLLECTION_NAME = "csv_rows"

# =============================================================================
# Limits
# =============================================================================

DEFAULT_TOP_K = 3
DEFAULT_MAX_TOP_K = 50
DEFAULT_MAX_QUERY_LENGTH = 1000
DEFAULT_MAX_LINE_BYTES = 1024 * 1024
READ_CHUNK_SIZE = 65536  # 64 KB reads from the transport

# Client-side polling for NOT_READY
DEFAULT_RETRY_ATTEMPTS = 10
DEFAULT_RETRY_DELAY = 3.0  # seconds

# =============================================================================
# Notifications
# =============================================================================

STATUS_NOTIFICATION = "server/status"

SERVER_NOTIFICATIONS = {
    STATUS_NOTIFICATION: "Server status updates (ingestion progress and readiness)",
}
