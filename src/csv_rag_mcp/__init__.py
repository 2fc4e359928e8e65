"""
CSV RAG MCP - JSON-RPC tool server with retrieval over CSV rows.

This package provides an MCP-style server that exposes simple tools and a
retrieval-augmented query tool backed by a vector index built from the rows
of a CSV table, plus a client that correlates requests with responses.

Architecture:
    - Newline-delimited JSON-RPC 2.0 over stdio or TCP
    - Background ingestion: CSV rows -> embeddings -> vector index
    - Readiness gate: rag_query fails fast (code -32001) until ingestion is ready
    - In-memory (numpy) or ChromaDB vector store
    - HTTP (Ollama / Hugging Face) or sentence-transformers embeddings

Modules:
    server: transports, logging setup and entry point
    dispatcher: envelope validation and method routing
    framing: newline-delimited JSON framer
    protocol: message envelopes
    registry: tool registry
    tools: built-in tools (echo, get_time, calculate, csv_analyze, rag_query)
    client: pending request table and client
    ingest: ingestion pipeline
    vector_index: vector index backends
    embeddings: embedding providers
    generation: text generation collaborators
    csv_data: CSV reading and filters
    config: centralized configuration
    constants: project-wide constants
    errors: error taxonomy

Usage:
    # Run MCP server (stdio)
    python -m csv_rag_mcp.server

    # Ask a question through a spawned server
    python -m csv_rag_mcp.client --question "What happened in June?"
"""

__version__ = "1.0.0"

from .client import McpClient, PendingRequestTable
from .config import Config, get_config
from .server import McpServer

__all__ = ["McpClient", "PendingRequestTable", "McpServer", "get_config", "Config", "__version__"]
