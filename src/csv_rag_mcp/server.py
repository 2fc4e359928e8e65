#!/usr/bin/env python3
"""
CSV RAG MCP Server - tools and retrieval over ingested CSV rows.

Serves newline-delimited JSON-RPC messages over stdio (default) or TCP and
builds the vector index from the CSV source in the background at startup.

Tools:
    echo, get_time, calculate: simple utility tools
    csv_analyze: date/size filtering and size statistics
    rag_query: retrieval-augmented answers (fails with code -32001 until ready)

Usage:
    # stdio (protocol on stdout, logs on stderr)
    python -m csv_rag_mcp.server

    # TCP
    python -m csv_rag_mcp.server --tcp --port 3000

Configuration:
    MCP_CSV_PATH: CSV source table (default: ./data/sample.csv)
    MCP_EMBEDDING_URL: Embedding service endpoint
    MCP_VECTOR_STORE: memory | chroma
    See csv_rag_mcp.config for the full list.
"""

from __future__ import annotations

import argparse
import asyncio
import dataclasses
import json
import logging
import signal
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import IO, Any, Optional

from .config import Config, ConfigurationError, get_config
from .constants import READ_CHUNK_SIZE, SERVER_NAME
from .dispatcher import Dispatcher, Sender, ServerContext
from .embeddings import EmbeddingProvider, create_embedding_provider
from .framing import LineFramer
from .generation import TextGenerator, create_generator
from .ingest import IngestionPipeline
from .protocol import encode
from .registry import ToolRegistry
from .tools import register_builtin_tools
from .vector_index import VectorIndex, create_vector_index

logger = logging.getLogger(__name__)


# =============================================================================
# Logging
# =============================================================================

class _StructuredFormatter(logging.Formatter):
    """One JSON object per log line."""

    def __init__(self, service: str = SERVER_NAME) -> None:
        super().__init__()
        self.service = service

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service": self.service,
        }
        if record.levelno >= logging.WARNING:
            entry["location"] = {
                "file": record.pathname,
                "line": record.lineno,
                "function": record.funcName,
            }
        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = {
                "type": record.exc_info[0].__name__,
                "message": str(record.exc_info[1]),
            }
        return json.dumps(entry, default=str)


def _setup_logging(level: int = logging.INFO, json_format: bool = False) -> None:
    """Install a single stderr handler on the package logger.

    stdout carries protocol messages in stdio mode, so logs never go there.
    """
    package_logger = logging.getLogger("csv_rag_mcp")
    for handler in list(package_logger.handlers):
        package_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stderr)
    if json_format:
        handler.setFormatter(_StructuredFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s"))
    package_logger.addHandler(handler)
    package_logger.setLevel(level)


# =============================================================================
# Server
# =============================================================================

class McpServer:
    """
    MCP server over stdio or TCP.

    Owns the server context (registry, pipeline, index, collaborators) and a
    dispatcher shared by all connections. Messages on one connection are
    handled strictly in arrival order.
    """

    def __init__(
        self,
        config: Optional[Config] = None,
        embedder: Optional[EmbeddingProvider] = None,
        index: Optional[VectorIndex] = None,
        generator: Optional[TextGenerator] = None,
    ) -> None:
        self.config = config or get_config()
        embedder = embedder or create_embedding_provider(self.config)
        index = index or create_vector_index(self.config)
        generator = generator or create_generator(self.config)

        pipeline = IngestionPipeline(
            self.config.csv_path,
            embedder,
            index,
            date_field=self.config.date_field,
            size_field=self.config.size_field,
        )
        self.context = ServerContext(
            config=self.config,
            registry=register_builtin_tools(ToolRegistry()),
            pipeline=pipeline,
            embedder=embedder,
            index=index,
            generator=generator,
        )
        self.dispatcher = Dispatcher(self.context)
        pipeline.add_listener(self.dispatcher.on_ingestion_finished)

        self._ingest_task: Optional[asyncio.Task] = None
        self._tcp_server: Optional[asyncio.AbstractServer] = None

    @property
    def pipeline(self) -> IngestionPipeline:
        return self.context.pipeline

    def start_ingestion(self) -> asyncio.Task:
        """Start the background ingestion task (once)."""
        if self._ingest_task is None:
            self._ingest_task = asyncio.create_task(self.pipeline.run(), name="ingestion")
        return self._ingest_task

    async def serve_connection(self, reader: asyncio.StreamReader, send: Sender, peer: str = "") -> None:
        """Read, frame and dispatch messages until the stream ends."""
        session = self.dispatcher.open_session(send, peer)
        framer = LineFramer(self.config.max_line_bytes)
        try:
            while True:
                chunk = await reader.read(READ_CHUNK_SIZE)
                if not chunk:
                    break
                for message in framer.feed(chunk):
                    await self.dispatcher.dispatch(message, session)
            for message in framer.flush():
                await self.dispatcher.dispatch(message, session)
        except (ConnectionError, OSError) as e:
            logger.info(f"Connection error for {session}: {e}")
        finally:
            self.dispatcher.close_session(session)

    async def serve_stdio(self, stdin: Optional[IO[bytes]] = None, stdout: Optional[IO[bytes]] = None) -> None:
        """Serve a single session on stdin/stdout until stdin closes.

        Both ends are attached to the event loop as pipes, so a slow reader
        of stdout suspends only the writing task.
        """
        loop = asyncio.get_running_loop()
        reader = asyncio.StreamReader()
        read_transport, _ = await loop.connect_read_pipe(
            lambda: asyncio.StreamReaderProtocol(reader), stdin or sys.stdin
        )
        write_transport, write_protocol = await loop.connect_write_pipe(
            asyncio.streams.FlowControlMixin, stdout or sys.stdout
        )
        writer = asyncio.StreamWriter(write_transport, write_protocol, None, loop)

        async def send(message: dict[str, Any]) -> None:
            writer.write(encode(message))
            await writer.drain()

        logger.info("Serving MCP over stdio")
        try:
            await self.serve_connection(reader, send, peer="stdio")
        finally:
            read_transport.close()
            writer.close()

    async def start_tcp(self, host: str, port: int) -> asyncio.AbstractServer:
        """Start listening for TCP clients; returns the asyncio server."""
        self._tcp_server = await asyncio.start_server(self._handle_tcp_client, host, port)
        for sock in self._tcp_server.sockets:
            logger.info(f"MCP server listening on {sock.getsockname()}")
        return self._tcp_server

    async def serve_tcp(self, host: str, port: int) -> None:
        server = await self.start_tcp(host, port)
        async with server:
            await server.serve_forever()

    async def _handle_tcp_client(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        peer = writer.get_extra_info("peername")

        async def send(message: dict[str, Any]) -> None:
            writer.write(encode(message))
            await writer.drain()

        try:
            await self.serve_connection(reader, send, peer=str(peer))
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except (ConnectionError, OSError):
                pass

    async def run(self, transport: str = "stdio") -> None:
        """Run until the transport closes or SIGINT/SIGTERM arrives."""
        loop = asyncio.get_running_loop()
        stop = asyncio.Event()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, stop.set)
            except (NotImplementedError, RuntimeError):
                pass

        self.start_ingestion()

        if transport == "tcp":
            serving = asyncio.create_task(self.serve_tcp(self.config.host, self.config.port))
        else:
            serving = asyncio.create_task(self.serve_stdio())
        stopping = asyncio.create_task(stop.wait())

        try:
            done, _ = await asyncio.wait({serving, stopping}, return_when=asyncio.FIRST_COMPLETED)
            if stopping in done:
                logger.info("Shutdown signal received")
            elif serving.exception() is not None:
                raise serving.exception()
        finally:
            await self.shutdown(serving, stopping)

    async def shutdown(self, *tasks: asyncio.Task) -> None:
        logger.info("Shutting down MCP server...")
        if self._tcp_server is not None:
            self._tcp_server.close()
        pending = [t for t in (*tasks, self._ingest_task) if t is not None and not t.done()]
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)


# =============================================================================
# Entry point
# =============================================================================

def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="CSV RAG MCP server")
    parser.add_argument("--tcp", action="store_true", help="Serve over TCP instead of stdio")
    parser.add_argument("--host", help="TCP host (default: MCP_HOST or 127.0.0.1)")
    parser.add_argument("--port", type=int, help="TCP port (default: MCP_PORT or 3000)")
    parser.add_argument("--csv", type=Path, help="CSV source table (default: MCP_CSV_PATH)")
    parser.add_argument("--log-level", help="Log level (default: MCP_LOG_LEVEL or INFO)")
    parser.add_argument("--log-json", action="store_true", help="Emit JSON log lines")
    return parser.parse_args(argv)


def build_config(args: argparse.Namespace) -> Config:
    """Environment configuration with command-line overrides applied."""
    config = get_config()
    overrides: dict[str, Any] = {}
    if args.host:
        overrides["host"] = args.host
    if args.port is not None:
        overrides["port"] = args.port
    if args.csv:
        overrides["csv_path"] = args.csv
    if args.log_level:
        overrides["log_level"] = args.log_level.upper()
    if args.log_json:
        overrides["log_json"] = True
    if overrides:
        config = dataclasses.replace(config, **overrides)
        config.validate()
    return config


def main(argv: Optional[list[str]] = None) -> int:
    """Entry point."""
    args = parse_args(argv)
    try:
        config = build_config(args)
    except ConfigurationError as e:
        _setup_logging()
        logger.error(str(e))
        return 1

    _setup_logging(
        level=getattr(logging, config.log_level, logging.INFO),
        json_format=config.log_json,
    )

    server = McpServer(config)
    try:
        asyncio.run(server.run("tcp" if args.tcp else "stdio"))
    except KeyboardInterrupt:
        pass
    return 0


if __name__ == "__main__":
    sys.exit(main())
