#!/usr/bin/env python3
"""
MCP client - request/response correlation over a byte stream.

PendingRequestTable maps request ids to futures. Every call it hands out
resolves exactly once: with the matching response, with the remote error,
or with ConnectionClosedError when the transport ends.

Usage:
    # Spawn the server as a child process and talk over its stdio
    client = await McpClient.spawn()
    await client.initialize()
    result = await client.call_tool_with_retry("rag_query", {"question": "..."})
    await client.close()

    # Or from the command line
    python -m csv_rag_mcp.client --question "Which rows are from June?"
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import Any, Callable, Optional

from mcp.shared.exceptions import McpError
from mcp.types import ErrorData

from .constants import (
    DEFAULT_MAX_LINE_BYTES,
    DEFAULT_RETRY_ATTEMPTS,
    DEFAULT_RETRY_DELAY,
    ERROR_INTERNAL,
    ERROR_NOT_READY,
    PROTOCOL_VERSION,
    READ_CHUNK_SIZE,
)
from .errors import ConnectionClosedError
from .framing import LineFramer
from .protocol import encode, is_response, make_notification, make_request

logger = logging.getLogger(__name__)


class PendingRequestTable:
    """
    Outstanding requests keyed by id.

    Ids are strictly increasing integers starting at 1, so an id is never
    reused while its request is outstanding.
    """

    def __init__(self) -> None:
        self._next_id = 1
        self._pending: dict[int, asyncio.Future] = {}
        self._closed: Optional[BaseException] = None

    def __len__(self) -> int:
        return len(self._pending)

    def __contains__(self, id_: object) -> bool:
        return id_ in self._pending

    @property
    def closed(self) -> bool:
        return self._closed is not None

    def create(self) -> tuple[int, asyncio.Future]:
        """
        Allocate an id and its future.

        Raises:
            ConnectionClosedError: If the table was closed
        """
        if self._closed is not None:
            raise ConnectionClosedError(str(self._closed))
        id_ = self._next_id
        self._next_id += 1
        future = asyncio.get_running_loop().create_future()
        self._pending[id_] = future
        return id_, future

    def discard(self, id_: int) -> None:
        """Forget an entry whose request could not be sent."""
        self._pending.pop(id_, None)

    def resolve(self, message: dict[str, Any]) -> bool:
        """
        Complete the entry matching a response.

        Returns:
            True if an outstanding entry was resolved; False for unknown or
            already-resolved ids
        """
        id_ = message.get("id")
        # Ids handed out are plain ints; true would otherwise match 1
        if not isinstance(id_, int) or isinstance(id_, bool):
            logger.debug(f"Ignoring response with non-integer id: {id_!r}")
            return False
        future = self._pending.pop(id_, None)
        if future is None:
            logger.debug(f"Ignoring response with unknown id: {id_!r}")
            return False
        if future.done():
            # Caller gave up (cancelled); nothing left to deliver
            return False

        if "error" in message:
            error = message.get("error") or {}
            if not isinstance(error, dict):
                error = {"message": str(error)}
            code = error.get("code")
            if not isinstance(code, int) or isinstance(code, bool):
                code = ERROR_INTERNAL
            future.set_exception(McpError(ErrorData(
                code=code,
                message=str(error.get("message", "Unknown error")),
            )))
        else:
            future.set_result(message.get("result"))
        return True

    def close(self, reason: str = "Connection closed") -> int:
        """
        Reject every outstanding entry and refuse new ones.

        Returns:
            Number of entries rejected
        """
        if self._closed is None:
            self._closed = ConnectionClosedError(reason)
        pending, self._pending = self._pending, {}
        for future in pending.values():
            if not future.done():
                future.set_exception(ConnectionClosedError(reason))
        return len(pending)


class McpClient:
    """
    MCP client over a pair of asyncio streams.

    Use McpClient.spawn() for a child-process server over stdio or
    McpClient.connect() for a TCP server.
    """

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        process: Optional[asyncio.subprocess.Process] = None,
        on_notification: Optional[Callable[[dict[str, Any]], Any]] = None,
    ) -> None:
        self._reader = reader
        self._writer = writer
        self._process = process
        self.on_notification = on_notification
        self.pending = PendingRequestTable()
        self._framer = LineFramer(DEFAULT_MAX_LINE_BYTES)
        self._reader_task = asyncio.create_task(self._read_loop(), name="mcp-client-reader")

    # =========================================================================
    # Transports
    # =========================================================================

    @classmethod
    async def spawn(cls, command: Optional[list[str]] = None, env: Optional[dict[str, str]] = None,
                    **kwargs) -> "McpClient":
        """Start the server as a child process; its stderr is left for logs."""
        command = command or [sys.executable, "-m", "csv_rag_mcp.server"]
        process = await asyncio.create_subprocess_exec(
            *command,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            env=env,
        )
        logger.info(f"Started MCP server process (pid {process.pid})")
        return cls(process.stdout, process.stdin, process=process, **kwargs)

    @classmethod
    async def connect(cls, host: str = "127.0.0.1", port: int = 3000, **kwargs) -> "McpClient":
        reader, writer = await asyncio.open_connection(host, port)
        logger.info(f"Connected to MCP server at {host}:{port}")
        return cls(reader, writer, **kwargs)

    async def _read_loop(self) -> None:
        reason = "Connection closed"
        try:
            while True:
                chunk = await self._reader.read(READ_CHUNK_SIZE)
                if not chunk:
                    break
                for message in self._framer.feed(chunk):
                    self._handle(message)
            for message in self._framer.flush():
                self._handle(message)
        except (ConnectionError, OSError) as e:
            reason = f"Connection lost: {e}"
        finally:
            rejected = self.pending.close(reason)
            if rejected:
                logger.warning(f"{reason}; rejected {rejected} pending request(s)")

    def _handle(self, message: dict[str, Any]) -> None:
        if is_response(message):
            self.pending.resolve(message)
        elif "method" in message:
            if self.on_notification is not None:
                try:
                    self.on_notification(message)
                except Exception:
                    logger.exception("Notification callback failed")
            else:
                logger.debug(f"Notification: {message.get('method')}")

    async def _write(self, message: dict[str, Any]) -> None:
        self._writer.write(encode(message))
        await self._writer.drain()

    # =========================================================================
    # Requests
    # =========================================================================

    async def send(self, method: str, params: Optional[dict[str, Any]] = None) -> Any:
        """
        Send a request and wait for its result.

        Raises:
            McpError: If the server answered with an error
            ConnectionClosedError: If the connection closed first
        """
        id_, future = self.pending.create()
        try:
            await self._write(make_request(id_, method, params if params is not None else {}))
        except (ConnectionError, OSError) as e:
            self.pending.discard(id_)
            raise ConnectionClosedError(f"Failed to send {method}: {e}") from e
        return await future

    async def notify(self, method: str, params: Optional[dict[str, Any]] = None) -> None:
        await self._write(make_notification(method, params))

    async def initialize(self) -> dict[str, Any]:
        return await self.send("initialize", {
            "protocolVersion": PROTOCOL_VERSION,
            "capabilities": {"tools": {}, "resources": {}},
            "clientInfo": {"name": "csv-rag-mcp-client", "version": "1.0.0"},
        })

    async def list_tools(self) -> list[dict[str, Any]]:
        result = await self.send("tools/list")
        return result.get("tools", [])

    async def call_tool(self, name: str, arguments: Optional[dict[str, Any]] = None) -> Any:
        """Call a tool and decode the JSON text of its first content item."""
        result = await self.send("tools/call", {"name": name, "arguments": arguments or {}})
        content = (result or {}).get("content") or []
        if content and content[0].get("type") == "text":
            try:
                return json.loads(content[0]["text"])
            except json.JSONDecodeError:
                return content[0]["text"]
        return result

    async def call_tool_with_retry(
        self,
        name: str,
        arguments: Optional[dict[str, Any]] = None,
        attempts: int = DEFAULT_RETRY_ATTEMPTS,
        delay: float = DEFAULT_RETRY_DELAY,
    ) -> Any:
        """Call a tool, polling while the server reports it is not ready."""
        for attempt in range(1, attempts + 1):
            try:
                return await self.call_tool(name, arguments)
            except McpError as e:
                if e.error.code != ERROR_NOT_READY or attempt == attempts:
                    raise
                logger.info(f"{name}: server not ready, retrying in {delay:.1f}s ({attempt}/{attempts})")
                await asyncio.sleep(delay)

    async def list_resources(self) -> list[dict[str, Any]]:
        result = await self.send("resources/list")
        return result.get("resources", [])

    async def read_resource(self, uri: str) -> dict[str, Any]:
        return await self.send("resources/read", {"uri": uri})

    async def list_notifications(self) -> list[dict[str, Any]]:
        result = await self.send("notifications/list")
        return result.get("notifications", [])

    async def subscribe_notifications(self, subscriptions: list[str]) -> dict[str, Any]:
        return await self.send("notifications/subscribe", {"subscriptions": subscriptions})

    async def close(self) -> None:
        """Close the transport; outstanding calls fail with ConnectionClosedError."""
        self.pending.close("Client closed")
        try:
            self._writer.close()
            await self._writer.wait_closed()
        except (ConnectionError, OSError):
            pass
        if self._process is not None:
            try:
                await asyncio.wait_for(self._process.wait(), timeout=5)
            except asyncio.TimeoutError:
                self._process.terminate()
                await self._process.wait()
        self._reader_task.cancel()
        await asyncio.gather(self._reader_task, return_exceptions=True)


# =============================================================================
# Command line
# =============================================================================

async def _run(args: argparse.Namespace) -> int:
    if args.tcp:
        client = await McpClient.connect(args.host, args.port)
    else:
        client = await McpClient.spawn()

    try:
        init = await client.initialize()
        print(f"Initialized: {init.get('serverInfo')}")
        tools = await client.list_tools()
        print(f"Tools: {', '.join(t['name'] for t in tools)}")

        if args.question:
            result = await client.call_tool_with_retry(
                "rag_query",
                {"question": args.question, "topK": args.top_k},
                attempts=args.attempts,
                delay=args.delay,
            )
            print(json.dumps(result, indent=2, ensure_ascii=False))
        else:
            print(json.dumps(await client.call_tool("echo", {"text": "Hello MCP!"}), indent=2))
            print(json.dumps(await client.call_tool("get_time"), indent=2))
            print(json.dumps(await client.call_tool("calculate", {"operation": "add", "a": 10, "b": 5}), indent=2))
        return 0
    except (McpError, ConnectionClosedError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        await client.close()


def main(argv: Optional[list[str]] = None) -> int:
    """Entry point."""
    parser = argparse.ArgumentParser(description="CSV RAG MCP client")
    parser.add_argument("--tcp", action="store_true", help="Connect over TCP instead of spawning the server")
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=3000)
    parser.add_argument("--question", "-q", help="Ask a rag_query question")
    parser.add_argument("--top-k", type=int, default=3)
    parser.add_argument("--attempts", type=int, default=DEFAULT_RETRY_ATTEMPTS)
    parser.add_argument("--delay", type=float, default=DEFAULT_RETRY_DELAY)
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.WARNING, format="%(message)s", stream=sys.stderr)
    return asyncio.run(_run(args))


if __name__ == "__main__":
    sys.exit(main())
