"""
Dispatcher - validates inbound messages and routes them to method handlers.

Every message goes through two steps:

    Validate: envelope version must be "2.0" and method a non-empty string
    Route:    fixed method table; tools/call goes through the Tool Registry

Requests (messages with an id) always get exactly one response. Notifications
(no id) never get a reply, not even an error. Tool errors are converted to
error responses here and never reach the transport.
"""

from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from mcp.types import Implementation, TextContent

from .config import Config
from .constants import (
    ERROR_INTERNAL,
    ERROR_INVALID_PARAMS,
    ERROR_INVALID_REQUEST,
    JSONRPC_VERSION,
    PROTOCOL_VERSION,
    SERVER_NAME,
    SERVER_NOTIFICATIONS,
    SERVER_VERSION,
    STATUS_NOTIFICATION,
)
from .embeddings import EmbeddingProvider
from .errors import IndexNotReadyError, ProtocolError, ToolError
from .generation import TextGenerator
from .ingest import IngestionPipeline, IngestionSummary
from .protocol import has_id, is_response, make_error, make_notification, make_result
from .registry import ToolRegistry
from .vector_index import VectorIndex

logger = logging.getLogger(__name__)

ROWS_RESOURCE = "csv://rows"
STATUS_RESOURCE = "csv://ingestion-status"

RESOURCES = [
    {
        "uri": ROWS_RESOURCE,
        "name": "Ingested CSV rows",
        "description": "All rows read from the source table, in source order",
        "mimeType": "application/json",
    },
    {
        "uri": STATUS_RESOURCE,
        "name": "Ingestion status",
        "description": "Ingestion state and per-row embedding failures",
        "mimeType": "application/json",
    },
]

Sender = Callable[[dict[str, Any]], Awaitable[None]]


@dataclass
class ServerContext:
    """Everything a handler may consult. Built once at startup."""
    config: Config
    registry: ToolRegistry
    pipeline: IngestionPipeline
    embedder: EmbeddingProvider
    index: VectorIndex
    generator: TextGenerator


class Session:
    """Per-connection state."""

    def __init__(self, send: Sender, peer: str = "") -> None:
        self.id = uuid.uuid4().hex[:8]
        self.peer = peer
        self.send = send
        self.initialized = False
        self.subscriptions: set[str] = set()

    def __repr__(self) -> str:
        return f"Session({self.id}{', ' + self.peer if self.peer else ''})"


class Dispatcher:
    """Routes messages for all sessions of one server."""

    def __init__(self, context: ServerContext) -> None:
        self.context = context
        self.sessions: set[Session] = set()
        self._methods: dict[str, Callable[[dict[str, Any], Session], Awaitable[dict[str, Any]]]] = {
            "initialize": self._initialize,
            "tools/list": self._tools_list,
            "tools/call": self._tools_call,
            "resources/list": self._resources_list,
            "resources/read": self._resources_read,
            "notifications/list": self._notifications_list,
            "notifications/subscribe": self._notifications_subscribe,
        }

    @property
    def methods(self) -> list[str]:
        return list(self._methods)

    def open_session(self, send: Sender, peer: str = "") -> Session:
        session = Session(send, peer)
        self.sessions.add(session)
        logger.info(f"New MCP client connected: {session}")
        return session

    def close_session(self, session: Session) -> None:
        self.sessions.discard(session)
        logger.info(f"MCP client disconnected: {session}")

    async def dispatch(self, message: dict[str, Any], session: Session) -> None:
        """Handle one message and write its response, if any."""
        response = await self.handle(message, session)
        if response is not None:
            await session.send(response)

    async def handle(self, message: dict[str, Any], session: Session) -> Optional[dict[str, Any]]:
        """
        Validate and route one message.

        Returns:
            The response to send, or None for notifications and stray responses
        """
        if is_response(message):
            logger.debug(f"Ignoring response-shaped message from {session}")
            return None

        id_ = message.get("id")
        notification = not has_id(message)

        if message.get("jsonrpc") != JSONRPC_VERSION:
            return self._reply_error(id_, notification, ERROR_INVALID_REQUEST, "Invalid JSON-RPC version")

        method = message.get("method")
        if not isinstance(method, str) or not method:
            return self._reply_error(id_, notification, ERROR_INVALID_REQUEST, "Invalid or missing method")

        handler = self._methods.get(method)
        if handler is None:
            return self._reply_error(id_, notification, ERROR_INTERNAL, f"Unknown method: {method}")

        params = message.get("params")
        if params is None:
            params = {}
        if not isinstance(params, dict):
            return self._reply_error(id_, notification, ERROR_INVALID_PARAMS, "params must be an object")

        logger.debug(f"Received {method} from {session}")

        try:
            result = await handler(params, session)
        except (ProtocolError, ToolError) as e:
            logger.info(f"{method} failed for {session}: {e}")
            return self._reply_error(id_, notification, e.code, str(e))
        except Exception as e:
            logger.exception(f"Error handling {method}")
            return self._reply_error(id_, notification, ERROR_INTERNAL, str(e) or type(e).__name__)

        if notification:
            return None
        return make_result(id_, result)

    @staticmethod
    def _reply_error(id_: Any, notification: bool, code: int, message: str) -> Optional[dict[str, Any]]:
        if notification:
            logger.debug(f"Discarding error for notification: {message}")
            return None
        return make_error(id_, code, message)

    # =========================================================================
    # Methods
    # =========================================================================

    async def _initialize(self, params: dict[str, Any], session: Session) -> dict[str, Any]:
        session.initialized = True
        client = params.get("clientInfo") or {}
        logger.info(f"Initializing {session} (client: {client.get('name', 'unknown')})")
        return {
            "protocolVersion": PROTOCOL_VERSION,
            "capabilities": {
                "tools": {},
                "resources": {},
                "notifications": {},
            },
            "serverInfo": Implementation(name=SERVER_NAME, version=SERVER_VERSION).model_dump(
                exclude_none=True
            ),
        }

    async def _tools_list(self, params: dict[str, Any], session: Session) -> dict[str, Any]:
        return {"tools": self.context.registry.catalog()}

    async def _tools_call(self, params: dict[str, Any], session: Session) -> dict[str, Any]:
        name = params.get("name")
        arguments = params.get("arguments")
        if arguments is None:
            arguments = {}
        if not isinstance(name, str) or not name:
            raise ProtocolError("tools/call requires a tool name", ERROR_INVALID_PARAMS)
        if not isinstance(arguments, dict):
            raise ProtocolError("tools/call arguments must be an object", ERROR_INVALID_PARAMS)

        logger.info(f"Calling tool {name} for {session}")
        result = await self.context.registry.invoke(name, arguments, self.context)

        content = TextContent(type="text", text=json.dumps(result, indent=2, ensure_ascii=False))
        return {"content": [content.model_dump(exclude_none=True)]}

    async def _resources_list(self, params: dict[str, Any], session: Session) -> dict[str, Any]:
        return {"resources": [dict(r) for r in RESOURCES]}

    async def _resources_read(self, params: dict[str, Any], session: Session) -> dict[str, Any]:
        uri = params.get("uri")
        pipeline = self.context.pipeline

        if uri == ROWS_RESOURCE:
            if not pipeline.rows_loaded:
                raise IndexNotReadyError("CSV data is still loading, retry shortly")
            text = json.dumps(pipeline.rows, indent=2, ensure_ascii=False)
        elif uri == STATUS_RESOURCE:
            text = json.dumps(pipeline.summary.to_dict(), indent=2)
        else:
            raise ProtocolError(f"Unknown resource: {uri}", ERROR_INVALID_PARAMS)

        return {"contents": [{"uri": uri, "mimeType": "application/json", "text": text}]}

    async def _notifications_list(self, params: dict[str, Any], session: Session) -> dict[str, Any]:
        return {
            "notifications": [
                {"method": method, "description": description}
                for method, description in SERVER_NOTIFICATIONS.items()
            ]
        }

    async def _notifications_subscribe(self, params: dict[str, Any], session: Session) -> dict[str, Any]:
        subscriptions = params.get("subscriptions")
        if not isinstance(subscriptions, list) or not all(isinstance(s, str) for s in subscriptions):
            raise ProtocolError("subscriptions must be a list of method names", ERROR_INVALID_PARAMS)

        statuses = []
        for method in subscriptions:
            if method in SERVER_NOTIFICATIONS:
                session.subscriptions.add(method)
                statuses.append({"method": method, "status": "subscribed"})
            else:
                statuses.append({"method": method, "status": "unknown"})
        logger.info(f"{session} subscribed to {sorted(session.subscriptions)}")
        return {"subscriptions": statuses}

    # =========================================================================
    # Server-initiated notifications
    # =========================================================================

    async def broadcast(self, method: str, params: dict[str, Any]) -> int:
        """Send a notification to every session subscribed to ``method``.

        Returns:
            Number of sessions notified
        """
        message = make_notification(method, params)
        sent = 0
        for session in list(self.sessions):
            if method not in session.subscriptions:
                continue
            try:
                await session.send(message)
                sent += 1
            except (ConnectionError, OSError) as e:
                logger.debug(f"Could not notify {session}: {e}")
        return sent

    async def on_ingestion_finished(self, summary: IngestionSummary) -> None:
        """Pipeline listener: push the final status to subscribers."""
        await self.broadcast(STATUS_NOTIFICATION, {
            "state": summary.state.value,
            "total": summary.total,
            "embedded": summary.embedded,
            "skipped": summary.skipped,
        })
