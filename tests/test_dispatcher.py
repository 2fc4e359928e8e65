"""Tests for envelope validation, routing and error conversion."""

import asyncio
import json

import pytest

from csv_rag_mcp.constants import ERROR_INTERNAL, ERROR_INVALID_PARAMS, ERROR_INVALID_REQUEST, ERROR_NOT_READY
from csv_rag_mcp.server import McpServer
from csv_rag_mcp.vector_index import InMemoryVectorIndex

from conftest import SCENARIO_TERMS, KeywordEmbedder, RecordingGenerator


class Outbox:
    """Collects messages a session sends."""

    def __init__(self):
        self.messages = []

    async def __call__(self, message):
        self.messages.append(message)


@pytest.fixture
def server(scenario_config):
    return McpServer(
        scenario_config,
        embedder=KeywordEmbedder(SCENARIO_TERMS),
        index=InMemoryVectorIndex(),
        generator=RecordingGenerator(),
    )


def run_messages(server, messages, ingest=False):
    """Dispatch messages on one session; return everything it sent."""
    async def scenario():
        if ingest:
            await server.pipeline.run()
        outbox = Outbox()
        session = server.dispatcher.open_session(outbox)
        for message in messages:
            await server.dispatcher.dispatch(message, session)
        server.dispatcher.close_session(session)
        return outbox.messages
    return asyncio.run(scenario())


def request(id_, method, params=None):
    message = {"jsonrpc": "2.0", "id": id_, "method": method}
    if params is not None:
        message["params"] = params
    return message


def tool_text(response):
    return json.loads(response["result"]["content"][0]["text"])


class TestValidation:

    def test_wrong_version_gets_error_with_same_id(self, server):
        [response] = run_messages(server, [{"jsonrpc": "1.0", "id": 5, "method": "tools/list"}])
        assert response["id"] == 5
        assert response["error"]["code"] == ERROR_INVALID_REQUEST
        assert "version" in response["error"]["message"]

    def test_missing_version(self, server):
        [response] = run_messages(server, [{"id": 1, "method": "tools/list"}])
        assert response["error"]["code"] == ERROR_INVALID_REQUEST

    @pytest.mark.parametrize("method", [None, 42, "", ["tools/list"]])
    def test_invalid_method(self, server, method):
        [response] = run_messages(server, [{"jsonrpc": "2.0", "id": "abc", "method": method}])
        assert response["id"] == "abc"
        assert response["error"]["code"] == ERROR_INVALID_REQUEST

    def test_invalid_notification_gets_no_reply(self, server):
        assert run_messages(server, [{"jsonrpc": "1.0", "method": "tools/list"}]) == []

    def test_unknown_notification_gets_no_reply(self, server):
        assert run_messages(server, [{"jsonrpc": "2.0", "method": "notifications/initialized"}]) == []

    def test_null_id_is_notification(self, server):
        assert run_messages(server, [{"jsonrpc": "2.0", "id": None, "method": "bogus"}]) == []

    def test_stray_response_ignored(self, server):
        assert run_messages(server, [{"jsonrpc": "2.0", "id": 3, "result": {}}]) == []

    def test_params_must_be_object(self, server):
        [response] = run_messages(server, [request(1, "tools/call", ["echo"])])
        assert response["error"]["code"] == ERROR_INVALID_PARAMS


class TestRouting:

    def test_method_table(self, server):
        assert server.dispatcher.methods == [
            "initialize", "tools/list", "tools/call", "resources/list", "resources/read",
            "notifications/list", "notifications/subscribe",
        ]

    def test_unknown_method(self, server):
        [response] = run_messages(server, [request(9, "tools/delete")])
        assert response["id"] == 9
        assert response["error"]["code"] == ERROR_INTERNAL
        assert response["error"]["message"] == "Unknown method: tools/delete"

    def test_initialize(self, server):
        [response] = run_messages(server, [request(1, "initialize", {"clientInfo": {"name": "t"}})])
        result = response["result"]
        assert result["protocolVersion"] == "2024-11-05"
        assert set(result["capabilities"]) == {"tools", "resources", "notifications"}
        assert result["serverInfo"]["name"] == "csv-rag-mcp"

    def test_tools_list(self, server):
        [response] = run_messages(server, [request(2, "tools/list")])
        names = {t["name"] for t in response["result"]["tools"]}
        assert names == {"echo", "get_time", "calculate", "csv_analyze", "rag_query"}

    def test_every_request_answered_once_in_order(self, server):
        messages = [request(i, "tools/list") for i in range(1, 6)]
        responses = run_messages(server, messages)
        assert [r["id"] for r in responses] == [1, 2, 3, 4, 5]

    def test_notification_executes_without_reply(self, server):
        async def scenario():
            outbox = Outbox()
            session = server.dispatcher.open_session(outbox)
            await server.dispatcher.dispatch(
                {"jsonrpc": "2.0", "method": "notifications/subscribe",
                 "params": {"subscriptions": ["server/status"]}},
                session,
            )
            return outbox.messages, session.subscriptions

        sent, subscriptions = asyncio.run(scenario())
        assert sent == []
        assert subscriptions == {"server/status"}


class TestToolsCall:

    def test_result_wrapped_in_content_envelope(self, server):
        [response] = run_messages(server, [request(1, "tools/call", {"name": "echo", "arguments": {"text": "hi"}})])
        content = response["result"]["content"]
        assert content[0]["type"] == "text"
        assert json.loads(content[0]["text"]) == {"text": "hi"}

    def test_unknown_tool(self, server):
        [response] = run_messages(server, [request(1, "tools/call", {"name": "nope", "arguments": {}})])
        assert response["error"]["code"] == ERROR_INTERNAL
        assert response["error"]["message"] == "Unknown tool: nope"

    def test_missing_tool_name(self, server):
        [response] = run_messages(server, [request(1, "tools/call", {"arguments": {}})])
        assert response["error"]["code"] == ERROR_INVALID_PARAMS

    def test_division_by_zero_message(self, server):
        [response] = run_messages(server, [request(4, "tools/call", {
            "name": "calculate", "arguments": {"operation": "divide", "a": 1, "b": 0},
        })])
        assert response["id"] == 4
        assert response["error"]["message"] == "Division by zero"

    def test_unexpected_handler_error_is_contained(self, server):
        async def broken(context, arguments):
            raise KeyError("boom")

        server.context.registry.register("broken", "Always fails", {"type": "object"}, broken)
        responses = run_messages(server, [
            request(1, "tools/call", {"name": "broken"}),
            request(2, "tools/call", {"name": "echo", "arguments": {"text": "still alive"}}),
        ])
        assert responses[0]["error"]["code"] == ERROR_INTERNAL
        assert "boom" in responses[0]["error"]["message"]
        assert tool_text(responses[1]) == {"text": "still alive"}

    def test_rag_query_not_ready_code(self, server):
        [response] = run_messages(server, [request(1, "tools/call", {
            "name": "rag_query", "arguments": {"question": "2024-06-15"},
        })])
        assert response["error"]["code"] == ERROR_NOT_READY

    def test_rag_query_after_ready(self, server):
        [response] = run_messages(server, [request(1, "tools/call", {
            "name": "rag_query", "arguments": {"question": "2024-06-15", "topK": 2},
        })], ingest=True)
        result = tool_text(response)
        assert result["context"].splitlines()[0] == "DATE: 2024-06-15, SIZE: 75"

    def test_csv_analyze_scenario(self, server):
        [response] = run_messages(server, [request(1, "tools/call", {
            "name": "csv_analyze", "arguments": {"action": "stats", "minSize": 70, "maxSize": 80},
        })], ingest=True)
        assert tool_text(response)["stats"] == {"sum": 145, "average": 72.5, "max": 75, "min": 70}


class TestResourcesAndNotifications:

    def test_resources_list(self, server):
        [response] = run_messages(server, [request(1, "resources/list")])
        uris = [r["uri"] for r in response["result"]["resources"]]
        assert uris == ["csv://rows", "csv://ingestion-status"]

    def test_read_rows(self, server):
        [response] = run_messages(server, [request(1, "resources/read", {"uri": "csv://rows"})], ingest=True)
        contents = response["result"]["contents"][0]
        assert contents["uri"] == "csv://rows"
        assert json.loads(contents["text"])[2] == {"DATE": "2024-07-01", "SIZE": 90}

    def test_read_rows_before_load(self, server):
        [response] = run_messages(server, [request(1, "resources/read", {"uri": "csv://rows"})])
        assert response["error"]["code"] == ERROR_NOT_READY

    def test_read_status(self, server):
        [response] = run_messages(server, [request(1, "resources/read", {"uri": "csv://ingestion-status"})])
        status = json.loads(response["result"]["contents"][0]["text"])
        assert status["state"] == "not_started"

    def test_read_unknown_resource(self, server):
        [response] = run_messages(server, [request(1, "resources/read", {"uri": "file:///etc/passwd"})])
        assert response["error"]["code"] == ERROR_INVALID_PARAMS
        assert "Unknown resource" in response["error"]["message"]

    def test_notifications_list(self, server):
        [response] = run_messages(server, [request(1, "notifications/list")])
        methods = [n["method"] for n in response["result"]["notifications"]]
        assert methods == ["server/status"]

    def test_subscribe(self, server):
        [response] = run_messages(server, [request(1, "notifications/subscribe", {
            "subscriptions": ["server/status", "server/other"],
        })])
        assert response["result"]["subscriptions"] == [
            {"method": "server/status", "status": "subscribed"},
            {"method": "server/other", "status": "unknown"},
        ]

    def test_subscribe_requires_list(self, server):
        [response] = run_messages(server, [request(1, "notifications/subscribe", {"subscriptions": "x"})])
        assert response["error"]["code"] == ERROR_INVALID_PARAMS

    def test_ingestion_status_pushed_to_subscribers(self, server):
        async def scenario():
            subscribed, other = Outbox(), Outbox()
            s1 = server.dispatcher.open_session(subscribed)
            server.dispatcher.open_session(other)
            await server.dispatcher.dispatch(request(1, "notifications/subscribe", {
                "subscriptions": ["server/status"],
            }), s1)
            await server.pipeline.run()
            return subscribed.messages, other.messages

        subscribed, other = asyncio.run(scenario())
        assert other == []
        notification = subscribed[-1]
        assert "id" not in notification
        assert notification["method"] == "server/status"
        assert notification["params"] == {"state": "ready", "total": 3, "embedded": 3, "skipped": 0}
