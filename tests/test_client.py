from __future__ import annotations

import asyncio
import unittest
from typing import Callable, Dict, List

from mcphost.client import PROTOCOL_VERSION, MCPClient
from mcphost.mcp_types import (
    ConnectionClosed,
    DisconnectInfo,
    JsonObject,
    JsonRpcError,
    JsonValue,
    MCPTimeoutError,
    NotInitializedError,
)
from mcphost.transport import MessageReceived, Transport


class FakeTransport(Transport):
    """In-memory transport: records writes and lets the test inject traffic."""

    def __init__(self) -> None:
        super().__init__(name="fake")
        self.sent: List[JsonObject] = []
        self.opened = False
        self.close_calls = 0
        self.handlers: Dict[str, Callable[[JsonObject], JsonValue]] = {
            "initialize": lambda params: {
                "protocolVersion": PROTOCOL_VERSION,
                "capabilities": {"tools": {}},
                "serverInfo": {"name": "fake-server", "version": "1.0"},
            },
        }

    @property
    def is_open(self) -> bool:
        return self.opened and not self._disconnected

    async def open(self) -> None:
        self.opened = True

    async def send(self, payload: JsonObject) -> None:
        if self._disconnected:
            raise ConnectionClosed("fake: transport not connected")
        self.sent.append(payload)
        method = payload.get("method")
        if "id" in payload and isinstance(method, str) and method in self.handlers:
            params = payload.get("params")
            result = self.handlers[method](params if isinstance(params, dict) else {})
            self.feed({"jsonrpc": "2.0", "id": payload["id"], "result": result})

    async def close(self, grace: float = 5.0) -> None:
        self.close_calls += 1
        self._closing = True
        self._emit_disconnect(DisconnectInfo(reason="closed", requested=True))

    def feed(self, payload: JsonObject) -> None:
        self.events.put_nowait(MessageReceived(payload=payload))

    def feed_raw(self, raw: bytes) -> None:
        self._handle_frame(raw)

    def drop(self) -> None:
        self._emit_disconnect(DisconnectInfo(reason="process exited", returncode=1))

    def sent_requests(self, method: str) -> List[JsonObject]:
        return [item for item in self.sent if item.get("method") == method and "id" in item]


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


class MCPClientTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.transport = FakeTransport()
        self.client = MCPClient(self.transport, request_timeout=2.0)

    async def asyncTearDown(self) -> None:
        await self.client.close(grace=0.5)

    async def test_handshake_sends_initialize_then_initialized(self) -> None:
        result = await self.client.connect()

        self.assertEqual(result["serverInfo"], {"name": "fake-server", "version": "1.0"})
        self.assertTrue(self.client.is_initialized)
        self.assertEqual(self.client.server_info["name"], "fake-server")

        first, second = self.transport.sent[:2]
        self.assertEqual(first["method"], "initialize")
        self.assertEqual(first["id"], 1)
        self.assertEqual(first["params"]["protocolVersion"], PROTOCOL_VERSION)
        self.assertEqual(first["params"]["capabilities"], {"tools": {}})
        self.assertEqual(first["params"]["clientInfo"]["name"], "mcphost")
        self.assertEqual(second, {"jsonrpc": "2.0", "method": "initialized", "params": {}})

    async def test_request_before_handshake_is_rejected_locally(self) -> None:
        await self.transport.open()

        with self.assertRaises(NotInitializedError):
            await self.client.request("tools/list")
        with self.assertRaises(NotInitializedError):
            await self.client.notify("notifications/progress")

        self.assertEqual(self.transport.sent, [])

    async def test_out_of_order_responses_are_matched_by_id(self) -> None:
        await self.client.connect()
        tasks = [asyncio.create_task(self.client.request("work", {"n": n})) for n in range(3)]
        await wait_until(lambda: len(self.transport.sent_requests("work")) == 3)

        for request in reversed(self.transport.sent_requests("work")):
            self.transport.feed({"jsonrpc": "2.0", "id": request["id"], "result": {"n": request["params"]["n"]}})

        results = await asyncio.gather(*tasks)
        self.assertEqual(results, [{"n": 0}, {"n": 1}, {"n": 2}])
        self.assertEqual(self.client.pending_request_ids(), [])

    async def test_request_ids_increase_monotonically(self) -> None:
        self.transport.handlers["tools/list"] = lambda params: {"tools": []}
        await self.client.connect()
        await self.client.list_tools()
        await self.client.list_tools()

        ids = [item["id"] for item in self.transport.sent if "id" in item]
        self.assertEqual(ids, [1, 2, 3])

    async def test_timeout_fails_once_and_discards_pending_entry(self) -> None:
        await self.client.connect()

        with self.assertRaises(MCPTimeoutError) as ctx:
            await self.client.request("slow", timeout=0.05)

        self.assertIsInstance(ctx.exception, TimeoutError)
        self.assertEqual(self.client.pending_request_ids(), [])

        # a late response for the expired id is dropped without side effects
        late_id = self.transport.sent_requests("slow")[0]["id"]
        self.transport.feed({"jsonrpc": "2.0", "id": late_id, "result": {}})
        self.transport.handlers["ping"] = lambda params: {}
        self.assertEqual(await self.client.request("ping"), {})

    async def test_disconnect_fails_every_pending_request(self) -> None:
        disconnects: List[DisconnectInfo] = []
        self.client.on_disconnect(disconnects.append)
        await self.client.connect()
        tasks = [asyncio.create_task(self.client.request("work", {"n": n})) for n in range(2)]
        await wait_until(lambda: len(self.transport.sent_requests("work")) == 2)

        self.transport.drop()

        results = await asyncio.gather(*tasks, return_exceptions=True)
        for result in results:
            self.assertIsInstance(result, ConnectionClosed)
        self.assertEqual(self.client.pending_request_ids(), [])
        self.assertTrue(self.client.is_closed)
        self.assertEqual(len(disconnects), 1)
        self.assertFalse(disconnects[0].requested)
        self.assertEqual(disconnects[0].returncode, 1)

        with self.assertRaises(ConnectionClosed):
            await self.client.request("work")

    async def test_close_fails_pending_requests(self) -> None:
        await self.client.connect()
        task = asyncio.create_task(self.client.request("work"))
        await wait_until(lambda: len(self.transport.sent_requests("work")) == 1)

        await self.client.close(grace=0.5)

        with self.assertRaises(ConnectionClosed):
            await task
        self.assertEqual(self.transport.close_calls, 1)

    async def test_unknown_response_id_is_dropped(self) -> None:
        self.transport.handlers["ping"] = lambda params: {"pong": True}
        await self.client.connect()

        self.transport.feed({"jsonrpc": "2.0", "id": 999, "result": {"stray": True}})

        self.assertEqual(await self.client.request("ping"), {"pong": True})
        self.assertFalse(self.client.is_closed)

    async def test_malformed_frame_is_skipped(self) -> None:
        self.transport.handlers["ping"] = lambda params: {}
        await self.client.connect()

        self.transport.feed_raw(b"{not json")
        self.transport.feed({"jsonrpc": "2.0", "result": {}})

        self.assertEqual(await self.client.request("ping"), {})
        self.assertEqual(self.client.protocol_errors, 2)
        self.assertFalse(self.client.is_closed)

    async def test_error_response_raises_json_rpc_error(self) -> None:
        await self.client.connect()
        task = asyncio.create_task(self.client.call_tool("missing", {"a": 1}))
        await wait_until(lambda: len(self.transport.sent_requests("tools/call")) == 1)
        request = self.transport.sent_requests("tools/call")[0]
        self.assertEqual(request["params"], {"name": "missing", "arguments": {"a": 1}})

        self.transport.feed(
            {
                "jsonrpc": "2.0",
                "id": request["id"],
                "error": {"code": -32601, "message": "Unknown tool: missing", "data": {"hint": "x"}},
            },
        )

        with self.assertRaises(JsonRpcError) as ctx:
            await task
        self.assertEqual(ctx.exception.code, -32601)
        self.assertEqual(ctx.exception.data, {"hint": "x"})
        self.assertEqual(ctx.exception.method, "tools/call")

    async def test_call_tool_returns_raw_result(self) -> None:
        payload = {"content": [{"type": "text", "text": "hi"}], "isError": False, "extra": [1, 2]}
        self.transport.handlers["tools/call"] = lambda params: payload
        await self.client.connect()

        self.assertEqual(await self.client.call_tool("echo", {"text": "hi"}), payload)

    async def test_list_tools_follows_cursor_and_skips_nameless_entries(self) -> None:
        pages = {
            None: {"tools": [{"name": "a", "description": "first"}, {"description": "no name"}], "nextCursor": "p2"},
            "p2": {"tools": [{"name": "b", "inputSchema": {"type": "object", "required": ["x"]}}]},
        }
        self.transport.handlers["tools/list"] = lambda params: pages[params.get("cursor")]
        await self.client.connect()

        tools = await self.client.list_tools()

        self.assertEqual([tool.name for tool in tools], ["a", "b"])
        self.assertEqual(tools[0].description, "first")
        self.assertEqual(tools[0].input_schema, {"type": "object", "properties": {}})
        self.assertEqual(tools[1].input_schema, {"type": "object", "required": ["x"]})

    async def test_notifications_reach_the_registered_handler(self) -> None:
        received: List[tuple[str, JsonObject]] = []
        self.client.on_notification(lambda method, params: received.append((method, params)))
        self.transport.handlers["ping"] = lambda params: {}
        await self.client.connect()

        self.transport.feed({"jsonrpc": "2.0", "method": "notifications/message", "params": {"level": "info"}})
        await self.client.request("ping")

        self.assertEqual(received, [("notifications/message", {"level": "info"})])

    async def test_notifications_without_handler_are_ignored(self) -> None:
        self.transport.handlers["ping"] = lambda params: {}
        await self.client.connect()

        self.transport.feed({"jsonrpc": "2.0", "method": "notifications/message"})

        self.assertEqual(await self.client.request("ping"), {})

    async def test_peer_requests_are_answered(self) -> None:
        await self.client.connect()

        self.transport.feed({"jsonrpc": "2.0", "id": "srv-1", "method": "ping"})
        self.transport.feed({"jsonrpc": "2.0", "id": "srv-2", "method": "sampling/createMessage"})
        await wait_until(lambda: len([m for m in self.transport.sent if str(m.get("id", "")).startswith("srv")]) == 2)

        replies = {m["id"]: m for m in self.transport.sent if str(m.get("id", "")).startswith("srv")}
        self.assertEqual(replies["srv-1"]["result"], {})
        self.assertEqual(replies["srv-2"]["error"]["code"], -32601)


if __name__ == "__main__":
    unittest.main()
