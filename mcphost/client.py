from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass
from typing import Callable, Dict, List, Set

from .mcp_types import (
    ConnectionClosed,
    DisconnectInfo,
    JsonObject,
    JsonRpcError,
    JsonValue,
    MCPTimeoutError,
    NotInitializedError,
    ProtocolError,
    ToolSchema,
)
from .messages import METHOD_NOT_FOUND, Notification, Request, Response, parse_message
from .transport import Disconnected, FrameError, MessageReceived, Transport

logger = logging.getLogger(__name__)

PROTOCOL_VERSION = "2024-11-05"
CLIENT_NAME = "mcphost"
CLIENT_VERSION = "0.1.0"
INITIALIZED_NOTIFICATION = "initialized"

NotificationHandler = Callable[[str, JsonObject], None]
DisconnectHandler = Callable[[DisconnectInfo], None]


@dataclass
class PendingRequest:
    id: int
    method: str
    deadline: float
    future: "asyncio.Future[JsonValue]"


class MCPClient:
    """JSON-RPC request/response/notification API over one transport.

    A single dispatcher task drains the transport's event queue and is the only
    code that resolves entries of the pending-request table.
    """

    def __init__(
        self,
        transport: Transport,
        *,
        name: str = "",
        request_timeout: float = 30.0,
        client_name: str = CLIENT_NAME,
        client_version: str = CLIENT_VERSION,
        protocol_version: str = PROTOCOL_VERSION,
        initialized_method: str = INITIALIZED_NOTIFICATION,
    ) -> None:
        self.transport = transport
        self.name = name or transport.name
        self.request_timeout = request_timeout
        self.client_name = client_name
        self.client_version = client_version
        self.protocol_version = protocol_version
        self.initialized_method = initialized_method
        self.server_info: JsonObject = {}
        self.server_capabilities: JsonObject = {}
        self.disconnect_info: DisconnectInfo | None = None
        self.protocol_errors = 0
        self._pending: Dict[int, PendingRequest] = {}
        self._next_request_id = 1
        self._initialized = False
        self._closed = False
        self._dispatcher: asyncio.Task[None] | None = None
        self._reply_tasks: Set[asyncio.Task[None]] = set()
        self._notification_handler: NotificationHandler | None = None
        self._disconnect_handler: DisconnectHandler | None = None
        self._disconnected = asyncio.Event()

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    @property
    def is_closed(self) -> bool:
        return self._closed

    def on_notification(self, handler: NotificationHandler | None) -> None:
        self._notification_handler = handler

    def on_disconnect(self, handler: DisconnectHandler | None) -> None:
        self._disconnect_handler = handler

    def pending_request_ids(self) -> List[int]:
        return list(self._pending.keys())

    async def wait_disconnected(self) -> DisconnectInfo | None:
        await self._disconnected.wait()
        return self.disconnect_info

    async def connect(self, timeout: float | None = None) -> JsonObject:
        await self.transport.open()
        self._dispatcher = asyncio.create_task(self._dispatch())
        try:
            return await self.initialize(timeout=timeout)
        except Exception:
            await self.close()
            raise

    async def initialize(self, timeout: float | None = None) -> JsonObject:
        if self._initialized:
            raise ProtocolError(f"{self.name}: initialize handshake already performed")
        result = await self.request(
            "initialize",
            {
                "protocolVersion": self.protocol_version,
                "capabilities": {"tools": {}},
                "clientInfo": {"name": self.client_name, "version": self.client_version},
            },
            timeout=timeout,
        )
        if not isinstance(result, dict):
            raise ProtocolError(f"{self.name}: initialize returned a non-object result")
        server_info = result.get("serverInfo")
        self.server_info = server_info if isinstance(server_info, dict) else {}
        capabilities = result.get("capabilities")
        self.server_capabilities = capabilities if isinstance(capabilities, dict) else {}
        await self.transport.send(Notification(method=self.initialized_method).to_payload())
        self._initialized = True
        logger.info(
            "%s: initialized (server=%s protocol=%s)",
            self.name,
            self.server_info.get("name", "unknown"),
            result.get("protocolVersion", "unknown"),
        )
        return result

    async def request(
        self,
        method: str,
        params: JsonObject | None = None,
        timeout: float | None = None,
    ) -> JsonValue:
        if self._closed:
            raise ConnectionClosed(f"{self.name}: client is closed")
        if not self._initialized and method != "initialize":
            raise NotInitializedError(f"{self.name}: {method} issued before the initialize handshake completed")

        request_id = self._next_request_id
        self._next_request_id += 1
        loop = asyncio.get_running_loop()
        deadline = self.request_timeout if timeout is None else timeout
        pending = PendingRequest(
            id=request_id,
            method=method,
            deadline=loop.time() + deadline,
            future=loop.create_future(),
        )
        self._pending[request_id] = pending
        try:
            logger.debug("%s: send method=%s id=%s", self.name, method, request_id)
            await self.transport.send(Request(id=request_id, method=method, params=params or {}).to_payload())
            return await asyncio.wait_for(pending.future, timeout=deadline)
        except asyncio.TimeoutError as err:
            raise MCPTimeoutError(f"{self.name}: {method} timed out after {deadline}s") from err
        finally:
            self._pending.pop(request_id, None)

    async def notify(self, method: str, params: JsonObject | None = None) -> None:
        if self._closed:
            raise ConnectionClosed(f"{self.name}: client is closed")
        if not self._initialized:
            raise NotInitializedError(f"{self.name}: {method} issued before the initialize handshake completed")
        await self.transport.send(Notification(method=method, params=params or {}).to_payload())

    async def list_tools(self, timeout: float | None = None) -> List[ToolSchema]:
        tools: List[ToolSchema] = []
        seen_cursors: Set[str] = set()
        cursor: str | None = None
        while True:
            params: JsonObject = {"cursor": cursor} if cursor else {}
            result = await self.request("tools/list", params, timeout=timeout)
            if not isinstance(result, dict):
                return tools
            raw_tools = result.get("tools")
            if isinstance(raw_tools, list):
                for item in raw_tools:
                    if not isinstance(item, dict):
                        continue
                    schema = ToolSchema.from_payload(item)
                    if schema is not None:
                        tools.append(schema)
            next_cursor = result.get("nextCursor")
            if not isinstance(next_cursor, str) or not next_cursor or next_cursor in seen_cursors:
                return tools
            seen_cursors.add(next_cursor)
            cursor = next_cursor

    async def call_tool(
        self,
        name: str,
        arguments: JsonObject | None = None,
        timeout: float | None = None,
    ) -> JsonValue:
        return await self.request(
            "tools/call",
            {"name": name, "arguments": arguments or {}},
            timeout=timeout,
        )

    async def close(self, grace: float = 5.0) -> None:
        if not self._closed:
            self._closed = True
            self._fail_pending("client closed")
        await self.transport.close(grace)
        if self._dispatcher is not None and not self._dispatcher.done():
            try:
                await asyncio.wait_for(asyncio.shield(self._dispatcher), timeout=grace)
            except asyncio.TimeoutError:
                self._dispatcher.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await self._dispatcher
        for task in list(self._reply_tasks):
            task.cancel()

    async def _dispatch(self) -> None:
        while True:
            event = await self.transport.events.get()
            if isinstance(event, MessageReceived):
                self._handle_payload(event.payload)
            elif isinstance(event, FrameError):
                self.protocol_errors += 1
            elif isinstance(event, Disconnected):
                self._handle_disconnect(event.info)
                return

    def _handle_payload(self, payload: JsonObject) -> None:
        try:
            message = parse_message(payload)
        except ProtocolError as err:
            self.protocol_errors += 1
            logger.warning("%s: dropping invalid message: %s", self.name, err)
            return
        if isinstance(message, Response):
            self._handle_response(message)
        elif isinstance(message, Request):
            task = asyncio.create_task(self._answer_peer_request(message))
            self._reply_tasks.add(task)
            task.add_done_callback(self._reply_tasks.discard)
        else:
            self._handle_notification(message)

    def _handle_response(self, response: Response) -> None:
        pending = self._pending.pop(response.id, None) if isinstance(response.id, int) else None  # type: ignore[arg-type]
        if pending is None or pending.future.done():
            logger.warning("%s: dropping response for unknown request id %r", self.name, response.id)
            return
        if response.is_error:
            code = response.error.get("code")
            data = response.error.get("data")
            pending.future.set_exception(
                JsonRpcError(
                    code if isinstance(code, int) else -32603,
                    str(response.error.get("message", "unknown error")),
                    data,
                    method=pending.method,
                ),
            )
            return
        logger.debug("%s: recv method=%s id=%s ok", self.name, pending.method, pending.id)
        pending.future.set_result(response.result)

    def _handle_notification(self, notification: Notification) -> None:
        logger.debug("%s: notification %s", self.name, notification.method)
        if self._notification_handler is None:
            return
        try:
            self._notification_handler(notification.method, notification.params)
        except Exception:  # noqa: BLE001
            logger.exception("%s: notification handler failed for %s", self.name, notification.method)

    async def _answer_peer_request(self, request: Request) -> None:
        if request.method == "ping":
            response = Response(id=request.id, result={})
        else:
            response = Response(
                id=request.id,
                error={"code": METHOD_NOT_FOUND, "message": f"Method not found: {request.method}"},
            )
        try:
            await self.transport.send(response.to_payload())
        except ConnectionClosed as err:
            logger.debug("%s: could not answer %s: %s", self.name, request.method, err)

    def _handle_disconnect(self, info: DisconnectInfo) -> None:
        self.disconnect_info = info
        self._closed = True
        self._fail_pending(f"connection closed ({info.describe()})")
        self._disconnected.set()
        if self._disconnect_handler is None:
            return
        try:
            self._disconnect_handler(info)
        except Exception:  # noqa: BLE001
            logger.exception("%s: disconnect handler failed", self.name)

    def _fail_pending(self, reason: str) -> None:
        for pending in list(self._pending.values()):
            if not pending.future.done():
                pending.future.set_exception(
                    ConnectionClosed(f"{self.name}: {pending.method} aborted, {reason}"),
                )
        self._pending.clear()
