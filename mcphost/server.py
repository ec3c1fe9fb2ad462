from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import replace
from typing import Callable, Coroutine, List, Set, Tuple

from .client import MCPClient
from .config import SupervisorSettings
from .mcp_types import (
    DisconnectInfo,
    JsonObject,
    JsonValue,
    MCPError,
    ServerConfig,
    ServerHealth,
    ServerNotRunningError,
    ServerState,
    ServerStatus,
    ToolSchema,
)
from .transport import create_transport

logger = logging.getLogger(__name__)

TOOLS_LIST_CHANGED = "notifications/tools/list_changed"

StatusListener = Callable[[str, ServerStatus, ServerStatus], None]
NotificationListener = Callable[[str, str, JsonObject], None]
ClientFactory = Callable[[ServerConfig, SupervisorSettings], MCPClient]


def default_client_factory(config: ServerConfig, settings: SupervisorSettings) -> MCPClient:
    transport = create_transport(
        config,
        custom_paths=settings.custom_paths,
        open_timeout=settings.startup_timeout,
    )
    return MCPClient(
        transport,
        name=config.id,
        request_timeout=config.timeout_seconds or settings.request_timeout,
        client_name=settings.client_name,
        client_version=settings.client_version,
    )


class ManagedServer:
    """One configured server, its current client, and its lifecycle.

    Every lifecycle mutation (start, stop, crash handling, scheduled restart)
    runs under ``_lock``. State is published as immutable ``ServerState``
    snapshots, so readers never need the lock.
    """

    def __init__(
        self,
        config: ServerConfig,
        settings: SupervisorSettings,
        *,
        client_factory: ClientFactory | None = None,
        status_listener: StatusListener | None = None,
        notification_listener: NotificationListener | None = None,
    ) -> None:
        self.config = config
        self.settings = settings
        self._client_factory = client_factory or default_client_factory
        self._status_listener = status_listener
        self._notification_listener = notification_listener
        self._lock = asyncio.Lock()
        self._client: MCPClient | None = None
        self._state = ServerState()
        self._restart_task: asyncio.Task[None] | None = None
        self._health_task: asyncio.Task[None] | None = None
        self._discovery_task: asyncio.Task[None] | None = None
        self._background: Set[asyncio.Task[None]] = set()

    @property
    def id(self) -> str:
        return self.config.id

    @property
    def status(self) -> ServerStatus:
        return self._state.status

    @property
    def client(self) -> MCPClient | None:
        return self._client

    def snapshot(self) -> ServerState:
        return self._state

    def _update(self, **changes: object) -> None:
        self._state = replace(self._state, **changes)  # type: ignore[arg-type]

    def _set_status(self, status: ServerStatus) -> None:
        previous = self._state.status
        if previous == status:
            return
        self._update(status=status)
        logger.info("%s: %s -> %s", self.id, previous.value, status.value)
        if self._status_listener is None:
            return
        try:
            self._status_listener(self.id, status, previous)
        except Exception:  # noqa: BLE001
            logger.exception("%s: status listener failed", self.id)

    def _spawn(self, coro: Coroutine[object, object, None]) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def start(self) -> ServerState:
        async with self._lock:
            await self._start_locked(manual=True)
        return self._state

    async def stop(self) -> ServerState:
        async with self._lock:
            await self._stop_locked()
        return self._state

    async def restart(self) -> ServerState:
        async with self._lock:
            await self._stop_locked()
            await self._start_locked(manual=True)
        return self._state

    async def aclose(self) -> None:
        await self.stop()
        current = asyncio.current_task()
        for task in list(self._background):
            if task is not current:
                task.cancel()

    async def _start_locked(self, *, manual: bool) -> None:
        if self.status in (ServerStatus.RUNNING, ServerStatus.STARTING):
            return
        if manual:
            self._cancel_restart()
            self._update(restart_attempts=0)
        self._set_status(ServerStatus.STARTING)

        try:
            client = self._client_factory(self.config, self.settings)
        except MCPError as err:
            self._mark_failed(str(err))
            return
        client.on_notification(self._handle_notification)
        client.on_disconnect(lambda info: self._handle_disconnect(client, info))
        self._client = client

        try:
            tools = await asyncio.wait_for(self._open_and_discover(client), timeout=self.settings.startup_timeout)
        except asyncio.CancelledError:
            self._client = None
            try:
                await client.close(grace=self.settings.shutdown_timeout)
            except Exception as close_err:  # noqa: BLE001
                logger.warning("%s: cleanup after cancelled start raised: %s", self.id, close_err)
            finally:
                self._mark_failed("start cancelled")
            raise
        except Exception as err:  # noqa: BLE001
            if isinstance(err, MCPError):
                message = str(err)
            elif isinstance(err, asyncio.TimeoutError):
                message = f"startup did not complete within {self.settings.startup_timeout}s"
            else:
                message = f"{type(err).__name__}: {err}"
            self._client = None
            try:
                await client.close(grace=self.settings.shutdown_timeout)
            except Exception as close_err:  # noqa: BLE001
                logger.warning("%s: cleanup after failed start raised: %s", self.id, close_err)
            diagnostics = client.transport.diagnostics()
            self._mark_failed(f"{message} ({diagnostics})" if diagnostics else message)
            return

        now = time.time()
        self._update(
            tools=tuple(tools),
            pid=client.transport.pid,
            started_at=now,
            last_tool_discovery=now,
            last_error=None,
            health=ServerHealth.HEALTHY,
        )
        self._set_status(ServerStatus.RUNNING)
        logger.info("%s: running with %d tools", self.id, len(tools))
        self._start_monitors(client)

    async def _open_and_discover(self, client: MCPClient) -> List[ToolSchema]:
        await client.connect()
        return await client.list_tools()

    def _mark_failed(self, message: str) -> None:
        logger.error("%s: start failed: %s", self.id, message)
        self._update(
            last_error=message,
            error_count=self._state.error_count + 1,
            pid=None,
            health=ServerHealth.UNKNOWN,
        )
        self._set_status(ServerStatus.FAILED)

    async def _stop_locked(self) -> None:
        if self.status == ServerStatus.STOPPED:
            return
        self._cancel_restart()
        self._stop_monitors()
        self._set_status(ServerStatus.STOPPING)
        client, self._client = self._client, None
        if client is not None:
            try:
                await client.close(grace=self.settings.shutdown_timeout)
            except Exception as err:  # noqa: BLE001
                logger.warning("%s: error while closing client: %s", self.id, err)
        self._update(restart_attempts=0, pid=None, health=ServerHealth.UNKNOWN)
        self._set_status(ServerStatus.STOPPED)

    def _handle_disconnect(self, client: MCPClient, info: DisconnectInfo) -> None:
        if info.requested:
            return
        self._spawn(self._on_crash(client, info))

    async def _on_crash(self, client: MCPClient, info: DisconnectInfo) -> None:
        async with self._lock:
            if client is not self._client or self.status != ServerStatus.RUNNING:
                return
            self._stop_monitors()
            self._client = None
            self._update(error_count=self._state.error_count + 1, pid=None, health=ServerHealth.UNHEALTHY)
            self._set_status(ServerStatus.CRASHED)
            try:
                await client.close(grace=self.settings.shutdown_timeout)
            except Exception as err:  # noqa: BLE001
                logger.warning("%s: error while closing crashed client: %s", self.id, err)
            diagnostics = client.transport.diagnostics()
            message = f"server disconnected: {info.describe()}"
            if diagnostics:
                message = f"{message} ({diagnostics})"
            logger.error("%s: %s", self.id, message)
            self._update(last_error=message)
            self._schedule_restart()

    def _schedule_restart(self) -> None:
        if not self.config.auto_restart:
            logger.warning("%s: auto restart disabled, marking failed", self.id)
            self._set_status(ServerStatus.FAILED)
            return
        policy = self.settings.restart
        attempts = self._state.restart_attempts
        if attempts >= policy.max_restarts:
            logger.error("%s: exceeded restarts (%d/%d), marking failed", self.id, attempts, policy.max_restarts)
            self._update(last_error=f"{self._state.last_error}; restart limit reached ({attempts}/{policy.max_restarts})")
            self._set_status(ServerStatus.FAILED)
            return
        attempt = attempts + 1
        delay = policy.delay_for(attempt)
        self._update(restart_attempts=attempt, restart_count=self._state.restart_count + 1)
        self._set_status(ServerStatus.RESTARTING)
        logger.warning("%s: restarting in %.2fs (attempt %d/%d)", self.id, delay, attempt, policy.max_restarts)
        self._restart_task = asyncio.create_task(self._restart_after(delay))

    async def _restart_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        async with self._lock:
            if self.status != ServerStatus.RESTARTING:
                return
            self._restart_task = None
            await self._start_locked(manual=False)

    def _cancel_restart(self) -> None:
        task, self._restart_task = self._restart_task, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def call_tool(
        self,
        name: str,
        arguments: JsonObject | None = None,
        timeout: float | None = None,
    ) -> JsonValue:
        client = self._client
        if self.status != ServerStatus.RUNNING or client is None:
            raise ServerNotRunningError(f"Server '{self.id}' is not running (status: {self.status.value})")
        self._update(tool_call_count=self._state.tool_call_count + 1)
        try:
            return await client.call_tool(name, arguments, timeout=timeout)
        except MCPError:
            self._update(error_count=self._state.error_count + 1)
            raise

    async def refresh_tools(self) -> Tuple[ToolSchema, ...]:
        client = self._client
        if self.status != ServerStatus.RUNNING or client is None:
            raise ServerNotRunningError(f"Server '{self.id}' is not running (status: {self.status.value})")
        tools = await client.list_tools()
        if client is self._client:
            self._update(tools=tuple(tools), last_tool_discovery=time.time())
            logger.info("%s: tool cache refreshed (%d tools)", self.id, len(tools))
        return tuple(tools)

    async def check_health(self) -> bool:
        client = self._client
        if self.status != ServerStatus.RUNNING or client is None:
            return False
        try:
            await client.list_tools(timeout=self.settings.health.timeout)
        except MCPError as err:
            logger.warning("%s: health check failed: %s", self.id, err)
            return False
        return True

    def _start_monitors(self, client: MCPClient) -> None:
        interval = self.settings.health.interval
        if interval:
            self._health_task = asyncio.create_task(self._health_loop(client, interval))
        discovery = self.settings.discovery_interval
        if discovery:
            self._discovery_task = asyncio.create_task(self._discovery_loop(client, discovery))

    def _stop_monitors(self) -> None:
        tasks = (self._health_task, self._discovery_task)
        self._health_task = self._discovery_task = None
        for task in tasks:
            if task is not None and not task.done() and task is not asyncio.current_task():
                task.cancel()

    async def _health_loop(self, client: MCPClient, interval: float) -> None:
        failures = 0
        threshold = max(1, self.settings.health.failure_threshold)
        while True:
            await asyncio.sleep(interval)
            if client is not self._client or self.status != ServerStatus.RUNNING:
                return
            if await self.check_health():
                failures = 0
                self._update(health=ServerHealth.HEALTHY)
                continue
            failures += 1
            self._update(health=ServerHealth.UNHEALTHY)
            if failures >= threshold:
                self._spawn(self._on_crash(client, DisconnectInfo(reason=f"health check failed {failures} times")))
                return

    async def _discovery_loop(self, client: MCPClient, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            if client is not self._client or self.status != ServerStatus.RUNNING:
                return
            try:
                await self.refresh_tools()
            except MCPError as err:
                logger.warning("%s: periodic tool discovery failed: %s", self.id, err)

    def _handle_notification(self, method: str, params: JsonObject) -> None:
        if method == TOOLS_LIST_CHANGED and self.status == ServerStatus.RUNNING:
            self._spawn(self._refresh_after_change())
        if self._notification_listener is None:
            return
        try:
            self._notification_listener(self.id, method, params)
        except Exception:  # noqa: BLE001
            logger.exception("%s: notification listener failed for %s", self.id, method)

    async def _refresh_after_change(self) -> None:
        try:
            await self.refresh_tools()
        except MCPError as err:
            logger.warning("%s: refresh after tools/list_changed failed: %s", self.id, err)
