from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import replace
from typing import Dict, List, Sequence, Tuple

from .config import (
    ConfigGateway,
    HealthCheckPolicy,
    SupervisorSettings,
    dump_servers_document,
    ensure_valid,
    load_servers_document,
    validate_server_config,
)
from .mcp_types import (
    ConnectionTestResult,
    DuplicateIdError,
    InvalidConfigError,
    JsonObject,
    JsonValue,
    MCPError,
    NotFoundError,
    ServerConfig,
    ServerHealth,
    ServerState,
    ServerStatus,
    ToolSchema,
)
from .server import ClientFactory, ManagedServer, NotificationListener, StatusListener

logger = logging.getLogger(__name__)


class MCPSupervisor:
    """Owns the configured MCP servers and drives their lifecycles.

    - one ``ManagedServer`` per id, each with its own lock and client
    - persists the server list through an optional ``ConfigGateway``
    - fans status transitions and server notifications out to host listeners
    """

    def __init__(
        self,
        settings: SupervisorSettings | None = None,
        gateway: ConfigGateway | None = None,
        *,
        client_factory: ClientFactory | None = None,
    ) -> None:
        self.settings = settings or SupervisorSettings()
        self.gateway = gateway
        self._client_factory = client_factory
        self._servers: Dict[str, ManagedServer] = {}
        self._id_locks: Dict[str, asyncio.Lock] = {}
        self._status_listeners: List[StatusListener] = []
        self._notification_listeners: List[NotificationListener] = []

    def set_custom_paths(self, paths: Sequence[str]) -> None:
        """Replace the supervisor-wide PATH entries; applies from the next start of each server."""
        self.settings = replace(self.settings, custom_paths=tuple(str(p) for p in paths if str(p).strip()))
        for server in self._servers.values():
            server.settings = self.settings

    def add_status_listener(self, listener: StatusListener) -> None:
        self._status_listeners.append(listener)

    def add_notification_listener(self, listener: NotificationListener) -> None:
        self._notification_listeners.append(listener)

    def _emit_status(self, server_id: str, status: ServerStatus, previous: ServerStatus) -> None:
        for listener in list(self._status_listeners):
            try:
                listener(server_id, status, previous)
            except Exception:  # noqa: BLE001
                logger.exception("status listener failed for %s", server_id)

    def _emit_notification(self, server_id: str, method: str, params: JsonObject) -> None:
        for listener in list(self._notification_listeners):
            try:
                listener(server_id, method, params)
            except Exception:  # noqa: BLE001
                logger.exception("notification listener failed for %s %s", server_id, method)

    def _build(self, config: ServerConfig, settings: SupervisorSettings | None = None) -> ManagedServer:
        return ManagedServer(
            config,
            settings or self.settings,
            client_factory=self._client_factory,
            status_listener=self._emit_status,
            notification_listener=self._emit_notification,
        )

    def _lock_for(self, server_id: str) -> asyncio.Lock:
        # add/update/remove on one id run one at a time
        return self._id_locks.setdefault(server_id, asyncio.Lock())

    def _get(self, server_id: str) -> ManagedServer:
        server = self._servers.get(server_id)
        if server is None:
            raise NotFoundError(f"Unknown MCP server: {server_id}")
        return server

    async def _persist(self) -> None:
        if self.gateway is None:
            return
        document = dump_servers_document([server.config for server in self._servers.values()])
        try:
            await self.gateway.save_config(document)
        except Exception as err:  # noqa: BLE001
            logger.error("failed to save server configuration: %s", err)

    async def load(self) -> int:
        """Repopulate from the gateway; returns how many servers were registered."""
        if self.gateway is None:
            return 0
        document = await self.gateway.load_config()
        loaded: List[ManagedServer] = []
        for config in load_servers_document(document):
            errors = validate_server_config(config)
            if errors:
                logger.warning("skipping stored server %r: %s", config.id, "; ".join(errors))
                continue
            if config.id in self._servers:
                logger.warning("skipping duplicate stored server %r", config.id)
                continue
            server = self._build(config)
            self._servers[config.id] = server
            loaded.append(server)
        logger.info("loaded %d server(s) from configuration", len(loaded))
        await asyncio.gather(*(server.start() for server in loaded if server.config.enabled))
        return len(loaded)

    async def add_server(self, config: ServerConfig) -> ServerState:
        ensure_valid(config)
        async with self._lock_for(config.id):
            if config.id in self._servers:
                raise DuplicateIdError(f"Server with ID '{config.id}' already exists")
            server = self._build(config)
            self._servers[config.id] = server
            logger.info("added server %s (%s)", config.display_name, config.transport)
            await self._persist()
            if config.enabled:
                return await server.start()
            return server.snapshot()

    async def update_server(self, config: ServerConfig) -> ServerState:
        ensure_valid(config)
        async with self._lock_for(config.id):
            previous = self._get(config.id)
            await previous.aclose()
            server = self._build(config)
            self._servers[config.id] = server
            logger.info("updated server %s", config.display_name)
            await self._persist()
            if config.enabled:
                return await server.start()
            return server.snapshot()

    async def remove_server(self, server_id: str) -> None:
        async with self._lock_for(server_id):
            server = self._get(server_id)
            await server.aclose()
            if self._servers.get(server_id) is server:
                del self._servers[server_id]
            logger.info("removed server %s", server_id)
            await self._persist()

    async def start_server(self, server_id: str) -> ServerState:
        return await self._get(server_id).start()

    async def stop_server(self, server_id: str) -> ServerState:
        return await self._get(server_id).stop()

    async def restart_server(self, server_id: str) -> ServerState:
        return await self._get(server_id).restart()

    async def start_all(self) -> Dict[str, ServerState]:
        servers = [server for server in self._servers.values() if server.config.enabled]
        states = await asyncio.gather(*(server.start() for server in servers))
        return {server.id: state for server, state in zip(servers, states)}

    async def stop_all(self) -> None:
        servers = list(self._servers.values())
        results = await asyncio.gather(*(server.stop() for server in servers), return_exceptions=True)
        for server, result in zip(servers, results):
            if isinstance(result, BaseException):
                logger.error("%s: stop failed: %s", server.id, result)

    async def aclose(self) -> None:
        servers = list(self._servers.values())
        results = await asyncio.gather(*(server.aclose() for server in servers), return_exceptions=True)
        for server, result in zip(servers, results):
            if isinstance(result, BaseException):
                logger.error("%s: shutdown failed: %s", server.id, result)

    def has_server(self, server_id: str) -> bool:
        return server_id in self._servers

    def get_server_ids(self) -> List[str]:
        return list(self._servers.keys())

    def get_server_status(self, server_id: str) -> ServerStatus:
        return self._get(server_id).status

    def get_server_state(self, server_id: str) -> ServerState:
        return self._get(server_id).snapshot()

    def get_server_config(self, server_id: str) -> ServerConfig:
        return self._get(server_id).config

    def get_tools(self, server_id: str) -> Tuple[ToolSchema, ...]:
        return self._get(server_id).snapshot().tools

    def get_all_tools(self) -> List[Tuple[str, ToolSchema]]:
        tools: List[Tuple[str, ToolSchema]] = []
        for server_id, server in self._servers.items():
            state = server.snapshot()
            if state.status != ServerStatus.RUNNING:
                continue
            tools.extend((server_id, tool) for tool in state.tools)
        return tools

    def search_tools(self, query: str) -> List[Tuple[str, ToolSchema]]:
        """Case-insensitive match on tool name, tool description or the owning server's tags."""
        needle = query.strip().lower()
        if not needle:
            return self.get_all_tools()
        matches: List[Tuple[str, ToolSchema]] = []
        for server_id, tool in self.get_all_tools():
            tags = self._servers[server_id].config.tags
            if (
                needle in tool.name.lower()
                or needle in tool.description.lower()
                or any(needle in tag.lower() for tag in tags)
            ):
                matches.append((server_id, tool))
        return matches

    def get_tools_by_category(self, category: str) -> List[Tuple[str, ToolSchema]]:
        wanted = category.strip().lower()
        return [
            (server_id, tool)
            for server_id, tool in self.get_all_tools()
            if tool.category == wanted
            or any(tag.lower() == wanted for tag in self._servers[server_id].config.tags)
        ]

    def get_cache_stats(self) -> Dict[str, object]:
        per_server: Dict[str, Dict[str, object]] = {}
        for server_id, server in self._servers.items():
            state = server.snapshot()
            if state.status != ServerStatus.RUNNING:
                continue
            per_server[server_id] = {
                "tool_count": state.tool_count,
                "last_discovery": state.last_tool_discovery,
            }
        total_tools = sum(int(entry["tool_count"]) for entry in per_server.values())  # type: ignore[arg-type]
        return {
            "total_servers": len(per_server),
            "total_tools": total_tools,
            "average_tools_per_server": total_tools / len(per_server) if per_server else 0.0,
            "servers": per_server,
        }

    async def refresh_server_tools(self, server_id: str) -> Tuple[ToolSchema, ...]:
        return await self._get(server_id).refresh_tools()

    async def refresh_all_tools(self) -> Dict[str, int]:
        running = [server for server in self._servers.values() if server.status == ServerStatus.RUNNING]
        results = await asyncio.gather(*(server.refresh_tools() for server in running), return_exceptions=True)
        counts: Dict[str, int] = {}
        for server, result in zip(running, results):
            if isinstance(result, BaseException):
                logger.warning("%s: tool refresh failed: %s", server.id, result)
                continue
            counts[server.id] = len(result)
        return counts

    async def call_tool(
        self,
        server_id: str,
        name: str,
        arguments: JsonObject | None = None,
        timeout: float | None = None,
    ) -> JsonValue:
        return await self._get(server_id).call_tool(name, arguments, timeout=timeout)

    async def check_health(self) -> Dict[str, bool]:
        servers = list(self._servers.values())
        results = await asyncio.gather(*(server.check_health() for server in servers))
        return {server.id: healthy for server, healthy in zip(servers, results)}

    def get_stats(self) -> Dict[str, int]:
        states = [server.snapshot() for server in self._servers.values()]
        return {
            "total_servers": len(states),
            "running_servers": sum(1 for s in states if s.status == ServerStatus.RUNNING),
            "healthy_servers": sum(1 for s in states if s.health == ServerHealth.HEALTHY),
            "total_tools": sum(s.tool_count for s in states if s.status == ServerStatus.RUNNING),
            "total_tool_calls": sum(s.tool_call_count for s in states),
            "total_errors": sum(s.error_count for s in states),
        }

    async def test_server_connection(self, config: ServerConfig) -> ConnectionTestResult:
        """Run start, handshake and discovery against a throwaway instance.

        The server collection and the gateway are never touched.
        """
        try:
            ensure_valid(config)
        except InvalidConfigError as err:
            return ConnectionTestResult(success=False, error=str(err))

        settings = replace(self.settings, health=HealthCheckPolicy(interval=None), discovery_interval=None)
        trial = ManagedServer(
            config.with_changes(auto_restart=False),
            settings,
            client_factory=self._client_factory,
        )
        started = time.monotonic()
        try:
            state = await trial.start()
            latency = time.monotonic() - started
            if state.status != ServerStatus.RUNNING:
                return ConnectionTestResult(success=False, error=state.last_error, latency=latency)
            return ConnectionTestResult(
                success=True,
                tool_count=state.tool_count,
                latency=latency,
                tools=state.tools,
            )
        except MCPError as err:
            return ConnectionTestResult(success=False, error=str(err), latency=time.monotonic() - started)
        finally:
            await trial.aclose()
