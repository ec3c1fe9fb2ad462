from __future__ import annotations

import enum
from dataclasses import dataclass, field, replace
from typing import Dict, List, Tuple, Union

JsonValue = Union[None, bool, int, float, str, List["JsonValue"], Dict[str, "JsonValue"]]
JsonObject = Dict[str, JsonValue]

STDIO = "stdio"
WEBSOCKET = "websocket"
TRANSPORT_TYPES = (STDIO, WEBSOCKET)


class MCPError(RuntimeError):
    pass


class ConnectError(MCPError):
    pass


class ProtocolError(MCPError):
    pass


class JsonRpcError(ProtocolError):
    def __init__(self, code: int, message: str, data: JsonValue = None, *, method: str = "") -> None:
        prefix = f"{method} failed: " if method else ""
        super().__init__(f"{prefix}{message} (code={code})")
        self.code = code
        self.message = message
        self.data = data
        self.method = method


class MCPTimeoutError(MCPError, TimeoutError):
    pass


class ConnectionClosed(MCPError):
    pass


class NotInitializedError(MCPError):
    pass


class InvalidConfigError(MCPError):
    def __init__(self, errors: List[str]) -> None:
        super().__init__(f"Invalid MCP server configuration: {', '.join(errors)}")
        self.errors = list(errors)


class DuplicateIdError(MCPError):
    pass


class ServerNotRunningError(MCPError):
    pass


class NotFoundError(MCPError):
    pass


class ServerStatus(str, enum.Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    CRASHED = "crashed"
    FAILED = "failed"
    RESTARTING = "restarting"


class ServerHealth(str, enum.Enum):
    UNKNOWN = "unknown"
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"


@dataclass(frozen=True)
class ServerConfig:
    id: str
    name: str = ""
    enabled: bool = True
    transport: str = STDIO
    command: str = ""
    args: Tuple[str, ...] = ()
    env: Dict[str, str] = field(default_factory=dict)
    url: str | None = None
    headers: Dict[str, str] = field(default_factory=dict)
    path_entries: Tuple[str, ...] = ()
    cwd: str | None = None
    description: str = ""
    auto_restart: bool = True
    timeout_seconds: float | None = None
    tags: Tuple[str, ...] = ()

    @property
    def display_name(self) -> str:
        return self.name or self.id

    def with_changes(self, **changes: object) -> "ServerConfig":
        return replace(self, **changes)  # type: ignore[arg-type]


@dataclass(frozen=True)
class ToolSchema:
    name: str
    description: str = ""
    input_schema: Dict[str, JsonValue] = field(
        default_factory=lambda: {"type": "object", "properties": {}},
    )
    raw: Dict[str, JsonValue] = field(default_factory=dict, compare=False)

    @classmethod
    def from_payload(cls, payload: Dict[str, JsonValue]) -> "ToolSchema | None":
        name = str(payload.get("name", "")).strip()
        if not name:
            return None
        description = payload.get("description")
        schema = payload.get("inputSchema")
        if not isinstance(schema, dict):
            schema = {"type": "object", "properties": {}}
        return cls(
            name=name,
            description=str(description) if description is not None else "",
            input_schema=schema,
            raw=dict(payload),
        )

    @property
    def category(self) -> str:
        return infer_tool_category(self.name, self.description)


_NAME_CATEGORIES: Tuple[Tuple[Tuple[str, ...], str], ...] = (
    (("file", "read", "write"), "filesystem"),
    (("git", "commit", "branch"), "version-control"),
    (("db", "sql", "query"), "database"),
    (("http", "api", "request"), "network"),
)


def infer_tool_category(name: str, description: str = "") -> str:
    """Guess a coarse category from keywords in the tool name, then the description."""
    lowered = name.lower()
    for keywords, category in _NAME_CATEGORIES:
        if any(keyword in lowered for keyword in keywords):
            return category
    text = description.lower()
    if "search" in text or "find" in text:
        return "search"
    return "general"


@dataclass(frozen=True)
class DisconnectInfo:
    reason: str
    returncode: int | None = None
    signal: int | None = None
    requested: bool = False

    def describe(self) -> str:
        parts = [self.reason]
        if self.signal is not None:
            parts.append(f"signal={self.signal}")
        elif self.returncode is not None:
            parts.append(f"code={self.returncode}")
        return " ".join(parts)


@dataclass(frozen=True)
class ServerState:
    status: ServerStatus = ServerStatus.STOPPED
    tools: Tuple[ToolSchema, ...] = ()
    last_error: str | None = None
    restart_attempts: int = 0
    health: ServerHealth = ServerHealth.UNKNOWN
    pid: int | None = None
    started_at: float | None = None
    restart_count: int = 0
    tool_call_count: int = 0
    error_count: int = 0
    last_tool_discovery: float | None = None

    @property
    def tool_count(self) -> int:
        return len(self.tools)


@dataclass(frozen=True)
class ConnectionTestResult:
    success: bool
    error: str | None = None
    tool_count: int = 0
    latency: float = 0.0
    tools: Tuple[ToolSchema, ...] = ()
