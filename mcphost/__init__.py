from .client import MCPClient, PendingRequest
from .config import (
    ConfigGateway,
    HealthCheckPolicy,
    InMemoryConfigGateway,
    JsonFileConfigGateway,
    RestartPolicy,
    SupervisorSettings,
    server_config_from_dict,
    server_config_to_dict,
    validate_server_config,
)
from .logging_utils import create_session_logger
from .mcp_types import (
    ConnectError,
    ConnectionClosed,
    ConnectionTestResult,
    DuplicateIdError,
    InvalidConfigError,
    JsonRpcError,
    MCPError,
    MCPTimeoutError,
    NotFoundError,
    NotInitializedError,
    ProtocolError,
    ServerConfig,
    ServerHealth,
    ServerNotRunningError,
    ServerState,
    ServerStatus,
    ToolSchema,
    infer_tool_category,
)
from .messages import Notification, Request, Response, parse_message
from .server import ManagedServer
from .supervisor import MCPSupervisor
from .transport import StdioTransport, Transport, WebSocketTransport, create_transport

__version__ = "0.1.0"

__all__ = [
    "ConfigGateway",
    "ConnectError",
    "ConnectionClosed",
    "ConnectionTestResult",
    "DuplicateIdError",
    "HealthCheckPolicy",
    "InMemoryConfigGateway",
    "InvalidConfigError",
    "JsonFileConfigGateway",
    "JsonRpcError",
    "MCPClient",
    "MCPError",
    "MCPSupervisor",
    "MCPTimeoutError",
    "ManagedServer",
    "NotFoundError",
    "NotInitializedError",
    "Notification",
    "PendingRequest",
    "ProtocolError",
    "Request",
    "Response",
    "RestartPolicy",
    "ServerConfig",
    "ServerHealth",
    "ServerNotRunningError",
    "ServerState",
    "ServerStatus",
    "StdioTransport",
    "SupervisorSettings",
    "ToolSchema",
    "Transport",
    "WebSocketTransport",
    "create_session_logger",
    "create_transport",
    "infer_tool_category",
    "parse_message",
    "server_config_from_dict",
    "server_config_to_dict",
    "validate_server_config",
]
