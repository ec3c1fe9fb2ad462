from __future__ import annotations

import asyncio
import copy
import json
import os
import re
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Protocol, Tuple
from urllib.parse import urlparse

from .mcp_types import STDIO, TRANSPORT_TYPES, WEBSOCKET, InvalidConfigError, JsonObject, ServerConfig

_SERVER_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")
_WEBSOCKET_SCHEMES = {"ws", "wss", "http", "https"}
_TRANSPORT_ALIASES = {"stdio": STDIO, "websocket": WEBSOCKET, "ws": WEBSOCKET, "sse": WEBSOCKET}


@dataclass(frozen=True)
class RestartPolicy:
    max_restarts: int = 5
    base_delay: float = 1.0
    max_delay: float = 30.0

    def delay_for(self, attempt: int) -> float:
        exponent = max(0, attempt - 1)
        return min(self.base_delay * (2**exponent), self.max_delay)


@dataclass(frozen=True)
class HealthCheckPolicy:
    interval: float | None = 30.0
    timeout: float = 5.0
    failure_threshold: int = 3


@dataclass(frozen=True)
class SupervisorSettings:
    request_timeout: float = 30.0
    startup_timeout: float = 10.0
    shutdown_timeout: float = 5.0
    restart: RestartPolicy = field(default_factory=RestartPolicy)
    health: HealthCheckPolicy = field(default_factory=HealthCheckPolicy)
    discovery_interval: float | None = None
    custom_paths: Tuple[str, ...] = ()
    client_name: str = "mcphost"
    client_version: str = "0.1.0"


def _str_list(value: object) -> Tuple[str, ...]:
    if not isinstance(value, (list, tuple)):
        return ()
    return tuple(str(part) for part in value)


def _str_dict(value: object) -> Dict[str, str]:
    if not isinstance(value, dict):
        return {}
    return {str(k): str(v) for k, v in value.items()}


def _optional_str(value: object) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _to_bool(value: object, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)


def _pick(raw: Dict[str, object], *keys: str) -> object:
    for key in keys:
        if key in raw:
            return raw[key]
    return None


def server_config_from_dict(raw: Dict[str, object], *, default_id: str = "") -> ServerConfig:
    server_id = str(raw.get("id") or default_id).strip()
    command = str(raw.get("command") or "").strip()

    transport_raw = raw.get("transport", raw.get("type"))
    url = _optional_str(raw.get("url"))
    explicit_type = ""
    if isinstance(transport_raw, dict):
        explicit_type = str(transport_raw.get("type", "")).strip().lower()
        url = url or _optional_str(transport_raw.get("url"))
    elif transport_raw is not None:
        explicit_type = str(transport_raw).strip().lower()

    if explicit_type:
        transport = _TRANSPORT_ALIASES.get(explicit_type, explicit_type)
    elif command:
        transport = STDIO
    elif url:
        transport = WEBSOCKET
    else:
        transport = STDIO

    timeout_raw = _pick(raw, "timeout_seconds", "timeoutSeconds")
    timeout_seconds: float | None
    try:
        timeout_seconds = float(timeout_raw) if timeout_raw is not None else None
    except (TypeError, ValueError):
        timeout_seconds = None

    return ServerConfig(
        id=server_id,
        name=str(raw.get("name") or server_id).strip(),
        enabled=_to_bool(raw.get("enabled"), True),
        transport=transport,
        command=command,
        args=_str_list(raw.get("args")),
        env=_str_dict(raw.get("env")),
        url=url,
        headers=_str_dict(raw.get("headers")),
        path_entries=_str_list(_pick(raw, "path_entries", "pathEntries", "customPaths")),
        cwd=_optional_str(raw.get("cwd")),
        description=str(raw.get("description") or "").strip(),
        auto_restart=_to_bool(_pick(raw, "auto_restart", "autoRestart"), True),
        timeout_seconds=timeout_seconds,
        tags=_str_list(raw.get("tags")),
    )


def server_config_to_dict(config: ServerConfig) -> JsonObject:
    data: JsonObject = {
        "id": config.id,
        "name": config.name,
        "enabled": config.enabled,
        "transport": config.transport,
        "auto_restart": config.auto_restart,
    }
    if config.timeout_seconds is not None:
        data["timeout_seconds"] = config.timeout_seconds
    if config.transport == STDIO:
        data["command"] = config.command
        data["args"] = list(config.args)
    if config.url:
        data["url"] = config.url
    if config.env:
        data["env"] = dict(config.env)
    if config.headers:
        data["headers"] = dict(config.headers)
    if config.path_entries:
        data["path_entries"] = list(config.path_entries)
    if config.cwd:
        data["cwd"] = config.cwd
    if config.description:
        data["description"] = config.description
    if config.tags:
        data["tags"] = list(config.tags)
    return data


def validate_server_config(config: ServerConfig) -> List[str]:
    errors: List[str] = []
    if not config.id:
        errors.append("Server ID is required")
    elif not _SERVER_ID_PATTERN.match(config.id):
        errors.append("Server ID must contain only alphanumeric characters, hyphens, and underscores")

    if config.transport not in TRANSPORT_TYPES:
        errors.append(f'Transport type must be one of: {", ".join(TRANSPORT_TYPES)}')
    elif config.transport == STDIO and not config.command.strip():
        errors.append("Server command is required for stdio transport")
    elif config.transport == WEBSOCKET:
        if not config.url:
            errors.append("URL is required for websocket transport")
        elif urlparse(config.url).scheme.lower() not in _WEBSOCKET_SCHEMES or not urlparse(config.url).netloc:
            errors.append("Transport URL must be a valid ws://, wss://, http:// or https:// URL")

    if config.timeout_seconds is not None and config.timeout_seconds <= 0:
        errors.append("Request timeout must be positive")
    return errors


def ensure_valid(config: ServerConfig) -> ServerConfig:
    errors = validate_server_config(config)
    if errors:
        raise InvalidConfigError(errors)
    return config


def load_servers_document(raw: object) -> List[ServerConfig]:
    """Parse a stored document into server configs.

    Accepts ``{"servers": [...]}`` and the ``{"mcpServers": {id: {...}}}``
    shape. Entries that are not objects are skipped; validation is left to
    the caller.
    """
    if not isinstance(raw, dict):
        return []
    configs: List[ServerConfig] = []
    servers = raw.get("servers")
    if isinstance(servers, list):
        for item in servers:
            if isinstance(item, dict):
                configs.append(server_config_from_dict(item))
    named = raw.get("mcpServers")
    if isinstance(named, dict):
        for key, item in named.items():
            if isinstance(item, dict):
                configs.append(server_config_from_dict(item, default_id=str(key).strip()))
    return configs


def dump_servers_document(configs: List[ServerConfig]) -> JsonObject:
    return {"servers": [server_config_to_dict(cfg) for cfg in configs]}


class ConfigGateway(Protocol):
    async def load_config(self) -> JsonObject: ...

    async def save_config(self, document: JsonObject) -> None: ...


class InMemoryConfigGateway:
    def __init__(self, document: JsonObject | None = None) -> None:
        self.document: JsonObject = copy.deepcopy(document) if document is not None else {"servers": []}
        self.save_count = 0

    async def load_config(self) -> JsonObject:
        return copy.deepcopy(self.document)

    async def save_config(self, document: JsonObject) -> None:
        self.document = copy.deepcopy(document)
        self.save_count += 1


class JsonFileConfigGateway:
    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    def _read(self) -> JsonObject:
        if not self.path.exists():
            return {"servers": []}
        raw = json.loads(self.path.read_text(encoding="utf-8"))
        return raw if isinstance(raw, dict) else {"servers": []}

    def _write(self, document: JsonObject) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, temp_name = tempfile.mkstemp(prefix=f".{self.path.name}.", dir=str(self.path.parent))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(document, handle, ensure_ascii=False, indent=2)
            os.replace(temp_name, self.path)
        except BaseException:
            Path(temp_name).unlink(missing_ok=True)
            raise

    async def load_config(self) -> JsonObject:
        return await asyncio.to_thread(self._read)

    async def save_config(self, document: JsonObject) -> None:
        await asyncio.to_thread(self._write, document)
