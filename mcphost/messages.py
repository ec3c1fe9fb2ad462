"""JSON-RPC 2.0 message shapes used on every MCP transport."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Dict, Union

from .mcp_types import JsonObject, JsonValue, ProtocolError

JSONRPC_VERSION = "2.0"

METHOD_NOT_FOUND = -32601


@dataclass(frozen=True)
class Request:
    id: int | str
    method: str
    params: JsonObject = field(default_factory=dict)

    def to_payload(self) -> JsonObject:
        return {
            "jsonrpc": JSONRPC_VERSION,
            "id": self.id,
            "method": self.method,
            "params": self.params,
        }


@dataclass(frozen=True)
class Response:
    id: int | str | None
    result: JsonValue = None
    error: JsonObject | None = None

    @property
    def is_error(self) -> bool:
        return self.error is not None

    def to_payload(self) -> JsonObject:
        payload: JsonObject = {"jsonrpc": JSONRPC_VERSION, "id": self.id}
        if self.error is not None:
            payload["error"] = self.error
        else:
            payload["result"] = self.result
        return payload


@dataclass(frozen=True)
class Notification:
    method: str
    params: JsonObject = field(default_factory=dict)

    def to_payload(self) -> JsonObject:
        return {
            "jsonrpc": JSONRPC_VERSION,
            "method": self.method,
            "params": self.params,
        }


MCPMessage = Union[Request, Response, Notification]


def _params_of(payload: Dict[str, JsonValue]) -> JsonObject:
    params = payload.get("params")
    return params if isinstance(params, dict) else {}


def parse_message(payload: Dict[str, JsonValue]) -> MCPMessage:
    """Classify a decoded JSON object.

    A message carrying ``id`` is a response unless it also names a ``method``,
    in which case it is a request initiated by the peer. Anything without an
    ``id`` must be a notification.
    """
    if not isinstance(payload, dict):
        raise ProtocolError(f"JSON-RPC message must be an object, got {type(payload).__name__}")
    method = payload.get("method")
    if "id" in payload:
        msg_id = payload.get("id")
        if msg_id is not None and (isinstance(msg_id, bool) or not isinstance(msg_id, (int, str))):
            raise ProtocolError(f"Invalid JSON-RPC id: {msg_id!r}")
        if isinstance(method, str) and method:
            return Request(id=msg_id, method=method, params=_params_of(payload))  # type: ignore[arg-type]
        error = payload.get("error")
        if error is not None:
            if not isinstance(error, dict):
                raise ProtocolError(f"Invalid JSON-RPC error object: {error!r}")
            return Response(id=msg_id, error=error)  # type: ignore[arg-type]
        if "result" not in payload:
            raise ProtocolError(f"JSON-RPC response {msg_id!r} has neither result nor error")
        return Response(id=msg_id, result=payload.get("result"))  # type: ignore[arg-type]
    if not isinstance(method, str) or not method:
        raise ProtocolError("JSON-RPC notification is missing a method name")
    return Notification(method=method, params=_params_of(payload))


def decode_frame(data: bytes | str) -> JsonObject:
    text = data.decode("utf-8", errors="replace") if isinstance(data, bytes) else data
    try:
        payload = json.loads(text)
    except json.JSONDecodeError as err:
        raise ProtocolError(f"Failed to parse message: {text[:200]}") from err
    if not isinstance(payload, dict):
        raise ProtocolError(f"Message is not a JSON object: {text[:200]}")
    return payload


def encode_line(payload: JsonObject) -> bytes:
    return (json.dumps(payload, ensure_ascii=False) + "\n").encode("utf-8")
