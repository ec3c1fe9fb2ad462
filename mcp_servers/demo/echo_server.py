#!/usr/bin/env python3
"""Line-delimited JSON-RPC MCP server used by the mcphost test-suite.

Extra behaviour can be switched on from the command line:

    --crash-on-start      exit(3) before reading anything
    --no-initialize       never answer ``initialize``
    --garbage-before-init write an unparsable line before the first response
    --marker PATH         refuse to start if PATH exists, otherwise create it;
                          the first launch runs and every relaunch fails
"""

from __future__ import annotations

import json
import os
import sys
import time
from typing import Any, Dict, List

FLAGS = set(sys.argv[1:])


def _option(name: str) -> str | None:
    args = sys.argv[1:]
    if name in args:
        index = args.index(name)
        if index + 1 < len(args):
            return args[index + 1]
    return None


_extra_tools: List[Dict[str, Any]] = []


def read_message() -> Dict[str, Any] | None:
    while True:
        line = sys.stdin.buffer.readline()
        if not line:
            return None
        if not line.strip():
            continue
        try:
            payload = json.loads(line.decode("utf-8"))
        except ValueError:
            continue
        if isinstance(payload, dict):
            return payload


def write_message(payload: Dict[str, Any]) -> None:
    sys.stdout.buffer.write(json.dumps(payload, ensure_ascii=False).encode("utf-8") + b"\n")
    sys.stdout.buffer.flush()


def ok(request_id: Any, result: Dict[str, Any]) -> Dict[str, Any]:
    return {"jsonrpc": "2.0", "id": request_id, "result": result}


def err(request_id: Any, code: int, message: str) -> Dict[str, Any]:
    return {"jsonrpc": "2.0", "id": request_id, "error": {"code": code, "message": message}}


def notification(method: str, params: Dict[str, Any] | None = None) -> Dict[str, Any]:
    return {"jsonrpc": "2.0", "method": method, "params": params or {}}


def text_content(text: str) -> Dict[str, Any]:
    return {"content": [{"type": "text", "text": text}]}


def handle_initialize(request_id: Any) -> Dict[str, Any]:
    return ok(
        request_id,
        {
            "protocolVersion": "2024-11-05",
            "capabilities": {
                "tools": {"listChanged": True},
            },
            "serverInfo": {
                "name": "mcphost-echo",
                "version": "0.1.0",
            },
        },
    )


def tool_list() -> List[Dict[str, Any]]:
    tools: List[Dict[str, Any]] = [
        {
            "name": "ping",
            "description": "Echo the given arguments back.",
            "inputSchema": {"type": "object", "properties": {}, "additionalProperties": True},
        },
        {
            "name": "echo",
            "description": "Return the given text.",
            "inputSchema": {
                "type": "object",
                "properties": {"text": {"type": "string"}},
                "required": ["text"],
            },
        },
        {
            "name": "sleep",
            "description": "Wait for `seconds` before answering.",
            "inputSchema": {
                "type": "object",
                "properties": {"seconds": {"type": "number"}},
            },
        },
        {
            "name": "env",
            "description": "Return the value of an environment variable.",
            "inputSchema": {
                "type": "object",
                "properties": {"name": {"type": "string"}},
                "required": ["name"],
            },
        },
        {
            "name": "add_tool",
            "description": "Register a new tool and announce tools/list_changed unless `silent` is set.",
            "inputSchema": {
                "type": "object",
                "properties": {"name": {"type": "string"}, "silent": {"type": "boolean"}},
                "required": ["name"],
            },
        },
        {
            "name": "crash",
            "description": "Exit the server process immediately.",
            "inputSchema": {"type": "object", "properties": {}},
        },
    ]
    return tools + _extra_tools


def handle_tools_call(request_id: Any, params: Dict[str, Any]) -> Dict[str, Any] | None:
    name = str(params.get("name", "")).strip()
    arguments = params.get("arguments")
    if not isinstance(arguments, dict):
        arguments = {}

    if name == "ping":
        return ok(request_id, {"echo": arguments, "content": [{"type": "text", "text": json.dumps(arguments)}]})
    if name == "echo":
        return ok(request_id, text_content(str(arguments.get("text", ""))))
    if name == "sleep":
        time.sleep(float(arguments.get("seconds", 1)))
        return ok(request_id, text_content("done"))
    if name == "env":
        return ok(request_id, text_content(os.environ.get(str(arguments.get("name", "")), "")))
    if name == "add_tool":
        tool_name = str(arguments.get("name", "")).strip()
        if not tool_name:
            return err(request_id, -32602, "Missing required argument: name")
        _extra_tools.append({"name": tool_name, "description": "added at runtime", "inputSchema": {"type": "object"}})
        write_message(ok(request_id, text_content(f"added {tool_name}")))
        if not arguments.get("silent"):
            write_message(notification("notifications/tools/list_changed"))
        return None
    if name == "crash":
        sys.stdout.flush()
        os._exit(7)

    return err(request_id, -32601, f"Unknown tool: {name}")


def main() -> int:
    if "--crash-on-start" in FLAGS:
        sys.stderr.write("echo_server: refusing to start\n")
        sys.stderr.flush()
        return 3

    marker = _option("--marker")
    if marker is not None:
        if os.path.exists(marker):
            sys.stderr.write("echo_server: marker present, refusing to start\n")
            sys.stderr.flush()
            return 4
        with open(marker, "w", encoding="utf-8") as handle:
            handle.write(str(os.getpid()))

    while True:
        message = read_message()
        if message is None:
            return 0

        request_id = message.get("id")
        method = str(message.get("method", "")).strip()
        params = message.get("params")
        if not isinstance(params, dict):
            params = {}

        if request_id is None or not method:
            continue

        if method == "initialize":
            if "--no-initialize" in FLAGS:
                continue
            if "--garbage-before-init" in FLAGS:
                sys.stdout.buffer.write(b"this is not json\n")
            write_message(handle_initialize(request_id))
            continue
        if method == "tools/list":
            write_message(ok(request_id, {"tools": tool_list()}))
            continue
        if method == "tools/call":
            response = handle_tools_call(request_id, params)
            if response is not None:
                write_message(response)
            continue
        if method == "ping":
            write_message(ok(request_id, {}))
            continue

        write_message(err(request_id, -32601, f"Unknown method: {method}"))


if __name__ == "__main__":
    raise SystemExit(main())
