from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, List, Mapping, Sequence, Union

import aiohttp

from .mcp_types import (
    STDIO,
    WEBSOCKET,
    ConnectError,
    ConnectionClosed,
    DisconnectInfo,
    JsonObject,
    ProtocolError,
    ServerConfig,
)
from .messages import decode_frame, encode_line

logger = logging.getLogger(__name__)

_READ_CHUNK = 64 * 1024
_STDERR_TAIL_LINES = 50
_EXIT_DRAIN_SECONDS = 1.0


@dataclass(frozen=True)
class MessageReceived:
    payload: JsonObject


@dataclass(frozen=True)
class FrameError:
    error: ProtocolError
    raw: str


@dataclass(frozen=True)
class Disconnected:
    info: DisconnectInfo


TransportEvent = Union[MessageReceived, FrameError, Disconnected]


def merge_path_entries(custom: Sequence[str], inherited: str | None, *, sep: str = os.pathsep) -> str:
    seen: set[str] = set()
    merged: List[str] = []
    inherited_entries = inherited.split(sep) if inherited else []
    for entry in [*custom, *inherited_entries]:
        candidate = str(entry).strip()
        if not candidate or candidate in seen:
            continue
        seen.add(candidate)
        merged.append(candidate)
    return sep.join(merged)


def build_process_env(
    config: ServerConfig,
    custom_paths: Sequence[str] = (),
    base_env: Mapping[str, str] | None = None,
) -> Dict[str, str]:
    env = dict(os.environ if base_env is None else base_env)
    overrides = {str(k): str(v) for k, v in config.env.items()}
    inherited_path = overrides.pop("PATH", env.get("PATH", ""))
    env.update(overrides)
    merged = merge_path_entries([*config.path_entries, *custom_paths], inherited_path)
    if merged:
        env["PATH"] = merged
    else:
        env.pop("PATH", None)
    return env


class Transport(ABC):
    """Duplex message channel to one MCP server.

    Incoming traffic is published on ``events``; the client that owns the
    transport is its only consumer. ``Disconnected`` is published exactly once.
    """

    def __init__(self, *, name: str = "") -> None:
        self.name = name
        self.events: asyncio.Queue[TransportEvent] = asyncio.Queue()
        self._closing = False
        self._disconnected = False

    @property
    @abstractmethod
    def is_open(self) -> bool: ...

    @abstractmethod
    async def open(self) -> None: ...

    @abstractmethod
    async def send(self, payload: JsonObject) -> None: ...

    @abstractmethod
    async def close(self, grace: float = 5.0) -> None: ...

    @property
    def pid(self) -> int | None:
        return None

    def diagnostics(self) -> str:
        return ""

    def _handle_frame(self, raw: bytes | str) -> None:
        try:
            payload = decode_frame(raw)
        except ProtocolError as err:
            text = raw.decode("utf-8", errors="replace") if isinstance(raw, bytes) else raw
            logger.warning("%s: dropping malformed frame: %s", self.name, err)
            self.events.put_nowait(FrameError(error=err, raw=text))
            return
        self.events.put_nowait(MessageReceived(payload=payload))

    def _emit_disconnect(self, info: DisconnectInfo) -> None:
        if self._disconnected:
            return
        self._disconnected = True
        logger.debug("%s: transport disconnected (%s)", self.name, info.describe())
        self.events.put_nowait(Disconnected(info=info))


class StdioTransport(Transport):
    """Child process speaking newline-delimited JSON over stdin/stdout."""

    def __init__(
        self,
        command: str,
        args: Sequence[str] = (),
        *,
        env: Dict[str, str] | None = None,
        cwd: str | None = None,
        name: str = "",
    ) -> None:
        super().__init__(name=name or command)
        self.command = command
        self.args = list(args)
        self.env = env
        self.cwd = cwd
        self._proc: asyncio.subprocess.Process | None = None
        self._reader_task: asyncio.Task[None] | None = None
        self._stderr_task: asyncio.Task[None] | None = None
        self._exit_task: asyncio.Task[None] | None = None
        self._write_lock = asyncio.Lock()
        self._stderr_tail: List[str] = []

    @property
    def is_open(self) -> bool:
        return self._proc is not None and not self._disconnected

    @property
    def pid(self) -> int | None:
        return self._proc.pid if self._proc is not None else None

    @property
    def returncode(self) -> int | None:
        return self._proc.returncode if self._proc is not None else None

    @property
    def stderr_tail(self) -> List[str]:
        return list(self._stderr_tail)

    def diagnostics(self) -> str:
        if not self._stderr_tail:
            return "stderr=empty"
        return "stderr_tail=" + " | ".join(self._stderr_tail[-5:])

    async def open(self) -> None:
        if self._proc is not None:
            raise ConnectError(f"{self.name}: transport already connected")
        logger.info("%s: spawning %s %s", self.name, self.command, " ".join(self.args))
        try:
            proc = await asyncio.create_subprocess_exec(
                self.command,
                *self.args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self.env,
                cwd=self.cwd,
            )
        except (OSError, ValueError) as err:
            raise ConnectError(f"{self.name}: failed to spawn {self.command!r}: {err}") from err
        if proc.stdin is None or proc.stdout is None:
            raise ConnectError(f"{self.name}: failed to open stdio pipes")
        self._proc = proc
        self._reader_task = asyncio.create_task(self._read_stdout(proc.stdout))
        if proc.stderr is not None:
            self._stderr_task = asyncio.create_task(self._consume_stderr(proc.stderr))
        self._exit_task = asyncio.create_task(self._watch_exit(proc))

    async def _read_stdout(self, stream: asyncio.StreamReader) -> None:
        buffer = bytearray()
        while True:
            chunk = await stream.read(_READ_CHUNK)
            if not chunk:
                break
            # bytes before scan_from hold no newline
            scan_from = len(buffer)
            buffer.extend(chunk)
            start = 0
            while True:
                newline = buffer.find(b"\n", scan_from)
                if newline < 0:
                    break
                line = bytes(buffer[start:newline]).strip()
                if line:
                    self._handle_frame(line)
                start = scan_from = newline + 1
            if start:
                del buffer[:start]
        tail = bytes(buffer).strip()
        if tail:
            self._handle_frame(tail)

    async def _consume_stderr(self, stream: asyncio.StreamReader) -> None:
        while True:
            chunk = await stream.readline()
            if not chunk:
                return
            text = chunk.decode("utf-8", errors="replace").rstrip("\n")
            if len(self._stderr_tail) >= _STDERR_TAIL_LINES:
                self._stderr_tail.pop(0)
            self._stderr_tail.append(text)
            logger.debug("%s stderr: %s", self.name, text)

    async def _watch_exit(self, proc: asyncio.subprocess.Process) -> None:
        returncode = await proc.wait()
        if self._reader_task is not None:
            # stdout may still hold the last responses the process wrote
            try:
                await asyncio.wait_for(asyncio.shield(self._reader_task), timeout=_EXIT_DRAIN_SECONDS)
            except asyncio.TimeoutError:
                self._reader_task.cancel()
            except Exception as err:  # noqa: BLE001
                logger.warning("%s: stdout reader failed: %s", self.name, err)
        if self._stderr_task is not None:
            # keep the final stderr lines for diagnostics
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(asyncio.shield(self._stderr_task), timeout=_EXIT_DRAIN_SECONDS)
        signal_number = -returncode if returncode is not None and returncode < 0 else None
        if self._closing:
            reason = "closed"
        elif signal_number is not None:
            reason = "process killed"
        else:
            reason = "process exited"
        self._emit_disconnect(
            DisconnectInfo(
                reason=reason,
                returncode=returncode,
                signal=signal_number,
                requested=self._closing,
            ),
        )

    async def send(self, payload: JsonObject) -> None:
        proc = self._proc
        if proc is None or proc.stdin is None or self._disconnected:
            raise ConnectionClosed(f"{self.name}: transport not connected")
        async with self._write_lock:
            try:
                proc.stdin.write(encode_line(payload))
                await proc.stdin.drain()
            except (BrokenPipeError, ConnectionResetError, RuntimeError) as err:
                raise ConnectionClosed(f"{self.name}: write failed: {err}") from err

    async def close(self, grace: float = 5.0) -> None:
        proc = self._proc
        if proc is None:
            return
        self._closing = True
        if proc.returncode is None:
            if proc.stdin is not None:
                with contextlib.suppress(Exception):
                    proc.stdin.close()
            with contextlib.suppress(ProcessLookupError):
                proc.terminate()
            try:
                await asyncio.wait_for(proc.wait(), timeout=grace)
            except asyncio.TimeoutError:
                logger.warning("%s: no exit within %.1fs, killing pid %s", self.name, grace, proc.pid)
                with contextlib.suppress(ProcessLookupError):
                    proc.kill()
                await proc.wait()
        if self._exit_task is not None:
            await self._exit_task
        if self._stderr_task is not None:
            self._stderr_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._stderr_task
            self._stderr_task = None


class WebSocketTransport(Transport):
    """Remote MCP peer over a WebSocket; one JSON document per frame."""

    def __init__(
        self,
        url: str,
        *,
        headers: Dict[str, str] | None = None,
        open_timeout: float = 10.0,
        name: str = "",
    ) -> None:
        super().__init__(name=name or url)
        self.url = url
        self.headers = dict(headers or {})
        self.open_timeout = open_timeout
        self._session: aiohttp.ClientSession | None = None
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._reader_task: asyncio.Task[None] | None = None
        self._close_code: int | None = None

    @property
    def is_open(self) -> bool:
        return self._ws is not None and not self._ws.closed and not self._disconnected

    def diagnostics(self) -> str:
        return f"url={self.url} close_code={self._close_code}"

    async def open(self) -> None:
        if self._ws is not None:
            raise ConnectError(f"{self.name}: transport already connected")
        logger.info("%s: connecting to %s", self.name, self.url)
        session = aiohttp.ClientSession()
        try:
            ws = await asyncio.wait_for(
                session.ws_connect(self.url, headers=self.headers),
                timeout=self.open_timeout,
            )
        except (aiohttp.ClientError, OSError, ValueError, asyncio.TimeoutError) as err:
            await session.close()
            raise ConnectError(f"{self.name}: failed to connect to {self.url}: {err}") from err
        self._session = session
        self._ws = ws
        self._reader_task = asyncio.create_task(self._read_frames(ws))

    async def _read_frames(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        reason = "remote closed"
        try:
            async for msg in ws:
                if msg.type in (aiohttp.WSMsgType.TEXT, aiohttp.WSMsgType.BINARY):
                    self._handle_frame(msg.data)
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    reason = f"websocket error: {ws.exception()}"
                    logger.warning("%s: %s", self.name, reason)
                    break
        finally:
            self._close_code = ws.close_code
            if self._closing:
                reason = "closed"
            self._emit_disconnect(
                DisconnectInfo(reason=reason, returncode=ws.close_code, requested=self._closing),
            )

    async def send(self, payload: JsonObject) -> None:
        ws = self._ws
        if ws is None or ws.closed or self._disconnected:
            raise ConnectionClosed(f"{self.name}: transport not connected")
        try:
            await ws.send_str(json.dumps(payload, ensure_ascii=False))
        except (ConnectionResetError, aiohttp.ClientError, RuntimeError) as err:
            raise ConnectionClosed(f"{self.name}: write failed: {err}") from err

    async def close(self, grace: float = 5.0) -> None:
        if self._ws is None:
            return
        self._closing = True
        ws = self._ws
        if not ws.closed:
            try:
                await asyncio.wait_for(ws.close(), timeout=grace)
            except asyncio.TimeoutError:
                logger.warning("%s: websocket close handshake timed out", self.name)
        if self._reader_task is not None:
            try:
                await asyncio.wait_for(asyncio.shield(self._reader_task), timeout=grace)
            except asyncio.TimeoutError:
                self._reader_task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await self._reader_task
        if self._session is not None:
            await self._session.close()
            self._session = None
        self._emit_disconnect(DisconnectInfo(reason="closed", returncode=ws.close_code, requested=True))


def create_transport(
    config: ServerConfig,
    *,
    custom_paths: Sequence[str] = (),
    open_timeout: float = 10.0,
) -> Transport:
    if config.transport == WEBSOCKET:
        if not config.url:
            raise ConnectError(f"{config.id}: missing url for websocket transport")
        return WebSocketTransport(
            config.url,
            headers=config.headers,
            open_timeout=open_timeout,
            name=config.id,
        )
    if config.transport == STDIO:
        return StdioTransport(
            config.command,
            config.args,
            env=build_process_env(config, custom_paths),
            cwd=config.cwd,
            name=config.id,
        )
    raise ConnectError(f"Unsupported MCP transport type: {config.transport}")
