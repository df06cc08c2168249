"""
Persistent TCP connection to one mixer instance.

The connection reconnects on its own with a capped back-off and reports what
happens through named events.  Subscribers are registered once and are
dispatched sequentially, so events of one connection are always observed in
arrival order.
"""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import logging
from typing import Any, Callable, Dict, List, Optional

from .protocol import Commands, encode_batch

LOG = logging.getLogger(__name__)

EVENTS = ("connecting", "connect", "close", "error", "tally", "xml")

# longest status line accepted; XML bodies are read by length and are not bound by it
READ_LIMIT = 1 << 20


class MixerConnection:
    """asyncio stream client speaking the vMix TCP API."""

    def __init__(
        self,
        host: str,
        port: int,
        *,
        name: str = "mixer",
        reconnect_delay: float = 1.0,
        max_reconnect_delay: float = 10.0,
        connect_timeout: float = 5.0,
        read_limit: int = READ_LIMIT,
    ) -> None:
        self.host = host
        self.port = int(port)
        self.name = name
        self.reconnect_delay = max(0.0, float(reconnect_delay))
        self.max_reconnect_delay = max(self.reconnect_delay, float(max_reconnect_delay))
        self.connect_timeout = max(0.1, float(connect_timeout))
        self.read_limit = max(1024, int(read_limit))
        self.logger = LOG.getChild(name)

        self._subscribers: Dict[str, List[Callable[..., Any]]] = {event: [] for event in EVENTS}
        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Optional[asyncio.StreamWriter] = None
        self._write_lock = asyncio.Lock()
        self._task: Optional[asyncio.Task] = None
        self._running = False

    # ------------------------------------------------------------------ public API

    @property
    def remote(self) -> str:
        return f"{self.host}:{self.port}"

    def connected(self) -> bool:
        writer = self._writer
        return writer is not None and not writer.is_closing()

    def subscribe(self, event: str, callback: Callable[..., Any]) -> None:
        if event not in self._subscribers:
            raise ValueError(f"unknown connection event '{event}'")
        if not callable(callback):
            raise TypeError("callback must be callable")
        self._subscribers[event].append(callback)

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._run(), name=f"mixer-{self.name}")

    async def shutdown(self) -> None:
        if not self._running:
            return
        self._running = False
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
        await self._close_writer()

    async def send(self, commands: Commands) -> None:
        writer = self._writer
        if writer is None or writer.is_closing():
            raise ConnectionError(f"not connected to {self.remote}")
        data = encode_batch(commands)
        async with self._write_lock:
            writer.write(data)
            await writer.drain()

    # ------------------------------------------------------------------ internals

    async def _emit(self, event: str, *args: Any) -> None:
        for callback in list(self._subscribers[event]):
            try:
                result = callback(*args)
                if inspect.isawaitable(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception:
                self.logger.exception("Subscriber for '%s' event failed", event)

    async def _close_writer(self) -> None:
        writer = self._writer
        self._writer = None
        self._reader = None
        if writer is None:
            return
        writer.close()
        with contextlib.suppress(Exception):
            await writer.wait_closed()

    async def _run(self) -> None:
        backoff = self.reconnect_delay
        while self._running:
            await self._emit("connecting")
            try:
                reader, writer = await asyncio.wait_for(
                    asyncio.open_connection(self.host, self.port, limit=self.read_limit),
                    timeout=self.connect_timeout,
                )
            except asyncio.CancelledError:
                raise
            except (OSError, asyncio.TimeoutError) as exc:
                await self._emit("error", exc)
                await asyncio.sleep(backoff)
                backoff = min(backoff * 1.5, self.max_reconnect_delay)
                continue

            self._reader, self._writer = reader, writer
            backoff = self.reconnect_delay
            await self._emit("connect")
            try:
                await self._read_loop(reader)
            except asyncio.CancelledError:
                raise
            except (OSError, ConnectionError, asyncio.IncompleteReadError) as exc:
                await self._emit("error", exc)
            except Exception as exc:
                self.logger.exception("Reading from mixer %s failed; reconnecting", self.remote)
                await self._emit("error", exc)
            finally:
                await self._close_writer()
            await self._emit("close")
            if self._running:
                await asyncio.sleep(backoff)

    async def _read_loop(self, reader: asyncio.StreamReader) -> None:
        while True:
            try:
                raw = await reader.readline()
            except ValueError:
                # overlong line; readline already discarded it
                self.logger.warning("Skipping line from %s longer than %d bytes", self.remote, self.read_limit)
                continue
            if not raw:
                raise ConnectionError(f"{self.remote} closed the connection")
            line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
            if not line:
                continue
            parts = line.split(" ", 2)
            verb = parts[0].upper()
            if verb == "XML" and len(parts) >= 2 and parts[1].isdigit():
                body = await reader.readexactly(int(parts[1]))
                await self._emit("xml", body.decode("utf-8", errors="replace").strip())
            elif verb == "TALLY" and len(parts) >= 2 and parts[1] == "OK":
                await self._emit("tally", parts[2] if len(parts) > 2 else "")
            elif len(parts) >= 2 and parts[1] == "ER":
                self.logger.warning("Mixer %s rejected command: %s", self.remote, line)
            else:
                self.logger.debug("Mixer %s: %s", self.remote, line)
