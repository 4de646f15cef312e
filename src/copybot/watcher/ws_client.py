from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable
from typing import Any

import websockets

MessageHandler = Callable[[dict], Awaitable[None]]
ConnectHook = Callable[[], Awaitable[None]]


class ReconnectingWsClient:
    """Websocket loop that resubscribes on every connect and backs off on failure."""

    def __init__(
        self,
        url: str,
        subscribe_messages: list[dict],
        on_message: MessageHandler,
        *,
        on_connect: ConnectHook | None = None,
        ping_interval_s: int = 5,
        ping_timeout_s: int = 20,
        max_backoff_s: int = 30,
    ) -> None:
        self._url = url
        self._subscribe_messages = subscribe_messages
        self._on_message = on_message
        self._on_connect = on_connect
        self._ping_interval_s = ping_interval_s
        self._ping_timeout_s = ping_timeout_s
        self._max_backoff_s = max_backoff_s
        self._log = logging.getLogger(self.__class__.__name__)
        self._stop_event = asyncio.Event()
        self._ws: Any = None
        self._recv_count = 0
        self._skipped_count = 0

    async def run_forever(self) -> None:
        backoff_s = 1
        while not self._stop_event.is_set():
            try:
                await self._connect_once()
                backoff_s = 1
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                if self._stop_event.is_set():
                    break
                self._log.warning("ws_loop_error url=%s error=%s backoff_s=%s", self._url, exc, backoff_s)
                await asyncio.sleep(backoff_s)
                backoff_s = min(backoff_s * 2, self._max_backoff_s)
        self._log.info("ws_stopped url=%s received=%s skipped=%s", self._url, self._recv_count, self._skipped_count)

    async def stop(self) -> None:
        self._stop_event.set()
        if self._ws is not None:
            await self._ws.close()

    async def _connect_once(self) -> None:
        async with websockets.connect(
            self._url,
            ping_interval=self._ping_interval_s,
            ping_timeout=self._ping_timeout_s,
            max_queue=1000,
        ) as ws:
            self._ws = ws
            try:
                await self._subscribe(ws)
                self._log.info("ws_connected url=%s", self._url)
                if self._on_connect is not None:
                    await self._on_connect()
                while not self._stop_event.is_set():
                    raw = await ws.recv()
                    self._recv_count += 1
                    if self._recv_count % 500 == 0:
                        self._log.info("ws_recv_progress count=%s", self._recv_count)
                    message = self._parse(raw)
                    if message is None:
                        self._skipped_count += 1
                        continue
                    await self._on_message(message)
            finally:
                self._ws = None

    async def _subscribe(self, ws: Any) -> None:
        for payload in self._subscribe_messages:
            await ws.send(json.dumps(payload))
            self._log.info("ws_subscribe payload=%s", payload)

    @staticmethod
    def _parse(raw: str | bytes) -> dict | None:
        # The feed interleaves text pongs and empty frames with JSON messages.
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8", errors="replace")
        if not raw.strip():
            return None
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            return None
        return parsed if isinstance(parsed, dict) else None
