"""Solana ``logsSubscribe`` WebSocket client.

Subscribes to the log messages of transactions mentioning the escrow
program and hands every log line to a callback as a ``RawLogRecord``.
Failed transactions are skipped; their logs describe nothing that happened.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import re
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

import websockets
from websockets.asyncio.client import ClientConnection

from escrow_orderflow.ingestor.models import RawLogRecord

logger = logging.getLogger(__name__)

DEFAULT_PING_INTERVAL = 30  # seconds
DEFAULT_MAX_RECONNECT_DELAY = 30  # seconds
DEFAULT_INITIAL_RECONNECT_DELAY = 1  # seconds

# A top-level instruction starts with an invoke at stack height 1.
_TOP_LEVEL_INVOKE = re.compile(r"^Program \S+ invoke \[1\]$")


class ConnectionState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"


@dataclass
class StreamStats:
    notifications_received: int = 0
    records_emitted: int = 0
    failed_transactions_skipped: int = 0
    reconnect_count: int = 0
    last_message_time: float | None = None
    connected_since: float | None = None
    last_error: str | None = None


class LogStreamError(Exception):
    """Base exception for log stream errors."""


class LogConnectionError(LogStreamError):
    """Raised when connection to the WebSocket fails."""


RecordCallback = Callable[[RawLogRecord], Awaitable[None]]
StateCallback = Callable[[ConnectionState], Awaitable[None]]


def instruction_indices(logs: list[str]) -> list[int]:
    """Map each log line to the 0-based top-level instruction that wrote it."""
    indices: list[int] = []
    current = -1
    for line in logs:
        if _TOP_LEVEL_INVOKE.match(line):
            current += 1
        indices.append(max(current, 0))
    return indices


def records_from_notification(data: dict[str, Any], *, commitment: str) -> list[RawLogRecord]:
    """Split one ``logsNotification`` into per-line raw records.

    Returns an empty list for failed transactions.
    """
    result = data["params"]["result"]
    slot = int(result["context"]["slot"])
    value = result["value"]
    if value.get("err") is not None:
        return []
    signature = str(value["signature"])
    logs = [str(line) for line in value.get("logs") or []]
    return [
        RawLogRecord(
            signature=signature,
            slot=slot,
            instruction_index=ix,
            log_index=log_index,
            commitment=commitment,
            payload=line,
        )
        for log_index, (line, ix) in enumerate(zip(logs, instruction_indices(logs), strict=True))
    ]


class SolanaLogStreamHandler:
    """WebSocket client for program log notifications."""

    def __init__(
        self,
        *,
        host: str,
        program_id: str,
        commitment: str = "finalized",
        on_record: RecordCallback | None = None,
        on_state_change: StateCallback | None = None,
        ping_interval: int = DEFAULT_PING_INTERVAL,
        max_reconnect_delay: int = DEFAULT_MAX_RECONNECT_DELAY,
        initial_reconnect_delay: int = DEFAULT_INITIAL_RECONNECT_DELAY,
    ) -> None:
        self._host = host
        self._program_id = program_id
        self._commitment = commitment
        self._on_record = on_record
        self._on_state_change = on_state_change
        self._ping_interval = ping_interval
        self._max_reconnect_delay = max_reconnect_delay
        self._initial_reconnect_delay = initial_reconnect_delay

        self._state = ConnectionState.DISCONNECTED
        self._stats = StreamStats()

        self._ws: ClientConnection | None = None
        self._running = False
        self._stop_event: asyncio.Event | None = None

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def stats(self) -> StreamStats:
        return self._stats

    async def _set_state(self, new_state: ConnectionState) -> None:
        if self._state != new_state:
            old = self._state
            self._state = new_state
            logger.info("Solana log stream state: %s -> %s", old.value, new_state.value)
            if self._on_state_change:
                try:
                    await self._on_state_change(new_state)
                except Exception as e:  # pragma: no cover
                    logger.error("Error in state change callback: %s", e)

    def _subscribe_message(self) -> str:
        return json.dumps(
            {
                "jsonrpc": "2.0",
                "id": 1,
                "method": "logsSubscribe",
                "params": [
                    {"mentions": [self._program_id]},
                    {"commitment": self._commitment},
                ],
            }
        )

    async def _connect(self) -> ClientConnection:
        await self._set_state(ConnectionState.CONNECTING)
        try:
            ws = await websockets.connect(
                self._host,
                ping_interval=self._ping_interval,
                ping_timeout=self._ping_interval * 2,
            )
        except Exception as e:
            self._stats.last_error = str(e)
            raise LogConnectionError(f"Failed to connect to {self._host}: {e}") from e

        await ws.send(self._subscribe_message())

        await self._set_state(ConnectionState.CONNECTED)
        self._stats.connected_since = time.time()
        logger.info(
            "Subscribed to logs of %s at %s (commitment=%s)",
            self._program_id,
            self._host,
            self._commitment,
        )
        return ws

    async def _handle_message(self, message: str) -> None:
        try:
            data = json.loads(message)
        except json.JSONDecodeError:
            logger.warning("Invalid JSON message on log stream")
            return

        if data.get("method") != "logsNotification":
            if "error" in data:
                logger.error("Log subscription error: %s", data["error"])
            elif "result" in data:
                logger.debug("Subscription confirmed: id=%s", data["result"])
            return

        try:
            records = records_from_notification(data, commitment=self._commitment)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning("Failed to parse logsNotification: %s", e)
            return

        self._stats.notifications_received += 1
        self._stats.last_message_time = time.time()
        if not records:
            self._stats.failed_transactions_skipped += 1
            return

        for record in records:
            self._stats.records_emitted += 1
            if self._on_record:
                await self._on_record(record)

    async def _listen(self, ws: ClientConnection) -> None:
        try:
            while self._running:
                try:
                    message = await asyncio.wait_for(ws.recv(), timeout=1.0)
                except TimeoutError:
                    continue

                if isinstance(message, str):
                    await self._handle_message(message)
                else:
                    logger.debug("Ignoring non-text log stream message")
        except websockets.ConnectionClosed as e:
            logger.warning("Solana log stream connection closed: %s", e)
            raise

    async def start(self) -> None:
        """Connect and stream until ``stop()``; reconnects with backoff.

        Errors raised by the record callback are not connection problems and
        propagate to the caller.
        """
        if self._running:
            raise RuntimeError("Log stream already running")
        self._running = True
        self._stop_event = asyncio.Event()

        delay = self._initial_reconnect_delay
        while self._running and self._stop_event and not self._stop_event.is_set():
            try:
                self._ws = await self._connect()
                delay = self._initial_reconnect_delay
                await self._listen(self._ws)
            except (LogConnectionError, websockets.ConnectionClosed, OSError) as e:
                self._stats.reconnect_count += 1
                self._stats.last_error = str(e)
                await self._set_state(ConnectionState.RECONNECTING)
                await asyncio.sleep(delay)
                delay = min(self._max_reconnect_delay, delay * 2)
            finally:
                with contextlib.suppress(Exception):
                    if self._ws:
                        await self._ws.close()
                self._ws = None

        await self._set_state(ConnectionState.DISCONNECTED)

    async def stop(self) -> None:
        self._running = False
        if self._stop_event:
            self._stop_event.set()
        if self._ws:
            with contextlib.suppress(Exception):
                await self._ws.close()
