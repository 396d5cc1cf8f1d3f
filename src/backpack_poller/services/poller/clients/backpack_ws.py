"""Backpack WebSocket client that keeps one stream subscription alive and logs every message."""

import asyncio
import inspect
import json
import logging
import random
import time
from dataclasses import dataclass
from typing import Dict, Any, Optional, Callable, Awaitable, Set, Tuple

from websockets.asyncio.client import ClientConnection, connect as ws_connect
from websockets.exceptions import ConnectionClosed, ConnectionClosedOK
from websockets.protocol import State

from ..config.settings import BackpackConfig, ReconnectConfig
from ..utils.backoff import reconnect_delay_ms

logger = logging.getLogger(__name__)

NORMAL_CLOSURE = 1000
ABNORMAL_CLOSURE = 1006
INTERNAL_ERROR = 1011
SHUTDOWN_REASON = "client shutdown"

Connector = Callable[..., Awaitable[Any]]


@dataclass(frozen=True)
class SubscribeRequest:
    """Subscription handshake sent once on every successful open."""
    params: Tuple[str, ...]
    method: str = "SUBSCRIBE"
    id: int = 1

    def to_wire(self) -> str:
        return json.dumps({"method": self.method, "params": list(self.params), "id": self.id})


def is_blob(payload: Any) -> bool:
    """Blob-like payloads expose an async ``read()`` returning their bytes."""
    read = getattr(payload, "read", None)
    return read is not None and inspect.iscoroutinefunction(read)


def decode_payload(payload: Any) -> str:
    """Turn a text or raw-buffer frame into text. Invalid UTF-8 raises."""
    if isinstance(payload, str):
        return payload
    if isinstance(payload, (bytes, bytearray, memoryview)):
        return bytes(payload).decode("utf-8")
    return str(payload)


async def normalize_payload(payload: Any) -> str:
    """Like :func:`decode_payload`, but materializes blob-like payloads first."""
    if is_blob(payload):
        payload = await payload.read()
    return decode_payload(payload)


class BackpackWSClient:
    """
    Backpack WebSocket client for a single stream subscription.

    Drives one connection at a time through connect -> open -> close ->
    reconnect until :meth:`stop` is called. Each connection runs in its own
    task, so the open/message/error/close reactions of one connection never
    overlap. Reconnects are armed as ``loop.call_later`` timers using capped
    exponential backoff with jitter.

    ``start()`` and ``stop()`` are plain methods and must be called from
    inside the running event loop (signal handlers installed with
    ``loop.add_signal_handler`` qualify).
    """

    def __init__(
        self,
        config: BackpackConfig,
        reconnect_config: Optional[ReconnectConfig] = None,
        connector: Optional[Connector] = None,
        rng: Optional[random.Random] = None
    ):
        self.config = config
        self.url = config.ws_url
        self.reconnect_config = reconnect_config or ReconnectConfig()
        self.subscribe_request = SubscribeRequest(params=tuple(config.channels))

        self._connector = connector or ws_connect
        self._connect_options = {
            'ping_interval': config.ping_interval_seconds,
            'ping_timeout': config.ping_timeout_seconds,
            'close_timeout': 10,
            'max_size': config.max_message_size,
        }
        self._rng = rng

        self.websocket: Optional[ClientConnection] = None
        self._running = False
        self._reconnect_attempts = 0
        self._reconnect_timer: Optional[asyncio.TimerHandle] = None
        # Bumped by start(); callbacks from an older session never reconnect
        self._generation = 0
        self._connection_task: Optional[asyncio.Task] = None
        self._close_task: Optional[asyncio.Task] = None
        self._tasks: Set[asyncio.Task] = set()

        self.stats = {
            'messages_received': 0,
            'messages_logged': 0,
            'decode_errors': 0,
            'connection_count': 0,
            'last_message_time': None
        }

    @property
    def running(self) -> bool:
        return self._running

    @property
    def reconnect_attempts(self) -> int:
        return self._reconnect_attempts

    @property
    def is_connected(self) -> bool:
        return self.websocket is not None and self.websocket.state is State.OPEN

    def start(self) -> None:
        """Begin maintaining the subscription. No-op if already running."""
        if self._running:
            logger.debug("[ws] start() ignored, client already running")
            return
        # Raises RuntimeError outside a running loop, before any state changes
        asyncio.get_running_loop()
        self._running = True
        self._generation += 1
        self._spawn_connect(self._generation)

    def stop(self) -> None:
        """
        Stop the session: cancel any pending reconnect and close the live or
        opening connection with a normal closure. Never raises.
        """
        if not self._running:
            return
        self._running = False
        logger.info("[ws] stopping client")

        if self._reconnect_timer is not None:
            self._reconnect_timer.cancel()
            self._reconnect_timer = None

        websocket = self.websocket
        self.websocket = None
        try:
            if websocket is not None:
                if websocket.state in (State.CONNECTING, State.OPEN):
                    self._close_task = self._track(
                        asyncio.get_running_loop().create_task(self._close_quietly(websocket))
                    )
            elif self._connection_task is not None and not self._connection_task.done():
                # Opening handshake still in flight
                self._connection_task.cancel()
        except RuntimeError as e:
            logger.debug(f"[ws] could not schedule close: {e}")

    async def wait_closed(self) -> None:
        """Wait for connection, close and in-flight message tasks to settle."""
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    def _track(self, task: asyncio.Task) -> asyncio.Task:
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _is_current(self, generation: int) -> bool:
        return self._running and generation == self._generation

    def _spawn_connect(self, generation: int) -> None:
        self._reconnect_timer = None
        if not self._is_current(generation):
            return
        self._connection_task = self._track(
            asyncio.get_running_loop().create_task(self._connect(generation))
        )

    async def _connect(self, generation: int) -> None:
        if not self._is_current(generation):
            return

        try:
            logger.info(f"[ws] connecting -> {self.url}")
            websocket = await self._connector(self.url, **self._connect_options)
        except asyncio.CancelledError:
            logger.info("[ws] connection attempt cancelled")
            raise
        except Exception as e:
            logger.error(f"[ws] connection error: {e}")
            self._schedule_reconnect(generation)
            return

        if not self._is_current(generation):
            await self._close_quietly(websocket)
            return

        self.websocket = websocket
        self.stats['connection_count'] += 1
        await self._run_session(websocket, generation)

    async def _run_session(self, websocket, generation: int) -> None:
        try:
            await self._on_open(websocket)
            async for message in websocket:
                self._on_message(message)
        except ConnectionClosedOK:
            pass
        except ConnectionClosed as e:
            self._on_error(e)
        except Exception as e:
            self._on_error(e)
            await self._close_quietly(websocket, INTERNAL_ERROR, "internal error")
        finally:
            if self.websocket is websocket:
                self.websocket = None

        self._on_close(websocket.close_code, websocket.close_reason, generation)

    async def _on_open(self, websocket) -> None:
        self._reconnect_attempts = 0
        logger.info("[ws] connected. sending subscribe payload...")
        await websocket.send(self.subscribe_request.to_wire())

    def _on_message(self, message: Any) -> None:
        self.stats['messages_received'] += 1
        self.stats['last_message_time'] = time.time()

        if is_blob(message):
            # Logged when materialized, so blob lines follow completion order
            self._track(asyncio.get_running_loop().create_task(self._handle_blob(message)))
            return

        try:
            text = decode_payload(message)
        except Exception as e:
            self._on_decode_error(e)
            return
        self._log_message(text)

    async def _handle_blob(self, blob: Any) -> None:
        try:
            text = await normalize_payload(blob)
        except Exception as e:
            self._on_decode_error(e)
            return
        self._log_message(text)

    def _log_message(self, text: str) -> None:
        self.stats['messages_logged'] += 1
        logger.info(f"[ws] message: {text}")

    def _on_decode_error(self, error: Exception) -> None:
        self.stats['decode_errors'] += 1
        logger.error(f"[ws] error parsing message: {error!r}")

    def _on_error(self, error: Exception) -> None:
        logger.error(f"[ws] error: {error!r}")

    def _on_close(self, code: Optional[int], reason: Optional[str], generation: int) -> None:
        if code is None:
            code = ABNORMAL_CLOSURE
        logger.warning(f"[ws] closed (code={code}, reason={reason or ''}).")
        self._schedule_reconnect(generation)

    def _schedule_reconnect(self, generation: int) -> None:
        if not self._is_current(generation):
            return

        max_attempts = self.reconnect_config.max_attempts
        if max_attempts is not None and self._reconnect_attempts >= max_attempts:
            logger.error(f"[ws] giving up after {self._reconnect_attempts} reconnect attempts")
            self._running = False
            return

        self._reconnect_attempts += 1
        cfg = self.reconnect_config
        delay = reconnect_delay_ms(
            self._reconnect_attempts,
            base_delay_ms=cfg.base_delay_ms,
            max_delay_ms=cfg.max_delay_ms,
            max_exponent=cfg.max_exponent,
            jitter_ms=cfg.jitter_ms,
            rng=self._rng
        )
        logger.info(f"[ws] reconnecting in {delay}ms (attempt {self._reconnect_attempts})...")
        self._reconnect_timer = asyncio.get_running_loop().call_later(
            delay / 1000, self._spawn_connect, generation
        )

    async def _close_quietly(
        self,
        websocket,
        code: int = NORMAL_CLOSURE,
        reason: str = SHUTDOWN_REASON
    ) -> None:
        try:
            await websocket.close(code, reason)
        except Exception as e:
            logger.debug(f"[ws] ignoring error while closing: {e!r}")

    def get_stats(self) -> Dict[str, Any]:
        """Get connection and message statistics."""
        last_message_age = None
        if self.stats['last_message_time']:
            last_message_age = time.time() - self.stats['last_message_time']

        return {
            **self.stats,
            'last_message_age_seconds': last_message_age,
            'is_connected': self.is_connected,
            'running': self._running,
            'reconnect_attempts': self._reconnect_attempts,
            'reconnect_pending': self._reconnect_timer is not None
        }

    async def health_check(self) -> Dict[str, Any]:
        """Report ``healthy`` when connected, ``degraded`` while reconnecting, ``stopped`` otherwise."""
        stats = self.get_stats()
        issues = []

        if not stats['running']:
            status = 'stopped'
        elif stats['is_connected']:
            status = 'healthy'
        else:
            status = 'degraded'
            issues.append(f"WebSocket not connected (attempt {stats['reconnect_attempts']})")

        if stats['decode_errors']:
            issues.append(f"{stats['decode_errors']} messages could not be decoded")

        return {
            'status': status,
            'issues': issues,
            'stats': stats
        }
