"""Redis pub/sub transport used to fan realtime events out across nodes."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

import redis.asyncio as redis_asyncio
from redis.exceptions import RedisError

from app.monitoring.metrics import realtime_transport_restarts_total

logger = logging.getLogger(__name__)

_TRANSIENT_ERRORS: tuple[type[BaseException], ...] = (
    RedisError,
    ConnectionError,
    TimeoutError,
    asyncio.TimeoutError,
)

_RECOVERY_BASE_DELAY = 0.5
_RECOVERY_MAX_DELAY = 30.0

MessageHandler = Callable[[dict[str, Any]], Awaitable[None]]
ConnectHook = Callable[[], Awaitable[None]]

EVENTS_TOPIC = "events"


class TransportUnavailableError(RuntimeError):
    """Raised when the broker is not configured or cannot be reached."""


@dataclass(slots=True)
class BrokerConfig:
    redis_url: str | None
    prefix: str = "banter.realtime"
    node_id: str | None = None


@dataclass(slots=True)
class _Listener:
    topic: str
    channel: str
    handler: MessageHandler
    task: asyncio.Task[Any] | None = None
    pubsub: Any | None = None
    active: bool = True
    pausing: bool = False


class Subscription:
    """Handle returned by :meth:`RedisTransport.subscribe`."""

    def __init__(self, transport: "RedisTransport", listener: _Listener) -> None:
        self._transport = transport
        self._listener = listener

    @property
    def channel(self) -> str:
        return self._listener.channel

    async def close(self) -> None:
        await self._transport._remove_listener(self._listener)


class RedisTransport:
    """JSON pub/sub over Redis with automatic reconnection.

    A reader task per subscribed channel feeds decoded payloads to its
    handler. When a reader dies or a publish fails, a single recovery task
    reconnects with exponential backoff and re-attaches every listener.
    """

    def __init__(self, config: BrokerConfig) -> None:
        self._config = config
        self._redis: Any | None = None
        self._listeners: list[_Listener] = []
        self._recovery_lock = asyncio.Lock()
        self._recovery_task: asyncio.Task[Any] | None = None
        self._connect_hooks: list[ConnectHook] = []

    @property
    def node_id(self) -> str | None:
        return self._config.node_id

    @property
    def configured(self) -> bool:
        return bool(self._config.redis_url)

    @property
    def connected(self) -> bool:
        return self._redis is not None

    async def start(self) -> None:
        if not self._config.redis_url or self._redis is not None:
            return
        client = redis_asyncio.from_url(
            self._config.redis_url,
            encoding="utf-8",
            decode_responses=True,
        )
        try:
            await client.ping()
        except (*_TRANSIENT_ERRORS, OSError) as exc:
            await client.aclose()
            raise TransportUnavailableError("Redis backend is unavailable") from exc
        self._redis = client

    async def stop(self) -> None:
        if self._recovery_task is not None:
            self._recovery_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._recovery_task
            self._recovery_task = None
        for listener in list(self._listeners):
            await self._remove_listener(listener)
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None

    def on_connect(self, hook: ConnectHook) -> None:
        """Run ``hook`` each time recovery brings the broker connection back."""

        if hook not in self._connect_hooks:
            self._connect_hooks.append(hook)

    def schedule_recovery(self, reason: str) -> None:
        self._schedule_recovery(reason)

    def _channel(self, topic: str) -> str:
        prefix = self._config.prefix.rstrip(".")
        return f"{prefix}.{topic}" if prefix else topic

    # ------------------------------------------------------------------
    # Publishing
    # ------------------------------------------------------------------
    async def publish(self, topic: str, payload: dict[str, Any]) -> None:
        if self._redis is None:
            raise TransportUnavailableError("Redis backend is not connected")
        channel = self._channel(topic)
        try:
            await self._redis.publish(channel, json.dumps(payload))
        except _TRANSIENT_ERRORS as exc:
            self._schedule_recovery("publish_failed")
            raise TransportUnavailableError("Redis backend is unavailable") from exc
        logger.debug("Published realtime payload", extra={"channel": channel})

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------
    async def subscribe(self, topic: str, handler: MessageHandler) -> Subscription:
        if self._redis is None:
            raise TransportUnavailableError("Redis backend is not connected")
        listener = _Listener(topic=topic, channel=self._channel(topic), handler=handler)
        self._listeners.append(listener)
        try:
            await self._attach(listener)
        except TransportUnavailableError:
            await self._remove_listener(listener)
            self._schedule_recovery("subscribe_failed")
            raise
        return Subscription(self, listener)

    async def _attach(self, listener: _Listener) -> None:
        if self._redis is None:
            raise TransportUnavailableError("Redis backend is not connected")
        pubsub = self._redis.pubsub()
        try:
            await pubsub.subscribe(listener.channel)
        except _TRANSIENT_ERRORS as exc:
            await pubsub.aclose()
            raise TransportUnavailableError("Redis backend is unavailable") from exc
        listener.pubsub = pubsub
        task = asyncio.create_task(
            self._read(listener, pubsub), name=f"realtime-redis-{listener.channel}"
        )
        listener.task = task
        task.add_done_callback(lambda finished: self._on_reader_done(listener, finished))

    async def _read(self, listener: _Listener, pubsub: Any) -> None:
        try:
            async for message in pubsub.listen():
                if message.get("type") != "message":
                    continue
                raw = message.get("data")
                if not isinstance(raw, str):
                    continue
                try:
                    payload = json.loads(raw)
                except json.JSONDecodeError:
                    logger.warning(
                        "Discarded malformed realtime payload", extra={"channel": listener.channel}
                    )
                    continue
                if isinstance(payload, dict):
                    await listener.handler(payload)
        finally:
            with contextlib.suppress(*_TRANSIENT_ERRORS):
                await pubsub.unsubscribe(listener.channel)
            with contextlib.suppress(*_TRANSIENT_ERRORS):
                await pubsub.aclose()

    def _on_reader_done(self, listener: _Listener, task: asyncio.Task[Any]) -> None:
        listener.task = None
        listener.pubsub = None
        if not listener.active or listener.pausing or task.cancelled():
            return
        exc = task.exception()
        logger.warning(
            "Redis subscription reader stopped; scheduling recovery",
            exc_info=exc,
            extra={"channel": listener.channel},
        )
        self._schedule_recovery("reader_stopped")

    async def _pause(self, listener: _Listener) -> None:
        listener.pausing = True
        task = listener.task
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        listener.task = None
        listener.pubsub = None
        listener.pausing = False

    async def _remove_listener(self, listener: _Listener) -> None:
        listener.active = False
        await self._pause(listener)
        if listener in self._listeners:
            self._listeners.remove(listener)

    # ------------------------------------------------------------------
    # Recovery
    # ------------------------------------------------------------------
    def _schedule_recovery(self, reason: str) -> None:
        if not self._config.redis_url:
            return
        if self._recovery_task is not None and not self._recovery_task.done():
            return
        logger.info("Scheduling Redis realtime recovery", extra={"reason": reason})
        self._recovery_task = asyncio.create_task(
            self._recover(reason), name="realtime-redis-recovery"
        )

    async def _recover(self, reason: str) -> None:
        attempt = 0
        while True:
            await asyncio.sleep(min(_RECOVERY_BASE_DELAY * (2**attempt), _RECOVERY_MAX_DELAY))
            try:
                await self._restart(reason)
            except (TransportUnavailableError, *_TRANSIENT_ERRORS, OSError):
                attempt += 1
                logger.warning(
                    "Redis realtime recovery attempt failed",
                    extra={"attempt": attempt, "reason": reason},
                )
                continue
            break
        self._recovery_task = None
        for hook in list(self._connect_hooks):
            try:
                await hook()
            except Exception:
                logger.exception("Realtime connect hook failed after recovery")

    async def _restart(self, reason: str) -> None:
        async with self._recovery_lock:
            for listener in list(self._listeners):
                await self._pause(listener)
            if self._redis is not None:
                with contextlib.suppress(*_TRANSIENT_ERRORS, OSError):
                    await self._redis.aclose()
                self._redis = None
            await self.start()
            for listener in [item for item in self._listeners if item.active]:
                await self._attach(listener)

        realtime_transport_restarts_total.labels("redis", reason).inc()
        logger.info(
            "Redis realtime backend recovered",
            extra={"reason": reason, "subscriptions": len(self._listeners)},
        )
