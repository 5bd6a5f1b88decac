from __future__ import annotations

import asyncio
import logging
import random
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from redis.asyncio import Redis

from smartchat.core.config import get_settings
from smartchat.core.errors import IntegrationUnavailableError
from smartchat.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


_redis_pool: Redis | None = None
_redis_loop: asyncio.AbstractEventLoop | None = None
_redis_lock = asyncio.Lock()


async def get_resilience_redis() -> Redis | None:
    # Reuse a shared Redis connection for breaker coordination.
    settings = get_settings()
    if not settings.cb_redis_enabled:
        return None
    try:
        current_loop = asyncio.get_running_loop()
    except RuntimeError:
        return None
    global _redis_pool, _redis_loop
    if _redis_pool is not None and _redis_loop == current_loop:
        return _redis_pool
    if _redis_pool is not None and _redis_loop != current_loop:
        _redis_pool = None
    async with _redis_lock:
        if _redis_pool is None:
            try:
                _redis_pool = Redis.from_url(settings.redis_url, encoding="utf-8", decode_responses=True)
                _redis_loop = current_loop
            except Exception as exc:  # noqa: BLE001 - Redis might be unavailable in dev
                logger.warning("resilience_redis_unavailable", exc_info=exc)
                return None
    return _redis_pool


@dataclass(frozen=True)
class RetryPolicy:
    timeout_ms: int
    max_attempts: int
    backoff_ms: int


async def retry_async(
    func: Callable[[], Awaitable[Any]],
    *,
    policy: RetryPolicy,
    retryable: Callable[[Exception], bool],
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> Any:
    # Jittered exponential backoff; `retryable` decides which failures are transient.
    attempt = 1
    while True:
        try:
            return await asyncio.wait_for(func(), timeout=policy.timeout_ms / 1000.0)
        except Exception as exc:  # noqa: BLE001 - caller handles non-transient failures
            if attempt >= max(policy.max_attempts, 1) or not retryable(exc):
                raise
            increment_counter("external_retries_total")
            jitter = random.uniform(0.5, 1.5)
            sleep_s = (policy.backoff_ms / 1000.0) * (2 ** (attempt - 1)) * jitter
            logger.info("external_retry attempt=%d error=%s sleep_s=%.3f", attempt, type(exc).__name__, sleep_s)
            await sleep(sleep_s)
            attempt += 1


@dataclass(frozen=True)
class CircuitBreakerConfig:
    failure_threshold: int
    open_seconds: int
    half_open_trials: int


@dataclass
class CircuitBreakerState:
    state: str
    failures: int
    opened_at: float | None
    half_open_trials: int


class CircuitBreaker:
    def __init__(
        self,
        name: str,
        *,
        redis: Redis | None = None,
        config: CircuitBreakerConfig | None = None,
        time_source: Callable[[], float] | None = None,
    ) -> None:
        settings = get_settings()
        self._name = name
        self._redis = redis
        self._config = config or CircuitBreakerConfig(
            failure_threshold=settings.cb_failure_threshold,
            open_seconds=settings.cb_open_seconds,
            half_open_trials=settings.cb_half_open_trials,
        )
        self._time = time_source or time.monotonic
        self._local_state = CircuitBreakerState("closed", 0, None, 0)

    @property
    def name(self) -> str:
        return self._name

    def _key(self) -> str:
        return f"{get_settings().cb_redis_prefix}:{self._name}"

    async def _load(self) -> CircuitBreakerState:
        # Read breaker state from Redis when available; otherwise fall back to local.
        if self._redis is None:
            return self._local_state
        raw = await self._redis.hgetall(self._key())
        if not raw:
            return self._local_state
        state = raw.get("state", "closed")
        failures = int(raw.get("failures", 0))
        opened_at = float(raw["opened_at"]) if raw.get("opened_at") else None
        half_open_trials = int(raw.get("half_open_trials", 0))
        return CircuitBreakerState(state, failures, opened_at, half_open_trials)

    async def _save(self, state: CircuitBreakerState) -> None:
        if self._redis is None:
            self._local_state = state
            return
        payload = {
            "state": state.state,
            "failures": str(state.failures),
            "opened_at": "" if state.opened_at is None else str(state.opened_at),
            "half_open_trials": str(state.half_open_trials),
        }
        await self._redis.hset(self._key(), mapping=payload)
        ttl = max(self._config.open_seconds * 4, 60)
        await self._redis.expire(self._key(), ttl)

    async def _transition(self, state: CircuitBreakerState, target: str) -> CircuitBreakerState:
        if state.state != target:
            logger.warning("circuit_breaker_transition name=%s from=%s to=%s", self._name, state.state, target)
            increment_counter(f"circuit_breaker_transition_total.{self._name}.{target}")
        return CircuitBreakerState(target, 0, self._time() if target == "open" else None, 0)

    async def before_call(self) -> CircuitBreakerState:
        # Decide whether calls are allowed and update half-open counters.
        state = await self._load()
        now = self._time()
        if state.state == "open":
            if state.opened_at is not None and (now - state.opened_at) >= self._config.open_seconds:
                state = await self._transition(state, "half_open")
                await self._save(state)
            else:
                raise IntegrationUnavailableError(f"{self._name} is temporarily unavailable")
        if state.state == "half_open":
            if state.half_open_trials >= self._config.half_open_trials:
                raise IntegrationUnavailableError(f"{self._name} is temporarily unavailable")
            state.half_open_trials += 1
            await self._save(state)
        return state

    async def record_success(self) -> None:
        state = await self._load()
        if state.state != "closed":
            state = await self._transition(state, "closed")
        else:
            state.failures = 0
            state.half_open_trials = 0
        await self._save(state)

    async def record_failure(self) -> None:
        state = await self._load()
        if state.state == "half_open":
            state = await self._transition(state, "open")
            await self._save(state)
            return
        failures = state.failures + 1
        if failures >= self._config.failure_threshold:
            state = await self._transition(state, "open")
        else:
            state.failures = failures
        await self._save(state)
