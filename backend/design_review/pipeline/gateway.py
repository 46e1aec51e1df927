from __future__ import annotations

import asyncio
import threading
import time
import traceback
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Sequence

from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential

from ..exceptions import (
    CircuitOpenError,
    DesignReviewError,
    FatalConfigError,
    TransientProviderError,
)
from ..inference.base import ModelProvider, ProviderError, ProviderErrorKind, ProviderRequest
from ..logger import logger


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, ProviderError) and exc.retryable


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """
    Consecutive-failure breaker for one operation key.

    Only transient failures count; a provider that answers, even with a
    rejection, is reachable. After the cool-down exactly one caller is let
    through as the half-open trial call and its outcome closes or re-opens the
    circuit.
    """

    def __init__(
        self,
        key: str,
        *,
        failure_threshold: int = 5,
        cooldown_seconds: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.key = key
        self.failure_threshold = failure_threshold
        self.cooldown_seconds = cooldown_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self.state = CircuitState.CLOSED
        self.failures = 0
        self.opened_at: Optional[float] = None
        self._trial_in_flight = False

    def before_call(self) -> None:
        with self._lock:
            if self.state == CircuitState.CLOSED:
                return
            if self.state == CircuitState.OPEN:
                elapsed = self._clock() - (self.opened_at or 0.0)
                if elapsed < self.cooldown_seconds:
                    raise CircuitOpenError(self.key, retry_in_seconds=self.cooldown_seconds - elapsed)
                self.state = CircuitState.HALF_OPEN
                self._trial_in_flight = True
                logger.info("Circuit half-open, admitting one trial call", extra={"operation_key": self.key})
                return
            if self._trial_in_flight:
                raise CircuitOpenError(self.key)
            self._trial_in_flight = True

    def record_success(self) -> None:
        with self._lock:
            if self.state != CircuitState.CLOSED:
                logger.info("Circuit closed", extra={"operation_key": self.key})
            self.state = CircuitState.CLOSED
            self.failures = 0
            self.opened_at = None
            self._trial_in_flight = False

    def record_failure(self) -> None:
        with self._lock:
            self._trial_in_flight = False
            if self.state == CircuitState.HALF_OPEN:
                self._open()
                return
            self.failures += 1
            if self.state == CircuitState.CLOSED and self.failures >= self.failure_threshold:
                self._open()

    def _open(self) -> None:
        self.state = CircuitState.OPEN
        self.opened_at = self._clock()
        logger.warning(
            "Circuit opened",
            extra={
                "operation_key": self.key,
                "consecutive_failures": self.failures,
                "cooldown_seconds": self.cooldown_seconds,
            },
        )


class CircuitBreakerRegistry:
    """Process-wide breaker table keyed by `provider:model`."""

    def __init__(
        self,
        *,
        failure_threshold: int = 5,
        cooldown_seconds: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.failure_threshold = failure_threshold
        self.cooldown_seconds = cooldown_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._breakers: Dict[str, CircuitBreaker] = {}

    def get(self, key: str) -> CircuitBreaker:
        with self._lock:
            breaker = self._breakers.get(key)
            if breaker is None:
                breaker = CircuitBreaker(
                    key,
                    failure_threshold=self.failure_threshold,
                    cooldown_seconds=self.cooldown_seconds,
                    clock=self._clock,
                )
                self._breakers[key] = breaker
            return breaker

    def states(self) -> Dict[str, str]:
        with self._lock:
            return {key: b.state.value for key, b in self._breakers.items()}


@dataclass
class GatewayResult:
    operation_key: str
    provider: str
    ok: bool
    response: Optional[str] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None
    circuit_open: bool = False
    attempts: int = 0
    latency_ms: int = 0

    def to_metadata(self) -> Dict[str, Any]:
        """Per-provider outcome as recorded in stage event metadata (without the raw reply)."""
        data = asdict(self)
        data.pop("response")
        return data

    def raise_for_error(self) -> None:
        """Raise the pipeline exception matching a failed call; no-op when `ok`."""
        if self.ok:
            return
        if self.circuit_open:
            raise CircuitOpenError(self.operation_key)
        if self.error_kind == ProviderErrorKind.TRANSIENT.value:
            raise TransientProviderError(self.error or "Provider temporarily unavailable", self.operation_key)
        if self.error_kind == ProviderErrorKind.FATAL_CONFIG.value:
            raise FatalConfigError(self.error or "Provider is not configured")
        raise DesignReviewError(self.error or "Provider rejected the request", "PROVIDER_REJECTED", 502)


class ProviderGateway:
    def __init__(
        self,
        providers: Mapping[str, ModelProvider],
        breakers: CircuitBreakerRegistry,
        *,
        max_attempts: int = 3,
        backoff_base_seconds: float = 0.5,
        backoff_max_seconds: float = 8.0,
        timeout_seconds: float = 60.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.providers = dict(providers)
        self.breakers = breakers
        self.max_attempts = max(1, max_attempts)
        self.backoff_base_seconds = backoff_base_seconds
        self.backoff_max_seconds = backoff_max_seconds
        self.timeout_seconds = timeout_seconds
        self._sleep = sleep
        self._clock = clock

    async def _call_once(self, provider: ModelProvider, request: ProviderRequest) -> str:
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(provider.call, request, timeout=self.timeout_seconds),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            raise ProviderError(ProviderErrorKind.TRANSIENT, f"timed out after {self.timeout_seconds}s") from e

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.backoff_base_seconds, max=self.backoff_max_seconds),
            retry=retry_if_exception(_is_retryable),
            sleep=self._sleep,
            reraise=True,
        )

    async def _attempt(
        self, provider: ModelProvider, request: ProviderRequest, breaker: CircuitBreaker, result: GatewayResult
    ) -> str:
        breaker.before_call()
        result.attempts += 1
        try:
            response = await self._call_once(provider, request)
        except ProviderError as e:
            result.error = e.message
            result.error_kind = e.kind.value
            if e.retryable:
                breaker.record_failure()
            else:
                breaker.record_success()
            logger.warning(
                f"Provider call failed: {e.message}",
                extra={
                    "operation_key": result.operation_key,
                    "attempt": result.attempts,
                    "error_kind": e.kind.value,
                    "http_status_code": e.status_code,
                },
            )
            raise
        except Exception:
            # adapter bug: not retried, not counted against the breaker
            breaker.record_success()
            raise
        breaker.record_success()
        return response

    async def invoke(self, request: ProviderRequest, operation_key: Optional[str] = None) -> GatewayResult:
        """
        Call one provider with bounded retry behind its circuit breaker.

        Never raises for provider failures: the outcome is always a GatewayResult
        so fan-out callers can settle every branch.
        """
        key = operation_key or request.operation_key
        started = self._clock()
        result = GatewayResult(operation_key=key, provider=request.provider, ok=False)

        provider = self.providers.get(request.provider)
        if provider is None:
            result.error = f"No adapter registered for provider '{request.provider}'"
            result.error_kind = ProviderErrorKind.FATAL_CONFIG.value
            logger.error(result.error, extra={"operation_key": key})
            return result

        breaker = self.breakers.get(key)
        try:
            async for attempt in self._retrying():
                with attempt:
                    response = await self._attempt(provider, request, breaker, result)
        except CircuitOpenError as e:
            if result.attempts == 0:
                result.error = e.message
                result.error_kind = ProviderErrorKind.TRANSIENT.value
                result.circuit_open = True
            logger.warning(
                "Provider call skipped, circuit open",
                extra={"operation_key": key, "attempts": result.attempts},
            )
        except ProviderError:
            # error and kind already recorded by the last attempt
            pass
        except Exception as e:
            result.error = f"{type(e).__name__}: {e}"
            result.error_kind = ProviderErrorKind.INVALID_RESPONSE.value
            logger.error(
                f"Provider adapter raised unexpectedly: {e}",
                extra={"operation_key": key, "attempt": result.attempts, "traceback": traceback.format_exc()},
            )
        else:
            result.ok = True
            result.response = response
            result.error = None
            result.error_kind = None

        result.latency_ms = int((self._clock() - started) * 1000)
        logger.info(
            "Provider call finished",
            extra={
                "operation_key": key,
                "ok": result.ok,
                "attempts": result.attempts,
                "latency_ms": result.latency_ms,
                "error_kind": result.error_kind,
            },
        )
        return result

    async def invoke_many(self, requests: Sequence[ProviderRequest]) -> List[GatewayResult]:
        """Concurrent fan-out; every branch settles, results keep request order."""
        return list(await asyncio.gather(*(self.invoke(r) for r in requests)))
