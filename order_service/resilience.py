"""
resilience.py — Resilience Policies for Remote Calls

This module wraps a single remote operation with four composed behaviors,
applied in this nesting order (outermost first):

    Fallback ⊃ CircuitBreaker ⊃ Retry ⊃ TimeLimiter ⊃ operation

Components:
    • TimeLimiter    — bounds every attempt; an overrun cancels the attempt.
    • Retry          — re-invokes a failed attempt with exponential backoff.
    • CircuitBreaker — shared per policy name; stops calling a failing dependency.
    • Fallback       — synchronous substitute invoked with (request, failure).

Only raised exceptions count as failures. A returned value is a success for
every layer, even if its business payload signals a negative result.
"""

import asyncio
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass
from enum import Enum

log = logging.getLogger(__name__)


class CircuitState(str, Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


class AttemptTimeoutError(Exception):
    """A single attempt exceeded the time limit and was cancelled."""


class CallNotPermittedError(Exception):
    """The circuit breaker rejected the call without attempting it."""

    def __init__(self, name: str, state: CircuitState):
        super().__init__(f"Circuit breaker '{name}' is {state.value} and does not permit further calls")
        self.name = name
        self.state = state


class FallbackError(Exception):
    """The fallback raised instead of returning a substitute value."""

    def __init__(self, name: str, cause: BaseException):
        super().__init__(f"Fallback of policy '{name}' failed after {cause!r}")
        self.name = name
        self.cause = cause


@dataclass(frozen=True)
class PolicyConfig:
    """
    Settings of one named resilience policy.

    Attributes:
        timeout_s (float): Time limit per attempt.
        max_attempts (int): Total attempts including the first one.
        wait_s (float): Backoff before the second attempt.
        backoff_multiplier (float): Growth factor of the backoff per attempt.
        max_wait_s (float): Upper bound for a single backoff.
        failure_rate_threshold (float): Failure rate in percent that opens the circuit.
        sliding_window_size (int): Number of recent calls the failure rate is computed over.
        minimum_number_of_calls (int): Calls required in the window before the rate is evaluated.
        wait_in_open_state_s (float): Cool-down before an open circuit admits trial calls.
        permitted_calls_in_half_open_state (int): Concurrent trial calls while half-open.
    """
    timeout_s: float = 3.0
    max_attempts: int = 3
    wait_s: float = 0.5
    backoff_multiplier: float = 2.0
    max_wait_s: float = 5.0
    failure_rate_threshold: float = 50.0
    sliding_window_size: int = 5
    minimum_number_of_calls: int = 5
    wait_in_open_state_s: float = 5.0
    permitted_calls_in_half_open_state: int = 3

    def __post_init__(self):
        if self.timeout_s <= 0:
            raise ValueError("timeout_s must be positive")
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if not 0 < self.failure_rate_threshold <= 100:
            raise ValueError("failure_rate_threshold must be in (0, 100]")
        if self.sliding_window_size < 1 or self.minimum_number_of_calls < 1:
            raise ValueError("sliding_window_size and minimum_number_of_calls must be at least 1")
        if self.permitted_calls_in_half_open_state < 1:
            raise ValueError("permitted_calls_in_half_open_state must be at least 1")


class TimeLimiter:
    """Bounds a single attempt to `timeout_s` seconds."""

    def __init__(self, timeout_s: float):
        self.timeout_s = timeout_s

    async def call(self, operation, *args):
        # wait_for cancels the attempt and waits for it to unwind before raising
        try:
            return await asyncio.wait_for(operation(*args), timeout=self.timeout_s)
        except asyncio.TimeoutError as e:
            raise AttemptTimeoutError(f"Attempt exceeded {self.timeout_s}s") from e


class Retry:
    """
    Re-invokes an operation on any exception, up to `max_attempts` attempts.

    The backoff before attempt n+1 is `wait_s * backoff_multiplier ** (n - 1)`,
    capped at `max_wait_s`. The last failure is re-raised once all attempts are
    used.
    """

    def __init__(self, name, max_attempts=3, wait_s=0.5, backoff_multiplier=2.0, max_wait_s=5.0,
                 sleep=asyncio.sleep):
        self.name = name
        self.max_attempts = max_attempts
        self.wait_s = wait_s
        self.backoff_multiplier = backoff_multiplier
        self.max_wait_s = max_wait_s
        self._sleep = sleep

    def backoff(self, attempt: int) -> float:
        return min(self.wait_s * self.backoff_multiplier ** (attempt - 1), self.max_wait_s)

    async def call(self, operation, *args):
        attempt = 0
        while True:
            attempt += 1
            try:
                return await operation(*args)
            except Exception as e:
                if attempt >= self.max_attempts:
                    log.error(f"[Policy: {self.name}] Versuch {attempt}/{self.max_attempts} fehlgeschlagen, "
                              f"keine weiteren Versuche: {e!r}")
                    raise
                delay = self.backoff(attempt)
                log.warning(f"[Policy: {self.name}] Versuch {attempt}/{self.max_attempts} fehlgeschlagen ({e!r}). "
                            f"Neuer Versuch in {delay:.2f}s.")
                await self._sleep(delay)


@dataclass(frozen=True)
class CircuitMetrics:
    state: CircuitState
    buffered_calls: int
    failed_calls: int

    @property
    def failure_rate(self) -> float:
        if not self.buffered_calls:
            return 0.0
        return 100.0 * self.failed_calls / self.buffered_calls


class CircuitBreaker:
    """
    Count-based circuit breaker shared by all callers of one policy name.

    State machine:
        CLOSED    → OPEN      failure rate over the sliding window reaches the threshold
        OPEN      → HALF_OPEN cool-down elapsed (checked lazily on the next access)
        HALF_OPEN → CLOSED    a trial call succeeded
        HALF_OPEN → OPEN      a trial call failed

    Every state change bumps a generation counter. Outcomes of calls admitted
    under an older generation are dropped, so a slow call started while CLOSED
    cannot close or re-open the circuit after it has moved on.

    Listeners are called as `listener(name, old_state, new_state)` while the
    internal lock is held; they must not block.
    """

    def __init__(self, name, failure_rate_threshold=50.0, sliding_window_size=5, minimum_number_of_calls=5,
                 wait_in_open_state_s=5.0, permitted_calls_in_half_open_state=3, clock=time.monotonic):
        self.name = name
        self.failure_rate_threshold = failure_rate_threshold
        self.minimum_number_of_calls = minimum_number_of_calls
        self.wait_in_open_state_s = wait_in_open_state_s
        self.permitted_calls_in_half_open_state = permitted_calls_in_half_open_state
        self._clock = clock
        self._lock = threading.RLock()
        self._state = CircuitState.CLOSED
        self._generation = 0
        self._window = deque(maxlen=sliding_window_size)
        self._opened_at = None
        self._trials_in_flight = 0
        self._listeners = []

    @property
    def state(self) -> CircuitState:
        with self._lock:
            self._refresh()
            return self._state

    def add_listener(self, listener):
        self._listeners.append(listener)

    def metrics(self) -> CircuitMetrics:
        with self._lock:
            self._refresh()
            return CircuitMetrics(
                state=self._state,
                buffered_calls=len(self._window),
                failed_calls=sum(self._window)
            )

    def acquire_permission(self) -> int:
        """
        Admits a call or rejects it.

        Returns:
            int: The state generation the call was admitted under.

        Raises:
            CallNotPermittedError: If the circuit is open, or half-open with all trial slots taken.
        """
        with self._lock:
            self._refresh()
            if self._state is CircuitState.OPEN:
                raise CallNotPermittedError(self.name, self._state)
            if self._state is CircuitState.HALF_OPEN:
                if self._trials_in_flight >= self.permitted_calls_in_half_open_state:
                    raise CallNotPermittedError(self.name, self._state)
                self._trials_in_flight += 1
            return self._generation

    def on_success(self, generation: int):
        with self._lock:
            if generation != self._generation:
                return
            if self._state is CircuitState.HALF_OPEN:
                self._trials_in_flight -= 1
                self._transition(CircuitState.CLOSED)
                return
            self._window.append(False)

    def on_failure(self, generation: int):
        with self._lock:
            if generation != self._generation:
                return
            if self._state is CircuitState.HALF_OPEN:
                self._trials_in_flight -= 1
                self._transition(CircuitState.OPEN)
                return
            self._window.append(True)
            if len(self._window) >= self.minimum_number_of_calls:
                failure_rate = 100.0 * sum(self._window) / len(self._window)
                if failure_rate >= self.failure_rate_threshold:
                    log.warning(f"[Policy: {self.name}] Fehlerquote {failure_rate:.0f}% "
                                f">= {self.failure_rate_threshold:.0f}%. Circuit wird geöffnet.")
                    self._transition(CircuitState.OPEN)

    def release(self, generation: int):
        """Gives back a permission without recording an outcome (e.g. on cancellation)."""
        with self._lock:
            if generation == self._generation and self._state is CircuitState.HALF_OPEN:
                self._trials_in_flight -= 1

    async def call(self, operation, *args):
        generation = self.acquire_permission()
        try:
            result = await operation(*args)
        except Exception:
            self.on_failure(generation)
            raise
        except BaseException:
            self.release(generation)
            raise
        self.on_success(generation)
        return result

    def _refresh(self):
        if (self._state is CircuitState.OPEN
                and self._clock() - self._opened_at >= self.wait_in_open_state_s):
            self._transition(CircuitState.HALF_OPEN)

    def _transition(self, new_state: CircuitState):
        old_state = self._state
        self._state = new_state
        self._generation += 1
        self._trials_in_flight = 0
        if new_state is CircuitState.OPEN:
            self._opened_at = self._clock()
        if new_state is CircuitState.CLOSED:
            self._window.clear()
        log.info(f"[Policy: {self.name}] Circuit-Zustand: {old_state.value} -> {new_state.value}")
        for listener in self._listeners:
            listener(self.name, old_state, new_state)


class ResiliencePolicy:
    """
    One named policy: Fallback ⊃ CircuitBreaker ⊃ Retry ⊃ TimeLimiter ⊃ operation.
    """

    def __init__(self, name: str, config: PolicyConfig, clock=time.monotonic, sleep=asyncio.sleep):
        self.name = name
        self.config = config
        self.time_limiter = TimeLimiter(config.timeout_s)
        self.retry = Retry(
            name,
            max_attempts=config.max_attempts,
            wait_s=config.wait_s,
            backoff_multiplier=config.backoff_multiplier,
            max_wait_s=config.max_wait_s,
            sleep=sleep
        )
        self.circuit_breaker = CircuitBreaker(
            name,
            failure_rate_threshold=config.failure_rate_threshold,
            sliding_window_size=config.sliding_window_size,
            minimum_number_of_calls=config.minimum_number_of_calls,
            wait_in_open_state_s=config.wait_in_open_state_s,
            permitted_calls_in_half_open_state=config.permitted_calls_in_half_open_state,
            clock=clock
        )

    async def execute(self, operation, request, fallback):
        """
        Runs `operation(request)` under this policy.

        Args:
            operation: Coroutine function taking the request.
            request: The original request, passed to the operation and to the fallback.
            fallback: Synchronous callable `(request, exc) -> value`. Should not raise.

        Returns:
            The operation's result, or the fallback's value on any policy failure.

        Raises:
            FallbackError: If the fallback itself raised; chained to the fallback's exception.
        """
        async def limited(req):
            return await self.time_limiter.call(operation, req)

        async def retried(req):
            return await self.retry.call(limited, req)

        try:
            return await self.circuit_breaker.call(retried, request)
        except CallNotPermittedError as e:
            log.warning(f"[Policy: {self.name}] Circuit {e.state.value}: Aufruf ohne Versuch abgewiesen. Fallback aktiv.")
            return self._fallback(fallback, request, e)
        except Exception as e:
            log.error(f"[Policy: {self.name}] Alle Versuche fehlgeschlagen ({e!r}). Fallback aktiv.")
            return self._fallback(fallback, request, e)

    def _fallback(self, fallback, request, exc):
        try:
            return fallback(request, exc)
        except Exception as fallback_exc:
            log.critical(f"[Policy: {self.name}] Fallback fehlgeschlagen: {fallback_exc!r} (Ursache: {exc!r})")
            raise FallbackError(self.name, exc) from fallback_exc


class ResiliencePolicyExecutor:
    """
    Registry of named policies.

    Policies are created on first use and shared, so every concurrent caller of
    the same name sees the same circuit breaker. Names without an explicit
    configuration use the `PolicyConfig` defaults.
    """

    def __init__(self, configs=None, clock=time.monotonic, sleep=asyncio.sleep):
        self._configs = dict(configs or {})
        self._clock = clock
        self._sleep = sleep
        self._policies = {}
        self._lock = threading.Lock()

    def policy(self, name: str) -> ResiliencePolicy:
        with self._lock:
            policy = self._policies.get(name)
            if policy is None:
                config = self._configs.get(name, PolicyConfig())
                policy = ResiliencePolicy(name, config, clock=self._clock, sleep=self._sleep)
                self._policies[name] = policy
            return policy

    def circuit_states(self) -> dict:
        with self._lock:
            policies = list(self._policies.values())
        return {p.name: p.circuit_breaker.state.value for p in policies}

    async def run(self, name, operation, request, fallback):
        """
        Runs `operation(request)` under the policy `name`.

        The fallback is expected to turn any failure into a value. If it raises
        anyway, a FallbackError reaches the caller instead of the original failure.
        """
        return await self.policy(name).execute(operation, request, fallback)
