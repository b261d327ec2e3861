"""
Retry policy and circuit breaker shared by every external call.

One RetryPolicy object carries max attempts, backoff and jitter; one
CircuitBreaker per upstream service tracks consecutive failures. The
rate-limited fetcher, the incremental feed client and the alert webhook all
apply the same two objects instead of keeping their own retry loops.
"""

import asyncio
import enum
import logging
import random
import time
from typing import Awaitable, Callable, Optional, TypeVar

from core.config import Settings, settings as default_settings
from core.exceptions import (
    CircuitOpenError,
    FetchExhaustedError,
    NonRetryableError,
    RateLimitError,
    RetryableError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryPolicy:
    """
    Exponential backoff with jitter and a bounded attempt count.

    Attributes:
        max_attempts: Attempts per request, including the first one
        base_delay: Delay after the first failure, in seconds
        multiplier: Growth factor applied per further failure
        max_delay: Upper bound on the computed backoff
        jitter: Fraction of the delay added at random (0.25 -> up to +25%)
        rate_limit_floor: Minimum wait after a 429 without Retry-After
    """

    def __init__(
        self,
        max_attempts: int = 7,
        base_delay: float = 20.0,
        multiplier: float = 1.5,
        max_delay: float = 300.0,
        jitter: float = 0.25,
        rate_limit_floor: float = 0.0,
        rng: Optional[random.Random] = None,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.multiplier = multiplier
        self.max_delay = max_delay
        self.jitter = jitter
        self.rate_limit_floor = rate_limit_floor
        self._rng = rng or random.Random()

    @classmethod
    def from_settings(cls, config: Settings = default_settings) -> "RetryPolicy":
        return cls(
            max_attempts=config.FETCH_MAX_ATTEMPTS,
            base_delay=config.FETCH_BASE_DELAY_SECONDS,
            multiplier=config.FETCH_BACKOFF_MULTIPLIER,
            max_delay=config.FETCH_MAX_DELAY_SECONDS,
            jitter=config.FETCH_JITTER,
            rate_limit_floor=config.RATE_LIMIT_EXTRA_WAIT_SECONDS,
        )

    def delay_for(self, failures: int, error: Optional[BaseException] = None) -> float:
        """
        Seconds to wait after ``failures`` failed attempts.

        A server-provided Retry-After is honoured even when it exceeds
        max_delay.
        """
        delay = min(self.max_delay, self.base_delay * (self.multiplier ** max(0, failures - 1)))
        if self.jitter:
            delay += delay * self.jitter * self._rng.random()
        if isinstance(error, RateLimitError):
            floor = error.retry_after if error.retry_after is not None else self.rate_limit_floor
            delay = max(delay, floor)
        return delay

    def should_retry(self, error: BaseException, failures: int) -> bool:
        return isinstance(error, RetryableError) and failures < self.max_attempts

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        describe: str,
        breaker: Optional["CircuitBreaker"] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> T:
        """
        Run a single-shot async operation under this policy.

        Circuit-open rejections wait out the cooldown and are not counted as
        attempts. Non-retryable errors propagate immediately.

        Raises:
            FetchExhaustedError: When every attempt failed with a retryable error
        """
        failures = 0
        while True:
            probing = False
            if breaker is not None:
                try:
                    probing = breaker.before_request()
                except CircuitOpenError as e:
                    logger.info(
                        f"{describe}: circuit '{breaker.name}' open, waiting {e.retry_in:.1f}s",
                        extra={"resource_id": describe, "attempt": failures + 1,
                               "wait_seconds": e.retry_in, "outcome": "circuit_open"},
                    )
                    await sleep(e.retry_in)
                    continue

            attempt = failures + 1
            try:
                result = await operation()
            except RetryableError as e:
                failures += 1
                if breaker is not None:
                    breaker.record_failure()
                if not self.should_retry(e, failures):
                    logger.error(
                        f"{describe}: attempt {attempt}/{self.max_attempts} failed, giving up: {e.message}",
                        extra={"resource_id": describe, "attempt": attempt,
                               "wait_seconds": 0, "outcome": "exhausted"},
                    )
                    raise FetchExhaustedError(describe, failures, e)
                delay = self.delay_for(failures, e)
                logger.warning(
                    f"{describe}: attempt {attempt}/{self.max_attempts} failed "
                    f"({type(e).__name__}), retrying in {delay:.1f}s",
                    extra={"resource_id": describe, "attempt": attempt,
                           "wait_seconds": delay, "outcome": "retry"},
                )
                await sleep(delay)
                continue
            except NonRetryableError:
                if breaker is not None:
                    breaker.record_success()
                raise
            except BaseException:
                if probing:
                    breaker.release_probe()
                raise

            if breaker is not None:
                breaker.record_success()
            logger.debug(
                f"{describe}: attempt {attempt} succeeded",
                extra={"resource_id": describe, "attempt": attempt,
                       "wait_seconds": 0, "outcome": "success"},
            )
            return result


class CircuitState(str, enum.Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """
    Three-state circuit breaker.

    - Closed: requests pass; consecutive failures are counted
    - Open: requests fail fast until the cooldown elapses
    - Half-Open: exactly one probe passes; success closes the circuit,
      failure reopens it with double the previous cooldown (capped)
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        cooldown: float = 60.0,
        max_cooldown: float = 900.0,
        probe_wait: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.base_cooldown = cooldown
        self.max_cooldown = max_cooldown
        self.probe_wait = probe_wait
        self._clock = clock

        self._state = CircuitState.CLOSED
        self._failures = 0
        self._cooldown = cooldown
        self._open_until = 0.0
        self._probe_in_flight = False

    @classmethod
    def from_settings(cls, name: str, config: Settings = default_settings) -> "CircuitBreaker":
        return cls(
            name=name,
            failure_threshold=config.CIRCUIT_FAILURE_THRESHOLD,
            cooldown=config.CIRCUIT_COOLDOWN_SECONDS,
            max_cooldown=config.CIRCUIT_MAX_COOLDOWN_SECONDS,
        )

    @property
    def state(self) -> CircuitState:
        if self._state is CircuitState.OPEN and self._clock() >= self._open_until:
            self._state = CircuitState.HALF_OPEN
            self._probe_in_flight = False
            logger.info(f"Circuit '{self.name}' half-open, allowing one probe")
        return self._state

    @property
    def consecutive_failures(self) -> int:
        return self._failures

    @property
    def current_cooldown(self) -> float:
        return self._cooldown

    def before_request(self) -> bool:
        """
        Admit or reject a request. Returns True when the request is the
        half-open probe; its caller must record an outcome or release it.

        Raises:
            CircuitOpenError: While open, or while the half-open probe is out
        """
        state = self.state
        if state is CircuitState.CLOSED:
            return False
        if state is CircuitState.OPEN:
            raise CircuitOpenError(
                f"Circuit '{self.name}' is open",
                retry_in=max(0.0, self._open_until - self._clock()),
                context={"circuit": self.name},
            )
        if self._probe_in_flight:
            raise CircuitOpenError(
                f"Circuit '{self.name}' is probing",
                retry_in=self.probe_wait,
                context={"circuit": self.name},
            )
        self._probe_in_flight = True
        return True

    def release_probe(self) -> None:
        """Hand back a probe that ended without a recorded outcome"""
        if self._state is CircuitState.HALF_OPEN and self._probe_in_flight:
            self._probe_in_flight = False
            logger.info(f"Circuit '{self.name}' probe released without an outcome")

    def record_success(self) -> None:
        if self._state is not CircuitState.CLOSED:
            logger.info(f"Circuit '{self.name}' closed")
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._cooldown = self.base_cooldown
        self._probe_in_flight = False

    def record_failure(self) -> None:
        state = self.state
        if state is CircuitState.HALF_OPEN:
            self._cooldown = min(self._cooldown * 2, self.max_cooldown)
            self._open()
            return
        if state is CircuitState.OPEN:
            # late failure of a request admitted before the circuit opened
            return
        self._failures += 1
        if self._failures >= self.failure_threshold:
            self._open()

    def _open(self) -> None:
        self._state = CircuitState.OPEN
        self._open_until = self._clock() + self._cooldown
        self._probe_in_flight = False
        logger.warning(
            f"Circuit '{self.name}' opened after {self._failures} consecutive failures; "
            f"cooling down for {self._cooldown:.0f}s"
        )
