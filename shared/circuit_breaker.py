"""
Circuit breakers for the calendar of record and the notification channel.

When Google Calendar or Telegram is down, every booking and every
notification run would otherwise wait for its own timeout and retries. A
breaker counts consecutive system failures per service and, once `fail_max`
is reached, rejects calls immediately with pybreaker.CircuitBreakerError
until `reset_timeout` seconds have passed. The next call is then a trial:
success closes the circuit, failure reopens it.

The scheduling core never sees the breaker directly. Adapters wrap their
calls with call_with_breaker() and map the rejection to their domain error,
so a lesson whose calendar push was rejected is simply left for the
pending-sync sweep.

Usage:
    from shared.circuit_breaker import calendar_breaker, call_with_breaker

    event_id = await call_with_breaker(calendar_breaker, self._execute, request)
"""

import logging
import time
from typing import Any, Callable

import pybreaker

logger = logging.getLogger(__name__)


class BreakerStateLogger(pybreaker.CircuitBreakerListener):
    """Log transitions at a level matching their severity."""

    def state_change(self, cb: pybreaker.CircuitBreaker, old_state, new_state) -> None:
        if new_state.name == pybreaker.STATE_OPEN:
            logger.warning(
                f"Circuit '{cb.name}' opened after {cb.fail_counter} failures, "
                f"rejecting calls for {cb.reset_timeout}s"
            )
        elif new_state.name == pybreaker.STATE_CLOSED:
            logger.info(f"Circuit '{cb.name}' closed ({old_state.name} -> closed)")
        else:
            logger.info(f"Circuit '{cb.name}' {old_state.name} -> {new_state.name}")

    def failure(self, cb: pybreaker.CircuitBreaker, exc: BaseException) -> None:
        logger.debug(
            f"Circuit '{cb.name}' failure {cb.fail_counter}/{cb.fail_max}: "
            f"{type(exc).__name__}: {exc}"
        )


# One breaker per external service, keyed by name
_breakers: dict[str, pybreaker.CircuitBreaker] = {}
# Monotonic time each breaker was last opened by call_with_breaker
_opened_at: dict[str, float] = {}
_state_logger = BreakerStateLogger()


def get_circuit_breaker(
    name: str,
    fail_max: int = 5,
    reset_timeout: int = 30,
    exclude: list[type] | None = None,
) -> pybreaker.CircuitBreaker:
    """
    Return the breaker registered under `name`, creating it on first use.

    Args:
        name: Service name, also used in logs and health output
        fail_max: Consecutive system failures that open the circuit
        reset_timeout: Seconds the circuit stays open before a trial call
        exclude: Exception types that are business errors, not outages
    """
    breaker = _breakers.get(name)
    if breaker is None:
        breaker = pybreaker.CircuitBreaker(
            name=name,
            fail_max=fail_max,
            reset_timeout=reset_timeout,
            exclude=exclude or [],
            listeners=[_state_logger],
        )
        _breakers[name] = breaker
        logger.debug(f"Registered circuit '{name}' (fail_max={fail_max}, reset={reset_timeout}s)")
    return breaker


# Calendar API outages are usually short; retry the circuit quickly
calendar_breaker = get_circuit_breaker("google_calendar", fail_max=5, reset_timeout=15)

# Chat rejections come back as `ok: false` and never count as failures
notifier_breaker = get_circuit_breaker("telegram", fail_max=5, reset_timeout=60)


async def call_with_breaker(
    breaker: pybreaker.CircuitBreaker,
    func: Callable,
    *args,
    **kwargs,
) -> Any:
    """
    Await `func(*args, **kwargs)` under `breaker`.

    pybreaker's call_async() requires Tornado, so the state machine is
    driven here: fail fast while open, count system errors toward opening,
    and close again after a successful trial call.

    Raises:
        pybreaker.CircuitBreakerError: The circuit is open
        Exception: Whatever `func` raised
    """
    if breaker.current_state == pybreaker.STATE_OPEN:
        opened_at = _opened_at.setdefault(breaker.name, time.monotonic())
        if time.monotonic() - opened_at < breaker.reset_timeout:
            raise pybreaker.CircuitBreakerError(f"Circuit '{breaker.name}' is open")
        breaker.half_open()

    try:
        result = await func(*args, **kwargs)
    except Exception as e:
        if breaker.is_system_error(e):
            breaker._state_storage.increment_counter()
            for listener in breaker.listeners:
                listener.failure(breaker, e)
            if (
                breaker.current_state == pybreaker.STATE_HALF_OPEN
                or breaker.fail_counter >= breaker.fail_max
            ):
                _opened_at[breaker.name] = time.monotonic()
                breaker.open()
        raise

    breaker._state_storage.reset_counter()
    if breaker.current_state == pybreaker.STATE_HALF_OPEN:
        breaker.close()
    return result


def get_breaker_status() -> dict[str, dict[str, Any]]:
    """State of every registered breaker, for the worker health file."""
    return {
        name: {
            "state": breaker.current_state,
            "fail_counter": breaker.fail_counter,
            "reset_timeout": breaker.reset_timeout,
        }
        for name, breaker in _breakers.items()
    }
