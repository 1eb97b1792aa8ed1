"""
Readiness Gate - bounded retry until a condition holds.

A probe is a side-effect-free callable returning True when the condition
holds. The gate retries it with exponential backoff until it succeeds or
the deadline elapses, then raises ReadinessTimeoutError.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable

import httpx
from tenacity import (
    RetryCallState,
    RetryError,
    Retrying,
    retry_if_result,
    stop_after_attempt,
    stop_after_delay,
    wait_exponential,
)

from meshverify.core.exceptions import ReadinessTimeoutError
from meshverify.core.logging import get_logger

logger = get_logger("readiness")

Probe = Callable[[], bool]


@dataclass(frozen=True)
class BackoffPolicy:
    """Exponential backoff between probe attempts."""

    initial: float = 0.5
    multiplier: float = 2.0
    max_interval: float = 5.0
    max_attempts: int | None = None


def _not_ready(result: bool) -> bool:
    return not result


def retry_until(
    probe: Probe,
    policy: BackoffPolicy,
    deadline: float,
    description: str = "condition",
    sleep: Callable[[float], None] = time.sleep,
) -> None:
    """Block until probe() is True or the deadline (seconds) elapses."""
    stop = stop_after_delay(deadline)
    if policy.max_attempts is not None:
        stop = stop | stop_after_attempt(policy.max_attempts)

    def _log_wait(retry_state: RetryCallState) -> None:
        logger.debug(
            f"Waiting for {description} (attempt {retry_state.attempt_number}, "
            f"next in {retry_state.next_action.sleep:.1f}s)"
        )

    retrying = Retrying(
        stop=stop,
        wait=wait_exponential(
            multiplier=policy.initial,
            exp_base=policy.multiplier,
            max=policy.max_interval,
        ),
        retry=retry_if_result(_not_ready),
        before_sleep=_log_wait,
        sleep=sleep,
    )

    try:
        retrying(probe)
    except RetryError as e:
        attempts = e.last_attempt.attempt_number
        raise ReadinessTimeoutError(
            f"{description} not ready after {attempts} attempt(s) within {deadline:.0f}s",
            details={"condition": description, "attempts": attempts, "deadline": deadline},
        ) from e


def http_health_probe(url: str, timeout: float = 5.0) -> Probe:
    """Probe that is True only when GET url answers HTTP 200."""

    def probe() -> bool:
        try:
            response = httpx.get(url, timeout=timeout)
        except httpx.RequestError as e:
            logger.debug(f"Health check {url} failed: {e}")
            return False
        if response.status_code != 200:
            logger.debug(f"Health check {url} returned {response.status_code}")
            return False
        return True

    return probe


def wait_for_http_health(
    url: str,
    policy: BackoffPolicy,
    deadline: float,
    request_timeout: float = 5.0,
    sleep: Callable[[float], None] = time.sleep,
) -> None:
    """Block until the health endpoint returns 200."""
    retry_until(
        http_health_probe(url, timeout=request_timeout),
        policy,
        deadline,
        description=f"health endpoint {url}",
        sleep=sleep,
    )
