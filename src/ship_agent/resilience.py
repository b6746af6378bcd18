"""
Resilience
==========

Retry + backoff + timeout wrapper used around every fallible call the agent
makes to HQ or to the image registry.

Two policies exist, configured independently:

  Policy       MaxRetries  BaseDelay  MaxDelay  Timeout
  HTTP         3           1s         10s       30s
  Image pull   3           2s         30s       10 min

``max_retries`` is the total number of attempts. The timeout is an overall
budget covering every attempt and every backoff wait. Attempt counting, the
retry decision and the backoff waits are driven by ``tenacity.Retrying``; the
waits go through the caller's cancel event so a shutdown ends them early.

Each attempt runs on a short-lived daemon thread and receives a
``threading.Event``. When the deadline passes, or the caller's cancel event is
set, the attempt's event is set and the wrapper raises immediately. The action
is expected to check its event at convenient points (between chunks of a
streamed pull, for example); a blocking call in progress is left to finish on
its own thread.
"""

from __future__ import annotations

import logging
import random
import socket
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional, TypeVar

import requests
from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception,
    stop_after_attempt,
    stop_after_delay,
)

from .errors import (
    ConfigError,
    OperationCancelledError,
    OperationTimeoutError,
    TransientError,
)

log = logging.getLogger(__name__)

T = TypeVar("T")

RETRY_KEYWORDS = ("timeout", "network", "connection", "unreachable")
JITTER_RANGE   = (0.75, 1.25)   # upper <= 2 * lower keeps backoff non-decreasing

# How often the calling thread re-checks the deadline / cancel event while an
# attempt is running.
_JOIN_SLICE = 0.25

_NETWORK_ERRORS: tuple[type[BaseException], ...] = (
    requests.ConnectionError,
    requests.Timeout,
    ConnectionError,
    TimeoutError,
    socket.gaierror,
)


# ─── Policy ───────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int   = 3
    base_delay:  float = 1.0     # seconds
    max_delay:   float = 10.0    # seconds
    timeout:     float = 30.0    # seconds, whole operation

    def __post_init__(self) -> None:
        if self.max_retries < 1:
            raise ConfigError("max_retries", f"must be at least 1, got {self.max_retries}")
        if self.base_delay < 0:
            raise ConfigError("base_delay", f"must not be negative, got {self.base_delay}")
        if self.max_delay < self.base_delay:
            raise ConfigError(
                "max_delay", f"must be >= base_delay ({self.base_delay}), got {self.max_delay}"
            )
        if self.timeout <= 0:
            raise ConfigError("timeout", f"must be positive, got {self.timeout}")

    @classmethod
    def http(cls) -> RetryPolicy:
        return cls(max_retries=3, base_delay=1.0, max_delay=10.0, timeout=30.0)

    @classmethod
    def image_pull(cls) -> RetryPolicy:
        return cls(max_retries=3, base_delay=2.0, max_delay=30.0, timeout=600.0)


# ─── Classification ───────────────────────────────────────────────────────────

def is_retryable(exc: BaseException) -> bool:
    """
    Decide whether ``exc`` is worth another attempt.

    Typed errors decide first. Message matching is kept for errors that only
    carry text, such as Docker ``APIError`` responses from a flaky registry.
    """
    if isinstance(exc, (OperationTimeoutError, OperationCancelledError)):
        return False
    if isinstance(exc, (TransientError, *_NETWORK_ERRORS)):
        return True
    text = str(exc).lower()
    return any(keyword in text for keyword in RETRY_KEYWORDS)


def compute_backoff(attempt: int, policy: RetryPolicy, jitter: float = 1.0) -> float:
    """
    Delay before retry number ``attempt`` (1-based):
    ``min(base_delay * 2**(attempt-1) * jitter, max_delay)``.
    """
    if attempt < 1:
        raise ValueError(f"attempt must be >= 1, got {attempt}")
    exponent = min(attempt - 1, 63)
    return min(policy.base_delay * (2 ** exponent) * jitter, policy.max_delay)


# ─── Resilient Operation ──────────────────────────────────────────────────────

class ResilientOperation:
    def __init__(
        self,
        name:   str,
        policy: RetryPolicy,
        rand:   Callable[[float, float], float] = random.uniform,
    ):
        self.name   = name
        self.policy = policy
        self._rand  = rand

    def execute(
        self,
        action: Callable[[threading.Event], T],
        cancel: Optional[threading.Event] = None,
    ) -> T:
        """
        Run ``action`` under this operation's policy and return its result.

        Raises the last failure once attempts are exhausted, the first
        non-retryable failure as-is, ``OperationTimeoutError`` when the overall
        timeout fires and ``OperationCancelledError`` when ``cancel`` is set.
        """
        cancel = cancel or threading.Event()
        if cancel.is_set():
            raise OperationCancelledError(self.name)
        deadline = time.monotonic() + self.policy.timeout

        def sleep(delay: float) -> None:
            remaining = deadline - time.monotonic()
            if delay >= remaining:
                if cancel.wait(max(remaining, 0.0)):
                    raise OperationCancelledError(self.name)
                raise OperationTimeoutError(self.name, self.policy.timeout)
            if cancel.wait(delay):
                raise OperationCancelledError(self.name)

        retrying = Retrying(
            stop         = stop_after_attempt(self.policy.max_retries)
                           | stop_after_delay(self.policy.timeout),
            retry        = retry_if_exception(is_retryable),
            wait         = self._backoff,
            before_sleep = self._log_retry,
            sleep        = sleep,
            reraise      = True,
        )
        return retrying(self._attempt, action, cancel, deadline)

    def _backoff(self, retry_state: RetryCallState) -> float:
        return compute_backoff(retry_state.attempt_number, self.policy, self._rand(*JITTER_RANGE))

    def _log_retry(self, retry_state: RetryCallState) -> None:
        error   = retry_state.outcome.exception()
        attempt = retry_state.attempt_number
        delay   = retry_state.next_action.sleep
        log.warning(
            f"[{self.name}] attempt {attempt}/{self.policy.max_retries} failed: {error} "
            f"- retrying in {delay:.2f}s",
            extra={
                "operation": self.name,
                "attempt":   attempt,
                "delay":     delay,
                "error":     repr(error),
            },
        )

    def _attempt(
        self,
        action:   Callable[[threading.Event], T],
        cancel:   threading.Event,
        deadline: float,
    ) -> T:
        if deadline - time.monotonic() <= 0:
            raise OperationTimeoutError(self.name, self.policy.timeout)

        token: threading.Event = threading.Event()
        outcome: dict = {}

        def run() -> None:
            try:
                outcome["result"] = action(token)
            except BaseException as e:  # re-raised on the calling thread
                outcome["error"] = e

        worker = threading.Thread(target=run, name=f"{self.name}-attempt", daemon=True)
        worker.start()

        while worker.is_alive():
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                token.set()
                raise OperationTimeoutError(self.name, self.policy.timeout)
            if cancel.is_set():
                token.set()
                raise OperationCancelledError(self.name)
            worker.join(min(remaining, _JOIN_SLICE))

        if "error" in outcome:
            raise outcome["error"]
        return outcome["result"]
