"""
Predicate Poller

Bounded retry loops around checks that produce a boolean:

- with_timeout: plain predicate, TransientUnavailable counts as "not yet"
- with_deadline: context-aware body that receives the Deadline and may
  abort the wait by raising

Both sleep a full interval between attempts (clipped to the deadline) and
report Timeout at the first attempt boundary past the deadline. A remote
call is never interrupted; a result that arrives after the deadline is
discarded.
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

from errors import Timeout, TransientUnavailable

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL = 1.0


@dataclass(frozen=True)
class PollConfig:
    """Timeout and interval, in seconds."""
    timeout: float
    interval: float = DEFAULT_INTERVAL


class Deadline:
    """Absolute point in monotonic time passed down the call chain."""

    def __init__(self, timeout: float, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self.timeout = timeout
        self.expires_at = clock() + timeout

    def remaining(self) -> float:
        return max(0.0, self.expires_at - self._clock())

    def expired(self) -> bool:
        return self._clock() >= self.expires_at

    def __repr__(self) -> str:
        return f"Deadline(remaining={self.remaining():.2f}s)"


def with_timeout(
    predicate: Callable[[], bool],
    message: str,
    config: PollConfig,
    on_timeout: Optional[Callable[[], str]] = None
) -> None:
    """
    Call predicate until it returns True or config.timeout elapses.

    Args:
        predicate: Check to repeat; TransientUnavailable counts as False
        message: Message of the Timeout raised on expiry
        config: Timeout and interval
        on_timeout: Optional callback producing diagnostic details

    Raises:
        Timeout: If the predicate never held before the deadline
    """
    def body(deadline: Deadline) -> bool:
        try:
            return predicate()
        except TransientUnavailable as e:
            logger.debug(f"{message}: transient failure: {e}")
            return False

    with_deadline(body, Deadline(config.timeout), config.interval, message, on_timeout)


def with_deadline(
    body: Callable[[Deadline], bool],
    deadline: Deadline,
    interval: float = DEFAULT_INTERVAL,
    message: str = "timed out",
    on_timeout: Optional[Callable[[], str]] = None
) -> None:
    """
    Call body(deadline) until it returns True or the deadline passes.

    Any exception raised by body stops the loop and propagates unchanged.

    Raises:
        Timeout: If body never returned True before the deadline
    """
    if interval <= 0:
        raise ValueError(f"poll interval must be positive, got {interval}")

    attempt = 0
    while True:
        attempt += 1
        ok = body(deadline)

        if deadline.expired():
            if ok:
                logger.debug(f"Discarding result of attempt {attempt} returned after deadline")
            break

        if ok:
            logger.debug(f"Condition met after {attempt} attempt(s)")
            return

        time.sleep(min(interval, deadline.remaining()))
        if deadline.expired():
            break

    details = on_timeout() if on_timeout is not None else None
    raise Timeout(f"{message} (timeout {deadline.timeout}s, {attempt} attempts)", details)
