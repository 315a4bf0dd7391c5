"""Bounded readiness polling."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable

from tenacity import RetryCallState, RetryError, Retrying, retry_if_exception_type, retry_if_result

from ipsecverify.errors import TransientInfrastructureError

logger = logging.getLogger(__name__)

Probe = Callable[[], bool]

# Control-plane components restart mid-rollout; these mean "not ready yet".
TRANSIENT_ERRORS: tuple[type[BaseException], ...] = (
    TransientInfrastructureError,
    ConnectionResetError,
)


def _log_transient(retry_state: RetryCallState) -> None:
    outcome = retry_state.outcome
    if outcome is not None and outcome.failed:
        logger.debug("Transient error while polling, retrying: %s", outcome.exception())


def poll_until(
    interval: float,
    timeout: float,
    probe: Probe,
    *,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> bool:
    """Call `probe` every `interval` seconds until it returns True.

    Returns False once `timeout` seconds have elapsed without success; a
    timeout is an outcome, not an error. Transient infrastructure errors
    are logged and polling continues. Any other exception raised by the
    probe aborts polling and propagates.
    """
    deadline = clock() + timeout

    retrying = Retrying(
        retry=retry_if_result(lambda ready: not ready)
        | retry_if_exception_type(TRANSIENT_ERRORS),
        stop=lambda _state: clock() >= deadline,
        wait=lambda _state: max(0.0, min(interval, deadline - clock())),
        sleep=sleep,
        before_sleep=_log_transient,
    )
    try:
        return bool(retrying(probe))
    except RetryError:
        return False
