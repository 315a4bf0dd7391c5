"""Fan-out/fan-in helper: run named tasks concurrently, wait for all of them."""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from concurrent.futures import ThreadPoolExecutor

logger = logging.getLogger(__name__)


def run_together(tasks: Mapping[str, Callable[[], object]]) -> dict[str, Exception]:
    """Run every task to completion and return the errors keyed by task name.

    Siblings are never cancelled when one fails: a capture left running on a
    node would outlive the trial.
    """
    if not tasks:
        return {}

    errors: dict[str, Exception] = {}
    with ThreadPoolExecutor(max_workers=len(tasks), thread_name_prefix="trial") as pool:
        futures = {name: pool.submit(fn) for name, fn in tasks.items()}
        for name, future in futures.items():
            exc = future.exception()
            if exc is None:
                continue
            if not isinstance(exc, Exception):
                raise exc
            logger.debug("Task %s failed: %s", name, exc)
            errors[name] = exc
    return errors


def raise_first(errors: Mapping[str, Exception]) -> None:
    """First-error-wins reporting for groups that only need one error."""
    for exc in errors.values():
        raise exc
