"""
Bulk fan-out and polling helpers.

``run_bulk`` applies one call to many independent ids with a fixed number of
workers; failures are aggregated into a single MultiError after every item
has finished.  ``poll_until`` re-fetches state with a bounded back-off until
a predicate holds or the deadline passes.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterable
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import TypeVar

from tritoncli.core.constants import (
    BULK_CONCURRENCY,
    DEFAULT_WAIT_TIMEOUT,
    POLL_MAX_INTERVAL,
    POLL_MIN_INTERVAL,
)
from tritoncli.core.exceptions import MultiError, TritonTimeoutError

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


def run_bulk(
    func: Callable[[T], R],
    items: Iterable[T],
    concurrency: int = BULK_CONCURRENCY,
    on_success: Callable[[T, R], None] | None = None,
) -> list[R]:
    """
    Call ``func(item)`` for every item, at most *concurrency* at a time.

    Completion order is unspecified.  *on_success* runs in the calling thread
    as each item completes.

    Raises:
        MultiError: if any call failed (the first failure is the cause).
    """
    items = list(items)
    results: list[R] = []
    errors: list[BaseException] = []
    if not items:
        return results

    with ThreadPoolExecutor(max_workers=max(1, min(concurrency, len(items)))) as pool:
        futures = {pool.submit(func, item): item for item in items}
        for future in as_completed(futures):
            item = futures[future]
            try:
                result = future.result()
            except Exception as exc:
                logger.debug("bulk call failed for %r: %s", item, exc)
                errors.append(exc)
                continue
            results.append(result)
            if on_success is not None:
                on_success(item, result)

    if errors:
        raise MultiError(errors)
    return results


def poll_until(
    fetch: Callable[[], T],
    done: Callable[[T], bool],
    timeout: float = DEFAULT_WAIT_TIMEOUT,
    interval: float = POLL_MIN_INTERVAL,
    max_interval: float = POLL_MAX_INTERVAL,
    what: str = "condition",
    clock: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """
    Call *fetch* until ``done(result)`` is true and return that result.

    The delay doubles after each miss, capped at *max_interval*.

    Raises:
        TritonTimeoutError: if *timeout* seconds pass first.
    """
    deadline = clock() + timeout
    delay = interval
    while True:
        value = fetch()
        if done(value):
            return value
        remaining = deadline - clock()
        if remaining <= 0:
            raise TritonTimeoutError(f"timed out after {timeout:g}s waiting for {what}")
        sleep(min(delay, remaining))
        delay = min(delay * 2, max_interval)
