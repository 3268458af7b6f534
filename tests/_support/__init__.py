"""
Test support utilities for timecapsule tests.

Helpers that don't fit as pytest fixtures but are useful across multiple
test files.
"""

from __future__ import annotations

import time
from collections.abc import Callable


def wait_until(predicate: Callable[[], bool], timeout: float = 3.0, step: float = 0.01) -> bool:
    """
    Poll ``predicate`` until it returns True or ``timeout`` elapses.

    Returns:
        The last value of ``predicate()``
    """
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(step)
    return predicate()


SORTED_SET_KEY = "timecapsule:test"
