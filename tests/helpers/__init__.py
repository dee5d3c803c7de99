"""Test helpers for the lifecycle engine test suite"""

from tests.helpers.engine_stubs import (
    T0,
    FailingSource,
    FailingStore,
    FlakyStore,
    SlowSource,
    make_opportunity,
)

__all__ = [
    "T0",
    "FailingSource",
    "FailingStore",
    "FlakyStore",
    "SlowSource",
    "make_opportunity",
]
