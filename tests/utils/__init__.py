"""
Test utilities for offline-sync.
"""

from .async_helpers import wait_for_condition, settle, assert_completes_within

__all__ = [
    "wait_for_condition",
    "settle",
    "assert_completes_within",
]
