"""
Test doubles for the engine's collaborators.
"""

from .fakes import EPOCH, FakeClock, FakeProbe, FakeSyncClient, FailingStore

__all__ = [
    "EPOCH",
    "FakeClock",
    "FakeProbe",
    "FakeSyncClient",
    "FailingStore",
]
