"""Test support utilities for the timeflow package.

Exports in-memory store doubles, a scriptable remote calendar client and a
controllable clock.  Nothing here depends on pytest, so the helpers can be
imported from any test context.
"""

from __future__ import annotations

from timeflow.testing.memory import FakeClock, InMemoryEventRepository, InMemoryProviderRepository
from timeflow.testing.remote import FakeCalendarClient

__all__ = [
    "FakeCalendarClient",
    "FakeClock",
    "InMemoryEventRepository",
    "InMemoryProviderRepository",
]
