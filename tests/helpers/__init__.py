"""Test helper utilities."""

from tests.helpers.upstream import FakeUpstream, RecordedRequest

__all__ = [
    "FakeUpstream",
    "RecordedRequest",
]
