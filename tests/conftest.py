"""
Shared fixtures.
"""
import pytest

from observability.event_store import event_store


@pytest.fixture(autouse=True)
def clean_event_store():
    """Audit events are process-global; start and end every test with an empty store."""
    event_store.clear()
    yield
    event_store.clear()
