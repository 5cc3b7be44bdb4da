"""Shared fixtures: a controllable clock and the in-memory stores/collaborators."""

from datetime import datetime, timedelta, timezone

import pytest

from crmflow.providers.memory import MemoryCrmGateway, MemoryMailSender, MemoryWebhookSender
from crmflow.storage.memory import MemoryAutomationStore, MemorySequenceStore

PROJECT_ID = "proj-1"
OTHER_PROJECT_ID = "proj-2"
T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sequence_store():
    return MemorySequenceStore()


@pytest.fixture
def automation_store():
    return MemoryAutomationStore()


@pytest.fixture
def gateway():
    gw = MemoryCrmGateway()
    gw.add_project(PROJECT_ID, "acme")
    gw.add_project(OTHER_PROJECT_ID, "globex")
    return gw


@pytest.fixture
def mail_sender():
    return MemoryMailSender()


@pytest.fixture
def webhook_sender():
    return MemoryWebhookSender()
