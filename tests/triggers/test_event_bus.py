"""Tests for crmflow.triggers.event_bus

Tests cover:
- Pattern subscriptions: exact, prefix wildcard, catch-all
- emit() never raises; publish() propagates transport errors
- A failing subscriber does not block the others
- Outbox transport: queue, drain, whole-event redelivery after failure, give-up
- Trigger-config matching helper
"""

from unittest.mock import AsyncMock

import pytest

from conftest import PROJECT_ID
from crmflow.models import TriggerEvent
from crmflow.storage.base import MAX_OUTBOX_ATTEMPTS
from crmflow.triggers.event_bus import EventBus, OutboxTransport
from crmflow.triggers.matching import matches_trigger_config


def _make_event(trigger_type="opportunity.stage_changed", **kwargs):
    return TriggerEvent(
        project_id=PROJECT_ID,
        trigger_type=trigger_type,
        entity_type=kwargs.pop("entity_type", "opportunity"),
        entity_id=kwargs.pop("entity_id", "o1"),
        **kwargs,
    )


class TestEventBus:

    async def test_patterns(self):
        bus = EventBus()
        exact, prefix, everything, other = AsyncMock(), AsyncMock(), AsyncMock(), AsyncMock()
        bus.subscribe("opportunity.stage_changed", exact)
        bus.subscribe("opportunity.*", prefix)
        bus.subscribe("*", everything)
        bus.subscribe("email.*", other)

        await bus.emit(_make_event())

        exact.assert_awaited_once()
        prefix.assert_awaited_once()
        everything.assert_awaited_once()
        other.assert_not_awaited()

    async def test_failing_subscriber_isolated(self):
        bus = EventBus()
        broken = AsyncMock(side_effect=RuntimeError("boom"))
        healthy = AsyncMock()
        bus.subscribe("*", broken)
        bus.subscribe("*", healthy)

        await bus.emit(_make_event())

        healthy.assert_awaited_once()

    async def test_unsubscribe(self):
        bus = EventBus()
        callback = AsyncMock()
        bus.subscribe("*", callback)
        bus.unsubscribe("*")
        await bus.emit(_make_event())
        callback.assert_not_awaited()

    async def test_emit_swallows_transport_error(self):
        transport = AsyncMock()
        transport.deliver.side_effect = RuntimeError("queue down")
        bus = EventBus(transport)

        await bus.emit(_make_event())

        with pytest.raises(RuntimeError, match="queue down"):
            await bus.publish(_make_event())

    async def test_in_process_drain_is_noop(self):
        assert await EventBus().drain() == {"delivered": 0, "failed": 0}


class TestOutbox:

    async def test_queued_until_drained(self, automation_store):
        bus = EventBus(OutboxTransport(automation_store))
        callback = AsyncMock()
        bus.subscribe("*", callback)

        await bus.emit(_make_event(data={"stage": "won"}))
        callback.assert_not_awaited()
        assert len(automation_store.outbox) == 1

        result = await bus.drain(limit=10)

        assert result == {"delivered": 1, "failed": 0}
        delivered = callback.call_args[0][0]
        assert delivered.data == {"stage": "won"}
        assert automation_store.outbox[0].delivered_at is not None
        assert await bus.drain(limit=10) == {"delivered": 0, "failed": 0}

    async def test_failed_delivery_is_retried_then_dropped(self, automation_store):
        bus = EventBus(OutboxTransport(automation_store))
        bus.subscribe("*", AsyncMock(side_effect=RuntimeError("engine down")))
        await bus.emit(_make_event())

        for _ in range(MAX_OUTBOX_ATTEMPTS):
            assert await bus.drain() == {"delivered": 0, "failed": 1}

        assert await bus.drain() == {"delivered": 0, "failed": 0}
        item = automation_store.outbox[0]
        assert item.attempts == MAX_OUTBOX_ATTEMPTS
        assert item.last_error == "1 subscriber(s) failed"

    async def test_redelivery_reaches_every_subscriber(self, automation_store):
        bus = EventBus(OutboxTransport(automation_store))
        healthy = AsyncMock()
        flaky = AsyncMock(side_effect=[RuntimeError("busy"), None])
        bus.subscribe("*", healthy)
        bus.subscribe("*", flaky)
        await bus.emit(_make_event())

        assert await bus.drain() == {"delivered": 0, "failed": 1}
        assert await bus.drain() == {"delivered": 1, "failed": 0}

        assert healthy.await_count == 2
        assert flaky.await_count == 2

    async def test_drain_limit(self, automation_store):
        bus = EventBus(OutboxTransport(automation_store))
        callback = AsyncMock()
        bus.subscribe("*", callback)
        for i in range(3):
            await bus.emit(_make_event(entity_id=f"o{i}"))

        assert (await bus.drain(limit=2))["delivered"] == 2
        assert (await bus.drain(limit=2))["delivered"] == 1
        assert [c[0][0].entity_id for c in callback.call_args_list] == ["o0", "o1", "o2"]


# =========================================================================
# matches_trigger_config
# =========================================================================


class TestMatchesTriggerConfig:

    def test_empty_config_matches(self):
        assert matches_trigger_config({}, _make_event()) is True

    def test_entity_type(self):
        assert matches_trigger_config({"entity_type": "person"}, _make_event()) is False

    def test_field_changed_requires_actual_change(self):
        event = _make_event(
            "field.changed", data={"stage": "won"}, previous_data={"stage": "won"},
        )
        assert matches_trigger_config({"field_name": "stage"}, event) is False

    def test_field_changed_to_value(self):
        event = _make_event("field.changed", data={"amount": 500}, previous_data={"amount": 100})
        assert matches_trigger_config({"field_name": "amount", "to_value": "500"}, event) is True
        assert matches_trigger_config({"field_name": "amount", "to_value": 100}, event) is False

    def test_rfp_status(self):
        event = _make_event(
            "rfp.status_changed", entity_type="rfp", data={"status": "submitted"}, previous_data={"status": "draft"},
        )
        assert matches_trigger_config({"from_status": "draft", "to_status": "submitted"}, event) is True
        assert matches_trigger_config({"from_status": "review"}, event) is False

    def test_call_disposition_and_sequence(self):
        call = _make_event("call.dispositioned", entity_type="call", data={"disposition": "voicemail"})
        assert matches_trigger_config({"disposition": "voicemail"}, call) is True
        assert matches_trigger_config({"disposition": "connected"}, call) is False

        done = _make_event("sequence.completed", entity_type="person", metadata={"sequence_id": "seq-1"})
        assert matches_trigger_config({"sequence_id": "seq-1"}, done) is True
        assert matches_trigger_config({"sequence_id": "seq-2"}, done) is False
