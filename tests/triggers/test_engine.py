"""Tests for crmflow.triggers.engine

Tests cover:
- handle_event: matched / not_matched rows, trigger_config filters, project scoping
- Malformed conditions and action lists become error executions
- A failing action aborts the rest of the list
- wait: pause, resume against the live entity, resume after deletion
- branch: then/else selection, nested branches, wait inside a branch
- Chain depth stops automation loops
- plan_actions on its own
"""

from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from conftest import OTHER_PROJECT_ID, PROJECT_ID, T0
from crmflow.errors import ActionConfigError
from crmflow.models import Automation, AutomationAction, ExecutionStatus, TriggerEvent
from crmflow.triggers.actions import ActionDispatcher
from crmflow.triggers.engine import AutomationEngine, plan_actions
from crmflow.triggers.event_bus import EventBus


def _action(action_type, **config):
    return AutomationAction(type=action_type, config=config)


def _make_automation(
    actions,
    conditions=None,
    automation_id="auto-1",
    trigger_type="opportunity.stage_changed",
    trigger_config=None,
    project_id=PROJECT_ID,
    is_active=True,
):
    return Automation(
        id=automation_id,
        project_id=project_id,
        name="Big deal follow-up",
        trigger_type=trigger_type,
        trigger_config=trigger_config or {},
        conditions=conditions,
        actions=actions,
        is_active=is_active,
        created_at=T0,
    )


def _event(data, trigger_type="opportunity.stage_changed", entity_id="opp-1", **kwargs):
    return TriggerEvent(
        project_id=kwargs.pop("project_id", PROJECT_ID),
        trigger_type=trigger_type,
        entity_type=kwargs.pop("entity_type", "opportunity"),
        entity_id=entity_id,
        data=data,
        **kwargs,
    )


BIG_DEAL = {"field": "amount", "operator": "greater_than", "value": 1000}


@pytest.fixture
def emit():
    return AsyncMock()


@pytest.fixture
def dispatcher(gateway, mail_sender, webhook_sender, emit):
    return ActionDispatcher(gateway, mail_sender=mail_sender, webhook_sender=webhook_sender, emit=emit)


@pytest.fixture
def engine(automation_store, dispatcher, gateway, clock):
    return AutomationEngine(automation_store, dispatcher, gateway, clock=clock)


# =========================================================================
# Event path
# =========================================================================


class TestHandleEvent:

    async def test_matched_runs_actions(self, engine, automation_store, gateway):
        automation_store.add_automation(_make_automation(
            [_action("create_task", title="Review {{name}}", due_in_days=2)], conditions=BIG_DEAL,
        ))

        await engine.handle_event(_event({"id": "opp-1", "name": "Acme renewal", "amount": 5000}))

        [execution] = automation_store.executions
        assert execution.status == ExecutionStatus.MATCHED
        assert execution.entity_snapshot["amount"] == 5000
        assert execution.action_results == [
            {"action_type": "create_task", "success": True, "result": {"task_id": gateway.tasks[0]["id"]}}
        ]
        assert gateway.tasks[0]["title"] == "Review Acme renewal"
        assert gateway.tasks[0]["opportunity_id"] == "opp-1"
        assert gateway.tasks[0]["due_date"] == T0 + timedelta(days=2)

    async def test_not_matched_records_row_without_side_effects(self, engine, automation_store, gateway):
        automation_store.add_automation(_make_automation([_action("create_task")], conditions=BIG_DEAL))

        await engine.handle_event(_event({"amount": 50}))

        [execution] = automation_store.executions
        assert execution.status == ExecutionStatus.NOT_MATCHED
        assert execution.action_results == []
        assert gateway.tasks == []

    async def test_trigger_config_mismatch_is_silent(self, engine, automation_store, gateway):
        automation_store.add_automation(_make_automation(
            [_action("create_task")], trigger_config={"to_stage": "closed_won"},
        ))

        await engine.handle_event(_event({"stage": "closed_lost"}, previous_data={"stage": "proposal"}))

        assert automation_store.executions == []
        assert gateway.tasks == []

    async def test_trigger_config_from_and_to_stage(self, engine, automation_store, gateway):
        automation_store.add_automation(_make_automation(
            [_action("create_task")], trigger_config={"from_stage": "proposal", "to_stage": "closed_won"},
        ))

        await engine.handle_event(_event({"stage": "closed_won"}, previous_data={"stage": "proposal"}))

        assert len(gateway.tasks) == 1

    async def test_inactive_and_other_project_ignored(self, engine, automation_store, gateway):
        automation_store.add_automation(_make_automation([_action("create_task")], automation_id="a1", is_active=False))
        automation_store.add_automation(_make_automation(
            [_action("create_task")], automation_id="a2", project_id=OTHER_PROJECT_ID,
        ))
        automation_store.add_automation(_make_automation(
            [_action("create_task")], automation_id="a3", trigger_type="rfp.status_changed",
        ))

        await engine.handle_event(_event({"amount": 5000}))

        assert automation_store.executions == []

    async def test_every_matching_automation_runs_in_order(self, engine, automation_store, gateway):
        for i in range(3):
            automation = _make_automation([_action("create_task", title=f"t{i}")], automation_id=f"a{i}")
            automation.created_at = T0 + timedelta(minutes=i)
            automation_store.add_automation(automation)

        await engine.handle_event(_event({"amount": 1}))

        assert [t["title"] for t in gateway.tasks] == ["t0", "t1", "t2"]

    async def test_one_automation_crash_does_not_stop_others(self, engine, automation_store, gateway):
        automation_store.add_automation(_make_automation([_action("create_task")], automation_id="a1"))
        automation_store.add_automation(_make_automation([_action("create_task")], automation_id="a2"))
        automation_store.record_execution = AsyncMock(side_effect=[RuntimeError("disk full"), None])

        await engine.handle_event(_event({"amount": 1}))

        assert len(gateway.tasks) == 2
        assert automation_store.record_execution.await_count == 2


# =========================================================================
# Errors
# =========================================================================


class TestErrorExecutions:

    async def test_malformed_conditions(self, engine, automation_store, gateway):
        automation_store.add_automation(_make_automation(
            [_action("create_task")], conditions={"field": "amount", "operator": "bigger", "value": 1},
        ))

        await engine.handle_event(_event({"amount": 5000}))

        [execution] = automation_store.executions
        assert execution.status == ExecutionStatus.ERROR
        assert execution.error_message.startswith("Invalid conditions")
        assert gateway.tasks == []

    async def test_failing_action_aborts_rest(self, engine, automation_store, gateway):
        automation_store.add_automation(_make_automation([
            _action("create_task", title="first"),
            _action("assign_owner", user_id="stranger"),
            _action("create_task", title="never"),
        ]))

        await engine.handle_event(_event({"amount": 1}))

        [execution] = automation_store.executions
        assert execution.status == ExecutionStatus.ERROR
        assert [r["success"] for r in execution.action_results] == [True, False]
        assert "not a member" in execution.error_message
        assert [t["title"] for t in gateway.tasks] == ["first"]

    async def test_unknown_action_type(self, engine, automation_store):
        automation_store.add_automation(_make_automation([_action("teleport")]))

        await engine.handle_event(_event({"amount": 1}))

        [execution] = automation_store.executions
        assert execution.status == ExecutionStatus.ERROR
        assert execution.action_results[0]["error"] == "Unknown action type: teleport"

    async def test_invalid_wait_is_error(self, engine, automation_store, gateway):
        automation_store.add_automation(_make_automation([_action("create_task"), _action("wait", days=0)]))

        await engine.handle_event(_event({"amount": 1}))

        [execution] = automation_store.executions
        assert execution.status == ExecutionStatus.ERROR
        assert execution.error_message.startswith("Invalid action list")
        assert gateway.tasks == []


# =========================================================================
# wait
# =========================================================================


class TestWait:

    async def test_wait_pauses_then_resumes(self, engine, automation_store, gateway, clock):
        gateway.add_tag_definition(PROJECT_ID, "tag-stale")
        gateway.add_entity(PROJECT_ID, "opportunity", {"id": "opp-1", "amount": 1, "stage": "proposal"})
        automation_store.add_automation(_make_automation([
            _action("create_task", title="before"),
            _action("wait", days=1),
            _action("add_tag", tag_id="tag-stale"),
        ]))

        await engine.handle_event(_event({"id": "opp-1", "amount": 1}))

        [paused] = automation_store.executions
        assert paused.status == ExecutionStatus.MATCHED
        assert paused.resume_at_action == 2
        assert paused.resume_after == T0 + timedelta(days=1)
        assert gateway.tags_for(PROJECT_ID, "opportunity", "opp-1") == set()
        assert await automation_store.list_due_waits(clock(), 10) == []

        clock.advance(days=1)
        [due] = await automation_store.list_due_waits(clock(), 10)
        gateway.entities[(PROJECT_ID, "opportunity", "opp-1")]["stage"] = "negotiation"
        resumed = await engine.resume_wait(due)

        assert resumed.status == ExecutionStatus.MATCHED
        assert resumed.resume_from == paused.id
        assert resumed.entity_snapshot["stage"] == "negotiation"
        assert [r["action_type"] for r in resumed.action_results] == ["add_tag"]
        assert gateway.tags_for(PROJECT_ID, "opportunity", "opp-1") == {"tag-stale"}
        assert [t["title"] for t in gateway.tasks] == ["before"]
        assert await automation_store.list_due_waits(clock(), 10) == []

    async def test_second_wait_pauses_again(self, engine, automation_store, gateway, clock):
        gateway.add_entity(PROJECT_ID, "opportunity", {"id": "opp-1"})
        automation_store.add_automation(_make_automation([
            _action("wait", hours=2),
            _action("create_task", title="middle"),
            _action("wait", minutes=30),
            _action("create_task", title="last"),
        ]))

        await engine.handle_event(_event({"id": "opp-1"}))
        clock.advance(hours=2)
        [due] = await automation_store.list_due_waits(clock(), 10)
        second = await engine.resume_wait(due)

        assert second.resume_at_action == 3
        assert second.resume_after == clock() + timedelta(minutes=30)
        assert [t["title"] for t in gateway.tasks] == ["middle"]

    async def test_resume_after_entity_deleted(self, engine, automation_store, gateway, clock):
        automation_store.add_automation(_make_automation([_action("wait", days=1), _action("create_task")]))
        await engine.handle_event(_event({"id": "opp-1"}))
        clock.advance(days=1)
        [due] = await automation_store.list_due_waits(clock(), 10)

        resumed = await engine.resume_wait(due)

        assert resumed.status == ExecutionStatus.ERROR
        assert resumed.error_message == "Entity no longer exists"
        assert resumed.resume_from == due.id
        assert gateway.tasks == []
        assert await automation_store.list_due_waits(clock(), 10) == []

    async def test_resume_after_automation_disabled(self, engine, automation_store, gateway, clock):
        gateway.add_entity(PROJECT_ID, "opportunity", {"id": "opp-1"})
        automation = _make_automation([_action("wait", days=1), _action("create_task")])
        automation_store.add_automation(automation)
        await engine.handle_event(_event({"id": "opp-1"}))
        automation.is_active = False
        automation_store.add_automation(automation)
        clock.advance(days=1)
        [due] = await automation_store.list_due_waits(clock(), 10)

        resumed = await engine.resume_wait(due)

        assert resumed.status == ExecutionStatus.ERROR
        assert "inactive" in resumed.error_message
        assert gateway.tasks == []


# =========================================================================
# branch
# =========================================================================


class TestBranch:

    def _branching(self):
        return _make_automation([
            _action("create_task", title="always"),
            _action(
                "branch",
                condition=BIG_DEAL,
                then=[{"type": "create_task", "config": {"title": "big"}}],
                **{"else": [{"type": "create_task", "config": {"title": "small"}}]},
            ),
            _action("create_task", title="replaced"),
        ])

    async def test_then(self, engine, automation_store, gateway):
        automation_store.add_automation(self._branching())
        await engine.handle_event(_event({"amount": 5000}))
        assert [t["title"] for t in gateway.tasks] == ["always", "big"]

    async def test_else(self, engine, automation_store, gateway):
        automation_store.add_automation(self._branching())
        await engine.handle_event(_event({"amount": 5}))
        assert [t["title"] for t in gateway.tasks] == ["always", "small"]

    async def test_wait_inside_branch_is_error(self, engine, automation_store, gateway):
        automation_store.add_automation(_make_automation([
            _action("branch", condition=BIG_DEAL, then=[{"type": "wait", "config": {"days": 1}}]),
        ]))

        await engine.handle_event(_event({"amount": 5000}))

        [execution] = automation_store.executions
        assert execution.status == ExecutionStatus.ERROR
        assert "top level" in execution.error_message


# =========================================================================
# Chain depth
# =========================================================================


class TestChainDepth:

    async def test_self_triggering_automation_stops(self, automation_store, gateway, mail_sender, clock):
        bus = EventBus()
        dispatcher = ActionDispatcher(gateway, mail_sender=mail_sender, emit=bus.emit)
        engine = AutomationEngine(automation_store, dispatcher, gateway, max_chain_depth=3, clock=clock)
        bus.subscribe("*", engine.handle_event)
        gateway.add_entity(PROJECT_ID, "person", {"id": "p1", "notes": ""})
        automation_store.add_automation(_make_automation(
            [_action("update_field", field_name="notes", value="touched")],
            trigger_type="field.changed",
        ))

        await bus.emit(_event({"id": "p1", "notes": "x"}, trigger_type="field.changed",
                              entity_type="person", entity_id="p1"))

        assert len(automation_store.executions) == 3
        assert len(gateway.updates) == 3

    async def test_event_at_max_depth_dropped(self, engine, automation_store):
        automation_store.add_automation(_make_automation([_action("create_task")]))

        await engine.handle_event(_event({"amount": 1}, metadata={"chain_depth": 3}))

        assert automation_store.executions == []

    async def test_emitted_event_carries_depth(self, engine, automation_store, gateway, emit):
        gateway.add_entity(PROJECT_ID, "opportunity", {"id": "opp-1", "stage": "proposal"})
        automation_store.add_automation(_make_automation([_action("change_stage", stage="negotiation")]))

        await engine.handle_event(_event({"id": "opp-1", "stage": "proposal"}))

        event = emit.call_args[0][0]
        assert event.trigger_type == "opportunity.stage_changed"
        assert event.metadata == {"source_automation_id": "auto-1", "chain_depth": 1}
        assert event.previous_data["stage"] == "proposal"
        assert event.data["stage"] == "negotiation"


# =========================================================================
# plan_actions
# =========================================================================


class TestPlanActions:

    def test_plain_list(self):
        plan = plan_actions([_action("create_task"), _action("add_tag", tag_id="t")], {})
        assert [a.type for a in plan.steps] == ["create_task", "add_tag"]
        assert plan.wait_index is None

    def test_start_offset_and_wait(self):
        actions = [_action("create_task"), _action("wait", hours=1), _action("add_tag"), _action("wait", days=2)]
        plan = plan_actions(actions, {}, start=2)
        assert [a.type for a in plan.steps] == ["add_tag"]
        assert plan.wait_index == 3
        assert plan.wait_delay == timedelta(days=2)

    def test_nested_branch(self):
        actions = [_action("branch", condition=BIG_DEAL, then=[
            {"type": "branch", "config": {
                "condition": {"field": "stage", "operator": "equals", "value": "won"},
                "then": [{"type": "add_tag", "config": {"tag_id": "won-big"}}],
            }},
        ])]
        plan = plan_actions(actions, {"amount": 5000, "stage": "won"})
        assert [a.config for a in plan.steps] == [{"tag_id": "won-big"}]
        assert plan.branches == [{"branch": "then", "actions": 1}, {"branch": "then", "actions": 1}]

    def test_branch_with_missing_else_runs_nothing(self):
        plan = plan_actions([_action("branch", condition=BIG_DEAL, then=[{"type": "create_task"}])], {"amount": 1})
        assert plan.steps == []

    def test_bad_wait(self):
        with pytest.raises(ActionConfigError):
            plan_actions([_action("wait", days="soon")], {})
