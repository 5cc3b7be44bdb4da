"""Tests for crmflow.triggers.dry_run

Tests cover:
- Matched and not-matched dry runs with a condition trace
- No executions written, no mail sent, no tasks created
- Agreement with what the engine would record
- Branch and wait handling in the action preview
- Not-found automation / entity, including cross-project access
"""

from datetime import timedelta

import pytest

from conftest import OTHER_PROJECT_ID, PROJECT_ID, T0
from crmflow.errors import NotFoundError
from crmflow.models import Automation, AutomationAction, ExecutionStatus
from crmflow.triggers.actions import ActionDispatcher
from crmflow.triggers.dry_run import DryRunHarness
from crmflow.triggers.engine import AutomationEngine

HOT_LEAD = {"all": [
    {"field": "job_title", "operator": "contains", "value": "vp"},
    {"field": "email", "operator": "is_set"},
]}


def _make_automation(actions, conditions=HOT_LEAD, automation_id="auto-1"):
    return Automation(
        id=automation_id,
        project_id=PROJECT_ID,
        name="Hot lead",
        trigger_type="person.created",
        conditions=conditions,
        actions=actions,
        created_at=T0,
    )


@pytest.fixture
def dispatcher(gateway, mail_sender, webhook_sender):
    return ActionDispatcher(gateway, mail_sender=mail_sender, webhook_sender=webhook_sender)


@pytest.fixture
def harness(automation_store, gateway, dispatcher, clock):
    return DryRunHarness(automation_store, gateway, dispatcher, clock=clock)


@pytest.fixture
def person(gateway):
    return gateway.add_entity(PROJECT_ID, "person", {
        "id": "p1", "first_name": "Ada", "email": "ada@example.com", "job_title": "VP Engineering",
    })


class TestDryRun:

    async def test_matched_preview_has_no_side_effects(
        self, harness, automation_store, gateway, mail_sender, person
    ):
        automation_store.add_automation(_make_automation([
            AutomationAction("send_email", {"subject": "Hi {{first_name}}", "body_html": "<p>x</p>"}),
            AutomationAction("create_task", {"title": "Call {{first_name}}"}),
        ]))

        result = await harness.dry_run(PROJECT_ID, "auto-1", "person", "p1")

        assert result.matched is True
        assert result.condition_trace["result"] is True
        assert result.entity_snapshot["email"] == "ada@example.com"
        assert [a["action_type"] for a in result.actions_would_run] == ["send_email", "create_task"]
        assert all(a["valid"] for a in result.actions_would_run)
        assert result.actions_would_run[0]["would_send_email"]["to"] == "ada@example.com"
        assert result.actions_would_run[1]["would_create_task"]["title"] == "Call Ada"
        assert automation_store.executions == []
        assert mail_sender.sent == []
        assert gateway.tasks == []

    async def test_not_matched(self, harness, automation_store, gateway):
        gateway.add_entity(PROJECT_ID, "person", {"id": "p2", "job_title": "Intern"})
        automation_store.add_automation(_make_automation([AutomationAction("create_task", {})]))

        result = await harness.dry_run(PROJECT_ID, "auto-1", "person", "p2")

        assert result.matched is False
        assert result.actions_would_run == []
        leaves = result.condition_trace["children"]
        assert [leaf["result"] for leaf in leaves] == [False, False]
        assert leaves[1]["present"] is False

    async def test_agrees_with_engine(self, harness, automation_store, gateway, dispatcher, clock, person):
        gateway.add_entity(PROJECT_ID, "person", {"id": "p2", "job_title": "Intern"})
        automation = _make_automation([AutomationAction("create_task", {})])
        automation_store.add_automation(automation)
        engine = AutomationEngine(automation_store, dispatcher, gateway, clock=clock)

        for person_id in ("p1", "p2"):
            preview = await harness.dry_run(PROJECT_ID, "auto-1", "person", person_id)
            snapshot = await gateway.get_entity(PROJECT_ID, "person", person_id)
            execution = await engine.evaluate_and_run(automation, "person", person_id, snapshot)
            assert preview.matched == (execution.status == ExecutionStatus.MATCHED)

    async def test_invalid_action_reported(self, harness, automation_store, person):
        automation_store.add_automation(_make_automation([
            AutomationAction("webhook", {"webhook_url": "http://169.254.169.254/"}),
            AutomationAction("change_stage", {"stage": "won"}),
        ]))

        result = await harness.dry_run(PROJECT_ID, "auto-1", "person", "p1")

        assert [a["valid"] for a in result.actions_would_run] == [False, False]
        assert "only applies to opportunities" in result.actions_would_run[1]["error"]

    async def test_wait_and_branch_preview(self, harness, automation_store, person):
        automation_store.add_automation(_make_automation([
            AutomationAction("branch", {
                "condition": {"field": "first_name", "operator": "equals", "value": "Ada"},
                "then": [{"type": "add_tag", "config": {"tag_id": "ada"}}],
            }),
        ]))
        automation_store.add_automation(_make_automation([
            AutomationAction("create_task", {}),
            AutomationAction("wait", {"days": 2}),
            AutomationAction("add_tag", {"tag_id": "later"}),
        ], automation_id="auto-2"))

        branched = await harness.dry_run(PROJECT_ID, "auto-1", "person", "p1")
        waiting = await harness.dry_run(PROJECT_ID, "auto-2", "person", "p1")

        assert [a["action_type"] for a in branched.actions_would_run] == ["add_tag"]
        assert branched.condition_trace["branches"] == [{"branch": "then", "actions": 1}]
        assert [a["action_type"] for a in waiting.actions_would_run] == ["create_task", "wait"]
        assert waiting.actions_would_run[1]["would_pause_until"] == (T0 + timedelta(days=2)).isoformat()
        assert waiting.actions_would_run[1]["remaining_actions"] == 1

    async def test_malformed_conditions(self, harness, automation_store, person):
        automation_store.add_automation(_make_automation([], conditions={"field": "x", "operator": "nope"}))

        result = await harness.dry_run(PROJECT_ID, "auto-1", "person", "p1")

        assert result.matched is False
        assert result.condition_trace["type"] == "error"

    async def test_missing_automation(self, harness, person):
        with pytest.raises(NotFoundError):
            await harness.dry_run(PROJECT_ID, "nope", "person", "p1")

    async def test_missing_entity(self, harness, automation_store):
        automation_store.add_automation(_make_automation([]))
        with pytest.raises(NotFoundError):
            await harness.dry_run(PROJECT_ID, "auto-1", "person", "ghost")

    async def test_other_project_cannot_see_automation(self, harness, automation_store, gateway):
        automation_store.add_automation(_make_automation([]))
        gateway.add_entity(OTHER_PROJECT_ID, "person", {"id": "p9"})
        with pytest.raises(NotFoundError):
            await harness.dry_run(OTHER_PROJECT_ID, "auto-1", "person", "p9")
