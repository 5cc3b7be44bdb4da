"""Tests for the CrmFlow HTTP API

Tests cover:
- /health
- /cron/process-sequences: secret enforcement (500 unset, 401 wrong), GET and POST, failure body
- /projects/{slug}/automations/{id}/test: dry run, 404s, request validation
- /projects/{slug}/events: 202 and engine dispatch
- API key enforcement (X-API-Key and Bearer)
- 503 when no app is configured
"""

from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient

import crmflow.server.app as server_app
from conftest import PROJECT_ID
from crmflow import CrmFlow, CrmFlowConfig
from crmflow.models import Automation, AutomationAction
from crmflow.server.app import api, set_app

CRON_SECRET = "cron-s3cret"


def _make_app(config, sequence_store, automation_store, gateway, mail_sender, webhook_sender, clock):
    return CrmFlow(
        config,
        sequence_store=sequence_store,
        automation_store=automation_store,
        gateway=gateway,
        mail_sender=mail_sender,
        webhook_sender=webhook_sender,
        clock=clock,
    )


@pytest.fixture
def collaborators(sequence_store, automation_store, gateway, mail_sender, webhook_sender, clock):
    return sequence_store, automation_store, gateway, mail_sender, webhook_sender, clock


@pytest.fixture
def client():
    yield TestClient(api)
    set_app(None)


@pytest.fixture
def crm(collaborators):
    app = _make_app(CrmFlowConfig(cron_secret=CRON_SECRET), *collaborators)
    set_app(app)
    return app


@pytest.fixture
def automation(automation_store, gateway):
    gateway.add_entity(PROJECT_ID, "opportunity", {"id": "o1", "amount": 5000, "stage": "proposal"})
    automation_store.add_automation(Automation(
        id="auto-1",
        project_id=PROJECT_ID,
        name="Big deal",
        trigger_type="opportunity.stage_changed",
        conditions={"field": "amount", "operator": "greater_than", "value": 1000},
        actions=[AutomationAction("create_task", {"title": "Escalate"})],
    ))


class TestHealth:

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "ok"}


class TestCron:

    def test_missing_secret_config_is_500(self, client, collaborators):
        set_app(_make_app(CrmFlowConfig(), *collaborators))
        response = client.post("/cron/process-sequences", headers={"Authorization": "Bearer anything"})
        assert response.status_code == 500

    def test_wrong_secret_is_401(self, client, crm):
        assert client.post("/cron/process-sequences").status_code == 401
        response = client.post("/cron/process-sequences", headers={"Authorization": "Bearer nope"})
        assert response.status_code == 401

    @pytest.mark.parametrize("method", ["GET", "POST"])
    def test_runs_tick(self, client, crm, method):
        response = client.request(
            method, "/cron/process-sequences", headers={"Authorization": f"Bearer {CRON_SECRET}"},
        )
        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["sequences"] == {"processed": 0, "sent": 0, "completed": 0, "errors": 0}
        assert body["automations"]["processed"] == 0

    def test_store_failure_is_500(self, client, crm, sequence_store):
        sequence_store.list_due_enrollments = AsyncMock(side_effect=RuntimeError("db unreachable"))
        response = client.post("/cron/process-sequences", headers={"Authorization": f"Bearer {CRON_SECRET}"})
        assert response.status_code == 500
        assert response.json() == {"success": False, "error": "db unreachable"}

    def test_not_configured_is_503(self, client, monkeypatch, tmp_path):
        monkeypatch.setattr(server_app, "_config_path", str(tmp_path / "missing.yaml"))
        set_app(None)
        response = client.post("/cron/process-sequences", headers={"Authorization": "Bearer x"})
        assert response.status_code == 503


class TestDryRunRoute:

    def test_dry_run(self, client, crm, automation, gateway):
        response = client.post(
            "/projects/acme/automations/auto-1/test",
            json={"entity_type": "opportunity", "entity_id": "o1"},
        )
        assert response.status_code == 200
        body = response.json()
        assert body["matched"] is True
        assert body["actions_would_run"][0]["would_create_task"]["title"] == "Escalate"
        assert body["condition_trace"]["result"] is True
        assert gateway.tasks == []

    def test_unknown_project(self, client, crm, automation):
        response = client.post(
            "/projects/nope/automations/auto-1/test", json={"entity_type": "opportunity", "entity_id": "o1"},
        )
        assert response.status_code == 404

    def test_automation_from_other_project(self, client, crm, automation):
        response = client.post(
            "/projects/globex/automations/auto-1/test", json={"entity_type": "opportunity", "entity_id": "o1"},
        )
        assert response.status_code == 404

    def test_unknown_entity(self, client, crm, automation):
        response = client.post(
            "/projects/acme/automations/auto-1/test", json={"entity_type": "opportunity", "entity_id": "ghost"},
        )
        assert response.status_code == 404

    def test_bad_entity_type(self, client, crm, automation):
        response = client.post(
            "/projects/acme/automations/auto-1/test", json={"entity_type": "invoice", "entity_id": "o1"},
        )
        assert response.status_code == 422


class TestEventsRoute:

    def test_event_runs_automation(self, client, crm, automation, automation_store, gateway):
        response = client.post("/projects/acme/events", json={
            "trigger_type": "opportunity.stage_changed",
            "entity_type": "opportunity",
            "entity_id": "o1",
            "data": {"id": "o1", "amount": 5000},
            "previous_data": {"id": "o1", "amount": 5000, "stage": "lead"},
        })

        assert response.status_code == 202
        assert response.json() == {"status": "accepted"}
        assert [t["title"] for t in gateway.tasks] == ["Escalate"]
        assert len(automation_store.executions) == 1

    def test_empty_trigger_type_rejected(self, client, crm):
        response = client.post("/projects/acme/events", json={
            "trigger_type": "", "entity_type": "person", "entity_id": "p1",
        })
        assert response.status_code == 422


class TestApiKey:

    @pytest.fixture
    def locked(self, collaborators):
        app = _make_app(CrmFlowConfig(cron_secret=CRON_SECRET, api_key="k-123"), *collaborators)
        set_app(app)
        return app

    def _post(self, client, headers=None):
        return client.post(
            "/projects/acme/events",
            json={"trigger_type": "person.created", "entity_type": "person", "entity_id": "p1"},
            headers=headers or {},
        )

    def test_missing_key(self, client, locked):
        assert self._post(client).status_code == 401

    def test_wrong_key(self, client, locked):
        assert self._post(client, {"X-API-Key": "nope"}).status_code == 401

    def test_header_key(self, client, locked):
        assert self._post(client, {"X-API-Key": "k-123"}).status_code == 202

    def test_bearer_key(self, client, locked):
        assert self._post(client, {"Authorization": "Bearer k-123"}).status_code == 202
