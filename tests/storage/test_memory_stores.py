"""Tests for the in-memory SequenceStore and AutomationStore

Tests cover:
- Reads return copies
- Due-enrollment selection and ordering
- find_open_enrollment ignores terminal enrollments
- claim_enrollment compare-and-set
- save_enrollment never crosses projects
- consumed_windows: error rows, partial side effects, attempt cap
- list_due_waits skips already-resumed runs
"""

from datetime import timedelta

from conftest import OTHER_PROJECT_ID, PROJECT_ID, T0
from crmflow.models import (
    AutomationExecution,
    EnrollmentStatus,
    ExecutionStatus,
    Sequence,
    SequenceEnrollment,
    SequenceStatus,
    SequenceStep,
)


def _make_enrollment(enrollment_id="e1", **kwargs):
    kwargs.setdefault("next_step_due_at", T0)
    return SequenceEnrollment(
        id=enrollment_id,
        project_id=kwargs.pop("project_id", PROJECT_ID),
        sequence_id="seq-1",
        person_id=kwargs.pop("person_id", "p1"),
        **kwargs,
    )


def _make_execution(execution_id, status=ExecutionStatus.MATCHED, **kwargs):
    return AutomationExecution(
        id=execution_id,
        automation_id="auto-1",
        project_id=PROJECT_ID,
        trigger_type="time.entity_inactive",
        entity_type="organization",
        entity_id="org-1",
        status=status,
        **kwargs,
    )


def _add_sequence(store, status=SequenceStatus.ACTIVE):
    store.add_sequence(Sequence(
        id="seq-1", project_id=PROJECT_ID, status=status,
        steps=[SequenceStep(id="s1", sequence_id="seq-1", step_number=1)],
    ))


class TestMemorySequenceStore:

    async def test_reads_are_copies(self, sequence_store):
        _add_sequence(sequence_store)
        created = await sequence_store.create_enrollment(_make_enrollment())
        created.status = EnrollmentStatus.CANCELLED

        stored = await sequence_store.get_enrollment(PROJECT_ID, "e1")
        assert stored.status == EnrollmentStatus.ACTIVE

    async def test_due_selection(self, sequence_store):
        _add_sequence(sequence_store)
        await sequence_store.create_enrollment(_make_enrollment("late", next_step_due_at=T0 - timedelta(hours=1)))
        await sequence_store.create_enrollment(_make_enrollment("now"))
        await sequence_store.create_enrollment(_make_enrollment("future", next_step_due_at=T0 + timedelta(seconds=1)))
        await sequence_store.create_enrollment(_make_enrollment("done", status=EnrollmentStatus.COMPLETED))
        await sequence_store.create_enrollment(_make_enrollment("paused", status=EnrollmentStatus.PAUSED))

        due = await sequence_store.list_due_enrollments(T0, 10)

        assert [e.id for e in due] == ["late", "now"]

    async def test_find_open_enrollment(self, sequence_store):
        await sequence_store.create_enrollment(_make_enrollment("old", status=EnrollmentStatus.COMPLETED))
        assert await sequence_store.find_open_enrollment(PROJECT_ID, "seq-1", "p1") is None

        await sequence_store.create_enrollment(_make_enrollment("paused", status=EnrollmentStatus.PAUSED))
        found = await sequence_store.find_open_enrollment(PROJECT_ID, "seq-1", "p1")
        assert found.id == "paused"
        assert await sequence_store.find_open_enrollment(OTHER_PROJECT_ID, "seq-1", "p1") is None

    async def test_claim_is_compare_and_set(self, sequence_store):
        await sequence_store.create_enrollment(_make_enrollment())
        lease = T0 + timedelta(minutes=5)

        assert await sequence_store.claim_enrollment("e1", T0, lease) is True
        assert await sequence_store.claim_enrollment("e1", T0, lease) is False
        assert sequence_store.enrollment("e1").next_step_due_at == lease

    async def test_save_does_not_cross_projects(self, sequence_store):
        await sequence_store.create_enrollment(_make_enrollment())
        hijack = _make_enrollment(project_id=OTHER_PROJECT_ID, status=EnrollmentStatus.CANCELLED)

        await sequence_store.save_enrollment(hijack)

        assert sequence_store.enrollment("e1").status == EnrollmentStatus.ACTIVE


class TestMemoryAutomationStore:

    async def test_error_rows_do_not_consume_window(self, automation_store):
        await automation_store.record_execution(_make_execution("x1", ExecutionStatus.ERROR, window_key="k"))
        assert await automation_store.consumed_windows("auto-1", "organization", {"org-1": "k"}, 3) == set()

        await automation_store.record_execution(_make_execution("x2", ExecutionStatus.NOT_MATCHED, window_key="k"))
        assert await automation_store.consumed_windows("auto-1", "organization", {"org-1": "k"}, 3) == {"org-1"}
        assert await automation_store.consumed_windows("auto-1", "organization", {"org-1": "other"}, 3) == set()

    async def test_error_after_successful_action_consumes_window(self, automation_store):
        await automation_store.record_execution(_make_execution(
            "x1", ExecutionStatus.ERROR, window_key="k",
            action_results=[
                {"action_type": "create_task", "success": True},
                {"action_type": "webhook", "success": False, "error": "HTTP 404"},
            ],
        ))
        assert await automation_store.consumed_windows("auto-1", "organization", {"org-1": "k"}, 3) == {"org-1"}

    async def test_error_attempts_consume_window(self, automation_store):
        for i in range(2):
            await automation_store.record_execution(_make_execution(f"x{i}", ExecutionStatus.ERROR, window_key="k"))

        assert await automation_store.consumed_windows("auto-1", "organization", {"org-1": "k"}, 3) == set()
        assert await automation_store.consumed_windows("auto-1", "organization", {"org-1": "k"}, 2) == {"org-1"}

    async def test_due_waits(self, automation_store):
        await automation_store.record_execution(_make_execution(
            "paused-1", resume_at_action=1, resume_after=T0 - timedelta(minutes=1),
        ))
        await automation_store.record_execution(_make_execution(
            "paused-2", resume_at_action=1, resume_after=T0 + timedelta(minutes=1),
        ))

        assert [x.id for x in await automation_store.list_due_waits(T0, 10)] == ["paused-1"]

        await automation_store.record_execution(_make_execution("resumed-1", resume_from="paused-1"))
        assert await automation_store.list_due_waits(T0, 10) == []

    async def test_list_executions_newest_first(self, automation_store):
        for i in range(3):
            await automation_store.record_execution(_make_execution(f"x{i}"))
        assert [x.id for x in await automation_store.list_executions("auto-1", limit=2)] == ["x2", "x1"]
