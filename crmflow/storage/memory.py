"""
In-memory stores - for tests and local runs.

Every read returns a copy, so callers see the same isolation they get from a
database: nothing changes in the store until it is explicitly saved.
"""

import copy
import itertools
import uuid
from datetime import datetime
from typing import Dict, List, Optional, Set

from ..models import (
    Automation,
    AutomationExecution,
    EnrollmentStatus,
    ExecutionStatus,
    OutboxEvent,
    Sequence,
    SequenceEnrollment,
    SequenceStatus,
    SentEmail,
    TriggerEvent,
    utcnow,
)
from .base import MAX_OUTBOX_ATTEMPTS, AutomationStore, SequenceStore

_OPEN_STATUSES = (EnrollmentStatus.ACTIVE, EnrollmentStatus.PAUSED)


class MemorySequenceStore(SequenceStore):
    """In-memory SequenceStore."""

    def __init__(self):
        self._sequences: Dict[str, Sequence] = {}
        self._enrollments: Dict[str, SequenceEnrollment] = {}
        self._sent: List[SentEmail] = []
        self._seq = itertools.count(1)

    # -- fixtures ----------------------------------------------------------

    def add_sequence(self, sequence: Sequence) -> Sequence:
        self._sequences[sequence.id] = copy.deepcopy(sequence)
        return sequence

    @property
    def sent_emails(self) -> List[SentEmail]:
        return list(self._sent)

    def enrollment(self, enrollment_id: str) -> Optional[SequenceEnrollment]:
        found = self._enrollments.get(enrollment_id)
        return copy.deepcopy(found) if found else None

    # -- SequenceStore -----------------------------------------------------

    async def list_due_enrollments(self, now: datetime, limit: int) -> List[SequenceEnrollment]:
        due = []
        for e in self._enrollments.values():
            if e.status != EnrollmentStatus.ACTIVE or e.next_step_due_at is None:
                continue
            if e.next_step_due_at > now:
                continue
            sequence = self._sequences.get(e.sequence_id)
            if sequence is None or sequence.status != SequenceStatus.ACTIVE:
                continue
            due.append(e)
        due.sort(key=lambda e: (e.next_step_due_at, e.created_seq))
        return [copy.deepcopy(e) for e in due[:limit]]

    async def get_sequence(self, project_id: str, sequence_id: str) -> Optional[Sequence]:
        sequence = self._sequences.get(sequence_id)
        if sequence is None or sequence.project_id != project_id:
            return None
        result = copy.deepcopy(sequence)
        result.steps.sort(key=lambda s: s.step_number)
        return result

    async def get_enrollment(self, project_id: str, enrollment_id: str) -> Optional[SequenceEnrollment]:
        e = self._enrollments.get(enrollment_id)
        if e is None or e.project_id != project_id:
            return None
        return copy.deepcopy(e)

    async def find_open_enrollment(
        self, project_id: str, sequence_id: str, person_id: str
    ) -> Optional[SequenceEnrollment]:
        for e in self._enrollments.values():
            if (
                e.project_id == project_id
                and e.sequence_id == sequence_id
                and e.person_id == person_id
                and e.status in _OPEN_STATUSES
            ):
                return copy.deepcopy(e)
        return None

    async def list_open_enrollments_for_person(
        self, project_id: str, person_id: str
    ) -> List[SequenceEnrollment]:
        found = [
            e for e in self._enrollments.values()
            if e.project_id == project_id and e.person_id == person_id and e.status in _OPEN_STATUSES
        ]
        found.sort(key=lambda e: e.created_seq)
        return [copy.deepcopy(e) for e in found]

    async def create_enrollment(self, enrollment: SequenceEnrollment) -> SequenceEnrollment:
        stored = copy.deepcopy(enrollment)
        if not stored.id:
            stored.id = str(uuid.uuid4())
        stored.created_seq = next(self._seq)
        self._enrollments[stored.id] = stored
        return copy.deepcopy(stored)

    async def save_enrollment(self, enrollment: SequenceEnrollment) -> None:
        existing = self._enrollments.get(enrollment.id)
        if existing is None or existing.project_id != enrollment.project_id:
            return
        stored = copy.deepcopy(enrollment)
        stored.created_seq = existing.created_seq
        self._enrollments[enrollment.id] = stored

    async def claim_enrollment(
        self, enrollment_id: str, expected_due_at: datetime, lease_until: datetime
    ) -> bool:
        e = self._enrollments.get(enrollment_id)
        if e is None or e.status != EnrollmentStatus.ACTIVE or e.next_step_due_at != expected_due_at:
            return False
        e.next_step_due_at = lease_until
        return True

    async def record_sent_email(self, sent: SentEmail) -> None:
        self._sent.append(copy.deepcopy(sent))


class MemoryAutomationStore(AutomationStore):
    """In-memory AutomationStore."""

    def __init__(self):
        self._automations: Dict[str, Automation] = {}
        self._executions: List[AutomationExecution] = []
        self._outbox: List[OutboxEvent] = []
        self._outbox_ids = itertools.count(1)

    def add_automation(self, automation: Automation) -> Automation:
        self._automations[automation.id] = copy.deepcopy(automation)
        return automation

    @property
    def executions(self) -> List[AutomationExecution]:
        return list(self._executions)

    @property
    def outbox(self) -> List[OutboxEvent]:
        return list(self._outbox)

    async def list_active_automations(self, project_id: str, trigger_type: str) -> List[Automation]:
        found = [
            a for a in self._automations.values()
            if a.project_id == project_id and a.trigger_type == trigger_type and a.is_active
        ]
        found.sort(key=lambda a: (a.created_at, a.id))
        return [copy.deepcopy(a) for a in found]

    async def list_time_automations(self) -> List[Automation]:
        found = [a for a in self._automations.values() if a.is_active and a.is_time_based]
        found.sort(key=lambda a: (a.created_at, a.id))
        return [copy.deepcopy(a) for a in found]

    async def get_automation(self, project_id: str, automation_id: str) -> Optional[Automation]:
        a = self._automations.get(automation_id)
        if a is None or a.project_id != project_id:
            return None
        return copy.deepcopy(a)

    async def record_execution(self, execution: AutomationExecution) -> None:
        self._executions.append(execution)

    async def consumed_windows(
        self, automation_id: str, entity_type: str, windows: Dict[str, str], max_attempts: int
    ) -> Set[str]:
        consumed: Set[str] = set()
        errors: Dict[str, int] = {}
        for x in self._executions:
            if x.window_key is None or x.automation_id != automation_id or x.entity_type != entity_type:
                continue
            if windows.get(x.entity_id) != x.window_key:
                continue
            if x.status != ExecutionStatus.ERROR or any(r.get("success") for r in x.action_results):
                consumed.add(x.entity_id)
                continue
            errors[x.entity_id] = errors.get(x.entity_id, 0) + 1
            if errors[x.entity_id] >= max_attempts:
                consumed.add(x.entity_id)
        return consumed

    async def list_due_waits(self, now: datetime, limit: int) -> List[AutomationExecution]:
        resumed = {x.resume_from for x in self._executions if x.resume_from}
        due = [
            x for x in self._executions
            if x.resume_after is not None
            and x.resume_at_action is not None
            and x.resume_after <= now
            and x.id not in resumed
        ]
        due.sort(key=lambda x: (x.resume_after, x.executed_at))
        return due[:limit]

    async def list_executions(self, automation_id: str, limit: int = 50) -> List[AutomationExecution]:
        found = [x for x in self._executions if x.automation_id == automation_id]
        return list(reversed(found))[:limit]

    async def enqueue_event(self, event: TriggerEvent) -> int:
        item = OutboxEvent(id=next(self._outbox_ids), event=copy.deepcopy(event), created_at=utcnow())
        self._outbox.append(item)
        return item.id

    async def claim_outbox(self, limit: int) -> List[OutboxEvent]:
        claimed = []
        for item in self._outbox:
            if len(claimed) >= limit:
                break
            if item.delivered_at is None and item.attempts < MAX_OUTBOX_ATTEMPTS:
                item.attempts += 1
                claimed.append(copy.deepcopy(item))
        return claimed

    async def mark_outbox(self, event_id: int, error: Optional[str] = None) -> None:
        for item in self._outbox:
            if item.id == event_id:
                if error is None:
                    item.delivered_at = utcnow()
                    item.last_error = None
                else:
                    item.last_error = error
                return
