"""
CrmFlow Storage - abstract stores for outreach state

Two stores back the outreach core:
- SequenceStore: sequences, enrollments and the sent-email audit trail
- AutomationStore: automations, the execution log and the event outbox

Implementations:
- crmflow.storage.memory: in-memory, for tests and local runs
- crmflow.storage.postgres: asyncpg repositories

Infrastructure failures are raised as StoreError.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, List, Optional, Set

from ..models import (
    Automation,
    AutomationExecution,
    OutboxEvent,
    Sequence,
    SequenceEnrollment,
    SentEmail,
    TriggerEvent,
)

MAX_OUTBOX_ATTEMPTS = 5


class SequenceStore(ABC):

    @abstractmethod
    async def list_due_enrollments(self, now: datetime, limit: int) -> List[SequenceEnrollment]:
        """
        Active enrollments of active sequences with ``next_step_due_at <= now``.

        Ordered by ``next_step_due_at`` then insertion order (``created_seq``).
        """
        pass

    @abstractmethod
    async def get_sequence(self, project_id: str, sequence_id: str) -> Optional[Sequence]:
        """Sequence with its steps ordered by step_number, or None."""
        pass

    @abstractmethod
    async def get_enrollment(self, project_id: str, enrollment_id: str) -> Optional[SequenceEnrollment]:
        pass

    @abstractmethod
    async def find_open_enrollment(
        self, project_id: str, sequence_id: str, person_id: str
    ) -> Optional[SequenceEnrollment]:
        """The active or paused enrollment for (sequence, person), if any."""
        pass

    @abstractmethod
    async def list_open_enrollments_for_person(
        self, project_id: str, person_id: str
    ) -> List[SequenceEnrollment]:
        pass

    @abstractmethod
    async def create_enrollment(self, enrollment: SequenceEnrollment) -> SequenceEnrollment:
        """Persist a new enrollment; returns it with ``created_seq`` assigned."""
        pass

    @abstractmethod
    async def save_enrollment(self, enrollment: SequenceEnrollment) -> None:
        """Write back the mutable runtime fields of an enrollment."""
        pass

    @abstractmethod
    async def claim_enrollment(
        self, enrollment_id: str, expected_due_at: datetime, lease_until: datetime
    ) -> bool:
        """
        Compare-and-swap ``next_step_due_at`` from ``expected_due_at`` to ``lease_until``.

        Returns:
            True if this caller now owns the enrollment
        """
        pass

    @abstractmethod
    async def record_sent_email(self, sent: SentEmail) -> None:
        pass


class AutomationStore(ABC):

    @abstractmethod
    async def list_active_automations(self, project_id: str, trigger_type: str) -> List[Automation]:
        """Active automations of one project and trigger type, oldest first."""
        pass

    @abstractmethod
    async def list_time_automations(self) -> List[Automation]:
        """Active time-based automations of every project, ordered by created_at then id."""
        pass

    @abstractmethod
    async def get_automation(self, project_id: str, automation_id: str) -> Optional[Automation]:
        pass

    @abstractmethod
    async def record_execution(self, execution: AutomationExecution) -> None:
        """Append one execution. Executions are never updated."""
        pass

    @abstractmethod
    async def consumed_windows(
        self, automation_id: str, entity_type: str, windows: Dict[str, str], max_attempts: int
    ) -> Set[str]:
        """
        Entity ids of ``windows`` (entity id -> window key) that must not be
        evaluated again for their window key.

        A window is consumed by any non-error execution, by an error
        execution in which an action already succeeded, or by
        ``max_attempts`` error executions.
        """
        pass

    @abstractmethod
    async def list_due_waits(self, now: datetime, limit: int) -> List[AutomationExecution]:
        """
        Executions paused on a wait action whose ``resume_after <= now`` and
        that no later execution has resumed yet. Oldest first.
        """
        pass

    @abstractmethod
    async def list_executions(self, automation_id: str, limit: int = 50) -> List[AutomationExecution]:
        """Most recent first."""
        pass

    @abstractmethod
    async def enqueue_event(self, event: TriggerEvent) -> int:
        """Append an event to the outbox; returns its id."""
        pass

    @abstractmethod
    async def claim_outbox(self, limit: int) -> List[OutboxEvent]:
        """Undelivered outbox events in insertion order; bumps their attempt count."""
        pass

    @abstractmethod
    async def mark_outbox(self, event_id: int, error: Optional[str] = None) -> None:
        """Mark delivered (error is None) or record the delivery error."""
        pass
