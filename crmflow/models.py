"""CrmFlow Models - data structures for sequences, automations and trigger events."""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from dateutil.parser import isoparse


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_dt(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    return isoparse(str(value))


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


# =============================================================================
# Entities
# =============================================================================

ENTITY_TYPES = ("organization", "person", "opportunity", "rfp", "task", "meeting", "call")

ENTITY_TABLES = {
    "organization": "organizations",
    "person": "people",
    "opportunity": "opportunities",
    "rfp": "rfps",
    "task": "tasks",
    "meeting": "meetings",
    "call": "calls",
}

# Entity types with a deleted_at column
SOFT_DELETE_TYPES = frozenset({"organization", "person", "opportunity", "rfp"})


# =============================================================================
# Sequences
# =============================================================================

class SequenceStatus(str, Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    PAUSED = "paused"
    ARCHIVED = "archived"


class EnrollmentStatus(str, Enum):
    """Enrollment lifecycle states.

    COMPLETED, CANCELLED and FAILED are terminal: no further step is ever
    executed once an enrollment reaches one of them.
    """
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (EnrollmentStatus.COMPLETED, EnrollmentStatus.CANCELLED, EnrollmentStatus.FAILED)


class StepType(str, Enum):
    EMAIL = "email"
    WAIT = "wait"
    TASK = "task"
    CALL = "call"
    LINKEDIN = "linkedin"


class DelayAnchor(str, Enum):
    """What a step's delay is measured from."""
    PREVIOUS_STEP = "previous_step"
    ENROLLMENT = "enrollment"


@dataclass
class SequenceStep:
    """One ordered step of a sequence."""
    id: str
    sequence_id: str
    step_number: int
    step_type: StepType = StepType.EMAIL
    delay_days: int = 0
    delay_hours: int = 0
    delay_minutes: int = 0
    delay_anchor: DelayAnchor = DelayAnchor.PREVIOUS_STEP
    subject: Optional[str] = None
    body_html: Optional[str] = None
    body_text: Optional[str] = None
    config: Dict[str, Any] = field(default_factory=dict)

    @property
    def delay(self) -> timedelta:
        return timedelta(
            days=self.delay_days or 0,
            hours=self.delay_hours or 0,
            minutes=self.delay_minutes or 0,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "sequence_id": self.sequence_id,
            "step_number": self.step_number,
            "step_type": self.step_type.value,
            "delay_days": self.delay_days,
            "delay_hours": self.delay_hours,
            "delay_minutes": self.delay_minutes,
            "delay_anchor": self.delay_anchor.value,
            "subject": self.subject,
            "body_html": self.body_html,
            "body_text": self.body_text,
            "config": self.config,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SequenceStep":
        return cls(
            id=str(data["id"]),
            sequence_id=str(data["sequence_id"]),
            step_number=int(data["step_number"]),
            step_type=StepType(data.get("step_type") or "email"),
            delay_days=int(data.get("delay_days") or 0),
            delay_hours=int(data.get("delay_hours") or 0),
            delay_minutes=int(data.get("delay_minutes") or 0),
            delay_anchor=DelayAnchor(data.get("delay_anchor") or "previous_step"),
            subject=data.get("subject"),
            body_html=data.get("body_html"),
            body_text=data.get("body_text"),
            config=data.get("config") or {},
        )


@dataclass
class Sequence:
    """A named, ordered list of outreach steps owned by one project."""
    id: str
    project_id: str
    name: str = ""
    status: SequenceStatus = SequenceStatus.DRAFT
    settings: Dict[str, Any] = field(default_factory=dict)
    organization_id: Optional[str] = None
    steps: List[SequenceStep] = field(default_factory=list)

    def step(self, step_number: int) -> Optional[SequenceStep]:
        for step in self.steps:
            if step.step_number == step_number:
                return step
        return None

    @property
    def step_count(self) -> int:
        return len(self.steps)

    @property
    def stop_on_reply(self) -> bool:
        return bool(self.settings.get("stop_on_reply", True))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "project_id": self.project_id,
            "name": self.name,
            "status": self.status.value,
            "settings": self.settings,
            "organization_id": self.organization_id,
            "steps": [s.to_dict() for s in self.steps],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Sequence":
        steps = [SequenceStep.from_dict(s) for s in data.get("steps") or []]
        steps.sort(key=lambda s: s.step_number)
        return cls(
            id=str(data["id"]),
            project_id=str(data["project_id"]),
            name=data.get("name") or "",
            status=SequenceStatus(data.get("status") or "draft"),
            settings=data.get("settings") or {},
            organization_id=data.get("organization_id"),
            steps=steps,
        )


@dataclass
class SequenceEnrollment:
    """A person's progress through a sequence."""
    id: str
    project_id: str
    sequence_id: str
    person_id: str
    status: EnrollmentStatus = EnrollmentStatus.ACTIVE
    current_step_number: int = 1
    next_step_due_at: Optional[datetime] = None
    enrolled_at: datetime = field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    sender_id: Optional[str] = None
    attempt_count: int = 0
    last_error: Optional[str] = None
    created_seq: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "project_id": self.project_id,
            "sequence_id": self.sequence_id,
            "person_id": self.person_id,
            "status": self.status.value,
            "current_step_number": self.current_step_number,
            "next_step_due_at": _iso(self.next_step_due_at),
            "enrolled_at": _iso(self.enrolled_at),
            "completed_at": _iso(self.completed_at),
            "sender_id": self.sender_id,
            "attempt_count": self.attempt_count,
            "last_error": self.last_error,
            "created_seq": self.created_seq,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SequenceEnrollment":
        return cls(
            id=str(data["id"]),
            project_id=str(data["project_id"]),
            sequence_id=str(data["sequence_id"]),
            person_id=str(data["person_id"]),
            status=EnrollmentStatus(data.get("status") or "active"),
            current_step_number=int(data.get("current_step_number") or 1),
            next_step_due_at=_parse_dt(data.get("next_step_due_at")),
            enrolled_at=_parse_dt(data.get("enrolled_at")) or utcnow(),
            completed_at=_parse_dt(data.get("completed_at")),
            sender_id=data.get("sender_id"),
            attempt_count=int(data.get("attempt_count") or 0),
            last_error=data.get("last_error"),
            created_seq=int(data.get("created_seq") or 0),
        )


@dataclass
class SentEmail:
    """Record of one email handed to the mail collaborator for a sequence step."""
    id: str
    project_id: str
    enrollment_id: str
    sequence_id: str
    step_id: str
    person_id: str
    to_address: str
    subject: str
    message_id: Optional[str] = None
    sent_at: datetime = field(default_factory=utcnow)


@dataclass
class OutboundEmail:
    """Message handed to a MailSender."""
    project_id: str
    to: str
    subject: str
    body_html: str
    body_text: str
    person_id: Optional[str] = None
    sender_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class VariableContext:
    """Records used to personalize outreach templates."""
    person: Dict[str, Any] = field(default_factory=dict)
    organization: Dict[str, Any] = field(default_factory=dict)
    sender: Dict[str, Any] = field(default_factory=dict)


@dataclass
class SequenceRunResult:
    processed: int = 0
    sent: int = 0
    completed: int = 0
    errors: int = 0
    details: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, int]:
        return {
            "processed": self.processed,
            "sent": self.sent,
            "completed": self.completed,
            "errors": self.errors,
        }


# =============================================================================
# Automations
# =============================================================================

TIME_TRIGGER_TYPES = (
    "time.entity_inactive",
    "time.task_overdue",
    "time.close_date_approaching",
    "time.created_ago",
)


class ExecutionStatus(str, Enum):
    MATCHED = "matched"
    NOT_MATCHED = "not_matched"
    ERROR = "error"


@dataclass
class AutomationAction:
    """One action of an automation's ordered action list."""
    type: str
    config: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, "config": self.config}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AutomationAction":
        return cls(type=data.get("type") or "", config=data.get("config") or {})


@dataclass
class Automation:
    """Trigger + condition tree + ordered actions, scoped to one project.

    ``conditions`` holds the stored JSON tree; it is parsed at evaluation time
    so that a malformed tree surfaces as an error execution.
    """
    id: str
    project_id: str
    name: str
    trigger_type: str
    trigger_config: Dict[str, Any] = field(default_factory=dict)
    conditions: Any = None
    actions: List[AutomationAction] = field(default_factory=list)
    is_active: bool = True
    description: str = ""
    created_at: datetime = field(default_factory=utcnow)

    @property
    def is_time_based(self) -> bool:
        return self.trigger_type in TIME_TRIGGER_TYPES

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "project_id": self.project_id,
            "name": self.name,
            "description": self.description,
            "trigger_type": self.trigger_type,
            "trigger_config": self.trigger_config,
            "conditions": self.conditions,
            "actions": [a.to_dict() for a in self.actions],
            "is_active": self.is_active,
            "created_at": _iso(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Automation":
        return cls(
            id=str(data["id"]),
            project_id=str(data["project_id"]),
            name=data.get("name") or "",
            description=data.get("description") or "",
            trigger_type=data["trigger_type"],
            trigger_config=data.get("trigger_config") or {},
            conditions=data.get("conditions"),
            actions=[AutomationAction.from_dict(a) for a in data.get("actions") or []],
            is_active=bool(data.get("is_active", True)),
            created_at=_parse_dt(data.get("created_at")) or utcnow(),
        )


@dataclass(frozen=True)
class AutomationExecution:
    """Immutable log entry of one automation evaluation against one entity."""
    id: str
    automation_id: str
    project_id: str
    trigger_type: str
    entity_type: str
    entity_id: str
    status: ExecutionStatus
    executed_at: datetime = field(default_factory=utcnow)
    entity_snapshot: Dict[str, Any] = field(default_factory=dict)
    action_results: List[Dict[str, Any]] = field(default_factory=list)
    error_message: Optional[str] = None
    window_key: Optional[str] = None
    resume_from: Optional[str] = None
    resume_at_action: Optional[int] = None
    resume_after: Optional[datetime] = None
    duration_ms: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "automation_id": self.automation_id,
            "project_id": self.project_id,
            "trigger_type": self.trigger_type,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "status": self.status.value,
            "executed_at": _iso(self.executed_at),
            "entity_snapshot": self.entity_snapshot,
            "action_results": self.action_results,
            "error_message": self.error_message,
            "window_key": self.window_key,
            "resume_from": self.resume_from,
            "resume_at_action": self.resume_at_action,
            "resume_after": _iso(self.resume_after),
            "duration_ms": self.duration_ms,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AutomationExecution":
        return cls(
            id=str(data["id"]),
            automation_id=str(data["automation_id"]),
            project_id=str(data["project_id"]),
            trigger_type=data.get("trigger_type") or "",
            entity_type=data["entity_type"],
            entity_id=str(data["entity_id"]),
            status=ExecutionStatus(data["status"]),
            executed_at=_parse_dt(data.get("executed_at")) or utcnow(),
            entity_snapshot=data.get("entity_snapshot") or {},
            action_results=data.get("action_results") or [],
            error_message=data.get("error_message"),
            window_key=data.get("window_key"),
            resume_from=str(data["resume_from"]) if data.get("resume_from") else None,
            resume_at_action=data.get("resume_at_action"),
            resume_after=_parse_dt(data.get("resume_after")),
            duration_ms=int(data.get("duration_ms") or 0),
        )


@dataclass
class ActionOutcome:
    action_type: str
    success: bool
    result: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"action_type": self.action_type, "success": self.success}
        if self.result:
            data["result"] = self.result
        if self.error:
            data["error"] = self.error
        return data


@dataclass
class TriggerEvent:
    """A domain event recorded by a CRM mutation path."""
    project_id: str
    trigger_type: str
    entity_type: str
    entity_id: str
    data: Dict[str, Any] = field(default_factory=dict)
    previous_data: Optional[Dict[str, Any]] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    occurred_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "project_id": self.project_id,
            "trigger_type": self.trigger_type,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "data": self.data,
            "previous_data": self.previous_data,
            "metadata": self.metadata,
            "occurred_at": _iso(self.occurred_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TriggerEvent":
        return cls(
            project_id=str(data["project_id"]),
            trigger_type=data["trigger_type"],
            entity_type=data["entity_type"],
            entity_id=str(data["entity_id"]),
            data=data.get("data") or {},
            previous_data=data.get("previous_data"),
            metadata=data.get("metadata") or {},
            occurred_at=_parse_dt(data.get("occurred_at")) or utcnow(),
        )


@dataclass
class OutboxEvent:
    """A TriggerEvent persisted for later delivery."""
    id: int
    event: TriggerEvent
    attempts: int = 0
    created_at: datetime = field(default_factory=utcnow)
    delivered_at: Optional[datetime] = None
    last_error: Optional[str] = None


@dataclass
class TimeTriggerRunResult:
    processed: int = 0
    matched: int = 0
    errors: int = 0
    resumed: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            "processed": self.processed,
            "matched": self.matched,
            "errors": self.errors,
            "resumed": self.resumed,
        }


@dataclass
class DryRunResult:
    matched: bool
    actions_would_run: List[Dict[str, Any]] = field(default_factory=list)
    condition_trace: Optional[Dict[str, Any]] = None
    entity_snapshot: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "matched": self.matched,
            "actions_would_run": self.actions_would_run,
            "condition_trace": self.condition_trace,
            "entity_snapshot": self.entity_snapshot,
        }
