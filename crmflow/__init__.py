"""
CrmFlow - outreach automation core for a multi-tenant CRM

CrmFlow advances multi-step email sequences for enrolled contacts and runs
event- and time-triggered automation rules against CRM entities. Work is
driven by periodic batch calls (a cron hitting an HTTP endpoint); there is
no long-running worker.

Key pieces:
- SequenceProcessor: sends due steps, schedules the next one, retries failures
- AutomationEngine: trigger -> conditions -> ordered actions, with an
  append-only AutomationExecution log
- TimeTriggerProcessor: polled time windows with per-window idempotency
- DryRunHarness: "what would this rule do to this record?" without side effects
- EventBus: fire-and-forget events over an in-process or outbox transport

Quick Start:
    from crmflow import CrmFlow, TriggerEvent

    app = CrmFlow.from_file("config.yaml")

    # Periodic tick
    result = await app.process_due_work()
    # {"success": True, "sequences": {...}, "automations": {...}}

    # From a mutation path
    await app.emit_automation_event(TriggerEvent(
        project_id=project_id,
        trigger_type="opportunity.stage_changed",
        entity_type="opportunity",
        entity_id=opportunity_id,
        data=updated,
        previous_data=before,
    ))

HTTP server:
    python -m crmflow.server.main --port 8000
"""

__version__ = "0.1.0"

from .app import CrmFlow
from .config import CrmFlowConfig, load_config
from .errors import (
    ActionConfigError,
    ConditionError,
    ConfigError,
    CrmFlowError,
    MailError,
    NotFoundError,
    StoreError,
    TemplateError,
)
from .models import (
    Automation,
    AutomationAction,
    AutomationExecution,
    DryRunResult,
    EnrollmentStatus,
    ExecutionStatus,
    Sequence,
    SequenceEnrollment,
    SequenceRunResult,
    SequenceStatus,
    SequenceStep,
    StepType,
    TimeTriggerRunResult,
    TriggerEvent,
)
from .conditions import evaluate, explain, parse_condition
from .sequences import SequenceProcessor
from .triggers import AutomationEngine, DryRunHarness, EventBus, TimeTriggerProcessor

__all__ = [
    "__version__",
    # Application
    "CrmFlow",
    "CrmFlowConfig",
    "load_config",
    # Errors
    "CrmFlowError",
    "ConfigError",
    "StoreError",
    "NotFoundError",
    "MailError",
    "ActionConfigError",
    "ConditionError",
    "TemplateError",
    # Models
    "Automation",
    "AutomationAction",
    "AutomationExecution",
    "DryRunResult",
    "EnrollmentStatus",
    "ExecutionStatus",
    "Sequence",
    "SequenceEnrollment",
    "SequenceRunResult",
    "SequenceStatus",
    "SequenceStep",
    "StepType",
    "TimeTriggerRunResult",
    "TriggerEvent",
    # Conditions
    "evaluate",
    "explain",
    "parse_condition",
    # Processors
    "SequenceProcessor",
    "AutomationEngine",
    "TimeTriggerProcessor",
    "DryRunHarness",
    "EventBus",
]
