"""
CrmFlow Triggers - automation rules over CRM entities.

Event triggers arrive through the EventBus (in-process or outbox transport);
time triggers are polled by TimeTriggerProcessor. Both paths evaluate
conditions and run actions through the AutomationEngine, which records an
AutomationExecution for every evaluation.
"""

from .actions import ActionContext, ActionDispatcher, ActionFailed, ActionHandler
from .dry_run import DryRunHarness
from .engine import ActionPlan, AutomationEngine, plan_actions
from .event_bus import EventBus, InProcessTransport, OutboxTransport
from .matching import matches_trigger_config
from .time_triggers import TimeTriggerProcessor, TriggerWindow, compute_window, window_key

__all__ = [
    # Actions
    "ActionContext",
    "ActionDispatcher",
    "ActionFailed",
    "ActionHandler",
    # Engine
    "ActionPlan",
    "AutomationEngine",
    "plan_actions",
    "matches_trigger_config",
    # Time triggers
    "TimeTriggerProcessor",
    "TriggerWindow",
    "compute_window",
    "window_key",
    # Dry runs
    "DryRunHarness",
    # EventBus
    "EventBus",
    "InProcessTransport",
    "OutboxTransport",
]
