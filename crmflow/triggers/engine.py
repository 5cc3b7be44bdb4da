"""CrmFlow AutomationEngine - evaluates automations against entities and runs their actions."""

import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from ..conditions import evaluate, parse_condition
from ..errors import ActionConfigError, ConditionError
from ..models import (
    ActionOutcome,
    Automation,
    AutomationAction,
    AutomationExecution,
    ExecutionStatus,
    TriggerEvent,
    utcnow,
)
from ..protocols import CrmGateway
from ..storage.base import AutomationStore
from .actions import CHAIN_DEPTH, ActionContext, ActionDispatcher
from .matching import matches_trigger_config

logger = logging.getLogger(__name__)


# =============================================================================
# Planning
# =============================================================================

@dataclass
class ActionPlan:
    """The executable actions of one run, with wait/branch already resolved.

    ``wait_index`` is the top-level index of the wait that ends the run;
    the run resumes at ``wait_index + 1`` after ``wait_delay``.
    """
    steps: List[AutomationAction] = field(default_factory=list)
    wait_index: Optional[int] = None
    wait_delay: Optional[timedelta] = None
    branches: List[Dict[str, Any]] = field(default_factory=list)


def wait_delay(config: Dict[str, Any]) -> timedelta:
    try:
        delay = timedelta(
            days=float(config.get("days") or 0),
            hours=float(config.get("hours") or 0),
            minutes=float(config.get("minutes") or 0),
        )
    except (TypeError, ValueError):
        raise ActionConfigError("wait days/hours/minutes must be numbers") from None
    if delay <= timedelta(0):
        raise ActionConfigError("wait needs a positive days, hours or minutes")
    return delay


def plan_actions(
    actions: List[AutomationAction], snapshot: Dict[str, Any], start: int = 0
) -> ActionPlan:
    """Resolve control actions against ``snapshot`` starting at ``start``.

    A top-level ``wait`` ends the plan. A ``branch`` evaluates its condition
    and its chosen list replaces the remaining actions.

    Raises:
        ActionConfigError / ConditionError: malformed wait or branch
    """
    plan = ActionPlan()
    for index in range(start, len(actions)):
        action = actions[index]
        if action.type == "wait":
            plan.wait_index = index
            plan.wait_delay = wait_delay(action.config)
            return plan
        if action.type == "branch":
            plan.steps.extend(_plan_branch(action.config, snapshot, plan.branches))
            return plan
        plan.steps.append(action)
    return plan


def _plan_branch(
    config: Dict[str, Any], snapshot: Dict[str, Any], trace: List[Dict[str, Any]]
) -> List[AutomationAction]:
    taken = evaluate(parse_condition(config.get("condition")), snapshot)
    chosen = config.get("then" if taken else "else") or []
    if not isinstance(chosen, list):
        raise ActionConfigError("branch then/else must be lists of actions")
    trace.append({"branch": "then" if taken else "else", "actions": len(chosen)})

    steps: List[AutomationAction] = []
    for raw in chosen:
        if not isinstance(raw, dict):
            raise ActionConfigError("branch actions must be objects")
        action = AutomationAction.from_dict(raw)
        if action.type == "wait":
            raise ActionConfigError("wait is only allowed at the top level of an action list")
        if action.type == "branch":
            steps.extend(_plan_branch(action.config, snapshot, trace))
        else:
            steps.append(action)
    return steps


# =============================================================================
# Engine
# =============================================================================

class AutomationEngine:
    """
    Evaluate-then-act for one (automation, entity) pair, always leaving an
    AutomationExecution behind.

    Args:
        store: AutomationStore holding automations and the execution log
        dispatcher: ActionDispatcher running individual actions
        gateway: CrmGateway, used to reload live entities when resuming waits
        max_chain_depth: events emitted this many automation runs deep are dropped
        clock: callable returning the current aware datetime
    """

    def __init__(
        self,
        store: AutomationStore,
        dispatcher: ActionDispatcher,
        gateway: CrmGateway,
        max_chain_depth: int = 3,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._store = store
        self._dispatcher = dispatcher
        self._gateway = gateway
        self._max_chain_depth = max_chain_depth
        self._clock = clock

    @property
    def store(self) -> AutomationStore:
        return self._store

    @property
    def dispatcher(self) -> ActionDispatcher:
        return self._dispatcher

    # ------------------------------------------------------------------
    # Event path
    # ------------------------------------------------------------------

    async def handle_event(self, event: TriggerEvent) -> None:
        """Run every active automation of the event's project and trigger type.

        Subscribed to the EventBus. One automation failing does not stop
        the others.
        """
        depth = max(CHAIN_DEPTH.get(), int((event.metadata or {}).get("chain_depth") or 0))
        if depth >= self._max_chain_depth:
            logger.warning(
                f"Dropping {event.trigger_type} for {event.entity_type} {event.entity_id}: "
                f"automation chain depth {depth} reached"
            )
            return

        automations = await self._store.list_active_automations(event.project_id, event.trigger_type)
        token = CHAIN_DEPTH.set(depth)
        try:
            for automation in automations:
                if not matches_trigger_config(automation.trigger_config, event):
                    continue
                try:
                    await self.evaluate_and_run(
                        automation, event.entity_type, event.entity_id, event.data or {}
                    )
                except Exception as e:
                    logger.error(
                        f"Automation {automation.id} failed on {event.trigger_type} "
                        f"for {event.entity_type} {event.entity_id}: {e}"
                    )
        finally:
            CHAIN_DEPTH.reset(token)

    # ------------------------------------------------------------------
    # Evaluate and act
    # ------------------------------------------------------------------

    async def evaluate_and_run(
        self,
        automation: Automation,
        entity_type: str,
        entity_id: str,
        snapshot: Dict[str, Any],
        window_key: Optional[str] = None,
    ) -> AutomationExecution:
        """Evaluate conditions and, on a match, run the actions. Returns the recorded execution."""
        started = time.monotonic()
        try:
            matched = evaluate(parse_condition(automation.conditions), snapshot)
        except ConditionError as e:
            return await self._record(
                automation, entity_type, entity_id, snapshot, started,
                status=ExecutionStatus.ERROR,
                error_message=f"Invalid conditions: {e}",
                window_key=window_key,
            )

        if not matched:
            return await self._record(
                automation, entity_type, entity_id, snapshot, started,
                status=ExecutionStatus.NOT_MATCHED,
                window_key=window_key,
            )

        return await self._run_actions(
            automation, entity_type, entity_id, snapshot, started, start=0, window_key=window_key
        )

    async def resume_wait(self, paused: AutomationExecution) -> AutomationExecution:
        """Continue a run that stopped at a wait, against the live entity.

        Conditions are not re-evaluated. The new execution points back at
        ``paused`` through ``resume_from``.
        """
        started = time.monotonic()
        automation = await self._store.get_automation(paused.project_id, paused.automation_id)
        entity = await self._gateway.get_entity(paused.project_id, paused.entity_type, paused.entity_id)

        if automation is None or not automation.is_active or entity is None:
            reason = "Entity no longer exists" if entity is None else "Automation is missing or inactive"
            execution = AutomationExecution(
                id=str(uuid.uuid4()),
                automation_id=paused.automation_id,
                project_id=paused.project_id,
                trigger_type=paused.trigger_type,
                entity_type=paused.entity_type,
                entity_id=paused.entity_id,
                status=ExecutionStatus.ERROR,
                executed_at=self._clock(),
                entity_snapshot=entity or {},
                error_message=reason,
                resume_from=paused.id,
                duration_ms=_elapsed_ms(started),
            )
            await self._store.record_execution(execution)
            return execution

        return await self._run_actions(
            automation, paused.entity_type, paused.entity_id, entity, started,
            start=paused.resume_at_action or 0,
            resume_from=paused.id,
        )

    async def _run_actions(
        self,
        automation: Automation,
        entity_type: str,
        entity_id: str,
        snapshot: Dict[str, Any],
        started: float,
        start: int,
        window_key: Optional[str] = None,
        resume_from: Optional[str] = None,
    ) -> AutomationExecution:
        now = self._clock()
        try:
            plan = plan_actions(automation.actions, snapshot, start)
        except (ActionConfigError, ConditionError) as e:
            return await self._record(
                automation, entity_type, entity_id, snapshot, started,
                status=ExecutionStatus.ERROR,
                error_message=f"Invalid action list: {e}",
                window_key=window_key,
                resume_from=resume_from,
            )

        ctx = ActionContext(
            project_id=automation.project_id,
            entity_type=entity_type,
            entity_id=entity_id,
            snapshot=snapshot,
            automation_id=automation.id,
            automation_name=automation.name,
            now=now,
        )

        outcomes: List[ActionOutcome] = []
        error_message = None
        token = CHAIN_DEPTH.set(CHAIN_DEPTH.get() + 1)
        try:
            for action in plan.steps:
                outcome = await self._dispatcher.run(action, ctx)
                outcomes.append(outcome)
                if not outcome.success:
                    error_message = f"Action {action.type} failed: {outcome.error}"
                    break
        finally:
            CHAIN_DEPTH.reset(token)

        resume_at = resume_after = None
        if error_message is None and plan.wait_index is not None:
            resume_at = plan.wait_index + 1
            resume_after = now + plan.wait_delay

        return await self._record(
            automation, entity_type, entity_id, snapshot, started,
            status=ExecutionStatus.ERROR if error_message else ExecutionStatus.MATCHED,
            error_message=error_message,
            action_results=[o.to_dict() for o in outcomes],
            window_key=window_key,
            resume_from=resume_from,
            resume_at_action=resume_at,
            resume_after=resume_after,
        )

    async def _record(
        self,
        automation: Automation,
        entity_type: str,
        entity_id: str,
        snapshot: Dict[str, Any],
        started: float,
        status: ExecutionStatus,
        **fields: Any,
    ) -> AutomationExecution:
        execution = AutomationExecution(
            id=str(uuid.uuid4()),
            automation_id=automation.id,
            project_id=automation.project_id,
            trigger_type=automation.trigger_type,
            entity_type=entity_type,
            entity_id=entity_id,
            status=status,
            executed_at=self._clock(),
            entity_snapshot=snapshot,
            duration_ms=_elapsed_ms(started),
            **fields,
        )
        await self._store.record_execution(execution)
        if status == ExecutionStatus.ERROR:
            logger.warning(
                f"Automation {automation.id} errored on {entity_type} {entity_id}: {execution.error_message}"
            )
        else:
            logger.debug(f"Automation {automation.id} {status.value} on {entity_type} {entity_id}")
        return execution


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)
