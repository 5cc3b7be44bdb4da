"""Dry runs - evaluate an automation against a live entity without acting."""

import logging
from typing import Callable

from ..conditions import evaluate, explain, parse_condition
from ..errors import ActionConfigError, ConditionError, NotFoundError
from ..models import DryRunResult, utcnow
from ..protocols import CrmGateway
from ..storage.base import AutomationStore
from .actions import ActionContext, ActionDispatcher
from .engine import plan_actions

logger = logging.getLogger(__name__)


class DryRunHarness:
    """
    Answers "what would this automation do to this record right now?"

    Reads only: no AutomationExecution is written and no handler's
    ``execute`` is called. Actions are described through each handler's
    pure ``describe``.
    """

    def __init__(
        self,
        store: AutomationStore,
        gateway: CrmGateway,
        dispatcher: ActionDispatcher,
        clock: Callable = utcnow,
    ):
        self._store = store
        self._gateway = gateway
        self._dispatcher = dispatcher
        self._clock = clock

    async def dry_run(
        self, project_id: str, automation_id: str, entity_type: str, entity_id: str
    ) -> DryRunResult:
        """
        Raises:
            NotFoundError: automation or entity is not in ``project_id``
        """
        automation = await self._store.get_automation(project_id, automation_id)
        if automation is None:
            raise NotFoundError(f"Automation {automation_id} not found")
        entity = await self._gateway.get_entity(project_id, entity_type, entity_id)
        if entity is None:
            raise NotFoundError(f"{entity_type} {entity_id} not found")

        try:
            node = parse_condition(automation.conditions)
        except ConditionError as e:
            return DryRunResult(
                matched=False,
                condition_trace={"type": "error", "result": False, "error": str(e)},
                entity_snapshot=entity,
            )

        trace = explain(node, entity)
        if not evaluate(node, entity):
            return DryRunResult(matched=False, condition_trace=trace, entity_snapshot=entity)

        ctx = ActionContext(
            project_id=project_id,
            entity_type=entity_type,
            entity_id=entity_id,
            snapshot=entity,
            automation_id=automation.id,
            automation_name=automation.name,
            now=self._clock(),
        )
        try:
            plan = plan_actions(automation.actions, entity)
        except (ActionConfigError, ConditionError) as e:
            return DryRunResult(
                matched=True,
                actions_would_run=[{"valid": False, "error": str(e)}],
                condition_trace=trace,
                entity_snapshot=entity,
            )

        described = [self._dispatcher.describe(action, ctx) for action in plan.steps]
        if plan.wait_index is not None:
            described.append({
                "action_type": "wait",
                "valid": True,
                "would_pause_until": (ctx.now + plan.wait_delay).isoformat(),
                "remaining_actions": len(automation.actions) - plan.wait_index - 1,
            })
        if plan.branches:
            trace = {**trace, "branches": plan.branches}

        logger.debug(f"Dry run of automation {automation.id} on {entity_type} {entity_id}: {len(described)} action(s)")
        return DryRunResult(
            matched=True,
            actions_would_run=described,
            condition_trace=trace,
            entity_snapshot=entity,
        )
