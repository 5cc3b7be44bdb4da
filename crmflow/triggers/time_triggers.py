"""Time-based automation triggers - polled windows over entity timestamps.

Each time trigger maps to a window over one timestamp column (the anchor):

    time.entity_inactive        updated_at < now - days              (days 1..365, default 30)
    time.task_overdue           due_date < now, task still open
    time.close_date_approaching now <= expected_close_date < now + days_before   (default 7)
    time.created_ago            created_at in the 24h window starting now - days (default 7)

An entity is acted on at most once per window key, which embeds the anchor
value: when the anchor changes (the entity is touched, the due date moves)
the entity becomes eligible again.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from dateutil.parser import isoparse

from ..errors import ConfigError
from ..models import ENTITY_TABLES, Automation, ExecutionStatus, TimeTriggerRunResult, utcnow
from ..protocols import CrmGateway, EntityQuery
from ..storage.base import AutomationStore
from .engine import AutomationEngine

logger = logging.getLogger(__name__)

OPEN_TASK_STATUSES = ["pending", "in_progress"]
CLOSED_STAGES = ["closed_won", "closed_lost"]


@dataclass(frozen=True)
class TriggerWindow:
    entity_type: str
    field: str
    after: Optional[datetime] = None
    before: Optional[datetime] = None
    include: Dict[str, List[Any]] = field(default_factory=dict)
    exclude: Dict[str, List[Any]] = field(default_factory=dict)
    exclude_deleted: bool = True

    def query(self, project_id: str, limit: int, offset: int = 0) -> EntityQuery:
        return EntityQuery(
            project_id=project_id,
            entity_type=self.entity_type,
            field=self.field,
            after=self.after,
            before=self.before,
            include=dict(self.include),
            exclude=dict(self.exclude),
            exclude_deleted=self.exclude_deleted,
            limit=limit,
            offset=offset,
        )


def _days(config: Dict[str, Any], key: str, default: int) -> int:
    raw = config.get(key)
    if raw is None:
        return default
    try:
        return min(max(int(float(raw)), 1), 365)
    except (TypeError, ValueError):
        raise ConfigError(f"trigger_config.{key} must be a number, got {raw!r}") from None


def _entity_type(config: Dict[str, Any]) -> str:
    entity_type = config.get("entity_type") or "organization"
    if entity_type not in ENTITY_TABLES:
        raise ConfigError(f"Unknown entity type: {entity_type}")
    return entity_type


def compute_window(automation: Automation, now: datetime) -> TriggerWindow:
    """Translate a time automation's trigger into an entity window at ``now``."""
    config = automation.trigger_config or {}
    trigger_type = automation.trigger_type

    if trigger_type == "time.entity_inactive":
        days = _days(config, "days", 30)
        return TriggerWindow(_entity_type(config), "updated_at", before=now - timedelta(days=days))

    if trigger_type == "time.task_overdue":
        return TriggerWindow(
            "task", "due_date", before=now,
            include={"status": OPEN_TASK_STATUSES},
            exclude_deleted=False,
        )

    if trigger_type == "time.close_date_approaching":
        days_before = _days(config, "days_before", 7)
        return TriggerWindow(
            "opportunity", "expected_close_date",
            after=now, before=now + timedelta(days=days_before),
            exclude={"stage": CLOSED_STAGES},
        )

    if trigger_type == "time.created_ago":
        days = _days(config, "days", 7)
        start = now - timedelta(days=days)
        return TriggerWindow(_entity_type(config), "created_at", after=start, before=start + timedelta(days=1))

    raise ConfigError(f"Not a time trigger: {trigger_type}")


def window_key(trigger_type: str, anchor_field: str, anchor: Any) -> str:
    """``"<trigger_type>:<field>=<anchor ISO>"``; stable across string and datetime anchors."""
    if isinstance(anchor, datetime):
        value = anchor.isoformat()
    else:
        try:
            value = isoparse(str(anchor)).isoformat()
        except ValueError:
            value = str(anchor)
    return f"{trigger_type}:{anchor_field}={value}"

class TimeTriggerProcessor:
    """
    Batch driver for time-based automations.

    Each run first resumes due waits, then walks every active time
    automation's window. The window is scanned in pages of
    ``candidate_limit`` rows; candidates whose window key is already
    consumed are skipped without counting toward the batch, so entities
    past the first page are reached once the earlier ones have fired.
    """

    def __init__(
        self,
        engine: AutomationEngine,
        store: AutomationStore,
        gateway: CrmGateway,
        candidate_limit: int = 100,
        max_window_attempts: int = 3,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._engine = engine
        self._store = store
        self._gateway = gateway
        self._candidate_limit = candidate_limit
        self._max_window_attempts = max_window_attempts
        self._clock = clock

    async def process(self, max_batch_size: int = 200) -> TimeTriggerRunResult:
        """Process up to ``max_batch_size`` (automation, entity) evaluations."""
        result = TimeTriggerRunResult()
        now = self._clock()

        for paused in await self._store.list_due_waits(now, max_batch_size):
            try:
                execution = await self._engine.resume_wait(paused)
            except Exception as e:
                logger.error(f"Failed to resume execution {paused.id}: {e}")
                result.errors += 1
                continue
            result.resumed += 1
            if execution.status == ExecutionStatus.ERROR:
                result.errors += 1

        for automation in await self._store.list_time_automations():
            if result.processed >= max_batch_size:
                break
            try:
                window = compute_window(automation, now)
            except ConfigError as e:
                logger.error(f"Time automation {automation.id} ({automation.trigger_type}) failed: {e}")
                result.errors += 1
                continue
            await self._process_window(automation, window, result, max_batch_size)

        logger.info(
            f"Time triggers: processed={result.processed} matched={result.matched} "
            f"errors={result.errors} resumed={result.resumed}"
        )
        return result

    async def _process_window(
        self,
        automation: Automation,
        window: TriggerWindow,
        result: TimeTriggerRunResult,
        max_batch_size: int,
    ) -> None:
        evaluated = 0
        offset = 0
        while evaluated < self._candidate_limit and result.processed < max_batch_size:
            try:
                page = await self._gateway.find_entities(
                    window.query(automation.project_id, self._candidate_limit, offset)
                )
                keys = {
                    str(entity["id"]): window_key(automation.trigger_type, window.field, entity.get(window.field))
                    for entity in page
                }
                consumed = await self._store.consumed_windows(
                    automation.id, window.entity_type, keys, self._max_window_attempts
                ) if keys else set()
            except Exception as e:
                logger.error(f"Time automation {automation.id} ({automation.trigger_type}) failed: {e}")
                result.errors += 1
                return

            for entity in page:
                if evaluated >= self._candidate_limit or result.processed >= max_batch_size:
                    return
                entity_id = str(entity["id"])
                if entity_id in consumed:
                    continue
                evaluated += 1
                result.processed += 1
                try:
                    execution = await self._engine.evaluate_and_run(
                        automation, window.entity_type, entity_id, entity, window_key=keys[entity_id]
                    )
                except Exception as e:
                    logger.error(
                        f"Time automation {automation.id} failed for {window.entity_type} {entity_id}: {e}"
                    )
                    result.errors += 1
                    continue
                if execution.status == ExecutionStatus.MATCHED:
                    result.matched += 1
                elif execution.status == ExecutionStatus.ERROR:
                    result.errors += 1

            if len(page) < self._candidate_limit:
                return
            offset += len(page)
