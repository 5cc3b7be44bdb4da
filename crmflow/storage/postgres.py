"""
Postgres stores - asyncpg repositories over the outreach tables.

Usage:
    db = Database(dsn)
    await db.initialize()
    await ensure_schema(db)
    sequences = PostgresSequenceStore(db)
    automations = PostgresAutomationStore(db)
"""

from datetime import datetime
from typing import Dict, List, Optional, Set

from ..db import Database, Repository
from ..models import (
    Automation,
    AutomationExecution,
    OutboxEvent,
    Sequence,
    SequenceEnrollment,
    SentEmail,
    TIME_TRIGGER_TYPES,
    TriggerEvent,
    utcnow,
)
from .base import MAX_OUTBOX_ATTEMPTS, AutomationStore, SequenceStore



class PostgresSequenceStore(Repository, SequenceStore):
    """SequenceStore backed by the sequences / sequence_steps / sequence_enrollments tables."""

    TABLE_NAME = "sequence_enrollments"

    def __init__(self, db: Database):
        super().__init__(db)

    async def list_due_enrollments(self, now: datetime, limit: int) -> List[SequenceEnrollment]:
        # Batch selection is the only query spanning projects; everything
        # done per enrollment afterwards is scoped by its project_id.
        rows = await self.db.fetch(
            """
            SELECT e.* FROM sequence_enrollments e
            JOIN sequences s ON s.id = e.sequence_id AND s.project_id = e.project_id
            WHERE e.status = 'active'
              AND e.next_step_due_at <= $1
              AND s.status = 'active'
            ORDER BY e.next_step_due_at ASC, e.created_seq ASC
            LIMIT $2
            """,
            now,
            limit,
        )
        return [SequenceEnrollment.from_dict(dict(r)) for r in rows]

    async def get_sequence(self, project_id: str, sequence_id: str) -> Optional[Sequence]:
        row = await self.db.fetchrow(
            "SELECT * FROM sequences WHERE id = $1 AND project_id = $2",
            sequence_id,
            project_id,
        )
        if not row:
            return None
        steps = await self.db.fetch(
            "SELECT * FROM sequence_steps WHERE sequence_id = $1 ORDER BY step_number",
            sequence_id,
        )
        data = dict(row)
        data["steps"] = [dict(s) for s in steps]
        return Sequence.from_dict(data)

    async def get_enrollment(self, project_id: str, enrollment_id: str) -> Optional[SequenceEnrollment]:
        row = await self._fetch_one(project_id, enrollment_id)
        return SequenceEnrollment.from_dict(row) if row else None

    async def find_open_enrollment(
        self, project_id: str, sequence_id: str, person_id: str
    ) -> Optional[SequenceEnrollment]:
        rows = await self._fetch_many(
            "project_id = $1 AND sequence_id = $2 AND person_id = $3 "
            "AND status IN ('active', 'paused')",
            (project_id, sequence_id, person_id),
            order_by="created_seq",
            limit=1,
        )
        return SequenceEnrollment.from_dict(rows[0]) if rows else None

    async def list_open_enrollments_for_person(
        self, project_id: str, person_id: str
    ) -> List[SequenceEnrollment]:
        rows = await self._fetch_many(
            "project_id = $1 AND person_id = $2 AND status IN ('active', 'paused')",
            (project_id, person_id),
            order_by="created_seq",
        )
        return [SequenceEnrollment.from_dict(r) for r in rows]

    async def create_enrollment(self, enrollment: SequenceEnrollment) -> SequenceEnrollment:
        data = {
            "project_id": enrollment.project_id,
            "sequence_id": enrollment.sequence_id,
            "person_id": enrollment.person_id,
            "sender_id": enrollment.sender_id,
            "status": enrollment.status.value,
            "current_step_number": enrollment.current_step_number,
            "next_step_due_at": enrollment.next_step_due_at,
            "enrolled_at": enrollment.enrolled_at,
        }
        if enrollment.id:
            data["id"] = enrollment.id
        row = await self._insert(data)
        return SequenceEnrollment.from_dict(row)

    async def save_enrollment(self, enrollment: SequenceEnrollment) -> None:
        await self._update(
            enrollment.project_id,
            enrollment.id,
            {
                "status": enrollment.status.value,
                "current_step_number": enrollment.current_step_number,
                "next_step_due_at": enrollment.next_step_due_at,
                "completed_at": enrollment.completed_at,
                "attempt_count": enrollment.attempt_count,
                "last_error": enrollment.last_error,
                "updated_at": utcnow(),
            },
            returning="id",
        )

    async def claim_enrollment(
        self, enrollment_id: str, expected_due_at: datetime, lease_until: datetime
    ) -> bool:
        result = await self.db.execute(
            """
            UPDATE sequence_enrollments
            SET next_step_due_at = $3, updated_at = NOW()
            WHERE id = $1 AND status = 'active' AND next_step_due_at = $2
            """,
            enrollment_id,
            expected_due_at,
            lease_until,
        )
        return result == "UPDATE 1"

    async def record_sent_email(self, sent: SentEmail) -> None:
        await self.db.execute(
            """
            INSERT INTO sent_emails
                (id, project_id, enrollment_id, sequence_id, step_id, person_id,
                 to_address, subject, message_id, sent_at)
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)
            """,
            sent.id,
            sent.project_id,
            sent.enrollment_id,
            sent.sequence_id,
            sent.step_id,
            sent.person_id,
            sent.to_address,
            sent.subject,
            sent.message_id,
            sent.sent_at,
        )


class PostgresAutomationStore(Repository, AutomationStore):
    """AutomationStore backed by automations / automation_executions / automation_event_outbox."""

    TABLE_NAME = "automation_executions"

    def __init__(self, db: Database):
        super().__init__(db)

    async def list_active_automations(self, project_id: str, trigger_type: str) -> List[Automation]:
        rows = await self.db.fetch(
            """
            SELECT * FROM automations
            WHERE project_id = $1 AND trigger_type = $2 AND is_active
            ORDER BY created_at, id
            """,
            project_id,
            trigger_type,
        )
        return [Automation.from_dict(dict(r)) for r in rows]

    async def list_time_automations(self) -> List[Automation]:
        rows = await self.db.fetch(
            """
            SELECT * FROM automations
            WHERE is_active AND trigger_type = ANY($1::text[])
            ORDER BY created_at, id
            """,
            list(TIME_TRIGGER_TYPES),
        )
        return [Automation.from_dict(dict(r)) for r in rows]

    async def get_automation(self, project_id: str, automation_id: str) -> Optional[Automation]:
        row = await self.db.fetchrow(
            "SELECT * FROM automations WHERE id = $1 AND project_id = $2",
            automation_id,
            project_id,
        )
        return Automation.from_dict(dict(row)) if row else None

    async def record_execution(self, execution: AutomationExecution) -> None:
        await self._insert(
            {
                "id": execution.id,
                "automation_id": execution.automation_id,
                "project_id": execution.project_id,
                "trigger_type": execution.trigger_type,
                "entity_type": execution.entity_type,
                "entity_id": execution.entity_id,
                "status": execution.status.value,
                "executed_at": execution.executed_at,
                "entity_snapshot": execution.entity_snapshot,
                "action_results": execution.action_results,
                "error_message": execution.error_message,
                "window_key": execution.window_key,
                "resume_from": execution.resume_from,
                "resume_at_action": execution.resume_at_action,
                "resume_after": execution.resume_after,
                "duration_ms": execution.duration_ms,
            },
            returning="id",
        )

    async def consumed_windows(
        self, automation_id: str, entity_type: str, windows: Dict[str, str], max_attempts: int
    ) -> Set[str]:
        if not windows:
            return set()
        entity_ids = list(windows)
        rows = await self.db.fetch(
            """
            SELECT x.entity_id
            FROM automation_executions x
            JOIN unnest($3::text[], $4::text[]) AS w(entity_id, window_key)
              ON w.entity_id = x.entity_id AND w.window_key = x.window_key
            WHERE x.automation_id = $1 AND x.entity_type = $2
            GROUP BY x.entity_id
            HAVING bool_or(x.status <> 'error')
                OR bool_or(x.action_results @> '[{"success": true}]'::jsonb)
                OR count(*) >= $5
            """,
            automation_id,
            entity_type,
            entity_ids,
            [windows[e] for e in entity_ids],
            max_attempts,
        )
        return {r["entity_id"] for r in rows}

    async def list_due_waits(self, now: datetime, limit: int) -> List[AutomationExecution]:
        rows = await self.db.fetch(
            """
            SELECT x.* FROM automation_executions x
            WHERE x.resume_after IS NOT NULL
              AND x.resume_at_action IS NOT NULL
              AND x.resume_after <= $1
              AND NOT EXISTS (
                  SELECT 1 FROM automation_executions r WHERE r.resume_from = x.id
              )
            ORDER BY x.resume_after, x.executed_at
            LIMIT $2
            """,
            now,
            limit,
        )
        return [AutomationExecution.from_dict(dict(r)) for r in rows]

    async def list_executions(self, automation_id: str, limit: int = 50) -> List[AutomationExecution]:
        rows = await self._fetch_many(
            "automation_id = $1",
            (automation_id,),
            order_by="executed_at DESC",
            limit=limit,
        )
        return [AutomationExecution.from_dict(r) for r in rows]

    async def enqueue_event(self, event: TriggerEvent) -> int:
        return await self.db.fetchval(
            "INSERT INTO automation_event_outbox (project_id, payload) VALUES ($1, $2) RETURNING id",
            event.project_id,
            event.to_dict(),
        )

    async def claim_outbox(self, limit: int) -> List[OutboxEvent]:
        rows = await self.db.fetch(
            """
            UPDATE automation_event_outbox SET attempts = attempts + 1
            WHERE id IN (
                SELECT id FROM automation_event_outbox
                WHERE delivered_at IS NULL AND attempts < $2
                ORDER BY id
                LIMIT $1
                FOR UPDATE SKIP LOCKED
            )
            RETURNING *
            """,
            limit,
            MAX_OUTBOX_ATTEMPTS,
        )
        events = [
            OutboxEvent(
                id=r["id"],
                event=TriggerEvent.from_dict(r["payload"]),
                attempts=r["attempts"],
                created_at=r["created_at"],
                delivered_at=r["delivered_at"],
                last_error=r["last_error"],
            )
            for r in rows
        ]
        events.sort(key=lambda e: e.id)
        return events

    async def mark_outbox(self, event_id: int, error: Optional[str] = None) -> None:
        if error is None:
            await self.db.execute(
                "UPDATE automation_event_outbox SET delivered_at = NOW(), last_error = NULL WHERE id = $1",
                event_id,
            )
        else:
            await self.db.execute(
                "UPDATE automation_event_outbox SET last_error = $2 WHERE id = $1",
                event_id,
                error,
            )
