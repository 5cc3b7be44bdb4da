"""CrmFlow SequenceProcessor - advances due enrollments one step at a time."""

import logging
import uuid
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional, Tuple

from ..config import LockingSettings, SequenceSettings
from ..errors import MailError, NotFoundError, TemplateError
from ..models import (
    DelayAnchor,
    EnrollmentStatus,
    OutboundEmail,
    SentEmail,
    Sequence,
    SequenceEnrollment,
    SequenceRunResult,
    SequenceStep,
    StepType,
    TriggerEvent,
    VariableContext,
    utcnow,
)
from ..protocols import CrmGateway, MailSender
from ..storage.base import SequenceStore
from ..templates import build_variables, render_config, render_email, valid_recipient

logger = logging.getLogger(__name__)

TASK_STEP_TYPES = (StepType.TASK, StepType.CALL, StepType.LINKEDIN)

LINKEDIN_ACTIONS = {
    "view_profile": "View Profile",
    "send_connection": "Send Connection Request",
    "send_message": "Send Message",
}


def _is_permanent(error: Exception) -> bool:
    if isinstance(error, MailError):
        return not error.transient
    return isinstance(error, (TemplateError, NotFoundError))


class SequenceProcessor:
    """
    Batch driver for sequence enrollments.

    Each due enrollment is processed on its own: its current step runs, then
    the enrollment is advanced to the next non-wait step or completed. A
    failure is recorded on the enrollment and never stops the batch.

    Args:
        store: SequenceStore with sequences and enrollments
        gateway: CrmGateway for variable context and task creation
        mail_sender: MailSender for email steps
        bus: optional EventBus for sequence.completed / sequence.replied
        settings: scheduling and retry settings
        locking: ``mode="claim"`` claims each enrollment before acting
        clock: callable returning the current aware datetime
    """

    def __init__(
        self,
        store: SequenceStore,
        gateway: CrmGateway,
        mail_sender: Optional[MailSender],
        bus=None,
        settings: Optional[SequenceSettings] = None,
        locking: Optional[LockingSettings] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._store = store
        self._gateway = gateway
        self._mail_sender = mail_sender
        self._bus = bus
        self._settings = settings or SequenceSettings()
        self._locking = locking or LockingSettings()
        self._clock = clock

    # ------------------------------------------------------------------
    # Batch
    # ------------------------------------------------------------------

    async def process_sequences(self, max_batch_size: int = 100) -> SequenceRunResult:
        """Process up to ``max_batch_size`` due enrollments, oldest due first.

        Store failures while listing due work propagate; everything after
        that is isolated per enrollment.
        """
        result = SequenceRunResult()
        now = self._clock()
        due = await self._store.list_due_enrollments(now, max_batch_size)

        for enrollment in due:
            if self._locking.mode == "claim":
                lease_until = now + timedelta(seconds=self._locking.lease_seconds)
                if not await self._store.claim_enrollment(enrollment.id, enrollment.next_step_due_at, lease_until):
                    logger.info(f"Enrollment {enrollment.id} claimed by another run, skipping")
                    continue

            result.processed += 1
            try:
                sent, completed = await self._process_one(enrollment, now)
            except Exception as e:
                result.errors += 1
                result.details.append({"enrollment_id": enrollment.id, "error": str(e)})
                await self._record_failure(enrollment, e)
                continue
            if sent:
                result.sent += 1
            if completed:
                result.completed += 1

        logger.info(
            f"Sequences: processed={result.processed} sent={result.sent} "
            f"completed={result.completed} errors={result.errors}"
        )
        return result

    async def _process_one(self, enrollment: SequenceEnrollment, now: datetime) -> Tuple[bool, bool]:
        sequence = await self._store.get_sequence(enrollment.project_id, enrollment.sequence_id)
        if sequence is None:
            raise NotFoundError(f"Sequence {enrollment.sequence_id} not found")
        step = sequence.step(enrollment.current_step_number)
        if step is None:
            raise NotFoundError(
                f"Sequence {sequence.id} has no step {enrollment.current_step_number}"
            )

        sent = False
        if step.step_type == StepType.EMAIL:
            await self._send_email(enrollment, sequence, step)
            sent = True
        elif step.step_type in TASK_STEP_TYPES:
            await self._create_step_task(enrollment, sequence, step, now)

        completed = await self._advance(enrollment, sequence, step, now)
        return sent, completed

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    async def _context(self, enrollment: SequenceEnrollment, sequence: Sequence) -> VariableContext:
        return await self._gateway.get_variable_context(
            enrollment.project_id,
            enrollment.person_id,
            sender_id=enrollment.sender_id,
            organization_id=sequence.organization_id or sequence.settings.get("organization_id"),
        )

    async def _send_email(self, enrollment: SequenceEnrollment, sequence: Sequence, step: SequenceStep) -> None:
        context = await self._context(enrollment, sequence)
        to = valid_recipient(context.person.get("email"))
        if to is None:
            raise MailError(f"Person {enrollment.person_id} has no valid email address", transient=False)

        rendered = render_email(step.subject or "", step.body_html or "", step.body_text, build_variables(context))
        if self._mail_sender is None:
            raise MailError("No mail sender configured")
        message_id = await self._mail_sender.send(OutboundEmail(
            project_id=enrollment.project_id,
            to=to,
            subject=rendered.subject,
            body_html=rendered.body_html,
            body_text=rendered.body_text,
            person_id=enrollment.person_id,
            sender_id=enrollment.sender_id,
            metadata={
                "enrollment_id": enrollment.id,
                "sequence_id": sequence.id,
                "step_id": step.id,
            },
        ))
        await self._store.record_sent_email(SentEmail(
            id=str(uuid.uuid4()),
            project_id=enrollment.project_id,
            enrollment_id=enrollment.id,
            sequence_id=sequence.id,
            step_id=step.id,
            person_id=enrollment.person_id,
            to_address=to,
            subject=rendered.subject,
            message_id=message_id,
        ))
        logger.info(f"Sent step {step.step_number} of sequence {sequence.id} to enrollment {enrollment.id}")

    async def _create_step_task(
        self, enrollment: SequenceEnrollment, sequence: Sequence, step: SequenceStep, now: datetime
    ) -> None:
        context = await self._context(enrollment, sequence)
        config: Dict[str, Any] = render_config(step.config or {}, build_variables(context))
        person = context.person or {}
        name = " ".join(p for p in (person.get("first_name"), person.get("last_name")) if p) or "Contact"

        if step.step_type == StepType.CALL:
            phone = person.get("mobile_phone") or person.get("phone") or "No phone on file"
            title = config.get("title") or f"Call {name}"
            description = config.get("description") or f"Phone: {phone}"
            priority = config.get("priority") or "high"
        elif step.step_type == StepType.LINKEDIN:
            action = str(step.config.get("action") or "view_profile")
            title = config.get("title") or f"LinkedIn: {LINKEDIN_ACTIONS.get(action, action)} - {name}"
            description = config.get("description") or f"LinkedIn: {person.get('linkedin_url') or 'No LinkedIn URL on file'}"
            if action == "send_message" and config.get("message_template"):
                description += f"\n\nSuggested message:\n{config['message_template']}"
            priority = config.get("priority") or "medium"
        else:
            title = config.get("title") or f"Task for {name}"
            description = config.get("description") or ""
            priority = config.get("priority") or "medium"

        try:
            due_in_hours = float(config.get("due_in_hours") or 24)
        except (TypeError, ValueError):
            due_in_hours = 24.0

        await self._gateway.create_task(enrollment.project_id, {
            "title": str(title),
            "description": str(description),
            "priority": str(priority),
            "due_date": now + timedelta(hours=due_in_hours),
            "person_id": enrollment.person_id,
            "organization_id": (context.organization or {}).get("id") or sequence.organization_id,
            "assigned_to": enrollment.sender_id,
        })

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def _next_due(
        self, enrollment: SequenceEnrollment, step: SequenceStep, waited: timedelta, now: datetime
    ) -> datetime:
        if step.delay_anchor == DelayAnchor.ENROLLMENT:
            due = enrollment.enrolled_at + step.delay
        else:
            due = now + waited + step.delay
        return max(due, now + timedelta(seconds=self._settings.min_step_interval_seconds))

    async def _advance(
        self, enrollment: SequenceEnrollment, sequence: Sequence, step: SequenceStep, now: datetime
    ) -> bool:
        """Schedule the next non-wait step, or complete. Returns True on completion."""
        position = sequence.steps.index(step)
        waited = timedelta(0)
        for following in sequence.steps[position + 1:]:
            if following.step_type == StepType.WAIT:
                waited += following.delay
                continue
            await self._store.save_enrollment(replace(
                enrollment,
                current_step_number=following.step_number,
                next_step_due_at=self._next_due(enrollment, following, waited, now),
                attempt_count=0,
                last_error=None,
            ))
            return False

        completed = replace(
            enrollment,
            status=EnrollmentStatus.COMPLETED,
            completed_at=now,
            next_step_due_at=None,
            attempt_count=0,
            last_error=None,
        )
        await self._store.save_enrollment(completed)
        logger.info(f"Enrollment {enrollment.id} completed sequence {sequence.id}")
        await self._on_completed(completed, sequence, now)
        return True

    async def _on_completed(self, enrollment: SequenceEnrollment, sequence: Sequence, now: datetime) -> None:
        follow_up_days = sequence.settings.get("follow_up_delay_days") or self._settings.follow_up_delay_days
        person: Dict[str, Any] = {}
        try:
            person = await self._gateway.get_entity(enrollment.project_id, "person", enrollment.person_id) or {}
            name = f"{person.get('first_name') or 'Contact'} {person.get('last_name') or ''}".strip()
            await self._gateway.create_task(enrollment.project_id, {
                "title": f"Follow up: {sequence.name} completed for {name}",
                "description": f'Sequence "{sequence.name}" has completed all steps. Follow up with this contact.',
                "priority": "medium",
                "due_date": now + timedelta(days=float(follow_up_days)),
                "person_id": enrollment.person_id,
                "organization_id": person.get("organization_id") or sequence.organization_id,
                "assigned_to": enrollment.sender_id,
            })
        except Exception as e:
            logger.error(f"Follow-up task for enrollment {enrollment.id} failed: {e}")

        await self._emit("sequence.completed", enrollment, person)

    async def _record_failure(self, enrollment: SequenceEnrollment, error: Exception) -> None:
        attempts = enrollment.attempt_count + 1
        failed = _is_permanent(error) or attempts >= self._settings.max_step_attempts
        updated = replace(
            enrollment,
            attempt_count=attempts,
            last_error=str(error)[:1000],
            status=EnrollmentStatus.FAILED if failed else enrollment.status,
            next_step_due_at=None if failed else enrollment.next_step_due_at,
        )
        if failed:
            logger.error(f"Enrollment {enrollment.id} failed after {attempts} attempt(s): {error}")
        else:
            logger.warning(f"Enrollment {enrollment.id} step {enrollment.current_step_number} failed, will retry: {error}")
        try:
            await self._store.save_enrollment(updated)
        except Exception as e:
            logger.error(f"Could not record failure for enrollment {enrollment.id}: {e}")

    # ------------------------------------------------------------------
    # Enrollment lifecycle
    # ------------------------------------------------------------------

    async def enroll(
        self, project_id: str, sequence_id: str, person_id: str, sender_id: Optional[str] = None
    ) -> Tuple[SequenceEnrollment, bool]:
        """Enroll a person at the first step.

        Returns:
            (enrollment, created). An open enrollment for the same sequence
            and person is returned as-is with created=False.

        Raises:
            NotFoundError: sequence missing from the project or without steps
        """
        sequence = await self._store.get_sequence(project_id, sequence_id)
        if sequence is None:
            raise NotFoundError(f"Sequence {sequence_id} not found")
        if not sequence.steps:
            raise NotFoundError(f"Sequence {sequence_id} has no steps")

        existing = await self._store.find_open_enrollment(project_id, sequence_id, person_id)
        if existing is not None:
            return existing, False

        now = self._clock()
        first = sequence.steps[0]
        enrollment = await self._store.create_enrollment(SequenceEnrollment(
            id=str(uuid.uuid4()),
            project_id=project_id,
            sequence_id=sequence_id,
            person_id=person_id,
            current_step_number=first.step_number,
            next_step_due_at=now + first.delay,
            enrolled_at=now,
            sender_id=sender_id,
        ))
        logger.info(f"Enrolled person {person_id} in sequence {sequence_id}")
        return enrollment, True

    async def stop_on_reply(self, project_id: str, person_id: str) -> int:
        """Cancel the person's open enrollments in sequences that stop on reply.

        Returns:
            Number of enrollments cancelled
        """
        cancelled = 0
        person = None
        for enrollment in await self._store.list_open_enrollments_for_person(project_id, person_id):
            sequence = await self._store.get_sequence(project_id, enrollment.sequence_id)
            if sequence is None or not sequence.stop_on_reply:
                continue
            stopped = replace(enrollment, status=EnrollmentStatus.CANCELLED, next_step_due_at=None)
            await self._store.save_enrollment(stopped)
            cancelled += 1
            logger.info(f"Enrollment {enrollment.id} cancelled: person {person_id} replied")

            if person is None:
                person = await self._gateway.get_entity(project_id, "person", person_id) or {}
            await self._emit("sequence.replied", stopped, person)
        return cancelled

    async def _emit(self, trigger_type: str, enrollment: SequenceEnrollment, person: Dict[str, Any]) -> None:
        if self._bus is None:
            return
        await self._bus.emit(TriggerEvent(
            project_id=enrollment.project_id,
            trigger_type=trigger_type,
            entity_type="person",
            entity_id=enrollment.person_id,
            data=person,
            metadata={"sequence_id": enrollment.sequence_id, "enrollment_id": enrollment.id},
        ))
