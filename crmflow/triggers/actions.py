"""CrmFlow Automation Actions - one handler per action type.

Each handler has three faces:
- validate(ctx, config): pure; raises ActionConfigError on a bad payload
- describe(ctx, config): pure; what the action *would* do (dry runs)
- execute(ctx, config): performs the side effect, returns a result dict

ActionDispatcher maps action types to handlers and turns every failure into
an unsuccessful ActionOutcome instead of an exception.
"""

import logging
from contextvars import ContextVar
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Tuple

from ..errors import ActionConfigError, CrmFlowError
from ..models import (
    ActionOutcome,
    AutomationAction,
    ENTITY_TABLES,
    OutboundEmail,
    SequenceEnrollment,
    TriggerEvent,
)
from ..protocols import CrmGateway, MailSender, WebhookSender
from ..providers.webhook import validate_webhook_url
from ..templates import build_variables, render_config, render_email, valid_recipient

logger = logging.getLogger(__name__)

# Fields automations may write, per table. custom_fields.<key> is always allowed.
ALLOWED_FIELDS: Dict[str, Tuple[str, ...]] = {
    "organizations": (
        "name", "domain", "industry", "website", "phone", "linkedin_url", "description",
        "address_street", "address_city", "address_state", "address_postal_code", "address_country",
    ),
    "people": (
        "first_name", "last_name", "email", "phone", "mobile_phone", "job_title",
        "department", "linkedin_url", "notes",
    ),
    "opportunities": (
        "name", "amount", "stage", "expected_close_date", "probability", "description",
        "lost_reason", "won_reason",
    ),
    "rfps": ("title", "status", "due_date", "description"),
    "tasks": ("title", "description", "priority", "status", "due_date"),
    "meetings": ("title", "description", "status", "outcome_notes", "next_steps"),
    "calls": ("status", "disposition", "disposition_notes", "duration_seconds"),
}

CONTROL_ACTIONS = ("wait", "branch")

# How many automation runs deep the current task is; events emitted by actions carry it
CHAIN_DEPTH: ContextVar[int] = ContextVar("crmflow_chain_depth", default=0)


class ActionFailed(CrmFlowError):
    """The action ran but its side effect did not succeed."""

    def __init__(self, message: str, result: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.result = result or {}


class SequenceEnroller(Protocol):
    async def enroll(
        self, project_id: str, sequence_id: str, person_id: str, sender_id: Optional[str] = None
    ) -> Tuple[SequenceEnrollment, bool]:
        ...


@dataclass
class ActionContext:
    """What an action runs against."""
    project_id: str
    entity_type: str
    entity_id: str
    snapshot: Dict[str, Any]
    automation_id: str
    automation_name: str
    now: datetime

    @property
    def variables(self) -> Dict[str, Any]:
        return {**self.snapshot, "automation_name": self.automation_name}

    @property
    def entity_links(self) -> Dict[str, str]:
        if self.entity_type in ("person", "organization", "opportunity", "rfp"):
            return {f"{self.entity_type}_id": self.entity_id}
        return {}


class ActionHandler:
    """Base class for action handlers."""

    action_type: str = ""

    def validate(self, ctx: ActionContext, config: Dict[str, Any]) -> None:
        pass

    def describe(self, ctx: ActionContext, config: Dict[str, Any]) -> Dict[str, Any]:
        return {}

    async def execute(self, ctx: ActionContext, config: Dict[str, Any]) -> Dict[str, Any]:
        raise NotImplementedError


def _require(config: Dict[str, Any], key: str) -> str:
    value = config.get(key)
    if value in (None, ""):
        raise ActionConfigError(f"No {key} specified")
    return str(value)


# =============================================================================
# Handlers
# =============================================================================

class CreateTaskHandler(ActionHandler):
    action_type = "create_task"

    def __init__(self, gateway: CrmGateway):
        self.gateway = gateway

    def _task(self, ctx: ActionContext, config: Dict[str, Any]) -> Dict[str, Any]:
        rendered = render_config(
            {"title": config.get("title") or f"Auto-task: {ctx.automation_name}",
             "description": config.get("description")},
            ctx.variables,
        )
        due_date = None
        if config.get("due_in_days"):
            due_date = ctx.now + timedelta(days=float(config["due_in_days"]))
        return {
            "title": rendered["title"],
            "description": rendered["description"] or None,
            "priority": str(config.get("priority") or "medium"),
            "due_date": due_date,
            "assigned_to": str(config["assign_to"]) if config.get("assign_to") else None,
            **ctx.entity_links,
        }

    def validate(self, ctx, config):
        if config.get("due_in_days") is not None:
            try:
                float(config["due_in_days"])
            except (TypeError, ValueError):
                raise ActionConfigError("due_in_days must be a number") from None

    def describe(self, ctx, config):
        return {"would_create_task": self._task(ctx, config)}

    async def execute(self, ctx, config):
        task_id = await self.gateway.create_task(ctx.project_id, self._task(ctx, config))
        return {"task_id": task_id}


class UpdateFieldHandler(ActionHandler):
    action_type = "update_field"

    def __init__(self, gateway: CrmGateway, emit=None):
        self.gateway = gateway
        self.emit = emit

    def _changes(self, ctx: ActionContext, config: Dict[str, Any]) -> Tuple[str, Dict[str, Any]]:
        field_name = _require(config, "field_name")
        value = config.get("value")
        table = ENTITY_TABLES.get(ctx.entity_type)
        if table is None:
            raise ActionConfigError(f"Unknown entity type: {ctx.entity_type}")
        if field_name.startswith("custom_fields."):
            key = field_name[len("custom_fields."):]
            if not key:
                raise ActionConfigError("custom_fields key is empty")
            current = ctx.snapshot.get("custom_fields") or {}
            return field_name, {"custom_fields": {**current, key: value}}
        if field_name not in ALLOWED_FIELDS.get(table, ()):
            raise ActionConfigError(f'Field "{field_name}" is not allowed for {ctx.entity_type}')
        return field_name, {field_name: value}

    def validate(self, ctx, config):
        self._changes(ctx, config)

    def describe(self, ctx, config):
        field_name, changes = self._changes(ctx, config)
        return {"would_update": changes, "field": field_name}

    async def execute(self, ctx, config):
        field_name, changes = self._changes(ctx, config)
        updated = await self.gateway.update_entity(ctx.project_id, ctx.entity_type, ctx.entity_id, changes)
        await _emit_change(self.emit, ctx, "field.changed", updated)
        return {"field": field_name, "value": config.get("value")}


class ChangeStageHandler(ActionHandler):
    """Move an opportunity to another stage."""

    action_type = "change_stage"
    entity_type = "opportunity"
    field_name = "stage"
    event_type = "opportunity.stage_changed"

    def __init__(self, gateway: CrmGateway, emit=None):
        self.gateway = gateway
        self.emit = emit

    def validate(self, ctx, config):
        if ctx.entity_type != self.entity_type:
            raise ActionConfigError(f"{self.action_type} only applies to {ENTITY_TABLES[self.entity_type]}")
        _require(config, self.field_name)

    def describe(self, ctx, config):
        return {"would_update": {self.field_name: config.get(self.field_name)}}

    async def execute(self, ctx, config):
        value = _require(config, self.field_name)
        updated = await self.gateway.update_entity(
            ctx.project_id, ctx.entity_type, ctx.entity_id, {self.field_name: value}
        )
        await _emit_change(self.emit, ctx, self.event_type, updated)
        return {self.field_name: value}


class ChangeStatusHandler(ChangeStageHandler):
    """Move an RFP to another status."""

    action_type = "change_status"
    entity_type = "rfp"
    field_name = "status"
    event_type = "rfp.status_changed"


class AssignOwnerHandler(ActionHandler):
    action_type = "assign_owner"

    def __init__(self, gateway: CrmGateway):
        self.gateway = gateway

    def validate(self, ctx, config):
        _require(config, "user_id")

    def describe(self, ctx, config):
        return {"would_update": {"owner_id": config.get("user_id")}}

    async def execute(self, ctx, config):
        user_id = _require(config, "user_id")
        if not await self.gateway.is_project_member(ctx.project_id, user_id):
            raise ActionFailed("User is not a member of this project")
        await self.gateway.update_entity(ctx.project_id, ctx.entity_type, ctx.entity_id, {"owner_id": user_id})
        return {"owner_id": user_id}


class TagHandler(ActionHandler):
    action_type = "add_tag"

    def __init__(self, gateway: CrmGateway, remove: bool = False):
        self.gateway = gateway
        self.remove = remove
        self.action_type = "remove_tag" if remove else "add_tag"

    def validate(self, ctx, config):
        _require(config, "tag_id")

    def describe(self, ctx, config):
        key = "would_remove_tag" if self.remove else "would_add_tag"
        return {key: config.get("tag_id")}

    async def execute(self, ctx, config):
        tag_id = _require(config, "tag_id")
        if self.remove:
            await self.gateway.remove_tag(ctx.project_id, ctx.entity_type, ctx.entity_id, tag_id)
        else:
            await self.gateway.add_tag(ctx.project_id, ctx.entity_type, ctx.entity_id, tag_id)
        return {"tag_id": tag_id}


class SendNotificationHandler(ActionHandler):
    action_type = "send_notification"

    def __init__(self, gateway: CrmGateway):
        self.gateway = gateway

    @staticmethod
    def _user_ids(config: Dict[str, Any]) -> List[str]:
        if isinstance(config.get("user_ids"), list):
            return [str(u) for u in config["user_ids"] if u]
        if config.get("user_id"):
            return [str(config["user_id"])]
        return []

    def _message(self, ctx, config) -> str:
        template = config.get("message") or f'Automation "{ctx.automation_name}" triggered'
        return render_config(str(template), ctx.variables)

    def validate(self, ctx, config):
        if not self._user_ids(config):
            raise ActionConfigError("No user_id(s) specified")

    def describe(self, ctx, config):
        return {"would_notify": self._user_ids(config), "message": self._message(ctx, config)}

    async def execute(self, ctx, config):
        user_ids = self._user_ids(config)
        count = await self.gateway.notify_users(
            ctx.project_id,
            user_ids,
            title=ctx.automation_name,
            message=self._message(ctx, config),
            link=f"/{ctx.entity_type}s/{ctx.entity_id}",
        )
        return {"notified_users": count}


class SendEmailHandler(ActionHandler):
    """Send a templated email to the entity's person (or its primary contact)."""

    action_type = "send_email"

    def __init__(self, gateway: CrmGateway, mail_sender: Optional[MailSender]):
        self.gateway = gateway
        self.mail_sender = mail_sender

    def validate(self, ctx, config):
        if not config.get("template_id") and not (config.get("subject") and config.get("body_html")):
            raise ActionConfigError("send_email needs a template_id or a subject and body_html")
        if ctx.entity_type != "person" and not ctx.snapshot.get("primary_contact_id"):
            raise ActionConfigError("No recipient: entity is not a person and has no primary contact")

    def describe(self, ctx, config):
        recipient = ctx.snapshot.get("email") if ctx.entity_type == "person" else None
        return {
            "would_send_email": {
                "template_id": config.get("template_id"),
                "subject": config.get("subject"),
                "to": recipient or f"primary contact {ctx.snapshot.get('primary_contact_id')}",
            }
        }

    async def execute(self, ctx, config):
        if self.mail_sender is None:
            raise ActionFailed("No mail sender configured")

        if ctx.entity_type == "person":
            person_id, person = ctx.entity_id, ctx.snapshot
        else:
            person_id = str(ctx.snapshot["primary_contact_id"])
            person = await self.gateway.get_entity(ctx.project_id, "person", person_id) or {}
        to = valid_recipient(person.get("email"))
        if to is None:
            raise ActionFailed("No recipient email found")

        subject, body_html, body_text = config.get("subject"), config.get("body_html"), config.get("body_text")
        if config.get("template_id"):
            template = await self.gateway.get_email_template(ctx.project_id, str(config["template_id"]))
            if template is None:
                raise ActionConfigError("Template not found")
            subject, body_html, body_text = template.get("subject"), template.get("body_html"), template.get("body_text")

        sender_id = config.get("sender_id") or ctx.snapshot.get("owner_id")
        variables = build_variables(
            await self.gateway.get_variable_context(ctx.project_id, person_id, sender_id=sender_id)
        )
        rendered = render_email(subject or "", body_html or "", body_text, variables)
        message_id = await self.mail_sender.send(OutboundEmail(
            project_id=ctx.project_id,
            to=to,
            subject=rendered.subject,
            body_html=rendered.body_html,
            body_text=rendered.body_text,
            person_id=person_id,
            sender_id=sender_id,
            metadata={
                "automation_id": ctx.automation_id,
                "entity_type": ctx.entity_type,
                "entity_id": ctx.entity_id,
            },
        ))
        return {"to": to, "message_id": message_id}


class EnrollInSequenceHandler(ActionHandler):
    action_type = "enroll_in_sequence"

    def __init__(self, enroller: Optional[SequenceEnroller]):
        self.enroller = enroller

    def validate(self, ctx, config):
        _require(config, "sequence_id")
        if ctx.entity_type != "person":
            raise ActionConfigError("Only people can be enrolled in sequences")

    def describe(self, ctx, config):
        return {"would_enroll": {"sequence_id": config.get("sequence_id"), "person_id": ctx.entity_id}}

    async def execute(self, ctx, config):
        if self.enroller is None:
            raise ActionFailed("Sequence enrollment is not available")
        sender_id = ctx.snapshot.get("owner_id") or ctx.snapshot.get("created_by")
        enrollment, created = await self.enroller.enroll(
            ctx.project_id, _require(config, "sequence_id"), ctx.entity_id, sender_id=sender_id
        )
        if not created:
            return {"already_enrolled": True, "enrollment_id": enrollment.id}
        return {"enrollment_id": enrollment.id}


class CreateActivityHandler(ActionHandler):
    action_type = "create_activity"

    def __init__(self, gateway: CrmGateway):
        self.gateway = gateway

    def _activity(self, ctx: ActionContext, config: Dict[str, Any]) -> Dict[str, Any]:
        rendered = render_config(
            {"subject": config.get("subject") or ctx.automation_name, "notes": config.get("notes")},
            ctx.variables,
        )
        return {
            "entity_type": ctx.entity_type,
            "entity_id": ctx.entity_id,
            "action": "automation",
            "activity_type": str(config.get("type") or "note"),
            "subject": rendered["subject"],
            "notes": rendered["notes"] or None,
            "metadata": {"automation_id": ctx.automation_id, "automation_name": ctx.automation_name},
            **ctx.entity_links,
        }

    def describe(self, ctx, config):
        return {"would_log_activity": self._activity(ctx, config)}

    async def execute(self, ctx, config):
        activity_id = await self.gateway.log_activity(ctx.project_id, self._activity(ctx, config))
        return {"activity_id": activity_id}


class WebhookHandler(ActionHandler):
    action_type = "webhook"

    def __init__(self, webhook_sender: Optional[WebhookSender]):
        self.webhook_sender = webhook_sender

    @staticmethod
    def payload(ctx: ActionContext, config: Dict[str, Any]) -> Dict[str, Any]:
        template = config.get("payload_template")
        return {
            **(template if isinstance(template, dict) else {}),
            "automation_id": ctx.automation_id,
            "automation_name": ctx.automation_name,
            "entity_type": ctx.entity_type,
            "entity_id": ctx.entity_id,
            "data": ctx.snapshot,
            "timestamp": ctx.now.isoformat(),
        }

    def validate(self, ctx, config):
        validate_webhook_url(_require(config, "webhook_url"))

    def describe(self, ctx, config):
        return {"would_post": config.get("webhook_url"), "payload_keys": sorted(self.payload(ctx, config))}

    async def execute(self, ctx, config):
        if self.webhook_sender is None:
            raise ActionFailed("No webhook sender configured")
        url = config["webhook_url"]
        status = await self.webhook_sender.post(url, self.payload(ctx, config))
        result = {"status": status, "url": url}
        if not 200 <= status < 300:
            raise ActionFailed(f"HTTP {status}", result)
        return result


async def _emit_change(emit, ctx: ActionContext, trigger_type: str, updated: Dict[str, Any]) -> None:
    if emit is None:
        return
    await emit(TriggerEvent(
        project_id=ctx.project_id,
        trigger_type=trigger_type,
        entity_type=ctx.entity_type,
        entity_id=ctx.entity_id,
        data=updated,
        previous_data=ctx.snapshot,
        metadata={"source_automation_id": ctx.automation_id, "chain_depth": CHAIN_DEPTH.get()},
    ))


# =============================================================================
# Dispatcher
# =============================================================================

class ActionDispatcher:
    """
    Runs automation actions through their registered handlers.

    Args:
        gateway: CrmGateway for entity updates, tasks, tags and notifications
        mail_sender: MailSender for send_email
        webhook_sender: WebhookSender for webhook / fire_webhook
        enroller: object with ``enroll()`` (the SequenceProcessor)
        emit: async callable receiving TriggerEvents produced by mutations
    """

    def __init__(
        self,
        gateway: CrmGateway,
        mail_sender: Optional[MailSender] = None,
        webhook_sender: Optional[WebhookSender] = None,
        enroller: Optional[SequenceEnroller] = None,
        emit: Optional[Callable[[TriggerEvent], Awaitable[None]]] = None,
    ):
        self._handlers: Dict[str, ActionHandler] = {}
        for handler in (
            CreateTaskHandler(gateway),
            UpdateFieldHandler(gateway, emit),
            ChangeStageHandler(gateway, emit),
            ChangeStatusHandler(gateway, emit),
            AssignOwnerHandler(gateway),
            TagHandler(gateway),
            TagHandler(gateway, remove=True),
            SendNotificationHandler(gateway),
            SendEmailHandler(gateway, mail_sender),
            EnrollInSequenceHandler(enroller),
            CreateActivityHandler(gateway),
            WebhookHandler(webhook_sender),
        ):
            self.register(handler)
        self._handlers["fire_webhook"] = self._handlers["webhook"]

    def register(self, handler: ActionHandler, action_type: Optional[str] = None) -> None:
        self._handlers[action_type or handler.action_type] = handler

    def handler_for(self, action_type: str) -> ActionHandler:
        handler = self._handlers.get(action_type)
        if handler is None:
            raise ActionConfigError(f"Unknown action type: {action_type}")
        return handler

    async def run(self, action: AutomationAction, ctx: ActionContext) -> ActionOutcome:
        """Validate and execute one action. Never raises."""
        try:
            handler = self.handler_for(action.type)
            handler.validate(ctx, action.config)
            result = await handler.execute(ctx, action.config)
            return ActionOutcome(action_type=action.type, success=True, result=result or {})
        except ActionFailed as e:
            logger.warning(f"Action {action.type} failed for {ctx.entity_type} {ctx.entity_id}: {e}")
            return ActionOutcome(action_type=action.type, success=False, result=e.result, error=str(e))
        except Exception as e:
            logger.error(
                f"Action {action.type} error in automation {ctx.automation_id} "
                f"for {ctx.entity_type} {ctx.entity_id}: {e}"
            )
            return ActionOutcome(action_type=action.type, success=False, error=str(e))

    def describe(self, action: AutomationAction, ctx: ActionContext) -> Dict[str, Any]:
        """Describe what ``run`` would do, without side effects."""
        entry: Dict[str, Any] = {"action_type": action.type, "config": action.config}
        try:
            handler = self.handler_for(action.type)
            handler.validate(ctx, action.config)
            entry.update(handler.describe(ctx, action.config))
            entry["valid"] = True
        except CrmFlowError as e:
            entry["valid"] = False
            entry["error"] = str(e)
        return entry
