"""
In-memory CRM collaborators - for tests and local runs.

MemoryCrmGateway keeps entity snapshots in dicts and records every side
effect (tasks, activities, tags, notifications) in lists that tests can
inspect. MemoryMailSender and MemoryWebhookSender do the same for outbound
traffic and can be primed to fail.
"""

import copy
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from dateutil.parser import isoparse

from ..errors import MailError, NotFoundError
from ..models import OutboundEmail, VariableContext
from ..protocols import EntityQuery


def _as_datetime(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    try:
        return isoparse(str(value))
    except ValueError:
        return None


class MemoryCrmGateway:
    """CrmGateway over plain dicts."""

    def __init__(self):
        self.projects: Dict[str, str] = {}
        self.entities: Dict[Tuple[str, str, str], Dict[str, Any]] = {}
        self.users: Dict[str, Dict[str, Any]] = {}
        self.primary_organizations: Dict[str, str] = {}
        self.templates: Dict[Tuple[str, str], Dict[str, Any]] = {}
        self.tags: Dict[Tuple[str, str], Dict[str, Any]] = {}
        self.entity_tags: Dict[Tuple[str, str, str], set] = {}
        self.tasks: List[Dict[str, Any]] = []
        self.activities: List[Dict[str, Any]] = []
        self.notifications: List[Dict[str, Any]] = []
        self.updates: List[Dict[str, Any]] = []
        self.members: Dict[str, set] = {}

    # -- fixtures ----------------------------------------------------------

    def add_project(self, project_id: str, slug: str) -> None:
        self.projects[slug] = project_id

    def add_entity(self, project_id: str, entity_type: str, entity: Dict[str, Any]) -> Dict[str, Any]:
        record = {"project_id": project_id, **entity}
        self.entities[(project_id, entity_type, str(entity["id"]))] = record
        return record

    def add_tag_definition(self, project_id: str, tag_id: str, name: str = "") -> None:
        self.tags[(project_id, tag_id)] = {"id": tag_id, "name": name or tag_id}

    def tags_for(self, project_id: str, entity_type: str, entity_id: str) -> set:
        return set(self.entity_tags.get((project_id, entity_type, entity_id), set()))

    # -- CrmGateway --------------------------------------------------------

    async def resolve_project(self, slug: str) -> Optional[str]:
        return self.projects.get(slug)

    async def get_entity(self, project_id: str, entity_type: str, entity_id: str) -> Optional[Dict[str, Any]]:
        entity = self.entities.get((project_id, entity_type, str(entity_id)))
        return copy.deepcopy(entity) if entity else None

    async def find_entities(self, query: EntityQuery) -> List[Dict[str, Any]]:
        found = []
        for (project_id, entity_type, _), entity in self.entities.items():
            if project_id != query.project_id or entity_type != query.entity_type:
                continue
            if query.exclude_deleted and entity.get("deleted_at"):
                continue
            anchor = _as_datetime(entity.get(query.field))
            if anchor is None:
                continue
            if query.after is not None and anchor < query.after:
                continue
            if query.before is not None and anchor >= query.before:
                continue
            if any(entity.get(k) not in values for k, values in query.include.items()):
                continue
            if any(entity.get(k) in values for k, values in query.exclude.items()):
                continue
            found.append((anchor, str(entity["id"]), entity))
        found.sort(key=lambda item: (item[0], item[1]))
        return [copy.deepcopy(e) for _, _, e in found[query.offset:query.offset + query.limit]]

    async def update_entity(
        self, project_id: str, entity_type: str, entity_id: str, fields: Dict[str, Any]
    ) -> Dict[str, Any]:
        key = (project_id, entity_type, str(entity_id))
        if key not in self.entities:
            raise NotFoundError(f"{entity_type} {entity_id} not found")
        self.entities[key].update(copy.deepcopy(fields))
        self.updates.append({"entity_type": entity_type, "entity_id": entity_id, "fields": fields})
        return copy.deepcopy(self.entities[key])

    async def get_variable_context(
        self,
        project_id: str,
        person_id: str,
        sender_id: Optional[str] = None,
        organization_id: Optional[str] = None,
    ) -> VariableContext:
        person = await self.get_entity(project_id, "person", person_id) or {}
        org_id = organization_id or self.primary_organizations.get(person_id)
        organization = {}
        if org_id:
            organization = await self.get_entity(project_id, "organization", org_id) or {}
        sender = copy.deepcopy(self.users.get(sender_id, {})) if sender_id else {}
        return VariableContext(person=person, organization=organization, sender=sender)

    async def get_email_template(self, project_id: str, template_id: str) -> Optional[Dict[str, Any]]:
        template = self.templates.get((project_id, template_id))
        return copy.deepcopy(template) if template else None

    async def create_task(self, project_id: str, task: Dict[str, Any]) -> str:
        task_id = str(uuid.uuid4())
        self.tasks.append({"id": task_id, "project_id": project_id, "status": "pending", **task})
        return task_id

    async def log_activity(self, project_id: str, activity: Dict[str, Any]) -> str:
        activity_id = str(uuid.uuid4())
        self.activities.append({"id": activity_id, "project_id": project_id, **activity})
        return activity_id

    async def add_tag(self, project_id: str, entity_type: str, entity_id: str, tag_id: str) -> None:
        if (project_id, tag_id) not in self.tags:
            raise NotFoundError(f"Tag {tag_id} not found")
        self.entity_tags.setdefault((project_id, entity_type, entity_id), set()).add(tag_id)

    async def remove_tag(self, project_id: str, entity_type: str, entity_id: str, tag_id: str) -> None:
        self.entity_tags.get((project_id, entity_type, entity_id), set()).discard(tag_id)

    async def is_project_member(self, project_id: str, user_id: str) -> bool:
        return user_id in self.members.get(project_id, set())

    async def notify_users(
        self, project_id: str, user_ids: List[str], title: str, message: str, link: Optional[str] = None
    ) -> int:
        for user_id in user_ids:
            self.notifications.append({
                "project_id": project_id,
                "user_id": user_id,
                "title": title,
                "message": message,
                "link": link,
            })
        return len(user_ids)


class MemoryMailSender:
    """MailSender that records messages. ``fail_for`` maps recipient -> MailError to raise."""

    def __init__(self):
        self.sent: List[OutboundEmail] = []
        self.fail_for: Dict[str, MailError] = {}

    async def send(self, message: OutboundEmail) -> Optional[str]:
        error = self.fail_for.get(message.to)
        if error is not None:
            raise error
        self.sent.append(message)
        return f"msg-{len(self.sent)}"


class MemoryWebhookSender:
    """WebhookSender that records calls and answers with ``status_code``."""

    def __init__(self, status_code: int = 200):
        self.status_code = status_code
        self.calls: List[Tuple[str, Dict[str, Any]]] = []

    async def post(self, url: str, payload: Dict[str, Any]) -> int:
        self.calls.append((url, copy.deepcopy(payload)))
        return self.status_code
