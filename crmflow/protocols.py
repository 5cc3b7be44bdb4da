"""
CrmFlow Protocols - interfaces for the external collaborators

The outreach core never talks to the CRM tables, the mail transport or
outbound webhooks directly. These protocols define what it needs from each,
so deployments can plug in Postgres/HTTP implementations and tests can plug
in the in-memory ones from ``crmflow.providers.memory``.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Protocol, List, Dict, Any, Optional, runtime_checkable

from .models import OutboundEmail, VariableContext


@dataclass
class EntityQuery:
    """Window query used by time-based automations.

    Selects entities of one type in one project whose ``field`` lies in
    ``[after, before)``, ordered by ``field`` then id, skipping the first
    ``offset`` rows.
    """
    project_id: str
    entity_type: str
    field: str
    after: Optional[datetime] = None
    before: Optional[datetime] = None
    include: Dict[str, List[Any]] = field(default_factory=dict)
    exclude: Dict[str, List[Any]] = field(default_factory=dict)
    exclude_deleted: bool = False
    limit: int = 100
    offset: int = 0


@runtime_checkable
class MailSender(Protocol):
    """
    Delivers a rendered message.

    Implementations raise ``MailError(transient=...)`` on failure and return
    the provider's message id on success.
    """

    async def send(self, message: OutboundEmail) -> Optional[str]:
        ...


@runtime_checkable
class WebhookSender(Protocol):
    """POSTs a JSON payload and returns the HTTP status code."""

    async def post(self, url: str, payload: Dict[str, Any]) -> int:
        ...


@runtime_checkable
class CrmGateway(Protocol):
    """
    Entity store and CRM side effects, always scoped by project.

    Entity snapshots are plain JSON-compatible dicts (timestamps as ISO
    strings) so the condition evaluator sees the same shapes regardless of
    the backing store.
    """

    async def resolve_project(self, slug: str) -> Optional[str]:
        """Return the project id for a slug, or None."""
        ...

    async def get_entity(self, project_id: str, entity_type: str, entity_id: str) -> Optional[Dict[str, Any]]:
        ...

    async def find_entities(self, query: EntityQuery) -> List[Dict[str, Any]]:
        ...

    async def update_entity(
        self, project_id: str, entity_type: str, entity_id: str, fields: Dict[str, Any]
    ) -> Dict[str, Any]:
        """Apply ``fields`` and return the updated snapshot.

        Raises NotFoundError if the entity does not exist in the project.
        """
        ...

    async def get_variable_context(
        self,
        project_id: str,
        person_id: str,
        sender_id: Optional[str] = None,
        organization_id: Optional[str] = None,
    ) -> VariableContext:
        ...

    async def get_email_template(self, project_id: str, template_id: str) -> Optional[Dict[str, Any]]:
        ...

    async def create_task(self, project_id: str, task: Dict[str, Any]) -> str:
        """Create a task and return its id."""
        ...

    async def log_activity(self, project_id: str, activity: Dict[str, Any]) -> str:
        ...

    async def add_tag(self, project_id: str, entity_type: str, entity_id: str, tag_id: str) -> None:
        """Raises NotFoundError if the tag does not belong to the project."""
        ...

    async def remove_tag(self, project_id: str, entity_type: str, entity_id: str, tag_id: str) -> None:
        ...

    async def is_project_member(self, project_id: str, user_id: str) -> bool:
        ...

    async def notify_users(
        self, project_id: str, user_ids: List[str], title: str, message: str, link: Optional[str] = None
    ) -> int:
        """Create in-app notifications; returns how many were created."""
        ...
