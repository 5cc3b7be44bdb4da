"""
Postgres CRM gateway - entity reads and CRM side effects over the host
application's tables (people, organizations, tasks, activity_log, ...).

Table and column identifiers never come from user input unchecked: tables
come from ENTITY_TABLES and columns must match ``_IDENT``.
"""

import logging
import re
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional
from uuid import UUID

from ..db import Database
from ..errors import NotFoundError
from ..models import ENTITY_TABLES, SOFT_DELETE_TYPES, VariableContext
from ..protocols import EntityQuery

logger = logging.getLogger(__name__)

_IDENT = re.compile(r"^[a-z_][a-z0-9_]*$")


def _table(entity_type: str) -> str:
    table = ENTITY_TABLES.get(entity_type)
    if table is None:
        raise NotFoundError(f"Unknown entity type: {entity_type}")
    return table


def _column(name: str) -> str:
    if not _IDENT.match(name):
        raise ValueError(f"Invalid column name: {name!r}")
    return name


def _normalize(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, Decimal):
        return int(value) if value == value.to_integral_value() else float(value)
    if isinstance(value, dict):
        return {k: _normalize(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_normalize(v) for v in value]
    return value


def snapshot(row: Any) -> Dict[str, Any]:
    """Convert an asyncpg record into a JSON-compatible entity snapshot."""
    return {k: _normalize(v) for k, v in dict(row).items()}


class PostgresCrmGateway:
    """CrmGateway backed by the CRM's own Postgres tables.

    Args:
        db: Initialized Database shared with the outreach stores.
    """

    def __init__(self, db: Database):
        self._db = db

    async def resolve_project(self, slug: str) -> Optional[str]:
        project_id = await self._db.fetchval("SELECT id FROM projects WHERE slug = $1", slug)
        return str(project_id) if project_id is not None else None

    async def get_entity(self, project_id: str, entity_type: str, entity_id: str) -> Optional[Dict[str, Any]]:
        row = await self._db.fetchrow(
            f"SELECT * FROM {_table(entity_type)} WHERE id::text = $1 AND project_id::text = $2",
            str(entity_id),
            str(project_id),
        )
        return snapshot(row) if row else None

    async def find_entities(self, query: EntityQuery) -> List[Dict[str, Any]]:
        table = _table(query.entity_type)
        field = _column(query.field)
        clauses = ["project_id::text = $1", f"{field} IS NOT NULL"]
        args: List[Any] = [str(query.project_id)]

        if query.after is not None:
            args.append(query.after)
            clauses.append(f"{field} >= ${len(args)}")
        if query.before is not None:
            args.append(query.before)
            clauses.append(f"{field} < ${len(args)}")
        for key, values in query.include.items():
            args.append(list(values))
            clauses.append(f"{_column(key)} = ANY(${len(args)})")
        for key, values in query.exclude.items():
            args.append(list(values))
            clauses.append(f"({_column(key)} IS NULL OR NOT ({_column(key)} = ANY(${len(args)})))")
        if query.exclude_deleted and query.entity_type in SOFT_DELETE_TYPES:
            clauses.append("deleted_at IS NULL")

        rows = await self._db.fetch(
            f"SELECT * FROM {table} WHERE {' AND '.join(clauses)} "
            f"ORDER BY {field}, id LIMIT {int(query.limit)} OFFSET {int(query.offset)}",
            *args,
        )
        return [snapshot(r) for r in rows]

    async def update_entity(
        self, project_id: str, entity_type: str, entity_id: str, fields: Dict[str, Any]
    ) -> Dict[str, Any]:
        table = _table(entity_type)
        set_clauses = []
        values: List[Any] = []
        for i, (col, val) in enumerate(fields.items(), 1):
            set_clauses.append(f"{_column(col)} = ${i}")
            values.append(val)
        values.extend([str(entity_id), str(project_id)])
        row = await self._db.fetchrow(
            f"UPDATE {table} SET {', '.join(set_clauses)}, updated_at = NOW() "
            f"WHERE id::text = ${len(values) - 1} AND project_id::text = ${len(values)} "
            f"RETURNING *",
            *values,
        )
        if row is None:
            raise NotFoundError(f"{entity_type} {entity_id} not found")
        return snapshot(row)

    async def get_variable_context(
        self,
        project_id: str,
        person_id: str,
        sender_id: Optional[str] = None,
        organization_id: Optional[str] = None,
    ) -> VariableContext:
        person = await self.get_entity(project_id, "person", person_id) or {}

        organization: Dict[str, Any] = {}
        if organization_id:
            organization = await self.get_entity(project_id, "organization", organization_id) or {}
        elif person:
            row = await self._db.fetchrow(
                """
                SELECT o.* FROM people_organizations po
                JOIN organizations o ON o.id = po.organization_id
                WHERE po.person_id::text = $1 AND po.is_primary AND o.project_id::text = $2
                LIMIT 1
                """,
                str(person_id),
                str(project_id),
            )
            organization = snapshot(row) if row else {}

        sender: Dict[str, Any] = {}
        if sender_id:
            row = await self._db.fetchrow(
                "SELECT id, email, full_name FROM users WHERE id::text = $1",
                str(sender_id),
            )
            sender = snapshot(row) if row else {}

        return VariableContext(person=person, organization=organization, sender=sender)

    async def get_email_template(self, project_id: str, template_id: str) -> Optional[Dict[str, Any]]:
        row = await self._db.fetchrow(
            "SELECT id, subject, body_html, body_text FROM email_templates "
            "WHERE id::text = $1 AND project_id::text = $2",
            str(template_id),
            str(project_id),
        )
        return snapshot(row) if row else None

    async def create_task(self, project_id: str, task: Dict[str, Any]) -> str:
        data = {"project_id": project_id, "status": "pending", **task}
        columns = [_column(c) for c in data]
        placeholders = [f"${i}" for i in range(1, len(columns) + 1)]
        task_id = await self._db.fetchval(
            f"INSERT INTO tasks ({', '.join(columns)}) VALUES ({', '.join(placeholders)}) RETURNING id",
            *data.values(),
        )
        return str(task_id)

    async def log_activity(self, project_id: str, activity: Dict[str, Any]) -> str:
        data = {"project_id": project_id, **activity}
        columns = [_column(c) for c in data]
        placeholders = [f"${i}" for i in range(1, len(columns) + 1)]
        activity_id = await self._db.fetchval(
            f"INSERT INTO activity_log ({', '.join(columns)}) VALUES ({', '.join(placeholders)}) RETURNING id",
            *data.values(),
        )
        return str(activity_id)

    async def add_tag(self, project_id: str, entity_type: str, entity_id: str, tag_id: str) -> None:
        exists = await self._db.fetchval(
            "SELECT EXISTS (SELECT 1 FROM tags WHERE id::text = $1 AND project_id::text = $2)",
            str(tag_id),
            str(project_id),
        )
        if not exists:
            raise NotFoundError(f"Tag {tag_id} not found")
        await self._db.execute(
            """
            INSERT INTO entity_tags (tag_id, entity_type, entity_id)
            VALUES ($1, $2, $3)
            ON CONFLICT (tag_id, entity_type, entity_id) DO NOTHING
            """,
            tag_id,
            entity_type,
            entity_id,
        )

    async def remove_tag(self, project_id: str, entity_type: str, entity_id: str, tag_id: str) -> None:
        await self._db.execute(
            """
            DELETE FROM entity_tags et USING tags t
            WHERE t.id = et.tag_id AND t.project_id::text = $1
              AND et.tag_id::text = $2 AND et.entity_type = $3 AND et.entity_id::text = $4
            """,
            str(project_id),
            str(tag_id),
            entity_type,
            str(entity_id),
        )

    async def is_project_member(self, project_id: str, user_id: str) -> bool:
        found = await self._db.fetchval(
            "SELECT EXISTS (SELECT 1 FROM project_memberships WHERE project_id::text = $1 AND user_id::text = $2)",
            str(project_id),
            str(user_id),
        )
        return bool(found)

    async def notify_users(
        self, project_id: str, user_ids: List[str], title: str, message: str, link: Optional[str] = None
    ) -> int:
        async with self._db.acquire() as conn:
            async with conn.transaction():
                for user_id in user_ids:
                    await conn.execute(
                        """
                        INSERT INTO notifications
                            (project_id, user_id, type, title, message, action_url, priority)
                        VALUES ($1, $2, 'automation', $3, $4, $5, 'normal')
                        """,
                        project_id,
                        user_id,
                        title,
                        message,
                        link,
                    )
        logger.debug(f"Created {len(user_ids)} notification(s) in project {project_id}")
        return len(user_ids)
