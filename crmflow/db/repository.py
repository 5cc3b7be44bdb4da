"""
CrmFlow Repository - Base class for table-scoped data access.

Each store creates a subclass that defines:
- TABLE_NAME: the table it owns
- Domain-specific query methods

Every outreach row carries a project_id, and every helper that reads or
writes a single row takes it, so one tenant can never touch another's rows.

Usage:
    class SentEmailRepository(Repository):
        TABLE_NAME = "sent_emails"

        async def for_enrollment(self, project_id: str, enrollment_id: str) -> list[dict]:
            return await self._fetch_many(
                "project_id = $1 AND enrollment_id = $2",
                (project_id, enrollment_id),
                order_by="sent_at",
            )
"""

import logging
from typing import Any, Dict, List, Optional

from .database import Database

logger = logging.getLogger(__name__)


class Repository:
    """
    Base class for table data access.

    Subclasses define TABLE_NAME and domain methods.
    """

    TABLE_NAME: str = ""

    def __init__(self, db: Database):
        self._db = db

    @property
    def db(self) -> Database:
        return self._db

    # -- Generic CRUD helpers (subclasses can use or ignore) --

    async def _insert(
        self,
        data: Dict[str, Any],
        returning: str = "*",
    ) -> Optional[Dict[str, Any]]:
        """Insert a row and return it."""
        columns = list(data.keys())
        placeholders = [f"${i+1}" for i in range(len(columns))]
        values = list(data.values())

        query = (
            f"INSERT INTO {self.TABLE_NAME} ({', '.join(columns)}) "
            f"VALUES ({', '.join(placeholders)}) "
            f"RETURNING {returning}"
        )
        row = await self._db.fetchrow(query, *values)
        return dict(row) if row else None

    async def _update(
        self,
        project_id: str,
        id_value: Any,
        data: Dict[str, Any],
        returning: str = "*",
    ) -> Optional[Dict[str, Any]]:
        """Update one row of a project by id and return it."""
        set_clauses = []
        values = []
        for i, (col, val) in enumerate(data.items(), 1):
            set_clauses.append(f"{col} = ${i}")
            values.append(val)

        values.extend([id_value, project_id])
        id_idx = len(values) - 1

        query = (
            f"UPDATE {self.TABLE_NAME} "
            f"SET {', '.join(set_clauses)} "
            f"WHERE id = ${id_idx} AND project_id = ${id_idx + 1} "
            f"RETURNING {returning}"
        )
        row = await self._db.fetchrow(query, *values)
        return dict(row) if row else None

    async def _fetch_one(self, project_id: str, id_value: Any) -> Optional[Dict[str, Any]]:
        row = await self._db.fetchrow(
            f"SELECT * FROM {self.TABLE_NAME} WHERE id = $1 AND project_id = $2",
            id_value,
            project_id,
        )
        return dict(row) if row else None

    async def _fetch_many(
        self,
        where: str = "",
        args: tuple = (),
        order_by: str = "",
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """Fetch multiple rows with optional WHERE, ORDER BY, LIMIT."""
        query = f"SELECT * FROM {self.TABLE_NAME}"
        if where:
            query += f" WHERE {where}"
        if order_by:
            query += f" ORDER BY {order_by}"
        if limit:
            query += f" LIMIT {int(limit)}"

        rows = await self._db.fetch(query, *args)
        return [dict(r) for r in rows]
