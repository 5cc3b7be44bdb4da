"""
CrmFlow Database Schema Management.

Lightweight migration system:
- Tracks current schema version in a `schema_version` table
- Only runs migrations that haven't been applied yet
- Each migration is a (version, description, SQL) tuple
- Safe for concurrent startup (uses advisory lock)

Only the outreach tables live here. The CRM entity tables (people,
organizations, tasks, ...) belong to the host application.

Usage:
    db = Database(dsn="postgresql://...")
    await db.initialize()
    await ensure_schema(db)
"""

import logging
from typing import List, Tuple

from .database import Database

logger = logging.getLogger(__name__)

# ──────────────────────────────────────────────────────────────
# Migration registry
#
# Append-only. Never modify or delete existing entries.
# Each entry: (version, description, sql)
# ──────────────────────────────────────────────────────────────
MIGRATIONS: List[Tuple[int, str, str]] = [
    (
        1,
        "Create sequences and sequence_steps tables",
        """
        CREATE TABLE IF NOT EXISTS sequences (
            id              TEXT PRIMARY KEY DEFAULT gen_random_uuid()::text,
            project_id      TEXT NOT NULL,
            organization_id TEXT,
            name            TEXT NOT NULL,
            status          TEXT NOT NULL DEFAULT 'draft',
            settings        JSONB NOT NULL DEFAULT '{}',
            created_at      TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            updated_at      TIMESTAMPTZ NOT NULL DEFAULT NOW()
        );
        CREATE INDEX IF NOT EXISTS idx_sequences_project ON sequences (project_id, status);

        CREATE TABLE IF NOT EXISTS sequence_steps (
            id              TEXT PRIMARY KEY DEFAULT gen_random_uuid()::text,
            sequence_id     TEXT NOT NULL REFERENCES sequences(id) ON DELETE CASCADE,
            step_number     INTEGER NOT NULL,
            step_type       TEXT NOT NULL DEFAULT 'email',
            delay_days      INTEGER NOT NULL DEFAULT 0,
            delay_hours     INTEGER NOT NULL DEFAULT 0,
            delay_minutes   INTEGER NOT NULL DEFAULT 0,
            delay_anchor    TEXT NOT NULL DEFAULT 'previous_step',
            subject         TEXT,
            body_html       TEXT,
            body_text       TEXT,
            config          JSONB NOT NULL DEFAULT '{}',
            UNIQUE (sequence_id, step_number)
        );
        """,
    ),
    (
        2,
        "Create sequence_enrollments and sent_emails tables",
        """
        CREATE TABLE IF NOT EXISTS sequence_enrollments (
            id                  TEXT PRIMARY KEY DEFAULT gen_random_uuid()::text,
            project_id          TEXT NOT NULL,
            sequence_id         TEXT NOT NULL REFERENCES sequences(id) ON DELETE CASCADE,
            person_id           TEXT NOT NULL,
            sender_id           TEXT,
            status              TEXT NOT NULL DEFAULT 'active',
            current_step_number INTEGER NOT NULL DEFAULT 1,
            next_step_due_at    TIMESTAMPTZ,
            enrolled_at         TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            completed_at        TIMESTAMPTZ,
            attempt_count       INTEGER NOT NULL DEFAULT 0,
            last_error          TEXT,
            created_seq         BIGSERIAL,
            updated_at          TIMESTAMPTZ NOT NULL DEFAULT NOW()
        );
        CREATE INDEX IF NOT EXISTS idx_enrollments_due
            ON sequence_enrollments (next_step_due_at, created_seq)
            WHERE status = 'active';
        CREATE INDEX IF NOT EXISTS idx_enrollments_person
            ON sequence_enrollments (project_id, person_id, status);

        CREATE TABLE IF NOT EXISTS sent_emails (
            id              TEXT PRIMARY KEY DEFAULT gen_random_uuid()::text,
            project_id      TEXT NOT NULL,
            enrollment_id   TEXT NOT NULL,
            sequence_id     TEXT NOT NULL,
            step_id         TEXT NOT NULL,
            person_id       TEXT NOT NULL,
            to_address      TEXT NOT NULL,
            subject         TEXT NOT NULL,
            message_id      TEXT,
            sent_at         TIMESTAMPTZ NOT NULL DEFAULT NOW()
        );
        CREATE INDEX IF NOT EXISTS idx_sent_emails_enrollment ON sent_emails (enrollment_id);
        """,
    ),
    (
        3,
        "Create automations and automation_executions tables",
        """
        CREATE TABLE IF NOT EXISTS automations (
            id              TEXT PRIMARY KEY DEFAULT gen_random_uuid()::text,
            project_id      TEXT NOT NULL,
            name            TEXT NOT NULL,
            description     TEXT NOT NULL DEFAULT '',
            trigger_type    TEXT NOT NULL,
            trigger_config  JSONB NOT NULL DEFAULT '{}',
            conditions      JSONB,
            actions         JSONB NOT NULL DEFAULT '[]',
            is_active       BOOLEAN NOT NULL DEFAULT TRUE,
            created_at      TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            updated_at      TIMESTAMPTZ NOT NULL DEFAULT NOW()
        );
        CREATE INDEX IF NOT EXISTS idx_automations_trigger
            ON automations (project_id, trigger_type) WHERE is_active;

        CREATE TABLE IF NOT EXISTS automation_executions (
            id               TEXT PRIMARY KEY,
            automation_id    TEXT NOT NULL REFERENCES automations(id) ON DELETE CASCADE,
            project_id       TEXT NOT NULL,
            trigger_type     TEXT NOT NULL,
            entity_type      TEXT NOT NULL,
            entity_id        TEXT NOT NULL,
            status           TEXT NOT NULL,
            executed_at      TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            entity_snapshot  JSONB NOT NULL DEFAULT '{}',
            action_results   JSONB NOT NULL DEFAULT '[]',
            error_message    TEXT,
            window_key       TEXT,
            resume_from      TEXT,
            resume_at_action INTEGER,
            resume_after     TIMESTAMPTZ,
            duration_ms      INTEGER NOT NULL DEFAULT 0
        );
        CREATE INDEX IF NOT EXISTS idx_executions_window
            ON automation_executions (automation_id, entity_type, entity_id, window_key);
        CREATE INDEX IF NOT EXISTS idx_executions_waits
            ON automation_executions (resume_after) WHERE resume_after IS NOT NULL;
        CREATE UNIQUE INDEX IF NOT EXISTS idx_executions_resume_from
            ON automation_executions (resume_from) WHERE resume_from IS NOT NULL;
        """,
    ),
    (
        4,
        "Create automation_event_outbox table",
        """
        CREATE TABLE IF NOT EXISTS automation_event_outbox (
            id           BIGSERIAL PRIMARY KEY,
            project_id   TEXT NOT NULL,
            payload      JSONB NOT NULL,
            attempts     INTEGER NOT NULL DEFAULT 0,
            last_error   TEXT,
            created_at   TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            delivered_at TIMESTAMPTZ
        );
        CREATE INDEX IF NOT EXISTS idx_outbox_pending
            ON automation_event_outbox (id) WHERE delivered_at IS NULL;
        """,
    ),
]

_BOOTSTRAP_SQL = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY,
    description TEXT NOT NULL,
    applied_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
"""

# PostgreSQL advisory lock ID (arbitrary constant, unique to this app)
_LOCK_ID = 7_2658_2001


async def ensure_schema(db: Database) -> None:
    """Apply any pending migrations.

    - Creates the ``schema_version`` tracking table if needed
    - Uses a PostgreSQL advisory lock to prevent concurrent migration runs
    - Skips migrations that have already been applied
    - Each migration runs in its own transaction

    Args:
        db: Initialized Database instance.
    """
    async with db.acquire() as conn:
        # Advisory lock: only one process migrates at a time
        await conn.execute("SELECT pg_advisory_lock($1)", _LOCK_ID)
        try:
            await conn.execute(_BOOTSTRAP_SQL)

            row = await conn.fetchrow(
                "SELECT COALESCE(MAX(version), 0) AS v FROM schema_version"
            )
            current = row["v"]

            pending = [(v, d, s) for v, d, s in MIGRATIONS if v > current]
            if not pending:
                logger.debug(f"Schema up to date (version {current})")
                return

            for version, description, sql in pending:
                async with conn.transaction():
                    await conn.execute(sql)
                    await conn.execute(
                        "INSERT INTO schema_version (version, description) VALUES ($1, $2)",
                        version,
                        description,
                    )
                logger.info(f"Migration {version}: {description}")

            logger.info(
                f"Schema migrated {current} -> {pending[-1][0]} "
                f"({len(pending)} migration(s))"
            )
        finally:
            await conn.execute("SELECT pg_advisory_unlock($1)", _LOCK_ID)
