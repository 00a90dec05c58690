"""Initial schema - tasks table, folding the legacy completed flag into status

Revision ID: 001
Revises: None
Create Date: 2025-06-02

"""
from typing import Sequence, Union

from alembic import op
from sqlalchemy import text

revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

TASK_COLUMNS = {
    "user_id": "TEXT",
    "status": "TEXT",
    "due_date": "TEXT",
    "hashtags": "TEXT DEFAULT '[]'",
    "is_urgent": "INTEGER DEFAULT 0",
    "recurrence_rule": "TEXT DEFAULT 'none'",
    "reminder_sent": "INTEGER DEFAULT 0",
    "parent_id": "TEXT",
    "note": "TEXT",
    "google_calendar_event_id": "TEXT",
    "project_id": "TEXT",
    "assignee_ids": "TEXT DEFAULT '[]'",
    "completed": "INTEGER",
}


def upgrade() -> None:
    conn = op.get_bind()

    # Check if tasks table exists
    result = conn.execute(
        text("SELECT name FROM sqlite_master WHERE type='table' AND name='tasks'")
    ).fetchone()

    if not result:
        # Create tasks table from scratch
        conn.execute(text("""
            CREATE TABLE tasks (
                id TEXT PRIMARY KEY,
                user_id TEXT,
                text TEXT NOT NULL,
                status TEXT,
                created_at TEXT NOT NULL,
                due_date TEXT,
                hashtags TEXT DEFAULT '[]',
                is_urgent INTEGER DEFAULT 0,
                recurrence_rule TEXT DEFAULT 'none',
                reminder_sent INTEGER DEFAULT 0,
                parent_id TEXT,
                note TEXT,
                google_calendar_event_id TEXT,
                project_id TEXT,
                assignee_ids TEXT DEFAULT '[]',
                completed INTEGER
            )
        """))
    else:
        # Older databases: add whatever is missing
        columns = {row[1] for row in conn.execute(text("PRAGMA table_info(tasks)")).fetchall()}
        for name, definition in TASK_COLUMNS.items():
            if name not in columns:
                conn.execute(text(f"ALTER TABLE tasks ADD COLUMN {name} {definition}"))

        # Legacy rows only have the completed flag
        conn.execute(text("""
            UPDATE tasks
            SET status = CASE WHEN completed THEN 'completed' ELSE 'todo' END
            WHERE status IS NULL OR status NOT IN ('todo', 'inprogress', 'completed')
        """))

    conn.execute(text("CREATE INDEX IF NOT EXISTS ix_tasks_user_created ON tasks (user_id, created_at)"))
    conn.execute(text("CREATE INDEX IF NOT EXISTS ix_tasks_user_due ON tasks (user_id, due_date)"))


def downgrade() -> None:
    conn = op.get_bind()
    conn.execute(text("DROP TABLE IF EXISTS tasks"))
