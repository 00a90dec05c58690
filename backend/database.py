import json
import logging
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime
from typing import Iterable, Optional

from dates import parse_iso, to_iso, utcnow
from errors import StorageError, TemplateNotFound
from models import NewTask, SubtaskTemplate, Task, TaskTemplate, normalize_tags

logger = logging.getLogger(__name__)

DATABASE_PATH = "ptodo.db"

TASK_COLUMNS = (
    "id", "user_id", "text", "status", "created_at", "due_date", "hashtags",
    "is_urgent", "recurrence_rule", "reminder_sent", "parent_id", "note",
    "google_calendar_event_id", "project_id", "assignee_ids",
)
JSON_COLUMNS = ("hashtags", "assignee_ids")
BOOL_COLUMNS = ("is_urgent", "reminder_sent")
DATE_COLUMNS = ("created_at", "due_date")


@contextmanager
def get_db():
    """Context manager for database connections."""
    conn = sqlite3.connect(DATABASE_PATH)
    conn.row_factory = sqlite3.Row
    try:
        yield conn
    finally:
        conn.close()


def init_db():
    """Initialize database by running Alembic migrations."""
    import os
    import subprocess

    # Run alembic upgrade from the backend directory against DATABASE_PATH
    backend_dir = os.path.dirname(os.path.abspath(__file__))
    env = dict(os.environ, PTODO_DATABASE_PATH=os.path.abspath(DATABASE_PATH))
    subprocess.run(
        ["alembic", "upgrade", "head"],
        cwd=backend_dir,
        env=env,
        check=True
    )


def _load_json_list(raw) -> list[str]:
    if not raw:
        return []
    try:
        value = json.loads(raw)
    except (TypeError, ValueError):
        return []
    return [str(v) for v in value] if isinstance(value, list) else []


def _row_to_task(row) -> Task:
    """
    Convert a database row to a Task model.
    Legacy rows only carry the boolean `completed`; it is folded into `status` here
    and nowhere else.
    """
    keys = row.keys()
    status = row["status"] if "status" in keys else None
    if status not in ("todo", "inprogress", "completed"):
        legacy_completed = row["completed"] if "completed" in keys else None
        status = "completed" if legacy_completed else "todo"

    due_date = parse_iso(row["due_date"])
    recurrence = row["recurrence_rule"] or "none"
    if recurrence not in ("none", "daily", "weekly", "monthly") or due_date is None:
        recurrence = "none"

    return Task(
        id=row["id"],
        user_id=row["user_id"],
        text=row["text"],
        status=status,
        created_at=parse_iso(row["created_at"]) or utcnow(),
        due_date=due_date,
        hashtags=normalize_tags(_load_json_list(row["hashtags"])),
        is_urgent=bool(row["is_urgent"]),
        recurrence_rule=recurrence,
        reminder_sent=bool(row["reminder_sent"]) and due_date is not None,
        parent_id=row["parent_id"],
        note=row["note"],
        google_calendar_event_id=row["google_calendar_event_id"],
        project_id=row["project_id"],
        assignee_ids=_load_json_list(row["assignee_ids"]),
    )


def _to_column(field: str, value):
    """Convert a Task field value into its SQLite representation."""
    if field in JSON_COLUMNS:
        return json.dumps(list(value or []))
    if field in BOOL_COLUMNS:
        return int(bool(value))
    if field in DATE_COLUMNS:
        return to_iso(value) if isinstance(value, datetime) else value
    return value


def build_task(user_id: Optional[str], new_task: NewTask, created_at: Optional[datetime] = None) -> Task:
    """Assign an id and creation time to a NewTask."""
    return Task(
        id=str(uuid.uuid4()),
        user_id=user_id,
        created_at=created_at or utcnow(),
        **new_task.model_dump(),
    )


def _insert(conn, task: Task):
    values = [_to_column(c, getattr(task, c)) for c in TASK_COLUMNS]
    placeholders = ", ".join("?" for _ in TASK_COLUMNS)
    conn.execute(
        f"INSERT INTO tasks ({', '.join(TASK_COLUMNS)}) VALUES ({placeholders})",
        values
    )


def _update(conn, task_id: str, fields: dict):
    changes = {f: _to_column(f, v) for f, v in fields.items() if f in TASK_COLUMNS and f != "id"}
    if not changes:
        return
    set_clause = ", ".join(f"{field} = ?" for field in changes.keys())
    conn.execute(f"UPDATE tasks SET {set_clause} WHERE id = ?", list(changes.values()) + [task_id])


def write_batch(
    user_id: Optional[str],
    inserts: Iterable[NewTask] = (),
    updates: Optional[dict[str, dict]] = None,
    deletes: Iterable[str] = (),
) -> list[Task]:
    """
    Apply inserts, patches and deletes in one transaction.
    Returns the inserted tasks. Raises StorageError if anything fails (nothing is written).
    """
    created = [build_task(user_id, t) for t in inserts]
    deletes = list(deletes)
    try:
        with get_db() as conn:
            with conn:
                for task in created:
                    _insert(conn, task)
                for task_id, fields in (updates or {}).items():
                    _update(conn, task_id, fields)
                for task_id in deletes:
                    conn.execute("DELETE FROM tasks WHERE id = ?", (task_id,))
    except sqlite3.Error as e:
        logger.exception("Batch write failed user=%s", user_id)
        raise StorageError(str(e)) from e
    logger.debug(
        "Batch write user=%s inserts=%d updates=%d deletes=%d",
        user_id, len(created), len(updates or {}), len(deletes)
    )
    return created


def get_tasks_for_user(user_id: str) -> list[Task]:
    """All tasks owned by user_id, newest first."""
    try:
        with get_db() as conn:
            rows = conn.execute(
                "SELECT * FROM tasks WHERE user_id = ? ORDER BY created_at DESC",
                (user_id,)
            ).fetchall()
    except sqlite3.Error as e:
        raise StorageError(str(e)) from e
    return [_row_to_task(row) for row in rows]


def get_task_db(task_id: str) -> Optional[Task]:
    with get_db() as conn:
        row = conn.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
        return _row_to_task(row) if row else None


def get_tasks_due_between(user_id: str, start: datetime, end: datetime) -> list[Task]:
    """Tasks due in [start, end), ordered by due date ascending."""
    with get_db() as conn:
        rows = conn.execute(
            """SELECT * FROM tasks
               WHERE user_id = ? AND due_date >= ? AND due_date < ?
               ORDER BY due_date""",
            (user_id, to_iso(start), to_iso(end))
        ).fetchall()
        return [_row_to_task(row) for row in rows]


def query_tasks(
    user_id: str,
    statuses: Optional[Iterable[str]] = None,
    is_urgent: Optional[bool] = None,
    limit: Optional[int] = None,
) -> list[Task]:
    """
    Tasks for user_id filtered by status and/or urgency, newest first.
    Status filtering happens after normalization so legacy rows match too.
    """
    sql = "SELECT * FROM tasks WHERE user_id = ?"
    params: list = [user_id]
    if is_urgent is not None:
        sql += " AND is_urgent = ?"
        params.append(int(is_urgent))
    sql += " ORDER BY created_at DESC"

    with get_db() as conn:
        rows = conn.execute(sql, params).fetchall()
    tasks = [_row_to_task(row) for row in rows]

    if statuses is not None:
        wanted = set(statuses)
        tasks = [t for t in tasks if t.status in wanted]
    if limit is not None:
        tasks = tasks[:limit]
    return tasks


# User / chat binding operations
def link_telegram_chat(user_id: str, chat_id: int, username: str = ""):
    """Bind a Telegram chat to a user, creating the user row if needed."""
    with get_db() as conn:
        conn.execute(
            """INSERT INTO users (id, telegram_chat_id, telegram_username)
               VALUES (?, ?, ?)
               ON CONFLICT(id) DO UPDATE SET
                   telegram_chat_id = excluded.telegram_chat_id,
                   telegram_username = excluded.telegram_username""",
            (user_id, chat_id, username)
        )
        conn.commit()
    logger.info("Linked telegram chat=%s to user=%s", chat_id, user_id)


def find_user_by_chat(chat_id: int) -> Optional[str]:
    with get_db() as conn:
        row = conn.execute(
            "SELECT id FROM users WHERE telegram_chat_id = ? LIMIT 1",
            (chat_id,)
        ).fetchone()
        return row["id"] if row else None


# Task template operations
def _row_to_template(row) -> TaskTemplate:
    subtasks = []
    try:
        raw = json.loads(row["subtasks"] or "[]")
    except (TypeError, ValueError):
        raw = []
    for item in raw if isinstance(raw, list) else []:
        if isinstance(item, dict) and item.get("text"):
            subtasks.append(SubtaskTemplate(id=str(item.get("id") or uuid.uuid4()), text=item["text"]))
        elif isinstance(item, str) and item.strip():
            subtasks.append(SubtaskTemplate(id=str(uuid.uuid4()), text=item))
    return TaskTemplate(
        id=row["id"],
        user_id=row["user_id"],
        name=row["name"],
        icon=row["icon"] or "📋",
        created_at=parse_iso(row["created_at"]) or utcnow(),
        subtasks=subtasks,
    )


def _subtasks_json(texts: Iterable[str]) -> str:
    return json.dumps([{"id": str(uuid.uuid4()), "text": text} for text in texts])


def get_templates_for_user(user_id: str) -> list[TaskTemplate]:
    """Templates owned by user_id, oldest first."""
    with get_db() as conn:
        rows = conn.execute(
            "SELECT * FROM task_templates WHERE user_id = ? ORDER BY created_at, rowid",
            (user_id,)
        ).fetchall()
        return [_row_to_template(row) for row in rows]


def get_template(user_id: str, template_id: str) -> TaskTemplate:
    with get_db() as conn:
        row = conn.execute(
            "SELECT * FROM task_templates WHERE id = ? AND user_id = ?",
            (template_id, user_id)
        ).fetchone()
    if row is None:
        raise TemplateNotFound(template_id)
    return _row_to_template(row)


def create_template(user_id: str, name: str, icon: str, subtasks: Iterable[str]) -> TaskTemplate:
    template_id = str(uuid.uuid4())
    with get_db() as conn:
        conn.execute(
            """INSERT INTO task_templates (id, user_id, name, icon, subtasks, created_at)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (template_id, user_id, name, icon, _subtasks_json(subtasks), to_iso(utcnow()))
        )
        conn.commit()
    logger.info("Created template %s for user=%s", template_id, user_id)
    return get_template(user_id, template_id)


def update_template(
    user_id: str,
    template_id: str,
    name: Optional[str] = None,
    icon: Optional[str] = None,
    subtasks: Optional[Iterable[str]] = None,
) -> TaskTemplate:
    """Patch the given fields; a new subtasks list replaces the old one."""
    changes = {}
    if name is not None:
        changes["name"] = name
    if icon is not None:
        changes["icon"] = icon
    if subtasks is not None:
        changes["subtasks"] = _subtasks_json(subtasks)

    with get_db() as conn:
        if changes:
            set_clause = ", ".join(f"{field} = ?" for field in changes)
            cursor = conn.execute(
                f"UPDATE task_templates SET {set_clause} WHERE id = ? AND user_id = ?",
                list(changes.values()) + [template_id, user_id]
            )
            conn.commit()
            if cursor.rowcount == 0:
                raise TemplateNotFound(template_id)
    return get_template(user_id, template_id)


def delete_template(user_id: str, template_id: str):
    with get_db() as conn:
        cursor = conn.execute(
            "DELETE FROM task_templates WHERE id = ? AND user_id = ?",
            (template_id, user_id)
        )
        conn.commit()
    if cursor.rowcount == 0:
        raise TemplateNotFound(template_id)


class DatabaseBackend:
    """Task backend for an authenticated user, stored in the shared SQLite database."""

    is_guest = False

    def __init__(self, user_id: str):
        self.user_id = user_id

    def list_tasks(self) -> list[Task]:
        return get_tasks_for_user(self.user_id)

    def write_batch(self, inserts=(), updates=None, deletes=()) -> list[Task]:
        return write_batch(self.user_id, inserts, updates, deletes)
