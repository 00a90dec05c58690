"""
Local task collection for guest (unauthenticated) sessions.

Each guest session keeps its tasks in one JSON file under the guest directory,
the server-side stand-in for browser local storage. Writes replace the whole
file, so a batch is applied all-or-nothing.
"""
import json
import logging
import os
import re
from pathlib import Path

from database import build_task
from dates import parse_iso, to_iso, utcnow
from errors import StorageError
from models import Task, normalize_tags

logger = logging.getLogger(__name__)

_SAFE_ID = re.compile(r"[^A-Za-z0-9_-]")


def _task_to_json(task: Task) -> dict:
    data = task.model_dump()
    data["created_at"] = to_iso(task.created_at)
    data["due_date"] = to_iso(task.due_date)
    return data


def _json_to_task(data: dict) -> Task:
    """Same normalization rules as database._row_to_task."""
    data = dict(data)
    status = data.get("status")
    if status not in ("todo", "inprogress", "completed"):
        data["status"] = "completed" if data.get("completed") else "todo"
    data.pop("completed", None)

    due_date = parse_iso(data.get("due_date"))
    data["due_date"] = due_date
    data["created_at"] = parse_iso(data.get("created_at")) or utcnow()
    data["hashtags"] = normalize_tags(data.get("hashtags") or [])
    if due_date is None or data.get("recurrence_rule") not in ("none", "daily", "weekly", "monthly"):
        data["recurrence_rule"] = "none"
    if due_date is None:
        data["reminder_sent"] = False
    return Task(**data)


class GuestBackend:
    """Task backend for a guest session, persisted to a local JSON file."""

    is_guest = True

    def __init__(self, guest_id: str, guest_dir: str = ".guest"):
        self.guest_id = guest_id
        directory = Path(guest_dir)
        directory.mkdir(parents=True, exist_ok=True)
        self.path = directory / f"{_SAFE_ID.sub('_', guest_id)}.json"

    def _load(self) -> list[Task]:
        if not self.path.exists():
            return []
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            raise StorageError(f"Cannot read guest tasks: {e}") from e
        if not isinstance(raw, list):
            return []
        return [_json_to_task(item) for item in raw if isinstance(item, dict)]

    def _save(self, tasks: list[Task]):
        tmp_path = self.path.with_suffix(".tmp")
        try:
            tmp_path.write_text(
                json.dumps([_task_to_json(t) for t in tasks], ensure_ascii=False),
                encoding="utf-8"
            )
            os.replace(tmp_path, self.path)
        except OSError as e:
            raise StorageError(f"Cannot write guest tasks: {e}") from e

    def list_tasks(self) -> list[Task]:
        tasks = self._load()
        tasks.sort(key=lambda t: t.created_at, reverse=True)
        return tasks

    def write_batch(self, inserts=(), updates=None, deletes=()) -> list[Task]:
        tasks = self._load()
        created = [build_task(None, t) for t in inserts]
        removed = set(deletes)
        updates = updates or {}

        result = []
        for task in tasks:
            if task.id in removed:
                continue
            if task.id in updates:
                task = task.model_copy(update=updates[task.id])
            result.append(task)
        result.extend(created)

        self._save(result)
        logger.debug("Guest %s now holds %d tasks", self.guest_id, len(result))
        return created
