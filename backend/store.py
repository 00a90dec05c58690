"""
Task store: the in-memory view of one user's tasks, kept in step with a durable backend.

Mutations are optimistic. The candidate state is applied to the view first, then
written to the backend; if the write fails only the tasks that change touched
are put back. Calendar mirroring is advisory and never blocks or reverts
a task mutation.
"""
import asyncio
import logging
from typing import Callable, Iterable, Optional, Protocol

from calendar_sync import event_payload
from config import Settings
from errors import CalendarAuthError, CalendarError, StorageError, TaskNotFound
from models import NewTask, Task, TaskCreate, TaskStatus, TaskTemplate, normalize_tags
from recurrence import next_occurrence

logger = logging.getLogger(__name__)


class TaskBackend(Protocol):
    is_guest: bool

    def list_tasks(self) -> list[Task]: ...

    def write_batch(self, inserts=(), updates=None, deletes=()) -> list[Task]: ...


class CalendarClient(Protocol):
    async def create_event(self, payload: dict) -> str: ...

    async def update_event(self, event_id: str, payload: dict) -> None: ...

    async def delete_event(self, event_id: str) -> None: ...


class Notices:
    """User-facing soft messages (quota reached, sync failed, change reverted)."""

    def __init__(self):
        self._messages: list[str] = []

    def add(self, message: str):
        self._messages.append(message)

    def drain(self) -> list[str]:
        messages, self._messages = self._messages, []
        return messages


class TaskStore:
    def __init__(
        self,
        backend: TaskBackend,
        settings: Settings,
        calendar: Optional[CalendarClient] = None,
        notices: Optional[Notices] = None,
        on_change: Optional[Callable[[list[Task]], None]] = None,
    ):
        self.backend = backend
        self.settings = settings
        # Calendar sync is an online-only feature
        self.calendar = None if backend.is_guest else calendar
        self.notices = notices or Notices()
        self.on_change = on_change
        self._tasks: list[Task] = []
        self._locks: dict[str, asyncio.Lock] = {}

    @property
    def is_guest(self) -> bool:
        return self.backend.is_guest

    @property
    def tasks(self) -> list[Task]:
        return list(self._tasks)

    def get(self, task_id: str) -> Task:
        for task in self._tasks:
            if task.id == task_id:
                return task
        raise TaskNotFound(task_id)

    async def refresh(self) -> list[Task]:
        """Reload the whole collection from the backend (newest first)."""
        tasks = await asyncio.to_thread(self.backend.list_tasks)
        self._set(sorted(tasks, key=lambda t: t.created_at, reverse=True))
        return self.tasks

    # ---- internals ----

    def _set(self, tasks: list[Task]):
        self._tasks = tasks
        if self.on_change:
            self.on_change(list(tasks))

    def _lock(self, task_id: str) -> asyncio.Lock:
        lock = self._locks.get(task_id)
        if lock is None:
            lock = self._locks[task_id] = asyncio.Lock()
        return lock

    def _remaining_quota(self) -> Optional[int]:
        if not self.is_guest:
            return None
        return max(0, self.settings.guest_task_limit - len(self._tasks))

    def _quota_notice(self):
        self.notices.add(
            f"Guest mode is limited to {self.settings.guest_task_limit} tasks. "
            "Sign in to add more."
        )

    async def _commit(
        self,
        candidate: list[Task],
        *,
        inserts: Iterable[NewTask] = (),
        updates: Optional[dict[str, dict]] = None,
        deletes: Iterable[str] = (),
        failure_notice: str = "Could not save your change.",
    ) -> Optional[list[Task]]:
        """
        Apply candidate to the view, then write to the backend.
        Returns the created tasks, or None if the write failed and the touched tasks were restored.
        """
        updates = updates or {}
        deletes = list(deletes)
        touched = set(updates) | set(deletes)
        previous = {t.id: t for t in self._tasks if t.id in touched}
        self._set(candidate)
        try:
            created = await asyncio.to_thread(
                self.backend.write_batch, list(inserts), updates, deletes
            )
        except StorageError:
            logger.exception("Write failed, restoring %d tasks", len(previous))
            self._set(self._rolled_back(previous))
            self.notices.add(failure_notice)
            return None
        if created:
            self._set(list(created) + self._tasks)
        return created

    def _rolled_back(self, previous: dict[str, Task]) -> list[Task]:
        """
        The current view with only the given tasks put back as they were.
        Other writes that finished while this one was in flight are kept.
        Inserts never reach the view before they are durable, so there is nothing to drop.
        """
        restored = [previous.get(t.id, t) for t in self._tasks]
        present = {t.id for t in restored}
        restored += [t for t in previous.values() if t.id not in present]
        restored.sort(key=lambda t: t.created_at, reverse=True)
        return restored

    async def _apply_update(self, task: Task, fields: dict, failure_notice: str) -> Optional[Task]:
        updated = task.model_copy(update=fields)
        candidate = [updated if t.id == task.id else t for t in self._tasks]
        created = await self._commit(candidate, updates={task.id: fields}, failure_notice=failure_notice)
        return updated if created is not None else None

    async def _calendar_call(self, action: str, call) -> tuple[bool, object]:
        """Run one advisory calendar call. Returns (succeeded, result)."""
        try:
            return True, await call
        except CalendarAuthError:
            logger.warning("Calendar authorization failed during %s", action)
            self.notices.add("Google Calendar access has expired. Please link your calendar again.")
        except CalendarError:
            logger.exception("Calendar %s failed", action)
            self.notices.add(f"Could not {action} the Google Calendar event.")
        return False, None

    def _payload(self, task) -> dict:
        return event_payload(task, self.settings.calendar_event_minutes)

    async def _resync_event(self, calendar: Optional[CalendarClient], task: Task):
        """Push a changed task to its existing calendar event, if it has one."""
        if calendar and task.due_date and task.google_calendar_event_id:
            await self._calendar_call(
                "update",
                calendar.update_event(task.google_calendar_event_id, self._payload(task)),
            )

    async def _new_task_with_event(self, calendar: Optional[CalendarClient], new_task: NewTask) -> NewTask:
        """Create the calendar event before the task is persisted; the id is kept on success."""
        if calendar and new_task.due_date:
            ok, event_id = await self._calendar_call("create", calendar.create_event(self._payload(new_task)))
            if ok:
                return new_task.model_copy(update={"google_calendar_event_id": event_id})
        return new_task

    async def _set_status(self, task: Task, status: TaskStatus) -> Optional[Task]:
        calendar = self.calendar
        fields: dict = {"status": status}
        inserts = []
        if status == "completed":
            following = next_occurrence(task)
            if following is not None:
                inserts.append(following)
                # This instance must never seed another occurrence
                fields["recurrence_rule"] = "none"

        updated = task.model_copy(update=fields)
        candidate = [updated if t.id == task.id else t for t in self._tasks]
        created = await self._commit(
            candidate,
            inserts=inserts,
            updates={task.id: fields},
            failure_notice="Could not update the task status.",
        )
        if created is None:
            return None
        if created:
            logger.info("Task %s recurred as %s due %s", task.id, created[0].id, created[0].due_date)
        await self._resync_event(calendar, updated)
        return updated

    # ---- operations ----

    async def add_task(
        self,
        text: str,
        tags: Iterable[str] = (),
        due_date=None,
        is_urgent: bool = False,
        recurrence_rule: str = "none",
    ) -> Optional[Task]:
        text = (text or "").strip()
        if not text:
            return None
        if self._remaining_quota() == 0:
            self._quota_notice()
            return None

        calendar = self.calendar
        new_task = NewTask(
            text=text,
            due_date=due_date,
            hashtags=normalize_tags(list(tags)),
            is_urgent=is_urgent,
            recurrence_rule=recurrence_rule if due_date else "none",
        )
        new_task = await self._new_task_with_event(calendar, new_task)

        created = await self._commit(self._tasks, inserts=[new_task], failure_notice="Could not add the task.")
        if not created:
            return None
        logger.debug("Added task %s", created[0].id)
        return created[0]

    async def add_tasks_batch(self, items: Iterable[TaskCreate]) -> list[Task]:
        items = [item for item in items if item.text.strip()]
        if not items:
            return []

        remaining = self._remaining_quota()
        if remaining is not None and len(items) > remaining:
            self._quota_notice()
            items = items[:remaining]
            if not items:
                return []

        calendar = self.calendar
        new_tasks = []
        for item in items:
            new_task = NewTask(
                text=item.text.strip(),
                due_date=item.due_date,
                hashtags=normalize_tags(item.tags),
                is_urgent=item.is_urgent,
                recurrence_rule=item.recurrence_rule if item.due_date else "none",
            )
            new_tasks.append(await self._new_task_with_event(calendar, new_task))

        created = await self._commit(self._tasks, inserts=new_tasks, failure_notice="Could not add the tasks.")
        return created or []

    async def add_subtasks_batch(self, parent_id: str, texts: Iterable[str]) -> list[Task]:
        parent = self.get(parent_id)
        texts = [t.strip() for t in texts if t and t.strip()]
        if not texts:
            return []

        remaining = self._remaining_quota()
        if remaining is not None and len(texts) > remaining:
            self._quota_notice()
            texts = texts[:remaining]
            if not texts:
                return []

        new_tasks = [NewTask(text=text, parent_id=parent.id) for text in texts]
        created = await self._commit(self._tasks, inserts=new_tasks, failure_notice="Could not add the subtasks.")
        return created or []

    async def apply_template(
        self,
        template: TaskTemplate,
        due_date=None,
        tags: Iterable[str] = (),
        is_urgent: bool = False,
    ) -> list[Task]:
        """
        Create a parent task named after the template with one subtask per template item.
        Returns the created tasks, parent first; empty if the parent could not be added.
        """
        parents = await self.add_tasks_batch(
            [TaskCreate(text=template.name, tags=list(tags), due_date=due_date, is_urgent=is_urgent)]
        )
        if not parents:
            return []
        subtasks = await self.add_subtasks_batch(parents[0].id, [s.text for s in template.subtasks])
        logger.info("Applied template %s as task %s with %d subtasks", template.id, parents[0].id, len(subtasks))
        return parents + subtasks

    async def update_task_text(self, task_id: str, new_text: str) -> Optional[Task]:
        async with self._lock(task_id):
            calendar = self.calendar
            task = self.get(task_id)
            new_text = (new_text or "").strip()
            if not new_text or new_text == task.text:
                return task
            updated = await self._apply_update(task, {"text": new_text}, "Could not update the task.")
            if updated:
                await self._resync_event(calendar, updated)
            return updated

    async def update_task_note(self, task_id: str, new_note: Optional[str]) -> Optional[Task]:
        async with self._lock(task_id):
            calendar = self.calendar
            task = self.get(task_id)
            new_note = (new_note or "").strip() or None
            if new_note == task.note:
                return task
            updated = await self._apply_update(task, {"note": new_note}, "Could not update the note.")
            if updated:
                await self._resync_event(calendar, updated)
            return updated

    async def toggle_task(self, task_id: str) -> Optional[Task]:
        async with self._lock(task_id):
            task = self.get(task_id)
            new_status = "todo" if task.status == "completed" else "completed"
            return await self._set_status(task, new_status)

    async def update_task_status(self, task_id: str, status: TaskStatus) -> Optional[Task]:
        async with self._lock(task_id):
            task = self.get(task_id)
            if task.status == status:
                return task
            return await self._set_status(task, status)

    async def toggle_task_urgency(self, task_id: str) -> Optional[Task]:
        async with self._lock(task_id):
            task = self.get(task_id)
            return await self._apply_update(task, {"is_urgent": not task.is_urgent}, "Could not update the task.")

    async def update_task_due_date(self, task_id: str, new_due_date) -> Optional[Task]:
        async with self._lock(task_id):
            calendar = self.calendar
            task = self.get(task_id)
            event_id = task.google_calendar_event_id
            fields: dict = {"due_date": new_due_date, "reminder_sent": False}

            if new_due_date is None:
                fields["recurrence_rule"] = "none"
                if event_id:
                    if calendar:
                        await self._calendar_call("delete", calendar.delete_event(event_id))
                    fields["google_calendar_event_id"] = None
            elif calendar:
                moved = task.model_copy(update={"due_date": new_due_date})
                if event_id:
                    await self._calendar_call("update", calendar.update_event(event_id, self._payload(moved)))
                else:
                    ok, new_event_id = await self._calendar_call("create", calendar.create_event(self._payload(moved)))
                    if ok:
                        fields["google_calendar_event_id"] = new_event_id

            return await self._apply_update(task, fields, "Could not update the due date.")

    async def delete_task(self, task_id: str) -> bool:
        async with self._lock(task_id):
            calendar = self.calendar
            root = self.get(task_id)
            doomed = {root.id: root}
            # Collect descendants; the backend does not cascade
            frontier = [root.id]
            while frontier:
                parent = frontier.pop()
                for task in self._tasks:
                    if task.parent_id == parent and task.id not in doomed:
                        doomed[task.id] = task
                        frontier.append(task.id)

            if calendar:
                for task in doomed.values():
                    if task.google_calendar_event_id:
                        await self._calendar_call("delete", calendar.delete_event(task.google_calendar_event_id))

            candidate = [t for t in self._tasks if t.id not in doomed]
            created = await self._commit(candidate, deletes=list(doomed), failure_notice="Could not delete the task.")
            if created is None:
                return False
            for doomed_id in doomed:
                self._locks.pop(doomed_id, None)
            logger.info("Deleted task %s with %d subtasks", task_id, len(doomed) - 1)
            return True

    async def mark_reminder_sent(self, task_id: str) -> Optional[Task]:
        if self.is_guest:
            return None
        async with self._lock(task_id):
            task = self.get(task_id)
            if task.reminder_sent:
                return task
            return await self._apply_update(task, {"reminder_sent": True}, "Could not save the reminder state.")

    async def sync_existing_tasks_to_calendar(self) -> int:
        """Create calendar events for every dated task that has none. Returns the number synced."""
        calendar = self.calendar
        if not calendar:
            self.notices.add("Link Google Calendar first to sync your tasks.")
            return 0

        pending = [t for t in self._tasks if t.due_date and not t.google_calendar_event_id]
        if not pending:
            self.notices.add("All dated tasks are already on your calendar.")
            return 0

        updates: dict[str, dict] = {}
        auth_failed = False
        for task in pending:
            try:
                event_id = await calendar.create_event(self._payload(task))
            except CalendarAuthError:
                logger.warning("Calendar authorization failed for task %s", task.id)
                auth_failed = True
                continue
            except CalendarError:
                logger.exception("Calendar create failed for task %s", task.id)
                continue
            updates[task.id] = {"google_calendar_event_id": event_id}

        if auth_failed:
            self.notices.add("Google Calendar access has expired. Please link your calendar again.")
        if not updates:
            self.notices.add("No tasks could be synced to Google Calendar.")
            return 0

        candidate = [t.model_copy(update=updates[t.id]) if t.id in updates else t for t in self._tasks]
        created = await self._commit(candidate, updates=updates, failure_notice="Could not save calendar links.")
        if created is None:
            return 0
        self.notices.add(f"Synced {len(updates)} of {len(pending)} tasks to Google Calendar.")
        return len(updates)
