"""
Overdue-task reminders.

The scanner is a polling loop that runs as its own asyncio task. It only ever sees
copies of the task list pushed to it with post(), and it reports every overdue,
not-yet-reminded task on its events queue once per tick. It never changes a task:
the consumer shows the notification and marks the reminder as sent, and that
persisted flag is what stops the next tick from reporting the task again.
"""
import asyncio
import logging
from datetime import datetime
from typing import Callable, Iterable, Optional

from dates import to_utc, utcnow
from errors import TaskNotFound
from models import Task

logger = logging.getLogger(__name__)

CHECK_INTERVAL_SECONDS = 5.0


def is_overdue(task: Task, now: datetime) -> bool:
    return (
        task.status != "completed"
        and not task.reminder_sent
        and task.due_date is not None
        and to_utc(task.due_date) < to_utc(now)
    )


def find_overdue(tasks: Iterable[Task], now: datetime) -> list[Task]:
    return [task for task in tasks if is_overdue(task, now)]


def format_reminder(task: Task) -> str:
    """Notification body: the task text, then its tags on a second line."""
    if task.hashtags:
        return f"{task.text}\n" + " ".join(f"#{tag}" for tag in task.hashtags)
    return task.text


class ReminderScanner:
    def __init__(
        self,
        interval_seconds: float = CHECK_INTERVAL_SECONDS,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.interval_seconds = max(0.01, float(interval_seconds))
        self.clock = clock
        self.events: asyncio.Queue[Task] = asyncio.Queue()
        self._snapshot: list[Task] = []
        self._runner: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._runner is not None and not self._runner.done()

    def post(self, tasks: Iterable[Task]):
        """Replace the scanner's view with a copy of tasks."""
        self._snapshot = [task.model_copy(deep=True) for task in tasks]

    def scan_once(self) -> list[Task]:
        overdue = find_overdue(self._snapshot, self.clock())
        for task in overdue:
            self.events.put_nowait(task)
        return overdue

    async def run(self):
        """Scan every interval_seconds until cancelled."""
        while True:
            try:
                overdue = self.scan_once()
                if overdue:
                    logger.debug("Reminder scan found %d overdue tasks", len(overdue))
            except Exception:
                logger.exception("Reminder scan failed")
            await asyncio.sleep(self.interval_seconds)

    def start(self):
        """Start the loop on the running event loop."""
        if not self.running:
            self._runner = asyncio.create_task(self.run())

    async def stop(self):
        if self._runner is None:
            return
        self._runner.cancel()
        try:
            await self._runner
        except asyncio.CancelledError:
            pass
        self._runner = None


async def deliver_reminders(scanner: ReminderScanner, store, notify: Callable[[Task, str], None]):
    """
    Consume scanner events: notify once, then persist reminder_sent through the store.
    Runs until cancelled.
    """
    while True:
        event = await scanner.events.get()
        try:
            current = store.get(event.id)
        except TaskNotFound:
            continue
        # A queued duplicate from an earlier tick
        if current.reminder_sent:
            continue
        try:
            notify(current, format_reminder(current))
            await store.mark_reminder_sent(current.id)
        except Exception:
            logger.exception("Delivering reminder for task %s failed", current.id)
