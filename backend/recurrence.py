import calendar
from datetime import datetime, timedelta
from typing import Optional

from models import NewTask, Task


def add_months(value: datetime, months: int) -> datetime:
    """
    Calendar month arithmetic. The day is clamped to the length of the target month,
    so Jan 31 + 1 month is Feb 28 (or 29), and the time of day is kept.
    """
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def next_due_date(rule: str, current: datetime) -> Optional[datetime]:
    """
    Next occurrence for a recurrence rule, one unit after the current due date
    (never after "now"). Returns None for "none" or unknown rules.
    """
    if current is None:
        return None

    rule = (rule or "none").lower().strip()

    if rule == "daily":
        return current + timedelta(days=1)

    if rule == "weekly":
        return current + timedelta(weeks=1)

    if rule == "monthly":
        return add_months(current, 1)

    return None


def next_occurrence(task: Task) -> Optional[NewTask]:
    """
    Build the next instance of a recurring task.
    Text, tags, urgency and the rule carry over; the instance starts fresh
    (todo, reminder not sent, no parent, no calendar event, no note).
    """
    if task.recurrence_rule == "none" or task.due_date is None:
        return None

    due = next_due_date(task.recurrence_rule, task.due_date)
    if due is None:
        return None

    return NewTask(
        text=task.text,
        status="todo",
        due_date=due,
        hashtags=list(task.hashtags),
        is_urgent=task.is_urgent,
        recurrence_rule=task.recurrence_rule,
        reminder_sent=False,
    )
