from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, Field, field_validator

TaskStatus = Literal["todo", "inprogress", "completed"]
RecurrenceRule = Literal["none", "daily", "weekly", "monthly"]


def normalize_tags(tags: list[str]) -> list[str]:
    """Lowercase tags, strip a leading '#', drop blanks and duplicates (order kept)."""
    result: list[str] = []
    for tag in tags:
        tag = tag.strip().lstrip("#").strip().lower()
        if tag and tag not in result:
            result.append(tag)
    return result


class Task(BaseModel):
    id: str
    text: str
    status: TaskStatus = "todo"
    created_at: datetime
    due_date: Optional[datetime] = None
    hashtags: list[str] = Field(default_factory=list)
    is_urgent: bool = False
    recurrence_rule: RecurrenceRule = "none"
    reminder_sent: bool = False
    parent_id: Optional[str] = None
    note: Optional[str] = None
    google_calendar_event_id: Optional[str] = None
    project_id: Optional[str] = None
    user_id: Optional[str] = None
    assignee_ids: list[str] = Field(default_factory=list)


class NewTask(BaseModel):
    """Fields for a task that has not been written yet (id and created_at come from the store)."""
    text: str
    status: TaskStatus = "todo"
    due_date: Optional[datetime] = None
    hashtags: list[str] = Field(default_factory=list)
    is_urgent: bool = False
    recurrence_rule: RecurrenceRule = "none"
    reminder_sent: bool = False
    parent_id: Optional[str] = None
    note: Optional[str] = None
    google_calendar_event_id: Optional[str] = None
    project_id: Optional[str] = None


class TaskCreate(BaseModel):
    text: str
    tags: list[str] = Field(default_factory=list)
    due_date: Optional[datetime] = None
    is_urgent: bool = False
    recurrence_rule: RecurrenceRule = "none"


class TaskTextUpdate(BaseModel):
    text: str


class TaskNoteUpdate(BaseModel):
    note: Optional[str] = None


class TaskStatusUpdate(BaseModel):
    status: TaskStatus


class TaskDueDateUpdate(BaseModel):
    due_date: Optional[datetime] = None


class SubtasksCreate(BaseModel):
    texts: list[str]


class SubtaskTemplate(BaseModel):
    id: str
    text: str


class TaskTemplate(BaseModel):
    """A named checklist; applying it creates one parent task with these subtasks."""
    id: str
    user_id: str
    name: str
    icon: str = "📋"
    created_at: datetime
    subtasks: list[SubtaskTemplate] = Field(default_factory=list)


def _clean_texts(texts: list[str]) -> list[str]:
    return [t.strip() for t in texts if t and t.strip()]


class TemplateCreate(BaseModel):
    name: str
    icon: str = "📋"
    subtasks: list[str] = Field(default_factory=list)

    @field_validator("name")
    @classmethod
    def _name_required(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Template name cannot be empty")
        return value

    @field_validator("subtasks")
    @classmethod
    def _drop_blank_subtasks(cls, value: list[str]) -> list[str]:
        return _clean_texts(value)


class TemplateUpdate(BaseModel):
    name: Optional[str] = None
    icon: Optional[str] = None
    subtasks: Optional[list[str]] = None

    @field_validator("name")
    @classmethod
    def _name_not_blank(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and not value.strip():
            raise ValueError("Template name cannot be empty")
        return value.strip() if value is not None else None

    @field_validator("subtasks")
    @classmethod
    def _drop_blank_subtasks(cls, value: Optional[list[str]]) -> Optional[list[str]]:
        return _clean_texts(value) if value is not None else None


class TemplateApply(BaseModel):
    due_date: Optional[datetime] = None
    tags: list[str] = Field(default_factory=list)
    is_urgent: bool = False


class ParsedTask(BaseModel):
    """A task as returned by the AI parser, after validation."""
    content: str
    due_date: Optional[datetime] = None
    tags: list[str] = Field(default_factory=list)
    is_urgent: bool = False

    @field_validator("tags")
    @classmethod
    def _clean_tags(cls, value: list[str]) -> list[str]:
        return normalize_tags(value)


class ParseRequest(BaseModel):
    text: Optional[str] = None
    image_base64: Optional[str] = None  # raw base64, no data: prefix
    image_mime_type: Optional[str] = None


class TaskListResponse(BaseModel):
    tasks: list[Task]
    notices: list[str] = Field(default_factory=list)


# Telegram webhook envelope (only the fields the bot reads)
class TelegramChat(BaseModel):
    id: int
    username: Optional[str] = None


class TelegramMessage(BaseModel):
    message_id: Optional[int] = None
    chat: TelegramChat
    text: Optional[str] = None


class TelegramCallbackQuery(BaseModel):
    id: str
    data: Optional[str] = None
    message: Optional[TelegramMessage] = None


class TelegramUpdate(BaseModel):
    update_id: Optional[int] = None
    message: Optional[TelegramMessage] = None
    callback_query: Optional[TelegramCallbackQuery] = None
