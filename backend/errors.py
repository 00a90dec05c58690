class PtodoError(Exception):
    """Base class for application errors."""


class StorageError(PtodoError):
    """A durable write or read against the task store failed."""


class TaskNotFound(PtodoError):
    def __init__(self, task_id: str):
        super().__init__(f"Task not found: {task_id}")
        self.task_id = task_id


class TemplateNotFound(PtodoError):
    def __init__(self, template_id: str):
        super().__init__(f"Template not found: {template_id}")
        self.template_id = template_id


class CalendarError(PtodoError):
    """A calendar create/update/delete call failed."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class CalendarAuthError(CalendarError):
    """The calendar rejected the bearer token; the user must relink."""


class ParserError(PtodoError):
    pass


class ApiKeyError(ParserError):
    """The LLM provider rejected the API key (or none is configured)."""


class TaskParseError(ParserError):
    """The LLM call failed or returned something that is not a valid task."""
