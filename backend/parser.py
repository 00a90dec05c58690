"""
Natural-language task parsing with Claude.

The parser only builds prompts and validates what comes back. Date resolution
(relative dates, year roll-over, timezone conversion) is done by the model
following the prompt; nothing here does date math beyond reading the ISO string.
"""
import json
import logging
from datetime import datetime
from typing import Any, Callable, Optional

import anthropic

from config import Settings
from dates import parse_iso, to_iso, utcnow
from errors import ApiKeyError, TaskParseError
from models import ParsedTask
from prompts import (
    BATCH_TASKS_PROMPT,
    IMAGE_SOURCE,
    PARSING_RULES,
    SINGLE_TASK_PROMPT,
    SUBTASKS_PROMPT,
    TEXT_SOURCE,
)

logger = logging.getLogger(__name__)

REQUIRED_KEYS = ("content", "dueDate", "tags", "isUrgent")


def strip_code_fence(text: str) -> str:
    """Remove a surrounding ```json ... ``` block if the model added one."""
    text = text.strip()
    if text.startswith("```"):
        lines = text.split("\n")
        lines = lines[1:]  # Remove first line (```json)
        if lines and lines[-1].strip() == "```":
            lines = lines[:-1]  # Remove last line (```)
        text = "\n".join(lines)
    return text.strip()


def load_json(text: str) -> Any:
    try:
        return json.loads(strip_code_fence(text))
    except json.JSONDecodeError as e:
        raise TaskParseError("Failed to parse AI response") from e


def validate_task(data: Any) -> ParsedTask:
    """Check a parsed object has every required key and convert it to a ParsedTask."""
    if not isinstance(data, dict):
        raise TaskParseError("AI response is not an object")
    data = dict(data)
    if "content" not in data and "text" in data:
        data["content"] = data.pop("text")
    missing = [key for key in REQUIRED_KEYS if key not in data]
    if missing:
        raise TaskParseError(f"AI response is missing {', '.join(missing)}")

    content = data["content"]
    if not isinstance(content, str) or not content.strip():
        raise TaskParseError("AI response has no task content")
    tags = data["tags"] or []
    if not isinstance(tags, list):
        raise TaskParseError("AI response tags must be a list")

    is_urgent = data["isUrgent"]
    if not isinstance(is_urgent, bool):
        raise TaskParseError("AI response isUrgent must be a boolean")

    due_raw = data["dueDate"]
    due_date = parse_iso(due_raw) if isinstance(due_raw, str) else None
    if due_raw and due_date is None:
        logger.warning("Ignoring unparseable dueDate from AI: %r", due_raw)

    return ParsedTask(
        content=content.strip(),
        due_date=due_date,
        tags=[str(tag) for tag in tags],
        is_urgent=is_urgent,
    )


class TaskParser:
    def __init__(
        self,
        settings: Settings,
        client: Optional[Any] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.settings = settings
        self._client = client
        self.clock = clock

    @property
    def client(self):
        if self._client is None:
            if not self.settings.has_api_key:
                raise ApiKeyError("API key not configured")
            self._client = anthropic.AsyncAnthropic(api_key=self.settings.anthropic_api_key)
        return self._client

    # ---- prompts ----

    def rules(self, now: datetime) -> str:
        offset = self.settings.user_utc_offset_hours
        return PARSING_RULES.format(
            now=to_iso(now),
            year=now.year,
            next_year=now.year + 1,
            timezone=self.settings.user_timezone_name,
            offset=f"{offset:+d}",
            default_hour=f"{self.settings.default_due_hour:02d}",
        )

    def single_task_prompt(self, now: datetime) -> str:
        return SINGLE_TASK_PROMPT.format(rules=self.rules(now))

    def batch_prompt(self, now: datetime, source: str) -> str:
        return BATCH_TASKS_PROMPT.format(rules=self.rules(now), source=source)

    # ---- transport ----

    async def _complete(self, system: str, content, max_tokens: int = 512) -> str:
        try:
            response = await self.client.messages.create(
                model=self.settings.model,
                max_tokens=max_tokens,
                system=system,
                messages=[{"role": "user", "content": content}],
            )
        except (anthropic.AuthenticationError, anthropic.PermissionDeniedError) as e:
            raise ApiKeyError(str(e)) from e
        except anthropic.APIError as e:
            raise TaskParseError(f"API error: {e}") from e

        text = "".join(
            block.text for block in response.content if getattr(block, "type", None) == "text"
        )
        logger.debug("Claude response: %s", text)
        if not text.strip():
            raise TaskParseError("AI returned an empty response")
        return text

    # ---- operations ----

    async def parse_task(self, text: str) -> ParsedTask:
        """Parse one free-text task."""
        if not text or not text.strip():
            raise TaskParseError("Nothing to parse")
        system = self.single_task_prompt(self.clock())
        raw = await self._complete(system, f'User input: "{text.strip()}"')
        return validate_task(load_json(raw))

    async def parse_tasks(
        self,
        text: Optional[str] = None,
        image_base64: Optional[str] = None,
        image_mime_type: Optional[str] = None,
    ) -> list[ParsedTask]:
        """Extract any number of tasks from a block of text or an image."""
        now = self.clock()
        if image_base64:
            system = self.batch_prompt(now, IMAGE_SOURCE)
            content = [
                {
                    "type": "image",
                    "source": {
                        "type": "base64",
                        "media_type": image_mime_type or "image/png",
                        "data": image_base64,
                    },
                },
                {"type": "text", "text": "Extract the tasks from this image."},
            ]
        elif text and text.strip():
            system = self.batch_prompt(now, TEXT_SOURCE)
            content = f'User input:\n"{text.strip()}"'
        else:
            raise TaskParseError("Nothing to parse")

        data = load_json(await self._complete(system, content, max_tokens=2048))
        if not isinstance(data, list):
            raise TaskParseError("AI response is not a list of tasks")
        return [validate_task(item) for item in data]

    async def generate_subtasks(self, task_text: str) -> list[str]:
        """Ask the model to break a task into 3-5 sub-tasks."""
        prompt = SUBTASKS_PROMPT.format(task=task_text.strip())
        data = load_json(await self._complete("Respond with JSON only.", prompt))
        if not isinstance(data, list) or not all(isinstance(item, str) for item in data):
            raise TaskParseError("AI returned data in an unexpected format")
        return [item.strip() for item in data if item.strip()]
