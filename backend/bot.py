"""
Telegram bot commands.

Every inbound update gets exactly one reply. A chat must first be linked to a
PTODO user with `/start <user id>`; after that the chat can add tasks
(parsed by the AI parser) and query its schedule and task lists.
"""
import asyncio
import logging
from datetime import datetime, time, timedelta, timezone
from typing import Callable, Optional

import httpx

import database
from config import Settings
from dates import to_utc, utcnow
from errors import ApiKeyError, TaskParseError
from models import Task, TelegramCallbackQuery, TelegramMessage, TelegramUpdate
from parser import TaskParser

logger = logging.getLogger(__name__)

TELEGRAM_API_BASE = "https://api.telegram.org"

MAIN_MENU_KEYBOARD = {
    "inline_keyboard": [
        [{"text": "➕ Add a task", "callback_data": "add_task_prompt"}],
        [{"text": "📋 Task lists", "callback_data": "list_tasks_menu"}],
        [{"text": "📅 Schedule", "callback_data": "schedule_menu"}],
        [{"text": "💡 Help", "callback_data": "show_help"}],
    ]
}

LIST_MENU_KEYBOARD = {
    "inline_keyboard": [
        [
            {"text": "⚪️ To do", "callback_data": "list_todo"},
            {"text": "🔵 In progress", "callback_data": "list_inprogress"},
        ],
        [
            {"text": "🔥 Urgent", "callback_data": "list_urgent"},
            {"text": "✅ Completed", "callback_data": "list_completed"},
        ],
        [{"text": "⬅️ Back to main menu", "callback_data": "main_menu"}],
    ]
}

SCHEDULE_MENU_KEYBOARD = {
    "inline_keyboard": [
        [
            {"text": "Today", "callback_data": "schedule_today"},
            {"text": "Tomorrow", "callback_data": "schedule_tomorrow"},
        ],
        [{"text": "⬅️ Back to main menu", "callback_data": "main_menu"}],
    ]
}

LIST_FILTERS = {
    # filter: (title, statuses, urgent, limit)
    "all": ("All open tasks", ("todo", "inprogress"), None, None),
    "todo": ("To do", ("todo",), None, None),
    "inprogress": ("In progress", ("inprogress",), None, None),
    "completed": ("5 most recently completed tasks", ("completed",), None, 5),
    "urgent": ("Urgent tasks", None, True, None),
}

GREETING = "Hi! What can I do for you?"
LINK_OK = "🎉 Connected! I'm ready for your commands."
NOT_LINKED = "This Telegram account is not linked yet. Open Settings in the PTODO app to get your link command."
ADD_USAGE = "Please give the task text. Example: `/add Buy milk`"
ADD_PROMPT = "Send your task starting with `/add`.\n*Example:* `/add Meet the client at 2pm tomorrow #meeting`"
UNKNOWN_COMMAND = "Sorry, I don't understand that command. Use /menu or /help to see what I can do."
APOLOGY = "Sorry, something went wrong. Please try again later."
PARSE_FAILED = "Sorry, I couldn't understand that task. Please try rephrasing it."
AI_UNAVAILABLE = "Sorry, the AI assistant is not available right now."


def help_text() -> str:
    return (
        "*Available commands:*\n\n"
        "*/menu* - Show the main menu with buttons.\n\n"
        "*/add [text]* - Quickly add a task. AI works out the date, time and tags.\n"
        "*Example:* `/add Marketing sync 9am tomorrow #meeting`\n\n"
        "*/list [filter]* - List tasks.\n"
        "*Filters:* `all`, `todo`, `inprogress`, `completed`, `urgent`\n"
        "*Example:* `/list urgent`\n\n"
        "*/schedule [day]* - Show your schedule.\n"
        "*Day:* `today` (default), `tomorrow`\n"
        "*Example:* `/schedule tomorrow`"
    )


def format_task_list(tasks: list[Task], title: str) -> str:
    if not tasks:
        return "You have no tasks in this list."
    lines = [f"*{title}*", ""]
    for task in tasks:
        icon = {"inprogress": "🔵", "completed": "✅"}.get(task.status, "⚪️")
        urgent = "🔥 " if task.is_urgent and task.status != "completed" else ""
        lines.append(f"{icon} {urgent}{task.text}")
    return "\n".join(lines)


def day_window(day: str, now: datetime) -> tuple[datetime, datetime]:
    """UTC [start, end) of today or tomorrow."""
    start = datetime.combine(to_utc(now).date(), time.min, tzinfo=timezone.utc)
    if day == "tomorrow":
        start += timedelta(days=1)
    return start, start + timedelta(days=1)


class TelegramClient:
    """Outbound Bot API calls over httpx."""

    def __init__(self, token: str, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = f"{TELEGRAM_API_BASE}/bot{token}"
        self._transport = transport

    async def _call(self, method: str, body: dict) -> dict:
        async with httpx.AsyncClient(transport=self._transport) as client:
            response = await client.post(f"{self.base_url}/{method}", json=body)
            response.raise_for_status()
            return response.json()

    async def send_message(self, chat_id: int, text: str, reply_markup: Optional[dict] = None):
        body = {"chat_id": chat_id, "text": text, "parse_mode": "Markdown"}
        if reply_markup:
            body["reply_markup"] = reply_markup
        await self._call("sendMessage", body)

    async def edit_message(self, chat_id: int, message_id: int, text: str, reply_markup: Optional[dict] = None):
        body = {"chat_id": chat_id, "message_id": message_id, "text": text, "parse_mode": "Markdown"}
        if reply_markup:
            body["reply_markup"] = reply_markup
        await self._call("editMessageText", body)

    async def answer_callback_query(self, callback_query_id: str):
        await self._call("answerCallbackQuery", {"callback_query_id": callback_query_id})


class BotDispatcher:
    def __init__(
        self,
        settings: Settings,
        messenger,
        parser: TaskParser,
        stores: Callable,
        clock: Callable[[], datetime] = utcnow,
    ):
        """
        messenger: TelegramClient-like (send_message, edit_message, answer_callback_query)
        stores: async user_id -> TaskStore, used for task writes
        """
        self.settings = settings
        self.messenger = messenger
        self.parser = parser
        self.stores = stores
        self.clock = clock

    async def handle_update(self, update: TelegramUpdate) -> int:
        """Process one webhook update and return the HTTP status for the transport."""
        chat_id = None
        try:
            if update.callback_query and update.callback_query.message:
                chat_id = update.callback_query.message.chat.id
                await self.handle_callback(update.callback_query)
            elif update.message and update.message.text:
                chat_id = update.message.chat.id
                await self.handle_text(update.message)
            return 200
        except Exception:
            logger.exception("Webhook handling failed chat=%s", chat_id)
            if chat_id is not None:
                try:
                    await self.messenger.send_message(chat_id, APOLOGY)
                except Exception:
                    logger.exception("Could not send apology to chat=%s", chat_id)
            return 500

    async def reply(self, chat_id: int, text: str, reply_markup: Optional[dict] = None):
        await self.messenger.send_message(chat_id, text, reply_markup)

    async def handle_text(self, message: TelegramMessage):
        chat_id = message.chat.id
        text = (message.text or "").strip()
        command, _, arg = text.partition(" ")
        command = command.split("@", 1)[0].lower()
        arg = arg.strip()

        if command == "/start" and arg:
            user_id = arg.split()[0]
            await asyncio.to_thread(database.link_telegram_chat, user_id, chat_id, message.chat.username or "")
            await self.reply(chat_id, LINK_OK, MAIN_MENU_KEYBOARD)
            return

        user_id = await asyncio.to_thread(database.find_user_by_chat, chat_id)
        if user_id is None:
            await self.reply(chat_id, NOT_LINKED)
            return

        if command in ("/start", "/menu"):
            await self.reply(chat_id, GREETING, MAIN_MENU_KEYBOARD)
        elif command == "/add":
            await self.add_task(chat_id, user_id, arg)
        elif command == "/schedule":
            day = "tomorrow" if "tomorrow" in arg.lower() else "today"
            await self.reply(chat_id, await self.schedule_text(user_id, day))
        elif command == "/list":
            task_filter = arg.split()[0].lower() if arg else "all"
            await self.reply(chat_id, await self.list_text(user_id, task_filter))
        elif command == "/help":
            await self.reply(chat_id, help_text())
        else:
            await self.reply(chat_id, UNKNOWN_COMMAND)

    async def handle_callback(self, query: TelegramCallbackQuery):
        message = query.message
        chat_id = message.chat.id
        data = query.data or ""
        await self.messenger.answer_callback_query(query.id)

        user_id = await asyncio.to_thread(database.find_user_by_chat, chat_id)
        if user_id is None:
            await self.reply(chat_id, NOT_LINKED)
            return

        if data == "main_menu":
            await self.messenger.edit_message(chat_id, message.message_id, GREETING, MAIN_MENU_KEYBOARD)
        elif data == "list_tasks_menu":
            await self.messenger.edit_message(chat_id, message.message_id, "Which list would you like to see?", LIST_MENU_KEYBOARD)
        elif data == "schedule_menu":
            await self.messenger.edit_message(chat_id, message.message_id, "Which day?", SCHEDULE_MENU_KEYBOARD)
        elif data == "add_task_prompt":
            await self.reply(chat_id, ADD_PROMPT)
        elif data == "show_help":
            await self.reply(chat_id, help_text())
        elif data in ("schedule_today", "schedule_tomorrow"):
            await self.reply(chat_id, await self.schedule_text(user_id, data.split("_", 1)[1]))
        elif data.startswith("list_") and data[5:] in LIST_FILTERS:
            await self.reply(chat_id, await self.list_text(user_id, data[5:]))
        else:
            await self.reply(chat_id, UNKNOWN_COMMAND)

    async def add_task(self, chat_id: int, user_id: str, text: str):
        if not text:
            await self.reply(chat_id, ADD_USAGE)
            return
        try:
            parsed = await self.parser.parse_task(text)
        except ApiKeyError:
            logger.error("Bot /add failed: AI API key rejected")
            await self.reply(chat_id, AI_UNAVAILABLE)
            return
        except TaskParseError:
            logger.exception("Bot /add could not parse %r", text)
            await self.reply(chat_id, PARSE_FAILED)
            return

        store = await self.stores(user_id)
        task = await store.add_task(parsed.content, parsed.tags, parsed.due_date, parsed.is_urgent)
        if task is None:
            await self.reply(chat_id, APOLOGY)
            return
        await self.reply(chat_id, f'✅ Added a new task: "{parsed.content}"')

    async def schedule_text(self, user_id: str, day: str) -> str:
        start, end = day_window(day, self.clock())
        due = await asyncio.to_thread(database.get_tasks_due_between, user_id, start, end)
        tasks = [t for t in due if t.status != "completed"]
        label = "tomorrow" if day == "tomorrow" else "today"
        if not tasks:
            return f"You have nothing scheduled for {label}."

        tz = self.settings.user_timezone
        lines = [f"*Your schedule for {label}:*", ""]
        for task in tasks:
            local = to_utc(task.due_date).astimezone(tz)
            lines.append(f"- *{local:%H:%M}*: {task.text}")
        return "\n".join(lines)

    async def list_text(self, user_id: str, task_filter: str) -> str:
        title, statuses, urgent, limit = LIST_FILTERS.get(task_filter, LIST_FILTERS["all"])
        tasks = await asyncio.to_thread(
            database.query_tasks, user_id, statuses=statuses, is_urgent=urgent, limit=limit
        )
        return format_task_list(tasks, title)
