import asyncio
import logging
from collections import deque
from contextlib import asynccontextmanager
from typing import Callable, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

import database
from bot import BotDispatcher, TelegramClient
from calendar_sync import GoogleCalendarClient
from config import Settings
from database import DatabaseBackend
from errors import ApiKeyError, StorageError, TaskNotFound, TaskParseError, TemplateNotFound
from guest_storage import GuestBackend
from log_setup import setup_logging
from models import (
    ParsedTask,
    ParseRequest,
    SubtasksCreate,
    Task,
    TaskCreate,
    TaskDueDateUpdate,
    TaskListResponse,
    TaskNoteUpdate,
    TaskStatusUpdate,
    TaskTemplate,
    TaskTextUpdate,
    TelegramUpdate,
    TemplateApply,
    TemplateCreate,
    TemplateUpdate,
)
from parser import TaskParser
from reminders import ReminderScanner, deliver_reminders
from store import Notices, TaskStore

logger = logging.getLogger(__name__)


class StoreRegistry:
    """
    One TaskStore per signed-in user or guest session, loaded on first use.
    Each signed-in user also gets a reminder scanner fed from the store's view;
    delivered reminders wait in `pending` (newest `pending_reminder_limit` kept)
    until the client fetches them.
    """

    def __init__(self, settings: Settings, calendar_factory: Callable[[str], object] = GoogleCalendarClient):
        self.settings = settings
        self.calendar_factory = calendar_factory
        self._stores: dict[tuple[str, str], TaskStore] = {}
        self._scanners: dict[str, ReminderScanner] = {}
        self._consumers: list[asyncio.Task] = []
        self.pending: dict[str, deque] = {}

    async def for_user(self, user_id: str) -> TaskStore:
        key = ("user", user_id)
        store = self._stores.get(key)
        if store is None:
            scanner = ReminderScanner(self.settings.reminder_interval_seconds)
            store = TaskStore(DatabaseBackend(user_id), self.settings, notices=Notices(), on_change=scanner.post)
            await store.refresh()
            # Another request may have loaded the same user meanwhile
            if key in self._stores:
                return self._stores[key]
            self._stores[key] = store
            self._scanners[user_id] = scanner
            self._start_reminders(user_id, scanner, store)
        return store

    async def for_guest(self, guest_id: str) -> TaskStore:
        key = ("guest", guest_id)
        store = self._stores.get(key)
        if store is None:
            store = TaskStore(GuestBackend(guest_id, self.settings.guest_dir), self.settings, notices=Notices())
            await store.refresh()
            store = self._stores.setdefault(key, store)
        return store

    def _start_reminders(self, user_id: str, scanner: ReminderScanner, store: TaskStore):
        pending = self.pending.setdefault(user_id, deque(maxlen=self.settings.pending_reminder_limit))

        def notify(task: Task, body: str):
            logger.info("Reminder for user=%s task=%s", user_id, task.id)
            pending.append({"task_id": task.id, "title": "Task reminder", "body": body})

        scanner.start()
        self._consumers.append(asyncio.create_task(deliver_reminders(scanner, store, notify)))

    def attach_calendar(self, store: TaskStore, token: Optional[str]):
        if store.is_guest:
            return
        store.calendar = self.calendar_factory(token) if token else None

    def drain_reminders(self, user_id: str) -> list[dict]:
        pending = self.pending.get(user_id, [])
        drained = list(pending)
        pending.clear()
        return drained

    async def close(self):
        for consumer in self._consumers:
            consumer.cancel()
        for consumer in self._consumers:
            try:
                await consumer
            except asyncio.CancelledError:
                pass
        self._consumers.clear()
        for scanner in self._scanners.values():
            await scanner.stop()
        self._scanners.clear()
        self._stores.clear()


def create_app(
    settings: Optional[Settings] = None,
    parser: Optional[TaskParser] = None,
    messenger=None,
    calendar_factory: Callable[[str], object] = GoogleCalendarClient,
) -> FastAPI:
    settings = settings or Settings.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Startup
        setup_logging(settings.log_level)
        database.DATABASE_PATH = settings.database_path
        database.init_db()
        registry = StoreRegistry(settings, calendar_factory)
        app.state.registry = registry
        app.state.parser = parser or TaskParser(settings)
        telegram = messenger
        if telegram is None and settings.telegram_bot_token:
            telegram = TelegramClient(settings.telegram_bot_token)
        app.state.bot = (
            BotDispatcher(settings, telegram, app.state.parser, registry.for_user)
            if telegram is not None else None
        )
        logger.info("PTODO backend started db=%s", settings.database_path)
        yield
        # Shutdown
        await registry.close()

    app = FastAPI(lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(TaskNotFound)
    async def task_not_found_handler(_request: Request, exc: TaskNotFound):
        return JSONResponse(status_code=404, content={"detail": "Task not found"})

    @app.exception_handler(TemplateNotFound)
    async def template_not_found_handler(_request: Request, exc: TemplateNotFound):
        return JSONResponse(status_code=404, content={"detail": "Template not found"})

    @app.exception_handler(ApiKeyError)
    async def api_key_handler(_request: Request, exc: ApiKeyError):
        return JSONResponse(status_code=401, content={"detail": str(exc), "needs_new_key": True})

    @app.exception_handler(TaskParseError)
    async def parse_error_handler(_request: Request, exc: TaskParseError):
        return JSONResponse(status_code=422, content={"detail": str(exc)})

    @app.exception_handler(StorageError)
    async def storage_error_handler(_request: Request, exc: StorageError):
        logger.error("Storage unavailable: %s", exc)
        return JSONResponse(status_code=503, content={"detail": "Task storage is unavailable"})

    async def get_store(
        request: Request,
        x_user_id: Optional[str] = Header(default=None),
        x_guest_id: Optional[str] = Header(default=None),
        x_calendar_token: Optional[str] = Header(default=None),
    ) -> TaskStore:
        registry: StoreRegistry = request.app.state.registry
        if x_user_id:
            store = await registry.for_user(x_user_id)
        elif x_guest_id:
            store = await registry.for_guest(x_guest_id)
        else:
            raise HTTPException(status_code=401, detail="Missing X-User-Id or X-Guest-Id header")
        registry.attach_calendar(store, x_calendar_token)
        return store

    def require_user(x_user_id: Optional[str] = Header(default=None)) -> str:
        if not x_user_id:
            raise HTTPException(status_code=401, detail="Templates need a signed-in user (X-User-Id)")
        return x_user_id

    def task_list(store: TaskStore) -> TaskListResponse:
        return TaskListResponse(tasks=store.tasks, notices=store.notices.drain())

    @app.get("/tasks")
    async def get_tasks(store: TaskStore = Depends(get_store)) -> TaskListResponse:
        await store.refresh()
        return task_list(store)

    @app.post("/tasks")
    async def create_task(task_data: TaskCreate, store: TaskStore = Depends(get_store)) -> TaskListResponse:
        await store.add_task(
            task_data.text,
            task_data.tags,
            task_data.due_date,
            task_data.is_urgent,
            task_data.recurrence_rule,
        )
        return task_list(store)

    @app.post("/tasks/batch")
    async def create_tasks(items: list[TaskCreate], store: TaskStore = Depends(get_store)) -> TaskListResponse:
        await store.add_tasks_batch(items)
        return task_list(store)

    @app.post("/tasks/{task_id}/subtasks")
    async def create_subtasks(
        task_id: str, body: SubtasksCreate, store: TaskStore = Depends(get_store)
    ) -> TaskListResponse:
        await store.add_subtasks_batch(task_id, body.texts)
        return task_list(store)

    @app.post("/tasks/{task_id}/subtasks/generate")
    async def generate_subtasks(
        task_id: str, request: Request, store: TaskStore = Depends(get_store)
    ) -> TaskListResponse:
        task = store.get(task_id)
        texts = await request.app.state.parser.generate_subtasks(task.text)
        await store.add_subtasks_batch(task.id, texts)
        return task_list(store)

    @app.patch("/tasks/{task_id}/text")
    async def update_text(
        task_id: str, body: TaskTextUpdate, store: TaskStore = Depends(get_store)
    ) -> TaskListResponse:
        await store.update_task_text(task_id, body.text)
        return task_list(store)

    @app.patch("/tasks/{task_id}/note")
    async def update_note(
        task_id: str, body: TaskNoteUpdate, store: TaskStore = Depends(get_store)
    ) -> TaskListResponse:
        await store.update_task_note(task_id, body.note)
        return task_list(store)

    @app.patch("/tasks/{task_id}/status")
    async def update_status(
        task_id: str, body: TaskStatusUpdate, store: TaskStore = Depends(get_store)
    ) -> TaskListResponse:
        await store.update_task_status(task_id, body.status)
        return task_list(store)

    @app.patch("/tasks/{task_id}/due-date")
    async def update_due_date(
        task_id: str, body: TaskDueDateUpdate, store: TaskStore = Depends(get_store)
    ) -> TaskListResponse:
        await store.update_task_due_date(task_id, body.due_date)
        return task_list(store)

    @app.post("/tasks/{task_id}/toggle")
    async def toggle(task_id: str, store: TaskStore = Depends(get_store)) -> TaskListResponse:
        await store.toggle_task(task_id)
        return task_list(store)

    @app.post("/tasks/{task_id}/urgency")
    async def toggle_urgency(task_id: str, store: TaskStore = Depends(get_store)) -> TaskListResponse:
        await store.toggle_task_urgency(task_id)
        return task_list(store)

    @app.delete("/tasks/{task_id}")
    async def delete_task(task_id: str, store: TaskStore = Depends(get_store)) -> TaskListResponse:
        await store.delete_task(task_id)
        return task_list(store)

    @app.post("/tasks/{task_id}/reminder-sent")
    async def reminder_sent(task_id: str, store: TaskStore = Depends(get_store)) -> TaskListResponse:
        await store.mark_reminder_sent(task_id)
        return task_list(store)

    @app.post("/calendar/sync")
    async def calendar_sync(store: TaskStore = Depends(get_store)) -> dict:
        synced = await store.sync_existing_tasks_to_calendar()
        return {"synced": synced, **task_list(store).model_dump(mode="json")}

    @app.get("/templates")
    def list_templates(user_id: str = Depends(require_user)) -> list[TaskTemplate]:
        return database.get_templates_for_user(user_id)

    @app.post("/templates")
    def create_template(body: TemplateCreate, user_id: str = Depends(require_user)) -> TaskTemplate:
        return database.create_template(user_id, body.name, body.icon, body.subtasks)

    @app.patch("/templates/{template_id}")
    def update_template(
        template_id: str, body: TemplateUpdate, user_id: str = Depends(require_user)
    ) -> TaskTemplate:
        return database.update_template(user_id, template_id, body.name, body.icon, body.subtasks)

    @app.delete("/templates/{template_id}")
    def delete_template(template_id: str, user_id: str = Depends(require_user)) -> dict:
        database.delete_template(user_id, template_id)
        return {"deleted": template_id}

    @app.post("/templates/{template_id}/apply")
    async def apply_template(
        template_id: str,
        body: TemplateApply,
        user_id: str = Depends(require_user),
        store: TaskStore = Depends(get_store),
    ) -> TaskListResponse:
        template = await asyncio.to_thread(database.get_template, user_id, template_id)
        await store.apply_template(template, body.due_date, body.tags, body.is_urgent)
        return task_list(store)

    @app.get("/reminders")
    async def get_reminders(request: Request, x_user_id: Optional[str] = Header(default=None)) -> list[dict]:
        """Reminders delivered since the last call (signed-in users only)."""
        if not x_user_id:
            return []
        registry: StoreRegistry = request.app.state.registry
        await registry.for_user(x_user_id)
        return registry.drain_reminders(x_user_id)

    @app.post("/parse")
    async def parse(body: ParseRequest, request: Request) -> ParsedTask:
        return await request.app.state.parser.parse_task(body.text or "")

    @app.post("/parse/batch")
    async def parse_batch(body: ParseRequest, request: Request) -> list[ParsedTask]:
        return await request.app.state.parser.parse_tasks(
            body.text, body.image_base64, body.image_mime_type
        )

    @app.post("/webhook/telegram")
    async def telegram_webhook(update: TelegramUpdate, request: Request):
        bot: Optional[BotDispatcher] = request.app.state.bot
        if bot is None:
            logger.warning("Telegram update received but no bot token is configured")
            return JSONResponse(status_code=503, content={"detail": "Telegram bot is not configured"})
        status = await bot.handle_update(update)
        return JSONResponse(status_code=status, content={"ok": status == 200})

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
