"""
Tests for FastAPI endpoints in main.py.
Calendar, Claude and Telegram are faked (see conftest.app_client).
"""
import asyncio
import pytest
import sys
import os
import time
from datetime import datetime, timezone

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from database import get_tasks_for_user, link_telegram_chat, write_batch
from models import NewTask

USER = {"X-User-Id": "user-1"}
GUEST = {"X-Guest-Id": "guest-1"}


class TestTaskEndpoints:
    """Tests for /tasks endpoints."""

    def test_requires_identity(self, app_client):
        response = app_client.get("/tasks")
        assert response.status_code == 401

    def test_get_tasks_empty(self, app_client):
        """GET /tasks returns empty list when no tasks."""
        response = app_client.get("/tasks", headers=USER)
        assert response.status_code == 200
        assert response.json() == {"tasks": [], "notices": []}

    def test_get_tasks_sees_external_writes(self, test_db, app_client):
        app_client.get("/tasks", headers=USER)
        write_batch("user-1", [NewTask(text="Written elsewhere")])

        tasks = app_client.get("/tasks", headers=USER).json()["tasks"]
        assert [t["text"] for t in tasks] == ["Written elsewhere"]

    def test_create_task(self, test_db, app_client):
        response = app_client.post("/tasks", headers=USER, json={"text": "Buy milk", "tags": ["errand"]})

        assert response.status_code == 200
        (task,) = response.json()["tasks"]
        assert task["text"] == "Buy milk"
        assert task["status"] == "todo"
        assert task["hashtags"] == ["errand"]
        assert task["reminder_sent"] is False
        assert [t.text for t in get_tasks_for_user("user-1")] == ["Buy milk"]

    def test_create_with_calendar_token(self, app_client, fake_calendar):
        response = app_client.post(
            "/tasks",
            headers={**USER, "X-Calendar-Token": "tok"},
            json={"text": "Dentist", "due_date": "2025-05-02T08:00:00Z"},
        )
        (task,) = response.json()["tasks"]
        assert task["google_calendar_event_id"] == "evt-1"
        assert fake_calendar.created[0]["summary"] == "Dentist"

    def test_batch_and_subtasks(self, app_client):
        tasks = app_client.post("/tasks/batch", headers=USER, json=[{"text": "A"}, {"text": "B"}]).json()["tasks"]
        parent_id = tasks[0]["id"]

        response = app_client.post(f"/tasks/{parent_id}/subtasks", headers=USER, json={"texts": ["a1", "a2"]})

        subtasks = [t for t in response.json()["tasks"] if t["parent_id"] == parent_id]
        assert sorted(t["text"] for t in subtasks) == ["a1", "a2"]

    def test_update_text_note_status(self, app_client):
        task_id = app_client.post("/tasks", headers=USER, json={"text": "Draft"}).json()["tasks"][0]["id"]

        app_client.patch(f"/tasks/{task_id}/text", headers=USER, json={"text": "Final"})
        app_client.patch(f"/tasks/{task_id}/note", headers=USER, json={"note": "check typos"})
        response = app_client.patch(f"/tasks/{task_id}/status", headers=USER, json={"status": "inprogress"})

        (task,) = response.json()["tasks"]
        assert task["text"] == "Final"
        assert task["note"] == "check typos"
        assert task["status"] == "inprogress"

    def test_invalid_status(self, app_client):
        task_id = app_client.post("/tasks", headers=USER, json={"text": "Draft"}).json()["tasks"][0]["id"]
        response = app_client.patch(f"/tasks/{task_id}/status", headers=USER, json={"status": "blocked"})
        assert response.status_code == 422

    def test_toggle_recurring_task(self, app_client):
        task_id = app_client.post(
            "/tasks",
            headers=USER,
            json={"text": "Standup", "due_date": "2024-01-10T17:00:00Z", "recurrence_rule": "daily"},
        ).json()["tasks"][0]["id"]

        tasks = app_client.post(f"/tasks/{task_id}/toggle", headers=USER).json()["tasks"]

        assert len(tasks) == 2
        spawned = next(t for t in tasks if t["id"] != task_id)
        assert spawned["due_date"].startswith("2024-01-11T17:00:00")
        assert spawned["status"] == "todo"

    def test_urgency_and_due_date(self, app_client):
        task_id = app_client.post("/tasks", headers=USER, json={"text": "Undated"}).json()["tasks"][0]["id"]

        app_client.post(f"/tasks/{task_id}/urgency", headers=USER)
        response = app_client.patch(f"/tasks/{task_id}/due-date", headers=USER, json={"due_date": "2025-06-01T09:00:00Z"})

        (task,) = response.json()["tasks"]
        assert task["is_urgent"] is True
        assert task["due_date"].startswith("2025-06-01T09:00:00")

    def test_delete_cascades(self, app_client):
        parent_id = app_client.post("/tasks", headers=USER, json={"text": "Parent"}).json()["tasks"][0]["id"]
        app_client.post(f"/tasks/{parent_id}/subtasks", headers=USER, json={"texts": ["child"]})

        response = app_client.delete(f"/tasks/{parent_id}", headers=USER)

        assert response.status_code == 200
        assert response.json()["tasks"] == []
        assert get_tasks_for_user("user-1") == []

    def test_task_not_found(self, app_client):
        response = app_client.patch("/tasks/nonexistent/text", headers=USER, json={"text": "x"})
        assert response.status_code == 404

    def test_reminder_sent(self, app_client):
        task_id = app_client.post(
            "/tasks", headers=USER, json={"text": "Dated", "due_date": "2020-01-01T00:00:00Z"}
        ).json()["tasks"][0]["id"]

        (task,) = app_client.post(f"/tasks/{task_id}/reminder-sent", headers=USER).json()["tasks"]
        assert task["reminder_sent"] is True


class TestGuestEndpoints:

    def test_guest_quota_notice(self, app_client):
        for i in range(5):
            app_client.post("/tasks", headers=GUEST, json={"text": f"Task {i}"})

        response = app_client.post("/tasks", headers=GUEST, json={"text": "One too many"})

        body = response.json()
        assert len(body["tasks"]) == 5
        assert "limited to 5 tasks" in body["notices"][0]

    def test_guest_ignores_calendar_token(self, app_client, fake_calendar):
        app_client.post(
            "/tasks",
            headers={**GUEST, "X-Calendar-Token": "tok"},
            json={"text": "Dated", "due_date": "2025-05-02T08:00:00Z"},
        )
        assert fake_calendar.created == []


class TestCalendarSync:

    def test_sync_counts_created_events(self, app_client, fake_calendar):
        app_client.post("/tasks", headers=USER, json={"text": "Dated", "due_date": "2025-05-02T08:00:00Z"})

        response = app_client.post("/calendar/sync", headers={**USER, "X-Calendar-Token": "tok"})

        body = response.json()
        assert body["synced"] == 1
        assert body["tasks"][0]["google_calendar_event_id"] == "evt-1"

    def test_sync_without_token(self, app_client):
        body = app_client.post("/calendar/sync", headers=USER).json()
        assert body["synced"] == 0
        assert body["notices"] == ["Link Google Calendar first to sync your tasks."]


class TestParseEndpoints:

    def test_parse(self, app_client, fake_llm):
        fake_llm.reply = {"content": "Meeting", "dueDate": "2025-03-01T10:00:00.000Z", "tags": ["Work"], "isUrgent": True}

        response = app_client.post("/parse", json={"text": "Meeting #work urgent"})

        assert response.status_code == 200
        assert response.json()["content"] == "Meeting"
        assert response.json()["tags"] == ["work"]

    def test_parse_batch(self, app_client, fake_llm):
        fake_llm.reply = [{"content": "A", "dueDate": None, "tags": [], "isUrgent": False}]
        response = app_client.post("/parse/batch", json={"text": "- A"})
        assert [t["content"] for t in response.json()] == ["A"]

    def test_parse_failure_is_422(self, app_client, fake_llm):
        fake_llm.reply = "not json"
        assert app_client.post("/parse", json={"text": "x"}).status_code == 422

    def test_generate_subtasks(self, app_client, fake_llm):
        parent_id = app_client.post("/tasks", headers=USER, json={"text": "Write report"}).json()["tasks"][0]["id"]
        fake_llm.reply = ["Outline", "Draft", "Review"]

        tasks = app_client.post(f"/tasks/{parent_id}/subtasks/generate", headers=USER).json()["tasks"]

        assert sorted(t["text"] for t in tasks if t["parent_id"] == parent_id) == ["Draft", "Outline", "Review"]


class TestReminders:

    def test_overdue_task_is_reminded_once(self, app_client):
        app_client.post("/tasks", headers=USER, json={"text": "Pay rent", "tags": ["home"], "due_date": "2020-01-01T00:00:00Z"})

        reminders = []
        for _ in range(50):
            reminders += app_client.get("/reminders", headers=USER).json()
            if reminders:
                break
            time.sleep(0.02)

        assert len(reminders) == 1
        assert reminders[0]["body"] == "Pay rent\n#home"
        time.sleep(0.1)
        assert app_client.get("/reminders", headers=USER).json() == []
        assert get_tasks_for_user("user-1")[0].reminder_sent is True

    def test_guests_get_no_reminders(self, app_client):
        assert app_client.get("/reminders", headers=GUEST).json() == []

    @pytest.mark.asyncio
    async def test_undelivered_reminders_are_capped(self, settings):
        from main import StoreRegistry

        overdue = datetime(2020, 1, 1, tzinfo=timezone.utc)
        write_batch("user-1", [NewTask(text=f"Overdue {i}", due_date=overdue) for i in range(3)])
        registry = StoreRegistry(settings.model_copy(update={"pending_reminder_limit": 2}))
        try:
            store = await registry.for_user("user-1")
            for _ in range(100):
                if all(t.reminder_sent for t in store.tasks):
                    break
                await asyncio.sleep(0.02)
            reminders = registry.drain_reminders("user-1")
        finally:
            await registry.close()

        assert len(reminders) == 2
        assert all(t.reminder_sent for t in get_tasks_for_user("user-1"))


class TestTelegramWebhook:

    def test_webhook_dispatches(self, test_db, app_client, fake_telegram):
        link_telegram_chat("user-1", 5, "alice")
        update = {"update_id": 1, "message": {"message_id": 1, "chat": {"id": 5}, "text": "/help"}}

        response = app_client.post("/webhook/telegram", json=update)

        assert response.status_code == 200
        assert len(fake_telegram.sent) == 1

    def test_webhook_get_not_allowed(self, app_client):
        assert app_client.get("/webhook/telegram").status_code == 405

    def test_webhook_error_returns_500(self, test_db, app_client, fake_telegram, monkeypatch):
        import database

        link_telegram_chat("user-1", 5)

        def broken(*args, **kwargs):
            raise RuntimeError("boom")

        monkeypatch.setattr(database, "query_tasks", broken)
        update = {"update_id": 1, "message": {"message_id": 1, "chat": {"id": 5}, "text": "/list"}}

        response = app_client.post("/webhook/telegram", json=update)

        assert response.status_code == 500
        assert fake_telegram.sent[0].text.startswith("Sorry")

    def test_bot_add_shows_in_api(self, test_db, app_client, fake_llm):
        link_telegram_chat("user-1", 5)
        fake_llm.reply = {"content": "From chat", "dueDate": None, "tags": [], "isUrgent": False}
        update = {"update_id": 1, "message": {"message_id": 1, "chat": {"id": 5}, "text": "/add from chat"}}

        app_client.post("/webhook/telegram", json=update)

        tasks = app_client.get("/tasks", headers=USER).json()["tasks"]
        assert [t["text"] for t in tasks] == ["From chat"]


@pytest.mark.parametrize("path", ["/tasks/x/toggle", "/tasks/x/urgency", "/tasks/x/reminder-sent"])
def test_unknown_task_is_404(app_client, path):
    assert app_client.post(path, headers=USER).status_code == 404


class TestTemplates:
    """Tests for /templates endpoints."""

    def test_requires_signed_in_user(self, app_client):
        assert app_client.get("/templates").status_code == 401
        assert app_client.get("/templates", headers=GUEST).status_code == 401

    def test_crud(self, app_client):
        created = app_client.post(
            "/templates", headers=USER, json={"name": "Onboarding", "icon": "🚀", "subtasks": ["Laptop", " ", "Accounts"]}
        ).json()
        assert [s["text"] for s in created["subtasks"]] == ["Laptop", "Accounts"]

        response = app_client.patch(f"/templates/{created['id']}", headers=USER, json={"name": "New hire"})
        assert response.json()["name"] == "New hire"
        assert response.json()["icon"] == "🚀"

        templates = app_client.get("/templates", headers=USER).json()
        assert [t["name"] for t in templates] == ["New hire"]

        assert app_client.delete(f"/templates/{created['id']}", headers=USER).status_code == 200
        assert app_client.get("/templates", headers=USER).json() == []

    def test_blank_name_is_rejected(self, app_client):
        assert app_client.post("/templates", headers=USER, json={"name": "  "}).status_code == 422

    def test_unknown_template_is_404(self, app_client):
        assert app_client.patch("/templates/missing", headers=USER, json={"name": "x"}).status_code == 404
        assert app_client.delete("/templates/missing", headers=USER).status_code == 404
        assert app_client.post("/templates/missing/apply", headers=USER, json={}).status_code == 404

    def test_apply_creates_task_tree(self, app_client, fake_calendar):
        template_id = app_client.post(
            "/templates", headers=USER, json={"name": "Release", "subtasks": ["Changelog", "Tag"]}
        ).json()["id"]

        response = app_client.post(
            f"/templates/{template_id}/apply",
            headers={**USER, "X-Calendar-Token": "tok"},
            json={"due_date": "2025-05-02T08:00:00Z", "tags": ["work"], "is_urgent": True},
        )

        tasks = response.json()["tasks"]
        parent = next(t for t in tasks if t["parent_id"] is None)
        assert parent["text"] == "Release"
        assert parent["hashtags"] == ["work"]
        assert parent["is_urgent"] is True
        assert fake_calendar.created[0]["summary"] == "Release"
        assert sorted(t["text"] for t in tasks if t["parent_id"] == parent["id"]) == ["Changelog", "Tag"]
        assert len(get_tasks_for_user("user-1")) == 3
