"""
Shared pytest fixtures for backend tests.
Each test gets its own SQLite file and guest directory.
"""
import pytest
import sqlite3
import sys
import os

# Add backend to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import database
from config import Settings
from fakes import FakeAnthropic, FakeCalendar, FakeTelegram


@pytest.fixture
def test_db(monkeypatch, tmp_path):
    """
    Create an isolated test database for each test.
    Uses a temp file (not :memory:) because database.py opens new connections per operation.
    """
    db_path = str(tmp_path / "test.db")
    monkeypatch.setattr(database, "DATABASE_PATH", db_path)
    monkeypatch.setattr(database, "init_db", lambda: None)

    # Create tables directly (skip alembic for tests)
    conn = sqlite3.connect(db_path)
    conn.executescript("""
        CREATE TABLE tasks (
            id TEXT PRIMARY KEY,
            user_id TEXT,
            text TEXT NOT NULL,
            status TEXT,
            created_at TEXT NOT NULL,
            due_date TEXT,
            hashtags TEXT DEFAULT '[]',
            is_urgent INTEGER DEFAULT 0,
            recurrence_rule TEXT DEFAULT 'none',
            reminder_sent INTEGER DEFAULT 0,
            parent_id TEXT,
            note TEXT,
            google_calendar_event_id TEXT,
            project_id TEXT,
            assignee_ids TEXT DEFAULT '[]',
            completed INTEGER
        );

        CREATE TABLE users (
            id TEXT PRIMARY KEY,
            telegram_chat_id INTEGER,
            telegram_username TEXT
        );

        CREATE TABLE task_templates (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            name TEXT NOT NULL,
            icon TEXT DEFAULT '📋',
            subtasks TEXT DEFAULT '[]',
            created_at TEXT NOT NULL
        );
    """)
    conn.commit()
    conn.close()

    yield db_path


@pytest.fixture
def settings(test_db, tmp_path):
    return Settings(
        database_path=test_db,
        guest_dir=str(tmp_path / "guests"),
        guest_task_limit=5,
        reminder_interval_seconds=0.02,
        anthropic_api_key="test-key",
    )


@pytest.fixture
def fake_calendar():
    return FakeCalendar()


@pytest.fixture
def fake_llm():
    return FakeAnthropic()


@pytest.fixture
def fake_telegram():
    return FakeTelegram()


@pytest.fixture
def app_client(settings, fake_calendar, fake_llm, fake_telegram, monkeypatch):
    """
    Create a test client for the FastAPI app with every external service faked.
    Skips alembic and logging setup.
    """
    from fastapi.testclient import TestClient
    import main
    from parser import TaskParser

    # Skip alembic in tests - tables already created by test_db fixture
    monkeypatch.setattr(database, "init_db", lambda: None)
    monkeypatch.setattr(main, "setup_logging", lambda level: None)

    app = main.create_app(
        settings,
        parser=TaskParser(settings, client=fake_llm),
        messenger=fake_telegram,
        calendar_factory=lambda token: fake_calendar,
    )
    with TestClient(app) as client:
        yield client
