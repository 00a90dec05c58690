"""Add users table for Telegram chat links

Revision ID: 002
Revises: 001
Create Date: 2025-06-20

"""
from typing import Sequence, Union

from alembic import op
from sqlalchemy import text

revision: str = '002'
down_revision: Union[str, None] = '001'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    conn = op.get_bind()
    conn.execute(text("""
        CREATE TABLE IF NOT EXISTS users (
            id TEXT PRIMARY KEY,
            telegram_chat_id INTEGER,
            telegram_username TEXT
        )
    """))
    conn.execute(text("CREATE INDEX IF NOT EXISTS ix_users_telegram_chat ON users (telegram_chat_id)"))


def downgrade() -> None:
    conn = op.get_bind()
    conn.execute(text("DROP TABLE IF EXISTS users"))
