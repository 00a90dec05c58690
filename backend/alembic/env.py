import os
from logging.config import fileConfig

from sqlalchemy import create_engine
from alembic import context

from config import Settings

config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name, disable_existing_loggers=False)


def database_url() -> str:
    """
    SQLite URL for the PTODO database.
    init_db() passes an absolute PTODO_DATABASE_PATH; running `alembic` by hand
    falls back to the same setting read from .env.
    """
    path = os.getenv("PTODO_DATABASE_PATH") or Settings.from_env().database_path
    return f"sqlite:///{path}"


def run_migrations_offline() -> None:
    """Emit the migration SQL without connecting."""
    context.configure(
        url=database_url(),
        target_metadata=None,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    """Apply migrations to the database file."""
    engine = create_engine(database_url())

    with engine.connect() as connection:
        # SQLite cannot ALTER most things in place
        context.configure(
            connection=connection,
            target_metadata=None,
            render_as_batch=True,
        )

        with context.begin_transaction():
            context.run_migrations()
    engine.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
