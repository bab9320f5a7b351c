import os
import sys
from pathlib import Path
from logging.config import fileConfig

from alembic import context
from sqlalchemy import engine_from_config, pool

# Alembic Config object (from alembic.ini)
config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

# sqlalchemy.url always comes from DATABASE_URL, with the same local default as the app.
db_url = os.environ.get("DATABASE_URL", "sqlite:///./tenantlink.db")
config.set_main_option("sqlalchemy.url", db_url)

# Ensure backend/ is on sys.path when running alembic from backend/
backend_root = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(backend_root))

# Import Base, then the models module so every table registers with Base.metadata
from tenantlink.db.base import Base  # noqa: E402
import tenantlink.models  # noqa: F401, E402

target_metadata = Base.metadata


def run_migrations_offline() -> None:
    """Run migrations in 'offline' mode."""
    url = config.get_main_option("sqlalchemy.url")
    context.configure(
        url=url,
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        compare_type=True,
        render_as_batch=url.startswith("sqlite"),
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    """Run migrations in 'online' mode."""
    connectable = engine_from_config(
        config.get_section(config.config_ini_section),
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )

    with connectable.connect() as connection:
        context.configure(
            connection=connection,
            target_metadata=target_metadata,
            compare_type=True,
            render_as_batch=connection.dialect.name == "sqlite",
        )

        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
