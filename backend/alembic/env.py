from logging.config import fileConfig

from sqlalchemy import engine_from_config, pool
from alembic import context

from record_alerts.config import settings
from record_alerts.db.base import Base
from record_alerts.models import *  # noqa: F401 - registers every table on Base.metadata

config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name)
# Alembic runs on the sync driver (psycopg2 for PostgreSQL)
url = settings.sync_database_url
config.set_main_option("sqlalchemy.url", url)

target_metadata = Base.metadata
configure_options = {
    "target_metadata": target_metadata,
    "compare_type": True,
    # SQLite cannot ALTER most constraints in place
    "render_as_batch": url.startswith("sqlite"),
}


def run_migrations_offline() -> None:
    context.configure(
        url=url,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        **configure_options,
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    connectable = engine_from_config(
        config.get_section(config.config_ini_section, {}),
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )
    with connectable.connect() as connection:
        context.configure(connection=connection, **configure_options)
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
