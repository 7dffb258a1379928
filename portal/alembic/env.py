from alembic import context
from logging.config import fileConfig

from portal.core.config import _get
from portal.db import build_engine, is_sqlite

config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

# No ORM metadata; migrations are written by hand.
target_metadata = None

engine = build_engine((_get("DATABASE_URL", "sqlite:///data/portal.db") or "").strip())


def run_migrations_offline() -> None:
    """Emit SQL without a DB connection."""
    context.configure(
        url=str(engine.url),
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        render_as_batch=is_sqlite(engine),
        compare_type=True,
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    with engine.connect() as connection:
        context.configure(
            connection=connection,
            target_metadata=target_metadata,
            render_as_batch=is_sqlite(engine),
            compare_type=True,
        )
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
