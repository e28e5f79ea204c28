import sys
from logging.config import fileConfig
from pathlib import Path

from alembic import context
from sqlalchemy import create_engine, pool
from sqlalchemy.engine import make_url

BACKEND_DIR = Path(__file__).resolve().parents[1]
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

import taskhub.infra.models  # noqa: F401,E402
from taskhub.infra.db import Base  # noqa: E402
from taskhub.settings import settings  # noqa: E402

if context.config.config_file_name is not None:
    fileConfig(context.config.config_file_name)


def _migration_url() -> str:
    # Migrations run on a sync driver; the app URL may name the async one.
    url = make_url(settings.database_url)
    if url.drivername == "sqlite+aiosqlite":
        url = url.set(drivername="sqlite")
    return url.render_as_string(hide_password=False)


def _configure(**kwargs) -> None:
    url = make_url(_migration_url())
    context.configure(
        target_metadata=Base.metadata,
        compare_type=True,
        render_as_batch=url.get_backend_name() == "sqlite",
        **kwargs,
    )


if context.is_offline_mode():
    _configure(url=_migration_url(), literal_binds=True, dialect_opts={"paramstyle": "named"})
    with context.begin_transaction():
        context.run_migrations()
else:
    engine = create_engine(_migration_url(), poolclass=pool.NullPool)
    with engine.connect() as connection:
        _configure(connection=connection)
        with context.begin_transaction():
            context.run_migrations()
