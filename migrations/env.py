# env.py
from alembic import context
from sqlalchemy import create_engine, pool
from sqlalchemy.engine import make_url

from blueprint_ai.config import Settings
from blueprint_ai.models import Base

target_metadata = Base.metadata

# DATABASE_URL (or .env) via Settings; `alembic -x db_url=...` takes precedence
url = context.get_x_argument(as_dictionary=True).get("db_url") or Settings().database_url

config = context.config
config.set_main_option("sqlalchemy.url", url)

# SQLite cannot ALTER most constraints in place
render_as_batch = make_url(url).get_backend_name() == "sqlite"


def run_migrations_offline() -> None:
    context.configure(
        url=url,
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        compare_type=True,
        compare_server_default=True,
        render_as_batch=render_as_batch,
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    connectable = create_engine(url, poolclass=pool.NullPool)
    with connectable.connect() as connection:
        context.configure(
            connection=connection,
            target_metadata=target_metadata,
            compare_type=True,
            compare_server_default=True,
            render_as_batch=render_as_batch,
        )
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
