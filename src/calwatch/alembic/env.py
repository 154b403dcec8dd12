"""Alembic environment for calwatch.

Only driven through ``calwatch.migrations.run_migrations``, which sets
``sqlalchemy.url`` and, for schema-scoped deployments, ``calwatch.schema``.
Revisions issue raw SQL, so there is no target metadata.
"""

from __future__ import annotations

from sqlalchemy import create_engine, pool

from alembic import context


def _prepare_schema(connection, schema: str) -> None:
    # Tables and the alembic_version row both land in the calwatch schema.
    quoted = '"' + schema.replace('"', '""') + '"'
    connection.exec_driver_sql(f"CREATE SCHEMA IF NOT EXISTS {quoted}")
    connection.exec_driver_sql(f"SET search_path TO {quoted}, public")
    connection.commit()


def run() -> None:
    if context.is_offline_mode():
        raise RuntimeError("calwatch migrations need a live database connection")

    url = context.config.get_main_option("sqlalchemy.url")
    schema = context.config.get_main_option("calwatch.schema") or None
    engine = create_engine(url, poolclass=pool.NullPool)
    try:
        with engine.connect() as connection:
            if schema is not None:
                _prepare_schema(connection, schema)
            context.configure(
                connection=connection,
                target_metadata=None,
                version_table_schema=schema,
            )
            with context.begin_transaction():
                context.run_migrations()
    finally:
        engine.dispose()


run()
