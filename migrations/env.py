"""Alembic environment for Flask-Migrate.

Runs inside the Flask app context (``flask db upgrade``); the database URL
and model metadata both come from the configured Flask-SQLAlchemy instance.
"""

import logging
from logging.config import fileConfig

from alembic import context
from flask import current_app

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)
logger = logging.getLogger("alembic.env")


def _get_db():
    return current_app.extensions["migrate"].db


config.set_main_option(
    "sqlalchemy.url",
    _get_db().engine.url.render_as_string(hide_password=False).replace("%", "%%"),
)
target_metadata = _get_db().metadata


def run_migrations_offline():
    """Run migrations in 'offline' mode (SQL script output only)."""
    context.configure(
        url=config.get_main_option("sqlalchemy.url"),
        target_metadata=target_metadata,
        literal_binds=True,
        render_as_batch=True,  # SQLite ALTER TABLE support
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online():
    """Run migrations in 'online' mode (live database connection)."""

    def process_revision_directives(context, revision, directives):
        # Skip empty autogenerate revisions
        if getattr(config.cmd_opts, "autogenerate", False):
            script = directives[0]
            if script.upgrade_ops.is_empty():
                directives[:] = []
                logger.info("No changes in schema detected.")

    conf_args = current_app.extensions["migrate"].configure_args
    conf_args.setdefault("process_revision_directives", process_revision_directives)

    with _get_db().engine.connect() as connection:
        context.configure(
            connection=connection,
            target_metadata=target_metadata,
            render_as_batch=True,
            **conf_args,
        )

        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
