import logging
from logging.config import fileConfig
import importlib
import pkgutil
from pathlib import Path

from flask import current_app
from alembic import context

config = context.config


def _init_logging():
    ini = config.config_file_name
    if ini and Path(ini).exists():
        fileConfig(ini)
        return
    logging.basicConfig(level=logging.INFO)


_init_logging()
logger = logging.getLogger("alembic.env")


def get_engine():
    # Flask-SQLAlchemy >= 3.x
    return current_app.extensions["migrate"].db.engine


def get_engine_url():
    return get_engine().url.render_as_string(hide_password=False).replace("%", "%%")


config.set_main_option("sqlalchemy.url", get_engine_url())
target_db = current_app.extensions["migrate"].db


def _autoload_models():
    """Import every module in subsync.models so autogenerate sees all tables."""
    import subsync.models as models_pkg
    for m in pkgutil.iter_modules(models_pkg.__path__):
        importlib.import_module(f"subsync.models.{m.name}")
    logger.info("Auto-loaded models from subsync.models/*")


def _include_object(object, name, type_, reflected, compare_to):
    # Never propose dropping an index that exists only in the database
    if type_ == "index" and reflected and compare_to is None:
        return False
    return True


def run_migrations_offline():
    _autoload_models()
    context.configure(
        url=config.get_main_option("sqlalchemy.url"),
        target_metadata=target_db.metadata,
        literal_binds=True,
        compare_type=True,
        include_object=_include_object,
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online():
    def process_revision_directives(context_, revision, directives):
        if getattr(config.cmd_opts, "autogenerate", False):
            script = directives[0]
            if script.upgrade_ops.is_empty():
                directives[:] = []
                logger.info("No changes in schema detected.")

    conf_args = {
        **current_app.extensions["migrate"].configure_args,
        "process_revision_directives": process_revision_directives,
        "compare_type": True,
        "include_object": _include_object,
        "target_metadata": target_db.metadata,
    }

    _autoload_models()

    with get_engine().connect() as connection:
        # SQLite cannot ALTER constraints in place
        conf_args.setdefault("render_as_batch", connection.dialect.name == "sqlite")
        context.configure(connection=connection, **conf_args)
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
