"""Gunicorn entrypoint: ``gunicorn wsgi:application``."""

import logging
import os

from flask_migrate import upgrade as migrate_upgrade

from app import app

logger = logging.getLogger(__name__)


def apply_migrations(flask_app, upgrade=migrate_upgrade):
    """Upgrade the schema to head unless ``MIGRATE_ON_BOOT`` is switched off.

    Returns True when the upgrade ran. A failed upgrade stops the worker.
    """
    if os.environ.get("MIGRATE_ON_BOOT", "1").strip().lower() in ("0", "false", "no"):
        logger.info("MIGRATE_ON_BOOT disabled, skipping schema upgrade")
        return False
    with flask_app.app_context():
        try:
            upgrade()
        except Exception as exc:
            logger.error("Failed to apply migrations", extra={"error": str(exc)})
            raise
    logger.info("Database schema upgraded to head")
    return True


apply_migrations(app)

application = app
