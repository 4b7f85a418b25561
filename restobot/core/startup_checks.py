from __future__ import annotations

import logging
import os
from pathlib import Path

from alembic.config import Config
from alembic.script import ScriptDirectory
from sqlalchemy import inspect
from sqlalchemy.engine import Engine

from restobot.core import config

logger = logging.getLogger(__name__)
MIGRATIONS_PREFIX = "[MIGRATIONS]"
CONFIG_PREFIX = "[CONFIG]"


def _current_env() -> str:
    return os.getenv("ENVIRONMENT", os.getenv("ENV", "dev")).strip().lower()


def validate_database_environment() -> None:
    if _current_env() in {"prod", "production"} and config.DATABASE_URL.startswith("sqlite"):
        logger.critical("%s SQLite is forbidden in production", MIGRATIONS_PREFIX)
        raise RuntimeError("SQLite is forbidden in production environment")


def ensure_migrations_applied(*, engine: Engine, alembic_config_path: Path) -> None:
    env = _current_env()
    if env in {"test", "dev", "development", "local"}:
        logger.info("%s skipped migration check env=%s", MIGRATIONS_PREFIX, env)
        return

    if not alembic_config_path.exists():
        logger.critical("%s alembic config not found path=%s", MIGRATIONS_PREFIX, alembic_config_path)
        raise RuntimeError("alembic config not found")

    alembic_cfg = Config(str(alembic_config_path))
    script_directory = ScriptDirectory.from_config(alembic_cfg)
    expected_heads = set(script_directory.get_heads())

    with engine.connect() as connection:
        inspector = inspect(connection)
        if "alembic_version" not in inspector.get_table_names():
            logger.critical("%s alembic_version table missing", MIGRATIONS_PREFIX)
            raise RuntimeError("Database has no migration state")

        current_rows = connection.exec_driver_sql("SELECT version_num FROM alembic_version").fetchall()

    current_heads = {row[0] for row in current_rows if row and row[0]}
    if current_heads != expected_heads:
        logger.critical(
            "%s pending migration detected current=%s expected=%s",
            MIGRATIONS_PREFIX,
            sorted(current_heads),
            sorted(expected_heads),
        )
        raise RuntimeError("Pending migrations detected")

    logger.info("%s migration state verified", MIGRATIONS_PREFIX)


def integration_config_report() -> dict[str, bool]:
    return {
        "whatsapp_access_token": bool(config.META_WA_ACCESS_TOKEN),
        "whatsapp_phone_number_id": bool(config.META_WA_PHONE_NUMBER_ID),
        "whatsapp_verify_token": bool(config.META_WA_VERIFY_TOKEN),
        "razorpay_key_id": bool(config.RAZORPAY_KEY_ID),
        "razorpay_key_secret": bool(config.RAZORPAY_KEY_SECRET),
        "razorpay_webhook_secret": bool(config.RAZORPAY_WEBHOOK_SECRET),
    }


def report_integration_config() -> dict[str, bool]:
    report = integration_config_report()
    missing = sorted(name for name, present in report.items() if not present)
    if not missing:
        logger.info("%s all integrations configured", CONFIG_PREFIX)
        return report

    if config.IS_PROD:
        logger.error("%s missing integration settings: %s", CONFIG_PREFIX, ",".join(missing))
    else:
        logger.warning(
            "%s missing integration settings (mock providers will be used): %s",
            CONFIG_PREFIX,
            ",".join(missing),
        )
    if not config.RAZORPAY_WEBHOOK_SECRET:
        logger.warning("%s payment webhooks will be rejected until RAZORPAY_WEBHOOK_SECRET is set", CONFIG_PREFIX)
    return report
