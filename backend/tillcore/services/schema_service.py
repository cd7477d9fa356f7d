# Overview: Schema creation, Alembic revisions and best-effort index building.

"""
Startup schema steps, in the order init_service runs them:

1. ensure_schema()           - fatal on failure
2. apply_migrations()        - fatal on failure
3. build_advanced_indexes()  - best-effort; failures are counted, never raised
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

from alembic import command
from alembic.config import Config as AlembicConfig
from alembic.runtime.migration import MigrationContext
from alembic.script import ScriptDirectory
from alembic.util import CommandError
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from ..errors import StorageError
from ..extensions import db
from ..models import Product, Transaction, TransactionLineItem
from .results import BestEffortResult

logger = logging.getLogger(__name__)

MIGRATIONS_DIR = Path(__file__).resolve().parent.parent / "migrations"

CORE_TABLES = (Product.__table__, Transaction.__table__, TransactionLineItem.__table__)

# Performance-only indexes over columns that legacy catalogs gain in 0001
ADVANCED_INDEXES = (
    ("idx_products_barcode", "products", ("barcode",)),
    ("idx_products_qr_code", "products", ("qr_code",)),
    ("idx_products_brand", "products", ("brand",)),
    ("idx_products_category_brand", "products", ("category", "brand")),
    ("idx_products_reseller", "products", ("reseller_name",)),
    ("idx_products_stock_reorder", "products", ("stock_quantity", "reorder_qty")),
    ("idx_products_created_at", "products", ("created_at",)),
    ("idx_products_updated_at", "products", ("updated_at",)),
)


@dataclass
class MigrationReport:
    from_revision: str | None
    to_revision: str | None
    applied: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "from_revision": self.from_revision,
            "to_revision": self.to_revision,
            "applied": list(self.applied),
        }


def ensure_schema() -> None:
    """Create the core tables and baseline indexes if absent (idempotent)."""
    try:
        with db.engine.begin() as connection:
            db.metadata.create_all(bind=connection, tables=list(CORE_TABLES), checkfirst=True)
            # create_all() skips indexes of tables that already existed
            for table in CORE_TABLES:
                for index in table.indexes:
                    index.create(bind=connection, checkfirst=True)
    except SQLAlchemyError as exc:
        logger.exception("Schema creation failed")
        raise StorageError("Database initialization failed") from exc


def _alembic_config(connection=None) -> AlembicConfig:
    cfg = AlembicConfig()
    cfg.set_main_option("script_location", str(MIGRATIONS_DIR))
    if connection is not None:
        cfg.attributes["connection"] = connection
    return cfg


def schema_revision() -> str | None:
    """Current Alembic revision stamped in the database, or None."""
    with db.engine.connect() as connection:
        return MigrationContext.configure(connection).get_current_revision()


def _ordered_revisions() -> list[str]:
    script = ScriptDirectory.from_config(_alembic_config())
    return [rev.revision for rev in reversed(list(script.walk_revisions()))]


def apply_migrations() -> MigrationReport:
    """
    Upgrade to the head revision. Re-running is a no-op because Alembic
    tracks the applied revision and each revision checks before altering.
    """
    try:
        before = schema_revision()
        with db.engine.begin() as connection:
            command.upgrade(_alembic_config(connection), "head")
        after = schema_revision()
        ordered = _ordered_revisions()
    except (SQLAlchemyError, CommandError) as exc:
        logger.exception("Schema migration failed")
        raise StorageError("Database migration failed") from exc

    start = ordered.index(before) + 1 if before in ordered else 0
    end = ordered.index(after) + 1 if after in ordered else 0
    report = MigrationReport(from_revision=before, to_revision=after, applied=ordered[start:end])
    if report.applied:
        logger.info("Applied migrations: %s", ", ".join(report.applied))
    return report


def build_advanced_indexes() -> BestEffortResult:
    """Create performance indexes; each failure is logged and counted."""
    result = BestEffortResult(operation="advanced_indexes")
    for name, table, columns in ADVANCED_INDEXES:
        ddl = f"CREATE INDEX IF NOT EXISTS {name} ON {table} ({', '.join(columns)})"
        try:
            with db.engine.begin() as connection:
                connection.execute(text(ddl))
            result.record_success()
        except SQLAlchemyError as exc:
            logger.warning("Index %s could not be created: %s", name, exc)
            result.record_failure(f"{name}: {exc.__class__.__name__}")
    return result


def drop_schema() -> None:
    """DEV/TEST only: drop the core tables and the Alembic version stamp."""
    with db.engine.begin() as connection:
        db.metadata.drop_all(bind=connection, tables=list(CORE_TABLES), checkfirst=True)
        connection.execute(text("DROP TABLE IF EXISTS alembic_version"))
