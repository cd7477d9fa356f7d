# Overview: Startup sequencing for storage, schema, indexes, warm-up and seeding.

"""
Initialization Sequencer

    open storage -> ensure_schema -> apply_migrations -> build_advanced_indexes
                 -> warm stores (counts + cache preload) -> optional seeding

initialize() is idempotent. While one caller is running the sequence, other
callers wait on the same Future and receive the same report (or the same
exception). A failed run clears the in-flight Future so the next call retries.
"""
from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Future
from dataclasses import dataclass

from flask import Flask, current_app
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from ..errors import StorageError, TillcoreError
from ..extensions import db, mark_storage_closed, mark_storage_open, storage_is_open
from . import products_service, transactions_service
from .product_cache import CACHE_EXTENSION_KEY, get_product_cache
from .results import BestEffortResult
from .schema_service import (
    MigrationReport,
    apply_migrations,
    build_advanced_indexes,
    ensure_schema,
    schema_revision,
)
from .seed_service import seed_catalog

logger = logging.getLogger(__name__)

SEQUENCER_EXTENSION_KEY = "tillcore.init"


@dataclass
class InitReport:
    migrations: MigrationReport
    advanced_indexes: BestEffortResult
    cache_preload: BestEffortResult
    product_count: int
    transaction_count: int
    seeded: int
    duration_ms: float

    def to_dict(self) -> dict:
        return {
            "migrations": self.migrations.to_dict(),
            "advanced_indexes": self.advanced_indexes.to_dict(),
            "cache_preload": self.cache_preload.to_dict(),
            "product_count": self.product_count,
            "transaction_count": self.transaction_count,
            "seeded": self.seeded,
            "duration_ms": round(self.duration_ms, 2),
        }


def open_storage(app: Flask) -> None:
    try:
        with db.engine.connect() as connection:
            connection.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        raise StorageError("Could not open storage") from exc
    mark_storage_open(app)


class InitializationSequencer:
    def __init__(self, app: Flask):
        self.app = app
        self._lock = threading.Lock()
        self._in_flight: Future | None = None
        self.report: InitReport | None = None

    @property
    def initialized(self) -> bool:
        return self.report is not None

    def initialize(self, *, seed: bool = False, force: bool = False, records: list[dict] | None = None) -> InitReport:
        with self._lock:
            if self.report is not None:
                return self.report
            future = self._in_flight
            owner = future is None
            if owner:
                future = self._in_flight = Future()

        if not owner:
            return future.result()

        try:
            with self.app.app_context():
                report = self._run(seed=seed, force=force, records=records)
        except Exception as exc:
            with self._lock:
                self._in_flight = None
            future.set_exception(exc)
            raise

        with self._lock:
            self.report = report
            self._in_flight = None
        future.set_result(report)
        return report

    def _run(self, *, seed: bool, force: bool, records: list[dict] | None) -> InitReport:
        started = time.perf_counter()
        logger.info("Initializing storage at %s", self.app.config["SQLALCHEMY_DATABASE_URI"])
        try:
            open_storage(self.app)
            ensure_schema()
            migrations = apply_migrations()
        except TillcoreError:
            mark_storage_closed(self.app)
            raise

        indexes = build_advanced_indexes()
        if not indexes.ok:
            logger.warning("%d advanced indexes failed; continuing", indexes.failed)

        product_count = products_service.count_products()
        transaction_count = transactions_service.count_transactions()
        preload = get_product_cache().preload(
            products_service.query_products,
            categories=self.app.config["PRODUCT_CACHE_PRELOAD_CATEGORIES"],
        )

        seeded = 0
        if seed:
            seeded = seed_catalog(records, force=force)
            if seeded:
                product_count = products_service.count_products()

        report = InitReport(
            migrations=migrations,
            advanced_indexes=indexes,
            cache_preload=preload,
            product_count=product_count,
            transaction_count=transaction_count,
            seeded=seeded,
            duration_ms=(time.perf_counter() - started) * 1000,
        )
        logger.info(
            "Storage ready: %d products, %d transactions (%.0f ms)",
            product_count, transaction_count, report.duration_ms,
        )
        return report

    def reinitialize(self, *, seed: bool = False, force: bool = False, records: list[dict] | None = None) -> InitReport:
        """Forget the previous report and run the whole sequence again."""
        with self._lock:
            if self._in_flight is not None:
                future = self._in_flight
            else:
                future = None
                self.report = None
        if future is not None:
            return future.result()
        self.app.extensions[CACHE_EXTENSION_KEY].clear()
        return self.initialize(seed=seed, force=force, records=records)

    def health_check(self) -> dict:
        """Lightweight status for the health endpoint and CLI."""
        with self.app.app_context():
            status = {
                "initialized": self.initialized,
                "storage_open": storage_is_open(),
                "cache": get_product_cache().stats(),
            }
            try:
                status["schema_revision"] = schema_revision()
                status["products"] = products_service.count_products()
                status["transactions"] = transactions_service.count_transactions()
                status["status"] = "healthy"
            except (TillcoreError, SQLAlchemyError) as exc:
                status["status"] = "unhealthy"
                status["error"] = str(exc)
        return status


def get_sequencer() -> InitializationSequencer:
    return current_app.extensions[SEQUENCER_EXTENSION_KEY]
