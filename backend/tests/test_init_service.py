import random
import threading

import pytest
from sqlalchemy import inspect, text

from tillcore.errors import NotInitializedError, StorageError
from tillcore.extensions import db, storage_is_open
from tillcore.services import init_service, products_service, schema_service, transactions_service
from tillcore.services.init_service import SEQUENCER_EXTENSION_KEY, get_sequencer
from tillcore.services.schema_service import (
    ADVANCED_INDEXES,
    apply_migrations,
    build_advanced_indexes,
    ensure_schema,
    schema_revision,
)
from tillcore.services.seed_service import prepare_seed_records, seed_catalog, seed_product_id

HEAD = "0001_product_merchandising"

LEGACY_PRODUCTS_DDL = """
CREATE TABLE products (
    id VARCHAR(64) PRIMARY KEY,
    name VARCHAR(255) NOT NULL,
    category VARCHAR(128) NOT NULL,
    price FLOAT NOT NULL,
    image TEXT,
    description TEXT,
    badge VARCHAR(64),
    variants TEXT,
    in_stock BOOLEAN NOT NULL DEFAULT 1,
    stock_quantity INTEGER NOT NULL DEFAULT 0
)
"""


def test_store_access_before_initialize_raises(fresh_app):
    assert not storage_is_open()
    with pytest.raises(NotInitializedError):
        products_service.count_products()
    with pytest.raises(NotInitializedError):
        transactions_service.list_transactions()


def test_initialize_reports_each_step(fresh_app):
    report = get_sequencer().initialize()

    assert storage_is_open()
    assert report.migrations.from_revision is None
    assert report.migrations.to_revision == HEAD
    assert report.migrations.applied == [HEAD]
    assert report.advanced_indexes.succeeded == len(ADVANCED_INDEXES)
    assert report.advanced_indexes.ok
    assert report.cache_preload.ok
    assert report.product_count == 0
    assert report.transaction_count == 0
    assert report.seeded == 0

    tables = set(inspect(db.engine).get_table_names())
    assert {"products", "transactions", "transaction_items", "alembic_version"} <= tables


def test_initialize_is_idempotent(app):
    sequencer = get_sequencer()
    first = sequencer.initialize()
    assert sequencer.initialize() is first

    ensure_schema()
    again = apply_migrations()
    assert again.applied == []
    assert again.to_revision == HEAD
    assert build_advanced_indexes().succeeded == len(ADVANCED_INDEXES)


def test_concurrent_callers_share_one_run(fresh_app):
    sequencer = fresh_app.extensions[SEQUENCER_EXTENSION_KEY]
    gate = threading.Event()
    calls = []
    original_run = sequencer._run

    def gated_run(**kwargs):
        calls.append(kwargs)
        gate.wait(timeout=5)
        return original_run(**kwargs)

    sequencer._run = gated_run
    results = []
    errors = []

    def worker():
        try:
            results.append(sequencer.initialize())
        except Exception as exc:
            errors.append(exc)

    threads = [threading.Thread(target=worker) for _ in range(4)]
    for thread in threads:
        thread.start()
    gate.set()
    for thread in threads:
        thread.join(timeout=10)

    assert errors == []
    assert len(calls) == 1
    assert len(results) == 4
    assert all(report is results[0] for report in results)


def test_failed_initialize_can_be_retried(fresh_app, monkeypatch):
    def broken_schema():
        raise StorageError("Database initialization failed")

    monkeypatch.setattr(init_service, "ensure_schema", broken_schema)
    sequencer = get_sequencer()
    with pytest.raises(StorageError):
        sequencer.initialize()
    assert not sequencer.initialized
    assert not storage_is_open()

    monkeypatch.undo()
    report = sequencer.initialize()
    assert report.migrations.to_revision == HEAD
    assert storage_is_open()


def test_legacy_catalog_is_migrated_in_place(fresh_app):
    with db.engine.begin() as connection:
        connection.execute(text(LEGACY_PRODUCTS_DDL))
        connection.execute(text(
            "INSERT INTO products (id, name, category, price, stock_quantity, in_stock) VALUES "
            "('L1', 'Pie', 'food', 30, 4, 1), "
            "('L2', 'Cable', 'electronics', 99, 0, 0), "
            "('L3', 'Hat', 'clothing', 150, 2, 1), "
            "('L4', 'Candle', 'home', 45, 9, 1)"
        ))

    report = get_sequencer().initialize()

    assert report.migrations.applied == [HEAD]
    assert report.product_count == 4
    assert report.advanced_indexes.ok

    columns = {c["name"] for c in inspect(db.engine).get_columns("products")}
    assert {"barcode", "qr_code", "brand", "reorder_qty", "created_at", "updated_at"} <= columns

    pie = products_service.get_product("L1")
    assert (pie["reorder_qty"], pie["max_buy_qty"], pie["min_buy_qty"]) == (20, 50, 1)
    assert pie["created_at"] is not None
    cable = products_service.get_product("L2")
    assert (cable["reorder_qty"], cable["max_buy_qty"]) == (5, 10)
    hat = products_service.get_product("L3")
    assert (hat["reorder_qty"], hat["max_buy_qty"]) == (15, 25)
    candle = products_service.get_product("L4")
    assert (candle["reorder_qty"], candle["max_buy_qty"]) == (10, 100)

    assert apply_migrations().applied == []
    assert schema_revision() == HEAD


def test_seeding_fills_defaults_and_skips_populated_catalog(app):
    records = [
        {"name": "Koeksister", "category": "food", "price": 12},
        {"id": "S2", "name": "Iced Tea", "category": "drinks", "price": 22, "stock_quantity": 0},
    ]
    assert seed_catalog(records, rng=random.Random(7)) == 2

    seeded = products_service.get_product(seed_product_id("Koeksister"))
    assert seeded["id"] == "SEED-koeksister"
    assert 1 <= seeded["stock_quantity"] <= 100
    assert seeded["in_stock"] is True
    assert products_service.get_product("S2")["in_stock"] is False

    assert seed_catalog(records) == 0
    assert seed_catalog(records, force=True) == 2
    assert products_service.count_products() == 2


def test_prepare_seed_records_keeps_explicit_stock():
    prepared = prepare_seed_records([{"id": "A", "name": "A", "stock_quantity": 3}], rng=random.Random(1))
    assert prepared[0]["stock_quantity"] == 3
    assert prepared[0]["in_stock"] is True


def test_initialize_with_packaged_seed_catalog(fresh_app):
    report = get_sequencer().initialize(seed=True)
    assert report.seeded == 12
    assert report.product_count == 12
    assert products_service.get_product("1")["variants"]["sizes"][1]["name"] == "Large"


def test_reinitialize_after_reset(app, make_product):
    from tillcore.services.schema_service import drop_schema

    make_product()
    db.session.remove()
    drop_schema()
    report = get_sequencer().reinitialize()
    assert report.product_count == 0
    assert report.migrations.applied == [HEAD]


def test_health_check(app):
    health = get_sequencer().health_check()
    assert health["status"] == "healthy"
    assert health["initialized"] is True
    assert health["storage_open"] is True
    assert health["schema_revision"] == HEAD
    assert health["products"] == 0
    assert "hits" in health["cache"]


def test_health_check_before_initialize(fresh_app):
    health = get_sequencer().health_check()
    assert health["status"] == "unhealthy"
    assert health["initialized"] is False


def test_failed_advanced_index_is_counted_not_raised(fresh_app, monkeypatch, caplog):
    broken = ("idx_products_missing_column", "products", ("no_such_column",))
    monkeypatch.setattr(schema_service, "ADVANCED_INDEXES", (*ADVANCED_INDEXES, broken))

    report = get_sequencer().initialize()

    assert storage_is_open()
    assert report.migrations.to_revision == HEAD
    assert report.advanced_indexes.attempted == len(ADVANCED_INDEXES) + 1
    assert report.advanced_indexes.succeeded == len(ADVANCED_INDEXES)
    assert report.advanced_indexes.failed == 1
    assert report.advanced_indexes.ok is False
    assert "idx_products_missing_column" in report.advanced_indexes.errors[0]
    assert "idx_products_missing_column" in caplog.text

    again = build_advanced_indexes()
    assert again.failed == 1
    assert again.succeeded == len(ADVANCED_INDEXES)
