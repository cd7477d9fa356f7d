# Overview: Demo catalog seeding for fresh tills.

from __future__ import annotations

import json
import logging
import random
import re
from pathlib import Path

from flask import current_app

from ..errors import ValidationError
from .products_service import bulk_import_products, count_products

logger = logging.getLogger(__name__)


def seed_product_id(name: str) -> str:
    """Stable id for seed records that carry none, so re-seeding upserts."""
    slug = re.sub(r"[^a-z0-9]+", "-", (name or "").lower()).strip("-")
    if not slug:
        raise ValidationError("Seed record needs an id or a name", "name")
    return f"SEED-{slug}"


def load_seed_records(path: str | Path | None = None) -> list[dict]:
    path = Path(path or current_app.config["SEED_CATALOG_PATH"])
    with path.open(encoding="utf-8") as fh:
        records = json.load(fh)
    if not isinstance(records, list):
        raise ValidationError(f"Seed file {path} must contain a list of products")
    return records


def prepare_seed_records(records: list[dict], rng: random.Random | None = None) -> list[dict]:
    """
    Fill seed defaults: in_stock=True and a demo stock quantity (1-100)
    when the record has none.
    """
    rng = rng or random.Random()
    prepared = []
    for record in records:
        item = dict(record)
        item["id"] = item.get("id") or seed_product_id(item.get("name"))
        if item.get("stock_quantity") is None:
            item["stock_quantity"] = rng.randint(1, 100)
        item.setdefault("in_stock", True)
        prepared.append(item)
    return prepared


def seed_catalog(
    records: list[dict] | None = None,
    *,
    force: bool = False,
    rng: random.Random | None = None,
) -> int:
    """
    Seed the catalog when it is empty, or always when force=True.

    Idempotent by id: forcing a re-seed replaces rows with matching ids.
    Returns the number of products written.
    """
    if not force and count_products() > 0:
        logger.info("Catalog already populated; skipping seed")
        return 0
    if records is None:
        records = load_seed_records()
    seeded = bulk_import_products(prepare_seed_records(records, rng))
    logger.info("Seeded %d products (force=%s)", seeded, force)
    return seeded
