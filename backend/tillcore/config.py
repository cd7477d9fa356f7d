# backend/tillcore/config.py
from __future__ import annotations
import os
from decimal import Decimal
from pathlib import Path


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_list(name: str, default: str) -> list[str]:
    raw = os.environ.get(name, default)
    return [part.strip() for part in raw.split(",") if part.strip()]


class Config:
    # SQLite DB stored next to the process by default
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///tillcore.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Checkout business constants (per deployment)
    TAX_RATE = Decimal(os.environ.get("TAX_RATE", "0.10"))
    SPLIT_TOLERANCE = Decimal(os.environ.get("SPLIT_TOLERANCE", "0.01"))
    CURRENCY_CODE = os.environ.get("CURRENCY_CODE", "ZAR")
    CURRENCY_SYMBOL = os.environ.get("CURRENCY_SYMBOL", "R")

    # Transaction metrics stamped by the till
    TILL_DEVICE_TYPE = os.environ.get("TILL_DEVICE_TYPE", "till")
    TILL_LOCATION = os.environ.get("TILL_LOCATION", "Main Store")

    # Product read cache
    PRODUCT_CACHE_TTL_SECONDS = int(os.environ.get("PRODUCT_CACHE_TTL_SECONDS", "300"))
    PRODUCT_CACHE_MAX_ENTRIES = int(os.environ.get("PRODUCT_CACHE_MAX_ENTRIES", "100"))
    PRODUCT_CACHE_PRELOAD_CATEGORIES = _env_list("PRODUCT_CACHE_PRELOAD_CATEGORIES", "electronics,food")
    PRODUCT_PAGE_SIZE = int(os.environ.get("PRODUCT_PAGE_SIZE", "50"))

    # Catalog seeding
    SEED_CATALOG_PATH = os.environ.get(
        "SEED_CATALOG_PATH",
        str(Path(__file__).resolve().parent / "data" / "seed_products.json"),
    )

    # Run the initialization sequence from create_app()
    TILLCORE_AUTO_INIT = _env_bool("TILLCORE_AUTO_INIT", False)
