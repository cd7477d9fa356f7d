# Overview: Service-layer operations for the product catalog; the catalog of record.

"""
Product Store

All writes keep the stock projection consistent:
    in_stock == (stock_quantity > 0)
and invalidate the read cache for the affected product, category and brand.

Paginated search goes through the read cache (search_products); the
uncached query (query_products) is what the cache wraps.
"""
from __future__ import annotations

import logging
import math
import uuid
from dataclasses import dataclass, fields
from typing import Iterable

from flask import current_app
from sqlalchemy import case, func, or_

from ..errors import NotFoundError, ValidationError
from ..extensions import storage_operation
from ..models import Product
from ..serialization import encode_variants
from ..time_utils import epoch_millis, utcnow
from ..validation import (
    optional_text,
    require_choice,
    require_int,
    require_number,
    require_text,
    validate_variants,
)
from .product_cache import CACHE_EXTENSION_KEY, ProductSearchParams

logger = logging.getLogger(__name__)

DEFAULT_REORDER_QTY = 10
DEFAULT_MAX_BUY_QTY = 100
DEFAULT_MIN_BUY_QTY = 1
MAX_PAGE_SIZE = 500

PRODUCT_SORT_FIELDS = {
    "name": Product.name,
    "price": Product.price,
    "created_at": Product.created_at,
    "category": Product.category,
    "stock_quantity": Product.stock_quantity,
}


@dataclass(frozen=True)
class ProductFilters:
    category: str | None = None
    in_stock: bool | None = None
    search_query: str | None = None
    limit: int | None = None
    offset: int = 0


@dataclass(frozen=True)
class ProductUpdate:
    """
    Fields a catalog edit may change. None means "leave unchanged".

    in_stock is absent on purpose: it follows stock_quantity.
    Passing variants={} removes all variants.
    """
    name: str | None = None
    category: str | None = None
    price: float | None = None
    image: str | None = None
    description: str | None = None
    badge: str | None = None
    variants: dict | None = None
    stock_quantity: int | None = None
    barcode: str | None = None
    qr_code: str | None = None
    reorder_qty: int | None = None
    max_buy_qty: int | None = None
    min_buy_qty: int | None = None
    reseller_name: str | None = None
    brand: str | None = None
    information: str | None = None

    def changes(self) -> dict:
        out = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if value is not None:
                out[f.name] = value
        return out

    @classmethod
    def from_payload(cls, payload: dict) -> "ProductUpdate":
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(payload) - known)
        if unknown:
            raise ValidationError(f"Fields cannot be updated: {', '.join(unknown)}")
        return cls(**payload)


def generate_product_id() -> str:
    return f"PROD-{epoch_millis()}-{uuid.uuid4().hex[:9]}"


def _invalidate_cache(product_id: str | None, categories: Iterable[str | None] = (), brands: Iterable[str | None] = ()) -> None:
    cache = current_app.extensions.get(CACHE_EXTENSION_KEY)
    if cache is not None:
        cache.invalidate(product_id=product_id, categories=categories, brands=brands)


def _clear_cache() -> None:
    cache = current_app.extensions.get(CACHE_EXTENSION_KEY)
    if cache is not None:
        cache.clear()


_TEXT_FIELDS = ("image", "description", "badge", "barcode", "qr_code", "reseller_name", "brand", "information")


def _clean_optional_fields(data: dict) -> dict:
    cleaned = {}
    for name in _TEXT_FIELDS:
        if name in data:
            cleaned[name] = optional_text(data[name], name)
    if "reorder_qty" in data and data["reorder_qty"] is not None:
        cleaned["reorder_qty"] = require_int(data["reorder_qty"], "reorder_qty")
    for name in ("max_buy_qty", "min_buy_qty"):
        if name in data and data[name] is not None:
            cleaned[name] = require_int(data[name], name, strict=True)
    return cleaned


def _product_columns(data: dict) -> dict:
    """Validate a full product record and return column values."""
    if not isinstance(data, dict):
        raise ValidationError("Product must be an object")
    stock_raw = data.get("stock_quantity")
    stock = 0 if stock_raw is None else require_int(stock_raw, "stock_quantity")
    columns = {
        "id": optional_text(data.get("id"), "id") or generate_product_id(),
        "name": require_text(data.get("name"), "name"),
        "category": require_text(data.get("category"), "category"),
        "price": require_number(data.get("price"), "price"),
        "variants": encode_variants(validate_variants(data.get("variants"))),
        "stock_quantity": stock,
        "in_stock": stock > 0,
        "reorder_qty": DEFAULT_REORDER_QTY,
        "max_buy_qty": DEFAULT_MAX_BUY_QTY,
        "min_buy_qty": DEFAULT_MIN_BUY_QTY,
    }
    columns.update(_clean_optional_fields(data))
    return columns


def create_product(data: dict) -> dict:
    """
    Create a catalog entry.

    Raises:
        ValidationError: malformed input (message names the field)
        StorageError: storage failure, including a duplicate id
    """
    columns = _product_columns(data)
    now = utcnow()
    with storage_operation("Failed to create product") as session:
        product = Product(**columns, created_at=now, updated_at=now)
        session.add(product)
        session.commit()
        result = product.to_dict()

    _invalidate_cache(result["id"], [result["category"]], [result["brand"]])
    return result


def get_product(product_id: str) -> dict:
    with storage_operation("Failed to load product") as session:
        product = session.get(Product, product_id)
        if product is None:
            raise NotFoundError(f"Product {product_id} not found")
        return product.to_dict()


def count_products() -> int:
    with storage_operation("Failed to count products") as session:
        return session.query(func.count(Product.id)).scalar() or 0


def list_products(filters: ProductFilters | None = None) -> list[dict]:
    """
    Catalog listing: substring search over name/description/category,
    exact category and stock filters, name order, limit/offset paging.
    """
    filters = filters or ProductFilters()
    with storage_operation("Failed to list products") as session:
        query = session.query(Product)
        if filters.category:
            query = query.filter(Product.category == filters.category)
        if filters.in_stock is not None:
            query = query.filter(Product.in_stock.is_(bool(filters.in_stock)))
        term = (filters.search_query or "").strip()
        if term:
            pattern = f"%{term}%"
            query = query.filter(
                or_(
                    Product.name.ilike(pattern),
                    Product.description.ilike(pattern),
                    Product.category.ilike(pattern),
                )
            )
        query = query.order_by(Product.name.asc(), Product.id.asc())
        if filters.offset:
            query = query.offset(filters.offset)
        if filters.limit is not None:
            query = query.limit(filters.limit)
        return [p.to_dict() for p in query.all()]


def _validate_search(params: ProductSearchParams) -> None:
    require_choice(params.sort_by, "sort_by", PRODUCT_SORT_FIELDS)
    require_choice(params.sort_order.lower(), "sort_order", ("asc", "desc"))
    require_int(params.page, "page", minimum=1)
    require_int(params.limit, "limit", minimum=1)
    if params.limit > MAX_PAGE_SIZE:
        raise ValidationError(f"limit cannot exceed {MAX_PAGE_SIZE}", "limit")
    if params.min_price is not None and params.max_price is not None and params.min_price > params.max_price:
        raise ValidationError("min_price cannot exceed max_price", "min_price")


def query_products(params: ProductSearchParams) -> dict:
    """Uncached paginated search; search_products() is the cached entry point."""
    _validate_search(params)
    with storage_operation("Failed to search products") as session:
        query = session.query(Product)
        term = (params.query or "").strip()
        if term:
            pattern = f"%{term}%"
            query = query.filter(
                or_(
                    Product.name.ilike(pattern),
                    Product.description.ilike(pattern),
                    Product.brand.ilike(pattern),
                    Product.barcode.ilike(pattern),
                )
            )
        if params.category:
            query = query.filter(Product.category == params.category)
        if params.brand:
            query = query.filter(Product.brand == params.brand)
        if params.min_price is not None:
            query = query.filter(Product.price >= params.min_price)
        if params.max_price is not None:
            query = query.filter(Product.price <= params.max_price)
        if params.in_stock_only:
            query = query.filter(Product.in_stock.is_(True), Product.stock_quantity > 0)

        total = query.count()

        column = PRODUCT_SORT_FIELDS[params.sort_by]
        ordering = column.desc() if params.sort_order.lower() == "desc" else column.asc()
        rows = (
            query.order_by(ordering, Product.id.asc())
            .offset((params.page - 1) * params.limit)
            .limit(params.limit)
            .all()
        )

    total_pages = math.ceil(total / params.limit) if total else 0
    return {
        "products": [p.to_dict() for p in rows],
        "total_count": total,
        "current_page": params.page,
        "total_pages": total_pages,
        "has_next_page": params.page < total_pages,
        "has_previous_page": params.page > 1,
    }


def search_products(params: ProductSearchParams | None = None) -> dict:
    cache = current_app.extensions.get(CACHE_EXTENSION_KEY)
    if cache is None:
        return query_products(params or ProductSearchParams(limit=current_app.config["PRODUCT_PAGE_SIZE"]))
    params = params or cache.default_params()
    return cache.get_or_load(params, query_products)


def update_product(product_id: str, update: ProductUpdate) -> dict:
    """
    Apply a typed catalog edit.

    Raises:
        ValidationError: empty update or invalid field value
        NotFoundError: no product with that id
    """
    changes = update.changes()
    if not changes:
        raise ValidationError("No fields to update")

    cleaned = _clean_optional_fields(changes)
    if "name" in changes:
        cleaned["name"] = require_text(changes["name"], "name")
    if "category" in changes:
        cleaned["category"] = require_text(changes["category"], "category")
    if "price" in changes:
        cleaned["price"] = require_number(changes["price"], "price")
    if "stock_quantity" in changes:
        cleaned["stock_quantity"] = require_int(changes["stock_quantity"], "stock_quantity")
    if "variants" in changes:
        cleaned["variants"] = encode_variants(validate_variants(changes["variants"]))

    with storage_operation("Failed to update product") as session:
        product = session.get(Product, product_id)
        if product is None:
            raise NotFoundError(f"Product {product_id} not found")
        old_category, old_brand = product.category, product.brand

        for key, value in cleaned.items():
            setattr(product, key, value)
        product.in_stock = product.stock_quantity > 0
        product.updated_at = utcnow()
        session.commit()
        result = product.to_dict()

    _invalidate_cache(
        product_id,
        categories=[old_category, result["category"]],
        brands=[old_brand, result["brand"]],
    )
    return result


def delete_product(product_id: str) -> bool:
    """Admin removal. Returns False when nothing matched."""
    with storage_operation("Failed to delete product") as session:
        product = session.get(Product, product_id)
        if product is None:
            return False
        category, brand = product.category, product.brand
        session.delete(product)
        session.commit()

    _invalidate_cache(product_id, [category], [brand])
    return True


def product_stats() -> dict:
    with storage_operation("Failed to load product statistics") as session:
        row = session.query(
            func.count(Product.id),
            func.coalesce(func.sum(Product.price * Product.stock_quantity), 0.0),
            func.coalesce(func.avg(Product.price), 0.0),
            func.coalesce(func.sum(case((Product.in_stock.is_(True), 1), else_=0)), 0),
            func.coalesce(func.sum(case((Product.in_stock.is_(False), 1), else_=0)), 0),
            func.count(func.distinct(Product.category)),
            func.coalesce(func.sum(case((Product.stock_quantity <= Product.reorder_qty, 1), else_=0)), 0),
        ).one()

    total, total_value, avg_price, in_stock, out_of_stock, categories, low_stock = row
    return {
        "total_products": int(total),
        "total_value": float(total_value),
        "average_price": float(avg_price),
        "in_stock_count": int(in_stock),
        "out_of_stock_count": int(out_of_stock),
        "category_count": int(categories),
        "low_stock_count": int(low_stock),
    }


def product_categories() -> list[dict]:
    with storage_operation("Failed to load categories") as session:
        rows = (
            session.query(Product.category, func.count(Product.id))
            .group_by(Product.category)
            .order_by(Product.category.asc())
            .all()
        )
    return [{"category": category, "count": count} for category, count in rows]


def bulk_import_products(records: Iterable[dict]) -> int:
    """
    Idempotent upsert by id. Invalid records are skipped and logged.

    Clears the whole read cache, since an import can touch any page.
    """
    imported = 0
    now = utcnow()
    with storage_operation("Failed to import products") as session:
        for index, record in enumerate(records):
            try:
                columns = _product_columns(record)
            except ValidationError as exc:
                logger.warning("Skipping product record %d: %s", index, exc)
                continue

            existing = session.get(Product, columns["id"])
            if existing is None:
                session.add(Product(**columns, created_at=now, updated_at=now))
            else:
                for key, value in columns.items():
                    setattr(existing, key, value)
                existing.updated_at = now
            imported += 1
        session.commit()

    _clear_cache()
    logger.info("Imported %d products", imported)
    return imported


def _get_one_by(column, value: str, label: str) -> dict:
    with storage_operation("Failed to load product") as session:
        product = session.query(Product).filter(column == value).order_by(Product.id.asc()).first()
        if product is None:
            raise NotFoundError(f"No product with {label} {value}")
        return product.to_dict()


def get_product_by_barcode(barcode: str) -> dict:
    return _get_one_by(Product.barcode, require_text(barcode, "barcode"), "barcode")


def get_product_by_qr_code(payload: str) -> dict:
    return _get_one_by(Product.qr_code, require_text(payload, "qr_code"), "QR code")


def reorder_alerts() -> list[dict]:
    """Products at or below their reorder point, lowest stock first."""
    reorder_point = func.coalesce(Product.reorder_qty, DEFAULT_REORDER_QTY)
    with storage_operation("Failed to load reorder alerts") as session:
        rows = (
            session.query(Product)
            .filter(Product.stock_quantity <= reorder_point)
            .order_by(Product.stock_quantity.asc(), Product.name.asc())
            .all()
        )
        alerts = []
        for product in rows:
            reorder_qty = product.reorder_qty if product.reorder_qty is not None else DEFAULT_REORDER_QTY
            alert = product.to_dict()
            alert["suggested_order_qty"] = max(reorder_qty * 2, 50)
            alerts.append(alert)
    return alerts
