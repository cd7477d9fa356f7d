# Overview: Flask API routes for catalog operations; parses input and returns JSON responses.

# backend/tillcore/routes/products.py
"""
Product catalog routes.

Errors raised by the services are translated by routes/errors.py:
ValidationError -> 400, NotFoundError -> 404, StorageError -> 500.
"""
from __future__ import annotations

from flask import Blueprint, current_app, request

from ..errors import ValidationError
from ..services import products_service
from ..services.product_cache import ProductSearchParams, get_product_cache
from ..services.products_service import ProductFilters, ProductUpdate
from ..services.transactions_service import product_analytics

products_bp = Blueprint("products", __name__, url_prefix="/api/products")


def parse_bool(value: str | None) -> bool | None:
    if value is None or value == "":
        return None
    lowered = value.strip().lower()
    if lowered in {"1", "true", "yes"}:
        return True
    if lowered in {"0", "false", "no"}:
        return False
    raise ValidationError(f"Invalid boolean value: {value}")


def _json_body() -> dict:
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        raise ValidationError("Request body must be a JSON object")
    return payload


@products_bp.get("")
def list_products():
    """
    Catalog listing.

    Query params:
    - category: exact match
    - in_stock: true/false
    - q: substring over name, description, category
    - limit / offset: paging
    """
    filters = ProductFilters(
        category=request.args.get("category") or None,
        in_stock=parse_bool(request.args.get("in_stock")),
        search_query=request.args.get("q") or None,
        limit=request.args.get("limit", type=int),
        offset=request.args.get("offset", default=0, type=int),
    )
    items = products_service.list_products(filters)
    return {"items": items, "count": len(items)}


@products_bp.get("/search")
def search_products():
    """Paginated, cached search (query, category, brand, price range, stock, sort)."""
    params = ProductSearchParams(
        query=request.args.get("query") or None,
        category=request.args.get("category") or None,
        brand=request.args.get("brand") or None,
        min_price=request.args.get("min_price", type=float),
        max_price=request.args.get("max_price", type=float),
        in_stock_only=bool(parse_bool(request.args.get("in_stock_only"))),
        page=request.args.get("page", default=1, type=int),
        limit=request.args.get("limit", default=current_app.config["PRODUCT_PAGE_SIZE"], type=int),
        sort_by=request.args.get("sort_by", default="name"),
        sort_order=request.args.get("sort_order", default="asc"),
    )
    return products_service.search_products(params)


@products_bp.post("")
def create_product():
    product = products_service.create_product(_json_body())
    return product, 201


@products_bp.post("/import")
def import_products():
    payload = request.get_json(silent=True)
    records = payload.get("products") if isinstance(payload, dict) else payload
    if not isinstance(records, list):
        raise ValidationError("Expected a list of products")
    imported = products_service.bulk_import_products(records)
    return {"imported": imported, "received": len(records)}


@products_bp.get("/stats")
def product_stats():
    return products_service.product_stats()


@products_bp.get("/categories")
def product_categories():
    return {"categories": products_service.product_categories()}


@products_bp.get("/reorder-alerts")
def reorder_alerts():
    alerts = products_service.reorder_alerts()
    return {"items": alerts, "count": len(alerts)}


@products_bp.get("/barcode/<string:barcode>")
def get_by_barcode(barcode):
    return products_service.get_product_by_barcode(barcode)


@products_bp.get("/qr")
def get_by_qr_code():
    return products_service.get_product_by_qr_code(request.args.get("payload", ""))


@products_bp.get("/cache")
def cache_stats():
    return get_product_cache().stats()


@products_bp.delete("/cache")
def clear_cache():
    get_product_cache().clear()
    current_app.logger.info("Product cache cleared via API")
    return {"cleared": True}


@products_bp.get("/<string:product_id>")
def get_product(product_id):
    return products_service.get_product(product_id)


@products_bp.patch("/<string:product_id>")
def update_product(product_id):
    update = ProductUpdate.from_payload(_json_body())
    return products_service.update_product(product_id, update)


@products_bp.delete("/<string:product_id>")
def delete_product(product_id):
    if not products_service.delete_product(product_id):
        return {"error": f"Product {product_id} not found"}, 404
    return {"deleted": True}


@products_bp.get("/<string:product_id>/analytics")
def get_product_analytics(product_id):
    return product_analytics(product_id)
