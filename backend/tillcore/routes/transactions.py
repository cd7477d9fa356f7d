# Overview: Flask API routes for transaction history, reporting and refunds.

from __future__ import annotations

from flask import Blueprint, Response, request

from ..errors import ValidationError
from ..services import transactions_service
from ..services.transactions_service import TransactionFilters, TransactionUpdate

transactions_bp = Blueprint("transactions", __name__, url_prefix="/api/transactions")


def _filters_from_args(paginated: bool = True) -> TransactionFilters:
    return TransactionFilters(
        cashier_id=request.args.get("cashier_id") or None,
        status=request.args.get("status") or None,
        type=request.args.get("type") or None,
        date_from=request.args.get("date_from") or None,
        date_to=request.args.get("date_to") or None,
        limit=request.args.get("limit", type=int) if paginated else None,
        offset=request.args.get("offset", default=0, type=int) if paginated else 0,
    )


def _json_body() -> dict:
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        raise ValidationError("Request body must be a JSON object")
    return payload


@transactions_bp.get("")
def list_transactions():
    """
    Transaction history, newest first.

    Query params (all optional, combined with AND):
    - cashier_id, status, type
    - date_from / date_to: ISO-8601
    - limit / offset
    """
    items = transactions_service.list_transactions(_filters_from_args())
    return {"items": items, "count": len(items)}


@transactions_bp.post("")
def create_transaction():
    return transactions_service.create_transaction(_json_body()), 201


@transactions_bp.get("/stats")
def transaction_stats():
    return transactions_service.transaction_stats(_filters_from_args(paginated=False))


@transactions_bp.get("/summary")
def sales_summary():
    return transactions_service.sales_summary(_filters_from_args(paginated=False))


@transactions_bp.get("/search")
def search_transactions():
    term = request.args.get("q", "")
    limit = request.args.get("limit", default=50, type=int)
    items = transactions_service.search_transactions(term, limit=limit)
    return {"items": items, "count": len(items)}


@transactions_bp.get("/export")
def export_transactions():
    body = transactions_service.export_transactions(_filters_from_args(paginated=False))
    return Response(
        body,
        mimetype="application/json",
        headers={"Content-Disposition": "attachment; filename=transactions.json"},
    )


@transactions_bp.get("/by-reference/<string:external_id>")
def get_by_transaction_id(external_id):
    return transactions_service.get_transaction_by_transaction_id(external_id)


@transactions_bp.post("/refunds")
def create_refund():
    payload = _json_body()
    refund = transactions_service.create_refund(
        payload.get("transaction_id"),
        payload.get("amount"),
        payload.get("cashier_id"),
        reason=payload.get("reason"),
    )
    return refund, 201


@transactions_bp.get("/<int:transaction_pk>")
def get_transaction(transaction_pk):
    return transactions_service.get_transaction(transaction_pk)


@transactions_bp.patch("/<int:transaction_pk>")
def update_transaction(transaction_pk):
    update = TransactionUpdate.from_payload(_json_body())
    return transactions_service.update_transaction(transaction_pk, update)


@transactions_bp.post("/<int:transaction_pk>/void")
def void_transaction(transaction_pk):
    return transactions_service.void_transaction(transaction_pk)


@transactions_bp.delete("/<int:transaction_pk>")
def delete_transaction(transaction_pk):
    if not transactions_service.delete_transaction(transaction_pk):
        return {"error": f"Transaction {transaction_pk} not found"}, 404
    return {"deleted": True}


@transactions_bp.get("/<int:transaction_pk>/line-items")
def line_items(transaction_pk):
    transactions_service.get_transaction(transaction_pk)
    items = transactions_service.line_items_with_product(transaction_pk)
    return {"items": items, "count": len(items)}
