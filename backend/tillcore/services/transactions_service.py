# Overview: Service-layer operations for sales, refunds and returns plus their line items.

"""
Transaction Store

Records are append-only once committed. After creation only the fields on
TransactionUpdate may change.

Items are persisted twice:
- embedded as JSON in transactions.items (whole-transaction reads)
- normalized into transaction_items (analytics joins)
The normalized copy is best-effort: save_line_items() raises StorageError
and the checkout decides what to do with it.
"""
from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass, fields
from datetime import datetime

from flask import current_app
from sqlalchemy import and_, case, func, or_

from ..errors import NotFoundError, StorageError, ValidationError
from ..extensions import storage_operation
from ..models import (
    PAYMENT_TYPES,
    RECEIPT_STATUSES,
    TRANSACTION_STATUSES,
    TRANSACTION_TYPES,
    Product,
    Transaction,
    TransactionLineItem,
)
from ..serialization import (
    encode_items,
    encode_metrics,
    encode_payments,
    encode_receipt_options,
    encode_selected_variants,
)
from ..time_utils import epoch_millis, format_utc, parse_utc, utcnow
from ..validation import (
    optional_text,
    require_choice,
    require_int,
    require_number,
    require_text,
)

logger = logging.getLogger(__name__)

MONEY_FIELDS = ("subtotal", "tax", "discount", "total_amount", "change")


@dataclass(frozen=True)
class TransactionFilters:
    cashier_id: str | None = None
    status: str | None = None
    type: str | None = None
    date_from: datetime | str | None = None
    date_to: datetime | str | None = None
    limit: int | None = None
    offset: int = 0


@dataclass(frozen=True)
class TransactionUpdate:
    """Post-commit changes a transaction accepts. None means "leave unchanged"."""
    status: str | None = None
    receipt_status: str | None = None
    additional_metrics: dict | None = None

    def changes(self) -> dict:
        out = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if value is not None:
                out[f.name] = value
        return out

    @classmethod
    def from_payload(cls, payload: dict) -> "TransactionUpdate":
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(payload) - known)
        if unknown:
            raise ValidationError(f"Fields cannot be updated: {', '.join(unknown)}")
        return cls(**payload)


def generate_transaction_id(prefix: str = "TXN") -> str:
    return f"{prefix}-{epoch_millis()}-{uuid.uuid4().hex[:9]}"


# =============================================================================
# VALIDATION
# =============================================================================

def _validate_item(index: int, item) -> None:
    where = f"items[{index}]"
    if not isinstance(item, dict):
        raise ValidationError(f"{where} must be an object", "items")
    if not item.get("id") or not item.get("name"):
        raise ValidationError(f"{where} is missing required fields (id, name)", "items")
    require_number(item.get("price"), f"{where}.price")
    require_int(item.get("quantity"), f"{where}.quantity", strict=True)


def _validate_payment(index: int, payment) -> None:
    where = f"payment_methods[{index}]"
    if not isinstance(payment, dict):
        raise ValidationError(f"{where} must be an object", "payment_methods")
    require_choice(payment.get("type"), f"{where}.type", PAYMENT_TYPES)
    require_number(payment.get("amount"), f"{where}.amount", strict=True)


def _optional_object(value, field: str) -> dict | None:
    if value is None:
        return None
    if not isinstance(value, dict):
        raise ValidationError(f"{field} must be an object", field)
    return value


def validate_transaction_input(data: dict) -> dict:
    """
    Check a create request and return column values ready to persist.

    Nothing is written when this raises, so a failed create leaves no trace.
    """
    if not isinstance(data, dict):
        raise ValidationError("Transaction must be an object")
    config = current_app.config

    tx_type = require_choice(data.get("type", "sale"), "type", TRANSACTION_TYPES)

    items = data.get("items")
    if items is None:
        items = []
    if not isinstance(items, list):
        raise ValidationError("items must be a list", "items")
    if tx_type == "sale" and not items:
        raise ValidationError("Transaction must contain at least one item", "items")
    for index, item in enumerate(items):
        _validate_item(index, item)

    payments = data.get("payment_methods")
    if not isinstance(payments, list) or not payments:
        raise ValidationError("Transaction must contain at least one payment method", "payment_methods")
    for index, payment in enumerate(payments):
        _validate_payment(index, payment)

    columns = {
        "cashier_id": require_text(data.get("cashier_id"), "cashier_id"),
        "transaction_id": require_text(data.get("transaction_id"), "transaction_id"),
        "order_id": optional_text(data.get("order_id"), "order_id"),
        "items": encode_items(items),
        "payment_methods": encode_payments(payments),
        "customer_name": optional_text(data.get("customer_name"), "customer_name"),
        "receipt_status": require_choice(data.get("receipt_status", "issued"), "receipt_status", RECEIPT_STATUSES),
        "receipt_options": encode_receipt_options(_optional_object(data.get("receipt_options"), "receipt_options")),
        "status": require_choice(data.get("status", "completed"), "status", TRANSACTION_STATUSES),
        "type": tx_type,
        "currency": require_text(data.get("currency", config["CURRENCY_CODE"]), "currency"),
        "currency_symbol": require_text(data.get("currency_symbol", config["CURRENCY_SYMBOL"]), "currency_symbol"),
        "additional_metrics": encode_metrics(_optional_object(data.get("additional_metrics"), "additional_metrics")),
    }
    for name in MONEY_FIELDS:
        default = 0 if name in ("discount", "change") else None
        columns[name] = require_number(data.get(name, default), name)
    return columns


# =============================================================================
# CRUD
# =============================================================================

def create_transaction(data: dict) -> dict:
    """
    Persist one transaction and return it decoded through the read path.

    Raises:
        ValidationError: malformed input (message names the field/item index)
        StorageError: storage failure, including a duplicate transaction_id
    """
    columns = validate_transaction_input(data)
    now = utcnow()
    with storage_operation("Failed to create transaction") as session:
        transaction = Transaction(**columns, created_at=now, updated_at=now)
        session.add(transaction)
        session.commit()
        session.refresh(transaction)
        result = transaction.to_dict()
    logger.info("Created %s %s for %.2f", result["type"], result["transaction_id"], result["total_amount"])
    return result


def get_transaction(transaction_pk: int) -> dict:
    with storage_operation("Failed to load transaction") as session:
        transaction = session.get(Transaction, transaction_pk)
        if transaction is None:
            raise NotFoundError(f"Transaction {transaction_pk} not found")
        return transaction.to_dict()


def get_transaction_by_transaction_id(external_id: str) -> dict:
    with storage_operation("Failed to load transaction") as session:
        transaction = session.query(Transaction).filter(Transaction.transaction_id == external_id).first()
        if transaction is None:
            raise NotFoundError(f"Transaction {external_id} not found")
        return transaction.to_dict()


def count_transactions() -> int:
    with storage_operation("Failed to count transactions") as session:
        return session.query(func.count(Transaction.id)).scalar() or 0


def _apply_filters(query, filters: TransactionFilters):
    if filters.cashier_id:
        query = query.filter(Transaction.cashier_id == filters.cashier_id)
    if filters.status:
        query = query.filter(Transaction.status == filters.status)
    if filters.type:
        query = query.filter(Transaction.type == filters.type)
    date_from = parse_utc(filters.date_from, "date_from")
    if date_from is not None:
        query = query.filter(Transaction.created_at >= date_from)
    date_to = parse_utc(filters.date_to, "date_to")
    if date_to is not None:
        query = query.filter(Transaction.created_at <= date_to)
    return query


def list_transactions(filters: TransactionFilters | None = None) -> list[dict]:
    """Conjunctive filters, newest first."""
    filters = filters or TransactionFilters()
    with storage_operation("Failed to list transactions") as session:
        query = _apply_filters(session.query(Transaction), filters)
        query = query.order_by(Transaction.created_at.desc(), Transaction.id.desc())
        if filters.offset:
            query = query.offset(filters.offset)
        if filters.limit is not None:
            query = query.limit(filters.limit)
        return [t.to_dict() for t in query.all()]


def update_transaction(transaction_pk: int, update: TransactionUpdate) -> dict:
    changes = update.changes()
    if not changes:
        raise ValidationError("No fields to update")
    if "status" in changes:
        require_choice(changes["status"], "status", TRANSACTION_STATUSES)
    if "receipt_status" in changes:
        require_choice(changes["receipt_status"], "receipt_status", RECEIPT_STATUSES)
    if "additional_metrics" in changes:
        changes["additional_metrics"] = encode_metrics(
            _optional_object(changes["additional_metrics"], "additional_metrics")
        )

    with storage_operation("Failed to update transaction") as session:
        transaction = session.get(Transaction, transaction_pk)
        if transaction is None:
            raise NotFoundError(f"Transaction {transaction_pk} not found")
        for key, value in changes.items():
            setattr(transaction, key, value)
        transaction.updated_at = utcnow()
        session.commit()
        return transaction.to_dict()


def void_transaction(transaction_pk: int) -> dict:
    return update_transaction(transaction_pk, TransactionUpdate(status="canceled", receipt_status="void"))


def delete_transaction(transaction_pk: int) -> bool:
    """Hard delete; line items go with it (ON DELETE CASCADE)."""
    with storage_operation("Failed to delete transaction") as session:
        deleted = session.query(Transaction).filter(Transaction.id == transaction_pk).delete(
            synchronize_session=False
        )
        session.commit()
    return deleted > 0


# =============================================================================
# AGGREGATES
# =============================================================================

def transaction_stats(filters: TransactionFilters | None = None) -> dict:
    filters = filters or TransactionFilters()
    with storage_operation("Failed to load transaction statistics") as session:
        query = session.query(
            func.count(Transaction.id),
            func.coalesce(func.sum(Transaction.total_amount), 0.0),
            func.coalesce(func.sum(Transaction.discount), 0.0),
            func.coalesce(func.avg(Transaction.total_amount), 0.0),
        )
        count, total_sales, total_discount, average = _apply_filters(query, filters).one()
    return {
        "total_transactions": int(count),
        "total_sales": float(total_sales),
        "total_discount": float(total_discount),
        "average_transaction": float(average),
    }


def sales_summary(filters: TransactionFilters | None = None) -> dict:
    """Completed sales against completed refunds/returns over the filtered set."""
    filters = filters or TransactionFilters()
    completed = Transaction.status == "completed"
    is_sale = and_(completed, Transaction.type == "sale")
    is_refund = and_(completed, Transaction.type.in_(("refund", "return")))
    with storage_operation("Failed to load sales summary") as session:
        query = session.query(
            func.coalesce(func.sum(case((is_sale, Transaction.total_amount), else_=0.0)), 0.0),
            func.coalesce(func.sum(case((is_refund, Transaction.total_amount), else_=0.0)), 0.0),
            func.coalesce(func.sum(case((is_sale, 1), else_=0)), 0),
            func.count(Transaction.id),
            func.coalesce(func.sum(case((is_sale, Transaction.discount), else_=0.0)), 0.0),
        )
        sales, refunds, sale_count, count, discount = _apply_filters(query, filters).one()

    sales, refunds = float(sales), float(refunds)
    return {
        "total_sales": sales,
        "total_refunds": refunds,
        "net_sales": sales - refunds,
        "transaction_count": int(count),
        "sale_count": int(sale_count),
        "average_transaction": sales / sale_count if sale_count else 0.0,
        "total_discount": float(discount),
    }


def search_transactions(term: str, limit: int = 50) -> list[dict]:
    """Case-insensitive match on transaction id, customer name or item contents."""
    term = (term or "").strip()
    if not term:
        return []
    pattern = f"%{term}%"
    with storage_operation("Failed to search transactions") as session:
        rows = (
            session.query(Transaction)
            .filter(
                or_(
                    Transaction.transaction_id.ilike(pattern),
                    Transaction.customer_name.ilike(pattern),
                    Transaction.items.ilike(pattern),
                )
            )
            .order_by(Transaction.created_at.desc(), Transaction.id.desc())
            .limit(limit)
            .all()
        )
        return [t.to_dict() for t in rows]


def export_transactions(filters: TransactionFilters | None = None) -> str:
    return json.dumps(list_transactions(filters), indent=2)


# =============================================================================
# LINE ITEMS & ANALYTICS
# =============================================================================

def save_line_items(transaction_pk: int, items: list[dict]) -> int:
    """
    Insert the normalized rows for one transaction in a single commit.

    Raises StorageError on failure; the parent transaction is untouched.
    """
    with storage_operation("Failed to save transaction line items") as session:
        if session.get(Transaction, transaction_pk) is None:
            raise NotFoundError(f"Transaction {transaction_pk} not found")
        now = utcnow()
        for item in items:
            unit_price = float(item["price"])
            variant_price = float(item.get("variant_price") or 0)
            calculated = float(item.get("calculated_price", round(unit_price + variant_price, 2)))
            quantity = int(item["quantity"])
            session.add(
                TransactionLineItem(
                    transaction_id=transaction_pk,
                    product_id=str(item["id"]),
                    quantity=quantity,
                    unit_price=unit_price,
                    variant_price=variant_price,
                    calculated_price=calculated,
                    total_price=float(item.get("total_price", round(calculated * quantity, 2))),
                    selected_variants=encode_selected_variants(item.get("selected_variants")),
                    notes=item.get("notes"),
                    created_at=now,
                )
            )
        session.commit()
    return len(items)


def line_items_with_product(transaction_pk: int) -> list[dict]:
    """Line items joined to the current catalog; removed products give null fields."""
    with storage_operation("Failed to load transaction line items") as session:
        rows = (
            session.query(
                TransactionLineItem,
                Product.name,
                Product.category,
                Product.image,
                Product.brand,
            )
            .outerjoin(Product, Product.id == TransactionLineItem.product_id)
            .filter(TransactionLineItem.transaction_id == transaction_pk)
            .order_by(TransactionLineItem.id.asc())
            .all()
        )
    out = []
    for line_item, name, category, image, brand in rows:
        row = line_item.to_dict()
        row.update({
            "product_name": name,
            "product_category": category,
            "product_image": image,
            "product_brand": brand,
        })
        out.append(row)
    return out


def _empty_analytics(product_id: str) -> dict:
    return {
        "product_id": product_id,
        "total_sold": 0,
        "total_revenue": 0.0,
        "average_order_value": 0.0,
        "last_sold": None,
    }


def product_analytics(product_id: str) -> dict:
    """Sales aggregates for one product. Falls back to zeros if the query fails."""
    try:
        with storage_operation("Failed to load product analytics") as session:
            sold, revenue, orders, last_sold = (
                session.query(
                    func.coalesce(func.sum(TransactionLineItem.quantity), 0),
                    func.coalesce(func.sum(TransactionLineItem.total_price), 0.0),
                    func.count(func.distinct(TransactionLineItem.transaction_id)),
                    func.max(TransactionLineItem.created_at),
                )
                .filter(TransactionLineItem.product_id == product_id)
                .one()
            )
    except StorageError:
        logger.warning("Analytics unavailable for product %s; returning zeros", product_id)
        return _empty_analytics(product_id)

    revenue = float(revenue)
    return {
        "product_id": product_id,
        "total_sold": int(sold),
        "total_revenue": revenue,
        "average_order_value": revenue / orders if orders else 0.0,
        "last_sold": format_utc(last_sold),
    }


# =============================================================================
# REFUNDS
# =============================================================================

def create_refund(original_transaction_id: str, amount, cashier_id: str, reason: str | None = None) -> dict:
    """Record a cash refund against an existing transaction."""
    original = get_transaction_by_transaction_id(original_transaction_id)
    amount = require_number(amount, "amount", strict=True)
    if amount > original["total_amount"]:
        raise ValidationError("Refund cannot exceed the original transaction total", "amount")

    metrics = {"original_transaction_id": original_transaction_id}
    if reason:
        metrics["reason"] = reason
    return create_transaction({
        "cashier_id": cashier_id,
        "transaction_id": generate_transaction_id("REF"),
        "order_id": original["order_id"],
        "items": [],
        "payment_methods": [{"type": "cash", "amount": amount}],
        "subtotal": amount,
        "tax": 0,
        "discount": 0,
        "total_amount": amount,
        "change": 0,
        "customer_name": original["customer_name"],
        "type": "refund",
        "currency": original["currency"],
        "currency_symbol": original["currency_symbol"],
        "additional_metrics": metrics,
    })
