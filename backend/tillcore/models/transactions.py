from __future__ import annotations

from ..extensions import db
from ..serialization import (
    decode_items,
    decode_metrics,
    decode_payments,
    decode_receipt_options,
    decode_selected_variants,
)
from ..time_utils import format_utc

RECEIPT_STATUSES = ("issued", "pending", "void")
TRANSACTION_STATUSES = ("completed", "pending", "canceled")
TRANSACTION_TYPES = ("sale", "refund", "return")
PAYMENT_TYPES = ("cash", "card", "mobile", "link", "account", "split")


def _in_check(column: str, values: tuple[str, ...]) -> str:
    quoted = ", ".join(f"'{v}'" for v in values)
    return f"{column} IN ({quoted})"


class Transaction(db.Model):
    """
    One commercial event (sale, refund or return).

    Append-only once committed: after creation only status, receipt_status
    and additional_metrics may change (see TransactionUpdate).

    items / payment_methods / receipt_options / additional_metrics are JSON
    blobs; decoding happens in to_dict() via tillcore.serialization so that
    create() and every read share the same path.
    """
    __tablename__ = "transactions"
    __table_args__ = (
        db.CheckConstraint("subtotal >= 0", name="ck_transactions_subtotal"),
        db.CheckConstraint("tax >= 0", name="ck_transactions_tax"),
        db.CheckConstraint("discount >= 0", name="ck_transactions_discount"),
        db.CheckConstraint("total_amount >= 0", name="ck_transactions_total"),
        db.CheckConstraint('"change" >= 0', name="ck_transactions_change"),
        db.CheckConstraint(_in_check("receipt_status", RECEIPT_STATUSES), name="ck_transactions_receipt_status"),
        db.CheckConstraint(_in_check("status", TRANSACTION_STATUSES), name="ck_transactions_status"),
        db.CheckConstraint(_in_check("type", TRANSACTION_TYPES), name="ck_transactions_type"),
        db.Index("idx_transactions_cashier", "cashier_id"),
        db.Index("idx_transactions_created_at", "created_at"),
        db.Index("idx_transactions_status", "status"),
        db.Index("idx_transactions_type", "type"),
        db.Index("idx_transactions_order_id", "order_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    cashier_id = db.Column(db.String(64), nullable=False)
    transaction_id = db.Column(db.String(64), nullable=False, unique=True)
    order_id = db.Column(db.String(64), nullable=True)

    items = db.Column(db.Text, nullable=False)
    payment_methods = db.Column(db.Text, nullable=False)

    subtotal = db.Column(db.Float, nullable=False)
    tax = db.Column(db.Float, nullable=False)
    discount = db.Column(db.Float, nullable=False, default=0)
    total_amount = db.Column(db.Float, nullable=False)
    change = db.Column(db.Float, nullable=False, default=0)

    customer_name = db.Column(db.String(255), nullable=True)
    receipt_status = db.Column(db.String(16), nullable=False, default="issued")
    receipt_options = db.Column(db.Text, nullable=True)
    status = db.Column(db.String(16), nullable=False, default="completed")
    type = db.Column(db.String(16), nullable=False, default="sale")

    currency = db.Column(db.String(8), nullable=False, default="ZAR")
    currency_symbol = db.Column(db.String(8), nullable=False, default="R")
    additional_metrics = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    line_items = db.relationship(
        "TransactionLineItem",
        backref="transaction",
        lazy=True,
        passive_deletes=True,
    )

    def __repr__(self) -> str:
        return f"<Transaction id={self.id} transaction_id={self.transaction_id!r} type={self.type}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "cashier_id": self.cashier_id,
            "transaction_id": self.transaction_id,
            "order_id": self.order_id,
            "items": decode_items(self.items),
            "payment_methods": decode_payments(self.payment_methods),
            "subtotal": self.subtotal,
            "tax": self.tax,
            "discount": self.discount,
            "total_amount": self.total_amount,
            "change": self.change,
            "customer_name": self.customer_name,
            "receipt_status": self.receipt_status,
            "receipt_options": decode_receipt_options(self.receipt_options),
            "status": self.status,
            "type": self.type,
            "currency": self.currency,
            "currency_symbol": self.currency_symbol,
            "additional_metrics": decode_metrics(self.additional_metrics),
            "created_at": format_utc(self.created_at),
            "updated_at": format_utc(self.updated_at),
        }


class TransactionLineItem(db.Model):
    """
    Normalized copy of a transaction's items, used for analytics joins.

    product_id is intentionally not a foreign key: removing a product from
    the catalog must not rewrite sales history; joins simply yield nulls.
    """
    __tablename__ = "transaction_items"
    __table_args__ = (
        db.CheckConstraint("quantity > 0", name="ck_transaction_items_quantity"),
        db.Index("idx_transaction_items_transaction", "transaction_id"),
        db.Index("idx_transaction_items_product", "product_id"),
        db.Index("idx_transaction_items_created_at", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    transaction_id = db.Column(
        db.Integer,
        db.ForeignKey("transactions.id", ondelete="CASCADE"),
        nullable=False,
    )
    product_id = db.Column(db.String(64), nullable=False)
    quantity = db.Column(db.Integer, nullable=False)
    unit_price = db.Column(db.Float, nullable=False)
    variant_price = db.Column(db.Float, nullable=False, default=0)
    calculated_price = db.Column(db.Float, nullable=False)
    total_price = db.Column(db.Float, nullable=False)
    selected_variants = db.Column(db.Text, nullable=True)
    notes = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "transaction_id": self.transaction_id,
            "product_id": self.product_id,
            "quantity": self.quantity,
            "unit_price": self.unit_price,
            "variant_price": self.variant_price,
            "calculated_price": self.calculated_price,
            "total_price": self.total_price,
            "selected_variants": decode_selected_variants(self.selected_variants),
            "notes": self.notes,
            "created_at": format_utc(self.created_at),
        }
