from __future__ import annotations

from ..extensions import db
from ..serialization import decode_variants
from ..time_utils import format_utc


class Product(db.Model):
    """
    Catalog entry; the catalog of record for the till.

    STOCK PROJECTION:
    in_stock is a cached projection of stock_quantity > 0. It is never
    written directly; products_service recomputes it on every mutation.

    VARIANTS:
    Stored as a JSON blob grouped by kind, e.g.
        {"sizes": [{"name": "Large", "price": 1.0}], "flavors": [...]}
    NULL means the product has no variants.
    """
    __tablename__ = "products"
    __table_args__ = (
        db.CheckConstraint("price >= 0", name="ck_products_price_non_negative"),
        db.CheckConstraint("stock_quantity >= 0", name="ck_products_stock_non_negative"),
        db.Index("idx_products_category", "category"),
        db.Index("idx_products_name", "name"),
        db.Index("idx_products_in_stock", "in_stock"),
        db.Index("idx_products_price", "price"),
    )

    id = db.Column(db.String(64), primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    category = db.Column(db.String(128), nullable=False)
    price = db.Column(db.Float, nullable=False)
    image = db.Column(db.Text, nullable=True)
    description = db.Column(db.Text, nullable=True)
    badge = db.Column(db.String(64), nullable=True)
    variants = db.Column(db.Text, nullable=True)
    in_stock = db.Column(db.Boolean, nullable=False, default=True)
    stock_quantity = db.Column(db.Integer, nullable=False, default=0)

    # Merchandising metadata (added to legacy tables by revision 0001)
    barcode = db.Column(db.String(128), nullable=True)
    qr_code = db.Column(db.Text, nullable=True)
    reorder_qty = db.Column(db.Integer, nullable=True, default=10)
    max_buy_qty = db.Column(db.Integer, nullable=True, default=100)
    min_buy_qty = db.Column(db.Integer, nullable=True, default=1)
    reseller_name = db.Column(db.String(255), nullable=True)
    brand = db.Column(db.String(128), nullable=True)
    information = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=True, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=True, server_default=db.func.now())

    def __repr__(self) -> str:
        return f"<Product id={self.id!r} name={self.name!r} stock={self.stock_quantity}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "category": self.category,
            "price": self.price,
            "image": self.image,
            "description": self.description,
            "badge": self.badge,
            "variants": decode_variants(self.variants),
            "in_stock": bool(self.in_stock),
            "stock_quantity": self.stock_quantity,
            "barcode": self.barcode,
            "qr_code": self.qr_code,
            "reorder_qty": self.reorder_qty,
            "max_buy_qty": self.max_buy_qty,
            "min_buy_qty": self.min_buy_qty,
            "reseller_name": self.reseller_name,
            "brand": self.brand,
            "information": self.information,
            "created_at": format_utc(self.created_at),
            "updated_at": format_utc(self.updated_at),
        }
