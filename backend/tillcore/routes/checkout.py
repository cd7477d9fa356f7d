# Overview: Flask API routes driving the per-till checkout state machine.

"""
Checkout routes.

Every endpoint returns the checkout projection so the till can redraw from
a single response. Illegal transitions come back as 409 (CheckoutError),
a refused settlement includes the signed shortfall in "details".

POST /confirm returns:
- 201 with the settlement on success
- 202 with a manual-entry notice when the payment was captured but could
  not be saved (handled in routes/errors.py)
"""
from __future__ import annotations

from flask import Blueprint, current_app, request

from ..errors import ValidationError
from ..services import products_service
from ..services.checkout_service import get_checkout_registry

checkout_bp = Blueprint("checkout", __name__, url_prefix="/api/checkout")


def _payload() -> dict:
    payload = request.get_json(silent=True)
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        raise ValidationError("Request body must be a JSON object")
    return payload


def _checkout(till_id: str):
    cashier_id = request.headers.get("X-Cashier-Id")
    return get_checkout_registry().get(till_id, cashier_id=cashier_id)


@checkout_bp.get("/manual-entries")
def manual_entries():
    """Captured payments that still need to be keyed in by hand."""
    entries = get_checkout_registry().pending_manual_entries()
    return {"items": entries, "count": len(entries)}


@checkout_bp.get("/<string:till_id>")
def get_checkout(till_id):
    return _checkout(till_id).projection()


@checkout_bp.post("/<string:till_id>/items")
def add_item(till_id):
    """
    Add a catalog product to the cart.

    Body: {"product_id": str, "quantity": int, "selected_variants": {...}, "notes": str}
    """
    payload = _payload()
    product_id = payload.get("product_id")
    if not product_id:
        raise ValidationError("product_id is required", "product_id")
    product = products_service.get_product(product_id)
    checkout = _checkout(till_id)
    checkout.add_item(
        product,
        quantity=payload.get("quantity", 1),
        selected_variants=payload.get("selected_variants"),
        notes=payload.get("notes"),
    )
    return checkout.projection(), 201


@checkout_bp.patch("/<string:till_id>/items/<string:line_id>")
def update_item(till_id, line_id):
    checkout = _checkout(till_id)
    checkout.update_quantity(line_id, _payload().get("quantity"))
    return checkout.projection()


@checkout_bp.delete("/<string:till_id>/items/<string:line_id>")
def remove_item(till_id, line_id):
    checkout = _checkout(till_id)
    checkout.remove_item(line_id)
    return checkout.projection()


@checkout_bp.post("/<string:till_id>/discount")
def apply_discount(till_id):
    checkout = _checkout(till_id)
    checkout.apply_discount(_payload().get("amount"))
    return checkout.projection()


@checkout_bp.post("/<string:till_id>/customer")
def set_customer(till_id):
    checkout = _checkout(till_id)
    checkout.set_customer_name(_payload().get("name"))
    return checkout.projection()


@checkout_bp.post("/<string:till_id>/begin")
def begin(till_id):
    checkout = _checkout(till_id)
    checkout.begin()
    return checkout.projection()


@checkout_bp.post("/<string:till_id>/method")
def select_method(till_id):
    checkout = _checkout(till_id)
    checkout.select_method(_payload().get("method"))
    return checkout.projection()


@checkout_bp.post("/<string:till_id>/tendered")
def enter_tendered(till_id):
    checkout = _checkout(till_id)
    checkout.enter_tendered(_payload().get("amount"))
    return checkout.projection()


@checkout_bp.post("/<string:till_id>/split")
def edit_split(till_id):
    """
    Body: {"cash": amount} or {"card": amount} auto-balances the other leg;
    both keys set the legs as given.
    """
    payload = _payload()
    checkout = _checkout(till_id)
    if "cash" in payload and "card" in payload:
        checkout.set_split(payload["cash"], payload["card"])
    elif "cash" in payload:
        checkout.set_split_cash(payload["cash"])
    elif "card" in payload:
        checkout.set_split_card(payload["card"])
    else:
        raise ValidationError("Provide a cash and/or card amount", "split")
    return checkout.projection()


@checkout_bp.post("/<string:till_id>/receipt")
def set_receipt(till_id):
    payload = _payload()
    checkout = _checkout(till_id)
    checkout.set_receipt_options(
        print_receipt=payload.get("print", False),
        sms=payload.get("sms", False),
        email=payload.get("email", False),
        phone=payload.get("phone"),
        email_address=payload.get("email_address"),
    )
    return checkout.projection()


@checkout_bp.post("/<string:till_id>/confirm")
def confirm(till_id):
    checkout = _checkout(till_id)
    result = checkout.confirm()
    if not result.line_items.ok:
        current_app.logger.warning(
            "Sale %s committed without analytics line items",
            result.transaction["transaction_id"],
        )
    return {"settlement": result.to_dict(), "checkout": checkout.projection()}, 201


@checkout_bp.post("/<string:till_id>/cancel")
def cancel(till_id):
    checkout = _checkout(till_id)
    checkout.cancel()
    return checkout.projection()


@checkout_bp.post("/<string:till_id>/reset")
def reset(till_id):
    checkout = _checkout(till_id)
    checkout.reset()
    return checkout.projection()
