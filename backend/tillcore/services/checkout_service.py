# Overview: Cart and checkout state machine that turns a cart into a committed transaction.

"""
Checkout Orchestrator

States:

    IDLE -> AWAITING_METHOD_SELECTION -> CASH_INPUT ---------------\
                                      -> CARD_PENDING -------------+-> SETTLING -> COMMITTED
                                      -> SPLIT_INPUT -> (SPLIT_CASH_PROCESSING
                                                         -> SPLIT_CARD_PROCESSING) -/

cancel() returns to IDLE from any state before SETTLING.

MONEY:
All arithmetic uses Decimal quantized to cents (ROUND_HALF_UP). Values are
converted to float only when handed to the transaction store.

DEGRADED COMMIT:
Once a payment is captured it is never discarded. If anything fails while
recording the sale during SETTLING, the checkout logs and hands a
ManualEntryNotice to the notifier, clears the cart for the next sale,
returns to IDLE and raises DegradedCommitError carrying the same notice.

PARTIAL CAPTURE:
When a split leg fails after an earlier leg was captured, the captured leg
is held and reused by the next confirm. Held legs that end up unused (the
amounts changed, or the checkout was cancelled) go to the notifier as a
reversal notice.
"""
from __future__ import annotations

import logging
import re
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from enum import Enum
from typing import Callable

from flask import current_app

from ..errors import (
    CheckoutError,
    DegradedCommitError,
    NotFoundError,
    NotInitializedError,
    PaymentDeclined,
    ReceiptValidationError,
    SettlementRefused,
    StorageError,
    ValidationError,
)
from ..time_utils import epoch_millis, format_utc, utcnow
from ..validation import require_int, require_text
from . import transactions_service
from .payment_service import TENDER_CARD, TENDER_CASH, Capture, PaymentGateway, SimulatedGateway
from .results import BestEffortResult

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
ZERO = Decimal("0.00")

PHONE_PATTERN = re.compile(r"^(\+27|0)[6-8][0-9]{8}$")
EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

# selected_variants kind -> product.variants group
VARIANT_GROUPS = {"size": "sizes", "flavor": "flavors", "color": "colors"}


def to_money(value, field: str = "amount") -> Decimal:
    if isinstance(value, bool) or value is None:
        raise ValidationError(f"{field} must be a number", field)
    try:
        amount = Decimal(str(value).strip())
    except InvalidOperation:
        raise ValidationError(f"{field} must be a number", field)
    if not amount.is_finite():
        raise ValidationError(f"{field} must be a finite number", field)
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def format_money(symbol: str, amount: Decimal) -> str:
    return f"{symbol}{amount:.2f}"


class CheckoutState(str, Enum):
    IDLE = "idle"
    AWAITING_METHOD_SELECTION = "awaiting_method_selection"
    CASH_INPUT = "cash_input"
    CARD_PENDING = "card_pending"
    SPLIT_INPUT = "split_input"
    SPLIT_CASH_PROCESSING = "split_cash_processing"
    SPLIT_CARD_PROCESSING = "split_card_processing"
    SETTLING = "settling"
    COMMITTED = "committed"


INPUT_STATES = (CheckoutState.CASH_INPUT, CheckoutState.CARD_PENDING, CheckoutState.SPLIT_INPUT)
PRE_SETTLING_STATES = (CheckoutState.IDLE, CheckoutState.AWAITING_METHOD_SELECTION, *INPUT_STATES)
METHOD_STATES = {
    "cash": CheckoutState.CASH_INPUT,
    "card": CheckoutState.CARD_PENDING,
    "split": CheckoutState.SPLIT_INPUT,
}


# =============================================================================
# CART
# =============================================================================

def variant_delta(variants: dict | None, selected: dict | None) -> Decimal:
    """Sum of the price deltas of the selected size/flavor/color options."""
    total = ZERO
    for kind, choice in (selected or {}).items():
        if choice in (None, ""):
            continue
        group = (variants or {}).get(VARIANT_GROUPS.get(kind, f"{kind}s")) or []
        match = next((opt for opt in group if opt.get("name") == choice), None)
        if match is None:
            raise ValidationError(f"Unknown {kind} option: {choice}", "selected_variants")
        total += to_money(match.get("price", 0), f"{kind}.price")
    return total


@dataclass
class CartLine:
    product_id: str
    name: str
    price: Decimal
    quantity: int
    variant_price: Decimal = ZERO
    selected_variants: dict | None = None
    notes: str | None = None
    badge: str | None = None
    image: str | None = None
    category: str | None = None
    line_id: str = field(default_factory=lambda: uuid.uuid4().hex[:8])

    @property
    def calculated_price(self) -> Decimal:
        return self.price + self.variant_price

    @property
    def total_price(self) -> Decimal:
        return (self.calculated_price * self.quantity).quantize(CENT, rounding=ROUND_HALF_UP)

    def snapshot(self) -> dict:
        """Item as embedded in the transaction record."""
        item = {
            "id": self.product_id,
            "name": self.name,
            "price": float(self.price),
            "quantity": self.quantity,
            "variant_price": float(self.variant_price),
            "calculated_price": float(self.calculated_price),
            "total_price": float(self.total_price),
        }
        optional = {
            "selected_variants": self.selected_variants,
            "notes": self.notes,
            "badge": self.badge,
            "image": self.image,
            "category": self.category,
        }
        item.update({k: v for k, v in optional.items() if v is not None})
        return item

    def to_dict(self) -> dict:
        return {"line_id": self.line_id, **self.snapshot()}


class Cart:
    def __init__(self):
        self.lines: list[CartLine] = []
        self.discount = ZERO
        self.customer_name: str | None = None

    def add_item(
        self,
        product: dict,
        quantity: int = 1,
        selected_variants: dict | None = None,
        notes: str | None = None,
        badge: str | None = None,
    ) -> CartLine:
        """Add a product; identical product + variants merges into one line."""
        quantity = require_int(quantity, "quantity", strict=True)
        product_id = require_text(str(product.get("id") or ""), "id")
        price = to_money(product.get("price"), "price")
        if price < 0:
            raise ValidationError("price cannot be negative", "price")
        selected = {k: v for k, v in (selected_variants or {}).items() if v not in (None, "")} or None
        delta = variant_delta(product.get("variants"), selected)

        for line in self.lines:
            if line.product_id == product_id and line.selected_variants == selected:
                line.quantity += quantity
                return line

        line = CartLine(
            product_id=product_id,
            name=require_text(product.get("name"), "name"),
            price=price,
            quantity=quantity,
            variant_price=delta,
            selected_variants=selected,
            notes=notes,
            badge=badge or product.get("badge"),
            image=product.get("image"),
            category=product.get("category"),
        )
        self.lines.append(line)
        return line

    def _line(self, line_id: str) -> CartLine:
        for line in self.lines:
            if line.line_id == line_id:
                return line
        raise NotFoundError(f"Cart line {line_id} not found")

    def update_quantity(self, line_id: str, quantity: int) -> None:
        quantity = require_int(quantity, "quantity")
        line = self._line(line_id)
        if quantity == 0:
            self.lines.remove(line)
        else:
            line.quantity = quantity

    def remove_item(self, line_id: str) -> None:
        self.lines.remove(self._line(line_id))

    def apply_discount(self, amount) -> None:
        discount = to_money(amount, "discount")
        if discount < 0:
            raise ValidationError("discount cannot be negative", "discount")
        self.discount = discount

    def set_customer_name(self, name: str | None) -> None:
        self.customer_name = (name or "").strip() or None

    @property
    def is_empty(self) -> bool:
        return not self.lines

    @property
    def item_count(self) -> int:
        return sum(line.quantity for line in self.lines)

    @property
    def subtotal(self) -> Decimal:
        return sum((line.total_price for line in self.lines), ZERO)

    def clear(self) -> None:
        self.lines.clear()
        self.discount = ZERO
        self.customer_name = None

    def to_dict(self) -> dict:
        return {
            "lines": [line.to_dict() for line in self.lines],
            "item_count": self.item_count,
            "subtotal": str(self.subtotal),
            "discount": str(self.discount),
            "customer_name": self.customer_name,
        }


# =============================================================================
# CHECKOUT RECORDS
# =============================================================================

@dataclass(frozen=True)
class Totals:
    subtotal: Decimal
    tax: Decimal
    discount: Decimal
    total: Decimal

    @classmethod
    def for_cart(cls, cart: Cart, tax_rate: Decimal) -> "Totals":
        subtotal = cart.subtotal
        tax = (subtotal * tax_rate).quantize(CENT, rounding=ROUND_HALF_UP)
        return cls(subtotal=subtotal, tax=tax, discount=cart.discount, total=subtotal + tax - cart.discount)

    def to_dict(self) -> dict:
        return {
            "subtotal": str(self.subtotal),
            "tax": str(self.tax),
            "discount": str(self.discount),
            "total": str(self.total),
        }


@dataclass
class ReceiptOptions:
    print_receipt: bool = False
    sms: bool = False
    email: bool = False
    phone: str | None = None
    email_address: str | None = None

    @property
    def selected(self) -> bool:
        return self.print_receipt or self.sms or self.email

    def validate(self) -> None:
        """Contact details must be valid for the selected delivery channel."""
        if sum((self.print_receipt, self.sms, self.email)) > 1:
            raise ReceiptValidationError("Only one receipt option may be selected", "receipt_options")
        if self.sms:
            phone = re.sub(r"\s+", "", self.phone or "")
            if not PHONE_PATTERN.match(phone):
                raise ReceiptValidationError("Enter a valid mobile number for SMS receipts", "phone")
        if self.email and not EMAIL_PATTERN.match((self.email_address or "").strip()):
            raise ReceiptValidationError("Enter a valid email address for email receipts", "email_address")

    def to_dict(self) -> dict:
        out = {"print": self.print_receipt, "sms": self.sms, "email": self.email}
        if self.sms:
            out["phone"] = re.sub(r"\s+", "", self.phone or "")
        if self.email:
            out["email_address"] = (self.email_address or "").strip()
        return out


NOTICE_MANUAL_ENTRY = "manual_entry"
NOTICE_REVERSAL = "reversal"

NOTICE_HEADLINES = {
    NOTICE_MANUAL_ENTRY: "MANUAL ENTRY REQUIRED",
    NOTICE_REVERSAL: "PAYMENT REVERSAL REQUIRED",
}


@dataclass
class ManualEntryNotice:
    """
    Everything an operator needs to reconcile a captured payment by hand.

    manual_entry: the sale was paid but never stored; re-key it.
    reversal: a leg was captured for a sale that did not go through; give it back.
    """
    transaction_id: str
    order_id: str
    amount: Decimal
    currency_symbol: str
    items: list[dict]
    payment_legs: list[dict]
    captured_at: datetime
    reason: str
    kind: str = NOTICE_MANUAL_ENTRY

    def render(self) -> str:
        items = ", ".join(f"{i['quantity']}x {i['name']}" for i in self.items)
        legs = ", ".join(
            f"{leg['type']} {format_money(self.currency_symbol, to_money(leg['amount']))}"
            for leg in self.payment_legs
        )
        return (
            f"{NOTICE_HEADLINES[self.kind]}: "
            f"Amount: {format_money(self.currency_symbol, self.amount)} | "
            f"Items: {items} | Payment: {legs} | "
            f"Time: {format_utc(self.captured_at)} | Ref: {self.transaction_id}"
        )

    def to_dict(self) -> dict:
        return {
            "kind": self.kind,
            "transaction_id": self.transaction_id,
            "order_id": self.order_id,
            "amount": str(self.amount),
            "currency_symbol": self.currency_symbol,
            "items": list(self.items),
            "payment_legs": list(self.payment_legs),
            "captured_at": format_utc(self.captured_at),
            "reason": self.reason,
            "message": self.render(),
        }


@dataclass
class SettlementResult:
    transaction: dict
    change: Decimal
    line_items: BestEffortResult

    def to_dict(self) -> dict:
        return {
            "transaction": self.transaction,
            "change": str(self.change),
            "line_items": self.line_items.to_dict(),
        }


# =============================================================================
# CHECKOUT
# =============================================================================

class Checkout:
    """One in-flight checkout over one cart. Not shared between tills."""

    def __init__(
        self,
        cart: Cart | None = None,
        *,
        cashier_id: str,
        tax_rate: Decimal = Decimal("0.10"),
        split_tolerance: Decimal = CENT,
        currency: str = "ZAR",
        currency_symbol: str = "R",
        device_type: str = "till",
        location: str | None = None,
        gateway: PaymentGateway | None = None,
        create_transaction: Callable[[dict], dict] | None = None,
        save_line_items: Callable[[int, list[dict]], int] | None = None,
        notifier: Callable[[ManualEntryNotice], None] | None = None,
    ):
        self.cart = cart or Cart()
        self.cashier_id = cashier_id
        self.tax_rate = Decimal(tax_rate)
        self.split_tolerance = Decimal(split_tolerance)
        self.currency = currency
        self.currency_symbol = currency_symbol
        self.device_type = device_type
        self.location = location
        self.gateway = gateway or SimulatedGateway()
        self._create_transaction = create_transaction or transactions_service.create_transaction
        self._save_line_items = save_line_items or transactions_service.save_line_items
        self._notifier = notifier

        self.state = CheckoutState.IDLE
        self.history: list[CheckoutState] = [CheckoutState.IDLE]
        self.totals: Totals | None = None
        self.last_settlement: SettlementResult | None = None
        self.receipt = ReceiptOptions()
        # legs captured by a confirm that was then declined; reused by the next confirm
        self.held_captures: list[Capture] = []
        self._lock = threading.RLock()
        self._reset_payment_input()

    @classmethod
    def from_config(cls, config, *, cashier_id: str, **kwargs) -> "Checkout":
        return cls(
            cashier_id=cashier_id,
            tax_rate=config["TAX_RATE"],
            split_tolerance=config["SPLIT_TOLERANCE"],
            currency=config["CURRENCY_CODE"],
            currency_symbol=config["CURRENCY_SYMBOL"],
            device_type=config["TILL_DEVICE_TYPE"],
            location=config["TILL_LOCATION"],
            **kwargs,
        )

    # -- state helpers --------------------------------------------------------

    def _transition(self, state: CheckoutState) -> None:
        logger.debug("Checkout %s -> %s", self.state.value, state.value)
        self.state = state
        self.history.append(state)

    def _require(self, action: str, *states: CheckoutState) -> None:
        if self.state not in states:
            raise CheckoutError(
                f"Cannot {action} while checkout is {self.state.value}",
                {"state": self.state.value},
            )

    def _reset_payment_input(self) -> None:
        self.method: str | None = None
        self.tendered: Decimal | None = None
        self.split_cash = ZERO
        self.split_card = ZERO

    # -- cart edits -----------------------------------------------------------

    def _edit_cart(self, edit: Callable[[], object]):
        if self.state not in (CheckoutState.IDLE, CheckoutState.COMMITTED, CheckoutState.AWAITING_METHOD_SELECTION):
            raise CheckoutError(
                "Cancel the payment before changing the cart",
                {"state": self.state.value},
            )
        if self.state == CheckoutState.COMMITTED:
            self.reset()
        result = edit()
        if self.state == CheckoutState.AWAITING_METHOD_SELECTION:
            if self.cart.is_empty:
                self.totals = None
                self._transition(CheckoutState.IDLE)
            else:
                self.totals = self._compute_totals()
        return result

    def add_item(self, product: dict, quantity: int = 1, selected_variants: dict | None = None,
                 notes: str | None = None, badge: str | None = None) -> CartLine:
        return self._edit_cart(lambda: self.cart.add_item(product, quantity, selected_variants, notes, badge))

    def update_quantity(self, line_id: str, quantity: int) -> None:
        self._edit_cart(lambda: self.cart.update_quantity(line_id, quantity))

    def remove_item(self, line_id: str) -> None:
        self._edit_cart(lambda: self.cart.remove_item(line_id))

    def apply_discount(self, amount) -> None:
        self._edit_cart(lambda: self.cart.apply_discount(amount))

    def set_customer_name(self, name: str | None) -> None:
        self._edit_cart(lambda: self.cart.set_customer_name(name))

    # -- transitions ----------------------------------------------------------

    def _compute_totals(self) -> Totals:
        totals = Totals.for_cart(self.cart, self.tax_rate)
        if totals.total < 0:
            raise CheckoutError("Discount exceeds the order total", totals.to_dict())
        return totals

    def begin(self) -> Totals:
        """Lock in totals and wait for a payment method."""
        self._require("start checkout", CheckoutState.IDLE, CheckoutState.COMMITTED,
                      CheckoutState.AWAITING_METHOD_SELECTION)
        if self.cart.is_empty:
            raise CheckoutError("Cart is empty")
        totals = self._compute_totals()
        self.totals = totals
        self.last_settlement = None
        self._reset_payment_input()
        self._transition(CheckoutState.AWAITING_METHOD_SELECTION)
        return totals

    def select_method(self, method: str) -> CheckoutState:
        self._require("select a payment method", CheckoutState.AWAITING_METHOD_SELECTION, *INPUT_STATES)
        target = METHOD_STATES.get(method)
        if target is None:
            raise ValidationError(f"method must be one of: {', '.join(METHOD_STATES)}", "method")
        self._reset_payment_input()
        self.method = method
        self._transition(target)
        return target

    def enter_tendered(self, amount) -> Decimal:
        self._require("enter cash tendered", CheckoutState.CASH_INPUT)
        tendered = to_money(amount, "tendered")
        if tendered < 0:
            raise ValidationError("tendered cannot be negative", "tendered")
        self.tendered = tendered
        return self.change

    def set_split_cash(self, amount) -> Decimal:
        """Set the cash leg; the card leg auto-balances to the remainder."""
        self._require("edit split payment", CheckoutState.SPLIT_INPUT)
        cash = to_money(amount, "cash")
        if cash < 0:
            raise ValidationError("cash cannot be negative", "cash")
        self.split_cash = cash
        self.split_card = max(ZERO, self.totals.total - cash)
        return self.split_card

    def set_split_card(self, amount) -> Decimal:
        """Set the card leg; the cash leg auto-balances to the remainder."""
        self._require("edit split payment", CheckoutState.SPLIT_INPUT)
        card = to_money(amount, "card")
        if card < 0:
            raise ValidationError("card cannot be negative", "card")
        self.split_card = card
        self.split_cash = max(ZERO, self.totals.total - card)
        return self.split_cash

    def set_split(self, cash, card) -> None:
        """Set both legs explicitly (no auto-balancing)."""
        self._require("edit split payment", CheckoutState.SPLIT_INPUT)
        self.split_cash = to_money(cash, "cash")
        self.split_card = to_money(card, "card")
        if self.split_cash < 0 or self.split_card < 0:
            raise ValidationError("split amounts cannot be negative", "split")

    def set_receipt_options(self, *, print_receipt: bool = False, sms: bool = False, email: bool = False,
                            phone: str | None = None, email_address: str | None = None) -> None:
        self._require("change receipt options", *PRE_SETTLING_STATES)
        options = ReceiptOptions(print_receipt=bool(print_receipt), sms=bool(sms), email=bool(email),
                                 phone=phone, email_address=email_address)
        if sum((options.print_receipt, options.sms, options.email)) > 1:
            raise ReceiptValidationError("Only one receipt option may be selected", "receipt_options")
        self.receipt = options

    def cancel(self) -> None:
        """Discard payment input and return to IDLE. The cart is kept."""
        with self._lock:
            self._require("cancel", *PRE_SETTLING_STATES)
            if self.held_captures:
                self._release_held_captures("Checkout cancelled after a partial capture")
            self._reset_payment_input()
            self.totals = None
            if self.state != CheckoutState.IDLE:
                self._transition(CheckoutState.IDLE)

    def reset(self) -> None:
        """Acknowledge a committed sale and get ready for the next one."""
        self._require("reset", CheckoutState.COMMITTED, CheckoutState.IDLE)
        self.last_settlement = None
        self.receipt = ReceiptOptions()
        if self.state != CheckoutState.IDLE:
            self._transition(CheckoutState.IDLE)

    # -- derived values -------------------------------------------------------

    @property
    def change(self) -> Decimal:
        if self.method != "cash" or self.tendered is None or self.totals is None:
            return ZERO
        return max(ZERO, self.tendered - self.totals.total)

    @property
    def split_difference(self) -> Decimal:
        """cash + card - total; negative means short, positive means over."""
        if self.totals is None:
            return ZERO
        return self.split_cash + self.split_card - self.totals.total

    def projection(self) -> dict:
        """Read-only view of the checkout for display."""
        return {
            "state": self.state.value,
            "method": self.method,
            "cart": self.cart.to_dict(),
            "totals": self.totals.to_dict() if self.totals else None,
            "tendered": str(self.tendered) if self.tendered is not None else None,
            "change": str(self.change),
            "split": {
                "cash": str(self.split_cash),
                "card": str(self.split_card),
                "difference": str(self.split_difference),
            } if self.method == "split" else None,
            "receipt_options": self.receipt.to_dict(),
            "held_captures": [capture.to_dict() for capture in self.held_captures],
            "currency": self.currency,
            "currency_symbol": self.currency_symbol,
            "last_settlement": self.last_settlement.to_dict() if self.last_settlement else None,
        }

    # -- settlement -----------------------------------------------------------

    def _settlement_legs(self) -> list[tuple[str, Decimal]]:
        total = self.totals.total
        if self.state == CheckoutState.CASH_INPUT:
            tendered = self.tendered if self.tendered is not None else ZERO
            if tendered < total:
                raise SettlementRefused(
                    f"Insufficient cash: {format_money(self.currency_symbol, total - tendered)} short",
                    shortfall=total - tendered,
                )
            return [(TENDER_CASH, tendered)]

        if self.state == CheckoutState.CARD_PENDING:
            return [(TENDER_CARD, total)]

        difference = self.split_difference
        if abs(difference) > self.split_tolerance:
            raise SettlementRefused(
                f"Split payments do not match the total (difference "
                f"{format_money(self.currency_symbol, difference)})",
                shortfall=-difference,
            )
        legs = [(kind, amount) for kind, amount in ((TENDER_CASH, self.split_cash), (TENDER_CARD, self.split_card))
                if amount > 0]
        if not legs:
            raise CheckoutError("Enter at least one split payment amount")
        return legs

    def _capture(self, kind: str, amount: Decimal) -> Capture:
        for held in self.held_captures:
            if held.kind == kind and held.amount == amount:
                self.held_captures.remove(held)
                logger.info("Reusing held %s capture %s", kind, held.reference)
                return held
        return self.gateway.capture(kind, amount)

    def _release_held_captures(self, reason: str) -> ManualEntryNotice:
        held, self.held_captures = self.held_captures, []
        notice = ManualEntryNotice(
            transaction_id=held[0].reference,
            order_id="",
            amount=sum((c.amount for c in held), ZERO),
            currency_symbol=self.currency_symbol,
            items=[line.snapshot() for line in self.cart.lines],
            payment_legs=[{"type": c.kind, "amount": float(c.amount), "reference": c.reference} for c in held],
            captured_at=held[0].captured_at,
            reason=reason,
            kind=NOTICE_REVERSAL,
        )
        self._notify(notice)
        return notice

    def _capture_legs(self, legs: list[tuple[str, Decimal]]) -> list[Capture]:
        """
        Capture each leg in order. If a later leg fails, the legs already
        captured are held on the checkout and reused by the next confirm
        instead of being charged again.
        """
        input_state = self.state
        captures: list[Capture] = []
        try:
            if input_state == CheckoutState.SPLIT_INPUT and len(legs) == 2:
                self._transition(CheckoutState.SPLIT_CASH_PROCESSING)
                captures.append(self._capture(*legs[0]))
                self._transition(CheckoutState.SPLIT_CARD_PROCESSING)
                captures.append(self._capture(*legs[1]))
                self._transition(CheckoutState.SETTLING)
            else:
                self._transition(CheckoutState.SETTLING)
                for kind, amount in legs:
                    captures.append(self._capture(kind, amount))
        except Exception:
            if captures:
                self.held_captures = captures + self.held_captures
                logger.warning(
                    "Payment failed after capturing %s; holding captured legs for the retry",
                    ", ".join(c.reference for c in captures),
                )
            self._transition(input_state)
            raise
        if self.held_captures:
            self._release_held_captures("Payment amounts changed after a partial capture")
        return captures

    def _payment_methods(self, captures: list[Capture]) -> list[dict]:
        payments = []
        for capture in captures:
            payment = {"type": capture.kind, "amount": float(capture.amount)}
            if capture.kind == TENDER_CASH and self.method == "cash":
                payment["tendered"] = float(capture.amount)
                payment["change"] = float(self.change)
                if self.change > 0:
                    payment["reference"] = f"Change: {format_money(self.currency_symbol, self.change)}"
            else:
                payment["reference"] = capture.reference
            if capture.approval_code:
                payment["approval_code"] = capture.approval_code
            payments.append(payment)
        return payments

    def _transaction_record(self, payments: list[dict]) -> dict:
        millis = epoch_millis()
        totals = self.totals
        return {
            "cashier_id": self.cashier_id,
            "transaction_id": transactions_service.generate_transaction_id(),
            "order_id": f"#{str(millis)[-6:]}",
            "items": [line.snapshot() for line in self.cart.lines],
            "payment_methods": payments,
            "subtotal": float(totals.subtotal),
            "tax": float(totals.tax),
            "discount": float(totals.discount),
            "total_amount": float(totals.total),
            "change": float(self.change),
            "customer_name": self.cart.customer_name,
            "receipt_status": "issued",
            "receipt_options": self.receipt.to_dict() if self.receipt.selected else None,
            "status": "completed",
            "type": "sale",
            "currency": self.currency,
            "currency_symbol": self.currency_symbol,
            "additional_metrics": {
                "item_count": self.cart.item_count,
                "payment_count": len(payments),
                "device_type": self.device_type,
                "location": self.location,
            },
        }

    def _save_line_items_best_effort(self, transaction: dict, items: list[dict]) -> BestEffortResult:
        result = BestEffortResult(operation="line_items", attempted=len(items))
        try:
            self._save_line_items(transaction["id"], items)
            result.succeeded = len(items)
        except Exception as exc:
            logger.warning("Line items for %s not saved: %s", transaction["transaction_id"], exc,
                           exc_info=not isinstance(exc, (StorageError, NotFoundError)))
            result.failed = len(items)
            result.errors.append(str(exc))
        return result

    def _finish_sale(self) -> None:
        self.cart.clear()
        self._reset_payment_input()
        self.totals = None
        self.receipt = ReceiptOptions()

    def _notify(self, notice: ManualEntryNotice) -> None:
        logger.critical(notice.render())
        if self._notifier is not None:
            try:
                self._notifier(notice)
            except Exception:
                logger.exception("Manual entry notifier failed for %s", notice.transaction_id)

    def _degrade(self, captures: list[Capture], captured_at: datetime, exc: Exception,
                 record: dict | None = None) -> ManualEntryNotice:
        if record is None:
            record = {
                "transaction_id": transactions_service.generate_transaction_id(),
                "order_id": "",
                "items": [line.snapshot() for line in self.cart.lines],
                "payment_methods": [
                    {"type": c.kind, "amount": float(c.amount), "reference": c.reference} for c in captures
                ],
            }
        notice = ManualEntryNotice(
            transaction_id=record["transaction_id"],
            order_id=record["order_id"],
            amount=self.totals.total,
            currency_symbol=self.currency_symbol,
            items=record["items"],
            payment_legs=record["payment_methods"],
            captured_at=captured_at,
            reason=str(exc) or exc.__class__.__name__,
        )
        if not isinstance(exc, (StorageError, NotInitializedError, ValidationError)):
            logger.error("Unexpected failure committing %s", notice.transaction_id, exc_info=exc)
        self._notify(notice)
        self._finish_sale()
        self._transition(CheckoutState.IDLE)
        return notice

    def confirm(self) -> SettlementResult:
        """
        Capture payment and commit the sale. Concurrent calls on one checkout
        run one at a time.

        Raises:
            ReceiptValidationError: receipt contact invalid (state unchanged)
            SettlementRefused: payment does not cover the total (state unchanged)
            PaymentDeclined: gateway refused; back in the input state
            DegradedCommitError: captured but not saved; cart cleared, state IDLE
        """
        with self._lock:
            self._require("confirm payment", *INPUT_STATES)
            self.receipt.validate()
            legs = self._settlement_legs()

            captures = self._capture_legs(legs)
            captured_at = captures[-1].captured_at if captures else utcnow()

            # past this point money has moved: every failure ends in a notice
            record = None
            try:
                record = self._transaction_record(self._payment_methods(captures))
                transaction = self._create_transaction(record)
            except Exception as exc:
                notice = self._degrade(captures, captured_at, exc, record)
                raise DegradedCommitError(notice) from exc

            line_items = self._save_line_items_best_effort(transaction, record["items"])
            result = SettlementResult(transaction=transaction, change=self.change, line_items=line_items)
            self._finish_sale()
            self.last_settlement = result
            self._transition(CheckoutState.COMMITTED)
            return result


# =============================================================================
# PER-TILL REGISTRY
# =============================================================================

REGISTRY_EXTENSION_KEY = "tillcore.checkouts"


class CheckoutRegistry:
    """One checkout per till id, plus the queue of unreconciled manual entries."""

    def __init__(self, config, gateway: PaymentGateway | None = None):
        self._config = config
        self._gateway = gateway
        self._checkouts: dict[str, Checkout] = {}
        self._lock = threading.Lock()
        self.manual_entries: list[ManualEntryNotice] = []

    def get(self, till_id: str, cashier_id: str | None = None) -> Checkout:
        with self._lock:
            checkout = self._checkouts.get(till_id)
            if checkout is None:
                checkout = Checkout.from_config(
                    self._config,
                    cashier_id=cashier_id or f"till-{till_id}",
                    gateway=self._gateway,
                    notifier=self.record_manual_entry,
                )
                self._checkouts[till_id] = checkout
            elif cashier_id:
                checkout.cashier_id = cashier_id
            return checkout

    def record_manual_entry(self, notice: ManualEntryNotice) -> None:
        with self._lock:
            self.manual_entries.append(notice)

    def pending_manual_entries(self) -> list[dict]:
        with self._lock:
            return [notice.to_dict() for notice in self.manual_entries]


def get_checkout_registry() -> CheckoutRegistry:
    return current_app.extensions[REGISTRY_EXTENSION_KEY]
