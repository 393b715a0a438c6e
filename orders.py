"""
Order intake

Placing an order is a short saga against the store and the payment gateway:

1. price the lines from the catalog and check stock,
2. obtain a payment authorization when the method needs one, or check that
   the one the client holds is unused and for exactly the amount due,
3. write the order (uncommitted), then its lines as one batch,
4. take stock with a conditional decrement per line,
5. mark the order committed.

Every write registers an undo step. If anything after the authorization
fails, or the time budget runs out, the undo steps run in reverse and the
authorization is cancelled. Gateway calls get what is left of the budget as
their network timeout. When an undo step itself fails the caller gets
ReconciliationRequiredError instead of the original error.
"""
import logging
import secrets
import time
from collections import defaultdict
from contextlib import contextmanager
from typing import Any, Callable, Dict, List, Optional

import pymongo
from bson import ObjectId
from pymongo.errors import DuplicateKeyError, PyMongoError

import config
from database import now_utc, oid
from errors import (
    InvalidRequestError,
    InventoryRaceError,
    NotFoundError,
    OrderTimeoutError,
    OutOfStockError,
    PaymentGatewayError,
    PaymentIntentInUseError,
    ReconciliationRequiredError,
    StoreUnavailableError,
)
from lifecycle import history_entry, initial_status
from payments import PaymentGateway, requires_authorization
from pricing import TaxPolicy, get_tax_policy, to_cents
from schemas import PAYMENT_METHODS, CartLine, Order, OrderLine

logger = logging.getLogger(__name__)

ORDER_NUMBER_ATTEMPTS = 3


def generate_order_number(prefix: str = config.ORDER_NUMBER_PREFIX) -> str:
    """Millisecond timestamp plus 64 random bits, e.g. JESS-1760886000000-9F2C4A71D03B5E68."""
    return f"{prefix}-{int(time.time() * 1000)}-{secrets.token_hex(8).upper()}"


class Deadline:
    def __init__(self, seconds: float):
        self.seconds = seconds
        self.expires_at = time.monotonic() + seconds

    def remaining(self) -> float:
        return self.expires_at - time.monotonic()

    def check(self, step: str):
        if self.remaining() <= 0:
            logger.warning("Order placement ran out of time (%ss) before %s", self.seconds, step)
            raise OrderTimeoutError()


@contextmanager
def store_call(deadline: Deadline):
    """Bound store calls by what is left of the budget and map driver errors."""
    try:
        with pymongo.timeout(max(deadline.remaining(), 0.001)):
            yield
    except PyMongoError as e:
        if getattr(e, "timeout", False):
            logger.warning("Store call timed out: %s", e)
            raise OrderTimeoutError() from e
        logger.error("Store call failed: %s", e)
        raise StoreUnavailableError() from e


class Saga:
    def __init__(self, label: str):
        self.label = label
        self._undo: List[tuple] = []

    def on_failure(self, description: str, action: Callable[[], Any]):
        self._undo.append((description, action))

    def compensate(self, cause: BaseException):
        failed = []
        for description, action in reversed(self._undo):
            try:
                action()
                logger.warning("%s: compensated '%s' after %r", self.label, description, cause)
            except (PyMongoError, PaymentGatewayError) as e:
                logger.error("%s: compensation '%s' failed: %s", self.label, description, e)
                failed.append(description)
        self._undo.clear()
        if failed:
            raise ReconciliationRequiredError(failed_steps=failed) from cause


def _validate(lines: List[CartLine], shipping_address: str, payment_method: str,
              payment_intent_id: Optional[str]):
    if not lines:
        raise InvalidRequestError("Cart is empty")
    for line in lines:
        if line.quantity <= 0:
            raise InvalidRequestError(f"Quantity for product {line.product_id} must be positive")
    if not shipping_address or not shipping_address.strip():
        raise InvalidRequestError("Shipping address is required")
    if payment_method not in PAYMENT_METHODS:
        raise InvalidRequestError(f"Unsupported payment method '{payment_method}'")
    if payment_intent_id and not requires_authorization(payment_method):
        raise InvalidRequestError("A payment intent only applies to card payments")


def price_lines(database, lines: List[CartLine]) -> List[Dict[str, Any]]:
    """Resolve every line against the catalog and check aggregated stock.

    The catalog price read here is the price-at-purchase; whatever unit price
    the client kept in its cart is only compared, never charged.
    """
    ids = {line.product_id: oid(line.product_id) for line in lines}
    products = {str(p["_id"]): p for p in database["product"].find({"_id": {"$in": list(ids.values())}})}

    wanted = defaultdict(int)
    priced = []
    for line in lines:
        product = products.get(line.product_id)
        if product is None:
            raise NotFoundError(f"Product {line.product_id} not found", product_id=line.product_id)
        price_cents = product["price_cents"]
        if line.price and to_cents(line.price) != price_cents:
            logger.info("Cart price for %s was %s, charging catalog price %s cents",
                        line.product_id, line.price, price_cents)
        wanted[line.product_id] += line.quantity
        priced.append({
            "product_id": line.product_id,
            "size": line.size,
            "name": product.get("name", "Product"),
            "quantity": line.quantity,
            "price_at_purchase_cents": price_cents,
        })

    for product_id, quantity in wanted.items():
        product = products[product_id]
        if product.get("stock_quantity", 0) < quantity:
            raise OutOfStockError(f"Insufficient stock for {product.get('name', 'item')}", product_id=product_id)
    return priced


def take_stock(database, product_id: str, quantity: int) -> bool:
    """Decrement stock only if enough is left. Returns False when it was not."""
    result = database["product"].find_one_and_update(
        {"_id": oid(product_id), "stock_quantity": {"$gte": quantity}},
        {"$inc": {"stock_quantity": -quantity}, "$set": {"updated_at": now_utc()}},
    )
    return result is not None


def return_stock(database, product_id: str, quantity: int):
    database["product"].update_one(
        {"_id": oid(product_id)},
        {"$inc": {"stock_quantity": quantity}, "$set": {"updated_at": now_utc()}},
    )


def _ensure_intent_unused(database, intent_id: str):
    if database["order"].find_one({"payment_intent_id": intent_id}, {"_id": 1}):
        logger.warning("Payment intent %s is already attached to an order", intent_id)
        raise PaymentIntentInUseError(payment_intent_id=intent_id)


def check_supplied_intent(database, gateway: PaymentGateway, intent_id: str,
                          amount_due_cents: int, deadline: Deadline):
    """Accept a client-held intent only if it authorizes exactly this order."""
    with store_call(deadline):
        _ensure_intent_unused(database, intent_id)
    intent = call_gateway(deadline, "payment lookup", gateway.retrieve_intent, intent_id)
    if (intent.amount_cents != amount_due_cents
            or (intent.currency or "").lower() != config.PAYMENT_CURRENCY.lower()):
        logger.warning("Payment intent %s is for %s %s, order is %s %s", intent_id,
                       intent.amount_cents, intent.currency, amount_due_cents, config.PAYMENT_CURRENCY)
        raise InvalidRequestError(
            "Payment amount does not match the order total",
            payment_intent_id=intent_id,
            amount_due_cents=amount_due_cents,
        )
    if not intent.is_open:
        logger.warning("Payment intent %s is %s and cannot back a new order", intent_id, intent.status)
        raise InvalidRequestError("Payment is no longer usable", payment_intent_id=intent_id)


def call_gateway(deadline: Deadline, step: str, action: Callable[..., Any], *args, **kwargs):
    """Run a gateway call bounded by the remaining budget."""
    deadline.check(step)
    try:
        return action(*args, timeout=deadline.remaining(), **kwargs)
    except PaymentGatewayError:
        deadline.check(step)
        raise


def _insert_order(database, order: Dict[str, Any]) -> ObjectId:
    for attempt in range(1, ORDER_NUMBER_ATTEMPTS + 1):
        order["_id"] = ObjectId()
        order["order_number"] = generate_order_number()
        try:
            database["order"].insert_one(order)
            return order["_id"]
        except DuplicateKeyError:
            if order.get("payment_intent_id"):
                # Another order took the same intent since it was checked.
                _ensure_intent_unused(database, order["payment_intent_id"])
            logger.warning("Order number %s already taken (attempt %d)", order["order_number"], attempt)
    raise StoreUnavailableError("Could not allocate an order number")


def create_order(database, gateway: PaymentGateway, user_id: str, lines: List[CartLine],
                 shipping_address: str, payment_method: str,
                 payment_intent_id: Optional[str] = None, client_total=None,
                 tax_policy: Optional[TaxPolicy] = None, user_email: Optional[str] = None,
                 timeout: float = config.ORDER_TIMEOUT_SECONDS) -> Dict[str, Any]:
    deadline = Deadline(timeout)
    tax_policy = tax_policy or get_tax_policy()
    _validate(lines, shipping_address, payment_method, payment_intent_id)

    with store_call(deadline):
        priced = price_lines(database, lines)

    total_cents = sum(p["price_at_purchase_cents"] * p["quantity"] for p in priced)
    tax_cents = tax_policy.tax_for(total_cents, shipping_address)
    amount_due_cents = total_cents + tax_cents
    if client_total is not None and to_cents(client_total) != amount_due_cents:
        logger.warning("Client total %s differs from computed %s cents for user %s",
                       client_total, amount_due_cents, user_id)

    intent_id = payment_intent_id
    client_secret = None
    if intent_id:
        check_supplied_intent(database, gateway, intent_id, amount_due_cents, deadline)
    elif requires_authorization(payment_method):
        intent = call_gateway(
            deadline, "payment authorization", gateway.create_intent,
            amount_due_cents, config.PAYMENT_CURRENCY,
            {"userId": user_id, "userEmail": user_email},
        )
        intent_id, client_secret = intent.id, intent.client_secret

    saga = Saga(f"order for user {user_id}")
    cancel_intent = (f"cancel payment intent {intent_id}", lambda: gateway.cancel_intent(intent_id))
    if intent_id and not payment_intent_id:
        saga.on_failure(*cancel_intent)

    status = initial_status(authorized=bool(intent_id)).value
    now = now_utc()
    order = Order(
        order_number="",
        user_id=user_id,
        total_amount_cents=total_cents,
        tax_amount_cents=tax_cents,
        amount_due_cents=amount_due_cents,
        currency=config.PAYMENT_CURRENCY,
        status=status,
        payment_method=payment_method,
        payment_intent_id=intent_id,
        shipping_address=shipping_address.strip(),
        status_history=[history_entry(status, "order placed")],
    ).model_dump()
    order["created_at"] = order["updated_at"] = now

    try:
        deadline.check("writing the order")
        with store_call(deadline):
            order_id = _insert_order(database, order)
        saga.label = f"order {order['order_number']}"
        if payment_intent_id:
            # A supplied intent is only ours to cancel once this order holds it.
            saga.on_failure(*cancel_intent)
        saga.on_failure("delete order", lambda: database["order"].delete_one({"_id": order_id}))
        logger.info("Order %s written for user %s, %s cents due", order["order_number"], user_id, amount_due_cents)

        deadline.check("writing order lines")
        # Registered first: a batch insert can fail after writing some lines.
        saga.on_failure("delete order lines",
                        lambda: database["order_item"].delete_many({"order_id": str(order_id)}))
        with store_call(deadline):
            database["order_item"].insert_many([
                dict(OrderLine(order_id=str(order_id), **p).model_dump(), created_at=now) for p in priced
            ])

        for p in priced:
            deadline.check("taking stock")
            with store_call(deadline):
                if not take_stock(database, p["product_id"], p["quantity"]):
                    raise InventoryRaceError(f"{p['name']} sold out while placing the order",
                                             product_id=p["product_id"])
            saga.on_failure(f"return {p['quantity']} x {p['product_id']}",
                            lambda p=p: return_stock(database, p["product_id"], p["quantity"]))

        deadline.check("committing")
        with store_call(deadline):
            database["order"].update_one(
                {"_id": order_id}, {"$set": {"committed": True, "updated_at": now_utc()}}
            )
    except Exception as e:
        logger.error("Placing order for user %s failed: %r", user_id, e)
        saga.compensate(e)
        raise

    logger.info("Order %s committed with status %s", order["order_number"], status)
    return {
        "order_id": str(order_id),
        "order_number": order["order_number"],
        "status": status,
        "client_secret": client_secret,
        "total_amount_cents": total_cents,
        "amount_due_cents": amount_due_cents,
    }


def get_order(database, order_id: str) -> Dict[str, Any]:
    order = database["order"].find_one({"_id": oid(order_id), "committed": True})
    if not order:
        raise NotFoundError("Order not found")
    order["items"] = list(database["order_item"].find({"order_id": str(order["_id"])}))
    return order


def list_orders(database, user_id: Optional[str] = None) -> List[Dict[str, Any]]:
    filt: Dict[str, Any] = {"committed": True}
    if user_id:
        filt["user_id"] = user_id
    return list(database["order"].find(filt).sort("created_at", -1))
