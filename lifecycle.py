r"""
Order lifecycle

    pending -> processing -> shipped -> delivered
       \            \
        `------------`--> cancelled

Transitions are checked against TRANSITIONS on the server whatever the admin
UI offers, and applied with a compare-and-set on the current status so two
concurrent requests cannot both move the same order.
"""
import logging
from enum import Enum
from typing import Any, Dict, List, Optional

from pymongo import ReturnDocument
from pymongo.errors import PyMongoError

from database import now_utc, oid
from errors import (
    InvalidRequestError,
    InvalidTransitionError,
    NotFoundError,
    PaymentGatewayError,
    ReconciliationRequiredError,
    StoreUnavailableError,
)
from payments import PaymentGateway

logger = logging.getLogger(__name__)


class OrderStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


TRANSITIONS = {
    OrderStatus.PENDING: (OrderStatus.PROCESSING, OrderStatus.CANCELLED),
    OrderStatus.PROCESSING: (OrderStatus.SHIPPED, OrderStatus.CANCELLED),
    OrderStatus.SHIPPED: (OrderStatus.DELIVERED,),
    OrderStatus.DELIVERED: (),
    OrderStatus.CANCELLED: (),
}

TERMINAL_STATUSES = frozenset(s for s, nxt in TRANSITIONS.items() if not nxt)


def initial_status(authorized: bool) -> OrderStatus:
    return OrderStatus.PROCESSING if authorized else OrderStatus.PENDING


def next_statuses(current: str) -> List[str]:
    return [s.value for s in TRANSITIONS.get(OrderStatus(current), ())]


def check_transition(current: str, target: str):
    """Raise InvalidTransitionError unless target directly follows current."""
    try:
        cur, tgt = OrderStatus(current), OrderStatus(target)
    except ValueError:
        raise InvalidTransitionError(current, target, "unknown status")
    if cur in TERMINAL_STATUSES:
        raise InvalidTransitionError(current, target, f"'{current}' is a final status")
    if tgt not in TRANSITIONS[cur]:
        allowed = ", ".join(s.value for s in TRANSITIONS[cur])
        raise InvalidTransitionError(current, target, f"next allowed: {allowed}")


def history_entry(status: str, note: Optional[str] = None) -> Dict[str, Any]:
    return {"status": status, "at": now_utc(), "note": note}


def _load_order(database, order_id: str) -> Dict[str, Any]:
    order = database["order"].find_one({"_id": oid(order_id), "committed": True})
    if not order:
        raise NotFoundError("Order not found")
    return order


def get_status(database, order_id: str) -> Dict[str, Any]:
    order = _load_order(database, order_id)
    return {
        "order_id": str(order["_id"]),
        "order_number": order["order_number"],
        "status": order["status"],
        "tracking_number": order.get("tracking_number"),
        "created_at": order.get("created_at"),
        "updated_at": order.get("updated_at"),
        "history": order.get("status_history", []),
        "next_statuses": next_statuses(order["status"]),
    }


def advance(database, gateway: PaymentGateway, order_id: str, target: str,
            tracking_number: Optional[str] = None, note: Optional[str] = None) -> Dict[str, Any]:
    order = _load_order(database, order_id)
    current = order["status"]
    check_transition(current, target)
    if tracking_number and target != OrderStatus.SHIPPED.value:
        raise InvalidRequestError("A tracking number can only be set when shipping an order")

    changes: Dict[str, Any] = {"status": target, "updated_at": now_utc()}
    if tracking_number:
        changes["tracking_number"] = tracking_number

    try:
        updated = database["order"].find_one_and_update(
            {"_id": order["_id"], "status": current},
            {"$set": changes, "$push": {"status_history": history_entry(target, note)}},
            return_document=ReturnDocument.AFTER,
        )
    except PyMongoError as e:
        logger.error("Status update for order %s failed: %s", order["order_number"], e)
        raise StoreUnavailableError() from e
    if updated is None:
        latest = _load_order(database, order_id)
        raise InvalidTransitionError(current, target, f"order is now '{latest['status']}'")

    logger.info("Order %s moved %s -> %s", order["order_number"], current, target)
    if target == OrderStatus.CANCELLED.value:
        _release_order(database, gateway, updated)
    return updated


def _release_order(database, gateway: PaymentGateway, order: Dict[str, Any]):
    """Put a cancelled order's stock back and void its payment authorization."""
    try:
        for line in database["order_item"].find({"order_id": str(order["_id"])}):
            database["product"].update_one(
                {"_id": oid(line["product_id"])},
                {"$inc": {"stock_quantity": line["quantity"]}, "$set": {"updated_at": now_utc()}},
            )
    except PyMongoError as e:
        logger.error("Order %s cancelled but its stock was not restored: %s", order["order_number"], e)
        _flag_for_reconciliation(database, order)
        raise ReconciliationRequiredError(
            "Order cancelled but its stock could not be restored",
            order_id=str(order["_id"]),
        ) from e

    intent_id = order.get("payment_intent_id")
    if not intent_id:
        return
    try:
        gateway.cancel_intent(intent_id)
    except PaymentGatewayError as e:
        logger.error(
            "Order %s cancelled but payment intent %s could not be voided",
            order["order_number"], intent_id,
        )
        _flag_for_reconciliation(database, order)
        raise ReconciliationRequiredError(
            "Order cancelled but the payment authorization could not be voided",
            order_id=str(order["_id"]),
        ) from e


def _flag_for_reconciliation(database, order: Dict[str, Any]):
    try:
        database["order"].update_one({"_id": order["_id"]}, {"$set": {"needs_reconciliation": True}})
    except PyMongoError:
        logger.exception("Could not flag order %s for reconciliation", order["order_number"])
