"""
Cart aggregator

Lines are keyed by (product id, size): adding a key that is already present
bumps its quantity. The cart travels as a versioned JSON-able blob so older
stored carts can be migrated on load.
"""
import logging
from collections import OrderedDict
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from pricing import TaxPolicy, as_amount, to_cents
from schemas import CartLine

logger = logging.getLogger(__name__)

CART_SCHEMA_VERSION = 1


class Cart:
    def __init__(self, lines: Optional[List[CartLine]] = None):
        self._lines: "OrderedDict[tuple, CartLine]" = OrderedDict()
        for line in lines or []:
            self.add(line)

    def __len__(self):
        return len(self._lines)

    def __iter__(self):
        return iter(self._lines.values())

    @property
    def lines(self) -> List[CartLine]:
        return list(self._lines.values())

    @property
    def item_count(self) -> int:
        return sum(line.quantity for line in self._lines.values())

    @property
    def subtotal_cents(self) -> int:
        return sum(to_cents(line.price) * line.quantity for line in self._lines.values())

    def add(self, line: CartLine):
        existing = self._lines.get(line.key)
        if existing is not None:
            self._lines[line.key] = existing.model_copy(update={"quantity": existing.quantity + line.quantity})
        else:
            self._lines[line.key] = line.model_copy()

    def remove(self, product_id: str, size: Optional[str] = None):
        self._lines.pop((product_id, size), None)

    def update_quantity(self, product_id: str, size: Optional[str], quantity: int):
        key = (product_id, size)
        if key not in self._lines:
            return
        if quantity <= 0:
            self.remove(product_id, size)
        else:
            self._lines[key] = self._lines[key].model_copy(update={"quantity": quantity})

    def clear(self):
        self._lines.clear()

    def totals(self, tax_policy: TaxPolicy, shipping_address: Optional[str] = None) -> Dict[str, float]:
        subtotal = self.subtotal_cents
        tax = tax_policy.tax_for(subtotal, shipping_address)
        return {
            "subtotal": as_amount(subtotal),
            "tax": as_amount(tax),
            "total": as_amount(subtotal + tax),
        }

    # ---------------------- Serialization ----------------------

    def to_blob(self) -> Dict[str, Any]:
        return {
            "version": CART_SCHEMA_VERSION,
            "items": [line.model_dump(mode="json") for line in self._lines.values()],
        }

    @classmethod
    def from_blob(cls, blob: Any) -> "Cart":
        # Version 0 carts were stored as a bare list of lines.
        if blob is None:
            return cls()
        if isinstance(blob, list):
            blob = {"version": 0, "items": blob}
        version = blob.get("version", 0)
        if version > CART_SCHEMA_VERSION:
            raise ValueError(f"Unsupported cart version {version}")
        lines = []
        for raw in blob.get("items", []):
            try:
                lines.append(CartLine.model_validate(raw))
            except ValidationError:
                logger.warning("Dropping unreadable cart line: %r", raw)
        return cls(lines)


def load_cart(database, user_id: str) -> Cart:
    doc = database["cart"].find_one({"user_id": user_id})
    return Cart.from_blob(doc.get("blob") if doc else None)


def save_cart(database, user_id: str, cart: Cart, now):
    database["cart"].update_one(
        {"user_id": user_id},
        {"$set": {"blob": cart.to_blob(), "updated_at": now}},
        upsert=True,
    )
