from decimal import Decimal

import pytest

from cart import CART_SCHEMA_VERSION, Cart, load_cart, save_cart
from database import now_utc
from pricing import FlatRateTax, from_cents, to_cents
from schemas import CartLine


def item(pid="p1", qty=1, price="25.00", size=None):
    return CartLine(product_id=pid, quantity=qty, price=Decimal(price), size=size)


def test_same_product_and_size_merge():
    cart = Cart()
    cart.add(item("p1", 1, size="M"))
    cart.add(item("p1", 2, size="M"))
    cart.add(item("p1", 1, size="L"))

    assert len(cart) == 2
    assert {(l.size, l.quantity) for l in cart} == {("M", 3), ("L", 1)}
    assert cart.item_count == 4


def test_update_to_zero_removes_line():
    cart = Cart([item("p1", 2), item("p2", 1)])
    cart.update_quantity("p1", None, 5)
    cart.update_quantity("p2", None, 0)

    assert [(l.product_id, l.quantity) for l in cart] == [("p1", 5)]


def test_remove_and_clear():
    cart = Cart([item("p1", size="S"), item("p2")])
    cart.remove("p1", "S")
    assert [l.product_id for l in cart] == ["p2"]
    cart.clear()
    assert len(cart) == 0


def test_totals_with_flat_tax():
    cart = Cart([item("A", 2, "25.00"), item("B", 1, "10.00")])
    assert cart.subtotal_cents == 6000
    assert cart.totals(FlatRateTax(Decimal("0.10"))) == {"subtotal": 60.0, "tax": 6.0, "total": 66.0}


def test_blob_carries_version_and_reloads():
    cart = Cart([item("p1", 2, "19.99", size="XS")])
    blob = cart.to_blob()

    assert blob["version"] == CART_SCHEMA_VERSION
    again = Cart.from_blob(blob)
    assert [l.model_dump() for l in again] == [l.model_dump() for l in cart]


def test_legacy_list_blob_is_migrated():
    legacy = [
        {"id": "p1", "name": "Dress", "price": 25, "quantity": 1, "image": "/a.png", "category": "clothing", "size": "M"},
        {"id": "p1", "name": "Dress", "price": 25, "quantity": 2, "image": "/a.png", "category": "clothing", "size": "M"},
        {"name": "broken"},
    ]
    cart = Cart.from_blob(legacy)
    assert [(l.product_id, l.size, l.quantity) for l in cart] == [("p1", "M", 3)]


def test_newer_blob_version_is_refused():
    with pytest.raises(ValueError):
        Cart.from_blob({"version": CART_SCHEMA_VERSION + 1, "items": []})


def test_cart_survives_across_sessions(db):
    cart = Cart([item("p1", 2)])
    save_cart(db, "user-1", cart, now_utc())

    assert [l.model_dump() for l in load_cart(db, "user-1")] == [l.model_dump() for l in cart]
    assert len(load_cart(db, "someone-else")) == 0


@pytest.mark.parametrize("amount,cents", [("25.00", 2500), ("0.1", 10), ("25.005", 2501), (19.99, 1999), (3, 300)])
def test_to_cents(amount, cents):
    assert to_cents(amount) == cents


def test_from_cents_and_rounding_of_tax():
    assert from_cents(6600) == Decimal("66.00")
    assert FlatRateTax(Decimal("0.10")).tax_for(1005) == 101
    assert FlatRateTax(Decimal("0")).tax_for(1005) == 0
    with pytest.raises(ValueError):
        FlatRateTax(Decimal("-0.1"))
