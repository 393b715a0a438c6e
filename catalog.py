import logging
from typing import Any, Dict, List, Optional

from database import create_document, now_utc, oid, to_str_id
from errors import NotFoundError
from pricing import as_amount, to_cents
from schemas import SIZES, Product, ProductUpdate

logger = logging.getLogger(__name__)


def serialize_product(doc: Dict[str, Any]) -> Dict[str, Any]:
    p = to_str_id(doc)
    p["price"] = as_amount(p.pop("price_cents", 0))
    p["sizes"] = SIZES.get(p.get("category"), [])
    return p


def list_products(database, category: Optional[str] = None, q: Optional[str] = None) -> List[Dict[str, Any]]:
    filt: Dict[str, Any] = {}
    if category and category != "all":
        filt["category"] = category
    if q:
        filt["$or"] = [
            {"name": {"$regex": q, "$options": "i"}},
            {"description": {"$regex": q, "$options": "i"}},
        ]
    return [serialize_product(p) for p in database["product"].find(filt).sort("created_at", -1)]


def get_product(database, product_id: str) -> Dict[str, Any]:
    doc = database["product"].find_one({"_id": oid(product_id)})
    if not doc:
        raise NotFoundError("Product not found")
    prod = serialize_product(doc)
    ratings = [r.get("rating", 0) for r in database["review"].find({"product_id": prod["id"]}, {"rating": 1})]
    prod["reviews_count"] = len(ratings)
    prod["rating"] = round(sum(ratings) / len(ratings), 1) if ratings else None
    return prod


def create_product(database, body: Product) -> Dict[str, Any]:
    doc = body.model_dump(exclude={"price"})
    doc["price_cents"] = to_cents(body.price)
    product_id = create_document(database, "product", doc)
    logger.info("Product %s created (%s)", product_id, body.name)
    return get_product(database, product_id)


def update_product(database, product_id: str, body: ProductUpdate) -> Dict[str, Any]:
    changes = body.model_dump(exclude_unset=True, exclude={"price"})
    if body.price is not None:
        changes["price_cents"] = to_cents(body.price)
    changes["updated_at"] = now_utc()
    res = database["product"].update_one({"_id": oid(product_id)}, {"$set": changes})
    if res.matched_count == 0:
        raise NotFoundError("Product not found")
    return get_product(database, product_id)


def delete_product(database, product_id: str):
    res = database["product"].delete_one({"_id": oid(product_id)})
    if res.deleted_count == 0:
        raise NotFoundError("Product not found")
    logger.info("Product %s deleted", product_id)
