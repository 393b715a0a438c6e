import logging
from typing import Any, Dict, List, Optional

from database import get_documents, now_utc, oid, to_str_id
from errors import NotFoundError
from schemas import Review

logger = logging.getLogger(__name__)


def has_purchased(database, user_id: str, product_id: str) -> bool:
    order_ids = [str(o["_id"]) for o in database["order"].find(
        {"user_id": user_id, "committed": True, "status": {"$ne": "cancelled"}}, {"_id": 1}
    )]
    if not order_ids:
        return False
    return database["order_item"].count_documents(
        {"order_id": {"$in": order_ids}, "product_id": product_id}
    ) > 0


def add_review(database, user: Dict[str, Any], product_id: str, rating: int,
               comment: Optional[str] = None) -> Dict[str, Any]:
    if not database["product"].find_one({"_id": oid(product_id)}, {"_id": 1}):
        raise NotFoundError("Product not found")
    user_id = str(user["_id"])
    review = Review(
        product_id=product_id,
        user_id=user_id,
        user_name=user.get("email"),
        rating=rating,
        comment=comment,
        verified=has_purchased(database, user_id, product_id),
    ).model_dump()
    review["created_at"] = now_utc()
    database["review"].insert_one(review)
    return to_str_id(review)


def list_reviews(database, product_id: Optional[str] = None) -> List[Dict[str, Any]]:
    filt = {"product_id": product_id} if product_id else {}
    return get_documents(database, "review", filt, sort=[("created_at", -1)])


def delete_review(database, review_id: str):
    res = database["review"].delete_one({"_id": oid(review_id)})
    if res.deleted_count == 0:
        raise NotFoundError("Review not found")
    logger.info("Review %s deleted", review_id)
