"""Reviews and the product rating aggregate.

Only verified buyers may review: the referenced order must belong to the
caller and contain the product. Every create, edit and delete recomputes
the product's ``average_rating`` and ``review_count`` from scratch.
"""

from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, List, Optional

import structlog
from pymongo import DESCENDING
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from database import create_document, to_object_id, touch
from errors import Conflict, Forbidden, NotFound
from schemas import Review

logger = structlog.get_logger(__name__)


def rounded_mean(ratings: List[int]) -> float:
    if not ratings:
        return 0.0
    mean = Decimal(sum(ratings)) / Decimal(len(ratings))
    return float(mean.quantize(Decimal("0.1"), rounding=ROUND_HALF_UP))


class ReviewService:
    def __init__(self, db: Database):
        self.db = db

    def create(
        self,
        user_id: str,
        product_id: str,
        order_id: str,
        rating: int,
        comment: Optional[str] = None,
    ) -> Dict[str, Any]:
        try:
            order = self.db["order"].find_one({"_id": to_object_id(order_id), "user_id": user_id})
        except NotFound:
            order = None
        if not order:
            raise Forbidden("Only verified buyers can leave reviews")

        if not any(item.get("product_id") == product_id for item in order.get("items", [])):
            raise Forbidden("Product not in this order")

        if self.db["review"].find_one({"product_id": product_id, "user_id": user_id}):
            raise Conflict("You already reviewed this product")

        review = Review(
            product_id=product_id,
            user_id=user_id,
            order_id=order_id,
            rating=rating,
            comment=comment,
            is_verified=True,
        )
        try:
            review_id = create_document(self.db, "review", review)
        except DuplicateKeyError:
            raise Conflict("You already reviewed this product")

        self.db["user"].update_one(
            {"_id": to_object_id(user_id, "User")},
            {"$push": {"reviews_posted": review_id}},
        )
        self.recompute_product_rating(product_id)
        logger.info("Review created", review_id=review_id, product_id=product_id, rating=rating)
        return self.db["review"].find_one({"_id": to_object_id(review_id)})

    def update(
        self,
        user_id: str,
        review_id: str,
        rating: Optional[int] = None,
        comment: Optional[str] = None,
    ) -> Dict[str, Any]:
        review = self._owned(user_id, review_id)
        changes: Dict[str, Any] = {}
        if rating:
            changes["rating"] = rating
        if comment:
            changes["comment"] = comment
        self.db["review"].update_one({"_id": review["_id"]}, {"$set": touch(changes)})

        self.recompute_product_rating(review["product_id"])
        return self.db["review"].find_one({"_id": review["_id"]})

    def delete(self, user_id: str, review_id: str) -> None:
        review = self._owned(user_id, review_id)
        self.db["review"].delete_one({"_id": review["_id"]})
        self.db["user"].update_one(
            {"_id": to_object_id(user_id, "User")},
            {"$pull": {"reviews_posted": str(review["_id"])}},
        )
        self.recompute_product_rating(review["product_id"])
        logger.info("Review deleted", review_id=review_id, product_id=review["product_id"])

    def recompute_product_rating(self, product_id: str) -> Dict[str, Any]:
        # O(n) in the product's review count
        ratings = [r["rating"] for r in self.db["review"].find({"product_id": product_id}, {"rating": 1})]
        aggregate = {"average_rating": rounded_mean(ratings), "review_count": len(ratings)}
        self.db["product"].update_one({"_id": to_object_id(product_id, "Product")}, {"$set": aggregate})
        return aggregate

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def list_for_product(self, product_id: str) -> List[Dict[str, Any]]:
        reviews = list(
            self.db["review"].find({"product_id": product_id}).sort([("created_at", DESCENDING), ("_id", DESCENDING)])
        )
        authors = self._users({r["user_id"] for r in reviews}, {"username": 1, "profile_picture": 1})
        for review in reviews:
            review["user"] = authors.get(review["user_id"])
        return reviews

    def list_for_user(self, user_id: str) -> List[Dict[str, Any]]:
        reviews = list(
            self.db["review"].find({"user_id": user_id}).sort([("created_at", DESCENDING), ("_id", DESCENDING)])
        )
        product_ids = [to_object_id(r["product_id"]) for r in reviews]
        products = {
            str(p["_id"]): p
            for p in self.db["product"].find({"_id": {"$in": product_ids}}, {"name": 1, "image": 1})
        }
        for review in reviews:
            review["product"] = products.get(review["product_id"])
        return reviews

    # ------------------------------------------------------------------

    def _owned(self, user_id: str, review_id: str) -> Dict[str, Any]:
        review = self.db["review"].find_one({"_id": to_object_id(review_id, "Review")})
        if not review:
            raise NotFound("Review not found")
        if review["user_id"] != user_id:
            raise Forbidden("You can only change your own reviews")
        return review

    def _users(self, user_ids, projection) -> Dict[str, Dict[str, Any]]:
        oids = [to_object_id(uid) for uid in user_ids]
        return {str(u["_id"]): u for u in self.db["user"].find({"_id": {"$in": oids}}, projection)}
