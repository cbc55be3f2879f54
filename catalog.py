"""Product catalog queries and owner-checked mutations."""

import re
from typing import Any, Dict, List, Optional

import structlog
from pymongo import DESCENDING
from pymongo.database import Database

from database import create_document, to_object_id, touch
from errors import Forbidden, InvalidInput, NotFound
from money import to_cents
from schemas import Product

logger = structlog.get_logger(__name__)

TRENDING_LIMIT = 10


def can_manage(product: Dict[str, Any], user: Dict[str, Any]) -> bool:
    """Admins, the uploader, and anyone for seeded (unowned) products."""
    if user.get("is_admin"):
        return True
    owner = product.get("uploaded_by")
    return owner is None or owner == str(user["_id"])


class CatalogService:
    def __init__(self, db: Database):
        self.db = db

    def list_products(
        self,
        search: Optional[str] = None,
        category: Optional[str] = None,
        min_price: Optional[str] = None,
        max_price: Optional[str] = None,
        vtuber: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        query: Dict[str, Any] = {"is_active": True}
        if search:
            pattern = re.escape(search)
            query["$or"] = [
                {"name": {"$regex": pattern, "$options": "i"}},
                {"description": {"$regex": pattern, "$options": "i"}},
                {"tags": {"$regex": pattern, "$options": "i"}},
            ]
        if category:
            query["category"] = category
        if vtuber:
            query["vtuber_tag"] = {"$regex": re.escape(vtuber), "$options": "i"}
        if min_price or max_price:
            price: Dict[str, int] = {}
            try:
                if min_price:
                    price["$gte"] = to_cents(min_price)
                if max_price:
                    price["$lte"] = to_cents(max_price)
            except ValueError as exc:
                raise InvalidInput(str(exc))
            query["price_cents"] = price

        products = list(self.db["product"].find(query).sort([("created_at", DESCENDING), ("_id", DESCENDING)]))
        self._attach_uploaders(products)
        logger.debug("Listed products", search=search, category=category, found=len(products))
        return products

    def _attach_uploaders(self, products: List[Dict[str, Any]]) -> None:
        """Replace each ``uploaded_by`` id with the uploader's public profile."""
        oids = []
        for uid in {p["uploaded_by"] for p in products if p.get("uploaded_by")}:
            try:
                oids.append(to_object_id(uid))
            except NotFound:
                continue
        if not oids:
            return
        users = {
            str(u["_id"]): u
            for u in self.db["user"].find({"_id": {"$in": oids}}, {"username": 1, "profile_picture": 1})
        }
        for product in products:
            uploader = users.get(product.get("uploaded_by"))
            if uploader is not None:
                product["uploaded_by"] = uploader

    def categories(self) -> List[str]:
        return sorted(self.db["product"].distinct("category", {"is_active": True}))

    def trending(self) -> List[Dict[str, Any]]:
        cursor = (
            self.db["product"]
            .find({"is_active": True})
            .sort([("review_count", DESCENDING), ("average_rating", DESCENDING)])
            .limit(TRENDING_LIMIT)
        )
        return list(cursor)

    def get(self, product_id: str) -> Dict[str, Any]:
        product = self.db["product"].find_one({"_id": to_object_id(product_id, "Product")})
        if not product:
            raise NotFound("Product not found")
        return product

    def create(self, product: Product) -> Dict[str, Any]:
        product_id = create_document(self.db, "product", product)
        logger.info("Product created", product_id=product_id, name=product.name, uploaded_by=product.uploaded_by)
        return self.get(product_id)

    def update(self, product_id: str, user: Dict[str, Any], changes: Dict[str, Any], image: Optional[str] = None) -> Dict[str, Any]:
        product = self.managed(product_id, user)
        update = {k: v for k, v in changes.items() if v is not None}
        ops: Dict[str, Any] = {"$set": touch(update)}
        if image and image != product.get("image"):
            ops["$set"]["image"] = image
            if image not in product.get("images", []):
                ops["$push"] = {"images": image}
        self.db["product"].update_one({"_id": product["_id"]}, ops)
        return self.get(product_id)

    def add_image(self, product_id: str, user: Dict[str, Any], url: str) -> Dict[str, Any]:
        product = self.managed(product_id, user)
        update: Dict[str, Any] = {"$push": {"images": url}, "$set": touch({})}
        if not product.get("image"):
            update["$set"]["image"] = url
        self.db["product"].update_one({"_id": product["_id"]}, update)
        return self.get(product_id)

    def delete(self, product_id: str, user: Dict[str, Any]) -> None:
        # Soft delete: orders and reviews keep pointing at the document
        product = self.managed(product_id, user)
        self.db["product"].update_one({"_id": product["_id"]}, {"$set": touch({"is_active": False})})
        logger.info("Product deactivated", product_id=product_id)

    def random_active(self, pick) -> Optional[Dict[str, Any]]:
        """Return one active product chosen by ``pick(count) -> index``."""
        count = self.db["product"].count_documents({"is_active": True})
        if count == 0:
            return None
        index = pick(count)
        docs = list(self.db["product"].find({"is_active": True}).sort("_id", 1).skip(index).limit(1))
        return docs[0] if docs else None

    def managed(self, product_id: str, user: Dict[str, Any]) -> Dict[str, Any]:
        product = self.get(product_id)
        if not can_manage(product, user):
            raise Forbidden("You can only manage your own products")
        return product
