"""Server-side cart aggregate: one mutable cart document per user."""

from typing import Any, Dict, List, Optional

import structlog
from pymongo import ReturnDocument
from pymongo.database import Database

from database import doc_to_public, to_object_id, touch
from errors import NotFound
from money import line_total_cents
from schemas import Cart, CartItem, utcnow

logger = structlog.get_logger(__name__)


class CartService:
    def __init__(self, db: Database):
        self.db = db

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_cart(self, user_id: str) -> Dict[str, Any]:
        self._ensure(user_id)
        return self.resolve(self._find(user_id))

    def resolve(self, cart: Optional[Dict[str, Any]], user_id: Optional[str] = None) -> Dict[str, Any]:
        """Join cart lines with live product data and compute the total.

        Prices always come from the catalog at read time, never from the cart.
        """
        if cart is None:
            cart = {"user_id": user_id, "items": []}
        items = cart.get("items", [])
        products = self._products_by_id([i["product_id"] for i in items])

        lines: List[Dict[str, Any]] = []
        total = 0
        for item in items:
            product = products.get(item["product_id"])
            if product is not None:
                total += line_total_cents(product.get("price_cents", 0), item["quantity"])
            lines.append(
                {
                    "product_id": item["product_id"],
                    "quantity": item["quantity"],
                    "product": doc_to_public(product) if product else None,
                }
            )
        resolved = {k: v for k, v in cart.items() if k != "items"}
        resolved["items"] = lines
        resolved["total_price_cents"] = total
        return resolved

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def add_item(self, user_id: str, product_id: str, quantity: int = 1) -> Dict[str, Any]:
        quantity = max(1, int(quantity or 1))
        product = self.db["product"].find_one(
            {"_id": to_object_id(product_id, "Product"), "is_active": {"$ne": False}}
        )
        if not product:
            raise NotFound("Product not found")
        product_id = str(product["_id"])

        # Increment in place when the line exists; otherwise append (creating the cart)
        cart = self._increment(user_id, product_id, quantity)
        if cart is None:
            self._ensure(user_id)
            # The push only applies while no line holds the product, so a
            # concurrent first add can never leave two lines
            cart = self.db["cart"].find_one_and_update(
                {"user_id": user_id, "items.product_id": {"$ne": product_id}},
                {"$push": {"items": CartItem(product_id=product_id, quantity=quantity).model_dump()}, "$set": touch({})},
                return_document=ReturnDocument.AFTER,
            )
            if cart is None:
                cart = self._increment(user_id, product_id, quantity)
        logger.info("Cart item added", user_id=user_id, product_id=product_id, quantity=quantity)
        return self.resolve(cart)

    def set_item_quantity(self, user_id: str, product_id: str, quantity: int) -> Dict[str, Any]:
        if quantity <= 0:
            return self.remove_item(user_id, product_id)

        cart = self._find(user_id)
        if cart is None:
            raise NotFound("Cart not found")
        cart = self.db["cart"].find_one_and_update(
            {"user_id": user_id, "items.product_id": product_id},
            {"$set": touch({"items.$.quantity": int(quantity)})},
            return_document=ReturnDocument.AFTER,
        )
        if cart is None:
            raise NotFound("Item not in cart")
        return self.resolve(cart)

    def remove_item(self, user_id: str, product_id: str) -> Dict[str, Any]:
        cart = self.db["cart"].find_one_and_update(
            {"user_id": user_id},
            {"$pull": {"items": {"product_id": product_id}}, "$set": touch({})},
            return_document=ReturnDocument.AFTER,
        )
        return self.resolve(cart, user_id=user_id)

    def clear_cart(self, user_id: str) -> None:
        self.db["cart"].delete_one({"user_id": user_id})

    # ------------------------------------------------------------------

    def _find(self, user_id: str) -> Optional[Dict[str, Any]]:
        return self.db["cart"].find_one({"user_id": user_id})

    def _increment(self, user_id: str, product_id: str, quantity: int) -> Optional[Dict[str, Any]]:
        return self.db["cart"].find_one_and_update(
            {"user_id": user_id, "items.product_id": product_id},
            {"$inc": {"items.$.quantity": quantity}, "$set": touch({})},
            return_document=ReturnDocument.AFTER,
        )

    def _ensure(self, user_id: str) -> None:
        now = utcnow()
        doc = Cart(user_id=user_id).model_dump()
        doc.update(created_at=now, updated_at=now)
        self.db["cart"].update_one({"user_id": user_id}, {"$setOnInsert": doc}, upsert=True)

    def _products_by_id(self, product_ids: List[str]) -> Dict[str, Dict[str, Any]]:
        oids = []
        for pid in product_ids:
            try:
                oids.append(to_object_id(pid))
            except NotFound:
                continue
        if not oids:
            return {}
        return {str(p["_id"]): p for p in self.db["product"].find({"_id": {"$in": oids}})}
