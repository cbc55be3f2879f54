"""Order workflow: checkout (cart -> order snapshot) and the status machine.

Checkout writes the order and then deletes the cart as two separate
writes. If the cart delete fails the order stands and the cart lingers;
nothing compensates for it.
"""

from enum import Enum
from typing import Any, Dict, List, Optional

import structlog
from pymongo import DESCENDING
from pymongo.database import Database
from pymongo.errors import PyMongoError

from database import create_document, to_object_id, touch
from errors import Forbidden, InvalidState, NotFound, UpstreamFailure
from money import line_total_cents
from notifications import NotificationFanout
from schemas import Order, OrderItem, OrderStatus, ShippingAddress

logger = structlog.get_logger(__name__)


class TransitionPolicy(str, Enum):
    """How status updates are checked against the current status.

    PERMISSIVE accepts any known status from any state (admins can move an
    order anywhere). STRICT follows pending -> processing -> shipped ->
    delivered, with cancelled reachable from any non-terminal state.
    """

    PERMISSIVE = "permissive"
    STRICT = "strict"


STRICT_TRANSITIONS = {
    OrderStatus.pending: {OrderStatus.processing, OrderStatus.cancelled},
    OrderStatus.processing: {OrderStatus.shipped, OrderStatus.cancelled},
    OrderStatus.shipped: {OrderStatus.delivered, OrderStatus.cancelled},
    OrderStatus.delivered: set(),
    OrderStatus.cancelled: set(),
}


def check_transition(policy: TransitionPolicy, current: str, new: OrderStatus) -> None:
    if TransitionPolicy(policy) is TransitionPolicy.PERMISSIVE:
        return
    current_status = OrderStatus(current)
    if new not in STRICT_TRANSITIONS[current_status]:
        raise InvalidState(f"Cannot move order from {current_status.value} to {new.value}")


class OrderWorkflow:
    def __init__(
        self,
        db: Database,
        fanout: NotificationFanout,
        policy: TransitionPolicy = TransitionPolicy.PERMISSIVE,
    ):
        self.db = db
        self.fanout = fanout
        self.policy = TransitionPolicy(policy)

    # ------------------------------------------------------------------
    # Checkout
    # ------------------------------------------------------------------

    def checkout(
        self,
        user_id: str,
        shipping_address: Optional[ShippingAddress] = None,
        payment_method: Optional[str] = None,
        transaction_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        logger.info("Checkout initiated", user_id=user_id)
        cart = self.db["cart"].find_one({"user_id": user_id})
        if not cart or not cart.get("items"):
            raise InvalidState("Cart is empty")

        # Snapshot current catalog data; later product edits never touch the order
        items: List[OrderItem] = []
        total = 0
        for line in cart["items"]:
            product = self.db["product"].find_one({"_id": to_object_id(line["product_id"], "Product")})
            if not product:
                raise InvalidState("Product in cart no longer exists")
            qty = int(line["quantity"])
            price = int(product.get("price_cents", 0))
            total += line_total_cents(price, qty)
            items.append(
                OrderItem(
                    product_id=str(product["_id"]),
                    name=product.get("name"),
                    price_cents=price,
                    quantity=qty,
                    image=product.get("image"),
                )
            )

        order = Order(
            user_id=user_id,
            items=items,
            total_price_cents=total,
            status=OrderStatus.processing,
            shipping_address=shipping_address,
            payment_method=payment_method,
            transaction_id=transaction_id,
        )
        order_id = create_document(self.db, "order", order)

        try:
            self.db["cart"].delete_one({"user_id": user_id})
        except PyMongoError as exc:
            logger.error("Order placed but cart not cleared", order_id=order_id, user_id=user_id, error=str(exc))

        logger.info("Order created", order_id=order_id, items=len(items), total_cents=total)
        return self.db["order"].find_one({"_id": to_object_id(order_id)})

    # ------------------------------------------------------------------
    # Status machine
    # ------------------------------------------------------------------

    def update_status(self, order_id: str, status: OrderStatus, actor: Dict[str, Any]) -> Dict[str, Any]:
        status = OrderStatus(status)
        oid = to_object_id(order_id, "Order")
        order = self.db["order"].find_one({"_id": oid})
        if not order:
            raise NotFound("Order not found")

        if not actor.get("is_admin") and order["user_id"] != str(actor["_id"]):
            raise Forbidden("Only the order owner or an admin can update this order")

        check_transition(self.policy, order.get("status", OrderStatus.pending.value), status)

        self.db["order"].update_one(
            {"_id": oid},
            {"$set": touch({"status": status.value, "notifications_sent": False})},
        )
        order = self.db["order"].find_one({"_id": oid})
        logger.info("Order status updated", order_id=order_id, status=status.value)

        # The status change is already durable; fan-out problems are only logged
        try:
            self.fanout.notify_order_status(order, status.value)
        except (PyMongoError, UpstreamFailure) as exc:
            logger.warning("Order notification failed", order_id=order_id, error=str(exc))
        else:
            # Written but never read before sending; see DESIGN.md
            self.db["order"].update_one({"_id": oid}, {"$set": {"notifications_sent": True}})
            order["notifications_sent"] = True
        return order

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def list_for_user(self, user_id: str) -> List[Dict[str, Any]]:
        cursor = self.db["order"].find({"user_id": user_id}).sort([("created_at", DESCENDING), ("_id", DESCENDING)])
        return list(cursor)

    def get_for_user(self, user_id: str, order_id: str) -> Dict[str, Any]:
        order = self.db["order"].find_one({"_id": to_object_id(order_id, "Order"), "user_id": user_id})
        if not order:
            raise NotFound("Order not found")
        return order

    def list_all(self) -> List[Dict[str, Any]]:
        """Every order with its buyer (username, email) and current products attached."""
        orders = list(self.db["order"].find({}).sort([("created_at", DESCENDING), ("_id", DESCENDING)]))

        user_ids = {o["user_id"] for o in orders}
        users = {
            str(u["_id"]): {"id": str(u["_id"]), "username": u.get("username"), "email": u.get("email")}
            for u in self.db["user"].find(
                {"_id": {"$in": [to_object_id(uid) for uid in user_ids]}}, {"username": 1, "email": 1}
            )
        }
        product_ids = {item["product_id"] for o in orders for item in o.get("items", [])}
        products = {
            str(p["_id"]): p
            for p in self.db["product"].find({"_id": {"$in": [to_object_id(pid) for pid in product_ids]}})
        }

        for order in orders:
            order["user"] = users.get(order["user_id"])
            for item in order.get("items", []):
                item["product"] = products.get(item["product_id"])
        return orders
