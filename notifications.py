"""Notification fan-out.

Turns a domain event into one persisted ``notification`` row per recipient
and a best-effort push to every device token the recipients hold. Rows are
written first; push delivery never raises back into the caller.

There is no idempotency: firing the same event twice notifies twice.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

import structlog
from pymongo import DESCENDING
from pymongo.database import Database

from database import create_document, to_object_id, touch
from errors import InvalidInput, NotFound
from money import from_cents
from push import DispatchReport, OutgoingPush, PushDispatcher
from schemas import Notification, NotificationType, utcnow

logger = structlog.get_logger(__name__)

NOTIFICATION_LIST_LIMIT = 50


class Audience(str, Enum):
    """Audience selection policies for broadcast events."""

    NON_ADMIN_USERS = "non_admin_users"
    USERS_WITH_TOKENS = "users_with_tokens"


AUDIENCE_FILTERS: Dict[Audience, Dict[str, Any]] = {
    Audience.NON_ADMIN_USERS: {"is_admin": {"$ne": True}},
    Audience.USERS_WITH_TOKENS: {"push_tokens": {"$exists": True, "$ne": []}},
}


@dataclass
class NotificationContent:
    title: str
    body: str
    type: NotificationType
    data: Dict[str, Any] = field(default_factory=dict)
    push_title: Optional[str] = None


@dataclass
class FanoutResult:
    recipients: int
    push: DispatchReport


def order_status_content(order_id: str, status: str) -> NotificationContent:
    short = order_id[-6:].upper()
    return NotificationContent(
        title="📦 Order Update",
        body=f"Your order #{short} status: {status}",
        type=NotificationType.order,
        data={"type": "order", "orderId": order_id, "status": status},
        push_title="Order Update",
    )


def _product_data(product: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "type": "promotion",
        "productId": str(product["_id"]),
        "productName": product.get("name"),
        "price": str(from_cents(product.get("price_cents", 0))),
        "image": product.get("image"),
        "category": product.get("category"),
    }


def product_promotion_content(
    product: Dict[str, Any], title: Optional[str] = None, message: Optional[str] = None
) -> NotificationContent:
    name = product.get("name")
    price = from_cents(product.get("price_cents", 0))
    return NotificationContent(
        title=title or f"🎉 Special: {name}",
        body=message or f"Check out {name} - ${price}",
        type=NotificationType.promotion,
        data=_product_data(product),
    )


def deal_alert_content(product: Dict[str, Any]) -> NotificationContent:
    name = product.get("name")
    price = from_cents(product.get("price_cents", 0))
    return NotificationContent(
        title=f"🎉 Deal Alert: {name}",
        body=f"Don't miss out on {name} - Only ${price}!",
        type=NotificationType.promotion,
        data=_product_data(product),
    )


def new_promotion_content(promotion: Dict[str, Any]) -> NotificationContent:
    return NotificationContent(
        title="🎉 New Promotion!",
        body=promotion.get("title", ""),
        type=NotificationType.promotion,
        data={"type": "promotion", "promotionId": str(promotion["_id"])},
    )


class NotificationFanout:
    def __init__(self, db: Database, dispatcher: PushDispatcher):
        self.db = db
        self.dispatcher = dispatcher

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def notify_order_status(self, order: Dict[str, Any], status: str) -> FanoutResult:
        order_id = str(order["_id"])
        owner_id = str(order["user_id"])
        content = order_status_content(order_id, status)

        self._save(owner_id, content)

        owner = self.db["user"].find_one({"_id": to_object_id(owner_id)}, {"push_tokens": 1})
        messages = self._messages_for([owner] if owner else [], content)
        report = self.dispatcher.dispatch(messages)
        logger.info("Order status fan-out", order_id=order_id, status=status, pushed=report.sent)
        return FanoutResult(recipients=1, push=report)

    def notify_promotion(self, content: NotificationContent, audience: Audience) -> FanoutResult:
        audience = Audience(audience)
        users = list(self.db["user"].find(AUDIENCE_FILTERS[audience], {"_id": 1, "push_tokens": 1}))

        rows = []
        now = utcnow()
        for user in users:
            row = Notification(
                user_id=str(user["_id"]),
                title=content.title,
                body=content.body,
                type=content.type,
                data=content.data,
            ).model_dump()
            row["created_at"] = now
            row["updated_at"] = now
            rows.append(row)
        if rows:
            self.db["notification"].insert_many(rows)

        report = self.dispatcher.dispatch(self._messages_for(users, content))
        logger.info(
            "Promotion fan-out",
            audience=audience.value,
            recipients=len(rows),
            pushed=report.sent,
            push_failed=report.failed,
        )
        return FanoutResult(recipients=len(rows), push=report)

    # ------------------------------------------------------------------
    # Per-user operations
    # ------------------------------------------------------------------

    def register_token(self, user_id: str, token: str, validate: bool = True) -> bool:
        """Register ``token`` for the user; returns True when it was new."""
        if not token:
            raise InvalidInput("Token is required")
        if validate and not self.dispatcher.port.is_valid_token(token):
            raise InvalidInput("Invalid Expo push token")

        uid = to_object_id(user_id, "User")
        now = utcnow()
        added = self.db["user"].update_one(
            {"_id": uid, "push_tokens.token": {"$ne": token}},
            {"$push": {"push_tokens": {"token": token, "last_used_at": now}}},
        )
        if added.modified_count:
            logger.info("Registered new push token", user_id=user_id)
            return True
        self.db["user"].update_one(
            {"_id": uid, "push_tokens.token": token},
            {"$set": {"push_tokens.$.last_used_at": now}},
        )
        logger.info("Refreshed push token", user_id=user_id)
        return False

    def list_for_user(self, user_id: str, limit: int = NOTIFICATION_LIST_LIMIT) -> List[Dict[str, Any]]:
        cursor = (
            self.db["notification"]
            .find({"user_id": user_id})
            .sort([("created_at", DESCENDING), ("_id", DESCENDING)])
            .limit(limit)
        )
        return list(cursor)

    def mark_read(self, user_id: str, notification_id: str) -> Dict[str, Any]:
        oid = to_object_id(notification_id, "Notification")
        res = self.db["notification"].update_one(
            {"_id": oid, "user_id": user_id},
            {"$set": touch({"read": True})},
        )
        if res.matched_count == 0:
            raise NotFound("Notification not found")
        return self.db["notification"].find_one({"_id": oid})

    # ------------------------------------------------------------------

    def _save(self, user_id: str, content: NotificationContent) -> str:
        notification = Notification(
            user_id=user_id,
            title=content.title,
            body=content.body,
            type=content.type,
            data=content.data,
        )
        notification_id = create_document(self.db, "notification", notification)
        logger.info("Saved notification", user_id=user_id, title=content.title)
        return notification_id

    def _messages_for(self, users: List[Dict[str, Any]], content: NotificationContent) -> List[OutgoingPush]:
        messages = []
        for user in users:
            for record in user.get("push_tokens") or []:
                messages.append(
                    OutgoingPush(
                        token=record.get("token"),
                        title=content.push_title or content.title,
                        body=content.body,
                        data=content.data,
                    )
                )
        return messages
