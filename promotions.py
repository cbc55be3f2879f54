from datetime import datetime
from typing import Any, Dict, List, Optional

import structlog
from pymongo.database import Database
from pymongo.errors import PyMongoError

from database import create_document, to_object_id, touch
from errors import NotFound, UpstreamFailure
from notifications import Audience, NotificationFanout, new_promotion_content
from schemas import Promotion, utcnow

logger = structlog.get_logger(__name__)


def currently_valid_filter(now: datetime) -> Dict[str, Any]:
    return {"is_active": True, "valid_from": {"$lte": now}, "valid_until": {"$gte": now}}


class PromotionService:
    def __init__(self, db: Database, fanout: NotificationFanout):
        self.db = db
        self.fanout = fanout

    def list_current(self, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        promotions = list(self.db["promotion"].find(currently_valid_filter(now or utcnow())))
        return [self._with_products(p, {"name": 1, "price_cents": 1}) for p in promotions]

    def get(self, promotion_id: str) -> Dict[str, Any]:
        promotion = self.db["promotion"].find_one({"_id": to_object_id(promotion_id, "Promotion")})
        if not promotion:
            raise NotFound("Promotion not found")
        return self._with_products(promotion)

    def create(self, promotion: Promotion) -> Dict[str, Any]:
        promotion_id = create_document(self.db, "promotion", promotion)
        created = self.db["promotion"].find_one({"_id": to_object_id(promotion_id)})
        logger.info("Promotion created", promotion_id=promotion_id, title=promotion.title)

        # Announcement is best effort; the promotion already exists
        try:
            self.fanout.notify_promotion(new_promotion_content(created), Audience.USERS_WITH_TOKENS)
        except (PyMongoError, UpstreamFailure) as exc:
            logger.warning("Promotion announcement failed", promotion_id=promotion_id, error=str(exc))
        return created

    def update(self, promotion_id: str, changes: Dict[str, Any]) -> Dict[str, Any]:
        oid = to_object_id(promotion_id, "Promotion")
        update = {k: v for k, v in changes.items() if v is not None}
        res = self.db["promotion"].update_one({"_id": oid}, {"$set": touch(update)})
        if res.matched_count == 0:
            raise NotFound("Promotion not found")
        return self.db["promotion"].find_one({"_id": oid})

    def delete(self, promotion_id: str) -> None:
        self.db["promotion"].delete_one({"_id": to_object_id(promotion_id, "Promotion")})

    def _with_products(self, promotion: Dict[str, Any], projection: Optional[Dict[str, int]] = None) -> Dict[str, Any]:
        ids = []
        for pid in promotion.get("applicable_products", []):
            try:
                ids.append(to_object_id(pid))
            except NotFound:
                continue
        promotion["applicable_products"] = list(self.db["product"].find({"_id": {"$in": ids}}, projection)) if ids else []
        return promotion
