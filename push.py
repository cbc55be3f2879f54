"""Push delivery.

``PushPort`` is the seam to the push network. ``ExpoPushAdapter`` talks to
Expo through ``exponent_server_sdk``; ``FakePushAdapter`` records batches
in memory for tests. ``PushDispatcher`` validates tokens, splits messages
into provider-sized chunks and submits each chunk on its own so that one
failed chunk never stops the others.
"""

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Iterator, List, Optional
from uuid import uuid4

import requests
import structlog
from exponent_server_sdk import PushClient, PushMessage, PushServerError
from pymongo.database import Database
from pymongo.errors import PyMongoError

from errors import UpstreamFailure
from schemas import utcnow

logger = structlog.get_logger(__name__)

# Expo accepts at most 100 messages per request
EXPO_MAX_BATCH = 100

_BRACKETED_TOKEN = re.compile(r"^(ExponentPushToken|ExpoPushToken)\[.+\]$")
_UUID_TOKEN = re.compile(r"^[a-z\d]{8}-[a-z\d]{4}-[a-z\d]{4}-[a-z\d]{4}-[a-z\d]{12}$", re.IGNORECASE)


def is_expo_push_token(token: Any) -> bool:
    if not isinstance(token, str):
        return False
    return bool(_BRACKETED_TOKEN.match(token) or _UUID_TOKEN.match(token))


@dataclass
class OutgoingPush:
    token: str
    title: str
    body: str
    data: Dict[str, Any] = field(default_factory=dict)
    sound: Optional[str] = "default"


class PushPort(ABC):
    """Abstract interface for push delivery adapters."""

    def is_valid_token(self, token: Any) -> bool:
        return is_expo_push_token(token)

    @abstractmethod
    def send_batch(self, messages: List[OutgoingPush]) -> List[Dict[str, Any]]:
        """Submit one batch.

        Returns one ticket per message: dict with keys token, status
        ("ok" or "error"), id and message. Raises ``UpstreamFailure`` when
        the whole batch is rejected.
        """
        ...


class ExpoPushAdapter(PushPort):
    def __init__(self, access_token: Optional[str] = None, session: Optional[requests.Session] = None):
        session = session or requests.Session()
        session.headers.update(
            {
                "accept": "application/json",
                "accept-encoding": "gzip, deflate",
                "content-type": "application/json",
            }
        )
        if access_token:
            session.headers.update({"Authorization": f"Bearer {access_token}"})
        self.client = PushClient(session=session)

    def send_batch(self, messages: List[OutgoingPush]) -> List[Dict[str, Any]]:
        push_messages = [
            PushMessage(to=m.token, title=m.title, body=m.body, data=m.data, sound=m.sound)
            for m in messages
        ]
        try:
            tickets = self.client.publish_multiple(push_messages)
        except PushServerError as exc:
            raise UpstreamFailure(f"Push server rejected batch: {exc}")
        except requests.RequestException as exc:
            raise UpstreamFailure(f"Push server unreachable: {exc}")
        return [
            {
                "token": ticket.push_message.to,
                "status": ticket.status,
                "id": ticket.id,
                "message": ticket.message,
            }
            for ticket in tickets
        ]


class FakePushAdapter(PushPort):
    """Push adapter that records batches in memory for test assertions."""

    def __init__(self):
        self.sent_batches: List[List[OutgoingPush]] = []
        self.failing_tokens: set = set()

    def fail_for(self, *tokens: str) -> None:
        """Make any batch containing one of ``tokens`` fail as a whole."""
        self.failing_tokens.update(tokens)

    @property
    def sent(self) -> List[OutgoingPush]:
        return [m for batch in self.sent_batches for m in batch]

    def send_batch(self, messages: List[OutgoingPush]) -> List[Dict[str, Any]]:
        if any(m.token in self.failing_tokens for m in messages):
            raise UpstreamFailure("Push delivery failed")
        self.sent_batches.append(list(messages))
        return [
            {"token": m.token, "status": "ok", "id": f"push-{uuid4().hex[:12]}", "message": None}
            for m in messages
        ]

    def reset(self):
        self.sent_batches.clear()
        self.failing_tokens.clear()


def chunked(items: List[Any], size: int) -> Iterator[List[Any]]:
    for start in range(0, len(items), size):
        yield items[start : start + size]


@dataclass
class DispatchReport:
    sent: int = 0
    skipped: int = 0
    failed: int = 0
    chunks: int = 0


class PushDispatcher:
    def __init__(self, port: PushPort, db: Database, chunk_size: int = EXPO_MAX_BATCH):
        self.port = port
        self.db = db
        self.chunk_size = max(1, min(chunk_size, EXPO_MAX_BATCH))

    def dispatch(self, messages: Iterable[OutgoingPush]) -> DispatchReport:
        report = DispatchReport()
        valid: List[OutgoingPush] = []
        for message in messages:
            if self.port.is_valid_token(message.token):
                valid.append(message)
            else:
                # Skipped, not erased: the stale-token sweep owns removal
                report.skipped += 1
                logger.warning("Skipping invalid push token", token=message.token)

        for chunk in chunked(valid, self.chunk_size):
            report.chunks += 1
            try:
                tickets = self.port.send_batch(chunk)
            except UpstreamFailure as exc:
                report.failed += len(chunk)
                logger.warning("Push chunk failed", size=len(chunk), error=exc.message)
                continue

            delivered = []
            for ticket in tickets:
                if ticket.get("status") == "ok":
                    delivered.append(ticket["token"])
                else:
                    report.failed += 1
                    logger.warning("Push ticket error", token=ticket.get("token"), error=ticket.get("message"))
            report.sent += len(delivered)
            self._touch_tokens(delivered)

        logger.info(
            "Push dispatch finished",
            sent=report.sent,
            skipped=report.skipped,
            failed=report.failed,
            chunks=report.chunks,
        )
        return report

    def _touch_tokens(self, tokens: List[str]) -> None:
        now = utcnow()
        for token in tokens:
            try:
                self.db["user"].update_many(
                    {"push_tokens.token": token},
                    {"$set": {"push_tokens.$.last_used_at": now}},
                )
            except PyMongoError as exc:
                logger.warning("Could not touch push token", token=token, error=str(exc))
