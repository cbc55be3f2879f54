"""Client-side cart with an offline mirror.

``OfflineCartRepository`` always tries the server first. A successful
response replaces the local SQLite mirror; a network failure applies the
same change to the mirror and returns the mirrored cart instead. Server
rejections are raised and leave the mirror alone. There is no merge: the
next successful round trip overwrites whatever the mirror held.
"""

from typing import Any, Dict, List, Optional

import httpx
import structlog
from sqlalchemy import (
    Column,
    Integer,
    MetaData,
    String,
    Table,
    create_engine,
    delete,
    func,
    insert,
    literal_column,
    select,
    update,
)
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.pool import StaticPool

from money import from_cents, to_cents

logger = structlog.get_logger(__name__)

DEFAULT_TIMEOUT = 10.0


class CartRequestRejected(Exception):
    """The server answered, but refused the cart request."""

    def __init__(self, status_code: int, detail: Any):
        super().__init__(f"Cart request rejected ({status_code}): {detail}")
        self.status_code = status_code
        self.detail = detail


metadata = MetaData()

cart_table = Table(
    "cart",
    metadata,
    Column("product_id", String, primary_key=True),
    Column("name", String),
    Column("price_cents", Integer, nullable=False, default=0),
    Column("quantity", Integer, nullable=False),
    Column("image", String),
)


class LocalCartMirror:
    """SQLite copy of the last known cart, one row per product."""

    def __init__(self, path: str = ":memory:"):
        if path == ":memory:":
            # One shared connection, or every checkout would see a fresh empty database
            self.engine = create_engine(
                "sqlite://", poolclass=StaticPool, connect_args={"check_same_thread": False}
            )
        else:
            self.engine = create_engine(f"sqlite:///{path}")
        metadata.create_all(self.engine)

    def items(self) -> List[Dict[str, Any]]:
        query = select(cart_table).order_by(literal_column("rowid"))
        with self.engine.connect() as conn:
            return [dict(row._mapping) for row in conn.execute(query)]

    def replace(self, items: List[Dict[str, Any]]) -> None:
        rows = [
            {
                "product_id": i["product_id"],
                "name": i.get("name"),
                "price_cents": i.get("price_cents", 0),
                "quantity": i["quantity"],
                "image": i.get("image"),
            }
            for i in items
        ]
        with self.engine.begin() as conn:
            conn.execute(delete(cart_table))
            if rows:
                conn.execute(insert(cart_table), rows)

    def add(self, product_id: str, quantity: int, name: Optional[str] = None, price_cents: int = 0, image: Optional[str] = None) -> None:
        stmt = sqlite_insert(cart_table).values(
            product_id=product_id, name=name, price_cents=price_cents, quantity=quantity, image=image
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[cart_table.c.product_id],
            set_={"quantity": cart_table.c.quantity + stmt.excluded.quantity},
        )
        with self.engine.begin() as conn:
            conn.execute(stmt)

    def set_quantity(self, product_id: str, quantity: int) -> None:
        if quantity <= 0:
            self.remove(product_id)
            return
        with self.engine.begin() as conn:
            conn.execute(update(cart_table).where(cart_table.c.product_id == product_id).values(quantity=quantity))

    def remove(self, product_id: str) -> None:
        with self.engine.begin() as conn:
            conn.execute(delete(cart_table).where(cart_table.c.product_id == product_id))

    def clear(self) -> None:
        with self.engine.begin() as conn:
            conn.execute(delete(cart_table))

    def total_cents(self) -> int:
        query = select(func.coalesce(func.sum(cart_table.c.price_cents * cart_table.c.quantity), 0))
        with self.engine.connect() as conn:
            return int(conn.execute(query).scalar_one())

    def close(self) -> None:
        self.engine.dispose()


class RemoteCart:
    """Thin httpx client for the ``/cart`` endpoints."""

    def __init__(self, base_url: str, token: str, transport: Optional[httpx.BaseTransport] = None, timeout: float = DEFAULT_TIMEOUT):
        self.client = httpx.Client(
            base_url=base_url,
            headers={"Authorization": f"Bearer {token}"},
            transport=transport,
            timeout=timeout,
        )

    def _request(self, method: str, url: str, **kwargs) -> Optional[Dict[str, Any]]:
        response = self.client.request(method, url, **kwargs)
        if response.is_error:
            try:
                detail = response.json().get("detail")
            except ValueError:
                detail = response.text
            raise CartRequestRejected(response.status_code, detail)
        if response.status_code == 204 or not response.content:
            return None
        return response.json()

    def fetch(self) -> Dict[str, Any]:
        return self._request("GET", "/cart")

    def add(self, product_id: str, quantity: int) -> Dict[str, Any]:
        return self._request("POST", "/cart/items", json={"productId": product_id, "quantity": quantity})

    def set_quantity(self, product_id: str, quantity: int) -> Dict[str, Any]:
        return self._request("PATCH", f"/cart/items/{product_id}", json={"quantity": quantity})

    def remove(self, product_id: str) -> Dict[str, Any]:
        return self._request("DELETE", f"/cart/items/{product_id}")

    def clear(self) -> None:
        self._request("DELETE", "/cart")

    def close(self) -> None:
        self.client.close()


def mirror_rows(server_cart: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Flatten a server cart into mirror rows."""
    rows = []
    for item in server_cart.get("items") or []:
        product = item.get("product") or {}
        rows.append(
            {
                "product_id": item["productId"],
                "name": product.get("name"),
                "price_cents": to_cents(product.get("price") or 0),
                "quantity": int(item["quantity"]),
                "image": product.get("image"),
            }
        )
    return rows


class OfflineCartRepository:
    def __init__(self, remote: RemoteCart, mirror: LocalCartMirror):
        self.remote = remote
        self.mirror = mirror

    def snapshot(self, offline: bool) -> Dict[str, Any]:
        items = [
            {
                "productId": row["product_id"],
                "name": row["name"],
                "price": float(from_cents(row["price_cents"])),
                "quantity": row["quantity"],
                "image": row["image"],
            }
            for row in self.mirror.items()
        ]
        return {"items": items, "totalPrice": float(from_cents(self.mirror.total_cents())), "offline": offline}

    def _synced(self, server_cart: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        self.mirror.replace(mirror_rows(server_cart or {}))
        return self.snapshot(offline=False)

    def fetch(self) -> Dict[str, Any]:
        try:
            return self._synced(self.remote.fetch())
        except httpx.TransportError as exc:
            logger.warning("Cart fetch failed, using local mirror", error=str(exc))
            return self.snapshot(offline=True)

    def add(
        self,
        product_id: str,
        quantity: int = 1,
        name: Optional[str] = None,
        price: Any = 0,
        image: Optional[str] = None,
    ) -> Dict[str, Any]:
        try:
            return self._synced(self.remote.add(product_id, quantity))
        except httpx.TransportError as exc:
            logger.warning("Cart add failed, saving locally", product_id=product_id, error=str(exc))
            self.mirror.add(product_id, quantity, name=name, price_cents=to_cents(price or 0), image=image)
            return self.snapshot(offline=True)

    def set_quantity(self, product_id: str, quantity: int) -> Dict[str, Any]:
        try:
            return self._synced(self.remote.set_quantity(product_id, quantity))
        except httpx.TransportError as exc:
            logger.warning("Cart update failed, updating locally", product_id=product_id, error=str(exc))
            self.mirror.set_quantity(product_id, quantity)
            return self.snapshot(offline=True)

    def remove(self, product_id: str) -> Dict[str, Any]:
        try:
            return self._synced(self.remote.remove(product_id))
        except httpx.TransportError as exc:
            logger.warning("Cart remove failed, removing locally", product_id=product_id, error=str(exc))
            self.mirror.remove(product_id)
            return self.snapshot(offline=True)

    def clear(self) -> Dict[str, Any]:
        try:
            self.remote.clear()
            offline = False
        except httpx.TransportError as exc:
            logger.warning("Cart clear failed, clearing locally", error=str(exc))
            offline = True
        self.mirror.clear()
        return self.snapshot(offline=offline)
