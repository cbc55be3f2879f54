from datetime import datetime, timedelta

from database import create_document
from schemas import Promotion, utcnow


def window(days_from, days_until):
    now = utcnow()
    return (now + timedelta(days=days_from)).isoformat(), (now + timedelta(days=days_until)).isoformat()


class TestPromotionLifecycle:
    def test_create_announces_to_token_holders(self, client, register, admin, db, push, expo_token):
        _, fan = register("fan")
        register("silent")
        token = expo_token()
        client.post("/notifications/register-token", headers=fan, json={"token": token})
        _, admin_headers = admin

        valid_from, valid_until = window(-1, 7)
        res = client.post(
            "/promotions",
            headers=admin_headers,
            json={"title": "Golden Week", "discountPercent": 15, "validFrom": valid_from, "validUntil": valid_until},
        )
        assert res.status_code == 201
        assert res.json()["title"] == "Golden Week"
        assert res.json()["isActive"] is True

        rows = list(db["notification"].find({}))
        assert len(rows) == 1
        assert rows[0]["title"] == "🎉 New Promotion!"
        assert rows[0]["body"] == "Golden Week"
        assert rows[0]["data"]["promotionId"] == res.json()["id"]
        assert [m.token for m in push.sent] == [token]

    def test_create_requires_admin(self, client, register):
        _, headers = register()
        valid_from, valid_until = window(0, 1)
        res = client.post("/promotions", headers=headers, json={"title": "x", "validFrom": valid_from, "validUntil": valid_until})
        assert res.status_code == 403

    def test_create_requires_window(self, client, admin):
        _, admin_headers = admin
        res = client.post("/promotions", headers=admin_headers, json={"title": "No dates"})
        assert res.status_code == 400

    def test_multipart_lists(self, client, admin, make_product):
        _, admin_headers = admin
        pid = make_product(name="Hoodie")
        valid_from, valid_until = window(-1, 1)
        res = client.post(
            "/promotions",
            headers=admin_headers,
            data={
                "title": "Bundle",
                "validFrom": valid_from,
                "validUntil": valid_until,
                "applicableProducts": f'["{pid}"]',
                "applicableCategories": "Apparel,Plush",
            },
        )
        assert res.status_code == 201
        assert res.json()["applicableCategories"] == ["Apparel", "Plush"]

        detail = client.get(f"/promotions/{res.json()['id']}").json()
        assert detail["applicableProducts"][0]["name"] == "Hoodie"

    def test_update_and_delete(self, client, admin):
        _, admin_headers = admin
        valid_from, valid_until = window(-1, 1)
        pid = client.post(
            "/promotions",
            headers=admin_headers,
            json={"title": "Old", "validFrom": valid_from, "validUntil": valid_until},
        ).json()["id"]

        res = client.put(f"/promotions/{pid}", headers=admin_headers, json={"title": "New", "discountPercent": 30})
        assert res.status_code == 200
        assert res.json()["title"] == "New"
        assert res.json()["discountPercent"] == 30

        assert client.delete(f"/promotions/{pid}", headers=admin_headers).status_code == 204
        assert client.get(f"/promotions/{pid}").status_code == 404


class TestCurrentPromotions:
    def add(self, db, title, valid_from, valid_until, is_active=True):
        create_document(
            db,
            "promotion",
            Promotion(title=title, valid_from=valid_from, valid_until=valid_until, is_active=is_active),
        )

    def test_only_active_and_in_window(self, client, db):
        now = utcnow()
        self.add(db, "current", now - timedelta(days=1), now + timedelta(days=1))
        self.add(db, "expired", now - timedelta(days=10), now - timedelta(days=1))
        self.add(db, "upcoming", now + timedelta(days=1), now + timedelta(days=10))
        self.add(db, "disabled", now - timedelta(days=1), now + timedelta(days=1), is_active=False)

        titles = [p["title"] for p in client.get("/promotions").json()]
        assert titles == ["current"]

    def test_timezone_aware_input_is_normalised(self, client, admin, db):
        _, admin_headers = admin
        res = client.post(
            "/promotions",
            headers=admin_headers,
            json={"title": "Aware", "validFrom": "2026-01-01T09:00:00+09:00", "validUntil": "2026-01-02T00:00:00Z"},
        )
        assert res.status_code == 201
        stored = db["promotion"].find_one({"title": "Aware"})
        assert stored["valid_from"] == datetime(2026, 1, 1, 0, 0)
