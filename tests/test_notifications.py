import asyncio
from datetime import datetime, timedelta

import pytest
from bson import ObjectId

from database import create_document
from notifications import Audience, NotificationContent, NotificationFanout
from push import FakePushAdapter, OutgoingPush, PushDispatcher, chunked, is_expo_push_token
from schemas import NotificationType, PushToken, User
import sweeper
from sweeper import prune_stale_push_tokens


def add_user(db, name, tokens=(), is_admin=False, last_used_at=None):
    push_tokens = [PushToken(token=t, last_used_at=last_used_at or datetime(2026, 1, 1)) for t in tokens]
    return create_document(
        db,
        "user",
        User(email=f"{name}@example.com", username=name, is_admin=is_admin, push_tokens=push_tokens),
    )


def promo_content():
    return NotificationContent(title="Sale", body="Everything 10% off", type=NotificationType.promotion)


class TestTokenFormat:
    @pytest.mark.parametrize(
        "token",
        [
            "ExponentPushToken[xxxxxxxxxxxxxxxxxxxxxx]",
            "ExpoPushToken[abc]",
            "123e4567-e89b-12d3-a456-426614174000",
        ],
    )
    def test_valid(self, token):
        assert is_expo_push_token(token)

    @pytest.mark.parametrize("token", ["", "ExponentPushToken[]", "fcm:abc", None, 42])
    def test_invalid(self, token):
        assert not is_expo_push_token(token)


class TestDispatcher:
    def test_chunks_are_capped(self, db):
        port = FakePushAdapter()
        dispatcher = PushDispatcher(port, db, chunk_size=500)
        messages = [OutgoingPush(token=f"ExpoPushToken[{i}]", title="t", body="b") for i in range(250)]
        report = dispatcher.dispatch(messages)
        assert [len(b) for b in port.sent_batches] == [100, 100, 50]
        assert report.sent == 250
        assert report.chunks == 3

    def test_invalid_tokens_are_skipped(self, db):
        port = FakePushAdapter()
        report = PushDispatcher(port, db).dispatch(
            [
                OutgoingPush(token="ExpoPushToken[good]", title="t", body="b"),
                OutgoingPush(token="not-a-token", title="t", body="b"),
            ]
        )
        assert report.sent == 1
        assert report.skipped == 1
        assert [m.token for m in port.sent] == ["ExpoPushToken[good]"]

    def test_failed_chunk_does_not_stop_the_rest(self, db):
        port = FakePushAdapter()
        port.fail_for("ExpoPushToken[1]")
        messages = [OutgoingPush(token=f"ExpoPushToken[{i}]", title="t", body="b") for i in range(6)]
        report = PushDispatcher(port, db, chunk_size=2).dispatch(messages)
        assert report.chunks == 3
        assert report.failed == 2
        assert report.sent == 4

    def test_delivery_touches_tokens(self, db):
        uid = add_user(db, "sora", tokens=["ExpoPushToken[sora]"], last_used_at=datetime(2020, 1, 1))
        PushDispatcher(FakePushAdapter(), db).dispatch([OutgoingPush(token="ExpoPushToken[sora]", title="t", body="b")])
        user = db["user"].find_one({"_id": ObjectId(uid)})
        assert user["push_tokens"][0]["last_used_at"] > datetime(2020, 1, 2)

    def test_chunked(self):
        assert list(chunked([1, 2, 3], 2)) == [[1, 2], [3]]
        assert list(chunked([], 2)) == []


class TestFanout:
    def test_every_non_admin_gets_a_row(self, db):
        port = FakePushAdapter()
        fanout = NotificationFanout(db, PushDispatcher(port, db, chunk_size=2))
        for i in range(5):
            add_user(db, f"fan{i}", tokens=[f"ExpoPushToken[fan{i}]"])
        add_user(db, "quiet")
        add_user(db, "boss", tokens=["ExpoPushToken[boss]"], is_admin=True)

        # One chunk fails entirely; every row is still written
        port.fail_for("ExpoPushToken[fan0]")
        result = fanout.notify_promotion(promo_content(), Audience.NON_ADMIN_USERS)

        assert result.recipients == 6
        assert db["notification"].count_documents({}) == 6
        assert result.push.failed == 2
        assert result.push.sent == 3
        assert "ExpoPushToken[boss]" not in {m.token for m in port.sent}

    def test_users_with_tokens_audience(self, db):
        port = FakePushAdapter()
        fanout = NotificationFanout(db, PushDispatcher(port, db))
        add_user(db, "a", tokens=["ExpoPushToken[a]"])
        add_user(db, "b")
        add_user(db, "boss", tokens=["ExpoPushToken[boss]"], is_admin=True)
        result = fanout.notify_promotion(promo_content(), Audience.USERS_WITH_TOKENS)
        assert result.recipients == 2
        assert {m.token for m in port.sent} == {"ExpoPushToken[a]", "ExpoPushToken[boss]"}

    def test_no_audience(self, db):
        fanout = NotificationFanout(db, PushDispatcher(FakePushAdapter(), db))
        result = fanout.notify_promotion(promo_content(), Audience.NON_ADMIN_USERS)
        assert result.recipients == 0
        assert result.push.sent == 0

    def test_firing_twice_notifies_twice(self, db):
        fanout = NotificationFanout(db, PushDispatcher(FakePushAdapter(), db))
        add_user(db, "a")
        fanout.notify_promotion(promo_content(), Audience.NON_ADMIN_USERS)
        fanout.notify_promotion(promo_content(), Audience.NON_ADMIN_USERS)
        assert db["notification"].count_documents({}) == 2


class TestTokenRegistration:
    def test_register_is_idempotent(self, client, register, db, expo_token):
        user_id, headers = register()
        token = expo_token()
        for _ in range(2):
            res = client.post("/notifications/register-token", headers=headers, json={"token": token})
            assert res.status_code == 200
        user = db["user"].find_one({"_id": ObjectId(user_id)})
        assert [t["token"] for t in user["push_tokens"]] == [token]

    def test_invalid_token_is_rejected(self, client, register):
        _, headers = register()
        res = client.post("/notifications/register-token", headers=headers, json={"token": "fcm:abc"})
        assert res.status_code == 400

    def test_missing_token(self, client, register):
        _, headers = register()
        res = client.post("/notifications/register-token", headers=headers, json={})
        assert res.status_code == 400
        assert res.json()["detail"] == "Token is required"

    def test_legacy_route_skips_format_check(self, client, register, db):
        user_id, headers = register()
        res = client.post("/users/push-token", headers=headers, json={"token": "legacy-device"})
        assert res.status_code == 200
        assert db["user"].find_one({"_id": ObjectId(user_id)})["push_tokens"][0]["token"] == "legacy-device"


class TestInbox:
    def test_list_and_mark_read(self, client, register, admin, make_product):
        _, headers = register("fan")
        _, admin_headers = admin
        pid = make_product(name="Roboco Keychain", price="7.50")
        res = client.post("/notifications/send-promotion", headers=admin_headers, json={"productId": pid})
        assert res.status_code == 200
        assert res.json()["recipients"] == 1
        assert res.json()["product"]["name"] == "Roboco Keychain"

        inbox = client.get("/notifications", headers=headers).json()
        assert len(inbox) == 1
        assert inbox[0]["title"] == "🎉 Special: Roboco Keychain"
        assert inbox[0]["body"] == "Check out Roboco Keychain - $7.50"
        assert inbox[0]["read"] is False

        res = client.patch(f"/notifications/{inbox[0]['id']}/read", headers=headers)
        assert res.status_code == 200
        assert res.json()["read"] is True

    def test_cannot_mark_someone_elses(self, client, register, admin, make_product):
        _, alice = register("alice")
        _, bob = register("bob")
        _, admin_headers = admin
        client.post("/notifications/send-promotion", headers=admin_headers, json={"productId": make_product()})
        note_id = client.get("/notifications", headers=alice).json()[0]["id"]
        assert client.patch(f"/notifications/{note_id}/read", headers=bob).status_code == 404

    def test_send_promotion_requires_admin(self, client, register, make_product):
        _, headers = register()
        res = client.post("/notifications/send-promotion", headers=headers, json={"productId": make_product()})
        assert res.status_code == 403

    def test_random_promotion(self, client, register, admin, make_product):
        register("fan")
        _, admin_headers = admin
        make_product(name="Only One")
        res = client.post("/notifications/send-random-promotion", headers=admin_headers)
        assert res.status_code == 200
        assert res.json()["product"]["name"] == "Only One"

    def test_random_promotion_without_products(self, client, admin):
        _, admin_headers = admin
        assert client.post("/notifications/send-random-promotion", headers=admin_headers).status_code == 404

    def test_custom_title_and_message(self, client, register, admin, make_product, push, expo_token):
        _, headers = register("fan")
        client.post("/notifications/register-token", headers=headers, json={"token": expo_token()})
        _, admin_headers = admin
        client.post(
            "/notifications/send-promotion",
            headers=admin_headers,
            json={"productId": make_product(), "title": "Flash sale", "message": "Hoodies 20% off"},
        )
        assert push.sent[0].title == "Flash sale"
        assert push.sent[0].body == "Hoodies 20% off"


class TestStaleTokenSweep:
    def test_prunes_only_old_tokens(self, db):
        now = datetime(2026, 6, 1)
        uid = add_user(db, "sora", tokens=["ExpoPushToken[old]"], last_used_at=now - timedelta(days=45))
        db["user"].update_one(
            {"_id": ObjectId(uid)},
            {"$push": {"push_tokens": {"token": "ExpoPushToken[new]", "last_used_at": now - timedelta(days=2)}}},
        )
        add_user(db, "fresh", tokens=["ExpoPushToken[fresh]"], last_used_at=now)

        assert prune_stale_push_tokens(db, now=now) == 1
        user = db["user"].find_one({"_id": ObjectId(uid)})
        assert [t["token"] for t in user["push_tokens"]] == ["ExpoPushToken[new]"]
        assert len(db["user"].find_one({"username": "fresh"})["push_tokens"]) == 1

    def test_custom_max_age(self, db):
        now = datetime(2026, 6, 1)
        add_user(db, "sora", tokens=["ExpoPushToken[a]"], last_used_at=now - timedelta(days=3))
        assert prune_stale_push_tokens(db, now=now, max_age=timedelta(days=1)) == 1


class TestPeriodicSweep:
    def test_unexpected_error_does_not_end_the_loop(self, db, monkeypatch):
        calls = []

        def flaky_prune(database, now=None, max_age=sweeper.STALE_AFTER):
            calls.append(now)
            if len(calls) == 1:
                raise RuntimeError("boom")
            return 0

        monkeypatch.setattr(sweeper, "prune_stale_push_tokens", flaky_prune)

        async def scenario():
            task = asyncio.create_task(sweeper.run_periodically(db, 0))
            while len(calls) < 3:
                await asyncio.sleep(0.01)
            assert not task.done()
            await sweeper.stop(task)
            return task

        task = asyncio.run(scenario())
        assert task.cancelled()

    def test_stop_without_task(self):
        asyncio.run(sweeper.stop(None))

    def test_app_shutdown_waits_for_the_sweep(self, db, push, images, settings):
        from fastapi.testclient import TestClient

        from main import create_app

        app = create_app(
            settings=settings.model_copy(update={"token_sweep_interval_seconds": 3600}),
            db=db,
            push=push,
            images=images,
        )
        with TestClient(app):
            task = app.state.sweeper
            assert task is not None and not task.done()
        assert task.done()
        assert app.state.sweeper is None
