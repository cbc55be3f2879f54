from bson import ObjectId


class TestBrowsing:
    def test_filters(self, client, make_product):
        make_product(name="Tokino Sora Plush", price="19.99", category="Plush", vtuber_tag="Tokino Sora")
        make_product(name="Roboco Keychain", price="7.50", category="Keychain", vtuber_tag="Roboco")
        make_product(name="Natsuiro Matsuri Plush", price="18.00", category="Plush", vtuber_tag="Natsuiro Matsuri")

        names = lambda res: sorted(p["name"] for p in res.json())
        assert names(client.get("/products", params={"category": "Plush"})) == [
            "Natsuiro Matsuri Plush",
            "Tokino Sora Plush",
        ]
        assert names(client.get("/products", params={"search": "keychain"})) == ["Roboco Keychain"]
        assert names(client.get("/products", params={"vtuber": "sora"})) == ["Tokino Sora Plush"]
        assert names(client.get("/products", params={"minPrice": "10", "maxPrice": "19"})) == ["Natsuiro Matsuri Plush"]

    def test_search_is_not_a_regex(self, client, make_product):
        make_product(name="Plush (Large)")
        make_product(name="Mug")
        res = client.get("/products", params={"search": "(Large)"})
        assert [p["name"] for p in res.json()] == ["Plush (Large)"]
        assert client.get("/products", params={"search": ".*"}).json() == []

    def test_bad_price_filter(self, client):
        assert client.get("/products", params={"minPrice": "cheap"}).status_code == 400

    def test_public_shape(self, client, make_product):
        pid = make_product(name="Usada Pekora Mug", price="10.00", vtuber_tag="Usada Pekora")
        product = client.get(f"/products/{pid}").json()
        assert product["id"] == pid
        assert product["price"] == 10.0
        assert product["vtuberTag"] == "Usada Pekora"
        assert product["averageRating"] == 0
        assert "priceCents" not in product

    def test_unknown_and_malformed_ids(self, client):
        assert client.get(f"/products/{ObjectId()}").status_code == 404
        assert client.get("/products/not-an-id").status_code == 404

    def test_categories_and_trending(self, client, make_product, db):
        make_product(category="Plush")
        make_product(category="Apparel")
        make_product(category="Plush")
        popular = make_product(name="Popular")
        db["product"].update_one({"_id": ObjectId(popular)}, {"$set": {"review_count": 9, "average_rating": 4.8}})

        assert client.get("/products/categories/list").json() == ["Apparel", "Plush"]
        assert client.get("/products/featured/trending").json()[0]["name"] == "Popular"


class TestListingUploader:
    def test_uploader_profile_is_joined(self, client, register, make_product, db):
        user_id, _ = register("maker")
        db["user"].update_one({"_id": ObjectId(user_id)}, {"$set": {"profile_picture": "https://img.example.com/maker.png"}})
        make_product(name="Fan Art Print", uploaded_by=user_id)
        make_product(name="Seeded Mug")

        listed = {p["name"]: p for p in client.get("/products").json()}
        assert listed["Fan Art Print"]["uploadedBy"] == {
            "id": user_id,
            "username": "maker",
            "profilePicture": "https://img.example.com/maker.png",
        }
        assert listed["Seeded Mug"]["uploadedBy"] is None

    def test_missing_uploader_keeps_the_id(self, client, make_product):
        ghost = str(ObjectId())
        make_product(name="Orphan", uploaded_by=ghost)
        assert client.get("/products").json()[0]["uploadedBy"] == ghost

    def test_single_product_keeps_the_id(self, client, register, make_product):
        user_id, _ = register("maker")
        pid = make_product(uploaded_by=user_id)
        assert client.get(f"/products/{pid}").json()["uploadedBy"] == user_id


class TestProductWrites:
    def test_create_with_json(self, client, register):
        user_id, headers = register("maker")
        res = client.post(
            "/products",
            headers=headers,
            json={"name": "Fan Art Print", "price": "12.5", "category": "Poster", "tags": "art, print"},
        )
        assert res.status_code == 201
        body = res.json()
        assert body["price"] == 12.5
        assert body["uploadedBy"] == user_id
        assert body["tags"] == ["art", "print"]
        assert body["isActive"] is True

    def test_create_with_multipart_image(self, client, register, images):
        _, headers = register("maker")
        res = client.post(
            "/products",
            headers=headers,
            data={"name": "Sticker", "price": "5", "category": "Sticker", "tags": '["cute"]'},
            files={"image": ("sticker.png", b"img", "image/png")},
        )
        assert res.status_code == 201
        body = res.json()
        assert body["image"].endswith("sticker.png")
        assert body["images"] == [body["image"]]
        assert body["tags"] == ["cute"]

    def test_create_survives_upload_failure(self, client, register, images):
        _, headers = register("maker")
        images.fail = True
        res = client.post(
            "/products",
            headers=headers,
            data={"name": "Sticker", "price": "5", "category": "Sticker"},
            files={"image": ("sticker.png", b"img", "image/png")},
        )
        assert res.status_code == 201
        assert res.json()["image"] is None

    def test_required_fields(self, client, register):
        _, headers = register("maker")
        res = client.post("/products", headers=headers, json={"name": "No price"})
        assert res.status_code == 400
        assert res.json()["detail"] == "Name, price, and category are required"

    def test_negative_price(self, client, register):
        _, headers = register("maker")
        res = client.post("/products", headers=headers, json={"name": "x", "price": "-1", "category": "c"})
        assert res.status_code == 400

    def test_owner_can_update_and_others_cannot(self, client, register):
        _, owner = register("owner")
        _, other = register("other")
        pid = client.post("/products", headers=owner, json={"name": "Mine", "price": 3, "category": "c"}).json()["id"]

        assert client.put(f"/products/{pid}", headers=other, json={"name": "Stolen"}).status_code == 403
        res = client.put(f"/products/{pid}", headers=owner, json={"name": "Still mine", "price": "4.25"})
        assert res.status_code == 200
        assert res.json()["name"] == "Still mine"
        assert res.json()["price"] == 4.25
        assert res.json()["category"] == "c"

    def test_seeded_products_are_editable_by_anyone(self, client, register, make_product):
        _, headers = register("anyone")
        pid = make_product(uploaded_by=None)
        assert client.put(f"/products/{pid}", headers=headers, json={"description": "edited"}).status_code == 200

    def test_admin_manages_any_product(self, client, register, admin):
        _, owner = register("owner")
        _, admin_headers = admin
        pid = client.post("/products", headers=owner, json={"name": "Mine", "price": 3, "category": "c"}).json()["id"]
        assert client.delete(f"/products/{pid}", headers=admin_headers).status_code == 204

    def test_delete_is_soft(self, client, register, db):
        _, owner = register("owner")
        pid = client.post("/products", headers=owner, json={"name": "Gone", "price": 3, "category": "c"}).json()["id"]
        assert client.delete(f"/products/{pid}", headers=owner).status_code == 204
        assert db["product"].find_one({"_id": ObjectId(pid)})["is_active"] is False
        assert client.get("/products").json() == []

    def test_inactive_product_cannot_be_added_to_cart(self, client, register):
        _, owner = register("owner")
        pid = client.post("/products", headers=owner, json={"name": "Gone", "price": 3, "category": "c"}).json()["id"]
        client.delete(f"/products/{pid}", headers=owner)
        assert client.post("/cart/items", headers=owner, json={"productId": pid}).status_code == 404

    def test_gallery_image(self, client, register):
        _, owner = register("owner")
        pid = client.post("/products", headers=owner, json={"name": "Mine", "price": 3, "category": "c"}).json()["id"]
        res = client.post(f"/products/{pid}/images", headers=owner, files={"image": ("b.png", b"b", "image/png")})
        assert res.status_code == 200
        assert len(res.json()["images"]) == 1
        assert res.json()["image"] == res.json()["images"][0]

    def test_standalone_upload(self, client, register, images):
        _, headers = register()
        res = client.post("/upload", headers=headers, files={"image": ("x.png", b"x", "image/png")})
        assert res.status_code == 200
        assert res.json()["url"].endswith("x.png")
        images.fail = True
        res = client.post("/upload", headers=headers, files={"image": ("x.png", b"x", "image/png")})
        assert res.status_code == 502


class TestHealth:
    def test_health(self, client):
        assert client.get("/health").json() == {"status": "OK"}

    def test_database_check(self, client):
        assert client.get("/test").json()["db"] == "ok"
