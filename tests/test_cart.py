from bson import ObjectId


def cart_rows(db, customer):
    return list(db["cartitem"].find({"customer_id": str(customer["_id"])}))


def test_overstocked_quantity_is_clamped_on_read(customer_client, customer, make_product, add_to_cart, db):
    product = make_product(stock=3)
    add_to_cart(customer, product, 5)

    res = customer_client.get("/api/cart")

    assert res.status_code == 200
    body = res.json()
    assert body["items"][0]["quantity"] == 3
    warning = body["warnings"][0]
    assert warning["type"] == "quantity_reduced"
    assert warning["old_quantity"] == 5
    assert warning["new_quantity"] == 3
    assert cart_rows(db, customer)[0]["quantity"] == 3


def test_unavailable_and_out_of_stock_items_are_removed(customer_client, customer, make_product, add_to_cart, db):
    hidden = make_product(is_visible=False)
    inactive = make_product(is_active=False)
    empty = make_product(stock=0)
    good = make_product(price=40.0, stock=5)
    for product in (hidden, inactive, empty, good):
        add_to_cart(customer, product, 1)

    body = customer_client.get("/api/cart").json()

    assert [i["product_id"] for i in body["items"]] == [str(good["_id"])]
    kinds = sorted(w["type"] for w in body["warnings"])
    assert kinds == ["out_of_stock", "product_unavailable", "product_unavailable"]
    assert len(cart_rows(db, customer)) == 1
    assert body["subtotal"] == 40.0


def test_add_sums_with_existing_line_and_clamps(customer_client, customer, make_product, db):
    product = make_product(stock=6)

    first = customer_client.post("/api/cart", json={"product_id": str(product["_id"]), "quantity": 2})
    second = customer_client.post("/api/cart", json={"product_id": str(product["_id"]), "quantity": 5})

    assert first.status_code == 201
    assert second.status_code == 201
    assert second.json()["item"]["quantity"] == 6
    assert "warning" in second.json()
    rows = cart_rows(db, customer)
    assert len(rows) == 1
    assert rows[0]["quantity"] == 6


def test_add_rejects_display_only_section(customer_client, make_product):
    product = make_product(section="spc")
    res = customer_client.post("/api/cart", json={"product_id": str(product["_id"]), "quantity": 1})
    assert res.status_code == 400


def test_add_rejects_out_of_stock(customer_client, make_product):
    product = make_product(stock=0)
    res = customer_client.post("/api/cart", json={"product_id": str(product["_id"]), "quantity": 1})
    assert res.status_code == 400


def test_add_rejects_unknown_product(customer_client):
    res = customer_client.post("/api/cart", json={"product_id": str(ObjectId()), "quantity": 1})
    assert res.status_code == 400


def test_add_rejects_out_of_range_quantity(customer_client, make_product):
    product = make_product()
    for quantity in (0, 10000):
        res = customer_client.post("/api/cart", json={"product_id": str(product["_id"]), "quantity": quantity})
        assert res.status_code == 400
        assert "quantity" in res.json()["errors"]


def test_patch_clamps_to_stock(customer_client, customer, make_product, add_to_cart):
    product = make_product(stock=4)
    item_id = add_to_cart(customer, product, 1)

    res = customer_client.patch(f"/api/cart/{item_id}", json={"quantity": 9})

    assert res.status_code == 200
    assert res.json()["item"]["quantity"] == 4


def test_patch_deletes_line_when_stock_is_gone(customer_client, customer, make_product, add_to_cart, db):
    product = make_product(stock=0)
    item_id = add_to_cart(customer, product, 2)

    res = customer_client.patch(f"/api/cart/{item_id}", json={"quantity": 1})

    assert res.status_code == 400
    assert cart_rows(db, customer) == []


def test_other_customers_items_are_not_found(customer_client, make_customer, make_product, add_to_cart, db):
    other = make_customer()
    item_id = add_to_cart(other, make_product(), 1)

    assert customer_client.patch(f"/api/cart/{item_id}", json={"quantity": 2}).status_code == 404
    assert customer_client.delete(f"/api/cart/{item_id}").status_code == 404
    assert len(cart_rows(db, other)) == 1


def test_delete_own_item(customer_client, customer, make_product, add_to_cart, db):
    item_id = add_to_cart(customer, make_product(), 1)
    assert customer_client.delete(f"/api/cart/{item_id}").status_code == 200
    assert cart_rows(db, customer) == []


def test_count(client, login_as, customer, make_product, add_to_cart):
    assert client.get("/api/cart/count").json() == {"count": 0}
    add_to_cart(customer, make_product(), 1)
    add_to_cart(customer, make_product(), 3)
    login_as(customer)
    assert client.get("/api/cart/count").json() == {"count": 2}


def test_pending_customer_cannot_use_cart(client, login_as, make_customer):
    login_as(make_customer(status="pending"))
    assert client.get("/api/cart").status_code == 403


def test_cart_requires_login(client):
    assert client.get("/api/cart").status_code == 401
