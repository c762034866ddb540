from app.core.security import create_access_token

from conftest import auth_headers, session_event, sign_payload


async def _paid_order(client, gateway, user, course, coupon=None):
    body = {"courseId": course.id}
    if coupon:
        body["couponCode"] = coupon
    r = await client.post("/payments/checkout", json=body, headers=auth_headers(user))
    gateway.pay(r.json()["sessionId"])
    await client.post(
        "/payments/verify-session", json={"sessionId": r.json()["sessionId"]}, headers=auth_headers(user)
    )
    return r.json()["orderId"]


async def test_validate_discount_preview(client, seed):
    r = await client.post(
        "/discounts/validate",
        json={"code": "save10", "courseId": seed["course"].id},
        headers=auth_headers(seed["alice"]),
    )
    assert r.status_code == 200, r.text
    data = r.json()["data"]
    assert data["discountCode"]["code"] == "SAVE10"
    assert data["calculation"] == {"originalAmount": 5000, "discountAmount": 500, "finalAmount": 4500}


async def test_validate_discount_rejection(client, seed):
    r = await client.post(
        "/discounts/validate",
        json={"code": "MISSING", "courseId": seed["course"].id},
        headers=auth_headers(seed["alice"]),
    )
    assert r.status_code == 400
    assert r.json()["detail"]["code"] == "INVALID_CODE"


async def test_admin_discount_crud(client, seed):
    admin = auth_headers(seed["admin"])

    created = await client.post(
        "/discounts",
        json={
            "code": "launch25",
            "name": "Launch week",
            "type": "PERCENTAGE",
            "value": 25,
            "maxUses": 50,
            "maxDiscountCents": 2000,
            "applicableToType": "COURSE",
            "applicableToId": seed["other"].id,
        },
        headers=admin,
    )
    assert created.status_code == 201, created.text
    code = created.json()
    assert code["code"] == "LAUNCH25"
    assert code["usedCount"] == 0

    dup = await client.post("/discounts", json={"code": "LAUNCH25", "type": "PERCENTAGE", "value": 5}, headers=admin)
    assert dup.status_code == 409

    listed = await client.get("/discounts", headers=admin)
    assert listed.status_code == 200
    assert listed.json()["total"] == 2

    off = await client.patch(f"/discounts/{code['id']}", json={"isActive": False}, headers=admin)
    assert off.status_code == 200
    assert off.json()["isActive"] is False

    active_only = await client.get("/discounts", params={"isActive": "true"}, headers=admin)
    assert [it["discountCode"]["code"] for it in active_only.json()["items"]] == ["SAVE10"]


async def test_discount_admin_routes_need_admin(client, seed):
    r = await client.get("/discounts", headers=auth_headers(seed["alice"]))
    assert r.status_code == 403


async def test_list_reports_discount_totals(client, seed, gateway):
    await _paid_order(client, gateway, seed["alice"], seed["course"], coupon="SAVE10")

    listed = await client.get("/discounts", headers=auth_headers(seed["admin"]))
    item = listed.json()["items"][0]
    assert item["discountCode"]["usedCount"] == 1
    assert item["totalDiscountCents"] == 500


async def test_orders_visibility(client, seed, gateway):
    order_id = await _paid_order(client, gateway, seed["alice"], seed["course"])

    mine = await client.get("/orders", headers=auth_headers(seed["alice"]))
    assert mine.status_code == 200
    assert [o["id"] for o in mine.json()["items"]] == [order_id]
    assert mine.json()["items"][0]["status"] == "COMPLETED"

    assert (await client.get("/orders", headers=auth_headers(seed["bob"]))).json()["total"] == 0

    own = await client.get(f"/orders/{order_id}", headers=auth_headers(seed["alice"]))
    assert own.status_code == 200
    assert own.json()["items"] == [{"courseId": seed["course"].id, "priceCents": 5000}]

    assert (await client.get(f"/orders/{order_id}", headers=auth_headers(seed["bob"]))).status_code == 404
    assert (await client.get(f"/orders/{order_id}", headers=auth_headers(seed["admin"]))).status_code == 200


async def test_admin_orders_filters(client, seed, gateway):
    paid = await _paid_order(client, gateway, seed["alice"], seed["course"])
    pending = await client.post(
        "/payments/checkout", json={"courseId": seed["other"].id}, headers=auth_headers(seed["bob"])
    )

    admin = auth_headers(seed["admin"])
    everything = await client.get("/admin/orders", headers=admin)
    assert everything.json()["total"] == 2

    by_status = await client.get("/admin/orders", params={"status": "PENDING"}, headers=admin)
    assert [o["id"] for o in by_status.json()["items"]] == [pending.json()["orderId"]]

    by_course = await client.get("/admin/orders", params={"courseId": seed["course"].id}, headers=admin)
    assert [o["id"] for o in by_course.json()["items"]] == [paid]

    assert (await client.get("/admin/orders", headers=auth_headers(seed["alice"]))).status_code == 403


async def test_my_enrollments(client, seed, gateway):
    await _paid_order(client, gateway, seed["alice"], seed["course"])
    await client.post("/payments/checkout", json={"courseId": seed["free"].id}, headers=auth_headers(seed["alice"]))

    r = await client.get("/enrollments", headers=auth_headers(seed["alice"]))
    assert r.status_code == 200
    assert {e["courseTitle"] for e in r.json()} == {"FastAPI in Depth", "Intro to Git"}


async def test_cookie_auth(client, seed):
    token = create_access_token(user_id=seed["bob"].id, role="USER")
    r = await client.get("/enrollments", headers={"Cookie": f"token={token}"})
    assert r.status_code == 200
    assert r.json() == []


async def test_webhook_duplicate_through_verify_path(client, db, seed, gateway):
    r = await client.post(
        "/payments/checkout", json={"courseId": seed["course"].id}, headers=auth_headers(seed["alice"])
    )
    session = gateway.pay(r.json()["sessionId"])

    payload = session_event(session)
    w = await client.post("/payments/webhook", content=payload, headers={"Stripe-Signature": sign_payload(payload)})
    assert w.status_code == 200

    v = await client.post(
        "/payments/verify-session", json={"sessionId": session.id}, headers=auth_headers(seed["alice"])
    )
    assert v.status_code == 200
    assert v.json()["enrollmentCreated"] is False
    assert v.json()["order"]["status"] == "COMPLETED"
