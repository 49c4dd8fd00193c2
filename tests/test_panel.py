import io
from pathlib import Path

import pytest
from fastapi import HTTPException, UploadFile

PNG = b"\x89PNG\r\n\x1a\n" + b"\x00" * 32


@pytest.fixture()
def catalog(client, admin):
    _, headers = admin
    for platform, name, price in [
        ("Instagram", "Followers", 0.5),
        ("Instagram", "Likes", 0.1),
        ("TikTok", "Views", 0.01),
    ]:
        r = client.post("/api/services", json={"platform": platform, "name": name, "price": price}, headers=headers)
        assert r.status_code == 201, r.text
    return headers


def order_form(**overrides):
    data = {
        "platform": "Instagram",
        "service": "Followers",
        "link": "https://instagram.com/ada",
        "quantity": "100",
        "payment_method": "bank",
    }
    data.update(overrides)
    return {k: v for k, v in data.items() if v is not None}


def test_catalog_is_grouped_by_platform(client, catalog):
    services = client.get("/api/services").json()["services"]
    assert [g["platform"] for g in services] == ["Instagram", "TikTok"]
    assert [s["name"] for s in services[0]["services"]] == ["Followers", "Likes"]
    assert all(s["active"] for g in services for s in g["services"])


def test_catalog_mutations_require_admin(client, make_user):
    _, headers = make_user()
    payload = {"platform": "X", "name": "Reposts", "price": 1}
    assert client.post("/api/services", json=payload).status_code == 401
    assert client.post("/api/services", json=payload, headers=headers).status_code == 403
    assert client.delete("/api/services/X/Reposts", headers=headers).status_code == 403
    assert client.patch("/api/services/X/Reposts/toggle", headers=headers).status_code == 403


def test_duplicate_service_rejected(client, catalog):
    r = client.post("/api/services", json={"platform": "Instagram", "name": "Likes", "price": 2}, headers=catalog)
    assert r.status_code == 400


def test_toggle_and_delete_service(client, catalog):
    r = client.patch("/api/services/Instagram/Likes/toggle", headers=catalog)
    assert r.json() == {"success": True, "active": False}

    active = client.get("/api/services", params={"active_only": True}).json()["services"]
    assert [s["name"] for s in active[0]["services"]] == ["Followers"]

    assert client.delete("/api/services/TikTok/Views", headers=catalog).status_code == 200
    assert client.delete("/api/services/TikTok/Views", headers=catalog).status_code == 404
    assert client.patch("/api/services/TikTok/Views/toggle", headers=catalog).status_code == 404
    platforms = [g["platform"] for g in client.get("/api/services").json()["services"]]
    assert platforms == ["Instagram"]


def test_place_order_with_proof_file(client, catalog, make_user, notify, tmp_path):
    user_id, headers = make_user(email="ada@example.com")
    r = client.post(
        "/api/orders",
        data=order_form(),
        files={"proof": ("receipt.png", PNG, "image/png")},
        headers=headers,
    )
    assert r.status_code == 201, r.text
    order = r.json()["order"]
    assert order["status"] == "Pending"
    assert order["price"] == 50.0
    assert order["user"] == {"id": user_id, "name": "Ada Lovelace", "email": "ada@example.com"}
    assert Path(order["proof"]).read_bytes() == PNG
    assert Path(order["proof"]).parent == tmp_path / "uploads"
    assert order["created_at"]

    notify.assert_called_once()
    assert notify.call_args.args[0]["id"] == order["id"]


def test_place_order_with_proof_url(client, catalog, make_user, notify):
    _, headers = make_user()
    r = client.post("/api/orders", data=order_form(proof_url="https://imgur.com/p.png"), headers=headers)
    assert r.status_code == 201
    assert r.json()["order"]["proof"] == "https://imgur.com/p.png"


def test_order_validation(client, catalog, make_user, notify):
    _, headers = make_user()
    proof = {"proof_url": "https://imgur.com/p.png"}

    assert client.post("/api/orders", data=order_form(**proof)).status_code == 401
    assert client.post("/api/orders", data=order_form(), headers=headers).status_code == 400
    assert client.post("/api/orders", data=order_form(link=None, **proof), headers=headers).status_code == 400
    assert client.post("/api/orders", data=order_form(quantity="-5", **proof), headers=headers).status_code == 400
    assert client.post("/api/orders", data=order_form(service="Nope", **proof), headers=headers).status_code == 404

    r = client.post(
        "/api/orders",
        data=order_form(),
        files={"proof": ("receipt.exe", b"MZ", "application/octet-stream")},
        headers=headers,
    )
    assert r.status_code == 400
    assert "not allowed" in r.json()["detail"]

    client.patch("/api/services/Instagram/Followers/toggle", headers=catalog)
    assert client.post("/api/orders", data=order_form(**proof), headers=headers).status_code == 400
    notify.assert_not_called()


def test_oversized_proof_rejected(client, catalog, make_user, notify, monkeypatch):
    import panel

    monkeypatch.setattr(panel, "MAX_UPLOAD_BYTES", 10)
    _, headers = make_user()
    r = client.post("/api/orders", data=order_form(), files={"proof": ("r.png", PNG, "image/png")}, headers=headers)
    assert r.status_code == 400
    assert "too large" in r.json()["detail"]


def test_order_survives_mail_failure(client, catalog, make_user, monkeypatch):
    import mailer

    monkeypatch.setattr(mailer, "SMTP_SERVER", "")
    _, headers = make_user()
    r = client.post("/api/orders", data=order_form(proof_url="https://imgur.com/p.png"), headers=headers)
    assert r.status_code == 201
    assert client.get("/api/orders", headers=headers).json()["orders"][0]["id"] == r.json()["order"]["id"]


def test_order_listing_and_admin_status(client, catalog, make_user, notify):
    _, ada_headers = make_user()
    _, bob_headers = make_user("Bob", "Babbage")
    proof = {"proof_url": "https://imgur.com/p.png"}
    ada_order = client.post("/api/orders", data=order_form(**proof), headers=ada_headers).json()["order"]
    client.post("/api/orders", data=order_form(service="Likes", **proof), headers=bob_headers)

    mine = client.get("/api/orders", headers=ada_headers).json()["orders"]
    assert [o["id"] for o in mine] == [ada_order["id"]]

    assert client.get("/api/admin/orders", headers=ada_headers).status_code == 403
    assert len(client.get("/api/admin/orders", headers=catalog).json()["orders"]) == 2

    url = f"/api/admin/orders/{ada_order['id']}/status"
    assert client.post(url, json={"status": "done"}, headers=ada_headers).status_code == 403
    assert client.post(url, json={"status": "shipped"}, headers=catalog).status_code == 422
    r = client.post(url, json={"status": "in progress"}, headers=catalog)
    assert r.status_code == 200
    assert r.json()["order"]["status"] == "in progress"
    assert client.post("/api/admin/orders/missing/status", json={"status": "done"}, headers=catalog).status_code == 404

    in_progress = client.get("/api/admin/orders", params={"status": "in progress"}, headers=catalog).json()["orders"]
    assert [o["id"] for o in in_progress] == [ada_order["id"]]


def test_admin_can_fetch_stored_proof(client, catalog, make_user, notify):
    _, headers = make_user()
    order = client.post(
        "/api/orders", data=order_form(), files={"proof": ("r.png", PNG, "image/png")}, headers=headers
    ).json()["order"]
    r = client.get(f"/api/admin/orders/{order['id']}/proof", headers=catalog)
    assert r.status_code == 200
    assert r.content == PNG

    url_order = client.post("/api/orders", data=order_form(proof_url="https://x/p.png"), headers=headers).json()["order"]
    assert client.get(f"/api/admin/orders/{url_order['id']}/proof", headers=catalog).status_code == 404


def test_admin_users_hide_password_hashes(client, admin, make_user):
    make_user()
    users = client.get("/api/admin/users", headers=admin[1]).json()
    assert len(users) == 2
    assert all("hashed_password" not in u for u in users)


class RecordingFile(io.BytesIO):
    def __init__(self, data):
        super().__init__(data)
        self.read_sizes = []

    def read(self, size=-1):
        self.read_sizes.append(size)
        return super().read(size)


def test_proof_upload_is_read_with_a_bound(monkeypatch, tmp_path):
    import panel

    monkeypatch.setattr(panel, "MAX_UPLOAD_BYTES", 16)
    monkeypatch.setattr(panel, "UPLOAD_DIR", str(tmp_path))

    big = RecordingFile(b"x" * 1000)
    with pytest.raises(HTTPException) as exc:
        panel.save_proof(UploadFile(file=big, filename="r.png"))
    assert exc.value.status_code == 400
    assert big.read_sizes and all(0 <= n <= 17 for n in big.read_sizes)

    small = RecordingFile(PNG[:16])
    stored = panel.save_proof(UploadFile(file=small, filename="r.png"))
    assert Path(stored).read_bytes() == PNG[:16]
