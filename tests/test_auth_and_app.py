import jwt

from settlement.config import TestingConfig
from settlement.security import issue_token

URL = "/admin/settlement/donations/recalculate-amounts"


def test_missing_token(client):
    resp = client.post(URL, json={})
    assert resp.status_code == 401
    assert resp.get_json() == {"success": False, "error": "Missing bearer token"}


def test_garbage_token(client):
    resp = client.post(URL, json={}, headers={"Authorization": "Bearer not-a-jwt"})
    assert resp.status_code == 401
    assert resp.get_json()["error"].startswith("Invalid bearer token")


def test_token_signed_with_other_secret(client, admin):
    tok = issue_token(admin.id, secret="some-other-secret-0123456789abcdef")
    resp = client.post(URL, json={}, headers={"Authorization": f"Bearer {tok}"})
    assert resp.status_code == 401


def test_expired_token(client, admin):
    tok = issue_token(admin.id, ttl=-10)
    resp = client.post(URL, json={}, headers={"Authorization": f"Bearer {tok}"})
    assert resp.status_code == 401


def test_token_for_unknown_profile(client):
    tok = jwt.encode({"sub": "4242"}, TestingConfig.JWT_SECRET, algorithm="HS256")
    resp = client.post(URL, json={}, headers={"Authorization": f"Bearer {tok}"})
    assert resp.status_code == 401
    assert resp.get_json()["error"] == "Unknown user"


def test_member_is_forbidden(client, member_headers):
    resp = client.post(URL, json={}, headers=member_headers)
    assert resp.status_code == 403
    assert resp.get_json()["error"] == "Admin or owner role required"


def test_admin_and_cron_are_allowed(client, admin_headers, cron_headers):
    assert client.post(URL, json={}, headers=admin_headers).status_code == 200
    assert client.post(URL, json={}, headers=cron_headers).status_code == 200


def test_wrong_cron_secret(client):
    resp = client.post(URL, json={}, headers={"X-Cron-Secret": "guess"})
    assert resp.status_code == 401


def test_healthz(client):
    resp = client.get("/healthz")
    assert resp.status_code == 200
    body = resp.get_json()
    assert body["status"] == "ok"
    assert body["checks"]["database"]["ok"] is True
    assert body["checks"]["stripe"]["modes"] == ["test"]


def test_request_id_is_echoed(client):
    resp = client.get("/healthz", headers={"X-Request-ID": "abc123"})
    assert resp.headers["X-Request-ID"] == "abc123"
    assert "X-Response-Time-ms" in resp.headers


def test_unknown_route_is_json(client):
    resp = client.get("/nope")
    assert resp.status_code == 404
    assert resp.get_json()["success"] is False


def test_get_on_post_route_is_405(client, admin_headers):
    assert client.get(URL, headers=admin_headers).status_code == 405
