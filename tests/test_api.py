"""HTTP surface: cookies, envelopes, CSRF and rate limits through FastAPI."""

import pytest
from fastapi.testclient import TestClient
from starlette.requests import Request

from authkernel.api.deps import client_ip, normalize_ip
from authkernel.app import create_app
from authkernel.service.runtime import Runtime, set_runtime

PASSWORD = "CorrectHorse1!"


class RecordingMailer:
    def __init__(self):
        self.verify = []
        self.reset = []

    async def send_verify_email(self, email, token):
        self.verify.append(token)

    async def send_password_reset(self, email, token):
        self.reset.append(token)


@pytest.fixture
def mailer():
    return RecordingMailer()


@pytest.fixture
def api_runtime(settings, memory_cache, memory_store, mailer):
    rt = Runtime(settings, cache=memory_cache, store=memory_store, mailer=mailer)
    set_runtime(rt)
    return rt


@pytest.fixture
def client(api_runtime):
    http = TestClient(create_app())
    http.get("/healthz")
    return http


def csrf_headers(http):
    return {"X-CSRF-Token": http.cookies.get("csrf_token")}


def register_and_verify(http, mailer, email="api@example.com"):
    response = http.post("/auth/register", json={"email": email, "password": PASSWORD})
    assert response.status_code == 202
    response = http.post("/auth/verify", json={"token": mailer.verify[-1]})
    assert response.status_code == 204
    return response


def test_healthz(client):
    body = client.get("/healthz").json()
    assert body["status"] == "ok"


def test_register_returns_envelope(client, mailer):
    response = client.post("/auth/register", json={"email": "New@Example.com", "password": PASSWORD})
    assert response.status_code == 202
    body = response.json()
    assert body["status"] == "ok"
    assert body["data"]["email"] == "new@example.com"
    assert body["data"]["requires_verification"] is True
    assert "sid" not in client.cookies
    assert len(mailer.verify) == 1


def test_register_validation_error_hides_values(client):
    response = client.post("/auth/register", json={"email": "x@example.com", "password": "short"})
    assert response.status_code == 400
    body = response.json()
    assert body["error"]["code"] == "validation_error"
    assert "short" not in response.text
    assert any("password" in field for field in body["error"]["details"]["fields"])


def test_verify_sets_http_only_session_cookie(client, mailer):
    response = register_and_verify(client, mailer)
    cookie_header = response.headers["set-cookie"].lower()
    assert "sid=" in cookie_header
    assert "httponly" in cookie_header
    me = client.get("/auth/me")
    assert me.status_code == 200
    assert me.json()["data"]["email_verified"] is True


def test_login_me_logout(client, mailer):
    register_and_verify(client, mailer)
    client.cookies.delete("sid")

    response = client.post("/auth/login", json={"email": "api@example.com", "password": PASSWORD})
    assert response.status_code == 200
    assert response.json()["data"]["email"] == "api@example.com"
    assert client.get("/auth/me").status_code == 200

    response = client.post("/auth/logout", headers=csrf_headers(client))
    assert response.status_code == 204
    assert client.get("/auth/me").status_code == 401


def test_me_requires_session(client):
    response = client.get("/auth/me")
    assert response.status_code == 401
    assert response.json()["error"]["code"] == "unauthorized"


def test_login_failures_share_response(client, mailer):
    register_and_verify(client, mailer)
    client.cookies.delete("sid")
    unknown = client.post("/auth/login", json={"email": "ghost@example.com", "password": PASSWORD})
    wrong = client.post("/auth/login", json={"email": "api@example.com", "password": "nope-nope"})
    assert unknown.status_code == wrong.status_code == 401
    assert unknown.json()["error"] == wrong.json()["error"]


def test_unverified_login_forbidden(client):
    client.post("/auth/register", json={"email": "pending@example.com", "password": PASSWORD})
    response = client.post("/auth/login", json={"email": "pending@example.com", "password": PASSWORD})
    assert response.status_code == 403


def test_register_rate_limited_with_retry_after(client):
    for i in range(5):
        response = client.post(
            "/auth/register", json={"email": f"user{i}@example.com", "password": PASSWORD}
        )
        assert response.status_code == 202
    response = client.post("/auth/register", json={"email": "user9@example.com", "password": PASSWORD})
    assert response.status_code == 429
    assert int(response.headers["Retry-After"]) >= 1
    assert response.json()["error"]["code"] == "rate_limited"


def test_forwarded_for_selects_ip_bucket(client):
    for i in range(5):
        client.post(
            "/auth/register",
            json={"email": f"fwd{i}@example.com", "password": PASSWORD},
            headers={"X-Forwarded-For": "198.51.100.1"},
        )
    other = client.post(
        "/auth/register",
        json={"email": "fresh@example.com", "password": PASSWORD},
        headers={"X-Forwarded-For": "198.51.100.2"},
    )
    assert other.status_code == 202


def test_sessions_listing_and_revoke_all(client, mailer):
    register_and_verify(client, mailer)
    client.cookies.delete("sid")
    for _ in range(2):
        client.post(
            "/auth/login",
            json={"email": "api@example.com", "password": PASSWORD},
            headers=csrf_headers(client),
        )

    listing = client.get("/auth/sessions").json()["data"]
    assert len(listing) >= 2
    assert sum(1 for s in listing if s["current"]) == 1

    response = client.post("/auth/sessions/revoke-all", headers=csrf_headers(client))
    assert response.status_code == 204
    remaining = client.get("/auth/sessions").json()["data"]
    assert [s["current"] for s in remaining] == [True]


def test_revoke_unknown_session_not_found(client, mailer):
    register_and_verify(client, mailer)
    response = client.delete("/auth/sessions/not-mine", headers=csrf_headers(client))
    assert response.status_code == 404


def test_password_reset_flow(client, mailer):
    register_and_verify(client, mailer)
    client.cookies.delete("sid")

    response = client.post("/auth/request-reset", json={"email": "api@example.com"})
    assert response.status_code == 204
    response = client.post(
        "/auth/reset-password", json={"token": mailer.reset[0], "password": "BrandNewPass9"}
    )
    assert response.status_code == 204
    login = client.post("/auth/login", json={"email": "api@example.com", "password": "BrandNewPass9"})
    assert login.status_code == 200


def test_request_reset_unknown_email_is_silent(client, mailer):
    response = client.post("/auth/request-reset", json={"email": "nobody@example.com"})
    assert response.status_code == 204
    assert mailer.reset == []


def test_error_envelope_carries_request_id(client):
    response = client.get("/auth/me", headers={"X-Request-ID": "req-123"})
    assert response.headers["X-Request-ID"] == "req-123"
    assert response.json()["request_id"] == "req-123"


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("203.0.113.5", "203.0.113.5"),
        (" 203.0.113.5 ", "203.0.113.5"),
        ("::ffff:192.0.2.1", "192.0.2.1"),
        ("::1", "127.0.0.1"),
        ("[2001:db8::1]", "2001:db8::1"),
        ("testclient", None),
        ("", None),
        (None, None),
    ],
)
def test_normalize_ip(raw, expected):
    assert normalize_ip(raw) == expected


def _request(headers=None, peer=("10.0.0.9", 1234)):
    scope = {
        "type": "http",
        "method": "GET",
        "path": "/",
        "headers": [(k.lower().encode(), v.encode()) for k, v in (headers or {}).items()],
        "client": peer,
    }
    return Request(scope)


def test_client_ip_prefers_first_valid_forwarded_hop():
    request = _request({"X-Forwarded-For": "garbage, 198.51.100.7, 10.0.0.1"})
    assert client_ip(request) == "198.51.100.7"


def test_client_ip_falls_back_to_peer_and_default():
    assert client_ip(_request()) == "10.0.0.9"
    assert client_ip(_request(peer=None)) == "0.0.0.0"
    assert client_ip(_request(peer=("testclient", 50000))) == "0.0.0.0"


def test_require_roles_dependency(api_runtime, memory_store, mailer):
    from fastapi import Depends

    from authkernel.api.deps import require_roles

    app = create_app()

    @app.get("/admin/ping")
    async def admin_ping(principal=Depends(require_roles("admin", "owner"))):
        return {"subject": principal.subject_id}

    http = TestClient(app)
    assert http.get("/admin/ping").status_code == 401

    register_and_verify(http, mailer, "boss@example.com")
    denied = http.get("/admin/ping")
    assert denied.status_code == 403
    assert denied.json()["error"]["code"] == "forbidden"

    user = memory_store.get_user_by_email("boss@example.com")
    memory_store.assign_role(user.id, "owner")
    assert http.get("/admin/ping").json() == {"subject": user.id}


def test_durable_store_outage_returns_backend_unavailable(settings, memory_cache):
    from psycopg_pool import PoolTimeout

    from authkernel.logging import get_logger
    from authkernel.storage.postgres import PostgresStore

    class ExhaustedPool:
        def connection(self):
            raise PoolTimeout("couldn't get a connection after 5.00 sec")

    store = PostgresStore.__new__(PostgresStore)
    store.pool = ExhaustedPool()
    store.logger = get_logger("test")
    set_runtime(Runtime(settings, cache=memory_cache, store=store))

    http = TestClient(create_app(), raise_server_exceptions=False)
    response = http.post("/auth/login", json={"email": "api@example.com", "password": PASSWORD})
    assert response.status_code == 503
    assert response.json()["error"]["code"] == "backend_unavailable"
    assert "connection" not in response.text


def test_requesting_resets_leaves_confirmation_budget(client):
    for _ in range(3):
        assert client.post("/auth/request-reset", json={"email": "x@example.com"}).status_code == 204
    assert client.post("/auth/request-reset", json={"email": "x@example.com"}).status_code == 429
    response = client.post(
        "/auth/reset-password", json={"token": "not-a-real-token", "password": "BrandNewPass9"}
    )
    assert response.status_code == 400
