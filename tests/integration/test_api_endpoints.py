import json

import httpx
import pytest
from datetime import timedelta
from unittest.mock import Mock

from fastapi.testclient import TestClient
from sqlalchemy.exc import OperationalError
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine, select

from app.api.deps import (
    get_current_account,
    get_key_store,
    get_qr_code_store,
    get_rate_limiter,
    get_webhook_deliverer,
)
from app.core.clock import utcnow
from app.core.rate_limit import InMemoryRateLimitStore, RateLimiter
from app.core.security import generate_api_key, hash_api_key
from app.db.session import get_session
from app.main import app
from app.models.api_key import APIKey
from app.models.qr_code import QRCode
from app.models.user import User
from app.services.key_store import APIKeyStore
from app.services.qr_code_store import QRCodeStore
from app.services.webhooks import WebhookDeliverer, sign_payload

URL_CONTENT = {"url": "https://example.com/landing"}
HOOK_URL = "https://hooks.example.com/qrwolf"


@pytest.fixture
def test_engine():
    """Create a test database engine."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    return engine


@pytest.fixture
def test_session(test_engine):
    """Create a test session."""
    with Session(test_engine) as session:
        yield session


@pytest.fixture
def rate_limiter():
    return RateLimiter(None, InMemoryRateLimitStore(), limit=60, window=60)


@pytest.fixture
def client(test_session, rate_limiter):
    """Create a test client with dependency overrides."""
    def get_test_session():
        return test_session

    app.dependency_overrides[get_session] = get_test_session
    app.dependency_overrides[get_rate_limiter] = lambda: rate_limiter

    with TestClient(app) as client:
        yield client

    app.dependency_overrides.clear()


@pytest.fixture
def make_user(test_session):
    def _make_user(email: str, tier: str = "business") -> User:
        user = User(email=email, subscription_tier=tier, is_active=True)
        test_session.add(user)
        test_session.commit()
        test_session.refresh(user)
        return user
    return _make_user


@pytest.fixture
def make_api_key(test_session):
    """Persist an API key for ``user`` and return (record, raw key)."""
    def _make_api_key(user: User, **fields):
        issued = generate_api_key()
        api_key = APIKey(
            name="Test Key",
            user_id=user.id,
            key_hash=issued.key_hash,
            key_prefix=issued.key_prefix,
            **fields,
        )
        test_session.add(api_key)
        test_session.commit()
        test_session.refresh(api_key)
        return api_key, issued.key
    return _make_api_key


@pytest.fixture
def test_user(make_user):
    return make_user("business@example.com")


@pytest.fixture
def test_api_key(make_api_key, test_user):
    return make_api_key(test_user)


@pytest.fixture
def auth_headers(test_api_key):
    _, raw_key = test_api_key
    return {"Authorization": f"Bearer {raw_key}"}


def create_qr(client, headers, **overrides):
    payload = {"name": "Landing page", "type": "dynamic", "content_type": "url", "content": URL_CONTENT}
    payload.update(overrides)
    return client.post("/api/v1/qr-codes", headers=headers, json=payload)


def broken_session():
    session = Mock()
    session.exec.side_effect = OperationalError("SELECT", {}, Exception("could not connect to server"))
    return session


class TestHealthEndpoint:

    def test_health_check(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_security_headers_present(self, client):
        response = client.get("/health")

        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert response.headers["X-Frame-Options"] == "DENY"
        assert "X-Request-ID" in response.headers


class TestAPIKeyAuthentication:

    def test_missing_header(self, client):
        """No Authorization header is a malformed credential."""
        response = client.get("/api/v1/qr-codes")

        assert response.status_code == 401
        assert response.json()["error_code"] == "invalid_authorization"
        assert response.headers["WWW-Authenticate"] == "Bearer"

    def test_non_bearer_scheme(self, client):
        response = client.get("/api/v1/qr-codes", headers={"Authorization": "Basic dXNlcjpwYXNz"})
        assert response.json()["error_code"] == "invalid_authorization"

    def test_unknown_and_revoked_keys_look_the_same(self, client, make_api_key, test_user):
        """Callers cannot tell why a key was refused."""
        _, revoked_key = make_api_key(test_user, revoked_at=utcnow() - timedelta(days=1))

        unknown = client.get("/api/v1/qr-codes", headers={"Authorization": f"Bearer qrw_{'0' * 64}"})
        revoked = client.get("/api/v1/qr-codes", headers={"Authorization": f"Bearer {revoked_key}"})

        assert unknown.status_code == revoked.status_code == 401
        assert unknown.json() == revoked.json() == {
            "detail": "Invalid or missing API key",
            "error_code": "unauthorized",
        }

    def test_expired_key(self, client, make_api_key, test_user):
        _, raw_key = make_api_key(test_user, expires_at=utcnow() - timedelta(minutes=1))

        response = client.get("/api/v1/qr-codes", headers={"Authorization": f"Bearer {raw_key}"})
        assert response.status_code == 401

    def test_lower_tier_is_refused(self, client, make_user, make_api_key):
        user = make_user("pro@example.com", tier="pro")
        _, raw_key = make_api_key(user)

        response = client.get("/api/v1/qr-codes", headers={"Authorization": f"Bearer {raw_key}"})
        assert response.json()["error_code"] == "unauthorized"

    def test_forwarded_for_is_ignored_without_trusted_proxy(self, client, make_api_key, test_user):
        """The allow-list checks the transport address, not a spoofable header."""
        _, raw_key = make_api_key(test_user, ip_whitelist=json.dumps(["203.0.113.5"]))

        response = client.get("/api/v1/qr-codes", headers={
            "Authorization": f"Bearer {raw_key}",
            "X-Forwarded-For": "203.0.113.5",
        })
        assert response.status_code == 401

    def test_rate_limit_headers_on_success(self, client, auth_headers):
        response = client.get("/api/v1/qr-codes", headers=auth_headers)

        assert response.status_code == 200
        assert response.headers["X-RateLimit-Limit"] == "60"
        assert response.headers["X-RateLimit-Remaining"] == "59"
        assert response.headers["X-RateLimit-Monthly-Limit"] == "10000"

    def test_rate_limited(self, client, auth_headers):
        """The 61st request in a window is refused with retry information."""
        for _ in range(60):
            assert client.get("/api/v1/qr-codes", headers=auth_headers).status_code == 200

        response = client.get("/api/v1/qr-codes", headers=auth_headers)

        assert response.status_code == 429
        assert response.json()["error_code"] == "rate_limited"
        assert response.headers["X-RateLimit-Remaining"] == "0"
        assert 1 <= int(response.headers["Retry-After"]) <= 60

    def test_monthly_limit_exceeded(self, client, make_api_key, test_user):
        _, raw_key = make_api_key(
            test_user,
            monthly_request_count=10000,
            monthly_reset_at=utcnow() + timedelta(days=3),
        )

        response = client.get("/api/v1/qr-codes", headers={"Authorization": f"Bearer {raw_key}"})

        assert response.status_code == 429
        body = response.json()
        assert body["error_code"] == "monthly_limit_exceeded"
        assert "10,000" in body["detail"]
        assert response.headers["X-RateLimit-Monthly-Remaining"] == "0"

    def test_store_outage_during_lookup(self, client, auth_headers):
        """A failing key lookup is a retryable 503, never a 401."""
        app.dependency_overrides[get_key_store] = lambda: APIKeyStore(broken_session())

        response = client.get("/api/v1/qr-codes", headers=auth_headers)

        assert response.status_code == 503
        assert response.json()["error_code"] == "store_unavailable"
        assert response.headers["Retry-After"] == "5"


class TestQRCodeEndpoints:

    def test_create_dynamic_qr_code(self, client, auth_headers):
        response = create_qr(client, auth_headers)

        assert response.status_code == 201
        data = response.json()
        assert data["content"] == URL_CONTENT
        assert len(data["short_code"]) == 7
        assert data["destination_url"] == URL_CONTENT["url"]
        assert data["redirect_url"].endswith(f"/r/{data['short_code']}")
        assert "image_url" not in data
        assert data["style"]["errorCorrectionLevel"] == "M"

    def test_static_qr_code_has_no_short_code(self, client, auth_headers):
        response = create_qr(client, auth_headers, type="static", content_type="text", content={"text": "hi"})

        assert response.status_code == 201
        assert response.json()["short_code"] is None

    def test_invalid_content_is_rejected(self, client, auth_headers):
        response = create_qr(client, auth_headers, content_type="wifi", content={})

        assert response.status_code == 400
        assert response.json() == {
            "detail": "content.ssid is required for wifi content",
            "error_code": "validation_failed",
        }

    def test_private_url_is_rejected(self, client, auth_headers):
        response = create_qr(client, auth_headers, content={"url": "http://169.254.169.254/latest"})

        assert response.status_code == 400
        assert "content.url" in response.json()["detail"]

    def test_unknown_content_type(self, client, auth_headers):
        response = create_qr(client, auth_headers, content_type="hologram")

        assert response.status_code == 400
        assert "Unknown content type" in response.json()["detail"]

    def test_crud_round(self, client, auth_headers):
        qr_id = create_qr(client, auth_headers).json()["id"]

        listed = client.get("/api/v1/qr-codes", headers=auth_headers).json()
        assert listed["total"] == 1
        assert listed["qr_codes"][0]["id"] == qr_id

        fetched = client.get(f"/api/v1/qr-codes/{qr_id}", headers=auth_headers)
        assert fetched.status_code == 200

        updated = client.patch(f"/api/v1/qr-codes/{qr_id}", headers=auth_headers, json={
            "name": "Renamed",
            "style": {"foregroundColor": "#112233", "margin": 99},
        })
        assert updated.status_code == 200
        assert updated.json()["name"] == "Renamed"
        assert updated.json()["style"]["foregroundColor"] == "#112233"
        assert updated.json()["style"]["margin"] == 2

        deleted = client.delete(f"/api/v1/qr-codes/{qr_id}", headers=auth_headers)
        assert deleted.status_code == 204

        missing = client.get(f"/api/v1/qr-codes/{qr_id}", headers=auth_headers)
        assert missing.status_code == 404
        assert missing.json()["error_code"] == "not_found"

    def test_update_revalidates_content(self, client, auth_headers):
        qr_id = create_qr(client, auth_headers).json()["id"]

        response = client.patch(f"/api/v1/qr-codes/{qr_id}", headers=auth_headers, json={
            "content": {"url": "javascript:alert(1)"},
        })
        assert response.status_code == 400

    def test_update_without_fields(self, client, auth_headers):
        qr_id = create_qr(client, auth_headers).json()["id"]

        response = client.patch(f"/api/v1/qr-codes/{qr_id}", headers=auth_headers, json={})
        assert response.status_code == 400

    def test_null_name_is_rejected(self, client, auth_headers):
        qr_id = create_qr(client, auth_headers).json()["id"]

        response = client.patch(f"/api/v1/qr-codes/{qr_id}", headers=auth_headers, json={"name": None})

        assert response.status_code == 400
        assert response.json() == {"detail": "name cannot be null", "error_code": "validation_failed"}
        assert client.get(f"/api/v1/qr-codes/{qr_id}", headers=auth_headers).json()["name"] == "Landing page"

    @pytest.mark.parametrize("path", ["/api/v1/qr-codes", "/api/v1/qr-codes/1"])
    def test_store_outage_on_reads(self, client, auth_headers, path):
        app.dependency_overrides[get_qr_code_store] = lambda: QRCodeStore(broken_session())

        response = client.get(path, headers=auth_headers)

        assert response.status_code == 503
        assert response.json()["error_code"] == "store_unavailable"
        assert response.headers["Retry-After"] == "5"

    def test_other_accounts_codes_are_invisible(self, client, auth_headers, make_user, test_session):
        other = make_user("other@example.com")
        qr = QRCode(user_id=other.id, name="Theirs", type="static", content_type="text", content={"text": "x"})
        test_session.add(qr)
        test_session.commit()
        test_session.refresh(qr)

        assert client.get(f"/api/v1/qr-codes/{qr.id}", headers=auth_headers).status_code == 404
        assert client.get("/api/v1/qr-codes", headers=auth_headers).json()["total"] == 0

    def test_filter_by_type(self, client, auth_headers):
        create_qr(client, auth_headers)
        create_qr(client, auth_headers, type="static", content_type="text", content={"text": "hi"})

        response = client.get("/api/v1/qr-codes?type=static", headers=auth_headers)
        assert response.json()["total"] == 1


class TestUsageRecording:

    def test_successful_requests_are_counted(self, client, auth_headers, test_api_key, test_session):
        api_key, _ = test_api_key

        create_qr(client, auth_headers)
        client.get("/api/v1/qr-codes", headers=auth_headers)

        test_session.refresh(api_key)
        assert api_key.request_count == 2
        assert api_key.monthly_request_count == 2
        assert api_key.last_used_at is not None
        assert api_key.monthly_reset_at > utcnow()

    def test_rejected_requests_are_not_counted(self, client, auth_headers, test_api_key, test_session):
        api_key, _ = test_api_key

        create_qr(client, auth_headers, content_type="wifi", content={})

        test_session.refresh(api_key)
        assert api_key.monthly_request_count == 0

    def test_usage_endpoint(self, client, auth_headers):
        create_qr(client, auth_headers)

        response = client.get("/api/v1/usage", headers=auth_headers)

        assert response.status_code == 200
        data = response.json()
        assert data["monthly_request_count"] == 2
        assert data["monthly_limit"] == 10000
        assert data["monthly_remaining"] == 9998
        assert data["rate_limit"] == 60
        assert data["rate_limit_remaining"] == 58


class TestAPIKeyManagement:

    @pytest.fixture
    def account(self, test_user):
        app.dependency_overrides[get_current_account] = lambda: test_user
        return test_user

    def test_create_key(self, client, account, test_session):
        response = client.post("/api/v1/api-keys", json={
            "name": "CI",
            "ip_whitelist": [" 203.0.113.5 "],
        })

        assert response.status_code == 201
        data = response.json()
        assert data["key"].startswith("qrw_")
        assert len(data["key"]) == 68
        assert data["key_prefix"] == data["key"][:8]
        assert data["ip_whitelist"] == ["203.0.113.5"]

        stored = test_session.exec(select(APIKey).where(APIKey.id == data["id"])).one()
        assert stored.key_hash == hash_api_key(data["key"])

    def test_issued_key_authenticates(self, client, account):
        raw_key = client.post("/api/v1/api-keys", json={"name": "CI"}).json()["key"]

        response = client.get("/api/v1/qr-codes", headers={"Authorization": f"Bearer {raw_key}"})
        assert response.status_code == 200

    def test_list_keys_never_returns_secrets(self, client, account):
        client.post("/api/v1/api-keys", json={"name": "CI", "permissions": ["qr-codes:read"]})

        keys = client.get("/api/v1/api-keys").json()

        assert len(keys) == 1
        assert keys[0]["permissions"] == ["qr-codes:read"]
        assert "key" not in keys[0]
        assert "key_hash" not in keys[0]

    def test_active_key_limit(self, client, account):
        for i in range(5):
            assert client.post("/api/v1/api-keys", json={"name": f"k{i}"}).status_code == 201

        response = client.post("/api/v1/api-keys", json={"name": "one too many"})

        assert response.status_code == 400
        assert response.json()["error_code"] == "validation_failed"

    def test_revoke_key(self, client, account):
        created = client.post("/api/v1/api-keys", json={"name": "CI"}).json()

        assert client.delete(f"/api/v1/api-keys/{created['id']}").status_code == 204

        response = client.get("/api/v1/qr-codes", headers={"Authorization": f"Bearer {created['key']}"})
        assert response.status_code == 401

    def test_revoke_unknown_key(self, client, account):
        response = client.delete("/api/v1/api-keys/9999")
        assert response.status_code == 404

    def test_lower_tier_cannot_create_keys(self, client, make_user):
        user = make_user("free@example.com", tier="free")
        app.dependency_overrides[get_current_account] = lambda: user

        response = client.post("/api/v1/api-keys", json={"name": "CI"})

        assert response.status_code == 403
        assert response.json()["error_code"] == "forbidden"

    def test_invalid_environment(self, client, account):
        response = client.post("/api/v1/api-keys", json={"name": "CI", "environment": "staging"})
        assert response.status_code == 422

    def test_requires_account_token(self, client):
        response = client.get("/api/v1/api-keys")
        assert response.status_code == 401


class TestWebhookEndpoints:

    @pytest.fixture
    def received(self):
        """Requests that reached the webhook receiver."""
        return []

    @pytest.fixture
    def receiver_status(self):
        return 200

    @pytest.fixture
    def deliverer(self, received, receiver_status):
        def handler(request: httpx.Request) -> httpx.Response:
            received.append(request)
            return httpx.Response(receiver_status, text="ok")

        deliverer = WebhookDeliverer(httpx.AsyncClient(transport=httpx.MockTransport(handler)))
        app.dependency_overrides[get_webhook_deliverer] = lambda: deliverer
        return deliverer

    @pytest.fixture
    def qr_id(self, client, auth_headers):
        return create_qr(client, auth_headers).json()["id"]

    def put_webhook(self, client, headers, qr_id, **fields):
        fields.setdefault("url", HOOK_URL)
        return client.put(f"/api/v1/qr-codes/{qr_id}/webhook", headers=headers, json=fields)

    def test_no_webhook_configured(self, client, auth_headers, qr_id):
        response = client.get(f"/api/v1/qr-codes/{qr_id}/webhook", headers=auth_headers)

        assert response.status_code == 200
        assert response.json()["webhook"] is None

    def test_secret_is_returned_only_on_creation(self, client, auth_headers, qr_id):
        created = self.put_webhook(client, auth_headers, qr_id)

        assert created.status_code == 201
        body = created.json()
        assert len(body["secret"]) == 64
        assert body["webhook"]["url"] == HOOK_URL
        assert body["webhook"]["events"] == ["scan"]
        assert body["webhook"]["is_active"] is True

        updated = self.put_webhook(client, auth_headers, qr_id, url="https://hooks.example.com/v2", is_active=False)

        assert updated.status_code == 200
        assert "secret" not in updated.json()
        assert updated.json()["webhook"]["id"] == body["webhook"]["id"]

        fetched = client.get(f"/api/v1/qr-codes/{qr_id}/webhook", headers=auth_headers).json()
        assert fetched["webhook"]["url"] == "https://hooks.example.com/v2"
        assert fetched["webhook"]["is_active"] is False
        assert "secret" not in fetched["webhook"]

    @pytest.mark.parametrize("url", [
        "http://hooks.example.com/qrwolf",
        "https://10.0.0.5/hook",
        "https://localhost/hook",
        "https://[::ffff:169.254.169.254]/",
    ])
    def test_unsafe_urls_are_rejected(self, client, auth_headers, qr_id, url):
        response = self.put_webhook(client, auth_headers, qr_id, url=url)

        assert response.status_code == 400
        assert response.json()["error_code"] == "validation_failed"

    def test_unknown_event_is_rejected(self, client, auth_headers, qr_id):
        response = self.put_webhook(client, auth_headers, qr_id, events=["download"])
        assert response.status_code == 422

    def test_delete_webhook(self, client, auth_headers, qr_id):
        self.put_webhook(client, auth_headers, qr_id)

        assert client.delete(f"/api/v1/qr-codes/{qr_id}/webhook", headers=auth_headers).status_code == 204

        again = client.delete(f"/api/v1/qr-codes/{qr_id}/webhook", headers=auth_headers)
        assert again.status_code == 404
        assert again.json()["error_code"] == "not_found"

    def test_other_accounts_codes_are_invisible(self, client, auth_headers, make_user, test_session):
        other = make_user("other@example.com")
        qr = QRCode(user_id=other.id, name="Theirs", type="static", content_type="text", content={"text": "x"})
        test_session.add(qr)
        test_session.commit()
        test_session.refresh(qr)

        assert client.get(f"/api/v1/qr-codes/{qr.id}/webhook", headers=auth_headers).status_code == 404
        assert self.put_webhook(client, auth_headers, qr.id).status_code == 404

    def test_test_delivery_is_signed(self, client, auth_headers, qr_id, deliverer, received):
        secret = self.put_webhook(client, auth_headers, qr_id).json()["secret"]

        response = client.post(f"/api/v1/qr-codes/{qr_id}/webhook/test", headers=auth_headers)

        assert response.status_code == 200
        result = response.json()
        assert result["success"] is True
        assert result["status"] == "success"
        assert result["http_status"] == 200

        assert len(received) == 1
        request = received[0]
        body = request.content.decode()
        timestamp = int(request.headers["X-QRWolf-Timestamp"])
        assert request.headers["X-QRWolf-Signature"] == f"sha256={sign_payload(body, secret, timestamp)}"
        assert request.headers["X-QRWolf-Event"] == "scan"
        assert request.headers["X-QRWolf-Delivery-Id"] == str(result["delivery_id"])
        assert json.loads(body)["qr_code"]["id"] == qr_id

    @pytest.mark.parametrize("receiver_status", [503])
    def test_failed_test_delivery_is_scheduled_for_retry(self, client, auth_headers, qr_id, deliverer):
        self.put_webhook(client, auth_headers, qr_id)

        result = client.post(f"/api/v1/qr-codes/{qr_id}/webhook/test", headers=auth_headers).json()

        assert result["success"] is False
        assert result["status"] == "failed"
        assert result["http_status"] == 503

        deliveries = client.get(f"/api/v1/qr-codes/{qr_id}/webhook/deliveries", headers=auth_headers).json()
        assert deliveries["deliveries"][0]["next_retry_at"] is not None

    def test_test_requires_an_active_webhook(self, client, auth_headers, qr_id, deliverer, received):
        missing = client.post(f"/api/v1/qr-codes/{qr_id}/webhook/test", headers=auth_headers)
        assert missing.status_code == 404

        self.put_webhook(client, auth_headers, qr_id, is_active=False)
        inactive = client.post(f"/api/v1/qr-codes/{qr_id}/webhook/test", headers=auth_headers)

        assert inactive.status_code == 404
        assert inactive.json()["detail"] == "No active webhook configured for this QR code"
        assert received == []

    def test_deliveries_listing(self, client, auth_headers, qr_id, deliverer):
        self.put_webhook(client, auth_headers, qr_id)
        for _ in range(3):
            client.post(f"/api/v1/qr-codes/{qr_id}/webhook/test", headers=auth_headers)

        page = client.get(
            f"/api/v1/qr-codes/{qr_id}/webhook/deliveries?page=2&limit=2", headers=auth_headers
        ).json()
        assert page["total"] == 3
        assert page["page"] == 2
        assert page["limit"] == 2
        assert len(page["deliveries"]) == 1

        failed = client.get(
            f"/api/v1/qr-codes/{qr_id}/webhook/deliveries?status=failed", headers=auth_headers
        ).json()
        assert failed["total"] == 0

    def test_deliveries_without_webhook(self, client, auth_headers, qr_id):
        response = client.get(f"/api/v1/qr-codes/{qr_id}/webhook/deliveries", headers=auth_headers)

        assert response.json() == {"deliveries": [], "total": 0, "page": 1, "limit": 20}

    def test_deliveries_status_filter_is_checked(self, client, auth_headers, qr_id):
        response = client.get(
            f"/api/v1/qr-codes/{qr_id}/webhook/deliveries?status=bounced", headers=auth_headers
        )
        assert response.status_code == 400

    def test_each_call_is_counted_once(self, client, auth_headers, qr_id, test_api_key, test_session):
        api_key, _ = test_api_key

        self.put_webhook(client, auth_headers, qr_id)
        client.get(f"/api/v1/qr-codes/{qr_id}/webhook", headers=auth_headers)
        client.get(f"/api/v1/qr-codes/{qr_id}/webhook/deliveries", headers=auth_headers)
        client.delete(f"/api/v1/qr-codes/{qr_id}/webhook", headers=auth_headers)
        self.put_webhook(client, auth_headers, qr_id, url="http://insecure.example.com/")

        test_session.refresh(api_key)
        # create_qr plus four webhook calls; the rejected PUT is not counted
        assert api_key.monthly_request_count == 5

    def test_deleting_the_qr_code_removes_its_webhook(self, client, auth_headers, qr_id, deliverer):
        self.put_webhook(client, auth_headers, qr_id)
        client.post(f"/api/v1/qr-codes/{qr_id}/webhook/test", headers=auth_headers)

        assert client.delete(f"/api/v1/qr-codes/{qr_id}", headers=auth_headers).status_code == 204
        assert client.get(f"/api/v1/qr-codes/{qr_id}/webhook", headers=auth_headers).status_code == 404
