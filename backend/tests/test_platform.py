"""
Tests for the platform layer: error rendering, audit immutability, caller
authentication, the HTTP integrations and partner event publishing.
"""

import json
import time
from unittest.mock import Mock, patch

import httpx
import jwt
import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from couplelink.integrations.entitlement_client import (
    EntitlementVerificationError,
    HttpEntitlementVerifier,
)
from couplelink.integrations.identity_client import HttpIdentityProvider, IdentityProviderError
from couplelink.platform.audit import (
    AuditAction,
    ConnectionAuditEvent,
    ConnectionAuditRecord,
    ImmutableRecordError,
    record_connection_audit,
)
from couplelink.platform.auth import AuthConfig, decode_caller_token, require_admin_secret
from couplelink.platform.errors import (
    CORRELATION_HEADER,
    AppError,
    CodeExpiredError,
    ConcurrentModificationError,
    ConflictError,
    InvalidArgumentError,
    NotFoundError,
    PermissionDeniedError,
    RateLimitError,
    ServiceUnavailableError,
    ErrorHandlerMiddleware,
    register_error_handlers,
)
from couplelink.services import partner_events
from couplelink.services.partner_events import (
    NullEventPublisher,
    PartnerEvent,
    PartnerEventType,
    RedisEventPublisher,
    publish_safely,
)

JWT_SECRET = "platform-test-secret-with-at-least-32-bytes"


# =============================================================================
# Error classes
# =============================================================================

class TestErrorClasses:

    @pytest.mark.parametrize("error,status_code,code", [
        (InvalidArgumentError("bad", reason="malformed-code"), 400, "INVALID_ARGUMENT"),
        (PermissionDeniedError(), 403, "PERMISSION_DENIED"),
        (NotFoundError("Pairing code", "12345678", reason="not-found"), 404, "NOT_FOUND"),
        (ConflictError("used", reason="already-used"), 409, "CONFLICT"),
        (ConcurrentModificationError(attempts=3), 409, "CONFLICT"),
        (CodeExpiredError(), 410, "DEADLINE_EXCEEDED"),
        (RateLimitError(retry_after=30), 429, "RATE_LIMIT_EXCEEDED"),
        (ServiceUnavailableError(), 503, "SERVICE_UNAVAILABLE"),
    ])
    def test_status_and_code(self, error, status_code, code):
        assert isinstance(error, AppError)
        assert error.status_code == status_code
        assert error.code == code

    def test_reason_lives_in_details(self):
        error = ConflictError("Pairing code already used", reason="already-used")

        assert error.reason == "already-used"
        assert error.to_dict() == {
            "error": {
                "code": "CONFLICT",
                "message": "Pairing code already used",
                "details": {"reason": "already-used"},
            }
        }

    def test_not_found_message(self):
        assert NotFoundError("Account", "acct-1").message == "Account 'acct-1' not found"
        assert NotFoundError("Partner").message == "Partner not found"

    def test_concurrent_modification_details(self):
        error = ConcurrentModificationError(attempts=5)

        assert error.details == {"attempts": 5, "reason": "concurrent-modification"}

    def test_rate_limit_headers(self):
        assert RateLimitError(retry_after=30).headers == {"Retry-After": "30"}
        assert RateLimitError().headers == {}


# =============================================================================
# Error rendering
# =============================================================================

@pytest.fixture
def error_app():
    app = FastAPI()
    app.add_middleware(ErrorHandlerMiddleware)
    register_error_handlers(app)

    @app.get("/limited")
    async def limited():
        raise RateLimitError(retry_after=42, operation="connect")

    @app.get("/boom")
    async def boom():
        raise RuntimeError("database password is hunter2")

    @app.get("/fine")
    async def fine():
        return {"ok": True}

    return app


class TestErrorRendering:

    def test_app_error_rendered_with_headers(self, error_app):
        client = TestClient(error_app)

        response = client.get("/limited")

        assert response.status_code == 429
        assert response.headers["Retry-After"] == "42"
        assert response.headers[CORRELATION_HEADER]
        body = response.json()
        assert body["error"]["code"] == "RATE_LIMIT_EXCEEDED"
        assert body["error"]["details"] == {"retry_after_seconds": 42, "operation": "connect"}

    def test_unhandled_exception_is_generic_500(self, error_app):
        client = TestClient(error_app, raise_server_exceptions=False)

        response = client.get("/boom", headers={CORRELATION_HEADER: "corr-500"})

        assert response.status_code == 500
        body = response.json()
        assert body["error"]["code"] == "INTERNAL_ERROR"
        assert body["error"]["details"] == {"correlation_id": "corr-500"}
        assert "hunter2" not in response.text

    def test_correlation_id_is_echoed(self, error_app):
        client = TestClient(error_app)

        response = client.get("/fine", headers={CORRELATION_HEADER: "corr-123"})

        assert response.status_code == 200
        assert response.headers[CORRELATION_HEADER] == "corr-123"

    def test_correlation_id_is_generated(self, error_app):
        client = TestClient(error_app)

        response = client.get("/fine")

        assert len(response.headers[CORRELATION_HEADER]) == 36


# =============================================================================
# Audit records
# =============================================================================

class TestAuditImmutability:

    def _record(self, db_session):
        record = record_connection_audit(db_session, ConnectionAuditEvent(
            action=AuditAction.PAIRING_CONNECTED,
            actor_account_id="acct-b",
            counterpart_account_id="acct-a",
            pairing_code="12345678",
            before_state={"acct-b": {"subscription_type": "none"}},
            after_state={"acct-b": {"subscription_type": "inherited"}},
            correlation_id="corr-1",
        ))
        db_session.commit()
        return record

    def test_record_is_persisted(self, db_session):
        record = self._record(db_session)

        stored = db_session.get(ConnectionAuditRecord, record.id)
        assert stored.action == "pairing.connected"
        assert stored.after_state == {"acct-b": {"subscription_type": "inherited"}}
        assert stored.created_at is not None

    def test_update_is_rejected(self, db_session):
        record = self._record(db_session)

        record.details = {"tampered": True}
        with pytest.raises(ImmutableRecordError):
            db_session.commit()
        db_session.rollback()

    def test_delete_is_rejected(self, db_session):
        record = self._record(db_session)

        db_session.delete(record)
        with pytest.raises(ImmutableRecordError):
            db_session.commit()
        db_session.rollback()

        assert db_session.query(ConnectionAuditRecord).count() == 1


# =============================================================================
# Authentication
# =============================================================================

class TestDecodeCallerToken:

    config = AuthConfig(jwt_secret=JWT_SECRET)

    def _token(self, **claims):
        payload = {"sub": "acct-1", "exp": int(time.time()) + 300}
        payload.update(claims)
        return jwt.encode(payload, JWT_SECRET, algorithm="HS256")

    def test_valid_token(self):
        identity = decode_caller_token(self._token(), self.config)

        assert identity.account_id == "acct-1"

    def test_expired_token(self):
        with pytest.raises(AppError, match="Token has expired") as exc_info:
            decode_caller_token(self._token(exp=int(time.time()) - 60), self.config)

        assert exc_info.value.status_code == 401

    def test_missing_subject(self):
        token = jwt.encode({"exp": int(time.time()) + 300}, JWT_SECRET, algorithm="HS256")

        with pytest.raises(AppError, match="Invalid token"):
            decode_caller_token(token, self.config)

    def test_wrong_signature(self):
        token = jwt.encode(
            {"sub": "acct-1", "exp": int(time.time()) + 300},
            "another-secret-that-is-also-32-bytes-long",
            algorithm="HS256",
        )

        with pytest.raises(AppError, match="Invalid token"):
            decode_caller_token(token, self.config)

    def test_audience_is_enforced(self):
        config = AuthConfig(jwt_secret=JWT_SECRET, audience="couplelink")

        assert decode_caller_token(self._token(aud="couplelink"), config).account_id == "acct-1"
        with pytest.raises(AppError):
            decode_caller_token(self._token(aud="someone-else"), config)

    @patch.dict("os.environ", {}, clear=True)
    def test_unconfigured_secret(self):
        with pytest.raises(AppError, match="not configured"):
            AuthConfig.from_env()


class TestRequireAdminSecret:

    @patch.dict("os.environ", {"ADMIN_SECRET": "s3cret"})
    def test_matching_secret(self):
        require_admin_secret("s3cret")

    @patch.dict("os.environ", {"ADMIN_SECRET": "s3cret"})
    @pytest.mark.parametrize("provided", [None, "", "wrong"])
    def test_wrong_secret(self, provided):
        with pytest.raises(PermissionDeniedError):
            require_admin_secret(provided)

    @patch.dict("os.environ", {}, clear=True)
    def test_unset_secret_denies_everything(self):
        with pytest.raises(PermissionDeniedError):
            require_admin_secret("anything")


# =============================================================================
# HTTP integrations
# =============================================================================

def _client(handler):
    return httpx.Client(transport=httpx.MockTransport(handler))


class TestHttpIdentityProvider:

    def test_delete_identity(self):
        seen = []

        def handler(request):
            seen.append((request.method, str(request.url)))
            return httpx.Response(204)

        provider = HttpIdentityProvider("https://id.test/", "key", client=_client(handler))
        provider.delete_identity("acct-1")

        assert seen == [("DELETE", "https://id.test/identities/acct-1")]

    def test_missing_identity_counts_as_deleted(self):
        provider = HttpIdentityProvider("https://id.test", "key", client=_client(lambda r: httpx.Response(404)))

        provider.delete_identity("acct-1")

    def test_server_error_raises(self):
        provider = HttpIdentityProvider("https://id.test", "key", client=_client(lambda r: httpx.Response(500)))

        with pytest.raises(IdentityProviderError) as exc_info:
            provider.delete_identity("acct-1")
        assert exc_info.value.status_code == 500

    def test_unreachable_raises(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        provider = HttpIdentityProvider("https://id.test", "key", client=_client(handler))

        with pytest.raises(IdentityProviderError):
            provider.delete_identity("acct-1")

    @patch.dict("os.environ", {}, clear=True)
    def test_from_env_requires_settings(self):
        with pytest.raises(IdentityProviderError):
            HttpIdentityProvider.from_env()


class TestHttpEntitlementVerifier:

    def test_active_proof(self):
        def handler(request):
            assert json.loads(request.content) == {"account_id": "acct-1", "proof": "receipt"}
            return httpx.Response(200, json={"active": True})

        verifier = HttpEntitlementVerifier("https://verify.test", "key", client=_client(handler))

        assert verifier.verify("acct-1", "receipt") is True

    def test_inactive_proof(self):
        verifier = HttpEntitlementVerifier(
            "https://verify.test", "key", client=_client(lambda r: httpx.Response(200, json={"active": False}))
        )

        assert verifier.verify("acct-1", "receipt") is False

    def test_error_status_raises(self):
        verifier = HttpEntitlementVerifier(
            "https://verify.test", "key", client=_client(lambda r: httpx.Response(503))
        )

        with pytest.raises(EntitlementVerificationError) as exc_info:
            verifier.verify("acct-1", "receipt")
        assert exc_info.value.status_code == 503

    def test_unparseable_body_raises(self):
        verifier = HttpEntitlementVerifier(
            "https://verify.test", "key", client=_client(lambda r: httpx.Response(200, text="<html>"))
        )

        with pytest.raises(EntitlementVerificationError):
            verifier.verify("acct-1", "receipt")


# =============================================================================
# Partner events
# =============================================================================

def _event():
    return PartnerEvent(
        event_type=PartnerEventType.PARTNER_CONNECTED,
        recipient_id="acct-a",
        partner_id="acct-b",
        payload={"subscription_inherited": True},
        correlation_id="corr-1",
    )


class TestPartnerEvents:

    def test_redis_publisher_uses_recipient_channel(self):
        publisher = RedisEventPublisher(redis_url="redis://localhost:6379/0")
        publisher._redis = Mock()

        publisher.publish(_event())

        channel, message = publisher._redis.publish.call_args.args
        assert channel == "partner-events:acct-a"
        body = json.loads(message)
        assert body["type"] == "partner_connected"
        assert body["partner_id"] == "acct-b"
        assert body["payload"] == {"subscription_inherited": True}

    def test_publish_safely_swallows_delivery_failure(self):
        publisher = Mock()
        publisher.publish.side_effect = ConnectionError("redis down")

        assert publish_safely(publisher, _event()) is False

    def test_publish_safely(self):
        publisher = Mock()

        assert publish_safely(publisher, _event()) is True
        assert publish_safely(None, _event()) is False

    @patch.dict("os.environ", {}, clear=True)
    def test_default_publisher_without_redis(self):
        with patch.object(partner_events, "_publisher_instance", None):
            publisher = partner_events.get_event_publisher()

            assert isinstance(publisher, NullEventPublisher)
            publisher.publish(_event())

    @patch.dict("os.environ", {"REDIS_URL": "redis://cache:6379/1"})
    def test_default_publisher_with_redis(self):
        with patch.object(partner_events, "_publisher_instance", None):
            publisher = partner_events.get_event_publisher()

            assert isinstance(publisher, RedisEventPublisher)
            assert publisher.redis_url == "redis://cache:6379/1"
