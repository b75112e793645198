"""Tests for the app context gate (zoomgate/middleware.py) through the full app."""
import asyncio
import fcntl
import json
import threading
import time
from unittest.mock import MagicMock

import httpx
import pytest
from fastapi.testclient import TestClient

from zoomgate.audit import audit_paths
from zoomgate.context import AppContextClaims
from zoomgate.main import create_app
from zoomgate.middleware import CONTEXT_HEADER, MAX_CONTEXT_LEN

from conftest import make_claims, make_header


@pytest.fixture
def app(settings, fake_zoom_api):
    return create_app(settings, zoom_api=fake_zoom_api)


@pytest.fixture
def client(app):
    return TestClient(app, follow_redirects=False)


def _audit_events(settings):
    log_path = audit_paths(settings.AUDIT_DIR)[0]
    if not log_path.exists():
        return []
    return [json.loads(line) for line in log_path.read_text().splitlines() if line.strip()]


# ---------------------------------------------------------------------------
# No header: fallback page
# ---------------------------------------------------------------------------

class TestFallbackPage:
    @pytest.mark.parametrize("method", ["GET", "POST", "PUT", "DELETE"])
    @pytest.mark.parametrize("path", ["/", "/api/context", "/does/not/exist"])
    def test_any_method_any_path(self, client, method, path):
        r = client.request(method, path)
        assert r.status_code == 200
        assert r.headers["content-type"].startswith("text/html")
        assert "Hello Browser" in r.text
        assert 'href="/install"' in r.text

    def test_install_and_auth_are_not_gated(self, client):
        r = client.get("/install")
        assert r.status_code == 302
        r = client.get("/auth")
        assert r.status_code == 400
        assert "Hello Browser" not in r.text


# ---------------------------------------------------------------------------
# Header length limit
# ---------------------------------------------------------------------------

class TestLengthLimit:
    def test_too_long_rejected_before_decryption(self, client, monkeypatch):
        verify = MagicMock()
        monkeypatch.setattr("zoomgate.middleware.verify_context", verify)

        r = client.get("/", headers={CONTEXT_HEADER: "A" * (MAX_CONTEXT_LEN + 1)})

        assert r.status_code == 400
        assert "512" in r.text
        verify.assert_not_called()

    def test_exactly_max_length_is_attempted(self, client, monkeypatch):
        verify = MagicMock(return_value=AppContextClaims(**make_claims()))
        monkeypatch.setattr("zoomgate.middleware.verify_context", verify)

        r = client.get("/api/context", headers={CONTEXT_HEADER: "A" * MAX_CONTEXT_LEN})

        assert r.status_code == 200
        verify.assert_called_once()
        assert verify.call_args.args[0] == "A" * MAX_CONTEXT_LEN

    def test_too_long_is_audited(self, client, settings):
        client.get("/", headers={CONTEXT_HEADER: "A" * 600})
        events = _audit_events(settings)
        assert events[-1]["event"] == "context_denied"
        assert events[-1]["reason"] == "header_too_long"
        assert events[-1]["head_len"] == 600


# ---------------------------------------------------------------------------
# Verified header
# ---------------------------------------------------------------------------

class TestVerifiedContext:
    def test_claims_reach_the_route(self, client):
        header = make_header(uid="alice", mid="m-42", theme="dark")
        r = client.get("/api/context", headers={CONTEXT_HEADER: header})
        assert r.status_code == 200
        body = r.json()
        assert body["uid"] == "alice"
        assert body["mid"] == "m-42"
        assert body["theme"] == "dark"

    def test_app_page(self, client):
        header = make_header(uid="alice", mid="m-42")
        r = client.get("/", headers={CONTEXT_HEADER: header})
        assert r.status_code == 200
        assert "Hello Zoom" in r.text
        assert '<dd id="uid">alice</dd>' in r.text

    def test_app_page_is_gzipped(self, client):
        r = client.get("/", headers={CONTEXT_HEADER: make_header(), "accept-encoding": "gzip"})
        assert r.status_code == 200
        assert r.headers.get("content-encoding") == "gzip"

    def test_context_secret_override(self, make_settings, fake_zoom_api):
        app = create_app(make_settings(ZM_CONTEXT_SECRET="other-secret"), zoom_api=fake_zoom_api)
        client = TestClient(app)
        assert client.get("/api/context", headers={CONTEXT_HEADER: make_header("other-secret")}).status_code == 200
        assert client.get("/api/context", headers={CONTEXT_HEADER: make_header()}).status_code == 401


# ---------------------------------------------------------------------------
# Rejected header
# ---------------------------------------------------------------------------

class TestRejectedContext:
    def test_wrong_secret(self, client):
        r = client.get("/api/context", headers={CONTEXT_HEADER: make_header("wrong-secret")})
        assert r.status_code == 401
        assert r.text == "invalid app context: authentication_failed"

    def test_bad_base64(self, client):
        r = client.get("/api/context", headers={CONTEXT_HEADER: "%%%not-base64%%%"})
        assert r.status_code == 400
        assert "decode_error" in r.text

    def test_truncated_envelope(self, client):
        r = client.get("/api/context", headers={CONTEXT_HEADER: "DAAAAAAA"})
        assert r.status_code == 400
        assert "malformed_envelope" in r.text

    def test_expired(self, client):
        r = client.get("/api/context", headers={CONTEXT_HEADER: make_header(exp=1000)})
        assert r.status_code == 401
        assert "context_expired" in r.text

    def test_expiry_check_disabled(self, make_settings, fake_zoom_api):
        app = create_app(make_settings(ZM_CONTEXT_CHECK_EXPIRY=False), zoom_api=fake_zoom_api)
        r = TestClient(app).get("/api/context", headers={CONTEXT_HEADER: make_header(exp=1000)})
        assert r.status_code == 200
        assert r.json()["exp"] == 1000

    def test_rejection_never_reaches_route(self, client, monkeypatch):
        forward = MagicMock()
        monkeypatch.setattr("zoomgate.main.templates.TemplateResponse", forward)
        r = client.get("/", headers={CONTEXT_HEADER: make_header("wrong-secret")})
        assert r.status_code == 401
        forward.assert_not_called()

    def test_denial_audit_has_no_raw_header(self, client, settings):
        header = make_header("wrong-secret")
        client.get("/", headers={CONTEXT_HEADER: header})
        event = _audit_events(settings)[-1]
        assert event["event"] == "context_denied"
        assert event["reason"] == "authentication_failed"
        assert event["header_len"] == len(header)
        assert header not in json.dumps(event)


# ---------------------------------------------------------------------------
# Hardening headers
# ---------------------------------------------------------------------------

class TestSecurityHeaders:
    @pytest.mark.parametrize(
        "path,headers",
        [
            ("/", {}),
            ("/install", {}),
            ("/auth", {}),
            ("/api/context", {CONTEXT_HEADER: "A" * 600}),
        ],
    )
    def test_present_on_every_response(self, client, path, headers):
        r = client.get(path, headers=headers)
        assert "appssdk.zoom.us" in r.headers["content-security-policy"]
        assert r.headers["strict-transport-security"].startswith("max-age=31536000")
        assert r.headers["referrer-policy"] == "same-origin"
        assert r.headers["x-frame-options"] == "SAMEORIGIN"
        assert r.headers["x-content-type-options"] == "nosniff"

    def test_csp_uses_redirect_host(self, client):
        csp = client.get("/").headers["content-security-policy"]
        assert "img-src 'self' data: https://gateway.example.com" in csp
        assert "connect-src 'self' wss://gateway.example.com" in csp


# ---------------------------------------------------------------------------
# Audit writes stay off the event loop
# ---------------------------------------------------------------------------

class TestAuditDoesNotBlock:
    @pytest.mark.asyncio
    async def test_held_audit_lock_does_not_stall_other_requests(self, app, settings):
        lock_path = audit_paths(settings.AUDIT_DIR)[2]
        lock_path.parent.mkdir(parents=True, exist_ok=True)

        # another process holding the audit lock for a while
        lockf = open(lock_path, "a+")
        fcntl.flock(lockf.fileno(), fcntl.LOCK_EX)

        def release():
            fcntl.flock(lockf.fileno(), fcntl.LOCK_UN)
            lockf.close()

        releaser = threading.Timer(1.5, release)
        releaser.start()

        try:
            transport = httpx.ASGITransport(app=app)
            async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as ac:
                denied = asyncio.ensure_future(
                    ac.get("/api/context", headers={CONTEXT_HEADER: make_header("wrong-secret")})
                )
                await asyncio.sleep(0.1)

                started = time.monotonic()
                ok = await ac.get("/api/context", headers={CONTEXT_HEADER: make_header()})
                elapsed = time.monotonic() - started

                assert ok.status_code == 200
                assert elapsed < 1.0
                assert not denied.done()

                assert (await denied).status_code == 401
        finally:
            releaser.join()

        assert _audit_events(settings)[-1]["reason"] == "authentication_failed"


# ---------------------------------------------------------------------------
# Compression
# ---------------------------------------------------------------------------

class TestCompression:
    def test_small_responses_are_compressed(self, client):
        r = client.get("/api/context", headers={CONTEXT_HEADER: make_header(), "accept-encoding": "gzip"})
        assert r.status_code == 200
        assert r.headers.get("content-encoding") == "gzip"
        assert r.json()["uid"] == "user-1"

    def test_identity_when_client_does_not_accept_gzip(self, client):
        r = client.get("/api/context", headers={CONTEXT_HEADER: make_header(), "accept-encoding": "identity"})
        assert "content-encoding" not in r.headers


# ---------------------------------------------------------------------------
# Audit disabled: no files
# ---------------------------------------------------------------------------

class TestAuditOptIn:
    def test_disabled_audit_writes_nothing(self, make_settings, fake_zoom_api, tmp_path):
        s = make_settings(AUDIT_ENABLED=False, AUDIT_DIR=str(tmp_path / "off"))
        client = TestClient(create_app(s, zoom_api=fake_zoom_api))
        client.get("/", headers={CONTEXT_HEADER: make_header("wrong-secret")})
        client.get("/install", follow_redirects=False)
        assert not (tmp_path / "off").exists()
