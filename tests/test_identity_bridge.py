"""Tests for the identity bridge implementations.

HttpIdentityBridge runs against httpx.MockTransport standing in for the core
user service; MemoryIdentityBridge is exercised directly.
"""

import json

import httpx
import pytest

from authgate.service.errors import (
    ServerError,
    SubjectExists,
    SubjectNotFound,
    UpstreamUnavailable,
    ValidationError,
)
from authgate.service.identity import HttpIdentityBridge, MemoryIdentityBridge
from authgate.service.oauth import OAuthIdentity

USER = {
    "id": "u-1",
    "email": "a@x.com",
    "profile": {"username": "alpha", "displayName": "Alpha", "avatarUrl": "https://img/a.png"},
}


def bridge_for(routes):
    """Bridge whose transport answers ``(method, path) -> (status, body)``."""
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        status, body = routes.get((request.method, request.url.path), (404, {"message": "nope"}))
        return httpx.Response(status, json=body)

    bridge = HttpIdentityBridge("http://core.test/", transport=httpx.MockTransport(handler))
    return bridge, seen


GOOGLE = OAuthIdentity(provider="google", provider_id="g-1", email="a@x.com", name="Alpha")


class TestHttpIdentityBridge:
    async def test_create_subject(self):
        bridge, seen = bridge_for({("POST", "/api/users"): (201, USER)})

        subject = await bridge.create_subject("a@x.com", "alpha", "secret1")

        assert subject.id == "u-1"
        assert subject.username == "alpha"
        assert subject.display_name == "Alpha"
        assert json.loads(seen[0].content) == {
            "email": "a@x.com",
            "username": "alpha",
            "password": "secret1",
        }

    @pytest.mark.parametrize(
        "status,body,error",
        [
            (409, {"message": "exists"}, SubjectExists),
            (400, {"message": ["email must be an email"]}, ValidationError),
            (500, {}, UpstreamUnavailable),
            (503, {}, UpstreamUnavailable),
        ],
    )
    async def test_create_subject_errors(self, status, body, error):
        bridge, _ = bridge_for({("POST", "/api/users"): (status, body)})

        with pytest.raises(error):
            await bridge.create_subject("a@x.com", "alpha", "secret1")

    async def test_create_validation_message_is_forwarded(self):
        bridge, _ = bridge_for(
            {("POST", "/api/users"): (400, {"message": ["bad email", "bad name"]})}
        )

        with pytest.raises(ValidationError) as exc_info:
            await bridge.create_subject("a@x.com", "alpha", "secret1")
        assert exc_info.value.message == "bad email; bad name"

    async def test_verify_credentials(self):
        bridge, _ = bridge_for({("POST", "/api/auth/verify-credentials"): (200, USER)})

        subject = await bridge.verify_credentials("alpha", "secret1")

        assert subject.email == "a@x.com"

    @pytest.mark.parametrize("status", [401, 404])
    async def test_verify_credentials_rejected(self, status):
        bridge, _ = bridge_for({("POST", "/api/auth/verify-credentials"): (status, {})})

        assert await bridge.verify_credentials("alpha", "wrong") is None

    async def test_verify_credentials_upstream_error(self):
        bridge, _ = bridge_for({("POST", "/api/auth/verify-credentials"): (502, {})})

        with pytest.raises(UpstreamUnavailable):
            await bridge.verify_credentials("alpha", "secret1")

    async def test_get_subject(self):
        bridge, seen = bridge_for({("GET", "/api/users/internal/u-1"): (200, USER)})

        subject = await bridge.get_subject("u-1")

        assert subject.avatar_url == "https://img/a.png"
        assert str(seen[0].url) == "http://core.test/api/users/internal/u-1"

    async def test_get_missing_subject(self):
        bridge, _ = bridge_for({})

        assert await bridge.get_subject("ghost") is None

    async def test_find_or_create_single(self):
        bridge, seen = bridge_for({("POST", "/api/auth/oauth"): (200, USER)})

        match = await bridge.find_or_create_oauth_subject(GOOGLE)

        assert match.subject.id == "u-1"
        assert match.ambiguous is False
        assert json.loads(seen[0].content)["providerId"] == "g-1"

    async def test_find_or_create_multiple_accounts(self):
        body = {
            **USER,
            "multipleAccounts": [
                {"userId": "u-1", "username": "alpha", "displayName": "Alpha", "avatarUrl": None},
                {"userId": "u-2", "username": "beta", "displayName": "Beta", "avatarUrl": None},
            ],
        }
        bridge, _ = bridge_for({("POST", "/api/auth/oauth"): (200, body)})

        match = await bridge.find_or_create_oauth_subject(GOOGLE)

        assert match.ambiguous is True
        assert [c.subject_id for c in match.candidates] == ["u-1", "u-2"]

    async def test_find_or_create_failure(self):
        bridge, _ = bridge_for({("POST", "/api/auth/oauth"): (500, {})})

        with pytest.raises(UpstreamUnavailable):
            await bridge.find_or_create_oauth_subject(GOOGLE)

    async def test_link(self):
        bridge, seen = bridge_for({("POST", "/api/auth/link-oauth"): (200, {})})

        await bridge.link_oauth_identity("u-2", "a@x.com", "google", "g-1")

        assert json.loads(seen[0].content) == {
            "userId": "u-2",
            "email": "a@x.com",
            "provider": "google",
            "providerId": "g-1",
        }

    async def test_link_failure(self):
        bridge, _ = bridge_for({("POST", "/api/auth/link-oauth"): (400, {})})

        with pytest.raises(ServerError):
            await bridge.link_oauth_identity("u-2", "a@x.com", "google", "g-1")

    async def test_unreachable_service(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        bridge = HttpIdentityBridge("http://core.test", transport=httpx.MockTransport(handler))

        with pytest.raises(UpstreamUnavailable):
            await bridge.get_subject("u-1")
        assert await bridge.health_check() is False

    async def test_reset_password(self):
        bridge, seen = bridge_for({("POST", "/api/auth/internal-reset-password"): (200, {})})

        await bridge.reset_password("alpha", "newsecret")

        assert json.loads(seen[0].content) == {"identifier": "alpha", "newPassword": "newsecret"}

    @pytest.mark.parametrize(
        "status,error",
        [(404, SubjectNotFound), (503, UpstreamUnavailable), (400, ServerError)],
    )
    async def test_reset_password_errors(self, status, error):
        bridge, _ = bridge_for({("POST", "/api/auth/internal-reset-password"): (status, {})})

        with pytest.raises(error):
            await bridge.reset_password("alpha", "newsecret")

    async def test_send_password_reset_email(self):
        bridge, seen = bridge_for(
            {("POST", "/api/auth/send-password-reset-email"): (200, {})}
        )

        await bridge.send_password_reset_email("alpha", "http://front/reset?token=t")

        assert json.loads(seen[0].content) == {
            "identifier": "alpha",
            "resetUrl": "http://front/reset?token=t",
        }

    async def test_send_password_reset_email_failures_are_swallowed(self):
        bridge, _ = bridge_for({})
        await bridge.send_password_reset_email("alpha", "http://front/reset")

        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        down = HttpIdentityBridge("http://core.test", transport=httpx.MockTransport(handler))
        await down.send_password_reset_email("alpha", "http://front/reset")

    async def test_health_check(self):
        bridge, _ = bridge_for({("GET", "/api/health"): (200, {"status": "ok"})})

        assert await bridge.health_check() is True
        await bridge.close()


class TestMemoryIdentityBridge:
    async def test_create_and_verify(self):
        bridge = MemoryIdentityBridge()
        created = await bridge.create_subject("A@X.com", "alpha", "secret1")

        assert (await bridge.verify_credentials("a@x.com", "secret1")).id == created.id
        assert (await bridge.verify_credentials("alpha", "secret1")).id == created.id
        assert await bridge.verify_credentials("alpha", "wrong") is None
        assert await bridge.verify_credentials("ghost", "secret1") is None

    async def test_passwords_are_hashed(self):
        bridge = MemoryIdentityBridge()
        created = await bridge.create_subject("a@x.com", "alpha", "secret1")

        stored = bridge.password_hashes[created.id]
        assert stored.startswith("$argon2id$")
        assert "secret1" not in stored

    @pytest.mark.parametrize("email,username", [("a@x.com", "other"), ("b@x.com", "alpha")])
    async def test_duplicates_rejected(self, email, username):
        bridge = MemoryIdentityBridge()
        await bridge.create_subject("a@x.com", "alpha", "secret1")

        with pytest.raises(SubjectExists):
            await bridge.create_subject(email, username, "secret1")

    async def test_oauth_only_subject_cannot_password_login(self):
        bridge = MemoryIdentityBridge()
        match = await bridge.find_or_create_oauth_subject(GOOGLE)

        assert match.subject.username == "a"
        assert await bridge.verify_credentials("a@x.com", "") is None

    async def test_link_unknown_subject(self):
        bridge = MemoryIdentityBridge()

        with pytest.raises(ServerError):
            await bridge.link_oauth_identity("ghost", "a@x.com", "google", "g-1")

    async def test_health(self):
        assert await MemoryIdentityBridge().health_check() is True

    async def test_reset_password(self):
        bridge = MemoryIdentityBridge()
        await bridge.create_subject("a@x.com", "alpha", "secret1")

        await bridge.reset_password("a@x.com", "newsecret")

        assert await bridge.verify_credentials("alpha", "secret1") is None
        assert await bridge.verify_credentials("alpha", "newsecret") is not None
        with pytest.raises(SubjectNotFound):
            await bridge.reset_password("ghost", "newsecret")

    async def test_reset_email_only_for_known_accounts(self):
        bridge = MemoryIdentityBridge()
        await bridge.create_subject("a@x.com", "alpha", "secret1")

        await bridge.send_password_reset_email("alpha", "http://front/reset?token=t")
        await bridge.send_password_reset_email("ghost", "http://front/reset?token=u")

        assert bridge.outbox == [("alpha", "http://front/reset?token=t")]
