"""Tests for the OAuth login flow.

Covers identity extraction, the provider code exchange (against an
httpx.MockTransport), state handling and the multi-account selection handoff.
"""

from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from authgate.service.auth import AuthCoordinator
from authgate.service.errors import NotFoundError, ValidationError
from authgate.service.identity import MemoryIdentityBridge
from authgate.service.oauth import OAuthClient, OAuthError, verify_oauth_identity
from authgate.service.tokens import TokenIssuer
from authgate.storage.ephemeral import (
    LinkSessionStore,
    OAuthStateStore,
    PasswordResetStore,
)
from authgate.storage.memory import MemoryCache
from authgate.storage.sessions import RevocationStore, SessionStore


class FakeProvider:
    """Answers the token, userinfo and emails endpoints of both providers."""

    def __init__(self, *, userinfo=None, emails=None, token_status=200, token_body=None):
        self.userinfo = userinfo if userinfo is not None else {
            "id": "g-1",
            "email": "A@X.com",
            "name": "Alpha",
            "picture": "https://img.example/a.png",
        }
        self.emails = emails if emails is not None else []
        self.token_status = token_status
        self.token_body = token_body if token_body is not None else {"access_token": "provider-token"}
        self.requests = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path.endswith("/token") or path.endswith("/access_token"):
            return httpx.Response(self.token_status, json=self.token_body)
        if request.headers.get("Authorization") != "Bearer provider-token":
            return httpx.Response(401, json={"error": "bad token"})
        if path.endswith("/emails"):
            return httpx.Response(200, json=self.emails)
        return httpx.Response(200, json=self.userinfo)

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


def _with_github(settings):
    return settings.model_copy(
        update={
            "oauth_github_client_id": "github-client-id",
            "oauth_github_client_secret": "github-client-secret",
        }
    )


def build_coordinator(settings, clock, provider, identity=None):
    cache = MemoryCache(clock=clock)
    return AuthCoordinator(
        settings,
        TokenIssuer(settings, clock=clock),
        SessionStore(cache),
        RevocationStore(cache),
        identity or MemoryIdentityBridge(),
        link_sessions=LinkSessionStore(cache, clock=clock),
        oauth_states=OAuthStateStore(cache),
        reset_tokens=PasswordResetStore(cache),
        oauth_client=OAuthClient(settings, transport=provider.transport()),
        clock=clock,
    )


def _state_from(url: str) -> str:
    return parse_qs(urlparse(url).query)["state"][0]


class TestVerifyOAuthIdentity:
    """Pure userinfo to identity extraction."""

    def test_google(self):
        identity = verify_oauth_identity(
            "google", {"id": 42, "email": " A@X.com ", "name": "Alpha", "picture": "p"}
        )

        assert identity.provider_id == "42"
        assert identity.email == "a@x.com"
        assert identity.name == "Alpha"
        assert identity.avatar_url == "p"

    def test_google_sub_fallback(self):
        identity = verify_oauth_identity("google", {"sub": "s-1", "email": "a@x.com"})

        assert identity.provider_id == "s-1"
        assert identity.name == "a"

    def test_github_login_as_name(self):
        identity = verify_oauth_identity(
            "github", {"id": 7, "login": "octo", "email": "o@x.com", "avatar_url": "av"}
        )

        assert identity.name == "octo"
        assert identity.avatar_url == "av"

    @pytest.mark.parametrize(
        "provider,userinfo",
        [
            ("google", {"email": "a@x.com"}),
            ("google", {"id": "1"}),
            ("google", {"id": "1", "email": "not-an-email"}),
            ("github", {"id": "", "email": "a@x.com"}),
            ("google", ["not", "a", "dict"]),
            ("myspace", {"id": "1", "email": "a@x.com"}),
        ],
    )
    def test_rejected(self, provider, userinfo):
        with pytest.raises(OAuthError):
            verify_oauth_identity(provider, userinfo)


class TestOAuthClient:
    def test_authorization_url(self, settings):
        client = OAuthClient(settings)

        url = client.authorization_url("google", "state-123")
        query = parse_qs(urlparse(url).query)

        assert url.startswith("https://accounts.google.com/")
        assert query["client_id"] == ["google-client-id"]
        assert query["state"] == ["state-123"]
        assert query["redirect_uri"] == ["http://localhost:8001/auth/oauth/google/callback"]

    def test_unconfigured_provider(self, settings):
        with pytest.raises(ValidationError):
            OAuthClient(settings).authorization_url("github", "s")

    def test_unknown_provider(self, settings):
        with pytest.raises(ValidationError):
            OAuthClient(settings).authorization_url("myspace", "s")

    def test_insecure_redirect_uri(self, settings):
        insecure = settings.model_copy(
            update={"oauth_redirect_uri": "http://auth.example.com/cb"}
        )

        with pytest.raises(ValidationError):
            OAuthClient(insecure).authorization_url("google", "s")

    def test_states_are_random(self):
        assert OAuthClient.new_state() != OAuthClient.new_state()

    async def test_exchange_google(self, settings):
        provider = FakeProvider()
        client = OAuthClient(settings, transport=provider.transport())

        identity = await client.exchange_code("google", "code-1")

        assert identity.provider == "google"
        assert identity.provider_id == "g-1"
        assert identity.email == "a@x.com"
        token_request = provider.requests[0]
        assert b"code=code-1" in token_request.content
        assert b"grant_type=authorization_code" in token_request.content

    async def test_exchange_github_uses_primary_verified_email(self, settings):
        provider = FakeProvider(
            userinfo={"id": 99, "login": "octo", "email": None},
            emails=[
                {"email": "old@x.com", "primary": False, "verified": True},
                {"email": "octo@x.com", "primary": True, "verified": True},
            ],
        )
        client = OAuthClient(_with_github(settings), transport=provider.transport())

        identity = await client.exchange_code("github", "code-1")

        assert identity.email == "octo@x.com"
        assert identity.provider_id == "99"

    async def test_exchange_github_without_any_email(self, settings):
        provider = FakeProvider(
            userinfo={"id": 99, "login": "octo"},
            emails=[{"email": "octo@x.com", "primary": True, "verified": False}],
        )
        client = OAuthClient(_with_github(settings), transport=provider.transport())

        with pytest.raises(OAuthError):
            await client.exchange_code("github", "code-1")

    @pytest.mark.parametrize(
        "emails",
        [
            {"message": "Bad credentials"},
            [{"primary": True, "verified": True}],
            ["octo@x.com", None],
        ],
    )
    async def test_exchange_github_malformed_emails_body(self, settings, emails):
        provider = FakeProvider(userinfo={"id": 99, "login": "octo"}, emails=emails)
        client = OAuthClient(_with_github(settings), transport=provider.transport())

        with pytest.raises(OAuthError):
            await client.exchange_code("github", "code-1")

    async def test_token_endpoint_error(self, settings):
        provider = FakeProvider(token_status=400, token_body={"error": "invalid_grant"})
        client = OAuthClient(settings, transport=provider.transport())

        with pytest.raises(OAuthError):
            await client.exchange_code("google", "bad-code")

    async def test_token_response_without_access_token(self, settings):
        provider = FakeProvider(token_body={"error": "nope"})
        client = OAuthClient(settings, transport=provider.transport())

        with pytest.raises(OAuthError):
            await client.exchange_code("google", "code-1")

    async def test_transport_failure(self, settings):
        def handler(request):
            raise httpx.ConnectError("provider down", request=request)

        client = OAuthClient(settings, transport=httpx.MockTransport(handler))

        with pytest.raises(OAuthError):
            await client.exchange_code("google", "code-1")


class TestOAuthLogin:
    """start_oauth / complete_oauth through the coordinator."""

    async def test_new_user_gets_tokens(self, settings, clock):
        auth = build_coordinator(settings, clock, FakeProvider())
        url = await auth.start_oauth("google")

        outcome = await auth.complete_oauth("google", "code-1", _state_from(url))

        assert outcome.needs_selection is False
        assert outcome.result.subject.email == "a@x.com"
        assert outcome.redirect_url is None
        sessions = await auth.list_sessions(outcome.result.subject.id)
        assert sessions[0].device_info == "oauth:google"
        assert (await auth.validate_access(outcome.result.tokens.access_token)).valid

    async def test_returning_user_maps_to_same_subject(self, settings, clock):
        auth = build_coordinator(settings, clock, FakeProvider())
        first = await auth.complete_oauth(
            "google", "c", _state_from(await auth.start_oauth("google"))
        )
        second = await auth.complete_oauth(
            "google", "c", _state_from(await auth.start_oauth("google"))
        )

        assert first.result.subject.id == second.result.subject.id

    async def test_existing_email_account_is_reused(self, settings, clock):
        identity = MemoryIdentityBridge()
        existing = identity.add_subject("a@x.com", "alpha", "secret1")
        auth = build_coordinator(settings, clock, FakeProvider(), identity=identity)

        outcome = await auth.complete_oauth(
            "google", "c", _state_from(await auth.start_oauth("google"))
        )

        assert outcome.result.subject.id == existing.id
        assert identity.oauth_links[("google", "g-1")] == existing.id

    async def test_state_is_single_use(self, settings, clock):
        auth = build_coordinator(settings, clock, FakeProvider())
        state = _state_from(await auth.start_oauth("google"))
        await auth.complete_oauth("google", "c", state)

        with pytest.raises(ValidationError):
            await auth.complete_oauth("google", "c", state)

    async def test_state_expires(self, settings, clock):
        auth = build_coordinator(settings, clock, FakeProvider())
        state = _state_from(await auth.start_oauth("google"))
        clock.advance(settings.oauth_state_ttl_seconds + 1)

        with pytest.raises(ValidationError):
            await auth.complete_oauth("google", "c", state)

    async def test_state_bound_to_provider(self, settings, clock):
        auth = build_coordinator(_with_github(settings), clock, FakeProvider())
        state = _state_from(await auth.start_oauth("google"))

        with pytest.raises(ValidationError):
            await auth.complete_oauth("github", "c", state)

    @pytest.mark.parametrize("state", ["", "never-issued"])
    async def test_unknown_state(self, settings, clock, state):
        auth = build_coordinator(settings, clock, FakeProvider())

        with pytest.raises(ValidationError):
            await auth.complete_oauth("google", "c", state)

    async def test_missing_code(self, settings, clock):
        auth = build_coordinator(settings, clock, FakeProvider())
        state = _state_from(await auth.start_oauth("google"))

        with pytest.raises(ValidationError):
            await auth.complete_oauth("google", "", state)

    async def test_allowed_redirect_url_is_carried(self, settings, clock):
        auth = build_coordinator(settings, clock, FakeProvider())
        url = await auth.start_oauth("google", "http://localhost:3000/after-login")

        outcome = await auth.complete_oauth("google", "c", _state_from(url))

        assert outcome.redirect_url == "http://localhost:3000/after-login"

    async def test_foreign_redirect_url_rejected(self, settings, clock):
        auth = build_coordinator(settings, clock, FakeProvider())

        with pytest.raises(ValidationError):
            await auth.start_oauth("google", "https://evil.example/steal")


class TestAccountSelection:
    """Several accounts share the verified email; the user picks one."""

    @pytest.fixture
    def identity(self):
        bridge = MemoryIdentityBridge()
        bridge.add_subject("a@x.com", "alpha", "secret1")
        bridge.add_subject("a@x.com", "beta", "secret1")
        return bridge

    async def _pending(self, settings, clock, identity):
        auth = build_coordinator(settings, clock, FakeProvider(), identity=identity)
        outcome = await auth.complete_oauth(
            "google", "c", _state_from(await auth.start_oauth("google"))
        )
        return auth, outcome

    async def test_ambiguous_email_returns_handle(self, settings, clock, identity):
        auth, outcome = await self._pending(settings, clock, identity)

        assert outcome.needs_selection is True
        assert outcome.result is None
        link = await auth.get_link_session(outcome.link_handle)
        assert link.email == "a@x.com"
        assert link.provider == "google"
        assert sorted(c.username for c in link.candidates) == ["alpha", "beta"]

    async def test_select_links_and_issues_tokens(self, settings, clock, identity):
        auth, outcome = await self._pending(settings, clock, identity)
        link = await auth.get_link_session(outcome.link_handle)
        chosen = link.candidates[1].subject_id

        result = await auth.select_oauth_account(outcome.link_handle, chosen)

        assert result.subject.id == chosen
        assert identity.oauth_links[("google", "g-1")] == chosen
        assert (await auth.validate_access(result.tokens.access_token)).valid

    async def test_handle_is_single_use(self, settings, clock, identity):
        auth, outcome = await self._pending(settings, clock, identity)
        chosen = (await auth.get_link_session(outcome.link_handle)).candidates[0].subject_id
        await auth.select_oauth_account(outcome.link_handle, chosen)

        with pytest.raises(NotFoundError):
            await auth.select_oauth_account(outcome.link_handle, chosen)

    async def test_non_candidate_rejected(self, settings, clock, identity):
        stranger = identity.add_subject("z@x.com", "zed", "secret1")
        auth, outcome = await self._pending(settings, clock, identity)

        with pytest.raises(ValidationError):
            await auth.select_oauth_account(outcome.link_handle, stranger.id)
        # The handle survives a rejected pick
        assert await auth.get_link_session(outcome.link_handle)

    async def test_expired_handle(self, settings, clock, identity):
        auth, outcome = await self._pending(settings, clock, identity)
        clock.advance(settings.oauth_link_ttl_seconds + 1)

        with pytest.raises(NotFoundError):
            await auth.get_link_session(outcome.link_handle)

    async def test_returning_login_after_link_is_direct(self, settings, clock, identity):
        auth, outcome = await self._pending(settings, clock, identity)
        chosen = (await auth.get_link_session(outcome.link_handle)).candidates[0].subject_id
        await auth.select_oauth_account(outcome.link_handle, chosen)

        again = await auth.complete_oauth(
            "google", "c", _state_from(await auth.start_oauth("google"))
        )

        assert again.needs_selection is False
        assert again.result.subject.id == chosen
