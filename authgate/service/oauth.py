from __future__ import annotations

import secrets
from dataclasses import dataclass
from typing import Any, Optional
from urllib.parse import urlencode, urlparse

import httpx

from authgate.config import Settings
from authgate.logging import get_logger
from authgate.service.errors import ValidationError

logger = get_logger(__name__)

# OAuth provider configurations
OAUTH_PROVIDERS = {
    "google": {
        "auth_url": "https://accounts.google.com/o/oauth2/v2/auth",
        "token_url": "https://oauth2.googleapis.com/token",
        "userinfo_url": "https://www.googleapis.com/oauth2/v2/userinfo",
        "scope": "openid email profile",
    },
    "github": {
        "auth_url": "https://github.com/login/oauth/authorize",
        "token_url": "https://github.com/login/oauth/access_token",
        "userinfo_url": "https://api.github.com/user",
        "emails_url": "https://api.github.com/user/emails",
        "scope": "read:user user:email",
    },
}


@dataclass(frozen=True)
class OAuthIdentity:
    """Verified identity claims handed back by an OAuth provider."""

    provider: str
    provider_id: str
    email: str
    name: Optional[str] = None
    avatar_url: Optional[str] = None


class OAuthError(ValidationError):
    """Provider exchange or identity extraction failed."""


def verify_oauth_identity(provider: str, userinfo: Any) -> OAuthIdentity:
    """Turn a provider userinfo payload into identity claims.

    Pure function: raises OAuthError when the payload lacks a stable provider
    id or a usable email address.
    """
    if not isinstance(userinfo, dict):
        raise OAuthError("OAuth userinfo must be an object", detail={"provider": provider})
    if provider == "google":
        provider_id = userinfo.get("id") or userinfo.get("sub")
        name = userinfo.get("name")
        avatar = userinfo.get("picture")
    elif provider == "github":
        provider_id = userinfo.get("id")
        name = userinfo.get("name") or userinfo.get("login")
        avatar = userinfo.get("avatar_url")
    else:
        raise OAuthError(f"Unsupported OAuth provider: {provider}")
    email = userinfo.get("email")
    if provider_id in (None, ""):
        raise OAuthError("OAuth identity is missing a provider id", detail={"provider": provider})
    if not isinstance(email, str) or "@" not in email:
        raise OAuthError("OAuth identity is missing an email", detail={"provider": provider})
    return OAuthIdentity(
        provider=provider,
        provider_id=str(provider_id),
        email=email.strip().lower(),
        name=name or email.split("@")[0],
        avatar_url=avatar,
    )


class OAuthClient:
    """Authorization-code exchange against the configured providers."""

    def __init__(
        self, settings: Settings, *, transport: Optional[httpx.AsyncBaseTransport] = None
    ) -> None:
        self.settings = settings
        self._transport = transport

    def credentials(self, provider: str) -> tuple[Optional[str], Optional[str]]:
        if provider == "google":
            return self.settings.oauth_google_client_id, self.settings.oauth_google_client_secret
        if provider == "github":
            return self.settings.oauth_github_client_id, self.settings.oauth_github_client_secret
        return None, None

    @staticmethod
    def _validate_redirect_uri(redirect_uri: str) -> str:
        parsed = urlparse(redirect_uri)
        if parsed.scheme not in {"https", "http"}:
            raise ValidationError("OAuth redirect URI must be http(s)")
        if parsed.scheme == "http" and parsed.hostname not in {"localhost", "127.0.0.1"}:
            raise ValidationError("Insecure redirect URI not allowed outside localhost")
        if not parsed.netloc:
            raise ValidationError("OAuth redirect URI must include host")
        return redirect_uri

    @staticmethod
    def new_state() -> str:
        return secrets.token_urlsafe(32)

    def authorization_url(self, provider: str, state: str) -> str:
        if provider not in OAUTH_PROVIDERS:
            raise ValidationError(f"Unsupported OAuth provider: {provider}")
        client_id, _ = self.credentials(provider)
        if not client_id:
            logger.warning("oauth_not_configured", provider=provider)
            raise ValidationError(f"OAuth provider {provider} is not configured")
        callback_uri = self.settings.oauth_redirect_uri
        if not callback_uri:
            logger.error("oauth_no_redirect_uri_configured", provider=provider)
            raise ValidationError("No OAuth redirect URI configured")
        callback_uri = self._validate_redirect_uri(callback_uri.replace("{provider}", provider))

        provider_config = OAUTH_PROVIDERS[provider]
        params = {
            "client_id": client_id,
            "redirect_uri": callback_uri,
            "response_type": "code",
            "scope": provider_config["scope"],
            "state": state,
        }
        if provider == "google":
            params["access_type"] = "offline"
            params["prompt"] = "consent"
        return f"{provider_config['auth_url']}?{urlencode(params)}"

    async def exchange_code(self, provider: str, code: str) -> OAuthIdentity:
        """Exchange an authorization code for verified identity claims."""
        if provider not in OAUTH_PROVIDERS:
            raise OAuthError(f"Unsupported OAuth provider: {provider}")
        client_id, client_secret = self.credentials(provider)
        if not client_id or not client_secret:
            logger.error("oauth_credentials_missing", provider=provider)
            raise OAuthError(f"OAuth provider {provider} is not configured")
        redirect_uri = (self.settings.oauth_redirect_uri or "").replace("{provider}", provider)
        provider_config = OAUTH_PROVIDERS[provider]

        try:
            async with httpx.AsyncClient(
                timeout=30.0, follow_redirects=False, transport=self._transport
            ) as client:
                token_response = await client.post(
                    provider_config["token_url"],
                    data={
                        "client_id": client_id,
                        "client_secret": client_secret,
                        "code": code,
                        "redirect_uri": redirect_uri,
                        "grant_type": "authorization_code",
                    },
                    headers={"Accept": "application/json"},
                )
                token_response.raise_for_status()
                token_result = token_response.json()
                access_token = (
                    token_result.get("access_token") if isinstance(token_result, dict) else None
                )
                if not access_token:
                    logger.error("oauth_no_access_token", provider=provider)
                    raise OAuthError("OAuth provider returned no access token")

                userinfo_headers = {"Authorization": f"Bearer {access_token}"}
                if provider == "github":
                    userinfo_headers["Accept"] = "application/vnd.github+json"
                userinfo_response = await client.get(
                    provider_config["userinfo_url"], headers=userinfo_headers
                )
                userinfo_response.raise_for_status()
                userinfo = userinfo_response.json()

                # GitHub hides private addresses from /user
                if provider == "github" and isinstance(userinfo, dict) and not userinfo.get("email"):
                    emails_response = await client.get(
                        provider_config["emails_url"], headers=userinfo_headers
                    )
                    emails = (
                        emails_response.json() if emails_response.status_code == 200 else None
                    )
                    if isinstance(emails, list):
                        primary_email = next(
                            (
                                e.get("email")
                                for e in emails
                                if isinstance(e, dict)
                                and e.get("primary")
                                and e.get("verified")
                                and e.get("email")
                            ),
                            None,
                        )
                        if primary_email:
                            userinfo = {**userinfo, "email": primary_email}
        except httpx.HTTPStatusError as exc:
            logger.error(
                "oauth_exchange_http_error",
                provider=provider,
                status_code=exc.response.status_code,
            )
            raise OAuthError("OAuth code exchange failed") from exc
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("oauth_exchange_error", provider=provider, error=str(exc))
            raise OAuthError("OAuth code exchange failed") from exc

        identity = verify_oauth_identity(provider, userinfo)
        logger.info("oauth_exchange_success", provider=provider, provider_id=identity.provider_id)
        return identity
