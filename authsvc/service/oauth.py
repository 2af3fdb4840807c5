from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional
from urllib.parse import urlencode, urlparse

import httpx

from authsvc.config import Settings
from authsvc.logging import get_logger
from authsvc.service.errors import IdentityExchangeError

logger = get_logger(__name__)

GOOGLE = {
    "auth_url": "https://accounts.google.com/o/oauth2/v2/auth",
    "token_url": "https://oauth2.googleapis.com/token",
    "userinfo_url": "https://openidconnect.googleapis.com/v1/userinfo",
    "scope": "openid email profile",
}


@dataclass(frozen=True)
class IdentityAssertion:
    subject_id: str
    email: str
    email_verified: bool
    name: Optional[str] = None
    picture: Optional[str] = None


def _validate_redirect_uri(redirect_uri: str) -> str:
    parsed = urlparse(redirect_uri)
    if parsed.scheme not in {"https", "http"}:
        raise ValueError("OAuth redirect URI must be http(s)")
    if parsed.scheme == "http" and parsed.hostname not in {"localhost", "127.0.0.1"}:
        raise ValueError("Insecure redirect URI not allowed outside localhost")
    if not parsed.netloc:
        raise ValueError("OAuth redirect URI must include host")
    return redirect_uri


def parse_google_userinfo(userinfo: Dict[str, Any]) -> IdentityAssertion:
    subject = userinfo.get("sub") or userinfo.get("id")
    email = userinfo.get("email")
    if not subject or not email:
        raise IdentityExchangeError("identity provider response lacks subject or email")
    verified = userinfo.get("email_verified", userinfo.get("verified_email", False))
    if isinstance(verified, str):
        verified = verified.lower() == "true"
    return IdentityAssertion(
        subject_id=str(subject),
        email=str(email).lower(),
        email_verified=bool(verified),
        name=userinfo.get("name"),
        picture=userinfo.get("picture"),
    )


class GoogleIdentityProvider:
    """Authorization URL construction and code exchange against Google.

    In TEST_MODE assertions can be registered per authorization code so the
    callback flow runs without network access.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 30.0,
    ) -> None:
        self.settings = settings
        self._transport = transport
        self._timeout = timeout
        self._registered: Dict[str, IdentityAssertion] = {}

    @property
    def configured(self) -> bool:
        return bool(
            self.settings.oauth_google_client_id
            and self.settings.oauth_google_client_secret
            and self.settings.oauth_redirect_uri
        )

    def authorization_url(self, state: str) -> str:
        client_id = self.settings.oauth_google_client_id
        redirect_uri = self.settings.oauth_redirect_uri
        if not client_id or not redirect_uri:
            logger.warning("oauth_not_configured", provider="google")
            raise ValueError("Google OAuth is not configured")
        params = {
            "client_id": client_id,
            "redirect_uri": _validate_redirect_uri(redirect_uri),
            "response_type": "code",
            "scope": GOOGLE["scope"],
            "state": state,
            "access_type": "offline",
            "prompt": "consent",
        }
        return f"{GOOGLE['auth_url']}?{urlencode(params)}"

    def register_code(self, code: str, assertion: IdentityAssertion) -> None:
        if not self.settings.test_mode:
            raise RuntimeError("OAuth code registration is only available in TEST_MODE")
        self._registered[code] = assertion

    async def exchange(self, code: str) -> IdentityAssertion:
        registered = self._registered.pop(code, None)
        if registered is not None:
            return registered
        if not self.configured:
            logger.error("oauth_credentials_missing", provider="google")
            raise IdentityExchangeError("Google OAuth is not configured")

        try:
            async with httpx.AsyncClient(
                timeout=self._timeout, follow_redirects=False, transport=self._transport
            ) as client:
                token_response = await client.post(
                    GOOGLE["token_url"],
                    data={
                        "client_id": self.settings.oauth_google_client_id,
                        "client_secret": self.settings.oauth_google_client_secret,
                        "code": code,
                        "redirect_uri": self.settings.oauth_redirect_uri,
                        "grant_type": "authorization_code",
                    },
                    headers={"Accept": "application/json"},
                )
                token_response.raise_for_status()
                token_result = token_response.json()
                access_token = token_result.get("access_token") if isinstance(token_result, dict) else None
                if not access_token:
                    raise IdentityExchangeError("identity provider returned no access token")

                userinfo_response = await client.get(
                    GOOGLE["userinfo_url"],
                    headers={"Authorization": f"Bearer {access_token}"},
                )
                userinfo_response.raise_for_status()
                userinfo = userinfo_response.json()
        except httpx.HTTPStatusError as exc:
            logger.error(
                "oauth_exchange_http_error",
                provider="google",
                status_code=exc.response.status_code,
            )
            raise IdentityExchangeError("identity provider rejected the authorization code") from exc
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("oauth_exchange_failed", provider="google", error_type=type(exc).__name__)
            raise IdentityExchangeError("identity provider exchange failed") from exc

        if not isinstance(userinfo, dict):
            raise IdentityExchangeError("identity provider returned malformed user info")
        return parse_google_userinfo(userinfo)
