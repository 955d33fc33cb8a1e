"""Google OAuth 2.0 authorization-code flow and access-token verification."""

from __future__ import annotations

import logging
from typing import Any, Dict
from urllib.parse import urlencode

import httpx

from evergreen_core.models import Caller

logger = logging.getLogger(__name__)

GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_USERINFO_URL = "https://openidconnect.googleapis.com/v1/userinfo"
SCOPES = "openid email profile"


class OAuthError(Exception):
    """The provider rejected the request or returned something unusable."""


class ProviderUnavailable(OAuthError):
    """The provider could not be reached or answered with a server error."""


class GoogleOAuthClient:
    def __init__(self, client_id: str, client_secret: str, timeout: float = 10.0) -> None:
        self.client_id = client_id
        self.client_secret = client_secret
        self.timeout = timeout

    def authorization_url(self, redirect_uri: str, state: str) -> str:
        params = {
            "client_id": self.client_id,
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "scope": SCOPES,
            "state": state,
            "prompt": "select_account",
        }
        return f"{GOOGLE_AUTH_URL}?{urlencode(params)}"

    def exchange_code(self, code: str, redirect_uri: str) -> str:
        """Trade an authorization code for an access token."""
        data = {
            "code": code,
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "redirect_uri": redirect_uri,
            "grant_type": "authorization_code",
        }
        try:
            with httpx.Client(timeout=self.timeout) as client:
                response = client.post(GOOGLE_TOKEN_URL, data=data, headers={"Accept": "application/json"})
                response.raise_for_status()
                payload = response.json()
        except httpx.HTTPStatusError as exc:
            if exc.response.status_code >= 500:
                raise ProviderUnavailable("Google token endpoint failed") from exc
            raise OAuthError("Google rejected the authorization code") from exc
        except httpx.HTTPError as exc:
            raise ProviderUnavailable("Google token endpoint unreachable") from exc
        except ValueError as exc:
            raise ProviderUnavailable("Google token endpoint returned an unreadable response") from exc

        token = str(payload.get("access_token") or "").strip() if isinstance(payload, dict) else ""
        if not token:
            raise OAuthError("Google token response had no access_token")
        return token

    def fetch_user(self, access_token: str) -> Caller:
        headers = {"Authorization": f"Bearer {access_token}", "Accept": "application/json"}
        try:
            with httpx.Client(timeout=self.timeout) as client:
                response = client.get(GOOGLE_USERINFO_URL, headers=headers)
                response.raise_for_status()
                payload: Dict[str, Any] = response.json()
        except httpx.HTTPStatusError as exc:
            if exc.response.status_code in (401, 403):
                raise OAuthError("Invalid authentication token") from exc
            raise ProviderUnavailable("Failed to verify authentication token") from exc
        except httpx.HTTPError as exc:
            raise ProviderUnavailable("Failed to verify authentication token") from exc
        except ValueError as exc:
            raise ProviderUnavailable("Google userinfo endpoint returned an unreadable response") from exc

        caller = Caller.from_profile(payload)
        if caller is None:
            raise OAuthError("Invalid authentication token")
        return caller
