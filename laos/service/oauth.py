from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import httpx

from laos.logging import get_logger
from laos.service.errors import UpstreamError, ValidationError

logger = get_logger(__name__)

GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_USERINFO_URL = "https://www.googleapis.com/oauth2/v3/userinfo"


@dataclass(frozen=True)
class GoogleIdentity:
    sub: str
    email: str
    name: Optional[str] = None


class GoogleOAuthClient:
    """Authorization-code exchange against Google's token and userinfo endpoints."""

    def __init__(
        self,
        *,
        client_id: Optional[str],
        client_secret: Optional[str],
        redirect_uri: Optional[str],
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.timeout = timeout
        self._transport = transport

    @classmethod
    def from_settings(cls, settings, **kwargs) -> "GoogleOAuthClient":
        return cls(
            client_id=settings.oauth_google_client_id,
            client_secret=settings.oauth_google_client_secret,
            redirect_uri=settings.oauth_google_redirect_uri,
            **kwargs,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.client_id and self.client_secret and self.redirect_uri)

    async def fetch_identity(self, code: str) -> GoogleIdentity:
        if not code or not code.strip():
            raise ValidationError("authorization code is required", detail={"field": "code"})
        if not self.is_configured:
            logger.error("oauth_not_configured", provider="google")
            raise UpstreamError("google sign-in is not configured")

        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, follow_redirects=False, transport=self._transport
            ) as client:
                token_response = await client.post(
                    GOOGLE_TOKEN_URL,
                    data={
                        "grant_type": "authorization_code",
                        "client_id": self.client_id,
                        "client_secret": self.client_secret,
                        "redirect_uri": self.redirect_uri,
                        "code": code.strip(),
                    },
                    headers={"Accept": "application/json"},
                )
                token_response.raise_for_status()
                token_result = token_response.json()
                access_token = (
                    token_result.get("access_token") if isinstance(token_result, dict) else None
                )
                if not access_token:
                    logger.error("oauth_no_access_token", provider="google")
                    raise UpstreamError("google did not return an access token")

                userinfo_response = await client.get(
                    GOOGLE_USERINFO_URL,
                    headers={"Authorization": f"Bearer {access_token}"},
                )
                userinfo_response.raise_for_status()
                userinfo = userinfo_response.json()
        except httpx.HTTPStatusError as e:
            logger.error(
                "oauth_exchange_http_error",
                provider="google",
                status_code=e.response.status_code,
                error=str(e),
            )
            raise UpstreamError(
                "google rejected the authorization code",
                detail={"upstream_status": e.response.status_code},
            ) from e
        except httpx.HTTPError as e:
            logger.error("oauth_exchange_transport_error", provider="google", error=str(e))
            raise UpstreamError("could not reach google") from e
        except ValueError as e:
            logger.error("oauth_response_parse_error", provider="google", error=str(e))
            raise UpstreamError("google returned an unreadable response") from e

        if not isinstance(userinfo, dict) or not userinfo.get("email"):
            logger.error("oauth_userinfo_missing_email", provider="google")
            raise UpstreamError("google account has no email address")
        identity = GoogleIdentity(
            sub=str(userinfo.get("sub") or userinfo.get("id") or ""),
            email=str(userinfo["email"]).strip().lower(),
            name=userinfo.get("name"),
        )
        logger.info("oauth_identity_fetched", provider="google")
        return identity
