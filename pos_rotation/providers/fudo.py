"""
pos_rotation/providers/fudo.py - Fudo POS token renewal and validation.

  POST {base}/auth/token   {"api_key", "api_secret"}  -> {"access_token", "expires_in"}
  GET  {base}/me           Authorization: Bearer <token>  -> identity payload

Base URL is https://api.fudo.com for env "production", the staging API otherwise,
unless FUDO_API_URL overrides both.
"""
import logging

import requests

from pos_rotation.classifier import CLIENT_ERROR, INVALID_RESPONSE, NETWORK, OK, classify_status
from pos_rotation.models import ProviderCredentials, TokenGrant
from pos_rotation.providers import PosProvider, ProviderCallError

log = logging.getLogger(__name__)

PRODUCTION_URL = "https://api.fudo.com"
STAGING_URL = "https://staging-api.fudo.com"


class FudoProvider(PosProvider):
    """Fudo token client over a shared requests session."""

    name = "fudo"

    def __init__(
        self,
        base_url: str | None = None,
        renew_timeout: float = 15.0,
        validate_timeout: float = 10.0,
        session: requests.Session | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/") if base_url else None
        self._renew_timeout = renew_timeout
        self._validate_timeout = validate_timeout
        self._session = session or requests.Session()

    def base_url(self, env: str) -> str:
        if self._base_url:
            return self._base_url
        return PRODUCTION_URL if env == "production" else STAGING_URL

    def renew(self, credentials: ProviderCredentials) -> TokenGrant:
        resp = self._request(
            "renew",
            "POST",
            f"{self.base_url(credentials.env)}/auth/token",
            timeout=self._renew_timeout,
            json={"api_key": credentials.api_key, "api_secret": credentials.api_secret},
        )
        try:
            data = resp.json()
        except ValueError:
            raise ProviderCallError("renew", "response body is not JSON", resp.status_code, INVALID_RESPONSE) from None

        access_token = data.get("access_token") if isinstance(data, dict) else None
        if not access_token or not isinstance(access_token, str):
            raise ProviderCallError("renew", "no access token received", resp.status_code, INVALID_RESPONSE)

        expires_in = data.get("expires_in")
        if not isinstance(expires_in, int) or isinstance(expires_in, bool) or expires_in <= 0:
            if expires_in is not None:
                log.warning(f"Fudo returned unusable expires_in ({type(expires_in).__name__}); storing no expiry")
            expires_in = None
        return TokenGrant(access_token=access_token, expires_in=expires_in)

    def validate(self, access_token: str, env: str) -> None:
        self._request(
            "validate",
            "GET",
            f"{self.base_url(env)}/me",
            timeout=self._validate_timeout,
            headers={"Authorization": f"Bearer {access_token}"},
        )

    def _request(self, step: str, method: str, url: str, timeout: float, **kwargs) -> requests.Response:
        headers = {"Content-Type": "application/json", **kwargs.pop("headers", {})}
        try:
            resp = self._session.request(method, url, headers=headers, timeout=timeout, **kwargs)
        except requests.Timeout:
            raise ProviderCallError(step, f"timed out after {timeout}s", None, NETWORK) from None
        except requests.RequestException as e:
            raise ProviderCallError(step, f"transport error ({type(e).__name__})", None, NETWORK) from None

        if not resp.ok:
            classification = classify_status(resp.status_code)
            category = CLIENT_ERROR if classification.category == OK else classification.category
            raise ProviderCallError(step, f"HTTP {resp.status_code}", resp.status_code, category)
        return resp
