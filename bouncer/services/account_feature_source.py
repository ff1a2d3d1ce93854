"""
Account feature sources: where the scoring jobs get profile data from.
"""

from typing import Any, Protocol

import httpx

from bouncer.config import settings
from bouncer.errors import ConfigurationError, PermanentRejectionError, TransientUpstreamError
from bouncer.infrastructure.observability.logging import get_logger
from bouncer.scoring.features import AccountFeatures
from bouncer.services.infrastructure.encryption_service import CredentialVault, get_vault

logger = get_logger(__name__)

RETRY_STATUS_CODES = {408, 429}


class AccountFeatureSource(Protocol):
    async def fetch_features(self, account_id: str) -> AccountFeatures: ...


class StaticFeatureSource:
    """Dict-backed source for tests and local runs."""

    def __init__(self, accounts: dict[str, AccountFeatures | dict[str, Any]] | None = None):
        self._accounts: dict[str, AccountFeatures] = {}
        for account_id, features in (accounts or {}).items():
            self.add(features if isinstance(features, AccountFeatures) else AccountFeatures.from_dict(
                {"account_id": account_id, **features}
            ))

    def add(self, features: AccountFeatures) -> None:
        self._accounts[features.account_id] = features

    async def fetch_features(self, account_id: str) -> AccountFeatures:
        features = self._accounts.get(account_id)
        if features is None:
            raise PermanentRejectionError(
                f"Unknown account {account_id}", details={"account_id": account_id}
            )
        return features


class HttpAccountFeatureSource:
    """
    Fetches ``GET {base_url}/accounts/{id}/features``.

    The bearer token is stored encrypted and decrypted with the vault on
    first use.
    """

    def __init__(
        self,
        base_url: str,
        encrypted_token: str | None = None,
        vault: CredentialVault | None = None,
        timeout: float | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        if not base_url:
            raise ConfigurationError("Feature source base URL is required")
        self.base_url = base_url.rstrip("/")
        self.encrypted_token = encrypted_token
        self.vault = vault
        self.timeout = timeout or settings.FEATURE_SOURCE_TIMEOUT_SECONDS
        self._client = client
        self._token: str | None = None

    @classmethod
    def from_settings(cls) -> "HttpAccountFeatureSource":
        return cls(settings.FEATURE_SOURCE_URL, settings.FEATURE_SOURCE_TOKEN)

    def _headers(self) -> dict[str, str]:
        if self.encrypted_token and self._token is None:
            self._token = (self.vault or get_vault()).decrypt(self.encrypted_token)
        headers = {"Accept": "application/json"}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        return headers

    async def _get(self, url: str) -> httpx.Response:
        headers = self._headers()
        if self._client is not None:
            return await self._client.get(url, headers=headers)
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            return await client.get(url, headers=headers)

    async def fetch_features(self, account_id: str) -> AccountFeatures:
        url = f"{self.base_url}/accounts/{account_id}/features"
        try:
            response = await self._get(url)
        except httpx.RequestError as e:
            logger.warning(
                "Feature source request error",
                account_id=account_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise TransientUpstreamError(f"Feature source unavailable: {e}") from e

        status = response.status_code
        if status in RETRY_STATUS_CODES or status >= 500:
            raise TransientUpstreamError(
                f"Feature source returned {status}",
                details={"account_id": account_id, "status_code": status},
            )
        if status >= 400:
            raise PermanentRejectionError(
                f"Feature source rejected account {account_id} with {status}",
                details={"account_id": account_id, "status_code": status},
            )

        try:
            data = response.json()
        except ValueError as e:
            raise TransientUpstreamError("Feature source returned invalid JSON") from e
        if not isinstance(data, dict):
            raise PermanentRejectionError("Feature source returned a non-object body")

        return AccountFeatures.from_dict({"account_id": account_id, **data})
