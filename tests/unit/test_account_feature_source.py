import httpx
import pytest

from bouncer.errors import PermanentRejectionError, TransientUpstreamError
from bouncer.scoring.features import AccountFeatures
from bouncer.services.account_feature_source import HttpAccountFeatureSource, StaticFeatureSource
from bouncer.services.infrastructure.encryption_service import CredentialVault, generate_new_key

BASE_URL = "https://features.example.com/v1/"


def source_for(handler, encrypted_token=None, vault=None):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HttpAccountFeatureSource(BASE_URL, encrypted_token, vault=vault, client=client)


@pytest.mark.asyncio
async def test_fetches_features_with_decrypted_bearer_token():
    vault = CredentialVault(generate_new_key())
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers.get("Authorization")
        return httpx.Response(200, json={"username": "realuser", "follower_count": "120"})

    source = source_for(handler, vault.encrypt("api-token"), vault)
    features = await source.fetch_features("100")

    assert seen["url"] == "https://features.example.com/v1/accounts/100/features"
    assert seen["auth"] == "Bearer api-token"
    assert features == AccountFeatures(account_id="100", username="realuser", follower_count=120)


@pytest.mark.asyncio
@pytest.mark.parametrize("status", [408, 429, 502])
async def test_retryable_statuses(status):
    source = source_for(lambda request: httpx.Response(status))
    with pytest.raises(TransientUpstreamError):
        await source.fetch_features("100")


@pytest.mark.asyncio
async def test_missing_account_is_permanent():
    source = source_for(lambda request: httpx.Response(404))
    with pytest.raises(PermanentRejectionError):
        await source.fetch_features("100")


@pytest.mark.asyncio
async def test_non_object_body_is_permanent():
    source = source_for(lambda request: httpx.Response(200, json=["not", "an", "object"]))
    with pytest.raises(PermanentRejectionError):
        await source.fetch_features("100")


@pytest.mark.asyncio
async def test_timeout_is_transient():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("timed out", request=request)

    with pytest.raises(TransientUpstreamError):
        await source_for(handler).fetch_features("100")


@pytest.mark.asyncio
async def test_static_source():
    source = StaticFeatureSource({"1": {"username": "one"}})

    assert (await source.fetch_features("1")).username == "one"
    with pytest.raises(PermanentRejectionError):
        await source.fetch_features("2")
