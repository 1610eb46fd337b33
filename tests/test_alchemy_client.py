"""Alchemy indexer client tests using httpx.MockTransport."""

import httpx
import pytest

from suchmarket.services.exceptions import (
    IndexerAuthError,
    IndexerRateLimitError,
    IndexerUnavailableError,
    TokenNotFoundError,
)
from suchmarket.services.indexer.alchemy_client import AlchemyClient, parse_total_supply

BASE_URL = "https://base-mainnet.g.alchemy.com/nft/v3/test-key"
ADDRESS = "0xabcdef0123456789abcdef0123456789abcdef01"


def client_for(handler) -> AlchemyClient:
    return AlchemyClient(
        BASE_URL, http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler))
    )


@pytest.mark.asyncio
async def test_get_nfts_for_contract_passes_cursor():
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(
            200,
            json={"nfts": [{"tokenId": "1"}, {"tokenId": "2"}], "pageKey": "0x03"},
        )

    client = client_for(handler)
    page = await client.get_nfts_for_contract(ADDRESS, page_size=20, page_key="0x01")

    assert page.token_ids == ["1", "2"]
    assert page.page_key == "0x03"
    params = requests[0].url.params
    assert requests[0].url.path.endswith("/getNFTsForContract")
    assert params["contractAddress"] == ADDRESS
    assert params["withMetadata"] == "true"
    assert params["limit"] == "20"
    assert params["startToken"] == "0x01"


@pytest.mark.asyncio
async def test_last_page_has_no_cursor():
    client = client_for(lambda request: httpx.Response(200, json={"nfts": []}))

    page = await client.get_nfts_for_contract(ADDRESS)

    assert page.nfts == []
    assert page.page_key is None


@pytest.mark.asyncio
async def test_get_contract_metadata():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            json={
                "name": None,
                "symbol": "BPUNK",
                "tokenType": "ERC721",
                "totalSupply": "50",
                "openSeaMetadata": {"collectionName": "Based Punks"},
            },
        )

    metadata = await client_for(handler).get_contract_metadata(ADDRESS)

    assert metadata.name == "Based Punks"
    assert metadata.symbol == "BPUNK"
    assert metadata.token_type == "ERC721"
    assert metadata.total_supply == 50


@pytest.mark.asyncio
async def test_non_nft_contract_returns_none():
    client = client_for(
        lambda request: httpx.Response(200, json={"tokenType": "NOT_A_CONTRACT"})
    )

    assert await client.get_contract_metadata(ADDRESS) is None


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "status,error",
    [
        (429, IndexerRateLimitError),
        (500, IndexerUnavailableError),
        (503, IndexerUnavailableError),
        (401, IndexerAuthError),
        (403, IndexerAuthError),
        (400, TokenNotFoundError),
        (404, TokenNotFoundError),
    ],
)
async def test_token_lookup_status_classification(status, error):
    client = client_for(lambda request: httpx.Response(status, text="nope"))

    with pytest.raises(error):
        await client.get_nft_metadata(ADDRESS, "7")


@pytest.mark.asyncio
async def test_bad_listing_request_is_not_a_missing_token():
    client = client_for(lambda request: httpx.Response(400, text="bad"))

    with pytest.raises(IndexerUnavailableError):
        await client.get_nfts_for_contract(ADDRESS)


@pytest.mark.asyncio
async def test_network_errors_are_transient():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(IndexerUnavailableError):
        await client_for(handler).get_nft_metadata(ADDRESS, "7")


@pytest.mark.asyncio
async def test_timeouts_are_transient():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("timed out", request=request)

    with pytest.raises(IndexerUnavailableError, match="timeout"):
        await client_for(handler).get_nft_metadata(ADDRESS, "7")


def test_parse_total_supply():
    assert parse_total_supply(50) == 50
    assert parse_total_supply("50") == 50
    assert parse_total_supply("0x32") == 50
    assert parse_total_supply(None) is None
    assert parse_total_supply("") is None
    assert parse_total_supply("many") is None
