"""Alchemy NFT API v3 client for contract listings and token metadata."""

from dataclasses import dataclass, field
from typing import Any

import httpx
import structlog

from suchmarket.services.exceptions import (
    IndexerAuthError,
    IndexerRateLimitError,
    IndexerUnavailableError,
    TokenNotFoundError,
)

logger = structlog.get_logger()

# Alchemy reports these token types for addresses that are not NFT contracts
NON_NFT_TOKEN_TYPES = ("NOT_A_CONTRACT", "NO_SUPPORTED_NFT_STANDARD")


@dataclass
class NFTPage:
    """One page of ``getNFTsForContract`` results."""

    nfts: list[dict[str, Any]] = field(default_factory=list)
    page_key: str | None = None

    @property
    def token_ids(self) -> list[str]:
        return [str(nft["tokenId"]) for nft in self.nfts if nft.get("tokenId") is not None]


@dataclass
class ContractMetadata:
    """Collection-level facts about a contract."""

    name: str | None
    symbol: str | None
    token_type: str | None
    total_supply: int | None


def parse_total_supply(value: Any) -> int | None:
    """Parse a total supply reported as int, decimal string or hex string."""
    if value is None or value == "":
        return None
    try:
        if isinstance(value, str) and value.startswith("0x"):
            return int(value, 16)
        return int(value)
    except (TypeError, ValueError):
        return None


class AlchemyClient:
    """Indexer client for the Alchemy NFT API v3.

    Status codes are classified into the indexer exception hierarchy:
    - 429 → IndexerRateLimitError (transient)
    - 5xx, timeouts, network errors → IndexerUnavailableError (transient)
    - 401/403 → IndexerAuthError (permanent)
    - 400/404 on a token lookup → TokenNotFoundError (permanent)
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        http_client: httpx.AsyncClient | None = None,
    ):
        """Initialize Alchemy client.

        Args:
            base_url: NFT API base URL including the API key
                (``Settings.alchemy_nft_api_url``)
            timeout: Per-request timeout in seconds
            http_client: Optional preconfigured client (tests pass a MockTransport)
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client = http_client or httpx.AsyncClient(
            timeout=timeout, headers={"accept": "application/json"}
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def get_nfts_for_contract(
        self, contract_address: str, page_size: int = 100, page_key: str | None = None
    ) -> NFTPage:
        """List NFTs of a contract, one page at a time.

        Args:
            contract_address: Lower-cased contract address
            page_size: Maximum NFTs per page
            page_key: Cursor returned by the previous page (None for the first page)

        Returns:
            NFTPage with the page's NFTs and the next cursor (None when exhausted)
        """
        params: dict[str, Any] = {
            "contractAddress": contract_address,
            "withMetadata": "true",
            "limit": page_size,
        }
        if page_key:
            params["startToken"] = page_key

        data = await self._get("getNFTsForContract", params)
        return NFTPage(nfts=list(data.get("nfts") or []), page_key=data.get("pageKey") or None)

    async def get_nft_metadata(self, contract_address: str, token_id: str) -> dict[str, Any]:
        """Fetch the metadata of a single token.

        Raises:
            TokenNotFoundError: Indexer rejected the token id (400/404)
        """
        params = {
            "contractAddress": contract_address,
            "tokenId": token_id,
            "refreshCache": "false",
        }
        return await self._get("getNFTMetadata", params, token_lookup=True)

    async def get_contract_metadata(self, contract_address: str) -> ContractMetadata | None:
        """Describe a contract, or return None if it is not an NFT contract."""
        try:
            data = await self._get("getContractMetadata", {"contractAddress": contract_address})
        except TokenNotFoundError:
            return None

        token_type = data.get("tokenType")
        if token_type in NON_NFT_TOKEN_TYPES:
            logger.info(
                "indexer.contract_not_nft",
                contract_address=contract_address,
                token_type=token_type,
            )
            return None

        return ContractMetadata(
            name=data.get("name") or (data.get("openSeaMetadata") or {}).get("collectionName"),
            symbol=data.get("symbol"),
            token_type=token_type,
            total_supply=parse_total_supply(data.get("totalSupply")),
        )

    async def _get(
        self, endpoint: str, params: dict[str, Any], token_lookup: bool = False
    ) -> dict[str, Any]:
        url = f"{self.base_url}/{endpoint}"
        try:
            response = await self._client.get(url, params=params, timeout=self.timeout)
        except httpx.TimeoutException as e:
            raise IndexerUnavailableError(f"Request timeout after {self.timeout}s: {str(e)}")
        except httpx.HTTPError as e:
            raise IndexerUnavailableError(f"Network error: {str(e)}")

        # Error classification
        if response.status_code == 429:
            raise IndexerRateLimitError(f"Rate limit exceeded: {response.text}")
        elif response.status_code >= 500:
            raise IndexerUnavailableError(
                f"Indexer unavailable ({response.status_code}): {response.text}"
            )
        elif response.status_code in (401, 403):
            raise IndexerAuthError(
                f"Indexer rejected credentials ({response.status_code}). "
                "Check ALCHEMY_API_KEY and that the NFT API is enabled for the app "
                "at https://dashboard.alchemy.com"
            )
        elif response.status_code in (400, 404):
            if token_lookup or response.status_code == 404:
                raise TokenNotFoundError(f"{endpoint} not found: {response.text}")
            raise IndexerUnavailableError(f"Bad request to {endpoint}: {response.text}")

        try:
            response.raise_for_status()
            return response.json()
        except (httpx.HTTPStatusError, ValueError) as e:
            raise IndexerUnavailableError(f"Unexpected response from {endpoint}: {str(e)}")
