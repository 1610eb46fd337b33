"""On-chain reads of collection-level contract facts.

Used when the indexer cannot describe a contract. Reads ``name()``,
``symbol()``, ``totalSupply()`` and ERC-165 ``supportsInterface`` through
web3.py. web3 calls block, so each read runs in a worker thread.
"""

import asyncio

import structlog
from web3 import Web3
from web3.exceptions import BadFunctionCallOutput, ContractLogicError, Web3Exception

from suchmarket.abi import get_contract_abi
from suchmarket.services.exceptions import ChainReadError
from suchmarket.services.indexer.alchemy_client import ContractMetadata

logger = structlog.get_logger()

ERC721_INTERFACE_ID = bytes.fromhex("80ac58cd")
ERC1155_INTERFACE_ID = bytes.fromhex("d9b67a26")

# Raised when the contract lacks the function or reverts
CALL_ERRORS = (BadFunctionCallOutput, ContractLogicError, ValueError)


class ContractReader:
    """Reads collection metadata straight from the contract."""

    def __init__(self, w3: Web3):
        """Initialize reader.

        Args:
            w3: Web3 instance for RPC calls (HTTPProvider on the configured network)
        """
        self.w3 = w3
        self.contract_abi = get_contract_abi()

    async def read_contract_metadata(self, contract_address: str) -> ContractMetadata | None:
        """Describe a contract from chain state.

        Returns:
            ContractMetadata, or None if no contract is deployed at the address

        Raises:
            ChainReadError: RPC unreachable or returned an unexpected error
        """
        try:
            return await asyncio.to_thread(self._read, contract_address)
        except Web3Exception as e:
            raise ChainReadError(f"On-chain read failed for {contract_address}: {str(e)}") from e
        except (OSError, TimeoutError) as e:
            raise ChainReadError(f"RPC unreachable: {str(e)}") from e

    def _read(self, contract_address: str) -> ContractMetadata | None:
        address = Web3.to_checksum_address(contract_address)
        code = self.w3.eth.get_code(address)
        if not code:
            logger.info("chain.no_contract_code", contract_address=contract_address)
            return None

        contract = self.w3.eth.contract(address=address, abi=self.contract_abi)

        name = self._call(contract.functions.name())
        symbol = self._call(contract.functions.symbol())
        total_supply = self._call(contract.functions.totalSupply())

        if self._call(contract.functions.supportsInterface(ERC721_INTERFACE_ID)):
            token_type = "ERC721"
        elif self._call(contract.functions.supportsInterface(ERC1155_INTERFACE_ID)):
            token_type = "ERC1155"
        else:
            token_type = None

        logger.info(
            "chain.contract_metadata_read",
            contract_address=contract_address,
            name=name,
            token_type=token_type,
            total_supply=total_supply,
        )
        return ContractMetadata(
            name=name,
            symbol=symbol,
            token_type=token_type,
            total_supply=int(total_supply) if total_supply is not None else None,
        )

    @staticmethod
    def _call(fn):
        try:
            return fn.call()
        except CALL_ERRORS as e:
            logger.debug("chain.call_unsupported", error=str(e), error_type=type(e).__name__)
            return None
