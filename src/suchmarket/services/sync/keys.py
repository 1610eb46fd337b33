"""Contract address normalization and key-value layout for a collection.

Key layout (``{app}`` is the configured APP_NAME):
- ``{app}:collection:{address}:refresh:lock``   refresh lock
- ``{app}:collection:{address}:populate:lock``  populate lock
- ``{app}:collection:{address}:*``              cached pages, stats, floor price
- ``{app}:ownership:{address}:*``               cached token ownership
- ``{app}:cache-events``                        pub/sub channel for cache events
"""

import re

from suchmarket.services.exceptions import InvalidContractAddressError

CONTRACT_ADDRESS_RE = re.compile(r"0x[a-fA-F0-9]{40}")

LOCK_SUFFIX = ":lock"


def normalize_contract_address(address: str | None) -> str:
    """Validate a contract address and return it lower-cased.

    Raises:
        InvalidContractAddressError: If address is not 0x + 40 hex characters
    """
    if not address or not CONTRACT_ADDRESS_RE.fullmatch(address):
        raise InvalidContractAddressError(f"Invalid contract address: {address!r}")
    return address.lower()


def collection_prefix(app_name: str, address: str) -> str:
    return f"{app_name}:collection:{address.lower()}"


def refresh_lock_key(app_name: str, address: str) -> str:
    return f"{collection_prefix(app_name, address)}:refresh{LOCK_SUFFIX}"


def populate_lock_key(app_name: str, address: str) -> str:
    return f"{collection_prefix(app_name, address)}:populate{LOCK_SUFFIX}"


def collection_cache_pattern(app_name: str, address: str) -> str:
    return f"{collection_prefix(app_name, address)}:*"


def ownership_cache_pattern(app_name: str, address: str) -> str:
    return f"{app_name}:ownership:{address.lower()}:*"


def cache_events_channel(app_name: str) -> str:
    return f"{app_name}:cache-events"
