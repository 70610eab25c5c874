"""Network names and per-network configuration from environment variables.

Networks are identified by name, e.g. ``polygon`` or ``arbitrum-rinkeby``.
The name is the key of the deployment ledger and of the factory address table.

Environment variables, with ``<NETWORK>`` being the upper cased network name
where ``-`` is replaced with ``_``:

- ``JSON_RPC_<NETWORK>``: JSON-RPC URL

- ``PRIVATE_KEY_<NETWORK>`` or ``PRIVATE_KEY``: deployer private key

- ``ETHERSCAN_API_KEY_<NETWORK>`` or ``ETHERSCAN_API_KEY``: explorer API key

- ``USE_RANDOM_SALT``: deploy with random salts, for repeated test deployments
"""

import os


#: Network name -> chain id
NETWORKS = {
    "ethereum": 1,
    "ethereum-goerli": 5,
    "ethereum-sepolia": 11155111,
    "optimism": 10,
    "optimism-kovan": 69,
    "arbitrum": 42161,
    "arbitrum-rinkeby": 421611,
    "polygon": 137,
    "polygon-mumbai": 80001,
    "avalanche": 43114,
    "avalanche-fuji": 43113,
    "bnb": 56,
    "bnb-testnet": 97,
    "fantom": 250,
    "fantom-testnet": 4002,
    "base": 8453,
    "base-goerli": 84531,
    "gnosis": 100,
    "rootstock": 30,
    "hardhat": 31337,
}

#: Development networks.
#:
#: Nothing deployed there is verified.
LOCAL_NETWORKS = {"hardhat", "localhost"}

#: Block explorer per network
EXPLORER_URLS = {
    "ethereum": "https://etherscan.io",
    "ethereum-sepolia": "https://sepolia.etherscan.io",
    "optimism": "https://optimistic.etherscan.io",
    "arbitrum": "https://arbiscan.io",
    "polygon": "https://polygonscan.com",
    "avalanche": "https://snowscan.xyz",
    "bnb": "https://bscscan.com",
    "fantom": "https://ftmscan.com",
    "base": "https://basescan.org",
    "gnosis": "https://gnosisscan.io",
    "rootstock": "https://rootstock.blockscout.com",
}

_TRUTHY = {"1", "true", "yes", "on"}


def get_chain_id(network: str) -> int:
    """Chain id of a network.

    :raise KeyError:
        Unknown network
    """
    try:
        return NETWORKS[network]
    except KeyError as e:
        raise KeyError(f"Unknown network {network}, known networks are {', '.join(NETWORKS)}") from e


def get_network_name(chain_id: int) -> str | None:
    """Network name of a chain id, ``None`` if unknown."""
    assert type(chain_id) is int, f"Chain ID must be an integer, got {type(chain_id)}"
    for name, network_chain_id in NETWORKS.items():
        if network_chain_id == chain_id:
            return name
    return None


def is_local_network(network: str) -> bool:
    return network in LOCAL_NETWORKS


def get_env_suffix(network: str) -> str:
    """``arbitrum-rinkeby`` -> ``ARBITRUM_RINKEBY``"""
    return network.upper().replace("-", "_")


def get_json_rpc_env(network: str) -> str:
    return f"JSON_RPC_{get_env_suffix(network)}"


def read_json_rpc_url(network: str) -> str:
    """Read the JSON-RPC URL of a network from the environment.

    :raise ValueError:
        The environment variable is not set
    """
    env_var = get_json_rpc_env(network)
    json_rpc_url = os.environ.get(env_var)
    if not json_rpc_url:
        raise ValueError(f"Environment variable {env_var} is not set for network {network}")
    return json_rpc_url


def _read_with_fallback(prefix: str, network: str) -> str | None:
    return os.environ.get(f"{prefix}_{get_env_suffix(network)}") or os.environ.get(prefix) or None


def read_private_key(network: str) -> str:
    """Read the deployer private key.

    :raise ValueError:
        Neither ``PRIVATE_KEY_<NETWORK>`` nor ``PRIVATE_KEY`` is set
    """
    key = _read_with_fallback("PRIVATE_KEY", network)
    if not key:
        raise ValueError(f"Set PRIVATE_KEY_{get_env_suffix(network)} or PRIVATE_KEY")
    return key


def read_etherscan_api_key(network: str) -> str | None:
    """Read the explorer API key, ``None`` if not configured."""
    return _read_with_fallback("ETHERSCAN_API_KEY", network)


def is_random_salt_mode() -> bool:
    """Is the ``USE_RANDOM_SALT`` environment variable set."""
    return os.environ.get("USE_RANDOM_SALT", "").strip().lower() in _TRUTHY


def get_explorer_url(network: str) -> str | None:
    return EXPLORER_URLS.get(network)


def get_explorer_address_link(network: str, address: str) -> str | None:
    """Explorer link of an address, ``None`` if the network has no explorer."""
    url = get_explorer_url(network)
    if url is None:
        return None
    return f"{url}/address/{address}"
