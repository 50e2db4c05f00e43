"""
Indexer configuration.
Chains are described by a JSON descriptor, typically stored in an environment
variable or a .env file, following the same conventions as the other
environment-initialized objects of the package.
"""

import json
import logging
import os
import pprint
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Union

from dotenv import load_dotenv

from poolindexer.utils.crypto_utils import DEFAULT_DECIMALS, normalize_address
from poolindexer.utils.error_utils import (
    UnknownChainError,
    check_for_missing_env_vars,
)
from poolindexer.utils.log import get_default_logger


_LOG = get_default_logger(__name__)
_LOG.setLevel(logging.INFO)


# Reference polling cadence and log query width.
DEFAULT_POLL_INTERVAL_SECONDS = 30
DEFAULT_CHUNK_SIZE = 1000
DEFAULT_DB_URL = "sqlite:///data/poolindexer.db"
# Sentinel currency reported for instances of the native asset.
DEFAULT_NATIVE_CURRENCY = "etn"

# Contract address fields of a chain descriptor.
_ADDRESS_FIELDS = (
    "instance_registry_address",
    "router_address",
    "relayer_registry_address",
    "echoer_address",
    "governance_address",
    "multicall_address",
)
# Deployment config names that differ from the field names.
_FIELD_ALIASES = {
    "multicall3_address": "multicall_address",
    "echo_address": "echoer_address",
}


# pylint: disable-msg=too-many-instance-attributes
@dataclass
class ChainConfig:
    """
    Configuration of a single indexed chain.
    """

    name: str
    rpc_url: str
    chain_id: int
    instance_registry_address: str
    router_address: str
    relayer_registry_address: str
    echoer_address: str
    governance_address: str
    multicall_address: str
    from_block: int
    native_currency: str = DEFAULT_NATIVE_CURRENCY
    amount_decimals: int = DEFAULT_DECIMALS
    # Number of blocks behind the head that are not scanned yet.
    confirmations: int = 0

    def __post_init__(self):
        self.chain_id = int(self.chain_id)
        self.from_block = int(self.from_block)
        self.amount_decimals = int(self.amount_decimals)
        self.confirmations = int(self.confirmations)
        for name in _ADDRESS_FIELDS:
            setattr(self, name, normalize_address(getattr(self, name)))
        if self.from_block < 0:
            raise ValueError(f"{self.name}: from_block must be non-negative")
        if self.confirmations < 0:
            raise ValueError(f"{self.name}: confirmations must be non-negative")

    @staticmethod
    def from_dict(chain_dict: dict) -> "ChainConfig":
        """
        Create a chain configuration from a descriptor dictionary.
        Accepts both the snake_case field names and the upper-case names
        used by deployment configs, e.g. RPC_URL or FROM_BLOCK.

        :param chain_dict: The chain descriptor.
        :return: The chain configuration.
        """
        kwargs = {}
        for k, v in chain_dict.items():
            k = k.lower()
            kwargs[_FIELD_ALIASES.get(k, k)] = v
        return ChainConfig(**kwargs)


@dataclass
class IndexerConfig:
    """
    Configuration of the indexer process.
    """

    chains: List[ChainConfig]
    db_url: str = DEFAULT_DB_URL
    poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS
    chunk_size: int = DEFAULT_CHUNK_SIZE
    log_dir: Optional[str] = None
    _chains_by_name: Dict[str, ChainConfig] = field(
        init=False, repr=False, default_factory=dict
    )

    def __post_init__(self):
        self.chunk_size = int(self.chunk_size)
        self.poll_interval_seconds = float(self.poll_interval_seconds)
        if self.chunk_size < 1:
            raise ValueError("chunk_size must be at least 1")
        if self.poll_interval_seconds <= 0:
            raise ValueError("poll_interval_seconds must be positive")
        for chain in self.chains:
            if chain.name in self._chains_by_name:
                raise ValueError(f"Duplicate chain name: {chain.name}")
            self._chains_by_name[chain.name] = chain

    def get_chain(self, name: str) -> ChainConfig:
        """
        Get a chain configuration by name.

        :param name: The chain name.
        :return: The chain configuration.
        """
        if name not in self._chains_by_name:
            raise UnknownChainError(f"Unknown chain: {name}")
        return self._chains_by_name[name]

    @property
    def start_blocks(self) -> Dict[str, int]:
        """
        The configured initial scan start block of each chain.
        """
        return {c.name: c.from_block for c in self.chains}

    @staticmethod
    def create_instance_from_json_descriptor(
        chains_json: str, **kwargs
    ) -> "IndexerConfig":
        """
        Creates an instance from a JSON descriptor of the chains.
        The descriptor is either a list of chain dictionaries
        or a dictionary mapping chain names to chain dictionaries.

        :param chains_json: The JSON string with the chain descriptors.
        :param kwargs: Additional IndexerConfig arguments.
        :return: The IndexerConfig created.
        """
        chains_data = json.loads(chains_json)
        if isinstance(chains_data, dict):
            chains_data = [
                {"name": name, **chain_dict} for name, chain_dict in chains_data.items()
            ]
        chains = []
        for chain_dict in chains_data:
            _LOG.debug(
                "IndexerConfig.create_instance_from_json_descriptor(): chain_dict =\n%s",
                pprint.pformat(chain_dict),
            )
            chains.append(ChainConfig.from_dict(chain_dict))
        return IndexerConfig(chains=chains, **kwargs)

    @staticmethod
    def create_instance_from_env(
        dotenv_path: Union[str, None] = ".env"
    ) -> "IndexerConfig":
        """
        Creates an instance initialized from environment variables.

        :param dotenv_path: Path to the .env file.
            Below is the default treatment that should be appropriate in most scenarios:
            - If dotenv_path is specified, attempt to load environment variable from the file.
            Ignore failures and default to the environment variables.
            - If called with no arguments, use default ".env" path.
            - If None dotenv_path is specified, default to the environment variables.
        :return: The IndexerConfig created.
        """
        if dotenv_path is not None:
            load_dotenv(dotenv_path, verbose=True, override=True)

        chains_json = os.getenv("POOLINDEXER_CHAINS_JSON_DESCRIPTOR")
        # Check for missing environment variables since these are unrecoverable.
        check_for_missing_env_vars(
            {"POOLINDEXER_CHAINS_JSON_DESCRIPTOR": chains_json}
        )

        kwargs = {
            "db_url": os.getenv("POOLINDEXER_DB_URL", DEFAULT_DB_URL),
            "poll_interval_seconds": os.getenv(
                "POOLINDEXER_POLL_INTERVAL_SECONDS", DEFAULT_POLL_INTERVAL_SECONDS
            ),
            "chunk_size": os.getenv("POOLINDEXER_CHUNK_SIZE", DEFAULT_CHUNK_SIZE),
            "log_dir": os.getenv("POOLINDEXER_LOG_DIR"),
        }
        _LOG.info(
            "IndexerConfig.create_instance_from_env(): kwargs =\n%s",
            pprint.pformat(kwargs),
        )
        return IndexerConfig.create_instance_from_json_descriptor(chains_json, **kwargs)
