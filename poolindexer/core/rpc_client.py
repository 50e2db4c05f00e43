"""
The chain RPC capability set used by the indexer
and its implementation over Web3 AsyncHTTPProvider.
"""

import json
import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

from eth_utils import to_checksum_address
from web3 import AsyncHTTPProvider, AsyncWeb3

from poolindexer.utils.crypto_utils import bytes_to_hex_str, bytes_to_hex_str_auto
from poolindexer.utils.log import get_default_logger
from poolindexer.utils.retries import with_retries


_LOG = get_default_logger(__name__)
_LOG.setLevel(logging.INFO)


# Settings for the connection check retries.
_CONNECTION_MAX_ATTEMPTS = 5
# Initial backoff in seconds, doubled on every attempt.
_CONNECTION_BACKOFF = 1

_ABI_DIR = os.path.join(os.path.dirname(os.path.dirname(__file__)), "abi")


def load_contract_abi(json_file_name: str) -> list:
    """
    Load a contract ABI shipped with the package.

    :param json_file_name: The ABI JSON file name, e.g. "Multicall3.json".
    :return: The ABI.
    """
    with open(os.path.join(_ABI_DIR, json_file_name), encoding="utf-8") as f:
        return json.load(f)["abi"]


@dataclass(frozen=True)
class RawLog:
    """
    An undecoded event log.
    Addresses and hex strings are lowercase and 0x-prefixed.
    """

    address: str
    topics: Tuple[str, ...]
    data: bytes
    block_number: int
    tx_hash: str
    log_index: int

    @property
    def topic0(self) -> Optional[str]:
        """The event signature topic, if any."""
        return self.topics[0] if self.topics else None


@dataclass(frozen=True)
class MulticallCall:
    """
    A single read-only call batched in a multicall.
    """

    target: str
    call_data: bytes


@dataclass(frozen=True)
class MulticallResult:
    """
    The outcome of a single batched call.
    """

    success: bool
    return_data: bytes


class RPCClient(ABC):
    """
    Interface for the chain RPC operations needed by the indexer.
    """

    @abstractmethod
    async def get_chain_id(self) -> int:
        """
        Get the chain id reported by the node.

        :return: The chain id.
        """

    @abstractmethod
    async def get_block_number(self) -> int:
        """
        Get the current head block number.

        :return: The block number.
        """

    @abstractmethod
    async def get_logs(
        self,
        from_block: int,
        to_block: int,
        topics: Sequence[str],
        addresses: Optional[Sequence[str]] = None,
    ) -> List[RawLog]:
        """
        Get the logs in [from_block, to_block] whose topic0 is any of the topics.

        :param from_block: The first block, inclusive.
        :param to_block: The last block, inclusive.
        :param topics: The topic0 values to match.
        :param addresses: If given, only logs emitted by these addresses.
        :return: The logs.
        """

    @abstractmethod
    async def get_block_timestamp(self, block_number: int) -> int:
        """
        Get the timestamp of a block.

        :param block_number: The block number.
        :return: The block timestamp in seconds.
        """

    @abstractmethod
    async def call(self, to: str, data: bytes) -> bytes:
        """
        Execute a read-only call.

        :param to: The contract address.
        :param data: The ABI-encoded call data.
        :return: The returned data.
        """

    @abstractmethod
    async def multicall(
        self, multicall_address: str, calls: Sequence[MulticallCall]
    ) -> List[MulticallResult]:
        """
        Execute read-only calls in one round trip.
        A failed call is reported in its result and does not fail the batch.

        :param multicall_address: The Multicall3 contract address.
        :param calls: The calls.
        :return: The results, in call order.
        """

    async def check_connection(self, expected_chain_id: Optional[int] = None) -> int:
        """
        Check that the node is reachable and serves the expected chain.
        Retries with exponential backoff before giving up.

        :param expected_chain_id: The configured chain id, if any.
        :return: The chain id.
        """
        chain_id = await with_retries(
            self.get_chain_id,
            _LOG,
            max_attempts=_CONNECTION_MAX_ATTEMPTS,
            delay=_CONNECTION_BACKOFF,
        )
        if expected_chain_id is not None and chain_id != expected_chain_id:
            raise ConnectionError(
                f"Node serves chain id {chain_id}, expected {expected_chain_id}"
            )
        return chain_id


class Web3RPCClient(RPCClient):
    """
    RPC client accessible using Web3 AsyncHTTPProvider.
    """

    def __init__(self, node_rpc_url: str):
        """
        Initialize the client.

        :param node_rpc_url: Node RPC URL.
        """
        self.node_rpc_url = node_rpc_url
        self.w3 = AsyncWeb3(AsyncHTTPProvider(node_rpc_url))
        self._multicall_abi = load_contract_abi("Multicall3.json")

    async def get_chain_id(self) -> int:
        return int(await self.w3.eth.chain_id)

    async def get_block_number(self) -> int:
        return int(await self.w3.eth.block_number)

    async def get_logs(
        self,
        from_block: int,
        to_block: int,
        topics: Sequence[str],
        addresses: Optional[Sequence[str]] = None,
    ) -> List[RawLog]:
        filter_params = {
            "fromBlock": from_block,
            "toBlock": to_block,
            # A nested list matches any of the topic0 values.
            "topics": [list(topics)],
        }
        if addresses:
            filter_params["address"] = [to_checksum_address(a) for a in addresses]
        logs = await self.w3.eth.get_logs(filter_params)
        return [
            RawLog(
                address=log["address"].lower(),
                topics=tuple(bytes_to_hex_str_auto(t) for t in log["topics"]),
                data=bytes(log["data"]),
                block_number=int(log["blockNumber"]),
                tx_hash=bytes_to_hex_str_auto(log["transactionHash"]),
                log_index=int(log["logIndex"]),
            )
            for log in logs
        ]

    async def get_block_timestamp(self, block_number: int) -> int:
        block = await self.w3.eth.get_block(block_number)
        return int(block["timestamp"])

    async def call(self, to: str, data: bytes) -> bytes:
        result = await self.w3.eth.call(
            {"to": to_checksum_address(to), "data": bytes_to_hex_str(data)}
        )
        return bytes(result)

    async def multicall(
        self, multicall_address: str, calls: Sequence[MulticallCall]
    ) -> List[MulticallResult]:
        multicall = self.w3.eth.contract(
            address=to_checksum_address(multicall_address),
            abi=self._multicall_abi,
        )
        results = await multicall.functions.aggregate3(
            [(to_checksum_address(c.target), True, c.call_data) for c in calls]
        ).call()
        return [
            MulticallResult(success=bool(success), return_data=bytes(return_data))
            for success, return_data in results
        ]
