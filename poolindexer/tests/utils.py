"""
poolindexer test utils
"""

from typing import Dict, List, Optional, Sequence, Set, Tuple

from eth_abi import decode, encode
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool
from web3 import Web3

from poolindexer.core.entity_store import create_db_engine
from poolindexer.core.events import (
    DELEGATED_TOPIC,
    DEPOSIT_TOPIC,
    ECHO_TOPIC,
    ENCRYPTED_NOTE_TOPIC,
    RELAYER_REGISTERED_TOPIC,
    UNDELEGATED_TOPIC,
    WITHDRAWAL_TOPIC,
    ROLE_ECHOER,
    ROLE_GOVERNANCE,
    ROLE_RELAYER_REGISTRY,
    ROLE_ROUTER,
)
from poolindexer.core.rpc_client import MulticallCall, MulticallResult, RawLog, RPCClient
from poolindexer.utils.crypto_utils import address_to_topic, bytes_to_hex_str


CHAIN = "testnet"
CHAIN_ID = 1337

INSTANCE_REGISTRY = "0x" + "a1" * 20
ROUTER = "0x" + "a2" * 20
RELAYER_REGISTRY = "0x" + "a3" * 20
ECHOER = "0x" + "a4" * 20
GOVERNANCE = "0x" + "a5" * 20
MULTICALL = "0x" + "a6" * 20

NATIVE_INSTANCE = "0x" + "b1" * 20
TOKEN_INSTANCE = "0x" + "b2" * 20
DISABLED_INSTANCE = "0x" + "b3" * 20
TOKEN = "0x" + "c1" * 20

ROLE_ADDRESSES = {
    ROLE_ROUTER: ROUTER,
    ROLE_RELAYER_REGISTRY: RELAYER_REGISTRY,
    ROLE_ECHOER: ECHOER,
    ROLE_GOVERNANCE: GOVERNANCE,
}

# (is_erc20, token, denomination, state)
DEFAULT_INSTANCE_DETAILS = {
    NATIVE_INSTANCE: (False, "0x" + "00" * 20, 10**17, 1),
    TOKEN_INSTANCE: (True, TOKEN, 15 * 10**17, 1),
    DISABLED_INSTANCE: (False, "0x" + "00" * 20, 10**18, 0),
}

_GET_ALL_INSTANCE_ADDRESSES_SELECTOR = Web3.keccak(text="getAllInstanceAddresses()")[:4]
_INSTANCES_SELECTOR = Web3.keccak(text="instances(address)")[:4]


def create_test_engine() -> Engine:
    """
    Create an in-memory database engine with all entity tables.
    StaticPool shares the single connection with the executor threads.
    """
    return create_db_engine("sqlite://", {"poolclass": StaticPool})


def make_tx_hash(block_number: int, log_index: int) -> str:
    """Build a deterministic transaction hash for a test log."""
    return "0x" + f"{block_number:032x}{log_index:032x}"


def make_log(
    address: str,
    topics: Sequence[str],
    data: bytes = b"",
    block_number: int = 1,
    log_index: int = 0,
    tx_hash: Optional[str] = None,
) -> RawLog:
    """Build a raw log as returned by the RPC client."""
    return RawLog(
        address=address.lower(),
        topics=tuple(topics),
        data=data,
        block_number=block_number,
        tx_hash=tx_hash or make_tx_hash(block_number, log_index),
        log_index=log_index,
    )


def deposit_log(instance: str, commitment: bytes, leaf_index: int, timestamp: int, **kwargs):
    return make_log(
        instance,
        [DEPOSIT_TOPIC, bytes_to_hex_str(commitment)],
        encode(["uint32", "uint256"], [leaf_index, timestamp]),
        **kwargs,
    )


# pylint: disable-msg=too-many-arguments
def withdrawal_log(
    instance: str, to: str, nullifier_hash: bytes, relayer: str, fee: int, **kwargs
):
    return make_log(
        instance,
        [WITHDRAWAL_TOPIC, address_to_topic(relayer)],
        encode(["address", "bytes32", "uint256"], [to, nullifier_hash, fee]),
        **kwargs,
    )


def encrypted_note_log(sender: str, note: bytes, **kwargs):
    return make_log(
        ROUTER,
        [ENCRYPTED_NOTE_TOPIC, address_to_topic(sender)],
        encode(["bytes"], [note]),
        **kwargs,
    )


def relayer_registered_log(host_name: str, relayer: str, staked_amount: int, **kwargs):
    return make_log(
        RELAYER_REGISTRY,
        [RELAYER_REGISTERED_TOPIC],
        encode(["string", "address", "uint256"], [host_name, relayer, staked_amount]),
        **kwargs,
    )


def echo_log(who: str, data: bytes, **kwargs):
    return make_log(
        ECHOER, [ECHO_TOPIC, address_to_topic(who)], encode(["bytes"], [data]), **kwargs
    )


def delegated_log(account: str, to: str, **kwargs):
    return make_log(
        GOVERNANCE,
        [DELEGATED_TOPIC, address_to_topic(account), address_to_topic(to)],
        **kwargs,
    )


def undelegated_log(account: str, frm: str, **kwargs):
    return make_log(
        GOVERNANCE,
        [UNDELEGATED_TOPIC, address_to_topic(account), address_to_topic(frm)],
        **kwargs,
    )


class FakeRPCClient(RPCClient):
    """
    Scripted in-memory chain serving logs, block timestamps
    and the instance registry calls.
    """

    def __init__(self, head: int = 0, chain_id: int = CHAIN_ID):
        self.head = head
        self.chain_id = chain_id
        self.logs: List[RawLog] = []
        self.instance_details: Dict[str, Tuple] = dict(DEFAULT_INSTANCE_DETAILS)
        # Instances whose multicall sub-call fails.
        self.failing_instances: Set[str] = set()
        # get_logs() raises for a chunk starting at one of these blocks.
        self.failing_from_blocks: Set[int] = set()
        self.fail_calls = False
        self.get_logs_calls: List[Tuple[int, int]] = []
        self.block_timestamp_calls: List[int] = []
        self.multicall_calls = 0

    async def get_chain_id(self) -> int:
        return self.chain_id

    async def get_block_number(self) -> int:
        return self.head

    async def get_logs(self, from_block, to_block, topics, addresses=None) -> List[RawLog]:
        self.get_logs_calls.append((from_block, to_block))
        if from_block in self.failing_from_blocks:
            raise ConnectionError(f"get_logs failed for block {from_block}")
        addresses = {a.lower() for a in addresses} if addresses else None
        return [
            log
            for log in self.logs
            if from_block <= log.block_number <= to_block
            and log.topic0 in topics
            and (addresses is None or log.address in addresses)
        ]

    async def get_block_timestamp(self, block_number: int) -> int:
        self.block_timestamp_calls.append(block_number)
        return 1_700_000_000 + block_number

    async def call(self, to: str, data: bytes) -> bytes:
        if self.fail_calls:
            raise ConnectionError("call failed")
        assert to.lower() == INSTANCE_REGISTRY
        assert data == _GET_ALL_INSTANCE_ADDRESSES_SELECTOR
        return encode(["address[]"], [list(self.instance_details)])

    async def multicall(
        self, multicall_address: str, calls: Sequence[MulticallCall]
    ) -> List[MulticallResult]:
        self.multicall_calls += 1
        assert multicall_address.lower() == MULTICALL
        results = []
        for c in calls:
            assert c.call_data[:4] == _INSTANCES_SELECTOR
            (address,) = decode(["address"], c.call_data[4:])
            address = address.lower()
            if address in self.failing_instances:
                results.append(MulticallResult(success=False, return_data=b""))
                continue
            is_erc20, token, denomination, state = self.instance_details[address]
            results.append(
                MulticallResult(
                    success=True,
                    return_data=encode(
                        ["bool", "address", "uint256", "uint8", "uint24", "uint32"],
                        [is_erc20, token, denomination, state, 0, 0],
                    ),
                )
            )
        return results
