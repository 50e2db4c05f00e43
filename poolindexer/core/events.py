"""
Event decoding and dispatch.
Raw logs are classified by (contract role, topic0) against a static routing table,
decoded into typed records and written to the entity store in log order.
"""

import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional, Sequence

from eth_abi import decode
from eth_abi.exceptions import DecodingError
from eth_utils import to_checksum_address
from sqlmodel import SQLModel

from poolindexer.core.entity_store import EntityStore
from poolindexer.core.metadata_resolver import InstanceMetadata
from poolindexer.core.models import (
    DELEGATED,
    DELEGATIONS,
    DEPOSITS,
    ENCRYPTED_NOTES,
    NOTE_ACCOUNTS,
    RELAYERS,
    UNDELEGATED,
    WITHDRAWALS,
    Delegation,
    Deposit,
    EncryptedNote,
    NoteAccount,
    Relayer,
    Withdrawal,
    log_record_id,
)
from poolindexer.core.rpc_client import RawLog, RPCClient
from poolindexer.utils.crypto_utils import (
    DEFAULT_DECIMALS,
    bytes_to_hex_str,
    event_topic,
    format_amount,
    keccak_text,
    topic_to_address,
)
from poolindexer.utils.error_utils import DecodeError
from poolindexer.utils.log import get_default_logger


_LOG = get_default_logger(__name__)
_LOG.setLevel(logging.INFO)


DEPOSIT_TOPIC = event_topic("Deposit(bytes32,uint32,uint256)")
WITHDRAWAL_TOPIC = event_topic("Withdrawal(address,bytes32,address,uint256)")
ENCRYPTED_NOTE_TOPIC = event_topic("EncryptedNote(address,bytes)")
RELAYER_REGISTERED_TOPIC = event_topic("RelayerRegistered(string,address,uint256)")
ECHO_TOPIC = event_topic("Echo(address,bytes)")
DELEGATED_TOPIC = event_topic("Delegated(address,address)")
UNDELEGATED_TOPIC = event_topic("Undelegated(address,address)")

# Contract roles emitting the tracked events.
ROLE_INSTANCE = "instance"
ROLE_ROUTER = "router"
ROLE_RELAYER_REGISTRY = "relayer_registry"
ROLE_ECHOER = "echoer"
ROLE_GOVERNANCE = "governance"

# Kinds whose records carry a store-assigned index.
INDEXED_KINDS = (ENCRYPTED_NOTES, NOTE_ACCOUNTS)


class ChunkContext:
    """
    Decoding state shared by the logs of one scanned chunk.
    The note and note account counters are read from the store once per chunk
    and incremented in log order.
    The indexes of notes and note accounts stored by an earlier scan
    are loaded with one query per kind before decoding.
    """

    # pylint: disable-msg=too-many-arguments
    def __init__(
        self,
        chain: str,
        instances: Dict[str, InstanceMetadata],
        rpc: RPCClient,
        store: EntityStore,
        amount_decimals: int = DEFAULT_DECIMALS,
    ):
        self.chain = chain
        self.instances = instances
        self.rpc = rpc
        self.store = store
        self.amount_decimals = amount_decimals
        self._block_timestamps: Dict[int, int] = {}
        self._note_index: Optional[int] = None
        self._note_account_indexes: Dict[str, int] = {}
        self._existing_indexes: Dict[str, Dict[str, int]] = {}

    async def get_block_timestamp(self, block_number: int) -> int:
        """
        Get a block timestamp, fetching each distinct block once per chunk.
        """
        if block_number not in self._block_timestamps:
            self._block_timestamps[block_number] = await self.rpc.get_block_timestamp(
                block_number
            )
        return self._block_timestamps[block_number]

    async def load_existing_indexes(self, kind: str, keys: Sequence[str]):
        """
        Load the stored indexes of the chunk's records of an indexed kind.

        :param kind: ENCRYPTED_NOTES or NOTE_ACCOUNTS.
        :param keys: The record ids of the chunk.
        """
        records = await self.store.get_many_async(kind, keys)
        self._existing_indexes[kind] = {k: r.index for k, r in records.items()}

    async def assign_note_index(self, key: str) -> int:
        """
        Get the global index of an encrypted note.
        A note stored by an earlier scan keeps its index.
        """
        existing = self._existing_indexes.get(ENCRYPTED_NOTES, {}).get(key)
        if existing is not None:
            return existing
        if self._note_index is None:
            self._note_index = await self.store.max_index_async(ENCRYPTED_NOTES)
        self._note_index += 1
        return self._note_index

    async def assign_note_account_index(self, key: str, address: str) -> int:
        """
        Get the per-address index of a note account.
        A note account stored by an earlier scan keeps its index.
        """
        existing = self._existing_indexes.get(NOTE_ACCOUNTS, {}).get(key)
        if existing is not None:
            return existing
        if address not in self._note_account_indexes:
            self._note_account_indexes[address] = await self.store.max_index_async(
                NOTE_ACCOUNTS, {"address": address}
            )
        self._note_account_indexes[address] += 1
        return self._note_account_indexes[address]


DecodeFn = Callable[[RawLog, ChunkContext], Awaitable[SQLModel]]


@dataclass(frozen=True)
class EventRoute:
    """
    A routing table entry: the decoder and target kind of one event type.
    """

    role: str
    topic: str
    event_name: str
    kind: str
    decoder: DecodeFn
    # Minimum number of topics, topic0 included.
    min_topics: int = 1
    data_types: Sequence[str] = field(default_factory=tuple)


def _decode_data(route: EventRoute, log: RawLog, ctx: ChunkContext) -> tuple:
    if len(log.topics) < route.min_topics or (route.data_types and not log.data):
        raise DecodeError(
            f"Empty or truncated {route.event_name} log",
            chain=ctx.chain,
            kind=route.kind,
            block_number=log.block_number,
            tx_hash=log.tx_hash,
            log_index=log.log_index,
        )
    if not route.data_types:
        return ()
    try:
        return decode(list(route.data_types), log.data)
    except DecodingError as e:
        raise DecodeError(
            f"Malformed {route.event_name} log data: {e}",
            chain=ctx.chain,
            kind=route.kind,
            block_number=log.block_number,
            tx_hash=log.tx_hash,
            log_index=log.log_index,
        ) from e


async def decode_deposit(log: RawLog, ctx: ChunkContext) -> Deposit:
    """Decode Deposit(bytes32 indexed commitment, uint32 leafIndex, uint256 timestamp)."""
    leaf_index, timestamp = _decode_data(ROUTES_BY_NAME["Deposit"], log, ctx)
    instance = ctx.instances[log.address]
    return Deposit(
        currency=instance.currency,
        amount=format_amount(instance.denomination, ctx.amount_decimals),
        index=int(leaf_index),
        timestamp=int(timestamp),
        block_number=log.block_number,
        commitment=log.topics[1],
        transaction_hash=log.tx_hash,
        log_index=log.log_index,
    )


async def decode_withdrawal(log: RawLog, ctx: ChunkContext) -> Withdrawal:
    """Decode Withdrawal(address to, bytes32 nullifierHash, address indexed relayer, uint256 fee)."""
    to, nullifier_hash, fee = _decode_data(ROUTES_BY_NAME["Withdrawal"], log, ctx)
    instance = ctx.instances[log.address]
    return Withdrawal(
        currency=instance.currency,
        amount=format_amount(instance.denomination, ctx.amount_decimals),
        to=to_checksum_address(to),
        relayer=topic_to_address(log.topics[1]),
        fee=str(fee),
        nullifier=bytes_to_hex_str(nullifier_hash),
        timestamp=await ctx.get_block_timestamp(log.block_number),
        block_number=log.block_number,
        transaction_hash=log.tx_hash,
        log_index=log.log_index,
    )


async def decode_encrypted_note(log: RawLog, ctx: ChunkContext) -> EncryptedNote:
    """Decode EncryptedNote(address indexed sender, bytes encryptedNote)."""
    (encrypted_note,) = _decode_data(ROUTES_BY_NAME["EncryptedNote"], log, ctx)
    key = log_record_id(log.tx_hash, log.log_index)
    return EncryptedNote(
        index=await ctx.assign_note_index(key),
        block_number=log.block_number,
        sender=topic_to_address(log.topics[1]),
        encrypted_note=bytes_to_hex_str(encrypted_note),
        transaction_hash=log.tx_hash,
        log_index=log.log_index,
    )


async def decode_relayer_registered(log: RawLog, ctx: ChunkContext) -> Relayer:
    """Decode RelayerRegistered(string hostName, address relayerAddress, uint256 stakedAmount)."""
    host_name, relayer_address, staked_amount = _decode_data(
        ROUTES_BY_NAME["RelayerRegistered"], log, ctx
    )
    return Relayer(
        address=to_checksum_address(relayer_address),
        ens_name=host_name,
        ens_hash=keccak_text(host_name),
        staked_amount=str(staked_amount),
        block_registration=log.block_number,
        transaction_hash=log.tx_hash,
        log_index=log.log_index,
    )


async def decode_echo(log: RawLog, ctx: ChunkContext) -> NoteAccount:
    """Decode Echo(address indexed who, bytes data)."""
    (data,) = _decode_data(ROUTES_BY_NAME["Echo"], log, ctx)
    address = topic_to_address(log.topics[1])
    key = log_record_id(log.tx_hash, log.log_index)
    return NoteAccount(
        index=await ctx.assign_note_account_index(key, address),
        address=address,
        encrypted_account=bytes_to_hex_str(data),
        block_number=log.block_number,
        transaction_hash=log.tx_hash,
        log_index=log.log_index,
    )


def _delegation(log: RawLog, ctx: ChunkContext, event_name: str) -> Delegation:
    _decode_data(ROUTES_BY_NAME[event_name], log, ctx)
    return Delegation(
        type=event_name,
        delegator=topic_to_address(log.topics[1]),
        delegatee=topic_to_address(log.topics[2]),
        block=log.block_number,
        transaction_hash=log.tx_hash,
        log_index=log.log_index,
    )


async def decode_delegated(log: RawLog, ctx: ChunkContext) -> Delegation:
    """Decode Delegated(address indexed account, address indexed to)."""
    return _delegation(log, ctx, DELEGATED)


async def decode_undelegated(log: RawLog, ctx: ChunkContext) -> Delegation:
    """Decode Undelegated(address indexed account, address indexed from)."""
    return _delegation(log, ctx, UNDELEGATED)


ROUTES = (
    EventRoute(
        ROLE_INSTANCE, DEPOSIT_TOPIC, "Deposit", DEPOSITS, decode_deposit,
        min_topics=2, data_types=("uint32", "uint256"),
    ),
    EventRoute(
        ROLE_INSTANCE, WITHDRAWAL_TOPIC, "Withdrawal", WITHDRAWALS, decode_withdrawal,
        min_topics=2, data_types=("address", "bytes32", "uint256"),
    ),
    EventRoute(
        ROLE_ROUTER, ENCRYPTED_NOTE_TOPIC, "EncryptedNote", ENCRYPTED_NOTES,
        decode_encrypted_note, min_topics=2, data_types=("bytes",),
    ),
    EventRoute(
        ROLE_RELAYER_REGISTRY, RELAYER_REGISTERED_TOPIC, "RelayerRegistered", RELAYERS,
        decode_relayer_registered, data_types=("string", "address", "uint256"),
    ),
    EventRoute(
        ROLE_ECHOER, ECHO_TOPIC, "Echo", NOTE_ACCOUNTS, decode_echo,
        min_topics=2, data_types=("bytes",),
    ),
    EventRoute(
        ROLE_GOVERNANCE, DELEGATED_TOPIC, DELEGATED, DELEGATIONS, decode_delegated,
        min_topics=3,
    ),
    EventRoute(
        ROLE_GOVERNANCE, UNDELEGATED_TOPIC, UNDELEGATED, DELEGATIONS, decode_undelegated,
        min_topics=3,
    ),
)

ROUTES_BY_NAME: Dict[str, EventRoute] = {r.event_name: r for r in ROUTES}

# All topic0 values fetched in a chunk's log query.
TRACKED_TOPICS: List[str] = sorted({r.topic for r in ROUTES})


class EventDispatcher:
    """
    Routes the raw logs of a scanned range to their decoders and the entity store.
    """

    def __init__(
        self,
        chain: str,
        role_addresses: Dict[str, str],
        rpc: RPCClient,
        store: EntityStore,
        amount_decimals: int = DEFAULT_DECIMALS,
    ):
        """
        Initialize the dispatcher and build the routing table.

        :param chain: The chain name.
        :param role_addresses: The contract address of each fixed role.
            Instance addresses are resolved per cycle.
        :param rpc: The chain RPC client.
        :param store: The chain's entity store.
        :param amount_decimals: The decimals used to format amounts.
        """
        self.chain = chain
        self.rpc = rpc
        self.store = store
        self.amount_decimals = amount_decimals
        self.role_addresses = {k: v.lower() for k, v in role_addresses.items()}
        # (address, topic) for fixed roles, (role, topic) for instances.
        self.routing_table: Dict[tuple, EventRoute] = {}
        for route in ROUTES:
            if route.role == ROLE_INSTANCE:
                self.routing_table[(ROLE_INSTANCE, route.topic)] = route
            else:
                self.routing_table[(self.role_addresses[route.role], route.topic)] = route

    def tracked_addresses(self, instances: Dict[str, InstanceMetadata]) -> List[str]:
        """
        Get the addresses whose logs are fetched.

        :param instances: The active instance metadata.
        :return: The sorted lowercase addresses.
        """
        return sorted(set(self.role_addresses.values()) | set(instances))

    def classify(
        self, log: RawLog, instances: Dict[str, InstanceMetadata]
    ) -> Optional[EventRoute]:
        """
        Find the route of a log.

        :param log: The raw log.
        :param instances: The active instance metadata.
        :return: The route, or None if the log is not tracked.
        """
        if log.topic0 is None:
            return None
        if log.address in instances:
            return self.routing_table.get((ROLE_INSTANCE, log.topic0))
        return self.routing_table.get((log.address, log.topic0))

    async def dispatch(
        self, logs: Sequence[RawLog], instances: Dict[str, InstanceMetadata]
    ) -> int:
        """
        Decode and store the logs of one chunk.
        Logs are processed by ascending block number and log position,
        and each record is written before the next log is decoded.

        :param logs: The raw logs of the chunk.
        :param instances: The active instance metadata.
        :return: The number of records written.
        """
        ctx = ChunkContext(
            self.chain, instances, self.rpc, self.store, self.amount_decimals
        )
        routed = []
        for log in sorted(logs, key=lambda x: (x.block_number, x.log_index)):
            route = self.classify(log, instances)
            if route is not None:
                routed.append((log, route))

        indexed_keys: Dict[str, List[str]] = {}
        for log, route in routed:
            if route.kind in INDEXED_KINDS:
                indexed_keys.setdefault(route.kind, []).append(
                    log_record_id(log.tx_hash, log.log_index)
                )
        for kind, keys in indexed_keys.items():
            await ctx.load_existing_indexes(kind, keys)

        written = 0
        for log, route in routed:
            record = await route.decoder(log, ctx)
            await self.store.upsert_async(
                route.kind, log_record_id(log.tx_hash, log.log_index), record
            )
            written += 1
            _LOG.info(
                "%s - %s on block %s", self.chain, route.event_name, log.block_number
            )
        return written
