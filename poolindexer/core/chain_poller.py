"""
Per-chain polling cycle: metadata refresh, chunked log scans, dispatch and checkpointing.
"""

import logging
from enum import Enum
from typing import List, Optional, Tuple

from poolindexer.core.checkpoint_store import CheckpointStore
from poolindexer.core.config import DEFAULT_CHUNK_SIZE
from poolindexer.core.events import TRACKED_TOPICS, EventDispatcher
from poolindexer.core.metadata_resolver import MetadataResolver
from poolindexer.core.rpc_client import RPCClient
from poolindexer.utils.log import get_default_logger


_LOG = get_default_logger(__name__)
_LOG.setLevel(logging.INFO)


class PollerState(Enum):
    """
    The stages of a polling cycle.
    """

    IDLE = "Idle"
    FETCHING_METADATA = "FetchingMetadata"
    SCANNING = "Scanning"
    COMMITTING = "Committing"
    FAILED = "Failed"


def plan_chunks(start_block: int, end_block: int, step: int) -> List[Tuple[int, int]]:
    """
    Split an inclusive block range into consecutive chunks of at most step blocks.

    :param start_block: The first block.
    :param end_block: The last block.
    :param step: The maximum chunk width in blocks.
    :return: The (from_block, to_block) pairs in ascending order.
    """
    if step < 1:
        raise ValueError(f"Invalid chunk size: {step}")
    chunks = []
    cur = start_block
    while cur <= end_block:
        nxt = min(cur + step - 1, end_block)
        chunks.append((cur, nxt))
        cur = nxt + 1
    return chunks


class ChainPoller:
    """
    Runs the polling cycles of one chain.
    Chunks are processed strictly in order and the checkpoint only moves
    to the end of a chunk whose records were all written.
    """

    # pylint: disable-msg=too-many-arguments
    def __init__(
        self,
        chain: str,
        rpc: RPCClient,
        metadata_resolver: MetadataResolver,
        dispatcher: EventDispatcher,
        checkpoint_store: CheckpointStore,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        confirmations: int = 0,
    ):
        """
        Initialize the poller.

        :param chain: The chain name.
        :param rpc: The chain RPC client.
        :param metadata_resolver: The chain's instance metadata resolver.
        :param dispatcher: The chain's event dispatcher.
        :param checkpoint_store: The shared checkpoint store.
        :param chunk_size: The maximum number of blocks per log query.
        :param confirmations: The number of blocks kept behind the head.
        """
        self.chain = chain
        self.rpc = rpc
        self.metadata_resolver = metadata_resolver
        self.dispatcher = dispatcher
        self.checkpoint_store = checkpoint_store
        self.chunk_size = chunk_size
        self.confirmations = confirmations
        self.state = PollerState.IDLE
        # The chunk being scanned, for error reporting.
        self.current_range: Optional[Tuple[int, int]] = None

    async def _poll(self) -> int:
        head = await self.rpc.get_block_number() - self.confirmations
        last_block = await self.checkpoint_store.get_last_block_async(self.chain)
        if head <= last_block:
            _LOG.debug("%s - No new blocks after %s", self.chain, last_block)
            return last_block

        self.state = PollerState.FETCHING_METADATA
        instances = await self.metadata_resolver.resolve()
        addresses = self.dispatcher.tracked_addresses(instances)

        for from_block, to_block in plan_chunks(last_block + 1, head, self.chunk_size):
            self.state = PollerState.SCANNING
            self.current_range = (from_block, to_block)
            logs = await self.rpc.get_logs(from_block, to_block, TRACKED_TOPICS, addresses)
            written = await self.dispatcher.dispatch(logs, instances)

            self.state = PollerState.COMMITTING
            await self.checkpoint_store.set_last_block_async(self.chain, to_block)
            _LOG.debug(
                "%s - Scanned blocks %s-%s: %s records",
                self.chain,
                from_block,
                to_block,
                written,
            )
            last_block = to_block

        return last_block

    async def poll_once(self) -> int:
        """
        Run one polling cycle.
        On failure the cycle ends, the checkpoint stays at the last committed chunk
        and the error is logged with the chain and block range and re-raised.

        :return: The checkpoint after the cycle.
        """
        self.current_range = None
        try:
            return await self._poll()
        except Exception as e:
            self.state = PollerState.FAILED
            if self.current_range is not None:
                _LOG.error(
                    "%s - Failed to index blocks %s-%s: %s",
                    self.chain,
                    self.current_range[0],
                    self.current_range[1],
                    e,
                )
            else:
                _LOG.error("%s - Polling cycle failed: %s", self.chain, e)
            raise
        finally:
            self.state = PollerState.IDLE
