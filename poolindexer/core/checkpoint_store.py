"""
Durable per-chain checkpoint: the last block whose events are fully ingested.
"""

import logging
from typing import Dict

from sqlalchemy.engine import Engine

from poolindexer.core.entity_store import EntityStore
from poolindexer.core.models import CHECKPOINT, Checkpoint
from poolindexer.utils.error_utils import CheckpointRegressionError, UnknownChainError
from poolindexer.utils.log import get_default_logger


_LOG = get_default_logger(__name__)
_LOG.setLevel(logging.INFO)


# Record id of the single checkpoint row of a chain.
_CHECKPOINT_KEY = "last_block"


class CheckpointStore(EntityStore):
    """
    EntityStore specialization holding one monotonic last-block value per chain.
    Unlike the entity stores, it is not bound to a single chain.
    """

    def __init__(self, db_engine: Engine, start_blocks: Dict[str, int]):
        """
        Initialize the store.

        :param db_engine: The database engine.
        :param start_blocks: The configured initial scan start block of each chain.
        """
        super().__init__(db_engine, chain=None)
        self.start_blocks = dict(start_blocks)

    def _check_chain(self, chain: str):
        if chain not in self.start_blocks:
            raise UnknownChainError(f"Unknown chain: {chain}")

    def seed(self, chain: str) -> int:
        """
        Create the checkpoint of a chain from its start block on first run.

        :param chain: The chain name.
        :return: The current last block.
        """
        self._check_chain(chain)
        checkpoint = self._get(CHECKPOINT, chain, _CHECKPOINT_KEY)
        if checkpoint is not None:
            return int(checkpoint.last_block)
        start_block = self.start_blocks[chain]
        self._upsert(
            CHECKPOINT,
            chain,
            _CHECKPOINT_KEY,
            Checkpoint(chain=chain, id=_CHECKPOINT_KEY, last_block=start_block),
        )
        _LOG.info("%s - Seeded checkpoint at block %s", chain, start_block)
        return start_block

    def get_last_block(self, chain: str) -> int:
        """
        Get the last fully ingested block of a chain.

        :param chain: The chain name.
        :return: The persisted value,
            or the chain's configured start block if none was persisted.
        """
        self._check_chain(chain)
        checkpoint = self._get(CHECKPOINT, chain, _CHECKPOINT_KEY)
        if checkpoint is None:
            return self.start_blocks[chain]
        return int(checkpoint.last_block)

    def set_last_block(self, chain: str, block: int):
        """
        Persist the last fully ingested block of a chain.
        Callers only advance the checkpoint;
        a value below the stored one is a defect and raises.

        :param chain: The chain name.
        :param block: The new last block.
        """
        self._check_chain(chain)
        checkpoint = self._get(CHECKPOINT, chain, _CHECKPOINT_KEY)
        if checkpoint is not None and block < checkpoint.last_block:
            _LOG.error(
                "%s - Checkpoint regression from %s to %s",
                chain,
                checkpoint.last_block,
                block,
            )
            raise CheckpointRegressionError(
                f"{chain}: checkpoint cannot move from {checkpoint.last_block} to {block}"
            )
        self._upsert(
            CHECKPOINT,
            chain,
            _CHECKPOINT_KEY,
            Checkpoint(chain=chain, id=_CHECKPOINT_KEY, last_block=int(block)),
        )

    async def get_last_block_async(self, chain: str) -> int:
        """
        Asynchronous get_last_block().
        """
        return await self._run_async(self.get_last_block, chain)

    async def set_last_block_async(self, chain: str, block: int):
        """
        Asynchronous set_last_block().
        """
        await self._run_async(self.set_last_block, chain, block)
