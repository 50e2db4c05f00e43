"""
The indexer service: wires the stores, RPC clients and pollers of all chains.
"""

import logging
from typing import Dict, Optional, Union

from sqlalchemy.engine import Engine

from poolindexer.core.chain_poller import ChainPoller
from poolindexer.core.checkpoint_store import CheckpointStore
from poolindexer.core.config import ChainConfig, IndexerConfig
from poolindexer.core.entity_store import EntityStore, create_db_engine
from poolindexer.core.events import (
    ROLE_ECHOER,
    ROLE_GOVERNANCE,
    ROLE_RELAYER_REGISTRY,
    ROLE_ROUTER,
    EventDispatcher,
)
from poolindexer.core.metadata_resolver import MetadataResolver
from poolindexer.core.query_service import QueryService
from poolindexer.core.rpc_client import RPCClient, Web3RPCClient
from poolindexer.core.scheduler import Scheduler
from poolindexer.utils.error_utils import UnknownChainError
from poolindexer.utils.log import add_file_handlers, get_default_logger


_LOG = get_default_logger(__name__)
_LOG.setLevel(logging.INFO)


def enable_file_logging(log_dir: str):
    """
    Write the logs of all package modules to the combined and error log files.

    :param log_dir: The directory for the log files.
    """
    for name in list(logging.root.manager.loggerDict):
        if name == "poolindexer" or name.startswith("poolindexer."):
            add_file_handlers(logging.getLogger(name), log_dir)


class Indexer:
    """
    Multi-chain event indexer.
    Each chain has its own entity store, RPC client, metadata resolver,
    dispatcher and poller; the database and checkpoint store are shared.
    """

    def __init__(
        self,
        config: IndexerConfig,
        rpc_clients: Optional[Dict[str, RPCClient]] = None,
        db_engine: Optional[Engine] = None,
    ):
        """
        Initialize the indexer.

        :param config: The indexer configuration.
        :param rpc_clients: The RPC client of each chain.
            Defaults to a Web3RPCClient for each configured RPC URL.
        :param db_engine: The database engine.
            Defaults to an engine for the configured database URL.
        """
        self.config = config
        if config.log_dir:
            enable_file_logging(config.log_dir)
        self.db_engine = db_engine if db_engine is not None else create_db_engine(
            config.db_url
        )
        self.checkpoint_store = CheckpointStore(self.db_engine, config.start_blocks)
        if rpc_clients is None:
            rpc_clients = {c.name: Web3RPCClient(c.rpc_url) for c in config.chains}
        self.rpc_clients = rpc_clients
        self.entity_stores: Dict[str, EntityStore] = {}
        self.pollers: Dict[str, ChainPoller] = {}
        for chain_config in config.chains:
            self._init_chain(chain_config)
        self.scheduler = Scheduler(self.pollers, config.poll_interval_seconds)

    def _init_chain(self, chain_config: ChainConfig):
        chain = chain_config.name
        rpc = self.rpc_clients[chain]
        store = EntityStore(self.db_engine, chain)
        resolver = MetadataResolver(
            rpc,
            chain_config.instance_registry_address,
            chain_config.multicall_address,
            chain_config.native_currency,
            chain=chain,
        )
        dispatcher = EventDispatcher(
            chain,
            {
                ROLE_ROUTER: chain_config.router_address,
                ROLE_RELAYER_REGISTRY: chain_config.relayer_registry_address,
                ROLE_ECHOER: chain_config.echoer_address,
                ROLE_GOVERNANCE: chain_config.governance_address,
            },
            rpc,
            store,
            amount_decimals=chain_config.amount_decimals,
        )
        self.entity_stores[chain] = store
        self.pollers[chain] = ChainPoller(
            chain,
            rpc,
            resolver,
            dispatcher,
            self.checkpoint_store,
            chunk_size=self.config.chunk_size,
            confirmations=chain_config.confirmations,
        )

    @staticmethod
    def create_instance_from_env(dotenv_path: Union[str, None] = ".env") -> "Indexer":
        """
        Creates an instance initialized from environment variables.

        :param dotenv_path: Path to the .env file,
            treated as by IndexerConfig.create_instance_from_env():
            - If called with no arguments, use default ".env" path.
            - If None dotenv_path is specified, default to the environment variables.
        :return: The initialized indexer.
        """
        return Indexer(IndexerConfig.create_instance_from_env(dotenv_path))

    def get_query_service(self, chain: str) -> QueryService:
        """
        Get the query interface of a chain.

        :param chain: The chain name.
        :return: The query service.
        """
        if chain not in self.entity_stores:
            raise UnknownChainError(f"Unknown chain: {chain}")
        return QueryService(self.entity_stores[chain], self.checkpoint_store)

    async def start(self):
        """
        Check the node connections and seed the checkpoints.
        """
        for chain_config in self.config.chains:
            chain_id = await self.rpc_clients[chain_config.name].check_connection(
                chain_config.chain_id
            )
            last_block = self.checkpoint_store.seed(chain_config.name)
            _LOG.info(
                "%s - Connected to chain id %s, resuming after block %s",
                chain_config.name,
                chain_id,
                last_block,
            )

    async def run(self):
        """
        Start the indexer and poll all chains until stop() is called.
        """
        await self.start()
        await self.scheduler.run()

    async def stop(self):
        """
        Stop polling and wait for the in-flight cycles.
        """
        await self.scheduler.stop()
