"""poolindexer

A multi-chain indexer of privacy pool events
"""

from poolindexer.core.chain_poller import ChainPoller, PollerState
from poolindexer.core.checkpoint_store import CheckpointStore
from poolindexer.core.config import ChainConfig, IndexerConfig
from poolindexer.core.entity_store import EntityStore, create_db_engine
from poolindexer.core.events import EventDispatcher
from poolindexer.core.indexer import Indexer
from poolindexer.core.metadata_resolver import InstanceMetadata, MetadataResolver
from poolindexer.core.query_service import QueryService
from poolindexer.core.rpc_client import RawLog, RPCClient, Web3RPCClient
from poolindexer.core.scheduler import Scheduler
from poolindexer.utils.error_utils import (
    CheckpointRegressionError,
    DecodeError,
    IndexerError,
    UnknownChainError,
    UnknownEntityError,
)
from poolindexer.utils.log import get_default_logger

__all__ = [
    "Indexer",
    "IndexerConfig",
    "ChainConfig",
    "ChainPoller",
    "PollerState",
    "Scheduler",
    "EntityStore",
    "CheckpointStore",
    "create_db_engine",
    "EventDispatcher",
    "MetadataResolver",
    "InstanceMetadata",
    "QueryService",
    "RPCClient",
    "Web3RPCClient",
    "RawLog",
    "IndexerError",
    "UnknownChainError",
    "UnknownEntityError",
    "CheckpointRegressionError",
    "DecodeError",
    "get_default_logger",
]
