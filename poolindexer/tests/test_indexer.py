"""
Tests of the indexer service wiring
"""

import asyncio
import json
import logging
import os
import tempfile
import unittest
from unittest.mock import patch

from poolindexer.core.config import ChainConfig, IndexerConfig
from poolindexer.core.indexer import Indexer, enable_file_logging
from poolindexer.tests.utils import (
    CHAIN,
    CHAIN_ID,
    ECHOER,
    GOVERNANCE,
    INSTANCE_REGISTRY,
    MULTICALL,
    NATIVE_INSTANCE,
    RELAYER_REGISTRY,
    ROUTER,
    FakeRPCClient,
    create_test_engine,
    deposit_log,
)
from poolindexer.utils.error_utils import UnknownChainError
from poolindexer.utils.log import COMBINED_LOG_FILE_NAME, ERROR_LOG_FILE_NAME


def make_config(poll_interval_seconds: float = 30) -> IndexerConfig:
    return IndexerConfig(
        chains=[
            ChainConfig(
                name=CHAIN,
                rpc_url="http://127.0.0.1:8545/",
                chain_id=CHAIN_ID,
                instance_registry_address=INSTANCE_REGISTRY,
                router_address=ROUTER,
                relayer_registry_address=RELAYER_REGISTRY,
                echoer_address=ECHOER,
                governance_address=GOVERNANCE,
                multicall_address=MULTICALL,
                from_block=0,
            )
        ],
        poll_interval_seconds=poll_interval_seconds,
    )


class TestIndexer(unittest.TestCase):
    """
    Test the indexer end to end against a fake chain.
    """

    def setUp(self):
        self.rpc = FakeRPCClient(head=1200)
        self.rpc.logs = [
            deposit_log(NATIVE_INSTANCE, b"\x01" * 32, 0, 1, block_number=5),
            deposit_log(NATIVE_INSTANCE, b"\x02" * 32, 1, 2, block_number=1100),
        ]

    def _make_indexer(self, **kwargs) -> Indexer:
        return Indexer(
            make_config(**kwargs),
            rpc_clients={CHAIN: self.rpc},
            db_engine=create_test_engine(),
        )

    async def run_async(self, indexer: Indexer):
        task = asyncio.create_task(indexer.run())
        await asyncio.sleep(0.2)
        await indexer.stop()
        await asyncio.wait_for(task, timeout=1)

    def test_run(self):
        """Test that a run indexes the chain up to the head."""
        indexer = self._make_indexer(poll_interval_seconds=0.05)
        asyncio.run(self.run_async(indexer))

        query_service = indexer.get_query_service(CHAIN)
        self.assertEqual(query_service.meta(), {"block": {"number": 1200}})
        deposits = query_service.deposits()
        self.assertEqual([d["index"] for d in deposits], [1, 0])
        self.assertEqual(deposits[0]["amount"], "0.1")
        self.assertEqual(deposits[0]["currency"], "etn")

    def test_chain_id_mismatch(self):
        """Test that a node serving another chain fails the start."""
        self.rpc.chain_id = CHAIN_ID + 1
        indexer = self._make_indexer()
        with self.assertRaises(ConnectionError):
            asyncio.run(indexer.start())

    def test_create_instance_from_env(self):
        """Test building the indexer from the .env file of the working directory."""
        chain_dict = {
            "name": CHAIN,
            "rpc_url": "http://127.0.0.1:8545/",
            "chain_id": CHAIN_ID,
            "instance_registry_address": INSTANCE_REGISTRY,
            "router_address": ROUTER,
            "relayer_registry_address": RELAYER_REGISTRY,
            "echoer_address": ECHOER,
            "governance_address": GOVERNANCE,
            "multicall_address": MULTICALL,
            "from_block": 7,
        }
        cwd = os.getcwd()
        with tempfile.TemporaryDirectory() as tmp_dir:
            with open(os.path.join(tmp_dir, ".env"), "w", encoding="utf-8") as f:
                f.write(
                    "POOLINDEXER_CHAINS_JSON_DESCRIPTOR='"
                    + json.dumps([chain_dict])
                    + "'\n"
                )
                f.write("POOLINDEXER_DB_URL=sqlite://\n")
            os.chdir(tmp_dir)
            try:
                with patch.dict(os.environ, {}, clear=True):
                    indexer = Indexer.create_instance_from_env()
            finally:
                os.chdir(cwd)
        self.assertEqual(list(indexer.pollers), [CHAIN])
        self.assertEqual(indexer.config.db_url, "sqlite://")
        self.assertEqual(
            indexer.get_query_service(CHAIN).meta(), {"block": {"number": 7}}
        )

    def test_unknown_chain(self):
        """Test that a query service for an unconfigured chain raises."""
        indexer = self._make_indexer()
        with self.assertRaises(UnknownChainError):
            indexer.get_query_service("other")

    def test_enable_file_logging(self):
        """Test that package logs are written to the combined and error logs."""
        with tempfile.TemporaryDirectory() as tmp_dir:
            enable_file_logging(tmp_dir)
            log = logging.getLogger("poolindexer.core.indexer")
            try:
                log.info("info message")
                log.error("error message")
                for handler in log.handlers:
                    handler.flush()
                with open(
                    os.path.join(tmp_dir, COMBINED_LOG_FILE_NAME), encoding="utf-8"
                ) as f:
                    combined = f.read()
                with open(
                    os.path.join(tmp_dir, ERROR_LOG_FILE_NAME), encoding="utf-8"
                ) as f:
                    errors = f.read()
            finally:
                for name in list(logging.root.manager.loggerDict):
                    if not name.startswith("poolindexer"):
                        continue
                    logger = logging.getLogger(name)
                    for handler in list(logger.handlers):
                        if isinstance(handler, logging.FileHandler):
                            logger.removeHandler(handler)
                            handler.close()
        self.assertIn("info message", combined)
        self.assertIn("error message", combined)
        self.assertNotIn("info message", errors)
        self.assertIn("error message", errors)


if __name__ == "__main__":
    unittest.main()
