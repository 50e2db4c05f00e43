"""
Fixed-cadence scheduling of the per-chain polling cycles.
"""

import asyncio
import logging
from typing import Dict, Iterable, List, Optional, Union

from poolindexer.core.chain_poller import ChainPoller
from poolindexer.core.config import DEFAULT_POLL_INTERVAL_SECONDS
from poolindexer.utils.error_utils import UnknownChainError
from poolindexer.utils.log import get_default_logger


_LOG = get_default_logger(__name__)
_LOG.setLevel(logging.INFO)


class Scheduler:
    """
    Triggers the polling cycle of every chain on a fixed wall-clock cadence.
    A chain has at most one cycle in flight:
    a trigger firing while the previous cycle runs is skipped.
    Chains are scheduled independently of each other.
    """

    def __init__(
        self,
        pollers: Union[Dict[str, ChainPoller], Iterable[ChainPoller]],
        interval: float = DEFAULT_POLL_INTERVAL_SECONDS,
    ):
        """
        Initialize the scheduler.

        :param pollers: The chain pollers, as a list or a mapping by chain name.
        :param interval: The trigger interval in seconds.
        """
        if isinstance(pollers, dict):
            self.pollers = dict(pollers)
        else:
            self.pollers = {p.chain: p for p in pollers}
        self.interval = interval
        # Per-chain state, only touched from the event loop thread.
        self._in_flight: Dict[str, asyncio.Task] = {}
        self.last_errors: Dict[str, Optional[Exception]] = {}
        self._tick_tasks: List[asyncio.Task] = []

    def is_busy(self, chain: str) -> bool:
        """
        Check whether a chain has a cycle in flight.

        :param chain: The chain name.
        :return: True if a cycle is running.
        """
        task = self._in_flight.get(chain)
        return task is not None and not task.done()

    async def _run_cycle(self, chain: str):
        try:
            await self.pollers[chain].poll_once()
            self.last_errors[chain] = None
        except asyncio.CancelledError:
            raise
        except Exception as e:  # pylint: disable=broad-except
            # The poller has logged the failure; the next trigger retries.
            self.last_errors[chain] = e

    def trigger(self, chain: str) -> bool:
        """
        Start a polling cycle for a chain unless one is already in flight.
        Must be called from a running event loop.

        :param chain: The chain name.
        :return: True if a cycle was started, False if the trigger was skipped.
        """
        if chain not in self.pollers:
            raise UnknownChainError(f"Unknown chain: {chain}")
        if self.is_busy(chain):
            _LOG.warning("%s - Previous cycle still running, skipping trigger", chain)
            return False
        self._in_flight[chain] = asyncio.create_task(self._run_cycle(chain))
        return True

    async def _tick(self, chain: str):
        while True:
            self.trigger(chain)
            await asyncio.sleep(self.interval)

    async def run(self):
        """
        Trigger every chain immediately and then every interval
        until stop() is called.
        """
        _LOG.info(
            "Scheduling %s chains every %s seconds", len(self.pollers), self.interval
        )
        self._tick_tasks = [
            asyncio.create_task(self._tick(chain)) for chain in self.pollers
        ]
        await asyncio.gather(*self._tick_tasks, return_exceptions=True)

    async def stop(self):
        """
        Stop triggering and wait for the in-flight cycles to finish.
        """
        for task in self._tick_tasks:
            task.cancel()
        await asyncio.gather(*self._tick_tasks, return_exceptions=True)
        self._tick_tasks = []
        in_flight = [t for t in self._in_flight.values() if not t.done()]
        if in_flight:
            await asyncio.gather(*in_flight, return_exceptions=True)
        _LOG.info("Scheduler stopped")
