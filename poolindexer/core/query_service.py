"""
The read interface offered to the external query front end.
Arguments use the front end's camelCase field vocabulary
and results are camelCase receipts.
"""

import logging
import re
from typing import Dict, List, Optional

import pandas as pd
from eth_utils import to_checksum_address

from poolindexer.core.checkpoint_store import CheckpointStore
from poolindexer.core.entity_store import (
    DEFAULT_QUERY_LIMIT,
    RANGE_FILTER_SUFFIX,
    SORT_ASC,
    SORT_DESC,
    EntityStore,
)
from poolindexer.core.models import (
    DELEGATED,
    DELEGATIONS,
    DEPOSITS,
    ENCRYPTED_NOTES,
    NOTE_ACCOUNTS,
    RELAYERS,
    WITHDRAWALS,
)
from poolindexer.utils.log import get_default_logger


_LOG = get_default_logger(__name__)
_LOG.setLevel(logging.INFO)


# Fields holding checksum addresses, matched case-insensitively.
_ADDRESS_FILTER_FIELDS = ("address", "delegator", "delegatee")


def to_field_name(name: str) -> str:
    """
    Convert a camelCase front end field name to the stored field name,
    e.g. "blockNumber_gte" -> "block_number_gte".

    :param name: The front end field name.
    :return: The stored field name.
    """
    return re.sub(r"(?<!^)(?=[A-Z])", "_", name).lower()


def translate_where(where: Optional[Dict]) -> Dict:
    """
    Translate a front end filter to a store filter.

    :param where: The camelCase filter, e.g. {"blockNumber_gte": 20}.
    :return: The store filter.
    """
    filters = {}
    for key, value in (where or {}).items():
        field = to_field_name(key)
        base_field = (
            field[: -len(RANGE_FILTER_SUFFIX)]
            if field.endswith(RANGE_FILTER_SUFFIX)
            else field
        )
        if value is not None and base_field in _ADDRESS_FILTER_FIELDS:
            value = to_checksum_address(value)
        elif value is not None and base_field == "currency":
            value = str(value).lower()
        filters[field] = value
    return filters


class QueryService:
    """
    Front end queries over the records of one chain.
    """

    def __init__(self, entity_store: EntityStore, checkpoint_store: CheckpointStore):
        """
        Initialize the service.

        :param entity_store: The chain's entity store.
        :param checkpoint_store: The checkpoint store.
        """
        self.entity_store = entity_store
        self.checkpoint_store = checkpoint_store
        self.chain = entity_store.chain

    # pylint: disable-msg=too-many-arguments
    def _query(
        self,
        kind: str,
        where: Optional[Dict],
        order_by: str,
        order_direction: str,
        first: Optional[int],
        skip: int = 0,
    ) -> List[dict]:
        try:
            records = self.entity_store.query(
                kind,
                filters=translate_where(where),
                sort_field=to_field_name(order_by),
                sort_direction=order_direction,
                limit=first,
                offset=skip,
            )
        except Exception as e:
            _LOG.error("%s - Error in %s query: %s", self.chain, kind, e)
            raise
        return [r.to_receipt() for r in records]

    def deposits(
        self,
        first: int = DEFAULT_QUERY_LIMIT,
        order_by: str = "index",
        order_direction: str = SORT_DESC,
        where: Optional[Dict] = None,
        skip: int = 0,
    ) -> List[dict]:
        """
        Query deposits, by default newest leaf index first.
        """
        return self._query(DEPOSITS, where, order_by, order_direction, first, skip)

    def withdrawals(
        self,
        first: int = DEFAULT_QUERY_LIMIT,
        order_by: str = "blockNumber",
        order_direction: str = SORT_ASC,
        where: Optional[Dict] = None,
        skip: int = 0,
    ) -> List[dict]:
        """
        Query withdrawals, by default in block order.
        """
        return self._query(WITHDRAWALS, where, order_by, order_direction, first, skip)

    def relayers(
        self, first: int = DEFAULT_QUERY_LIMIT, where: Optional[Dict] = None, skip: int = 0
    ) -> List[dict]:
        """
        Query registered relayers in registration order.
        """
        return self._query(RELAYERS, where, "blockRegistration", SORT_ASC, first, skip)

    def encrypted_notes(
        self,
        first: int = DEFAULT_QUERY_LIMIT,
        order_by: str = "blockNumber",
        order_direction: str = SORT_ASC,
        where: Optional[Dict] = None,
        skip: int = 0,
    ) -> List[dict]:
        """
        Query encrypted notes, by default in block order.
        """
        return self._query(
            ENCRYPTED_NOTES, where, order_by, order_direction, first, skip
        )

    def note_accounts(self, where: Optional[Dict] = None) -> List[dict]:
        """
        Query note accounts in index order.
        """
        return self._query(NOTE_ACCOUNTS, where, "index", SORT_ASC, DEFAULT_QUERY_LIMIT)

    def meta(self) -> dict:
        """
        Get the indexing progress of the chain.

        :return: {"block": {"number": <last fully ingested block>}}
        """
        return {"block": {"number": self.checkpoint_store.get_last_block(self.chain)}}

    def _query_all(self, kind: str, filters: Dict) -> List:
        records = []
        while True:
            page = self.entity_store.query(
                kind, filters=filters, offset=len(records), limit=DEFAULT_QUERY_LIMIT
            )
            records += page
            if len(page) < DEFAULT_QUERY_LIMIT:
                return records

    def active_delegators(self, address: str) -> List[dict]:
        """
        Get the accounts currently delegating to an address.
        A delegator is active if its latest delegation event, across all delegatees,
        is a delegation to the address.

        :param address: The delegatee address.
        :return: The active delegators with the block and transaction of their delegation.
        """
        delegatee = to_checksum_address(address)
        delegators = {
            r.delegator for r in self._query_all(DELEGATIONS, {"delegatee": delegatee})
        }
        events = []
        for delegator in sorted(delegators):
            events += self._query_all(DELEGATIONS, {"delegator": delegator})
        if not events:
            return []

        df = pd.DataFrame(
            [
                {
                    "delegator": e.delegator,
                    "delegatee": e.delegatee,
                    "type": e.type,
                    "block": e.block,
                    "log_index": e.log_index,
                    "transactionHash": e.transaction_hash,
                }
                for e in events
            ]
        )
        latest = (
            df.sort_values(["block", "log_index"]).groupby("delegator").tail(1)
        )
        active = latest[
            (latest["type"] == DELEGATED) & (latest["delegatee"] == delegatee)
        ].sort_values(["block", "log_index"])
        return [
            {
                "delegator": row["delegator"],
                "block": int(row["block"]),
                "transactionHash": row["transactionHash"],
            }
            for _, row in active.iterrows()
        ]
