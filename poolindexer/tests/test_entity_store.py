"""
Tests of the entity store
"""

import asyncio
import unittest

from poolindexer.core.entity_store import SORT_DESC, EntityStore
from poolindexer.core.models import (
    DEPOSITS,
    NOTE_ACCOUNTS,
    WITHDRAWALS,
    Deposit,
    NoteAccount,
    Withdrawal,
    log_record_id,
)
from poolindexer.tests.utils import CHAIN, create_test_engine, make_tx_hash
from poolindexer.utils.error_utils import UnknownEntityError


def make_deposit(block_number: int, index: int = 0, currency: str = "etn") -> Deposit:
    return Deposit(
        currency=currency,
        amount="1",
        index=index,
        timestamp=1_700_000_000,
        block_number=block_number,
        commitment="0x" + "11" * 32,
        transaction_hash=make_tx_hash(block_number, 0),
        log_index=0,
    )


def make_note_account(address: str, index: int, block_number: int) -> NoteAccount:
    return NoteAccount(
        index=index,
        address=address,
        encrypted_account="0xbeef",
        block_number=block_number,
        transaction_hash=make_tx_hash(block_number, 0),
        log_index=0,
    )


class TestEntityStore(unittest.TestCase):
    """
    Test the EntityStore upsert, query and max_index operations.
    """

    def setUp(self):
        self.engine = create_test_engine()
        self.store = EntityStore(self.engine, CHAIN)

    def _add_deposits(self, block_numbers):
        for i, block_number in enumerate(block_numbers):
            self.store.upsert(
                DEPOSITS,
                log_record_id(make_tx_hash(block_number, 0), 0),
                make_deposit(block_number, index=i),
            )

    def test_upsert_is_idempotent(self):
        """Test that repeated upserts of the same key keep one record."""
        key = log_record_id(make_tx_hash(10, 0), 0)
        self.store.upsert(DEPOSITS, key, make_deposit(10))
        self.store.upsert(DEPOSITS, key, make_deposit(10))
        self.assertEqual(self.store.count(DEPOSITS), 1)

        # A new value for the key replaces the whole record.
        self.store.upsert(DEPOSITS, key, make_deposit(10, currency="0xabc"))
        self.assertEqual(self.store.count(DEPOSITS), 1)
        record = self.store.get(DEPOSITS, key)
        self.assertEqual(record.currency, "0xabc")
        self.assertEqual(record.chain, CHAIN)
        self.assertEqual(record.id, key)

    def test_get_missing(self):
        """Test that a missing key returns None."""
        self.assertIsNone(self.store.get(DEPOSITS, "0x00-0"))

    def test_get_many(self):
        """Test that found records are returned by key and missing keys skipped."""
        self._add_deposits([10, 20])
        key10 = log_record_id(make_tx_hash(10, 0), 0)
        key20 = log_record_id(make_tx_hash(20, 0), 0)
        records = self.store.get_many(DEPOSITS, [key10, key20, "0x00-0", key10])
        self.assertEqual(set(records), {key10, key20})
        self.assertEqual(records[key20].block_number, 20)
        self.assertEqual(self.store.get_many(DEPOSITS, []), {})
        # Records of other chains are not returned.
        other = EntityStore(self.engine, "other")
        self.assertEqual(other.get_many(DEPOSITS, [key10]), {})

    def test_query_range_filter_sort_limit(self):
        """Test a greater-or-equal filter with ascending sort and a limit."""
        self._add_deposits([30, 10, 40, 20])
        records = self.store.query(
            DEPOSITS,
            filters={"block_number_gte": 20},
            sort_field="block_number",
            limit=2,
        )
        self.assertEqual([r.block_number for r in records], [20, 30])

    def test_query_sort_desc_offset(self):
        """Test descending sort and offset pagination."""
        self._add_deposits([10, 20, 30, 40])
        records = self.store.query(
            DEPOSITS, sort_field="block_number", sort_direction=SORT_DESC, offset=1
        )
        self.assertEqual([r.block_number for r in records], [30, 20, 10])

    def test_query_default_ordering_and_limit(self):
        """Test the default ordering field and the None limit."""
        self._add_deposits([40, 30, 20, 10])
        records = self.store.query(DEPOSITS, limit=None)
        # Deposits are ordered by index.
        self.assertEqual([r.index for r in records], [0, 1, 2, 3])

    def test_query_equality_filter(self):
        """Test that equality filters match exactly and None matches all."""
        self.store.upsert(DEPOSITS, "a-0", make_deposit(1, currency="etn"))
        self.store.upsert(DEPOSITS, "b-0", make_deposit(2, currency="0xabc"))
        self.assertEqual(
            [r.id for r in self.store.query(DEPOSITS, filters={"currency": "0xabc"})],
            ["b-0"],
        )
        self.assertEqual(
            len(self.store.query(DEPOSITS, filters={"currency": None})), 2
        )

    def test_chain_partitioning(self):
        """Test that stores of different chains do not see each other's records."""
        other_store = EntityStore(self.engine, "other")
        self.store.upsert(DEPOSITS, "a-0", make_deposit(1))
        other_store.upsert(DEPOSITS, "a-0", make_deposit(2))
        self.assertEqual(self.store.count(DEPOSITS), 1)
        self.assertEqual(self.store.get(DEPOSITS, "a-0").block_number, 1)
        self.assertEqual(other_store.get(DEPOSITS, "a-0").block_number, 2)

    def test_max_index(self):
        """Test max_index with and without a scope filter."""
        self.assertEqual(self.store.max_index(NOTE_ACCOUNTS), 0)
        self.store.upsert(NOTE_ACCOUNTS, "a-0", make_note_account("0xA", 1, 1))
        self.store.upsert(NOTE_ACCOUNTS, "a-1", make_note_account("0xA", 2, 2))
        self.store.upsert(NOTE_ACCOUNTS, "b-0", make_note_account("0xB", 1, 3))
        self.assertEqual(self.store.max_index(NOTE_ACCOUNTS), 2)
        self.assertEqual(self.store.max_index(NOTE_ACCOUNTS, {"address": "0xB"}), 1)
        self.assertEqual(self.store.max_index(NOTE_ACCOUNTS, {"address": "0xC"}), 0)

    def test_unknown_kind_and_field(self):
        """Test that unknown kinds and fields raise."""
        with self.assertRaises(UnknownEntityError):
            self.store.query("unknown")
        with self.assertRaises(UnknownEntityError):
            self.store.query(DEPOSITS, filters={"unknown": 1})
        with self.assertRaises(UnknownEntityError):
            self.store.query(DEPOSITS, sort_field="unknown")

    def test_record_kind_mismatch(self):
        """Test that a record of another kind is rejected."""
        withdrawal = Withdrawal(
            currency="etn",
            amount="1",
            to="0x",
            relayer="0x",
            fee="0",
            nullifier="0x",
            timestamp=0,
            block_number=1,
            transaction_hash="0x",
            log_index=0,
        )
        with self.assertRaises(UnknownEntityError):
            self.store.upsert(DEPOSITS, "a-0", withdrawal)
        self.store.upsert(WITHDRAWALS, "a-0", withdrawal)
        self.assertEqual(self.store.count(WITHDRAWALS), 1)

    def test_invalid_sort_direction(self):
        """Test that an invalid sort direction raises."""
        with self.assertRaises(ValueError):
            self.store.query(DEPOSITS, sort_direction="sideways")

    async def async_ops(self):
        await self.store.upsert_async(DEPOSITS, "a-0", make_deposit(5, index=7))
        record = await self.store.get_async(DEPOSITS, "a-0")
        records = await self.store.query_async(DEPOSITS, filters={"block_number_gte": 5})
        max_index = await self.store.max_index_async(DEPOSITS)
        return record, records, max_index

    def test_async_ops(self):
        """Test the asynchronous variants."""
        record, records, max_index = asyncio.run(self.async_ops())
        self.assertEqual(record.block_number, 5)
        self.assertEqual(len(records), 1)
        self.assertEqual(max_index, 7)


if __name__ == "__main__":
    unittest.main()
