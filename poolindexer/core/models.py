"""SQL models for the indexed entities.

Every table is partitioned by chain: the primary key is (chain, id)
and every query issued by the stores is scoped to a single chain.
"""

from typing import Dict, Type

from sqlmodel import Field, SQLModel


class Checkpoint(SQLModel, table=True):
    """ORM model for the checkpoint table, holding the last fully ingested block per chain."""

    __tablename__ = "checkpoint"
    chain: str = Field(primary_key=True)
    id: str = Field(primary_key=True)
    last_block: int = Field(index=False)

    def to_receipt(self) -> dict:
        return {"chain": self.chain, "lastBlock": self.last_block}


class Deposit(SQLModel, table=True):
    """ORM model for the deposits table, recording pool deposit events."""

    __tablename__ = "deposits"
    chain: str = Field(primary_key=True)
    id: str = Field(primary_key=True)
    currency: str = Field(index=True)
    amount: str = Field(index=True)
    # Leaf index assigned by the pool contract.
    index: int = Field(index=True)
    timestamp: int = Field(index=False)
    block_number: int = Field(index=True)
    commitment: str = Field(index=False)
    transaction_hash: str = Field(index=False)
    log_index: int = Field(index=False)

    def to_receipt(self) -> dict:
        return {
            "currency": self.currency,
            "amount": self.amount,
            "index": self.index,
            "timestamp": self.timestamp,
            "blockNumber": self.block_number,
            "commitment": self.commitment,
            "transactionHash": self.transaction_hash,
        }


class Withdrawal(SQLModel, table=True):
    """ORM model for the withdrawals table, recording pool withdrawal events."""

    __tablename__ = "withdrawals"
    chain: str = Field(primary_key=True)
    id: str = Field(primary_key=True)
    currency: str = Field(index=True)
    amount: str = Field(index=True)
    to: str = Field(index=False)
    relayer: str = Field(index=False)
    fee: str = Field(index=False)
    nullifier: str = Field(index=False)
    # Block timestamp, the withdrawal log does not carry one.
    timestamp: int = Field(index=False)
    block_number: int = Field(index=True)
    transaction_hash: str = Field(index=False)
    log_index: int = Field(index=False)

    def to_receipt(self) -> dict:
        return {
            "currency": self.currency,
            "amount": self.amount,
            "to": self.to,
            "relayer": self.relayer,
            "fee": self.fee,
            "nullifier": self.nullifier,
            "timestamp": self.timestamp,
            "blockNumber": self.block_number,
            "transactionHash": self.transaction_hash,
        }


class EncryptedNote(SQLModel, table=True):
    """ORM model for the encrypted_notes table, recording router note backups."""

    __tablename__ = "encrypted_notes"
    chain: str = Field(primary_key=True)
    id: str = Field(primary_key=True)
    # Locally assigned sequence across all notes of the chain.
    index: int = Field(index=True)
    block_number: int = Field(index=True)
    sender: str = Field(index=False)
    encrypted_note: str = Field(index=False)
    transaction_hash: str = Field(index=False)
    log_index: int = Field(index=False)

    def to_receipt(self) -> dict:
        return {
            "index": self.index,
            "blockNumber": self.block_number,
            "encryptedNote": self.encrypted_note,
            "transactionHash": self.transaction_hash,
        }


class Relayer(SQLModel, table=True):
    """ORM model for the relayers table, recording relayer registrations."""

    __tablename__ = "relayers"
    chain: str = Field(primary_key=True)
    id: str = Field(primary_key=True)
    address: str = Field(index=True)
    ens_name: str = Field(index=False)
    ens_hash: str = Field(index=False)
    staked_amount: str = Field(index=False)
    block_registration: int = Field(index=True)
    transaction_hash: str = Field(index=False)
    log_index: int = Field(index=False)

    def to_receipt(self) -> dict:
        return {
            "address": self.address,
            "ensName": self.ens_name,
            "ensHash": self.ens_hash,
            "blockRegistration": self.block_registration,
        }


class NoteAccount(SQLModel, table=True):
    """ORM model for the note_accounts table, recording echoed encrypted accounts."""

    __tablename__ = "note_accounts"
    chain: str = Field(primary_key=True)
    id: str = Field(primary_key=True)
    # Locally assigned sequence per address.
    index: int = Field(index=True)
    address: str = Field(index=True)
    encrypted_account: str = Field(index=False)
    block_number: int = Field(index=True)
    transaction_hash: str = Field(index=False)
    log_index: int = Field(index=False)

    def to_receipt(self) -> dict:
        return {
            "index": self.index,
            "address": self.address,
            "encryptedAccount": self.encrypted_account,
        }


class Delegation(SQLModel, table=True):
    """ORM model for the delegations table, an append-only log of governance delegation events."""

    __tablename__ = "delegations"
    chain: str = Field(primary_key=True)
    id: str = Field(primary_key=True)
    # Delegated or Undelegated.
    type: str = Field(index=False)
    delegator: str = Field(index=True)
    delegatee: str = Field(index=True)
    block: int = Field(index=True)
    transaction_hash: str = Field(index=False)
    log_index: int = Field(index=False)

    def to_receipt(self) -> dict:
        return {
            "type": self.type,
            "delegator": self.delegator,
            "delegatee": self.delegatee,
            "block": self.block,
            "transactionHash": self.transaction_hash,
        }


# Entity kinds.
CHECKPOINT = "checkpoint"
DEPOSITS = "deposits"
WITHDRAWALS = "withdrawals"
ENCRYPTED_NOTES = "encrypted_notes"
RELAYERS = "relayers"
NOTE_ACCOUNTS = "note_accounts"
DELEGATIONS = "delegations"

DELEGATED = "Delegated"
UNDELEGATED = "Undelegated"

ENTITY_MODELS: Dict[str, Type[SQLModel]] = {
    CHECKPOINT: Checkpoint,
    DEPOSITS: Deposit,
    WITHDRAWALS: Withdrawal,
    ENCRYPTED_NOTES: EncryptedNote,
    RELAYERS: Relayer,
    NOTE_ACCOUNTS: NoteAccount,
    DELEGATIONS: Delegation,
}

# Field used for default iteration and for max_index().
ORDERING_FIELDS: Dict[str, str] = {
    CHECKPOINT: "last_block",
    DEPOSITS: "index",
    WITHDRAWALS: "block_number",
    ENCRYPTED_NOTES: "index",
    RELAYERS: "block_registration",
    NOTE_ACCOUNTS: "index",
    DELEGATIONS: "block",
}


def log_record_id(tx_hash: str, log_index: int) -> str:
    """
    Get the stable record id derived from the originating log.

    :param tx_hash: The transaction hash.
    :param log_index: The log position within the block.
    :return: The record id.
    """
    return f"{tx_hash.lower()}-{log_index}"
