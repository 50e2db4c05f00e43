"""Common error types and validation utility functions
"""

from typing import Optional


class IndexerError(Exception):
    """Base class for indexer errors."""


class UnknownChainError(IndexerError):
    """Raised when an operation names a chain that is not configured."""


class UnknownEntityError(IndexerError):
    """Raised when a store operation names an unknown entity kind or field."""


class CheckpointRegressionError(IndexerError):
    """Raised when a checkpoint would move backwards."""


class DecodeError(IndexerError):
    """
    Raised when a log matching a known route cannot be decoded.
    Carries the log provenance so the failure can be diagnosed from the log alone.
    """

    # pylint: disable-msg=too-many-arguments
    def __init__(
        self,
        message: str,
        chain: Optional[str] = None,
        kind: Optional[str] = None,
        block_number: Optional[int] = None,
        tx_hash: Optional[str] = None,
        log_index: Optional[int] = None,
    ):
        self.chain = chain
        self.kind = kind
        self.block_number = block_number
        self.tx_hash = tx_hash
        self.log_index = log_index
        super().__init__(
            f"{message} (chain={chain}, kind={kind}, block={block_number}, "
            f"tx={tx_hash}, log_index={log_index})"
        )


def check_for_missing_env_vars(env_vars: dict):
    """Checks whether any required environment values are undefined.

    :param env_vars: The dictionary of environment variables.
    """
    # Check for missing environment variables since these are unrecoverable.
    missing_keys = [k for k, v in env_vars.items() if v is None]
    if missing_keys:
        missing_keys_str = ", ".join(missing_keys)
        raise EnvironmentError(
            f"Missing required environment variables: {missing_keys_str}"
        )
