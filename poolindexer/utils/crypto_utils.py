"""
Common hex, hashing and unit conversion utility functions
"""

from typing import Union

from eth_utils import is_address, to_checksum_address
from web3 import Web3

# Number of decimals of the native asset and of the pool denominations.
# Raw on-chain amounts are integers in units of 10^-DEFAULT_DECIMALS.
DEFAULT_DECIMALS = 18


def bytes_to_hex_str(byte_arr: bytes) -> str:
    """
    Convert a byte array to a lowercase 0x-prefixed hex string.
    HexBytes.hex() changed its prefix behavior across releases,
    so we always format the plain bytes.

    :param byte_arr: The byte array to convert.
    :return: The resulting hex string.
    """
    return "0x" + bytes(byte_arr).hex()


def bytes_to_hex_str_auto(byte_arr: Union[bytes, str]) -> str:
    """
    Convert a byte array to a hex string
    with intelligent conversion of bytes and string representations.
    Some APIs may return byte array as bytes, HexBytes, or a string,
    depending on the nodes and paths they use.

    :param byte_arr: The byte array to convert.
    :return: The resulting lowercase hex string.
    """
    if isinstance(byte_arr, bytes):
        return bytes_to_hex_str(byte_arr)
    hex_str = str(byte_arr).lower()
    if hex_str.startswith("0x"):
        return hex_str
    return "0x" + hex_str


def keccak_text(text: str) -> str:
    """
    Calculates the keccak256 hash of a UTF-8 string as Solidity does
    for keccak256(bytes(text)).

    :param text: The string to hash.
    :return: The resulting 0x-prefixed hash.
    """
    return bytes_to_hex_str(Web3.keccak(text=text))


def event_topic(signature: str) -> str:
    """
    Get the topic0 identifying an event signature.

    :param signature: The canonical event signature, e.g. "Echo(address,bytes)".
    :return: The topic hash as a lowercase 0x-prefixed string.
    """
    return keccak_text(signature)


def topic_to_address(topic: str) -> str:
    """
    Extract the address stored in an indexed address topic.

    :param topic: The 32-byte topic hex string.
    :return: The checksum address.
    """
    return to_checksum_address("0x" + topic[-40:])


def address_to_topic(address: str) -> str:
    """
    Left-pad an address to a 32-byte topic.

    :param address: The address.
    :return: The topic hex string.
    """
    return "0x" + "0" * 24 + address.lower()[2:]


def normalize_address(address: str) -> str:
    """
    Validate an address and convert it to the lowercase form used as a lookup key.

    :param address: The address in any case.
    :return: The lowercase address.
    """
    if not is_address(address):
        raise ValueError(f"Invalid address: {address}")
    return address.lower()


def format_amount(amount: Union[int, str], decimals: int = DEFAULT_DECIMALS) -> str:
    """
    Convert a raw integer amount to a human-readable decimal string
    with trailing zeros trimmed:
    1000000000000000000 -> "1", 1500000000000000000 -> "1.5",
    100000000000000000 -> "0.1".
    Uses integer arithmetic so arbitrarily large uint256 values stay exact.

    :param amount: The raw on-chain amount.
    :param decimals: The number of decimals of the asset.
    :return: The decimal string.
    """
    amount = int(amount)
    sign = "-" if amount < 0 else ""
    whole, frac = divmod(abs(amount), 10**decimals)
    frac_str = str(frac).rjust(decimals, "0").rstrip("0") if decimals > 0 else ""
    if frac_str:
        return f"{sign}{whole}.{frac_str}"
    return f"{sign}{whole}"
