"""
Resolution of the active pool instances of a chain and their currency/denomination,
needed to interpret raw deposit and withdrawal events.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Sequence

from eth_abi import decode, encode
from eth_abi.exceptions import DecodingError
from eth_utils import collapse_if_tuple, function_abi_to_4byte_selector

from poolindexer.core.rpc_client import MulticallCall, RPCClient, load_contract_abi
from poolindexer.utils.log import get_default_logger


_LOG = get_default_logger(__name__)
_LOG.setLevel(logging.INFO)


# InstanceRegistry.InstanceState: DISABLED = 0, ENABLED = 1.
INSTANCE_STATE_ENABLED = 1

_REGISTRY_FUNCTIONS = {
    e["name"]: e
    for e in load_contract_abi("InstanceRegistry.json")
    if e.get("type") == "function"
}


def encode_function_call(function_name: str, args: Sequence = ()) -> bytes:
    """
    Build the calldata of an instance registry function from its ABI.

    :param function_name: The function name.
    :param args: The function arguments.
    :return: The 4-byte selector followed by the encoded arguments.
    """
    fn_abi = _REGISTRY_FUNCTIONS[function_name]
    input_types = [collapse_if_tuple(i) for i in fn_abi["inputs"]]
    return function_abi_to_4byte_selector(fn_abi) + encode(input_types, list(args))


def decode_function_result(function_name: str, return_data: bytes) -> Dict[str, Any]:
    """
    Decode the return data of an instance registry function from its ABI.

    :param function_name: The function name.
    :param return_data: The raw return data.
    :return: The outputs keyed by name, or by position for unnamed outputs.
    """
    outputs = _REGISTRY_FUNCTIONS[function_name]["outputs"]
    values = decode([collapse_if_tuple(o) for o in outputs], return_data)
    return {o["name"] or str(i): v for i, (o, v) in enumerate(zip(outputs, values))}


@dataclass(frozen=True)
class InstanceMetadata:
    """
    Transient metadata of an active pool instance.
    """

    address: str
    # Token address in lowercase, or the native currency sentinel.
    currency: str
    # Raw on-chain denomination.
    denomination: int


class MetadataResolver:
    """
    Resolves the active instances of the instance registry
    with a single batched multicall.
    """

    def __init__(
        self,
        rpc: RPCClient,
        instance_registry_address: str,
        multicall_address: str,
        native_currency: str,
        chain: str = "",
    ):
        """
        Initialize the resolver.

        :param rpc: The chain RPC client.
        :param instance_registry_address: The instance registry contract address.
        :param multicall_address: The Multicall3 contract address.
        :param native_currency: The currency reported for native asset instances.
        :param chain: The chain name used in log messages.
        """
        self.rpc = rpc
        self.instance_registry_address = instance_registry_address.lower()
        self.multicall_address = multicall_address.lower()
        self.native_currency = native_currency
        self.chain = chain
        # The last resolved mapping.
        self.instances: Dict[str, InstanceMetadata] = {}

    async def get_instance_addresses(self) -> List[str]:
        """
        Enumerate all instance addresses of the registry.

        :return: The lowercase instance addresses.
        """
        ret = await self.rpc.call(
            self.instance_registry_address,
            encode_function_call("getAllInstanceAddresses"),
        )
        addresses = decode_function_result("getAllInstanceAddresses", ret)["0"]
        return [a.lower() for a in addresses]

    def _decode_instance(self, address: str, return_data: bytes):
        details = decode_function_result("instances", return_data)
        if details["state"] != INSTANCE_STATE_ENABLED:
            return None
        return InstanceMetadata(
            address=address,
            currency=(
                details["token"].lower() if details["isERC20"] else self.native_currency
            ),
            denomination=int(details["denomination"]),
        )

    async def resolve(self) -> Dict[str, InstanceMetadata]:
        """
        Build the mapping from instance address to metadata for active instances.
        A failed sub-call excludes its instance for this cycle.
        A failure of the calls themselves propagates.

        :return: The mapping keyed by lowercase instance address.
        """
        addresses = await self.get_instance_addresses()
        calls = [
            MulticallCall(
                target=self.instance_registry_address,
                call_data=encode_function_call("instances", [a]),
            )
            for a in addresses
        ]
        results = await self.rpc.multicall(self.multicall_address, calls) if calls else []
        if len(results) != len(calls):
            raise ValueError(
                f"{self.chain} - Multicall returned {len(results)} results for {len(calls)} calls"
            )

        instances = {}
        for address, result in zip(addresses, results):
            if not result.success:
                _LOG.error(
                    "%s - Failed to fetch details for instance %s", self.chain, address
                )
                continue
            try:
                metadata = self._decode_instance(address, result.return_data)
            except DecodingError as e:
                _LOG.error(
                    "%s - Failed to decode details for instance %s: %s",
                    self.chain,
                    address,
                    e,
                )
                continue
            if metadata is not None:
                instances[address] = metadata

        _LOG.debug(
            "%s - Resolved %s active instances of %s",
            self.chain,
            len(instances),
            len(addresses),
        )
        self.instances = instances
        return instances
