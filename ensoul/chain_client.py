# ensoul/chain_client.py
import logging
from typing import Any, Iterable, Mapping, Optional

from web3 import Web3
from web3.exceptions import TransactionNotFound

from ensoul.errors import ChainUnavailable

logger = logging.getLogger("ensoul_backend")

# Registered(uint256 indexed agentId, string agentURI, address indexed owner)
REGISTERED_TOPIC = "0xca52e62c367d81bb2e328eb795f7c7ba24afb478408a26c0e201d155c449bc4a"


def _hex(value: Any) -> str:
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    s = str(value)
    return s if s.startswith("0x") else "0x" + s


def _field(log: Any, name: str) -> Any:
    if isinstance(log, Mapping):
        return log.get(name)
    return getattr(log, name, None)


def extract_registered_agent_id(logs: Iterable[Any], registry_addr: str | None = None) -> Optional[int]:
    """
    Find the Registered event among receipt logs and return topic1 as an int.
    When registry_addr is given, logs emitted by other contracts are ignored.
    """
    registry = registry_addr.lower() if registry_addr else None
    for log in logs or []:
        topics = _field(log, "topics") or []
        if len(topics) < 2:
            continue
        if _hex(topics[0]).lower() != REGISTERED_TOPIC:
            continue
        if registry is not None:
            address = _field(log, "address")
            if address is None or str(address).lower() != registry:
                continue
        return int(_hex(topics[1]), 16)
    return None


class ChainClient:
    """Read-only access to mint receipts on the identity registry chain."""

    def __init__(self, rpc_url: str, *, registry_addr: str | None = None, timeout: float = 30.0):
        self.registry_addr = registry_addr
        self.w3 = Web3(Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": timeout}))

    def registered_agent_id(self, tx_hash: str) -> Optional[int]:
        """
        None when the transaction is unknown (not mined yet) or carries no
        Registered event. Transport failures raise ChainUnavailable.
        """
        try:
            receipt = self.w3.eth.get_transaction_receipt(tx_hash)
        except TransactionNotFound:
            return None
        except Exception as e:
            raise ChainUnavailable(f"receipt lookup failed for {tx_hash}: {e}") from e

        if receipt is None:
            return None
        return extract_registered_agent_id(_field(receipt, "logs"), self.registry_addr)
