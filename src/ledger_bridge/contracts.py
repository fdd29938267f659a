"""
Contract interfaces for the marketplace contracts.

Calls are encoded and receipt logs decoded locally from the ABI, so the only
node interaction is the JSON-RPC traffic in the gateway. Decoded logs come
back as one of a closed set of event types; a search that finds nothing
returns ``EventNotFound`` instead of raising.
"""

import json
import logging
from dataclasses import dataclass
from importlib import resources
from typing import Dict, Any, List, Optional, Union, Mapping, Sequence, Type, TypeVar

from eth_abi import encode, decode
from eth_utils import function_abi_to_4byte_selector, event_abi_to_log_topic

from .utils import to_bytes

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ScriptNFTMinted:
    token_id: int
    owner: str
    script_hash: str
    submission_id: int


@dataclass(frozen=True)
class NFTTransferred:
    from_address: str
    to_address: str
    token_id: int


@dataclass(frozen=True)
class ProjectCreated:
    project_id: int
    producer: str
    project_hash: str


@dataclass(frozen=True)
class ProjectFunded:
    project_id: int
    producer: str
    amount: int


@dataclass(frozen=True)
class PaymentReleased:
    submission_id: int
    writer: str
    amount: int


@dataclass(frozen=True)
class ProducerRefunded:
    project_id: int
    producer: str
    amount: int


DecodedEvent = Union[
    ScriptNFTMinted, NFTTransferred, ProjectCreated,
    ProjectFunded, PaymentReleased, ProducerRefunded,
]


@dataclass(frozen=True)
class EventNotFound:
    """No log in the receipt decoded to the wanted event"""
    event_name: str
    contract: str
    logs_seen: int

    @property
    def message(self) -> str:
        return f"{self.event_name} event not found in transaction logs ({self.logs_seen} logs from {self.contract})"


E = TypeVar("E")

_EVENT_BUILDERS = {
    "ScriptNFTMinted": lambda a: ScriptNFTMinted(
        token_id=a["tokenId"], owner=a["owner"],
        script_hash=a["scriptHash"], submission_id=a["submissionId"]),
    "Transfer": lambda a: NFTTransferred(
        from_address=a["from"], to_address=a["to"], token_id=a["tokenId"]),
    "ProjectCreated": lambda a: ProjectCreated(
        project_id=a["projectId"], producer=a["producer"], project_hash=a["projectHash"]),
    "ProjectFunded": lambda a: ProjectFunded(
        project_id=a["projectId"], producer=a["producer"], amount=a["amount"]),
    "PaymentReleased": lambda a: PaymentReleased(
        submission_id=a["submissionId"], writer=a["writer"], amount=a["amount"]),
    "ProducerRefunded": lambda a: ProducerRefunded(
        project_id=a["projectId"], producer=a["producer"], amount=a["amount"]),
}

_EVENT_NAMES = {
    ScriptNFTMinted: "ScriptNFTMinted",
    NFTTransferred: "Transfer",
    ProjectCreated: "ProjectCreated",
    ProjectFunded: "ProjectFunded",
    PaymentReleased: "PaymentReleased",
    ProducerRefunded: "ProducerRefunded",
}


def load_abi(contract_name: str) -> List[Dict[str, Any]]:
    """Load a bundled ABI by contract name"""
    source = resources.files("ledger_bridge").joinpath("abi", f"{contract_name}.json")
    data = json.loads(source.read_text(encoding="utf-8"))
    if "abi" in data:
        data = data["abi"]
    return data


class ContractInterface:
    """Encoder/decoder for one deployed contract"""

    def __init__(self, name: str, address: str, abi: List[Dict[str, Any]]):
        self.name = name
        self.address = address
        self.abi = abi
        self._functions = {
            item["name"]: item for item in abi if item.get("type") == "function"
        }
        self._events_by_topic = {
            event_abi_to_log_topic(item): item
            for item in abi if item.get("type") == "event"
        }

    @classmethod
    def bundled(cls, name: str, address: str) -> "ContractInterface":
        return cls(name, address, load_abi(name))

    def has_function(self, fn_name: str) -> bool:
        return fn_name in self._functions

    def encode_call(self, fn_name: str, args: Sequence[Any]) -> bytes:
        """Calldata for a function call"""
        fn_abi = self._functions.get(fn_name)
        if fn_abi is None:
            raise ValueError(f"Function {fn_name} not found in {self.name} ABI")
        types = [inp["type"] for inp in fn_abi["inputs"]]
        if len(types) != len(args):
            raise ValueError(f"{self.name}.{fn_name} expects {len(types)} arguments, got {len(args)}")
        return function_abi_to_4byte_selector(fn_abi) + encode(types, list(args))

    def decode_log(self, log: Mapping[str, Any]) -> Optional[DecodedEvent]:
        """Decode a receipt log emitted by this contract, None if it is not one of ours"""
        topics = [to_bytes(t) for t in log.get("topics", [])]
        if not topics:
            return None

        emitter = log.get("address")
        if emitter and self.address and emitter.lower() != self.address.lower():
            return None

        event_abi = self._events_by_topic.get(topics[0])
        if event_abi is None:
            return None

        builder = _EVENT_BUILDERS.get(event_abi["name"])
        if builder is None:
            return None

        indexed = [i for i in event_abi["inputs"] if i.get("indexed")]
        plain = [i for i in event_abi["inputs"] if not i.get("indexed")]
        if len(topics) - 1 != len(indexed):
            logger.debug(f"Skipping {event_abi['name']} log with {len(topics)} topics")
            return None

        args: Dict[str, Any] = {}
        for inp, topic in zip(indexed, topics[1:]):
            args[inp["name"]] = decode([inp["type"]], topic)[0]

        data = to_bytes(log.get("data") or b"")
        values = decode([i["type"] for i in plain], data) if plain else ()
        for inp, value in zip(plain, values):
            args[inp["name"]] = value

        return builder(args)

    def decode_receipt(self, receipt: Mapping[str, Any]) -> List[DecodedEvent]:
        events = []
        for log in receipt.get("logs", []):
            decoded = self.decode_log(log)
            if decoded is not None:
                events.append(decoded)
        return events

    def find_event(self, receipt: Mapping[str, Any],
                   event_type: Type[E]) -> Union[E, EventNotFound]:
        """First event of the given type in a receipt"""
        logs = receipt.get("logs", [])
        for log in logs:
            decoded = self.decode_log(log)
            if isinstance(decoded, event_type):
                return decoded
        return EventNotFound(
            event_name=_EVENT_NAMES.get(event_type, event_type.__name__),
            contract=self.name,
            logs_seen=len(logs),
        )
