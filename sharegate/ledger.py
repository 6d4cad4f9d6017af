# FILE: sharegate/ledger.py
from __future__ import annotations

"""
Ledger access: transaction receipt lookup + event log decoding.

Goals:
  - Fetch the receipt of one transaction over Ethereum JSON-RPC
  - Decode the logs this service understands into DecodedLogEvent values
  - Surface every infrastructure problem as LedgerError, never as a
    validation result

Notes:
  - Field names and values are preserved as emitted by the contract; values
    are rendered as strings (addresses / bytes as lowercase 0x hex, integers
    as decimal).
  - Logs whose topic-0 matches no registered event are skipped.
  - No retry policy lives here; callers that want retries wrap the fetcher.
"""

import itertools
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Protocol, Sequence, Tuple

import httpx
from eth_abi import decode as abi_decode
from eth_abi.exceptions import DecodingError
from eth_utils import decode_hex, keccak

from .claim import VerificationIncomplete

logger = logging.getLogger(__name__)

_JSONRPC_VERSION = "2.0"
_RECEIPT_METHOD = "eth_getTransactionReceipt"
_DEFAULT_TIMEOUT_S = 10.0


class LedgerError(VerificationIncomplete):
    """Ledger lookup or log decoding failed; the claim could not be checked."""


# ---------------------------------------------------------------------------
# Decoded events
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DecodedLogEvent:
    name: str
    values: Mapping[str, str] = field(default_factory=dict)
    address: Optional[str] = None

    def value(self, field_name: str) -> Optional[str]:
        return self.values.get(field_name)


def _render_value(abi_type: str, value: Any) -> str:
    if abi_type == "address":
        return str(value).lower()
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


@dataclass(frozen=True)
class EventInput:
    name: str
    type: str
    indexed: bool = False


@dataclass(frozen=True)
class EventAbi:
    """
    Minimal event ABI: enough to recognise a log by topic-0 and decode it.
    """

    name: str
    inputs: Tuple[EventInput, ...]

    @property
    def signature(self) -> str:
        return f"{self.name}({','.join(i.type for i in self.inputs)})"

    @property
    def topic(self) -> str:
        return "0x" + keccak(text=self.signature).hex()

    def decode(self, log: Mapping[str, Any]) -> DecodedLogEvent:
        topics = list(log.get("topics") or [])
        indexed = [i for i in self.inputs if i.indexed]
        plain = [i for i in self.inputs if not i.indexed]

        if len(topics) != len(indexed) + 1:
            raise LedgerError(
                f"log for {self.name} has {len(topics)} topics, "
                f"expected {len(indexed) + 1}"
            )

        values: Dict[str, str] = {}
        try:
            for inp, topic in zip(indexed, topics[1:]):
                (decoded,) = abi_decode([inp.type], decode_hex(topic))
                values[inp.name] = _render_value(inp.type, decoded)

            data = decode_hex(log.get("data") or "0x")
            decoded_plain = abi_decode([i.type for i in plain], data) if plain else ()
        except (DecodingError, ValueError, TypeError) as exc:
            raise LedgerError(f"failed to decode {self.name} log: {exc}") from exc

        for inp, decoded in zip(plain, decoded_plain):
            values[inp.name] = _render_value(inp.type, decoded)

        address = log.get("address")
        return DecodedLogEvent(
            name=self.name,
            values=values,
            address=address.lower() if isinstance(address, str) else None,
        )


# AttestationLogic: event TraitAttested(address subject, address attester,
#                                       address requester, bytes32 dataHash)
TRAIT_ATTESTED = EventAbi(
    name="TraitAttested",
    inputs=(
        EventInput("subject", "address"),
        EventInput("attester", "address"),
        EventInput("requester", "address"),
        EventInput("dataHash", "bytes32"),
    ),
)

DEFAULT_EVENTS: Tuple[EventAbi, ...] = (TRAIT_ATTESTED,)


def decode_logs(
    raw_logs: Iterable[Mapping[str, Any]],
    events: Sequence[EventAbi] = DEFAULT_EVENTS,
) -> List[DecodedLogEvent]:
    """
    Decode the logs of one receipt, keeping emission order.

    Logs with no topics or an unregistered topic-0 are skipped.
    """
    by_topic = {e.topic: e for e in events}
    out: List[DecodedLogEvent] = []
    for log in raw_logs:
        if not isinstance(log, Mapping):
            continue
        topics = log.get("topics") or []
        if not topics or not isinstance(topics[0], str):
            continue
        abi = by_topic.get(topics[0].lower())
        if abi is None:
            continue
        out.append(abi.decode(log))
    return out


# ---------------------------------------------------------------------------
# Fetchers
# ---------------------------------------------------------------------------


class LogFetcher(Protocol):
    async def fetch_decoded_logs(self, endpoint: str, tx_id: str) -> Sequence[DecodedLogEvent]:
        ...


class JsonRpcLogFetcher:
    """
    Fetch and decode transaction logs over Ethereum JSON-RPC.

    A shared `httpx.AsyncClient` may be injected (and is then owned by the
    caller); otherwise each lookup opens a short-lived client.
    """

    def __init__(
        self,
        *,
        events: Sequence[EventAbi] = DEFAULT_EVENTS,
        timeout_s: float = _DEFAULT_TIMEOUT_S,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._events = tuple(events)
        self._timeout_s = float(timeout_s)
        self._client = client
        self._ids = itertools.count(1)

    async def _rpc(
        self,
        client: httpx.AsyncClient,
        endpoint: str,
        method: str,
        params: List[Any],
    ) -> Any:
        payload = {
            "jsonrpc": _JSONRPC_VERSION,
            "id": next(self._ids),
            "method": method,
            "params": params,
        }
        try:
            response = await client.post(endpoint, json=payload, timeout=self._timeout_s)
            response.raise_for_status()
            body = response.json()
        except httpx.HTTPError as exc:
            raise LedgerError(f"{method} request to ledger failed: {exc}") from exc
        except ValueError as exc:
            raise LedgerError(f"{method} returned a non-JSON response") from exc

        if not isinstance(body, Mapping):
            raise LedgerError(f"{method} returned an unexpected payload")
        if body.get("error") is not None:
            err = body["error"]
            message = err.get("message") if isinstance(err, Mapping) else err
            raise LedgerError(f"{method} failed: {message}")
        return body.get("result")

    async def fetch_receipt(self, endpoint: str, tx_id: str) -> Mapping[str, Any]:
        if self._client is not None:
            receipt = await self._rpc(self._client, endpoint, _RECEIPT_METHOD, [tx_id])
        else:
            async with httpx.AsyncClient() as client:
                receipt = await self._rpc(client, endpoint, _RECEIPT_METHOD, [tx_id])

        if receipt is None:
            raise LedgerError(f"transaction '{tx_id}' not found")
        if not isinstance(receipt, Mapping):
            raise LedgerError(f"receipt for '{tx_id}' is malformed")
        return receipt

    async def fetch_decoded_logs(self, endpoint: str, tx_id: str) -> List[DecodedLogEvent]:
        receipt = await self.fetch_receipt(endpoint, tx_id)
        raw_logs = receipt.get("logs") or []
        decoded = decode_logs(raw_logs, self._events)
        logger.debug(
            "ledger.logs",
            extra={"tx": tx_id, "raw_logs": len(raw_logs), "decoded_logs": len(decoded)},
        )
        return decoded


__all__ = [
    "LedgerError",
    "DecodedLogEvent",
    "EventInput",
    "EventAbi",
    "TRAIT_ATTESTED",
    "DEFAULT_EVENTS",
    "decode_logs",
    "LogFetcher",
    "JsonRpcLogFetcher",
]
