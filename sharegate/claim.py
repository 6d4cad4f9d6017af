# FILE: sharegate/claim.py
from __future__ import annotations

"""
Typed model of an inbound share claim.

Raw request bodies are decoded into these types exactly once, right after the
request shape check passes. Every later stage (hashing, signature recovery,
per-node checks, ledger cross-validation) works on the typed model and never
on the untyped body.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Tuple

from .utils import canonicalize


@dataclass(frozen=True)
class ValidationError:
    """
    One failed check.

    `key` names the claim field or logical concern (e.g. "subject",
    "packedData", "TraitAttested"); `message` carries the compared values.
    """

    key: str
    message: str

    def as_dict(self) -> Dict[str, str]:
        return {"key": self.key, "message": self.message}


class VerificationIncomplete(RuntimeError):
    """
    Verification could not be carried out (ledger unreachable, unknown
    transaction, undecodable logs). Distinct from a rejected claim.
    """


def _str_field(mapping: Mapping[str, Any], name: str) -> str:
    value = mapping.get(name)
    return value if isinstance(value, str) else ""


@dataclass(frozen=True)
class DataNode:
    """
    One attested data unit inside a claim.

    `payload` is the canonicalized node exactly as it takes part in the
    packed-data hash; the three typed fields are the ones this service reads.
    """

    layer2_hash: str
    attester: str
    tx: str
    payload: Dict[str, Any] = field(repr=False, compare=False)

    @classmethod
    def from_raw(cls, raw: Mapping[str, Any]) -> "DataNode":
        payload = canonicalize(raw)
        return cls(
            layer2_hash=_str_field(payload, "layer2Hash"),
            attester=_str_field(payload, "attester"),
            tx=_str_field(payload, "tx"),
            payload=payload,
        )


@dataclass(frozen=True)
class ShareClaim:
    token: str
    subject: str
    data: Tuple[DataNode, ...]
    packed_data: str
    signature: str

    @classmethod
    def from_raw(cls, raw: Mapping[str, Any]) -> "ShareClaim":
        """
        Decode a body that already passed `validate_request_format`.
        """
        nodes = tuple(DataNode.from_raw(node) for node in raw["data"])
        return cls(
            token=raw["token"],
            subject=raw["subject"],
            data=nodes,
            packed_data=raw["packedData"],
            signature=raw["signature"],
        )

    def signing_payload(self) -> Dict[str, Any]:
        """The canonical {data, token} composite the signer hashed."""
        return canonicalize(
            {
                "data": [node.payload for node in self.data],
                "token": self.token,
            }
        )


__all__ = [
    "ValidationError",
    "VerificationIncomplete",
    "DataNode",
    "ShareClaim",
]
