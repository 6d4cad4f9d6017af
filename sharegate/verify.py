# FILE: sharegate/verify.py
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from .claim import DataNode, ShareClaim, ValidationError
from .crypto import CryptoError, packed_data_hash, recover_signer
from .ledger import DecodedLogEvent, JsonRpcLogFetcher, LedgerError, LogFetcher
from .utils import describe_indices, is_hex_of_length, is_null_or_whitespace, secure_compare_hex

logger = logging.getLogger(__name__)

# Event the attestation contract emits once a trait is attested on-chain.
DEFAULT_ATTESTATION_EVENT = "TraitAttested"
# Event field carrying the committed layer-2 hash.
DEFAULT_HASH_FIELD = "dataHash"

_ADDRESS_BYTES = 20
_HASH_BYTES = 32

# Required string fields of the request body, in reporting order.
_REQUIRED_STRING_FIELDS = ("token", "subject")
_REQUIRED_PROOF_FIELDS = ("packedData", "signature")


class Stage(str, Enum):
    FORMAT = "format"
    OFF_CHAIN = "off_chain"
    NODE_PAYLOAD = "node_payload"
    ON_CHAIN = "on_chain"


PayloadVerifier = Callable[[DataNode], Sequence[ValidationError]]


# ---------------------------------------------------------------------------
# Stage 1: request shape
# ---------------------------------------------------------------------------


def _string_field_error(name: str) -> ValidationError:
    return ValidationError(
        key=name,
        message=(
            f"Request body requires a non-whitespace '{name}' property of type string."
        ),
    )


def validate_request_format(raw: Any) -> List[ValidationError]:
    """
    Presence and primitive-type checks on the untyped request body.

    Every field is checked independently; each failing field yields exactly
    one error keyed by its name. A body that is not a JSON object fails
    every field.
    """
    body: Mapping[str, Any] = raw if isinstance(raw, Mapping) else {}
    errors: List[ValidationError] = []

    for name in _REQUIRED_STRING_FIELDS:
        if is_null_or_whitespace(body.get(name)):
            errors.append(_string_field_error(name))

    data = body.get("data")
    if not isinstance(data, list) or not data:
        errors.append(
            ValidationError(
                key="data",
                message="Request body requires a non-empty 'data' property of type Array.",
            )
        )
    else:
        bad = [i for i, node in enumerate(data) if not isinstance(node, Mapping)]
        if bad:
            errors.append(
                ValidationError(
                    key="data",
                    message=(
                        "Every element of 'data' must be an object."
                        f"\nNon-object elements at index: {describe_indices(bad)}"
                    ),
                )
            )

    for name in _REQUIRED_PROOF_FIELDS:
        if is_null_or_whitespace(body.get(name)):
            errors.append(_string_field_error(name))

    return errors


# ---------------------------------------------------------------------------
# Stage 2: off-chain integrity
# ---------------------------------------------------------------------------


def validate_off_chain_integrity(claim: ShareClaim) -> List[ValidationError]:
    """
    Recompute the packed-data hash and recover the signer.

    Checks performed (both always run):
      1. keccak256 over the canonical {data, token} must equal `packedData`.
      2. The address recovered from (`packedData`, `signature`) must equal
         `subject`. A signature that cannot be recovered at all is reported
         under the "signature" key.

    Data that has no canonical JSON form (non-finite numbers, unsupported
    types) is reported under the "data" key in place of the hash check.
    """
    errors: List[ValidationError] = []

    try:
        recovered_packed_data = packed_data_hash(claim.signing_payload())
    except (ValueError, TypeError) as exc:
        errors.append(
            ValidationError(
                key="data",
                message=(
                    "The shared 'data' cannot be serialized to canonical JSON for hashing."
                    f"\nReason: {exc}"
                ),
            )
        )
    else:
        if not secure_compare_hex(claim.packed_data, recovered_packed_data):
            errors.append(
                ValidationError(
                    key="packedData",
                    message=(
                        "The recovered packed data hash computed by running 'keccak256' on an object"
                        " containing the shared 'data' and 'token' does not match the 'packedData'"
                        " that was shared."
                        f"\nShared packed data: '{claim.packed_data}'"
                        f"\nRecovered packed data: '{recovered_packed_data}'"
                    ),
                )
            )

    try:
        signer = recover_signer(claim.packed_data, claim.signature)
    except CryptoError as exc:
        errors.append(
            ValidationError(
                key="signature",
                message=(
                    "Unable to recover a signer from the shared 'packedData' and 'signature'."
                    f"\nReason: {exc}"
                ),
            )
        )
        return errors

    if not secure_compare_hex(claim.subject, signer):
        errors.append(
            ValidationError(
                key="subject",
                message=(
                    "The recovered subject address based on the 'packedData' and 'signature'"
                    " does not match the one that was shared."
                    f"\nShared subject address: '{claim.subject}'"
                    f"\nRecovered subject address: '{signer}'"
                ),
            )
        )

    return errors


# ---------------------------------------------------------------------------
# Stage 3: per-node payload
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class NodeReport:
    layer2_hash: str
    errors: Tuple[ValidationError, ...] = ()

    @property
    def ok(self) -> bool:
        return not self.errors


def check_node_payload(node: DataNode) -> List[ValidationError]:
    """
    Default node check: the fields the ledger cross-check relies on must be
    well-formed. Schema-specific payload rules are supplied by the caller
    through VerifyOptions.payload_verifier.
    """
    errors: List[ValidationError] = []
    if not is_hex_of_length(node.layer2_hash, _HASH_BYTES):
        errors.append(
            ValidationError(
                key="layer2Hash",
                message=f"Data node 'layer2Hash' must be a 32-byte hex hash, got '{node.layer2_hash}'.",
            )
        )
    if not is_hex_of_length(node.attester, _ADDRESS_BYTES):
        errors.append(
            ValidationError(
                key="attester",
                message=(
                    f"Data node '{node.layer2_hash}' requires an 'attester' address,"
                    f" got '{node.attester}'."
                ),
            )
        )
    if not is_hex_of_length(node.tx, _HASH_BYTES):
        errors.append(
            ValidationError(
                key="tx",
                message=(
                    f"Data node '{node.layer2_hash}' requires a 'tx' transaction hash,"
                    f" got '{node.tx}'."
                ),
            )
        )
    return errors


def validate_node_payloads(
    claim: ShareClaim,
    verifier: PayloadVerifier = check_node_payload,
) -> List[NodeReport]:
    return [
        NodeReport(layer2_hash=node.layer2_hash, errors=tuple(verifier(node)))
        for node in claim.data
    ]


# ---------------------------------------------------------------------------
# Stage 4: on-chain cross-validation
# ---------------------------------------------------------------------------


def _find_attestation(
    logs: Sequence[DecodedLogEvent],
    *,
    event_name: str,
    hash_field: str,
    layer2_hash: str,
) -> Optional[DecodedLogEvent]:
    for log in logs:
        if log.name == event_name and secure_compare_hex(log.value(hash_field), layer2_hash):
            return log
    return None


def validate_on_chain(
    subject: str,
    nodes_with_logs: Sequence[Tuple[DataNode, Sequence[DecodedLogEvent]]],
    *,
    event_name: str = DEFAULT_ATTESTATION_EVENT,
    hash_field: str = DEFAULT_HASH_FIELD,
) -> List[ValidationError]:
    """
    Cross-check every node against the decoded logs of its transaction.

    Per node:
      1. find the attestation event whose committed hash equals the node's
         layer2Hash; when absent, report it and skip the remaining checks
         for this node;
      2. the event's subject must equal the claim subject;
      3. the event's attester must equal the node's attester.

    All nodes are checked; errors are concatenated in node order.
    """
    errors: List[ValidationError] = []

    for node, logs in nodes_with_logs:
        match = _find_attestation(
            logs,
            event_name=event_name,
            hash_field=hash_field,
            layer2_hash=node.layer2_hash,
        )
        if match is None:
            errors.append(
                ValidationError(
                    key=event_name,
                    message=(
                        f"Unable to find '{event_name}' event logs with a"
                        f" '{hash_field}' of '{node.layer2_hash}'."
                    ),
                )
            )
            continue

        on_chain_subject = match.value("subject")
        if not secure_compare_hex(subject, on_chain_subject):
            errors.append(
                ValidationError(
                    key="subject",
                    message=(
                        "The on chain subject address does not match what was shared."
                        f"\nShared subject address: '{subject}'"
                        f"\nOn chain subject address: '{on_chain_subject}'"
                    ),
                )
            )

        on_chain_attester = match.value("attester")
        if not secure_compare_hex(node.attester, on_chain_attester):
            errors.append(
                ValidationError(
                    key="attester",
                    message=(
                        "The on chain attester address does not match what was shared."
                        f"\nShared attester address: '{node.attester}'"
                        f"\nOn chain attester address: '{on_chain_attester}'"
                    ),
                )
            )

    return errors


async def fetch_node_logs(
    claim: ShareClaim,
    fetcher: LogFetcher,
    endpoint: str,
) -> Dict[int, Sequence[DecodedLogEvent]]:
    """
    Fetch the decoded logs of every node's transaction concurrently.

    Results are keyed by node index, independent of completion order. All
    lookups settle before any result is inspected; if any failed, the first
    failure in node order is raised as LedgerError.
    """
    results = await asyncio.gather(
        *(fetcher.fetch_decoded_logs(endpoint, node.tx) for node in claim.data),
        return_exceptions=True,
    )

    logs_by_node: Dict[int, Sequence[DecodedLogEvent]] = {}
    for index, (node, result) in enumerate(zip(claim.data, results)):
        if isinstance(result, LedgerError):
            raise result
        if isinstance(result, BaseException):
            raise LedgerError(
                f"log lookup for transaction '{node.tx}' failed: {result!r}"
            ) from result
        logs_by_node[index] = result
    return logs_by_node


# ---------------------------------------------------------------------------
# Public API: verdict + orchestrator
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Verdict:
    accepted: bool
    token: Optional[str] = None
    errors: Tuple[ValidationError, ...] = ()
    stage: Optional[Stage] = None

    @classmethod
    def accept(cls, token: str) -> "Verdict":
        return cls(accepted=True, token=token)

    @classmethod
    def reject(cls, stage: Stage, errors: Sequence[ValidationError]) -> "Verdict":
        return cls(accepted=False, errors=tuple(errors), stage=stage)

    def errors_as_dicts(self) -> List[Dict[str, str]]:
        return [e.as_dict() for e in self.errors]


@dataclass(frozen=True)
class VerifyOptions:
    validate_on_chain: bool = False
    web3_provider: Optional[str] = None
    attestation_event: str = DEFAULT_ATTESTATION_EVENT
    hash_field: str = DEFAULT_HASH_FIELD
    payload_verifier: PayloadVerifier = field(default=check_node_payload, compare=False)

    def __post_init__(self) -> None:
        if self.validate_on_chain and is_null_or_whitespace(self.web3_provider):
            raise ValueError("on-chain validation requires a web3 provider endpoint")


async def verify(
    raw_claim: Any,
    options: Optional[VerifyOptions] = None,
    *,
    fetcher: Optional[LogFetcher] = None,
) -> Verdict:
    """
    Run the full verification pipeline over a raw claim.

    Stages run in order and the first stage that reports errors ends the run
    with a rejected verdict carrying that stage's complete error list:
      format -> off-chain integrity -> per-node payload -> on-chain.

    The on-chain stage only runs when `options.validate_on_chain` is set.
    Ledger failures raise LedgerError (a VerificationIncomplete) instead of
    producing a verdict.
    """
    opts = options or VerifyOptions()

    format_errors = validate_request_format(raw_claim)
    if format_errors:
        return Verdict.reject(Stage.FORMAT, format_errors)

    claim = ShareClaim.from_raw(raw_claim)

    integrity_errors = validate_off_chain_integrity(claim)
    if integrity_errors:
        return Verdict.reject(Stage.OFF_CHAIN, integrity_errors)

    reports = validate_node_payloads(claim, opts.payload_verifier)
    failed = [report for report in reports if not report.ok]
    if failed:
        logger.info(
            "verify.node_payload_rejected",
            extra={"failed_nodes": [report.layer2_hash for report in failed]},
        )
        return Verdict.reject(Stage.NODE_PAYLOAD, [err for report in failed for err in report.errors])

    if opts.validate_on_chain:
        ledger = fetcher or JsonRpcLogFetcher()
        logs_by_node = await fetch_node_logs(claim, ledger, str(opts.web3_provider))
        chain_errors = validate_on_chain(
            claim.subject,
            [(node, logs_by_node[i]) for i, node in enumerate(claim.data)],
            event_name=opts.attestation_event,
            hash_field=opts.hash_field,
        )
        if chain_errors:
            return Verdict.reject(Stage.ON_CHAIN, chain_errors)

    logger.debug("verify.accepted", extra={"nodes": len(claim.data)})
    return Verdict.accept(claim.token)


__all__ = [
    "Stage",
    "PayloadVerifier",
    "NodeReport",
    "Verdict",
    "VerifyOptions",
    "validate_request_format",
    "validate_off_chain_integrity",
    "check_node_payload",
    "validate_node_payloads",
    "validate_on_chain",
    "fetch_node_logs",
    "verify",
]
