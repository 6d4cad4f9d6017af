# FILE: sharegate/crypto.py
from __future__ import annotations

from typing import Any, Tuple, Union

from eth_keys import keys
from eth_keys.exceptions import BadSignature
from eth_keys.exceptions import ValidationError as EthKeysValidationError
from eth_utils import decode_hex, keccak

from .utils import canonical_json_bytes


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

MESSAGE_HASH_BYTES = 32
SIGNATURE_BYTES = 65

# RPC-style signatures carry v as 27/28; the recovery math wants 0/1.
_RPC_V_OFFSET = 27


class CryptoError(Exception):
    """Raised when hash or signature material cannot be parsed or recovered."""


def _decode_hex_field(value: Any, *, label: str, n_bytes: int) -> bytes:
    if not isinstance(value, str):
        raise CryptoError(f"{label} must be a hex string")
    try:
        raw = decode_hex(value)
    except (ValueError, TypeError) as exc:
        raise CryptoError(f"{label} is not valid hex: {exc}") from exc
    if len(raw) != n_bytes:
        raise CryptoError(f"{label} must be {n_bytes} bytes, got {len(raw)}")
    return raw


def _split_signature(sig: bytes) -> Tuple[int, int, int]:
    r = int.from_bytes(sig[0:32], byteorder="big")
    s = int.from_bytes(sig[32:64], byteorder="big")
    v = sig[64]
    if v >= _RPC_V_OFFSET:
        v -= _RPC_V_OFFSET
    if v not in (0, 1):
        raise CryptoError(f"signature recovery id out of range: {sig[64]}")
    return v, r, s


# ---------------------------------------------------------------------------
# Hashing
# ---------------------------------------------------------------------------


def content_hash(data: Union[bytes, bytearray]) -> str:
    """keccak-256 of `data` as lowercase hex (no prefix)."""
    return keccak(bytes(data)).hex()


def packed_data_hash(obj: Any) -> str:
    """
    The `packedData` value a signer publishes for `obj`:
    "0x" + keccak256(canonical JSON of obj).
    """
    return "0x" + content_hash(canonical_json_bytes(obj))


# ---------------------------------------------------------------------------
# Signatures
# ---------------------------------------------------------------------------


def recover_signer(message_hash: str, signature: str) -> str:
    """
    Recover the address that produced `signature` over the 32-byte
    `message_hash` (raw ECDSA recovery, no message prefix).

    Returns the lowercase "0x" address. Raises CryptoError for malformed
    hashes or signatures and for signatures that do not recover.
    """
    msg = _decode_hex_field(message_hash, label="message hash", n_bytes=MESSAGE_HASH_BYTES)
    sig = _decode_hex_field(signature, label="signature", n_bytes=SIGNATURE_BYTES)
    v, r, s = _split_signature(sig)

    try:
        signature_obj = keys.Signature(vrs=(v, r, s))
        public_key = signature_obj.recover_public_key_from_msg_hash(msg)
    except (BadSignature, EthKeysValidationError) as exc:
        raise CryptoError(f"signature does not recover a public key: {exc}") from exc

    return public_key.to_address().lower()


def sign_message_hash(message_hash: str, private_key: Union[bytes, keys.PrivateKey]) -> str:
    """
    Sender-side counterpart of `recover_signer`: sign a 32-byte hash and
    return the RPC-style hex signature (r || s || v with v in {27, 28}).
    """
    msg = _decode_hex_field(message_hash, label="message hash", n_bytes=MESSAGE_HASH_BYTES)
    key = private_key if isinstance(private_key, keys.PrivateKey) else keys.PrivateKey(private_key)
    sig = key.sign_msg_hash(msg)
    rs = sig.r.to_bytes(32, byteorder="big") + sig.s.to_bytes(32, byteorder="big")
    return "0x" + (rs + bytes([sig.v + _RPC_V_OFFSET])).hex()


__all__ = [
    "CryptoError",
    "content_hash",
    "packed_data_hash",
    "recover_signer",
    "sign_message_hash",
]
