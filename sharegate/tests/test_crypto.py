# sharegate/tests/test_crypto.py
import pytest
from eth_keys import keys

from sharegate.crypto import CryptoError, content_hash, packed_data_hash, recover_signer, sign_message_hash

KEY = keys.PrivateKey(b"\x07" * 32)
ADDRESS = KEY.public_key.to_address().lower()
MSG = packed_data_hash({"data": [{"a": 1}], "token": "t"})


def test_content_hash_is_keccak():
    # keccak256("") is a well-known constant
    assert content_hash(b"") == "c5d2460186f7233c927e7db2dcc703c0e500b653ca82273b7bfad8045d85a470"


def test_recover_roundtrip():
    sig = sign_message_hash(MSG, KEY)
    assert len(sig) == 2 + 130
    assert recover_signer(MSG, sig) == ADDRESS


def test_recover_accepts_raw_recovery_id():
    sig = sign_message_hash(MSG, KEY)
    v = int(sig[-2:], 16) - 27
    assert recover_signer(MSG, sig[:-2] + f"{v:02x}") == ADDRESS


def test_recover_other_hash_gives_other_address():
    sig = sign_message_hash(MSG, KEY)
    other = packed_data_hash({"data": [{"a": 2}], "token": "t"})
    assert recover_signer(other, sig) != ADDRESS


@pytest.mark.parametrize(
    "signature",
    [
        "0x1234",
        "not-hex",
        "0x" + "11" * 64 + "05",
    ],
)
def test_malformed_signature(signature):
    with pytest.raises(CryptoError):
        recover_signer(MSG, signature)


def test_malformed_message_hash():
    sig = sign_message_hash(MSG, KEY)
    with pytest.raises(CryptoError):
        recover_signer("0x1234", sig)
