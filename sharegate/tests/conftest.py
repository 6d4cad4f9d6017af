# sharegate/tests/conftest.py
import asyncio

import pytest
from eth_keys import keys

from sharegate.crypto import content_hash, packed_data_hash, sign_message_hash
from sharegate.ledger import DecodedLogEvent

SUBJECT_KEY = keys.PrivateKey(b"\x01" * 32)
OTHER_KEY = keys.PrivateKey(b"\x02" * 32)
ATTESTER_KEY = keys.PrivateKey(b"\x03" * 32)
REQUESTER = "0x" + "ab" * 20


def address_of(key):
    return key.public_key.to_address().lower()


def _node(i, attester=None):
    return {
        "type": "email",
        "layer2Hash": "0x" + content_hash(f"layer2-{i}".encode()),
        "attester": attester or address_of(ATTESTER_KEY),
        "tx": "0x" + content_hash(f"tx-{i}".encode()),
        "target": {"data": f"user{i}@example.com", "nonce": f"n{i}", "version": "2.0.0"},
    }


def _make_claim(n_nodes=1, *, token="share-token-1", key=SUBJECT_KEY, subject=None, nodes=None):
    data = nodes if nodes is not None else [_node(i) for i in range(n_nodes)]
    packed = packed_data_hash({"data": data, "token": token})
    return {
        "token": token,
        "subject": subject or address_of(key),
        "data": data,
        "packedData": packed,
        "signature": sign_message_hash(packed, key),
    }


def trait_attested(subject, attester, data_hash):
    return DecodedLogEvent(
        name="TraitAttested",
        values={
            "subject": subject,
            "attester": attester,
            "requester": REQUESTER,
            "dataHash": data_hash,
        },
    )


def _attested_logs(claim):
    """tx -> decoded logs that attest every node of `claim`."""
    return {
        node["tx"]: [trait_attested(claim["subject"], node["attester"], node["layer2Hash"])]
        for node in claim["data"]
    }


class FakeFetcher:
    """In-memory LogFetcher with per-transaction delays and failures."""

    def __init__(self, logs_by_tx=None, *, delays=None, failures=None):
        self.logs_by_tx = dict(logs_by_tx or {})
        self.delays = dict(delays or {})
        self.failures = dict(failures or {})
        self.calls = []
        self.completed = []

    async def fetch_decoded_logs(self, endpoint, tx_id):
        self.calls.append((endpoint, tx_id))
        await asyncio.sleep(self.delays.get(tx_id, 0))
        if tx_id in self.failures:
            raise self.failures[tx_id]
        self.completed.append(tx_id)
        return list(self.logs_by_tx.get(tx_id, []))


@pytest.fixture
def make_claim():
    return _make_claim


@pytest.fixture
def make_node():
    return _node


@pytest.fixture
def attested_logs():
    return _attested_logs


@pytest.fixture
def fake_fetcher():
    return FakeFetcher


@pytest.fixture
def keypair():
    return {
        "subject": SUBJECT_KEY,
        "other": OTHER_KEY,
        "attester": ATTESTER_KEY,
        "address_of": address_of,
        "trait_attested": trait_attested,
    }


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for name in (
        "PORT",
        "VALIDATE_ON_CHAIN",
        "WEB3_PROVIDER",
        "SHAREGATE_CONFIG_PATH",
        "SHAREGATE_HOST",
        "SHAREGATE_VERSION",
        "SHAREGATE_LOG_LEVEL",
        "SHAREGATE_ENABLE_DOCS",
        "SHAREGATE_ATTESTATION_EVENT",
        "SHAREGATE_HASH_FIELD",
        "SHAREGATE_LEDGER_TIMEOUT_S",
        "SHAREGATE_MAX_BODY_BYTES",
    ):
        monkeypatch.delenv(name, raising=False)
