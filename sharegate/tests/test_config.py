# sharegate/tests/test_config.py
import pytest

from sharegate.config import ConfigError, Settings, load_settings


def test_defaults():
    s = load_settings()
    assert s.port == 8000
    assert s.validate_on_chain is False
    assert s.attestation_event == "TraitAttested"
    assert s.attestation_hash_field == "dataHash"
    assert s.config_origin == "defaults"


def test_env_overrides(monkeypatch):
    monkeypatch.setenv("PORT", "9001")
    monkeypatch.setenv("VALIDATE_ON_CHAIN", "true")
    monkeypatch.setenv("WEB3_PROVIDER", "http://node.test:8545")
    monkeypatch.setenv("SHAREGATE_HASH_FIELD", "layer2Hash")
    s = load_settings()
    assert s.port == 9001
    assert s.validate_on_chain is True
    assert s.web3_provider == "http://node.test:8545"
    assert s.config_origin == "env"

    opts = s.verify_options()
    assert opts.validate_on_chain is True
    assert opts.web3_provider == "http://node.test:8545"
    assert opts.hash_field == "layer2Hash"


def test_on_chain_without_provider_is_rejected(monkeypatch):
    monkeypatch.setenv("VALIDATE_ON_CHAIN", "1")
    with pytest.raises(ConfigError):
        load_settings()


def test_yaml_overlay_then_env(tmp_path, monkeypatch):
    cfg = tmp_path / "sharegate.yaml"
    cfg.write_text("port: 7000\nlog_level: DEBUG\nledger_timeout_s: 3.5\n", encoding="utf-8")
    monkeypatch.setenv("SHAREGATE_CONFIG_PATH", str(cfg))

    s = load_settings()
    assert s.port == 7000
    assert s.ledger_timeout_s == 3.5
    assert s.config_origin == "yaml"

    monkeypatch.setenv("PORT", "7100")
    s = load_settings()
    assert s.port == 7100
    assert s.config_origin == "yaml+env"


def test_yaml_errors(tmp_path, monkeypatch):
    monkeypatch.setenv("SHAREGATE_CONFIG_PATH", str(tmp_path / "missing.yaml"))
    with pytest.raises(ConfigError):
        load_settings()

    bad = tmp_path / "list.yaml"
    bad.write_text("- 1\n- 2\n", encoding="utf-8")
    monkeypatch.setenv("SHAREGATE_CONFIG_PATH", str(bad))
    with pytest.raises(ConfigError):
        load_settings()

    unknown = tmp_path / "unknown.yaml"
    unknown.write_text("no_such_setting: 1\n", encoding="utf-8")
    monkeypatch.setenv("SHAREGATE_CONFIG_PATH", str(unknown))
    with pytest.raises(ConfigError):
        load_settings()


def test_config_hash_hides_provider():
    a = Settings(validate_on_chain=True, web3_provider="https://node.test/key-one")
    b = Settings(validate_on_chain=True, web3_provider="https://node.test/key-two")
    assert a.config_hash() == b.config_hash()
    assert a.config_hash() != Settings().config_hash()
    assert len(a.config_hash()) == 16
