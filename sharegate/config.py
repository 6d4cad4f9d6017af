# sharegate/config.py
from __future__ import annotations

import logging
import os
from typing import Any, Dict, Optional

import yaml
from pydantic import BaseModel, ConfigDict, ValidationError as PydanticValidationError, model_validator

from .crypto import content_hash
from .utils import canonical_json_bytes
from .verify import DEFAULT_ATTESTATION_EVENT, DEFAULT_HASH_FIELD, VerifyOptions


_log = logging.getLogger(__name__)


class ConfigError(RuntimeError):
    """Process configuration is missing or inconsistent."""


# ---------------------------------------------------------------------------
# Env helpers
# ---------------------------------------------------------------------------


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    v = raw.strip().lower()
    return v in ("1", "true", "yes", "on")


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        _log.warning("ignoring non-numeric %s=%r", name, raw)
        return default


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        _log.warning("ignoring non-integer %s=%r", name, raw)
        return default


def _env_str(name: str, default: str) -> str:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip()


def _load_yaml_mapping(path: str) -> Dict[str, Any]:
    """
    Load a flat top-level mapping from YAML.

    Constraints:
      - Missing path -> empty mapping.
      - Only a dict at top-level is accepted.
      - Non-scalar values are rejected by Settings validation later.
    """
    if not path:
        return {}
    if not os.path.exists(path):
        raise ConfigError(f"config file not found: {path}")
    try:
        with open(path, "r", encoding="utf-8") as f:
            doc = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as exc:
        raise ConfigError(f"failed to load YAML config from {path}: {exc}") from exc
    if doc is None:
        return {}
    if not isinstance(doc, dict):
        raise ConfigError(f"config file {path} must contain a mapping at top level")
    return {str(k): v for k, v in doc.items()}


# ---------------------------------------------------------------------------
# Settings model
# ---------------------------------------------------------------------------


class Settings(BaseModel):
    # --- Core / identity --------------------------------------------------

    app_name: str = "sharegate"
    version: str = "dev"
    # Indicates how this config reached the process (defaults/yaml/env).
    config_origin: str = "defaults"

    # --- HTTP -------------------------------------------------------------

    host: str = "127.0.0.1"
    port: int = 8000
    max_body_bytes: int = 1 * 1024 * 1024
    enable_docs: bool = False

    # --- Logging ----------------------------------------------------------

    log_level: str = "INFO"

    # --- On-chain validation ----------------------------------------------

    validate_on_chain: bool = False
    web3_provider: str = ""
    attestation_event: str = DEFAULT_ATTESTATION_EVENT
    attestation_hash_field: str = DEFAULT_HASH_FIELD
    ledger_timeout_s: float = 10.0

    model_config = ConfigDict(extra="forbid", frozen=True)

    @model_validator(mode="after")
    def _provider_required(self) -> "Settings":
        if self.validate_on_chain and not self.web3_provider.strip():
            raise ValueError("web3_provider is required when validate_on_chain is enabled")
        if not (0 < self.port < 65536):
            raise ValueError(f"port out of range: {self.port}")
        if self.ledger_timeout_s <= 0:
            raise ValueError("ledger_timeout_s must be positive")
        return self

    # ------------------------------------------------------------------ #
    # Derived helpers
    # ------------------------------------------------------------------ #

    def verify_options(self) -> VerifyOptions:
        return VerifyOptions(
            validate_on_chain=self.validate_on_chain,
            web3_provider=self.web3_provider or None,
            attestation_event=self.attestation_event,
            hash_field=self.attestation_hash_field,
        )

    def config_hash(self) -> str:
        """
        Stable hash of the current settings, safe to expose in headers.

        The provider URL may embed an API key, so only its presence is hashed.
        """
        payload = self.model_dump(mode="json")
        payload["web3_provider"] = bool(self.web3_provider)
        return content_hash(canonical_json_bytes(payload))[:16]


# ---------------------------------------------------------------------------
# Loading / merging
# ---------------------------------------------------------------------------


def load_settings(environ_path_var: str = "SHAREGATE_CONFIG_PATH") -> Settings:
    """
    Load Settings from defaults, optional YAML, and environment variables.

    Priority:
      1. Settings defaults (in-code).
      2. YAML file pointed to by SHAREGATE_CONFIG_PATH.
      3. Environment variables. PORT, VALIDATE_ON_CHAIN and WEB3_PROVIDER
         keep their historical names; everything else is SHAREGATE_*.

    Raises ConfigError when the merged result is invalid, e.g. on-chain
    validation enabled without a provider.
    """
    merged: Dict[str, Any] = Settings().model_dump()
    origin = "defaults"

    # 1) YAML overlay
    yaml_doc = _load_yaml_mapping(os.environ.get(environ_path_var, "").strip())
    if yaml_doc:
        merged.update(yaml_doc)
        origin = "yaml"

    # 2) Environment overrides
    before = dict(merged)

    merged["port"] = _env_int("PORT", merged["port"])
    merged["validate_on_chain"] = _env_bool("VALIDATE_ON_CHAIN", merged["validate_on_chain"])
    merged["web3_provider"] = _env_str("WEB3_PROVIDER", merged["web3_provider"])

    merged["host"] = _env_str("SHAREGATE_HOST", merged["host"])
    merged["version"] = _env_str("SHAREGATE_VERSION", merged["version"])
    merged["log_level"] = _env_str("SHAREGATE_LOG_LEVEL", merged["log_level"]).upper()
    merged["enable_docs"] = _env_bool("SHAREGATE_ENABLE_DOCS", merged["enable_docs"])
    merged["attestation_event"] = _env_str("SHAREGATE_ATTESTATION_EVENT", merged["attestation_event"])
    merged["attestation_hash_field"] = _env_str("SHAREGATE_HASH_FIELD", merged["attestation_hash_field"])

    timeout_env = _env_float("SHAREGATE_LEDGER_TIMEOUT_S", merged["ledger_timeout_s"])
    if timeout_env > 0.0:
        merged["ledger_timeout_s"] = timeout_env

    body_env = _env_int("SHAREGATE_MAX_BODY_BYTES", merged["max_body_bytes"])
    if body_env > 0:
        merged["max_body_bytes"] = body_env

    if merged != before:
        origin = "env" if origin == "defaults" else f"{origin}+env"
    merged["config_origin"] = origin

    try:
        return Settings(**merged)
    except PydanticValidationError as exc:
        raise ConfigError(str(exc)) from exc


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Process-wide settings snapshot, loaded on first use."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings


__all__ = [
    "ConfigError",
    "Settings",
    "load_settings",
    "get_settings",
]
