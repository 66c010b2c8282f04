from __future__ import annotations
"""
auction_ledger.config
---------------------

Configuration for the auction ledger.

Covers:
- Storage (KV URI, deployment cache file used by the CLI)
- Upgrade policy (drain timeout, default logic version, authorized admins)
- Bidding policy (minimum bid increment enforced by logic v2, basis points)
- Logging (level, format, optional JSON file sink)

Precedence (highest first): explicit overrides > environment > file > defaults.

Environment overrides (all optional):

  AUCTION_LEDGER_DB_URI=sqlite:///auction_ledger.db
  AUCTION_LEDGER_DEPLOYMENTS_FILE=.cache/deployments.json

  AUCTION_LEDGER_UPGRADE_DRAIN_TIMEOUT_S=5.0
  AUCTION_LEDGER_DEFAULT_LOGIC=v1
  AUCTION_LEDGER_UPGRADE_ACTION=upgrade
  AUCTION_LEDGER_UPGRADE_ADMINS=alice,bob

  AUCTION_LEDGER_MIN_INCREMENT_BPS=0

  AUCTION_LEDGER_LOG_LEVEL=INFO
  AUCTION_LEDGER_LOG_FORMAT=json|text|auto
  AUCTION_LEDGER_LOG_FILE=/var/log/auction_ledger.jsonl

A JSON or YAML file can be named via `AUCTION_LEDGER_CONFIG_FILE=/path/to/config.(json|yaml|yml)`:

    storage:
      db_uri: sqlite:///var/lib/ledger.db
    upgrade:
      drain_timeout_s: 2.5
      admins: [ops]
    bidding:
      min_increment_bps: 500
"""


from dataclasses import asdict, dataclass, field, fields, replace
from typing import Any, Dict, List, Mapping, Optional
import json
import os
from pathlib import Path

import yaml

ENV_PREFIX = "AUCTION_LEDGER_"
CONFIG_FILE_ENV = f"{ENV_PREFIX}CONFIG_FILE"

_LOG_LEVELS = ("CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG")
_LOG_FORMATS = ("json", "text", "auto")


# -------------------------- Data classes --------------------------


@dataclass
class StorageConfig:
    db_uri: str = "sqlite:///auction_ledger.db"
    deployments_file: str = ".cache/deployments.json"

    def validate(self) -> None:
        if not self.db_uri:
            raise ValueError("storage.db_uri must be set.")
        if not self.deployments_file:
            raise ValueError("storage.deployments_file must be set.")


@dataclass
class UpgradeConfig:
    """How long an upgrade waits for in-flight operations, and who may run one."""
    drain_timeout_s: float = 5.0
    default_logic: str = "v1"
    upgrade_action: str = "upgrade"
    admins: List[str] = field(default_factory=lambda: ["admin"])

    def validate(self) -> None:
        if self.drain_timeout_s <= 0:
            raise ValueError(f"upgrade.drain_timeout_s must be positive (got {self.drain_timeout_s}).")
        if not self.default_logic:
            raise ValueError("upgrade.default_logic must be set.")
        if not self.upgrade_action:
            raise ValueError("upgrade.upgrade_action must be set.")


@dataclass
class BiddingConfig:
    """Minimum raise over the current highest bid, in basis points (10_000 = 100%)."""
    min_increment_bps: int = 0

    def validate(self) -> None:
        if not (0 <= self.min_increment_bps <= 10_000):
            raise ValueError(f"bidding.min_increment_bps must be between 0 and 10000 (got {self.min_increment_bps}).")


@dataclass
class LoggingConfig:
    level: str = "INFO"
    format: str = "auto"
    file: Optional[str] = None

    def validate(self) -> None:
        if self.level.upper() not in _LOG_LEVELS:
            raise ValueError(f"logging.level must be one of {_LOG_LEVELS} (got {self.level!r}).")
        if self.format not in _LOG_FORMATS:
            raise ValueError(f"logging.format must be one of {_LOG_FORMATS} (got {self.format!r}).")


@dataclass
class LedgerConfig:
    """Top-level configuration container."""
    storage: StorageConfig = field(default_factory=StorageConfig)
    upgrade: UpgradeConfig = field(default_factory=UpgradeConfig)
    bidding: BiddingConfig = field(default_factory=BiddingConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    def validate(self) -> None:
        self.storage.validate()
        self.upgrade.validate()
        self.bidding.validate()
        self.logging.validate()

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def pretty(self) -> str:
        return json.dumps(self.to_dict(), indent=2, sort_keys=True)


# -------------------------- Loaders --------------------------


def _getenv_int(name: str, default: int) -> int:
    v = os.getenv(name)
    if v is None or v == "":
        return default
    try:
        return int(str(v).replace("_", ""))
    except ValueError as e:
        raise ValueError(f"Invalid int for {name}: {v!r}") from e


def _getenv_float(name: str, default: float) -> float:
    v = os.getenv(name)
    if v is None or v == "":
        return default
    try:
        return float(v)
    except ValueError as e:
        raise ValueError(f"Invalid float for {name}: {v!r}") from e


def _getenv_str(name: str, default: Optional[str]) -> Optional[str]:
    v = os.getenv(name)
    return default if v is None or v == "" else v


def _getenv_list(name: str, default: List[str]) -> List[str]:
    v = os.getenv(name)
    if v is None or v == "":
        return list(default)
    return [p.strip() for p in v.split(",") if p.strip()]


def from_env(base: Optional[LedgerConfig] = None, prefix: str = ENV_PREFIX) -> LedgerConfig:
    """Layer environment variables on top of `base` (defaults if None)."""
    cfg = base or LedgerConfig()

    new_cfg = LedgerConfig(
        storage=StorageConfig(
            db_uri=_getenv_str(f"{prefix}DB_URI", cfg.storage.db_uri),
            deployments_file=_getenv_str(f"{prefix}DEPLOYMENTS_FILE", cfg.storage.deployments_file),
        ),
        upgrade=UpgradeConfig(
            drain_timeout_s=_getenv_float(f"{prefix}UPGRADE_DRAIN_TIMEOUT_S", cfg.upgrade.drain_timeout_s),
            default_logic=_getenv_str(f"{prefix}DEFAULT_LOGIC", cfg.upgrade.default_logic),
            upgrade_action=_getenv_str(f"{prefix}UPGRADE_ACTION", cfg.upgrade.upgrade_action),
            admins=_getenv_list(f"{prefix}UPGRADE_ADMINS", cfg.upgrade.admins),
        ),
        bidding=BiddingConfig(
            min_increment_bps=_getenv_int(f"{prefix}MIN_INCREMENT_BPS", cfg.bidding.min_increment_bps),
        ),
        logging=LoggingConfig(
            level=_getenv_str(f"{prefix}LOG_LEVEL", cfg.logging.level),
            format=_getenv_str(f"{prefix}LOG_FORMAT", cfg.logging.format),
            file=_getenv_str(f"{prefix}LOG_FILE", cfg.logging.file),
        ),
    )
    new_cfg.validate()
    return new_cfg


def _section(cls: type, data: Mapping[str, Any], base: Any) -> Any:
    known = {f.name for f in fields(cls)}
    unknown = set(data) - known
    if unknown:
        raise ValueError(f"Unknown keys for {cls.__name__}: {sorted(unknown)}")
    return replace(base, **dict(data))


def from_mapping(data: Mapping[str, Any], base: Optional[LedgerConfig] = None) -> LedgerConfig:
    cfg = base or LedgerConfig()
    unknown = set(data) - {"storage", "upgrade", "bidding", "logging"}
    if unknown:
        raise ValueError(f"Unknown config sections: {sorted(unknown)}")
    new_cfg = LedgerConfig(
        storage=_section(StorageConfig, data.get("storage") or {}, cfg.storage),
        upgrade=_section(UpgradeConfig, data.get("upgrade") or {}, cfg.upgrade),
        bidding=_section(BiddingConfig, data.get("bidding") or {}, cfg.bidding),
        logging=_section(LoggingConfig, data.get("logging") or {}, cfg.logging),
    )
    new_cfg.validate()
    return new_cfg


def from_file(path: str | os.PathLike[str], base: Optional[LedgerConfig] = None) -> LedgerConfig:
    """Load configuration from a JSON or YAML file."""
    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(p)

    text = p.read_text(encoding="utf-8")
    if p.suffix.lower() in (".yaml", ".yml"):
        data = yaml.safe_load(text) or {}
    else:
        data = json.loads(text or "{}")
    if not isinstance(data, dict):
        raise ValueError(f"Config file {p} must contain a mapping at top level.")
    return from_mapping(data, base)


def apply_overrides(cfg: LedgerConfig, overrides: Mapping[str, Any]) -> LedgerConfig:
    """Apply dotted-key overrides, e.g. {"upgrade.drain_timeout_s": 1.0}."""
    nested: Dict[str, Dict[str, Any]] = {}
    for key, value in overrides.items():
        if value is None:
            continue
        section, sep, name = key.partition(".")
        if not sep:
            raise ValueError(f"Override keys must look like 'section.field': {key!r}")
        nested.setdefault(section, {})[name] = value
    return from_mapping(nested, cfg)


def load(path: Optional[str | os.PathLike[str]] = None, overrides: Optional[Mapping[str, Any]] = None) -> LedgerConfig:
    """
    Resolve the effective configuration:
    defaults → file (`path` or $AUCTION_LEDGER_CONFIG_FILE) → environment → overrides.
    """
    cfg = LedgerConfig()
    file_path = path or os.getenv(CONFIG_FILE_ENV)
    if file_path:
        cfg = from_file(file_path, cfg)
    cfg = from_env(cfg)
    if overrides:
        cfg = apply_overrides(cfg, overrides)
    return cfg


__all__ = [
    "StorageConfig",
    "UpgradeConfig",
    "BiddingConfig",
    "LoggingConfig",
    "LedgerConfig",
    "from_env",
    "from_mapping",
    "from_file",
    "apply_overrides",
    "load",
]
