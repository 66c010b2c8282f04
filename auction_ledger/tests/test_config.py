from __future__ import annotations

import json
from importlib.metadata import PackageNotFoundError, version as dist_version

import pytest
import yaml

import auction_ledger
from auction_ledger import version
from auction_ledger.config import LedgerConfig, apply_overrides, from_env, from_file, from_mapping, load


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for name in ("CONFIG_FILE", "DB_URI", "UPGRADE_DRAIN_TIMEOUT_S", "UPGRADE_ADMINS", "MIN_INCREMENT_BPS",
                 "LOG_LEVEL", "LOG_FORMAT", "DEFAULT_LOGIC"):
        monkeypatch.delenv(f"AUCTION_LEDGER_{name}", raising=False)


def test_defaults_validate():
    cfg = LedgerConfig()
    cfg.validate()
    assert cfg.upgrade.admins == ["admin"]
    assert cfg.bidding.min_increment_bps == 0
    assert json.loads(cfg.pretty())["storage"]["db_uri"] == "sqlite:///auction_ledger.db"


def test_env_overrides_defaults(monkeypatch):
    monkeypatch.setenv("AUCTION_LEDGER_DB_URI", "memory://")
    monkeypatch.setenv("AUCTION_LEDGER_UPGRADE_ADMINS", "root, ops")
    monkeypatch.setenv("AUCTION_LEDGER_MIN_INCREMENT_BPS", "2_500")
    cfg = from_env()
    assert cfg.storage.db_uri == "memory://"
    assert cfg.upgrade.admins == ["root", "ops"]
    assert cfg.bidding.min_increment_bps == 2500


def test_bad_env_value_is_reported(monkeypatch):
    monkeypatch.setenv("AUCTION_LEDGER_UPGRADE_DRAIN_TIMEOUT_S", "soon")
    with pytest.raises(ValueError, match="UPGRADE_DRAIN_TIMEOUT_S"):
        from_env()


def test_yaml_and_json_files(tmp_path):
    y = tmp_path / "ledger.yaml"
    y.write_text(yaml.safe_dump({"upgrade": {"drain_timeout_s": 1.5}, "logging": {"format": "text"}}))
    cfg = from_file(y)
    assert cfg.upgrade.drain_timeout_s == 1.5
    assert cfg.logging.format == "text"

    j = tmp_path / "ledger.json"
    j.write_text(json.dumps({"bidding": {"min_increment_bps": 100}}))
    assert from_file(j).bidding.min_increment_bps == 100


def test_unknown_keys_are_rejected():
    with pytest.raises(ValueError):
        from_mapping({"storage": {"db": "x"}})
    with pytest.raises(ValueError):
        from_mapping({"mempool": {}})


def test_validation_errors():
    with pytest.raises(ValueError):
        from_mapping({"bidding": {"min_increment_bps": 10_001}})
    with pytest.raises(ValueError):
        from_mapping({"upgrade": {"drain_timeout_s": 0}})
    with pytest.raises(ValueError):
        from_mapping({"logging": {"level": "LOUD"}})


def test_load_precedence(tmp_path, monkeypatch):
    f = tmp_path / "ledger.yaml"
    f.write_text(yaml.safe_dump({"storage": {"db_uri": "sqlite:///from-file.db"}, "upgrade": {"default_logic": "v2"}}))
    monkeypatch.setenv("AUCTION_LEDGER_CONFIG_FILE", str(f))
    monkeypatch.setenv("AUCTION_LEDGER_DB_URI", "sqlite:///from-env.db")

    cfg = load()
    assert cfg.storage.db_uri == "sqlite:///from-env.db"
    assert cfg.upgrade.default_logic == "v2"

    cfg = load(overrides={"storage.db_uri": "memory://", "logging.level": None})
    assert cfg.storage.db_uri == "memory://"
    assert cfg.logging.level == "INFO"


def test_override_keys_need_a_section():
    with pytest.raises(ValueError):
        apply_overrides(LedgerConfig(), {"db_uri": "memory://"})


def test_package_version_comes_from_distribution_metadata():
    try:
        expected = dist_version("auction-ledger")
    except PackageNotFoundError:
        expected = version.BASE_VERSION
    assert auction_ledger.__version__ == version.__version__ == expected
    assert not hasattr(auction_ledger, "get_version")
