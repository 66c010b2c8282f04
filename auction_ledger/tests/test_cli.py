from __future__ import annotations

import json

import pytest
from typer.testing import CliRunner

from auction_ledger.cli.main import app

runner = CliRunner()


@pytest.fixture
def cli(tmp_path, monkeypatch):
    monkeypatch.delenv("AUCTION_LEDGER_CONFIG_FILE", raising=False)
    monkeypatch.delenv("AUCTION_LEDGER_DB_URI", raising=False)
    base = ["--db", str(tmp_path / "ledger.db"), "--cache", str(tmp_path / "deployments.json")]

    def invoke(*args: str, now: int = 1_000):
        return runner.invoke(app, [*base, "--now", str(now), *args])

    return invoke


def _ok(result):
    assert result.exit_code == 0, result.output
    return json.loads(result.stdout)


def test_full_lifecycle(cli, tmp_path):
    identity = _ok(cli("deploy", "--logic", "v1", "--deployer", "admin"))["identity"]
    cache = json.loads((tmp_path / "deployments.json").read_text())
    assert cache["default"] == identity
    assert cache["deployments"][identity]["implementation"] == "v1"

    out = _ok(cli("create", "--seller", "alice", "--asset", "nft#1", "--reserve", "100", "--duration", "3600"))
    assert out == {"auction_id": 1, "status": "active"}

    low = cli("bid", "1", "--bidder", "bob", "--amount", "50", now=1_010)
    assert low.exit_code == 2
    assert "AUCTION/BID_TOO_LOW" in low.output

    assert _ok(cli("bid", "1", "--bidder", "bob", "--amount", "100", now=1_010))["highest_bid"] == 100
    assert _ok(cli("bid", "1", "--bidder", "carol", "--amount", "150", now=1_020))["highest_bidder"] == "carol"

    early = cli("settle", "1", now=1_030)
    assert early.exit_code == 2
    assert "AUCTION/TOO_EARLY" in early.output

    up = _ok(cli("upgrade", "v2", "--caller", "admin", now=1_040))
    assert (up["from_version"], up["to_version"], up["to_layout"]) == ("v1", "v2", 2)
    assert up["migration"]["rewritten"] == 1

    shown = _ok(cli("show", "1", now=1_050))
    assert shown["implementation"] == "v2"
    assert shown["record"]["bid_count"] == 2
    assert shown["minimum_bid"] == 151

    settled = _ok(cli("settle", "1", now=5_000))
    assert (settled["phase"], settled["winner"], settled["amount"]) == ("settled", "carol", 150)

    assert _ok(cli("withdraw", "1", "--account", "bob", now=5_001))["amount"] == 100
    assert _ok(cli("withdraw", "1", "--account", "alice", "--proceeds", now=5_002))["amount"] == 150

    audit = _ok(cli("audit", now=5_003))
    assert audit == {"ok": True, "violations": []}

    history = _ok(cli("history"))
    assert [h["kind"] for h in history] == ["deploy", "upgrade"]

    snap = _ok(cli("inspect"))
    assert snap["identity"] == identity
    assert snap["auctions"]["1"]["record"]["phase"] == 2


def test_upgrade_requires_admin(cli):
    _ok(cli("deploy"))
    res = cli("upgrade", "v2", "--caller", "mallory")
    assert res.exit_code == 2
    assert "ACCESS/NOT_AUTHORIZED" in res.output
    assert _ok(cli("config"))["upgrade"]["admins"] == ["admin"]


def test_commands_need_a_deployment(cli):
    res = cli("show", "1")
    assert res.exit_code == 2
    assert "LEDGER/NOT_FOUND" in res.output


def test_bad_asset_reference(cli):
    _ok(cli("deploy"))
    res = cli("create", "--seller", "alice", "--asset", "nft-1", "--duration", "60")
    assert res.exit_code != 0


def test_cancel_and_seller_check(cli):
    _ok(cli("deploy"))
    _ok(cli("create", "--seller", "alice", "--asset", "nft#7", "--duration", "60"))
    res = cli("cancel", "1", "--caller", "bob")
    assert res.exit_code == 2
    assert "AUCTION/NOT_SELLER" in res.output
    assert _ok(cli("cancel", "1", "--caller", "alice"))["phase"] == "cancelled"
