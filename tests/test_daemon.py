"""Tests for the command-line client."""

import pytest

from pixelgrid.authority import LocalAuthority
from pixelgrid.config import AppConfig
from pixelgrid.daemon import PixelGridClient, build_parser, format_stats, main, run_command
from pixelgrid.stats import StatsAggregator
from pixelgrid.tiers import TierPricingEngine


@pytest.fixture
def app():
    config = AppConfig()
    client = PixelGridClient(config, authority=LocalAuthority(TierPricingEngine()))
    client.start(watch=False)
    yield client
    client.stop()


def _run(app, *argv):
    return run_command(app, build_parser().parse_args(list(argv)))


def test_format_stats():
    engine = TierPricingEngine()
    line = format_stats(StatsAggregator(engine).compute(engine.cells()))
    assert line.startswith("0/2500 claimed, 2500 left, 0 locked, 0 owners |")
    assert "L:0/" in line and "C:0/" in line


def test_claim_command(app, capsys):
    assert _run(app, "claim", "25", "25", "alice") == 0
    out = capsys.readouterr().out
    assert "fee 105,000" in out
    assert "Claimed: legendary #1" in out
    assert app.stats.current().claimed_pixels == 1


def test_rejected_command_exit_code(app, capsys):
    _run(app, "claim", "25", "25", "alice")
    assert _run(app, "claim", "25", "25", "bob") == 1
    assert "Rejected" in capsys.readouterr().out


def test_transfer_and_melt_commands(app, capsys):
    _run(app, "claim", "0", "0", "alice")
    assert _run(app, "transfer", "0", "0", "alice", "bob") == 0
    assert _run(app, "melt", "0", "0", "bob") == 0
    out = capsys.readouterr().out
    assert "Transferred to bob, fee 150" in out
    assert "Melted, fee 150" in out


def test_leaderboard_command(app, capsys):
    _run(app, "claim", "25", "25", "alice")
    _run(app, "claim", "0", "0", "bob")
    capsys.readouterr()
    assert _run(app, "leaderboard") == 0
    lines = capsys.readouterr().out.splitlines()
    assert "alice" in lines[0]
    assert "bob" in lines[1]


def test_snapshot_command(app, tmp_path):
    path = tmp_path / "canvas.png"
    assert _run(app, "snapshot", str(path)) == 0
    assert path.exists()


def test_main_missing_config():
    with pytest.raises(SystemExit) as exc:
        main(["--local", "--config", "/nonexistent/config.yaml", "leaderboard"])
    assert exc.value.code == 1


def test_main_one_shot_command(tmp_path, monkeypatch, capsys):
    monkeypatch.chdir(tmp_path)
    with pytest.raises(SystemExit) as exc:
        main(["--local", "claim", "1", "1", "alice"])
    assert exc.value.code == 0
    assert "Claimed" in capsys.readouterr().out


def test_history_and_activity_commands(app, capsys):
    _run(app, "claim", "0", "0", "alice")
    _run(app, "transfer", "0", "0", "alice", "bob", "--tx", "0xmove")
    capsys.readouterr()
    assert _run(app, "history", "0", "0") == 0
    lines = capsys.readouterr().out.splitlines()
    assert lines[0].startswith("transfer (0, 0) alice -> bob")
    assert lines[1].startswith("claim    (0, 0) alice")
    assert _run(app, "activity", "--limit", "1") == 0
    assert len(capsys.readouterr().out.splitlines()) == 1
