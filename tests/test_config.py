"""Tests for loading grid, pricing and sync settings."""

import tempfile
from pathlib import Path

import pytest
import yaml


def _write(raw) -> Path:
    with tempfile.NamedTemporaryFile(mode="w", suffix=".yaml", delete=False) as f:
        yaml.dump(raw, f)
        return Path(f.name)


def test_load_config_parses_sections():
    """load_config should parse every YAML section into its dataclass."""
    raw = {
        "grid": {"side": 20, "center": [10, 10], "thresholds": {"legendary": 2}},
        "pricing": {"prices": {"common": 10}, "transfer_fee": 7, "melt_fee": 9},
        "sync": {"poll_interval": 15, "stale_window": 10},
        "authority": {"base_url": "https://pixels.example", "timeout": 2},
    }
    from pixelgrid.config import load_config

    cfg = load_config(_write(raw))
    assert cfg.grid.side == 20
    assert cfg.grid.center == (10, 10)
    assert cfg.grid.thresholds == {"legendary": 2, "epic": 12, "rare": 20}
    assert cfg.pricing.prices["common"] == 10
    assert cfg.pricing.prices["legendary"] == 100000
    assert cfg.pricing.transfer_fee == 7
    assert cfg.pricing.melt_fee == 9
    assert cfg.sync.poll_interval == 15
    assert cfg.sync.stale_window == 10
    assert cfg.authority.base_url == "https://pixels.example"


def test_load_config_defaults():
    """Missing sections should get defaults."""
    from pixelgrid.config import load_config

    cfg = load_config(_write({"grid": {}}))
    assert cfg.grid.side == 50
    assert cfg.grid.center is None
    assert cfg.pricing.platform_fees["legendary"] == 5000
    assert cfg.sync.poll_interval == 60
    assert cfg.sync.stale_window == 50
    assert cfg.authority.confirm_timeout == 30


def test_load_config_empty_file(tmp_path):
    from pixelgrid.config import load_config

    path = tmp_path / "empty.yaml"
    path.write_text("")
    cfg = load_config(path)
    assert cfg.grid.side == 50


def test_load_config_rejects_unknown_keys():
    from pixelgrid.config import load_config

    with pytest.raises(TypeError):
        load_config(_write({"sync": {"poll_every": 3}}))
