"""Grid, pricing and sync settings loaded from YAML."""

from dataclasses import dataclass, field
from pathlib import Path

import yaml


@dataclass
class GridConfig:
    side: int = 50
    center: tuple[int, int] | None = None  # defaults to (side // 2, side // 2)
    # Inclusive Manhattan-distance upper bound per tier; anything farther is common.
    thresholds: dict[str, int] = field(default_factory=lambda: {
        "legendary": 6,
        "epic": 12,
        "rare": 20,
    })


@dataclass
class PricingConfig:
    prices: dict[str, int] = field(default_factory=lambda: {
        "legendary": 100000,
        "epic": 50000,
        "rare": 25000,
        "common": 5000,
    })
    platform_fees: dict[str, int] = field(default_factory=lambda: {
        "legendary": 5000,
        "epic": 2500,
        "rare": 1000,
        "common": 500,
    })
    transfer_fee: int = 150
    melt_fee: int = 150


@dataclass
class SyncConfig:
    poll_interval: float = 60.0
    stale_window: float = 50.0
    coalesce_window: float = 0.25
    backoff_base: float = 2.0
    backoff_max: float = 60.0
    degraded_grace: float = 30.0


@dataclass
class AuthorityConfig:
    base_url: str = "http://localhost:5000"
    timeout: float = 5.0
    confirm_timeout: float = 30.0


@dataclass
class AppConfig:
    grid: GridConfig = field(default_factory=GridConfig)
    pricing: PricingConfig = field(default_factory=PricingConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    authority: AuthorityConfig = field(default_factory=AuthorityConfig)


def _merged(defaults: dict, raw: dict | None) -> dict:
    """Overlay a partial tier table from YAML on top of the defaults."""
    return {**defaults, **(raw or {})}


def load_config(path: Path) -> AppConfig:
    """Load config from YAML file."""
    with open(path) as f:
        raw = yaml.safe_load(f) or {}

    grid_raw = dict(raw.get("grid") or {})
    grid = GridConfig()
    if "thresholds" in grid_raw:
        grid_raw["thresholds"] = _merged(grid.thresholds, grid_raw["thresholds"])
    if grid_raw.get("center") is not None:
        grid_raw["center"] = tuple(grid_raw["center"])
    grid = GridConfig(**grid_raw)

    pricing_raw = dict(raw.get("pricing") or {})
    defaults = PricingConfig()
    for key in ("prices", "platform_fees"):
        if key in pricing_raw:
            pricing_raw[key] = _merged(getattr(defaults, key), pricing_raw[key])
    pricing = PricingConfig(**pricing_raw)

    sync = SyncConfig(**{k: v for k, v in (raw.get("sync") or {}).items()})
    authority = AuthorityConfig(**{k: v for k, v in (raw.get("authority") or {}).items()})

    return AppConfig(grid=grid, pricing=pricing, sync=sync, authority=authority)
