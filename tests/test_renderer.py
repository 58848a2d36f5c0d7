"""Tests for the canvas snapshot renderer."""

from dataclasses import replace

from pixelgrid.renderer import TIER_COLORS, connectivity_color, render_canvas
from pixelgrid.models import Tier
from pixelgrid.sync import Connectivity
from pixelgrid.tiers import TierPricingEngine


def _rgb(hex_color):
    return tuple(int(hex_color[i:i + 2], 16) for i in (1, 3, 5))


def test_image_size():
    engine = TierPricingEngine()
    img = render_canvas(engine.cells(), engine.side, cell_size=4)
    assert img.size == (200, 200)


def test_claimed_cells_use_tier_color():
    engine = TierPricingEngine()
    cells = [replace(c, claimed=True, owner="alice") if c.id == (25, 25) else c
             for c in engine.cells()]
    img = render_canvas(cells, engine.side, cell_size=4)
    assert img.getpixel((101, 101)) == _rgb(TIER_COLORS[Tier.LEGENDARY])
    # unclaimed neighbours are dimmed
    assert img.getpixel((105, 101)) != _rgb(TIER_COLORS[Tier.LEGENDARY])
    assert img.getpixel((1, 1)) == tuple(int(v * 0.25) for v in _rgb(TIER_COLORS[Tier.COMMON]))


def test_pending_cells_outlined():
    engine = TierPricingEngine()
    img = render_canvas(engine.cells(), engine.side, cell_size=4, pending=[(0, 0)])
    assert img.getpixel((0, 0)) == (255, 255, 255)
    assert img.getpixel((4, 4)) != (255, 255, 255)


def test_connectivity_color():
    assert connectivity_color(Connectivity.ONLINE) == "#22c55e"
    assert connectivity_color("degraded") == "#ef4444"
    assert connectivity_color("unknown") == "#6b7280"
