"""PIL-based snapshot image of the canvas."""

from collections.abc import Iterable

from PIL import Image, ImageDraw

from pixelgrid.models import Cell, Tier

TIER_COLORS = {
    Tier.LEGENDARY: "#DBAB00",
    Tier.EPIC: "#FFBDFC",
    Tier.RARE: "#09D3FF",
    Tier.COMMON: "#66C084",
}

CONNECTIVITY_COLORS = {
    "online": "#22c55e",
    "poll_only": "#eab308",
    "push_only": "#eab308",
    "reconnecting": "#3b82f6",
    "degraded": "#ef4444",
}

BACKGROUND = "#111111"
PENDING_OUTLINE = "#ffffff"


def connectivity_color(state: str) -> str:
    """Map a connectivity state to a hex color."""
    return CONNECTIVITY_COLORS.get(str(getattr(state, "value", state)), "#6b7280")


def _dim(hex_color: str, factor: float = 0.25) -> tuple[int, int, int]:
    r, g, b = (int(hex_color[i:i + 2], 16) for i in (1, 3, 5))
    return (int(r * factor), int(g * factor), int(b * factor))


def render_canvas(
    cells: Iterable[Cell],
    side: int,
    cell_size: int = 8,
    pending: Iterable[tuple[int, int]] = (),
) -> Image.Image:
    """Render the grid: claimed cells in tier color, unclaimed ones dimmed.

    pending: cell ids with an unconfirmed local change, drawn outlined.
    """
    size = side * cell_size
    img = Image.new("RGB", (size, size), BACKGROUND)
    draw = ImageDraw.Draw(img)

    for cell in cells:
        color = TIER_COLORS[cell.tier]
        fill = color if cell.claimed else _dim(color)
        x0, y0 = cell.x * cell_size, cell.y * cell_size
        draw.rectangle([x0, y0, x0 + cell_size - 1, y0 + cell_size - 1], fill=fill)

    for x, y in pending:
        x0, y0 = x * cell_size, y * cell_size
        draw.rectangle([x0, y0, x0 + cell_size - 1, y0 + cell_size - 1], outline=PENDING_OUTLINE)

    return img
