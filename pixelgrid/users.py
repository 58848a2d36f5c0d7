"""Per-wallet standings derived from the cell view."""

from __future__ import annotations

import math
from collections.abc import Iterable

from pixelgrid.models import Cell, Tier, User

LOCATION_BONUS = {
    Tier.LEGENDARY: 1.5,
    Tier.EPIC: 1.4,
    Tier.RARE: 1.2,
    Tier.COMMON: 1.0,
}
TERRITORY_BONUS = 0.1  # per adjacent cell held by the same owner

_NEIGHBOURS = [(dx, dy) for dx in (-1, 0, 1) for dy in (-1, 0, 1) if (dx, dy) != (0, 0)]


def calculate_influence(owned: Iterable[Cell], owners: dict[tuple[int, int], str]) -> int:
    """Influence of one wallet.

    owners: (x, y) -> holder for every claimed cell on the grid. Holders are
        wallet addresses, or server user ids the client could not resolve.
    """
    total = 0.0
    for cell in owned:
        score = (cell.price // 1000) * LOCATION_BONUS[cell.tier]
        adjacent = sum(
            1 for dx, dy in _NEIGHBOURS
            if owners.get((cell.x + dx, cell.y + dy)) == cell.holder
        )
        total += score * (1 + adjacent * TERRITORY_BONUS)
    return math.floor(total)


def compute_users(cells: Iterable[Cell]) -> dict[str, User]:
    """Build User records for every owner and every minter seen on the grid.

    Minters who no longer hold anything are kept as inactive users.
    """
    cells = list(cells)
    owners = {c.id: c.holder for c in cells if c.claimed}
    by_owner: dict[str, list[Cell]] = {}
    for cell in cells:
        if cell.claimed:
            by_owner.setdefault(cell.holder, []).append(cell)

    users: dict[str, User] = {}
    for address, owned in by_owner.items():
        users[address] = User(
            address=address,
            influence=calculate_influence(owned, owners),
            value_locked=sum(c.price for c in owned),
            pixel_count=len(owned),
        )
    for cell in cells:
        if cell.founder and cell.founder not in users:
            users[cell.founder] = User(address=cell.founder)
    return users


def leaderboard(users: Iterable[User], limit: int = 10) -> list[User]:
    """Top users by influence, ties broken by address."""
    ranked = sorted(users, key=lambda u: (-u.influence, u.address))
    return ranked[:limit]
