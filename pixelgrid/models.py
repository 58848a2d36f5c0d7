"""Cell, user and stats records plus their JSON wire form."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, fields, replace
from datetime import datetime, timezone
from enum import Enum

log = logging.getLogger(__name__)

CellId = tuple[int, int]


class Tier(str, Enum):
    LEGENDARY = "legendary"
    EPIC = "epic"
    RARE = "rare"
    COMMON = "common"


# Nearest-to-farthest band order.
TIER_ORDER = (Tier.LEGENDARY, Tier.EPIC, Tier.RARE, Tier.COMMON)


class Action(str, Enum):
    CLAIM = "claim"
    TRANSFER = "transfer"
    MELT = "melt"


def parse_timestamp(value) -> float | None:
    """Accept epoch seconds or ISO-8601 (with trailing Z) and return epoch seconds."""
    if value is None or value == "":
        return None
    if isinstance(value, (int, float)):
        return float(value)
    text = str(value)
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    dt = datetime.fromisoformat(text)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.timestamp()


def format_timestamp(value: float | None) -> str | None:
    if value is None:
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass(frozen=True)
class TokenRef:
    """Minted token id and the transaction that issued (or last moved) it."""

    token_id: str | None = None
    tx_ref: str | None = None


@dataclass(frozen=True)
class Cell:
    x: int
    y: int
    tier: Tier
    price: int
    claimed: bool = False
    owner: str | None = None
    minter: str | None = None
    owned_since: float | None = None
    token_ref: TokenRef | None = None
    claimed_at: float | None = None
    tier_mint_sequence: int | None = None
    global_mint_sequence: int | None = None
    created_at: float | None = None
    revision: int | None = None
    remote_id: str | None = None
    # Server-side user ids, kept apart from wallet addresses.
    owner_id: str | None = None
    minter_id: str | None = None

    @property
    def id(self) -> CellId:
        return (self.x, self.y)

    @property
    def holder(self) -> str | None:
        """Wallet address of the current owner, or the server's user id when unresolved."""
        return self.owner or self.owner_id

    @property
    def founder(self) -> str | None:
        return self.minter or self.minter_id

    def is_older_than(self, other: Cell) -> bool:
        """True when this record is logically older than `other` for the same cell.

        Revisions decide when both records carry one. Otherwise a lower mint
        sequence is older, and claim times are compared only when both
        records have one: a melted record carries no claim time.
        """
        if self.revision is not None and other.revision is not None:
            return self.revision < other.revision
        mine, theirs = self.global_mint_sequence or 0, other.global_mint_sequence or 0
        if mine != theirs:
            return mine < theirs
        if self.claimed_at is not None and other.claimed_at is not None:
            return self.claimed_at < other.claimed_at
        return False

    def merged(self, changes: dict) -> Cell:
        """Overlay a partial record. Identity and tier/price never change."""
        changes = {k: v for k, v in changes.items() if k not in ("x", "y", "tier", "price")}
        return replace(self, **changes) if changes else self

    @classmethod
    def from_json(cls, data: dict, tier: Tier | None = None, price: int | None = None) -> Cell:
        """Build a Cell from a server record (camelCase keys)."""
        token_id = data.get("sporeId")
        tx_ref = data.get("sporeTxHash")
        token = TokenRef(token_id, tx_ref) if (token_id or tx_ref) else None
        owner = data.get("ownerAddress") or data.get("owner")
        minter = data.get("minterAddress") or data.get("minter")
        owner_id = data.get("ownerId")
        raw_tier = data.get("tier")
        return cls(
            x=int(data["x"]),
            y=int(data["y"]),
            tier=Tier(raw_tier) if raw_tier else tier,
            price=int(data["price"]) if data.get("price") is not None else price,
            claimed=bool(data.get("claimed", (owner or owner_id) is not None)),
            owner=owner,
            minter=minter,
            owned_since=parse_timestamp(data.get("ownerSince")),
            token_ref=token,
            claimed_at=parse_timestamp(data.get("claimedAt")),
            tier_mint_sequence=data.get("tierMintNumber"),
            global_mint_sequence=data.get("globalMintNumber"),
            created_at=parse_timestamp(data.get("createdAt")),
            revision=data.get("revision"),
            remote_id=data.get("id"),
            owner_id=owner_id,
            minter_id=data.get("minterId"),
        )

    def to_json(self) -> dict:
        token = self.token_ref or TokenRef()
        return {
            "id": self.remote_id,
            "x": self.x,
            "y": self.y,
            "tier": self.tier.value,
            "price": self.price,
            "claimed": self.claimed,
            "ownerAddress": self.owner,
            "minterAddress": self.minter,
            "ownerSince": format_timestamp(self.owned_since),
            "sporeId": token.token_id,
            "sporeTxHash": token.tx_ref,
            "claimedAt": format_timestamp(self.claimed_at),
            "tierMintNumber": self.tier_mint_sequence,
            "globalMintNumber": self.global_mint_sequence,
            "createdAt": format_timestamp(self.created_at),
            "revision": self.revision,
            "ownerId": self.owner_id,
            "minterId": self.minter_id,
        }


CELL_FIELDS = frozenset(f.name for f in fields(Cell))


@dataclass
class User:
    address: str
    influence: int = 0
    value_locked: int = 0
    pixel_count: int = 0

    @property
    def active(self) -> bool:
        return self.pixel_count > 0


@dataclass(frozen=True)
class CanvasStats:
    total_pixels: int
    claimed_pixels: int
    remaining_pixels: int
    total_value_locked: int
    active_owners: int
    tier_counts: dict[Tier, int] = field(default_factory=dict)
    tier_totals: dict[Tier, int] = field(default_factory=dict)

    @classmethod
    def from_json(cls, data: dict) -> CanvasStats:
        """Parse the /api/stats body."""
        return cls(
            total_pixels=data["totalPixels"],
            claimed_pixels=data["claimedPixels"],
            remaining_pixels=data["remainingPixels"],
            total_value_locked=data.get("totalCKBLocked", data.get("totalValueLocked", 0)),
            active_owners=data.get("activeFounders", data.get("activeOwners", 0)),
            tier_counts={Tier(k): v for k, v in (data.get("tierCounts") or {}).items()},
            tier_totals={Tier(k): v for k, v in (data.get("tierTotals") or {}).items()},
        )


_TX_ACTIONS = {
    "mint": Action.CLAIM,
    "claim": Action.CLAIM,
    "transfer": Action.TRANSFER,
    "melt": Action.MELT,
    "burn": Action.MELT,
}


@dataclass(frozen=True)
class Transaction:
    """One entry of a cell's ownership history. Mints are recorded as claims."""

    action: Action
    cell_id: CellId | None = None
    from_user: str | None = None
    to_user: str | None = None
    amount: int = 0
    tx_ref: str | None = None
    created_at: float | None = None
    tier: Tier | None = None

    @classmethod
    def from_json(cls, data: dict, cell_id: CellId | None = None) -> Transaction:
        """Decode a per-cell history row or a recent-activity row."""
        if cell_id is None and data.get("pixelX") is not None:
            cell_id = (int(data["pixelX"]), int(data["pixelY"]))
        amount = data.get("amount", data.get("ckbAmount"))
        raw_tier = data.get("tier")
        return cls(
            action=_TX_ACTIONS[data["type"]],
            cell_id=cell_id,
            from_user=data.get("fromUserAddress") or data.get("fromUserId"),
            to_user=data.get("walletAddress") or data.get("toUserId"),
            amount=int(amount or 0),
            tx_ref=data.get("txHash"),
            created_at=parse_timestamp(data.get("createdAt") or data.get("timestamp")),
            tier=Tier(raw_tier) if raw_tier else None,
        )


class EventType(str, Enum):
    CLAIMED = "cellClaimed"
    TRANSFERRED = "cellTransferred"
    MELTED = "cellMelted"


_EVENT_ALIASES = {
    "cellClaimed": EventType.CLAIMED,
    "pixelClaimed": EventType.CLAIMED,
    "cellTransferred": EventType.TRANSFERRED,
    "pixelTransferred": EventType.TRANSFERRED,
    "cellMelted": EventType.MELTED,
    "pixelMelted": EventType.MELTED,
}


@dataclass(frozen=True)
class PushEvent:
    type: EventType
    cell_id: CellId
    previous_owner: str | None = None
    new_owner: str | None = None


def parse_push_message(message: dict) -> PushEvent | None:
    """Decode a push message. Returns None for unrelated or malformed messages."""
    event_type = _EVENT_ALIASES.get(message.get("type"))
    if event_type is None:
        return None
    try:
        if "cellId" in message:
            x, y = message["cellId"]
        else:
            pixel = message["pixel"]
            x, y = pixel["x"], pixel["y"]
        cell_id = (int(x), int(y))
    except (KeyError, TypeError, ValueError):
        log.warning("Dropping malformed %s message: %r", event_type.value, message)
        return None

    previous = message.get("fromUser")
    new = message.get("toUser")
    if event_type is EventType.MELTED:
        user = message.get("user")
        previous = previous or (user if isinstance(user, str) else None)
    elif event_type is EventType.CLAIMED:
        user = message.get("user")
        if isinstance(user, dict):
            new = new or user.get("address")
    return PushEvent(event_type, cell_id, previous_owner=previous, new_owner=new)
