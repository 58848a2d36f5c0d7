"""HTTP client for the pixel server's REST routes.

No API key needed. Errors map onto the pixelgrid error taxonomy:
query timeouts are transient, submission timeouts leave the outcome unknown.
"""

from __future__ import annotations

import json
import logging
import ssl
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import replace

import certifi

from pixelgrid.errors import (
    AuthorityTimeout,
    ConflictError,
    FeeConfirmationError,
    PixelGridError,
    Rejection,
    TransientNetworkError,
    ValidationError,
)
from pixelgrid.models import CanvasStats, Cell, CellId, TokenRef, Transaction
from pixelgrid.tiers import TierPricingEngine

log = logging.getLogger(__name__)

_SSL_CTX = ssl.create_default_context(cafile=certifi.where())
USER_AGENT = "pixelgrid/0.1"


def rejection_for(status: int, message: str, cell_id=None) -> PixelGridError:
    """Translate an HTTP error response into a typed rejection."""
    text = message.lower()
    if status == 404:
        if "not claimed" in text:
            return ConflictError(message, Rejection.NOT_OWNER, cell_id)
        return ValidationError(message, Rejection.UNKNOWN_CELL, cell_id)
    if status == 403:
        if "already minted" in text:
            return ConflictError(message, Rejection.MINT_LIMIT, cell_id)
        return ConflictError(message, Rejection.NOT_OWNER, cell_id)
    if status == 409:
        return ConflictError(message, Rejection.ALREADY_CLAIMED, cell_id)
    if status == 400:
        if "already claimed" in text:
            return ConflictError(message, Rejection.ALREADY_CLAIMED, cell_id)
        if "transaction" in text or "txhash" in text:
            return FeeConfirmationError(message, cell_id=cell_id)
        return ValidationError(message, cell_id=cell_id)
    return TransientNetworkError(f"HTTP {status}: {message}", cell_id=cell_id)


class HttpAuthority:
    def __init__(self, engine: TierPricingEngine, base_url: str,
                 timeout: float = 5.0, confirm_timeout: float = 30.0):
        self.engine = engine
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.confirm_timeout = confirm_timeout
        self._remote_ids: dict[CellId, str] = {}
        # Records name users by server id; wallets are learned as we go.
        self._addresses: dict[str, str] = {}
        self._user_ids: dict[str, str] = {}

    def _request(self, method: str, path: str, body: dict | None = None,
                 submission: bool = False, cell_id=None):
        data = json.dumps(body).encode() if body is not None else None
        req = urllib.request.Request(
            self.base_url + path,
            data=data,
            method=method,
            headers={"User-Agent": USER_AGENT, "Content-Type": "application/json"},
        )
        timeout = self.confirm_timeout if submission else self.timeout
        try:
            with urllib.request.urlopen(req, timeout=timeout, context=_SSL_CTX) as resp:
                return json.loads(resp.read())
        except urllib.error.HTTPError as e:
            try:
                message = json.loads(e.read()).get("error", e.reason)
            except (ValueError, AttributeError):
                message = str(e.reason)
            raise rejection_for(e.code, str(message), cell_id) from e
        except TimeoutError as e:
            raise self._timeout(method, path, submission, cell_id) from e
        except urllib.error.URLError as e:
            if isinstance(e.reason, TimeoutError):
                raise self._timeout(method, path, submission, cell_id) from e
            raise TransientNetworkError(f"{method} {path}: {e.reason}", cell_id=cell_id) from e
        except ValueError as e:
            raise TransientNetworkError(f"{method} {path}: malformed response", cell_id=cell_id) from e

    @staticmethod
    def _timeout(method, path, submission, cell_id) -> PixelGridError:
        if submission:
            return AuthorityTimeout(f"{method} {path} not confirmed in time", cell_id=cell_id)
        return TransientNetworkError(f"{method} {path} timed out", cell_id=cell_id)

    def _learn(self, user_id: str | None, address: str | None):
        if user_id and address:
            self._addresses[user_id] = address
            self._user_ids[address] = user_id

    def _cell(self, data: dict, submission: bool = False) -> Cell:
        try:
            tier = self.engine.tier_of(int(data["x"]), int(data["y"]))
            cell = Cell.from_json(data, tier=tier, price=self.engine.price_of(tier))
        except (KeyError, TypeError, ValueError) as e:
            # Outcome of a submission is unknown if its answer can't be read.
            error = AuthorityTimeout if submission else TransientNetworkError
            raise error(f"Malformed cell record: {data!r}") from e
        if cell.remote_id:
            self._remote_ids[cell.id] = cell.remote_id
        self._learn(cell.owner_id, cell.owner)
        self._learn(cell.minter_id, cell.minter)
        changes = {}
        if cell.owner is None and cell.owner_id in self._addresses:
            changes["owner"] = self._addresses[cell.owner_id]
        if cell.minter is None and cell.minter_id in self._addresses:
            changes["minter"] = self._addresses[cell.minter_id]
        return replace(cell, **changes) if changes else cell

    def _answer(self, result, address: str | None = None) -> Cell:
        """Decode a submission response; `address` is the wallet now holding the cell."""
        pixel = result.get("pixel") if isinstance(result, dict) else None
        if address and isinstance(pixel, dict):
            self._learn(pixel.get("ownerId"), address)
        return self._cell(pixel, submission=True)

    def _transaction(self, data, cell_id: CellId | None = None) -> Transaction:
        try:
            tx = Transaction.from_json(data, cell_id)
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise TransientNetworkError(f"Malformed transaction record: {data!r}") from e
        return replace(
            tx,
            from_user=self._addresses.get(tx.from_user, tx.from_user),
            to_user=self._addresses.get(tx.to_user, tx.to_user),
        )

    def _remote_id(self, cell_id: CellId) -> str:
        cell_id = tuple(cell_id)
        if cell_id not in self._remote_ids:
            self.fetch_cell(cell_id)
        try:
            return self._remote_ids[cell_id]
        except KeyError:
            raise ValidationError(f"Server has no id for cell {cell_id}",
                                  Rejection.UNKNOWN_CELL, cell_id) from None

    def fetch_cells(self) -> list[Cell]:
        return [self._cell(d) for d in self._request("GET", "/api/pixels")]

    def fetch_cell(self, cell_id: CellId) -> Cell:
        x, y = cell_id
        if not self.engine.in_bounds(x, y):
            raise ValidationError(f"Invalid coordinates ({x}, {y})", cell_id=cell_id)
        return self._cell(self._request("GET", f"/api/pixels/{x}/{y}", cell_id=(x, y)))

    def fetch_stats(self) -> CanvasStats:
        return CanvasStats.from_json(self._request("GET", "/api/stats"))

    def claim(self, x: int, y: int, claimant: str, token_ref: TokenRef | None = None) -> Cell:
        body = {"x": x, "y": y, "userAddress": claimant}
        if token_ref is not None:
            body["txHash"] = token_ref.tx_ref
            body["sporeId"] = token_ref.token_id
        result = self._request("POST", "/api/pixels/claim", body, submission=True, cell_id=(x, y))
        return self._answer(result, claimant)

    def transfer(self, cell_id: CellId, from_owner: str, to_owner: str,
                 tx_ref: str | None = None) -> Cell:
        body = {
            "pixelId": self._remote_id(cell_id),
            "fromAddress": from_owner,
            "toAddress": to_owner,
            "txHash": tx_ref,
        }
        result = self._request("POST", "/api/pixels/transfer", body, submission=True,
                               cell_id=tuple(cell_id))
        return self._answer(result, to_owner)

    def melt(self, cell_id: CellId, owner: str, tx_ref: str | None = None) -> Cell:
        body = {"pixelId": self._remote_id(cell_id), "userAddress": owner, "txHash": tx_ref}
        result = self._request("POST", "/api/pixels/burn", body, submission=True,
                               cell_id=tuple(cell_id))
        return self._answer(result)

    def fetch_history(self, cell_id: CellId) -> list[Transaction]:
        """Every recorded action on one cell, newest first."""
        cell_id = tuple(cell_id)
        rows = self._request("GET", f"/api/pixels/{self._remote_id(cell_id)}/transactions",
                             cell_id=cell_id)
        return [self._transaction(row, cell_id) for row in rows]

    def recent_transactions(self, limit: int = 20) -> list[Transaction]:
        rows = self._request("GET", f"/api/transactions/recent?limit={int(limit)}")
        return [self._transaction(row) for row in rows]

    def user_id(self, address: str) -> str | None:
        """Server id behind a wallet address, or None if the server has never seen it."""
        if not address:
            return None
        if address in self._user_ids:
            return self._user_ids[address]
        try:
            data = self._request("GET", f"/api/users/{urllib.parse.quote(address, safe='')}")
        except ValidationError:
            return None
        user_id = data.get("id") if isinstance(data, dict) else None
        self._learn(user_id, address)
        return user_id
