"""Tests for the HTTP authority client."""

import io
import json
import urllib.error
from unittest.mock import MagicMock, patch

import pytest

from pixelgrid.errors import (
    AuthorityTimeout,
    ConflictError,
    FeeConfirmationError,
    Rejection,
    TransientNetworkError,
    ValidationError,
)
from pixelgrid.models import Action
from pixelgrid.remote import HttpAuthority, rejection_for
from pixelgrid.tiers import TierPricingEngine


def _response(payload):
    resp = MagicMock()
    resp.read.return_value = json.dumps(payload).encode()
    resp.__enter__.return_value = resp
    return resp


def _http_error(code, message):
    body = io.BytesIO(json.dumps({"error": message}).encode())
    return urllib.error.HTTPError("http://x", code, "error", {}, body)


@pytest.fixture
def client():
    return HttpAuthority(TierPricingEngine(), "http://pixels.test/", timeout=2, confirm_timeout=9)


def test_fetch_cells_parses_records(client):
    payload = [
        {"id": "p1", "x": 25, "y": 25, "claimed": True, "ownerAddress": "alice"},
        {"id": "p2", "x": 0, "y": 0, "claimed": False},
    ]
    with patch("urllib.request.urlopen", return_value=_response(payload)) as mock_open:
        cells = client.fetch_cells()
    req = mock_open.call_args[0][0]
    assert req.full_url == "http://pixels.test/api/pixels"
    assert mock_open.call_args.kwargs["timeout"] == 2
    assert cells[0].owner == "alice"
    assert cells[0].price == 100000
    assert cells[1].tier.value == "common"


def test_claim_posts_body(client):
    payload = {"pixel": {"id": "p1", "x": 1, "y": 2, "claimed": True, "ownerAddress": "alice"}}
    with patch("urllib.request.urlopen", return_value=_response(payload)) as mock_open:
        cell = client.claim(1, 2, "alice")
    req = mock_open.call_args[0][0]
    assert req.get_method() == "POST"
    assert req.full_url.endswith("/api/pixels/claim")
    assert json.loads(req.data) == {"x": 1, "y": 2, "userAddress": "alice"}
    assert mock_open.call_args.kwargs["timeout"] == 9
    assert cell.owner == "alice"


def test_transfer_uses_remote_id(client):
    listing = [{"id": "p9", "x": 4, "y": 4, "claimed": True, "ownerAddress": "alice"}]
    moved = {"pixel": {"id": "p9", "x": 4, "y": 4, "claimed": True, "ownerAddress": "bob"}}
    with patch("urllib.request.urlopen", side_effect=[_response(listing), _response(moved)]) as m:
        client.fetch_cells()
        cell = client.transfer((4, 4), "alice", "bob", tx_ref="0xabc")
    body = json.loads(m.call_args[0][0].data)
    assert body == {"pixelId": "p9", "fromAddress": "alice", "toAddress": "bob", "txHash": "0xabc"}
    assert cell.owner == "bob"


def test_already_claimed_maps_to_conflict(client):
    with patch("urllib.request.urlopen", side_effect=_http_error(400, "Pixel already claimed")):
        with pytest.raises(ConflictError) as exc:
            client.claim(1, 2, "bob")
    assert exc.value.reason is Rejection.ALREADY_CLAIMED


def test_submission_timeout_is_unknown_outcome(client):
    with patch("urllib.request.urlopen", side_effect=TimeoutError()):
        with pytest.raises(AuthorityTimeout):
            client.claim(1, 2, "bob")


def test_query_failures_are_transient(client):
    with patch("urllib.request.urlopen", side_effect=urllib.error.URLError("refused")):
        with pytest.raises(TransientNetworkError):
            client.fetch_cells()
    with patch("urllib.request.urlopen", side_effect=TimeoutError()):
        with pytest.raises(TransientNetworkError):
            client.fetch_cells()


def test_rejection_mapping():
    assert isinstance(rejection_for(404, "Pixel not found"), ValidationError)
    assert rejection_for(404, "Pixel not found or not claimed").reason is Rejection.NOT_OWNER
    assert rejection_for(403, "Not authorized to melt this pixel").reason is Rejection.NOT_OWNER
    assert rejection_for(403, "You've already minted a pixel.").reason is Rejection.MINT_LIMIT
    assert isinstance(rejection_for(400, "Transaction hash is required"), FeeConfirmationError)
    assert isinstance(rejection_for(400, "Invalid coordinates"), ValidationError)
    assert isinstance(rejection_for(500, "boom"), TransientNetworkError)


def test_owner_ids_resolved_after_claim(client):
    claimed = {"pixel": {"id": "p1", "x": 1, "y": 2, "claimed": True,
                         "ownerId": "uuid-1", "minterId": "uuid-1"}}
    listing = [{"id": "p1", "x": 1, "y": 2, "claimed": True,
                "ownerId": "uuid-1", "minterId": "uuid-1"},
               {"id": "p2", "x": 3, "y": 3, "claimed": True, "ownerId": "uuid-9"}]
    with patch("urllib.request.urlopen", side_effect=[_response(claimed), _response(listing)]):
        cell = client.claim(1, 2, "ckt1alice")
        cells = client.fetch_cells()
    assert cell.owner == "ckt1alice"
    assert cell.owner_id == "uuid-1"
    assert cells[0].owner == "ckt1alice"
    assert cells[0].minter == "ckt1alice"
    # never seen: keeps the server id only
    assert cells[1].owner is None
    assert cells[1].holder == "uuid-9"


def test_user_id_lookup_is_cached(client):
    user = {"id": "uuid-1", "address": "ckt1alice", "influence": 0}
    with patch("urllib.request.urlopen", return_value=_response(user)) as mock_open:
        assert client.user_id("ckt1alice") == "uuid-1"
        assert client.user_id("ckt1alice") == "uuid-1"
    assert mock_open.call_count == 1
    assert mock_open.call_args[0][0].full_url == "http://pixels.test/api/users/ckt1alice"


def test_user_id_unknown_wallet(client):
    with patch("urllib.request.urlopen", side_effect=_http_error(404, "User not found")):
        assert client.user_id("ckt1nobody") is None
    assert client.user_id("") is None


def test_malformed_record_is_transient(client):
    with patch("urllib.request.urlopen", return_value=_response({"id": "p1", "y": 2})):
        with pytest.raises(TransientNetworkError):
            client.fetch_cell((1, 2))


def test_unreadable_submission_answer_is_unconfirmed(client):
    with patch("urllib.request.urlopen", return_value=_response({"ok": True})):
        with pytest.raises(AuthorityTimeout):
            client.claim(1, 2, "ckt1alice")


def test_fetch_history(client):
    listing = [{"id": "p7", "x": 0, "y": 0, "claimed": True,
                "ownerId": "uuid-2", "ownerAddress": "ckt1bob"}]
    rows = [
        {"id": "t2", "pixelId": "p7", "fromUserId": "uuid-1", "toUserId": "uuid-2",
         "type": "transfer", "amount": 5000, "txHash": "0xb"},
        {"id": "t1", "pixelId": "p7", "fromUserId": None, "toUserId": "uuid-1",
         "type": "mint", "amount": 5000, "txHash": "0xa"},
    ]
    with patch("urllib.request.urlopen", side_effect=[_response(listing), _response(rows)]) as m:
        client.fetch_cells()
        history = client.fetch_history((0, 0))
    assert m.call_args[0][0].full_url == "http://pixels.test/api/pixels/p7/transactions"
    assert [t.action for t in history] == [Action.TRANSFER, Action.CLAIM]
    assert history[0].to_user == "ckt1bob"
    assert history[0].from_user == "uuid-1"
    assert all(t.cell_id == (0, 0) for t in history)


def test_recent_transactions(client):
    rows = [{"id": "t9", "type": "mint", "ckbAmount": 100000, "txHash": "0xc",
             "timestamp": "2025-01-01T00:00:00Z", "pixelX": 25, "pixelY": 25,
             "tier": "legendary", "walletAddress": "ckt1alice", "fromUserAddress": None}]
    with patch("urllib.request.urlopen", return_value=_response(rows)) as mock_open:
        recent = client.recent_transactions(limit=5)
    assert mock_open.call_args[0][0].full_url.endswith("/api/transactions/recent?limit=5")
    assert recent[0].cell_id == (25, 25)
    assert recent[0].to_user == "ckt1alice"
