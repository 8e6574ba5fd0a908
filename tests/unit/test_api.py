import pytest
from datetime import datetime, timedelta
from decimal import Decimal
from unittest.mock import patch
import os

# Set test secret key before importing app
os.environ["SECRET_KEY"] = "test-secret-key"

from sqlalchemy.exc import OperationalError

from database.models import AuctionStatus, AuctionType
from server.errors import ConcurrentUpdate


def _iso(dt: datetime) -> str:
    return dt.replace(microsecond=0).isoformat()


def _create_payload(**overrides):
    now = datetime.utcnow()
    payload = {
        "product_ref": "product-1",
        "title": "Vintage Camera",
        "auction_type": "time_based",
        "starting_price": "45",
        "min_bid_increment": "5",
        "start_time": _iso(now - timedelta(minutes=1)),
        "end_time": _iso(now + timedelta(hours=1)),
    }
    payload.update(overrides)
    return payload


def test_auth_endpoint(client):
    """Test authentication endpoint."""
    response = client.post("/auth", json={"username": "testuser", "password": "testpass"})
    assert response.status_code == 200
    data = response.json()
    assert "token" in data
    assert data["token"] is not None


def test_requests_without_auth_are_rejected(client):
    assert client.get("/auctions").status_code == 401
    assert client.post("/auctions/1/bids", json={"amount": "50"}).status_code == 401
    response = client.get("/wallet", headers={"Authorization": "Bearer not-a-token"})
    assert response.status_code == 401


def test_create_and_publish(client, headers_for):
    seller = headers_for("seller")
    response = client.post("/auctions", json=_create_payload(), headers=seller)
    assert response.status_code == 201
    data = response.json()
    assert data["status"] == AuctionStatus.DRAFT.value
    assert data["seller_id"] == "seller"

    response = client.post(f"/auctions/{data['id']}/publish", headers=headers_for("mallory"))
    assert response.status_code == 403
    assert response.json()["error"] == "NotOwner"

    response = client.post(f"/auctions/{data['id']}/publish", headers=seller)
    assert response.status_code == 200
    assert response.json()["status"] == AuctionStatus.ACTIVE.value


def test_create_with_timezone_offset_is_stored_as_utc(client, headers_for):
    start = datetime.utcnow().replace(microsecond=0) + timedelta(hours=1)
    payload = _create_payload(
        start_time=(start + timedelta(hours=2)).isoformat() + "+02:00",
        end_time=(start + timedelta(hours=5)).isoformat() + "+02:00",
    )
    response = client.post("/auctions", json=payload, headers=headers_for("seller"))
    assert response.status_code == 201
    assert datetime.fromisoformat(response.json()["start_time"]) == start


def test_create_invalid_auction(client, headers_for):
    response = client.post("/auctions", json=_create_payload(min_bid_increment="0"), headers=headers_for("seller"))
    assert response.status_code == 422
    assert response.json()["error"] == "InvalidAuction"


def test_list_and_get(client, headers_for, make_auction):
    active = make_auction()
    make_auction(status=AuctionStatus.DRAFT.value)
    make_auction(end_time=datetime.utcnow() - timedelta(minutes=1))

    response = client.get("/auctions", headers=headers_for("alice"))
    assert response.status_code == 200
    assert [a["id"] for a in response.json()] == [active.id]

    first = client.get(f"/auctions/{active.id}", headers=headers_for("alice")).json()
    second = client.get(f"/auctions/{active.id}", headers=headers_for("alice")).json()
    assert second["view_count"] == first["view_count"] + 1


def test_list_filters_by_status_and_seller(client, headers_for, make_auction):
    sold = make_auction(status=AuctionStatus.SOLD.value)
    draft = make_auction(status=AuctionStatus.DRAFT.value)
    other = make_auction(seller_id="other-seller")

    response = client.get("/auctions", params={"status": "sold"}, headers=headers_for("alice"))
    assert [a["id"] for a in response.json()] == [sold.id]

    response = client.get("/auctions", params={"seller_id": "other-seller"}, headers=headers_for("alice"))
    assert [a["id"] for a in response.json()] == [other.id]

    # Drafts are listed for their seller only
    response = client.get("/auctions", params={"status": "draft"}, headers=headers_for("alice"))
    assert response.json() == []
    response = client.get("/auctions", params={"status": "draft"}, headers=headers_for("seller"))
    assert [a["id"] for a in response.json()] == [draft.id]

    response = client.get("/auctions", params={"status": "bogus"}, headers=headers_for("alice"))
    assert response.status_code == 422


def test_update_draft_endpoint(client, headers_for):
    seller = headers_for("seller")
    auction_id = client.post("/auctions", json=_create_payload(), headers=seller).json()["id"]

    response = client.patch(f"/auctions/{auction_id}", json={"title": "Boxed Camera", "reserve_price": "80"},
                            headers=seller)
    assert response.status_code == 200
    assert response.json()["title"] == "Boxed Camera"
    assert Decimal(response.json()["reserve_price"]) == Decimal("80")

    response = client.patch(f"/auctions/{auction_id}", json={"title": "Mine"}, headers=headers_for("mallory"))
    assert response.status_code == 403

    response = client.patch(f"/auctions/{auction_id}", json={"min_bid_increment": "0"}, headers=seller)
    assert response.status_code == 422
    assert response.json()["error"] == "InvalidAuction"

    client.post(f"/auctions/{auction_id}/publish", headers=seller)
    response = client.patch(f"/auctions/{auction_id}", json={"title": "Late"}, headers=seller)
    assert response.status_code == 409
    assert response.json()["error"] == "AuctionClosed"


def test_get_missing_auction(client, headers_for):
    response = client.get("/auctions/999", headers=headers_for("alice"))
    assert response.status_code == 404
    assert response.json() == {"error": "NotFound", "detail": "Auction 999 not found"}


def test_place_bid_and_errors(client, headers_for, sample_auction):
    url = f"/auctions/{sample_auction.id}/bids"

    response = client.post(url, json={"amount": "50", "max_auto_bid": "100"}, headers=headers_for("alice"))
    assert response.status_code == 201
    assert response.json()["winning_bidder_id"] == "alice"

    response = client.post(url, json={"amount": "60"}, headers=headers_for("bob"))
    assert response.status_code == 201
    data = response.json()
    assert Decimal(data["current_price"]) == Decimal("65")
    assert data["winning_bidder_id"] == "alice"
    assert data["auto_bids"] == 1

    response = client.post(url, json={"amount": "66"}, headers=headers_for("carol"))
    assert response.status_code == 409
    assert response.json()["error"] == "BidTooLow"
    assert Decimal(response.json()["minimum"]) == Decimal("70")

    response = client.post(url, json={"amount": "100"}, headers=headers_for("alice"))
    assert response.status_code == 409
    assert response.json()["error"] == "AlreadyWinning"

    response = client.post(url, json={"amount": "100"}, headers=headers_for("seller"))
    assert response.status_code == 403
    assert response.json()["error"] == "OwnAuction"

    history = client.get(url, headers=headers_for("carol")).json()
    assert [(b["bidder_id"], Decimal(b["amount"])) for b in history] == [
        ("alice", Decimal("50")), ("bob", Decimal("60")), ("alice", Decimal("65")),
    ]


def test_sealed_amounts_hidden_from_others(client, headers_for, make_auction):
    auction = make_auction(auction_type=AuctionType.SEALED.value)
    url = f"/auctions/{auction.id}/bids"
    client.post(url, json={"amount": "80"}, headers=headers_for("alice"))
    client.post(url, json={"amount": "90"}, headers=headers_for("bob"))

    history = client.get(url, headers=headers_for("alice")).json()
    amounts = {b["bidder_id"]: b["amount"] for b in history}
    assert Decimal(amounts["alice"]) == Decimal("80")
    assert amounts["bob"] is None


def test_buy_now_flow(client, headers_for, make_auction):
    auction = make_auction(
        auction_type=AuctionType.BUY_NOW.value,
        buy_now_price=Decimal("200"),
        current_price=Decimal("200"),
    )
    buyer = headers_for("alice")
    url = f"/auctions/{auction.id}/buy-now"

    response = client.post(url, json={"expected_price": "200"}, headers=buyer)
    assert response.status_code == 402
    assert response.json()["error"] == "InsufficientFunds"

    response = client.post("/wallet/deposit", json={"amount": "250"}, headers=buyer)
    assert Decimal(response.json()["balance"]) == Decimal("250")

    response = client.post(url, json={"expected_price": "199"}, headers=buyer)
    assert response.status_code == 409
    assert response.json()["error"] == "PriceChanged"
    assert Decimal(response.json()["current_price"]) == Decimal("200")

    response = client.post(url, json={"expected_price": "200"}, headers=buyer)
    assert response.status_code == 201
    assert response.json()["order_number"].startswith("ORD-")

    response = client.post(url, json={"expected_price": "200"}, headers=headers_for("bob"))
    assert response.status_code == 409
    assert response.json()["error"] == "AlreadySold"

    assert Decimal(client.get("/wallet", headers=buyer).json()["balance"]) == Decimal("50")
    assert Decimal(client.get("/wallet", headers=headers_for("seller")).json()["balance"]) == Decimal("200")


def test_deposit_must_be_positive(client, headers_for):
    response = client.post("/wallet/deposit", json={"amount": "0"}, headers=headers_for("alice"))
    assert response.status_code == 422


def test_watch_and_unwatch(client, headers_for, sample_auction, db_session):
    url = f"/auctions/{sample_auction.id}/watch"
    assert client.post(url, headers=headers_for("alice")).json()["watching"] is True
    assert client.post(url, headers=headers_for("alice")).status_code == 200
    assert client.delete(url, headers=headers_for("alice")).json()["watching"] is False
    assert client.post("/auctions/999/watch", headers=headers_for("alice")).status_code == 404


def test_settle_endpoint(client, headers_for, make_auction):
    auction = make_auction(end_time=datetime.utcnow() - timedelta(seconds=1))
    response = client.post(f"/auctions/{auction.id}/settle", headers=headers_for("alice"))
    assert response.status_code == 403
    assert response.json()["error"] == "NotOwner"

    response = client.post(f"/auctions/{auction.id}/settle", headers=headers_for("seller"))
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == AuctionStatus.ENDED.value
    assert data["close_reason"] == "no_bids"
    assert data["settled_now"] is True


def test_infrastructure_errors_are_retryable(client, headers_for, sample_auction):
    url = f"/auctions/{sample_auction.id}/bids"
    with patch("server.api.bidding.place_bid", side_effect=ConcurrentUpdate("bid: conflict")):
        response = client.post(url, json={"amount": "50"}, headers=headers_for("alice"))
    assert response.status_code == 503
    assert response.json()["retryable"] is True

    with patch("server.api.bidding.place_bid", side_effect=OperationalError("UPDATE", {}, Exception("locked"))):
        response = client.post(url, json={"amount": "50"}, headers=headers_for("alice"))
    assert response.status_code == 503
    assert response.json()["error"] == "StoreUnavailable"
